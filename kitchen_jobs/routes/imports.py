"""Recipe import endpoints."""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel

from kitchen_jobs.errors import InvalidJobIdError, QueueUnavailableError, TerminalWorkError
from kitchen_jobs.handlers.paste_import import check_paste
from kitchen_jobs.policy import PolicyContext
from kitchen_jobs.queue.dedup import EnqueueResult, EnqueueStatus
from kitchen_jobs.services import KitchenJobs
from .deps import get_jobs, get_policy_context

router = APIRouter()
logger = logging.getLogger(__name__)

STATUS_CODES = {
    EnqueueStatus.QUEUED: 202,
    EnqueueStatus.EXISTS: 200,
    EnqueueStatus.DUPLICATE: 409,
}


class UrlImportRequest(BaseModel):
    url: str
    recipe_id: Optional[str] = None


class ImageImportRequest(BaseModel):
    files: list[str]
    recipe_id: Optional[str] = None


class PasteImportRequest(BaseModel):
    text: str
    recipe_id: Optional[str] = None


class ImportResponse(BaseModel):
    status: EnqueueStatus
    job_id: str
    recipe_id: str
    existing_recipe_id: Optional[str] = None


def _respond(result: EnqueueResult, recipe_id: str, response: Response) -> ImportResponse:
    response.status_code = STATUS_CODES[result.status]
    return ImportResponse(
        status=result.status,
        job_id=result.job_id,
        recipe_id=recipe_id,
        existing_recipe_id=result.result_id,
    )


@router.post("/url", response_model=ImportResponse)
async def import_from_url(
    request: UrlImportRequest,
    response: Response,
    ctx: PolicyContext = Depends(get_policy_context),
    jobs: KitchenJobs = Depends(get_jobs),
):
    """
    Queue a recipe import from a URL.

    202 when queued, 200 when the recipe already exists (its id is returned),
    409 when an import of the same URL is already in progress.
    """
    recipe_id = request.recipe_id or str(uuid.uuid4())
    try:
        result = await jobs.recipe_import.add_job(request.url, recipe_id, ctx)
    except InvalidJobIdError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except QueueUnavailableError as e:
        logger.error(f"Import request failed: {e}")
        raise HTTPException(status_code=503, detail="Queue unavailable")

    return _respond(result, recipe_id, response)


@router.post("/images", response_model=ImportResponse)
async def import_from_images(
    request: ImageImportRequest,
    response: Response,
    ctx: PolicyContext = Depends(get_policy_context),
    jobs: KitchenJobs = Depends(get_jobs),
):
    """Queue a recipe import from uploaded images."""
    if not request.files:
        raise HTTPException(status_code=400, detail="No images provided")

    recipe_id = request.recipe_id or str(uuid.uuid4())
    try:
        result = await jobs.image_import.add_job(recipe_id, request.files, ctx)
    except QueueUnavailableError as e:
        logger.error(f"Image import request failed: {e}")
        raise HTTPException(status_code=503, detail="Queue unavailable")

    return _respond(result, recipe_id, response)


@router.post("/paste", response_model=ImportResponse)
async def import_from_paste(
    request: PasteImportRequest,
    response: Response,
    ctx: PolicyContext = Depends(get_policy_context),
    jobs: KitchenJobs = Depends(get_jobs),
):
    """Queue a recipe import from pasted text. Blank or oversized pastes are rejected with 400."""
    try:
        check_paste(request.text)
    except TerminalWorkError as e:
        raise HTTPException(status_code=400, detail=str(e))

    recipe_id = request.recipe_id or str(uuid.uuid4())
    try:
        result = await jobs.paste_import.add_job(recipe_id, request.text, ctx)
    except QueueUnavailableError as e:
        logger.error(f"Paste import request failed: {e}")
        raise HTTPException(status_code=503, detail="Queue unavailable")

    return _respond(result, recipe_id, response)
