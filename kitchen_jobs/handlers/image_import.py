"""Recipe import from photos via a vision model."""

import logging

from pydantic import BaseModel

from kitchen_jobs.errors import TransientWorkError
from kitchen_jobs.events.types import RecipeFailed, RecipeImported, RecipeImportStarted
from kitchen_jobs.lib.json_logger import job_logger
from kitchen_jobs.policy import PolicyContext
from kitchen_jobs.queue.dedup import EnqueueResult, sanitize_for_job_id
from kitchen_jobs.queue.job_queue import QUEUE_IMAGE_IMPORT, Job
from .base import JobHandler

logger = logging.getLogger(__name__)


class ImageImportJobData(BaseModel):
    recipe_id: str
    user_id: str
    household_key: str
    files: list[str]

    def context(self) -> PolicyContext:
        return PolicyContext(user_id=self.user_id, household_key=self.household_key)

    @property
    def source_label(self) -> str:
        return f"[{len(self.files)} image(s)]"


def image_import_job_id(recipe_id: str) -> str:
    return f"image-import_{sanitize_for_job_id(recipe_id)}"


class ImageImportHandler(JobHandler):
    queue_name = QUEUE_IMAGE_IMPORT
    job_name = "image-import"

    async def add_job(self, recipe_id: str, files: list[str], ctx: PolicyContext) -> EnqueueResult:
        data = ImageImportJobData(
            recipe_id=recipe_id, user_id=ctx.user_id, household_key=ctx.household_key, files=files
        )
        job_id = image_import_job_id(recipe_id)
        logger.debug(f"Attempting to add image import job with {len(files)} file(s)", extra={"job_id": job_id})
        return await self.gate.enqueue(self.job_name, job_id, data.model_dump(mode="json"))

    async def process(self, job: Job) -> None:
        data = ImageImportJobData.model_validate(job.payload)
        log = job_logger(job)
        log.info(f"Processing image import job with {len(data.files)} file(s)")

        policy = await self.router.policy_provider.current()
        ctx = data.context()

        await self.router.emit_by_policy(
            policy, ctx, "importStarted", RecipeImportStarted(recipe_id=data.recipe_id, url=data.source_label)
        )

        parsed = await self.collaborators.require("parse_recipe_images")(data.files)
        if not parsed:
            raise TransientWorkError(
                "Failed to extract recipe from images. The images may not contain a valid recipe."
            )

        created_id = await self.collaborators.require("persist_recipe")(data.recipe_id, data.user_id, parsed)
        if not created_id:
            raise TransientWorkError("Failed to save imported recipe")

        summary = await self.collaborators.require("load_recipe_summary")(created_id)
        if summary is not None:
            log.info(f"Image recipe imported successfully as {created_id}")
            await self.router.emit_by_policy(
                policy, ctx, "imported", RecipeImported(recipe=summary, pending_recipe_id=data.recipe_id)
            )

    async def on_failed(self, job: Job, error: Exception, is_final: bool) -> None:
        if not is_final:
            return

        data = ImageImportJobData.model_validate(job.payload)
        await self.router.emit(
            data.context(),
            "failed",
            RecipeFailed(
                reason=self.failure_reason(error, "Failed to import recipe from images"),
                recipe_id=data.recipe_id,
                url=data.source_label,
            ),
        )
