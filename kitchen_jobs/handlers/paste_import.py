"""Recipe import from pasted text (JSON-LD or free text)."""

import logging

from pydantic import BaseModel

from kitchen_jobs.errors import TerminalWorkError, TransientWorkError
from kitchen_jobs.events.types import RecipeFailed, RecipeImported, RecipeImportStarted
from kitchen_jobs.lib.json_logger import job_logger
from kitchen_jobs.policy import PolicyContext
from kitchen_jobs.queue.dedup import EnqueueResult, sanitize_for_job_id
from kitchen_jobs.queue.job_queue import QUEUE_PASTE_IMPORT, Job
from .base import JobHandler

logger = logging.getLogger(__name__)

MAX_PASTE_CHARS = 10_000
PASTE_LABEL = "[pasted]"


class PasteImportJobData(BaseModel):
    recipe_id: str
    user_id: str
    household_key: str
    text: str

    def context(self) -> PolicyContext:
        return PolicyContext(user_id=self.user_id, household_key=self.household_key)


def paste_import_job_id(recipe_id: str) -> str:
    return f"paste-import_{sanitize_for_job_id(recipe_id)}"


def check_paste(text: str) -> str:
    """Return the trimmed paste, or raise TerminalWorkError if unusable."""
    trimmed = text.strip()
    if not trimmed:
        raise TerminalWorkError("No text provided")
    if len(trimmed) > MAX_PASTE_CHARS:
        raise TerminalWorkError(f"Paste is too large (max {MAX_PASTE_CHARS} characters)")
    return trimmed


class PasteImportHandler(JobHandler):
    queue_name = QUEUE_PASTE_IMPORT
    job_name = "paste-import"

    async def add_job(self, recipe_id: str, text: str, ctx: PolicyContext) -> EnqueueResult:
        data = PasteImportJobData(recipe_id=recipe_id, user_id=ctx.user_id, household_key=ctx.household_key, text=text)
        job_id = paste_import_job_id(recipe_id)
        logger.debug(f"Attempting to add paste import job ({len(text)} chars)", extra={"job_id": job_id})
        return await self.gate.enqueue(self.job_name, job_id, data.model_dump(mode="json"))

    async def process(self, job: Job) -> None:
        data = PasteImportJobData.model_validate(job.payload)
        log = job_logger(job)
        log.info(f"Processing paste import job (attempt {self.attempt_label(job)})")

        policy = await self.router.policy_provider.current()
        ctx = data.context()

        await self.router.emit_by_policy(
            policy, ctx, "importStarted", RecipeImportStarted(recipe_id=data.recipe_id, url=PASTE_LABEL)
        )

        text = check_paste(data.text)
        parsed = await self.collaborators.require("parse_recipe_text")(text)
        if not parsed:
            raise TransientWorkError("Could not parse pasted recipe.")

        created_id = await self.collaborators.require("persist_recipe")(data.recipe_id, data.user_id, parsed)
        if not created_id:
            raise TransientWorkError("Failed to save imported recipe")

        summary = await self.collaborators.require("load_recipe_summary")(created_id)
        if summary is not None:
            log.info(f"Pasted recipe imported successfully as {created_id}")
            await self.router.emit_by_policy(
                policy, ctx, "imported", RecipeImported(recipe=summary, pending_recipe_id=data.recipe_id)
            )

    async def on_failed(self, job: Job, error: Exception, is_final: bool) -> None:
        if not is_final:
            return

        data = PasteImportJobData.model_validate(job.payload)
        await self.router.emit(
            data.context(),
            "failed",
            RecipeFailed(
                reason=self.failure_reason(error, "Failed to import pasted recipe"),
                recipe_id=data.recipe_id,
                url=PASTE_LABEL,
            ),
        )
