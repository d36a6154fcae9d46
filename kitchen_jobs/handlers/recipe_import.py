"""Recipe import from a URL.

Admission is policy-aware: the dedup key and the existence check both
depend on who may see whose recipes, so two households importing the same
URL under the ``household`` policy get two jobs, while under ``everyone``
the second request finds the first recipe or the first job.
"""

import logging
from typing import Optional

from pydantic import BaseModel

from kitchen_jobs.errors import TransientWorkError
from kitchen_jobs.events.types import RecipeFailed, RecipeImported, RecipeImportStarted
from kitchen_jobs.lib.json_logger import job_logger
from kitchen_jobs.policy import PolicyContext, PolicyLevel
from kitchen_jobs.queue.dedup import EnqueueResult, generate_import_job_id
from kitchen_jobs.queue.job_queue import QUEUE_RECIPE_IMPORT, Job
from .base import JobHandler

logger = logging.getLogger(__name__)


class RecipeImportJobData(BaseModel):
    url: str
    recipe_id: str
    user_id: str
    household_key: str

    def context(self) -> PolicyContext:
        return PolicyContext(user_id=self.user_id, household_key=self.household_key)


class RecipeImportHandler(JobHandler):
    queue_name = QUEUE_RECIPE_IMPORT
    job_name = "import"

    async def add_job(self, url: str, recipe_id: str, ctx: PolicyContext) -> EnqueueResult:
        """
        Queue a URL import unless the recipe exists or is already being imported.

        Args:
            url: Recipe page URL
            recipe_id: Id the client uses for its in-progress placeholder
            ctx: Requesting user and household

        Returns:
            EnqueueResult (queued, duplicate, or exists with the recipe id)
        """
        policy = await self.router.policy_provider.current()
        job_id = generate_import_job_id(url, ctx, policy)
        data = RecipeImportJobData(url=url, recipe_id=recipe_id, user_id=ctx.user_id, household_key=ctx.household_key)

        async def exists() -> Optional[str]:
            return await self._existing_recipe_id(url, ctx, policy)

        result = await self.gate.enqueue(self.job_name, job_id, data.model_dump(mode="json"), exists_check=exists)
        logger.info(
            f"Recipe import for {url}: {result.status.value}",
            extra={"job_id": job_id, "queue": self.queue_name, "policy": policy.value, "status": result.status.value},
        )
        return result

    async def process(self, job: Job) -> None:
        data = RecipeImportJobData.model_validate(job.payload)
        log = job_logger(job)
        log.info(f"Processing recipe import job (attempt {self.attempt_label(job)})", extra={"url": data.url})

        policy = await self.router.policy_provider.current()
        ctx = data.context()

        await self.router.emit_by_policy(
            policy, ctx, "importStarted", RecipeImportStarted(recipe_id=data.recipe_id, url=data.url)
        )

        # A previous attempt, or another job, may already have produced it
        existing_id = await self._existing_recipe_id(data.url, ctx, policy)
        if existing_id:
            summary = await self.collaborators.require("load_recipe_summary")(existing_id)
            if summary is not None:
                log.info(f"Recipe already exists, returning existing {existing_id}")
                await self.router.emit_by_policy(
                    policy, ctx, "imported", RecipeImported(recipe=summary, pending_recipe_id=data.recipe_id)
                )
            return

        parsed = await self.collaborators.require("parse_recipe_url")(data.url)
        if not parsed:
            raise TransientWorkError("Failed to parse recipe from URL")

        created_id = await self.collaborators.require("persist_recipe")(data.recipe_id, data.user_id, parsed)
        if not created_id:
            raise TransientWorkError("Failed to save imported recipe")

        summary = await self.collaborators.require("load_recipe_summary")(created_id)
        if summary is not None:
            log.info(f"Recipe imported successfully as {created_id}")
            await self.router.emit_by_policy(
                policy, ctx, "imported", RecipeImported(recipe=summary, pending_recipe_id=data.recipe_id)
            )

    async def on_failed(self, job: Job, error: Exception, is_final: bool) -> None:
        if not is_final:
            return

        data = RecipeImportJobData.model_validate(job.payload)
        await self.router.emit(
            data.context(),
            "failed",
            RecipeFailed(
                reason=self.failure_reason(error, "Failed to import recipe after multiple attempts"),
                recipe_id=data.recipe_id,
                url=data.url,
            ),
        )

    async def _existing_recipe_id(self, url: str, ctx: PolicyContext, policy: PolicyLevel) -> Optional[str]:
        check = self.collaborators.exists_recipe_by_url
        if check is None:
            return None
        return await check(url, ctx, policy)
