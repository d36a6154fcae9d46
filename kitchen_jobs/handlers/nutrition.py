"""Nutrition estimation for an existing recipe."""

import logging

from pydantic import BaseModel

from kitchen_jobs.errors import TransientWorkError
from kitchen_jobs.events.types import NutritionStarted, RecipeFailed, RecipeUpdated
from kitchen_jobs.lib.json_logger import job_logger
from kitchen_jobs.policy import PolicyContext
from kitchen_jobs.queue.dedup import EnqueueResult, sanitize_for_job_id
from kitchen_jobs.queue.job_queue import QUEUE_NUTRITION, Job
from .base import JobHandler

logger = logging.getLogger(__name__)


class NutritionJobData(BaseModel):
    recipe_id: str
    user_id: str
    household_key: str

    def context(self) -> PolicyContext:
        return PolicyContext(user_id=self.user_id, household_key=self.household_key)


def nutrition_job_id(recipe_id: str) -> str:
    return f"nutrition_{sanitize_for_job_id(recipe_id)}"


class NutritionHandler(JobHandler):
    queue_name = QUEUE_NUTRITION
    job_name = "estimate"

    async def add_job(self, recipe_id: str, ctx: PolicyContext) -> EnqueueResult:
        data = NutritionJobData(recipe_id=recipe_id, user_id=ctx.user_id, household_key=ctx.household_key)
        return await self.gate.enqueue(self.job_name, nutrition_job_id(recipe_id), data.model_dump(mode="json"))

    async def process(self, job: Job) -> None:
        data = NutritionJobData.model_validate(job.payload)
        log = job_logger(job)
        log.info(f"Processing nutrition estimation job (attempt {self.attempt_label(job)})")

        policy = await self.router.policy_provider.current()
        ctx = data.context()
        await self.router.emit_by_policy(policy, ctx, "nutritionStarted", NutritionStarted(recipe_id=data.recipe_id))

        estimate = await self.collaborators.require("estimate_nutrition")(data.recipe_id)
        if not estimate:
            raise TransientWorkError("Failed to estimate nutrition")

        await self.collaborators.require("save_nutrition")(data.recipe_id, data.user_id, estimate)

        summary = await self.collaborators.require("load_recipe_summary")(data.recipe_id)
        if summary is not None:
            log.info("Nutrition estimated and saved")
            await self.router.emit_by_policy(policy, ctx, "updated", RecipeUpdated(recipe=summary))

    async def on_failed(self, job: Job, error: Exception, is_final: bool) -> None:
        if not is_final:
            return

        data = NutritionJobData.model_validate(job.payload)
        await self.router.emit(
            data.context(),
            "failed",
            RecipeFailed(
                reason=self.failure_reason(error, "Failed to estimate nutrition"),
                recipe_id=data.recipe_id,
            ),
        )
