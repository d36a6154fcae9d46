"""Job categories: admission, processing and failure reporting per queue."""

from .base import JobHandler
from .collaborators import CalendarClient, Collaborators, MissingCollaboratorError
from .recipe_import import RecipeImportHandler, RecipeImportJobData
from .image_import import ImageImportHandler, ImageImportJobData, image_import_job_id
from .paste_import import PasteImportHandler, PasteImportJobData, paste_import_job_id
from .nutrition import NutritionHandler, NutritionJobData, nutrition_job_id
from .calendar_sync import CalendarSyncHandler, CalendarSyncJobData, calendar_sync_job_id
from .maintenance import MaintenanceHandler, MaintenanceJobData, TASK_TYPES, maintenance_schedule

__all__ = [
    "JobHandler",
    "CalendarClient",
    "Collaborators",
    "MissingCollaboratorError",
    "RecipeImportHandler",
    "RecipeImportJobData",
    "ImageImportHandler",
    "ImageImportJobData",
    "image_import_job_id",
    "PasteImportHandler",
    "PasteImportJobData",
    "paste_import_job_id",
    "NutritionHandler",
    "NutritionJobData",
    "nutrition_job_id",
    "CalendarSyncHandler",
    "CalendarSyncJobData",
    "calendar_sync_job_id",
    "MaintenanceHandler",
    "MaintenanceJobData",
    "TASK_TYPES",
    "maintenance_schedule",
]
