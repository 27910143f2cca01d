from __future__ import annotations

from flashdeck.config import Settings
from flashdeck.services.tasks.gcp import CloudTasksEnqueuer
from flashdeck.services.tasks.interface import TaskEnqueuer
from flashdeck.services.tasks.local import LocalHttpEnqueuer


def get_task_enqueuer(settings: Settings) -> TaskEnqueuer:
  """Factory to get the configured task enqueuer."""
  if settings.task_service_provider == "gcp":
    return CloudTasksEnqueuer(settings)
  return LocalHttpEnqueuer(settings)
