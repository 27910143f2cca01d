from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, status

from flashdeck.api.deps import get_jobs_repo
from flashdeck.api.models import ProcessJobTaskRequest
from flashdeck.config import Settings, get_settings
from flashdeck.services.jobs import process_job_sync
from flashdeck.storage.jobs_repo import JobsRepository

router = APIRouter(prefix="/tasks", tags=["tasks"])
logger = logging.getLogger(__name__)


@router.post("/process-job", status_code=status.HTTP_200_OK)
async def process_job_task(
  payload: ProcessJobTaskRequest,
  background_tasks: BackgroundTasks,
  settings: Annotated[Settings, Depends(get_settings)],
  repo: Annotated[JobsRepository, Depends(get_jobs_repo)],
  authorization: str | None = Header(default=None),
  x_flashdeck_task_secret: str | None = Header(default=None),
) -> dict[str, str]:
  """
  Handler for Cloud Tasks (and local simulation).
  Accepts the task and processes the job in the background so dispatchers get a fast 2xx.
  """
  # Internal task endpoints are deny-by-default.
  if not settings.task_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task authentication is not configured.")
  expected_auth = f"Bearer {settings.task_secret}"
  # Cloud Run OIDC may occupy Authorization, so the dedicated header is checked first.
  shared_secret_valid = secrets.compare_digest((x_flashdeck_task_secret or ""), settings.task_secret)
  bearer_valid = secrets.compare_digest((authorization or ""), expected_auth)
  if not shared_secret_valid and not bearer_valid:
    logger.warning("Unauthorized access attempt to /process-job")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid task secret.")

  logger.info("Received task for job %s", payload.job_id)
  background_tasks.add_task(process_job_sync, payload.job_id, settings, repo)
  return {"status": "accepted"}
