from __future__ import annotations

import json
import logging
from typing import Any

from google.cloud import tasks_v2
from starlette.concurrency import run_in_threadpool

from flashdeck.config import Settings
from flashdeck.services.tasks.interface import TaskEnqueuer
from flashdeck.services.tasks.local import TASK_PATH

logger = logging.getLogger(__name__)


class CloudTasksEnqueuer(TaskEnqueuer):
  """Enqueues tasks to Google Cloud Tasks."""

  def __init__(self, settings: Settings, client: tasks_v2.CloudTasksClient | None = None) -> None:
    self.settings = settings
    self.client = client or tasks_v2.CloudTasksClient()

  def build_task(self, job_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    if not self.settings.base_url:
      raise RuntimeError("Base URL not configured.")
    if not self.settings.task_secret:
      raise RuntimeError("Task secret not configured.")

    http_request: dict[str, Any] = {
      "http_method": tasks_v2.HttpMethod.POST,
      "url": f"{self.settings.base_url.rstrip('/')}{TASK_PATH}",
      "headers": {"Content-Type": "application/json", "Authorization": f"Bearer {self.settings.task_secret}"},
      "body": json.dumps({"job_id": job_id, **payload}).encode(),
    }
    # Cloud Run needs an OIDC token from the invoker identity when one is configured.
    if self.settings.cloud_run_invoker_service_account:
      http_request["oidc_token"] = {"service_account_email": self.settings.cloud_run_invoker_service_account}
    return {"http_request": http_request}

  async def enqueue(self, job_id: str, payload: dict[str, Any]) -> None:
    """Enqueue a job to Cloud Tasks."""
    if not self.settings.cloud_tasks_queue_path:
      raise RuntimeError("Cloud Tasks queue path not configured.")

    task = self.build_task(job_id, payload)
    parent = self.settings.cloud_tasks_queue_path
    response = await run_in_threadpool(self.client.create_task, request={"parent": parent, "task": task})
    logger.info("Enqueued task %s for job %s", response.name, job_id)
