"""Persist stage-by-stage progress of a module run."""

from __future__ import annotations

import logging
from typing import Any

from flashdeck.jobs.models import JobRecord
from flashdeck.pipeline.models import StageResult
from flashdeck.pipeline.runner import STAGES
from flashdeck.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

STAGE_EVENT = "stage"


def stage_event_message(entry: StageResult) -> str:
  message = f"{entry.stage} {entry.status} in {entry.duration_ms}ms"
  if entry.message:
    message = f"{message}: {entry.message}"
  return message


class StageProgressTracker:
  """Append each stage result as a job event and advance phase and progress.

  Stage entries are only ever appended, so the stage log of a run is never rewritten.
  """

  def __init__(self, *, job_id: str, jobs_repo: JobsRepository, total_stages: int = len(STAGES)) -> None:
    self._job_id = job_id
    self._jobs_repo = jobs_repo
    self._total_stages = max(total_stages, 1)
    self._completed = 0
    self._entries: list[dict[str, Any]] = []

  def _progress_percent(self) -> float:
    return min(round((self._completed / self._total_stages) * 100, 2), 100.0)

  async def record(self, entry: StageResult) -> JobRecord | None:
    self._completed += 1
    payload = entry.to_dict()
    self._entries.append(payload)
    await self._jobs_repo.append_event(job_id=self._job_id, event_type=STAGE_EVENT, message=stage_event_message(entry), payload_json=payload)
    if entry.status == "failed":
      logger.warning("Stage failed job_id=%s stage=%s message=%s", self._job_id, entry.stage, entry.message)
    return await self._jobs_repo.update_job(self._job_id, phase=entry.stage, progress=self._progress_percent())

  @property
  def entries(self) -> list[dict[str, Any]]:
    return list(self._entries)
