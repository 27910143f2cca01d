import logging
import time
from typing import Any

from fastapi import BackgroundTasks, HTTPException, status

from flashdeck.api.models import ChildJobSummary, GenerateResponse, JobListResponse, JobStatusResponse, StageLogEntry
from flashdeck.config import Settings
from flashdeck.core import metrics
from flashdeck.jobs.models import JobRecord
from flashdeck.services.request_validation import validate_generate_request
from flashdeck.services.tasks.factory import get_task_enqueuer
from flashdeck.storage.jobs_repo import JobsRepository
from flashdeck.utils.ids import generate_job_id

logger = logging.getLogger(__name__)

_JOB_NOT_FOUND_MSG = "Job not found."
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_KNOWN_JOB_STATUSES = {"queued", "running", "success", "partial", "failed"}
STATUS_PATH = "/v1/flashcards/jobs/{job_id}"


def _normalize_job_status(raw_status: str | None) -> str:
  """Clamp unknown status values to "queued" so responses remain predictable."""
  if raw_status and raw_status in _KNOWN_JOB_STATUSES:
    return raw_status
  return "queued"


def _job_status_from_record(record: JobRecord, *, children: list[JobRecord] | None = None) -> JobStatusResponse:
  """Convert a persisted job record into an API response payload."""
  child_summaries = None
  if children is not None:
    child_summaries = [
      ChildJobSummary(job_id=child.job_id, module_id=child.module_id, status=_normalize_job_status(child.status), card_count=(child.result_json or {}).get("card_count"), deck_id=(child.result_json or {}).get("deck_id"))  # type: ignore[arg-type]
      for child in children
    ]
  return JobStatusResponse(
    job_id=record.job_id,
    job_kind=record.job_kind,
    status=_normalize_job_status(record.status),  # type: ignore[arg-type]
    phase=record.phase,
    progress=record.progress,
    parent_job_id=record.parent_job_id,
    module_id=record.module_id,
    stage_log=[StageLogEntry.model_validate(entry) for entry in record.stage_log],
    children=child_summaries,
    result=record.result_json,
    error=record.error_json,
    logs=list(record.logs),
    created_at=record.created_at,
    completed_at=record.completed_at,
  )


async def create_generate_job(payload: Any, settings: Settings, background_tasks: BackgroundTasks, repo: JobsRepository) -> GenerateResponse:
  """Validate a generate request and queue it; invalid requests never create a job."""
  request = validate_generate_request(payload)
  job_id = generate_job_id()
  timestamp = time.strftime(_DATE_FORMAT, time.gmtime())
  record = JobRecord(
    job_id=job_id,
    user_id=request.settings.user_id,
    job_kind="generate",
    request=request.model_dump(mode="json"),
    status="queued",
    created_at=timestamp,
    updated_at=timestamp,
    target_agent="generate",
    phase="queued",
    progress=0.0,
    module_id=request.target.module_id if request.mode == "single_module" else None,
    logs=[f"Generate job queued (mode={request.mode}, triggered_by={request.settings.triggered_by or 'unknown'})."],
  )
  await repo.create_job(record)
  logger.info("Queued generate job %s mode=%s target=%s", job_id, request.mode, request.target.model_dump(exclude_none=True))
  trigger_job_processing(background_tasks, job_id, settings, repo, job_kind=record.job_kind)
  return GenerateResponse(job_id=job_id, status_url=STATUS_PATH.format(job_id=job_id), message="Flashcard generation job queued.")


async def get_job_status(job_id: str, repo: JobsRepository) -> JobStatusResponse:
  """Fetch the status, stage log and result of a job."""
  record = await repo.get_job(job_id)
  if record is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_JOB_NOT_FOUND_MSG)

  children = await repo.list_child_jobs(parent_job_id=record.job_id) if record.job_kind == "generate" else None
  return _job_status_from_record(record, children=children)


async def list_jobs(repo: JobsRepository, *, status_filter: str | None, limit: int, offset: int) -> JobListResponse:
  """Page through jobs; ``status=running`` is the active-runs view."""
  if status_filter is not None and status_filter not in _KNOWN_JOB_STATUSES:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown job status '{status_filter}'.")
  records, total = await repo.list_jobs(limit=limit, offset=offset, status=status_filter)
  return JobListResponse(items=[_job_status_from_record(record) for record in records], total=total, limit=limit, offset=offset)


async def process_job_sync(job_id: str, settings: Settings, repo: JobsRepository) -> JobRecord | None:
  """Run a queued job immediately."""
  try:
    from flashdeck.jobs.worker import JobProcessor

    record = await repo.get_job(job_id)

    if record is None:
      logger.warning("Task received for unknown job %s", job_id)
      return None

    processor = JobProcessor(jobs_repo=repo, settings=settings)
    return await processor.process_job(record)
  except Exception as exc:
    logger.error("Synchronous job processing failed for job %s: %s", job_id, exc, exc_info=True)
    try:
      await repo.update_job(job_id, status="failed", phase="failed", progress=100.0, logs=[f"System error during job processing: {exc}"], error_json={"message": str(exc)})
    except Exception as update_exc:
      logger.error("Failed to update job status after processing error: %s", update_exc)
    return None


def trigger_job_processing(background_tasks: BackgroundTasks, job_id: str, settings: Settings, repo: JobsRepository, *, job_kind: str = "generate") -> None:
  """Schedule background processing via the configured task enqueuer."""

  if not settings.jobs_auto_process:
    return

  enqueuer = get_task_enqueuer(settings)

  async def _dispatch() -> None:
    metrics.JOBS_ENQUEUED.labels(job_kind=job_kind).inc()
    try:
      await enqueuer.enqueue(job_id, {})
    except Exception as exc:  # noqa: BLE001
      logger.error("Failed to enqueue job %s: %s", job_id, exc, exc_info=True)
      metrics.JOBS_ENQUEUE_FAILED.labels(job_kind=job_kind).inc()
      # A job that was never dispatched must not stay queued forever.
      record = await repo.get_job(job_id)
      if record is not None and record.status == "queued":
        await repo.update_job(job_id, status="failed", phase="failed", progress=100.0, logs=["Enqueue failed: TASK_ENQUEUE_FAILED"], error_json={"message": str(exc), "code": "TASK_ENQUEUE_FAILED"})
        metrics.record_job_finished(job_kind, "failed")

  # The enqueue network call runs after the 202 is sent.
  background_tasks.add_task(_dispatch)
