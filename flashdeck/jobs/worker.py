"""Background processor for queued flashcard generation jobs."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from flashdeck.api.models import GenerateRequest, GenerateSettings
from flashdeck.config import Settings
from flashdeck.core import metrics
from flashdeck.jobs.dispatch import JobProcessorHandler, JobProcessorRegistry
from flashdeck.jobs.dispatch import process_job as dispatch_process_job
from flashdeck.jobs.models import JobRecord, JobStatus
from flashdeck.jobs.progress import StageProgressTracker
from flashdeck.pipeline.content import ContentStore
from flashdeck.pipeline.deck_store import DeckStore
from flashdeck.pipeline.models import GenerationOptions
from flashdeck.pipeline.runner import ModuleRunner, ModuleRunRequest
from flashdeck.services.tasks.interface import TaskEnqueuer
from flashdeck.storage.jobs_repo import JobsRepository
from flashdeck.utils.ids import generate_job_id

GENERATE_AGENT = "generate"
MODULE_RUN_AGENT = "module_run"


def _now_iso() -> str:
  return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def aggregate_child_statuses(statuses: Iterable[str]) -> JobStatus:
  """Parent status once every child is terminal: all success, all failed, or partial."""
  collected = list(statuses)
  if not collected or all(status == "failed" for status in collected):
    return "failed"
  if all(status == "success" for status in collected):
    return "success"
  return "partial"


def _child_summary(child: JobRecord) -> dict[str, Any]:
  result = child.result_json or {}
  return {"job_id": child.job_id, "module_id": child.module_id, "status": child.status, "card_count": result.get("card_count"), "deck_id": result.get("deck_id")}


class JobProcessor:
  """Coordinates execution of queued jobs."""

  def __init__(self, *, jobs_repo: JobsRepository, settings: Settings, runner: ModuleRunner | None = None, content_store: ContentStore | None = None, deck_store: DeckStore | None = None, enqueuer: TaskEnqueuer | None = None, registry: JobProcessorRegistry | None = None) -> None:
    self._jobs_repo = jobs_repo
    self._settings = settings
    self._runner = runner
    self._content_store = content_store
    self._deck_store = deck_store
    self._enqueuer = enqueuer
    self._logger = logging.getLogger(__name__)
    self._registry = registry or self._build_default_registry()

  def _build_default_registry(self) -> JobProcessorRegistry:
    """Build the default target-agent handler registry."""

    class _MethodHandler:
      """Adapter that exposes worker coroutine methods as DI handlers."""

      def __init__(self, method: Callable[[JobRecord], Awaitable[JobRecord | None]]) -> None:
        self._method = method

      async def process(self, job: JobRecord) -> JobRecord | None:
        return await self._method(job)

    handlers: dict[str, JobProcessorHandler] = {
      GENERATE_AGENT: _MethodHandler(self._process_generate_job),
      MODULE_RUN_AGENT: _MethodHandler(self._process_module_run),
    }
    return JobProcessorRegistry(handlers)

  def _get_runner(self) -> ModuleRunner:
    if self._runner is None:
      from flashdeck.pipeline.factory import build_module_runner

      self._runner = build_module_runner(self._settings)
    return self._runner

  def _get_content_store(self) -> ContentStore:
    if self._content_store is None:
      from flashdeck.pipeline.factory import build_content_store

      self._content_store = build_content_store(self._settings)
    return self._content_store

  def _get_deck_store(self) -> DeckStore:
    if self._deck_store is None:
      from flashdeck.pipeline.factory import build_deck_store

      self._deck_store = build_deck_store(self._settings)
    return self._deck_store

  def _get_enqueuer(self) -> TaskEnqueuer:
    if self._enqueuer is None:
      from flashdeck.services.tasks.factory import get_task_enqueuer

      self._enqueuer = get_task_enqueuer(self._settings)
    return self._enqueuer

  async def process_job(self, job: JobRecord) -> JobRecord | None:
    """Execute a single queued job, routing by target agent."""
    # Redelivered tasks for jobs that already started are ignored.
    if job.status != "queued":
      return job
    target_agent = str(job.target_agent or "").strip()
    if target_agent == "":
      await self._jobs_repo.update_job(job.job_id, status="failed", phase="failed", progress=100.0, logs=["Missing target_agent on queued job."], error_json={"message": "Missing target_agent on queued job."}, completed_at=_now_iso())
      metrics.record_job_finished(job.job_kind, "failed")
      return None
    await self._jobs_repo.update_job(job.job_id, status="running", phase="running", progress=0.0, started_at=_now_iso())
    in_progress = metrics.JOBS_IN_PROGRESS.labels(job_kind=job.job_kind)
    in_progress.inc()
    started = time.monotonic()
    try:
      result = await dispatch_process_job(job, target_agent, self._registry)
      return result.record
    except Exception as exc:  # noqa: BLE001
      self._logger.error("Job processor dispatch failed for job %s", job.job_id, exc_info=True)
      await self._jobs_repo.update_job(job.job_id, status="failed", phase="failed", progress=100.0, logs=[f"Dispatch failed: {exc}"], error_json={"message": str(exc)}, completed_at=_now_iso())
      metrics.record_job_finished(job.job_kind, "failed")
      if job.parent_job_id:
        await self.finalize_parent(job.parent_job_id)
      return None
    finally:
      in_progress.dec()
      metrics.JOB_DURATION.labels(job_kind=job.job_kind).observe(time.monotonic() - started)

  async def _resolve_modules(self, request: GenerateRequest) -> list[tuple[str, str | None]]:
    """Expand a generate request into (module_id, course_id) pairs."""
    if request.mode == "single_module":
      return [(str(request.target.module_id), request.target.course_id)]
    store = self._get_content_store()
    if request.mode == "course":
      course_id = str(request.target.course_id)
      return [(module_id, course_id) for module_id in await store.list_course_modules(course_id)]
    modules: list[tuple[str, str | None]] = []
    for course_id in await store.list_courses():
      modules.extend((module_id, course_id) for module_id in await store.list_course_modules(course_id))
    return modules

  async def _create_child_job(self, *, parent_job: JobRecord, module_id: str, course_id: str | None, settings: GenerateSettings) -> JobRecord:
    """Create and enqueue one module run for a generate job."""
    timestamp = _now_iso()
    child_record = JobRecord(
      job_id=generate_job_id(),
      user_id=parent_job.user_id,
      job_kind="module_run",
      request={"module_id": module_id, "course_id": course_id, "settings": settings.model_dump(mode="json")},
      status="queued",
      created_at=timestamp,
      updated_at=timestamp,
      parent_job_id=parent_job.job_id,
      module_id=module_id,
      target_agent=MODULE_RUN_AGENT,
      phase="queued",
      progress=0.0,
    )
    await self._jobs_repo.create_job(child_record)
    metrics.JOBS_ENQUEUED.labels(job_kind=child_record.job_kind).inc()
    try:
      await self._get_enqueuer().enqueue(child_record.job_id, {})
    except Exception as exc:  # noqa: BLE001
      self._logger.error("Failed to enqueue module run %s for job %s", child_record.job_id, parent_job.job_id, exc_info=True)
      metrics.JOBS_ENQUEUE_FAILED.labels(job_kind=child_record.job_kind).inc()
      await self._jobs_repo.update_job(child_record.job_id, status="failed", phase="failed", progress=100.0, logs=["Enqueue failed: CHILD_TASK_ENQUEUE_FAILED"], error_json={"message": str(exc), "code": "CHILD_TASK_ENQUEUE_FAILED"}, completed_at=_now_iso())
      metrics.record_job_finished(child_record.job_kind, "failed")
    return child_record

  async def _process_generate_job(self, job: JobRecord) -> JobRecord | None:
    """Fan a generate request out into one module-run child job per module."""
    request = GenerateRequest.model_validate(job.request)
    discovered = await self._resolve_modules(request)
    skipped: list[str] = []
    modules = discovered
    # Course and catalogue runs skip modules that already have a deck unless told otherwise.
    if request.mode != "single_module" and not (request.settings.regenerate or request.settings.force_all):
      deck_store = self._get_deck_store()
      modules = []
      for module_id, course_id in discovered:
        if await deck_store.has_deck(module_id):
          skipped.append(module_id)
        else:
          modules.append((module_id, course_id))

    self._logger.info("Generate job %s mode=%s discovered=%d scheduled=%d skipped=%d", job.job_id, request.mode, len(discovered), len(modules), len(skipped))
    if not discovered:
      metrics.record_job_finished(job.job_kind, "failed")
      return await self._jobs_repo.update_job(job.job_id, status="failed", phase="failed", progress=100.0, logs=["No modules found for the requested target."], result_json={"children": [], "skipped": []}, error_json={"message": "No modules found for the requested target."}, completed_at=_now_iso())
    if not modules:
      metrics.record_job_finished(job.job_kind, "success")
      return await self._jobs_repo.update_job(job.job_id, status="success", phase="done", progress=100.0, logs=[f"All {len(skipped)} modules already have decks; nothing to regenerate."], result_json={"children": [], "skipped": skipped}, completed_at=_now_iso())

    await self._jobs_repo.update_job(job.job_id, phase="fan_out", result_json={"children": [], "skipped": skipped, "expected_children": len(modules)}, logs=[f"Scheduling {len(modules)} module runs ({len(skipped)} skipped)."])
    for module_id, course_id in modules:
      await self._create_child_job(parent_job=job, module_id=module_id, course_id=course_id, settings=request.settings)
    return await self.finalize_parent(job.job_id)

  async def _process_module_run(self, job: JobRecord) -> JobRecord | None:
    """Run the pipeline for one module and persist its outcome."""
    settings = GenerateSettings.model_validate(job.request.get("settings") or {})
    module_id = str(job.request.get("module_id") or job.module_id or "")
    options = GenerationOptions(target_count=settings.card_count or self._settings.default_card_count, difficulty=settings.difficulty, bloom_levels=tuple(settings.bloom_levels))
    run_request = ModuleRunRequest(module_id=module_id, course_id=job.request.get("course_id"), options=options, force_all=settings.force_all, job_id=job.job_id)
    tracker = StageProgressTracker(job_id=job.job_id, jobs_repo=self._jobs_repo)

    result = await self._get_runner().run(run_request, on_stage=tracker.record)

    result_json = result.to_dict()
    result_json.pop("stage_log", None)
    # Stage entries are stored as job events, not in the result payload.
    error_json = {"message": result.error} if result.error else None
    logs = [f"Warning: {warning}" for warning in result.warnings]
    logs.append(f"Module run finished with status {result.status}: {result.card_count} cards, {result.verified_count} verified.")
    record = await self._jobs_repo.update_job(job.job_id, status=result.status, phase="done" if result.status != "failed" else "failed", progress=100.0, result_json=result_json, error_json=error_json, logs=logs, completed_at=_now_iso())
    metrics.record_job_finished(job.job_kind, result.status)
    if job.parent_job_id:
      await self.finalize_parent(job.parent_job_id)
    return record

  async def finalize_parent(self, parent_job_id: str) -> JobRecord | None:
    """Settle a generate job once all of its module runs are terminal."""
    parent = await self._jobs_repo.get_job(parent_job_id)
    if parent is None or parent.is_terminal:
      return parent
    children = await self._jobs_repo.list_child_jobs(parent_job_id=parent_job_id)
    # Children can finish while the fan-out is still creating their siblings.
    expected = int((parent.result_json or {}).get("expected_children") or 0)
    if len(children) < expected or any(not child.is_terminal for child in children):
      return parent
    status = aggregate_child_statuses(child.status for child in children)
    summaries = [_child_summary(child) for child in children]
    counts = {name: sum(1 for child in children if child.status == name) for name in ("success", "partial", "failed")}
    # The skipped list from fan-out is carried into the final result.
    skipped = list((parent.result_json or {}).get("skipped") or [])
    result_json = {"children": summaries, "counts": counts, "skipped": skipped, "total_cards": sum(item["card_count"] or 0 for item in summaries)}
    error_json = {"message": "Every module run failed."} if status == "failed" else None
    self._logger.info("Generate job %s finished status=%s counts=%s", parent_job_id, status, counts)
    metrics.record_job_finished(parent.job_kind, status)
    return await self._jobs_repo.update_job(parent_job_id, status=status, phase="done" if status != "failed" else "failed", progress=100.0, result_json=result_json, error_json=error_json, logs=[f"Generate job finished with status {status}."], completed_at=_now_iso())
