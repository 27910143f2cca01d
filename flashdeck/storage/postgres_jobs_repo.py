"""Postgres-backed repository for flashcard jobs using SQLAlchemy."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from flashdeck.core.database import get_session_factory
from flashdeck.jobs.models import JobRecord, JobStatus
from flashdeck.schema.jobs import Job, JobEvent
from flashdeck.storage.jobs_repo import JobsRepository

STAGE_EVENT = "stage"
LOG_EVENT = "log"


def _now_iso() -> str:
  return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class PostgresJobsRepository(JobsRepository):
  """Persist jobs and their events to Postgres using SQLAlchemy."""

  def __init__(self) -> None:
    session_factory = get_session_factory()
    if session_factory is None:
      raise RuntimeError("Database not initialized")
    self._session_factory = session_factory

  async def create_job(self, record: JobRecord) -> None:
    async with self._session_factory() as session:
      job = Job(
        job_id=record.job_id,
        user_id=record.user_id,
        job_kind=record.job_kind,
        request_json=record.request,
        status=record.status,
        parent_job_id=record.parent_job_id,
        module_id=record.module_id,
        target_agent=record.target_agent,
        phase=record.phase,
        progress=record.progress,
        result_json=record.result_json,
        error_json=record.error_json,
        created_at=record.created_at,
        updated_at=record.updated_at,
        started_at=record.started_at,
        completed_at=record.completed_at,
      )
      session.add(job)
      # The job row must exist before its events reference it.
      await session.commit()
      if record.logs:
        await self._append_events_in_session(session=session, job_id=record.job_id, event_type=LOG_EVENT, messages=record.logs)
        await session.commit()

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Job, job_id)
      if row is None:
        return None
      return await self._load_record(session, row)

  async def update_job(
    self,
    job_id: str,
    *,
    status: JobStatus | None = None,
    phase: str | None = None,
    progress: float | None = None,
    result_json: dict[str, Any] | None = None,
    error_json: dict[str, Any] | None = None,
    logs: list[str] | None = None,
    started_at: str | None = None,
    completed_at: str | None = None,
    updated_at: str | None = None,
  ) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Job, job_id)
      if row is None:
        return None
      if status is not None:
        row.status = status
      if phase is not None:
        row.phase = phase
      if progress is not None:
        row.progress = progress
      if result_json is not None:
        row.result_json = result_json
      if error_json is not None:
        row.error_json = error_json
      if started_at is not None:
        row.started_at = started_at
      if completed_at is not None:
        row.completed_at = completed_at
      # Only provided fields change; logs are appended as events, never replaced.
      row.updated_at = updated_at or _now_iso()
      session.add(row)
      await session.flush()
      if logs:
        await self._append_events_in_session(session=session, job_id=job_id, event_type=LOG_EVENT, messages=logs)
      await session.commit()
      await session.refresh(row)
      return await self._load_record(session, row)

  async def list_child_jobs(self, *, parent_job_id: str) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = select(Job).where(Job.parent_job_id == parent_job_id).order_by(Job.created_at.asc(), Job.job_id.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [await self._load_record(session, row) for row in rows]

  async def list_jobs(self, limit: int, offset: int, status: str | None = None, job_kind: str | None = None) -> tuple[list[JobRecord], int]:
    async with self._session_factory() as session:
      # Filters apply to both the page and the total.
      stmt = select(Job).order_by(Job.created_at.desc(), Job.job_id.desc()).limit(limit).offset(offset)
      count_stmt = select(func.count()).select_from(Job)
      if status:
        stmt = stmt.where(Job.status == status)
        count_stmt = count_stmt.where(Job.status == status)
      if job_kind:
        stmt = stmt.where(Job.job_kind == job_kind)
        count_stmt = count_stmt.where(Job.job_kind == job_kind)
      total = await session.scalar(count_stmt)
      rows = (await session.execute(stmt)).scalars().all()
      items = [await self._load_record(session, row) for row in rows]
      return items, int(total or 0)

  async def append_event(self, *, job_id: str, event_type: str, message: str, payload_json: dict[str, Any] | None = None) -> None:
    async with self._session_factory() as session:
      session.add(JobEvent(job_id=job_id, event_type=event_type, message=message, payload_json=payload_json))
      await session.commit()

  async def list_events(self, *, job_id: str, limit: int = 100) -> list[str]:
    async with self._session_factory() as session:
      return await self._list_event_messages_in_session(session=session, job_id=job_id, limit=limit)

  async def list_stage_entries(self, *, job_id: str) -> list[dict[str, Any]]:
    async with self._session_factory() as session:
      return await self._list_stage_entries_in_session(session=session, job_id=job_id)

  async def _append_events_in_session(self, *, session: AsyncSession, job_id: str, event_type: str, messages: list[str]) -> None:
    for message in messages:
      if str(message).strip() == "":
        continue
      session.add(JobEvent(job_id=job_id, event_type=event_type, message=str(message), payload_json=None))

  async def _list_event_messages_in_session(self, *, session: AsyncSession, job_id: str, limit: int) -> list[str]:
    # Newest messages are fetched for the limit, then returned oldest first.
    stmt = select(JobEvent.message).where(JobEvent.job_id == job_id, JobEvent.event_type == LOG_EVENT).order_by(JobEvent.created_at.desc(), JobEvent.id.desc()).limit(limit)
    rows = (await session.execute(stmt)).scalars().all()
    return list(reversed([str(item) for item in rows]))

  async def _list_stage_entries_in_session(self, *, session: AsyncSession, job_id: str) -> list[dict[str, Any]]:
    stmt = select(JobEvent.payload_json).where(JobEvent.job_id == job_id, JobEvent.event_type == STAGE_EVENT).order_by(JobEvent.id.asc())
    rows = (await session.execute(stmt)).scalars().all()
    return [dict(payload) for payload in rows if payload]

  async def _load_record(self, session: AsyncSession, row: Job) -> JobRecord:
    logs = await self._list_event_messages_in_session(session=session, job_id=row.job_id, limit=100)
    stage_log = await self._list_stage_entries_in_session(session=session, job_id=row.job_id)
    return self._model_to_record(row, logs=logs, stage_log=stage_log)

  def _model_to_record(self, row: Job, *, logs: list[str], stage_log: list[dict[str, Any]]) -> JobRecord:
    return JobRecord(
      job_id=row.job_id,
      user_id=row.user_id,
      job_kind=row.job_kind,  # type: ignore[arg-type]
      request=row.request_json,
      status=row.status,  # type: ignore[arg-type]
      created_at=row.created_at,
      updated_at=row.updated_at,
      parent_job_id=row.parent_job_id,
      module_id=row.module_id,
      target_agent=row.target_agent,
      phase=row.phase,
      progress=row.progress,
      logs=logs,
      stage_log=stage_log,
      result_json=row.result_json,
      error_json=row.error_json,
      started_at=row.started_at,
      completed_at=row.completed_at,
    )
