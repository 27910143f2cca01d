"""Storage interfaces for background jobs."""

from __future__ import annotations

from typing import Any, Protocol

from flashdeck.jobs.models import JobRecord, JobStatus


class JobsRepository(Protocol):
  """Repository contract for job persistence."""

  async def create_job(self, record: JobRecord) -> None:
    """Persist an initial job record."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier, including its logs and stage log."""

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
    """Apply partial updates to a job; ``logs`` are appended as log events."""

  async def list_child_jobs(self, *, parent_job_id: str) -> list[JobRecord]:
    """Return direct child jobs for a parent job."""

  async def list_jobs(self, limit: int, offset: int, status: str | None = None, job_kind: str | None = None) -> tuple[list[JobRecord], int]:
    """Return a page of jobs, newest first, and the total count."""

  async def append_event(self, *, job_id: str, event_type: str, message: str, payload_json: dict[str, Any] | None = None) -> None:
    """Append one timeline event for a job."""

  async def list_events(self, *, job_id: str, limit: int = 100) -> list[str]:
    """List recent log messages for a job."""

  async def list_stage_entries(self, *, job_id: str) -> list[dict[str, Any]]:
    """List the stage log of a module run in the order it was written."""
