"""Domain models for asynchronous flashcard generation jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

JobStatus = Literal["queued", "running", "success", "partial", "failed"]
JobKind = Literal["generate", "module_run"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"success", "partial", "failed"})


@dataclass
class JobRecord:
  """A generate request or one of the module runs it fans out into."""

  job_id: str
  user_id: str | None
  job_kind: JobKind
  request: dict[str, Any]
  status: JobStatus
  created_at: str
  updated_at: str
  parent_job_id: str | None = None
  module_id: str | None = None
  target_agent: str | None = None
  phase: str | None = None
  progress: float | None = None
  logs: list[str] = field(default_factory=list)
  stage_log: list[dict[str, Any]] = field(default_factory=list)
  result_json: dict[str, Any] | None = None
  error_json: dict[str, Any] | None = None
  started_at: str | None = None
  completed_at: str | None = None

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_STATUSES
