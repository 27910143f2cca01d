from __future__ import annotations

from typing import Any, Protocol


class TaskEnqueuer(Protocol):
  """Interface for enqueuing background tasks."""

  async def enqueue(self, job_id: str, payload: dict[str, Any]) -> None:
    """Enqueue a job for processing."""
    ...
