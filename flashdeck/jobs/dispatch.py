"""Dependency-injected job processor dispatch helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from flashdeck.jobs.models import JobRecord


class JobProcessorHandler(Protocol):
  """Processor contract for a concrete target_agent implementation."""

  async def process(self, job: JobRecord) -> JobRecord | None:
    """Process one queued job record."""


@dataclass(frozen=True)
class JobProcessResult:
  """Result wrapper returned by the central dispatch function."""

  record: JobRecord | None


class JobProcessorRegistry:
  """Registry mapping target agents to processor handlers."""

  def __init__(self, handlers: dict[str, JobProcessorHandler]) -> None:
    self._handlers = handlers

  def resolve(self, target_agent: str) -> JobProcessorHandler:
    handler = self._handlers.get(target_agent)
    if handler is None:
      raise ValueError(f"Unsupported target agent: {target_agent}")
    return handler


async def process_job(job: JobRecord, target_agent: str, registry: JobProcessorRegistry) -> JobProcessResult:
  """Dispatch a running job to the handler registered for its target agent."""
  handler = registry.resolve(target_agent)
  record = await handler.process(job)
  return JobProcessResult(record=record)
