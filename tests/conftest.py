"""Test configuration: deterministic settings, an in-memory jobs repository and an HTTP client."""

from __future__ import annotations

import os
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Any

FIXTURES_DIR = Path(__file__).resolve().parent / "fixtures"
CONTENT_DIR = FIXTURES_DIR / "content"

# Settings are cached at import time of the app, so the environment is pinned first.
os.environ["FLASHDECK_ALLOWED_ORIGINS"] = "http://localhost:3000"
os.environ["FLASHDECK_LLM_MODE"] = "mock"
os.environ["FLASHDECK_EMBEDDING_PROVIDER"] = "mock"
os.environ["FLASHDECK_EMBEDDING_DIM"] = "16"
os.environ["FLASHDECK_QDRANT_URL"] = ":memory:"
os.environ["FLASHDECK_CONTENT_DIR"] = str(CONTENT_DIR)
os.environ["FLASHDECK_DECK_DIR"] = tempfile.mkdtemp(prefix="flashdeck-decks-")
os.environ["FLASHDECK_JOBS_AUTO_PROCESS"] = "false"
os.environ["FLASHDECK_TASK_SECRET"] = "test-task-secret"
os.environ.pop("FLASHDECK_PG_DSN", None)
os.environ.pop("FLASHDECK_MOCK_FAIL_STAGES", None)

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from flashdeck.api.deps import get_deck_store, get_jobs_repo  # noqa: E402
from flashdeck.jobs.models import JobRecord  # noqa: E402
from flashdeck.main import app  # noqa: E402
from flashdeck.pipeline.deck_store import FileDeckStore  # noqa: E402


class InMemoryJobsRepo:
  """Async in-memory jobs repository mirroring the Postgres implementation's behaviour."""

  def __init__(self) -> None:
    self.records: dict[str, JobRecord] = {}
    self.events: dict[str, list[dict[str, Any]]] = {}

  async def create_job(self, record: JobRecord) -> None:
    self.records[record.job_id] = replace(record, logs=[], stage_log=[])
    self.events[record.job_id] = [{"event_type": "log", "message": message, "payload_json": None} for message in record.logs]

  async def get_job(self, job_id: str) -> JobRecord | None:
    record = self.records.get(job_id)
    if record is None:
      return None
    events = self.events.get(job_id, [])
    logs = [event["message"] for event in events if event["event_type"] == "log"]
    stage_log = [event["payload_json"] for event in events if event["event_type"] == "stage"]
    return replace(record, logs=logs, stage_log=stage_log)

  async def update_job(self, job_id: str, *, logs: list[str] | None = None, **kwargs: Any) -> JobRecord | None:
    record = self.records.get(job_id)
    if record is None:
      return None
    # Merge updates onto the latest record to mimic persistence behavior.
    self.records[job_id] = replace(record, **{key: value for key, value in kwargs.items() if value is not None})
    for message in logs or []:
      await self.append_event(job_id=job_id, event_type="log", message=message)
    return await self.get_job(job_id)

  async def list_child_jobs(self, *, parent_job_id: str) -> list[JobRecord]:
    children = [record for record in self.records.values() if record.parent_job_id == parent_job_id]
    return [await self.get_job(child.job_id) for child in children]  # type: ignore[misc]

  async def list_jobs(self, limit: int, offset: int, status: str | None = None, job_kind: str | None = None) -> tuple[list[JobRecord], int]:
    matches = [record for record in self.records.values() if (status is None or record.status == status) and (job_kind is None or record.job_kind == job_kind)]
    matches.sort(key=lambda record: record.created_at, reverse=True)
    return matches[offset : offset + limit], len(matches)

  async def append_event(self, *, job_id: str, event_type: str, message: str, payload_json: dict[str, Any] | None = None) -> None:
    self.events.setdefault(job_id, []).append({"event_type": event_type, "message": message, "payload_json": payload_json})

  async def list_events(self, *, job_id: str, limit: int = 100) -> list[str]:
    return [event["message"] for event in self.events.get(job_id, [])][-limit:]

  async def list_stage_entries(self, *, job_id: str) -> list[dict[str, Any]]:
    return [event["payload_json"] for event in self.events.get(job_id, []) if event["event_type"] == "stage"]


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def jobs_repo() -> InMemoryJobsRepo:
  return InMemoryJobsRepo()


@pytest.fixture
def deck_store(tmp_path: Path) -> FileDeckStore:
  return FileDeckStore(tmp_path / "decks")


@pytest.fixture
async def async_client(jobs_repo: InMemoryJobsRepo, deck_store: FileDeckStore):
  app.dependency_overrides[get_jobs_repo] = lambda: jobs_repo
  app.dependency_overrides[get_deck_store] = lambda: deck_store
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
    yield client
  app.dependency_overrides.clear()
