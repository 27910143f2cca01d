from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest
from qdrant_client import AsyncQdrantClient

from flashdeck.config import get_settings
from flashdeck.jobs.models import JobRecord
from flashdeck.jobs.worker import JobProcessor, aggregate_child_statuses
from flashdeck.pipeline.content import FileContentStore
from flashdeck.pipeline.deck_store import FileDeckStore
from flashdeck.pipeline.embeddings import MockEmbeddingClient
from flashdeck.pipeline.runner import STAGES, ModuleRunner, RunnerSettings
from flashdeck.pipeline.stage_a import MockContentAnalyzer
from flashdeck.pipeline.stage_b import MockCardGenerator
from flashdeck.pipeline.vector_store import QdrantVectorStore
from flashdeck.pipeline.verifier import HeuristicVerifier

CONTENT_DIR = Path(__file__).resolve().parents[1] / "fixtures" / "content"


class InlineEnqueuer:
  """Runs enqueued jobs immediately, like the local HTTP dispatcher does."""

  def __init__(self, repo) -> None:
    self.repo = repo
    self.processor: JobProcessor | None = None
    self.enqueued: list[str] = []

  async def enqueue(self, job_id: str, payload: dict[str, Any]) -> None:
    self.enqueued.append(job_id)
    record = await self.repo.get_job(job_id)
    assert self.processor is not None
    await self.processor.process_job(record)


class RecordingEnqueuer:
  def __init__(self, fail: bool = False) -> None:
    self.fail = fail
    self.enqueued: list[str] = []

  async def enqueue(self, job_id: str, payload: dict[str, Any]) -> None:
    if self.fail:
      raise RuntimeError("queue unavailable")
    self.enqueued.append(job_id)


def _generate_job(request: dict[str, Any], job_id: str = "parent-1") -> JobRecord:
  return JobRecord(job_id=job_id, user_id="admin-1", job_kind="generate", request=request, status="queued", created_at="2024-01-01T00:00:00Z", updated_at="2024-01-01T00:00:00Z", target_agent="generate", phase="queued", progress=0.0)


def _processor(tmp_path: Path, jobs_repo, enqueuer) -> tuple[JobProcessor, FileDeckStore]:
  embedder = MockEmbeddingClient(dim=8)
  deck_store = FileDeckStore(tmp_path / "decks")
  content_store = FileContentStore(CONTENT_DIR)
  runner = ModuleRunner(
    content_store=content_store,
    embedder=embedder,
    vector_store=QdrantVectorStore(client=AsyncQdrantClient(location=":memory:"), collection="worker_chunks", embedder=embedder),
    analyzer=MockContentAnalyzer(),
    generator=MockCardGenerator(),
    verifier=HeuristicVerifier(),
    deck_store=deck_store,
    settings=RunnerSettings(),
  )
  processor = JobProcessor(jobs_repo=jobs_repo, settings=get_settings(), runner=runner, content_store=content_store, deck_store=deck_store, enqueuer=enqueuer)
  if isinstance(enqueuer, InlineEnqueuer):
    enqueuer.processor = processor
  return processor, deck_store


@pytest.mark.parametrize(
  ("statuses", "expected"),
  [
    (["success", "success"], "success"),
    (["failed", "failed"], "failed"),
    (["success", "failed"], "partial"),
    (["partial"], "partial"),
    ([], "failed"),
  ],
)
def test_aggregate_child_statuses(statuses: list[str], expected: str) -> None:
  assert aggregate_child_statuses(statuses) == expected


@pytest.mark.anyio
async def test_single_module_job_runs_child_and_settles_parent(tmp_path: Path, jobs_repo) -> None:
  enqueuer = InlineEnqueuer(jobs_repo)
  processor, deck_store = _processor(tmp_path, jobs_repo, enqueuer)
  parent = _generate_job({"mode": "single_module", "target": {"module_id": "cell-structure"}, "settings": {"triggered_by": "admin"}})
  await jobs_repo.create_job(parent)

  await processor.process_job(parent)

  settled = await jobs_repo.get_job("parent-1")
  assert settled.status == "success"
  assert settled.completed_at is not None
  assert settled.result_json["counts"] == {"success": 1, "partial": 0, "failed": 0}
  assert settled.result_json["total_cards"] == 10
  children = await jobs_repo.list_child_jobs(parent_job_id="parent-1")
  assert len(children) == 1
  child = children[0]
  assert child.job_kind == "module_run"
  assert child.module_id == "cell-structure"
  assert child.status == "success"
  assert child.progress == 100.0
  assert [entry["stage"] for entry in child.stage_log] == list(STAGES)
  assert child.result_json["deck_id"] == settled.result_json["children"][0]["deck_id"]
  assert "stage_log" not in child.result_json
  assert await deck_store.has_deck("cell-structure")


@pytest.mark.anyio
async def test_course_job_skips_modules_with_existing_decks(tmp_path: Path, jobs_repo) -> None:
  enqueuer = InlineEnqueuer(jobs_repo)
  processor, deck_store = _processor(tmp_path, jobs_repo, enqueuer)
  await deck_store.save(module_id="cell-structure", module_title="Cell Structure", cards=[], verified_count=0, verification_rate=0.0, warnings=[])
  parent = _generate_job({"mode": "course", "target": {"course_id": "biology-101"}})
  await jobs_repo.create_job(parent)

  await processor.process_job(parent)

  settled = await jobs_repo.get_job("parent-1")
  children = await jobs_repo.list_child_jobs(parent_job_id="parent-1")
  assert [child.module_id for child in children] == ["photosynthesis"]
  assert settled.result_json["skipped"] == ["cell-structure"]
  assert settled.status == "partial"


@pytest.mark.anyio
async def test_regenerate_processes_every_module(tmp_path: Path, jobs_repo) -> None:
  enqueuer = InlineEnqueuer(jobs_repo)
  processor, deck_store = _processor(tmp_path, jobs_repo, enqueuer)
  await deck_store.save(module_id="cell-structure", module_title="Cell Structure", cards=[], verified_count=0, verification_rate=0.0, warnings=[])
  parent = _generate_job({"mode": "course", "target": {"course_id": "biology-101"}, "settings": {"regenerate": True}})
  await jobs_repo.create_job(parent)

  await processor.process_job(parent)

  settled = await jobs_repo.get_job("parent-1")
  assert sorted(child["module_id"] for child in settled.result_json["children"]) == ["cell-structure", "photosynthesis"]
  assert settled.result_json["counts"] == {"success": 1, "partial": 1, "failed": 0}
  assert settled.status == "partial"
  assert len(await deck_store.list_decks("cell-structure")) == 2


@pytest.mark.anyio
async def test_all_modules_already_generated_is_a_no_op(tmp_path: Path, jobs_repo) -> None:
  enqueuer = RecordingEnqueuer()
  processor, deck_store = _processor(tmp_path, jobs_repo, enqueuer)
  await deck_store.save(module_id="atomic-structure", module_title="Atomic Structure", cards=[], verified_count=0, verification_rate=0.0, warnings=[])
  parent = _generate_job({"mode": "course", "target": {"course_id": "chemistry-101"}})
  await jobs_repo.create_job(parent)

  await processor.process_job(parent)

  settled = await jobs_repo.get_job("parent-1")
  assert settled.status == "success"
  assert enqueuer.enqueued == []
  assert any("nothing to regenerate" in line for line in settled.logs)


@pytest.mark.anyio
async def test_unknown_course_fails(tmp_path: Path, jobs_repo) -> None:
  processor, _ = _processor(tmp_path, jobs_repo, RecordingEnqueuer())
  parent = _generate_job({"mode": "course", "target": {"course_id": "no-such-course"}})
  await jobs_repo.create_job(parent)

  await processor.process_job(parent)

  settled = await jobs_repo.get_job("parent-1")
  assert settled.status == "failed"
  assert settled.error_json == {"message": "No modules found for the requested target."}


@pytest.mark.anyio
async def test_parent_waits_for_every_child(tmp_path: Path, jobs_repo) -> None:
  enqueuer = RecordingEnqueuer()
  processor, _ = _processor(tmp_path, jobs_repo, enqueuer)
  parent = _generate_job({"mode": "all_courses"})
  await jobs_repo.create_job(parent)

  await processor.process_job(parent)

  running = await jobs_repo.get_job("parent-1")
  assert running.status == "running"
  assert running.phase == "fan_out"
  assert len(enqueuer.enqueued) == 3

  for index, child_id in enumerate(enqueuer.enqueued):
    await processor.process_job(await jobs_repo.get_job(child_id))
    parent_now = await jobs_repo.get_job("parent-1")
    if index < len(enqueuer.enqueued) - 1:
      assert parent_now.status == "running"

  settled = await jobs_repo.get_job("parent-1")
  assert settled.status == "partial"
  assert settled.result_json["counts"] == {"success": 1, "partial": 2, "failed": 0}
  assert settled.result_json["total_cards"] == 15


@pytest.mark.anyio
async def test_child_enqueue_failure_fails_child_and_parent(tmp_path: Path, jobs_repo) -> None:
  processor, _ = _processor(tmp_path, jobs_repo, RecordingEnqueuer(fail=True))
  parent = _generate_job({"mode": "single_module", "target": {"module_id": "cell-structure"}})
  await jobs_repo.create_job(parent)

  await processor.process_job(parent)

  children = await jobs_repo.list_child_jobs(parent_job_id="parent-1")
  assert children[0].status == "failed"
  assert children[0].error_json["code"] == "CHILD_TASK_ENQUEUE_FAILED"
  settled = await jobs_repo.get_job("parent-1")
  assert settled.status == "failed"


@pytest.mark.anyio
async def test_job_without_target_agent_fails(tmp_path: Path, jobs_repo) -> None:
  processor, _ = _processor(tmp_path, jobs_repo, RecordingEnqueuer())
  job = replace(_generate_job({"mode": "all_courses"}), target_agent=None)
  await jobs_repo.create_job(job)

  await processor.process_job(job)

  settled = await jobs_repo.get_job("parent-1")
  assert settled.status == "failed"
  assert "Missing target_agent on queued job." in settled.logs


@pytest.mark.anyio
async def test_non_queued_jobs_are_left_alone(tmp_path: Path, jobs_repo) -> None:
  processor, _ = _processor(tmp_path, jobs_repo, RecordingEnqueuer())
  job = replace(_generate_job({"mode": "all_courses"}), status="success")
  await jobs_repo.create_job(job)

  result = await processor.process_job(job)

  assert result is job
  assert (await jobs_repo.get_job("parent-1")).status == "success"
