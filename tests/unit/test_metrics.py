from __future__ import annotations

from dataclasses import replace
from unittest.mock import AsyncMock, patch

import pytest
from prometheus_client import REGISTRY

from flashdeck.config import get_settings
from flashdeck.jobs.dispatch import JobProcessorRegistry
from flashdeck.jobs.models import JobRecord
from flashdeck.jobs.worker import JobProcessor
from flashdeck.main import app


def _sample(name: str, **labels: str) -> float:
  return REGISTRY.get_sample_value(name, labels) or 0.0


def _job(job_id: str, target_agent: str | None = "generate") -> JobRecord:
  return JobRecord(job_id=job_id, user_id=None, job_kind="generate", request={"mode": "all_courses"}, status="queued", created_at="2024-01-01T00:00:00Z", updated_at="2024-01-01T00:00:00Z", target_agent=target_agent, phase="queued", progress=0.0)


class ExplodingHandler:
  async def process(self, job: JobRecord) -> JobRecord | None:
    raise RuntimeError("handler crashed")


@pytest.mark.anyio
async def test_metrics_endpoint_serves_prometheus_text(async_client) -> None:
  response = await async_client.get("/metrics")

  assert response.status_code == 200
  assert response.headers["content-type"].startswith("text/plain")
  assert "# TYPE flashdeck_jobs_in_progress gauge" in response.text
  assert "flashdeck_job_duration_seconds" in response.text


@pytest.mark.anyio
async def test_generate_request_counts_enqueued_job(async_client) -> None:
  before = _sample("flashdeck_jobs_enqueued_total", job_kind="generate")
  app.dependency_overrides[get_settings] = lambda: replace(get_settings(), jobs_auto_process=True)
  with patch("flashdeck.services.jobs.get_task_enqueuer", return_value=AsyncMock()):
    response = await async_client.post("/v1/flashcards/generate", json={"mode": "all_courses"})

  assert response.status_code == 202
  assert _sample("flashdeck_jobs_enqueued_total", job_kind="generate") == before + 1


@pytest.mark.anyio
async def test_enqueue_failure_counts_failed_job(async_client, jobs_repo) -> None:
  failed_before = _sample("flashdeck_jobs_failed_total", job_kind="generate")
  rejected_before = _sample("flashdeck_jobs_enqueue_failed_total", job_kind="generate")
  app.dependency_overrides[get_settings] = lambda: replace(get_settings(), jobs_auto_process=True)
  enqueuer = AsyncMock()
  enqueuer.enqueue.side_effect = RuntimeError("queue unavailable")
  with patch("flashdeck.services.jobs.get_task_enqueuer", return_value=enqueuer):
    response = await async_client.post("/v1/flashcards/generate", json={"mode": "all_courses"})

  record = await jobs_repo.get_job(response.json()["jobId"])
  assert record.status == "failed"
  assert _sample("flashdeck_jobs_enqueue_failed_total", job_kind="generate") == rejected_before + 1
  assert _sample("flashdeck_jobs_failed_total", job_kind="generate") == failed_before + 1


@pytest.mark.anyio
async def test_dispatch_failure_is_counted_and_releases_in_progress(jobs_repo) -> None:
  processor = JobProcessor(jobs_repo=jobs_repo, settings=get_settings(), registry=JobProcessorRegistry({"generate": ExplodingHandler()}))
  job = _job("metrics-dispatch")
  await jobs_repo.create_job(job)
  failed_before = _sample("flashdeck_jobs_finished_total", job_kind="generate", status="failed")
  observed_before = _sample("flashdeck_job_duration_seconds_count", job_kind="generate")

  await processor.process_job(job)

  assert (await jobs_repo.get_job("metrics-dispatch")).status == "failed"
  assert _sample("flashdeck_jobs_finished_total", job_kind="generate", status="failed") == failed_before + 1
  assert _sample("flashdeck_job_duration_seconds_count", job_kind="generate") == observed_before + 1
  assert _sample("flashdeck_jobs_in_progress", job_kind="generate") == 0.0


@pytest.mark.anyio
async def test_missing_target_agent_counts_failure_without_timing(jobs_repo) -> None:
  processor = JobProcessor(jobs_repo=jobs_repo, settings=get_settings(), registry=JobProcessorRegistry({}))
  job = _job("metrics-no-agent", target_agent=None)
  await jobs_repo.create_job(job)
  failed_before = _sample("flashdeck_jobs_failed_total", job_kind="generate")
  observed_before = _sample("flashdeck_job_duration_seconds_count", job_kind="generate")

  await processor.process_job(job)

  assert _sample("flashdeck_jobs_failed_total", job_kind="generate") == failed_before + 1
  assert _sample("flashdeck_job_duration_seconds_count", job_kind="generate") == observed_before
