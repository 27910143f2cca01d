"""Prometheus metrics for job throughput."""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

JOBS_ENQUEUED = Counter("flashdeck_jobs_enqueued_total", "Jobs handed to the task enqueuer.", ["job_kind"])
JOBS_ENQUEUE_FAILED = Counter("flashdeck_jobs_enqueue_failed_total", "Jobs the task enqueuer rejected.", ["job_kind"])
JOBS_FINISHED = Counter("flashdeck_jobs_finished_total", "Jobs that reached a terminal status.", ["job_kind", "status"])
JOBS_FAILED = Counter("flashdeck_jobs_failed_total", "Jobs that ended in the failed status.", ["job_kind"])
JOBS_IN_PROGRESS = Gauge("flashdeck_jobs_in_progress", "Jobs currently held by a processor.", ["job_kind"])
# Module runs transcribe and call LLMs, so buckets reach into tens of minutes.
JOB_DURATION = Histogram("flashdeck_job_duration_seconds", "Time a processor spent on one job.", ["job_kind"], buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1200, 1800, 3600))


def record_job_finished(job_kind: str, status: str) -> None:
  """Count a job that has just been written with a terminal status."""
  JOBS_FINISHED.labels(job_kind=job_kind, status=status).inc()
  if status == "failed":
    JOBS_FAILED.labels(job_kind=job_kind).inc()


def render_metrics() -> tuple[bytes, str]:
  """Serialize the default registry in the Prometheus text format."""
  return generate_latest(), CONTENT_TYPE_LATEST
