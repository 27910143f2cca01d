from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest

from flashdeck.config import get_settings
from flashdeck.services.tasks.factory import get_task_enqueuer
from flashdeck.services.tasks.gcp import CloudTasksEnqueuer


@pytest.mark.anyio
async def test_local_task_dispatch():
  """Verify that the local enqueuer posts to the correct endpoint."""

  settings = replace(get_settings(), base_url="http://localhost:8000", task_secret="test-task-secret")

  with patch("flashdeck.services.tasks.local.httpx.AsyncClient") as mock_client_cls:
    mock_client = AsyncMock()
    mock_client_cls.return_value.__aenter__.return_value = mock_client
    mock_response = Mock()
    mock_response.raise_for_status = Mock()
    mock_client.post.return_value = mock_response

    enqueuer = get_task_enqueuer(settings)

    await enqueuer.enqueue("test-job-123", {})

    mock_client.post.assert_called_once()
    args, kwargs = mock_client.post.call_args
    assert args[0] == "http://localhost:8000/internal/tasks/process-job"
    assert kwargs["json"] == {"job_id": "test-job-123"}
    assert kwargs["headers"] == {"authorization": "Bearer test-task-secret"}


@pytest.mark.anyio
async def test_local_dispatch_requires_base_url():
  settings = replace(get_settings(), base_url=None)

  with pytest.raises(RuntimeError, match="Base URL"):
    await get_task_enqueuer(settings).enqueue("job-1", {})


def test_cloud_task_carries_secret_and_oidc_token():
  settings = replace(get_settings(), task_service_provider="gcp", base_url="https://flashdeck.example.run.app/", task_secret="s3cret", cloud_run_invoker_service_account="invoker@project.iam.gserviceaccount.com", cloud_tasks_queue_path="projects/p/locations/l/queues/q")

  task = CloudTasksEnqueuer(settings, client=MagicMock()).build_task("job-9", {})

  request = task["http_request"]
  assert request["url"] == "https://flashdeck.example.run.app/internal/tasks/process-job"
  assert request["headers"]["Authorization"] == "Bearer s3cret"
  assert request["oidc_token"] == {"service_account_email": "invoker@project.iam.gserviceaccount.com"}
  assert request["body"] == b'{"job_id": "job-9"}'


@pytest.mark.anyio
async def test_cloud_enqueue_creates_task_in_queue():
  settings = replace(get_settings(), task_service_provider="gcp", base_url="https://flashdeck.example.run.app", task_secret="s3cret", cloud_tasks_queue_path="projects/p/locations/l/queues/q")
  client = MagicMock()
  client.create_task.return_value = MagicMock(name="task")

  await CloudTasksEnqueuer(settings, client=client).enqueue("job-9", {})

  kwargs = client.create_task.call_args.kwargs
  assert kwargs["request"]["parent"] == "projects/p/locations/l/queues/q"
  assert "oidc_token" not in kwargs["request"]["task"]["http_request"]


@pytest.mark.anyio
async def test_cloud_enqueue_requires_queue_path():
  settings = replace(get_settings(), task_service_provider="gcp", cloud_tasks_queue_path=None)

  with pytest.raises(RuntimeError, match="queue path"):
    await CloudTasksEnqueuer(settings, client=MagicMock()).enqueue("job-9", {})


@pytest.mark.anyio
async def test_task_handler_endpoint(async_client, jobs_repo):
  """Verify the handler endpoint schedules the job processor."""

  with patch("flashdeck.api.routes.tasks.process_job_sync", new_callable=AsyncMock) as mock_process:
    response = await async_client.post("/internal/tasks/process-job", json={"job_id": "job-abc"}, headers={"authorization": "Bearer test-task-secret"})

  assert response.status_code == 200
  assert response.json() == {"status": "accepted"}
  mock_process.assert_called_once()
  args, _ = mock_process.call_args
  assert args[0] == "job-abc"
  assert args[2] is jobs_repo


@pytest.mark.anyio
async def test_task_handler_accepts_dedicated_secret_header(async_client):
  with patch("flashdeck.api.routes.tasks.process_job_sync", new_callable=AsyncMock):
    response = await async_client.post("/internal/tasks/process-job", json={"job_id": "job-abc"}, headers={"x-flashdeck-task-secret": "test-task-secret", "authorization": "Bearer oidc-token"})

  assert response.status_code == 200


@pytest.mark.anyio
async def test_task_handler_rejects_bad_secret(async_client):
  with patch("flashdeck.api.routes.tasks.process_job_sync", new_callable=AsyncMock) as mock_process:
    response = await async_client.post("/internal/tasks/process-job", json={"job_id": "job-abc"}, headers={"authorization": "Bearer wrong"})

  assert response.status_code == 403
  mock_process.assert_not_called()
