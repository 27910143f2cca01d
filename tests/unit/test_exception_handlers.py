"""Unit tests for API exception sanitization behavior."""

from __future__ import annotations

import pytest
from fastapi import APIRouter

from flashdeck.core.exceptions import _sanitize_http_detail, _sanitize_validation_errors
from flashdeck.main import app
from flashdeck.pipeline.errors import ProviderError
from flashdeck.services.request_validation import SubmissionValidationError, validate_generate_request

_failing_router = APIRouter()


@_failing_router.get("/__test__/pipeline-error")
async def _raise_pipeline_error() -> None:
  raise ProviderError("upstream said: secret prompt text")


app.include_router(_failing_router)


def test_sanitize_validation_errors_removes_input_and_serializes_exception_ctx() -> None:
  """Ensure validation errors stay JSON-serializable and redact raw request payloads."""
  errors = [{"type": "value_error", "loc": ("body",), "msg": "Value error, target.module_id is required.", "input": {"mode": "single_module"}, "ctx": {"error": ValueError("target.module_id is required."), "input": {"mode": "single_module"}}}]
  sanitized = _sanitize_validation_errors(errors)
  assert "input" not in sanitized[0]
  assert sanitized[0]["loc"] == ["body"]
  assert sanitized[0]["ctx"]["error"] == "ValueError: target.module_id is required."
  assert "input" not in sanitized[0]["ctx"]


def test_sanitize_http_detail_drops_payload_keys() -> None:
  detail = {"message": "bad", "payload": {"secret": 1}, "nested": [{"body": "x", "field": "mode"}]}

  assert _sanitize_http_detail(detail) == {"message": "bad", "nested": [{"field": "mode"}]}


def test_validate_generate_request_reports_sanitized_details() -> None:
  with pytest.raises(SubmissionValidationError) as exc_info:
    validate_generate_request({"mode": "course", "target": {"course_id": 42}})

  details = exc_info.value.details
  assert details[0]["loc"] == ["target", "course_id"]
  assert all("input" not in detail for detail in details)


def test_validate_generate_request_accepts_all_courses() -> None:
  request = validate_generate_request({"mode": "all_courses", "settings": {"regenerate": True, "card_count": 25}})

  assert request.settings.regenerate is True
  assert request.settings.card_count == 25
  assert request.target.module_id is None


@pytest.mark.anyio
async def test_pipeline_errors_do_not_leak_provider_messages(async_client) -> None:
  response = await async_client.get("/__test__/pipeline-error")

  assert response.status_code == 500
  body = response.json()
  assert body["detail"] == "Internal Server Error"
  assert "secret" not in response.text
  assert body["requestId"] == response.headers["x-request-id"]
