"""Submission-time validation for generate requests."""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from flashdeck.api.models import GenerateRequest
from flashdeck.core.exceptions import _sanitize_validation_errors


class SubmissionValidationError(ValueError):
  """A generate request was rejected before any job was created."""

  def __init__(self, details: list[dict[str, Any]]) -> None:
    super().__init__("Validation failed")
    self.details = details


def validate_generate_request(payload: Any) -> GenerateRequest:
  """Parse a raw request body, raising ``SubmissionValidationError`` with sanitized details."""
  if not isinstance(payload, dict):
    raise SubmissionValidationError([{"type": "model_type", "loc": ["body"], "msg": "Request body must be a JSON object."}])
  try:
    return GenerateRequest.model_validate(payload)
  except ValidationError as exc:
    raise SubmissionValidationError(_sanitize_validation_errors(exc.errors(include_url=False))) from exc
