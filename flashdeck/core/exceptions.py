from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError

from flashdeck.core.json import FlashdeckJSONResponse
from flashdeck.pipeline.errors import PipelineError

if TYPE_CHECKING:
  from flashdeck.services.request_validation import SubmissionValidationError


def _coerce_json_safe(value: Any) -> Any:
  """Convert unsupported values into JSON-safe primitives for error responses."""
  # Primitives pass through untouched.
  if value is None or isinstance(value, bool | int | float | str):
    return value
  # Mapping keys become strings; values are coerced recursively.
  if isinstance(value, dict):
    return {str(key): _coerce_json_safe(item) for key, item in value.items()}
  # Any sequence or set is emitted as a JSON list.
  if isinstance(value, list | tuple | set):
    return [_coerce_json_safe(item) for item in value]
  # Exceptions in validator contexts are rendered by type and message only.
  if isinstance(value, BaseException):
    error_message = str(value)
    if error_message:
      return f"{type(value).__name__}: {error_message}"
    return type(value).__name__
  # Anything else is rendered through str().
  return str(value)


def _error_payload(detail: Any, *, request_id: str | None = None) -> dict[str, Any]:
  """Build a safe error payload that avoids leaking internal details to clients."""
  payload: dict[str, Any] = {"detail": detail}
  # The request id lets a client report be matched to server logs.
  if request_id:
    payload["requestId"] = request_id
  return payload


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  # Raw request values and doc links are dropped from every entry.
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key not in {"input", "url"}}
    # Validator context can echo the input as well.
    if "ctx" in scrubbed and isinstance(scrubbed["ctx"], dict):
      scrubbed_ctx = dict(scrubbed["ctx"])
      scrubbed_ctx.pop("input", None)
      scrubbed["ctx"] = scrubbed_ctx

    sanitized.append(_coerce_json_safe(scrubbed))

  return sanitized


def _sanitize_http_detail(detail: Any) -> Any:
  """Return an HTTPException detail payload safe for logs."""
  # Body-like keys are removed; the remaining structure is kept.
  if isinstance(detail, dict):
    redacted: dict[str, Any] = {}
    for key, value in detail.items():
      if key in {"input", "body", "payload", "content"}:
        continue
      redacted[key] = _sanitize_http_detail(value)
    return redacted

  # Lists of details are scrubbed item by item.
  if isinstance(detail, list):
    return [_sanitize_http_detail(item) for item in detail]

  return detail


async def global_exception_handler(request: Request, exc: Exception) -> FlashdeckJSONResponse:
  """Global exception handler to catch unhandled errors."""
  logger = logging.getLogger("uvicorn.error")
  request_id = getattr(request.state, "request_id", None)
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return FlashdeckJSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> FlashdeckJSONResponse:
  """Log request validation errors for debugging without leaking payloads."""
  request_id = getattr(request.state, "request_id", None)
  sanitized_errors = _sanitize_validation_errors(list(exc.errors()))
  # 422s are expected client mistakes, so they log at warning level.
  logger = logging.getLogger("uvicorn.error")
  logger.warning("Request validation failed request_id=%s path=%s method=%s errors=%s", request_id, request.url.path, request.method, sanitized_errors)
  return FlashdeckJSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, request_id=request_id))


async def submission_validation_exception_handler(request: Request, exc: SubmissionValidationError) -> FlashdeckJSONResponse:
  """Reject malformed generate requests with a 400 and the sanitized field errors."""
  request_id = getattr(request.state, "request_id", None)
  logger = logging.getLogger("uvicorn.error")
  logger.warning("Generate request rejected request_id=%s path=%s errors=%s", request_id, request.url.path, exc.details)
  # The generate endpoint answers malformed submissions with 400 rather than 422.
  content: dict[str, Any] = {"error": "Validation failed", "details": exc.details}
  if request_id:
    content["requestId"] = request_id
  return FlashdeckJSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=content)


async def http_exception_handler(request: Request, exc: HTTPException) -> FlashdeckJSONResponse:
  """Handle FastAPI HTTPExceptions while avoiding leaking internal diagnostics."""
  from flashdeck.config import get_settings

  settings = get_settings()
  request_id = getattr(request.state, "request_id", None)
  # 5xx details stay in the logs and never reach the caller.
  if exc.status_code >= 500:
    logger = logging.getLogger("uvicorn.error")
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail, exc_info=True)
    return FlashdeckJSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", request_id=request_id))

  # 4xx logging is opt-in through FLASHDECK_LOG_HTTP_4XX.
  if settings.log_http_4xx:
    logger = logging.getLogger("uvicorn.error")
    sanitized_detail = _sanitize_http_detail(exc.detail)
    logger.warning("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, sanitized_detail)

  # 4xx details are client-correctable and returned as-is.
  return FlashdeckJSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id), headers=getattr(exc, "headers", None))


async def pipeline_exception_handler(request: Request, exc: PipelineError) -> FlashdeckJSONResponse:
  """Return a generic failure for pipeline errors that escape a route."""
  logger = logging.getLogger("uvicorn.error")
  request_id = getattr(request.state, "request_id", None)
  logger.error("Pipeline failure request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  # Provider messages can include prompts or upstream payloads.
  return FlashdeckJSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))
