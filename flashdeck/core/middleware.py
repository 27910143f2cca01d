import logging
import time
import uuid
from typing import Any

from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger("flashdeck.core.middleware")

_SENSITIVE_QUERY_KEYS = {"token", "key", "secret", "authorization"}


def _build_request_url(scope: Scope) -> str:
  """Return the request path plus a query string with secrets masked."""
  path = scope.get("path", "")
  query_string = scope.get("query_string", b"").decode("latin-1")
  if not query_string:
    return path

  pairs: list[str] = []
  for pair in query_string.split("&"):
    name, sep, value = pair.partition("=")
    if sep and name.lower() in _SENSITIVE_QUERY_KEYS:
      value = "***"
    pairs.append(f"{name}{sep}{value}")
  return f"{path}?{'&'.join(pairs)}"


def _incoming_request_id(scope: Scope) -> str | None:
  for key, value in scope.get("headers", []):
    if key.decode("latin-1").lower() == "x-request-id":
      candidate = value.decode("latin-1").strip()
      return candidate[:64] or None
  return None


class RequestLoggingMiddleware:
  """Assign a request id and log method, path, status and latency for each HTTP call."""

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    # Honour an upstream request id so task callbacks correlate with the originating call.
    request_id = _incoming_request_id(scope) or str(uuid.uuid4())
    scope.setdefault("state", {})["request_id"] = request_id

    start_time = time.perf_counter()
    method = scope.get("method", "UNKNOWN")
    logger.info("Incoming request request_id=%s %s %s", request_id, method, _build_request_url(scope))

    status_code: int | None = None

    async def send_wrapper(message: dict[str, Any]) -> None:
      nonlocal status_code
      if message.get("type") == "http.response.start":
        status_code = message.get("status")
        response_headers = MutableHeaders(scope=message)
        if "x-request-id" not in response_headers:
          response_headers["x-request-id"] = request_id
      await send(message)

    await self.app(scope, receive, send_wrapper)

    process_time = (time.perf_counter() - start_time) * 1000
    logger.info("Response request_id=%s status=%s (took %.2fms)", request_id, status_code or 0, process_time)
