"""Retry helper for rate-limited provider calls."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

DEFAULT_DELAYS: tuple[float, ...] = (5, 20, 50)
_RETRYABLE_MARKERS = ("429", "Too Many Requests", "Resource Exhausted", "RESOURCE_EXHAUSTED", "Quota Exceeded")


def is_rate_limit_error(exc: BaseException) -> bool:
  message = str(exc)
  return any(marker in message for marker in _RETRYABLE_MARKERS)


async def retry_with_backoff(func: Callable[..., Awaitable[T]], *args, delays: Sequence[float] = DEFAULT_DELAYS, **kwargs) -> T:
  """
  Await ``func`` and retry on quota or 429 errors.

  Each retry sleeps for the next entry in ``delays`` plus up to one second of jitter.
  Other errors propagate immediately.
  """
  for attempt, delay in enumerate(delays):
    try:
      return await func(*args, **kwargs)
    except Exception as exc:
      if not is_rate_limit_error(exc):
        raise
      logger.warning("Retry attempt %s/%s after rate limit: %s. Retrying in %ss...", attempt + 1, len(delays), exc, delay)
      await asyncio.sleep(delay + random.uniform(0, 1))

  return await func(*args, **kwargs)
