import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from urllib.parse import urlparse

from fastapi import FastAPI

from flashdeck.core.database import create_schema, get_db_engine
from flashdeck.core.logging import _initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging, storage directories and optional schema creation."""
  from flashdeck.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("flashdeck.core.lifespan")

  try:
    _initialize_logging(settings)
    logger.info("Startup complete - environment=%s llm_mode=%s embedding_provider=%s", settings.environment, settings.llm_mode, settings.embedding_provider)
    # Decks are written as files, so the root must exist before the first run.
    Path(settings.deck_dir).mkdir(parents=True, exist_ok=True)
    if settings.auto_create_schema:
      logger.info("Creating jobs schema; FLASHDECK_PG_DSN=%s", _redact_dsn(settings.pg_dsn))
      await create_schema()

  except Exception:
    # Keep serving; storage failures surface per request with a request id.
    logger.warning("Startup initialization failed; continuing without it.", exc_info=True)

  yield

  engine = get_db_engine()
  if engine is not None:
    await engine.dispose()


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"
