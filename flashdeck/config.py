"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from flashdeck.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

_LLM_MODES = {"mock", "real"}
_LLM_PROVIDERS = {"gemini", "openrouter"}
_EMBEDDING_PROVIDERS = {"mock", "openai", "gemini"}
_VERIFIER_MODES = {"heuristic", "llm"}
_TASK_PROVIDERS = {"local-http", "gcp"}
_STAGE_TIMEOUT_DEFAULTS = {
  "ingest": 30.0,
  "transcribe": 300.0,
  "chunk": 10.0,
  "embed": 60.0,
  "upsert": 60.0,
  "stage_a": 60.0,
  "stage_b": 120.0,
  "verify": 60.0,
  "save": 10.0,
}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the Flashdeck service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  auto_create_schema: bool
  content_dir: str
  deck_dir: str
  llm_mode: str
  llm_provider: str
  llm_model: str | None
  verifier_mode: str
  embedding_provider: str
  embedding_model: str | None
  embedding_dim: int
  embedding_batch_size: int
  qdrant_url: str
  qdrant_api_key: str | None
  qdrant_collection: str
  min_viable_cards: int
  default_card_count: int
  dedupe_threshold: float
  min_higher_order_bloom: int
  max_chunk_tokens: int
  chunk_encoding: str
  transcript_max_tokens: int
  transcript_max_seconds: int
  extract_documents: bool
  stage_timeouts: tuple[tuple[str, float], ...]
  mock_fail_stages: frozenset[str]
  jobs_auto_process: bool
  cloud_tasks_queue_path: str | None
  task_service_provider: str
  base_url: str | None
  task_secret: str | None
  cloud_run_invoker_service_account: str | None
  gemini_api_key: str | None
  openai_api_key: str | None
  openrouter_api_key: str | None


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("FLASHDECK_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("FLASHDECK_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("FLASHDECK_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None, *, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None or raw.strip() == "":
    return default

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _parse_positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _parse_choice(name: str, default: str, allowed: set[str]) -> str:
  value = (os.getenv(name) or default).strip().lower()
  if value not in allowed:
    raise ValueError(f"{name} must be one of: {', '.join(sorted(allowed))}.")
  return value


def _parse_stage_timeouts() -> tuple[tuple[str, float], ...]:
  """Read FLASHDECK_<STAGE>_TIMEOUT_SECONDS overrides on top of the defaults."""

  timeouts: list[tuple[str, float]] = []
  for stage, default in _STAGE_TIMEOUT_DEFAULTS.items():
    name = f"FLASHDECK_{stage.upper()}_TIMEOUT_SECONDS"
    raw = os.getenv(name)
    value = float(raw) if raw else default
    if value <= 0:
      raise ValueError(f"{name} must be a positive number.")
    timeouts.append((stage, value))
  return tuple(timeouts)


def _parse_csv_set(raw: str | None) -> frozenset[str]:
  if not raw:
    return frozenset()
  return frozenset(item.strip().lower() for item in raw.split(",") if item.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("FLASHDECK_ENV", "development").lower()

  # Toggle verbose error output and diagnostics in non-production environments.
  debug = _parse_bool(os.getenv("FLASHDECK_DEBUG"))

  log_max_bytes = _parse_positive_int("FLASHDECK_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("FLASHDECK_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("FLASHDECK_LOG_BACKUP_COUNT must be zero or a positive integer.")

  llm_mode = _parse_choice("FLASHDECK_LLM_MODE", "mock", _LLM_MODES)
  llm_provider = _parse_choice("FLASHDECK_LLM_PROVIDER", "gemini", _LLM_PROVIDERS)
  embedding_provider = _parse_choice("FLASHDECK_EMBEDDING_PROVIDER", "mock", _EMBEDDING_PROVIDERS)
  if llm_mode == "real" and embedding_provider == "mock":
    # Hash vectors must never reach a production collection.
    raise ValueError("FLASHDECK_EMBEDDING_PROVIDER must be set to openai or gemini when FLASHDECK_LLM_MODE=real.")
  gemini_api_key = _optional_str(os.getenv("GEMINI_API_KEY"))
  openai_api_key = _optional_str(os.getenv("OPENAI_API_KEY"))
  openrouter_api_key = _optional_str(os.getenv("OPENROUTER_API_KEY"))

  # Real providers need credentials up front so jobs don't fail mid-run.
  if llm_mode == "real":
    if llm_provider == "gemini" and not gemini_api_key:
      raise ValueError("GEMINI_API_KEY must be set when FLASHDECK_LLM_MODE=real.")
    if llm_provider == "openrouter" and not openrouter_api_key:
      raise ValueError("OPENROUTER_API_KEY must be set when FLASHDECK_LLM_PROVIDER=openrouter.")
  if embedding_provider == "openai" and not openai_api_key:
    raise ValueError("OPENAI_API_KEY must be set when FLASHDECK_EMBEDDING_PROVIDER=openai.")
  if embedding_provider == "gemini" and not gemini_api_key:
    raise ValueError("GEMINI_API_KEY must be set when FLASHDECK_EMBEDDING_PROVIDER=gemini.")

  # Card-quality knobs are range-checked here so a bad value fails at startup.
  dedupe_threshold = float(os.getenv("FLASHDECK_DEDUPE_THRESHOLD", "0.85"))
  if not 0 < dedupe_threshold <= 1:
    raise ValueError("FLASHDECK_DEDUPE_THRESHOLD must be within (0, 1].")

  default_card_count = _parse_positive_int("FLASHDECK_DEFAULT_CARD_COUNT", "10")
  if default_card_count > 100:
    raise ValueError("FLASHDECK_DEFAULT_CARD_COUNT must not exceed 100.")

  min_higher_order_bloom = int(os.getenv("FLASHDECK_MIN_HIGHER_ORDER_BLOOM", "3"))
  if min_higher_order_bloom < 0:
    raise ValueError("FLASHDECK_MIN_HIGHER_ORDER_BLOOM must be zero or a positive integer.")

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("FLASHDECK_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("FLASHDECK_LOG_HTTP_4XX")),
    # A DSN switches both jobs and decks to Postgres.
    pg_dsn=os.getenv("FLASHDECK_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_parse_positive_int("FLASHDECK_PG_CONNECT_TIMEOUT", "5"),
    auto_create_schema=_parse_bool(os.getenv("FLASHDECK_AUTO_CREATE_SCHEMA")),
    content_dir=(os.getenv("FLASHDECK_CONTENT_DIR") or "./content").strip(),
    deck_dir=(os.getenv("FLASHDECK_DECK_DIR") or "./decks").strip(),
    llm_mode=llm_mode,
    llm_provider=llm_provider,
    llm_model=_optional_str(os.getenv("FLASHDECK_LLM_MODEL")),
    verifier_mode=_parse_choice("FLASHDECK_VERIFIER_MODE", "heuristic", _VERIFIER_MODES),
    embedding_provider=embedding_provider,
    embedding_model=_optional_str(os.getenv("FLASHDECK_EMBEDDING_MODEL")),
    embedding_dim=_parse_positive_int("FLASHDECK_EMBEDDING_DIM", "768"),
    embedding_batch_size=_parse_positive_int("FLASHDECK_EMBEDDING_BATCH_SIZE", "64"),
    # ":memory:" keeps vectors in-process for local runs.
    qdrant_url=(os.getenv("FLASHDECK_QDRANT_URL") or ":memory:").strip(),
    qdrant_api_key=_optional_str(os.getenv("QDRANT_API_KEY")),
    qdrant_collection=(os.getenv("FLASHDECK_QDRANT_COLLECTION") or "flashcard_chunks").strip(),
    min_viable_cards=_parse_positive_int("FLASHDECK_MIN_VIABLE_CARDS", "10"),
    default_card_count=default_card_count,
    dedupe_threshold=dedupe_threshold,
    min_higher_order_bloom=min_higher_order_bloom,
    max_chunk_tokens=_parse_positive_int("FLASHDECK_MAX_CHUNK_TOKENS", "500"),
    chunk_encoding=(os.getenv("FLASHDECK_CHUNK_ENCODING") or "cl100k_base").strip(),
    transcript_max_tokens=_parse_positive_int("FLASHDECK_TRANSCRIPT_MAX_TOKENS", "800"),
    transcript_max_seconds=_parse_positive_int("FLASHDECK_TRANSCRIPT_MAX_SECONDS", "90"),
    extract_documents=_parse_bool(os.getenv("FLASHDECK_EXTRACT_DOCUMENTS")),
    stage_timeouts=_parse_stage_timeouts(),
    mock_fail_stages=_parse_csv_set(os.getenv("FLASHDECK_MOCK_FAIL_STAGES")),
    jobs_auto_process=_parse_bool(os.getenv("FLASHDECK_JOBS_AUTO_PROCESS"), default=True),
    cloud_tasks_queue_path=_optional_str(os.getenv("FLASHDECK_CLOUD_TASKS_QUEUE_PATH")),
    task_service_provider=_parse_choice("FLASHDECK_TASK_SERVICE_PROVIDER", "local-http", _TASK_PROVIDERS),
    base_url=_optional_str(os.getenv("FLASHDECK_BASE_URL")),
    task_secret=_optional_str(os.getenv("FLASHDECK_TASK_SECRET")),
    cloud_run_invoker_service_account=_optional_str(os.getenv("FLASHDECK_CLOUD_RUN_INVOKER_SERVICE_ACCOUNT")),
    gemini_api_key=gemini_api_key,
    openai_api_key=openai_api_key,
    openrouter_api_key=openrouter_api_key,
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  debug = _parse_bool(os.getenv("FLASHDECK_DEBUG"))
  pg_connect_timeout = int(os.getenv("FLASHDECK_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("FLASHDECK_PG_CONNECT_TIMEOUT must be a positive integer.")

  pg_dsn = os.getenv("FLASHDECK_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
