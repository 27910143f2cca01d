from flashdeck.config import Settings
from flashdeck.storage.jobs_repo import JobsRepository
from flashdeck.storage.postgres_jobs_repo import PostgresJobsRepository


def _get_jobs_repo(settings: Settings) -> JobsRepository:
  """Return the active jobs repository."""
  if not settings.pg_dsn:
    raise ValueError("FLASHDECK_PG_DSN must be set to enable Postgres persistence.")

  return PostgresJobsRepository()
