"""Database initialization helper for local development.

Creates the configured database when it is missing, then creates the job tables.
CREATE DATABASE cannot be parameterized, so the name is validated first.
"""

import asyncio
import re
import sys

from sqlalchemy import text
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import create_async_engine

_DB_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")


def _validate_database_name(db_name: str) -> str:
  """Only allow identifier-safe names since the value is interpolated into SQL."""
  if not db_name:
    raise ValueError("Target database name is empty.")
  if not _DB_NAME_PATTERN.fullmatch(db_name):
    raise ValueError("Target database name contains invalid characters (allowed: A-Z, a-z, 0-9, _).")
  return db_name


async def create_database_if_not_exists() -> None:
  from flashdeck.config import get_database_settings

  dsn = get_database_settings().pg_dsn
  if not dsn:
    print("Error: FLASHDECK_PG_DSN is not set.")
    sys.exit(1)

  url = make_url(dsn)
  target_db = _validate_database_name(url.database or "")
  postgres_url = url.set(database="postgres")
  if postgres_url.drivername.startswith("postgresql") and "+asyncpg" not in postgres_url.drivername:
    postgres_url = postgres_url.set(drivername="postgresql+asyncpg")

  print(f"Connecting to postgres to check for database '{target_db}'...")
  # CREATE DATABASE cannot run inside a transaction.
  engine = create_async_engine(postgres_url, isolation_level="AUTOCOMMIT")
  try:
    async with engine.connect() as conn:
      result = await conn.execute(text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": target_db})
      if result.scalar() == 1:
        print(f"Database '{target_db}' already exists.")
      else:
        print(f"Database '{target_db}' does not exist. Creating...")
        await conn.execute(text(f'CREATE DATABASE "{target_db}"'))
        print(f"Database '{target_db}' created successfully.")
  finally:
    await engine.dispose()


async def main() -> None:
  from flashdeck.core.database import create_schema, get_db_engine

  await create_database_if_not_exists()
  await create_schema()
  print("Job tables are in place.")
  engine = get_db_engine()
  if engine is not None:
    await engine.dispose()


if __name__ == "__main__":
  asyncio.run(main())
