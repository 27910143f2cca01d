"""Shared FastAPI dependencies for the jobs repository and deck store."""

from __future__ import annotations

from fastapi import Depends

from flashdeck.config import Settings, get_settings
from flashdeck.pipeline.deck_store import DeckStore
from flashdeck.pipeline.factory import build_deck_store
from flashdeck.storage.factory import _get_jobs_repo
from flashdeck.storage.jobs_repo import JobsRepository


def get_jobs_repo(settings: Settings = Depends(get_settings)) -> JobsRepository:  # noqa: B008
  """Dependency returning the configured jobs repository."""
  return _get_jobs_repo(settings)


def get_deck_store(settings: Settings = Depends(get_settings)) -> DeckStore:  # noqa: B008
  """Dependency returning the configured deck store."""
  return build_deck_store(settings)
