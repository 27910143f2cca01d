import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query, status

from flashdeck.api.deps import get_deck_store, get_jobs_repo
from flashdeck.api.models import DeckHistoryResponse, GenerateResponse, JobListResponse, JobStatusResponse, ModuleFlashcardsResponse
from flashdeck.config import Settings, get_settings
from flashdeck.pipeline.deck_store import DeckStore
from flashdeck.services import decks as deck_service
from flashdeck.services import jobs as job_service
from flashdeck.storage.jobs_repo import JobsRepository

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/generate", response_model=GenerateResponse, status_code=status.HTTP_202_ACCEPTED)
async def generate_flashcards(  # noqa: B008
  background_tasks: BackgroundTasks,
  payload: Any = Body(default=None),  # noqa: B008
  settings: Settings = Depends(get_settings),  # noqa: B008
  repo: JobsRepository = Depends(get_jobs_repo),  # noqa: B008
) -> GenerateResponse:
  """Queue flashcard generation for a module, a course, or every course."""
  # The body is validated in the service so malformed requests map to 400 rather than 422.
  return await job_service.create_generate_job(payload, settings, background_tasks, repo)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(  # noqa: B008
  job_id: str,
  repo: JobsRepository = Depends(get_jobs_repo),  # noqa: B008
) -> JobStatusResponse:
  """Fetch a job's status, stage log and result."""
  return await job_service.get_job_status(job_id, repo)


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(  # noqa: B008
  status_filter: str | None = Query(default=None, alias="status"),
  limit: int = Query(default=20, ge=1, le=100),
  offset: int = Query(default=0, ge=0),
  repo: JobsRepository = Depends(get_jobs_repo),  # noqa: B008
) -> JobListResponse:
  """List jobs, optionally filtered by status."""
  return await job_service.list_jobs(repo, status_filter=status_filter, limit=limit, offset=offset)


@router.get("/modules/{module_id}/flashcards", response_model=ModuleFlashcardsResponse)
async def get_module_flashcards(  # noqa: B008
  module_id: str,
  include_unverified: bool = Query(default=False),
  limit: int | None = Query(default=None, ge=1, le=500),
  deck_store: DeckStore = Depends(get_deck_store),  # noqa: B008
) -> ModuleFlashcardsResponse:
  """Return the latest deck for a module."""
  return await deck_service.get_module_flashcards(module_id, deck_store, include_unverified=include_unverified, limit=limit)


@router.get("/modules/{module_id}/decks", response_model=DeckHistoryResponse)
async def list_module_decks(  # noqa: B008
  module_id: str,
  deck_store: DeckStore = Depends(get_deck_store),  # noqa: B008
) -> DeckHistoryResponse:
  """Return every deck generated for a module, newest first."""
  return await deck_service.list_module_decks(module_id, deck_store)


@router.get("/decks/{deck_id}", response_model=ModuleFlashcardsResponse)
async def get_deck(  # noqa: B008
  deck_id: str,
  include_unverified: bool = Query(default=True),
  limit: int | None = Query(default=None, ge=1, le=500),
  deck_store: DeckStore = Depends(get_deck_store),  # noqa: B008
) -> ModuleFlashcardsResponse:
  """Return a specific deck from a module's history."""
  return await deck_service.get_deck(deck_id, deck_store, include_unverified=include_unverified, limit=limit)
