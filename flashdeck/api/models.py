from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, model_validator

from flashdeck.jobs.models import JobStatus
from flashdeck.pipeline.models import BloomLevel

MAX_CARD_COUNT = 100

GenerateMode = Literal["single_module", "course", "all_courses"]
RequestedDifficulty = Literal["easy", "medium", "hard", "mixed"]


class GenerateTarget(BaseModel):
  """Module or course a generate request applies to."""

  module_id: StrictStr | None = Field(default=None, min_length=1, description="Module to generate a deck for (single_module mode).")
  course_id: StrictStr | None = Field(default=None, min_length=1, description="Course whose modules are processed (course mode).")
  model_config = ConfigDict(extra="forbid")


class GenerateSettings(BaseModel):
  """Per-request generation knobs."""

  regenerate: StrictBool = Field(default=False, description="Process modules that already have a deck.")
  force_all: StrictBool = Field(default=False, description="Delete a module's indexed chunks before re-indexing.")
  card_count: StrictInt | None = Field(default=None, ge=1, le=MAX_CARD_COUNT, description="Target number of cards per module.")
  difficulty: RequestedDifficulty = Field(default="mixed")
  bloom_levels: list[BloomLevel] = Field(default_factory=list, description="Restrict generated cards to these Bloom levels.")
  triggered_by: StrictStr | None = Field(default=None, description="Free-form origin tag, e.g. 'admin' or 'module_publish'.")
  user_id: StrictStr | None = Field(default=None)
  model_config = ConfigDict(extra="forbid")


class GenerateRequest(BaseModel):
  """Request payload for ``POST /v1/flashcards/generate``."""

  mode: GenerateMode
  target: GenerateTarget = Field(default_factory=GenerateTarget)
  settings: GenerateSettings = Field(default_factory=GenerateSettings)
  model_config = ConfigDict(extra="forbid")

  @model_validator(mode="after")
  def validate_target_for_mode(self) -> GenerateRequest:
    if self.mode == "single_module" and not self.target.module_id:
      raise ValueError("target.module_id is required when mode is 'single_module'.")
    if self.mode == "course" and not self.target.course_id:
      raise ValueError("target.course_id is required when mode is 'course'.")
    return self


class GenerateResponse(BaseModel):
  """202 payload returned once a job has been queued."""

  job_id: StrictStr = Field(serialization_alias="jobId")
  status_url: StrictStr = Field(serialization_alias="statusUrl")
  message: StrictStr


class StageLogEntry(BaseModel):
  stage: StrictStr
  status: Literal["success", "skipped", "failed"]
  duration_ms: StrictInt
  message: StrictStr | None = None


class ChildJobSummary(BaseModel):
  job_id: StrictStr
  module_id: StrictStr | None = None
  status: JobStatus
  card_count: StrictInt | None = None
  deck_id: StrictStr | None = None


class JobStatusResponse(BaseModel):
  """Status payload for a generate job or a module run."""

  job_id: StrictStr = Field(serialization_alias="jobId")
  job_kind: StrictStr
  status: JobStatus
  phase: StrictStr | None = None
  progress: float | None = None
  parent_job_id: StrictStr | None = None
  module_id: StrictStr | None = None
  stage_log: list[StageLogEntry] = Field(default_factory=list)
  children: list[ChildJobSummary] | None = None
  result: dict[str, Any] | None = None
  error: dict[str, Any] | None = None
  logs: list[str] = Field(default_factory=list)
  created_at: StrictStr
  completed_at: StrictStr | None = None


class JobListResponse(BaseModel):
  items: list[JobStatusResponse]
  total: StrictInt
  limit: StrictInt
  offset: StrictInt


class EvidenceModel(BaseModel):
  chunk_id: StrictStr
  text: StrictStr


class CardSourceModel(BaseModel):
  file: StrictStr
  location: StrictStr | None = None


class CardModel(BaseModel):
  card_id: StrictStr
  question: StrictStr
  answer: StrictStr
  rationale: StrictStr
  evidence: list[EvidenceModel]
  bloom_level: StrictStr
  difficulty: StrictStr
  confidence: float
  verified: bool
  review_required: bool
  verification_note: StrictStr | None = None
  sources: list[CardSourceModel] = Field(default_factory=list)
  learning_objective_ref: StrictStr | None = None


class ModuleFlashcardsResponse(BaseModel):
  """Latest deck for a module, optionally filtered to verified cards."""

  deck_id: StrictStr
  module_id: StrictStr
  module_title: StrictStr
  cards: list[CardModel]
  card_count: StrictInt
  total_count: StrictInt
  verified_count: StrictInt
  verification_rate: float
  generated_at: StrictStr
  warnings: list[str] = Field(default_factory=list)


class DeckSummaryModel(BaseModel):
  deck_id: StrictStr
  generated_at: StrictStr
  card_count: StrictInt
  verified_count: StrictInt
  verification_rate: float


class DeckHistoryResponse(BaseModel):
  module_id: StrictStr
  decks: list[DeckSummaryModel]


class ProcessJobTaskRequest(BaseModel):
  """Body posted by the task queue to the internal worker endpoint."""

  job_id: StrictStr = Field(min_length=1)
  model_config = ConfigDict(extra="ignore")
