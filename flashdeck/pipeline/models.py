"""Domain models shared by the flashcard pipeline stages."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

BloomLevel = Literal["Remember", "Understand", "Apply", "Analyze", "Evaluate", "Create"]
CardDifficulty = Literal["easy", "medium", "hard"]
ModuleDifficulty = Literal["beginner", "intermediate", "advanced"]
StageStatus = Literal["success", "skipped", "failed"]
RunStatus = Literal["success", "partial", "failed"]
HallucinationRisk = Literal["low", "medium", "high"]

BLOOM_LEVELS: tuple[str, ...] = ("Remember", "Understand", "Apply", "Analyze", "Evaluate", "Create")
HIGHER_ORDER_BLOOM = frozenset({"Apply", "Analyze", "Evaluate", "Create"})
CARD_DIFFICULTIES: tuple[str, ...] = ("easy", "medium", "hard")


@dataclass
class ContextChunk:
  """A slice of module material with provenance, ready for embedding and prompting."""

  chunk_id: str
  source_file: str
  provider: str
  text: str
  tokens_est: int
  heading: str | None = None
  slide_or_page: str | None = None
  start_sec: float | None = None
  end_sec: float | None = None
  embedding: list[float] | None = None

  def location(self) -> str | None:
    return self.slide_or_page or self.heading

  def to_payload(self, module_id: str) -> dict[str, Any]:
    """Return the vector-store payload for this chunk (without the vector)."""
    return {
      "chunk_id": self.chunk_id,
      "module_id": module_id,
      "source_file": self.source_file,
      "provider": self.provider,
      "slide_or_page": self.slide_or_page,
      "start_sec": self.start_sec,
      "end_sec": self.end_sec,
      "heading": self.heading,
      "text": self.text,
      "tokens_est": self.tokens_est,
    }


@dataclass(frozen=True)
class Evidence:
  chunk_id: str
  text: str


@dataclass(frozen=True)
class CardSource:
  file: str
  location: str | None = None


@dataclass
class Card:
  """One question/answer flashcard together with its supporting evidence."""

  card_id: str
  question: str
  answer: str
  rationale: str
  evidence: list[Evidence]
  bloom_level: BloomLevel
  difficulty: CardDifficulty
  confidence: float = 0.8
  verified: bool = False
  review_required: bool = True
  verification_note: str | None = None
  sources: list[CardSource] = field(default_factory=list)
  learning_objective_ref: str | None = None

  def to_dict(self) -> dict[str, Any]:
    return asdict(self)

  @classmethod
  def from_dict(cls, data: dict[str, Any]) -> Card:
    payload = dict(data)
    payload["evidence"] = [Evidence(**item) for item in payload.get("evidence") or []]
    payload["sources"] = [CardSource(**item) for item in payload.get("sources") or []]
    return cls(**payload)


@dataclass
class StageAOutput:
  learning_objectives: list[str]
  key_terms: list[str]
  estimated_difficulty: ModuleDifficulty
  summary_points: list[str]
  processing_time_ms: int = 0


@dataclass
class StageBOutput:
  cards: list[Card]
  warnings: list[str] = field(default_factory=list)
  processing_time_ms: int = 0


@dataclass(frozen=True)
class GenerationOptions:
  """User-facing knobs passed from the job request to card generation."""

  target_count: int = 10
  difficulty: Literal["easy", "medium", "hard", "mixed"] = "mixed"
  bloom_levels: tuple[str, ...] = ()


@dataclass
class VerificationResult:
  verified: bool
  confidence: float
  note: str
  issues: list[str] = field(default_factory=list)
  evidence_coverage: float = 0.0
  hallucination_risk: HallucinationRisk = "low"


@dataclass
class StageResult:
  """One entry of a module run's stage log."""

  stage: str
  status: StageStatus
  duration_ms: int
  message: str | None = None

  def to_dict(self) -> dict[str, Any]:
    return asdict(self)


@dataclass
class Deck:
  """Immutable snapshot of a module's generated cards."""

  deck_id: str
  module_id: str
  module_title: str
  cards: list[Card]
  card_count: int
  verified_count: int
  verification_rate: float
  generated_at: str
  warnings: list[str] = field(default_factory=list)
  course_id: str | None = None
  job_id: str | None = None

  def to_dict(self) -> dict[str, Any]:
    return asdict(self)

  @classmethod
  def from_dict(cls, data: dict[str, Any]) -> Deck:
    payload = dict(data)
    payload["cards"] = [Card.from_dict(item) for item in payload.get("cards") or []]
    return cls(**payload)


@dataclass(frozen=True)
class SavedDeck:
  deck_id: str
  deck_path: str
  card_count: int
  verified_count: int


@dataclass
class ModuleRunResult:
  """Outcome of running the pipeline for a single module."""

  module_id: str
  status: RunStatus
  stage_log: list[StageResult]
  card_count: int = 0
  verified_count: int = 0
  verification_rate: float = 0.0
  deck_id: str | None = None
  deck_path: str | None = None
  warnings: list[str] = field(default_factory=list)
  error: str | None = None

  def to_dict(self) -> dict[str, Any]:
    return asdict(self)
