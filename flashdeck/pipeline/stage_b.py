"""Stage B: synthesise evidence-backed flashcards from chunks."""

from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from flashdeck.ai.providers.base import AIModel
from flashdeck.pipeline.chunking import split_sentences
from flashdeck.pipeline.errors import ProviderError
from flashdeck.pipeline.models import CARD_DIFFICULTIES, BloomLevel, Card, CardSource, ContextChunk, Evidence, GenerationOptions, StageBOutput
from flashdeck.pipeline.prompts import build_generation_prompt

logger = logging.getLogger(__name__)

MIN_SENTENCE_CHARS = 20
PREFIX_MATCH_CHARS = 50
_WHITESPACE = re.compile(r"\s+")
_PHRASE_WORD = re.compile(r"[A-Za-z0-9][\w'-]*")
_DIFFICULTY_BLOOM: dict[str, BloomLevel] = {"easy": "Remember", "medium": "Understand", "hard": "Analyze"}


class GeneratedCard(BaseModel):
  """One card as returned by the generation model."""

  question: str = Field(min_length=10, max_length=500)
  answer: str = Field(min_length=20, max_length=2000)
  rationale: str = ""
  evidence_quote: str = Field(min_length=1)
  evidence_chunk_id: str | None = None
  bloom_level: Literal["Remember", "Understand", "Apply", "Analyze", "Evaluate", "Create"]
  difficulty: Literal["easy", "medium", "hard"]
  confidence: float = Field(default=0.8, ge=0, le=1)
  learning_objective: str | None = None


class GenerationResponse(BaseModel):
  cards: list[GeneratedCard]


def normalize_text(text: str) -> str:
  return _WHITESPACE.sub(" ", text).strip().lower()


def match_evidence(quote: str, chunks: Sequence[ContextChunk], preferred_chunk_id: str | None = None) -> ContextChunk | None:
  """Find the input chunk containing ``quote``; never returns a chunk outside ``chunks``."""
  # Matching is case and whitespace insensitive.
  needle = normalize_text(quote)
  if not needle:
    return None
  ordered = list(chunks)
  # The chunk the model cited is tried first; sort is stable for the rest.
  if preferred_chunk_id:
    ordered.sort(key=lambda chunk: chunk.chunk_id != preferred_chunk_id)
  for chunk in ordered:
    if needle in normalize_text(chunk.text):
      return chunk
  # Models often trim or paraphrase the tail of a quote.
  prefix = needle[:PREFIX_MATCH_CHARS]
  if len(prefix) >= MIN_SENTENCE_CHARS:
    for chunk in ordered:
      if prefix in normalize_text(chunk.text):
        return chunk
  return None


def _source_for(chunk: ContextChunk) -> CardSource:
  return CardSource(file=chunk.source_file, location=chunk.location())


class CardGenerator(ABC):
  @abstractmethod
  async def generate(self, chunks: Sequence[ContextChunk], module_id: str, learning_objectives: Sequence[str], options: GenerationOptions, module_title: str = "") -> StageBOutput:
    """Produce up to ``options.target_count`` cards, each citing an input chunk."""


class MockCardGenerator(CardGenerator):
  """Deterministic generator: one card per distinct informative sentence, in input order."""

  def _difficulty(self, index: int, options: GenerationOptions) -> str:
    if options.difficulty != "mixed":
      return options.difficulty
    return CARD_DIFFICULTIES[index % len(CARD_DIFFICULTIES)]

  def _bloom(self, index: int, difficulty: str, options: GenerationOptions) -> BloomLevel:
    level = _DIFFICULTY_BLOOM[difficulty]
    if options.bloom_levels and level not in options.bloom_levels:
      return options.bloom_levels[index % len(options.bloom_levels)]  # type: ignore[return-value]
    return level

  async def generate(self, chunks: Sequence[ContextChunk], module_id: str, learning_objectives: Sequence[str], options: GenerationOptions, module_title: str = "") -> StageBOutput:
    start = time.perf_counter()
    cards: list[Card] = []
    seen: set[str] = set()
    for chunk in chunks:
      for sentence in split_sentences(chunk.text):
        # Short fragments and repeated sentences make poor cards.
        key = normalize_text(sentence)
        if len(sentence) <= MIN_SENTENCE_CHARS or key in seen:
          continue
        seen.add(key)
        index = len(cards)
        difficulty = self._difficulty(index, options)
        phrase = " ".join(_PHRASE_WORD.findall(sentence)[:8])
        cards.append(
          Card(
            card_id=f"{module_id}::card_{index + 1}",
            question=f"What does {chunk.source_file} say about {phrase}?",
            answer=sentence,
            rationale=f"Stated directly in {chunk.source_file}" + (f" ({chunk.location()})." if chunk.location() else "."),
            evidence=[Evidence(chunk_id=chunk.chunk_id, text=sentence)],
            bloom_level=self._bloom(index, difficulty, options),
            difficulty=difficulty,  # type: ignore[arg-type]
            confidence=0.92,
            sources=[_source_for(chunk)],
            learning_objective_ref=learning_objectives[index % len(learning_objectives)] if learning_objectives else None,
          )
        )
        if len(cards) >= options.target_count:
          break
      if len(cards) >= options.target_count:
        break

    warnings = []
    if len(cards) < options.target_count:
      warnings.append(f"Generated {len(cards)} of {options.target_count} requested cards; the material has too few distinct statements.")
    return StageBOutput(cards=cards, warnings=warnings, processing_time_ms=int((time.perf_counter() - start) * 1000))


class LLMCardGenerator(CardGenerator):
  def __init__(self, model: AIModel) -> None:
    self._model = model

  async def generate(self, chunks: Sequence[ContextChunk], module_id: str, learning_objectives: Sequence[str], options: GenerationOptions, module_title: str = "") -> StageBOutput:
    start = time.perf_counter()
    prompt = build_generation_prompt(module_title or module_id, chunks, learning_objectives, options)
    try:
      response = await self._model.generate_structured(prompt, GenerationResponse.model_json_schema())
    except RuntimeError as exc:
      raise ProviderError(f"Card generation failed for module {module_id}: {exc}") from exc

    # Each card is validated on its own so one bad entry does not sink the batch.
    raw_cards = response.content.get("cards") if isinstance(response.content, dict) else None
    if not isinstance(raw_cards, list):
      raise ProviderError(f"Card generation for module {module_id} returned no card list.")

    warnings: list[str] = []
    cards: list[Card] = []
    invalid = unmatched = 0
    for raw in raw_cards:
      try:
        generated = GeneratedCard.model_validate(raw)
      except ValidationError:
        invalid += 1
        continue
      # Cards must quote text that exists in an input chunk.
      chunk = match_evidence(generated.evidence_quote, chunks, generated.evidence_chunk_id)
      if chunk is None:
        unmatched += 1
        continue
      cards.append(
        Card(
          card_id=f"{module_id}::card_{len(cards) + 1}",
          question=generated.question.strip(),
          answer=generated.answer.strip(),
          rationale=generated.rationale.strip(),
          evidence=[Evidence(chunk_id=chunk.chunk_id, text=generated.evidence_quote.strip())],
          bloom_level=generated.bloom_level,
          difficulty=generated.difficulty,
          confidence=generated.confidence,
          sources=[_source_for(chunk)],
          learning_objective_ref=generated.learning_objective,
        )
      )
      if len(cards) >= options.target_count:
        break

    if invalid:
      warnings.append(f"Dropped {invalid} malformed cards")
    if unmatched:
      warnings.append(f"Dropped {unmatched} cards whose evidence did not match the source material")
    if len(cards) < options.target_count:
      warnings.append(f"Generated {len(cards)} of {options.target_count} requested cards")

    elapsed = int((time.perf_counter() - start) * 1000)
    logger.info("Stage B complete module_id=%s cards=%d dropped=%d in %dms", module_id, len(cards), invalid + unmatched, elapsed)
    return StageBOutput(cards=cards, warnings=warnings, processing_time_ms=elapsed)
