"""Stage A: analyse module material into learning objectives and key terms."""

from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from flashdeck.ai.providers.base import AIModel
from flashdeck.pipeline.errors import ProviderError
from flashdeck.pipeline.models import ContextChunk, StageAOutput
from flashdeck.pipeline.prompts import build_analysis_prompt

logger = logging.getLogger(__name__)

_CAPITALIZED_WORD = re.compile(r"\b[A-Z][a-zA-Z]{4,}\b")
_COMMON_WORDS = frozenset({"there", "these", "their", "those", "which", "where", "while", "about", "after", "before", "today", "welcome", "finally", "first", "second", "third", "other", "every", "could", "would", "should", "lecture", "module", "chapter", "section"})
MAX_KEY_TERMS = 10


class AnalysisResponse(BaseModel):
  """Structured output expected from the analysis model."""

  summary: list[str] = Field(min_length=1, max_length=8)
  learning_objectives: list[str] = Field(min_length=2, max_length=10)
  key_terms: list[str] = Field(default_factory=list, max_length=25)
  content_themes: list[str] = Field(default_factory=list, max_length=10)
  estimated_difficulty: Literal["beginner", "intermediate", "advanced"]


class ContentAnalyzer(ABC):
  @abstractmethod
  async def analyze(self, chunks: Sequence[ContextChunk], module_id: str, module_title: str) -> StageAOutput:
    """Summarise the material and derive learning objectives."""


def extract_key_terms(chunks: Sequence[ContextChunk], limit: int = MAX_KEY_TERMS) -> list[str]:
  """Collect capitalised non-trivial words in order of first appearance."""
  terms: list[str] = []
  seen: set[str] = set()
  for chunk in chunks:
    for heading_or_word in ([chunk.heading] if chunk.heading else []) + _CAPITALIZED_WORD.findall(chunk.text):
      key = heading_or_word.lower()
      if key in seen or key in _COMMON_WORDS:
        continue
      seen.add(key)
      terms.append(heading_or_word)
      if len(terms) >= limit:
        return terms
  return terms


class MockContentAnalyzer(ContentAnalyzer):
  """Deterministic offline analyzer; ``fail=True`` simulates a provider outage."""

  def __init__(self, *, fail: bool = False) -> None:
    self._fail = fail

  async def analyze(self, chunks: Sequence[ContextChunk], module_id: str, module_title: str) -> StageAOutput:
    if self._fail:
      raise ProviderError("Simulated content analysis failure.")
    start = time.perf_counter()
    words = " ".join(chunk.text for chunk in chunks).split()
    summary = " ".join(words[:100])
    key_terms = extract_key_terms(chunks) or ["Concept 1", "Concept 2", "Concept 3"]
    topic = module_title or module_id
    objectives = [
      f"Understand the core concepts of {topic}",
      f"Explain how {key_terms[0]} relates to the rest of {topic}",
      f"Apply the ideas from {topic} to practical examples",
      f"Analyze the relationships between the key terms in {topic}",
    ]
    return StageAOutput(learning_objectives=objectives, key_terms=key_terms, estimated_difficulty="intermediate", summary_points=[summary] if summary else [], processing_time_ms=int((time.perf_counter() - start) * 1000))


class LLMContentAnalyzer(ContentAnalyzer):
  def __init__(self, model: AIModel) -> None:
    self._model = model

  async def analyze(self, chunks: Sequence[ContextChunk], module_id: str, module_title: str) -> StageAOutput:
    start = time.perf_counter()
    prompt = build_analysis_prompt(module_title or module_id, chunks)
    try:
      response = await self._model.generate_structured(prompt, AnalysisResponse.model_json_schema())
      parsed = AnalysisResponse.model_validate(response.content)
    except (RuntimeError, ValidationError) as exc:
      raise ProviderError(f"Content analysis failed for module {module_id}: {exc}") from exc

    elapsed = int((time.perf_counter() - start) * 1000)
    logger.info("Stage A complete module_id=%s objectives=%d key_terms=%d in %dms", module_id, len(parsed.learning_objectives), len(parsed.key_terms), elapsed)
    return StageAOutput(learning_objectives=parsed.learning_objectives, key_terms=parsed.key_terms, estimated_difficulty=parsed.estimated_difficulty, summary_points=parsed.summary, processing_time_ms=elapsed)
