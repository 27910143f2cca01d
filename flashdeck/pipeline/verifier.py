"""Check that each card's answer is supported by its cited evidence."""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from flashdeck.ai.providers.base import AIModel
from flashdeck.pipeline.models import Card, VerificationResult
from flashdeck.pipeline.prompts import build_verification_prompt

logger = logging.getLogger(__name__)

VERIFIED_THRESHOLD = 0.3
HIGH_RISK_THRESHOLD = 0.2
MEDIUM_RISK_THRESHOLD = 0.4
MIN_ANSWER_CHARS = 20
_WORD = re.compile(r"[\w'-]+")
_NUMBER = re.compile(r"\d+(?:\.\d+)?%?")
_COVERAGE = {"full": 1.0, "partial": 0.5, "none": 0.0}


def _words(text: str, min_len: int) -> list[str]:
  return [word for word in _WORD.findall(text.lower()) if len(word) > min_len]


def text_similarity(left: str, right: str) -> float:
  """Jaccard similarity over words longer than three characters."""
  a, b = set(_words(left, 3)), set(_words(right, 3))
  union = a | b
  if not union:
    return 0.0
  return len(a & b) / len(union)


def key_term_overlap(answer: str, evidence: str) -> float:
  """Share of the answer's longer words that also appear in the evidence."""
  answer_words = _words(answer, 4)
  evidence_words = set(_WORD.findall(evidence.lower()))
  return sum(1 for word in answer_words if word in evidence_words) / max(len(answer_words), 1)


class EvidenceVerifier(ABC):
  @abstractmethod
  async def verify(self, card: Card) -> VerificationResult:
    """Assess one card against its evidence."""


class HeuristicVerifier(EvidenceVerifier):
  """Lexical-overlap verifier that needs no model."""

  async def verify(self, card: Card) -> VerificationResult:
    return self.verify_sync(card)

  def verify_sync(self, card: Card) -> VerificationResult:
    if not card.evidence:
      return VerificationResult(verified=False, confidence=0.9, note="Card has no evidence to verify against", issues=["No evidence provided"], evidence_coverage=0.0, hallucination_risk="high")

    issues: list[str] = []
    evidence_text = " ".join(item.text for item in card.evidence)
    if len(card.answer) < MIN_ANSWER_CHARS:
      issues.append("Answer is too short")

    # Key-term overlap is weighted above whole-text similarity.
    score = text_similarity(card.answer, evidence_text) * 0.4 + key_term_overlap(card.answer, evidence_text) * 0.6
    verified = score > VERIFIED_THRESHOLD
    risk: Literal["low", "medium", "high"] = "low"
    if score < HIGH_RISK_THRESHOLD:
      risk = "high"
      verified = False
      issues.append("Low overlap between answer and evidence")
    elif score < MEDIUM_RISK_THRESHOLD:
      risk = "medium"
      issues.append("Moderate overlap, some claims may not be supported")

    # A number the evidence never mentions fails the card regardless of score.
    evidence_numbers = set(_NUMBER.findall(evidence_text))
    unsupported = [number for number in _NUMBER.findall(card.answer) if number not in evidence_numbers]
    if unsupported:
      issues.append(f"Numeric values not found in evidence: {', '.join(unsupported)}")
      risk = "high"
      verified = False

    label = "Answer adequately supported" if verified else "Insufficient evidence support"
    return VerificationResult(verified=verified, confidence=round(0.7 + score * 0.2, 4), note=f"{label} (similarity: {score * 100:.0f}%)", issues=issues, evidence_coverage=round(score, 4), hallucination_risk=risk)


class LLMVerificationResponse(BaseModel):
  is_supported: bool
  confidence: float = Field(ge=0, le=1)
  issues: list[str] = Field(default_factory=list)
  evidence_coverage: Literal["full", "partial", "none"]
  hallucination_detected: bool
  explanation: str


class LLMVerifier(EvidenceVerifier):
  """Model-judged verification, falling back to the heuristic on any model failure."""

  def __init__(self, model: AIModel, fallback: HeuristicVerifier | None = None) -> None:
    self._model = model
    self._fallback = fallback or HeuristicVerifier()

  async def verify(self, card: Card) -> VerificationResult:
    if not card.evidence:
      return self._fallback.verify_sync(card)
    try:
      response = await self._model.generate_structured(build_verification_prompt(card), LLMVerificationResponse.model_json_schema())
      parsed = LLMVerificationResponse.model_validate(response.content)
    except (RuntimeError, ValidationError) as exc:
      logger.warning("LLM verification failed for card_id=%s; using heuristic: %s", card.card_id, exc)
      return self._fallback.verify_sync(card)

    # A detected hallucination overrides the model's own support verdict.
    if parsed.hallucination_detected:
      risk: Literal["low", "medium", "high"] = "high"
    elif parsed.evidence_coverage == "partial":
      risk = "medium"
    else:
      risk = "low"
    return VerificationResult(verified=parsed.is_supported and not parsed.hallucination_detected, confidence=parsed.confidence, note=parsed.explanation, issues=parsed.issues, evidence_coverage=_COVERAGE[parsed.evidence_coverage], hallucination_risk=risk)


@dataclass
class VerificationBatch:
  cards: list[Card]
  verified_count: int
  failed_count: int

  @property
  def verification_rate(self) -> float:
    total = len(self.cards)
    return round(self.verified_count / total, 4) if total else 0.0


def apply_verification(card: Card, result: VerificationResult) -> Card:
  """Annotate a copy of ``card``; the question and answer are never modified."""
  verified = result.verified and bool(card.evidence)
  return replace(card, verified=verified, review_required=not verified, verification_note=result.note, confidence=result.confidence)


async def verify_cards(cards: Sequence[Card], verifier: EvidenceVerifier) -> VerificationBatch:
  """Verify cards concurrently and return annotated copies in input order."""
  results = await asyncio.gather(*(verifier.verify(card) for card in cards))
  annotated = [apply_verification(card, result) for card, result in zip(cards, results, strict=True)]
  verified = sum(1 for card in annotated if card.verified)
  return VerificationBatch(cards=annotated, verified_count=verified, failed_count=len(annotated) - verified)
