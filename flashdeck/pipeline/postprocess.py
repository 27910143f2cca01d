"""Clean-up applied to generated cards before verification."""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Sequence
from dataclasses import replace

from flashdeck.pipeline.models import CARD_DIFFICULTIES, HIGHER_ORDER_BLOOM, Card, GenerationOptions

MAX_ANSWER_WORDS = 40
MAX_ANSWER_CHARS = 300
DIFFICULTY_SHARE = {"easy": 0.3, "medium": 0.4, "hard": 0.3}
DIFFICULTY_TOLERANCE = 2
_NON_WORD = re.compile(r"[^\w\s]")


def clamp_answer(answer: str) -> str:
  # Word cap first, then a character cap for long unbroken text.
  words = answer.split()
  if len(words) > MAX_ANSWER_WORDS:
    return " ".join(words[:MAX_ANSWER_WORDS]) + "..."
  if len(answer) > MAX_ANSWER_CHARS:
    return answer[: MAX_ANSWER_CHARS - 3] + "..."
  return answer


def _normalize_question(question: str) -> set[str]:
  return set(_NON_WORD.sub("", question.lower()).split())


def question_similarity(left: str, right: str) -> float:
  """Jaccard similarity of the two questions' word sets."""
  a, b = _normalize_question(left), _normalize_question(right)
  if not a or not b:
    return 0.0
  return len(a & b) / len(a | b)


def dedupe_questions(cards: Sequence[Card], threshold: float) -> tuple[list[Card], int]:
  """Keep the first of any group of cards whose questions are more similar than ``threshold``."""
  unique: list[Card] = []
  removed = 0
  # Earlier cards win, so input order decides which duplicate survives.
  for card in cards:
    if any(question_similarity(card.question, kept.question) > threshold for kept in unique):
      removed += 1
      continue
    unique.append(card)
  return unique, removed


def expected_difficulty_counts(total: int) -> dict[str, int]:
  # Medium absorbs rounding so the three counts sum to total.
  easy = round(total * DIFFICULTY_SHARE["easy"])
  hard = round(total * DIFFICULTY_SHARE["hard"])
  return {"easy": easy, "medium": max(total - easy - hard, 0), "hard": hard}


def postprocess_cards(cards: Sequence[Card], options: GenerationOptions, *, dedupe_threshold: float = 0.85, min_higher_order_bloom: int = 3) -> tuple[list[Card], list[str]]:
  """Clamp answers, drop near-duplicate questions and report distribution drift."""
  warnings: list[str] = []
  clamped = [replace(card, answer=clamp_answer(card.answer)) for card in cards]

  unique, removed = dedupe_questions(clamped, dedupe_threshold)
  if removed:
    warnings.append(f"Removed {removed} duplicate questions")

  # Distribution drift is only meaningful when a mix was requested.
  if unique and options.difficulty == "mixed":
    counts = Counter(card.difficulty for card in unique)
    expected = expected_difficulty_counts(len(unique))
    if any(abs(counts.get(level, 0) - expected[level]) > DIFFICULTY_TOLERANCE for level in CARD_DIFFICULTIES):
      warnings.append(f"Difficulty imbalance: easy={counts.get('easy', 0)}, medium={counts.get('medium', 0)}, hard={counts.get('hard', 0)}")

  higher_order = sum(1 for card in unique if card.bloom_level in HIGHER_ORDER_BLOOM)
  if unique and higher_order < min_higher_order_bloom:
    warnings.append(f"Low higher-order Bloom: {higher_order}/{min_higher_order_bloom} required")

  return unique, warnings
