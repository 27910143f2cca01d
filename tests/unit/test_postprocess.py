from __future__ import annotations

from flashdeck.pipeline.models import Card, Evidence, GenerationOptions
from flashdeck.pipeline.postprocess import clamp_answer, dedupe_questions, expected_difficulty_counts, postprocess_cards, question_similarity


def _card(index: int, question: str, difficulty: str = "easy", bloom: str = "Remember", answer: str = "An answer long enough to count.") -> Card:
  return Card(card_id=f"m::card_{index}", question=question, answer=answer, rationale="", evidence=[Evidence(chunk_id="m::s::doc_0", text=answer)], bloom_level=bloom, difficulty=difficulty)  # type: ignore[arg-type]


def test_clamp_answer_limits_words_and_characters() -> None:
  assert clamp_answer(" ".join(["word"] * 45)) == " ".join(["word"] * 40) + "..."
  long_word_answer = "x" * 350
  assert clamp_answer(long_word_answer) == "x" * 297 + "..."
  assert clamp_answer("Short answer.") == "Short answer."


def test_question_similarity_ignores_case_and_punctuation() -> None:
  assert question_similarity("What is ATP?", "what is atp") == 1.0
  assert question_similarity("", "anything") == 0.0


def test_dedupe_keeps_first_of_near_duplicates() -> None:
  cards = [
    _card(1, "What organelle produces most of the cell's energy?"),
    _card(2, "What organelle produces most of the cells energy?"),
    _card(3, "Which structure controls transport into the cell?"),
  ]

  unique, removed = dedupe_questions(cards, 0.85)

  assert [card.card_id for card in unique] == ["m::card_1", "m::card_3"]
  assert removed == 1


def test_expected_difficulty_counts_follow_30_40_30() -> None:
  assert expected_difficulty_counts(10) == {"easy": 3, "medium": 4, "hard": 3}
  assert expected_difficulty_counts(20) == {"easy": 6, "medium": 8, "hard": 6}


def test_postprocess_reports_imbalance_and_low_bloom() -> None:
  cards = [_card(index, f"Distinct question number {index} about topic {index * 7}?") for index in range(8)]

  processed, warnings = postprocess_cards(cards, GenerationOptions(difficulty="mixed"))

  assert len(processed) == 8
  assert any(warning.startswith("Difficulty imbalance") for warning in warnings)
  assert "Low higher-order Bloom: 0/3 required" in warnings


def test_postprocess_skips_distribution_check_for_fixed_difficulty() -> None:
  cards = [_card(index, f"Distinct question number {index} about topic {index * 7}?", difficulty="hard", bloom="Analyze") for index in range(4)]

  processed, warnings = postprocess_cards(cards, GenerationOptions(difficulty="hard"))

  assert len(processed) == 4
  assert warnings == []
