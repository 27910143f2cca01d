"""Prompt builders for content analysis, card generation and verification."""

from __future__ import annotations

import json
from collections.abc import Sequence

from flashdeck.pipeline.models import Card, ContextChunk, GenerationOptions

MAX_PROMPT_CONTEXT_CHARS = 60_000

# Worked example shown ahead of the real material. Evidence is only matched
# against real chunks, so a card quoting the example is dropped.
EXAMPLE_CHUNKS = (
  ContextChunk(
    chunk_id="example::culture::p2",
    source_file="organizational_culture.pptx",
    provider="example",
    slide_or_page="slide 2",
    text="Organizational culture is a system of shared assumptions, values, and beliefs that governs how people behave in organizations. Every organization develops a unique culture that sets guidelines and boundaries for the behavior of its members.",
    tokens_est=45,
  ),
  ContextChunk(
    chunk_id="example::recruitment::p12",
    source_file="recruitment_process.pdf",
    provider="example",
    slide_or_page="p.12",
    text="The recruitment process consists of five key stages: job analysis, sourcing candidates, screening applications, interviewing, and selection. Structured interview formats improve consistency and legal compliance.",
    tokens_est=38,
  ),
)

EXAMPLE_ANALYSIS = {
  "summary": [
    "Organizational culture is the set of shared assumptions, values and beliefs that governs workplace behavior.",
    "Recruitment runs through five stages from job analysis to selection.",
  ],
  "learning_objectives": [
    "Define organizational culture and its effect on member behavior",
    "List the five stages of the recruitment process in order",
    "Explain why structured interviews improve consistency",
  ],
  "key_terms": ["Organizational culture", "Job analysis", "Structured interview"],
  "content_themes": ["Workplace culture", "Recruitment"],
  "estimated_difficulty": "beginner",
}

EXAMPLE_CARDS = {
  "cards": [
    {
      "question": "What is organizational culture?",
      "answer": "A system of shared assumptions, values, and beliefs that governs how people behave in organizations.",
      "rationale": "Core definition the rest of the module builds on.",
      "evidence_quote": "Organizational culture is a system of shared assumptions, values, and beliefs that governs how people behave in organizations.",
      "evidence_chunk_id": "example::culture::p2",
      "bloom_level": "Remember",
      "difficulty": "easy",
      "confidence": 0.97,
      "learning_objective": "Define organizational culture and its effect on member behavior",
    },
    {
      "question": "Why would a hiring team adopt structured interview formats?",
      "answer": "Structured interviews make candidate assessment more consistent and support legal compliance.",
      "rationale": "Asks the learner to connect a practice to its stated benefit.",
      "evidence_quote": "Structured interview formats improve consistency and legal compliance.",
      "evidence_chunk_id": "example::recruitment::p12",
      "bloom_level": "Understand",
      "difficulty": "medium",
      "confidence": 0.93,
      "learning_objective": "Explain why structured interviews improve consistency",
    },
  ]
}


def format_chunks(chunks: Sequence[ContextChunk], *, max_chars: int = MAX_PROMPT_CONTEXT_CHARS) -> str:
  """Render chunks as labelled blocks, stopping before ``max_chars``."""
  blocks: list[str] = []
  used = 0
  for chunk in chunks:
    location = f" ({chunk.location()})" if chunk.location() else ""
    block = f"[{chunk.chunk_id}] {chunk.source_file}{location}\n{chunk.text}"
    if blocks and used + len(block) > max_chars:
      break
    blocks.append(block)
    used += len(block)
  return "\n\n---\n\n".join(blocks)


def _worked_example(output: dict) -> str:
  return f"""EXAMPLE MATERIAL:
{format_chunks(EXAMPLE_CHUNKS)}

EXAMPLE OUTPUT:
{json.dumps(output, indent=2)}

The example only shows the expected shape and grounding. Do not reuse its content."""


def build_analysis_prompt(module_title: str, chunks: Sequence[ContextChunk]) -> str:
  return f"""You are an instructional designer analysing course material for the module "{module_title}".

Read the material below and produce:
- a short summary (3-5 bullet-style sentences),
- 2 to 10 measurable learning objectives that start with an action verb,
- the key terms a learner must know,
- the main content themes,
- an overall difficulty: beginner, intermediate or advanced.

Only use information present in the material.

{_worked_example(EXAMPLE_ANALYSIS)}

MATERIAL:
{format_chunks(chunks)}
"""


def build_generation_prompt(module_title: str, chunks: Sequence[ContextChunk], learning_objectives: Sequence[str], options: GenerationOptions) -> str:
  objectives = "\n".join(f"- {objective}" for objective in learning_objectives) or "- (none provided; infer from the material)"
  bloom = ", ".join(options.bloom_levels) if options.bloom_levels else "a mix of Remember, Understand, Apply, Analyze, Evaluate and Create"
  difficulty = "a balanced mix of easy, medium and hard" if options.difficulty == "mixed" else options.difficulty
  return f"""Create up to {options.target_count} flashcards for the module "{module_title}".

LEARNING OBJECTIVES:
{objectives}

RULES:
- Every card must be answerable from the material alone.
- evidence_quote must be copied verbatim from the material; evidence_chunk_id is the id in square brackets of the block it came from.
- Questions are 10-500 characters; answers are 20-2000 characters and at most 40 words where possible.
- Use Bloom levels from: {bloom}. Difficulty: {difficulty}.
- Do not repeat questions. Produce fewer cards rather than inventing content.

{_worked_example(EXAMPLE_CARDS)}

MATERIAL:
{format_chunks(chunks)}
"""


def build_verification_prompt(card: Card) -> str:
  evidence = "\n\n".join(f"[{item.chunk_id}] {item.text}" for item in card.evidence)
  return f"""Check whether the answer to this flashcard is fully supported by the evidence.

QUESTION: {card.question}
ANSWER: {card.answer}

EVIDENCE:
{evidence}

Set is_supported only when the core claims of the answer are backed by the evidence.
Set hallucination_detected when the answer makes claims the evidence does not contain.
Rate evidence_coverage as full, partial or none and explain the verdict in one sentence.
Be strict: if in doubt, mark the answer as unsupported.
"""
