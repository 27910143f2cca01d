"""Split documents and transcripts into ContextChunks with deterministic ids."""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Sequence
from functools import lru_cache

import tiktoken
from chonkie import RecursiveChunker

from flashdeck.pipeline.content import TranscriptSegment
from flashdeck.pipeline.models import ContextChunk

DEFAULT_ENCODING = "cl100k_base"
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_SENTENCE_END = re.compile(r"[.!?][\"')\]]*\s*$")
_NOISE_MARKERS = re.compile(r"\[[^\]]*\]|\([^)]*\)")
_WHITESPACE = re.compile(r"\s+")


@lru_cache(maxsize=4)
def get_encoding(name: str = DEFAULT_ENCODING) -> tiktoken.Encoding:
  return tiktoken.get_encoding(name)


def count_tokens(text: str, encoding: str = DEFAULT_ENCODING) -> int:
  """Exact token count under a tiktoken encoding."""
  return len(get_encoding(encoding).encode_ordinary(text))


def estimate_tokens(text: str) -> int:
  """Approximate token count for spoken text (about 1.33 tokens per word)."""
  return math.ceil(len(text.split()) * 1.33)


def split_sentences(text: str) -> list[str]:
  return [sentence.strip() for sentence in _SENTENCE_SPLIT.split(text) if sentence.strip()]


def format_timestamp(seconds: float) -> str:
  total = int(seconds)
  return f"{total // 3600:02d}:{(total % 3600) // 60:02d}:{total % 60:02d}"


def format_time_range(start_sec: float, end_sec: float) -> str:
  return f"{format_timestamp(start_sec)}-{format_timestamp(end_sec)}"


def transcript_chunk_id(module_id: str, source_id: str, start_sec: float, end_sec: float) -> str:
  return f"{module_id}::{source_id}::chunk_{int(start_sec * 1000)}-{int(end_sec * 1000)}"


def document_chunk_id(module_id: str, source_id: str, position: int) -> str:
  return f"{module_id}::{source_id}::doc_{position}"


@lru_cache(maxsize=16)
def _document_chunker(max_tokens: int, encoding: str) -> RecursiveChunker:
  # Paragraphs, then sentences, then words, each level only where the previous one overflows.
  return RecursiveChunker(get_encoding(encoding), chunk_size=max_tokens)


def split_text(text: str, max_tokens: int, encoding: str = DEFAULT_ENCODING) -> list[str]:
  """Split ``text`` into pieces of at most ``max_tokens`` tokens with chonkie's recursive chunker."""
  if not text.strip():
    return []
  pieces: list[str] = []
  for chunk in _document_chunker(max(max_tokens, 1), encoding).chunk(text):
    piece = chunk.text.strip()
    if piece:
      pieces.append(piece)
  return pieces


def chunk_document(*, module_id: str, source_id: str, source_file: str, provider: str, text: str, max_tokens: int, heading: str | None = None, encoding: str = DEFAULT_ENCODING) -> list[ContextChunk]:
  chunks: list[ContextChunk] = []
  for position, piece in enumerate(split_text(text, max_tokens, encoding)):
    chunks.append(
      ContextChunk(
        chunk_id=document_chunk_id(module_id, source_id, position),
        source_file=source_file,
        provider=provider,
        heading=heading,
        slide_or_page=f"part {position + 1}",
        text=piece,
        tokens_est=count_tokens(piece, encoding),
      )
    )
  return chunks


def clean_segment_text(text: str) -> str:
  """Drop bracketed annotations like [Music] or (inaudible) and normalise whitespace."""
  return _WHITESPACE.sub(" ", _NOISE_MARKERS.sub("", text)).strip()


def _split_large_segment(segment: TranscriptSegment, max_tokens: int) -> list[TranscriptSegment]:
  """Divide one segment at sentence boundaries, spreading its duration evenly."""
  sentences = split_sentences(segment.text)
  groups: list[str] = []
  current = ""
  for sentence in sentences:
    candidate = f"{current} {sentence}".strip()
    if current and estimate_tokens(candidate) > max_tokens:
      groups.append(current)
      current = sentence
    else:
      current = candidate
  if current:
    groups.append(current)
  if len(groups) <= 1:
    return [segment]

  step = (segment.end_sec - segment.start_sec) / len(groups)
  parts: list[TranscriptSegment] = []
  for index, text in enumerate(groups):
    start = round(segment.start_sec + index * step, 2)
    end = segment.end_sec if index == len(groups) - 1 else round(segment.start_sec + (index + 1) * step, 2)
    parts.append(TranscriptSegment(start_sec=start, end_sec=end, text=text))
  return parts


def preprocess_segments(segments: Iterable[TranscriptSegment], max_tokens: int) -> list[TranscriptSegment]:
  processed: list[TranscriptSegment] = []
  for segment in segments:
    if segment.end_sec <= segment.start_sec:
      continue
    text = clean_segment_text(segment.text)
    if not text:
      continue
    cleaned = TranscriptSegment(start_sec=round(segment.start_sec, 2), end_sec=round(segment.end_sec, 2), text=text)
    if estimate_tokens(text) > max_tokens:
      processed.extend(_split_large_segment(cleaned, max_tokens))
    else:
      processed.append(cleaned)
  return processed


def chunk_transcript(*, module_id: str, source_id: str, source_file: str, provider: str, segments: Sequence[TranscriptSegment], max_tokens: int, max_seconds: float, preserve_sentences: bool = True) -> list[ContextChunk]:
  """Merge timed segments into chunks bounded by token count and duration."""
  chunks: list[ContextChunk] = []
  texts: list[str] = []
  start = end = 0.0
  tokens = 0

  def flush() -> None:
    nonlocal texts, tokens
    text = " ".join(texts).strip()
    if text:
      chunks.append(
        ContextChunk(
          chunk_id=transcript_chunk_id(module_id, source_id, start, end),
          source_file=source_file,
          provider=provider,
          slide_or_page=format_time_range(start, end),
          start_sec=round(start, 2),
          end_sec=round(end, 2),
          text=text,
          tokens_est=estimate_tokens(text),
        )
      )
    texts = []
    tokens = 0

  for segment in preprocess_segments(segments, max_tokens):
    segment_tokens = estimate_tokens(segment.text)
    if texts:
      over_tokens = tokens + segment_tokens > max_tokens
      over_duration = segment.end_sec - start > max_seconds
      if over_tokens or over_duration:
        clean_break = bool(_SENTENCE_END.search(texts[-1])) or segment.text[:1].isupper()
        # Mid-sentence splits only happen once the chunk is well past its token budget.
        if not preserve_sentences or clean_break or (over_tokens and tokens > max_tokens * 0.7):
          flush()
    if not texts:
      start = segment.start_sec
    texts.append(segment.text)
    tokens += segment_tokens
    end = segment.end_sec

  flush()
  return chunks
