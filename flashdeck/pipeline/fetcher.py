"""Normalise a module's heterogeneous sources into a flat list of ContextChunks."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

import httpx
from starlette.concurrency import run_in_threadpool

from flashdeck.ai.providers.gemini import GeminiModel
from flashdeck.pipeline.chunking import DEFAULT_ENCODING, chunk_document, chunk_transcript, count_tokens
from flashdeck.pipeline.content import DocumentSource, MediaSource, ModuleContent, PrechunkedSource, TranscriptSource
from flashdeck.pipeline.errors import ContentNotFound, ProviderError
from flashdeck.pipeline.models import ContextChunk
from flashdeck.pipeline.transcription import read_source_bytes

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = frozenset({".txt", ".md", ".markdown", ".csv", ".srt", ".vtt"})
_EXTRACT_PROMPT = """Extract all readable text from the attached document.
Keep slide or section headings on their own line and separate slides or sections with a blank line.
Return plain text only."""


@dataclass(frozen=True)
class ChunkingOptions:
  max_chunk_tokens: int = 500
  transcript_max_tokens: int = 800
  transcript_max_seconds: float = 90
  encoding: str = DEFAULT_ENCODING


@dataclass
class ChunkingOutcome:
  chunks: list[ContextChunk] = field(default_factory=list)
  warnings: list[str] = field(default_factory=list)


class DocumentExtractor(ABC):
  """Pulls plain text out of a document that has no inline text."""

  @abstractmethod
  async def extract(self, source: DocumentSource) -> str:
    """Return the document's text."""


class LocalTextExtractor(DocumentExtractor):
  """Reads plain-text formats from disk; anything else is unsupported."""

  async def extract(self, source: DocumentSource) -> str:
    if not source.path or Path(source.path).suffix.lower() not in TEXT_SUFFIXES:
      raise ProviderError(f"No text extractor available for {source.display_name}.")
    try:
      return await run_in_threadpool(Path(source.path).read_text, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
      raise ProviderError(f"Failed to read {source.path}: {exc}") from exc


class GeminiDocumentExtractor(DocumentExtractor):
  """Extracts slide and PDF text through Gemini's file API, falling back to local text files."""

  def __init__(self, model: GeminiModel) -> None:
    self._model = model
    self._local = LocalTextExtractor()

  async def extract(self, source: DocumentSource) -> str:
    if source.path and Path(source.path).suffix.lower() in TEXT_SUFFIXES:
      return await self._local.extract(source)
    try:
      data, mime_type = await read_source_bytes(source)
      uploaded = await self._model.upload_file(data, mime_type, display_name=source.display_name)
      response = await self._model.generate_with_files(_EXTRACT_PROMPT, [uploaded])
    except (httpx.HTTPError, OSError, RuntimeError) as exc:
      raise ProviderError(f"Document extraction failed for {source.display_name}: {exc}") from exc
    return response.content


ChunkHandler = Callable[[ModuleContent, object, ChunkingOptions, DocumentExtractor | None, ChunkingOutcome], Awaitable[None]]


async def _chunk_document(content: ModuleContent, source: DocumentSource, options: ChunkingOptions, extractor: DocumentExtractor | None, outcome: ChunkingOutcome) -> None:
  text = source.text
  if not text:
    if extractor is None:
      outcome.warnings.append(f"Skipped {source.display_name}: no extracted text available.")
      return
    try:
      text = await extractor.extract(source)
    except ProviderError as exc:
      logger.warning("Document extraction failed module_id=%s source=%s: %s", content.module_id, source.source_id, exc)
      outcome.warnings.append(str(exc))
      return
  outcome.chunks.extend(chunk_document(module_id=content.module_id, source_id=source.source_id, source_file=source.display_name, provider=source.resolved_provider, text=text, max_tokens=options.max_chunk_tokens, heading=source.title, encoding=options.encoding))


async def _chunk_media(content: ModuleContent, source: MediaSource, options: ChunkingOptions, extractor: DocumentExtractor | None, outcome: ChunkingOutcome) -> None:
  if not source.transcript:
    outcome.warnings.append(f"Skipped {source.display_name}: no transcript available.")
    return
  outcome.chunks.extend(chunk_transcript(module_id=content.module_id, source_id=source.source_id, source_file=source.display_name, provider=source.resolved_provider, segments=source.transcript, max_tokens=options.transcript_max_tokens, max_seconds=options.transcript_max_seconds))


async def _chunk_transcript(content: ModuleContent, source: TranscriptSource, options: ChunkingOptions, extractor: DocumentExtractor | None, outcome: ChunkingOutcome) -> None:
  outcome.chunks.extend(chunk_transcript(module_id=content.module_id, source_id=source.source_id, source_file=source.display_name, provider=source.resolved_provider, segments=source.segments, max_tokens=options.transcript_max_tokens, max_seconds=options.transcript_max_seconds))


async def _chunk_prechunked(content: ModuleContent, source: PrechunkedSource, options: ChunkingOptions, extractor: DocumentExtractor | None, outcome: ChunkingOutcome) -> None:
  for position, item in enumerate(source.chunks):
    text = item.text.strip()
    if not text:
      continue
    outcome.chunks.append(
      ContextChunk(
        chunk_id=f"{content.module_id}::{source.source_id}::chunk_{position}",
        source_file=source.display_name,
        provider=source.resolved_provider,
        heading=item.heading,
        slide_or_page=item.slide_or_page,
        text=text,
        tokens_est=count_tokens(text, options.encoding),
      )
    )


_HANDLERS: dict[str, ChunkHandler] = {
  "document": _chunk_document,
  "media": _chunk_media,
  "transcript": _chunk_transcript,
  "chunks": _chunk_prechunked,
}


async def prepare_chunks(content: ModuleContent, options: ChunkingOptions | None = None, extractor: DocumentExtractor | None = None) -> ChunkingOutcome:
  """Chunk every source of a module, in manifest order.

  Raises ``ContentNotFound`` when no source yields any text.
  """
  options = options or ChunkingOptions()
  outcome = ChunkingOutcome()
  for source in content.sources:
    await _HANDLERS[source.kind](content, source, options, extractor, outcome)

  # Duplicate ids would collapse into one vector point; keep the first occurrence.
  seen: set[str] = set()
  unique: list[ContextChunk] = []
  for chunk in outcome.chunks:
    if chunk.chunk_id in seen:
      continue
    seen.add(chunk.chunk_id)
    unique.append(chunk)
  outcome.chunks = unique

  if not outcome.chunks:
    raise ContentNotFound(f"Module {content.module_id} has no processable content.")
  logger.info("Prepared %d chunks for module_id=%s from %d sources", len(outcome.chunks), content.module_id, len(content.sources))
  return outcome
