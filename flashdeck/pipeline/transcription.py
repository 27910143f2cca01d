"""Turn recorded media into timed transcript segments."""

from __future__ import annotations

import logging
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

import httpx
from pydantic import TypeAdapter, ValidationError
from starlette.concurrency import run_in_threadpool

from flashdeck.ai.json_parser import parse_json_with_fallback, strip_json_fences
from flashdeck.ai.providers.gemini import GeminiModel
from flashdeck.pipeline.content import DocumentSource, MediaSource, ModuleContent, TranscriptSegment
from flashdeck.pipeline.errors import ProviderError

logger = logging.getLogger(__name__)

_SEGMENTS_ADAPTER = TypeAdapter(list[TranscriptSegment])
_TRANSCRIBE_PROMPT = """Transcribe the attached recording.
Return a JSON array of segments, each {"start_sec": number, "end_sec": number, "text": string}.
Keep segments to one or two sentences, in chronological order, and omit non-speech sounds."""


async def read_source_bytes(source: DocumentSource | MediaSource, *, timeout: float = 60.0) -> tuple[bytes, str]:
  """Load a source's raw bytes from its local path or URL and guess the MIME type."""
  name = source.path or source.url or source.display_name
  mime_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
  if source.path:
    data = await run_in_threadpool(Path(source.path).read_bytes)
    return data, mime_type
  if source.url:
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
      response = await client.get(source.url)
      response.raise_for_status()
      content_type = response.headers.get("content-type", "").split(";")[0].strip()
      return response.content, content_type or mime_type
  raise ProviderError(f"Source {source.source_id} has neither a path nor a URL.")


class Transcriber(ABC):
  """Speech-to-text contract used by the transcribe stage."""

  @abstractmethod
  async def transcribe(self, source: MediaSource) -> list[TranscriptSegment]:
    """Return timed segments for a media source."""


class MockTranscriber(Transcriber):
  """Offline transcriber returning a short canned lecture opening."""

  _LINES = (
    "Welcome to this lecture on {name}.",
    "Today we will discuss the important topics covered in {name}.",
    "We begin with the fundamentals that the rest of the material depends on.",
    "These concepts are essential for understanding the subject as a whole.",
    "Finally we look at practical examples that apply each concept.",
  )

  async def transcribe(self, source: MediaSource) -> list[TranscriptSegment]:
    name = source.title or source.display_name
    step = 7.0
    return [TranscriptSegment(start_sec=index * step, end_sec=(index + 1) * step, text=line.format(name=name)) for index, line in enumerate(self._LINES)]


class GeminiTranscriber(Transcriber):
  """Transcribes audio or video through Gemini's file API."""

  def __init__(self, model: GeminiModel) -> None:
    self._model = model

  async def transcribe(self, source: MediaSource) -> list[TranscriptSegment]:
    try:
      data, mime_type = await read_source_bytes(source)
      uploaded = await self._model.upload_file(data, mime_type, display_name=source.display_name)
      response = await self._model.generate_with_files(_TRANSCRIBE_PROMPT, [uploaded])
      raw = parse_json_with_fallback(strip_json_fences(response.content))
      if isinstance(raw, dict):
        raw = raw.get("segments", [])
      return _SEGMENTS_ADAPTER.validate_python(raw)
    except (httpx.HTTPError, OSError, RuntimeError, ValueError, ValidationError) as exc:
      raise ProviderError(f"Transcription failed for {source.display_name}: {exc}") from exc


@dataclass
class TranscriptionOutcome:
  content: ModuleContent
  transcribed: int = 0
  warnings: list[str] = field(default_factory=list)


def media_needing_transcription(content: ModuleContent) -> list[MediaSource]:
  return [source for source in content.sources if isinstance(source, MediaSource) and not source.transcript]


async def transcribe_media(content: ModuleContent, transcriber: Transcriber) -> TranscriptionOutcome:
  """Fill in transcripts for media sources that lack one; failures become warnings."""
  outcome = TranscriptionOutcome(content=content)
  updated = []
  for source in content.sources:
    if not isinstance(source, MediaSource) or source.transcript:
      updated.append(source)
      continue
    try:
      segments = await transcriber.transcribe(source)
    except ProviderError as exc:
      logger.warning("Transcription failed module_id=%s source=%s: %s", content.module_id, source.source_id, exc)
      outcome.warnings.append(f"Transcription failed for {source.display_name}: {exc}")
      updated.append(source)
      continue
    outcome.transcribed += 1
    updated.append(source.model_copy(update={"transcript": segments}))
  outcome.content = content.model_copy(update={"sources": updated})
  return outcome
