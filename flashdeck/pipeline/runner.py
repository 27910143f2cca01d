"""Run the full pipeline for one module and record a stage log."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import TypeVar

from flashdeck.pipeline.content import ContentStore, ModuleContent
from flashdeck.pipeline.deck_store import DeckStore
from flashdeck.pipeline.embeddings import EmbeddingClient, embed_missing_chunks
from flashdeck.pipeline.errors import ContentNotFound, PipelineError, ProviderError
from flashdeck.pipeline.fetcher import ChunkingOptions, DocumentExtractor, prepare_chunks
from flashdeck.pipeline.models import Card, ContextChunk, GenerationOptions, ModuleRunResult, RunStatus, StageBOutput, StageResult
from flashdeck.pipeline.postprocess import postprocess_cards
from flashdeck.pipeline.stage_a import ContentAnalyzer
from flashdeck.pipeline.stage_b import CardGenerator
from flashdeck.pipeline.transcription import Transcriber, media_needing_transcription, transcribe_media
from flashdeck.pipeline.vector_store import QdrantVectorStore
from flashdeck.pipeline.verifier import EvidenceVerifier, VerificationBatch, verify_cards

logger = logging.getLogger(__name__)

T = TypeVar("T")
StageCallback = Callable[[StageResult], Awaitable[None]]

STAGES: tuple[str, ...] = ("ingest", "transcribe", "chunk", "embed", "upsert", "stage_a", "stage_b", "verify", "save")
DEFAULT_STAGE_TIMEOUT = 60.0


@dataclass(frozen=True)
class RunnerSettings:
  min_viable_cards: int = 10
  dedupe_threshold: float = 0.85
  min_higher_order_bloom: int = 3
  chunking: ChunkingOptions = field(default_factory=ChunkingOptions)
  stage_timeouts: Mapping[str, float] = field(default_factory=dict)

  def timeout(self, stage: str) -> float:
    return self.stage_timeouts.get(stage, DEFAULT_STAGE_TIMEOUT)


@dataclass(frozen=True)
class ModuleRunRequest:
  module_id: str
  course_id: str | None = None
  options: GenerationOptions = field(default_factory=GenerationOptions)
  force_all: bool = False
  job_id: str | None = None


class _TerminalFailure(Exception):
  """Ends a run early; remaining stages are logged as skipped."""


class _StageLog:
  def __init__(self, on_stage: StageCallback | None) -> None:
    self.entries: list[StageResult] = []
    self._on_stage = on_stage

  async def record(self, stage: str, status: str, start: float, message: str | None = None) -> None:
    entry = StageResult(stage=stage, status=status, duration_ms=int((time.perf_counter() - start) * 1000), message=message)  # type: ignore[arg-type]
    self.entries.append(entry)
    if self._on_stage is not None:
      await self._on_stage(entry)

  async def skip_remaining(self, reason: str) -> None:
    done = {entry.stage for entry in self.entries}
    for stage in STAGES:
      if stage not in done:
        await self.record(stage, "skipped", time.perf_counter(), reason)

  @property
  def has_failures(self) -> bool:
    return any(entry.status == "failed" for entry in self.entries)


def classify_run(card_count: int, stage_log: list[StageResult], min_viable_cards: int) -> RunStatus:
  """success needs a clean log and enough cards; any cards at all make it partial."""
  if card_count == 0:
    return "failed"
  if card_count >= min_viable_cards and not any(entry.status == "failed" for entry in stage_log):
    return "success"
  return "partial"


class ModuleRunner:
  """Executes ingest → transcribe → chunk → embed → upsert → stage_a → stage_b → verify → save.

  Only missing content and a card-less Stage B end the run as ``failed``. Every other stage
  failure is logged, turned into a deck warning, and the run continues.
  """

  def __init__(self, *, content_store: ContentStore, embedder: EmbeddingClient, vector_store: QdrantVectorStore, analyzer: ContentAnalyzer, generator: CardGenerator, verifier: EvidenceVerifier, deck_store: DeckStore, settings: RunnerSettings | None = None, transcriber: Transcriber | None = None, extractor: DocumentExtractor | None = None) -> None:
    self._content_store = content_store
    self._embedder = embedder
    self._vector_store = vector_store
    self._analyzer = analyzer
    self._generator = generator
    self._verifier = verifier
    self._deck_store = deck_store
    self._settings = settings or RunnerSettings()
    self._transcriber = transcriber
    self._extractor = extractor

  async def _stage(self, log: _StageLog, stage: str, work: Callable[[], Awaitable[T]], describe: Callable[[T], str | None] | None = None) -> T:
    """Run one stage under its timeout and log the outcome; failures are re-raised as PipelineError."""
    timeout = self._settings.timeout(stage)
    start = time.perf_counter()
    try:
      value = await asyncio.wait_for(work(), timeout=timeout)
    except TimeoutError as exc:
      await log.record(stage, "failed", start, f"Timed out after {timeout:g}s")
      raise ProviderError(f"{stage} timed out after {timeout:g}s") from exc
    except PipelineError as exc:
      await log.record(stage, "failed", start, str(exc) or type(exc).__name__)
      raise
    except Exception as exc:
      # SDK and IO errors are normalised so no provider-specific type leaves the run.
      await log.record(stage, "failed", start, str(exc) or type(exc).__name__)
      raise ProviderError(f"{stage} failed: {exc}") from exc
    await log.record(stage, "success", start, describe(value) if describe else None)
    return value

  async def _load_content(self, request: ModuleRunRequest) -> ModuleContent:
    content = await self._content_store.get_module(request.module_id, request.course_id)
    if content is None:
      raise ContentNotFound(f"Module {request.module_id} was not found.")
    if not content.sources:
      raise ContentNotFound(f"Module {request.module_id} has no content sources.")
    return content

  async def _upsert(self, module_id: str, chunks: list[ContextChunk], force_all: bool) -> int:
    if force_all:
      await self._vector_store.delete_module_chunks(module_id)
    return await self._vector_store.upsert_chunks(chunks, module_id)

  async def _generate(self, chunks: list[ContextChunk], content: ModuleContent, objectives: list[str], options: GenerationOptions) -> StageBOutput:
    output = await self._generator.generate(chunks, content.module_id, objectives, options, module_title=content.display_title)
    cards, warnings = postprocess_cards(output.cards, options, dedupe_threshold=self._settings.dedupe_threshold, min_higher_order_bloom=self._settings.min_higher_order_bloom)
    return StageBOutput(cards=cards, warnings=[*output.warnings, *warnings], processing_time_ms=output.processing_time_ms)

  async def run(self, request: ModuleRunRequest, on_stage: StageCallback | None = None) -> ModuleRunResult:
    log = _StageLog(on_stage)
    warnings: list[str] = []
    cards: list[Card] = []
    module_id = request.module_id
    logger.info("Module run started module_id=%s job_id=%s force_all=%s", module_id, request.job_id, request.force_all)

    try:
      try:
        content = await self._stage(log, "ingest", lambda: self._load_content(request), lambda c: f"{len(c.sources)} sources")
      except ContentNotFound as exc:
        raise _TerminalFailure(str(exc)) from exc

      # Media without a transcript is transcribed before chunking.
      pending_media = media_needing_transcription(content)
      if not pending_media or self._transcriber is None:
        reason = "No media awaiting transcription" if not pending_media else "No transcriber configured"
        await log.record("transcribe", "skipped", time.perf_counter(), reason)
      else:
        transcriber = self._transcriber
        try:
          transcribed = await self._stage(log, "transcribe", lambda: transcribe_media(content, transcriber), lambda o: f"{o.transcribed}/{len(pending_media)} media transcribed")
          content = transcribed.content
          warnings.extend(transcribed.warnings)
        except ProviderError as exc:
          warnings.append(f"Transcription failed: {exc}")

      try:
        chunked = await self._stage(log, "chunk", lambda: prepare_chunks(content, self._settings.chunking, self._extractor), lambda o: f"{len(o.chunks)} chunks")
      except ContentNotFound as exc:
        raise _TerminalFailure(str(exc)) from exc
      chunks = chunked.chunks
      warnings.extend(chunked.warnings)

      # Vector writes need embeddings; a failed embed skips the upsert instead of failing the run.
      embedded = False
      try:
        chunks = await self._stage(log, "embed", lambda: embed_missing_chunks(chunks, self._embedder), lambda c: f"{len(c)} chunks embedded")
        embedded = True
      except ProviderError as exc:
        warnings.append(f"Embedding failed: {exc}")

      if embedded:
        try:
          await self._stage(log, "upsert", lambda: self._upsert(module_id, chunks, request.force_all), lambda n: f"{n} points written")
        except ProviderError as exc:
          warnings.append(f"Vector upsert failed: {exc}")
      else:
        await log.record("upsert", "skipped", time.perf_counter(), "Embedding failed")

      # Stage B still runs without objectives when Stage A fails.
      objectives: list[str] = []
      try:
        analysis = await self._stage(log, "stage_a", lambda: self._analyzer.analyze(chunks, module_id, content.display_title), lambda a: f"{len(a.learning_objectives)} objectives")
        objectives = analysis.learning_objectives
      except ProviderError as exc:
        warnings.append(f"Stage A failed: {exc}")

      try:
        generated = await self._stage(log, "stage_b", lambda: self._generate(chunks, content, objectives, request.options), lambda o: f"{len(o.cards)} cards")
        cards = generated.cards
        warnings.extend(generated.warnings)
      except ProviderError as exc:
        warnings.append(f"Stage B failed: {exc}")
      if not cards:
        raise _TerminalFailure("No cards were generated.")

      try:
        batch = await self._stage(log, "verify", lambda: verify_cards(cards, self._verifier), lambda b: f"{b.verified_count}/{len(b.cards)} verified")
      except ProviderError as exc:
        warnings.append(f"Verification failed: {exc}")
        unverified = [replace(card, verified=False, review_required=True) for card in cards]
        batch = VerificationBatch(cards=unverified, verified_count=0, failed_count=len(unverified))
      cards = batch.cards

      # Short decks are still saved but flagged.
      if len(cards) < self._settings.min_viable_cards:
        warnings.append(f"Only {len(cards)} cards generated; at least {self._settings.min_viable_cards} expected")

      saved = await self._stage(log, "save", lambda: self._deck_store.save(module_id=module_id, module_title=content.display_title, cards=cards, verified_count=batch.verified_count, verification_rate=batch.verification_rate, warnings=warnings, course_id=content.course_id, job_id=request.job_id), lambda s: s.deck_id)

    except _TerminalFailure as exc:
      await log.skip_remaining(f"Not run: {exc}")
      logger.warning("Module run failed module_id=%s: %s", module_id, exc)
      return ModuleRunResult(module_id=module_id, status="failed", stage_log=log.entries, warnings=warnings, error=str(exc))
    except (PipelineError, OSError, ValueError) as exc:
      # Save failures or unexpected stage errors leave no persisted deck.
      await log.skip_remaining(f"Not run: {exc}")
      logger.error("Module run aborted module_id=%s", module_id, exc_info=True)
      return ModuleRunResult(module_id=module_id, status="failed", stage_log=log.entries, card_count=len(cards), warnings=warnings, error=str(exc))

    status = classify_run(saved.card_count, log.entries, self._settings.min_viable_cards)
    logger.info("Module run finished module_id=%s status=%s cards=%d verified=%d deck_id=%s", module_id, status, saved.card_count, saved.verified_count, saved.deck_id)
    return ModuleRunResult(module_id=module_id, status=status, stage_log=log.entries, card_count=saved.card_count, verified_count=saved.verified_count, verification_rate=batch.verification_rate, deck_id=saved.deck_id, deck_path=saved.deck_path, warnings=warnings)
