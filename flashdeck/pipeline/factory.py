"""Build pipeline collaborators from runtime settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from qdrant_client import AsyncQdrantClient

from flashdeck.ai.providers.base import AIModel
from flashdeck.ai.providers.gemini import GeminiModel, GeminiProvider
from flashdeck.ai.providers.openrouter import OpenRouterProvider
from flashdeck.config import Settings
from flashdeck.pipeline.content import FileContentStore
from flashdeck.pipeline.deck_store import DeckStore, FileDeckStore
from flashdeck.pipeline.embeddings import EmbeddingClient, GeminiEmbeddingClient, MockEmbeddingClient, OpenAIEmbeddingClient
from flashdeck.pipeline.fetcher import ChunkingOptions, DocumentExtractor, GeminiDocumentExtractor, LocalTextExtractor
from flashdeck.pipeline.runner import ModuleRunner, RunnerSettings
from flashdeck.pipeline.stage_a import ContentAnalyzer, LLMContentAnalyzer, MockContentAnalyzer
from flashdeck.pipeline.stage_b import CardGenerator, LLMCardGenerator, MockCardGenerator
from flashdeck.pipeline.transcription import GeminiTranscriber, MockTranscriber, Transcriber
from flashdeck.pipeline.vector_store import QdrantVectorStore, build_qdrant_client
from flashdeck.pipeline.verifier import EvidenceVerifier, HeuristicVerifier, LLMVerifier
from flashdeck.storage.postgres_deck_store import PostgresDeckStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineComponents:
  analyzer: ContentAnalyzer
  generator: CardGenerator
  verifier: EvidenceVerifier
  embedder: EmbeddingClient
  transcriber: Transcriber | None
  extractor: DocumentExtractor


@lru_cache(maxsize=4)
def _qdrant_client(url: str, api_key: str | None) -> AsyncQdrantClient:
  # One client per location so an in-memory collection survives across runs.
  return build_qdrant_client(url, api_key)


def build_llm_model(settings: Settings) -> AIModel:
  """Return the configured generation model; only valid in real mode."""
  if settings.llm_provider == "openrouter":
    return OpenRouterProvider(api_key=settings.openrouter_api_key).get_model(settings.llm_model)
  return GeminiProvider(api_key=settings.gemini_api_key).get_model(settings.llm_model)


def build_embedding_client(settings: Settings) -> EmbeddingClient:
  if settings.embedding_provider == "openai":
    return OpenAIEmbeddingClient(api_key=settings.openai_api_key or "", dim=settings.embedding_dim, model=settings.embedding_model, batch_size=settings.embedding_batch_size)
  if settings.embedding_provider == "gemini":
    return GeminiEmbeddingClient(api_key=settings.gemini_api_key or "", dim=settings.embedding_dim, model=settings.embedding_model, batch_size=settings.embedding_batch_size)
  return MockEmbeddingClient(dim=settings.embedding_dim)


def build_components(settings: Settings) -> PipelineComponents:
  """Wire mock or provider-backed stages according to ``FLASHDECK_LLM_MODE``."""
  embedder = build_embedding_client(settings)
  if settings.llm_mode == "mock":
    logger.info("Pipeline running with mock providers (fail stages: %s)", ", ".join(sorted(settings.mock_fail_stages)) or "none")
    return PipelineComponents(
      analyzer=MockContentAnalyzer(fail="stage_a" in settings.mock_fail_stages),
      generator=MockCardGenerator(),
      verifier=HeuristicVerifier(),
      embedder=embedder,
      transcriber=MockTranscriber(),
      extractor=LocalTextExtractor(),
    )

  model = build_llm_model(settings)
  verifier: EvidenceVerifier = LLMVerifier(model) if settings.verifier_mode == "llm" else HeuristicVerifier()
  # Media and binary documents go through Gemini's file API whenever a key is present.
  gemini: GeminiModel | None = None
  if settings.gemini_api_key:
    gemini = model if isinstance(model, GeminiModel) else GeminiProvider(api_key=settings.gemini_api_key).get_model()
  extractor: DocumentExtractor = GeminiDocumentExtractor(gemini) if gemini is not None and settings.extract_documents else LocalTextExtractor()
  return PipelineComponents(
    analyzer=LLMContentAnalyzer(model),
    generator=LLMCardGenerator(model),
    verifier=verifier,
    embedder=embedder,
    transcriber=GeminiTranscriber(gemini) if gemini is not None else None,
    extractor=extractor,
  )


def build_vector_store(settings: Settings, embedder: EmbeddingClient) -> QdrantVectorStore:
  return QdrantVectorStore(client=_qdrant_client(settings.qdrant_url, settings.qdrant_api_key), collection=settings.qdrant_collection, embedder=embedder)


def build_runner_settings(settings: Settings) -> RunnerSettings:
  return RunnerSettings(
    min_viable_cards=settings.min_viable_cards,
    dedupe_threshold=settings.dedupe_threshold,
    min_higher_order_bloom=settings.min_higher_order_bloom,
    chunking=ChunkingOptions(max_chunk_tokens=settings.max_chunk_tokens, transcript_max_tokens=settings.transcript_max_tokens, transcript_max_seconds=settings.transcript_max_seconds, encoding=settings.chunk_encoding),
    stage_timeouts=dict(settings.stage_timeouts),
  )


def build_content_store(settings: Settings) -> FileContentStore:
  return FileContentStore(settings.content_dir)


def build_deck_store(settings: Settings) -> DeckStore:
  """Postgres when a DSN is configured, otherwise JSON files under ``FLASHDECK_DECK_DIR``."""
  if settings.pg_dsn:
    return PostgresDeckStore()
  return FileDeckStore(settings.deck_dir)


def build_module_runner(settings: Settings) -> ModuleRunner:
  components = build_components(settings)
  return ModuleRunner(
    content_store=build_content_store(settings),
    embedder=components.embedder,
    vector_store=build_vector_store(settings, components.embedder),
    analyzer=components.analyzer,
    generator=components.generator,
    verifier=components.verifier,
    deck_store=build_deck_store(settings),
    settings=build_runner_settings(settings),
    transcriber=components.transcriber,
    extractor=components.extractor,
  )
