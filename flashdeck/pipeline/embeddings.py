"""Text embedding clients with a fixed, configured dimensionality."""

from __future__ import annotations

import hashlib
import logging
import math
import struct
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import replace

from google import genai
from google.genai import types
from openai import AsyncOpenAI, OpenAIError

from flashdeck.ai.backoff import retry_with_backoff
from flashdeck.pipeline.errors import ProviderError
from flashdeck.pipeline.models import ContextChunk

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 64


class EmbeddingClient(ABC):
  """Maps texts to vectors of length ``dim``, one per input, in input order."""

  dim: int
  batch_size: int = DEFAULT_BATCH_SIZE

  @abstractmethod
  async def _embed_batch(self, texts: list[str]) -> list[list[float]]:
    """Embed one provider-sized batch."""

  async def embed(self, texts: Sequence[str]) -> list[list[float]]:
    vectors: list[list[float]] = []
    for start in range(0, len(texts), self.batch_size):
      batch = list(texts[start : start + self.batch_size])
      embedded = await self._embed_batch(batch)
      if len(embedded) != len(batch):
        raise ProviderError(f"Embedding provider returned {len(embedded)} vectors for {len(batch)} texts.")
      for vector in embedded:
        if len(vector) != self.dim:
          raise ProviderError(f"Embedding dimension mismatch: expected {self.dim}, got {len(vector)}.")
      vectors.extend(embedded)
    return vectors


class MockEmbeddingClient(EmbeddingClient):
  """Deterministic unit vectors derived from the SHA-256 of the text."""

  def __init__(self, dim: int = 768) -> None:
    self.dim = dim

  def _vector(self, text: str) -> list[float]:
    values: list[float] = []
    counter = 0
    seed = text.encode("utf-8")
    while len(values) < self.dim:
      digest = hashlib.sha256(seed + counter.to_bytes(4, "big")).digest()
      for (word,) in struct.iter_unpack(">I", digest):
        values.append(word / 0xFFFFFFFF * 2 - 1)
      counter += 1
    values = values[: self.dim]
    norm = math.sqrt(sum(value * value for value in values)) or 1.0
    return [value / norm for value in values]

  async def _embed_batch(self, texts: list[str]) -> list[list[float]]:
    return [self._vector(text) for text in texts]


class OpenAIEmbeddingClient(EmbeddingClient):
  _DEFAULT_MODEL = "text-embedding-3-small"

  def __init__(self, *, api_key: str, dim: int, model: str | None = None, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
    self.dim = dim
    self.batch_size = batch_size
    self._model = model or self._DEFAULT_MODEL
    self._client = AsyncOpenAI(api_key=api_key)

  async def _embed_batch(self, texts: list[str]) -> list[list[float]]:
    try:
      response = await retry_with_backoff(self._client.embeddings.create, model=self._model, input=texts, dimensions=self.dim)
    except OpenAIError as exc:
      raise ProviderError(f"OpenAI embedding request failed: {exc}") from exc
    ordered = sorted(response.data, key=lambda item: item.index)
    return [list(item.embedding) for item in ordered]


class GeminiEmbeddingClient(EmbeddingClient):
  _DEFAULT_MODEL = "text-embedding-004"

  def __init__(self, *, api_key: str, dim: int, model: str | None = None, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
    self.dim = dim
    self.batch_size = batch_size
    self._model = model or self._DEFAULT_MODEL
    self._client = genai.Client(api_key=api_key)

  async def _embed_batch(self, texts: list[str]) -> list[list[float]]:
    try:
      response = await retry_with_backoff(self._client.aio.models.embed_content, model=self._model, contents=texts, config=types.EmbedContentConfig(output_dimensionality=self.dim, task_type="RETRIEVAL_DOCUMENT"))
    except Exception as exc:
      raise ProviderError(f"Gemini embedding request failed: {exc}") from exc
    return [list(item.values or []) for item in response.embeddings or []]


async def embed_missing_chunks(chunks: Sequence[ContextChunk], client: EmbeddingClient) -> list[ContextChunk]:
  """Return the chunks with vectors attached, embedding only those that lack one."""
  missing = [index for index, chunk in enumerate(chunks) if chunk.embedding is None]
  result = list(chunks)
  if not missing:
    return result

  vectors = await client.embed([chunks[index].text for index in missing])
  for index, vector in zip(missing, vectors, strict=True):
    result[index] = replace(chunks[index], embedding=vector)
  logger.info("Embedded %d of %d chunks", len(missing), len(chunks))
  return result
