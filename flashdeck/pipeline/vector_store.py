"""Qdrant-backed storage of embedded chunks, keyed by chunk id."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from qdrant_client import AsyncQdrantClient, models

from flashdeck.pipeline.embeddings import EmbeddingClient, embed_missing_chunks
from flashdeck.pipeline.errors import ProviderError, UpsertFailed
from flashdeck.pipeline.models import ContextChunk
from flashdeck.utils.ids import point_id_for_chunk

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100


def build_qdrant_client(url: str, api_key: str | None = None) -> AsyncQdrantClient:
  """Create a client; ``:memory:`` runs an in-process store."""
  if url == ":memory:":
    return AsyncQdrantClient(location=":memory:")
  return AsyncQdrantClient(url=url, api_key=api_key)


def _module_filter(module_id: str) -> models.Filter:
  return models.Filter(must=[models.FieldCondition(key="module_id", match=models.MatchValue(value=module_id))])


def _chunk_from_payload(payload: dict) -> ContextChunk:
  return ContextChunk(
    chunk_id=payload["chunk_id"],
    source_file=payload.get("source_file") or "",
    provider=payload.get("provider") or "",
    heading=payload.get("heading"),
    slide_or_page=payload.get("slide_or_page"),
    start_sec=payload.get("start_sec"),
    end_sec=payload.get("end_sec"),
    text=payload.get("text") or "",
    tokens_est=int(payload.get("tokens_est") or 0),
  )


class QdrantVectorStore:
  """Idempotent chunk upserts: the point id is a UUIDv5 of the chunk id."""

  def __init__(self, *, client: AsyncQdrantClient, collection: str, embedder: EmbeddingClient, batch_size: int = MAX_BATCH_SIZE) -> None:
    self._client = client
    self._collection = collection
    self._embedder = embedder
    self._batch_size = min(max(batch_size, 1), MAX_BATCH_SIZE)
    self._collection_ready = False

  @property
  def collection(self) -> str:
    return self._collection

  async def ensure_collection(self) -> None:
    if self._collection_ready:
      return
    # Collection and module_id index are created once per store instance.
    try:
      if not await self._client.collection_exists(self._collection):
        logger.info("Creating Qdrant collection %s (dim=%d, cosine)", self._collection, self._embedder.dim)
        await self._client.create_collection(collection_name=self._collection, vectors_config=models.VectorParams(size=self._embedder.dim, distance=models.Distance.COSINE))
        await self._client.create_payload_index(collection_name=self._collection, field_name="module_id", field_schema=models.PayloadSchemaType.KEYWORD)
    except Exception as exc:
      raise ProviderError(f"Failed to prepare Qdrant collection {self._collection}: {exc}") from exc
    self._collection_ready = True

  async def upsert_chunks(self, chunks: Sequence[ContextChunk], module_id: str) -> int:
    """Write chunks in batches of at most 100 points and return how many were written.

    Earlier batches stay written when a later batch fails with ``UpsertFailed``.
    """
    if not chunks:
      return 0

    # Only chunks without a vector are sent to the embedder.
    embedded = await embed_missing_chunks(chunks, self._embedder)
    await self.ensure_collection()

    written = 0
    for batch_index, start in enumerate(range(0, len(embedded), self._batch_size)):
      batch = embedded[start : start + self._batch_size]
      # Re-upserting the same chunk id overwrites its point.
      points = [models.PointStruct(id=point_id_for_chunk(chunk.chunk_id), vector=chunk.embedding, payload=chunk.to_payload(module_id)) for chunk in batch]
      try:
        await self._client.upsert(collection_name=self._collection, points=points, wait=True)
      except Exception as exc:
        logger.error("Qdrant upsert failed module_id=%s batch=%d written=%d", module_id, batch_index, written)
        raise UpsertFailed(f"Upsert of batch {batch_index} failed: {exc}", batch_index=batch_index) from exc
      written += len(points)

    logger.info("Upserted %d chunks for module_id=%s into %s", written, module_id, self._collection)
    return written

  async def delete_module_chunks(self, module_id: str) -> None:
    await self.ensure_collection()
    try:
      await self._client.delete(collection_name=self._collection, points_selector=models.FilterSelector(filter=_module_filter(module_id)), wait=True)
    except Exception as exc:
      raise ProviderError(f"Failed to delete chunks for module {module_id}: {exc}") from exc
    logger.info("Deleted stored chunks for module_id=%s", module_id)

  async def count_module_chunks(self, module_id: str) -> int:
    await self.ensure_collection()
    result = await self._client.count(collection_name=self._collection, count_filter=_module_filter(module_id), exact=True)
    return result.count

  async def retrieve_module_chunks(self, module_id: str, *, query_vector: list[float] | None = None, limit: int = 20) -> list[ContextChunk]:
    """Return stored chunks for a module, ranked by similarity when a query vector is given."""
    await self.ensure_collection()
    # Without a query vector the scroll returns chunks in storage order.
    if query_vector is not None:
      response = await self._client.query_points(collection_name=self._collection, query=query_vector, query_filter=_module_filter(module_id), limit=limit, with_payload=True)
      points = response.points
    else:
      points, _ = await self._client.scroll(collection_name=self._collection, scroll_filter=_module_filter(module_id), limit=limit, with_payload=True)
    return [_chunk_from_payload(point.payload or {}) for point in points]
