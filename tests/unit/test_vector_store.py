from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from qdrant_client import AsyncQdrantClient

from flashdeck.pipeline.embeddings import MockEmbeddingClient
from flashdeck.pipeline.errors import UpsertFailed
from flashdeck.pipeline.models import ContextChunk
from flashdeck.pipeline.vector_store import QdrantVectorStore
from flashdeck.utils.ids import point_id_for_chunk


def _chunks(count: int, module_id: str = "mod-1") -> list[ContextChunk]:
  return [ContextChunk(chunk_id=f"{module_id}::src::doc_{index}", source_file="notes.md", provider="local", text=f"Statement number {index} about cells.", tokens_est=6) for index in range(count)]


def _mock_client() -> MagicMock:
  client = MagicMock()
  client.collection_exists = AsyncMock(return_value=True)
  client.upsert = AsyncMock()
  return client


@pytest.mark.anyio
async def test_upsert_splits_into_batches_of_at_most_100() -> None:
  client = _mock_client()
  store = QdrantVectorStore(client=client, collection="chunks", embedder=MockEmbeddingClient(dim=4))

  written = await store.upsert_chunks(_chunks(250), "mod-1")

  assert written == 250
  sizes = [len(call.kwargs["points"]) for call in client.upsert.await_args_list]
  assert sizes == [100, 100, 50]
  first_point = client.upsert.await_args_list[0].kwargs["points"][0]
  assert first_point.id == point_id_for_chunk("mod-1::src::doc_0")
  assert first_point.payload["module_id"] == "mod-1"
  assert len(first_point.vector) == 4


@pytest.mark.anyio
async def test_batch_size_is_capped_at_100() -> None:
  client = _mock_client()
  store = QdrantVectorStore(client=client, collection="chunks", embedder=MockEmbeddingClient(dim=4), batch_size=500)

  await store.upsert_chunks(_chunks(150), "mod-1")

  assert [len(call.kwargs["points"]) for call in client.upsert.await_args_list] == [100, 50]


@pytest.mark.anyio
async def test_failed_batch_reports_index_and_keeps_earlier_batches() -> None:
  client = _mock_client()
  client.upsert = AsyncMock(side_effect=[None, RuntimeError("connection reset")])
  store = QdrantVectorStore(client=client, collection="chunks", embedder=MockEmbeddingClient(dim=4))

  with pytest.raises(UpsertFailed) as exc_info:
    await store.upsert_chunks(_chunks(150), "mod-1")

  assert exc_info.value.batch_index == 1
  assert client.upsert.await_count == 2


@pytest.mark.anyio
async def test_already_embedded_chunks_are_not_re_embedded() -> None:
  client = _mock_client()
  embedder = MockEmbeddingClient(dim=4)
  embedder.embed = AsyncMock(wraps=embedder.embed)  # type: ignore[method-assign]
  store = QdrantVectorStore(client=client, collection="chunks", embedder=embedder)
  chunks = _chunks(3)
  chunks[0].embedding = [1.0, 0.0, 0.0, 0.0]

  await store.upsert_chunks(chunks, "mod-1")

  embedder.embed.assert_awaited_once()
  assert embedder.embed.await_args.args[0] == [chunks[1].text, chunks[2].text]


@pytest.mark.anyio
async def test_in_memory_upsert_is_idempotent_per_chunk_id() -> None:
  client = AsyncQdrantClient(location=":memory:")
  store = QdrantVectorStore(client=client, collection="chunks", embedder=MockEmbeddingClient(dim=8))

  await store.upsert_chunks(_chunks(5), "mod-1")
  await store.upsert_chunks(_chunks(5), "mod-1")
  await store.upsert_chunks(_chunks(2, module_id="mod-2"), "mod-2")

  assert await store.count_module_chunks("mod-1") == 5
  assert await store.count_module_chunks("mod-2") == 2

  retrieved = await store.retrieve_module_chunks("mod-2")
  assert sorted(chunk.chunk_id for chunk in retrieved) == ["mod-2::src::doc_0", "mod-2::src::doc_1"]

  await store.delete_module_chunks("mod-1")
  assert await store.count_module_chunks("mod-1") == 0
  assert await store.count_module_chunks("mod-2") == 2
