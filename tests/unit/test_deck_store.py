from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from flashdeck.pipeline.deck_store import FileDeckStore, build_deck_id, parse_deck_id
from flashdeck.pipeline.models import Card, Evidence


def _cards(count: int) -> list[Card]:
  return [
    Card(card_id=f"mod-1::card_{index}", question=f"Question {index}?", answer=f"Answer number {index} with detail.", rationale="", evidence=[Evidence(chunk_id="mod-1::s::doc_0", text="text")], bloom_level="Remember", difficulty="easy", verified=index % 2 == 0, review_required=index % 2 == 1)
    for index in range(count)
  ]


def test_deck_id_round_trip_with_colons_in_module_id() -> None:
  deck_id = build_deck_id("course::mod", 1700000000000)

  assert deck_id == "deck::course::mod::1700000000000"
  assert parse_deck_id(deck_id) == ("course::mod", 1700000000000)
  assert parse_deck_id("mod::123") is None
  assert parse_deck_id("deck::mod::abc") is None


@pytest.mark.anyio
async def test_save_never_overwrites_previous_decks(tmp_path: Path) -> None:
  store = FileDeckStore(tmp_path)

  # A frozen clock forces every save onto the same millisecond.
  with patch("flashdeck.pipeline.deck_store.time.time", return_value=1700000000.0):
    first = await store.save(module_id="mod-1", module_title="Module 1", cards=_cards(2), verified_count=1, verification_rate=0.5, warnings=[])
    second = await store.save(module_id="mod-1", module_title="Module 1", cards=_cards(3), verified_count=2, verification_rate=0.6667, warnings=["Only 3 cards generated; at least 10 expected"])

  assert first.deck_id == "deck::mod-1::1700000000000"
  assert second.deck_id == "deck::mod-1::1700000000001"
  assert json.loads(Path(first.deck_path).read_text(encoding="utf-8"))["card_count"] == 2
  assert Path(first.deck_path).parent == Path(second.deck_path).parent
  assert sorted(path.name for path in Path(first.deck_path).parent.iterdir()) == ["1700000000000.json", "1700000000001.json"]


@pytest.mark.anyio
async def test_get_latest_and_history(tmp_path: Path) -> None:
  store = FileDeckStore(tmp_path)
  assert await store.has_deck("mod-1") is False
  assert await store.get_latest("mod-1") is None

  with patch("flashdeck.pipeline.deck_store.time.time", return_value=1700000000.0):
    older = await store.save(module_id="mod-1", module_title="Module 1", cards=_cards(2), verified_count=1, verification_rate=0.5, warnings=[], course_id="course-1", job_id="job-1")
  with patch("flashdeck.pipeline.deck_store.time.time", return_value=1700000005.0):
    newer = await store.save(module_id="mod-1", module_title="Module 1", cards=_cards(4), verified_count=2, verification_rate=0.5, warnings=[])

  latest = await store.get_latest("mod-1")
  assert latest is not None
  assert latest.deck_id == newer.deck_id
  assert latest.card_count == 4
  assert latest.cards[0].evidence[0].chunk_id == "mod-1::s::doc_0"

  loaded = await store.get(older.deck_id)
  assert loaded is not None
  assert loaded.course_id == "course-1"
  assert loaded.job_id == "job-1"
  assert loaded.generated_at == "2023-11-14T22:13:20Z"

  history = await store.list_decks("mod-1")
  assert [summary.deck_id for summary in history] == [newer.deck_id, older.deck_id]
  assert await store.has_deck("mod-1") is True
  assert await store.get("deck::mod-1::42") is None


@pytest.mark.anyio
async def test_similar_module_ids_do_not_share_decks(tmp_path: Path) -> None:
  store = FileDeckStore(tmp_path)

  await store.save(module_id="a_b", module_title="A B", cards=_cards(2), verified_count=1, verification_rate=0.5, warnings=[])

  assert await store.has_deck("a b") is False
  assert await store.get_latest("a b") is None
  latest = await store.get_latest("a_b")
  assert latest is not None
  assert latest.module_id == "a_b"


@pytest.mark.anyio
async def test_dot_module_ids_stay_inside_the_deck_root(tmp_path: Path) -> None:
  root = tmp_path / "decks"
  store = FileDeckStore(root)

  saved = await store.save(module_id="..", module_title="Parent", cards=_cards(1), verified_count=0, verification_rate=0.0, warnings=[])

  assert Path(saved.deck_path).resolve().parent.parent == root.resolve()
  assert (await store.get_latest("..")) is not None


@pytest.mark.anyio
async def test_deck_for_another_module_is_ignored(tmp_path: Path) -> None:
  store = FileDeckStore(tmp_path)
  saved = await store.save(module_id="mod-1", module_title="Module 1", cards=_cards(1), verified_count=0, verification_rate=0.0, warnings=[])
  data = json.loads(Path(saved.deck_path).read_text(encoding="utf-8"))
  data["module_id"] = "mod-2"
  Path(saved.deck_path).write_text(json.dumps(data), encoding="utf-8")

  assert await store.get_latest("mod-1") is None
  assert await store.list_decks("mod-1") == []
