"""Append-only storage for generated decks."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from starlette.concurrency import run_in_threadpool

from flashdeck.pipeline.models import Card, Deck, SavedDeck
from flashdeck.utils.ids import module_storage_key

logger = logging.getLogger(__name__)

DECK_ID_PREFIX = "deck::"


def build_deck_id(module_id: str, timestamp_ms: int) -> str:
  return f"{DECK_ID_PREFIX}{module_id}::{timestamp_ms}"


def parse_deck_id(deck_id: str) -> tuple[str, int] | None:
  if not deck_id.startswith(DECK_ID_PREFIX):
    return None
  # Module ids may contain "::", so the timestamp is split off the right.
  module_id, sep, raw_ts = deck_id[len(DECK_ID_PREFIX) :].rpartition("::")
  if not sep or not module_id or not raw_ts.isdigit():
    return None
  return module_id, int(raw_ts)


def format_generated_at(timestamp_ms: int) -> str:
  return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(timestamp_ms / 1000))


def deck_builder(*, module_id: str, module_title: str, cards: Sequence[Card], verified_count: int, verification_rate: float, warnings: Sequence[str], course_id: str | None, job_id: str | None) -> Callable[[int], Deck]:
  """Return a factory producing the deck for a given save timestamp."""

  def build(timestamp_ms: int) -> Deck:
    return Deck(
      deck_id=build_deck_id(module_id, timestamp_ms),
      module_id=module_id,
      module_title=module_title,
      cards=list(cards),
      card_count=len(cards),
      verified_count=verified_count,
      verification_rate=verification_rate,
      generated_at=format_generated_at(timestamp_ms),
      warnings=list(warnings),
      course_id=course_id,
      job_id=job_id,
    )

  return build


@dataclass(frozen=True)
class DeckSummary:
  deck_id: str
  module_id: str
  generated_at: str
  card_count: int
  verified_count: int
  verification_rate: float
  deck_path: str


class DeckStore(Protocol):
  async def save(self, *, module_id: str, module_title: str, cards: Sequence[Card], verified_count: int, verification_rate: float, warnings: Sequence[str], course_id: str | None = None, job_id: str | None = None) -> SavedDeck:
    """Persist a new immutable deck and return where it was written."""

  async def get(self, deck_id: str) -> Deck | None:
    """Load one deck by id."""

  async def get_latest(self, module_id: str) -> Deck | None:
    """Load the most recent deck of a module."""

  async def list_decks(self, module_id: str) -> list[DeckSummary]:
    """List a module's decks, newest first."""

  async def has_deck(self, module_id: str) -> bool:
    """Whether any deck was ever saved for the module."""


class FileDeckStore:
  """Writes ``<root>/<module key>/<timestamp_ms>.json``; existing files are never replaced."""

  def __init__(self, root: str | Path) -> None:
    self._root = Path(root)

  def _module_dir(self, module_id: str) -> Path:
    return self._root / module_storage_key(module_id)

  def _write_json(self, module_dir: Path, deck: Deck) -> str:
    fd, tmp_name = tempfile.mkstemp(dir=module_dir, prefix=".deck-", suffix=".tmp")
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
      json.dump(deck.to_dict(), handle, ensure_ascii=False, indent=2)
      handle.flush()
      os.fsync(handle.fileno())
    return tmp_name

  def _save_sync(self, build: Callable[[int], Deck], timestamp_ms: int) -> tuple[Deck, Path]:
    """Write a fully formed temp file, then hard-link it into place.

    ``os.link`` refuses to replace an existing file, so a clash bumps the timestamp and retries.
    """
    while True:
      deck = build(timestamp_ms)
      module_dir = self._module_dir(deck.module_id)
      module_dir.mkdir(parents=True, exist_ok=True)
      target = module_dir / f"{timestamp_ms}.json"
      # Cheap pre-check; the link below is what actually guards the name.
      if target.exists():
        timestamp_ms += 1
        continue
      tmp_name = self._write_json(module_dir, deck)
      try:
        os.link(tmp_name, target)
        return deck, target
      except FileExistsError:
        timestamp_ms += 1
      finally:
        Path(tmp_name).unlink(missing_ok=True)

  async def save(self, *, module_id: str, module_title: str, cards: Sequence[Card], verified_count: int, verification_rate: float, warnings: Sequence[str], course_id: str | None = None, job_id: str | None = None) -> SavedDeck:
    build = deck_builder(module_id=module_id, module_title=module_title, cards=cards, verified_count=verified_count, verification_rate=verification_rate, warnings=warnings, course_id=course_id, job_id=job_id)
    deck, path = await run_in_threadpool(self._save_sync, build, int(time.time() * 1000))
    logger.info("Saved deck %s with %d cards to %s", deck.deck_id, deck.card_count, path)
    return SavedDeck(deck_id=deck.deck_id, deck_path=str(path), card_count=deck.card_count, verified_count=verified_count)

  def _deck_files(self, module_id: str) -> list[Path]:
    module_dir = self._module_dir(module_id)
    if not module_dir.is_dir():
      return []
    # Temp files and stray names are skipped; newest timestamp first.
    files = [path for path in module_dir.glob("*.json") if path.stem.isdigit()]
    return sorted(files, key=lambda path: int(path.stem), reverse=True)

  async def _load(self, path: Path, module_id: str) -> Deck | None:
    data: dict[str, Any] = json.loads(await run_in_threadpool(path.read_text, encoding="utf-8"))
    deck = Deck.from_dict(data)
    if deck.module_id != module_id:
      logger.warning("Ignoring deck file %s: belongs to module %s, not %s", path, deck.module_id, module_id)
      return None
    return deck

  async def get(self, deck_id: str) -> Deck | None:
    parsed = parse_deck_id(deck_id)
    if parsed is None:
      return None
    module_id, timestamp_ms = parsed
    path = self._module_dir(module_id) / f"{timestamp_ms}.json"
    # A well-formed id for a deck that was never written is just a miss.
    if not path.is_file():
      return None
    return await self._load(path, module_id)

  async def get_latest(self, module_id: str) -> Deck | None:
    for path in self._deck_files(module_id):
      deck = await self._load(path, module_id)
      if deck is not None:
        return deck
    return None

  async def has_deck(self, module_id: str) -> bool:
    return bool(self._deck_files(module_id))

  async def list_decks(self, module_id: str) -> list[DeckSummary]:
    summaries: list[DeckSummary] = []
    for path in self._deck_files(module_id):
      deck = await self._load(path, module_id)
      if deck is None:
        continue
      summaries.append(DeckSummary(deck_id=deck.deck_id, module_id=deck.module_id, generated_at=deck.generated_at, card_count=deck.card_count, verified_count=deck.verified_count, verification_rate=deck.verification_rate, deck_path=str(path)))
    return summaries
