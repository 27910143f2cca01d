"""Postgres-backed deck store using SQLAlchemy."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flashdeck.core.database import get_session_factory
from flashdeck.pipeline.deck_store import DeckSummary, deck_builder, parse_deck_id
from flashdeck.pipeline.models import Card, Deck, SavedDeck
from flashdeck.schema.decks import FlashcardDeck

logger = logging.getLogger(__name__)

MAX_SAVE_ATTEMPTS = 50


def _deck_path(deck_id: str) -> str:
  return f"{FlashcardDeck.__tablename__}/{deck_id}"


class PostgresDeckStore:
  """Insert-only deck rows keyed by ``deck_id``; a primary-key clash bumps the timestamp."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    session_factory = session_factory or get_session_factory()
    if session_factory is None:
      raise RuntimeError("Database not initialized")
    self._session_factory = session_factory

  async def save(self, *, module_id: str, module_title: str, cards: Sequence[Card], verified_count: int, verification_rate: float, warnings: Sequence[str], course_id: str | None = None, job_id: str | None = None) -> SavedDeck:
    build = deck_builder(module_id=module_id, module_title=module_title, cards=cards, verified_count=verified_count, verification_rate=verification_rate, warnings=warnings, course_id=course_id, job_id=job_id)
    timestamp_ms = int(time.time() * 1000)
    for _ in range(MAX_SAVE_ATTEMPTS):
      deck = build(timestamp_ms)
      async with self._session_factory() as session:
        session.add(self._deck_to_row(deck, timestamp_ms))
        # A primary-key clash means another save took this millisecond.
        try:
          await session.commit()
        except IntegrityError:
          await session.rollback()
          timestamp_ms += 1
          continue
      logger.info("Saved deck %s with %d cards to %s", deck.deck_id, deck.card_count, FlashcardDeck.__tablename__)
      return SavedDeck(deck_id=deck.deck_id, deck_path=_deck_path(deck.deck_id), card_count=deck.card_count, verified_count=verified_count)
    raise RuntimeError(f"Could not allocate a deck id for module {module_id} after {MAX_SAVE_ATTEMPTS} attempts.")

  async def get(self, deck_id: str) -> Deck | None:
    parsed = parse_deck_id(deck_id)
    if parsed is None:
      return None
    async with self._session_factory() as session:
      row = await session.get(FlashcardDeck, deck_id)
    # The id prefix and the stored module must agree.
    if row is None or row.module_id != parsed[0]:
      return None
    return self._row_to_deck(row)

  async def get_latest(self, module_id: str) -> Deck | None:
    async with self._session_factory() as session:
      stmt = select(FlashcardDeck).where(FlashcardDeck.module_id == module_id).order_by(FlashcardDeck.generated_at_ms.desc()).limit(1)
      row = (await session.execute(stmt)).scalars().first()
    return self._row_to_deck(row) if row is not None else None

  async def list_decks(self, module_id: str) -> list[DeckSummary]:
    async with self._session_factory() as session:
      stmt = select(FlashcardDeck).where(FlashcardDeck.module_id == module_id).order_by(FlashcardDeck.generated_at_ms.desc())
      rows = (await session.execute(stmt)).scalars().all()
    return [
      DeckSummary(deck_id=row.deck_id, module_id=row.module_id, generated_at=row.generated_at, card_count=row.card_count, verified_count=row.verified_count, verification_rate=row.verification_rate, deck_path=_deck_path(row.deck_id))
      for row in rows
    ]

  async def has_deck(self, module_id: str) -> bool:
    async with self._session_factory() as session:
      total = await session.scalar(select(func.count()).select_from(FlashcardDeck).where(FlashcardDeck.module_id == module_id))
    return int(total or 0) > 0

  def _deck_to_row(self, deck: Deck, timestamp_ms: int) -> FlashcardDeck:
    return FlashcardDeck(
      deck_id=deck.deck_id,
      module_id=deck.module_id,
      course_id=deck.course_id,
      job_id=deck.job_id,
      module_title=deck.module_title,
      generated_at=deck.generated_at,
      generated_at_ms=timestamp_ms,
      card_count=deck.card_count,
      verified_count=deck.verified_count,
      verification_rate=deck.verification_rate,
      cards_json=[card.to_dict() for card in deck.cards],
      warnings_json=list(deck.warnings),
    )

  def _row_to_deck(self, row: FlashcardDeck) -> Deck:
    return Deck(
      deck_id=row.deck_id,
      module_id=row.module_id,
      module_title=row.module_title,
      cards=[Card.from_dict(item) for item in row.cards_json or []],
      card_count=row.card_count,
      verified_count=row.verified_count,
      verification_rate=row.verification_rate,
      generated_at=row.generated_at,
      warnings=list(row.warnings_json or []),
      course_id=row.course_id,
      job_id=row.job_id,
    )
