from __future__ import annotations

from sqlalchemy import BigInteger, DateTime, Float, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from flashdeck.core.database import Base


class FlashcardDeck(Base):
  """One immutable deck; rows are inserted once and never updated."""

  __tablename__ = "flashcard_decks"

  deck_id: Mapped[str] = mapped_column(String, primary_key=True)
  module_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  course_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  job_id: Mapped[str | None] = mapped_column(String, nullable=True)
  module_title: Mapped[str] = mapped_column(String, nullable=False)
  generated_at: Mapped[str] = mapped_column(String, nullable=False)
  generated_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
  card_count: Mapped[int] = mapped_column(Integer, nullable=False)
  verified_count: Mapped[int] = mapped_column(Integer, nullable=False)
  verification_rate: Mapped[float] = mapped_column(Float, nullable=False)
  cards_json: Mapped[list] = mapped_column(JSONB, nullable=False)
  warnings_json: Mapped[list] = mapped_column(JSONB, nullable=False)
  created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
