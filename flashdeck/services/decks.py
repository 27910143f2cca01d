"""Read access to persisted decks for the HTTP layer."""

from __future__ import annotations

from fastapi import HTTPException, status

from flashdeck.api.models import CardModel, DeckHistoryResponse, DeckSummaryModel, ModuleFlashcardsResponse
from flashdeck.pipeline.deck_store import DeckStore
from flashdeck.pipeline.models import Deck


async def get_module_flashcards(module_id: str, deck_store: DeckStore, *, include_unverified: bool = False, limit: int | None = None) -> ModuleFlashcardsResponse:
  """Return the newest deck of a module, hiding unverified cards unless asked for."""
  deck = await deck_store.get_latest(module_id)
  if deck is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No flashcards found for module '{module_id}'.")
  return _deck_response(deck, include_unverified=include_unverified, limit=limit)


async def get_deck(deck_id: str, deck_store: DeckStore, *, include_unverified: bool = True, limit: int | None = None) -> ModuleFlashcardsResponse:
  """Return one historical deck by id; all cards are included by default for auditing."""
  deck = await deck_store.get(deck_id)
  if deck is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Deck '{deck_id}' not found.")
  return _deck_response(deck, include_unverified=include_unverified, limit=limit)


def _deck_response(deck: Deck, *, include_unverified: bool, limit: int | None) -> ModuleFlashcardsResponse:
  cards = deck.cards if include_unverified else [card for card in deck.cards if card.verified]
  if limit is not None:
    cards = cards[:limit]
  return ModuleFlashcardsResponse(
    deck_id=deck.deck_id,
    module_id=deck.module_id,
    module_title=deck.module_title,
    cards=[CardModel.model_validate(card.to_dict()) for card in cards],
    card_count=len(cards),
    total_count=deck.card_count,
    verified_count=deck.verified_count,
    verification_rate=deck.verification_rate,
    generated_at=deck.generated_at,
    warnings=list(deck.warnings),
  )


async def list_module_decks(module_id: str, deck_store: DeckStore) -> DeckHistoryResponse:
  summaries = await deck_store.list_decks(module_id)
  if not summaries:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No decks found for module '{module_id}'.")
  decks = [DeckSummaryModel(deck_id=s.deck_id, generated_at=s.generated_at, card_count=s.card_count, verified_count=s.verified_count, verification_rate=s.verification_rate) for s in summaries]
  return DeckHistoryResponse(module_id=module_id, decks=decks)
