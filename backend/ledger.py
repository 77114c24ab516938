"""
Claim ledger: the record of which cards the user has claimed
"""

import logging
from typing import Callable, List, Set

from backend.db import Store

logger = logging.getLogger(__name__)


class ClaimLedger:
    """Append-only set of claimed card ids. Claiming twice is a no-op."""

    def __init__(self, store: Store):
        self.store = store
        self._listeners: List[Callable[[str], None]] = []

    def subscribe(self, listener: Callable[[str], None]):
        """Call `listener(card_id)` after each new claim has been written"""
        self._listeners.append(listener)

    def claim(self, card_id: str) -> bool:
        """Claim a card. Returns True for a new claim, False for a repeat."""
        is_new = self.store.claim(card_id)
        if not is_new:
            logger.debug(f"Card {card_id} already claimed")
            return False

        if self.store.get_card(card_id) is None:
            # Claims can land before the card row during streaming; keep the claim anyway
            logger.warning(f"Claimed card {card_id} is not stored yet")
        logger.info(f"Claimed card {card_id}")

        for listener in list(self._listeners):
            listener(card_id)
        return True

    def claim_preview(self, deck_id: str) -> bool:
        """Claim the preview card of a deck. Raises KeyError when the deck has none."""
        card = self.store.get_preview_card(deck_id)
        if card is None:
            raise KeyError(f"No preview card for deck {deck_id}")
        return self.claim(card.id)

    def is_preview_claimed(self, deck_id: str) -> bool:
        card = self.store.get_preview_card(deck_id)
        return card is not None and self.store.is_claimed(card.id)

    def is_claimed(self, card_id: str) -> bool:
        return self.store.is_claimed(card_id)

    def claimed_ids(self) -> Set[str]:
        return self.store.claimed_ids()
