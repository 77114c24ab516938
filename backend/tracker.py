"""
Tier completion tracker for Deckwise

Each (deck, tier) walks locked -> unlockable -> unlocked -> complete and never
goes back. The status is recomputed from the stored card stubs, the claim set
and the persisted unlock flags, so there is no counter to drift.
"""

import logging
from typing import Callable, Dict, List, Optional

from backend.db import Store
from backend.models import DeckProgress, TierProgress, status_rank, validate_tier
from utils.config import CARDS_PER_TIER, TIERS, previous_tier, next_tier

logger = logging.getLogger(__name__)

TransitionListener = Callable[[str, str, str, str], None]


class TierLockedError(Exception):
    """Unlock requested for a tier whose previous tier is not complete"""
    pass


class TierCompletionTracker:

    def __init__(self, store: Store, is_generating: Optional[Callable[[str, str], bool]] = None):
        self.store = store
        # Tiers still streaming cannot complete: their total is not final
        self.is_generating = is_generating or (lambda deck_id, tier: False)
        self._listeners: List[TransitionListener] = []

    def on_transition(self, listener: TransitionListener):
        """`listener(deck_id, tier, old_status, new_status)` for every advance"""
        self._listeners.append(listener)

    def counts(self, deck_id: str, tier: str, claimed_ids=None) -> TierProgress:
        cards = self.store.get_tier_cards(deck_id, tier) or []
        claimed_ids = self.store.claimed_ids() if claimed_ids is None else claimed_ids
        claimed = sum(1 for card in cards if card.id in claimed_ids)
        total = len(cards)
        return TierProgress(claimed=claimed, total=total, complete=total > 0 and claimed == total)

    def completion(self, deck_id: str) -> Dict[str, TierProgress]:
        """(claimed, total, complete, status) for every tier of a deck"""
        claimed_ids = self.store.claimed_ids()
        result = {}
        for tier in TIERS:
            progress = self.counts(deck_id, tier, claimed_ids)
            progress.status = self.store.get_tier_unlock_status(deck_id, tier)
            result[tier] = progress
        return result

    def in_progress_decks(self) -> List[DeckProgress]:
        """Decks with at least one claimed tier card but not all of them, most recent claim first"""
        last_claimed: Dict[str, str] = {}
        for card_id in self.store.claimed_ids():
            card = self.store.get_card(card_id)
            if card is None or card.tier not in TIERS:
                continue
            claimed_at = self.store.get_claim(card_id).claimed_at
            if claimed_at > last_claimed.get(card.deck_id, ""):
                last_claimed[card.deck_id] = claimed_at

        # Totals count every tier, generated or not
        expected = CARDS_PER_TIER * len(TIERS)
        decks = []
        for deck_id, claimed_at in last_claimed.items():
            tiers = list(self.completion(deck_id).values())
            claimed = sum(p.claimed for p in tiers)
            if claimed < expected:
                decks.append(DeckProgress(
                    deck_id=deck_id,
                    claimed=claimed,
                    total=expected,
                    generated=sum(p.total for p in tiers),
                    last_claimed_at=claimed_at,
                ))
        decks.sort(key=lambda d: d.last_claimed_at, reverse=True)
        return decks

    def status(self, deck_id: str, tier: str) -> str:
        return self.store.get_tier_unlock_status(deck_id, validate_tier(tier))

    def _advance(self, deck_id: str, tier: str, new_status: str) -> bool:
        old_status = self.store.get_tier_unlock_status(deck_id, tier)
        if status_rank(new_status) <= status_rank(old_status):
            return False
        self.store.set_tier_unlock_status(deck_id, tier, new_status)
        logger.info(f"Tier {deck_id}/{tier}: {old_status} -> {new_status}")
        for listener in list(self._listeners):
            listener(deck_id, tier, old_status, new_status)
        return True

    def recompute(self, deck_id: str, requested_tier: Optional[str] = None) -> Dict[str, TierProgress]:
        """
        Apply every transition the current data allows, tier by tier.

        Core unlocks by itself once it has cards. A deep dive only unlocks
        automatically when the user asked for it (`requested_tier`); content
        pre-generated in the background stays behind the unlock gate.
        """
        claimed_ids = self.store.claimed_ids()
        previous_complete = True  # core has no gate

        for tier in TIERS:
            progress = self.counts(deck_id, tier, claimed_ids)
            status = self.store.get_tier_unlock_status(deck_id, tier)

            auto_unlock = tier == TIERS[0] or tier == requested_tier
            if status == "unlockable" and progress.total > 0 and previous_complete and auto_unlock:
                self._advance(deck_id, tier, "unlocked")
                status = "unlocked"

            if status == "unlocked" and progress.complete and not self.is_generating(deck_id, tier):
                self._advance(deck_id, tier, "complete")
                status = "complete"

            following = next_tier(tier)
            if status == "complete" and following is not None:
                self._advance(deck_id, following, "unlockable")

            previous_complete = status == "complete"

        return self.completion(deck_id)

    def unlock(self, deck_id: str, tier: str) -> str:
        """Explicit user unlock. Already-unlocked tiers are left alone."""
        validate_tier(tier)
        status = self.store.get_tier_unlock_status(deck_id, tier)
        if status == "locked":
            gate = previous_tier(tier)
            raise TierLockedError(f"Tier {tier} of {deck_id} is locked until {gate} is complete")
        self._advance(deck_id, tier, "unlocked")
        return self.store.get_tier_unlock_status(deck_id, tier)
