"""
In-memory implementation of the Store contract.
Used by tests and throwaway sessions; nothing survives the process.
"""

from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple, Union

from backend.db import Store, StoreError, tier_card_number
from backend.models import (
    Article, CardStub, ClaimRecord, DeckNode, initial_status, validate_tier,
)
from backend.taxonomy import card_id_prefix
from utils.config import CARDS_PER_TIER, PREVIEW_TIER


class MemoryStore(Store):

    def __init__(self):
        self.clear_all()

    def clear_all(self) -> None:
        self._decks: Dict[str, DeckNode] = {}
        self._children: Dict[str, List[str]] = {}
        self._cards: Dict[str, CardStub] = {}
        self._tiers: Dict[Tuple[str, str], List[str]] = {}
        self._previews: Dict[str, str] = {}
        self._claims: Dict[str, ClaimRecord] = {}
        self._unlock: Dict[Tuple[str, str], str] = {}
        self._sequences: Dict[str, int] = {}
        self._archetype: Optional[str] = None

    def _with_kind(self, node: DeckNode) -> DeckNode:
        child_ids = self._children.get(node.id)
        if child_ids is None:
            kind = "unresolved"
        else:
            kind = "category" if child_ids else "article"
        return replace(node, kind=kind)

    def get_deck(self, deck_id: str) -> Optional[DeckNode]:
        node = self._decks.get(deck_id)
        return self._with_kind(node) if node else None

    def save_deck(self, node: DeckNode) -> None:
        self._decks.setdefault(node.id, node)

    def get_children(self, deck_id: str) -> Optional[List[DeckNode]]:
        child_ids = self._children.get(deck_id)
        if child_ids is None:
            return None
        return [self._with_kind(self._decks[cid]) for cid in child_ids if cid in self._decks]

    def set_children(self, deck_id: str, children: Union[List[DeckNode], Article]) -> None:
        if deck_id not in self._decks:
            raise KeyError(f"Unknown deck: {deck_id}")
        children = [] if isinstance(children, Article) else list(children)
        for child in children:
            self.save_deck(child)
        self._children[deck_id] = [c.id for c in children]

    def get_tier_cards(self, deck_id: str, tier: str) -> Optional[List[CardStub]]:
        ids = self._tiers.get((deck_id, tier))
        if not ids:
            return None
        return [self._cards[cid] for cid in ids]

    def _next_card_id(self, prefix: str) -> str:
        seq = self._sequences.get(prefix, 0) + 1
        self._sequences[prefix] = seq
        return f"{prefix}-{seq:04d}"

    def append_streamed_card(self, deck_id: str, tier: str, title: str,
                             content: Optional[str] = None) -> CardStub:
        validate_tier(tier)
        ids = self._tiers.setdefault((deck_id, tier), [])
        if len(ids) >= CARDS_PER_TIER:
            raise StoreError(f"Tier {deck_id}/{tier} already holds {CARDS_PER_TIER} cards")

        card = CardStub(
            id=self._next_card_id(card_id_prefix(deck_id, tier)),
            deck_id=deck_id,
            tier=tier,
            ordinal=len(ids),
            number=tier_card_number(tier, len(ids)),
            title=title,
            content=content,
        )
        self._cards[card.id] = card
        ids.append(card.id)
        return card

    def get_card(self, card_id: str) -> Optional[CardStub]:
        return self._cards.get(card_id)

    def get_card_content(self, card_id: str) -> Optional[str]:
        card = self._cards.get(card_id)
        return card.content if card and card.content else None

    def set_card_content(self, card_id: str, text: str) -> None:
        self._cards[card_id] = replace(self._cards[card_id], content=text)

    def get_preview_card(self, deck_id: str) -> Optional[CardStub]:
        card_id = self._previews.get(deck_id)
        return self._cards[card_id] if card_id else None

    def save_preview_card(self, deck_id: str, title: str, content: str) -> CardStub:
        card_id = self._previews.get(deck_id) or self._next_card_id(card_id_prefix(deck_id, PREVIEW_TIER))
        card = CardStub(id=card_id, deck_id=deck_id, tier=PREVIEW_TIER, ordinal=0, number=0,
                        title=title, content=content)
        self._cards[card_id] = card
        self._previews[deck_id] = card_id
        return card

    def claim(self, card_id: str) -> bool:
        if card_id in self._claims:
            return False
        self._claims[card_id] = ClaimRecord(card_id, datetime.now().isoformat())
        return True

    def get_claim(self, card_id: str) -> Optional[ClaimRecord]:
        return self._claims.get(card_id)

    def claimed_ids(self) -> Set[str]:
        return set(self._claims)

    def get_tier_unlock_status(self, deck_id: str, tier: str) -> str:
        return self._unlock.get((deck_id, tier), initial_status(tier))

    def set_tier_unlock_status(self, deck_id: str, tier: str, status: str) -> None:
        self._unlock[(deck_id, tier)] = status

    def get_user_archetype(self) -> Optional[str]:
        return self._archetype

    def set_user_archetype(self, archetype: Optional[str]) -> None:
        self._archetype = archetype
