"""
Deckwise engine: the surface the UI talks to.

Wires the store, resolver, gateway, orchestrator, claim ledger and tier
tracker together and exposes the consumer operations.
"""

import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from backend.db import SQLiteStore, Store
from backend.generation import GenerationGateway, OpenAIGateway
from backend.ledger import ClaimLedger
from backend.models import CardStub, DeckKind, DeckNode, DeckProgress, TierProgress, validate_tier
from backend.orchestrator import GenerationOrchestrator, Subscriber, TierSnapshot
from backend.resolver import DeckTreeResolver, TopicProvider
from backend.taxonomy import StaticTaxonomy, TopicHierarchy
from backend.tasks import TaskRegistry
from backend.tracker import TierCompletionTracker
from utils.config import BACKGROUND_PREGENERATION, HIERARCHY_PATH, get_current_provider

logger = logging.getLogger(__name__)


class DeckEngine:

    def __init__(self, store: Store, gateway: GenerationGateway,
                 hierarchy: Optional[TopicHierarchy] = None,
                 topic_provider: Optional[TopicProvider] = None,
                 taxonomy: Optional[StaticTaxonomy] = None,
                 pregenerate: bool = BACKGROUND_PREGENERATION):
        self.store = store
        self.gateway = gateway
        self.registry = TaskRegistry()
        self.resolver = DeckTreeResolver(store, gateway, taxonomy, hierarchy, topic_provider)
        self.tracker = TierCompletionTracker(
            store, is_generating=lambda deck_id, tier: self.registry.is_running((deck_id, tier))
        )
        self.ledger = ClaimLedger(store)
        self.orchestrator = GenerationOrchestrator(
            store, gateway, self.resolver, self.tracker, self.registry, pregenerate=pregenerate
        )
        self.ledger.subscribe(self._on_claim)

    def _on_claim(self, card_id: str):
        card = self.store.get_card(card_id)
        if card is not None:
            self.tracker.recompute(card.deck_id)

    # Decks

    def get_deck(self, deck_id: str) -> Optional[DeckNode]:
        return self.resolver.resolve(deck_id)

    def ensure_children(self, deck_id: str) -> DeckKind:
        return self.orchestrator.ensure_children(deck_id)

    async def load_children(self, deck_id: str) -> DeckKind:
        return await self.orchestrator.load_or_generate_children(deck_id)

    # Tiers and cards

    def ensure_tier(self, deck_id: str, tier: str) -> TierSnapshot:
        return self.orchestrator.ensure_tier(deck_id, tier)

    async def load_tier(self, deck_id: str, tier: str) -> List[CardStub]:
        return await self.orchestrator.load_or_generate_tier(deck_id, tier)

    async def get_card_content(self, card_id: str) -> str:
        return await self.orchestrator.load_or_generate_card_body(card_id)

    def subscribe(self, deck_id: str, tier: str, callback: Subscriber) -> Callable[[], None]:
        return self.orchestrator.subscribe(deck_id, tier, callback)

    # Previews

    def save_preview_card(self, deck_id: str, title: str, content: str) -> CardStub:
        return self.store.save_preview_card(deck_id, title, content)

    def get_preview_card(self, deck_id: str) -> Optional[CardStub]:
        return self.store.get_preview_card(deck_id)

    def has_preview_card(self, deck_id: str) -> bool:
        return self.store.has_preview_card(deck_id)

    def claim_preview_card(self, deck_id: str) -> bool:
        return self.ledger.claim_preview(deck_id)

    # Claims and progress

    def claim_card(self, card_id: str) -> bool:
        return self.ledger.claim(card_id)

    def get_tier_completion(self, deck_id: str) -> Dict[str, TierProgress]:
        return self.tracker.completion(deck_id)

    def count_descendants(self, deck_id: str) -> int:
        """Known decks below this one"""
        return len(self.resolver.descendants(deck_id))

    def count_claimed_descendants(self, deck_id: str) -> int:
        """Decks below this one whose preview card has been claimed"""
        return sum(1 for node in self.resolver.descendants(deck_id)
                   if self.ledger.is_preview_claimed(node.id))

    def in_progress_decks(self) -> List[DeckProgress]:
        return self.tracker.in_progress_decks()

    async def unlock_tier(self, deck_id: str, tier: str) -> List[CardStub]:
        return await self.orchestrator.unlock_tier(deck_id, validate_tier(tier))

    def on_tier_transition(self, listener: Callable[[str, str, str, str], None]):
        self.tracker.on_transition(listener)

    async def wait_idle(self):
        await self.orchestrator.wait_idle()

    def reset(self):
        self.orchestrator.reset()


def create_engine(db_path: Union[str, Path, None] = None,
                  gateway: Optional[GenerationGateway] = None,
                  topic_provider: Optional[TopicProvider] = None,
                  hierarchy_path: Union[str, Path, None] = None,
                  store: Optional[Store] = None) -> DeckEngine:
    """Build an engine on the SQLite store and the configured provider"""
    store = store or SQLiteStore(db_path)
    gateway = gateway or OpenAIGateway(provider=get_current_provider())

    hierarchy = None
    hierarchy_path = hierarchy_path or HIERARCHY_PATH
    if hierarchy_path:
        try:
            hierarchy = TopicHierarchy.from_file(hierarchy_path)
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"Could not load topic hierarchy from {hierarchy_path}: {str(e)}")

    return DeckEngine(store, gateway, hierarchy=hierarchy, topic_provider=topic_provider)
