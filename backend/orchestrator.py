"""
Generation orchestrator for Deckwise

Decides for every request whether to read the store, join a running
generation, or start a new one. Streamed cards are written to the store as
they arrive and fanned out to subscribers of that (deck, tier).
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from backend.db import Store
from backend.generation import (
    AmbiguousLeafError, CardArrived, GenerationGateway, TierCompleted,
)
from backend.models import CardStub, DeckKind, Unresolved, validate_tier
from backend.resolver import DeckTreeResolver
from backend.tasks import GenerationTask, StaleWriteIgnored, TaskKey, TaskRegistry
from backend.tracker import TierCompletionTracker
from utils.config import BACKGROUND_PREGENERATION, CARDS_PER_TIER, TIERS, next_tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CardStreamed:
    card: CardStub


@dataclass(frozen=True)
class TierReady:
    cards: List[CardStub]


@dataclass(frozen=True)
class TierFailed:
    error: str


TierUpdate = Union[CardStreamed, TierReady, TierFailed]
Subscriber = Callable[[TierUpdate], None]


@dataclass
class TierSnapshot:
    """What is known about a tier right now"""
    deck_id: str
    tier: str
    cards: List[CardStub] = field(default_factory=list)
    generating: bool = False
    error: Optional[str] = None


class GenerationOrchestrator:

    def __init__(self, store: Store, gateway: GenerationGateway, resolver: DeckTreeResolver,
                 tracker: TierCompletionTracker, registry: Optional[TaskRegistry] = None,
                 pregenerate: bool = BACKGROUND_PREGENERATION):
        self.store = store
        self.gateway = gateway
        self.resolver = resolver
        self.tracker = tracker
        self.registry = registry or TaskRegistry()
        self.pregenerate = pregenerate
        self._subscribers: Dict[TaskKey, List[Subscriber]] = defaultdict(list)
        self._errors: Dict[TaskKey, str] = {}
        self._background = set()

    # Subscriptions

    def subscribe(self, deck_id: str, tier: str, callback: Subscriber) -> Callable[[], None]:
        """Receive CardStreamed / TierReady / TierFailed for one tier. Returns an unsubscribe function."""
        key = (deck_id, validate_tier(tier))
        self._subscribers[key].append(callback)

        def unsubscribe():
            if callback in self._subscribers.get(key, []):
                self._subscribers[key].remove(callback)
        return unsubscribe

    def _publish(self, key: TaskKey, update: TierUpdate):
        for callback in list(self._subscribers.get(key, [])):
            try:
                callback(update)
            except Exception:
                logger.exception(f"Subscriber for {key} raised on {type(update).__name__}")

    # Background work

    def _spawn(self, coro, label: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)

        def done(t: asyncio.Task):
            self._background.discard(t)
            if t.cancelled():
                return
            error = t.exception()
            if error is not None:
                logger.error(f"{label} failed: {type(error).__name__}: {str(error)}")
        task.add_done_callback(done)
        return task

    async def wait_idle(self):
        """Wait for every background load and pre-generation to settle"""
        while True:
            pending = [t for t in self._background if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _schedule_next_tier(self, deck_id: str, tier: str):
        following = next_tier(tier)
        if not self.pregenerate or following is None:
            return
        if self.registry.is_running((deck_id, following)) or self.store.get_tier_cards(deck_id, following):
            return
        logger.info(f"Pre-generating {deck_id}/{following} in the background")
        self._spawn(self.load_or_generate_tier(deck_id, following, background=True),
                    f"Background generation of {deck_id}/{following}")

    # Tiers

    def snapshot(self, deck_id: str, tier: str) -> TierSnapshot:
        key = (deck_id, tier)
        return TierSnapshot(
            deck_id=deck_id,
            tier=tier,
            cards=self.store.get_tier_cards(deck_id, tier) or [],
            generating=self.registry.is_running(key),
            error=self._errors.get(key),
        )

    def _previous_titles(self, deck_id: str, tier: str) -> List[str]:
        titles = []
        for earlier in TIERS[:TIERS.index(tier)]:
            titles.extend(card.title for card in self.store.get_tier_cards(deck_id, earlier) or [])
        return titles

    async def _generate_tier(self, entry: GenerationTask, deck_id: str, tier: str) -> List[CardStub]:
        node = self.resolver.resolve(deck_id)
        deck_name = node.name if node else deck_id
        parent_path = node.parent_path if node else ""
        stale = False
        extra = 0

        try:
            async for event in self.gateway.stream_tier(
                deck_name, tier, self._previous_titles(deck_id, tier), parent_path
            ):
                if isinstance(event, CardArrived):
                    try:
                        self.registry.check_current(entry.key, entry.token)
                    except StaleWriteIgnored as e:
                        if not stale:
                            logger.warning(f"Ignoring late cards for {entry.key}: {str(e)}")
                        stale = True
                        continue
                    if len(entry.streamed_items) >= CARDS_PER_TIER:
                        extra += 1
                        continue
                    card = self.store.append_streamed_card(
                        deck_id, tier, event.card.title, event.card.content
                    )
                    entry.streamed_items.append(card)
                    self._publish(entry.key, CardStreamed(card))
                elif isinstance(event, TierCompleted):
                    logger.debug(f"Stream for {entry.key} completed with {len(event.cards)} cards")
        except Exception as e:
            logger.error(f"Generation of {deck_id}/{tier} failed after "
                         f"{len(entry.streamed_items)} cards: {type(e).__name__}: {str(e)}")
            if not stale and self.registry.is_current(entry.key, entry.token):
                self._errors[entry.key] = str(e)
                self._publish(entry.key, TierFailed(str(e)))
            raise

        if extra:
            logger.warning(f"Ignored {extra} cards beyond {CARDS_PER_TIER} for {entry.key}")
        if stale:
            return list(entry.streamed_items)

        cards = self.store.get_tier_cards(deck_id, tier) or []
        logger.info(f"Generated {len(cards)} cards for {deck_id}/{tier}")
        self._publish(entry.key, TierReady(cards))
        self._schedule_next_tier(deck_id, tier)
        return cards

    async def load_or_generate_tier(self, deck_id: str, tier: str, background: bool = False) -> List[CardStub]:
        """
        Cards of a tier: joined from a running generation, read from the
        store, or generated now. Never starts a second generation for a key.
        """
        key = (deck_id, validate_tier(tier))
        entry = self.registry.get(key)
        if entry is not None:
            logger.debug(f"Joining running generation for {key}")
            cards = await self.registry.join(entry)
        else:
            cards = self.store.get_tier_cards(deck_id, tier)
            if not cards:
                self._errors.pop(key, None)
                entry = self.registry.start(key, lambda e: self._generate_tier(e, deck_id, tier))
                cards = await self.registry.join(entry)

        # Runs after the task left the registry, so a finished tier can complete
        self.tracker.recompute(deck_id, requested_tier=None if background else tier)
        return cards

    def ensure_tier(self, deck_id: str, tier: str) -> TierSnapshot:
        """
        Return what is known now and make sure the tier gets loaded.
        Must be called from inside the running event loop.
        """
        validate_tier(tier)
        self._spawn(self.load_or_generate_tier(deck_id, tier), f"Loading {deck_id}/{tier}")
        snapshot = self.snapshot(deck_id, tier)
        if not snapshot.cards and not self.registry.is_running((deck_id, tier)):
            # The load task has not run yet; report it as pending
            snapshot.generating = True
        return snapshot

    async def unlock_tier(self, deck_id: str, tier: str) -> List[CardStub]:
        """Unlock a tier, then load it (joining a background generation if one runs)"""
        self.tracker.unlock(deck_id, tier)
        return await self.load_or_generate_tier(deck_id, tier)

    # Children

    async def _generate_children(self, entry: GenerationTask, deck_id: str) -> DeckKind:
        try:
            return await self.resolver.generate_children(
                deck_id, before_write=lambda: self.registry.check_current(entry.key, entry.token)
            )
        except StaleWriteIgnored as e:
            logger.info(f"Dropping children for {deck_id}: {str(e)}")
            return Unresolved()

    async def load_or_generate_children(self, deck_id: str) -> DeckKind:
        """
        Children of a deck, generating them if unknown. A broad category that
        comes back empty stays Unresolved; nothing is cached for it.
        """
        key = (deck_id, "children")
        entry = self.registry.get(key)
        if entry is None:
            kind = self.resolver.children_of(deck_id)
            if not isinstance(kind, Unresolved):
                return kind
            entry = self.registry.start(key, lambda e: self._generate_children(e, deck_id))
        else:
            logger.debug(f"Joining running generation for {key}")

        try:
            return await self.registry.join(entry)
        except AmbiguousLeafError as e:
            logger.warning(f"Children of {deck_id} left unresolved: {str(e)}")
            return Unresolved()

    def ensure_children(self, deck_id: str) -> DeckKind:
        """Current children (Unresolved while pending); starts generation if needed"""
        kind = self.resolver.children_of(deck_id)
        if isinstance(kind, Unresolved):
            self._spawn(self.load_or_generate_children(deck_id), f"Children of {deck_id}")
        return kind

    # Card bodies

    async def _generate_card_body(self, entry: GenerationTask, card: CardStub) -> str:
        node = self.resolver.resolve(card.deck_id)
        known = []
        for tier in TIERS:
            known.extend(c.title for c in self.store.get_tier_cards(card.deck_id, tier) or [])

        body = await self.gateway.generate_card_body(
            node.name if node else card.deck_id, card.number, card.title, known
        )
        if self.registry.is_current(entry.key, entry.token):
            self.store.set_card_content(card.id, body)
        else:
            logger.info(f"Not caching body for {card.id}: store was reset")
        return body

    async def load_or_generate_card_body(self, card_id: str) -> str:
        card = self.store.get_card(card_id)
        if card is None:
            raise KeyError(f"Unknown card: {card_id}")
        if card.content:
            return card.content

        key = (card_id, "body")
        entry = self.registry.get(key) or self.registry.start(
            key, lambda e: self._generate_card_body(e, card)
        )
        return await self.registry.join(entry)

    # Reset

    def reset(self):
        """Forget everything. Running generations finish but their writes are dropped."""
        self.registry.invalidate_all()
        self._errors.clear()
        self.store.clear_all()
        logger.info("Orchestrator reset")
