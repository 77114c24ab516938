"""
Scriptable stand-ins for the generation gateway and topic provider
"""

import asyncio
from typing import Dict, List, Optional

from backend.generation import (
    CardArrived, GeneratedCard, GenerationError, GenerationGateway, SubDeck, TierCompleted,
)
from backend.resolver import TopicProvider
from utils.config import CARDS_PER_TIER, TIERS


class FakeGateway(GenerationGateway):

    def __init__(self, tiers: Optional[Dict[str, List[str]]] = None,
                 sub_decks: Optional[Dict[str, List[str]]] = None,
                 delays: Optional[List[float]] = None,
                 with_content: bool = True):
        self.tiers = tiers or {}
        self.sub_decks = sub_decks or {}
        self.delays = delays or []
        self.with_content = with_content
        self.fail_after: Dict[str, int] = {}
        self.calls: List[tuple] = []
        self._holds: Dict[str, tuple] = {}

    def count(self, method: str, arg: Optional[str] = None) -> int:
        return sum(1 for call in self.calls if call[0] == method and (arg is None or arg in call[1:]))

    def hold(self, tier: str, after: int = 0) -> asyncio.Event:
        """Pause the stream for `tier` before card number `after` until the event is set"""
        event = asyncio.Event()
        self._holds[tier] = (after, event)
        return event

    def titles_for(self, tier: str) -> List[str]:
        return self.tiers.get(tier) or [f"{tier} card {i + 1}" for i in range(CARDS_PER_TIER)]

    async def list_sub_decks(self, deck_name, parent_path, depth, archetype_hint=None):
        self.calls.append(("list_sub_decks", deck_name, parent_path, depth))
        await asyncio.sleep(0)
        return [SubDeck(name=name) for name in self.sub_decks.get(deck_name, [])]

    async def stream_tier(self, deck_name, tier, previous_tier_cards=(), parent_path=""):
        self.calls.append(("stream_tier", deck_name, tier))
        cards = []
        for i, title in enumerate(self.titles_for(tier)):
            hold = self._holds.get(tier)
            if hold and hold[0] == i:
                await hold[1].wait()
            await asyncio.sleep(self.delays[i] if i < len(self.delays) else 0)
            if self.fail_after.get(tier) == i:
                raise GenerationError(f"stream for {tier} dropped")
            card = GeneratedCard(
                number=TIERS.index(tier) * CARDS_PER_TIER + i + 1,
                title=title,
                content=f"About {title}" if self.with_content else None,
            )
            cards.append(card)
            yield CardArrived(card, i)
        yield TierCompleted(cards)

    async def generate_card_body(self, deck_name, card_number, title, all_known_cards=()):
        self.calls.append(("generate_card_body", deck_name, title))
        await asyncio.sleep(0)
        return f"Body of {title}"


class FakeTopicProvider(TopicProvider):

    def __init__(self, topics: Optional[Dict[str, List[str]]] = None, error: Optional[Exception] = None):
        self.topics = topics or {}
        self.error = error
        self.calls = []

    async def suggest_child_topics(self, deck_name, parent_path):
        self.calls.append(deck_name)
        if self.error is not None:
            raise self.error
        return self.topics.get(deck_name)


async def wait_for(predicate, timeout: float = 2.0):
    """Yield to the loop until `predicate()` holds"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)
