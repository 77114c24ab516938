# Tests for the generation orchestrator: caching, joining, streaming and failures
import asyncio
import unittest

from backend.db import StoreError
from backend.engine import DeckEngine
from backend.generation import GenerationError
from backend.memory_store import MemoryStore
from backend.orchestrator import CardStreamed, TierFailed, TierReady
from gateway_fakes import FakeGateway, wait_for


class FailingStore(MemoryStore):
    """Memory store whose n-th card append fails"""

    def __init__(self, fail_on: int):
        super().__init__()
        self.fail_on = fail_on
        self.appends = 0

    def append_streamed_card(self, deck_id, tier, title, content=None):
        self.appends += 1
        if self.appends == self.fail_on:
            raise StoreError("disk I/O error")
        return super().append_streamed_card(deck_id, tier, title, content)


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    pregenerate = False

    async def asyncSetUp(self):
        self.store = MemoryStore()
        self.gateway = FakeGateway(tiers={"core": ["A", "B", "C", "D", "E"]})
        self.engine = DeckEngine(self.store, self.gateway, pregenerate=self.pregenerate)
        self.updates = []
        self.engine.subscribe("biology", "core", self.updates.append)

    async def asyncTearDown(self):
        await self.engine.wait_idle()


class TestTierLoading(OrchestratorTestCase):

    async def test_concurrent_loads_share_one_generation(self):
        release = self.gateway.hold("core")
        first = asyncio.ensure_future(self.engine.load_tier("biology", "core"))
        second = asyncio.ensure_future(self.engine.load_tier("biology", "core"))
        await wait_for(lambda: self.gateway.count("stream_tier") == 1)
        release.set()

        a, b = await asyncio.gather(first, second)

        self.assertEqual(self.gateway.count("stream_tier", "core"), 1)
        self.assertEqual([c.id for c in a], [c.id for c in b])
        self.assertEqual(len(a), 5)

    async def test_ensure_tier_twice_generates_once(self):
        snapshot = self.engine.ensure_tier("biology", "core")
        self.assertTrue(snapshot.generating)
        self.assertEqual(snapshot.cards, [])
        self.engine.ensure_tier("biology", "core")

        await self.engine.wait_idle()

        self.assertEqual(self.gateway.count("stream_tier", "core"), 1)
        snapshot = self.engine.ensure_tier("biology", "core")
        self.assertFalse(snapshot.generating)
        self.assertEqual([c.title for c in snapshot.cards], ["A", "B", "C", "D", "E"])

    async def test_cache_hit_makes_no_call(self):
        await self.engine.load_tier("biology", "core")
        cards = await self.engine.load_tier("biology", "core")
        self.assertEqual(len(cards), 5)
        self.assertEqual(self.gateway.count("stream_tier"), 1)

    async def test_stream_order_with_uneven_delays(self):
        self.gateway.delays = [0.03, 0.0, 0.02, 0.001, 0.01]
        self.gateway.tiers["core"] = ["1", "2", "3", "4", "5"]

        cards = await self.engine.load_tier("biology", "core")

        streamed = [u.card.title for u in self.updates if isinstance(u, CardStreamed)]
        stored = [c.title for c in self.store.get_tier_cards("biology", "core")]
        self.assertEqual(streamed, ["1", "2", "3", "4", "5"])
        self.assertEqual(stored, ["1", "2", "3", "4", "5"])
        self.assertEqual([c.title for c in cards], stored)
        self.assertEqual([c.ordinal for c in cards], [0, 1, 2, 3, 4])
        self.assertIsInstance(self.updates[-1], TierReady)

    async def test_cards_are_stored_while_streaming(self):
        release = self.gateway.hold("core", after=2)
        task = asyncio.ensure_future(self.engine.load_tier("biology", "core"))
        await wait_for(lambda: len(self.updates) == 2)

        snapshot = self.engine.ensure_tier("biology", "core")
        self.assertTrue(snapshot.generating)
        self.assertEqual([c.title for c in snapshot.cards], ["A", "B"])

        release.set()
        await task
        self.assertEqual(self.gateway.count("stream_tier", "core"), 1)

    async def test_failure_keeps_streamed_cards_as_cached_tier(self):
        self.gateway.fail_after["core"] = 3

        with self.assertRaises(GenerationError):
            await self.engine.load_tier("biology", "core")

        self.assertEqual([c.title for c in self.store.get_tier_cards("biology", "core")], ["A", "B", "C"])
        self.assertFalse(self.engine.registry.is_running(("biology", "core")))
        self.assertIsInstance(self.updates[-1], TierFailed)
        self.assertIn("dropped", self.engine.orchestrator.snapshot("biology", "core").error)

        # The partial list is served from the store; nothing is regenerated
        cards = await self.engine.load_tier("biology", "core")
        self.assertEqual([c.title for c in cards], ["A", "B", "C"])
        self.assertEqual(self.gateway.count("stream_tier", "core"), 1)

    async def test_store_failure_is_published(self):
        store = FailingStore(fail_on=3)
        engine = DeckEngine(store, self.gateway, pregenerate=False)
        updates = []
        engine.subscribe("biology", "core", updates.append)

        with self.assertRaises(StoreError):
            await engine.load_tier("biology", "core")

        self.assertEqual([type(u) for u in updates], [CardStreamed, CardStreamed, TierFailed])
        self.assertIn("disk I/O error", updates[-1].error)
        self.assertIn("disk I/O error", engine.orchestrator.snapshot("biology", "core").error)
        self.assertFalse(engine.registry.is_running(("biology", "core")))
        self.assertEqual([c.title for c in store.get_tier_cards("biology", "core")], ["A", "B"])

    async def test_extra_streamed_cards_are_ignored(self):
        self.gateway.tiers["core"] = ["A", "B", "C", "D", "E", "F", "G"]

        with self.assertLogs("backend.orchestrator", level="WARNING"):
            core = await self.engine.load_tier("biology", "core")
        deep = await self.engine.load_tier("biology", "deep_dive_1")

        self.assertEqual([c.title for c in core], ["A", "B", "C", "D", "E"])
        self.assertEqual([c.number for c in core], [1, 2, 3, 4, 5])
        self.assertEqual([c.number for c in deep], [6, 7, 8, 9, 10])
        self.assertEqual(len([u for u in self.updates if isinstance(u, CardStreamed)]), 5)

    async def test_failed_generation_with_nothing_streamed_retries(self):
        self.gateway.fail_after["core"] = 0
        with self.assertRaises(GenerationError):
            await self.engine.load_tier("biology", "core")
        self.assertIsNone(self.store.get_tier_cards("biology", "core"))

        del self.gateway.fail_after["core"]
        cards = await self.engine.load_tier("biology", "core")
        self.assertEqual(len(cards), 5)
        self.assertEqual(self.gateway.count("stream_tier", "core"), 2)

    async def test_late_cards_after_reset_are_ignored(self):
        release = self.gateway.hold("core", after=2)
        task = asyncio.ensure_future(self.engine.load_tier("biology", "core"))
        await wait_for(lambda: len(self.updates) == 2)

        self.engine.reset()
        release.set()
        await task

        self.assertIsNone(self.store.get_tier_cards("biology", "core"))

        cards = await self.engine.load_tier("biology", "core")
        self.assertEqual([c.title for c in cards], ["A", "B", "C", "D", "E"])
        self.assertEqual(self.gateway.count("stream_tier", "core"), 2)

    async def test_unsubscribe(self):
        seen = []
        unsubscribe = self.engine.subscribe("biology", "core", seen.append)
        unsubscribe()
        await self.engine.load_tier("biology", "core")
        self.assertEqual(seen, [])


class TestCardBodies(OrchestratorTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.gateway.with_content = False

    async def test_body_generated_once_and_cached(self):
        cards = await self.engine.load_tier("biology", "core")
        card_id = cards[0].id

        bodies = await asyncio.gather(
            self.engine.get_card_content(card_id), self.engine.get_card_content(card_id)
        )
        again = await self.engine.get_card_content(card_id)

        self.assertEqual(bodies, ["Body of A", "Body of A"])
        self.assertEqual(again, "Body of A")
        self.assertEqual(self.gateway.count("generate_card_body"), 1)
        self.assertEqual(self.store.get_card_content(card_id), "Body of A")

    async def test_unknown_card(self):
        with self.assertRaises(KeyError):
            await self.engine.get_card_content("NOPE-1-250101-0001")


class TestBackgroundGeneration(OrchestratorTestCase):
    pregenerate = True

    async def test_next_tiers_are_pregenerated_but_stay_locked(self):
        await self.engine.load_tier("biology", "core")
        await self.engine.wait_idle()

        self.assertEqual(self.gateway.count("stream_tier", "deep_dive_1"), 1)
        self.assertEqual(self.gateway.count("stream_tier", "deep_dive_2"), 1)
        completion = self.engine.get_tier_completion("biology")
        self.assertEqual(completion["deep_dive_1"].total, 5)
        self.assertEqual(completion["deep_dive_1"].status, "locked")
        self.assertEqual(completion["deep_dive_2"].status, "locked")

    async def test_unlock_joins_background_generation(self):
        release = self.gateway.hold("deep_dive_1")
        cards = await self.engine.load_tier("biology", "core")
        await wait_for(lambda: self.engine.registry.is_running(("biology", "deep_dive_1")))

        for card in cards:
            self.engine.claim_card(card.id)
        self.assertEqual(self.engine.get_tier_completion("biology")["deep_dive_1"].status, "unlockable")

        unlock = asyncio.ensure_future(self.engine.unlock_tier("biology", "deep_dive_1"))
        await asyncio.sleep(0)
        release.set()
        deep = await unlock

        self.assertEqual(len(deep), 5)
        self.assertEqual(self.gateway.count("stream_tier", "deep_dive_1"), 1)
        self.assertEqual(self.engine.get_tier_completion("biology")["deep_dive_1"].status, "unlocked")

    async def test_deep_dive_two_numbering(self):
        await self.engine.load_tier("biology", "core")
        await self.engine.wait_idle()
        self.assertEqual([c.number for c in self.store.get_tier_cards("biology", "deep_dive_2")],
                         [11, 12, 13, 14, 15])


if __name__ == "__main__":
    unittest.main()
