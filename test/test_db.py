# Unit tests for the store implementations
import functools
import re
import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from backend.db import SQLiteStore, StoreError, tier_card_number
from backend.memory_store import MemoryStore
from backend.models import LEAF, DeckNode


class StoreContract:
    """Behaviour every Store must share; mixed into one TestCase per backend"""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()
        self.store.save_deck(DeckNode(id="biology", name="Biology", depth=2, parent_id="root"))

    def test_children_unresolved_until_set(self):
        self.assertIsNone(self.store.get_children("biology"))
        self.assertEqual(self.store.get_deck("biology").kind, "unresolved")

    def test_set_children_saves_child_decks(self):
        cells = DeckNode(id="cells", name="Cells", depth=3, parent_id="biology", parent_path="Biology")
        self.store.set_children("biology", [cells])

        children = self.store.get_children("biology")
        self.assertEqual([c.id for c in children], ["cells"])
        self.assertEqual(children[0].parent_path, "Biology")
        self.assertEqual(self.store.get_deck("biology").kind, "category")
        self.assertEqual(self.store.get_deck("cells").kind, "unresolved")

    def test_leaf_marker_is_empty_list(self):
        self.store.save_deck(DeckNode(id="mitosis", name="Mitosis", depth=3, parent_id="biology"))
        self.store.set_children("mitosis", LEAF)
        self.assertEqual(self.store.get_children("mitosis"), [])
        self.assertEqual(self.store.get_deck("mitosis").kind, "article")

    def test_set_children_unknown_deck(self):
        with self.assertRaises((KeyError, StoreError)):
            self.store.set_children("nowhere", LEAF)

    def test_append_streamed_card_assigns_ids_in_order(self):
        self.assertIsNone(self.store.get_tier_cards("biology", "core"))
        first = self.store.append_streamed_card("biology", "core", "A", "about A")
        second = self.store.append_streamed_card("biology", "core", "B")

        self.assertRegex(first.id, r"^BIO-1-\d{6}-0001$")
        self.assertRegex(second.id, r"^BIO-1-\d{6}-0002$")
        cards = self.store.get_tier_cards("biology", "core")
        self.assertEqual([c.title for c in cards], ["A", "B"])
        self.assertEqual([c.ordinal for c in cards], [0, 1])
        self.assertEqual([c.number for c in cards], [1, 2])

    def test_deep_dive_numbers_continue_after_core(self):
        card = self.store.append_streamed_card("biology", "deep_dive_1", "F")
        self.assertEqual(card.number, 6)
        self.assertTrue(re.match(r"^BIO-2-", card.id))

    def test_tier_holds_five_cards(self):
        for title in "ABCDE":
            self.store.append_streamed_card("biology", "core", title)
        with self.assertRaises(StoreError):
            self.store.append_streamed_card("biology", "core", "F")
        self.assertEqual([c.number for c in self.store.get_tier_cards("biology", "core")], [1, 2, 3, 4, 5])
        self.assertEqual(self.store.append_streamed_card("biology", "deep_dive_1", "F").number, 6)

    def test_preview_card(self):
        self.assertFalse(self.store.has_preview_card("biology"))
        self.assertIsNone(self.store.get_preview_card("biology"))

        preview = self.store.save_preview_card("biology", "Biology", "The study of life")
        self.assertRegex(preview.id, r"^BIO-0-\d{6}-0001$")
        self.assertEqual(preview.number, 0)
        self.assertTrue(self.store.has_preview_card("biology"))
        self.assertEqual(self.store.get_preview_card("biology"), preview)
        self.assertEqual(self.store.get_card(preview.id).content, "The study of life")
        # Previews are not part of any tier
        self.assertIsNone(self.store.get_tier_cards("biology", "core"))

    def test_preview_overwrite_keeps_id(self):
        first = self.store.save_preview_card("biology", "Biology", "The study of life")
        second = self.store.save_preview_card("biology", "Life", "Living things")
        self.assertEqual(second.id, first.id)
        self.assertEqual(self.store.get_preview_card("biology").title, "Life")
        self.assertEqual(self.store.get_card_content(first.id), "Living things")

    def test_card_content(self):
        card = self.store.append_streamed_card("biology", "core", "A")
        self.assertIsNone(self.store.get_card_content(card.id))
        self.store.set_card_content(card.id, "Cells are small")
        self.assertEqual(self.store.get_card_content(card.id), "Cells are small")
        self.assertEqual(self.store.get_card(card.id).content, "Cells are small")

    def test_claim_is_idempotent(self):
        self.assertTrue(self.store.claim("BIO-1-250101-0001"))
        self.assertFalse(self.store.claim("BIO-1-250101-0001"))
        self.assertEqual(self.store.claimed_ids(), {"BIO-1-250101-0001"})
        self.assertTrue(self.store.is_claimed("BIO-1-250101-0001"))
        self.assertFalse(self.store.is_claimed("BIO-1-250101-0002"))

    def test_tier_unlock_defaults(self):
        self.assertEqual(self.store.get_tier_unlock_status("biology", "core"), "unlockable")
        self.assertEqual(self.store.get_tier_unlock_status("biology", "deep_dive_1"), "locked")
        self.store.set_tier_unlock_status("biology", "deep_dive_1", "unlockable")
        self.assertEqual(self.store.get_tier_unlock_status("biology", "deep_dive_1"), "unlockable")

    def test_archetype(self):
        self.assertIsNone(self.store.get_user_archetype())
        self.store.set_user_archetype("visual")
        self.assertEqual(self.store.get_user_archetype(), "visual")

    def test_clear_all(self):
        card = self.store.append_streamed_card("biology", "core", "A")
        self.store.claim(card.id)
        self.store.clear_all()
        self.assertIsNone(self.store.get_deck("biology"))
        self.assertIsNone(self.store.get_tier_cards("biology", "core"))
        self.assertEqual(self.store.claimed_ids(), set())


class TestMemoryStore(StoreContract, unittest.TestCase):

    def make_store(self):
        return MemoryStore()


class TestSQLiteStore(StoreContract, unittest.TestCase):

    def make_store(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.db_path = Path(self._tmp.name) / "deckwise.db"
        return SQLiteStore(self.db_path)

    def test_survives_reopen(self):
        card = self.store.append_streamed_card("biology", "core", "A", "about A")
        self.store.claim(card.id)
        self.store.set_tier_unlock_status("biology", "core", "unlocked")

        reopened = SQLiteStore(self.db_path)
        self.assertEqual([c.id for c in reopened.get_tier_cards("biology", "core")], [card.id])
        self.assertEqual(reopened.get_card_content(card.id), "about A")
        self.assertTrue(reopened.is_claimed(card.id))
        self.assertEqual(reopened.get_tier_unlock_status("biology", "core"), "unlocked")

    def test_sequence_survives_reopen(self):
        self.store.append_streamed_card("biology", "core", "A")
        reopened = SQLiteStore(self.db_path)
        card = reopened.append_streamed_card("biology", "core", "B")
        self.assertTrue(card.id.endswith("-0002"))
        self.assertEqual(card.ordinal, 1)

    def test_failed_write_is_rolled_back(self):
        with self.assertRaises(StoreError):
            self.store.set_card_content("missing", "text")

    def test_locked_database_raises_store_error(self):
        blocker = sqlite3.connect(str(self.db_path), isolation_level=None)
        self.addCleanup(blocker.close)
        blocker.execute("BEGIN EXCLUSIVE")
        self.addCleanup(blocker.execute, "ROLLBACK")

        no_wait = functools.partial(sqlite3.connect, timeout=0)
        with patch("backend.db.sqlite3.connect", no_wait):
            with self.assertRaises(StoreError) as ctx:
                self.store.append_streamed_card("biology", "core", "A")
        self.assertIn("locked", str(ctx.exception))

    def test_claim_record_has_timestamp(self):
        self.store.claim("X-1-250101-0001")
        record = self.store.get_claim("X-1-250101-0001")
        self.assertEqual(record.card_id, "X-1-250101-0001")
        self.assertTrue(record.claimed_at)


class TestCardNumbers(unittest.TestCase):

    def test_tier_card_number(self):
        self.assertEqual(tier_card_number("core", 0), 1)
        self.assertEqual(tier_card_number("deep_dive_1", 4), 10)
        self.assertEqual(tier_card_number("deep_dive_2", 0), 11)
        with self.assertRaises(ValueError):
            tier_card_number("core", 5)


if __name__ == "__main__":
    unittest.main()
