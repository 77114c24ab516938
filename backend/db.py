"""
Database module for Deckwise
Persistent store for decks, tier cards, card content, claims and tier unlock state.
SQLite with direct SQL (no ORM)
"""

import sqlite3
import json
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Set, Union
from contextlib import contextmanager
import logging

from backend.models import (
    Article, CardStub, ClaimRecord, DeckNode, initial_status, validate_tier,
)
from backend.taxonomy import card_id_prefix
from utils.config import DB_PATH, LOG_LEVEL, TIERS, CARDS_PER_TIER, PREVIEW_TIER

# Set up logging
logging.basicConfig(level=getattr(logging, LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


class StoreError(Exception):
    """A store write failed and was rolled back"""
    pass


def tier_card_number(tier: str, ordinal: int) -> int:
    """Global card number: core 1-5, deep dive 1 6-10, deep dive 2 11-15"""
    if not 0 <= ordinal < CARDS_PER_TIER:
        raise ValueError(f"Card position {ordinal} is outside a {CARDS_PER_TIER}-card tier")
    return TIERS.index(tier) * CARDS_PER_TIER + ordinal + 1


class Store(ABC):
    """
    Durable key-value contract used by the resolver, ledger, tracker and orchestrator.

    Every write is visible to the next read in the same process.
    """

    # Decks

    @abstractmethod
    def get_deck(self, deck_id: str) -> Optional[DeckNode]: ...

    @abstractmethod
    def save_deck(self, node: DeckNode) -> None:
        """Insert a deck node if it is not known yet"""

    @abstractmethod
    def get_children(self, deck_id: str) -> Optional[List[DeckNode]]:
        """Children list, [] for a leaf, None when not resolved yet"""

    @abstractmethod
    def set_children(self, deck_id: str, children: Union[List[DeckNode], Article]) -> None: ...

    # Tier cards

    @abstractmethod
    def get_tier_cards(self, deck_id: str, tier: str) -> Optional[List[CardStub]]: ...

    @abstractmethod
    def append_streamed_card(self, deck_id: str, tier: str, title: str,
                             content: Optional[str] = None) -> CardStub:
        """Next card of a tier. Raises StoreError once the tier holds CARDS_PER_TIER cards."""

    @abstractmethod
    def get_card(self, card_id: str) -> Optional[CardStub]: ...

    @abstractmethod
    def get_card_content(self, card_id: str) -> Optional[str]: ...

    @abstractmethod
    def set_card_content(self, card_id: str, text: str) -> None: ...

    # Preview cards

    @abstractmethod
    def get_preview_card(self, deck_id: str) -> Optional[CardStub]: ...

    @abstractmethod
    def save_preview_card(self, deck_id: str, title: str, content: str) -> CardStub:
        """Create or overwrite the preview of a deck. An existing preview keeps its id."""

    def has_preview_card(self, deck_id: str) -> bool:
        return self.get_preview_card(deck_id) is not None

    # Claims

    @abstractmethod
    def claim(self, card_id: str) -> bool:
        """Record a claim. Returns True only for a new claim."""

    @abstractmethod
    def get_claim(self, card_id: str) -> Optional[ClaimRecord]: ...

    @abstractmethod
    def claimed_ids(self) -> Set[str]: ...

    def is_claimed(self, card_id: str) -> bool:
        return self.get_claim(card_id) is not None

    # Tier unlock state

    @abstractmethod
    def get_tier_unlock_status(self, deck_id: str, tier: str) -> str: ...

    @abstractmethod
    def set_tier_unlock_status(self, deck_id: str, tier: str, status: str) -> None: ...

    # User profile

    @abstractmethod
    def get_user_archetype(self) -> Optional[str]: ...

    @abstractmethod
    def set_user_archetype(self, archetype: Optional[str]) -> None: ...

    @abstractmethod
    def clear_all(self) -> None:
        """Full reset"""


SCHEMA = """
CREATE TABLE IF NOT EXISTS deck (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    depth INTEGER NOT NULL,
    parent_id TEXT,
    parent_path TEXT DEFAULT '',
    source TEXT DEFAULT 'generated',
    children_json TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    children_generated_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS card (
    id TEXT PRIMARY KEY,
    deck_id TEXT NOT NULL,
    tier TEXT NOT NULL,
    ordinal INTEGER NOT NULL,
    number INTEGER NOT NULL,
    title TEXT NOT NULL,
    content TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    content_generated_at TIMESTAMP,
    UNIQUE (deck_id, tier, ordinal)
);

CREATE TABLE IF NOT EXISTS claim (
    card_id TEXT PRIMARY KEY,
    claimed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tier_unlock (
    deck_id TEXT NOT NULL,
    tier TEXT NOT NULL,
    status TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (deck_id, tier)
);

CREATE TABLE IF NOT EXISTS card_sequence (
    key TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT
);

-- Create indexes for common queries
CREATE INDEX IF NOT EXISTS idx_card_deck_tier ON card(deck_id, tier);
CREATE INDEX IF NOT EXISTS idx_deck_parent ON deck(parent_id);
"""


def _row_to_deck(row) -> DeckNode:
    if row["children_json"] is None:
        kind = "unresolved"
    else:
        kind = "category" if json.loads(row["children_json"]) else "article"
    return DeckNode(
        id=row["id"],
        name=row["name"],
        depth=row["depth"],
        parent_id=row["parent_id"],
        parent_path=row["parent_path"] or "",
        source=row["source"] or "generated",
        kind=kind,
    )


def _row_to_card(row) -> CardStub:
    return CardStub(
        id=row["id"],
        deck_id=row["deck_id"],
        tier=row["tier"],
        ordinal=row["ordinal"],
        number=row["number"],
        title=row["title"],
        content=row["content"],
    )


class SQLiteStore(Store):
    """SQLite-backed store; one short-lived connection per operation"""

    def __init__(self, db_path: Union[str, Path, None] = None):
        self.db_path = Path(db_path) if db_path else DB_PATH
        self.init_database()

    def ensure_db_directory(self):
        """Ensure the database directory exists"""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def get_db_connection(self):
        """Context manager for database connections"""
        self.ensure_db_directory()
        conn = sqlite3.connect(str(self.db_path), isolation_level=None)
        conn.row_factory = sqlite3.Row  # Enable column access by name
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, immediate: bool = False):
        """Connection inside BEGIN/COMMIT; rolls back and raises StoreError on failure"""
        with self.get_db_connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
                yield conn
                conn.execute("COMMIT")
            except Exception as e:
                # BEGIN itself can fail (database locked), leaving nothing to roll back
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                logger.error(f"Store transaction rolled back: {type(e).__name__}: {str(e)}")
                raise StoreError(str(e)) from e

    def init_database(self):
        """Initialize the database with the schema"""
        with self.get_db_connection() as conn:
            conn.executescript(SCHEMA)
        logger.debug(f"Database ready at {self.db_path}")

    # Decks

    def get_deck(self, deck_id: str) -> Optional[DeckNode]:
        with self.get_db_connection() as conn:
            row = conn.execute("SELECT * FROM deck WHERE id = ?", (deck_id,)).fetchone()
            return _row_to_deck(row) if row else None

    def save_deck(self, node: DeckNode) -> None:
        with self.transaction() as conn:
            self._insert_deck(conn, node)

    def _insert_deck(self, conn, node: DeckNode):
        conn.execute("""
            INSERT OR IGNORE INTO deck (id, name, depth, parent_id, parent_path, source)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (node.id, node.name, node.depth, node.parent_id, node.parent_path, node.source))

    def get_children(self, deck_id: str) -> Optional[List[DeckNode]]:
        with self.get_db_connection() as conn:
            row = conn.execute(
                "SELECT children_json FROM deck WHERE id = ?", (deck_id,)
            ).fetchone()
            if not row or row["children_json"] is None:
                return None

            child_ids = json.loads(row["children_json"])
            children = []
            for child_id in child_ids:
                child = conn.execute("SELECT * FROM deck WHERE id = ?", (child_id,)).fetchone()
                if child:
                    children.append(_row_to_deck(child))
            return children

    def set_children(self, deck_id: str, children: Union[List[DeckNode], Article]) -> None:
        children = [] if isinstance(children, Article) else list(children)
        with self.transaction() as conn:
            row = conn.execute("SELECT id FROM deck WHERE id = ?", (deck_id,)).fetchone()
            if not row:
                raise KeyError(f"Unknown deck: {deck_id}")
            for child in children:
                self._insert_deck(conn, child)
            conn.execute("""
                UPDATE deck SET children_json = ?, children_generated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (json.dumps([c.id for c in children]), deck_id))
        logger.info(f"Saved {len(children)} children for deck {deck_id}"
                    f"{' (leaf)' if not children else ''}")

    # Tier cards

    def get_tier_cards(self, deck_id: str, tier: str) -> Optional[List[CardStub]]:
        with self.get_db_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM card WHERE deck_id = ? AND tier = ? ORDER BY ordinal
            """, (deck_id, tier)).fetchall()
            if not rows:
                return None
            return [_row_to_card(row) for row in rows]

    def _next_card_id(self, conn, prefix: str) -> str:
        row = conn.execute(
            "SELECT value FROM card_sequence WHERE key = ?", (prefix,)
        ).fetchone()
        seq = (row["value"] if row else 0) + 1
        conn.execute("""
            INSERT INTO card_sequence (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """, (prefix, seq))
        return f"{prefix}-{seq:04d}"

    def append_streamed_card(self, deck_id: str, tier: str, title: str,
                             content: Optional[str] = None) -> CardStub:
        validate_tier(tier)
        with self.transaction(immediate=True) as conn:
            ordinal = conn.execute(
                "SELECT COUNT(*) FROM card WHERE deck_id = ? AND tier = ?", (deck_id, tier)
            ).fetchone()[0]
            if ordinal >= CARDS_PER_TIER:
                raise StoreError(f"Tier {deck_id}/{tier} already holds {CARDS_PER_TIER} cards")

            card = CardStub(
                id=self._next_card_id(conn, card_id_prefix(deck_id, tier)),
                deck_id=deck_id,
                tier=tier,
                ordinal=ordinal,
                number=tier_card_number(tier, ordinal),
                title=title,
                content=content,
            )
            conn.execute("""
                INSERT INTO card (id, deck_id, tier, ordinal, number, title, content, content_generated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (card.id, deck_id, tier, card.ordinal, card.number, title, content,
                  datetime.now().isoformat() if content else None))
        logger.debug(f"Appended card {card.id} to {deck_id}/{tier} at position {card.ordinal}")
        return card

    def get_card(self, card_id: str) -> Optional[CardStub]:
        with self.get_db_connection() as conn:
            row = conn.execute("SELECT * FROM card WHERE id = ?", (card_id,)).fetchone()
            return _row_to_card(row) if row else None

    def get_card_content(self, card_id: str) -> Optional[str]:
        with self.get_db_connection() as conn:
            row = conn.execute("SELECT content FROM card WHERE id = ?", (card_id,)).fetchone()
            return row["content"] if row and row["content"] else None

    def set_card_content(self, card_id: str, text: str) -> None:
        with self.transaction() as conn:
            cursor = conn.execute("""
                UPDATE card SET content = ?, content_generated_at = ? WHERE id = ?
            """, (text, datetime.now().isoformat(), card_id))
            if cursor.rowcount == 0:
                raise KeyError(f"Unknown card: {card_id}")

    # Preview cards

    def get_preview_card(self, deck_id: str) -> Optional[CardStub]:
        with self.get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM card WHERE deck_id = ? AND tier = ?", (deck_id, PREVIEW_TIER)
            ).fetchone()
            return _row_to_card(row) if row else None

    def save_preview_card(self, deck_id: str, title: str, content: str) -> CardStub:
        with self.transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT id FROM card WHERE deck_id = ? AND tier = ?", (deck_id, PREVIEW_TIER)
            ).fetchone()
            now = datetime.now().isoformat()
            if row:
                card_id = row["id"]
                conn.execute("""
                    UPDATE card SET title = ?, content = ?, content_generated_at = ? WHERE id = ?
                """, (title, content, now, card_id))
            else:
                card_id = self._next_card_id(conn, card_id_prefix(deck_id, PREVIEW_TIER))
                conn.execute("""
                    INSERT INTO card (id, deck_id, tier, ordinal, number, title, content, content_generated_at)
                    VALUES (?, ?, ?, 0, 0, ?, ?, ?)
                """, (card_id, deck_id, PREVIEW_TIER, title, content, now))
        logger.info(f"Saved preview {card_id} for deck {deck_id}")
        return CardStub(id=card_id, deck_id=deck_id, tier=PREVIEW_TIER, ordinal=0, number=0,
                        title=title, content=content)

    # Claims

    def claim(self, card_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO claim (card_id, claimed_at) VALUES (?, ?)
            """, (card_id, datetime.now().isoformat()))
            return cursor.rowcount == 1

    def get_claim(self, card_id: str) -> Optional[ClaimRecord]:
        with self.get_db_connection() as conn:
            row = conn.execute(
                "SELECT card_id, claimed_at FROM claim WHERE card_id = ?", (card_id,)
            ).fetchone()
            return ClaimRecord(row["card_id"], row["claimed_at"]) if row else None

    def claimed_ids(self) -> Set[str]:
        with self.get_db_connection() as conn:
            return {row["card_id"] for row in conn.execute("SELECT card_id FROM claim")}

    # Tier unlock state

    def get_tier_unlock_status(self, deck_id: str, tier: str) -> str:
        with self.get_db_connection() as conn:
            row = conn.execute(
                "SELECT status FROM tier_unlock WHERE deck_id = ? AND tier = ?", (deck_id, tier)
            ).fetchone()
            return row["status"] if row else initial_status(tier)

    def set_tier_unlock_status(self, deck_id: str, tier: str, status: str) -> None:
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO tier_unlock (deck_id, tier, status, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(deck_id, tier) DO UPDATE
                SET status = excluded.status, updated_at = excluded.updated_at
            """, (deck_id, tier, status))

    # User profile

    def get_user_archetype(self) -> Optional[str]:
        with self.get_db_connection() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key = 'archetype'").fetchone()
            return row["value"] if row else None

    def set_user_archetype(self, archetype: Optional[str]) -> None:
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO meta (key, value) VALUES ('archetype', ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """, (archetype,))

    def clear_all(self) -> None:
        with self.transaction() as conn:
            for table in ("deck", "card", "claim", "tier_unlock", "card_sequence", "meta"):
                conn.execute(f"DELETE FROM {table}")
        logger.info("Cleared all stored data")
