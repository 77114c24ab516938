"""
Data models for Deckwise
Contains dataclasses and type definitions shared by the store, resolver and orchestrator
"""

from dataclasses import dataclass, field
from typing import List, Optional, Union, Literal

from utils.config import TIERS


Tier = Literal["core", "deep_dive_1", "deep_dive_2"]
TierStatus = Literal["locked", "unlockable", "unlocked", "complete"]
DeckSource = Literal["static", "hierarchy", "generated"]

# Tier status only ever moves forward through this sequence
STATUS_ORDER = ("locked", "unlockable", "unlocked", "complete")


def status_rank(status: str) -> int:
    return STATUS_ORDER.index(status)


def initial_status(tier: str) -> str:
    """Core starts unlockable, the deep dives start locked"""
    return "unlockable" if tier == TIERS[0] else "locked"


def validate_tier(tier: str) -> str:
    if tier not in TIERS:
        raise ValueError(f"Unknown tier: {tier!r}. Expected one of {TIERS}")
    return tier


@dataclass(frozen=True)
class DeckNode:
    """A topic in the deck hierarchy"""
    id: str
    name: str
    depth: int
    parent_id: Optional[str] = None
    parent_path: str = ""
    source: str = "generated"
    kind: str = "unresolved"  # category | article | unresolved

    @property
    def path(self) -> str:
        """Breadcrumb path including this deck"""
        return f"{self.parent_path} > {self.name}" if self.parent_path else self.name


@dataclass(frozen=True)
class Category:
    """Deck with known children"""
    children: List[DeckNode] = field(default_factory=list)


@dataclass(frozen=True)
class Article:
    """Leaf deck: no children, only learning cards"""
    pass


@dataclass(frozen=True)
class Unresolved:
    """Children not generated yet (or last attempt was discarded)"""
    pass


DeckKind = Union[Category, Article, Unresolved]

# Marker passed to Store.set_children to record a leaf
LEAF = Article()


@dataclass(frozen=True)
class CardStub:
    """One card of a tier. Content is attached lazily."""
    id: str
    deck_id: str
    tier: str
    ordinal: int  # position within the tier, 0-based
    number: int   # global card number, 1-15
    title: str
    content: Optional[str] = None


@dataclass(frozen=True)
class ClaimRecord:
    """Fact that the user claimed a card"""
    card_id: str
    claimed_at: str


@dataclass
class TierProgress:
    """Claim progress and unlock status of one tier of a deck"""
    claimed: int = 0
    total: int = 0
    complete: bool = False
    status: str = "locked"

    def as_dict(self) -> dict:
        return {
            "claimed": self.claimed,
            "total": self.total,
            "complete": self.complete,
            "status": self.status,
        }


@dataclass
class DeckProgress:
    """A deck the user has started but not finished"""
    deck_id: str
    claimed: int
    total: int
    generated: int
    last_claimed_at: str

    @property
    def percent(self) -> int:
        return round(self.claimed * 100 / self.total) if self.total else 0
