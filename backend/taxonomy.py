"""
Static deck taxonomy and the optional pre-built topic hierarchy.

The static table only knows the universe root and the twelve broad categories.
Everything below comes from the external hierarchy (a JSON tree shaped like
``{"id", "title", "children", "isLeaf", "wikiTitle", "isImplementationDetail"}``)
or from generation.
"""

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from backend.models import DeckNode, Category, Article, DeckKind
from utils.config import TIER_NUMBERS

logger = logging.getLogger(__name__)

ROOT_ID = "root"
ROOT_NAME = "Everything"

# Broad categories, in display order
ROOT_CATEGORIES = {
    "arts": "Arts",
    "biology": "Biology",
    "health": "Health",
    "everyday": "Everyday Life",
    "geography": "Geography",
    "history": "History",
    "mathematics": "Mathematics",
    "people": "People",
    "philosophy": "Philosophy & Religion",
    "physics": "Physical Sciences",
    "society": "Society",
    "technology": "Technology",
}

ROOT_CATEGORY_CODES = {
    "arts": "ART",
    "biology": "BIO",
    "health": "HLT",
    "everyday": "EVD",
    "geography": "GEO",
    "history": "HIS",
    "mathematics": "MAT",
    "people": "PPL",
    "philosophy": "PHI",
    "physics": "PHY",
    "society": "SOC",
    "technology": "TEC",
}

SUBCATEGORY_CODES = {
    # Arts
    "architecture": "ARC", "literature": "LIT", "music": "MUS", "visual-arts": "VIS",
    "film-tv": "FLM", "performing-arts": "PRF", "photography": "PHO", "fashion-design": "FAS",
    # Biology
    "animals": "ANM", "plants": "PLT", "ecology": "ECO", "genetics": "GEN",
    "microbes": "MIC", "marine-life": "MAR",
    # Health
    "human-body": "BOD", "medicine": "MED", "nutrition": "NUT", "mental-health": "MNT",
    "fitness": "FIT",
    # Everyday
    "food-drink": "FOD", "sports-games": "SPT", "hobbies": "HOB", "holidays": "HOL",
    "fashion-clothing": "CLO", "home-living": "HOM", "travel-transport": "TRV",
    # Geography
    "countries": "CTY", "cities": "CIT", "mountains-volcanoes": "MTN", "rivers-lakes": "RIV",
    "oceans-seas": "OCN", "islands": "ISL", "deserts-forests": "DST", "landmarks-wonders": "LMK",
    # History
    "ancient": "ANC", "medieval": "MDV", "renaissance": "REN", "modern": "MOD",
    "world-wars": "WAR", "empires": "EMP", "revolutions": "REV", "exploration": "EXP",
    "egypt": "EGY", "rome": "ROM", "greece": "GRC", "persia": "PRS",
    "china-ancient": "CHN", "mesopotamia": "MSP", "maya": "MAY",
    # Mathematics
    "numbers-arithmetic": "NUM", "algebra": "ALG", "geometry": "GMY",
    "statistics-probability": "STA", "famous-problems": "PRB", "mathematicians": "MTH",
    # People
    "leaders-politicians": "LDR", "scientists-inventors": "SCI", "artists-writers": "AWT",
    "musicians-performers": "MSC", "explorers-adventurers": "ADV",
    "philosophers-thinkers": "THK", "athletes": "ATH", "villains-outlaws": "VLN",
    # Philosophy
    "world-religions": "REL", "mythology": "MYT", "ethics-morality": "ETH",
    "logic-reasoning": "LOG", "eastern-philosophy": "EST", "western-philosophy": "WST",
    "spirituality-mysticism": "SPR",
    # Physical sciences
    "physics-fundamentals": "PHS", "chemistry": "CHM", "astronomy-space": "AST",
    "earth-science": "ERT", "energy-forces": "NRG", "elements-materials": "ELM",
    # Society
    "politics-government": "POL", "economics-money": "ECN", "law-justice": "LAW",
    "education": "EDU", "media-communication": "MDA", "social-movements": "MVT",
    "war-military": "MIL", "culture-customs": "CUL",
    # Technology
    "computers-internet": "CMP", "engineering": "ENG", "inventions": "INV",
    "transportation": "TRN", "weapons-defense": "WPN", "communication-tech": "COM",
    "energy-power": "PWR", "future-tech-ai": "AIR",
}


def slugify(name: str) -> str:
    """Lowercase, dash-separated id for a generated deck name"""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "deck"


def deck_code(deck_id: str) -> str:
    """Three-letter code used in card ids (e.g. 'ancient' -> 'ANC')"""
    if deck_id in ROOT_CATEGORY_CODES:
        return ROOT_CATEGORY_CODES[deck_id]
    if deck_id in SUBCATEGORY_CODES:
        return SUBCATEGORY_CODES[deck_id]

    cleaned = deck_id.replace("-", "").upper()
    consonants = re.sub(r"[AEIOU]", "", cleaned)
    if len(consonants) >= 3:
        return consonants[:3]
    return cleaned[:3].ljust(3, "X")


def date_code(now: Optional[datetime] = None) -> str:
    """Current date as YYMMDD"""
    return (now or datetime.now()).strftime("%y%m%d")


def card_id_prefix(deck_id: str, tier: str, now: Optional[datetime] = None) -> str:
    """Sequence key for card ids: CODE-TIER-YYMMDD"""
    return f"{deck_code(deck_id)}-{TIER_NUMBERS.get(tier, '1')}-{date_code(now)}"


class StaticTaxonomy:
    """Hardcoded root and broad categories (depth 1 and 2)"""

    def __init__(self, categories: Optional[Dict[str, str]] = None):
        self.categories = dict(categories if categories is not None else ROOT_CATEGORIES)

    def get(self, deck_id: str) -> Optional[DeckNode]:
        if deck_id == ROOT_ID:
            return DeckNode(id=ROOT_ID, name=ROOT_NAME, depth=1, source="static", kind="category")
        if deck_id in self.categories:
            return DeckNode(
                id=deck_id,
                name=self.categories[deck_id],
                depth=2,
                parent_id=ROOT_ID,
                parent_path="",
                source="static",
            )
        return None

    def children(self, deck_id: str) -> Optional[DeckKind]:
        if deck_id != ROOT_ID:
            return None
        return Category([self.get(cid) for cid in self.categories])


class TopicHierarchy:
    """Pre-built topic tree loaded from JSON, indexed by id"""

    def __init__(self, tree: Optional[Dict] = None):
        self._nodes: Dict[str, DeckNode] = {}
        self._children: Dict[str, List[str]] = {}
        self._leaves = set()
        if tree:
            self._index(tree, depth=1, parent=None)
        logger.info(f"Built hierarchy index with {len(self._nodes)} entries")

    @classmethod
    def from_file(cls, path) -> "TopicHierarchy":
        with open(Path(path), "r", encoding="utf-8") as f:
            return cls(json.load(f))

    def __len__(self):
        return len(self._nodes)

    def _visible_children(self, raw: Dict) -> List[Dict]:
        # Implementation-detail nodes (alphabetical splits) are skipped, their children lifted
        children = []
        for child in raw.get("children") or []:
            if child.get("isImplementationDetail"):
                children.extend(self._visible_children(child))
            else:
                children.append(child)
        return children

    def _index(self, raw: Dict, depth: int, parent: Optional[DeckNode]):
        node = DeckNode(
            id=raw["id"],
            name=raw.get("title") or raw.get("name") or raw["id"],
            depth=depth,
            parent_id=parent.id if parent else None,
            parent_path=parent.path if parent and parent.depth > 1 else "",
            source="hierarchy",
        )
        children = self._visible_children(raw)
        if raw.get("isLeaf") or (raw.get("wikiTitle") and not children):
            self._leaves.add(node.id)
        self._nodes[node.id] = node
        self._children[node.id] = [c["id"] for c in children]
        for child in children:
            self._index(child, depth + 1, node)

    def get(self, deck_id: str) -> Optional[DeckNode]:
        return self._nodes.get(deck_id)

    def children(self, deck_id: str) -> Optional[DeckKind]:
        """Category/Article when the tree knows the answer, None when it doesn't"""
        if deck_id not in self._nodes:
            return None
        child_ids = self._children.get(deck_id) or []
        if child_ids:
            return Category([self._nodes[cid] for cid in child_ids])
        if deck_id in self._leaves:
            return Article()
        # Category whose children were never loaded into the tree
        return None
