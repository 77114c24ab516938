"""
Deck tree resolver

Answers "what is this deck and what is under it" from three sources, in order:
the static taxonomy, the pre-built topic hierarchy, and decks cached in the
store (generated on an earlier visit).
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Callable, List, Optional

from backend.db import Store
from backend.generation import AmbiguousLeafError, GenerationGateway
from backend.models import LEAF, Article, Category, DeckKind, DeckNode, Unresolved
from backend.taxonomy import StaticTaxonomy, TopicHierarchy, slugify
from utils.config import BROAD_CATEGORY_DEPTH, MIN_TOPIC_SUGGESTIONS

logger = logging.getLogger(__name__)


class TopicProvider(ABC):
    """External source of candidate child-topic names (e.g. an encyclopedia index)"""

    @abstractmethod
    async def suggest_child_topics(self, deck_name: str, parent_path: str) -> Optional[List[str]]:
        """Names of likely sub-topics, or None when the provider has nothing"""


def kind_name(kind: DeckKind) -> str:
    if isinstance(kind, Category):
        return "category"
    if isinstance(kind, Article):
        return "article"
    return "unresolved"


class DeckTreeResolver:

    def __init__(self, store: Store, gateway: GenerationGateway,
                 taxonomy: Optional[StaticTaxonomy] = None,
                 hierarchy: Optional[TopicHierarchy] = None,
                 topic_provider: Optional[TopicProvider] = None):
        self.store = store
        self.gateway = gateway
        self.taxonomy = taxonomy or StaticTaxonomy()
        self.hierarchy = hierarchy
        self.topic_provider = topic_provider

    def _lookup(self, deck_id: str) -> Optional[DeckNode]:
        node = self.taxonomy.get(deck_id)
        if node is None and self.hierarchy is not None:
            node = self.hierarchy.get(deck_id)
        if node is not None:
            # Known decks get a row too, so generated children can hang off them
            self.store.save_deck(node)
            return node
        return self.store.get_deck(deck_id)

    def resolve(self, deck_id: str) -> Optional[DeckNode]:
        """The deck with its current kind, or None if no source knows it"""
        node = self._lookup(deck_id)
        if node is None:
            return None
        return replace(node, kind=kind_name(self.children_of(deck_id)))

    def children_of(self, deck_id: str) -> DeckKind:
        kind = self.taxonomy.children(deck_id)
        if kind is None and self.hierarchy is not None:
            kind = self.hierarchy.children(deck_id)
        if kind is not None:
            return kind

        children = self.store.get_children(deck_id)
        if children is None:
            return Unresolved()
        if not children:
            return LEAF
        return Category(children)

    def descendants(self, deck_id: str) -> List[DeckNode]:
        """Every known deck below this one, breadth first. Nothing is generated."""
        found = []
        seen = {deck_id}
        pending = [deck_id]
        while pending:
            kind = self.children_of(pending.pop(0))
            if not isinstance(kind, Category):
                continue
            for child in kind.children:
                if child.id not in seen:
                    seen.add(child.id)
                    found.append(child)
                    pending.append(child.id)
        return found

    async def _suggested_names(self, node: DeckNode) -> Optional[List[str]]:
        if self.topic_provider is None:
            return None
        try:
            names = await self.topic_provider.suggest_child_topics(node.name, node.parent_path)
        except Exception as e:
            logger.warning(f"Topic provider failed for '{node.name}', using generated sub-decks: {str(e)}")
            return None
        names = [n.strip() for n in names or [] if n and n.strip()]
        if len(names) < MIN_TOPIC_SUGGESTIONS:
            logger.debug(f"Topic provider gave {len(names)} names for '{node.name}', falling back")
            return None
        return names

    def _child_id(self, parent: DeckNode, name: str) -> str:
        child_id = slugify(name)
        existing = self._lookup(child_id)
        if existing is not None and existing.parent_id != parent.id:
            # Same name under another parent
            child_id = f"{parent.id}--{child_id}"
        return child_id

    async def generate_children(self, deck_id: str,
                                before_write: Optional[Callable[[], None]] = None) -> DeckKind:
        """
        Generate and persist the children of a deck.

        An empty answer for a broad category raises AmbiguousLeafError and
        leaves the deck unresolved, so the next visit tries again. Deeper decks
        with no children are stored as leaves.
        """
        node = self._lookup(deck_id)
        if node is None:
            raise KeyError(f"Unknown deck: {deck_id}")

        names = await self._suggested_names(node)
        if names is None:
            sub_decks = await self.gateway.list_sub_decks(
                node.name, node.parent_path, node.depth, self.store.get_user_archetype()
            )
            names = [sub.name for sub in sub_decks]

        if not names:
            if node.depth <= BROAD_CATEGORY_DEPTH:
                logger.warning(f"No children for broad category '{node.name}', not caching")
                raise AmbiguousLeafError(f"'{node.name}' came back with no children")
            if before_write is not None:
                before_write()
            self.store.set_children(deck_id, LEAF)
            return LEAF

        children: List[DeckNode] = []
        seen = set()
        for name in names:
            child_id = self._child_id(node, name)
            if child_id in seen or child_id == node.id:
                continue
            seen.add(child_id)
            children.append(DeckNode(
                id=child_id,
                name=name,
                depth=node.depth + 1,
                parent_id=node.id,
                parent_path=node.path if node.depth > 1 else "",
            ))

        if before_write is not None:
            before_write()
        self.store.set_children(deck_id, children)
        logger.info(f"Resolved {len(children)} children for '{node.name}'")
        return Category(self.store.get_children(deck_id) or children)
