#!/usr/bin/env python3
"""
Command line access to the Deckwise engine.

    python scripts/deck_cli.py children geography
    python scripts/deck_cli.py tier biology core
    python scripts/deck_cli.py claim BIO-1-250309-0001
    python scripts/deck_cli.py progress biology
    python scripts/deck_cli.py preview cells --title Cells --text "The unit of life" --claim
"""

import argparse
import asyncio
import os
import sys

# Add the project root to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend.db import StoreError  # noqa: E402
from backend.engine import create_engine  # noqa: E402
from backend.generation import GenerationError  # noqa: E402
from backend.models import Category, Article  # noqa: E402
from backend.tracker import TierLockedError  # noqa: E402
from utils.config import TIERS  # noqa: E402


async def show_children(engine, deck_id):
    kind = await engine.load_children(deck_id)
    if isinstance(kind, Category):
        for child in kind.children:
            print(f"{child.id:30} {child.name}")
    elif isinstance(kind, Article):
        print(f"{deck_id} is an article (no sub-decks)")
    else:
        print(f"Children of {deck_id} are not resolved yet, try again")


async def show_tier(engine, deck_id, tier, unlock=False):
    if unlock:
        cards = await engine.unlock_tier(deck_id, tier)
    else:
        engine.subscribe(deck_id, tier, lambda update: print(f"  ... {type(update).__name__}"))
        cards = await engine.load_tier(deck_id, tier)
    for card in cards:
        print(f"{card.number:>2}. [{card.id}] {card.title}")


def show_progress(engine, deck_id):
    for tier, progress in engine.get_tier_completion(deck_id).items():
        print(f"{tier:12} {progress.status:10} {progress.claimed}/{progress.total}")
    total = engine.count_descendants(deck_id)
    if total:
        print(f"Sub-decks collected: {engine.count_claimed_descendants(deck_id)}/{total}")


def show_preview(engine, args):
    if args.text:
        engine.save_preview_card(args.deck_id, args.title or args.deck_id, args.text)
    card = engine.get_preview_card(args.deck_id)
    if card is None:
        print(f"No preview for {args.deck_id}")
        return
    if args.claim:
        print("Claimed" if engine.claim_preview_card(args.deck_id) else "Already claimed")
    print(f"[{card.id}] {card.title}\n{card.content}")


def show_in_progress(engine):
    for deck in engine.in_progress_decks():
        print(f"{deck.deck_id:30} {deck.claimed:>2}/{deck.total} ({deck.percent}%)  last claim {deck.last_claimed_at}")


async def run(args):
    engine = create_engine(db_path=args.db)
    try:
        if args.command == "deck":
            node = engine.get_deck(args.deck_id)
            print(node if node else f"Unknown deck: {args.deck_id}")
        elif args.command == "children":
            await show_children(engine, args.deck_id)
        elif args.command == "tier":
            await show_tier(engine, args.deck_id, args.tier, unlock=args.unlock)
        elif args.command == "card":
            print(await engine.get_card_content(args.card_id))
        elif args.command == "claim":
            print("Claimed" if engine.claim_card(args.card_id) else "Already claimed")
        elif args.command == "progress":
            show_progress(engine, args.deck_id)
        elif args.command == "preview":
            show_preview(engine, args)
        elif args.command == "in-progress":
            show_in_progress(engine)
        elif args.command == "reset":
            engine.reset()
            print("All decks, cards and claims removed")
    finally:
        await engine.wait_idle()


def main():
    parser = argparse.ArgumentParser(description="Deckwise deck engine")
    parser.add_argument("--db", help="SQLite database path (default: ~/.deckwise/deckwise.db)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("deck", help="Show one deck").add_argument("deck_id")
    sub.add_parser("children", help="List (and generate) sub-decks").add_argument("deck_id")

    tier_parser = sub.add_parser("tier", help="List (and generate) the cards of a tier")
    tier_parser.add_argument("deck_id")
    tier_parser.add_argument("tier", choices=TIERS)
    tier_parser.add_argument("--unlock", action="store_true", help="Unlock the tier first")

    sub.add_parser("card", help="Show (and generate) a card body").add_argument("card_id")
    sub.add_parser("claim", help="Claim a card").add_argument("card_id")
    sub.add_parser("progress", help="Tier progress of a deck").add_argument("deck_id")

    preview_parser = sub.add_parser("preview", help="Show, save or claim the preview card of a deck")
    preview_parser.add_argument("deck_id")
    preview_parser.add_argument("--title", help="Title when saving a preview")
    preview_parser.add_argument("--text", help="Save this text as the preview")
    preview_parser.add_argument("--claim", action="store_true", help="Claim the preview")

    sub.add_parser("in-progress", help="Decks started but not finished")
    sub.add_parser("reset", help="Delete everything")

    args = parser.parse_args()
    try:
        asyncio.run(run(args))
    except (GenerationError, StoreError, TierLockedError, KeyError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
