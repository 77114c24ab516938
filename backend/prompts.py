# backend/prompts.py
"""
Prompt templates for the card and sub-deck generators
"""

SUB_DECKS_PROMPT = """
You organise a learning app's topic tree.

Deck: {deck_name}
Path: {parent_path}
Depth: {depth}
{archetype_line}
List the sub-topics a curious learner would browse next inside this deck.

Rules
-----
1. Return between 4 and 12 sub-topics, each narrower than the deck itself.
2. Do not repeat the deck name or any ancestor in the path.
3. {leaf_rule}
4. Output ONLY a JSON array: [{{"name": "<sub-topic>"}}, ...]
"""

LEAF_RULE_SHALLOW = "Only return [] if this topic truly cannot be divided further."
LEAF_RULE_DEEP = (
    "This deck is already very specific. Prefer returning [] so it becomes a "
    "single article, unless it clearly contains distinct sub-topics."
)

TIER_FOCUS = {
    "core": "the five essential ideas a newcomer must know first",
    "deep_dive_1": "five deeper ideas that build on the core cards",
    "deep_dive_2": "five expert-level ideas, surprising details and connections",
}

TIER_PROMPT = """
You write learning cards for the topic "{deck_name}" ({parent_path}).

Write {count} cards covering {focus}.
{previous_block}
Output format: JSON Lines. One card per line, nothing else:
{{"number": <int>, "title": "<short title>", "content": "<2-4 sentence explanation>"}}
Start numbering at {first_number}.
"""

CARD_BODY_PROMPT = """
You are writing card {card_number} of a learning deck on "{deck_name}".

Card title: {title}

Other cards in this deck (do not repeat them):
{known_cards}

Write the card body: three short paragraphs, concrete facts, no headings.
"""


def format_card_list(titles) -> str:
    """Format card titles as a bullet list for prompts"""
    titles = [t for t in titles if t]
    if not titles:
        return "None yet"
    return "\n".join(f"- {t}" for t in titles)
