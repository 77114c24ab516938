"""
Generation gateway for Deckwise
Contains: the gateway contract, the OpenAI-compatible adapter, and payload models.

The gateway only talks to the generative service. Persisting results is the
orchestrator's job.
"""

import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional, Sequence, Union

import openai
from pydantic import BaseModel, ValidationError, field_validator

from backend.prompts import (
    CARD_BODY_PROMPT, LEAF_RULE_DEEP, LEAF_RULE_SHALLOW, SUB_DECKS_PROMPT,
    TIER_FOCUS, TIER_PROMPT, format_card_list,
)
from backend.taxonomy import slugify
from utils.config import CARDS_PER_TIER, LEAF_HINT_DEPTH, MAX_RETRIES, RETRY_DELAY, TIERS
from utils.providers import (
    ProviderError, create_client, get_api_call_params, get_model_for_task, get_provider_info,
)

logger = logging.getLogger(__name__)


class GenerationError(Exception):
    """A gateway call failed (transport, service or parse error)"""
    pass


class AmbiguousLeafError(GenerationError):
    """A broad-category deck came back with no children; not a real leaf"""
    pass


class SubDeck(BaseModel):
    """One sub-deck suggested for a node"""
    id: str = ""
    name: str

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("sub-deck name is empty")
        return v

    def model_post_init(self, __context) -> None:
        if not self.id:
            self.id = slugify(self.name)


class GeneratedCard(BaseModel):
    """One card as produced by the generator"""
    number: Optional[int] = None
    title: str
    content: Optional[str] = None


@dataclass(frozen=True)
class CardArrived:
    card: GeneratedCard
    index: int


@dataclass(frozen=True)
class TierCompleted:
    cards: List[GeneratedCard]


TierEvent = Union[CardArrived, TierCompleted]


class GenerationGateway(ABC):
    """Boundary to the generative text service. Every call is slow and costs money."""

    @abstractmethod
    async def list_sub_decks(self, deck_name: str, parent_path: str, depth: int,
                             archetype_hint: Optional[str] = None) -> List[SubDeck]:
        """Sub-decks for a node; an empty list means the generator sees a leaf"""

    @abstractmethod
    def stream_tier(self, deck_name: str, tier: str,
                    previous_tier_cards: Sequence[str] = (),
                    parent_path: str = "") -> AsyncIterator[TierEvent]:
        """
        Yield CardArrived once per card in generation order, then one TierCompleted.
        Failures are raised from the iterator as GenerationError.
        """

    @abstractmethod
    async def generate_card_body(self, deck_name: str, card_number: int, title: str,
                                 all_known_cards: Sequence[str] = ()) -> str: ...

    async def generate_tier(self, deck_name: str, tier: str,
                            previous_tier_cards: Sequence[str] = (),
                            parent_path: str = "",
                            on_card: Optional[Callable] = None) -> List[GeneratedCard]:
        """
        Generate a whole tier. `on_card` (sync or async) is called for each card
        as it arrives, before this call returns; the result keeps stream order.
        """
        cards: List[GeneratedCard] = []
        async for event in self.stream_tier(deck_name, tier, previous_tier_cards, parent_path):
            if isinstance(event, CardArrived):
                cards.append(event.card)
                if on_card is not None:
                    result = on_card(event.card)
                    if inspect.isawaitable(result):
                        await result
            elif isinstance(event, TierCompleted):
                return cards
        raise GenerationError(f"Tier stream for '{deck_name}' ended without completion")


async def retry_api_call(func, *args, max_retries=MAX_RETRIES, **kwargs):
    """Retry rejected API calls (rate limits, dropped connections) with exponential backoff"""
    last_error = None
    for attempt in range(max_retries):
        try:
            return await func(*args, **kwargs)
        except (openai.RateLimitError, openai.APIConnectionError) as e:
            last_error = e
            if attempt < max_retries - 1:
                wait_time = RETRY_DELAY * (2 ** attempt)
                logger.warning(f"{type(e).__name__}, retrying in {wait_time} seconds...")
                await asyncio.sleep(wait_time)
    logger.error(f"Failed after {max_retries} attempts. Last error: {str(last_error)}")
    raise GenerationError(f"Failed after {max_retries} attempts. Last error: {str(last_error)}") from last_error


def get_token_count(response) -> str:
    """Token count from an API response, or 'n/a'"""
    usage_info = getattr(response, 'usage', None)
    if usage_info:
        if hasattr(usage_info, 'total_tokens'):
            return str(usage_info.total_tokens)
        elif isinstance(usage_info, dict):
            return str(usage_info.get('total_tokens', 'n/a'))
    return 'n/a'


def extract_json_from_markdown(content: str) -> str:
    """Strip a ```json ... ``` fence if the model wrapped its answer in one"""
    lines = content.strip().split('\n')
    if lines and lines[0].strip().startswith('```'):
        lines = lines[1:]
        if lines and lines[-1].strip() == '```':
            lines = lines[:-1]
    return '\n'.join(lines).strip()


def parse_card_line(line: str) -> Optional[GeneratedCard]:
    """Parse one JSON Lines row into a card; blank lines and fences give None"""
    line = line.strip().rstrip(',')
    if not line or line.startswith('```') or line in ('[', ']'):
        return None
    try:
        return GeneratedCard.model_validate_json(line)
    except ValidationError as e:
        raise GenerationError(f"Could not parse card line {line[:80]!r}: {e}") from e


def parse_sub_decks(content: str) -> List[SubDeck]:
    """Parse the sub-deck JSON array; plain strings are accepted as names"""
    try:
        data = json.loads(extract_json_from_markdown(content))
    except json.JSONDecodeError as e:
        raise GenerationError(f"Sub-deck response is not valid JSON: {e}") from e

    if isinstance(data, dict):
        data = data.get("subtopics") or data.get("children") or []
    if not isinstance(data, list):
        raise GenerationError(f"Expected a JSON array of sub-decks, got {type(data).__name__}")

    sub_decks: List[SubDeck] = []
    seen = set()
    for item in data:
        try:
            sub = SubDeck(name=item) if isinstance(item, str) else SubDeck.model_validate(item)
        except ValidationError as e:
            raise GenerationError(f"Invalid sub-deck entry {item!r}: {e}") from e
        if sub.id not in seen:
            seen.add(sub.id)
            sub_decks.append(sub)
    return sub_decks


class OpenAIGateway(GenerationGateway):
    """Gateway backed by an OpenAI-compatible chat completion API"""

    def __init__(self, client: Optional[openai.AsyncOpenAI] = None, provider: Optional[str] = None):
        self._client = client
        self.provider = provider

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            try:
                self._client = create_client(self.provider)
            except ProviderError as e:
                logger.error(f"Provider configuration error: {str(e)}")
                raise GenerationError(f"Provider configuration error: {str(e)}") from e
        return self._client

    def _model(self, task: str) -> str:
        try:
            return get_model_for_task(task, self.provider)
        except ProviderError as e:
            raise GenerationError(str(e)) from e

    def _provider_name(self) -> str:
        return get_provider_info(self.provider or "openai").get("name", "unknown")

    async def _complete(self, reason: str, task: str, prompt: str, temperature: float = 0.7) -> str:
        client = self._get_client()
        params = get_api_call_params(
            model=self._model(task),
            messages=[{"role": "user", "content": prompt}],
            provider=self.provider,
            temperature=temperature,
        )
        logger.info(f"[API CALL] Reason: {reason} | Model: {params.get('model')} | Provider: {self._provider_name()}")
        try:
            response = await retry_api_call(client.chat.completions.create, **params)
        except openai.AuthenticationError as e:
            logger.error("Authentication failed")
            raise GenerationError("Invalid API key. Please check your API key configuration.") from e
        except openai.OpenAIError as e:
            logger.error(f"{reason} failed: {type(e).__name__}: {str(e)}")
            raise GenerationError(f"{reason} failed: {str(e)}") from e

        logger.info(f"[API RETURN] {reason} complete | Model: {params.get('model')} | Tokens: {get_token_count(response)}")
        if not response.choices:
            raise GenerationError("Invalid response structure: no choices")
        content = response.choices[0].message.content
        if not content or not content.strip():
            raise GenerationError("Invalid response structure: empty content")
        return content.strip()

    async def list_sub_decks(self, deck_name: str, parent_path: str, depth: int,
                             archetype_hint: Optional[str] = None) -> List[SubDeck]:
        prompt = SUB_DECKS_PROMPT.format(
            deck_name=deck_name,
            parent_path=parent_path or "(top level)",
            depth=depth,
            archetype_line=f"Learner style: {archetype_hint}\n" if archetype_hint else "",
            leaf_rule=LEAF_RULE_DEEP if depth >= LEAF_HINT_DEPTH else LEAF_RULE_SHALLOW,
        )
        content = await self._complete(f"Sub-decks for '{deck_name}'", "chat", prompt)
        sub_decks = parse_sub_decks(content)
        logger.info(f"Extracted {len(sub_decks)} sub-decks for '{deck_name}'")
        return sub_decks

    async def stream_tier(self, deck_name: str, tier: str,
                          previous_tier_cards: Sequence[str] = (),
                          parent_path: str = "") -> AsyncIterator[TierEvent]:
        client = self._get_client()
        previous_block = ""
        if previous_tier_cards:
            previous_block = "\nCards the learner already has (do not repeat):\n" + format_card_list(previous_tier_cards) + "\n"
        prompt = TIER_PROMPT.format(
            deck_name=deck_name,
            parent_path=parent_path or "top level",
            count=CARDS_PER_TIER,
            focus=TIER_FOCUS[tier],
            previous_block=previous_block,
            first_number=TIERS.index(tier) * CARDS_PER_TIER + 1,
        )
        params = get_api_call_params(
            model=self._model("cards"),
            messages=[{"role": "user", "content": prompt}],
            provider=self.provider,
            temperature=0.7,
            stream=True,
        )
        reason = f"Tier {tier} for '{deck_name}'"
        logger.info(f"[API CALL] Reason: {reason} | Model: {params.get('model')} | Provider: {self._provider_name()}")

        cards: List[GeneratedCard] = []
        extra = 0
        buffer = ""
        try:
            stream = await retry_api_call(client.chat.completions.create, **params)
            async for chunk in stream:
                if not chunk.choices:
                    continue
                buffer += chunk.choices[0].delta.content or ""
                while "\n" in buffer:
                    line, buffer = buffer.split("\n", 1)
                    card = parse_card_line(line)
                    if card is None:
                        continue
                    if len(cards) >= CARDS_PER_TIER:
                        extra += 1
                        continue
                    cards.append(card)
                    yield CardArrived(card, len(cards) - 1)
            card = parse_card_line(buffer)
            if card is not None:
                if len(cards) >= CARDS_PER_TIER:
                    extra += 1
                else:
                    cards.append(card)
                    yield CardArrived(card, len(cards) - 1)
        except openai.OpenAIError as e:
            logger.error(f"{reason} failed after {len(cards)} cards: {type(e).__name__}: {str(e)}")
            raise GenerationError(f"{reason} failed: {str(e)}") from e

        if not cards:
            raise GenerationError(f"{reason} returned no cards")
        if extra:
            logger.warning(f"{reason}: dropped {extra} cards beyond the first {CARDS_PER_TIER}")
        logger.info(f"[API RETURN] {reason} complete | Cards: {len(cards)}")
        yield TierCompleted(cards)

    async def generate_card_body(self, deck_name: str, card_number: int, title: str,
                                 all_known_cards: Sequence[str] = ()) -> str:
        prompt = CARD_BODY_PROMPT.format(
            card_number=card_number,
            deck_name=deck_name,
            title=title,
            known_cards=format_card_list(t for t in all_known_cards if t != title),
        )
        return await self._complete(f"Card {card_number} body for '{deck_name}'", "chat", prompt)
