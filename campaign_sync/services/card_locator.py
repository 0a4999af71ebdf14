"""Find CRM cards by social handle or chat title.

A scan walks ``pipelines/cards`` page by page, in order, never in parallel.
The pagination convention is detected on the first page (``page``/``per_page``
first, ``page[number]``/``page[size]`` when that yields no array) and reused
for the rest of the scan. The scan stops on a match, after ``max_pages``, on a
short page, or when the wall-clock deadline runs out.
"""

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from campaign_sync.logging_config import get_logger
from campaign_sync.schemas.campaign import StagePair
from campaign_sync.schemas.crm import Card
from campaign_sync.services.crm_client import CrmError, KeyCrmClient, PaginationStyle
from campaign_sync.services.text_normalizer import normalize_handle, normalize_text

logger = get_logger("card_locator")

MAX_PAGES_LIMIT = 20
PAGE_SIZE_LIMIT = 100


class SearchScope(str, Enum):
    CAMPAIGN = "campaign"
    GLOBAL = "global"


class MatchStrategy(str, Enum):
    SOCIAL = "social"
    TITLE = "title"
    BOTH = "both"

    @classmethod
    def _missing_(cls, value):
        # older callers say full_name for the title strategy
        if value == "full_name":
            return cls.TITLE
        return None


class TitleMode(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"


class CampaignScopeError(ValueError):
    code = "campaign_scope_missing"
    hint = "scope=campaign needs both pipeline_id and status_id"

    def __init__(self, pipeline_id: Optional[int], status_id: Optional[int]):
        self.pipeline_id = pipeline_id
        self.status_id = status_id
        super().__init__(f"{self.code}: pipeline_id={pipeline_id} status_id={status_id}")


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


@dataclass
class LocatorOptions:
    max_pages: int = 3
    page_size: int = 50
    strategy: MatchStrategy = MatchStrategy.BOTH
    title_mode: TitleMode = TitleMode.EXACT
    deadline_seconds: float = 8.0

    def __post_init__(self):
        self.max_pages = _clamp(int(self.max_pages), 1, MAX_PAGES_LIMIT)
        self.page_size = _clamp(int(self.page_size), 1, PAGE_SIZE_LIMIT)
        self.strategy = MatchStrategy(self.strategy)
        self.title_mode = TitleMode(self.title_mode)


@dataclass
class CardNeedle:
    username: Optional[str] = None
    full_name: Optional[str] = None


@dataclass
class LocateResult:
    card: Optional[Card] = None
    matched_by: Optional[str] = None
    checked: int = 0
    pages_fetched: int = 0
    pagination: Optional[PaginationStyle] = None
    timed_out: bool = False


@dataclass
class CollectResult:
    cards: list[Card] = field(default_factory=list)
    pages_fetched: int = 0
    pagination: Optional[PaginationStyle] = None
    timed_out: bool = False
    complete: bool = False


class CardScan:
    """State of one sequential page scan."""

    def __init__(
        self,
        client: KeyCrmClient,
        scope: Optional[StagePair],
        options: LocatorOptions,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.scope = scope
        self.options = options
        self.clock = clock
        self.pagination: Optional[PaginationStyle] = None
        self.pages_fetched = 0
        self.timed_out = False
        self.complete = False

    async def _list(self, page: int, style: PaginationStyle) -> Optional[list]:
        return await self.client.list_cards(
            page,
            self.options.page_size,
            style,
            pipeline_id=self.scope.pipeline_id if self.scope else None,
            status_id=self.scope.status_id if self.scope else None,
        )

    async def detect_pagination(self, page: int) -> tuple[list, PaginationStyle]:
        try:
            rows = await self._list(page, PaginationStyle.LARAVEL)
        except CrmError as exc:
            logger.info(
                "Laravel-style pagination rejected, trying JSON:API style",
                extra={"context": {"status": exc.status}},
            )
            rows = None
        if rows is not None:
            return rows, PaginationStyle.LARAVEL

        rows = await self._list(page, PaginationStyle.JSON_API)
        return rows or [], PaginationStyle.JSON_API

    async def _fetch(self, page: int) -> list:
        if self.pagination is None:
            rows, self.pagination = await self.detect_pagination(page)
            return rows
        return await self._list(page, self.pagination) or []

    async def pages(self) -> AsyncIterator[list[Card]]:
        """Yield the in-scope cards of each fetched page."""
        deadline = self.clock() + self.options.deadline_seconds
        for page in range(1, self.options.max_pages + 1):
            remaining = deadline - self.clock()
            if remaining <= 0:
                self.timed_out = True
                return
            try:
                rows = await asyncio.wait_for(self._fetch(page), timeout=remaining)
            except asyncio.TimeoutError:
                self.timed_out = True
                logger.warning(
                    "Card scan deadline reached",
                    extra={"context": {"page": page, "deadline_seconds": self.options.deadline_seconds}},
                )
                return

            self.pages_fetched += 1
            cards = [card for card in map(Card.from_payload, rows) if card is not None]
            if self.scope is not None:
                cards = [card for card in cards if card.in_stage(self.scope)]
            yield cards

            if len(rows) < self.options.page_size:
                self.complete = True
                return


class CardLocator:
    def __init__(
        self,
        client: KeyCrmClient,
        *,
        title_prefix: str = "Chat with",
        defaults: Optional[LocatorOptions] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.title_prefix = title_prefix
        self.defaults = defaults or LocatorOptions()
        self.clock = clock

    def scan(self, scope: Optional[StagePair], options: LocatorOptions) -> CardScan:
        return CardScan(self.client, scope, options, clock=self.clock)

    @staticmethod
    def resolve_scope(
        scope: SearchScope,
        pipeline_id: Optional[int],
        status_id: Optional[int],
    ) -> Optional[StagePair]:
        if SearchScope(scope) is SearchScope.GLOBAL:
            return None
        if not pipeline_id or not status_id:
            raise CampaignScopeError(pipeline_id, status_id)
        return StagePair(pipeline_id=pipeline_id, status_id=status_id)

    def _identity_hit(self, card: Card, username: str) -> bool:
        if not username or card.contact is None:
            return False
        return normalize_handle(card.contact.social_id) == username

    def _title_hit(self, card: Card, full_name: str, mode: TitleMode) -> bool:
        if not full_name:
            return False
        title = normalize_text(card.title)
        if not title:
            return False
        if mode is TitleMode.EXACT:
            return title == normalize_text(f"{self.title_prefix} {full_name}")
        return full_name in title

    def match_page(self, cards: list[Card], needle: CardNeedle, options: LocatorOptions) -> tuple[Optional[Card], Optional[str]]:
        """First card in page order that hits; on one card identity is checked before title."""
        username = normalize_handle(needle.username)
        full_name = normalize_text(needle.full_name)
        by_social = options.strategy in (MatchStrategy.SOCIAL, MatchStrategy.BOTH) and bool(username)
        by_title = options.strategy in (MatchStrategy.TITLE, MatchStrategy.BOTH) and bool(full_name)

        for card in cards:
            if by_social and self._identity_hit(card, username):
                return card, "social"
            if by_title and self._title_hit(card, full_name, options.title_mode):
                return card, "title"

        return None, None

    async def locate(
        self,
        needle: CardNeedle,
        *,
        scope: SearchScope = SearchScope.GLOBAL,
        pipeline_id: Optional[int] = None,
        status_id: Optional[int] = None,
        options: Optional[LocatorOptions] = None,
    ) -> LocateResult:
        """Scan for the needle; exhaustion and deadline give an empty result, not an error."""
        stage = self.resolve_scope(scope, pipeline_id, status_id)
        options = options or self.defaults
        scan = self.scan(stage, options)
        result = LocateResult()

        async with aclosing(scan.pages()) as pages:
            async for cards in pages:
                result.checked += len(cards)
                card, matched_by = self.match_page(cards, needle, options)
                if card is not None:
                    result.card = card
                    result.matched_by = matched_by
                    break

        result.pages_fetched = scan.pages_fetched
        result.pagination = scan.pagination
        result.timed_out = scan.timed_out
        logger.info(
            "Card lookup finished",
            extra={
                "context": {
                    "found": result.card is not None,
                    "card_id": result.card.id if result.card else None,
                    "matched_by": result.matched_by,
                    "checked": result.checked,
                    "pages": result.pages_fetched,
                    "pagination": scan.pagination.value if scan.pagination else None,
                    "timed_out": scan.timed_out,
                }
            },
        )
        return result

    async def find(
        self,
        needle: CardNeedle,
        *,
        scope: SearchScope = SearchScope.GLOBAL,
        pipeline_id: Optional[int] = None,
        status_id: Optional[int] = None,
        options: Optional[LocatorOptions] = None,
    ) -> Optional[Card]:
        result = await self.locate(
            needle,
            scope=scope,
            pipeline_id=pipeline_id,
            status_id=status_id,
            options=options,
        )
        return result.card

    async def collect(self, stage: StagePair, options: LocatorOptions) -> CollectResult:
        """Every card currently in ``stage``, bounded by the page budget and deadline."""
        scan = self.scan(stage, options)
        result = CollectResult()
        seen: set[int] = set()
        async with aclosing(scan.pages()) as pages:
            async for cards in pages:
                for card in cards:
                    if card.id not in seen:
                        seen.add(card.id)
                        result.cards.append(card)

        result.pages_fetched = scan.pages_fetched
        result.pagination = scan.pagination
        result.timed_out = scan.timed_out
        result.complete = scan.complete and not scan.timed_out
        return result
