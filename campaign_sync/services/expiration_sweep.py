"""Scheduled expiry of cards that stayed too long in a campaign's base stage.

One run walks every active campaign with an expiry rule, collects the cards in
its base stage, and moves the ones whose stage-entry time is older than
``exp.days`` to ``exp.target``. Failures are collected into the report; a run
never raises.
"""

import time
from typing import Callable, Optional

from campaign_sync.logging_config import bind, get_logger
from campaign_sync.schemas.campaign import Campaign
from campaign_sync.schemas.crm import Card
from campaign_sync.schemas.sweep import CampaignSweepResult, ExpiryMove, SweepReport
from campaign_sync.services.campaign_registry import CampaignRegistry
from campaign_sync.services.card_locator import CardLocator, LocatorOptions
from campaign_sync.services.card_mover import CARD_NOT_FOUND, CardMover
from campaign_sync.services.crm_client import CrmError
from campaign_sync.services.stage_tracker import StageEntryTracker
from campaign_sync.store import KVStore, StoreError

logger = get_logger("expiration_sweep")

DAY_MS = 24 * 60 * 60 * 1000
DEADLINE_EXCEEDED = "deadline_exceeded"


def card_lock_key(campaign_id: str, card_id: int) -> str:
    return f"locks:sweep:{campaign_id}:{card_id}"


def exp_log_key(campaign_id: str) -> str:
    return f"campaigns:exp-log:{campaign_id}"


def exp_last_run_key(campaign_id: str) -> str:
    return f"campaigns:exp-last-run:{campaign_id}"


def has_expiry(campaign: Campaign) -> bool:
    return campaign.exp is not None and campaign.exp.days > 0 and campaign.exp.target is not None


def _now_ms() -> int:
    return int(time.time() * 1000)


class SweepRun:
    """Cards already handled in the current run."""

    def __init__(self):
        self._processed: set[tuple[str, int]] = set()

    def claim(self, campaign_id: str, card_id: int) -> bool:
        marker = (campaign_id, card_id)
        if marker in self._processed:
            return False
        self._processed.add(marker)
        return True

    def clear(self) -> None:
        self._processed.clear()


class ExpirationSweep:
    def __init__(
        self,
        registry: CampaignRegistry,
        locator: CardLocator,
        mover: CardMover,
        tracker: StageEntryTracker,
        store: KVStore,
        *,
        page_budget: int = 20,
        page_size: int = 100,
        deadline_seconds: float = 50.0,
        card_lock_seconds: int = 300,
        log_limit: int = 50,
        clock_ms: Callable[[], int] = _now_ms,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.locator = locator
        self.mover = mover
        self.tracker = tracker
        self.store = store
        self.page_budget = page_budget
        self.page_size = page_size
        self.deadline_seconds = deadline_seconds
        self.card_lock_seconds = card_lock_seconds
        self.log_limit = log_limit
        self.clock_ms = clock_ms
        self.monotonic = monotonic

    async def run(self) -> SweepReport:
        report = SweepReport(started_at=self.clock_ms())
        run = SweepRun()
        deadline = self.monotonic() + self.deadline_seconds

        try:
            campaigns = await self.registry.list_active()
        except StoreError as exc:
            logger.error("Sweep could not list campaigns", extra={"context": {"error": str(exc)}})
            report.errors.append(f"registry: {exc}")
            report.ok = False
            report.finished_at = self.clock_ms()
            return report

        try:
            for campaign in campaigns:
                if not has_expiry(campaign):
                    continue
                if campaign.base is None:
                    logger.info("Campaign has no base stage, skipping", extra={"context": {"campaign_id": campaign.id}})
                    continue

                remaining = deadline - self.monotonic()
                if remaining <= 0:
                    report.errors.append(f"{campaign.id}: {DEADLINE_EXCEEDED}")
                    continue

                try:
                    result = await self.sweep_campaign(campaign, run, remaining)
                except Exception as exc:
                    logger.exception("Campaign sweep failed", extra={"context": {"campaign_id": campaign.id}})
                    result = CampaignSweepResult(
                        campaign_id=campaign.id,
                        campaign_name=campaign.name,
                        errors=[f"{campaign.id}: {exc}"],
                    )

                report.campaigns_checked += 1
                report.total_cards_checked += result.cards_checked
                report.total_cards_moved += result.cards_moved
                report.errors.extend(result.errors)
                report.campaigns.append(result)
        finally:
            run.clear()

        report.ok = not report.errors
        report.finished_at = self.clock_ms()
        logger.info(
            "Expiration sweep finished",
            extra={
                "context": {
                    "campaigns_checked": report.campaigns_checked,
                    "cards_checked": report.total_cards_checked,
                    "cards_moved": report.total_cards_moved,
                    "errors": len(report.errors),
                    "duration_ms": report.finished_at - report.started_at,
                }
            },
        )
        return report

    async def sweep_campaign(self, campaign: Campaign, run: SweepRun, budget_seconds: float) -> CampaignSweepResult:
        log = bind(logger, campaign_id=campaign.id)
        result = CampaignSweepResult(campaign_id=campaign.id, campaign_name=campaign.name)

        options = LocatorOptions(
            max_pages=self.page_budget,
            page_size=self.page_size,
            deadline_seconds=budget_seconds,
        )
        collection = await self.locator.collect(campaign.base, options)
        result.cards_checked = len(collection.cards)
        result.complete = collection.complete
        result.timed_out = collection.timed_out
        if collection.timed_out:
            result.errors.append(f"{campaign.id}: base scan {DEADLINE_EXCEEDED}")

        entered = await self.tracker.ensure_entries(campaign.id, [card.id for card in collection.cards])
        now = self.clock_ms()
        threshold = now - campaign.exp.days * DAY_MS

        moves: list[ExpiryMove] = []
        for card in collection.cards:
            entered_at = entered.get(card.id)
            if entered_at is None or entered_at > threshold:
                continue
            if not run.claim(campaign.id, card.id):
                continue
            try:
                move = await self.expire_card(campaign, card, result)
            except (CrmError, StoreError) as exc:
                log.warning("Card expiry failed", context={"card_id": card.id, "error": str(exc)})
                result.errors.append(f"{campaign.id}: card {card.id}: {exc}")
                continue
            if move is not None:
                move.entered_at = entered_at
                move.threshold = threshold
                moves.append(move)

        # moves and counters are already written; bookkeeping failures only add errors
        try:
            await self.record_moves(campaign.id, moves)
            if collection.complete:
                await self.tracker.prune(campaign.id, [card.id for card in collection.cards])
        except StoreError as exc:
            log.warning("Sweep bookkeeping failed", context={"error": str(exc)})
            result.errors.append(f"{campaign.id}: {exc}")

        log.info(
            "Campaign swept",
            context={
                "checked": result.cards_checked,
                "moved": result.cards_moved,
                "skipped": result.cards_skipped,
                "errors": len(result.errors),
                "pages": collection.pages_fetched,
                "complete": collection.complete,
            },
        )
        return result

    async def record_moves(self, campaign_id: str, moves: list[ExpiryMove]) -> None:
        for move in moves:
            await self.store.push_capped(exp_log_key(campaign_id), move.model_dump(by_alias=True), self.log_limit)
        if moves:
            await self.store.set(exp_last_run_key(campaign_id), str(self.clock_ms()))

    async def expire_card(self, campaign: Campaign, card: Card, result: CampaignSweepResult) -> Optional[ExpiryMove]:
        """Move one due card under its sweep lock; returns the log entry when moved."""
        lock_key = card_lock_key(campaign.id, card.id)
        token = await self.store.acquire_lock(lock_key, self.card_lock_seconds)
        if token is None:
            # another run is handling this card
            result.cards_skipped += 1
            return None

        outcome = await self.mover.move(card.id, campaign.exp.target, current=card.stage)
        if not outcome.ok or outcome.value.already_in_target:
            await self.store.release_lock(lock_key, token)
            if outcome.ok or outcome.failed_with(CARD_NOT_FOUND):
                await self.tracker.clear(campaign.id, card.id)
                return None
            result.errors.append(f"{campaign.id}: card {card.id}: {outcome.error_code}: {outcome.error}")
            return None

        # the lock is left to expire so an overlapping run cannot move the card again
        await self.registry.increment_counter(campaign.id, "exp")
        await self.tracker.clear(campaign.id, card.id)
        result.cards_moved += 1
        return ExpiryMove(card_id=card.id, campaign_id=campaign.id, moved_at=self.clock_ms(), threshold=0)
