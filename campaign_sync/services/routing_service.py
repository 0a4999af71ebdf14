from dataclasses import dataclass
from typing import Optional

from campaign_sync.logging_config import get_logger
from campaign_sync.schemas.campaign import Campaign
from campaign_sync.services.campaign_registry import CampaignRegistry
from campaign_sync.services.card_locator import CardLocator, CardNeedle, LocatorOptions, SearchScope
from campaign_sync.services.card_mover import CardMover
from campaign_sync.services.crm_client import CrmError
from campaign_sync.services.result import Result
from campaign_sync.services.rule_matcher import matched_variant
from campaign_sync.services.stage_tracker import StageEntryTracker

logger = get_logger("routing_service")

CAMPAIGN_NOT_FOUND = "campaign_not_found"
CAMPAIGN_BASE_MISSING = "campaign_base_missing"
CAMPAIGN_TARGET_MISSING = "campaign_target_missing"
CARD_NOT_FOUND = "card_not_found"
KEYCRM_SEARCH_FAILED = "keycrm_search_failed"


@dataclass
class ChatEvent:
    username: Optional[str] = None
    full_name: Optional[str] = None
    text: Optional[str] = None


@dataclass
class RoutingOutcome:
    campaign_id: str
    campaign_name: Optional[str]
    variant: str
    card_id: int
    already_in_target: bool = False
    counter: Optional[int] = None


def match_campaign(text: Optional[str], campaigns: list[Campaign]) -> Optional[tuple[Campaign, str]]:
    """First active campaign (in list order) whose v1, then v2, rule fires."""
    for campaign in campaigns:
        if not campaign.is_active:
            continue
        variant = matched_variant(text, campaign)
        if variant is not None:
            return campaign, variant
    return None


class MessageRouter:
    """Route a chat message to the campaign it triggers and move the sender's card."""

    def __init__(
        self,
        registry: CampaignRegistry,
        locator: CardLocator,
        mover: CardMover,
        tracker: StageEntryTracker,
        locator_options: Optional[LocatorOptions] = None,
    ):
        self.registry = registry
        self.locator = locator
        self.mover = mover
        self.tracker = tracker
        self.locator_options = locator_options

    async def route(self, event: ChatEvent) -> Result[RoutingOutcome]:
        hit = match_campaign(event.text, await self.registry.list_active())
        if hit is None:
            return Result.failure("No active campaign matches the message", CAMPAIGN_NOT_FOUND)

        campaign, variant = hit
        step = campaign.variant(variant)
        if campaign.base is None:
            return Result.failure(f"Campaign {campaign.id} has no base stage", CAMPAIGN_BASE_MISSING)
        if step.target is None:
            return Result.failure(f"Campaign {campaign.id} {variant} has no target", CAMPAIGN_TARGET_MISSING)

        try:
            card = await self.locator.find(
                CardNeedle(username=event.username, full_name=event.full_name),
                scope=SearchScope.CAMPAIGN,
                pipeline_id=campaign.base.pipeline_id,
                status_id=campaign.base.status_id,
                options=self.locator_options,
            )
        except CrmError as exc:
            logger.warning(
                "Card search failed",
                extra={"context": {"campaign_id": campaign.id, "error": str(exc)}},
            )
            return Result.failure(str(exc), KEYCRM_SEARCH_FAILED)

        if card is None:
            logger.info(
                "No card for message sender",
                extra={"context": {"campaign_id": campaign.id, "username": event.username}},
            )
            return Result.failure("Card not found in the campaign base stage", CARD_NOT_FOUND)

        moved = await self.mover.move(card.id, step.target, current=card.stage)
        if not moved.ok:
            return moved.forward()

        outcome = RoutingOutcome(
            campaign_id=campaign.id,
            campaign_name=campaign.name,
            variant=variant,
            card_id=card.id,
            already_in_target=moved.value.already_in_target,
        )
        if not outcome.already_in_target:
            outcome.counter = await self.registry.increment_counter(campaign.id, variant)
            await self.tracker.clear(campaign.id, card.id)

        logger.info(
            "Message routed",
            extra={
                "context": {
                    "campaign_id": campaign.id,
                    "variant": variant,
                    "card_id": card.id,
                    "already_in_target": outcome.already_in_target,
                }
            },
        )
        return Result.success(outcome)
