from campaign_sync.services.campaign_registry import CampaignNotFoundError, CampaignRegistry
from campaign_sync.services.card_locator import (
    CampaignScopeError,
    CardLocator,
    CardNeedle,
    LocatorOptions,
    MatchStrategy,
    SearchScope,
    TitleMode,
)
from campaign_sync.services.card_mover import CardMover, MoveReceipt
from campaign_sync.services.conflict_validator import CampaignValidationError
from campaign_sync.services.crm_client import CrmError, KeyCrmClient, PaginationStyle
from campaign_sync.services.expiration_sweep import ExpirationSweep
from campaign_sync.services.routing_service import ChatEvent, MessageRouter
from campaign_sync.services.rule_matcher import matches
from campaign_sync.services.stage_tracker import StageEntryTracker
from campaign_sync.services.text_normalizer import normalize_text
