from campaign_sync.schemas.campaign import Campaign, CampaignCreate, CampaignPatch, StagePair, TriggerRule, VariantStep
from campaign_sync.schemas.crm import Card, FindResponse, MoveRequest, MoveResponse
from campaign_sync.schemas.sweep import CampaignSweepResult, SweepReport

__all__ = [
    "Campaign",
    "CampaignCreate",
    "CampaignPatch",
    "StagePair",
    "TriggerRule",
    "VariantStep",
    "Card",
    "FindResponse",
    "MoveRequest",
    "MoveResponse",
    "CampaignSweepResult",
    "SweepReport",
]
