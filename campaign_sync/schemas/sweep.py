from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExpiryMove(_CamelModel):
    card_id: int
    campaign_id: str
    entered_at: Optional[int] = None
    moved_at: int
    threshold: int


class CampaignSweepResult(_CamelModel):
    campaign_id: str
    campaign_name: Optional[str] = None
    cards_checked: int = 0
    cards_moved: int = 0
    cards_skipped: int = 0
    complete: bool = False
    timed_out: bool = False
    errors: list[str] = Field(default_factory=list)


class SweepReport(_CamelModel):
    ok: bool = True
    campaigns_checked: int = 0
    total_cards_checked: int = 0
    total_cards_moved: int = 0
    errors: list[str] = Field(default_factory=list)
    campaigns: list[CampaignSweepResult] = Field(default_factory=list)
    started_at: int = 0
    finished_at: int = 0
