from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

SCHEMA_VERSION = 2
VARIANT_NAMES = ("v1", "v2")
COUNTER_NAMES = ("v1", "v2", "exp")


class RuleOp(str, Enum):
    CONTAINS = "contains"
    EQUALS = "equals"


class StagePair(BaseModel):
    """A CRM location: pipeline (funnel) plus status (stage) inside it."""

    pipeline_id: int
    status_id: int


class TriggerRule(BaseModel):
    # Kept as a plain string so stored rules with unknown operators still load
    # and simply never match.
    op: str = RuleOp.CONTAINS.value
    value: str = ""


class VariantStep(BaseModel):
    enabled: Optional[bool] = None
    trigger_rule: TriggerRule = Field(
        default_factory=TriggerRule,
        validation_alias=AliasChoices("trigger_rule", "rule"),
    )
    target: Optional[StagePair] = None


class ExpiryRule(BaseModel):
    days: int = 0
    target: Optional[StagePair] = None


class VariantsMixin:
    def enabled_variants(self) -> list[tuple[str, VariantStep]]:
        """Variants that take part in matching and uniqueness checks.

        v1 counts unless explicitly disabled; v2 counts only when explicitly
        enabled.
        """
        out: list[tuple[str, VariantStep]] = []
        if self.v1 is not None and self.v1.enabled is not False:
            out.append(("v1", self.v1))
        if self.v2 is not None and self.v2.enabled is True:
            out.append(("v2", self.v2))
        return out


class Campaign(VariantsMixin, BaseModel):
    schema_version: Literal[2] = SCHEMA_VERSION
    id: str
    name: Optional[str] = None
    active: bool = Field(default=True, validation_alias=AliasChoices("active", "enabled", "is_active"))
    deleted: bool = False
    base: Optional[StagePair] = None
    v1: Optional[VariantStep] = None
    v2: Optional[VariantStep] = None
    exp: Optional[ExpiryRule] = None
    v1_count: int = 0
    v2_count: int = 0
    exp_count: int = 0
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.active and not self.deleted

    def variant(self, name: str) -> Optional[VariantStep]:
        if name == "v1":
            return self.v1
        if name == "v2":
            return self.v2
        return None

    def counter(self, name: str) -> int:
        return getattr(self, f"{name}_count")


class CampaignCreate(VariantsMixin, BaseModel):
    name: Optional[str] = None
    active: bool = Field(default=True, validation_alias=AliasChoices("active", "enabled", "is_active"))
    base: Optional[StagePair] = None
    v1: Optional[VariantStep] = None
    v2: Optional[VariantStep] = None
    exp: Optional[ExpiryRule] = None


class CampaignPatch(BaseModel):
    name: Optional[str] = None
    active: Optional[bool] = Field(default=None, validation_alias=AliasChoices("active", "enabled", "is_active"))
    base: Optional[StagePair] = None
    v1: Optional[VariantStep] = None
    v2: Optional[VariantStep] = None
    exp: Optional[ExpiryRule] = None


class CampaignCandidate(CampaignCreate):
    """Body of the standalone validation call; id marks an update."""

    id: Optional[str] = None


class Conflict(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    value: str
    campaign_id: Optional[str] = Field(default=None, alias="campaignId")
    campaign_name: Optional[str] = Field(default=None, alias="campaignName")
    with_: Optional[str] = Field(default=None, alias="with")


class ValidationResult(BaseModel):
    ok: bool
    error: Optional[str] = None
    message: Optional[str] = None
    note: Optional[str] = None
    conflicts: list[Conflict] = Field(default_factory=list)


class CounterResponse(BaseModel):
    campaign_id: str
    counter: str
    value: int
