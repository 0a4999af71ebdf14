"""Uniqueness of trigger values across active campaigns."""

from typing import Iterable, Optional

from campaign_sync.schemas.campaign import Conflict, ValidationResult
from campaign_sync.services.text_normalizer import normalize_text

SELF = "self"
VARIANT_CONFLICT = "variant_conflict"
VARIANT_CONFLICT_SAME_CAMPAIGN = "variant_conflict_same_campaign"

MESSAGES = {
    VARIANT_CONFLICT: (
        "Variant value (V1/V2) is already used by another active campaign. "
        "Change the value or deactivate that campaign."
    ),
    VARIANT_CONFLICT_SAME_CAMPAIGN: "V1 and V2 have the same value in this campaign.",
}


class CampaignValidationError(Exception):
    def __init__(self, code: str, conflicts: list[Conflict]):
        self.code = code
        self.message = MESSAGES.get(code, code)
        self.conflicts = conflicts
        super().__init__(f"{code}: {[c.value for c in conflicts]}")

    def to_result(self) -> ValidationResult:
        return ValidationResult(ok=False, error=self.code, message=self.message, conflicts=self.conflicts)


def variant_values(campaign) -> list[str]:
    """Normalized values of the enabled variants, de-duplicated, in v1/v2 order."""
    values: list[str] = []
    for _name, step in campaign.enabled_variants():
        value = normalize_text(step.trigger_rule.value)
        if value and value not in values:
            values.append(value)
    return values


def _self_conflict(candidate) -> Optional[Conflict]:
    enabled = dict(candidate.enabled_variants())
    if "v1" not in enabled or "v2" not in enabled:
        return None
    v1 = normalize_text(enabled["v1"].trigger_rule.value)
    v2 = normalize_text(enabled["v2"].trigger_rule.value)
    if v1 and v1 == v2:
        return Conflict(value=v1, with_=SELF)
    return None


def find_conflicts(candidate, active_campaigns: Iterable, exclude_id: Optional[str] = None) -> list[Conflict]:
    """Every collision between the candidate's variants and other active campaigns.

    A V1 == V2 collision inside the candidate is reported alone, before any
    cross-campaign comparison.
    """
    own = _self_conflict(candidate)
    if own is not None:
        return [own]

    values = variant_values(candidate)
    if not values:
        return []

    conflicts: list[Conflict] = []
    for other in active_campaigns:
        if not other.is_active:
            continue
        if exclude_id is not None and other.id == exclude_id:
            continue
        taken = set(variant_values(other))
        for value in values:
            if value in taken:
                conflicts.append(Conflict(value=value, campaign_id=other.id, campaign_name=other.name))
    return conflicts


def conflict_code(conflicts: list[Conflict]) -> str:
    if any(c.with_ == SELF for c in conflicts):
        return VARIANT_CONFLICT_SAME_CAMPAIGN
    return VARIANT_CONFLICT


def check_conflicts(candidate, active_campaigns: Iterable, exclude_id: Optional[str] = None) -> None:
    """Raise CampaignValidationError when the candidate collides with anything."""
    conflicts = find_conflicts(candidate, active_campaigns, exclude_id)
    if conflicts:
        raise CampaignValidationError(conflict_code(conflicts), conflicts)


def validate_candidate(candidate, active_campaigns: Iterable, exclude_id: Optional[str] = None) -> ValidationResult:
    try:
        check_conflicts(candidate, active_campaigns, exclude_id)
    except CampaignValidationError as exc:
        return exc.to_result()
    if not variant_values(candidate):
        return ValidationResult(ok=True, note="no_variants_in_candidate")
    return ValidationResult(ok=True)
