from typing import Optional

from campaign_sync.schemas.campaign import RuleOp, TriggerRule
from campaign_sync.services.text_normalizer import normalize_text


def matches(text: Optional[str], rule: Optional[TriggerRule]) -> bool:
    """Evaluate one trigger rule against free text.

    An absent rule, an empty value or an unknown operator never matches.
    """
    if rule is None:
        return False

    needle = normalize_text(rule.value)
    if not needle:
        return False

    haystack = normalize_text(text)
    if rule.op == RuleOp.EQUALS.value:
        return haystack == needle
    if rule.op == RuleOp.CONTAINS.value:
        return needle in haystack
    return False


def matched_variant(text: Optional[str], campaign) -> Optional[str]:
    """Return "v1" or "v2" for the first enabled variant whose rule fires."""
    for name, step in campaign.enabled_variants():
        if matches(text, step.trigger_rule):
            return name
    return None
