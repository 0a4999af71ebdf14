"""Read-time migration of stored campaign records.

Records written by older admin screens come in several shapes: JSON strings,
REST envelopes (``{"result": ...}``), set-bodies (``{"value": ...}``), rules
nested under ``rules`` with ``t1``/``t2``/``texp`` targets, or flat
``v1_value``/``base_pipeline_id`` columns. ``decode_campaign`` unwraps one
envelope layer, classifies the shape and maps it onto the current
``Campaign`` model. Anything it cannot place returns ``None``.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError

from campaign_sync.logging_config import get_logger
from campaign_sync.schemas.campaign import SCHEMA_VERSION, Campaign

logger = get_logger("campaign_codec")

ENVELOPE_KEYS = ("result", "value")
FLAT_KEYS = {
    "base_pipeline_id",
    "base_status_id",
    "v1_value",
    "v2_value",
    "v1_to_pipeline_id",
    "v2_to_pipeline_id",
}
RULES_KEYS = {"rules", "t1", "t2", "texp"}
EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


class StoredShape(str, Enum):
    CURRENT = "current"
    LEGACY_RULES = "legacy_rules"
    LEGACY_FLAT = "legacy_flat"
    UNKNOWN = "unknown"


def _parse_json(value: Any) -> Any:
    if not isinstance(value, (str, bytes)):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def unwrap_envelope(raw: Any) -> Any:
    value = _parse_json(raw)
    for key in ENVELOPE_KEYS:
        if isinstance(value, dict) and set(value) == {key}:
            value = _parse_json(value[key])
    return value


def classify(data: Any) -> StoredShape:
    if not isinstance(data, dict):
        return StoredShape.UNKNOWN
    if data.get("schema_version") == SCHEMA_VERSION:
        return StoredShape.CURRENT
    if RULES_KEYS & data.keys():
        return StoredShape.LEGACY_RULES
    if FLAT_KEYS & data.keys():
        return StoredShape.LEGACY_FLAT
    if "id" in data and ("base" in data or "v1" in data):
        return StoredShape.LEGACY_RULES
    return StoredShape.UNKNOWN


def _pick(obj: Any, *keys: str) -> Any:
    if not isinstance(obj, dict):
        return None
    for key in keys:
        value = obj.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _stage(obj: Any, pipeline: Any = None, status: Any = None) -> Optional[dict]:
    pipeline_id = _to_int(_pick(obj, "pipeline_id", "pipelineId", "pipeline")) or _to_int(pipeline)
    status_id = _to_int(_pick(obj, "status_id", "statusId", "status")) or _to_int(status)
    if not pipeline_id or not status_id:
        return None
    return {"pipeline_id": pipeline_id, "status_id": status_id}


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            seconds = value / 1000 if value > 1e12 else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return EPOCH
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.isdigit():
            return _to_datetime(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return EPOCH
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return EPOCH


def _flag(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() not in {"0", "false", "no", "off", ""}
    return bool(value)


def _common(data: dict, fallback_id: Optional[str]) -> dict:
    archived = _flag(_pick(data, "archived"), False)
    active = True
    for key in ("active", "enabled", "is_active"):
        if key in data and not _flag(data[key], True):
            active = False
    return {
        "schema_version": SCHEMA_VERSION,
        "id": str(_pick(data, "id", "_id", "key") or fallback_id or "").strip(),
        "name": (str(_pick(data, "name", "title") or "").strip() or None),
        "active": active,
        "deleted": _flag(_pick(data, "deleted"), False) or archived,
        "created_at": _to_datetime(_pick(data, "created_at", "createdAt")),
        "updated_at": _to_datetime(_pick(data, "updated_at", "updatedAt", "created_at", "createdAt")),
    }


def _counter(data: dict, name: str, moved_key: str) -> int:
    counters = data.get("counters") if isinstance(data.get("counters"), dict) else {}
    value = _pick(data, f"{name}_count", moved_key)
    if value is None:
        value = counters.get(name)
    return _to_int(value) or 0


def _days(data: dict) -> int:
    exp = data.get("exp")
    candidates = [
        _pick(data, "expDays", "exp_days", "expireDays", "expire", "vexp"),
        exp if not isinstance(exp, dict) else exp.get("days"),
    ]
    for candidate in candidates:
        days = _to_int(candidate)
        if days and days > 0:
            return days
    return 0


def _rule_step(rule: Any, target: Optional[dict], default_enabled: Optional[bool]) -> Optional[dict]:
    if isinstance(rule, (str, int, float)) and not isinstance(rule, bool):
        rule = {"value": str(rule)}
    if not isinstance(rule, dict):
        return None
    if isinstance(rule.get("trigger_rule"), dict):
        target = _stage(rule.get("target")) or target
        rule = {**rule["trigger_rule"], "enabled": rule.get("enabled")}
    value = str(_pick(rule, "value", "text", "label") or "").strip()
    if not value:
        return None
    enabled = rule.get("enabled", default_enabled)
    return {
        "enabled": None if enabled is None else _flag(enabled, False),
        "trigger_rule": {"op": str(rule.get("op") or "contains"), "value": value},
        "target": target,
    }


def _decode_legacy_rules(data: dict, fallback_id: Optional[str]) -> dict:
    rules = data.get("rules") if isinstance(data.get("rules"), dict) else {}
    exp_obj = data.get("exp") if isinstance(data.get("exp"), dict) else None
    exp_target = _stage(data.get("texp")) or _stage(exp_obj)
    record = _common(data, fallback_id)
    record.update(
        base=_stage(data.get("base"), data.get("base_pipeline_id"), data.get("base_status_id")),
        v1=_rule_step(rules.get("v1", data.get("v1")), _stage(data.get("t1")), None),
        v2=_rule_step(rules.get("v2", data.get("v2")), _stage(data.get("t2")), False),
        exp={"days": _days(data), "target": exp_target} if exp_target else None,
        v1_count=_counter(data, "v1", "movedV1"),
        v2_count=_counter(data, "v2", "movedV2"),
        exp_count=_counter(data, "exp", "movedExp"),
    )
    return record


def _flat_step(data: dict, name: str, default_enabled: Optional[bool]) -> Optional[dict]:
    target = _stage(
        {},
        data.get(f"{name}_to_pipeline_id"),
        data.get(f"{name}_to_status_id"),
    )
    rule = {
        "value": data.get(f"{name}_value"),
        "op": data.get(f"{name}_op"),
        "enabled": data.get(f"{name}_enabled", default_enabled),
    }
    return _rule_step(rule, target, default_enabled)


def _decode_legacy_flat(data: dict, fallback_id: Optional[str]) -> dict:
    exp_target = _stage({}, data.get("exp_pipeline_id"), data.get("exp_status_id"))
    record = _common(data, fallback_id)
    record.update(
        base=_stage({}, data.get("base_pipeline_id"), data.get("base_status_id")),
        v1=_flat_step(data, "v1", None),
        v2=_flat_step(data, "v2", False),
        exp={"days": _days(data), "target": exp_target} if exp_target else None,
        v1_count=_counter(data, "v1", "movedV1"),
        v2_count=_counter(data, "v2", "movedV2"),
        exp_count=_counter(data, "exp", "movedExp"),
    )
    return record


def _to_record(shape: StoredShape, data: dict, fallback_id: Optional[str]) -> dict:
    if shape is StoredShape.CURRENT:
        record = dict(data)
        record.setdefault("id", fallback_id)
        return record
    if shape is StoredShape.LEGACY_RULES:
        return _decode_legacy_rules(data, fallback_id)
    return _decode_legacy_flat(data, fallback_id)


def decode_campaign(raw: Any, fallback_id: Optional[str] = None) -> Optional[Campaign]:
    """Decode a stored value into a Campaign, or None when it cannot be placed."""
    data = unwrap_envelope(raw)
    shape = classify(data)
    if shape is StoredShape.UNKNOWN:
        logger.warning("Unknown stored campaign shape", extra={"context": {"id": fallback_id}})
        return None

    try:
        record = _to_record(shape, data, fallback_id)
    except (TypeError, ValueError, OverflowError, AttributeError) as exc:
        logger.warning(
            "Stored campaign could not be mapped",
            extra={"context": {"id": fallback_id, "shape": shape.value, "error": str(exc)}},
        )
        return None

    if not record.get("id"):
        logger.warning("Stored campaign has no id", extra={"context": {"shape": shape.value}})
        return None

    try:
        return Campaign.model_validate(record)
    except ValidationError as exc:
        logger.warning(
            "Stored campaign failed validation",
            extra={"context": {"id": record.get("id"), "shape": shape.value, "error": str(exc)}},
        )
        return None


def encode_campaign(campaign: Campaign) -> dict:
    return campaign.model_dump(mode="json")
