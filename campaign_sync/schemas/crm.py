from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from campaign_sync.schemas.campaign import StagePair


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class CardContact(BaseModel):
    social_id: Optional[str] = None
    full_name: Optional[str] = None


class Card(BaseModel):
    id: int
    title: Optional[str] = None
    pipeline_id: Optional[int] = None
    status_id: Optional[int] = None
    contact: Optional[CardContact] = None

    @property
    def stage(self) -> Optional[StagePair]:
        if self.pipeline_id is None or self.status_id is None:
            return None
        return StagePair(pipeline_id=self.pipeline_id, status_id=self.status_id)

    def in_stage(self, pair: StagePair) -> bool:
        return self.pipeline_id == pair.pipeline_id and self.status_id == pair.status_id

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["Card"]:
        """Build a card from a CRM row; rows without a usable id yield None."""
        if not isinstance(payload, dict):
            return None

        status = payload.get("status") if isinstance(payload.get("status"), dict) else {}
        contact = payload.get("contact") if isinstance(payload.get("contact"), dict) else None
        data = {
            "id": _first(payload.get("id"), payload.get("card_id")),
            "title": _text(payload.get("title")),
            "pipeline_id": _first(payload.get("pipeline_id"), status.get("pipeline_id")),
            "status_id": _first(payload.get("status_id"), status.get("id")),
        }
        if contact is not None:
            data["contact"] = {
                "social_id": _text(contact.get("social_id")),
                "full_name": _text(contact.get("full_name")),
            }
        try:
            return cls.model_validate(data)
        except ValidationError:
            return None


class FindResponse(BaseModel):
    ok: bool = True
    result: Optional[Card] = None
    checked: int = 0
    pages_fetched: int = 0
    pagination: Optional[str] = None
    timed_out: bool = False
    used: dict[str, Any] = {}


class MoveRequest(BaseModel):
    card_id: int
    pipeline_id: int
    status_id: int


class MoveResponse(BaseModel):
    ok: bool
    card_id: int
    already_in_target: bool = False
    error: Optional[str] = None
    message: Optional[str] = None
