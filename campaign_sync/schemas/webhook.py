from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field, model_validator


class ManychatEvent(BaseModel):
    username: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("username", "ig_username", "instagram_username", "handle"),
    )
    text: Optional[str] = Field(default=None, validation_alias=AliasChoices("text", "last_input_text"))
    full_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("full_name", "name"))
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @model_validator(mode="after")
    def _join_name(self):
        if not self.full_name:
            joined = " ".join(part for part in (self.first_name, self.last_name) if part)
            self.full_name = joined or None
        return self


class KeycrmWebhook(BaseModel):
    event: Optional[str] = None
    context: Optional[dict[str, Any]] = None

    def card_payload(self) -> dict[str, Any]:
        return self.context or {}


class RoutingResponse(BaseModel):
    ok: bool
    campaign_id: Optional[str] = None
    variant: Optional[str] = None
    card_id: Optional[int] = None
    already_in_target: bool = False
    counter: Optional[int] = None
    error: Optional[str] = None
    message: Optional[str] = None


class StageEntryResponse(BaseModel):
    ok: bool = True
    card_id: Optional[int] = None
    campaigns: list[str] = Field(default_factory=list)
