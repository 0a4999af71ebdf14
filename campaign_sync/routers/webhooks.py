import time
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse

from campaign_sync.dependencies import Services, get_services
from campaign_sync.logging_config import get_logger
from campaign_sync.schemas.crm import Card
from campaign_sync.schemas.webhook import KeycrmWebhook, ManychatEvent, RoutingResponse, StageEntryResponse
from campaign_sync.services.routing_service import (
    CAMPAIGN_BASE_MISSING,
    CAMPAIGN_NOT_FOUND,
    CAMPAIGN_TARGET_MISSING,
    CARD_NOT_FOUND,
    ChatEvent,
)

logger = get_logger("webhooks")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

MANYCHAT_LOG_KEY = "logs:manychat"
KEYCRM_LOG_KEY = "logs:keycrm"

# expected misses answer 200 with ok=false; anything else is an upstream failure
SOFT_FAILURES = {CAMPAIGN_NOT_FOUND, CARD_NOT_FOUND, CAMPAIGN_BASE_MISSING, CAMPAIGN_TARGET_MISSING}


def _bearer(value: Optional[str]) -> str:
    if not value:
        return ""
    value = value.strip()
    if value.lower().startswith("bearer "):
        return value[7:].strip()
    return value


def _require_manychat_token(expected: str, authorization: Optional[str], token: Optional[str]) -> None:
    if not expected:
        return
    if expected not in (_bearer(authorization), token or ""):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")


@router.post("/manychat", response_model=RoutingResponse)
async def manychat_webhook(
    payload: dict[str, Any] = Body(...),
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Query(default=None),
    services: Services = Depends(get_services),
):
    _require_manychat_token(services.settings.manychat_token, authorization, token)

    await services.store.push_capped(
        MANYCHAT_LOG_KEY,
        {"received_at": int(time.time() * 1000), "payload": payload},
        services.settings.webhook_log_limit,
    )

    event = ManychatEvent.model_validate(payload)
    outcome = await services.router.route(
        ChatEvent(username=event.username, full_name=event.full_name, text=event.text)
    )
    if not outcome.ok:
        body = RoutingResponse(ok=False, error=outcome.error_code, message=outcome.error)
        if outcome.failed_with(*SOFT_FAILURES):
            return body
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=body.model_dump())

    routed = outcome.value
    return RoutingResponse(
        ok=True,
        campaign_id=routed.campaign_id,
        variant=routed.variant,
        card_id=routed.card_id,
        already_in_target=routed.already_in_target,
        counter=routed.counter,
    )


@router.post("/keycrm", response_model=StageEntryResponse)
async def keycrm_webhook(payload: dict[str, Any] = Body(...), services: Services = Depends(get_services)):
    """Record base-stage entry for every active campaign watching the card's new stage."""
    received_at = int(time.time() * 1000)
    await services.store.push_capped(
        KEYCRM_LOG_KEY,
        {"received_at": received_at, "payload": payload},
        services.settings.webhook_log_limit,
    )

    event = KeycrmWebhook.model_validate(payload)
    card = Card.from_payload(event.card_payload())
    if card is None or card.stage is None:
        return StageEntryResponse(ok=True)

    recorded: list[str] = []
    for campaign in await services.registry.list_active():
        if campaign.base is not None and card.in_stage(campaign.base):
            await services.tracker.record_entry(campaign.id, card.id, received_at)
            recorded.append(campaign.id)

    if recorded:
        logger.info(
            "Card entered campaign base stage",
            extra={"context": {"card_id": card.id, "campaigns": recorded, "event": event.event}},
        )
    return StageEntryResponse(ok=True, card_id=card.id, campaigns=recorded)
