from dataclasses import dataclass
from typing import Any, Optional

from campaign_sync.logging_config import get_logger
from campaign_sync.schemas.campaign import StagePair
from campaign_sync.schemas.crm import Card
from campaign_sync.services.crm_client import CrmError, KeyCrmClient
from campaign_sync.services.result import Result

logger = get_logger("card_mover")

CARD_NOT_FOUND = "card_not_found"
CRM_HTTP_ERROR = "crm_http_error"
CRM_UNREACHABLE = "crm_unreachable"


@dataclass
class MoveReceipt:
    card_id: int
    target: StagePair
    already_in_target: bool = False
    response: Any = None


class CardMover:
    """Relocate a card to a pipeline/status pair. Failures are returned, never retried."""

    def __init__(self, client: KeyCrmClient):
        self.client = client

    @staticmethod
    def _failure(card_id: int, exc: CrmError) -> Result[MoveReceipt]:
        if exc.status == 404:
            code = CARD_NOT_FOUND
        elif exc.status is None:
            code = CRM_UNREACHABLE
        else:
            code = CRM_HTTP_ERROR
        logger.warning(
            "Card move failed",
            extra={
                "context": {
                    "card_id": card_id,
                    "endpoint": exc.endpoint,
                    "status": exc.status,
                    "error_code": code,
                }
            },
        )
        return Result.failure(str(exc), code)

    async def move(
        self,
        card_id: int,
        target: StagePair,
        current: Optional[StagePair] = None,
    ) -> Result[MoveReceipt]:
        """Move ``card_id`` to ``target``.

        ``current`` is the card's known location; when omitted the card is read
        first so a card already at ``target`` is confirmed without an update.
        """
        try:
            if current is None:
                payload = await self.client.get_card(card_id)
                card = Card.from_payload(payload)
                if card is None:
                    return Result.failure(f"Card {card_id} not found", CARD_NOT_FOUND)
                current = card.stage

            if current == target:
                return Result.success(MoveReceipt(card_id=card_id, target=target, already_in_target=True))

            response = await self.client.update_card(card_id, target.pipeline_id, target.status_id)
        except CrmError as exc:
            return self._failure(card_id, exc)

        logger.info(
            "Card moved",
            extra={
                "context": {
                    "card_id": card_id,
                    "pipeline_id": target.pipeline_id,
                    "status_id": target.status_id,
                }
            },
        )
        return Result.success(MoveReceipt(card_id=card_id, target=target, response=response))
