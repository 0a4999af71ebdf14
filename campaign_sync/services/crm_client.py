from enum import Enum
from typing import Any, Optional

import httpx

from campaign_sync.logging_config import get_logger

logger = get_logger("crm_client")

CARDS_PATH = "pipelines/cards"


class PaginationStyle(str, Enum):
    """The two query conventions KeyCRM deployments accept for card listing."""

    LARAVEL = "laravel"
    JSON_API = "jsonapi"

    def page_params(self, page: int, page_size: int) -> dict[str, int]:
        if self is PaginationStyle.LARAVEL:
            return {"page": page, "per_page": page_size}
        return {"page[number]": page, "page[size]": page_size}


class CrmError(Exception):
    """Transport, HTTP or payload failure talking to the CRM."""

    def __init__(self, endpoint: str, status: Optional[int], detail: str):
        self.endpoint = endpoint
        self.status = status
        self.detail = detail
        super().__init__(f"KeyCRM {endpoint} -> {status if status is not None else 'unreachable'}: {detail}")


def extract_cards(payload: Any) -> Optional[list]:
    """Card rows from a listing payload, or None when it carries no array."""
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("data"), list):
        return data["data"]
    return None


class KeyCrmClient:
    """Thin async client over the KeyCRM pipelines API."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not token:
            logger.warning("KEYCRM_API_TOKEN is not set; CRM calls will be rejected")
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        endpoint = f"{method} /{path}"
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise CrmError(endpoint, None, str(exc) or exc.__class__.__name__) from exc

    @staticmethod
    def _json(response: httpx.Response, endpoint: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise CrmError(endpoint, response.status_code, "response is not JSON") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response, endpoint: str) -> None:
        if response.status_code >= 400:
            raise CrmError(endpoint, response.status_code, response.text[:200])

    async def list_cards(
        self,
        page: int,
        page_size: int,
        style: PaginationStyle,
        *,
        pipeline_id: Optional[int] = None,
        status_id: Optional[int] = None,
    ) -> Optional[list]:
        """One page of cards in the given pagination style.

        Returns None when the response has no array payload; raises CrmError on
        transport or HTTP failure.
        """
        params: dict[str, Any] = style.page_params(page, page_size)
        if pipeline_id is not None:
            params["pipeline_id"] = pipeline_id
        if status_id is not None:
            params["status_id"] = status_id

        endpoint = f"GET /{CARDS_PATH}"
        response = await self._request("GET", CARDS_PATH, params=params)
        self._raise_for_status(response, endpoint)
        return extract_cards(self._json(response, endpoint))

    async def get_card(self, card_id: int) -> Optional[dict]:
        path = f"{CARDS_PATH}/{card_id}"
        endpoint = f"GET /{path}"
        response = await self._request("GET", path)
        if response.status_code == 404:
            return None
        self._raise_for_status(response, endpoint)
        payload = self._json(response, endpoint)
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            return payload["data"]
        return payload

    async def update_card(self, card_id: int, pipeline_id: int, status_id: int) -> Any:
        path = f"{CARDS_PATH}/{card_id}"
        endpoint = f"PUT /{path}"
        response = await self._request(
            "PUT",
            path,
            json={"pipeline_id": pipeline_id, "status_id": status_id},
        )
        self._raise_for_status(response, endpoint)
        if not response.content:
            return None
        return self._json(response, endpoint)
