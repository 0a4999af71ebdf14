"""Process-wide collaborators, built once at startup and injected into routers."""

from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request

from campaign_sync.config import Settings
from campaign_sync.services.campaign_registry import CampaignRegistry
from campaign_sync.services.card_locator import CardLocator, LocatorOptions
from campaign_sync.services.card_mover import CardMover
from campaign_sync.services.crm_client import KeyCrmClient
from campaign_sync.services.expiration_sweep import ExpirationSweep
from campaign_sync.services.routing_service import MessageRouter
from campaign_sync.services.stage_tracker import StageEntryTracker
from campaign_sync.store import KVStore


@dataclass
class Services:
    settings: Settings
    store: KVStore
    crm: KeyCrmClient
    registry: CampaignRegistry
    locator: CardLocator
    mover: CardMover
    tracker: StageEntryTracker
    router: MessageRouter
    sweep: ExpirationSweep

    async def aclose(self) -> None:
        await self.crm.aclose()
        await self.store.close()


def build_services(
    settings: Settings,
    redis_client=None,
    crm_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    if redis_client is None:
        store = KVStore.from_url(settings.redis_url, settings.redis_socket_timeout_seconds)
    else:
        store = KVStore(redis_client)

    crm = KeyCrmClient(
        settings.keycrm_base_url,
        settings.keycrm_api_token,
        timeout=settings.crm_request_timeout_seconds,
        transport=crm_transport,
    )
    registry = CampaignRegistry(store, write_lock_seconds=settings.campaign_write_lock_seconds)
    locator = CardLocator(
        crm,
        title_prefix=settings.crm_chat_title_prefix,
        defaults=LocatorOptions(
            max_pages=settings.locator_max_pages,
            page_size=settings.locator_page_size,
            deadline_seconds=settings.locator_deadline_seconds,
        ),
    )
    mover = CardMover(crm)
    tracker = StageEntryTracker(store)
    sweep = ExpirationSweep(
        registry,
        locator,
        mover,
        tracker,
        store,
        page_budget=settings.sweep_page_budget,
        page_size=settings.sweep_page_size,
        deadline_seconds=settings.sweep_deadline_seconds,
        card_lock_seconds=settings.sweep_card_lock_seconds,
        log_limit=settings.sweep_log_limit,
    )
    return Services(
        settings=settings,
        store=store,
        crm=crm,
        registry=registry,
        locator=locator,
        mover=mover,
        tracker=tracker,
        router=MessageRouter(registry, locator, mover, tracker),
        sweep=sweep,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
