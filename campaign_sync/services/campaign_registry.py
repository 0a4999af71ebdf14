from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from campaign_sync.logging_config import get_logger
from campaign_sync.schemas.campaign import (
    COUNTER_NAMES,
    Campaign,
    CampaignCreate,
    CampaignPatch,
    ValidationResult,
)
from campaign_sync.services.campaign_codec import decode_campaign, encode_campaign
from campaign_sync.services.conflict_validator import check_conflicts, validate_candidate
from campaign_sync.store import KVStore, StoreError

logger = get_logger("campaign_registry")

INDEX_KEY = "campaigns:index"
WRITE_LOCK_KEY = "locks:campaigns:write"
WRITE_LOCK_ATTEMPTS = 20
WRITE_LOCK_RETRY_SECONDS = 0.05


def item_key(campaign_id: str) -> str:
    return f"campaigns:item:{campaign_id}"


def counters_key(campaign_id: str) -> str:
    return f"campaigns:counters:{campaign_id}"


def campaign_keys(campaign_id: str) -> list[str]:
    """Every key owned by one campaign, for deletion."""
    return [
        item_key(campaign_id),
        counters_key(campaign_id),
        f"campaigns:base-entered:{campaign_id}",
        f"campaigns:exp-log:{campaign_id}",
        f"campaigns:exp-last-run:{campaign_id}",
    ]


class CampaignNotFoundError(Exception):
    def __init__(self, campaign_id: str):
        self.campaign_id = campaign_id
        super().__init__(f"Campaign {campaign_id} not found")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CampaignRegistry:
    """Campaign records in the KV store.

    Record JSON lives under ``campaigns:item:<id>``, ids in the
    ``campaigns:index`` sorted set (score = creation time, ms). Move counters
    live in the ``campaigns:counters:<id>`` hash so increments are atomic;
    the values embedded in the record are only a seed for legacy data.
    """

    def __init__(
        self,
        store: KVStore,
        *,
        write_lock_seconds: int = 10,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self.store = store
        self.write_lock_seconds = write_lock_seconds
        self.clock = clock
        self.id_factory = id_factory

    # --- reads ---

    async def _load(self, campaign_id: str) -> Optional[Campaign]:
        raw = await self.store.get(item_key(campaign_id))
        if raw is None:
            return None
        campaign = decode_campaign(raw, fallback_id=campaign_id)
        if campaign is None:
            return None
        return await self._with_counters(campaign)

    async def _with_counters(self, campaign: Campaign) -> Campaign:
        stored = await self.store.hgetall(counters_key(campaign.id))
        if not stored:
            return campaign
        update = {}
        for name in COUNTER_NAMES:
            if name in stored:
                update[f"{name}_count"] = int(stored[name])
        return campaign.model_copy(update=update)

    async def get(self, campaign_id: str) -> Campaign:
        campaign = await self._load(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(campaign_id)
        return campaign

    async def list(self, active_only: bool = False) -> list[Campaign]:
        """All decodable campaigns in creation order; broken records are skipped."""
        campaigns: list[Campaign] = []
        for campaign_id in await self.store.zrange(INDEX_KEY, 0, -1):
            campaign = await self._load(campaign_id)
            if campaign is None:
                logger.warning("Skipping unreadable campaign", extra={"context": {"campaign_id": campaign_id}})
                continue
            if active_only and not campaign.is_active:
                continue
            campaigns.append(campaign)
        return campaigns

    async def list_active(self) -> list[Campaign]:
        return await self.list(active_only=True)

    async def validate(self, candidate, exclude_id: Optional[str] = None) -> ValidationResult:
        return validate_candidate(candidate, await self.list_active(), exclude_id)

    # --- writes ---

    @asynccontextmanager
    async def _write_lock(self):
        token = None
        for _ in range(WRITE_LOCK_ATTEMPTS):
            token = await self.store.acquire_lock(WRITE_LOCK_KEY, self.write_lock_seconds)
            if token:
                break
            await asyncio.sleep(WRITE_LOCK_RETRY_SECONDS)
        if not token:
            raise StoreError("lock", WRITE_LOCK_KEY, "campaign write lock is busy")
        try:
            yield
        finally:
            await self.store.release_lock(WRITE_LOCK_KEY, token)

    async def _save(self, campaign: Campaign) -> None:
        await self.store.set_json(item_key(campaign.id), encode_campaign(campaign))

    async def create(self, data: CampaignCreate) -> Campaign:
        now = self.clock()
        campaign = Campaign(
            id=self.id_factory(),
            created_at=now,
            updated_at=now,
            **data.model_dump(),
        )
        async with self._write_lock():
            if campaign.is_active:
                check_conflicts(campaign, await self.list_active())
            await self._save(campaign)
            await self.store.zadd(INDEX_KEY, now.timestamp() * 1000, campaign.id)

        logger.info("Campaign created", extra={"context": {"campaign_id": campaign.id, "name": campaign.name}})
        return campaign

    async def update(self, campaign_id: str, patch: CampaignPatch) -> Campaign:
        async with self._write_lock():
            existing = await self.get(campaign_id)
            merged = existing.model_dump()
            merged.update(patch.model_dump(exclude_unset=True))
            merged["updated_at"] = self.clock()
            campaign = Campaign.model_validate(merged)
            if campaign.is_active:
                check_conflicts(campaign, await self.list_active(), exclude_id=campaign_id)
            await self._save(campaign)

        logger.info("Campaign updated", extra={"context": {"campaign_id": campaign_id}})
        return campaign

    async def delete(self, campaign_id: str) -> None:
        async with self._write_lock():
            if await self.store.get(item_key(campaign_id)) is None:
                raise CampaignNotFoundError(campaign_id)
            for key in campaign_keys(campaign_id):
                await self.store.delete(key)
            await self.store.zrem(INDEX_KEY, campaign_id)
        logger.info("Campaign deleted", extra={"context": {"campaign_id": campaign_id}})

    async def increment_counter(self, campaign_id: str, which: str) -> int:
        """Atomically add one move to ``v1``, ``v2`` or ``exp``; returns the new value."""
        if which not in COUNTER_NAMES:
            raise ValueError(f"Unknown counter: {which}")

        raw = await self.store.get(item_key(campaign_id))
        if raw is None:
            raise CampaignNotFoundError(campaign_id)

        key = counters_key(campaign_id)
        stored = decode_campaign(raw, fallback_id=campaign_id)
        # seed from the record once; a concurrent seeder writes the same value
        await self.store.hsetnx(key, which, stored.counter(which) if stored else 0)
        value = await self.store.hincrby(key, which, 1)

        logger.info(
            "Campaign counter incremented",
            extra={"context": {"campaign_id": campaign_id, "counter": which, "value": value}},
        )
        return value
