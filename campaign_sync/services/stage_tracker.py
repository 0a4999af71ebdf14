"""When did a card enter a campaign's base stage.

The CRM does not report stage-entry time, so it is recorded here:
the KeyCRM webhook writes the transition time, and the sweep writes a
first-seen time for cards it finds in base without a record.
"""

import time
from typing import Callable, Iterable, Optional

from campaign_sync.logging_config import get_logger
from campaign_sync.store import KVStore

logger = get_logger("stage_tracker")


def entries_key(campaign_id: str) -> str:
    return f"campaigns:base-entered:{campaign_id}"


def _now_ms() -> int:
    return int(time.time() * 1000)


class StageEntryTracker:
    def __init__(self, store: KVStore, clock: Callable[[], int] = _now_ms):
        self.store = store
        self.clock = clock

    async def record_entry(self, campaign_id: str, card_id: int, at_ms: Optional[int] = None) -> int:
        """Overwrite the entry time; used when the transition time is known."""
        at_ms = self.clock() if at_ms is None else at_ms
        await self.store.hset(entries_key(campaign_id), str(card_id), at_ms)
        return at_ms

    async def ensure_entries(self, campaign_id: str, card_ids: Iterable[int]) -> dict[int, int]:
        """Entry time per card, stamping first-seen now for cards with no record."""
        key = entries_key(campaign_id)
        stored = await self.store.hgetall(key)
        now = self.clock()
        out: dict[int, int] = {}
        for card_id in card_ids:
            raw = stored.get(str(card_id))
            if raw is None:
                if not await self.store.hsetnx(key, str(card_id), now):
                    # another writer got there first
                    raw = await self.store.hget(key, str(card_id))
            out[card_id] = int(raw) if raw is not None else now
        return out

    async def entered_at(self, campaign_id: str, card_id: int) -> Optional[int]:
        raw = await self.store.hget(entries_key(campaign_id), str(card_id))
        return int(raw) if raw is not None else None

    async def clear(self, campaign_id: str, card_id: int) -> None:
        await self.store.hdel(entries_key(campaign_id), str(card_id))

    async def prune(self, campaign_id: str, present_ids: Iterable[int]) -> int:
        """Drop records of cards that are no longer in base. Only safe after a complete scan."""
        keep = {str(card_id) for card_id in present_ids}
        stored = await self.store.hgetall(entries_key(campaign_id))
        stale = [field for field in stored if field not in keep]
        if stale:
            await self.store.hdel(entries_key(campaign_id), *stale)
            logger.info(
                "Pruned stage-entry records",
                extra={"context": {"campaign_id": campaign_id, "count": len(stale)}},
            )
        return len(stale)
