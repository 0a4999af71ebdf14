import json

import pytest

from campaign_sync.store import StoreError


class TestKVStore:
    @pytest.mark.asyncio
    async def test_json_round_trip_and_plain_text(self, store, fake_redis):
        await store.set_json("k", {"a": 1})
        fake_redis.data["raw"] = "not json"

        assert await store.get_json("k") == {"a": 1}
        assert await store.get_json("raw") == "not json"
        assert await store.get_json("missing") is None

    @pytest.mark.asyncio
    async def test_push_capped_keeps_newest(self, store, fake_redis):
        for i in range(5):
            await store.push_capped("logs:test", {"n": i}, 3)

        items = [json.loads(item)["n"] for item in fake_redis.data["logs:test"]]
        assert items == [4, 3, 2]

    @pytest.mark.asyncio
    async def test_redis_error_becomes_store_error(self, store, fake_redis):
        fake_redis.fail_on.add("hget")

        with pytest.raises(StoreError) as exc_info:
            await store.hget("h", "f")

        assert exc_info.value.operation == "hget"
        assert exc_info.value.key == "h"

    @pytest.mark.asyncio
    async def test_hdel_without_fields_is_noop(self, store):
        assert await store.hdel("h") == 0


class TestLocks:
    @pytest.mark.asyncio
    async def test_lock_is_exclusive_until_released(self, store, fake_redis):
        token = await store.acquire_lock("locks:x", 30)

        assert token is not None
        assert fake_redis.ttl["locks:x"] == 30
        assert await store.acquire_lock("locks:x", 30) is None

        assert await store.release_lock("locks:x", token) is True
        assert await store.acquire_lock("locks:x", 30) is not None

    @pytest.mark.asyncio
    async def test_release_ignores_foreign_token(self, store, fake_redis):
        await store.acquire_lock("locks:x", 30)

        assert await store.release_lock("locks:x", "someone-else") is False
        assert "locks:x" in fake_redis.data
