import json
from datetime import datetime, timezone
from typing import Optional

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from campaign_sync.services.campaign_registry import CampaignRegistry
from campaign_sync.services.card_locator import CardLocator
from campaign_sync.services.card_mover import CardMover
from campaign_sync.services.crm_client import KeyCrmClient
from campaign_sync.services.stage_tracker import StageEntryTracker
from campaign_sync.store import KVStore

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _redis_slice(items: list, start: int, stop: int) -> list:
    size = len(items)
    if start < 0:
        start += size
    if stop < 0:
        stop += size
    start = max(start, 0)
    return items[start : stop + 1]


class FakeRedis:
    """Dict-backed stand-in for redis.asyncio.Redis with decode_responses=True."""

    def __init__(self):
        self.data: dict = {}
        self.ttl: dict[str, int] = {}
        self.fail_on: set[str] = set()
        self.closed = False

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise RedisConnectionError(f"{operation} unavailable")

    async def get(self, key: str):
        self._check("get")
        value = self.data.get(key)
        return value if isinstance(value, str) else None

    async def set(self, key: str, value: str, ex: Optional[int] = None, nx: bool = False):
        self._check("set")
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex:
            self.ttl[key] = ex
        return True

    async def delete(self, key: str):
        self._check("delete")
        self.ttl.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0

    async def lpush(self, key: str, value: str):
        self._check("lpush")
        items = self.data.setdefault(key, [])
        items.insert(0, value)
        return len(items)

    async def lrange(self, key: str, start: int, stop: int):
        self._check("lrange")
        return _redis_slice(self.data.get(key, []), start, stop)

    async def ltrim(self, key: str, start: int, stop: int):
        self._check("ltrim")
        self.data[key] = _redis_slice(self.data.get(key, []), start, stop)
        return True

    async def lrem(self, key: str, count: int, value: str):
        items = self.data.get(key, [])
        kept = [item for item in items if item != value]
        self.data[key] = kept
        return len(items) - len(kept)

    async def zadd(self, key: str, mapping: dict):
        self._check("zadd")
        zset = self.data.setdefault(key, {})
        added = len([member for member in mapping if member not in zset])
        zset.update(mapping)
        return added

    async def zrange(self, key: str, start: int, stop: int):
        self._check("zrange")
        zset = self.data.get(key, {})
        ordered = [member for member, _ in sorted(zset.items(), key=lambda item: (item[1], item[0]))]
        return _redis_slice(ordered, start, stop)

    async def zrem(self, key: str, member: str):
        zset = self.data.get(key, {})
        return 1 if zset.pop(member, None) is not None else 0

    async def hget(self, key: str, field: str):
        self._check("hget")
        return self.data.get(key, {}).get(field)

    async def hgetall(self, key: str):
        self._check("hgetall")
        return dict(self.data.get(key, {}))

    async def hset(self, key: str, field: str, value: str):
        self._check("hset")
        bucket = self.data.setdefault(key, {})
        created = field not in bucket
        bucket[field] = value
        return int(created)

    async def hsetnx(self, key: str, field: str, value: str):
        self._check("hsetnx")
        bucket = self.data.setdefault(key, {})
        if field in bucket:
            return 0
        bucket[field] = value
        return 1

    async def hdel(self, key: str, *fields: str):
        bucket = self.data.get(key, {})
        return len([field for field in fields if bucket.pop(field, None) is not None])

    async def hincrby(self, key: str, field: str, amount: int = 1):
        self._check("hincrby")
        bucket = self.data.setdefault(key, {})
        value = int(bucket.get(field, 0)) + amount
        bucket[field] = str(value)
        return value

    async def aclose(self):
        self.closed = True


def make_card(card_id: int, pipeline_id: int = 1, status_id: int = 10, *, title=None, social_id=None, full_name=None):
    card = {"id": card_id, "title": title or f"Card {card_id}", "pipeline_id": pipeline_id, "status_id": status_id}
    if social_id is not None or full_name is not None:
        card["contact"] = {"social_id": social_id, "full_name": full_name}
    return card


class FakeCrm:
    """In-memory KeyCRM pipelines API served through httpx.MockTransport."""

    def __init__(self, cards: Optional[list] = None, styles=("laravel", "jsonapi"), unsupported: str = "error"):
        self.cards: list[dict] = list(cards or [])
        self.styles = set(styles)
        self.unsupported = unsupported
        self.failing_ids: set[int] = set()
        self.vanished_ids: set[int] = set()
        self.requests: list[httpx.Request] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def list_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "GET" and r.url.path.endswith("/pipelines/cards")]

    def put_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "PUT"]

    def find(self, card_id: int) -> Optional[dict]:
        for card in self.cards:
            if card["id"] == card_id:
                return card
        return None

    def _list(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        if "page[number]" in params:
            style, page, size = "jsonapi", params["page[number]"], params["page[size]"]
        else:
            style, page, size = "laravel", params.get("page", "1"), params.get("per_page", "15")

        if style not in self.styles:
            if self.unsupported == "error":
                return httpx.Response(400, json={"message": "unsupported pagination"})
            return httpx.Response(200, json={"data": {}})

        page, size = int(page), int(size)
        rows = self.cards[(page - 1) * size : page * size]
        return httpx.Response(200, json={"data": rows, "current_page": page})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/pipelines/cards") and request.method == "GET":
            return self._list(request)

        card_id = int(path.rsplit("/", 1)[-1])
        if card_id in self.failing_ids:
            return httpx.Response(500, json={"message": "boom"})
        card = self.find(card_id)
        if card is None or card_id in self.vanished_ids:
            return httpx.Response(404, json={"message": "not found"})
        if request.method == "GET":
            return httpx.Response(200, json={"data": card})
        body = json.loads(request.content)
        card["pipeline_id"] = body["pipeline_id"]
        card["status_id"] = body["status_id"]
        return httpx.Response(200, json={"data": card})


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store(fake_redis):
    return KVStore(fake_redis)


@pytest.fixture
def fake_crm():
    return FakeCrm()


@pytest.fixture
def crm_client(fake_crm):
    return KeyCrmClient("https://crm.test/v1", "test-token", transport=fake_crm.transport())


@pytest.fixture
def registry(store):
    counter = iter(range(1, 1000))
    return CampaignRegistry(store, clock=lambda: FIXED_NOW, id_factory=lambda: f"c{next(counter)}")


@pytest.fixture
def locator(crm_client):
    return CardLocator(crm_client, title_prefix="Chat with")


@pytest.fixture
def mover(crm_client):
    return CardMover(crm_client)


@pytest.fixture
def tracker(store):
    return StageEntryTracker(store, clock=lambda: 1_700_000_000_000)
