import asyncio
import fnmatch

from token_aggregator.services.cache import CacheService


class FakePipeline:

    def __init__(self, client):
        self.client = client
        self.commands = []

    def setex(self, key, ttl, value):
        self.commands.append((key, ttl, value))

    async def execute(self):
        for key, ttl, value in self.commands:
            await self.client.setex(key, ttl, value)


class FakeRedis:
    """Minimal async Redis double covering the commands CacheService issues."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.closed = False

    async def ping(self):
        return True

    async def get(self, key):
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self.data[key] = value.encode("utf-8") if isinstance(value, str) else value
        self.ttls[key] = ttl

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += self.data.pop(key, None) is not None
        return removed

    async def exists(self, key):
        return int(key in self.data)

    async def mget(self, keys):
        return [self.data.get(key) for key in keys]

    async def incr(self, key):
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = value
        return value

    async def expire(self, key, ttl):
        self.ttls[key] = ttl

    async def scan_iter(self, match=None, count=None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    def pipeline(self):
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True


class BrokenRedis(FakeRedis):

    async def ping(self):
        raise ConnectionError("redis down")

    async def get(self, key):
        raise ConnectionError("redis down")

    async def setex(self, key, ttl, value):
        raise ConnectionError("redis down")

    async def incr(self, key):
        raise ConnectionError("redis down")

    async def mget(self, keys):
        raise ConnectionError("redis down")


def test_values_are_namespaced_json_with_ttl(settings):
    client = FakeRedis()
    cache = CacheService(settings, client=client)

    asyncio.run(cache.set("tokens:a", {"price": 1.5}, ttl=12))

    assert client.data == {"token-aggregator:tokens:a": b'{"price": 1.5}'}
    assert client.ttls["token-aggregator:tokens:a"] == 12
    assert asyncio.run(cache.get("tokens:a")) == {"price": 1.5}
    assert asyncio.run(cache.exists("tokens:a"))


def test_default_ttl_comes_from_settings(settings):
    client = FakeRedis()
    cache = CacheService(settings, client=client)

    asyncio.run(cache.set("key", 1))

    assert client.ttls["token-aggregator:key"] == settings.cache_ttl


def test_delete_pattern_stays_inside_namespace(settings):
    client = FakeRedis()
    cache = CacheService(settings, client=client)
    client.data["other-app:tokens:x"] = b"1"

    async def run():
        await cache.mset({"tokens:a": 1, "tokens:b": 2, "rate-limit:ip": 3})
        return await cache.delete_pattern("tokens:*")

    assert asyncio.run(run()) == 2
    assert sorted(client.data) == ["other-app:tokens:x", "token-aggregator:rate-limit:ip"]


def test_mget_treats_undecodable_values_as_missing(settings):
    client = FakeRedis()
    cache = CacheService(settings, client=client)
    client.data["token-aggregator:bad"] = b"{not json"

    async def run():
        await cache.set("good", [1, 2])
        return await cache.mget(["good", "bad", "absent"])

    assert asyncio.run(run()) == [[1, 2], None, None]


def test_increment_sets_expiry_on_first_hit(settings):
    client = FakeRedis()
    cache = CacheService(settings, client=client)

    async def run():
        return [await cache.increment("counter", ttl=60) for _ in range(3)]

    assert asyncio.run(run()) == [1, 2, 3]
    assert client.ttls["token-aggregator:counter"] == 60


def test_failures_degrade_to_misses(settings):
    cache = CacheService(settings, client=BrokenRedis())

    async def run():
        await cache.set("key", 1)
        return (
            await cache.get("key"),
            await cache.mget(["key"]),
            await cache.increment("key"),
            await cache.health_check(),
        )

    assert asyncio.run(run()) == (None, [None], 0, False)


def test_unconnected_cache_is_a_no_op(settings):
    cache = CacheService(settings)

    async def run():
        await cache.set("key", 1)
        return await cache.get("key"), await cache.delete_pattern("*"), await cache.health_check()

    assert asyncio.run(run()) == (None, 0, False)


def test_disconnect_closes_client(settings):
    client = FakeRedis()
    cache = CacheService(settings, client=client)

    asyncio.run(cache.disconnect())

    assert client.closed
    assert not asyncio.run(cache.health_check())
