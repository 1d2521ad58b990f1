import fnmatch
import json
import time
from typing import Any, Dict, List, Optional

import pytest

from token_aggregator.api.schemas import Token
from token_aggregator.core.config import Settings


def make_token(address: str, **overrides) -> Token:
    fields = {
        "token_address": address,
        "token_name": f"Token {address}",
        "token_ticker": address.upper()[:4],
        "price_sol": 1.0,
        "market_cap_sol": 1000.0,
        "volume_sol": 500.0,
        "liquidity_sol": 200.0,
        "transaction_count": 100,
        "price_1hr_change": 0.0,
        "protocol": "Raydium",
        "dex_id": "raydium",
        "last_updated": int(time.time() * 1000),
    }
    fields.update(overrides)
    return Token(**fields)


class FakeCache:
    """In-memory stand-in for CacheService that round-trips values through JSON."""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.counters: Dict[str, int] = {}
        self.get_calls = 0
        self.set_calls = 0

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[Any]:
        self.get_calls += 1
        value = self.store.get(key)
        return None if value is None else json.loads(value)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self.set_calls += 1
        self.store[key] = json.dumps(value, default=str)

    async def delete(self, key: str) -> None:
        self.store.pop(key, None)

    async def delete_pattern(self, pattern: str) -> int:
        keys = [key for key in self.store if fnmatch.fnmatchcase(key, pattern)]
        for key in keys:
            del self.store[key]
        return len(keys)

    async def exists(self, key: str) -> bool:
        return key in self.store

    async def mget(self, keys: List[str]) -> List[Optional[Any]]:
        return [await self.get(key) for key in keys]

    async def mset(self, items: Dict[str, Any], ttl: Optional[int] = None) -> None:
        for key, value in items.items():
            await self.set(key, value, ttl)

    async def increment(self, key: str, ttl: Optional[int] = None) -> int:
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]


class BrokenCache(FakeCache):
    """Cache whose every operation raises, as an unreachable store would."""

    async def get(self, key):
        raise ConnectionError("cache down")

    async def set(self, key, value, ttl=None):
        raise ConnectionError("cache down")

    async def delete_pattern(self, pattern):
        raise ConnectionError("cache down")

    async def increment(self, key, ttl=None):
        raise ConnectionError("cache down")

    async def health_check(self):
        return False


class FakeProvider:
    """Provider double with canned results and call counters."""

    def __init__(
        self,
        name: str,
        tokens: Optional[List[Token]] = None,
        search_results: Optional[List[Token]] = None,
        by_address: Optional[Dict[str, List[Token]]] = None,
        error: Optional[Exception] = None
    ):
        self.name = name
        self.tokens = tokens or []
        self.search_results = search_results if search_results is not None else self.tokens
        self.by_address = by_address or {}
        self.error = error
        self.calls: List[str] = []

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def fetch_all(self) -> List[Token]:
        self.calls.append("fetch_all")
        if self.error:
            raise self.error
        return list(self.tokens)

    async def search(self, query: str) -> List[Token]:
        self.calls.append(f"search:{query}")
        if self.error:
            raise self.error
        return list(self.search_results)

    async def fetch_by_address(self, address: str) -> List[Token]:
        self.calls.append(f"fetch_by_address:{address}")
        if self.error:
            raise self.error
        return list(self.by_address.get(address.lower(), []))


class FakeWebSocket:
    """Records frames sent by the connection manager."""

    def __init__(self, fail_on_send: bool = False):
        self.accepted = False
        self.fail_on_send = fail_on_send
        self.sent: List[Dict[str, Any]] = []

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, text: str) -> None:
        if self.fail_on_send:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))

    def events(self, name: str) -> List[Dict[str, Any]]:
        return [message["data"] for message in self.sent if message["event"] == name]


@pytest.fixture
def settings():
    return Settings(
        cache_ttl=30,
        pagination_default_limit=20,
        pagination_max_limit=100,
        retry_max_retries=2,
        retry_initial_delay=0.0,
        retry_max_delay=0.0,
        broadcast_interval=0.05,
        log_format="text",
        log_level="WARNING"
    )


@pytest.fixture
def cache():
    return FakeCache()


@pytest.fixture
def sample_tokens():
    return [
        make_token("addr1", token_name="Token A", token_ticker="TKA", price_sol=0.5,
                   market_cap_sol=1000, volume_sol=500, liquidity_sol=200,
                   transaction_count=100, price_1hr_change=5),
        make_token("addr2", token_name="Token B", token_ticker="TKB", price_sol=1.5,
                   market_cap_sol=2000, volume_sol=1000, liquidity_sol=400,
                   transaction_count=200, price_1hr_change=-3, protocol="Orca"),
    ]
