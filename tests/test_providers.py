import asyncio

import httpx
import pytest

from conftest import FakeCache
from token_aggregator.providers.base import (
    AuthenticationError,
    DataNotFoundError,
    InvalidResponseError,
    ProviderError,
)
from token_aggregator.providers.dexscreener_provider import DexScreenerProvider
from token_aggregator.providers.jupiter_provider import JupiterProvider
from token_aggregator.services.aggregation import AggregationService


def dex_pair(address="Mint1", chain="solana", **overrides):
    pair = {
        "chainId": chain,
        "dexId": "raydium",
        "baseToken": {"address": address, "name": "Bonk", "symbol": "BONK"},
        "priceUsd": "2.5",
        "marketCap": 500000,
        "volume": {"h24": 10000},
        "liquidity": {"usd": 4000},
        "txns": {"h24": {"buys": 30, "sells": 12}},
        "priceChange": {"h1": 1.5, "h24": -4.0},
    }
    pair.update(overrides)
    return pair


def jupiter_token(address="Mint1", **overrides):
    token = {
        "id": address,
        "name": "Bonk",
        "symbol": "BONK",
        "usdPrice": 3.0,
        "mcap": 900000,
        "liquidity": 2000,
        "stats1h": {"priceChange": 0.7},
        "stats24h": {"priceChange": 2.0, "buyVolume": 600, "sellVolume": 400, "numBuys": 5, "numSells": 6},
    }
    token.update(overrides)
    return token


class RecordingHandler:
    """MockTransport handler that replays a list of responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        template = self.responses[min(len(self.requests), len(self.responses)) - 1]
        return httpx.Response(template.status_code, headers=template.headers, content=template.content)


def run(provider, operation, *args):
    async def call():
        async with provider:
            return await getattr(provider, operation)(*args)
    return asyncio.run(call())


class TestDexScreenerProvider:

    def test_keeps_configured_chain_and_converts_amounts(self, settings):
        handler = RecordingHandler(httpx.Response(200, json={
            "pairs": [dex_pair(), dex_pair("EthMint", chain="ethereum")]
        }))
        provider = DexScreenerProvider(settings, transport=httpx.MockTransport(handler))

        tokens = run(provider, "fetch_all")

        assert [t.token_address for t in tokens] == ["Mint1"]
        token = tokens[0]
        assert token.token_ticker == "BONK"
        assert token.price_sol == pytest.approx(0.025)
        assert token.market_cap_sol == pytest.approx(5000)
        assert token.volume_sol == pytest.approx(100)
        assert token.liquidity_sol == pytest.approx(40)
        assert token.transaction_count == 42
        assert token.price_1hr_change == 1.5
        assert token.price_24hr_change == -4.0
        assert token.price_7d_change is None
        assert token.protocol == "raydium"
        assert handler.requests[0].url.path.endswith("/search")
        assert handler.requests[0].url.params["q"] == settings.trending_query

    def test_falls_back_to_fdv_for_market_cap(self, settings):
        pair = dex_pair(marketCap=None, fdv=300)
        handler = RecordingHandler(httpx.Response(200, json={"pairs": [pair]}))
        provider = DexScreenerProvider(settings, transport=httpx.MockTransport(handler))

        tokens = run(provider, "search", "bonk")

        assert tokens[0].market_cap_sol == pytest.approx(3)
        assert handler.requests[0].url.params["q"] == "bonk"

    def test_drops_malformed_records(self, settings):
        pairs = [dex_pair(priceUsd="not-a-number"), dex_pair("Mint2"), dex_pair(baseToken={})]
        handler = RecordingHandler(httpx.Response(200, json={"pairs": pairs}))
        provider = DexScreenerProvider(settings, transport=httpx.MockTransport(handler))

        tokens = run(provider, "fetch_all")

        assert [t.token_address for t in tokens] == ["Mint2"]

    def test_missing_pairs_is_an_empty_result(self, settings):
        handler = RecordingHandler(httpx.Response(200, json={"schemaVersion": "1.0.0", "pairs": None}))
        provider = DexScreenerProvider(settings, transport=httpx.MockTransport(handler))

        assert run(provider, "fetch_by_address", "Mint1") == []
        assert handler.requests[0].url.path.endswith("/tokens/Mint1")

    def test_not_found_is_not_retried(self, settings):
        handler = RecordingHandler(httpx.Response(404))
        provider = DexScreenerProvider(settings, transport=httpx.MockTransport(handler))

        with pytest.raises(DataNotFoundError):
            run(provider, "fetch_by_address", "Mint1")

        assert len(handler.requests) == 1

    def test_server_errors_are_retried_until_success(self, settings):
        handler = RecordingHandler(
            httpx.Response(500),
            httpx.Response(502),
            httpx.Response(200, json={"pairs": [dex_pair()]}),
        )
        provider = DexScreenerProvider(settings, transport=httpx.MockTransport(handler))

        tokens = run(provider, "fetch_all")

        assert len(tokens) == 1
        assert len(handler.requests) == 3

    def test_server_errors_exhaust_the_retry_budget(self, settings):
        handler = RecordingHandler(httpx.Response(503))
        provider = DexScreenerProvider(settings, transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderError) as exc_info:
            run(provider, "fetch_all")

        assert exc_info.value.status_code == 503
        assert len(handler.requests) == settings.retry_max_retries + 1

    def test_auth_failures_map_to_authentication_error(self, settings):
        handler = RecordingHandler(httpx.Response(401))
        provider = DexScreenerProvider(settings, transport=httpx.MockTransport(handler))

        with pytest.raises(AuthenticationError):
            run(provider, "fetch_all")

        assert len(handler.requests) == 1

    def test_non_object_body_is_invalid(self, settings):
        handler = RecordingHandler(httpx.Response(200, json=["unexpected"]))
        provider = DexScreenerProvider(settings, transport=httpx.MockTransport(handler))

        with pytest.raises(InvalidResponseError):
            run(provider, "fetch_all")

    def test_unparseable_body_is_invalid(self, settings):
        handler = RecordingHandler(httpx.Response(200, content=b"<html>"))
        provider = DexScreenerProvider(settings, transport=httpx.MockTransport(handler))

        with pytest.raises(InvalidResponseError):
            run(provider, "fetch_all")


class TestJupiterProvider:

    def test_transforms_token_statistics(self, settings):
        handler = RecordingHandler(httpx.Response(200, json=[jupiter_token()]))
        provider = JupiterProvider(settings, transport=httpx.MockTransport(handler))

        token = run(provider, "fetch_all")[0]

        assert token.token_address == "Mint1"
        assert token.price_sol == pytest.approx(0.03)
        assert token.market_cap_sol == pytest.approx(9000)
        assert token.volume_sol == pytest.approx(10)
        assert token.liquidity_sol == pytest.approx(20)
        assert token.transaction_count == 11
        assert token.price_1hr_change == 0.7
        assert token.protocol == "Jupiter"
        assert token.dex_id == "jupiter"

    def test_listing_is_truncated_to_configured_limit(self, settings):
        settings.jupiter_token_limit = 2
        handler = RecordingHandler(httpx.Response(200, json=[jupiter_token(f"Mint{i}") for i in range(5)]))
        provider = JupiterProvider(settings, transport=httpx.MockTransport(handler))

        tokens = run(provider, "fetch_all")

        assert [t.token_address for t in tokens] == ["Mint0", "Mint1"]

    def test_listing_accepts_wrapped_tokens(self, settings):
        record = jupiter_token()
        record.pop("id")
        record["address"] = "Mint7"
        handler = RecordingHandler(httpx.Response(200, json={"tokens": [record]}))
        provider = JupiterProvider(settings, transport=httpx.MockTransport(handler))

        assert [t.token_address for t in run(provider, "fetch_all")] == ["Mint7"]

    def test_missing_statistics_default_to_zero(self, settings):
        record = {"id": "Bare", "name": "Bare Token", "symbol": "BARE"}
        handler = RecordingHandler(httpx.Response(200, json=[record]))
        provider = JupiterProvider(settings, transport=httpx.MockTransport(handler))

        token = run(provider, "search", "bare")[0]

        assert token.volume_sol == 0
        assert token.transaction_count == 0
        assert handler.requests[0].url.params["query"] == "bare"

    def test_fetch_by_address_keeps_exact_matches(self, settings):
        handler = RecordingHandler(httpx.Response(200, json=[
            jupiter_token("MintABC"),
            jupiter_token("MintABCD"),
        ]))
        provider = JupiterProvider(settings, transport=httpx.MockTransport(handler))

        tokens = run(provider, "fetch_by_address", "mintabc")

        assert [t.token_address for t in tokens] == ["MintABC"]

    def test_search_requires_a_list(self, settings):
        handler = RecordingHandler(httpx.Response(200, json={"error": "bad"}))
        provider = JupiterProvider(settings, transport=httpx.MockTransport(handler))

        with pytest.raises(InvalidResponseError):
            run(provider, "search", "bonk")


def test_quote_side_listing_does_not_answer_address_lookup(settings):
    usdc = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
    pair = dex_pair("BonkMint", quoteToken={"address": usdc, "name": "USD Coin", "symbol": "USDC"})
    handler = RecordingHandler(httpx.Response(200, json={"pairs": [pair]}))
    provider = DexScreenerProvider(settings, transport=httpx.MockTransport(handler))
    cache = FakeCache()
    service = AggregationService([provider], cache, settings)

    async def lookup():
        async with provider:
            return await service.get_by_address(usdc)

    assert asyncio.run(lookup()) is None
    assert handler.requests[0].url.path.endswith(f"/tokens/{usdc}")
    assert cache.store == {}
