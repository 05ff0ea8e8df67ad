import asyncio
from decimal import Decimal

import httpx
import pytest
from pydantic import ValidationError as SchemaError

from conftest import WEI
from dicebet.clients.price_clients import (
    DexPriceSource,
    MarketDataPriceSource,
    RealtimePriceSource,
    SyntheticPriceSource,
)
from dicebet.config import QuoteProvider
from dicebet.errors import RejectionReason, SourceUnavailable
from dicebet.quotes import QuoteAggregator
from dicebet.schemas.quote_schemas import PriceQuote, ProviderPrice


class FakeSource:
    def __init__(self, provider, answer=None, error=None, delay=0.0):
        self.provider = provider
        self.answer = answer
        self.error = error
        self.delay = delay
        self.requests = []

    async def quote(self, sell_amount):
        self.requests.append(sell_amount)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.answer


def price(unit, buy, sell=WEI):
    return ProviderPrice(price=Decimal(unit), buyAmount=buy, sellAmount=sell)


def mock_client(handler, base_url="https://prices.test"):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


@pytest.mark.parametrize("amount", ["", "0", "000", "-5", "1.5", "abc", "0x10", " ", "١٢٣"])
def test_invalid_amount_fails_before_any_source(amount):
    source = FakeSource(QuoteProvider.REALTIME, answer=price("1", 1))
    aggregator = QuoteAggregator(sources=[source])
    result = asyncio.run(aggregator.get_price(amount))
    assert not result.ok
    assert result.error.reason == RejectionReason.INVALID_AMOUNT
    assert source.requests == []


def test_first_valid_source_wins():
    first = FakeSource(QuoteProvider.REALTIME, answer=price("0.003", 3000))
    second = FakeSource(QuoteProvider.COINGECKO, answer=price("0.004", 4000))
    result = asyncio.run(QuoteAggregator(sources=[first, second]).get_price(str(WEI)))

    quote = result.value
    assert quote.provider == QuoteProvider.REALTIME
    assert quote.targetAmount == "3000"
    assert quote.sourceAmount == str(WEI)
    assert quote.unitPrice == "0.003"
    assert second.requests == []


def test_failing_sources_fall_through_to_next_tier():
    sources = [
        FakeSource(QuoteProvider.REALTIME, error=SourceUnavailable("real", "down")),
        FakeSource(QuoteProvider.COINGECKO, error=RuntimeError("boom")),
        FakeSource(QuoteProvider.ZEROX, answer=price("0.0025", 2500)),
    ]
    quote = asyncio.run(QuoteAggregator(sources=sources).get_price(str(WEI))).value
    assert quote.provider == QuoteProvider.ZEROX
    assert quote.targetAmount == "2500"


def test_all_tiers_down_yields_deterministic_fallback():
    sources = [
        FakeSource(QuoteProvider.REALTIME, error=SourceUnavailable("real")),
        FakeSource(QuoteProvider.COINGECKO, error=ValueError("bad body")),
        FakeSource(QuoteProvider.ZEROX, answer=price("0", 0)),
    ]
    result = asyncio.run(QuoteAggregator(sources=sources).get_price("1000000000000000000"))

    assert result.ok
    quote = result.value
    assert quote.provider == QuoteProvider.FALLBACK
    assert quote.targetAmount == "2400"
    assert quote.unitPrice == "0.0024"


def test_slow_source_is_abandoned_after_timeout():
    slow = FakeSource(QuoteProvider.REALTIME, answer=price("9", 9), delay=1.0)
    fast = FakeSource(QuoteProvider.COINGECKO, answer=price("0.002", 2000))
    result = asyncio.run(QuoteAggregator(sources=[slow, fast], timeout_seconds=0.05).get_price(str(WEI)))
    assert result.value.provider == QuoteProvider.COINGECKO


def test_fallback_truncates_instead_of_rounding():
    # 1.234567890123456789 * 0.0024 = 0.0029629629362962962936 -> 0.002962
    result = asyncio.run(QuoteAggregator(sources=[]).get_price("1234567890123456789"))
    assert result.value.targetAmount == "2962"


def test_dust_amount_is_never_quoted_as_zero():
    result = asyncio.run(QuoteAggregator(sources=[]).get_price("1"))
    assert not result.ok
    assert result.error.reason == RejectionReason.INVALID_AMOUNT


def test_synthetic_source_price_is_configurable():
    fallback = SyntheticPriceSource(price=Decimal("0.5"))
    quote = asyncio.run(QuoteAggregator(sources=[], fallback=fallback).get_price(str(2 * WEI))).value
    assert quote.targetAmount == "1000000"


def test_realtime_source_reads_feed_price():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"data": {"MON": {"quote": {"USD": {"price": 0.0031}}}}})

    source = RealtimePriceSource(api_key="k", client=mock_client(handler))
    answer = asyncio.run(source.quote(2 * WEI))

    assert answer.buyAmount == 6200
    assert seen[0].headers["X-CMC_PRO_API_KEY"] == "k"
    assert seen[0].url.params["symbol"] == "MON"


def test_realtime_source_without_key_makes_no_request():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={})

    source = RealtimePriceSource(api_key="", client=mock_client(handler))
    with pytest.raises(SourceUnavailable):
        asyncio.run(source.quote(WEI))
    assert seen == []


def test_market_data_source_tries_each_token_id():
    def handler(request):
        token_id = request.url.params["ids"]
        if token_id == "monad":
            return httpx.Response(200, json={})
        return httpx.Response(200, json={token_id: {"usd": 0.005}})

    source = MarketDataPriceSource(token_ids=["monad", "monad-protocol"], client=mock_client(handler))
    answer = asyncio.run(source.quote(WEI))
    assert answer.price == Decimal("0.005")
    assert answer.buyAmount == 5000


def test_market_data_source_unavailable_when_no_id_has_a_price():
    source = MarketDataPriceSource(token_ids=["a", "b"], client=mock_client(lambda request: httpx.Response(404)))
    with pytest.raises(SourceUnavailable):
        asyncio.run(source.quote(WEI))


def test_dex_source_uses_reported_base_units():
    def handler(request):
        assert request.url.path == "/swap/v1/price"
        assert request.url.params["sellAmount"] == str(WEI)
        assert request.headers["0x-api-key"] == "demo"
        return httpx.Response(200, json={"price": "0.0025", "buyAmount": "2500", "sellAmount": str(WEI)})

    source = DexPriceSource(api_key="demo", client=mock_client(handler))
    answer = asyncio.run(source.quote(WEI))
    assert answer.buyAmount == 2500
    assert answer.sellAmount == WEI


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="oops"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"price": "0.0025"}),
        httpx.Response(200, json={"price": "-1", "buyAmount": "5"}),
    ],
)
def test_dex_source_failures_are_source_unavailable(response):
    source = DexPriceSource(client=mock_client(lambda request: response))
    with pytest.raises(SourceUnavailable):
        asyncio.run(source.quote(WEI))


def test_http_tiers_all_failing_degrade_to_fallback():
    def network_down(request):
        raise httpx.ConnectError("unreachable", request=request)

    sources = [
        RealtimePriceSource(api_key="k", client=mock_client(network_down)),
        MarketDataPriceSource(client=mock_client(lambda request: httpx.Response(503))),
        DexPriceSource(client=mock_client(lambda request: httpx.Response(200, json={"price": "0.1", "buyAmount": "0"}))),
    ]
    result = asyncio.run(QuoteAggregator(sources=sources).get_price(str(WEI)))
    assert result.value.provider == QuoteProvider.FALLBACK
    assert result.value.targetAmount == "2400"


@pytest.mark.parametrize("amount", ["0", "١٢٣", "12.5", ""])
def test_price_quote_requires_ascii_positive_base_units(amount):
    with pytest.raises(SchemaError):
        PriceQuote(sourceAmount=amount, targetAmount="2400", unitPrice="0.0024", provider=QuoteProvider.FALLBACK)


def test_aclose_closes_only_clients_the_sources_created():
    injected = mock_client(lambda request: httpx.Response(503))
    owned = RealtimePriceSource(api_key="", base_url="https://prices.test")
    shared = MarketDataPriceSource(client=injected)

    async def scenario():
        async with QuoteAggregator(sources=[owned, shared]) as aggregator:
            result = await aggregator.get_price(str(WEI))
        return result

    result = asyncio.run(scenario())
    assert result.value.provider == QuoteProvider.FALLBACK
    assert owned.client.is_closed
    assert not injected.is_closed


def test_source_answering_nothing_falls_through():
    silent = FakeSource(QuoteProvider.REALTIME, answer=None)
    result = asyncio.run(QuoteAggregator(sources=[silent]).get_price(str(WEI)))
    assert result.value.provider == QuoteProvider.FALLBACK
