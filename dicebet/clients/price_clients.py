from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Protocol

import httpx

from dicebet.config import BASE_ASSET, STABLE_ASSET, Asset, QuoteProvider, settings
from dicebet.errors import SourceUnavailable
from dicebet.helpers import convert_amount
from dicebet.logging_config import get_logger
from dicebet.schemas.quote_schemas import ProviderPrice

logger = get_logger(__name__)


class PriceSource(Protocol):
    provider: QuoteProvider

    async def quote(self, sell_amount: int) -> ProviderPrice: ...


def _positive_price(value: Any, provider: QuoteProvider) -> Decimal:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, TypeError) as exc:
        raise SourceUnavailable(provider.value, f"malformed price {value!r}") from exc
    if not price.is_finite() or price <= 0:
        raise SourceUnavailable(provider.value, f"unusable price {value!r}")
    return price


class UnitPriceSource:
    """Base for tiers that only report a unit price; amounts are derived locally."""

    provider: QuoteProvider

    def __init__(self, sell_asset: Asset = BASE_ASSET, buy_asset: Asset = STABLE_ASSET):
        self.sell_asset = sell_asset
        self.buy_asset = buy_asset

    async def unit_price(self) -> Decimal:
        raise NotImplementedError

    async def quote(self, sell_amount: int) -> ProviderPrice:
        price = await self.unit_price()
        buy_amount = convert_amount(sell_amount, self.sell_asset.decimals, price, self.buy_asset.decimals)
        return ProviderPrice(price=price, buyAmount=buy_amount, sellAmount=sell_amount)


class _HttpPriceSource(UnitPriceSource):
    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None, **kwargs):
        super().__init__(**kwargs)
        self._owns_client = client is None
        self.client = client if client is not None else httpx.AsyncClient(base_url=base_url, timeout=settings.quote_timeout_seconds)

    async def _get_json(self, url: str, **kwargs) -> Any:
        try:
            resp = await self.client.get(url, **kwargs)
        except httpx.RequestError as exc:
            raise SourceUnavailable(self.provider.value, f"request error: {exc}") from exc
        if resp.status_code != 200:
            raise SourceUnavailable(self.provider.value, f"status {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise SourceUnavailable(self.provider.value, "body is not json") from exc

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()


class RealtimePriceSource(_HttpPriceSource):
    """CoinMarketCap-style quotes feed. Needs an API key."""

    provider = QuoteProvider.REALTIME

    def __init__(self, api_key: str | None = None, base_url: str | None = None, client: httpx.AsyncClient | None = None, **kwargs):
        super().__init__(base_url if base_url is not None else str(settings.realtime_price_url), client, **kwargs)
        self.api_key = api_key if api_key is not None else settings.realtime_api_key

    async def unit_price(self) -> Decimal:
        if not self.api_key:
            raise SourceUnavailable(self.provider.value, "no api key configured")
        symbol = self.sell_asset.symbol
        data = await self._get_json(
            "/v1/cryptocurrency/quotes/latest",
            params={"symbol": symbol},
            headers={"X-CMC_PRO_API_KEY": self.api_key},
        )
        try:
            price = data["data"][symbol]["quote"]["USD"]["price"]
        except (KeyError, TypeError) as exc:
            raise SourceUnavailable(self.provider.value, "price missing from body") from exc
        return _positive_price(price, self.provider)


class MarketDataPriceSource(_HttpPriceSource):
    """Public market-data API; tries each candidate token id in turn."""

    provider = QuoteProvider.COINGECKO

    def __init__(self, token_ids: list[str] | None = None, base_url: str | None = None, client: httpx.AsyncClient | None = None, **kwargs):
        super().__init__(base_url if base_url is not None else str(settings.market_data_url), client, **kwargs)
        self.token_ids = token_ids if token_ids is not None else list(settings.market_data_token_ids)

    async def unit_price(self) -> Decimal:
        for token_id in self.token_ids:
            try:
                data = await self._get_json("/api/v3/simple/price", params={"ids": token_id, "vs_currencies": "usd"})
                return _positive_price((data.get(token_id) or {}).get("usd"), self.provider)
            except (SourceUnavailable, AttributeError) as exc:
                logger.info("Market data has no price for token_id=%s reason=%s", token_id, exc)
        raise SourceUnavailable(self.provider.value, f"no price for any of {self.token_ids}")


class DexPriceSource(_HttpPriceSource):
    """DEX-style indicative price endpoint; reports amounts in base units itself."""

    provider = QuoteProvider.ZEROX

    def __init__(self, api_key: str | None = None, base_url: str | None = None, client: httpx.AsyncClient | None = None, chain_id: Optional[int] = None, **kwargs):
        super().__init__(base_url if base_url is not None else str(settings.dex_price_url), client, **kwargs)
        self.api_key = api_key if api_key is not None else settings.dex_api_key
        self.chain_id = chain_id if chain_id is not None else settings.chain_id

    async def quote(self, sell_amount: int) -> ProviderPrice:
        params = {
            "sellToken": self.sell_asset.address,
            "buyToken": self.buy_asset.address,
            "sellAmount": str(sell_amount),
            "chainId": str(self.chain_id),
        }
        data = await self._get_json("/swap/v1/price", params=params, headers={"0x-api-key": self.api_key})
        try:
            return ProviderPrice(
                price=_positive_price(data["price"], self.provider),
                buyAmount=int(data["buyAmount"]),
                sellAmount=int(data.get("sellAmount", sell_amount)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise SourceUnavailable(self.provider.value, f"malformed body: {exc}") from exc


class SyntheticPriceSource(UnitPriceSource):
    """Fixed last-resort price. Never fails."""

    provider = QuoteProvider.FALLBACK

    def __init__(self, price: Decimal | None = None, **kwargs):
        super().__init__(**kwargs)
        self.price = price if price is not None else settings.fallback_unit_price

    async def unit_price(self) -> Decimal:
        return self.price


def default_price_sources() -> list[PriceSource]:
    return [RealtimePriceSource(), MarketDataPriceSource(), DexPriceSource()]
