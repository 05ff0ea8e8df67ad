import asyncio
from typing import Optional, Sequence

from dicebet.clients.price_clients import PriceSource, SyntheticPriceSource, default_price_sources
from dicebet.config import BASE_ASSET, STABLE_ASSET, Asset, settings
from dicebet.errors import QuoteError, SourceUnavailable
from dicebet.helpers import parse_base_units, unit_price_of
from dicebet.logging_config import get_logger
from dicebet.results import Result
from dicebet.schemas.quote_schemas import PriceQuote, ProviderPrice

logger = get_logger(__name__)


class QuoteAggregator:
    """
    Resolves a conversion price by walking an ordered list of price sources.

    The first source whose answer is usable wins. Any failure of a source is
    absorbed and the next one is tried; the synthetic last resort always
    answers, so only a bad input amount is ever reported to the caller.
    """

    def __init__(
        self,
        sources: Optional[Sequence[PriceSource]] = None,
        fallback: Optional[SyntheticPriceSource] = None,
        timeout_seconds: float | None = None,
        source_asset: Asset = BASE_ASSET,
        target_asset: Asset = STABLE_ASSET,
    ):
        self.sources = list(sources) if sources is not None else default_price_sources()
        self.fallback = fallback if fallback is not None else SyntheticPriceSource(sell_asset=source_asset, buy_asset=target_asset)
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.quote_timeout_seconds
        self.source_asset = source_asset
        self.target_asset = target_asset

    async def __aenter__(self) -> "QuoteAggregator":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        """Close the HTTP clients held by the price sources."""
        for source in [*self.sources, self.fallback]:
            close = getattr(source, "aclose", None)
            if close is not None:
                await close()

    async def _attempt(self, source: PriceSource, sell_amount: int) -> Optional[ProviderPrice]:
        provider = source.provider.value
        try:
            answer = await asyncio.wait_for(source.quote(sell_amount), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Quote source timed out provider=%s timeout=%s", provider, self.timeout_seconds)
            return None
        except SourceUnavailable as exc:
            logger.warning("Quote source unavailable provider=%s reason=%s", provider, exc)
            return None
        except Exception as exc:  # noqa: BLE001
            logger.warning("Quote source failed provider=%s error=%r", provider, exc)
            return None
        if not isinstance(answer, ProviderPrice):
            logger.warning("Quote source returned no price provider=%s answer=%r", provider, answer)
            return None
        if answer.buyAmount <= 0:
            logger.warning("Quote source returned zero target provider=%s sell_amount=%s", provider, sell_amount)
            return None
        return answer

    def _to_quote(self, source: PriceSource, sell_amount: int, answer: ProviderPrice) -> PriceQuote:
        unit_price = unit_price_of(sell_amount, self.source_asset.decimals, answer.buyAmount, self.target_asset.decimals)
        return PriceQuote(
            sourceAmount=str(sell_amount),
            targetAmount=str(answer.buyAmount),
            unitPrice=format(unit_price, "f"),
            provider=source.provider,
        )

    async def get_price(self, source_amount_base_units: str) -> Result[PriceQuote, QuoteError]:
        try:
            sell_amount = parse_base_units(source_amount_base_units)
        except ValueError as exc:
            return Result.failure(QuoteError(str(exc)))
        if sell_amount <= 0:
            return Result.failure(QuoteError("amount must be positive"))

        for source in [*self.sources, self.fallback]:
            answer = await self._attempt(source, sell_amount)
            if answer is None:
                continue
            quote = self._to_quote(source, sell_amount, answer)
            logger.info(
                "Quote resolved provider=%s source_amount=%s target_amount=%s unit_price=%s",
                quote.provider.value,
                quote.sourceAmount,
                quote.targetAmount,
                quote.unitPrice,
            )
            return Result.success(quote)

        # Only reachable when even the fixed price truncates to zero.
        return Result.failure(QuoteError(f"amount {sell_amount} is below the smallest quotable unit"))
