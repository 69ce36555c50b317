"""Best-effort USD price resolution.

Sources are tried in a fixed order and the first acceptable quote wins:

1. The token's Uniswap v4 pool, converted with the native/USD rate.
2. DexScreener's quoted ``priceUsd``.
3. CoinGecko's contract-address price.

When every source comes up empty the quote has ``source == none`` and a zero
price. A zero, negative, or non-finite price is never returned as a hit.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol

from post_token_pnl.batching import gather_in_batches
from post_token_pnl.chain.client import ChainClientError
from post_token_pnl.chain.pools import PoolLocator
from post_token_pnl.errors import InconclusiveError
from post_token_pnl.models import PriceQuote, PriceSourceName, PriceUnit, is_usable_price
from post_token_pnl.pricing.aggregators import (
    DEXSCREENER_MAX_BATCH,
    AggregatorError,
    CoinGeckoClient,
    DexScreenerClient,
    DexScreenerPair,
)

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_NATIVE_USD = Decimal("3000")
DEFAULT_POOL_TIMEOUT_SECONDS = 20.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0
DEFAULT_NATIVE_COIN_ID = "ethereum"


@dataclass(frozen=True)
class PriceContext:
    """Per-run inputs shared by every price attempt.

    Attributes:
        native_usd_rate: USD value of one native coin for this run.
        dex_pairs: Prefetched DexScreener pairs keyed by token address.
    """

    native_usd_rate: Decimal
    dex_pairs: Mapping[str, DexScreenerPair] = field(default_factory=dict)


class PriceSource(Protocol):
    """One step of the price chain."""

    name: PriceSourceName
    timeout_seconds: float

    async def attempt(self, token_address: str, context: PriceContext) -> PriceQuote:
        """Return an acceptable quote or raise InconclusiveError."""
        ...


class PoolPriceSource:
    name = PriceSourceName.POOL

    def __init__(
        self,
        locator: PoolLocator,
        *,
        timeout_seconds: float = DEFAULT_POOL_TIMEOUT_SECONDS,
    ) -> None:
        self._locator = locator
        self.timeout_seconds = timeout_seconds

    async def attempt(self, token_address: str, context: PriceContext) -> PriceQuote:
        try:
            native_price = await self._locator.quote_in_native(token_address)
        except ChainClientError as e:
            raise InconclusiveError(f"Pool read failed: {e}") from e
        if native_price is None or not is_usable_price(native_price):
            raise InconclusiveError("No native-paired pool with a usable price")
        return PriceQuote(
            price=native_price * context.native_usd_rate,
            unit=PriceUnit.USD,
            source=self.name,
        )


class DexScreenerPriceSource:
    name = PriceSourceName.DEXSCREENER

    def __init__(
        self,
        client: DexScreenerClient,
        *,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self.timeout_seconds = timeout_seconds

    async def attempt(self, token_address: str, context: PriceContext) -> PriceQuote:
        pair = context.dex_pairs.get(token_address.lower())
        if pair is None:
            try:
                pair = await self._client.get_best_pair(token_address)
            except AggregatorError as e:
                raise InconclusiveError(f"DexScreener lookup failed: {e}") from e
        if pair is None or pair.price_usd is None or not is_usable_price(pair.price_usd):
            raise InconclusiveError("DexScreener has no priced pair")
        return PriceQuote(price=pair.price_usd, unit=PriceUnit.USD, source=self.name)


class CoinGeckoPriceSource:
    name = PriceSourceName.COINGECKO

    def __init__(
        self,
        client: CoinGeckoClient,
        *,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self.timeout_seconds = timeout_seconds

    async def attempt(self, token_address: str, context: PriceContext) -> PriceQuote:
        try:
            price = await self._client.get_token_price_usd(token_address)
        except AggregatorError as e:
            raise InconclusiveError(f"CoinGecko lookup failed: {e}") from e
        if price is None or not is_usable_price(price):
            raise InconclusiveError("CoinGecko has no price")
        return PriceQuote(price=price, unit=PriceUnit.USD, source=self.name)


class PriceResolutionService:
    """Resolve token prices through an ordered list of sources.

    Example:
        ```python
        service = PriceResolutionService(
            [PoolPriceSource(locator), DexScreenerPriceSource(dex), CoinGeckoPriceSource(cg)],
            coingecko=cg,
            dexscreener=dex,
        )
        rate = await service.get_native_usd_rate()
        quote = await service.resolve_price("0x...", PriceContext(native_usd_rate=rate))
        ```
    """

    def __init__(
        self,
        sources: Sequence[PriceSource],
        *,
        coingecko: CoinGeckoClient | None = None,
        dexscreener: DexScreenerClient | None = None,
        native_coin_id: str = DEFAULT_NATIVE_COIN_ID,
        fallback_native_usd: Decimal = DEFAULT_FALLBACK_NATIVE_USD,
        native_rate_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        dex_batch_size: int = 10,
    ) -> None:
        if not is_usable_price(fallback_native_usd):
            raise ValueError("fallback_native_usd must be > 0")
        self._sources = tuple(sources)
        self._coingecko = coingecko
        self._dexscreener = dexscreener
        self._native_coin_id = native_coin_id
        self._fallback_native_usd = fallback_native_usd
        self._native_rate_timeout = native_rate_timeout_seconds
        self._dex_batch_size = min(dex_batch_size, DEXSCREENER_MAX_BATCH)

    @property
    def sources(self) -> tuple[PriceSource, ...]:
        return self._sources

    async def get_native_usd_rate(self) -> Decimal:
        """Live native/USD rate, or the configured fallback on any failure."""
        if self._coingecko is None:
            return self._fallback_native_usd
        try:
            rate = await asyncio.wait_for(
                self._coingecko.get_coin_price_usd(self._native_coin_id),
                timeout=self._native_rate_timeout,
            )
        except (AggregatorError, asyncio.TimeoutError) as e:
            logger.warning(
                "Native/USD rate unavailable, using fallback %s: %s",
                self._fallback_native_usd,
                e,
            )
            return self._fallback_native_usd
        if rate is None or not is_usable_price(rate):
            logger.warning("Native/USD rate missing, using fallback %s", self._fallback_native_usd)
            return self._fallback_native_usd
        return rate

    async def prefetch_dex_pairs(self, token_addresses: Sequence[str]) -> dict[str, DexScreenerPair]:
        """Batch-fetch DexScreener pairs to seed :class:`PriceContext`.

        Failed batches are logged and skipped; single lookups cover them later.
        """
        if self._dexscreener is None or not token_addresses:
            return {}
        pairs: dict[str, DexScreenerPair] = {}
        for start in range(0, len(token_addresses), self._dex_batch_size):
            batch = token_addresses[start : start + self._dex_batch_size]
            try:
                pairs.update(await self._dexscreener.get_best_pairs(batch))
            except AggregatorError as e:
                logger.warning("DexScreener batch lookup failed (%d tokens): %s", len(batch), e)
        return pairs

    async def resolve_price(self, token_address: str, context: PriceContext) -> PriceQuote:
        """Walk the source chain; never raises."""
        for source in self._sources:
            try:
                quote = await asyncio.wait_for(
                    source.attempt(token_address, context),
                    timeout=source.timeout_seconds,
                )
            except InconclusiveError as e:
                logger.debug("%s: %s inconclusive: %s", token_address, source.name.value, e)
                continue
            except asyncio.TimeoutError:
                logger.warning("%s: %s timed out", token_address, source.name.value)
                continue
            if quote.is_usable:
                logger.debug(
                    "%s priced at %s %s via %s",
                    token_address,
                    quote.price,
                    quote.unit.value,
                    quote.source.value,
                )
                return quote
            logger.debug(
                "%s: %s returned unusable price %s", token_address, source.name.value, quote.price
            )

        logger.info("No price found for %s", token_address)
        return PriceQuote.none()

    async def resolve_prices(
        self,
        token_addresses: Sequence[str],
        context: PriceContext,
        *,
        batch_size: int = 10,
    ) -> dict[str, PriceQuote]:
        outcomes = await gather_in_batches(
            token_addresses,
            lambda token: self.resolve_price(token, context),
            batch_size=batch_size,
        )
        quotes: dict[str, PriceQuote] = {}
        for token, outcome in outcomes:
            if isinstance(outcome, BaseException):
                logger.warning("Price resolution crashed for %s: %s", token, outcome)
                quotes[token] = PriceQuote.none()
            else:
                quotes[token] = outcome
        return quotes
