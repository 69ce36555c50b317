"""HTTP clients for third-party price aggregators (DexScreener, CoinGecko).

Responses are validated into pydantic models at the boundary so the price
service only ever sees typed, finite values.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from decimal import Decimal
from typing import Any

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from post_token_pnl.chain.client import RateLimiter
from post_token_pnl.models import is_usable_price

logger = logging.getLogger(__name__)

DEFAULT_DEXSCREENER_BASE_URL = "https://api.dexscreener.com"
DEFAULT_COINGECKO_BASE_URL = "https://api.coingecko.com/api/v3"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_REQUESTS_PER_SECOND = 5.0
DEXSCREENER_MAX_BATCH = 30


class AggregatorError(Exception):
    """Base exception for aggregator client errors."""


class AggregatorHTTPError(AggregatorError):
    """Transport failure or non-2xx response."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class AggregatorPayloadError(AggregatorError):
    """Response body did not match the expected shape."""


class DexScreenerTokenRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    address: str
    symbol: str | None = None
    name: str | None = None


class DexScreenerLiquidity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    usd: Decimal | None = None


class DexScreenerPair(BaseModel):
    """One trading pair as reported by DexScreener."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    chain_id: str = Field(alias="chainId")
    dex_id: str | None = Field(default=None, alias="dexId")
    pair_address: str | None = Field(default=None, alias="pairAddress")
    base_token: DexScreenerTokenRef = Field(alias="baseToken")
    quote_token: DexScreenerTokenRef | None = Field(default=None, alias="quoteToken")
    price_usd: Decimal | None = Field(default=None, alias="priceUsd")
    price_native: Decimal | None = Field(default=None, alias="priceNative")
    liquidity: DexScreenerLiquidity | None = None

    @property
    def liquidity_usd(self) -> Decimal:
        if self.liquidity is None or self.liquidity.usd is None:
            return Decimal("0")
        return self.liquidity.usd

    @property
    def has_price(self) -> bool:
        return is_usable_price(self.price_usd)


class DexScreenerTokenResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pairs: list[DexScreenerPair] | None = None


def select_best_pair(pairs: Sequence[DexScreenerPair], chain_id: str) -> DexScreenerPair | None:
    """Pick the pair to quote from.

    Pairs on ``chain_id`` with USD liquidity win, highest liquidity first.
    Otherwise any positively priced pair, again by liquidity.
    """
    priced = [p for p in pairs if p.has_price]
    on_chain = [p for p in priced if p.chain_id == chain_id and p.liquidity_usd > 0]
    if on_chain:
        return max(on_chain, key=lambda p: p.liquidity_usd)
    if priced:
        return max(priced, key=lambda p: p.liquidity_usd)
    return None


class _JsonHttpClient:
    """Shared aiohttp session handling for the aggregator clients."""

    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._own_session = False
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._rate_limiter = RateLimiter.create(max_requests_per_second)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._own_session = True
        return self._session

    async def aclose(self) -> None:
        """Close the session if this client created it."""
        if self._own_session and self._session is not None:
            await self._session.close()
        self._session = None
        self._own_session = False

    async def __aenter__(self) -> _JsonHttpClient:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    async def _get_json(self, path: str, params: dict[str, str] | None = None) -> Any:
        """GET ``base_url + path`` and decode the JSON body.

        Raises:
            AggregatorHTTPError: On transport errors or non-2xx status.
            AggregatorPayloadError: If the body is not JSON.
        """
        await self._rate_limiter.acquire()
        session = await self._get_session()
        url = f"{self._base_url}{path}"
        try:
            async with session.get(url, params=params, timeout=self._timeout) as response:
                if response.status >= 400:
                    raise AggregatorHTTPError(
                        f"GET {url} returned HTTP {response.status}", status=response.status
                    )
                return await response.json(content_type=None)
        except aiohttp.ContentTypeError as e:
            raise AggregatorPayloadError(f"GET {url} returned non-JSON body") from e
        except ValueError as e:
            raise AggregatorPayloadError(f"GET {url} returned invalid JSON: {e}") from e
        except aiohttp.ClientError as e:
            raise AggregatorHTTPError(f"GET {url} failed: {e}") from e


class DexScreenerClient(_JsonHttpClient):
    """DexScreener token-pair lookups.

    Example:
        ```python
        async with DexScreenerClient() as dex:
            pair = await dex.get_best_pair("0x...")
            if pair is not None:
                print(pair.price_usd)
        ```
    """

    def __init__(
        self,
        base_url: str = DEFAULT_DEXSCREENER_BASE_URL,
        *,
        chain_id: str = "base",
        session: aiohttp.ClientSession | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
    ) -> None:
        super().__init__(
            base_url,
            session=session,
            timeout_seconds=timeout_seconds,
            max_requests_per_second=max_requests_per_second,
        )
        self._chain_id = chain_id

    @property
    def chain_id(self) -> str:
        return self._chain_id

    async def get_token_pairs(self, token_address: str) -> list[DexScreenerPair]:
        """All pairs DexScreener knows for a token, across chains."""
        data = await self._get_json(f"/latest/dex/tokens/{token_address.lower()}")
        try:
            parsed = DexScreenerTokenResponse.model_validate(data)
        except ValidationError as e:
            raise AggregatorPayloadError(f"Unexpected DexScreener payload: {e}") from e
        return parsed.pairs or []

    async def get_best_pair(self, token_address: str) -> DexScreenerPair | None:
        return select_best_pair(await self.get_token_pairs(token_address), self._chain_id)

    async def get_best_pairs(self, token_addresses: Sequence[str]) -> dict[str, DexScreenerPair]:
        """Batch lookup keyed by lower-cased base token address.

        At most ``DEXSCREENER_MAX_BATCH`` addresses are sent per request.
        """
        if len(token_addresses) > DEXSCREENER_MAX_BATCH:
            raise ValueError(f"At most {DEXSCREENER_MAX_BATCH} addresses per batch")
        if not token_addresses:
            return {}

        joined = ",".join(a.lower() for a in token_addresses)
        data = await self._get_json(f"/tokens/v1/{self._chain_id}/{joined}")
        if not isinstance(data, list):
            raise AggregatorPayloadError("DexScreener batch response is not a list")

        grouped: dict[str, list[DexScreenerPair]] = {}
        for item in data:
            try:
                pair = DexScreenerPair.model_validate(item)
            except ValidationError as e:
                logger.debug("Skipping malformed DexScreener pair: %s", e)
                continue
            grouped.setdefault(pair.base_token.address.lower(), []).append(pair)

        best: dict[str, DexScreenerPair] = {}
        for address, pairs in grouped.items():
            pair = select_best_pair(pairs, self._chain_id)
            if pair is not None:
                best[address] = pair
        return best


class CoinGeckoClient(_JsonHttpClient):
    """CoinGecko simple-price lookups."""

    def __init__(
        self,
        base_url: str = DEFAULT_COINGECKO_BASE_URL,
        *,
        api_key: str | None = None,
        platform: str = "base",
        session: aiohttp.ClientSession | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
    ) -> None:
        super().__init__(
            base_url,
            session=session,
            timeout_seconds=timeout_seconds,
            max_requests_per_second=max_requests_per_second,
        )
        self._api_key = api_key
        self._platform = platform

    def _params(self, **params: str) -> dict[str, str]:
        if self._api_key:
            params["x_cg_demo_api_key"] = self._api_key
        return params

    @staticmethod
    def _usd_from(entry: Any) -> Decimal | None:
        if not isinstance(entry, dict) or entry.get("usd") is None:
            return None
        try:
            price = Decimal(str(entry["usd"]))
        except ArithmeticError as e:
            raise AggregatorPayloadError(f"Invalid CoinGecko price: {entry['usd']!r}") from e
        return price if is_usable_price(price) else None

    async def get_token_price_usd(self, token_address: str) -> Decimal | None:
        """USD price of a token by contract address, or None if unlisted."""
        address = token_address.lower()
        data = await self._get_json(
            f"/simple/token_price/{self._platform}",
            self._params(contract_addresses=address, vs_currencies="usd"),
        )
        if not isinstance(data, dict):
            raise AggregatorPayloadError("CoinGecko token_price response is not an object")
        entry = data.get(address)
        if entry is None:
            entry = next((v for k, v in data.items() if k.lower() == address), None)
        return self._usd_from(entry)

    async def get_coin_price_usd(self, coin_id: str) -> Decimal | None:
        """USD price of a coin by CoinGecko id (e.g. ``ethereum``)."""
        data = await self._get_json(
            "/simple/price",
            self._params(ids=coin_id, vs_currencies="usd"),
        )
        if not isinstance(data, dict):
            raise AggregatorPayloadError("CoinGecko price response is not an object")
        return self._usd_from(data.get(coin_id))
