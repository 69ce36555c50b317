"""Tests for the DexScreener and CoinGecko clients."""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from post_token_pnl.pricing.aggregators import (
    AggregatorHTTPError,
    AggregatorPayloadError,
    CoinGeckoClient,
    DexScreenerClient,
    DexScreenerPair,
    select_best_pair,
)

TOKEN = "0x1111111111111111111111111111111111111111"
OTHER = "0x2222222222222222222222222222222222222222"


def _pair(
    address: str = TOKEN,
    *,
    chain: str = "base",
    price: str | None = "0.05",
    liquidity: str | None = "1000",
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "chainId": chain,
        "dexId": "uniswap",
        "pairAddress": "0xpair",
        "baseToken": {"address": address, "symbol": "POST", "name": "Post"},
        "quoteToken": {"address": "0x4200000000000000000000000000000000000006"},
        "priceNative": "0.00001",
    }
    if price is not None:
        data["priceUsd"] = price
    if liquidity is not None:
        data["liquidity"] = {"usd": liquidity}
    return data


def _session_returning(status: int, body: Any = None, *, exc: Exception | None = None) -> MagicMock:
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=body, side_effect=exc)
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    session = MagicMock()
    session.get = MagicMock(return_value=context)
    return session


class TestSelectBestPair:
    def test_prefers_on_chain_liquidity(self) -> None:
        pairs = [
            DexScreenerPair.model_validate(_pair(chain="ethereum", liquidity="99999")),
            DexScreenerPair.model_validate(_pair(price="0.04", liquidity="10")),
            DexScreenerPair.model_validate(_pair(price="0.06", liquidity="500")),
        ]
        best = select_best_pair(pairs, "base")
        assert best is not None
        assert best.price_usd == Decimal("0.06")

    def test_falls_back_to_any_priced_pair(self) -> None:
        pairs = [
            DexScreenerPair.model_validate(_pair(chain="ethereum", liquidity=None)),
            DexScreenerPair.model_validate(_pair(price=None)),
        ]
        best = select_best_pair(pairs, "base")
        assert best is not None
        assert best.chain_id == "ethereum"

    def test_no_priced_pairs(self) -> None:
        pairs = [DexScreenerPair.model_validate(_pair(price="0"))]
        assert select_best_pair(pairs, "base") is None


class TestDexScreenerClient:
    @pytest.mark.asyncio
    async def test_get_best_pair(self) -> None:
        client = DexScreenerClient()
        client._get_json = AsyncMock(  # type: ignore[method-assign]
            return_value={"pairs": [_pair(price="0.05"), _pair(price="0.07", liquidity="5")]}
        )

        pair = await client.get_best_pair(TOKEN)

        assert pair is not None
        assert pair.price_usd == Decimal("0.05")
        client._get_json.assert_awaited_once_with(f"/latest/dex/tokens/{TOKEN}")

    @pytest.mark.asyncio
    async def test_token_without_pairs(self) -> None:
        client = DexScreenerClient()
        client._get_json = AsyncMock(return_value={"pairs": None})  # type: ignore[method-assign]
        assert await client.get_best_pair(TOKEN) is None

    @pytest.mark.asyncio
    async def test_get_best_pairs_groups_by_base_token(self) -> None:
        client = DexScreenerClient(chain_id="base")
        client._get_json = AsyncMock(  # type: ignore[method-assign]
            return_value=[
                _pair(TOKEN, price="0.05"),
                _pair(OTHER, price="1.5"),
                {"malformed": True},
            ]
        )

        best = await client.get_best_pairs([TOKEN, OTHER])

        assert set(best) == {TOKEN, OTHER}
        assert best[OTHER].price_usd == Decimal("1.5")
        client._get_json.assert_awaited_once_with(f"/tokens/v1/base/{TOKEN},{OTHER}")

    @pytest.mark.asyncio
    async def test_get_best_pairs_rejects_large_batches(self) -> None:
        client = DexScreenerClient()
        with pytest.raises(ValueError):
            await client.get_best_pairs([TOKEN] * 31)

    @pytest.mark.asyncio
    async def test_get_best_pairs_rejects_non_list(self) -> None:
        client = DexScreenerClient()
        client._get_json = AsyncMock(return_value={"pairs": []})  # type: ignore[method-assign]
        with pytest.raises(AggregatorPayloadError):
            await client.get_best_pairs([TOKEN])


class TestJsonTransport:
    @pytest.mark.asyncio
    async def test_http_error_status(self) -> None:
        client = DexScreenerClient(session=_session_returning(429))
        with pytest.raises(AggregatorHTTPError) as exc_info:
            await client.get_token_pairs(TOKEN)
        assert exc_info.value.status == 429

    @pytest.mark.asyncio
    async def test_invalid_json(self) -> None:
        client = DexScreenerClient(session=_session_returning(200, exc=ValueError("bad json")))
        with pytest.raises(AggregatorPayloadError):
            await client.get_token_pairs(TOKEN)

    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        session = MagicMock()
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))
        client = DexScreenerClient(session=session)
        with pytest.raises(AggregatorHTTPError):
            await client.get_token_pairs(TOKEN)

    @pytest.mark.asyncio
    async def test_does_not_close_borrowed_session(self) -> None:
        session = _session_returning(200, {"pairs": []})
        session.close = AsyncMock()
        async with DexScreenerClient(session=session) as client:
            assert await client.get_token_pairs(TOKEN) == []
        session.close.assert_not_called()


class TestCoinGeckoClient:
    @pytest.mark.asyncio
    async def test_token_price(self) -> None:
        client = CoinGeckoClient(api_key="demo-key")
        client._get_json = AsyncMock(  # type: ignore[method-assign]
            return_value={TOKEN: {"usd": 0.0123}}
        )

        assert await client.get_token_price_usd(TOKEN) == Decimal("0.0123")
        client._get_json.assert_awaited_once_with(
            "/simple/token_price/base",
            {"contract_addresses": TOKEN, "vs_currencies": "usd", "x_cg_demo_api_key": "demo-key"},
        )

    @pytest.mark.asyncio
    async def test_unlisted_token(self) -> None:
        client = CoinGeckoClient()
        client._get_json = AsyncMock(return_value={})  # type: ignore[method-assign]
        assert await client.get_token_price_usd(TOKEN) is None

    @pytest.mark.asyncio
    async def test_zero_price_is_none(self) -> None:
        client = CoinGeckoClient()
        client._get_json = AsyncMock(return_value={TOKEN: {"usd": 0}})  # type: ignore[method-assign]
        assert await client.get_token_price_usd(TOKEN) is None

    @pytest.mark.asyncio
    async def test_coin_price(self) -> None:
        client = CoinGeckoClient()
        client._get_json = AsyncMock(  # type: ignore[method-assign]
            return_value={"ethereum": {"usd": 3150.25}}
        )
        assert await client.get_coin_price_usd("ethereum") == Decimal("3150.25")
        client._get_json.assert_awaited_once_with(
            "/simple/price", {"ids": "ethereum", "vs_currencies": "usd"}
        )
