"""Uniswap v4 pool discovery and price decoding for platform coins.

Platform coins trade in Uniswap v4 pools, usually against WETH and usually
behind one of the platform's hook contracts. The locator first probes a short
list of known pool configurations by computing their PoolId directly, then
falls back to scanning the PoolManager's ``Initialize`` events.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Any

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from web3 import AsyncWeb3

from post_token_pnl.chain.client import BaseChainClient, ChainClientError
from post_token_pnl.errors import NotFoundError
from post_token_pnl.models import (
    ZERO_ADDRESS,
    CoinType,
    PoolCurrency,
    PoolKey,
    PoolState,
)

logger = logging.getLogger(__name__)

DEFAULT_POOL_MANAGER_ADDRESS = "0xA5B4F34780D948b571E676C34aB709D3AcA0498D"
DEFAULT_STATE_VIEW_ADDRESS = "0x43F150e8e18cB95A0c1Fb2176A6531864d618C39"
WETH_BASE_ADDRESS = "0x4200000000000000000000000000000000000006"

CREATOR_COIN_HOOK_ADDRESS = "0xd61A675F8a0c67A73DC3B54FB7318B4D91409040"
CONTENT_COIN_HOOK_ADDRESS = "0x9ea932730A7787000042e34390B8E435dD839040"

RECOGNIZED_HOOKS: dict[str, CoinType] = {
    CREATOR_COIN_HOOK_ADDRESS.lower(): CoinType.CREATOR_COIN,
    CONTENT_COIN_HOOK_ADDRESS.lower(): CoinType.CONTENT_COIN,
}

DEFAULT_SCAN_WINDOW_BLOCKS = 1_000_000
DEFAULT_LOGS_CHUNK_SIZE_BLOCKS = 50_000

Q96 = Decimal(2**96)

INITIALIZE_EVENT_SIGNATURE = AsyncWeb3.to_hex(
    AsyncWeb3.keccak(text="Initialize(bytes32,address,address,uint24,int24,address,uint160,int24)")
)
_INITIALIZE_DATA_TYPES = ["uint24", "int24", "address", "uint160", "int24"]

STATE_VIEW_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"name": "poolId", "type": "bytes32"}],
        "name": "getSlot0",
        "outputs": [
            {"name": "sqrtPriceX96", "type": "uint160"},
            {"name": "tick", "type": "int24"},
            {"name": "protocolFee", "type": "uint24"},
            {"name": "lpFee", "type": "uint24"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "poolId", "type": "bytes32"}],
        "name": "getLiquidity",
        "outputs": [{"name": "liquidity", "type": "uint128"}],
        "stateMutability": "view",
        "type": "function",
    },
]


@dataclass(frozen=True)
class PoolConfig:
    """A (hooks, fee, tick spacing) combination worth probing directly."""

    hooks: str
    fee: int
    tick_spacing: int


DEFAULT_POOL_CONFIGS: tuple[PoolConfig, ...] = (
    PoolConfig(hooks=CREATOR_COIN_HOOK_ADDRESS, fee=3000, tick_spacing=60),
    PoolConfig(hooks=CONTENT_COIN_HOOK_ADDRESS, fee=3000, tick_spacing=60),
    PoolConfig(hooks=ZERO_ADDRESS, fee=500, tick_spacing=10),
    PoolConfig(hooks=ZERO_ADDRESS, fee=3000, tick_spacing=60),
    PoolConfig(hooks=ZERO_ADDRESS, fee=10000, tick_spacing=200),
)


def _pad_topic_address(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").zfill(64)


def _topic_to_hex(topic: Any) -> str:
    if isinstance(topic, str):
        return topic.lower() if topic.startswith("0x") else "0x" + topic.lower()
    return AsyncWeb3.to_hex(topic).lower()


def _topic_to_address(topic: Any) -> str:
    return ("0x" + _topic_to_hex(topic)[-40:]).lower()


def _log_data(log: dict[str, Any]) -> bytes:
    data = log.get("data", b"")
    if isinstance(data, str):
        return bytes.fromhex(data[2:] if data.startswith("0x") else data)
    return bytes(data)


def sort_currencies(a: str, b: str) -> tuple[str, str]:
    """Order two currencies the way v4 pool keys require (numerically)."""
    a, b = a.lower(), b.lower()
    return (a, b) if int(a, 16) < int(b, 16) else (b, a)


def compute_pool_id(key: PoolKey) -> str:
    """Derive the v4 PoolId: keccak256 of the ABI-encoded pool key."""
    encoded = abi_encode(
        ["address", "address", "uint24", "int24", "address"],
        [
            AsyncWeb3.to_checksum_address(key.currency0),
            AsyncWeb3.to_checksum_address(key.currency1),
            key.fee,
            key.tick_spacing,
            AsyncWeb3.to_checksum_address(key.hooks),
        ],
    )
    return AsyncWeb3.to_hex(AsyncWeb3.keccak(encoded))


def coin_type_for_hooks(hooks: str) -> CoinType | None:
    return RECOGNIZED_HOOKS.get(hooks.lower())


def price_from_sqrt_price_x96(sqrt_price_x96: int, *, decimals0: int, decimals1: int) -> Decimal:
    """Price of one whole currency0 expressed in currency1.

    ``(sqrtPriceX96 / 2**96) ** 2`` is the raw currency1-per-currency0 ratio in
    smallest units; the decimals shift turns it into whole units.
    """
    with localcontext() as ctx:
        ctx.prec = 80
        ratio = (Decimal(sqrt_price_x96) / Q96) ** 2
        return +(ratio * (Decimal(10) ** (decimals0 - decimals1)))


def token_price_in_counter_currency(pool: PoolState, token_address: str) -> Decimal:
    """Price of the token in the pool's other currency.

    Raises:
        ValueError: If the token is not in the pool or the price is zero.
    """
    price0 = price_from_sqrt_price_x96(
        pool.sqrt_price_x96,
        decimals0=pool.currency0.decimals,
        decimals1=pool.currency1.decimals,
    )
    token = token_address.lower()
    if token == pool.currency0.address.lower():
        return price0
    if token == pool.currency1.address.lower():
        if price0 == 0:
            raise ValueError("Pool price is zero")
        with localcontext() as ctx:
            ctx.prec = 80
            return +(Decimal(1) / price0)
    raise ValueError(f"Token {token_address} is not in pool {pool.pool_id}")


class PoolLocator:
    """Find the live Uniswap v4 pool backing a token.

    Example:
        ```python
        locator = PoolLocator(client)
        pool = await locator.locate_pool("0x...")
        if pool is not None:
            price_in_eth = await locator.quote_in_native("0x...")
        ```
    """

    def __init__(
        self,
        client: BaseChainClient,
        *,
        pool_manager_address: str = DEFAULT_POOL_MANAGER_ADDRESS,
        state_view_address: str = DEFAULT_STATE_VIEW_ADDRESS,
        wrapped_native_address: str = WETH_BASE_ADDRESS,
        known_configs: Sequence[PoolConfig] = DEFAULT_POOL_CONFIGS,
        scan_window_blocks: int = DEFAULT_SCAN_WINDOW_BLOCKS,
        logs_chunk_size_blocks: int = DEFAULT_LOGS_CHUNK_SIZE_BLOCKS,
    ) -> None:
        if scan_window_blocks <= 0:
            raise ValueError("scan_window_blocks must be > 0")
        if logs_chunk_size_blocks <= 0:
            raise ValueError("logs_chunk_size_blocks must be > 0")
        self._client = client
        self._pool_manager = AsyncWeb3.to_checksum_address(pool_manager_address)
        self._state_view = AsyncWeb3.to_checksum_address(state_view_address)
        self._wrapped_native = wrapped_native_address.lower()
        self._known_configs = tuple(known_configs)
        self._scan_window = scan_window_blocks
        self._chunk_size = logs_chunk_size_blocks

    def is_native(self, address: str) -> bool:
        return address.lower() in (self._wrapped_native, ZERO_ADDRESS)

    def candidate_keys(self, token_address: str) -> list[PoolKey]:
        """Known-config pool keys pairing the token with WETH."""
        currency0, currency1 = sort_currencies(token_address, self._wrapped_native)
        return [
            PoolKey(
                currency0=currency0,
                currency1=currency1,
                fee=config.fee,
                tick_spacing=config.tick_spacing,
                hooks=config.hooks.lower(),
            )
            for config in self._known_configs
        ]

    async def locate_pool(self, token_address: str) -> PoolState | None:
        """Return the token's live pool, or None if no pool with liquidity exists."""
        token = token_address.lower()
        try:
            for key in self.candidate_keys(token):
                try:
                    pool = await self.load_pool(key)
                except NotFoundError:
                    continue
                logger.debug("Found pool %s for %s via known config", pool.pool_id, token)
                return pool

            for key in await self.scan_initialized_pools(token):
                try:
                    pool = await self.load_pool(key)
                except NotFoundError:
                    continue
                logger.debug("Found pool %s for %s via Initialize scan", pool.pool_id, token)
                return pool
        except ChainClientError as e:
            logger.warning("Pool lookup failed for %s: %s", token, e)
            return None

        logger.debug("No live pool found for %s", token)
        return None

    async def load_pool(self, key: PoolKey) -> PoolState:
        """Read slot0 and liquidity for a pool key.

        Raises:
            NotFoundError: If the pool is uninitialized or has no liquidity.
            ChainClientError: On transport failure.
        """
        pool_id = compute_pool_id(key)
        pool_id_bytes = bytes.fromhex(pool_id[2:])

        liquidity = int(
            await self._client.call_function(
                self._state_view, STATE_VIEW_ABI, "getLiquidity", pool_id_bytes
            )
        )
        if liquidity <= 0:
            raise NotFoundError(f"Pool {pool_id} has no liquidity")

        slot0 = await self._client.call_function(
            self._state_view, STATE_VIEW_ABI, "getSlot0", pool_id_bytes
        )
        sqrt_price_x96, tick = int(slot0[0]), int(slot0[1])
        if sqrt_price_x96 <= 0:
            raise NotFoundError(f"Pool {pool_id} is not initialized")

        decimals0 = await self._client.get_token_decimals(key.currency0)
        decimals1 = await self._client.get_token_decimals(key.currency1)

        return PoolState(
            pool_id=pool_id,
            key=key,
            currency0=PoolCurrency(address=key.currency0, decimals=decimals0),
            currency1=PoolCurrency(address=key.currency1, decimals=decimals1),
            sqrt_price_x96=sqrt_price_x96,
            tick=tick,
            liquidity=liquidity,
            coin_type=coin_type_for_hooks(key.hooks),
        )

    async def scan_initialized_pools(self, token_address: str) -> list[PoolKey]:
        """Pool keys from recent ``Initialize`` events that contain the token.

        Pools behind recognized platform hooks come first, then the rest;
        within each group the most recently initialized pool comes first.
        """
        token = token_address.lower()
        latest = await self._client.get_block_number()
        start_block = max(0, latest - self._scan_window + 1)

        found: list[tuple[int, PoolKey]] = []
        seen: set[str] = set()
        to_block = latest
        while to_block >= start_block:
            from_block = max(start_block, to_block - self._chunk_size + 1)
            # The token can sit on either side of the pair.
            for topics in (
                [INITIALIZE_EVENT_SIGNATURE, None, _pad_topic_address(token)],
                [INITIALIZE_EVENT_SIGNATURE, None, None, _pad_topic_address(token)],
            ):
                logs = await self._client.get_logs(
                    {
                        "address": self._pool_manager,
                        "topics": topics,
                        "fromBlock": from_block,
                        "toBlock": to_block,
                    }
                )
                for log in logs:
                    key = self._decode_initialize(log)
                    if key is None or not key.contains(token):
                        continue
                    pool_id = _topic_to_hex(log["topics"][1])
                    if pool_id in seen:
                        continue
                    seen.add(pool_id)
                    found.append((int(log.get("blockNumber") or 0), key))
            to_block = from_block - 1

        found.sort(key=lambda item: item[0], reverse=True)
        recognized = [key for _, key in found if coin_type_for_hooks(key.hooks) is not None]
        anonymous = [key for _, key in found if coin_type_for_hooks(key.hooks) is None]
        logger.debug(
            "Initialize scan for %s: %d recognized, %d anonymous pools",
            token,
            len(recognized),
            len(anonymous),
        )
        return recognized + anonymous

    def _decode_initialize(self, log: dict[str, Any]) -> PoolKey | None:
        topics = log.get("topics") or []
        if len(topics) < 4:
            return None
        try:
            fee, tick_spacing, hooks, _sqrt_price, _tick = abi_decode(
                _INITIALIZE_DATA_TYPES, _log_data(log)
            )
        except DecodingError as e:
            logger.debug("Skipping undecodable Initialize log: %s", e)
            return None
        return PoolKey(
            currency0=_topic_to_address(topics[2]),
            currency1=_topic_to_address(topics[3]),
            fee=int(fee),
            tick_spacing=int(tick_spacing),
            hooks=str(hooks).lower(),
        )

    async def quote_in_native(self, token_address: str) -> Decimal | None:
        """Token price in native currency from its pool, if paired with native."""
        pool = await self.locate_pool(token_address)
        if pool is None:
            return None
        counter = pool.key.counter_currency(token_address)
        if not self.is_native(counter):
            logger.debug(
                "Pool %s pairs %s with non-native %s", pool.pool_id, token_address, counter
            )
            return None
        try:
            return token_price_in_counter_currency(pool, token_address)
        except ValueError as e:
            logger.debug("Unusable pool price for %s: %s", token_address, e)
            return None
