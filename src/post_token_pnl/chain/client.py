"""Base network JSON-RPC client.

This module provides the chain-read surface used by pool discovery and
provenance classification with:
- Retry logic with exponential backoff
- Rate limiting to respect provider limits
- Failover to secondary RPC URL
- Deterministic contract reverts surfaced without retries
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

import aiohttp
from web3 import AsyncWeb3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, Web3Exception
from web3.providers import AsyncHTTPProvider

from post_token_pnl.models import NATIVE_DECIMALS, ZERO_ADDRESS

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0

ERC20_DECIMALS_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    }
]

_TRANSIENT_ERRORS = (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError)


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails after all retries and failover."""


class ContractCallError(ChainClientError):
    """Raised when a view call reverts or the method does not exist."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class BaseChainClient:
    """Base network client with rate limiting and failover.

    Example:
        ```python
        client = BaseChainClient(
            rpc_url="https://mainnet.base.org",
            fallback_rpc_url="https://base.publicnode.com",
        )
        code = await client.get_code("0x...")
        referrer = await client.call_function("0x...", abi, "platformReferrer")
        await client.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary Base RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
            request_timeout_seconds: HTTP timeout for a single request.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._request_timeout = request_timeout_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        return AsyncWeb3(
            AsyncHTTPProvider(
                rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=self._request_timeout)},
            )
        )

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        # Periodically retry primary
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _attempt(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
        *,
        endpoint: str,
    ) -> tuple[bool, T | None, Exception | None]:
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                return True, await call(w3), None
            except (ContractLogicError, BadFunctionCallOutput) as e:
                raise ContractCallError(f"{label} reverted: {e}") from e
            except _TRANSIENT_ERRORS as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    endpoint,
                    label,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2  # Exponential backoff
        return False, None, last_error

    async def _execute_with_retry(
        self,
        label: str,
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
    ) -> T:
        """Execute an RPC call with retry and failover logic.

        Args:
            label: Human-readable call name for logs and errors.
            call: Coroutine factory receiving the web3 instance to use.

        Returns:
            Result from the RPC call.

        Raises:
            ContractCallError: If the call reverted (never retried).
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None

        if self._should_try_primary():
            ok, result, last_error = await self._attempt(self._w3, label, call, endpoint="Primary")
            if ok:
                self._primary_healthy = True
                return result  # type: ignore[return-value]
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback:
            ok, result, error = await self._attempt(
                self._w3_fallback, label, call, endpoint="Fallback"
            )
            if ok:
                logger.info("Fallback RPC succeeded for %s", label)
                return result  # type: ignore[return-value]
            last_error = error or last_error

        raise RPCError(f"RPC call {label} failed after all retries: {last_error}")

    async def get_code(self, address: str) -> bytes:
        """Get the deployed bytecode at an address (empty for EOAs)."""
        checksum = AsyncWeb3.to_checksum_address(address)
        code = await self._execute_with_retry("get_code", lambda w3: w3.eth.get_code(checksum))
        return bytes(code)

    async def call_function(
        self,
        address: str,
        abi: Sequence[dict[str, Any]],
        fn_name: str,
        *args: Any,
        block_identifier: int | str = "latest",
    ) -> Any:
        """Call a view function and return its decoded output.

        Raises:
            ContractCallError: If the call reverts or the method is absent.
            RPCError: On transport failure after retries.
        """
        checksum = AsyncWeb3.to_checksum_address(address)

        async def _call(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
            contract = w3.eth.contract(address=checksum, abi=list(abi))
            return await contract.functions[fn_name](*args).call(
                block_identifier=block_identifier
            )

        return await self._execute_with_retry(f"{fn_name}@{address}", _call)

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch logs via `eth_getLogs` with retry/failover semantics."""
        logs = await self._execute_with_retry("get_logs", lambda w3: w3.eth.get_logs(filter_params))
        return [dict(log) for log in logs]

    async def get_block_number(self) -> int:
        number = await self._execute_with_retry("block_number", _read_block_number)
        return int(number)

    async def get_token_decimals(self, address: str) -> int:
        """Read ERC-20 ``decimals()``; the native currency and failures map to 18."""
        if address.lower() == ZERO_ADDRESS:
            return NATIVE_DECIMALS
        try:
            decimals = await self.call_function(address, ERC20_DECIMALS_ABI, "decimals")
        except ChainClientError as e:
            logger.debug("decimals() unavailable for %s, assuming 18: %s", address, e)
            return NATIVE_DECIMALS
        return int(decimals)

    async def health_check(self) -> bool:
        """Check if the client can connect to the RPC."""
        try:
            await self.get_block_number()
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except (aiohttp.ClientError, OSError, RuntimeError) as e:
                logger.warning("Failed to close RPC provider session: %s", e)


async def _read_block_number(w3: AsyncWeb3[AsyncHTTPProvider]) -> int:
    return await w3.eth.block_number
