"""Platform-origin token classification.

Coins issued through the platform are EIP-1167 minimal proxies pointing at a
single implementation, and they carry the platform's referrer address. The
classifier works in tiers:

1. Bytecode fingerprint (authoritative when it matches).
2. ``platformReferrer()`` read on the token.
3. ``platformReferrer()`` read on both currencies of the token's pool.

Tiers 2 and 3 only run when tier 1 is unproductive for the batch.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from enum import Enum
from typing import Any

from post_token_pnl.batching import gather_in_batches
from post_token_pnl.chain.client import BaseChainClient, ChainClientError
from post_token_pnl.chain.pools import PoolLocator
from post_token_pnl.config import ProvenanceSettings
from post_token_pnl.errors import InvalidInputError
from post_token_pnl.models import ZERO_ADDRESS, normalize_address

logger = logging.getLogger(__name__)

PLATFORM_REFERRER_ADDRESS = "0x000000000000000000000000000000000000bA5e"

CLONE_BYTECODE = (
    "0x363d3d373d3d3d363d737cad62748ddf516cf85bc2c05c14786d84cf861c"
    "5af43d82803e903d91602b57fd5bf3"
)
CLONE_BYTECODE_PREFIX = "0x363d3d373d3d3d363d737cad62748ddf516cf85bc2c05c14786d84cf861c"

# Anything shorter than this (hex chars incl. 0x) is an EOA or a stub.
MIN_CODE_HEX_LENGTH = 20

PLATFORM_REFERRER_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "platformReferrer",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    }
]

DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0
DEFAULT_BATCH_SIZE = 5
DEFAULT_BATCH_DELAY_SECONDS = 0.2
DEFAULT_BYTECODE_TIMEOUT_SECONDS = 10.0
DEFAULT_REFERRER_TIMEOUT_SECONDS = 5.0
DEFAULT_POOL_TIMEOUT_SECONDS = 8.0
DEFAULT_FALLBACK_INCONCLUSIVE_RATIO = 0.5
DEFAULT_REFERRER_FALLBACK_LIMIT = 80
DEFAULT_POOL_FALLBACK_LIMIT = 50


class Verdict(str, Enum):
    """Outcome of a single classification check."""

    POSITIVE = "positive"
    NEGATIVE = "negative"
    INCONCLUSIVE = "inconclusive"


def _code_to_hex(code: bytes | str) -> str:
    if isinstance(code, str):
        hexed = code.lower()
        return hexed if hexed.startswith("0x") else "0x" + hexed
    return "0x" + bytes(code).hex()


def matches_platform_bytecode(code: bytes | str) -> bool:
    """Return True if the code is the platform's clone proxy (exact or by prefix)."""
    hexed = _code_to_hex(code)
    return hexed == CLONE_BYTECODE or hexed.startswith(CLONE_BYTECODE_PREFIX)


class ProvenanceCache:
    """Process-wide memo of classification results.

    Entries live until :meth:`clear` is called. Writes are idempotent per
    address, so concurrent classification runs may share one cache.
    """

    def __init__(self) -> None:
        self._entries: dict[str, bool] = {}

    def get(self, address: str) -> bool | None:
        return self._entries.get(address.lower())

    def set(self, address: str, is_platform_token: bool) -> None:
        self._entries[address.lower()] = is_platform_token

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and address.lower() in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class ProvenanceClassifier:
    """Decide which tokens were issued by the platform.

    Example:
        ```python
        classifier = ProvenanceClassifier(client, locator)
        flags = await classifier.classify(["0xabc...", "0xdef..."])
        platform_tokens = [addr for addr, ok in flags.items() if ok]
        ```
    """

    def __init__(
        self,
        client: BaseChainClient,
        locator: PoolLocator | None = None,
        *,
        cache: ProvenanceCache | None = None,
        platform_referrer: str = PLATFORM_REFERRER_ADDRESS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS,
        bytecode_timeout_seconds: float = DEFAULT_BYTECODE_TIMEOUT_SECONDS,
        referrer_timeout_seconds: float = DEFAULT_REFERRER_TIMEOUT_SECONDS,
        pool_timeout_seconds: float = DEFAULT_POOL_TIMEOUT_SECONDS,
        verify_matches: bool = True,
        fallback_inconclusive_ratio: float = DEFAULT_FALLBACK_INCONCLUSIVE_RATIO,
        referrer_fallback_limit: int = DEFAULT_REFERRER_FALLBACK_LIMIT,
        pool_fallback_limit: int = DEFAULT_POOL_FALLBACK_LIMIT,
    ) -> None:
        """Initialize the classifier.

        Args:
            client: Chain client used for bytecode and view-call reads.
            locator: Pool locator for pool-based verification. Tier 3 is
                skipped when omitted.
            cache: Shared result cache. A private cache is created if omitted.
            platform_referrer: Referrer address identifying platform coins.
            max_retries: Retries for a failed bytecode read.
            retry_base_delay_seconds: Base of the exponential retry backoff.
            batch_size: Tokens checked concurrently.
            batch_delay_seconds: Pause between batches.
            bytecode_timeout_seconds: Timeout per bytecode read attempt.
            referrer_timeout_seconds: Timeout per ``platformReferrer()`` read.
            pool_timeout_seconds: Timeout for locating a token's pool.
            verify_matches: Cross-check bytecode matches with the referrer
                read. Only logged; never reverses a match.
            fallback_inconclusive_ratio: Share of failed bytecode reads that
                triggers the fallback tiers even when some tokens matched.
            referrer_fallback_limit: Max tokens checked by tier 2.
            pool_fallback_limit: Max tokens checked by tier 3.
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self._client = client
        self._locator = locator
        self._cache = cache if cache is not None else ProvenanceCache()
        self._platform_referrer = platform_referrer.lower()
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay_seconds
        self._batch_size = batch_size
        self._batch_delay = batch_delay_seconds
        self._bytecode_timeout = bytecode_timeout_seconds
        self._referrer_timeout = referrer_timeout_seconds
        self._pool_timeout = pool_timeout_seconds
        self._verify_matches = verify_matches
        self._fallback_ratio = fallback_inconclusive_ratio
        self._referrer_limit = referrer_fallback_limit
        self._pool_limit = pool_fallback_limit

    @classmethod
    def from_settings(
        cls,
        client: BaseChainClient,
        locator: PoolLocator | None,
        settings: ProvenanceSettings,
        *,
        cache: ProvenanceCache | None = None,
    ) -> ProvenanceClassifier:
        return cls(
            client,
            locator,
            cache=cache,
            platform_referrer=settings.platform_referrer,
            max_retries=settings.max_retries,
            retry_base_delay_seconds=settings.retry_base_delay_seconds,
            batch_size=settings.effective_batch_size,
            batch_delay_seconds=settings.effective_batch_delay_seconds,
            bytecode_timeout_seconds=settings.effective_bytecode_timeout_seconds,
            referrer_timeout_seconds=settings.referrer_timeout_seconds,
            pool_timeout_seconds=settings.pool_timeout_seconds,
            verify_matches=settings.verify_matches,
            fallback_inconclusive_ratio=settings.fallback_inconclusive_ratio,
        )

    @property
    def cache(self) -> ProvenanceCache:
        return self._cache

    async def classify(self, addresses: Iterable[str]) -> dict[str, bool]:
        """Classify token addresses as platform-origin or not.

        Results are keyed by lower-cased address. Invalid addresses map to
        False under their original spelling. Callers that want the
        fallback tiers to favour their biggest holdings should pass
        addresses in descending balance order.
        """
        results: dict[str, bool] = {}
        pending: list[str] = []
        for raw in addresses:
            try:
                address = normalize_address(raw)
            except InvalidInputError:
                logger.warning("Skipping invalid token address %r", raw)
                results[str(raw)] = False
                continue
            if address in results or address in pending:
                continue
            cached = self._cache.get(address)
            if cached is not None:
                results[address] = cached
            else:
                pending.append(address)

        if not pending:
            return results

        bytecode = await self._run_tier(pending, self.check_bytecode)
        positives = [a for a in pending if bytecode[a] is Verdict.POSITIVE]
        inconclusive = [a for a in pending if bytecode[a] is Verdict.INCONCLUSIVE]
        for address in pending:
            results[address] = address in positives
        logger.info(
            "Bytecode tier: %d/%d matched, %d inconclusive",
            len(positives),
            len(pending),
            len(inconclusive),
        )

        if positives and self._verify_matches:
            await self._confirm_matches(positives)

        if not positives or len(inconclusive) / len(pending) >= self._fallback_ratio:
            remaining = [a for a in pending if not results[a]]
            for address in await self._run_fallback_tiers(remaining):
                results[address] = True

        for address in pending:
            if results[address]:
                self._cache.set(address, True)
            elif bytecode[address] is Verdict.NEGATIVE:
                self._cache.set(address, False)

        return results

    async def is_platform_token(self, address: str) -> bool:
        results = await self.classify([address])
        return next(iter(results.values()))

    async def _run_tier(
        self,
        addresses: Sequence[str],
        check: Callable[[str], Awaitable[Verdict]],
    ) -> dict[str, Verdict]:
        outcomes = await gather_in_batches(
            addresses,
            check,
            batch_size=self._batch_size,
            delay_seconds=self._batch_delay,
        )
        verdicts: dict[str, Verdict] = {}
        for address, outcome in outcomes:
            if isinstance(outcome, BaseException):
                logger.warning("Classification check failed for %s: %s", address, outcome)
                verdicts[address] = Verdict.INCONCLUSIVE
            else:
                verdicts[address] = outcome
        return verdicts

    async def _confirm_matches(self, positives: Sequence[str]) -> None:
        confirmations = await self._run_tier(positives, self.check_referrer)
        for address, verdict in confirmations.items():
            if verdict is Verdict.POSITIVE:
                logger.debug("%s confirmed by bytecode and referrer", address)
            else:
                logger.info(
                    "%s matched bytecode but referrer check was %s; keeping match",
                    address,
                    verdict.value,
                )

    async def _run_fallback_tiers(self, remaining: Sequence[str]) -> list[str]:
        if not remaining:
            return []

        candidates = list(remaining[: self._referrer_limit])
        referrer = await self._run_tier(candidates, self.check_referrer)
        confirmed = [a for a in candidates if referrer[a] is Verdict.POSITIVE]
        logger.info("Referrer tier: %d/%d matched", len(confirmed), len(candidates))
        if confirmed or self._locator is None:
            return confirmed

        candidates = [a for a in remaining if referrer.get(a) is not Verdict.NEGATIVE]
        candidates = candidates[: self._pool_limit]
        pool = await self._run_tier(candidates, self.check_pool)
        confirmed = [a for a in candidates if pool[a] is Verdict.POSITIVE]
        logger.info("Pool tier: %d/%d matched", len(confirmed), len(candidates))
        return confirmed

    async def check_bytecode(self, address: str) -> Verdict:
        """Compare deployed code with the platform clone fingerprint.

        Failed reads are retried with exponential backoff. Empty code is a
        conclusive negative; exhausted retries are inconclusive.
        """
        for attempt in range(self._max_retries + 1):
            try:
                code = await asyncio.wait_for(
                    self._client.get_code(address), timeout=self._bytecode_timeout
                )
            except (ChainClientError, asyncio.TimeoutError) as e:
                logger.warning(
                    "Bytecode read failed for %s (attempt %d/%d): %s",
                    address,
                    attempt + 1,
                    self._max_retries + 1,
                    e,
                )
                if attempt < self._max_retries:
                    await asyncio.sleep(self._retry_base_delay * (2**attempt))
                continue

            hexed = _code_to_hex(code)
            if len(hexed) < MIN_CODE_HEX_LENGTH:
                return Verdict.NEGATIVE
            return Verdict.POSITIVE if matches_platform_bytecode(hexed) else Verdict.NEGATIVE

        return Verdict.INCONCLUSIVE

    async def check_referrer(self, address: str) -> Verdict:
        """Read ``platformReferrer()`` and compare it with the platform address."""
        if address.lower() == ZERO_ADDRESS:
            return Verdict.INCONCLUSIVE
        try:
            referrer = await asyncio.wait_for(
                self._client.call_function(address, PLATFORM_REFERRER_ABI, "platformReferrer"),
                timeout=self._referrer_timeout,
            )
        except (ChainClientError, asyncio.TimeoutError) as e:
            logger.debug("platformReferrer() unavailable for %s: %s", address, e)
            return Verdict.INCONCLUSIVE
        if str(referrer).lower() == self._platform_referrer:
            return Verdict.POSITIVE
        return Verdict.NEGATIVE

    async def check_pool(self, address: str) -> Verdict:
        """Check the referrer on both currencies of the token's pool."""
        if self._locator is None:
            return Verdict.INCONCLUSIVE
        try:
            pool = await asyncio.wait_for(
                self._locator.locate_pool(address), timeout=self._pool_timeout
            )
        except asyncio.TimeoutError:
            logger.debug("Pool lookup timed out for %s", address)
            return Verdict.INCONCLUSIVE
        if pool is None:
            return Verdict.INCONCLUSIVE

        verdicts = [
            await self.check_referrer(pool.key.currency0),
            await self.check_referrer(pool.key.currency1),
        ]
        if Verdict.POSITIVE in verdicts:
            return Verdict.POSITIVE
        if all(v is Verdict.NEGATIVE for v in verdicts):
            return Verdict.NEGATIVE
        return Verdict.INCONCLUSIVE
