"""Tests for platform-origin classification."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from post_token_pnl.chain.client import ContractCallError, RPCError
from post_token_pnl.models import PoolKey
from post_token_pnl.provenance.classifier import (
    CLONE_BYTECODE,
    CLONE_BYTECODE_PREFIX,
    PLATFORM_REFERRER_ADDRESS,
    ProvenanceCache,
    ProvenanceClassifier,
    Verdict,
    matches_platform_bytecode,
)

POST = "0x1111111111111111111111111111111111111111"
OTHER = "0x2222222222222222222222222222222222222222"
THIRD = "0x3333333333333333333333333333333333333333"
WETH = "0x4200000000000000000000000000000000000006"

CLONE_CODE = bytes.fromhex(CLONE_BYTECODE[2:])
UNRELATED_CODE = bytes.fromhex("6080604052348015600f57600080fd5b50")


def _code_by_address(mapping: dict[str, Any]) -> AsyncMock:
    async def get_code(address: str) -> bytes:
        value = mapping.get(address.lower(), b"")
        if isinstance(value, Exception):
            raise value
        return value

    return AsyncMock(side_effect=get_code)


def _referrer_by_address(mapping: dict[str, str]) -> AsyncMock:
    async def call_function(address: str, abi: Any, fn_name: str, *args: Any) -> str:
        if address.lower() not in mapping:
            raise ContractCallError(f"{fn_name} reverted")
        return mapping[address.lower()]

    return AsyncMock(side_effect=call_function)


@pytest.fixture
def client() -> MagicMock:
    c = MagicMock()
    c.get_code = _code_by_address({})
    c.call_function = _referrer_by_address({})
    return c


def _classifier(client: MagicMock, locator: Any = None, **kwargs: Any) -> ProvenanceClassifier:
    kwargs.setdefault("retry_base_delay_seconds", 0.0)
    kwargs.setdefault("batch_delay_seconds", 0.0)
    return ProvenanceClassifier(client, locator, **kwargs)


class TestBytecodeFingerprint:
    def test_exact_clone_matches(self) -> None:
        assert matches_platform_bytecode(CLONE_CODE)
        assert matches_platform_bytecode(CLONE_BYTECODE.upper().replace("0X", "0x"))

    def test_prefix_matches(self) -> None:
        assert matches_platform_bytecode(CLONE_BYTECODE_PREFIX + "deadbeef")

    def test_unrelated_code_does_not_match(self) -> None:
        assert not matches_platform_bytecode(UNRELATED_CODE)
        assert not matches_platform_bytecode(b"")


class TestProvenanceCache:
    def test_keys_are_case_insensitive(self) -> None:
        cache = ProvenanceCache()
        cache.set("0xABCDEF0000000000000000000000000000000000", True)
        assert cache.get("0xabcdef0000000000000000000000000000000000") is True
        assert "0xAbCdEf0000000000000000000000000000000000" in cache
        assert len(cache) == 1
        cache.clear()
        assert len(cache) == 0


class TestCheckBytecode:
    @pytest.mark.asyncio
    async def test_retries_then_matches(self, client: MagicMock) -> None:
        client.get_code = AsyncMock(side_effect=[RPCError("timeout"), CLONE_CODE])
        classifier = _classifier(client, max_retries=2)

        assert await classifier.check_bytecode(POST) is Verdict.POSITIVE
        assert client.get_code.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_are_inconclusive(self, client: MagicMock) -> None:
        client.get_code = AsyncMock(side_effect=RPCError("down"))
        classifier = _classifier(client, max_retries=2)

        assert await classifier.check_bytecode(POST) is Verdict.INCONCLUSIVE
        assert client.get_code.await_count == 3

    @pytest.mark.asyncio
    async def test_empty_code_is_negative(self, client: MagicMock) -> None:
        assert await _classifier(client).check_bytecode(POST) is Verdict.NEGATIVE


class TestCheckReferrer:
    @pytest.mark.asyncio
    async def test_matching_referrer(self, client: MagicMock) -> None:
        client.call_function = _referrer_by_address({POST: PLATFORM_REFERRER_ADDRESS})
        assert await _classifier(client).check_referrer(POST) is Verdict.POSITIVE

    @pytest.mark.asyncio
    async def test_other_referrer(self, client: MagicMock) -> None:
        client.call_function = _referrer_by_address({POST: OTHER})
        assert await _classifier(client).check_referrer(POST) is Verdict.NEGATIVE

    @pytest.mark.asyncio
    async def test_missing_method_is_inconclusive(self, client: MagicMock) -> None:
        assert await _classifier(client).check_referrer(POST) is Verdict.INCONCLUSIVE


class TestClassify:
    @pytest.mark.asyncio
    async def test_bytecode_tier(self, client: MagicMock) -> None:
        client.get_code = _code_by_address({POST: CLONE_CODE, OTHER: UNRELATED_CODE})
        classifier = _classifier(client, verify_matches=False)

        result = await classifier.classify([POST, OTHER])

        assert result == {POST: True, OTHER: False}
        client.call_function.assert_not_called()

    @pytest.mark.asyncio
    async def test_verification_never_reverses_a_match(self, client: MagicMock) -> None:
        client.get_code = _code_by_address({POST: CLONE_CODE})
        client.call_function = _referrer_by_address({POST: OTHER})

        result = await _classifier(client).classify([POST])

        assert result == {POST: True}
        client.call_function.assert_awaited()

    @pytest.mark.asyncio
    async def test_invalid_address_is_false(self, client: MagicMock) -> None:
        result = await _classifier(client).classify(["not-an-address"])
        assert result == {"not-an-address": False}
        client.get_code.assert_not_called()

    @pytest.mark.asyncio
    async def test_results_are_cached(self, client: MagicMock) -> None:
        client.get_code = _code_by_address({POST: CLONE_CODE, OTHER: UNRELATED_CODE})
        classifier = _classifier(client, verify_matches=False)

        await classifier.classify([POST, OTHER])
        client.get_code.reset_mock()
        result = await classifier.classify([POST, OTHER])

        assert result == {POST: True, OTHER: False}
        client.get_code.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_reads_are_not_cached_as_negative(self, client: MagicMock) -> None:
        client.get_code = AsyncMock(side_effect=RPCError("down"))
        classifier = _classifier(client, max_retries=0)

        result = await classifier.classify([POST])

        assert result == {POST: False}
        assert POST not in classifier.cache

    @pytest.mark.asyncio
    async def test_referrer_fallback_when_bytecode_finds_nothing(self, client: MagicMock) -> None:
        client.get_code = _code_by_address({POST: UNRELATED_CODE, OTHER: UNRELATED_CODE})
        client.call_function = _referrer_by_address({OTHER: PLATFORM_REFERRER_ADDRESS})
        classifier = _classifier(client)

        result = await classifier.classify([POST, OTHER])

        assert result == {POST: False, OTHER: True}
        assert classifier.cache.get(OTHER) is True

    @pytest.mark.asyncio
    async def test_fallback_runs_when_many_reads_fail(self, client: MagicMock) -> None:
        client.get_code = _code_by_address(
            {POST: CLONE_CODE, OTHER: RPCError("down"), THIRD: RPCError("down")}
        )
        client.call_function = _referrer_by_address(
            {POST: PLATFORM_REFERRER_ADDRESS, THIRD: PLATFORM_REFERRER_ADDRESS}
        )
        classifier = _classifier(client, max_retries=0)

        result = await classifier.classify([POST, OTHER, THIRD])

        assert result == {POST: True, OTHER: False, THIRD: True}

    @pytest.mark.asyncio
    async def test_referrer_fallback_is_limited(self, client: MagicMock) -> None:
        client.get_code = _code_by_address({POST: UNRELATED_CODE, OTHER: UNRELATED_CODE})
        client.call_function = _referrer_by_address(
            {POST: OTHER, OTHER: PLATFORM_REFERRER_ADDRESS}
        )
        classifier = _classifier(client, referrer_fallback_limit=1)

        result = await classifier.classify([POST, OTHER])

        assert result == {POST: False, OTHER: False}
        assert client.call_function.await_count == 1

    @pytest.mark.asyncio
    async def test_pool_fallback(self, client: MagicMock) -> None:
        client.get_code = _code_by_address({POST: UNRELATED_CODE})
        client.call_function = _referrer_by_address({WETH: PLATFORM_REFERRER_ADDRESS})
        pool = MagicMock()
        pool.key = PoolKey(POST, WETH, 3000, 60, "0x" + "0" * 40)
        locator = MagicMock()
        locator.locate_pool = AsyncMock(return_value=pool)

        result = await _classifier(client, locator).classify([POST])

        assert result == {POST: True}
        locator.locate_pool.assert_awaited_once_with(POST)

    @pytest.mark.asyncio
    async def test_pool_fallback_without_pool(self, client: MagicMock) -> None:
        client.get_code = _code_by_address({POST: UNRELATED_CODE})
        locator = MagicMock()
        locator.locate_pool = AsyncMock(return_value=None)

        result = await _classifier(client, locator).classify([POST])

        assert result == {POST: False}
