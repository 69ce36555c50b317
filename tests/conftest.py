"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator

import pytest

from post_token_pnl.config import clear_settings_cache
from post_token_pnl.models import TokenTransferEvent, Transaction

WALLET = "0x742d35cc6634c0532925a3b844bc9e7595f5eae2"
TOKEN = "0x1111111111111111111111111111111111111111"
OTHER_TOKEN = "0x2222222222222222222222222222222222222222"
ROUTER = "0x3333333333333333333333333333333333333333"


@pytest.fixture
def wallet_address() -> str:
    """Sample wallet address for testing."""
    return WALLET


@pytest.fixture
def token_address() -> str:
    """Sample token contract address for testing."""
    return TOKEN


@pytest.fixture
def other_token_address() -> str:
    return OTHER_TOKEN


@pytest.fixture
def router_address() -> str:
    return ROUTER


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def make_tx() -> Callable[..., Transaction]:
    """Build a native transfer with sensible defaults."""

    def _make(
        hash: str,
        *,
        block: int,
        timestamp: int,
        value: int,
        from_address: str = WALLET,
        to_address: str | None = ROUTER,
        input: str = "0x",
        method_id: str | None = None,
    ) -> Transaction:
        return Transaction(
            hash=hash,
            from_address=from_address,
            to_address=to_address,
            value=value,
            timestamp=timestamp,
            block_number=block,
            input=input,
            method_id=method_id,
        )

    return _make


@pytest.fixture
def make_transfer() -> Callable[..., TokenTransferEvent]:
    """Build a token transfer with sensible defaults."""

    def _make(
        hash: str,
        *,
        block: int,
        timestamp: int,
        value: int,
        from_address: str = ROUTER,
        to_address: str = WALLET,
        token: str = TOKEN,
    ) -> TokenTransferEvent:
        return TokenTransferEvent(
            hash=hash,
            from_address=from_address,
            to_address=to_address,
            value=value,
            timestamp=timestamp,
            block_number=block,
            token_address=token,
        )

    return _make
