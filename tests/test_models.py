"""Tests for shared data models."""

from __future__ import annotations

from decimal import Decimal

import pytest

from post_token_pnl.errors import InvalidInputError
from post_token_pnl.models import (
    AnalysisDiagnostics,
    PoolKey,
    PortfolioAnalytics,
    PriceQuote,
    PriceSourceName,
    PriceUnit,
    TokenBalance,
    TokenTransferEvent,
    Transaction,
    TransactionHistory,
    WalletAnalysis,
    is_usable_price,
    normalize_address,
)

TOKEN = "0x1111111111111111111111111111111111111111"
WALLET = "0x742d35cc6634c0532925a3b844bc9e7595f5eae2"


class TestNormalizeAddress:
    def test_lowercases_checksummed_address(self) -> None:
        assert (
            normalize_address("0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed")
            == "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
        )

    @pytest.mark.parametrize("value", ["", "0x1234", "not an address", None, 42])
    def test_rejects_invalid_values(self, value: object) -> None:
        with pytest.raises(InvalidInputError):
            normalize_address(value)


class TestTokenBalance:
    def test_from_dict_with_raw_balance(self) -> None:
        balance = TokenBalance.from_dict(
            {
                "contractAddress": TOKEN,
                "tokenSymbol": "POST",
                "tokenName": "My Post",
                "tokenDecimal": "18",
                "rawBalance": "2500000000000000000",
            }
        )
        assert balance.token_address == TOKEN
        assert balance.symbol == "POST"
        assert balance.name == "My Post"
        assert balance.decimals == 18
        assert balance.balance_raw == 2_500_000_000_000_000_000
        assert balance.balance == Decimal("2.5")

    def test_from_dict_with_human_balance(self) -> None:
        balance = TokenBalance.from_dict({"token_address": TOKEN, "decimals": 6, "balance": "1.25"})
        assert balance.balance_raw == 1_250_000

    def test_from_dict_rejects_negative_balance(self) -> None:
        with pytest.raises(InvalidInputError):
            TokenBalance.from_dict({"token_address": TOKEN, "balance_raw": -1})

    def test_from_dict_rejects_bad_decimals(self) -> None:
        with pytest.raises(InvalidInputError):
            TokenBalance.from_dict({"token_address": TOKEN, "decimals": "abc", "balance_raw": 1})

    def test_constructor_lowercases_checksummed_address(self) -> None:
        balance = TokenBalance(
            token_address="0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed",
            symbol="POST",
            name="My Post",
            decimals=18,
            balance_raw=1,
        )
        assert balance.token_address == "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"

    def test_constructor_rejects_invalid_address(self) -> None:
        with pytest.raises(InvalidInputError):
            TokenBalance(token_address="0xnope", symbol="", name="", decimals=18, balance_raw=1)

    @pytest.mark.parametrize("row", ["0x1111", 42, ["a"], None])
    def test_from_dict_rejects_non_object_rows(self, row: object) -> None:
        with pytest.raises(InvalidInputError):
            TokenBalance.from_dict(row)  # type: ignore[arg-type]


class TestTransaction:
    def test_from_explorer_row(self) -> None:
        tx = Transaction.from_dict(
            {
                "hash": "0xABC",
                "from": WALLET,
                "to": TOKEN,
                "value": "1000",
                "timeStamp": "1700000000",
                "blockNumber": "0x10",
                "input": "0x40c10f19000000",
            }
        )
        assert tx.hash == "0xabc"
        assert tx.value == 1000
        assert tx.timestamp == 1_700_000_000
        assert tx.block_number == 16
        assert tx.selector == "0x40c10f19"

    def test_selector_prefers_method_id(self) -> None:
        tx = Transaction(
            hash="0x1",
            from_address=WALLET,
            to_address=None,
            value=0,
            timestamp=0,
            block_number=0,
            input="0xdeadbeef00",
            method_id="0x1249C58B",
        )
        assert tx.selector == "0x1249c58b"

    def test_selector_missing_for_plain_transfer(self) -> None:
        tx = Transaction.from_dict({"hash": "0x1", "from": WALLET, "to": TOKEN, "value": 1})
        assert tx.selector is None

    def test_missing_hash_is_invalid_input(self) -> None:
        with pytest.raises(InvalidInputError, match="hash"):
            Transaction.from_dict({"from": WALLET, "to": TOKEN, "value": 1})

    def test_non_object_row_is_invalid_input(self) -> None:
        with pytest.raises(InvalidInputError):
            Transaction.from_dict("0x1")  # type: ignore[arg-type]


class TestTransactionHistory:
    def test_groups_flat_transfer_list_by_token(self) -> None:
        history = TransactionHistory.from_dict(
            {
                "transactions": [],
                "token_transfers": [
                    {
                        "hash": "0x1",
                        "from": "0x0000000000000000000000000000000000000000",
                        "to": WALLET,
                        "value": "5",
                        "timeStamp": "1",
                        "blockNumber": "1",
                        "contractAddress": TOKEN,
                    }
                ],
            }
        )
        transfers = history.transfers_for(TOKEN)
        assert len(transfers) == 1
        assert transfers[0].value == 5

    def test_accepts_mapping_of_token_to_rows(self) -> None:
        history = TransactionHistory.from_dict(
            {"token_transfers": {TOKEN: [{"hash": "0x2", "from": WALLET, "to": TOKEN, "value": 7}]}}
        )
        assert history.transfers_for(TOKEN)[0].token_address == TOKEN

    def test_unknown_token_has_no_transfers(self) -> None:
        assert TransactionHistory().transfers_for(TOKEN) == ()

    def test_constructor_lowercases_token_keys(self) -> None:
        checksummed = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
        event = TokenTransferEvent(
            hash="0x1",
            from_address=TOKEN,
            to_address=WALLET,
            value=1,
            timestamp=1,
            block_number=1,
            token_address=checksummed.lower(),
        )
        history = TransactionHistory(token_transfers={checksummed: (event,)})
        assert history.transfers_for(checksummed) == (event,)
        assert history.transfers_for(checksummed.lower()) == (event,)

    def test_transfer_row_without_hash_is_invalid_input(self) -> None:
        with pytest.raises(InvalidInputError, match="hash"):
            TransactionHistory.from_dict(
                {"token_transfers": [{"from": WALLET, "to": TOKEN, "contractAddress": TOKEN}]}
            )

    @pytest.mark.parametrize(
        "data",
        [
            {"transactions": ["0x1"]},
            {"transactions": "0x1"},
            {"token_transfers": {TOKEN: ["0x1"]}},
            {"token_transfers": {TOKEN: "0x1"}},
            {"token_transfers": 5},
        ],
    )
    def test_malformed_rows_are_invalid_input(self, data: dict[str, object]) -> None:
        with pytest.raises(InvalidInputError):
            TransactionHistory.from_dict(data)


class TestPriceQuote:
    def test_none_quote_is_not_usable(self) -> None:
        quote = PriceQuote.none()
        assert quote.source is PriceSourceName.NONE
        assert not quote.is_usable

    def test_positive_price_is_usable(self) -> None:
        quote = PriceQuote(Decimal("0.5"), PriceUnit.USD, PriceSourceName.DEXSCREENER)
        assert quote.is_usable

    @pytest.mark.parametrize(
        "price", [None, Decimal("0"), Decimal("-1"), Decimal("NaN"), Decimal("Infinity")]
    )
    def test_unusable_prices(self, price: Decimal | None) -> None:
        assert not is_usable_price(price)


class TestPoolKey:
    def test_counter_currency(self) -> None:
        key = PoolKey(
            currency0="0x1111111111111111111111111111111111111111",
            currency1="0x4200000000000000000000000000000000000006",
            fee=3000,
            tick_spacing=60,
            hooks="0x0000000000000000000000000000000000000000",
        )
        assert key.contains("0x4200000000000000000000000000000000000006")
        assert key.counter_currency(TOKEN) == key.currency1
        assert key.counter_currency(key.currency1) == TOKEN


class TestWalletAnalysis:
    def test_to_dict_of_empty_result(self) -> None:
        result = WalletAnalysis(
            wallet_address=WALLET,
            portfolio=PortfolioAnalytics(),
            diagnostics=AnalysisDiagnostics(tokens_seen=2, provider_error="boom"),
        )
        data = result.to_dict()
        assert data["wallet_address"] == WALLET
        assert data["portfolio"]["posts"] == []
        assert data["portfolio"]["total_pnl"] == "0.00"
        assert data["diagnostics"]["tokens_seen"] == 2
        assert data["diagnostics"]["provider_error"] == "boom"
        assert data["diagnostics"]["native_usd_rate"] is None
