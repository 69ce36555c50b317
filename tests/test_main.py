"""Tests for the command-line entry point."""

from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from post_token_pnl import __main__ as cli
from post_token_pnl.analyzer import WalletAnalyzer
from post_token_pnl.models import PriceQuote, PriceSourceName, PriceUnit

WALLET = "0x742d35cc6634c0532925a3b844bc9e7595f5eae2"
TOKEN = "0x1111111111111111111111111111111111111111"


@pytest.fixture
def fake_analyzer(monkeypatch: pytest.MonkeyPatch) -> WalletAnalyzer:
    classifier = MagicMock()
    classifier.classify = AsyncMock(return_value={TOKEN: True})
    price_service = MagicMock()
    price_service.get_native_usd_rate = AsyncMock(return_value=Decimal("3000"))
    price_service.prefetch_dex_pairs = AsyncMock(return_value={})
    price_service.resolve_prices = AsyncMock(
        return_value={TOKEN: PriceQuote(Decimal("0.05"), PriceUnit.USD, PriceSourceName.POOL)}
    )
    analyzer = WalletAnalyzer(classifier, price_service)
    monkeypatch.setattr(cli, "build_analyzer", lambda settings: analyzer)
    return analyzer


@pytest.fixture
def wallet_export(tmp_path: Path) -> Path:
    path = tmp_path / "wallet.json"
    path.write_text(
        json.dumps(
            {
                "wallet": WALLET,
                "tokens": [
                    {
                        "contractAddress": TOKEN,
                        "tokenSymbol": "POST",
                        "tokenDecimal": "18",
                        "rawBalance": str(100 * 10**18),
                    }
                ],
                "transactions": [],
                "token_transfers": [
                    {
                        "hash": "0xmint",
                        "from": "0x0000000000000000000000000000000000000000",
                        "to": WALLET,
                        "value": str(100 * 10**18),
                        "timeStamp": "1700000000",
                        "blockNumber": "123",
                        "contractAddress": TOKEN,
                    }
                ],
            }
        ),
        encoding="utf-8",
    )
    return path


class TestAnalyzeCommand:
    def test_writes_result(
        self, fake_analyzer: WalletAnalyzer, wallet_export: Path, tmp_path: Path
    ) -> None:
        output = tmp_path / "result.json"

        assert cli.main(["analyze", str(wallet_export), "--output", str(output)]) == 0

        result = json.loads(output.read_text(encoding="utf-8"))
        assert result["wallet_address"] == WALLET
        post = result["portfolio"]["posts"][0]
        assert post["token_address"] == TOKEN
        assert post["is_origin_token"] is True
        assert post["current_value"] == "5.00"
        assert post["first_buy_at"] == 1_700_000_000

    def test_missing_file(self, fake_analyzer: WalletAnalyzer, tmp_path: Path) -> None:
        assert cli.main(["analyze", str(tmp_path / "missing.json")]) == 2

    def test_invalid_wallet(self, fake_analyzer: WalletAnalyzer, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"wallet": "nope", "tokens": []}), encoding="utf-8")
        assert cli.main(["analyze", str(path)]) == 2

    @pytest.mark.parametrize(
        "payload",
        [
            {"wallet": WALLET, "transactions": [{"from": WALLET, "value": "1"}]},
            {"wallet": WALLET, "transactions": ["0xabc"]},
            {"wallet": WALLET, "tokens": ["0x1111"]},
            {"wallet": WALLET, "tokens": {"address": TOKEN}},
            {"wallet": WALLET, "token_transfers": [{"to": WALLET, "contractAddress": TOKEN}]},
        ],
    )
    def test_malformed_rows_exit_with_usage_error(
        self, fake_analyzer: WalletAnalyzer, tmp_path: Path, payload: dict[str, object]
    ) -> None:
        path = tmp_path / "malformed.json"
        path.write_text(json.dumps(payload), encoding="utf-8")
        assert cli.main(["analyze", str(path)]) == 2


class TestClassifyCommand:
    def test_prints_flags(
        self, fake_analyzer: WalletAnalyzer, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert cli.main(["classify", TOKEN]) == 0
        assert json.loads(capsys.readouterr().out) == {"tokens": {TOKEN: True}}
