"""Command-line entry point.

Usage:
    python -m post_token_pnl analyze wallet.json [--output result.json]
    python -m post_token_pnl classify 0xToken1 0xToken2

The ``analyze`` input file holds ``wallet``, ``tokens`` (balances),
``transactions`` and ``token_transfers`` in explorer-style JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from post_token_pnl.analyzer import build_analyzer
from post_token_pnl.config import Settings, get_settings
from post_token_pnl.errors import InvalidInputError
from post_token_pnl.models import TokenBalance, TransactionHistory

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="post-token-pnl",
        description="Profit and loss for post tokens held by a Base wallet",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze = subparsers.add_parser("analyze", help="Analyze a wallet from a JSON export")
    analyze.add_argument("input", type=Path, help="JSON file with balances and history")
    analyze.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Write the result here instead of stdout",
    )

    classify = subparsers.add_parser("classify", help="Check which tokens are post tokens")
    classify.add_argument("addresses", nargs="+", help="Token contract addresses")

    return parser.parse_args(argv)


def _load_input(path: Path) -> dict[str, Any]:
    with path.open(encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise InvalidInputError(f"{path} must contain a JSON object")
    return data


async def _run_analyze(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    data = _load_input(args.input)
    tokens = data.get("tokens") or []
    if not isinstance(tokens, list):
        raise InvalidInputError(f"{args.input}: tokens must be a list")
    balances = [TokenBalance.from_dict(item) for item in tokens]
    history = TransactionHistory.from_dict(data)
    async with build_analyzer(settings) as analyzer:
        result = await analyzer.analyze_wallet(str(data.get("wallet", "")), balances, history)
    return result.to_dict()


async def _run_classify(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    async with build_analyzer(settings) as analyzer:
        flags = await analyzer.classifier.classify(args.addresses)
    return {"tokens": flags}


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.debug("Settings: %s", settings.redacted_summary())

    try:
        if args.command == "analyze":
            output = asyncio.run(_run_analyze(settings, args))
        else:
            output = asyncio.run(_run_classify(settings, args))
    except (InvalidInputError, OSError, json.JSONDecodeError) as e:
        logger.error("%s", e)
        return 2

    rendered = json.dumps(output, indent=2)
    if getattr(args, "output", None):
        args.output.write_text(rendered + "\n", encoding="utf-8")
    else:
        sys.stdout.write(rendered + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
