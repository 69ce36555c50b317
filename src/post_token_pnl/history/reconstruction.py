"""Rebuild buy/sell/mint events from raw transfer records.

A token arriving in the wallet is a buy; the price paid is whatever native
currency the wallet sent in a nearby transaction. A token leaving the wallet
is a sell, paired the same way with native currency received. Pairing is by
block and timestamp proximity, not causality, so it is a heuristic: a
concurrent unrelated payment can be mistaken for the purchase price.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace

from post_token_pnl.config import ReconstructionSettings
from post_token_pnl.models import (
    ZERO_ADDRESS,
    EventKind,
    ReconstructedEvent,
    TokenTransferEvent,
    Transaction,
)

logger = logging.getLogger(__name__)

# Selectors of the common ERC-721/ERC-20 mint entry points.
MINT_SELECTORS = frozenset({"0x40c10f19", "0x1249c58b"})


@dataclass(frozen=True)
class MatchingWindow:
    """How far from the token transfer a companion payment may be.

    Attributes:
        block_offset: Neighbouring blocks searched on each side.
        max_time_delta_seconds: Max timestamp distance for a neighbouring block.
    """

    block_offset: int
    max_time_delta_seconds: int

    def __post_init__(self) -> None:
        if self.block_offset < 0:
            raise ValueError("block_offset must be >= 0")
        if self.max_time_delta_seconds < 0:
            raise ValueError("max_time_delta_seconds must be >= 0")


DEFAULT_BUY_WINDOW = MatchingWindow(block_offset=3, max_time_delta_seconds=60)
DEFAULT_SELL_WINDOW = MatchingWindow(block_offset=5, max_time_delta_seconds=120)


@dataclass(frozen=True)
class OriginInference:
    is_origin_token: bool
    events: tuple[ReconstructedEvent, ...]
    reason: str | None = None


class TransactionReconstructor:
    """Pair token transfers with native payments.

    Example:
        ```python
        reconstructor = TransactionReconstructor()
        events = reconstructor.reconstruct(
            wallet, token, history.transfers_for(token), history.transactions,
            current_balance_raw=balance.balance_raw,
        )
        origin = infer_origin(events, wallet, token, history.transactions)
        ```
    """

    def __init__(
        self,
        *,
        buy_window: MatchingWindow = DEFAULT_BUY_WINDOW,
        sell_window: MatchingWindow = DEFAULT_SELL_WINDOW,
    ) -> None:
        self._buy_window = buy_window
        self._sell_window = sell_window

    @classmethod
    def from_settings(cls, settings: ReconstructionSettings) -> TransactionReconstructor:
        return cls(
            buy_window=MatchingWindow(
                block_offset=settings.buy_block_offset,
                max_time_delta_seconds=settings.buy_time_window_seconds,
            ),
            sell_window=MatchingWindow(
                block_offset=settings.sell_block_offset,
                max_time_delta_seconds=settings.sell_time_window_seconds,
            ),
        )

    def reconstruct(
        self,
        wallet_address: str,
        token_address: str,
        token_transfers: Iterable[TokenTransferEvent],
        all_transactions: Sequence[Transaction],
        *,
        current_balance_raw: int = 0,
        as_of: int | None = None,
    ) -> list[ReconstructedEvent]:
        """Return the token's events ordered by (timestamp, block, input order).

        With no transfers at all and a positive balance, a single synthetic
        mint stands in for the missing history.
        """
        wallet = wallet_address.lower()
        token = token_address.lower()
        by_block = _index_by_block(all_transactions)

        events: list[tuple[int, ReconstructedEvent]] = []
        for index, transfer in enumerate(token_transfers):
            if transfer.token_address.lower() != token:
                continue
            sender = transfer.from_address.lower()
            recipient = transfer.to_address.lower()
            if sender == recipient:
                continue

            if recipient == wallet:
                companion = self._find_companion(
                    transfer, by_block, self._buy_window, payer=wallet, payee=None
                )
                kind = EventKind.BUY
                if companion is None and sender == ZERO_ADDRESS:
                    kind = EventKind.MINT
            elif sender == wallet:
                companion = self._find_companion(
                    transfer, by_block, self._sell_window, payer=None, payee=wallet
                )
                kind = EventKind.SELL
            else:
                continue

            events.append(
                (
                    index,
                    ReconstructedEvent(
                        token_address=token,
                        kind=kind,
                        token_amount=transfer.value,
                        native_amount=companion.value if companion else 0,
                        timestamp=transfer.timestamp,
                        block_number=transfer.block_number,
                        tx_hash=transfer.hash,
                        companion_hash=companion.hash if companion else None,
                    ),
                )
            )

        if not events:
            if current_balance_raw > 0:
                logger.debug(
                    "No transfers for %s held by %s; synthesizing a mint of %d",
                    token,
                    wallet,
                    current_balance_raw,
                )
                return [
                    ReconstructedEvent(
                        token_address=token,
                        kind=EventKind.MINT,
                        token_amount=current_balance_raw,
                        native_amount=0,
                        timestamp=as_of if as_of is not None else int(time.time()),
                        block_number=0,
                        synthetic=True,
                    )
                ]
            return []

        events.sort(key=lambda item: (item[1].timestamp, item[1].block_number, item[0]))
        return [event for _, event in events]

    def _find_companion(
        self,
        transfer: TokenTransferEvent,
        by_block: dict[int, list[tuple[int, Transaction]]],
        window: MatchingWindow,
        *,
        payer: str | None,
        payee: str | None,
    ) -> Transaction | None:
        def eligible(tx: Transaction) -> bool:
            if tx.value <= 0 or tx.hash == transfer.hash:
                return False
            if payer is not None and tx.from_address.lower() != payer:
                return False
            if payee is not None and (tx.to_address or "").lower() != payee:
                return False
            return True

        same_block = [
            (order, tx) for order, tx in by_block.get(transfer.block_number, []) if eligible(tx)
        ]
        if same_block:
            _, tx = min(
                same_block,
                key=lambda item: (abs(item[1].timestamp - transfer.timestamp), item[0]),
            )
            return tx

        candidates: list[tuple[int, int, int, Transaction]] = []
        for offset in range(-window.block_offset, window.block_offset + 1):
            if offset == 0:
                continue
            for order, tx in by_block.get(transfer.block_number + offset, []):
                if not eligible(tx):
                    continue
                delta = abs(tx.timestamp - transfer.timestamp)
                if delta > window.max_time_delta_seconds:
                    continue
                candidates.append((delta, abs(offset), order, tx))
        if not candidates:
            return None
        return min(candidates, key=lambda item: item[:3])[3]


def _index_by_block(transactions: Sequence[Transaction]) -> dict[int, list[tuple[int, Transaction]]]:
    by_block: dict[int, list[tuple[int, Transaction]]] = {}
    for order, tx in enumerate(transactions):
        by_block.setdefault(tx.block_number, []).append((order, tx))
    return by_block


def _minted_by_wallet(wallet: str, token: str, transactions: Iterable[Transaction]) -> bool:
    for tx in transactions:
        if tx.from_address.lower() != wallet or (tx.to_address or "").lower() != token:
            continue
        if tx.selector in MINT_SELECTORS:
            return True
    return False


def infer_origin(
    events: Sequence[ReconstructedEvent],
    wallet_address: str,
    token_address: str,
    transactions: Iterable[Transaction] = (),
) -> OriginInference:
    """Decide whether the wallet received the token free as its author.

    Signals, in order: any mint; every buy paid nothing (relabelled as
    mints); the first receipt paid nothing (that one relabelled); the wallet
    called a mint entry point on the token contract.
    """
    wallet = wallet_address.lower()
    token = token_address.lower()
    events = tuple(events)

    if any(e.kind is EventKind.MINT for e in events):
        return OriginInference(True, events, "mint")

    buys = [e for e in events if e.kind is EventKind.BUY]
    if buys and all(e.native_amount == 0 for e in buys):
        relabelled = tuple(
            replace(e, kind=EventKind.MINT) if e.kind is EventKind.BUY else e for e in events
        )
        return OriginInference(True, relabelled, "all receipts free")

    if buys and buys[0].native_amount == 0:
        first = buys[0]
        relabelled = tuple(replace(e, kind=EventKind.MINT) if e is first else e for e in events)
        return OriginInference(True, relabelled, "first receipt free")

    if _minted_by_wallet(wallet, token, transactions):
        return OriginInference(True, events, "mint call")

    return OriginInference(False, events)
