"""Data models shared across the analysis pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from web3 import AsyncWeb3

from post_token_pnl.errors import InvalidInputError

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
NATIVE_DECIMALS = 18


def normalize_address(value: object) -> str:
    """Validate an EVM address and return it lower-cased.

    Raises:
        InvalidInputError: If the value is not a 20-byte hex address.
    """
    if not isinstance(value, str) or not AsyncWeb3.is_address(value):
        raise InvalidInputError(f"Invalid address: {value!r}")
    return value.lower()


def _require_mapping(data: Any, *, name: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise InvalidInputError(f"{name} must be an object, got {type(data).__name__}")
    return data


def _required(data: dict[str, Any], key: str, *, name: str) -> Any:
    value = data.get(key)
    if value is None:
        raise InvalidInputError(f"{name} is missing {key!r}")
    return value


def _first(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _to_int(value: Any, *, name: str) -> int:
    try:
        if isinstance(value, str) and value.startswith("0x"):
            return int(value, 16)
        return int(value)
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"Invalid integer for {name}: {value!r}") from e


def _to_decimal(value: Any, *, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except ArithmeticError as e:
        raise InvalidInputError(f"Invalid decimal for {name}: {value!r}") from e


@dataclass(frozen=True)
class TokenBalance:
    """A wallet's holding of one token at the start of a run.

    Attributes:
        token_address: Lower-cased token contract address.
        symbol: Token symbol.
        name: Token name.
        decimals: Token decimals.
        balance_raw: Balance in the token's smallest unit.
    """

    token_address: str
    symbol: str
    name: str
    decimals: int
    balance_raw: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "token_address", normalize_address(self.token_address))

    @property
    def balance(self) -> Decimal:
        """Human-readable balance."""
        return Decimal(self.balance_raw) / (Decimal(10) ** self.decimals)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenBalance:
        """Create a TokenBalance from an explorer-style dictionary.

        ``balance_raw`` (or ``rawBalance``) is read in the smallest unit; a
        plain ``balance`` is read as a human-readable amount.
        """
        data = _require_mapping(data, name="token balance")
        address = normalize_address(
            _first(data, "token_address", "tokenAddress", "contractAddress", "address")
        )
        decimals = _to_int(_first(data, "decimals", "tokenDecimal", default=18), name="decimals")
        if decimals < 0 or decimals > 77:
            raise InvalidInputError(f"Decimals out of range for {address}: {decimals}")

        raw = _first(data, "balance_raw", "rawBalance")
        if raw is not None:
            balance_raw = _to_int(raw, name="balance_raw")
        else:
            human = _to_decimal(_first(data, "balance", default="0"), name="balance")
            balance_raw = int(human * (Decimal(10) ** decimals))
        if balance_raw < 0:
            raise InvalidInputError(f"Negative balance for {address}")

        return cls(
            token_address=address,
            symbol=str(_first(data, "symbol", "tokenSymbol", default="")),
            name=str(_first(data, "name", "tokenName", default="")),
            decimals=decimals,
            balance_raw=balance_raw,
        )


@dataclass(frozen=True)
class Transaction:
    """A native-currency transfer record from the wallet's history."""

    hash: str
    from_address: str
    to_address: str | None
    value: int
    timestamp: int
    block_number: int
    input: str = "0x"
    method_id: str | None = None

    @property
    def selector(self) -> str | None:
        """Function selector from ``method_id`` or the first 4 bytes of call-data."""
        if self.method_id and self.method_id != "0x":
            return self.method_id.lower()
        if len(self.input) >= 10:
            return self.input[:10].lower()
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Transaction:
        """Create a Transaction from an explorer-style dictionary."""
        data = _require_mapping(data, name="transaction")
        to_address = _first(data, "to", "to_address")
        return cls(
            hash=str(_required(data, "hash", name="transaction")).lower(),
            from_address=str(_first(data, "from", "from_address", default="")).lower(),
            to_address=str(to_address).lower() if to_address else None,
            value=_to_int(_first(data, "value", default=0), name="value"),
            timestamp=_to_int(_first(data, "timeStamp", "timestamp", default=0), name="timestamp"),
            block_number=_to_int(
                _first(data, "blockNumber", "block_number", default=0), name="blockNumber"
            ),
            input=str(_first(data, "input", default="0x")),
            method_id=_first(data, "methodId", "method_id"),
        )


@dataclass(frozen=True)
class TokenTransferEvent:
    """A token transfer touching the wallet. ``value`` is in token units."""

    hash: str
    from_address: str
    to_address: str
    value: int
    timestamp: int
    block_number: int
    token_address: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenTransferEvent:
        """Create a TokenTransferEvent from an explorer-style dictionary."""
        data = _require_mapping(data, name="token transfer")
        return cls(
            hash=str(_required(data, "hash", name="token transfer")).lower(),
            from_address=str(_first(data, "from", "from_address", default="")).lower(),
            to_address=str(_first(data, "to", "to_address", default="")).lower(),
            value=_to_int(_first(data, "value", default=0), name="value"),
            timestamp=_to_int(_first(data, "timeStamp", "timestamp", default=0), name="timestamp"),
            block_number=_to_int(
                _first(data, "blockNumber", "block_number", default=0), name="blockNumber"
            ),
            token_address=normalize_address(
                _first(data, "contractAddress", "token_address", "tokenAddress")
            ),
        )


class EventKind(str, Enum):
    """Kind of a reconstructed position event."""

    BUY = "buy"
    SELL = "sell"
    MINT = "mint"


@dataclass(frozen=True)
class ReconstructedEvent:
    """A buy, sell, or mint inferred from transfer records.

    Attributes:
        token_address: Token the event moved.
        kind: Event kind.
        token_amount: Tokens moved, smallest unit.
        native_amount: Native currency paid or received, in wei (0 if unknown).
        timestamp: Unix seconds.
        block_number: Block of the token transfer.
        tx_hash: Token transfer hash (None for synthetic events).
        companion_hash: Paired native transfer hash, if one was found.
        synthetic: True when the event stands in for missing history.
    """

    token_address: str
    kind: EventKind
    token_amount: int
    native_amount: int
    timestamp: int
    block_number: int
    tx_hash: str | None = None
    companion_hash: str | None = None
    synthetic: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_address": self.token_address,
            "kind": self.kind.value,
            "token_amount": str(self.token_amount),
            "native_amount": str(self.native_amount),
            "timestamp": self.timestamp,
            "block_number": self.block_number,
            "tx_hash": self.tx_hash,
            "companion_hash": self.companion_hash,
            "synthetic": self.synthetic,
        }


class CoinType(str, Enum):
    """Platform coin flavour, recognized from a pool's hook contract."""

    CREATOR_COIN = "creator_coin"
    CONTENT_COIN = "content_coin"


@dataclass(frozen=True)
class PoolKey:
    """Uniswap v4 pool key. ``currency0`` sorts below ``currency1``."""

    currency0: str
    currency1: str
    fee: int
    tick_spacing: int
    hooks: str

    def contains(self, address: str) -> bool:
        address = address.lower()
        return address in (self.currency0.lower(), self.currency1.lower())

    def counter_currency(self, address: str) -> str:
        """Return the other side of the pair."""
        if address.lower() == self.currency0.lower():
            return self.currency1
        return self.currency0


@dataclass(frozen=True)
class PoolCurrency:
    address: str
    decimals: int


@dataclass(frozen=True)
class PoolState:
    """Live state of a pool as read from the StateView contract.

    A PoolState is only ever built for pools with ``liquidity > 0``.
    """

    pool_id: str
    key: PoolKey
    currency0: PoolCurrency
    currency1: PoolCurrency
    sqrt_price_x96: int
    tick: int
    liquidity: int
    coin_type: CoinType | None = None


class PriceUnit(str, Enum):
    USD = "USD"
    NATIVE = "NATIVE"


class PriceSourceName(str, Enum):
    POOL = "pool"
    DEXSCREENER = "dexscreener"
    COINGECKO = "coingecko"
    NONE = "none"


def is_usable_price(price: Decimal | None) -> bool:
    """Return True for a finite, strictly positive price."""
    return price is not None and price.is_finite() and price > 0


@dataclass(frozen=True)
class PriceQuote:
    """A resolved token price. Never persisted."""

    price: Decimal
    unit: PriceUnit
    source: PriceSourceName
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def none(cls) -> PriceQuote:
        """Quote used when every source came up empty."""
        return cls(price=Decimal("0"), unit=PriceUnit.USD, source=PriceSourceName.NONE)

    @property
    def is_usable(self) -> bool:
        return self.source is not PriceSourceName.NONE and is_usable_price(self.price)


@dataclass(frozen=True)
class PostAnalytics:
    """Per-token position analytics. Currency amounts are USD."""

    token_address: str
    name: str
    symbol: str
    balance_raw: int
    balance: Decimal
    total_bought: Decimal
    total_sold: Decimal
    average_buy_price: Decimal
    current_price: Decimal
    initial_value: Decimal
    current_value: Decimal
    pnl: Decimal
    pnl_pct: Decimal
    buy_count: int
    sell_count: int
    first_buy_at: int | None
    last_activity_at: int | None
    is_origin_token: bool
    total_cost: Decimal
    total_sold_value: Decimal
    price_source: PriceSourceName

    @property
    def is_profitable(self) -> bool:
        return self.pnl > 0

    @property
    def is_losing(self) -> bool:
        return self.pnl < 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_address": self.token_address,
            "name": self.name,
            "symbol": self.symbol,
            "balance_raw": str(self.balance_raw),
            "balance": str(self.balance),
            "total_bought": str(self.total_bought),
            "total_sold": str(self.total_sold),
            "average_buy_price": str(self.average_buy_price),
            "current_price": str(self.current_price),
            "initial_value": str(self.initial_value),
            "current_value": str(self.current_value),
            "pnl": str(self.pnl),
            "pnl_pct": str(self.pnl_pct),
            "buy_count": self.buy_count,
            "sell_count": self.sell_count,
            "first_buy_at": self.first_buy_at,
            "last_activity_at": self.last_activity_at,
            "is_origin_token": self.is_origin_token,
            "total_cost": str(self.total_cost),
            "total_sold_value": str(self.total_sold_value),
            "price_source": self.price_source.value,
        }


@dataclass(frozen=True)
class OriginSegment:
    """Summary of tokens the wallet received free as their author."""

    count: int = 0
    total_received: Decimal = Decimal("0.00")
    total_sold: Decimal = Decimal("0.00")
    current_balance: Decimal = Decimal("0.00")
    profit: Decimal = Decimal("0.00")

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "total_received": str(self.total_received),
            "total_sold": str(self.total_sold),
            "current_balance": str(self.current_balance),
            "profit": str(self.profit),
        }


@dataclass(frozen=True)
class PurchasedSegment:
    """Summary of tokens the wallet paid for."""

    count: int = 0
    total_invested: Decimal = Decimal("0.00")
    total_sold: Decimal = Decimal("0.00")
    current_balance: Decimal = Decimal("0.00")
    profit: Decimal = Decimal("0.00")
    loss: Decimal = Decimal("0.00")

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "total_invested": str(self.total_invested),
            "total_sold": str(self.total_sold),
            "current_balance": str(self.current_balance),
            "profit": str(self.profit),
            "loss": str(self.loss),
        }


@dataclass(frozen=True)
class PortfolioAnalytics:
    """Aggregate analytics across every analyzed token."""

    posts: tuple[PostAnalytics, ...] = ()
    total_invested: Decimal = Decimal("0.00")
    total_current_value: Decimal = Decimal("0.00")
    total_pnl: Decimal = Decimal("0.00")
    total_pnl_pct: Decimal = Decimal("0.00")
    token_count: int = 0
    profitable_count: int = 0
    losing_count: int = 0
    origin_tokens: OriginSegment = field(default_factory=OriginSegment)
    purchased_tokens: PurchasedSegment = field(default_factory=PurchasedSegment)

    @property
    def flat_count(self) -> int:
        return self.token_count - self.profitable_count - self.losing_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "posts": [post.to_dict() for post in self.posts],
            "total_invested": str(self.total_invested),
            "total_current_value": str(self.total_current_value),
            "total_pnl": str(self.total_pnl),
            "total_pnl_pct": str(self.total_pnl_pct),
            "token_count": self.token_count,
            "profitable_count": self.profitable_count,
            "losing_count": self.losing_count,
            "origin_tokens": self.origin_tokens.to_dict(),
            "purchased_tokens": self.purchased_tokens.to_dict(),
        }


@dataclass(frozen=True)
class TransactionHistory:
    """A wallet's native transactions and per-token transfer lists.

    ``token_transfers`` is keyed by lower-cased token address.
    """

    transactions: tuple[Transaction, ...] = ()
    token_transfers: dict[str, tuple[TokenTransferEvent, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "token_transfers",
            {token.lower(): tuple(events) for token, events in self.token_transfers.items()},
        )

    def transfers_for(self, token_address: str) -> tuple[TokenTransferEvent, ...]:
        return self.token_transfers.get(token_address.lower(), ())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransactionHistory:
        """Build history from ``transactions`` and ``token_transfers``.

        ``token_transfers`` may be a flat list of explorer token-transfer rows
        or a mapping of token address to such rows.
        """
        data = _require_mapping(data, name="history")
        raw_transactions = data.get("transactions") or []
        if not isinstance(raw_transactions, list):
            raise InvalidInputError("transactions must be a list")
        transactions = tuple(Transaction.from_dict(tx) for tx in raw_transactions)

        raw_transfers = data.get("token_transfers") or []
        rows: list[dict[str, Any]] = []
        if isinstance(raw_transfers, dict):
            for token, items in raw_transfers.items():
                if not isinstance(items, list):
                    raise InvalidInputError(f"token_transfers[{token!r}] must be a list")
                for item in items:
                    item = _require_mapping(item, name="token transfer")
                    rows.append({"contractAddress": token, **item})
        elif isinstance(raw_transfers, list):
            rows.extend(raw_transfers)
        else:
            raise InvalidInputError("token_transfers must be a list or an object")

        grouped: dict[str, list[TokenTransferEvent]] = {}
        for row in rows:
            event = TokenTransferEvent.from_dict(row)
            grouped.setdefault(event.token_address, []).append(event)

        return cls(
            transactions=transactions,
            token_transfers={token: tuple(events) for token, events in grouped.items()},
        )


@dataclass
class AnalysisDiagnostics:
    """What happened to each token during a run."""

    tokens_seen: int = 0
    tokens_with_balance: int = 0
    platform_tokens: int = 0
    priced_tokens: int = 0
    analyzed_tokens: int = 0
    native_usd_rate: Decimal | None = None
    excluded: dict[str, str] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    provider_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tokens_seen": self.tokens_seen,
            "tokens_with_balance": self.tokens_with_balance,
            "platform_tokens": self.platform_tokens,
            "priced_tokens": self.priced_tokens,
            "analyzed_tokens": self.analyzed_tokens,
            "native_usd_rate": str(self.native_usd_rate) if self.native_usd_rate else None,
            "excluded": dict(self.excluded),
            "failed": dict(self.failed),
            "provider_error": self.provider_error,
        }


@dataclass(frozen=True)
class WalletAnalysis:
    """Result of one ``analyze_wallet`` run."""

    wallet_address: str
    portfolio: PortfolioAnalytics
    diagnostics: AnalysisDiagnostics
    computed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "wallet_address": self.wallet_address,
            "portfolio": self.portfolio.to_dict(),
            "diagnostics": self.diagnostics.to_dict(),
            "computed_at": self.computed_at.isoformat(),
        }
