"""Cost basis and profit-and-loss for post token positions.

Token and wei amounts stay integers until they are turned into human units.
USD figures are Decimals rounded half-up: two places for money and
percentages, six for per-token prices.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from decimal import ROUND_HALF_UP, Decimal

from post_token_pnl.errors import InvalidInputError
from post_token_pnl.models import (
    NATIVE_DECIMALS,
    EventKind,
    OriginSegment,
    PortfolioAnalytics,
    PostAnalytics,
    PriceQuote,
    PriceUnit,
    PurchasedSegment,
    ReconstructedEvent,
)

CURRENCY_QUANTUM = Decimal("0.01")
PRICE_QUANTUM = Decimal("0.000001")
ZERO = Decimal("0")


def quantize_currency(value: Decimal) -> Decimal:
    return value.quantize(CURRENCY_QUANTUM, rounding=ROUND_HALF_UP)


def quantize_price(value: Decimal) -> Decimal:
    return value.quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP)


def to_human(amount_raw: int, decimals: int) -> Decimal:
    return Decimal(amount_raw) / (Decimal(10) ** decimals)


def percent_change(gain: Decimal, base: Decimal) -> Decimal:
    """``gain / base * 100``, or 0 when there is no base to compare against."""
    if base <= 0:
        return quantize_currency(ZERO)
    return quantize_currency(gain / base * 100)


def compute_post_analytics(
    events: Sequence[ReconstructedEvent],
    current_balance_raw: int,
    price_quote: PriceQuote,
    decimals: int,
    is_origin_token: bool,
    *,
    native_usd_rate: Decimal,
    token_address: str,
    name: str = "",
    symbol: str = "",
) -> PostAnalytics:
    """Compute one token's position analytics.

    Args:
        events: Reconstructed events for this token.
        current_balance_raw: Current balance, smallest unit.
        price_quote: Current price. NATIVE quotes are converted with the rate.
        decimals: Token decimals.
        is_origin_token: True if the wallet received the token as its author.
            Mints are then left out of the cost basis and the initial value
            is zero.
        native_usd_rate: USD value of one native coin.
        token_address: Token contract address.
        name: Token name.
        symbol: Token symbol.

    Raises:
        InvalidInputError: On negative balance, decimals or rate.
    """
    if current_balance_raw < 0:
        raise InvalidInputError("current_balance_raw must be >= 0")
    if decimals < 0:
        raise InvalidInputError("decimals must be >= 0")
    if native_usd_rate <= 0:
        raise InvalidInputError("native_usd_rate must be > 0")

    counted_kinds = {EventKind.BUY} if is_origin_token else {EventKind.BUY, EventKind.MINT}
    acquisitions = [e for e in events if e.kind in counted_kinds]
    sells = [e for e in events if e.kind is EventKind.SELL]

    cost_wei = sum(e.native_amount for e in acquisitions)
    bought_raw = sum(e.token_amount for e in acquisitions)
    sold_raw = sum(e.token_amount for e in sells)

    balance = to_human(current_balance_raw, decimals)
    total_bought = to_human(bought_raw, decimals)
    total_cost_native = to_human(cost_wei, NATIVE_DECIMALS)

    average_buy_native = total_cost_native / total_bought if bought_raw > 0 else ZERO
    average_buy_usd = average_buy_native * native_usd_rate

    current_price = price_quote.price if price_quote.is_usable else ZERO
    if price_quote.unit is PriceUnit.NATIVE:
        current_price = current_price * native_usd_rate

    initial_value = ZERO if is_origin_token else balance * average_buy_usd
    current_value = balance * current_price

    sold_value = ZERO
    for sell in sells:
        if sell.native_amount > 0:
            sold_value += to_human(sell.native_amount, NATIVE_DECIMALS) * native_usd_rate
        else:
            sold_value += to_human(sell.token_amount, decimals) * current_price

    initial_value = quantize_currency(initial_value)
    current_value = quantize_currency(current_value)
    pnl = current_value - initial_value

    acquired_at = [e.timestamp for e in events if e.kind in (EventKind.BUY, EventKind.MINT)]
    return PostAnalytics(
        token_address=token_address.lower(),
        name=name,
        symbol=symbol,
        balance_raw=current_balance_raw,
        balance=balance,
        total_bought=total_bought,
        total_sold=to_human(sold_raw, decimals),
        average_buy_price=quantize_price(average_buy_usd),
        current_price=quantize_price(current_price),
        initial_value=initial_value,
        current_value=current_value,
        pnl=pnl,
        pnl_pct=percent_change(pnl, initial_value),
        buy_count=len([e for e in events if e.kind in (EventKind.BUY, EventKind.MINT)]),
        sell_count=len(sells),
        first_buy_at=min(acquired_at) if acquired_at else None,
        last_activity_at=max(e.timestamp for e in events) if events else None,
        is_origin_token=is_origin_token,
        total_cost=quantize_currency(total_cost_native * native_usd_rate),
        total_sold_value=quantize_currency(sold_value),
        price_source=price_quote.source,
    )


def compute_portfolio_analytics(posts: Iterable[PostAnalytics]) -> PortfolioAnalytics:
    """Aggregate per-token analytics and split them by origin."""
    posts = tuple(posts)
    if not posts:
        return PortfolioAnalytics()

    total_invested = sum((p.initial_value for p in posts), ZERO)
    total_current = sum((p.current_value for p in posts), ZERO)
    total_pnl = total_current - total_invested

    origin = [p for p in posts if p.is_origin_token]
    purchased = [p for p in posts if not p.is_origin_token]

    origin_sold = sum((p.total_sold_value for p in origin), ZERO)
    origin_current = sum((p.current_value for p in origin), ZERO)

    purchased_invested = sum((p.total_cost for p in purchased), ZERO)
    purchased_sold = sum((p.total_sold_value for p in purchased), ZERO)
    purchased_current = sum((p.current_value for p in purchased), ZERO)
    purchased_net = purchased_sold + purchased_current - purchased_invested

    return PortfolioAnalytics(
        posts=posts,
        total_invested=quantize_currency(total_invested),
        total_current_value=quantize_currency(total_current),
        total_pnl=quantize_currency(total_pnl),
        total_pnl_pct=percent_change(total_pnl, total_invested),
        token_count=len(posts),
        profitable_count=sum(1 for p in posts if p.is_profitable),
        losing_count=sum(1 for p in posts if p.is_losing),
        origin_tokens=OriginSegment(
            count=len(origin),
            total_received=quantize_currency(origin_current + origin_sold),
            total_sold=quantize_currency(origin_sold),
            current_balance=quantize_currency(origin_current),
            profit=quantize_currency(origin_sold),
        ),
        purchased_tokens=PurchasedSegment(
            count=len(purchased),
            total_invested=quantize_currency(purchased_invested),
            total_sold=quantize_currency(purchased_sold),
            current_balance=quantize_currency(purchased_current),
            profit=quantize_currency(max(purchased_net, ZERO)),
            loss=quantize_currency(abs(min(purchased_net, ZERO))),
        ),
    )
