"""Wallet analysis orchestrator.

This module wires classification, pricing, reconstruction and PnL into the
single ``analyze_wallet`` entry point.

Flow:
    balances → provenance classifier → price resolution → reconstruction → PnL
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

from post_token_pnl.batching import gather_in_batches
from post_token_pnl.chain.client import BaseChainClient
from post_token_pnl.chain.pools import PoolLocator
from post_token_pnl.config import Settings, get_settings
from post_token_pnl.history.reconstruction import TransactionReconstructor, infer_origin
from post_token_pnl.models import (
    AnalysisDiagnostics,
    PortfolioAnalytics,
    PostAnalytics,
    PriceQuote,
    TokenBalance,
    TokenTransferEvent,
    Transaction,
    TransactionHistory,
    WalletAnalysis,
    normalize_address,
)
from post_token_pnl.pnl.calculator import compute_portfolio_analytics, compute_post_analytics
from post_token_pnl.pricing.aggregators import CoinGeckoClient, DexScreenerClient
from post_token_pnl.pricing.service import (
    CoinGeckoPriceSource,
    DexScreenerPriceSource,
    PoolPriceSource,
    PriceContext,
    PriceResolutionService,
)
from post_token_pnl.provenance.classifier import ProvenanceCache, ProvenanceClassifier

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 3
DEFAULT_PRICE_BATCH_SIZE = 10


class HistoryProvider(Protocol):
    """Source of a wallet's raw transaction history (e.g. an explorer API)."""

    async def get_transactions(self, wallet_address: str) -> Sequence[Transaction]: ...

    async def get_token_transfers(
        self, wallet_address: str, token_address: str
    ) -> Sequence[TokenTransferEvent]: ...


@dataclass(frozen=True)
class _PricedToken:
    balance: TokenBalance
    quote: PriceQuote


class WalletAnalyzer:
    """Compute post token PnL for a wallet.

    Example:
        ```python
        async with build_analyzer(get_settings()) as analyzer:
            result = await analyzer.analyze_wallet(wallet, balances, history)
            print(result.portfolio.total_pnl)
        ```
    """

    def __init__(
        self,
        classifier: ProvenanceClassifier,
        price_service: PriceResolutionService,
        reconstructor: TransactionReconstructor | None = None,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay_seconds: float = 0.0,
        price_batch_size: int = DEFAULT_PRICE_BATCH_SIZE,
        closeables: Sequence[Any] = (),
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self._classifier = classifier
        self._price_service = price_service
        self._reconstructor = reconstructor or TransactionReconstructor()
        self._batch_size = batch_size
        self._batch_delay = batch_delay_seconds
        self._price_batch_size = price_batch_size
        self._closeables = tuple(closeables)

    @property
    def classifier(self) -> ProvenanceClassifier:
        return self._classifier

    @property
    def price_service(self) -> PriceResolutionService:
        return self._price_service

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def batch_delay_seconds(self) -> float:
        return self._batch_delay

    @property
    def price_batch_size(self) -> int:
        return self._price_batch_size

    async def analyze_wallet(
        self,
        wallet_address: str,
        token_balances: Sequence[TokenBalance],
        history: TransactionHistory,
    ) -> WalletAnalysis:
        """Analyze a wallet's platform-origin token holdings.

        Per-token failures exclude that token and are recorded in the
        diagnostics. Any other failure yields an empty portfolio with
        ``diagnostics.provider_error`` set; nothing is raised apart from
        an invalid wallet address.

        Raises:
            InvalidInputError: If ``wallet_address`` is not an address.
        """
        wallet = normalize_address(wallet_address)
        diagnostics = AnalysisDiagnostics(tokens_seen=len(token_balances))
        try:
            portfolio = await self._analyze(wallet, token_balances, history, diagnostics)
        except Exception as e:  # batch-level failures degrade to an empty result
            logger.exception("Wallet analysis failed for %s", wallet)
            diagnostics.provider_error = f"{type(e).__name__}: {e}"
            portfolio = PortfolioAnalytics()
        return WalletAnalysis(wallet_address=wallet, portfolio=portfolio, diagnostics=diagnostics)

    async def analyze_with_provider(
        self,
        wallet_address: str,
        token_balances: Sequence[TokenBalance],
        provider: HistoryProvider,
    ) -> WalletAnalysis:
        """Fetch history from ``provider`` then run :meth:`analyze_wallet`."""
        wallet = normalize_address(wallet_address)
        try:
            transactions = tuple(await provider.get_transactions(wallet))
            transfers: dict[str, tuple[TokenTransferEvent, ...]] = {}
            for balance in token_balances:
                if balance.balance_raw <= 0:
                    continue
                transfers[balance.token_address] = tuple(
                    await provider.get_token_transfers(wallet, balance.token_address)
                )
        except Exception as e:  # provider outages degrade to an empty result
            logger.warning("History provider failed for %s: %s", wallet, e)
            diagnostics = AnalysisDiagnostics(
                tokens_seen=len(token_balances),
                provider_error=f"{type(e).__name__}: {e}",
            )
            return WalletAnalysis(
                wallet_address=wallet, portfolio=PortfolioAnalytics(), diagnostics=diagnostics
            )

        history = TransactionHistory(transactions=transactions, token_transfers=transfers)
        return await self.analyze_wallet(wallet, token_balances, history)

    async def _analyze(
        self,
        wallet: str,
        token_balances: Sequence[TokenBalance],
        history: TransactionHistory,
        diagnostics: AnalysisDiagnostics,
    ) -> PortfolioAnalytics:
        held = [b for b in token_balances if b.balance_raw > 0]
        held.sort(key=lambda b: b.balance, reverse=True)
        diagnostics.tokens_with_balance = len(held)
        if not held:
            logger.info("Wallet %s holds no tokens", wallet)
            return PortfolioAnalytics()

        flags = await self._classifier.classify([b.token_address for b in held])
        platform = [b for b in held if flags.get(b.token_address)]
        for balance in held:
            if not flags.get(balance.token_address):
                diagnostics.excluded[balance.token_address] = "not a platform token"
        diagnostics.platform_tokens = len(platform)
        logger.info("Wallet %s: %d/%d tokens are post tokens", wallet, len(platform), len(held))
        if not platform:
            return PortfolioAnalytics()

        rate = await self._price_service.get_native_usd_rate()
        diagnostics.native_usd_rate = rate
        addresses = [b.token_address for b in platform]
        dex_pairs = await self._price_service.prefetch_dex_pairs(addresses)
        context = PriceContext(native_usd_rate=rate, dex_pairs=dex_pairs)
        quotes = await self._price_service.resolve_prices(
            addresses, context, batch_size=self._price_batch_size
        )

        priced: list[_PricedToken] = []
        for balance in platform:
            quote = quotes.get(balance.token_address, PriceQuote.none())
            if quote.is_usable:
                priced.append(_PricedToken(balance=balance, quote=quote))
            else:
                diagnostics.excluded[balance.token_address] = "no price"
        priced.sort(key=lambda item: item.quote.price, reverse=True)
        diagnostics.priced_tokens = len(priced)

        outcomes = await gather_in_batches(
            priced,
            lambda item: self._analyze_token(wallet, item, history, rate),
            batch_size=self._batch_size,
            delay_seconds=self._batch_delay,
        )
        posts: list[PostAnalytics] = []
        for item, outcome in outcomes:
            address = item.balance.token_address
            if isinstance(outcome, BaseException):
                logger.warning("Analysis failed for token %s: %s", address, outcome)
                diagnostics.failed[address] = f"{type(outcome).__name__}: {outcome}"
                continue
            posts.append(outcome)
        diagnostics.analyzed_tokens = len(posts)

        return compute_portfolio_analytics(posts)

    async def _analyze_token(
        self,
        wallet: str,
        item: _PricedToken,
        history: TransactionHistory,
        native_usd_rate: Decimal,
    ) -> PostAnalytics:
        balance = item.balance
        events = self._reconstructor.reconstruct(
            wallet,
            balance.token_address,
            history.transfers_for(balance.token_address),
            history.transactions,
            current_balance_raw=balance.balance_raw,
            as_of=int(item.quote.timestamp.timestamp()),
        )
        origin = infer_origin(events, wallet, balance.token_address, history.transactions)
        logger.debug(
            "%s: %d events, origin=%s (%s)",
            balance.token_address,
            len(origin.events),
            origin.is_origin_token,
            origin.reason,
        )
        return compute_post_analytics(
            origin.events,
            balance.balance_raw,
            item.quote,
            balance.decimals,
            origin.is_origin_token,
            native_usd_rate=native_usd_rate,
            token_address=balance.token_address,
            name=balance.name,
            symbol=balance.symbol,
        )

    async def aclose(self) -> None:
        for resource in self._closeables:
            await resource.aclose()

    async def __aenter__(self) -> WalletAnalyzer:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()


def build_analyzer(
    settings: Settings | None = None,
    *,
    cache: ProvenanceCache | None = None,
) -> WalletAnalyzer:
    """Wire a :class:`WalletAnalyzer` from configuration."""
    settings = settings or get_settings()

    client = BaseChainClient(
        settings.chain.rpc_url,
        fallback_rpc_url=settings.chain.fallback_rpc_url,
        max_requests_per_second=settings.chain.max_requests_per_second,
        max_retries=settings.chain.max_retries,
        retry_delay_seconds=settings.chain.retry_delay_seconds,
        request_timeout_seconds=settings.chain.request_timeout_seconds,
    )
    locator = PoolLocator(
        client,
        pool_manager_address=settings.pool.pool_manager_address,
        state_view_address=settings.pool.state_view_address,
        wrapped_native_address=settings.pool.wrapped_native_address,
        scan_window_blocks=settings.pool.scan_window_blocks,
        logs_chunk_size_blocks=settings.pool.logs_chunk_size_blocks,
    )
    classifier = ProvenanceClassifier.from_settings(
        client, locator, settings.provenance, cache=cache
    )

    price = settings.price
    dexscreener = DexScreenerClient(
        price.dexscreener_base_url,
        chain_id=price.dexscreener_chain_id,
        timeout_seconds=price.http_timeout_seconds,
        max_requests_per_second=price.max_requests_per_second,
    )
    coingecko = CoinGeckoClient(
        price.coingecko_base_url,
        api_key=price.coingecko_api_key.get_secret_value() if price.coingecko_api_key else None,
        platform=price.coingecko_platform,
        timeout_seconds=price.http_timeout_seconds,
        max_requests_per_second=price.max_requests_per_second,
    )
    price_service = PriceResolutionService(
        [
            PoolPriceSource(locator, timeout_seconds=price.pool_timeout_seconds),
            DexScreenerPriceSource(dexscreener, timeout_seconds=price.http_timeout_seconds),
            CoinGeckoPriceSource(coingecko, timeout_seconds=price.http_timeout_seconds),
        ],
        coingecko=coingecko,
        dexscreener=dexscreener,
        native_coin_id=price.native_coin_id,
        fallback_native_usd=price.fallback_native_usd,
        native_rate_timeout_seconds=price.http_timeout_seconds,
        dex_batch_size=price.dexscreener_batch_size,
    )

    analysis = settings.analysis
    provenance = settings.provenance
    return WalletAnalyzer(
        classifier,
        price_service,
        TransactionReconstructor.from_settings(settings.reconstruction),
        batch_size=analysis.effective_batch_size(provenance),
        batch_delay_seconds=analysis.effective_batch_delay_seconds(provenance),
        price_batch_size=analysis.effective_price_batch_size(provenance),
        closeables=(client, dexscreener, coingecko),
    )
