"""Token price resolution."""

from post_token_pnl.pricing.aggregators import (
    AggregatorError,
    AggregatorHTTPError,
    AggregatorPayloadError,
    CoinGeckoClient,
    DexScreenerClient,
    DexScreenerPair,
)
from post_token_pnl.pricing.service import (
    CoinGeckoPriceSource,
    DexScreenerPriceSource,
    PoolPriceSource,
    PriceContext,
    PriceResolutionService,
    PriceSource,
)

__all__ = [
    "AggregatorError",
    "AggregatorHTTPError",
    "AggregatorPayloadError",
    "CoinGeckoClient",
    "CoinGeckoPriceSource",
    "DexScreenerClient",
    "DexScreenerPair",
    "DexScreenerPriceSource",
    "PoolPriceSource",
    "PriceContext",
    "PriceResolutionService",
    "PriceSource",
]
