"""Chain access: JSON-RPC client and Uniswap v4 pool discovery."""

from post_token_pnl.chain.client import (
    BaseChainClient,
    ChainClientError,
    ContractCallError,
    RateLimiter,
    RPCError,
)
from post_token_pnl.chain.pools import (
    DEFAULT_POOL_CONFIGS,
    PoolConfig,
    PoolLocator,
    compute_pool_id,
    price_from_sqrt_price_x96,
    token_price_in_counter_currency,
)

__all__ = [
    "BaseChainClient",
    "ChainClientError",
    "ContractCallError",
    "DEFAULT_POOL_CONFIGS",
    "PoolConfig",
    "PoolLocator",
    "RPCError",
    "RateLimiter",
    "compute_pool_id",
    "price_from_sqrt_price_x96",
    "token_price_in_counter_currency",
]
