"""Buy/sell/mint reconstruction from transfer history."""

from post_token_pnl.history.reconstruction import (
    MatchingWindow,
    OriginInference,
    TransactionReconstructor,
    infer_origin,
)

__all__ = [
    "MatchingWindow",
    "OriginInference",
    "TransactionReconstructor",
    "infer_origin",
]
