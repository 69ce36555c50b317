"""Profit-and-loss computation."""

from post_token_pnl.pnl.calculator import compute_portfolio_analytics, compute_post_analytics

__all__ = ["compute_portfolio_analytics", "compute_post_analytics"]
