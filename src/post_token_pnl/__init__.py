"""Post Token PnL - profit and loss for platform-issued tokens on Base."""

__version__ = "0.1.0"
