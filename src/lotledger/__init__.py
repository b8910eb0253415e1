"""
LotLedger - FIFO Trade Matching Engine

Public API for matching sell trades against open buy lots and tracking
realized P&L per (portfolio, asset) pair.
"""

from importlib.metadata import version

try:
    __version__ = version("lotledger")
except Exception:
    __version__ = "0.0.0.dev"  # Fallback for development


__all__ = [
    "__version__",
]
