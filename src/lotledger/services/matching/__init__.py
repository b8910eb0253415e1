"""FIFO trade matching service.

Matches sell trades against open buy lots per (portfolio, asset) pair,
records realized P&L per match, and replays a pair's history when trades are
inserted out of order, edited or deleted.

Key components:
- MatchingService: Main service implementation
- IMatchingService: Protocol interface
- Ledger: Open lots of one pair in FIFO order
- FIFOMatcher: Pure matching algorithm
- MatchRecorder: Persists matches and trade aggregates
- ReplayEngine: Rebuilds a pair from its trade history
- Models: Trade, Lot, Match, TradeAggregates, MatchSummary, PositionSnapshot

Example:
    >>> from datetime import datetime
    >>> from decimal import Decimal
    >>> from lotledger.services.matching import MatchingService, Trade, TradeSide
    >>>
    >>> service = MatchingService()
    >>> service.submit_trade(
    ...     Trade(
    ...         trade_id="B1",
    ...         portfolio_id="P1",
    ...         asset_id="VNM",
    ...         side=TradeSide.BUY,
    ...         quantity=Decimal("10"),
    ...         price=Decimal("100"),
    ...         fee=Decimal("10"),
    ...         trade_date=datetime(2024, 1, 2),
    ...     )
    ... )
    >>> service.get_open_position("P1", "VNM").quantity
    Decimal('10')
"""

from lotledger.services.matching.errors import (
    DuplicateTradeError,
    EngineError,
    InsufficientLotQuantity,
    OversellError,
    ReplayCancelled,
    ReplayInconsistency,
    TradeNotFoundError,
)
from lotledger.services.matching.interface import IMatchingService
from lotledger.services.matching.ledger import Ledger
from lotledger.services.matching.matcher import FIFOMatcher, MatchOutcome
from lotledger.services.matching.models import (
    AssetPnlSummary,
    Lot,
    Match,
    MatchResult,
    MatchSummary,
    PnlSummary,
    PositionSnapshot,
    Trade,
    TradeAggregates,
    TradeChanges,
    TradeSide,
)
from lotledger.services.matching.recorder import MatchRecorder
from lotledger.services.matching.replay import ReplayEngine, ReplayResult
from lotledger.services.matching.service import MatchingService
from lotledger.services.matching.store import TradeStore

__all__ = [
    # Service
    "IMatchingService",
    "MatchingService",
    # Components
    "Ledger",
    "FIFOMatcher",
    "MatchOutcome",
    "MatchRecorder",
    "ReplayEngine",
    "ReplayResult",
    "TradeStore",
    # Models
    "Trade",
    "TradeSide",
    "TradeChanges",
    "Lot",
    "MatchResult",
    "Match",
    "TradeAggregates",
    "MatchSummary",
    "PositionSnapshot",
    "PnlSummary",
    "AssetPnlSummary",
    # Errors
    "EngineError",
    "OversellError",
    "InsufficientLotQuantity",
    "ReplayInconsistency",
    "ReplayCancelled",
    "TradeNotFoundError",
    "DuplicateTradeError",
]
