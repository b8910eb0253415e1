"""Matching service interface (Protocol).

Defines the contract the trading/CRUD layer calls into. Enables dependency
injection and makes the service independently testable.
"""

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from lotledger.services.matching.models import (
    AssetPnlSummary,
    Lot,
    Match,
    MatchSummary,
    PnlSummary,
    PositionSnapshot,
    Trade,
    TradeAggregates,
    TradeChanges,
)


class IMatchingService(Protocol):
    """
    Matching service interface for FIFO lot accounting.

    Core responsibilities:
    - Open lots for buy trades
    - Match sell trades against open lots (FIFO) with realized P&L
    - Replay a pair's history on out-of-order inserts, edits and deletes
    - Serve consistent open-lot and match queries

    Example:
        >>> service: IMatchingService = MatchingService(EngineConfig())
        >>> service.submit_trade(buy)
        >>> summary = service.submit_trade(sell)
        >>> print(summary.realized_pl)
    """

    # ==================== Trade Lifecycle ====================

    def submit_trade(self, trade: Trade) -> MatchSummary:
        """
        Record a validated trade and match it.

        Buys open a lot; sells consume lots FIFO. A trade dated before
        already-matched trades of its pair triggers a replay.

        Raises:
            OversellError: Sell exceeds open lots (oversell_policy="reject"); nothing stored
            DuplicateTradeError: Trade id already recorded
        """
        ...

    def edit_trade(self, trade_id: str, changes: TradeChanges) -> MatchSummary:
        """
        Apply changes to a trade and replay its pair.

        Raises:
            TradeNotFoundError: Unknown trade id
            OversellError: Edit would oversell; edit rolled back
            ReplayInconsistency: Replay diverged before the edit point
        """
        ...

    def delete_trade(self, trade_id: str) -> None:
        """
        Delete a trade and replay its pair.

        Raises:
            TradeNotFoundError: Unknown trade id
            OversellError: Delete would oversell; delete rolled back
        """
        ...

    def rebuild(
        self,
        portfolio_id: str,
        asset_id: str,
        verify: bool = True,
        should_stop: Callable[[], bool] | None = None,
    ) -> list[Match]:
        """
        Recompute ledger and matches of a pair from scratch.

        Raises:
            ReplayInconsistency: verify=True and stored matches differ from the recomputation
            ReplayCancelled: should_stop() returned True (nothing changed)
        """
        ...

    # ==================== Queries ====================

    def get_open_lots(self, portfolio_id: str, asset_id: str) -> list[Lot]:
        """Open lots of a pair, oldest first (consistent snapshot)."""
        ...

    def get_open_position(self, portfolio_id: str, asset_id: str) -> PositionSnapshot:
        """Open quantity and cost basis of a pair."""
        ...

    def get_matches(self, trade_id: str) -> list[Match]:
        """Matches of a trade: by sell for sells, by buy for buys."""
        ...

    def get_matches_for_sell(self, sell_trade_id: str) -> list[Match]:
        """Lots consumed by a sell, FIFO order."""
        ...

    def get_matches_for_buy(self, buy_trade_id: str) -> list[Match]:
        """Sells that consumed a buy's lot, oldest first."""
        ...

    def get_trade(self, trade_id: str) -> Trade:
        """Get a recorded trade."""
        ...

    def get_trades(self, portfolio_id: str, asset_id: str | None = None) -> list[Trade]:
        """Trades of a portfolio (optionally one asset), oldest first."""
        ...

    def get_trade_aggregates(self, trade_id: str) -> TradeAggregates:
        """Remaining quantity and realized P&L of a trade."""
        ...

    def get_realized_pnl(self, trade_id: str) -> Decimal:
        """Sum of pnl of all matches referencing the trade (as sell or buy)."""
        ...

    # ==================== Reports ====================

    def get_pnl_summary(self, asset_id: str, portfolio_id: str | None = None) -> PnlSummary:
        """Realized P&L statistics for an asset."""
        ...

    def get_portfolio_pnl_summary(
        self,
        portfolio_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[AssetPnlSummary]:
        """Realized P&L statistics per asset, best first."""
        ...

    def get_matches_by_date_range(
        self,
        start: datetime,
        end: datetime,
        portfolio_id: str | None = None,
        asset_id: str | None = None,
    ) -> list[Match]:
        """Matches whose sell date falls in [start, end]."""
        ...
