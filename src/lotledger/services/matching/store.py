"""In-memory trade store with atomic transactions.

Holds trades, matches (trade details) and per-trade aggregates. All writes go
through a StoreTransaction: writes are staged in the transaction and applied
together under the store lock at commit. Readers therefore see the state
before or after a transaction, never a half-applied one, and an exception
inside the transaction block simply discards the staged writes.

Rows of different (portfolio, asset) pairs never overlap, so transactions for
different pairs can run concurrently.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from lotledger.services.matching.errors import DuplicateTradeError, TradeNotFoundError
from lotledger.services.matching.models import Match, PairKey, Trade, TradeAggregates
from lotledger.system import LoggerFactory

logger = LoggerFactory.get_logger()

_MISSING = object()

TRADES = "trades"
MATCHES = "matches"
AGGREGATES = "aggregates"


class StoreTransaction:
    """
    Write handle for one atomic unit of work.

    Reads through the transaction see its own staged writes on top of the
    committed state. Obtained from TradeStore.transaction(); not meant to be
    created directly.
    """

    def __init__(self, store: "TradeStore") -> None:
        self._store = store
        self._staged: dict[str, dict[str, Any]] = {TRADES: {}, MATCHES: {}, AGGREGATES: {}}
        self._inserted_trades: set[str] = set()

    def _get(self, table: str, key: str) -> Any:
        staged = self._staged[table]
        if key in staged:
            return staged[key]
        with self._store._lock:
            return self._store._tables[table].get(key, _MISSING)

    def _rows(self, table: str) -> list[Any]:
        with self._store._lock:
            merged = dict(self._store._tables[table])
        merged.update(self._staged[table])
        return [row for row in merged.values() if row is not _MISSING]

    def add_trade(self, trade: Trade) -> None:
        """Insert a new trade. Raises DuplicateTradeError if the id exists."""
        if self._get(TRADES, trade.trade_id) is not _MISSING:
            raise DuplicateTradeError(f"Trade {trade.trade_id} already exists")
        self._staged[TRADES][trade.trade_id] = trade
        self._inserted_trades.add(trade.trade_id)

    def replace_trade(self, trade: Trade) -> None:
        """Replace an existing trade. Raises TradeNotFoundError if missing."""
        if self._get(TRADES, trade.trade_id) is _MISSING:
            raise TradeNotFoundError(f"Trade with ID {trade.trade_id} not found")
        self._staged[TRADES][trade.trade_id] = trade

    def delete_trade(self, trade_id: str) -> None:
        if self._get(TRADES, trade_id) is _MISSING:
            raise TradeNotFoundError(f"Trade with ID {trade_id} not found")
        self._staged[TRADES][trade_id] = _MISSING
        self._staged[AGGREGATES][trade_id] = _MISSING
        self._inserted_trades.discard(trade_id)

    def add_match(self, match: Match) -> None:
        if self._get(MATCHES, match.match_id) is not _MISSING:
            raise ValueError(f"Match {match.match_id} already exists")
        self._staged[MATCHES][match.match_id] = match

    def delete_matches_for_pair(self, key: PairKey) -> int:
        """Delete every match of a (portfolio, asset) pair. Returns count deleted."""
        doomed = [m.match_id for m in self._rows(MATCHES) if (m.portfolio_id, m.asset_id) == key]
        for match_id in doomed:
            self._staged[MATCHES][match_id] = _MISSING
        return len(doomed)

    def put_aggregates(self, aggregates: TradeAggregates) -> None:
        self._staged[AGGREGATES][aggregates.trade_id] = aggregates

    def matches_for_buy(self, buy_trade_id: str) -> list[Match]:
        """Matches of a buy as this transaction would leave them."""
        return [m for m in self._rows(MATCHES) if m.buy_trade_id == buy_trade_id]

    def commit(self) -> None:
        """
        Apply every staged write at once.

        Raises:
            DuplicateTradeError: If another transaction committed one of the
                inserted trade ids first (nothing is applied)
        """
        with self._store._lock:
            trades = self._store._tables[TRADES]
            clashes = sorted(trade_id for trade_id in self._inserted_trades if trade_id in trades)
            if clashes:
                raise DuplicateTradeError(f"Trade {', '.join(clashes)} already exists")

            for table, rows in self._staged.items():
                target = self._store._tables[table]
                for key, value in rows.items():
                    if value is _MISSING:
                        target.pop(key, None)
                    else:
                        target[key] = value

    def rollback(self) -> None:
        """Discard every staged write."""
        for rows in self._staged.values():
            rows.clear()
        self._inserted_trades.clear()

    @property
    def write_count(self) -> int:
        return sum(len(rows) for rows in self._staged.values())


class TradeStore:
    """
    Persistence boundary of the engine (in-memory).

    Example:
        >>> store = TradeStore()
        >>> with store.transaction() as txn:
        ...     txn.add_trade(trade)
        >>> store.get_trade(trade.trade_id)
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._trades: dict[str, Trade] = {}
        self._matches: dict[str, Match] = {}
        self._aggregates: dict[str, TradeAggregates] = {}
        self._tables: dict[str, dict[str, Any]] = {
            TRADES: self._trades,
            MATCHES: self._matches,
            AGGREGATES: self._aggregates,
        }

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """
        Atomic unit of work: all writes commit, or none do.

        Raises:
            Whatever the block raises, after discarding staged writes
            DuplicateTradeError: If a concurrent commit inserted the same trade id
        """
        txn = StoreTransaction(self)
        try:
            yield txn
        except BaseException:
            logger.debug("trade_store.rolled_back", writes=txn.write_count)
            txn.rollback()
            raise
        try:
            txn.commit()
        except DuplicateTradeError:
            logger.debug("trade_store.commit_rejected", writes=txn.write_count)
            txn.rollback()
            raise
        logger.debug("trade_store.committed", writes=txn.write_count)

    # ==================== Trades ====================

    def get_trade(self, trade_id: str) -> Trade | None:
        with self._lock:
            return self._trades.get(trade_id)

    def require_trade(self, trade_id: str) -> Trade:
        trade = self.get_trade(trade_id)
        if trade is None:
            raise TradeNotFoundError(f"Trade with ID {trade_id} not found")
        return trade

    def trades_for_pair(self, portfolio_id: str, asset_id: str) -> list[Trade]:
        """Trades of a pair in chronological (FIFO) order."""
        with self._lock:
            trades = [t for t in self._trades.values() if t.key == (portfolio_id, asset_id)]
        return sorted(trades, key=lambda t: t.sort_key)

    def trades_for_portfolio(self, portfolio_id: str) -> list[Trade]:
        with self._lock:
            trades = [t for t in self._trades.values() if t.portfolio_id == portfolio_id]
        return sorted(trades, key=lambda t: t.sort_key)

    # ==================== Matches ====================

    def matches_for_sell(self, sell_trade_id: str) -> list[Match]:
        with self._lock:
            matches = [m for m in self._matches.values() if m.sell_trade_id == sell_trade_id]
        return sorted(matches, key=lambda m: m.match_id)

    def matches_for_buy(self, buy_trade_id: str) -> list[Match]:
        with self._lock:
            matches = [m for m in self._matches.values() if m.buy_trade_id == buy_trade_id]
        return sorted(matches, key=lambda m: (m.matched_at, m.match_id))

    def matches_for_pair(self, portfolio_id: str, asset_id: str) -> list[Match]:
        with self._lock:
            matches = [m for m in self._matches.values() if (m.portfolio_id, m.asset_id) == (portfolio_id, asset_id)]
        return sorted(matches, key=lambda m: (m.matched_at, m.match_id))

    def find_matches(
        self,
        portfolio_id: str | None = None,
        asset_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Match]:
        """
        Query matches with filters.

        Args:
            portfolio_id: Filter by portfolio
            asset_id: Filter by asset
            start: Only matches with matched_at >= start
            end: Only matches with matched_at <= end

        Returns:
            Matching records, oldest first
        """
        with self._lock:
            matches = list(self._matches.values())

        if portfolio_id is not None:
            matches = [m for m in matches if m.portfolio_id == portfolio_id]
        if asset_id is not None:
            matches = [m for m in matches if m.asset_id == asset_id]
        if start is not None:
            matches = [m for m in matches if m.matched_at >= start]
        if end is not None:
            matches = [m for m in matches if m.matched_at <= end]

        return sorted(matches, key=lambda m: (m.matched_at, m.match_id))

    # ==================== Aggregates ====================

    def get_aggregates(self, trade_id: str) -> TradeAggregates | None:
        with self._lock:
            return self._aggregates.get(trade_id)

    def counts(self) -> dict[str, int]:
        """Row counts per table (useful for tests and diagnostics)."""
        with self._lock:
            return {
                "trades": len(self._trades),
                "matches": len(self._matches),
                "aggregates": len(self._aggregates),
            }
