"""Matching service implementation.

Entry point for the trading layer: submit/edit/delete trades and query open
lots, matches and realized P&L.

Work on a (portfolio, asset) pair is serialized by a lock keyed on the pair;
different pairs proceed in parallel. Every operation commits through one
store transaction and swaps the pair's cached ledger only after the commit,
so readers never observe a half-applied match or replay.
"""

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal

from lotledger.services.matching.errors import (
    DuplicateTradeError,
    InsufficientLotQuantity,
    OversellError,
    ReplayInconsistency,
    TradeNotFoundError,
)
from lotledger.services.matching.ledger import Ledger
from lotledger.services.matching.matcher import FIFOMatcher
from lotledger.services.matching.models import (
    AssetPnlSummary,
    Lot,
    Match,
    MatchSummary,
    PairKey,
    PnlSummary,
    PositionSnapshot,
    Trade,
    TradeAggregates,
    TradeChanges,
    TradeSide,
)
from lotledger.services.matching.numeric import ZERO, dsum
from lotledger.services.matching.recorder import MatchRecorder
from lotledger.services.matching.replay import ReplayEngine, ReplayResult, SortKey
from lotledger.services.matching.reports import summarize, summarize_by_asset
from lotledger.services.matching.store import StoreTransaction, TradeStore
from lotledger.system import EngineConfig, LoggerFactory

logger = LoggerFactory.get_logger()


class KeyedLocks:
    """One re-entrant lock per (portfolio, asset) pair, created on demand."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[PairKey, threading.RLock] = {}

    def get(self, key: PairKey) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, key: PairKey) -> Iterator[None]:
        with self.get(key):
            yield


class MatchingService:
    """
    FIFO matching service implementation.

    Example:
        >>> service = MatchingService(EngineConfig())
        >>> service.submit_trade(Trade(trade_id="B1", side=TradeSide.BUY, quantity=Decimal("10"), ...))
        >>> summary = service.submit_trade(Trade(trade_id="S1", side=TradeSide.SELL, quantity=Decimal("4"), ...))
        >>> summary.realized_pl
        Decimal('196')
        >>> service.get_open_lots("P1", "VNM")[0].open_quantity
        Decimal('6')
    """

    def __init__(self, config: EngineConfig | None = None, store: TradeStore | None = None) -> None:
        """
        Initialize matching service.

        Args:
            config: Engine configuration (defaults if None). Its logging
                section configures LoggerFactory.
            store: Trade store; a fresh in-memory store if None. A pre-populated
                store is picked up lazily: each pair's ledger is rebuilt from
                its trades on first access.
        """
        self.config = config or EngineConfig()
        LoggerFactory.configure(self.config.logging)
        self._store = store if store is not None else TradeStore()
        self._matcher = FIFOMatcher(self.config)
        self._recorder = MatchRecorder()
        self._replay = ReplayEngine(self.config, self._matcher)
        self._locks = KeyedLocks()
        self._ledgers: dict[PairKey, Ledger] = {}
        self._ledgers_guard = threading.Lock()

        logger.debug(
            "matching_service.initialized",
            oversell_policy=self.config.oversell_policy,
            cost_precision=self.config.cost_precision,
        )

    @property
    def store(self) -> TradeStore:
        return self._store

    # ==================== Trade Lifecycle ====================

    def submit_trade(self, trade: Trade) -> MatchSummary:
        """
        Record a trade and match it.

        Processing:
        1. Reject duplicate trade ids
        2. If the trade lands before already-matched history, replay the pair
        3. BUY: open a lot at its FIFO position
        4. SELL: match FIFO, record matches and aggregates

        Args:
            trade: Validated trade

        Returns:
            MatchSummary with the sell's matches (empty for buys)

        Raises:
            DuplicateTradeError: If trade id already exists
            OversellError: If sell exceeds open lots under oversell_policy="reject"
        """
        key = trade.key
        with self._locks.hold(key):
            if self._store.get_trade(trade.trade_id) is not None:
                raise DuplicateTradeError(f"Trade {trade.trade_id} already exists")

            history = self._store.trades_for_pair(*key)
            if self._needs_replay(trade, history):
                return self._submit_with_replay(trade, history)

            ledger = self._ledger(key)

            if trade.side == TradeSide.BUY:
                lot = Lot.from_trade(trade, self.config.precision_for(trade.asset_id))
                updated = ledger.copy()
                updated.push_lot(lot)
                with self._store.transaction() as txn:
                    txn.add_trade(trade)
                    self._recorder.record_buy(txn, lot)
                self._swap_ledger(key, updated)

                logger.info(
                    "matching_service.lot_opened",
                    trade_id=trade.trade_id,
                    portfolio_id=trade.portfolio_id,
                    asset_id=trade.asset_id,
                    quantity=str(trade.quantity),
                    unit_cost=str(lot.unit_cost),
                )
                return MatchSummary(trade_id=trade.trade_id, side=trade.side)

            elif trade.side == TradeSide.SELL:
                outcome = self._guarded(key, lambda: self._matcher.match(ledger, trade, self.config.allow_partial))
                with self._store.transaction() as txn:
                    txn.add_trade(trade)
                    matches = self._recorder.record(txn, trade, outcome)
                assert outcome.ledger is not None
                self._swap_ledger(key, outcome.ledger)

                summary = MatchSummary(
                    trade_id=trade.trade_id,
                    side=trade.side,
                    matches=matches,
                    realized_pl=dsum(m.pnl for m in matches),
                    unmatched_qty=outcome.unmatched_qty,
                )
                logger.info(
                    "matching_service.sell_matched",
                    trade_id=trade.trade_id,
                    portfolio_id=trade.portfolio_id,
                    asset_id=trade.asset_id,
                    match_count=len(matches),
                    realized_pl=str(summary.realized_pl),
                    unmatched_qty=str(summary.unmatched_qty),
                )
                return summary

            else:
                raise ValueError(f"Invalid trade side: {trade.side}")

    def edit_trade(self, trade_id: str, changes: TradeChanges) -> MatchSummary:
        """
        Apply changes to a trade and replay its pair.

        Args:
            trade_id: Trade to edit
            changes: Fields to change

        Returns:
            MatchSummary of the edited trade after replay

        Raises:
            TradeNotFoundError: If trade does not exist
            OversellError: If the edited history oversells; edit is rolled back
            ReplayInconsistency: If matches before the edit point changed
        """
        key = self._store.require_trade(trade_id).key
        with self._locks.hold(key):
            old = self._store.require_trade(trade_id)
            new = old.with_changes(changes)
            history = [t for t in self._store.trades_for_pair(*key) if t.trade_id != trade_id]
            history.append(new)

            result = self._replay_pair(
                key,
                history,
                writes=lambda txn: txn.replace_trade(new),
                edit_point=min(old.sort_key, new.sort_key),
                verify=self.config.verify_replay,
            )

            logger.info(
                "matching_service.trade_edited",
                trade_id=trade_id,
                portfolio_id=new.portfolio_id,
                asset_id=new.asset_id,
                changes=sorted(changes.model_dump(exclude_none=True)),
            )
            return self._summary_from_replay(new, result)

    def delete_trade(self, trade_id: str) -> None:
        """
        Delete a trade and replay its pair.

        Raises:
            TradeNotFoundError: If trade does not exist
            OversellError: If deleting a buy leaves later sells uncovered; delete is rolled back
        """
        key = self._store.require_trade(trade_id).key
        with self._locks.hold(key):
            old = self._store.require_trade(trade_id)
            history = [t for t in self._store.trades_for_pair(*key) if t.trade_id != trade_id]

            self._replay_pair(
                key,
                history,
                writes=lambda txn: txn.delete_trade(trade_id),
                edit_point=old.sort_key,
                verify=self.config.verify_replay,
            )

            logger.info(
                "matching_service.trade_deleted",
                trade_id=trade_id,
                portfolio_id=old.portfolio_id,
                asset_id=old.asset_id,
            )

    def rebuild(
        self,
        portfolio_id: str,
        asset_id: str,
        verify: bool = True,
        should_stop: Callable[[], bool] | None = None,
    ) -> list[Match]:
        """
        Recompute a pair from scratch (recovery).

        Args:
            portfolio_id: Portfolio of the pair
            asset_id: Asset of the pair
            verify: Compare the recomputation against every stored match
            should_stop: Checked between trades; cancels the rebuild

        Returns:
            Recomputed matches

        Raises:
            ReplayInconsistency: If verify is True and stored matches differ
            ReplayCancelled: If cancelled (stored state and ledger untouched)
        """
        key = (portfolio_id, asset_id)
        with self._locks.hold(key):
            result = self._replay_pair(
                key,
                self._store.trades_for_pair(*key),
                writes=None,
                edit_point=None,
                verify=verify,
                should_stop=should_stop,
            )
            logger.info(
                "matching_service.pair_rebuilt",
                portfolio_id=portfolio_id,
                asset_id=asset_id,
                trades=len(result.trades),
                matches=len(result.matches),
            )
            return list(result.matches)

    # ==================== Queries ====================

    def get_open_lots(self, portfolio_id: str, asset_id: str) -> list[Lot]:
        """Open lots of a pair, oldest first."""
        key = (portfolio_id, asset_id)
        with self._locks.hold(key):
            return self._ledger(key).open_lots()

    def get_open_position(self, portfolio_id: str, asset_id: str) -> PositionSnapshot:
        """
        Open position of a pair.

        Returns:
            PositionSnapshot with quantity, cost basis and lots (FIFO order)
        """
        lots = self.get_open_lots(portfolio_id, asset_id)
        quantity = dsum(lot.open_quantity for lot in lots)
        cost_basis = dsum(lot.open_quantity * lot.unit_cost for lot in lots)
        return PositionSnapshot(
            portfolio_id=portfolio_id,
            asset_id=asset_id,
            quantity=quantity,
            cost_basis=cost_basis,
            average_unit_cost=cost_basis / quantity if quantity else ZERO,
            lots=lots,
        )

    def get_matches(self, trade_id: str) -> list[Match]:
        """
        Matches of a trade.

        Sells return the lots they consumed (FIFO order); buys return the
        sells that consumed them (chronological).

        Raises:
            TradeNotFoundError: If trade does not exist
        """
        trade = self._store.require_trade(trade_id)
        with self._locks.hold(trade.key):
            if trade.side == TradeSide.SELL:
                return self._store.matches_for_sell(trade_id)
            elif trade.side == TradeSide.BUY:
                return self._store.matches_for_buy(trade_id)
            else:
                raise ValueError(f"Invalid trade side: {trade.side}")

    def get_matches_for_sell(self, sell_trade_id: str) -> list[Match]:
        return self._matches_as(sell_trade_id, TradeSide.SELL)

    def get_matches_for_buy(self, buy_trade_id: str) -> list[Match]:
        return self._matches_as(buy_trade_id, TradeSide.BUY)

    def get_trade(self, trade_id: str) -> Trade:
        return self._store.require_trade(trade_id)

    def get_trades(self, portfolio_id: str, asset_id: str | None = None) -> list[Trade]:
        """Trades of a portfolio (optionally one asset), oldest first."""
        if asset_id is not None:
            return self._store.trades_for_pair(portfolio_id, asset_id)
        return self._store.trades_for_portfolio(portfolio_id)

    def get_trade_aggregates(self, trade_id: str) -> TradeAggregates:
        """
        Derived fields of a trade.

        Raises:
            TradeNotFoundError: If trade does not exist
        """
        trade = self._store.require_trade(trade_id)
        with self._locks.hold(trade.key):
            # Pairs loaded from a pre-populated store get aggregates on first touch
            self._ledger(trade.key)
            aggregates = self._store.get_aggregates(trade_id)
        if aggregates is None:
            raise TradeNotFoundError(f"No aggregates recorded for trade {trade_id}")
        return aggregates

    def get_realized_pnl(self, trade_id: str) -> Decimal:
        """Sum of pnl over matches referencing the trade as sell or buy."""
        trade = self._store.require_trade(trade_id)
        with self._locks.hold(trade.key):
            matches = self._store.matches_for_sell(trade_id) + self._store.matches_for_buy(trade_id)
        return dsum(m.pnl for m in matches)

    # ==================== Reports ====================

    def get_pnl_summary(self, asset_id: str, portfolio_id: str | None = None) -> PnlSummary:
        """Realized P&L statistics for an asset (optionally one portfolio)."""
        return summarize(self._store.find_matches(portfolio_id=portfolio_id, asset_id=asset_id))

    def get_portfolio_pnl_summary(
        self,
        portfolio_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[AssetPnlSummary]:
        """Per-asset realized P&L statistics for a portfolio, best first."""
        return summarize_by_asset(self._store.find_matches(portfolio_id=portfolio_id, start=start, end=end))

    def get_matches_by_date_range(
        self,
        start: datetime,
        end: datetime,
        portfolio_id: str | None = None,
        asset_id: str | None = None,
    ) -> list[Match]:
        """Matches whose sell date falls within [start, end]."""
        if start > end:
            raise ValueError(f"start {start} is after end {end}")
        return self._store.find_matches(portfolio_id=portfolio_id, asset_id=asset_id, start=start, end=end)

    # ==================== Internals ====================

    def _matches_as(self, trade_id: str, side: TradeSide) -> list[Match]:
        trade = self._store.require_trade(trade_id)
        if trade.side != side:
            raise ValueError(f"Trade {trade_id} is a {trade.side.value}, not a {side.value}")
        return self.get_matches(trade_id)

    @staticmethod
    def _needs_replay(trade: Trade, history: list[Trade]) -> bool:
        """
        Whether appending trade incrementally would differ from a full replay.

        A buy only affects sells ordered after it; a sell is affected by any
        trade ordered after it.
        """
        if trade.side == TradeSide.BUY:
            return any(t.side == TradeSide.SELL and t.sort_key > trade.sort_key for t in history)
        elif trade.side == TradeSide.SELL:
            return any(t.sort_key > trade.sort_key for t in history)
        else:
            raise ValueError(f"Invalid trade side: {trade.side}")

    def _submit_with_replay(self, trade: Trade, history: list[Trade]) -> MatchSummary:
        result = self._replay_pair(
            trade.key,
            [*history, trade],
            writes=lambda txn: txn.add_trade(trade),
            edit_point=trade.sort_key,
            verify=self.config.verify_replay,
        )
        logger.info(
            "matching_service.trade_inserted_out_of_order",
            trade_id=trade.trade_id,
            portfolio_id=trade.portfolio_id,
            asset_id=trade.asset_id,
            side=trade.side.value,
        )
        return self._summary_from_replay(trade, result)

    def _replay_pair(
        self,
        key: PairKey,
        trades: list[Trade],
        writes: Callable[[StoreTransaction], None] | None,
        edit_point: SortKey | None,
        verify: bool,
        should_stop: Callable[[], bool] | None = None,
    ) -> ReplayResult:
        """Replay a pair into a scratch ledger, commit, then swap the ledger in. Caller holds the key lock."""
        previous = self._store.matches_for_pair(*key)

        def rebuild() -> ReplayResult:
            result = self._replay.rebuild(
                *key,
                trades,
                allow_partial=self.config.allow_partial,
                should_stop=should_stop,
            )
            self._replay.check_conservation(result)
            if verify:
                self._replay.verify(previous, result, edit_point)
            return result

        result = self._guarded(key, rebuild)

        with self._store.transaction() as txn:
            if writes is not None:
                writes(txn)
            self._recorder.record_replay(txn, result.trades, result.matches, result.unmatched, result.ledger)
        self._swap_ledger(key, result.ledger)

        logger.debug(
            "matching_service.pair_replayed",
            portfolio_id=key[0],
            asset_id=key[1],
            previous_matches=len(previous),
            matches=len(result.matches),
        )
        return result

    def _guarded(self, key: PairKey, operation: Callable):
        """Run a matching step, logging oversells and escalating integrity faults."""
        try:
            return operation()
        except OversellError as exc:
            logger.warning(
                "matching_service.oversell_rejected",
                portfolio_id=key[0],
                asset_id=key[1],
                sell_trade_id=exc.sell_trade_id,
                remaining_qty=str(exc.remaining_qty),
            )
            raise
        except InsufficientLotQuantity as exc:
            self._drop_ledger(key)
            logger.error(
                "matching_service.integrity_fault",
                portfolio_id=key[0],
                asset_id=key[1],
                lot_id=exc.lot_id,
                requested=str(exc.requested),
                available=str(exc.available),
            )
            raise
        except ReplayInconsistency as exc:
            self._drop_ledger(key)
            logger.critical(
                "matching_service.replay_inconsistency",
                portfolio_id=key[0],
                asset_id=key[1],
                error=str(exc),
            )
            raise

    def _summary_from_replay(self, trade: Trade, result: ReplayResult) -> MatchSummary:
        matches = result.matches_for_sell(trade.trade_id)
        return MatchSummary(
            trade_id=trade.trade_id,
            side=trade.side,
            matches=matches,
            realized_pl=dsum(m.pnl for m in matches),
            unmatched_qty=result.unmatched.get(trade.trade_id, ZERO),
            replayed=True,
        )

    def _ledger(self, key: PairKey) -> Ledger:
        """Cached ledger of a pair, rebuilt from stored trades on first access. Caller holds the key lock."""
        with self._ledgers_guard:
            ledger = self._ledgers.get(key)
        if ledger is not None:
            return ledger

        trades = self._store.trades_for_pair(*key)
        if not trades:
            ledger = Ledger(*key)
            self._swap_ledger(key, ledger)
            return ledger

        # Pre-populated store: derive ledger, matches and aggregates from the history
        result = self._replay_pair(key, trades, writes=None, edit_point=None, verify=False)
        return result.ledger

    def _swap_ledger(self, key: PairKey, ledger: Ledger) -> None:
        with self._ledgers_guard:
            self._ledgers[key] = ledger

    def _drop_ledger(self, key: PairKey) -> None:
        with self._ledgers_guard:
            self._ledgers.pop(key, None)
