"""Match recorder: the side-effect boundary of the engine.

Turns Matcher output into persisted Match records and keeps the derived
trade fields in step:
- sell trade: realized_pl = sum(match.pnl), remaining_quantity = unmatched quantity
- buy trade: remaining_quantity = open quantity of its lot (0 once exhausted)

Every method writes through a StoreTransaction supplied by the caller, so
one sell (or one full replay) is committed atomically.
"""

from decimal import Decimal

from lotledger.services.matching.ledger import Ledger
from lotledger.services.matching.matcher import MatchOutcome
from lotledger.services.matching.models import Lot, Match, Trade, TradeAggregates, TradeSide
from lotledger.services.matching.numeric import ZERO, dsum
from lotledger.services.matching.store import StoreTransaction
from lotledger.system import LoggerFactory

logger = LoggerFactory.get_logger()


class MatchRecorder:
    """
    Persists matches and derived trade aggregates.

    Example:
        >>> recorder = MatchRecorder()
        >>> with store.transaction() as txn:
        ...     matches = recorder.record(txn, sell_trade, outcome)
    """

    def record(self, txn: StoreTransaction, sell_trade: Trade, outcome: MatchOutcome) -> list[Match]:
        """
        Persist the matches of one sell trade.

        Args:
            txn: Open store transaction
            sell_trade: Sell trade that was matched
            outcome: Matcher outcome for sell_trade

        Returns:
            Persisted matches in FIFO order
        """
        matches = [Match.from_result(result, sell_trade) for result in outcome.matches]
        for match in matches:
            txn.add_match(match)

        txn.put_aggregates(
            TradeAggregates(
                trade_id=sell_trade.trade_id,
                side=TradeSide.SELL,
                remaining_quantity=outcome.unmatched_qty,
                realized_pl=dsum(m.pnl for m in matches),
                match_count=len(matches),
            )
        )

        ledger = outcome.ledger
        for buy_trade_id in dict.fromkeys(m.buy_trade_id for m in matches):
            lot = ledger.get_lot(buy_trade_id) if ledger is not None else None
            self._put_buy_aggregates(txn, buy_trade_id, lot)

        logger.debug(
            "match_recorder.sell_recorded",
            sell_trade_id=sell_trade.trade_id,
            match_count=len(matches),
            unmatched_qty=str(outcome.unmatched_qty),
        )
        return matches

    def record_buy(self, txn: StoreTransaction, lot: Lot) -> None:
        """Seed aggregates for a newly opened lot."""
        self._put_buy_aggregates(txn, lot.lot_id, lot)

    def record_replay(
        self,
        txn: StoreTransaction,
        trades: list[Trade],
        matches: list[Match],
        unmatched: dict[str, Decimal],
        ledger: Ledger,
    ) -> None:
        """
        Replace every match and aggregate of a pair with replay results.

        Args:
            txn: Open store transaction
            trades: Current trade history of the pair
            matches: Recomputed matches
            unmatched: Sell trade id -> unmatched quantity
            ledger: Rebuilt ledger
        """
        deleted = txn.delete_matches_for_pair(ledger.key)
        for match in matches:
            txn.add_match(match)

        by_sell: dict[str, list[Match]] = {}
        for match in matches:
            by_sell.setdefault(match.sell_trade_id, []).append(match)

        for trade in trades:
            if trade.side == TradeSide.BUY:
                self._put_buy_aggregates(txn, trade.trade_id, ledger.get_lot(trade.trade_id))
            elif trade.side == TradeSide.SELL:
                sell_matches = by_sell.get(trade.trade_id, [])
                txn.put_aggregates(
                    TradeAggregates(
                        trade_id=trade.trade_id,
                        side=TradeSide.SELL,
                        remaining_quantity=unmatched.get(trade.trade_id, ZERO),
                        realized_pl=dsum(m.pnl for m in sell_matches),
                        match_count=len(sell_matches),
                    )
                )
            else:
                raise ValueError(f"Invalid trade side: {trade.side}")

        logger.debug(
            "match_recorder.replay_recorded",
            portfolio_id=ledger.portfolio_id,
            asset_id=ledger.asset_id,
            deleted=deleted,
            recorded=len(matches),
        )

    def _put_buy_aggregates(self, txn: StoreTransaction, buy_trade_id: str, lot: Lot | None) -> None:
        txn.put_aggregates(
            TradeAggregates(
                trade_id=buy_trade_id,
                side=TradeSide.BUY,
                remaining_quantity=lot.open_quantity if lot is not None else ZERO,
                realized_pl=ZERO,
                match_count=len(txn.matches_for_buy(buy_trade_id)),
            )
        )
