"""Unit tests for TradeStore transactions and queries."""

from datetime import datetime
from decimal import Decimal

import pytest

from lotledger.services.matching import (
    DuplicateTradeError,
    Match,
    TradeAggregates,
    TradeNotFoundError,
    TradeSide,
    TradeStore,
)


def _match(sell_trade_id: str, buy_trade_id: str, matched_at: datetime, sequence: int = 0, **overrides) -> Match:
    fields = {
        "match_id": f"{sell_trade_id}:{sequence:04d}",
        "sell_trade_id": sell_trade_id,
        "buy_trade_id": buy_trade_id,
        "portfolio_id": "P1",
        "asset_id": "VNM",
        "matched_qty": Decimal("1"),
        "buy_price": Decimal("10"),
        "buy_unit_cost": Decimal("10"),
        "sell_price": Decimal("12"),
        "fee_tax": Decimal("0"),
        "pnl": Decimal("2"),
        "matched_at": matched_at,
    }
    fields.update(overrides)
    return Match(**fields)


class TestTransactions:
    """Test commit and rollback."""

    def test_commit_persists_writes(self, buy) -> None:
        store = TradeStore()
        trade = buy("B1", "10", "100")

        with store.transaction() as txn:
            txn.add_trade(trade)
            txn.put_aggregates(TradeAggregates(trade_id="B1", side=TradeSide.BUY, remaining_quantity=Decimal("10")))

        assert store.get_trade("B1") == trade
        assert store.get_aggregates("B1").remaining_quantity == Decimal("10")

    def test_exception_rolls_back_everything(self, buy, on) -> None:
        store = TradeStore()
        with store.transaction() as txn:
            txn.add_trade(buy("B1", "10", "100"))

        with pytest.raises(RuntimeError):
            with store.transaction() as txn:
                txn.add_trade(buy("B2", "5", "100"))
                txn.add_match(_match("S1", "B1", on(1)))
                txn.delete_trade("B1")
                raise RuntimeError("boom")

        assert store.counts() == {"trades": 1, "matches": 0, "aggregates": 0}
        assert store.get_trade("B1") is not None

    def test_rollback_restores_replaced_rows(self, buy) -> None:
        store = TradeStore()
        original = buy("B1", "10", "100")
        with store.transaction() as txn:
            txn.add_trade(original)

        with pytest.raises(ValueError):
            with store.transaction() as txn:
                txn.replace_trade(original.model_copy(update={"quantity": Decimal("3")}))
                raise ValueError("invalid")

        assert store.get_trade("B1").quantity == Decimal("10")

    def test_duplicate_trade_rejected(self, buy) -> None:
        store = TradeStore()
        with store.transaction() as txn:
            txn.add_trade(buy("B1", "10", "100"))

        with pytest.raises(DuplicateTradeError):
            with store.transaction() as txn:
                txn.add_trade(buy("B1", "1", "1"))

    def test_staged_writes_invisible_until_commit(self, buy, on) -> None:
        store = TradeStore()
        with store.transaction() as txn:
            txn.add_trade(buy("B1", "10", "100"))
            txn.add_match(_match("S1", "B1", on(1)))

        with store.transaction() as txn:
            txn.delete_matches_for_pair(("P1", "VNM"))
            txn.replace_trade(buy("B1", "4", "100"))
            txn.add_trade(buy("B2", "5", "100"))

            assert [m.match_id for m in store.find_matches()] == ["S1:0000"]
            assert store.get_trade("B1").quantity == Decimal("10")
            assert store.get_trade("B2") is None

        assert store.find_matches() == []
        assert store.get_trade("B1").quantity == Decimal("4")

    def test_duplicate_committed_elsewhere_rejects_whole_transaction(self, buy, on) -> None:
        """A trade id taken by a transaction committed first makes the later one apply nothing."""
        store = TradeStore()
        winner = buy("B1", "1", "1")

        with pytest.raises(DuplicateTradeError):
            with store.transaction() as outer:
                outer.add_trade(buy("B1", "10", "100"))
                outer.add_match(_match("S1", "B1", on(1)))
                with store.transaction() as inner:
                    inner.add_trade(winner)

        assert store.get_trade("B1") == winner
        assert store.counts() == {"trades": 1, "matches": 0, "aggregates": 0}

    def test_missing_trade_errors(self) -> None:
        store = TradeStore()

        with pytest.raises(TradeNotFoundError):
            store.require_trade("nope")
        with pytest.raises(TradeNotFoundError):
            with store.transaction() as txn:
                txn.delete_trade("nope")

    def test_delete_matches_for_pair(self, on) -> None:
        store = TradeStore()
        with store.transaction() as txn:
            txn.add_match(_match("S1", "B1", on(1)))
            txn.add_match(_match("S9", "B9", on(1), asset_id="FPT"))

        with store.transaction() as txn:
            assert txn.delete_matches_for_pair(("P1", "VNM")) == 1

        assert [m.asset_id for m in store.find_matches()] == ["FPT"]


class TestQueries:
    """Test read paths."""

    def test_trades_for_pair_in_fifo_order(self, buy, sell) -> None:
        store = TradeStore()
        with store.transaction() as txn:
            txn.add_trade(sell("S1", "1", "1", on=3))
            txn.add_trade(buy("B1", "1", "1", on=1))
            txn.add_trade(buy("X1", "1", "1", on=0, asset_id="FPT"))

        assert [t.trade_id for t in store.trades_for_pair("P1", "VNM")] == ["B1", "S1"]
        assert [t.trade_id for t in store.trades_for_portfolio("P1")] == ["X1", "B1", "S1"]

    def test_matches_by_side(self, on) -> None:
        store = TradeStore()
        with store.transaction() as txn:
            txn.add_match(_match("S2", "B1", on(2)))
            txn.add_match(_match("S1", "B2", on(1), sequence=1))
            txn.add_match(_match("S1", "B1", on(1), sequence=0))

        assert [m.buy_trade_id for m in store.matches_for_sell("S1")] == ["B1", "B2"]
        assert [m.sell_trade_id for m in store.matches_for_buy("B1")] == ["S1", "S2"]

    def test_find_matches_date_range(self, on) -> None:
        store = TradeStore()
        with store.transaction() as txn:
            for offset in range(5):
                txn.add_match(_match(f"S{offset}", "B1", on(offset)))

        found = store.find_matches(portfolio_id="P1", start=on(1), end=on(3))

        assert [m.sell_trade_id for m in found] == ["S1", "S2", "S3"]
        assert store.find_matches(portfolio_id="P2") == []
