"""Unit tests for ReplayEngine - rebuilding a pair from its history."""

from decimal import Decimal

import pytest

from lotledger.services.matching import OversellError, ReplayCancelled, ReplayEngine, ReplayInconsistency


@pytest.fixture
def history(buy, sell):
    """B1 10@100, B2 10@110, S1 4, S2 8 (submitted out of order)."""
    return [
        sell("S2", "8", "130", on=3),
        buy("B2", "10", "110", on=1),
        sell("S1", "4", "120", on=2),
        buy("B1", "10", "100", on=0),
    ]


class TestRebuild:
    """Test replaying trade history."""

    def test_replays_in_chronological_order(self, history) -> None:
        result = ReplayEngine().rebuild("P1", "VNM", history)

        assert [t.trade_id for t in result.trades] == ["B1", "B2", "S1", "S2"]
        assert [(m.sell_trade_id, m.buy_trade_id, m.matched_qty) for m in result.matches] == [
            ("S1", "B1", Decimal("4")),
            ("S2", "B1", Decimal("6")),
            ("S2", "B2", Decimal("2")),
        ]
        assert [(l.lot_id, l.open_quantity) for l in result.ledger.open_lots()] == [("B2", Decimal("8"))]
        assert result.unmatched == {"S1": Decimal("0"), "S2": Decimal("0")}

    def test_rebuild_is_deterministic(self, history) -> None:
        engine = ReplayEngine()

        first = engine.rebuild("P1", "VNM", history)
        second = engine.rebuild("P1", "VNM", list(reversed(history)))

        assert first.matches == second.matches
        assert first.ledger == second.ledger

    def test_other_pairs_ignored(self, history, buy) -> None:
        result = ReplayEngine().rebuild("P1", "VNM", [*history, buy("X1", "5", "10", asset_id="FPT")])

        assert "X1" not in {t.trade_id for t in result.trades}

    def test_oversell_in_history_raises(self, buy, sell) -> None:
        trades = [buy("B1", "5", "100", on=0), sell("S1", "6", "100", on=1)]

        with pytest.raises(OversellError):
            ReplayEngine().rebuild("P1", "VNM", trades)

    def test_partial_replay_records_unmatched(self, buy, sell) -> None:
        trades = [buy("B1", "5", "100", on=0), sell("S1", "6", "100", on=1)]

        result = ReplayEngine().rebuild("P1", "VNM", trades, allow_partial=True)

        assert result.unmatched["S1"] == Decimal("1")

    def test_cancel_between_trades(self, history) -> None:
        calls = []

        def should_stop() -> bool:
            calls.append(None)
            return len(calls) > 2

        with pytest.raises(ReplayCancelled, match="after 2 of 4"):
            ReplayEngine().rebuild("P1", "VNM", history, should_stop=should_stop)

    def test_matches_for_sell(self, history) -> None:
        result = ReplayEngine().rebuild("P1", "VNM", history)

        assert [m.buy_trade_id for m in result.matches_for_sell("S2")] == ["B1", "B2"]


class TestVerify:
    """Test replay consistency checks."""

    def test_identical_replay_passes(self, history) -> None:
        engine = ReplayEngine()
        stored = engine.rebuild("P1", "VNM", history).matches

        engine.verify(stored, engine.rebuild("P1", "VNM", history))

    def test_full_check_detects_divergence(self, history) -> None:
        engine = ReplayEngine()
        result = engine.rebuild("P1", "VNM", history)
        tampered = [m.model_copy(update={"pnl": m.pnl + 1}) if m.sell_trade_id == "S1" else m for m in result.matches]

        with pytest.raises(ReplayInconsistency, match="S1"):
            engine.verify(tampered, result)

    def test_changes_after_edit_point_allowed(self, history, buy) -> None:
        """Sells ordered after an inserted buy may change."""
        engine = ReplayEngine()
        stored = engine.rebuild("P1", "VNM", history).matches
        late_buy = buy("B0", "8", "90", on=2)
        inserted = [*history, late_buy]

        result = engine.rebuild("P1", "VNM", inserted)

        engine.verify(stored, result, edit_point=late_buy.sort_key)

    def test_changes_before_edit_point_rejected(self, history) -> None:
        engine = ReplayEngine()
        result = engine.rebuild("P1", "VNM", history)
        s2 = next(t for t in result.trades if t.trade_id == "S2")
        tampered = [m.model_copy(update={"matched_qty": Decimal("3")}) if m.sell_trade_id == "S1" else m for m in result.matches]

        with pytest.raises(ReplayInconsistency):
            engine.verify(tampered, result, edit_point=s2.sort_key)

    def test_missing_sell_detected_on_full_check(self, history) -> None:
        engine = ReplayEngine()
        result = engine.rebuild("P1", "VNM", history)
        orphan = result.matches[0].model_copy(update={"match_id": "GONE:0000", "sell_trade_id": "GONE"})

        with pytest.raises(ReplayInconsistency, match="missing sell"):
            engine.verify([*result.matches, orphan], result)


class TestConservation:
    """Test open + matched == bought."""

    def test_balanced(self, history) -> None:
        engine = ReplayEngine()
        engine.check_conservation(engine.rebuild("P1", "VNM", history))

    def test_unbalanced_detected(self, history) -> None:
        engine = ReplayEngine()
        result = engine.rebuild("P1", "VNM", history)
        result.ledger.consume("B2", Decimal("1"))

        with pytest.raises(ReplayInconsistency, match="not conserved"):
            engine.check_conservation(result)
