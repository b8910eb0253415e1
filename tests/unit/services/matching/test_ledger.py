"""Unit tests for Ledger - ordered open lots of one pair."""

from decimal import Decimal

import pytest

from lotledger.services.matching import InsufficientLotQuantity, Ledger, Lot


@pytest.fixture
def lot(buy):
    """Factory: lot("B1", "10", on=0) opens a lot at price 100."""

    def factory(lot_id: str, quantity: str, on: int = 0, price: str = "100", **kwargs) -> Lot:
        return Lot.from_trade(buy(lot_id, quantity, price, on=on, **kwargs), precision=8)

    return factory


class TestPushLot:
    """Test FIFO insertion."""

    def test_lots_kept_in_date_order(self, lot) -> None:
        ledger = Ledger("P1", "VNM")
        ledger.push_lot(lot("B2", "10", on=2))
        ledger.push_lot(lot("B3", "10", on=3))
        ledger.push_lot(lot("B1", "10", on=1))

        assert [l.lot_id for l in ledger.open_lots()] == ["B1", "B2", "B3"]

    def test_same_date_ordered_by_id(self, lot) -> None:
        ledger = Ledger("P1", "VNM")
        ledger.push_lot(lot("B2", "1"))
        ledger.push_lot(lot("B1", "1"))

        assert [l.lot_id for l in ledger.open_lots()] == ["B1", "B2"]

    def test_rejects_other_pair(self, lot) -> None:
        ledger = Ledger("P1", "VNM")
        with pytest.raises(ValueError, match="belongs to"):
            ledger.push_lot(lot("B1", "10", asset_id="FPT"))

    def test_rejects_duplicate(self, lot) -> None:
        ledger = Ledger("P1", "VNM")
        ledger.push_lot(lot("B1", "10"))
        with pytest.raises(ValueError, match="already exists"):
            ledger.push_lot(lot("B1", "10"))

    def test_rejects_exhausted(self, lot) -> None:
        ledger = Ledger("P1", "VNM")
        empty = lot("B1", "10").model_copy(update={"open_quantity": Decimal("0")})
        with pytest.raises(ValueError, match="zero open quantity"):
            ledger.push_lot(empty)


class TestConsume:
    """Test consuming lot quantity."""

    def test_partial_consume(self, lot) -> None:
        ledger = Ledger("P1", "VNM")
        ledger.push_lot(lot("B1", "10"))

        updated = ledger.consume("B1", Decimal("4"))

        assert updated.open_quantity == Decimal("6")
        assert ledger.get_lot("B1").open_quantity == Decimal("6")
        assert ledger.total_open_quantity() == Decimal("6")

    def test_exhausted_lot_stays_until_removed(self, lot) -> None:
        ledger = Ledger("P1", "VNM")
        ledger.push_lot(lot("B1", "10"))
        ledger.push_lot(lot("B2", "5", on=1))

        ledger.consume("B1", Decimal("10"))
        assert len(ledger) == 2

        assert ledger.remove_exhausted() == ["B1"]
        assert [l.lot_id for l in ledger.open_lots()] == ["B2"]

    def test_over_consume_raises(self, lot) -> None:
        ledger = Ledger("P1", "VNM")
        ledger.push_lot(lot("B1", "10"))

        with pytest.raises(InsufficientLotQuantity) as exc_info:
            ledger.consume("B1", Decimal("11"))

        assert exc_info.value.available == Decimal("10")
        assert exc_info.value.requested == Decimal("11")
        assert ledger.get_lot("B1").open_quantity == Decimal("10")

    def test_unknown_lot_raises(self) -> None:
        with pytest.raises(InsufficientLotQuantity):
            Ledger("P1", "VNM").consume("missing", Decimal("1"))

    def test_non_positive_quantity_rejected(self, lot) -> None:
        ledger = Ledger("P1", "VNM")
        ledger.push_lot(lot("B1", "10"))
        with pytest.raises(ValueError, match="must be positive"):
            ledger.consume("B1", Decimal("0"))


class TestLedgerState:
    """Test copies and equality."""

    def test_copy_is_independent(self, lot) -> None:
        ledger = Ledger("P1", "VNM")
        ledger.push_lot(lot("B1", "10"))

        clone = ledger.copy()
        clone.consume("B1", Decimal("3"))

        assert ledger.get_lot("B1").open_quantity == Decimal("10")
        assert clone != ledger

    def test_equality_by_open_lots(self, lot) -> None:
        first = Ledger("P1", "VNM")
        second = Ledger("P1", "VNM")
        for target in (first, second):
            target.push_lot(lot("B1", "10"))

        assert first == second
