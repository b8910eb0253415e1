"""Open-lot ledger for FIFO position accounting.

One Ledger per (portfolio_id, asset_id) pair. Lots are kept in FIFO order by
(opened_at, created_at, lot_id): a buy dated before existing open lots is
inserted at its sorted position, never appended.

Lots are stored by id; the ordering is a parallel list of sort keys. The only
way to change a lot's open quantity is consume().
"""

from bisect import bisect_left
from decimal import Decimal

from lotledger.services.matching.errors import InsufficientLotQuantity
from lotledger.services.matching.models import Lot, PairKey
from lotledger.services.matching.numeric import ZERO, dsum


class Ledger:
    """
    Ordered queue of open lots for one (portfolio, asset) pair.

    Example:
        >>> ledger = Ledger("P1", "VNM")
        >>> ledger.push_lot(lot)
        >>> ledger.consume(lot.lot_id, Decimal("5"))
        >>> ledger.open_lots()
    """

    def __init__(self, portfolio_id: str, asset_id: str) -> None:
        self.portfolio_id = portfolio_id
        self.asset_id = asset_id
        self._lots: dict[str, Lot] = {}
        self._order: list[tuple] = []  # Sorted Lot.sort_key values

    @property
    def key(self) -> PairKey:
        return (self.portfolio_id, self.asset_id)

    def push_lot(self, lot: Lot) -> None:
        """
        Add lot at its FIFO position.

        Args:
            lot: Lot to add

        Raises:
            ValueError: If lot belongs to another pair, is exhausted or is already present
        """
        if lot.key != self.key:
            raise ValueError(f"Lot {lot.lot_id} belongs to {lot.key}, not ledger {self.key}")
        if lot.is_exhausted:
            raise ValueError(f"Cannot add lot {lot.lot_id} with zero open quantity")
        if lot.lot_id in self._lots:
            raise ValueError(f"Lot {lot.lot_id} already exists in ledger {self.key}")

        sort_key = lot.sort_key
        self._order.insert(bisect_left(self._order, sort_key), sort_key)
        self._lots[lot.lot_id] = lot

    def open_lots(self) -> list[Lot]:
        """Open lots in FIFO order (oldest first)."""
        return [self._lots[sort_key[2]] for sort_key in self._order]

    def get_lot(self, lot_id: str) -> Lot | None:
        return self._lots.get(lot_id)

    def consume(self, lot_id: str, qty: Decimal) -> Lot:
        """
        Reduce a lot's open quantity.

        Exhausted lots stay in place until remove_exhausted().

        Args:
            lot_id: Lot to consume from
            qty: Quantity to consume (positive)

        Returns:
            Updated lot

        Raises:
            ValueError: If qty is zero/negative
            InsufficientLotQuantity: If lot is unknown or qty exceeds its open quantity
        """
        if qty <= 0:
            raise ValueError(f"Quantity must be positive, got {qty}")

        lot = self._lots.get(lot_id)
        if lot is None:
            raise InsufficientLotQuantity(lot_id, qty, ZERO)
        if qty > lot.open_quantity:
            raise InsufficientLotQuantity(lot_id, qty, lot.open_quantity)

        updated = lot.model_copy(update={"open_quantity": lot.open_quantity - qty})
        self._lots[lot_id] = updated
        return updated

    def remove_exhausted(self) -> list[str]:
        """
        Drop lots with zero open quantity.

        Returns:
            Ids of removed lots, in FIFO order
        """
        removed = [sort_key[2] for sort_key in self._order if self._lots[sort_key[2]].is_exhausted]
        if removed:
            gone = set(removed)
            self._order = [sort_key for sort_key in self._order if sort_key[2] not in gone]
            for lot_id in removed:
                del self._lots[lot_id]
        return removed

    def total_open_quantity(self) -> Decimal:
        """Net open position of the pair."""
        return dsum(lot.open_quantity for lot in self._lots.values())

    def copy(self) -> "Ledger":
        """Independent copy (lots are immutable, so containers are enough)."""
        clone = Ledger(self.portfolio_id, self.asset_id)
        clone._lots = dict(self._lots)
        clone._order = list(self._order)
        return clone

    def __len__(self) -> int:
        return len(self._order)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Ledger):
            return NotImplemented
        return self.key == other.key and self.open_lots() == other.open_lots()

    def __repr__(self) -> str:
        return f"Ledger({self.portfolio_id!r}, {self.asset_id!r}, lots={len(self)}, open={self.total_open_quantity()})"
