"""Error taxonomy for the matching engine.

User-correctable:
- OversellError: sell quantity exceeds the open lots of the pair

Fatal data-integrity faults (logged and escalated, never retried):
- InsufficientLotQuantity: a lot was asked for more than it holds
- ReplayInconsistency: a replay produced results that the edit cannot explain
"""

from decimal import Decimal


class EngineError(Exception):
    """Base exception for matching engine errors."""

    pass


class OversellError(EngineError):
    """Sell quantity exceeds the net open position."""

    def __init__(self, remaining_qty: Decimal, sell_trade_id: str | None = None):
        self.remaining_qty = remaining_qty
        self.sell_trade_id = sell_trade_id
        target = f" for sell {sell_trade_id}" if sell_trade_id else ""
        super().__init__(f"Oversell{target}: {remaining_qty} exceeds open lots")


class InsufficientLotQuantity(EngineError):
    """Lot consumed beyond its open quantity (integrity fault)."""

    def __init__(self, lot_id: str, requested: Decimal, available: Decimal):
        self.lot_id = lot_id
        self.requested = requested
        self.available = available
        super().__init__(f"Lot {lot_id}: cannot consume {requested}, only {available} open")


class ReplayInconsistency(EngineError):
    """Recomputed matches diverge from stored ones in an unexplained way."""

    pass


class ReplayCancelled(EngineError):
    """Replay interrupted between trades; nothing was swapped in."""

    pass


class TradeNotFoundError(EngineError):
    """Trade id not present in the store."""

    pass


class DuplicateTradeError(EngineError):
    """Trade id already present in the store."""

    pass
