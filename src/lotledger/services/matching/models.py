"""Data models for the matching engine.

Defines all core entities for FIFO trade matching:
- Trade: Validated buy/sell input (immutable)
- Lot: Open (or partially consumed) quantity of a buy trade
- MatchResult: Matcher output for one consumed lot slice
- Match: Persisted audit record linking a sell to a buy
- TradeAggregates: Derived per-trade fields (remaining quantity, realized P&L)
- MatchSummary, PositionSnapshot, PnlSummary: Query/report views
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from lotledger.services.matching.numeric import ZERO, round_half_even

PairKey = tuple[str, str]  # (portfolio_id, asset_id)


class TradeSide(str, Enum):
    """Side of a trade."""

    BUY = "buy"
    SELL = "sell"


class Trade(BaseModel):
    """
    Buy or sell trade for one asset in one portfolio.

    Validated at construction: quantity and price must be positive, fee and
    tax non-negative, timestamps timezone-naive. Invalid trades never reach
    the matcher.

    Attributes:
        trade_id: Unique identifier
        portfolio_id: Owning portfolio
        asset_id: Traded asset
        side: BUY or SELL
        quantity: Units traded (positive)
        price: Price per unit (positive)
        fee: Broker fee (non-negative)
        tax: Transaction tax (non-negative)
        trade_date: When the trade happened (FIFO ordering key)
        created_at: When the trade was entered (tie-break for equal trade_date)

    Example:
        >>> trade = Trade(
        ...     trade_id="T1",
        ...     portfolio_id="P1",
        ...     asset_id="VNM",
        ...     side=TradeSide.BUY,
        ...     quantity=Decimal("10"),
        ...     price=Decimal("100"),
        ...     fee=Decimal("10"),
        ...     trade_date=datetime(2024, 1, 2),
        ... )
    """

    trade_id: str = Field(default_factory=lambda: str(uuid4()))
    portfolio_id: str
    asset_id: str
    side: TradeSide
    quantity: Decimal
    price: Decimal
    fee: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    trade_date: datetime
    created_at: datetime | None = None

    @field_validator("trade_id", "portfolio_id", "asset_id")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        """Validate identifiers are non-empty."""
        if not v or not v.strip():
            raise ValueError("Identifier cannot be empty")
        return v

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: Decimal) -> Decimal:
        """Validate quantity is positive."""
        if v <= 0:
            raise ValueError(f"Quantity must be positive, got {v}")
        return v

    @field_validator("price")
    @classmethod
    def validate_price(cls, v: Decimal) -> Decimal:
        """Validate price is positive."""
        if v <= 0:
            raise ValueError(f"Price must be positive, got {v}")
        return v

    @field_validator("fee", "tax")
    @classmethod
    def validate_charges(cls, v: Decimal) -> Decimal:
        """Validate fee/tax are non-negative."""
        if v < 0:
            raise ValueError(f"Fee and tax cannot be negative, got {v}")
        return v

    @field_validator("trade_date", "created_at")
    @classmethod
    def validate_naive_timestamp(cls, v: datetime | None) -> datetime | None:
        """Validate timestamps are naive so trades of a pair always compare."""
        if v is not None and v.utcoffset() is not None:
            raise ValueError(f"Timestamps must be timezone-naive, got {v.isoformat()}")
        return v

    @property
    def key(self) -> PairKey:
        return (self.portfolio_id, self.asset_id)

    @property
    def fee_tax(self) -> Decimal:
        """Total charges (fee + tax)."""
        return self.fee + self.tax

    @property
    def gross_amount(self) -> Decimal:
        """Price times quantity, before charges."""
        return self.price * self.quantity

    @property
    def sort_key(self) -> tuple[datetime, datetime, str]:
        """Chronological ordering key: (trade_date, created_at, trade_id)."""
        return (self.trade_date, self.created_at or self.trade_date, self.trade_id)

    def with_changes(self, changes: "TradeChanges") -> "Trade":
        """Return a new, re-validated trade with the given changes applied."""
        data = self.model_dump()
        data.update(changes.model_dump(exclude_none=True))
        return Trade(**data)

    model_config = ConfigDict(frozen=True)  # Immutable after creation


class TradeChanges(BaseModel):
    """
    Editable trade fields. Fields left as None are unchanged.

    Portfolio and asset are not editable: moving a trade to another pair is
    a delete followed by a submit.
    """

    side: TradeSide | None = None
    quantity: Decimal | None = None
    price: Decimal | None = None
    fee: Decimal | None = None
    tax: Decimal | None = None
    trade_date: datetime | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")


class Lot(BaseModel):
    """
    Open quantity of a single buy trade, tracked for FIFO matching.

    unit_cost includes the buy's fee and tax and is rounded once, at
    creation. open_quantity only changes through Ledger.consume, which
    replaces the record.

    Attributes:
        lot_id: Originating buy trade id
        portfolio_id: Owning portfolio
        asset_id: Asset held
        original_quantity: Quantity bought
        open_quantity: Quantity not yet consumed by sells
        unit_cost: (price * quantity + fee + tax) / quantity, rounded half-even
        buy_price: Raw price of the buy trade
        opened_at: Buy trade date
        created_at: Buy trade entry time (tie-break)
    """

    lot_id: str
    portfolio_id: str
    asset_id: str
    original_quantity: Decimal
    open_quantity: Decimal
    unit_cost: Decimal
    buy_price: Decimal
    opened_at: datetime
    created_at: datetime | None = None

    @model_validator(mode="after")
    def validate_quantities(self) -> "Lot":
        """Validate 0 <= open_quantity <= original_quantity."""
        if self.original_quantity <= 0:
            raise ValueError(f"Lot quantity must be positive, got {self.original_quantity}")
        if not ZERO <= self.open_quantity <= self.original_quantity:
            raise ValueError(
                f"Open quantity {self.open_quantity} outside [0, {self.original_quantity}] for lot {self.lot_id}"
            )
        return self

    @classmethod
    def from_trade(cls, trade: Trade, precision: int) -> "Lot":
        """
        Open a lot from a buy trade.

        Args:
            trade: BUY trade
            precision: Fractional digits for unit cost rounding

        Raises:
            ValueError: If trade is not a buy
        """
        if trade.side != TradeSide.BUY:
            raise ValueError(f"Only buy trades open lots, got {trade.side.value} trade {trade.trade_id}")

        unit_cost = round_half_even((trade.gross_amount + trade.fee_tax) / trade.quantity, precision)
        return cls(
            lot_id=trade.trade_id,
            portfolio_id=trade.portfolio_id,
            asset_id=trade.asset_id,
            original_quantity=trade.quantity,
            open_quantity=trade.quantity,
            unit_cost=unit_cost,
            buy_price=trade.price,
            opened_at=trade.trade_date,
            created_at=trade.created_at,
        )

    @property
    def key(self) -> PairKey:
        return (self.portfolio_id, self.asset_id)

    @property
    def is_exhausted(self) -> bool:
        return self.open_quantity == 0

    @property
    def consumed_quantity(self) -> Decimal:
        return self.original_quantity - self.open_quantity

    @property
    def sort_key(self) -> tuple[datetime, datetime, str]:
        """FIFO ordering key: (opened_at, created_at, lot_id)."""
        return (self.opened_at, self.created_at or self.opened_at, self.lot_id)

    model_config = ConfigDict(frozen=True)


class MatchResult(BaseModel):
    """
    One slice of a sell trade matched against one lot.

    Produced by the Matcher; becomes a Match once recorded.

    P&L identity: pnl == (sell_price - buy_unit_cost) * matched_qty - fee_tax
    """

    sell_trade_id: str
    lot_id: str
    sequence: int  # Order within the sell trade (0-based)
    matched_qty: Decimal
    buy_price: Decimal
    buy_unit_cost: Decimal
    sell_price: Decimal
    fee_tax: Decimal  # Share of the sell's fee + tax
    pnl: Decimal

    model_config = ConfigDict(frozen=True)


class Match(BaseModel):
    """
    Persisted link between a sell trade and a buy trade (trade detail).

    Flat record with two trade references; one sell has many matches (one per
    consumed lot) and one buy has many matches (one per consuming sell).

    Example:
        >>> match.sell_trade_id, match.buy_trade_id, match.matched_qty
        ('S1', 'B1', Decimal('10'))
    """

    match_id: str
    sell_trade_id: str
    buy_trade_id: str
    portfolio_id: str
    asset_id: str
    matched_qty: Decimal
    buy_price: Decimal
    buy_unit_cost: Decimal
    sell_price: Decimal
    fee_tax: Decimal
    pnl: Decimal
    matched_at: datetime  # Sell trade date

    @classmethod
    def from_result(cls, result: MatchResult, sell_trade: Trade) -> "Match":
        """Build the persisted record for a match result of sell_trade."""
        return cls(
            match_id=f"{result.sell_trade_id}:{result.sequence:04d}",
            sell_trade_id=result.sell_trade_id,
            buy_trade_id=result.lot_id,
            portfolio_id=sell_trade.portfolio_id,
            asset_id=sell_trade.asset_id,
            matched_qty=result.matched_qty,
            buy_price=result.buy_price,
            buy_unit_cost=result.buy_unit_cost,
            sell_price=result.sell_price,
            fee_tax=result.fee_tax,
            pnl=result.pnl,
            matched_at=sell_trade.trade_date,
        )

    model_config = ConfigDict(frozen=True)


class TradeAggregates(BaseModel):
    """
    Derived fields of a trade, maintained by the MatchRecorder.

    Attributes:
        trade_id: Trade these aggregates belong to
        side: Trade side
        remaining_quantity: Sell: unmatched quantity. Buy: lot open quantity
        realized_pl: Sell: sum of its matches' pnl. Buy: always 0
        match_count: Number of matches referencing the trade
    """

    trade_id: str
    side: TradeSide
    remaining_quantity: Decimal
    realized_pl: Decimal = Decimal("0")
    match_count: int = 0

    model_config = ConfigDict(frozen=True)


class MatchSummary(BaseModel):
    """Outcome of submitting or editing a trade."""

    trade_id: str
    side: TradeSide
    matches: list[Match] = Field(default_factory=list)
    realized_pl: Decimal = Decimal("0")
    unmatched_qty: Decimal = Decimal("0")
    replayed: bool = False

    model_config = ConfigDict(frozen=True)


class PositionSnapshot(BaseModel):
    """
    Consistent view of the open position of one (portfolio, asset) pair.

    Attributes:
        quantity: Sum of open lot quantities
        cost_basis: Sum of open_quantity * unit_cost
        average_unit_cost: cost_basis / quantity (0 when flat)
        lots: Open lots in FIFO order
    """

    portfolio_id: str
    asset_id: str
    quantity: Decimal
    cost_basis: Decimal
    average_unit_cost: Decimal
    lots: list[Lot] = Field(default_factory=list)

    @property
    def is_flat(self) -> bool:
        return self.quantity == 0

    model_config = ConfigDict(frozen=True)


class PnlSummary(BaseModel):
    """Realized P&L statistics over a set of matches."""

    total_pnl: Decimal = Decimal("0")
    total_volume: Decimal = Decimal("0")
    average_pnl: Decimal = Decimal("0")
    match_count: int = 0
    win_count: int = 0
    loss_count: int = 0
    win_rate: Decimal = Decimal("0")  # Percent of matches with pnl > 0

    model_config = ConfigDict(frozen=True)


class AssetPnlSummary(PnlSummary):
    """Realized P&L statistics for one asset of a portfolio."""

    asset_id: str
