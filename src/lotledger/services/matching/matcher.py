"""FIFO matcher: sell trades against open lots.

Pure with respect to its input: the given Ledger is never mutated. Matching
runs on a copy which is returned in the outcome for the caller to swap in.

Per consumed lot:
    take      = min(lot.open_quantity, remaining)
    fee_tax   = share(matched so far) - share(matched before this lot)
    pnl       = (sell.price - lot.unit_cost) * take - fee_tax

where share(q) = sell.fee_tax * q / sell.quantity, rounded half-even. Slices
taken from rounded cumulative shares are never negative, and once the sell
is fully matched they add up exactly to the sell's fee + tax.
"""

from dataclasses import dataclass, field
from decimal import Decimal

from lotledger.services.matching.errors import OversellError
from lotledger.services.matching.ledger import Ledger
from lotledger.services.matching.models import MatchResult, Trade, TradeSide
from lotledger.services.matching.numeric import ZERO, dsum, round_half_even
from lotledger.system import EngineConfig, LoggerFactory

logger = LoggerFactory.get_logger()


@dataclass(frozen=True)
class MatchOutcome:
    """Matches for one sell trade plus the ledger they leave behind.

    Attributes:
        matches: Match results in FIFO order
        ledger: Updated ledger (exhausted lots removed)
        unmatched_qty: Sell quantity left over (only non-zero with allow_partial)
    """

    sell_trade_id: str
    matches: list[MatchResult] = field(default_factory=list)
    ledger: Ledger | None = None
    unmatched_qty: Decimal = ZERO

    @property
    def matched_qty(self) -> Decimal:
        return dsum(m.matched_qty for m in self.matches)

    @property
    def realized_pl(self) -> Decimal:
        return dsum(m.pnl for m in self.matches)


class FIFOMatcher:
    """
    Matches sell trades against a Ledger, oldest lot first.

    Example:
        >>> matcher = FIFOMatcher(EngineConfig())
        >>> outcome = matcher.match(ledger, sell_trade)
        >>> [(m.lot_id, m.matched_qty) for m in outcome.matches]
        [('B1', Decimal('10')), ('B2', Decimal('5'))]
    """

    def __init__(self, config: EngineConfig | None = None) -> None:
        self.config = config or EngineConfig()

    def match(self, ledger: Ledger, sell_trade: Trade, allow_partial: bool = False) -> MatchOutcome:
        """
        Match a sell trade against the ledger's open lots.

        Args:
            ledger: Open lots of the sell's (portfolio, asset) pair (not mutated)
            sell_trade: SELL trade
            allow_partial: Match as far as possible instead of failing on oversell

        Returns:
            MatchOutcome with matches, updated ledger copy and unmatched quantity

        Raises:
            ValueError: If trade is not a sell or belongs to another pair
            OversellError: If sell quantity exceeds open lots and allow_partial is False
            InsufficientLotQuantity: Ledger bookkeeping fault (never expected)
        """
        if sell_trade.side != TradeSide.SELL:
            raise ValueError(f"Only sell trades are matched, got {sell_trade.side.value} trade {sell_trade.trade_id}")
        if sell_trade.key != ledger.key:
            raise ValueError(f"Trade {sell_trade.trade_id} belongs to {sell_trade.key}, not ledger {ledger.key}")

        available = ledger.total_open_quantity()
        if sell_trade.quantity > available and not allow_partial:
            raise OversellError(sell_trade.quantity - available, sell_trade.trade_id)

        precision = self.config.precision_for(sell_trade.asset_id)
        total_fee_tax = sell_trade.fee_tax
        working = ledger.copy()
        remaining = sell_trade.quantity
        allocated = ZERO
        results: list[MatchResult] = []

        for lot in working.open_lots():
            if remaining == 0:
                break
            if lot.is_exhausted:
                continue

            take = min(lot.open_quantity, remaining)
            remaining -= take

            if remaining == 0:
                cumulative_fee_tax = total_fee_tax
            else:
                matched_so_far = sell_trade.quantity - remaining
                share = round_half_even(total_fee_tax * matched_so_far / sell_trade.quantity, precision)
                cumulative_fee_tax = min(share, total_fee_tax)
            slice_fee_tax = cumulative_fee_tax - allocated
            allocated = cumulative_fee_tax

            pnl = (sell_trade.price - lot.unit_cost) * take - slice_fee_tax

            results.append(
                MatchResult(
                    sell_trade_id=sell_trade.trade_id,
                    lot_id=lot.lot_id,
                    sequence=len(results),
                    matched_qty=take,
                    buy_price=lot.buy_price,
                    buy_unit_cost=lot.unit_cost,
                    sell_price=sell_trade.price,
                    fee_tax=slice_fee_tax,
                    pnl=pnl,
                )
            )
            working.consume(lot.lot_id, take)

            logger.debug(
                "matcher.lot_matched",
                sell_trade_id=sell_trade.trade_id,
                lot_id=lot.lot_id,
                matched_qty=str(take),
                pnl=str(pnl),
            )

        working.remove_exhausted()

        return MatchOutcome(
            sell_trade_id=sell_trade.trade_id,
            matches=results,
            ledger=working,
            unmatched_qty=remaining,
        )
