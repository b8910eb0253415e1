"""Replay engine: rebuild a pair's ledger and matches from its trade history.

Used whenever incremental matching cannot be trusted: a trade inserted before
an already-matched trade, an edit, or a delete. Replaying the full history
keeps matches a deterministic function of the current trades.

The replay builds into a scratch Ledger; callers swap it in only once the
whole history has been processed.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from lotledger.services.matching.errors import ReplayCancelled, ReplayInconsistency
from lotledger.services.matching.ledger import Ledger
from lotledger.services.matching.matcher import FIFOMatcher
from lotledger.services.matching.models import Lot, Match, Trade, TradeSide
from lotledger.services.matching.numeric import dsum
from lotledger.system import EngineConfig, LoggerFactory

logger = LoggerFactory.get_logger()

SortKey = tuple[datetime, datetime, str]


@dataclass(frozen=True)
class ReplayResult:
    """Rebuilt state of one (portfolio, asset) pair.

    Attributes:
        ledger: Rebuilt open lots
        trades: Replayed trades in FIFO order
        matches: All matches, in replay order
        unmatched: Sell trade id -> unmatched quantity
    """

    ledger: Ledger
    trades: list[Trade] = field(default_factory=list)
    matches: list[Match] = field(default_factory=list)
    unmatched: dict[str, Decimal] = field(default_factory=dict)

    def matches_for_sell(self, sell_trade_id: str) -> list[Match]:
        return [m for m in self.matches if m.sell_trade_id == sell_trade_id]


class ReplayEngine:
    """
    Recomputes ledger and matches for a pair from scratch.

    Example:
        >>> engine = ReplayEngine(EngineConfig())
        >>> result = engine.rebuild("P1", "VNM", trades)
        >>> result.ledger.open_lots()
    """

    def __init__(self, config: EngineConfig | None = None, matcher: FIFOMatcher | None = None) -> None:
        self.config = config or EngineConfig()
        self._matcher = matcher or FIFOMatcher(self.config)

    def rebuild(
        self,
        portfolio_id: str,
        asset_id: str,
        trades: Iterable[Trade],
        allow_partial: bool = False,
        should_stop: Callable[[], bool] | None = None,
    ) -> ReplayResult:
        """
        Replay every trade of the pair, oldest first, through an empty ledger.

        Args:
            portfolio_id: Portfolio of the pair
            asset_id: Asset of the pair
            trades: Trade history (other pairs are ignored)
            allow_partial: Record oversells with a remainder instead of failing
            should_stop: Checked between trades; returning True cancels the replay

        Returns:
            ReplayResult with the rebuilt ledger and matches

        Raises:
            OversellError: If a sell exceeds open lots and allow_partial is False
            ReplayCancelled: If should_stop() returned True
        """
        key = (portfolio_id, asset_id)
        ordered = sorted((t for t in trades if t.key == key), key=lambda t: t.sort_key)
        precision = self.config.precision_for(asset_id)

        scratch = Ledger(portfolio_id, asset_id)
        matches: list[Match] = []
        unmatched: dict[str, Decimal] = {}

        for index, trade in enumerate(ordered):
            if should_stop is not None and should_stop():
                logger.warning(
                    "replay.cancelled",
                    portfolio_id=portfolio_id,
                    asset_id=asset_id,
                    processed=index,
                    total=len(ordered),
                )
                raise ReplayCancelled(f"Replay of {key} cancelled after {index} of {len(ordered)} trades")

            if trade.side == TradeSide.BUY:
                scratch.push_lot(Lot.from_trade(trade, precision))
            elif trade.side == TradeSide.SELL:
                outcome = self._matcher.match(scratch, trade, allow_partial=allow_partial)
                assert outcome.ledger is not None
                scratch = outcome.ledger
                matches.extend(Match.from_result(result, trade) for result in outcome.matches)
                unmatched[trade.trade_id] = outcome.unmatched_qty
            else:
                raise ValueError(f"Invalid trade side: {trade.side}")

        logger.debug(
            "replay.rebuilt",
            portfolio_id=portfolio_id,
            asset_id=asset_id,
            trades=len(ordered),
            matches=len(matches),
            open_lots=len(scratch),
        )
        return ReplayResult(ledger=scratch, trades=ordered, matches=matches, unmatched=unmatched)

    def verify(
        self,
        previous_matches: list[Match],
        result: ReplayResult,
        edit_point: SortKey | None = None,
    ) -> None:
        """
        Check that a replay only changed what the edit can explain.

        Sells ordered strictly before edit_point must keep exactly the matches
        they had. With edit_point=None every sell is compared (full check).

        Raises:
            ReplayInconsistency: On unexplained divergence
        """
        trades_by_id = {t.trade_id: t for t in result.trades}

        def before_edit(sell_trade_id: str) -> bool:
            trade = trades_by_id.get(sell_trade_id)
            return trade is not None and (edit_point is None or trade.sort_key < edit_point)

        for match in previous_matches:
            sell = trades_by_id.get(match.sell_trade_id)
            if sell is None:
                if edit_point is None:
                    raise ReplayInconsistency(
                        f"Stored match {match.match_id} references missing sell trade {match.sell_trade_id}"
                    )
                continue
            if match.buy_trade_id not in trades_by_id and before_edit(match.sell_trade_id):
                raise ReplayInconsistency(
                    f"Stored match {match.match_id} references missing buy trade {match.buy_trade_id}"
                )

        previous = _group_by_sell(m for m in previous_matches if before_edit(m.sell_trade_id))
        current = _group_by_sell(m for m in result.matches if before_edit(m.sell_trade_id))
        diverged = sorted(
            sell_id for sell_id in previous.keys() | current.keys() if previous.get(sell_id) != current.get(sell_id)
        )
        if diverged:
            raise ReplayInconsistency(f"Replay changed matches of sells before the edit point: {', '.join(diverged)}")

    def check_conservation(self, result: ReplayResult) -> None:
        """
        Check sum(open lots) + sum(matched) == sum(bought).

        Raises:
            ReplayInconsistency: If quantities do not balance
        """
        bought = dsum(t.quantity for t in result.trades if t.side == TradeSide.BUY)
        matched = dsum(m.matched_qty for m in result.matches)
        open_qty = result.ledger.total_open_quantity()
        if open_qty + matched != bought:
            raise ReplayInconsistency(
                f"Quantity not conserved for {result.ledger.key}: open {open_qty} + matched {matched} != bought {bought}"
            )


def _group_by_sell(matches: Iterable[Match]) -> dict[str, list[Match]]:
    grouped: dict[str, list[Match]] = {}
    for match in sorted(matches, key=lambda m: m.match_id):
        grouped.setdefault(match.sell_trade_id, []).append(match)
    return grouped
