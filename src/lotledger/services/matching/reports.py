"""Realized P&L statistics over recorded matches."""

from collections.abc import Iterable
from decimal import Decimal

from lotledger.services.matching.models import AssetPnlSummary, Match, PnlSummary
from lotledger.services.matching.numeric import ZERO, dsum

HUNDRED = Decimal("100")


def summarize(matches: Iterable[Match]) -> PnlSummary:
    """
    Aggregate realized P&L over matches.

    win_rate is the percentage of matches with pnl > 0. Matches with zero
    pnl count as neither wins nor losses.
    """
    matches = list(matches)
    return PnlSummary(**_stats(matches))


def summarize_by_asset(matches: Iterable[Match]) -> list[AssetPnlSummary]:
    """
    Per-asset P&L statistics, best performer first.

    Example:
        >>> rows = summarize_by_asset(store.find_matches(portfolio_id="P1"))
        >>> [(row.asset_id, row.total_pnl) for row in rows]
        [('VNM', Decimal('625')), ('FPT', Decimal('-40'))]
    """
    groups: dict[str, list[Match]] = {}
    for match in matches:
        groups.setdefault(match.asset_id, []).append(match)

    rows = [AssetPnlSummary(asset_id=asset_id, **_stats(group)) for asset_id, group in groups.items()]
    return sorted(rows, key=lambda row: (-row.total_pnl, row.asset_id))


def _stats(matches: list[Match]) -> dict:
    count = len(matches)
    total_pnl = dsum(m.pnl for m in matches)
    win_count = sum(1 for m in matches if m.pnl > 0)
    loss_count = sum(1 for m in matches if m.pnl < 0)
    return {
        "total_pnl": total_pnl,
        "total_volume": dsum(m.matched_qty for m in matches),
        "average_pnl": total_pnl / count if count else ZERO,
        "match_count": count,
        "win_count": win_count,
        "loss_count": loss_count,
        "win_rate": Decimal(win_count) * HUNDRED / count if count else ZERO,
    }
