"""
Sales Statistics Engine

Pure functions over a flat list of historical SalesRecord rows. Windows are
calendar days relative to an anchor date, normally the product's most recent
sale rather than today, so the numbers do not drift when the sales feed is
stale.
"""
import math
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Iterable, List, Optional

from order_desk.utils.helpers import norm_text, round_half_up

PERIODS = ("week", "2w", "30d")
DEFAULT_MARGIN_PERCENT = 48.0


@dataclass(frozen=True)
class SalesRecord:
    product: str
    date: date
    qty: float
    subtotal: Optional[float] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class Stats:
    avg4w: int = 0
    sum7d: float = 0.0
    sum2w: float = 0.0
    sum30d: float = 0.0
    sum4w: float = 0.0
    last_qty: Optional[float] = None
    last_date: Optional[date] = None
    last_unit_retail: Optional[float] = None
    avg_unit_retail_30d: Optional[float] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["last_date"] = self.last_date.isoformat() if self.last_date else None
        return data


EMPTY_STATS = Stats()


def _matching(history: Iterable[SalesRecord], product_key: str) -> List[SalesRecord]:
    key = norm_text(product_key)
    return [r for r in history if r.date is not None and norm_text(r.product) == key]


def _window_sum(records: List[SalesRecord], anchor: date, days: int) -> float:
    start = anchor - timedelta(days=days)
    return math.fsum(max(0.0, r.qty) for r in records if start <= r.date <= anchor)


def compute_stats(history: Iterable[SalesRecord], product_key: str, anchor: Optional[date]) -> Stats:
    """
    Replenishment metrics for one product.

    Windows are inclusive: sum2w covers [anchor-14d, anchor], sum30d
    [anchor-30d, anchor] and avg4w is the [anchor-28d, anchor] sum over 4,
    rounded half up. Negative quantities (returns) do not count toward
    windowed sums. The result does not depend on the order of history.
    """
    if anchor is None:
        return EMPTY_STATS
    records = [r for r in _matching(history, product_key) if r.date <= anchor]
    if not records:
        return EMPTY_STATS

    sum4w = _window_sum(records, anchor, 28)
    last = max(records, key=lambda r: (
        r.date, r.qty, r.subtotal if r.subtotal is not None else -math.inf
    ))
    last_unit_retail = None
    if last.subtotal is not None and last.qty > 0:
        last_unit_retail = last.subtotal / last.qty

    start30 = anchor - timedelta(days=30)
    priced = [r for r in records if start30 <= r.date and r.qty > 0 and r.subtotal is not None]
    avg_unit_retail_30d = None
    if priced:
        avg_unit_retail_30d = math.fsum(r.subtotal for r in priced) / math.fsum(r.qty for r in priced)

    return Stats(
        avg4w=round_half_up(sum4w / 4),
        sum7d=_window_sum(records, anchor, 7),
        sum2w=_window_sum(records, anchor, 14),
        sum30d=_window_sum(records, anchor, 30),
        sum4w=sum4w,
        last_qty=last.qty,
        last_date=last.date,
        last_unit_retail=last_unit_retail,
        avg_unit_retail_30d=avg_unit_retail_30d,
    )


def latest_sale_date(history: Iterable[SalesRecord], product_key: str) -> Optional[date]:
    dates = [r.date for r in _matching(history, product_key)]
    return max(dates) if dates else None


def stats_for_product(history: List[SalesRecord], product_key: str, today: Optional[date] = None) -> Stats:
    """compute_stats anchored at the product's latest sale (today if it never sold)"""
    anchor = latest_sale_date(history, product_key) or today or date.today()
    return compute_stats(history, product_key, anchor)


def estimated_cost(stats: Optional[Stats], margin_percent: float = DEFAULT_MARGIN_PERCENT) -> int:
    """Seed unit price: retail estimate minus margin. Display value only."""
    if stats is None:
        return 0
    if stats.last_unit_retail is not None:
        retail = stats.last_unit_retail
    elif stats.avg_unit_retail_30d is not None:
        retail = stats.avg_unit_retail_30d
    else:
        retail = 0.0
    return max(0, round_half_up(retail * (1 - margin_percent / 100)))


def snap_to_pack(value: float, pack_size: Optional[int] = None) -> int:
    """
    Never negative. With a pack size > 1, rounds to the nearest multiple;
    otherwise truncates to an integer.
    """
    if value is None or not math.isfinite(value):
        return 0
    value = max(0.0, value)
    if pack_size is not None and round_half_up(pack_size) > 1:
        pack = round_half_up(pack_size)
        return round_half_up(value / pack) * pack
    return int(value)


def period_metric(stats: Stats, period: str) -> float:
    if period == "week":
        return stats.avg4w
    if period == "2w":
        return stats.sum2w
    if period == "30d":
        return stats.sum30d
    raise ValueError(f"Unknown period {period!r}; expected one of {', '.join(PERIODS)}")


def suggested_quantity(stats: Stats, period: str, pack_size: Optional[int] = None,
                       stock: Optional[float] = None, net_of_stock: bool = False) -> int:
    value = period_metric(stats, period)
    if net_of_stock and stock:
        value -= stock
    return snap_to_pack(value, pack_size)
