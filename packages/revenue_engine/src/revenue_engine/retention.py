"""Retention & Churn Calculator over ARR snapshot history."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass
from datetime import date

from revenue_engine.coerce import month_key
from revenue_engine.records import SnapshotRow


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0


@dataclass(frozen=True)
class RetentionSummary:
    """Rates for the base population at the latest snapshot date.

    The base is every org with ``bom_arr > 0`` on that date. All rates are 0
    when the base is empty.
    """

    latest_snapshot: date | None
    base_orgs: int = 0
    base_bom_arr: float = 0.0
    base_eom_arr: float = 0.0
    nrr: float = 0.0
    grr: float = 0.0
    logo_churn_rate: float = 0.0
    gross_arr_churn_rate: float = 0.0
    full_arr_churn_rate: float = 0.0
    churned_orgs: int = 0
    churned_arr: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def latest_snapshot_date(rows: Iterable[SnapshotRow]) -> date | None:
    return max((r.snapshot_date for r in rows), default=None)


def rows_on(rows: Iterable[SnapshotRow], snapshot_date: date | None) -> list[SnapshotRow]:
    if snapshot_date is None:
        return []
    return [r for r in rows if r.snapshot_date == snapshot_date]


def compute_retention(rows: Iterable[SnapshotRow]) -> RetentionSummary:
    rows = list(rows)
    latest = latest_snapshot_date(rows)
    base = [r for r in rows_on(rows, latest) if r.bom_arr > 0]

    base_bom = sum(r.bom_arr for r in base)
    base_eom = sum(r.eom_arr for r in base)
    retained = sum(min(r.bom_arr, r.eom_arr) for r in base)
    gross_loss = sum(max(0.0, r.bom_arr - r.eom_arr) for r in base)
    churned = [r for r in base if r.eom_arr <= 0]
    churned_arr = sum(r.bom_arr for r in churned)

    return RetentionSummary(
        latest_snapshot=latest,
        base_orgs=len(base),
        base_bom_arr=round(base_bom, 2),
        base_eom_arr=round(base_eom, 2),
        nrr=_ratio(base_eom, base_bom),
        grr=_ratio(retained, base_bom),
        logo_churn_rate=_ratio(len(churned), len(base)),
        gross_arr_churn_rate=_ratio(gross_loss, base_bom),
        full_arr_churn_rate=_ratio(churned_arr, base_bom),
        churned_orgs=len(churned),
        churned_arr=round(churned_arr, 2),
    )


@dataclass
class NetNewMonth:
    month: str
    bom_arr: float = 0.0
    eom_arr: float = 0.0
    net_new_arr: float = 0.0
    new_orgs: int = 0
    upgrades: float = 0.0
    downgrades: float = 0.0
    churned_orgs: int = 0
    churn_arr: float = 0.0


def net_new_by_month(rows: Iterable[SnapshotRow]) -> list[NetNewMonth]:
    """ARR movement summed per calendar month of the snapshot date."""
    by_month: dict[str, NetNewMonth] = {}
    for r in rows:
        key = month_key(r.snapshot_date)
        bucket = by_month.setdefault(key, NetNewMonth(month=key))
        delta = r.eom_arr - r.bom_arr
        bucket.bom_arr += r.bom_arr
        bucket.eom_arr += r.eom_arr
        bucket.net_new_arr += delta
        if r.bom_arr <= 0 < r.eom_arr:
            bucket.new_orgs += 1
        if delta > 0:
            bucket.upgrades += delta
        elif delta < 0:
            bucket.downgrades += -delta
        if r.bom_arr > 0 >= r.eom_arr:
            bucket.churned_orgs += 1
            bucket.churn_arr += r.bom_arr
    return [by_month[k] for k in sorted(by_month)]
