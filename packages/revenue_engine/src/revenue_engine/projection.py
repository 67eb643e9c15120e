"""MRR Time-Series Projector.

Spreads each active subscription's monthly MRR over a rolling array of
calendar months, from the earliest subscription start to ``forecast_months``
past the current month. A 100% discount suppresses revenue while its
free-month window lasts.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date

from revenue_engine.coerce import month_diff, month_key, month_range, shift_month_key
from revenue_engine.records import DiscountDuration, SubscriptionFact

FORECAST_MONTHS = 24


@dataclass(frozen=True)
class FreeMonths:
    months: int = 0
    forever: bool = False

    def suppresses(self, offset: int) -> bool:
        return self.forever or offset < self.months


def free_months(fact: SubscriptionFact) -> FreeMonths:
    """Free-month window of a 100% discount; nothing for partial discounts."""
    if fact.discount_percent != 100:
        return FreeMonths()
    if fact.discount_duration is DiscountDuration.FOREVER:
        return FreeMonths(forever=True)
    months = int(fact.discount_duration_months)
    if not months and fact.discount_duration is DiscountDuration.ONCE:
        months = 1
    return FreeMonths(months=months)


@dataclass
class ProjectionRow:
    org_key: str
    org_id: str = ""
    org_name: str = ""
    owner_email: str = ""
    start_month: str = ""
    values: list[float | None] = field(default_factory=list)


@dataclass
class MrrProjection:
    month_keys: list[str]
    rows: list[ProjectionRow]

    def total_for(self, month: str) -> float:
        if month not in self.month_keys:
            return 0.0
        i = self.month_keys.index(month)
        return sum(r.values[i] or 0.0 for r in self.rows)


@dataclass(frozen=True)
class OrgLabel:
    org_id: str = ""
    org_name: str = ""
    owner_email: str = ""


def _start_key(fact: SubscriptionFact) -> str:
    return month_key(fact.start_at)


def project_mrr(
    facts_by_key: Mapping[str, Sequence[SubscriptionFact]],
    labels: Mapping[str, OrgLabel],
    as_of: date,
    forecast_months: int = FORECAST_MONTHS,
    backfill_start_month: str | None = None,
) -> MrrProjection:
    """Project MRR per org key.

    Orgs whose subscriptions are all inactive are emitted only when they
    have an owner email: zero from the current month on, blank before.
    """
    start_keys = [k for facts in facts_by_key.values() for k in map(_start_key, facts) if k]
    earliest = backfill_start_month or min(start_keys, default="")
    if not earliest:
        return MrrProjection(month_keys=[], rows=[])

    current = month_key(as_of)
    month_keys = month_range(earliest, shift_month_key(current, forecast_months))
    size = len(month_keys)
    current_idx = max(0, month_diff(earliest, current))

    rows: list[ProjectionRow] = []
    for key, facts in facts_by_key.items():
        label = labels.get(key, OrgLabel())
        active = [f for f in facts if f.status == "active" and _start_key(f)]

        if not active:
            if not label.owner_email or not facts:
                continue
            values: list[float | None] = [None] * size
            for i in range(min(current_idx, size), size):
                values[i] = 0.0
            rows.append(
                ProjectionRow(key, label.org_id, label.org_name, label.owner_email, "", values)
            )
            continue

        totals = [0.0] * size
        org_start: int | None = None
        for fact in active:
            start_idx = max(0, month_diff(earliest, _start_key(fact)))
            if start_idx >= size:
                continue
            org_start = start_idx if org_start is None else min(org_start, start_idx)
            window = free_months(fact)
            for i in range(start_idx, size):
                if not window.suppresses(i - start_idx):
                    totals[i] += fact.mrr
        if org_start is None:
            continue
        rows.append(
            ProjectionRow(
                org_key=key,
                org_id=label.org_id,
                org_name=label.org_name,
                owner_email=label.owner_email,
                start_month=month_keys[org_start],
                values=[round(v, 2) for v in totals],
            )
        )

    rows.sort(key=lambda r: (r.org_name.lower(), r.org_key))
    return MrrProjection(month_keys=month_keys, rows=rows)
