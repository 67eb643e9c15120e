"""Waterfall Decomposer: snapshot rows -> SOM / Upgrade / Downgrade / Churn / EOM.

For every row ``EOM == SOM + Upgrade - Downgrade - Churn`` and at most one
of the three movement metrics is non-zero.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date
from enum import Enum

from revenue_engine.records import SnapshotRow
from revenue_engine.retention import latest_snapshot_date, rows_on

BLANK_COHORT = "(blank)"


class Metric(str, Enum):
    SOM = "SOM"
    UPGRADE = "Upgrade"
    DOWNGRADE = "Downgrade"
    CHURN = "Churn"
    EOM = "EOM"


METRIC_ORDER = tuple(Metric)


@dataclass(frozen=True)
class OrgCohorts:
    """Cohort months of one org: trial start, first subscription, first payment."""

    trial: str = ""
    subscription: str = ""
    paid: str = ""


NO_COHORTS = OrgCohorts()


@dataclass(frozen=True)
class WaterfallFact:
    snapshot_date: date
    cohort_key: str
    org_id: str
    org_name: str
    metric: Metric
    amount: float
    cohort_month_subscription: str = ""
    cohort_month_paid: str = ""


@dataclass
class WaterfallBucket:
    """Summed metrics for one cohort or one org."""

    key: str
    label: str = ""
    som: float = 0.0
    upgrade: float = 0.0
    downgrade: float = 0.0
    churn: float = 0.0
    eom: float = 0.0

    def add(self, fact: WaterfallFact) -> None:
        attr = fact.metric.value.lower()
        setattr(self, attr, getattr(self, attr) + fact.amount)

    @property
    def reconciles(self) -> bool:
        return abs(self.som + self.upgrade - self.downgrade - self.churn - self.eom) < 0.005


def movements(bom: float, eom: float) -> dict[Metric, float]:
    upgrade = downgrade = churn = 0.0
    if eom > bom:
        upgrade = eom - bom
    elif bom > 0 and eom == 0:
        churn = bom
    elif 0 < eom < bom:
        downgrade = bom - eom
    return {
        Metric.SOM: bom,
        Metric.UPGRADE: upgrade,
        Metric.DOWNGRADE: downgrade,
        Metric.CHURN: churn,
        Metric.EOM: eom,
    }


def decompose(row: SnapshotRow, cohorts: OrgCohorts = NO_COHORTS) -> list[WaterfallFact]:
    """Exactly five facts for one snapshot row, in metric order.

    The trial cohort of ``cohorts`` wins over the one stored on the row.
    """
    cohort = cohorts.trial or row.cohort_month or BLANK_COHORT
    return [
        WaterfallFact(
            row.snapshot_date,
            cohort,
            row.org_id,
            row.org_name,
            metric,
            amount,
            cohort_month_subscription=cohorts.subscription,
            cohort_month_paid=cohorts.paid,
        )
        for metric, amount in movements(row.bom_arr, row.eom_arr).items()
    ]


def latest_facts(
    rows: Iterable[SnapshotRow], cohorts: Mapping[str, OrgCohorts] | None = None
) -> list[WaterfallFact]:
    """Decompose only the rows of the single latest snapshot date.

    ``cohorts`` maps org id to its cohort months.
    """
    rows = list(rows)
    cohorts = cohorts or {}
    facts: list[WaterfallFact] = []
    for row in rows_on(rows, latest_snapshot_date(rows)):
        facts.extend(decompose(row, cohorts.get(row.org_id, NO_COHORTS)))
    return facts


def by_cohort(facts: Iterable[WaterfallFact]) -> list[WaterfallBucket]:
    buckets: dict[str, WaterfallBucket] = {}
    for f in facts:
        buckets.setdefault(f.cohort_key, WaterfallBucket(key=f.cohort_key, label=f.cohort_key)).add(f)
    return [buckets[k] for k in sorted(buckets)]


def by_org(facts: Iterable[WaterfallFact]) -> list[WaterfallBucket]:
    """Per-org buckets, largest EOM first, then by name."""
    buckets: dict[str, WaterfallBucket] = {}
    for f in facts:
        bucket = buckets.setdefault(f.org_id, WaterfallBucket(key=f.org_id, label=f.org_name))
        if f.org_name and not bucket.label:
            bucket.label = f.org_name
        bucket.add(f)
    return sorted(buckets.values(), key=lambda b: (-b.eom, b.label.lower(), b.key))
