"""Stage KPI blocks and signup/promo conversion metrics."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import timedelta

from revenue_engine.aggregator import OrgRollup, StageTotals
from revenue_engine.coerce import month_key
from revenue_engine.records import Organization


def _rate(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


@dataclass
class MetricBlock:
    arr: float = 0.0
    mrr: float = 0.0
    firms: int = 0
    seats: int = 0

    def add(self, *totals: StageTotals) -> None:
        self.arr += sum(t.arr for t in totals)
        self.mrr += sum(t.mrr for t in totals)
        self.seats += sum(t.seats for t in totals)
        self.firms += 1


@dataclass
class StageCount:
    firms: int = 0
    seats: int = 0


@dataclass
class StageMetrics:
    """Headline blocks.

    ``only_paid`` means paid with no promo trial running; ``only_paid_true``
    narrows that to orgs where money has actually moved.
    """

    paid_promo: MetricBlock = field(default_factory=MetricBlock)
    only_paid: MetricBlock = field(default_factory=MetricBlock)
    only_paid_true: MetricBlock = field(default_factory=MetricBlock)
    only_promo: MetricBlock = field(default_factory=MetricBlock)
    only_free: MetricBlock = field(default_factory=MetricBlock)
    stage_paid: StageCount = field(default_factory=StageCount)
    stage_promo: StageCount = field(default_factory=StageCount)
    stage_free: StageCount = field(default_factory=StageCount)
    paid_arr: float = 0.0
    paid_seats: int = 0
    paid_firms: int = 0

    @property
    def avg_revenue_per_paid_firm(self) -> float:
        return _rate(self.paid_arr, self.paid_firms)

    @property
    def avg_revenue_per_seat(self) -> float:
        return _rate(self.paid_arr, self.paid_seats)

    @property
    def avg_seats_per_paid_firm(self) -> float:
        return _rate(self.paid_seats, self.paid_firms)

    def to_rows(self) -> list[dict]:
        """Long-format rows: one per (block, measure)."""
        rows: list[dict] = []
        for name in ("paid_promo", "only_paid", "only_paid_true", "only_promo", "only_free"):
            for measure, value in asdict(getattr(self, name)).items():
                rows.append({"block": name, "measure": measure, "value": value})
        for name in ("stage_paid", "stage_promo", "stage_free"):
            for measure, value in asdict(getattr(self, name)).items():
                rows.append({"block": name, "measure": measure, "value": value})
        for measure in ("avg_revenue_per_paid_firm", "avg_revenue_per_seat", "avg_seats_per_paid_firm"):
            rows.append({"block": "averages", "measure": measure, "value": getattr(self, measure)})
        return rows


def build_stage_metrics(rollups: Iterable[OrgRollup]) -> StageMetrics:
    m = StageMetrics()
    for o in rollups:
        only_paid = o.has_paid and not o.has_promo
        if o.has_paid or o.has_promo:
            m.paid_promo.add(o.paid, o.promo)
        if o.has_promo and not o.has_paid:
            m.only_promo.add(o.promo)
        if only_paid:
            m.only_paid.add(o.paid)
            if o.has_paid_with_money_moved:
                m.only_paid_true.add(o.paid_true)
        if o.has_free and not o.has_paid and not o.has_promo:
            m.only_free.add(o.free)

        if o.has_paid:
            m.stage_paid.firms += 1
            m.stage_paid.seats += o.paid.seats + o.promo.seats
            m.paid_arr += o.paid.arr
            m.paid_seats += o.paid.seats
            m.paid_firms += 1
        elif o.has_promo:
            m.stage_promo.firms += 1
            m.stage_promo.seats += o.promo.seats
        elif o.has_free:
            m.stage_free.firms += 1
            m.stage_free.seats += o.free.seats
    return m


@dataclass(frozen=True)
class ConversionMetrics:
    total_signed_up: int
    paid_us: int
    signup_to_paid_rate: float
    promo_pool: int
    promo_to_paid: int
    promo_to_paid_rate: float

    def to_dict(self) -> dict:
        return asdict(self)


def build_conversion_metrics(
    rollups: Iterable[OrgRollup], organizations: Iterable[Organization]
) -> ConversionMetrics:
    """Signup -> payment-confirmed and promo-eligible -> paid conversion."""
    signed_up = len({o.org_id for o in organizations if o.org_id})
    paid_us = promo_pool = promo_to_paid = 0
    for o in rollups:
        if o.has_paid_with_money_moved:
            paid_us += 1
        if o.has_promo_conversion_eligible:
            promo_pool += 1
            if o.has_paid_with_money_moved:
                promo_to_paid += 1
    return ConversionMetrics(
        total_signed_up=signed_up,
        paid_us=paid_us,
        signup_to_paid_rate=_rate(paid_us, signed_up),
        promo_pool=promo_pool,
        promo_to_paid=promo_to_paid,
        promo_to_paid_rate=_rate(promo_to_paid, promo_pool),
    )


CLEAN_CONVERSION_GRACE_DAYS = 7


@dataclass
class CohortConversion:
    """Conversion of the orgs that signed up in one month."""

    cohort_month: str
    orgs_signed_up: int = 0
    orgs_converted: int = 0
    orgs_converted_within_7d_trial_end: int = 0

    @property
    def conversion_rate(self) -> float:
        return _rate(self.orgs_converted, self.orgs_signed_up)

    @property
    def conversion_rate_within_7d_trial_end(self) -> float:
        return _rate(self.orgs_converted_within_7d_trial_end, self.orgs_signed_up)

    def to_row(self) -> dict:
        return {
            "cohort_month": self.cohort_month,
            "orgs_signed_up": self.orgs_signed_up,
            "orgs_converted": self.orgs_converted,
            "conversion_rate": self.conversion_rate,
            "orgs_converted_within_7d_trial_end": self.orgs_converted_within_7d_trial_end,
            "conversion_rate_within_7d_trial_end": self.conversion_rate_within_7d_trial_end,
        }


def paid_within_trial(rollup: OrgRollup, grace_days: int = CLEAN_CONVERSION_GRACE_DAYS) -> bool:
    """First payment between trial start and ``grace_days`` after trial end, inclusive."""
    if rollup.trial_start is None or rollup.trial_end is None or rollup.purchase_date is None:
        return False
    return rollup.trial_start <= rollup.purchase_date <= rollup.trial_end + timedelta(days=grace_days)


def conversion_by_cohort(
    rollups: Iterable[OrgRollup],
    organizations: Iterable[Organization],
    grace_days: int = CLEAN_CONVERSION_GRACE_DAYS,
) -> list[CohortConversion]:
    """Per signup month: orgs signed up, orgs with any subscription, and
    clean conversions (see ``paid_within_trial``). Orgs without a creation
    date belong to no cohort.
    """
    by_id = {r.org_id: r for r in rollups if r.org_id and not r.unmapped}
    cohorts: dict[str, CohortConversion] = {}
    seen: set[str] = set()
    for org in organizations:
        if not org.org_id or org.org_created_at is None or org.org_id in seen:
            continue
        seen.add(org.org_id)
        month = month_key(org.org_created_at)
        bucket = cohorts.setdefault(month, CohortConversion(month))
        bucket.orgs_signed_up += 1
        rollup = by_id.get(org.org_id)
        if rollup is None:
            continue
        if rollup.subscription_start_date is not None:
            bucket.orgs_converted += 1
        if paid_within_trial(rollup, grace_days):
            bucket.orgs_converted_within_7d_trial_end += 1
    return [cohorts[k] for k in sorted(cohorts)]
