"""Org Aggregator: fold subscription facts into one rollup per organization.

Every organization in the org table gets a rollup (stage Other until some
evidence arrives). Subscriptions that resolve to no organization still land
in a rollup, keyed by email, org name or subscription id, and flagged
``unmapped`` so the revenue stays visible.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger

from revenue_engine.coerce import month_key, normalize_email
from revenue_engine.identity import IdentityIndex, Resolution, Resolved, resolve
from revenue_engine.records import Bucket, Organization, PromoRedemption, SubscriptionFact
from revenue_engine.stages import Stage, classify
from revenue_engine.trial import STANDARD_TRIAL_DAYS, compute_trial_window


@dataclass
class StageTotals:
    arr: float = 0.0
    mrr: float = 0.0
    seats: int = 0
    subscription_count: int = 0

    def add(self, fact: SubscriptionFact) -> None:
        self.arr += fact.arr
        self.mrr += fact.mrr
        self.seats += fact.quantity
        self.subscription_count += 1


def _earliest(current: datetime | None, candidate: datetime | None) -> datetime | None:
    if candidate is None:
        return current
    if current is None or candidate < current:
        return candidate
    return current


@dataclass
class OrgRollup:
    org_key: str
    org_id: str = ""
    org_name: str = ""
    unmapped: bool = False
    customer_name: str = ""
    customer_email: str = ""
    owner_email: str = ""

    has_paid: bool = False
    has_promo: bool = False
    has_free: bool = False
    has_paid_with_money_moved: bool = False
    has_promo_evidence: bool = False
    has_free_promo_evidence: bool = False
    has_promo_conversion_eligible: bool = False
    has_manual_trial_extension: bool = False

    paid: StageTotals = field(default_factory=StageTotals)
    paid_true: StageTotals = field(default_factory=StageTotals)
    promo: StageTotals = field(default_factory=StageTotals)
    free: StageTotals = field(default_factory=StageTotals)

    subscription_ids: list[str] = field(default_factory=list)
    promo_codes: list[str] = field(default_factory=list)

    earliest_first_payment_at: datetime | None = None
    earliest_promo_trial_start: datetime | None = None
    earliest_free_trial_start: datetime | None = None

    promo_redemption_count: int = 0
    promo_redemption_codes: list[str] = field(default_factory=list)
    promo_last_redeemed_at: datetime | None = None

    org_created_at: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    trial_extended: bool = False

    primary_subscription_id: str = ""
    plan_name: str = ""
    billing_interval: str = ""
    current_period_end: datetime | None = None

    current_status: str = ""
    subscription_start_date: datetime | None = None
    purchase_date: datetime | None = None
    churn_date: datetime | None = None

    @property
    def stage(self) -> Stage:
        return classify(self.has_paid, self.has_promo, self.has_free)

    @property
    def arr_total(self) -> float:
        return self.paid.arr + self.promo.arr + self.free.arr

    @property
    def mrr_total(self) -> float:
        return self.paid.mrr + self.promo.mrr + self.free.mrr

    @property
    def seats_total(self) -> int:
        return self.paid.seats + self.promo.seats + self.free.seats

    @property
    def trial_cohort_month(self) -> str:
        return month_key(self.trial_start)

    @property
    def signup_cohort_month(self) -> str:
        return month_key(self.org_created_at)

    @property
    def subscription_cohort_month(self) -> str:
        return month_key(self.subscription_start_date)

    @property
    def paid_cohort_month(self) -> str:
        return month_key(self.purchase_date)

    def add(self, fact: SubscriptionFact) -> None:
        """Fold one bucketed fact into the rollup."""
        if fact.customer_name and not self.customer_name:
            self.customer_name = fact.customer_name
        if fact.id not in self.subscription_ids:
            self.subscription_ids.append(fact.id)
        if fact.promo_code and fact.promo_code not in self.promo_codes:
            self.promo_codes.append(fact.promo_code)
        if fact.has_promo_evidence:
            self.has_promo_evidence = True
        if fact.trial_extended_days > 0:
            self.has_manual_trial_extension = True
            self.has_promo_conversion_eligible = True

        bucket = fact.bucket
        if bucket is Bucket.PAID:
            self.has_paid = True
            self.paid.add(fact)
            if fact.first_payment_at is not None:
                self.has_paid_with_money_moved = True
                self.paid_true.add(fact)
                self.earliest_first_payment_at = _earliest(
                    self.earliest_first_payment_at, fact.first_payment_at
                )
        elif bucket is Bucket.PROMO_TRIAL:
            self.has_promo = True
            self.promo.add(fact)
            self.earliest_promo_trial_start = _earliest(
                self.earliest_promo_trial_start, fact.created_at
            )
        elif bucket is Bucket.FREE_TRIAL:
            self.has_free = True
            self.free.add(fact)
            self.earliest_free_trial_start = _earliest(
                self.earliest_free_trial_start, fact.created_at
            )
            if fact.has_promo_evidence:
                self.has_free_promo_evidence = True

    def apply_lifecycle(self, facts: Iterable[SubscriptionFact]) -> None:
        """Lifecycle dates across every subscription of the org, bucketed or not.

        The churn date is the latest period end (else cancellation) and is
        only set when no subscription is active. Courtesy accounts are ignored.
        """
        facts = [f for f in facts if not f.is_forever_free]
        if not facts:
            return
        for f in facts:
            self.subscription_start_date = _earliest(self.subscription_start_date, f.start_at)
            self.purchase_date = _earliest(self.purchase_date, f.first_payment_at)
        if any(f.status == "active" for f in facts):
            self.current_status = "active"
            return
        ends = [f.current_period_end or f.canceled_at for f in facts]
        ends = [e for e in ends if e is not None]
        self.churn_date = max(ends) if ends else None
        self.current_status = max(facts, key=_primary_order).status

    def apply_redemptions(self, redemptions: list[PromoRedemption]) -> None:
        if not redemptions:
            return
        self.has_promo_conversion_eligible = True
        self.has_promo_evidence = True
        self.promo_redemption_count = len(redemptions)
        for r in redemptions:
            if r.promo_code and r.promo_code not in self.promo_redemption_codes:
                self.promo_redemption_codes.append(r.promo_code)
            if r.redeemed_at is not None and (
                self.promo_last_redeemed_at is None or r.redeemed_at > self.promo_last_redeemed_at
            ):
                self.promo_last_redeemed_at = r.redeemed_at

    def to_row(self) -> dict:
        """Flat output row for the org rollup table."""
        return {
            "org_key": self.org_key,
            "org_id": self.org_id,
            "org_name": self.org_name,
            "unmapped": self.unmapped,
            "stage": self.stage.value,
            "owner_email": self.owner_email,
            "customer_email": self.customer_email,
            "customer_name": self.customer_name,
            "arr_total": round(self.arr_total, 2),
            "mrr_total": round(self.mrr_total, 2),
            "seats_total": self.seats_total,
            "paid_arr": round(self.paid.arr, 2),
            "paid_mrr": round(self.paid.mrr, 2),
            "paid_seats": self.paid.seats,
            "paid_subscriptions": self.paid.subscription_count,
            "paid_true_arr": round(self.paid_true.arr, 2),
            "paid_true_seats": self.paid_true.seats,
            "promo_arr": round(self.promo.arr, 2),
            "promo_seats": self.promo.seats,
            "free_arr": round(self.free.arr, 2),
            "free_seats": self.free.seats,
            "has_paid": self.has_paid,
            "has_promo": self.has_promo,
            "has_free": self.has_free,
            "has_paid_with_money_moved": self.has_paid_with_money_moved,
            "has_promo_evidence": self.has_promo_evidence,
            "has_promo_conversion_eligible": self.has_promo_conversion_eligible,
            "promo_codes": ", ".join(self.promo_codes),
            "promo_redemption_count": self.promo_redemption_count,
            "promo_redemption_codes": ", ".join(self.promo_redemption_codes),
            "promo_last_redeemed_at": self.promo_last_redeemed_at,
            "earliest_first_payment_at": self.earliest_first_payment_at,
            "earliest_promo_trial_start": self.earliest_promo_trial_start,
            "earliest_free_trial_start": self.earliest_free_trial_start,
            "org_created_at": self.org_created_at,
            "trial_start": self.trial_start,
            "trial_end": self.trial_end,
            "trial_extended": self.trial_extended,
            "trial_cohort_month": self.trial_cohort_month,
            "signup_cohort_month": self.signup_cohort_month,
            "current_status": self.current_status,
            "subscription_start_date": self.subscription_start_date,
            "purchase_date": self.purchase_date,
            "churn_date": self.churn_date,
            "subscription_cohort_month": self.subscription_cohort_month,
            "paid_cohort_month": self.paid_cohort_month,
            "primary_subscription_id": self.primary_subscription_id,
            "plan_name": self.plan_name,
            "billing_interval": self.billing_interval,
            "current_period_end": self.current_period_end,
            "subscription_ids": ", ".join(self.subscription_ids),
        }


@dataclass
class Aggregation:
    rollups: list[OrgRollup]
    facts_by_key: dict[str, list[SubscriptionFact]]
    resolutions: dict[str, Resolution] = field(default_factory=dict)

    def by_key(self) -> dict[str, OrgRollup]:
        return {r.org_key: r for r in self.rollups}

    @property
    def unmapped(self) -> list[OrgRollup]:
        return [r for r in self.rollups if r.unmapped]


def org_key_for(fact: SubscriptionFact, resolution: Resolution) -> str:
    """First non-empty of org id, email key, org name, subscription id."""
    org_id = resolution.org_id if isinstance(resolution, Resolved) else ""
    org_id = org_id or fact.org_id_hint
    if org_id:
        return f"org:{org_id}"
    email_key = normalize_email(resolution.email) or fact.email_key
    if email_key:
        return f"email:{email_key}"
    if fact.org_name_hint:
        return f"org_name:{fact.org_name_hint.lower()}"
    return f"sub:{fact.id}"


def _primary_order(fact: SubscriptionFact) -> tuple:
    # Sorted descending: active first, then latest period start, then latest creation.
    anchor = fact.current_period_start or fact.created_at
    return (fact.status == "active", anchor is not None, anchor or datetime.min)


def pick_primary(facts: Iterable[SubscriptionFact]) -> SubscriptionFact | None:
    """The subscription shown for plan and billing fields."""
    candidates = [f for f in facts if f.bucket is not None]
    if not candidates:
        return None
    return max(candidates, key=_primary_order)


def aggregate(
    facts: Iterable[SubscriptionFact],
    index: IdentityIndex,
    organizations: Iterable[Organization] = (),
    redemptions: Iterable[PromoRedemption] = (),
    standard_days: int = STANDARD_TRIAL_DAYS,
) -> Aggregation:
    """Build org rollups from normalized facts.

    Seats and ARR sum across every bucketed subscription of an org; the
    primary subscription only drives the plan and billing display fields.
    """
    rollups: dict[str, OrgRollup] = {}
    for org in organizations:
        rollups[f"org:{org.org_id}"] = OrgRollup(
            org_key=f"org:{org.org_id}",
            org_id=org.org_id,
            org_name=org.org_name,
            org_created_at=org.org_created_at,
        )

    facts_by_key: dict[str, list[SubscriptionFact]] = defaultdict(list)
    resolutions: dict[str, Resolution] = {}

    for fact in facts:
        resolution = resolve(index, fact)
        resolutions[fact.id] = resolution
        key = org_key_for(fact, resolution)
        facts_by_key[key].append(fact)

        if fact.is_forever_free or fact.bucket is None:
            continue

        rollup = rollups.get(key)
        if rollup is None:
            org_id = key[len("org:"):] if key.startswith("org:") else ""
            rollup = OrgRollup(
                org_key=key,
                org_id=org_id,
                org_name=(
                    resolution.org_name if isinstance(resolution, Resolved) else ""
                ) or fact.org_name_hint,
                unmapped=not key.startswith("org:"),
            )
            rollups[key] = rollup
        if not rollup.customer_email:
            rollup.customer_email = resolution.email or fact.customer_email
        if resolution.display_name and not rollup.customer_name:
            rollup.customer_name = resolution.display_name
        rollup.add(fact)

    redemptions_by_org: dict[str, list[PromoRedemption]] = defaultdict(list)
    for r in redemptions:
        redemptions_by_org[r.org_id].append(r)

    for key, rollup in rollups.items():
        if rollup.org_id:
            rollup.apply_redemptions(redemptions_by_org.get(rollup.org_id, []))
            rollup.owner_email = index.owner_email(rollup.org_id)

        rollup.apply_lifecycle(facts_by_key.get(key, ()))
        primary = pick_primary(facts_by_key.get(key, ()))
        if primary is not None:
            rollup.primary_subscription_id = primary.id
            rollup.plan_name = primary.plan_name
            rollup.billing_interval = primary.interval.value
            rollup.current_period_end = primary.current_period_end

        rollup.trial_start = rollup.org_created_at or _earliest(
            rollup.earliest_promo_trial_start, rollup.earliest_free_trial_start
        )
        window = compute_trial_window(rollup.trial_start, facts_by_key.get(key, ()), standard_days)
        if window is not None:
            rollup.trial_end = window.trial_end
            rollup.trial_extended = window.extended

    ordered = sorted(
        rollups.values(),
        key=lambda r: (-r.arr_total, r.org_name.lower(), r.org_key),
    )
    unmapped = sum(1 for r in ordered if r.unmapped)
    if unmapped:
        logger.warning("{n} rollup(s) could not be mapped to an organization", n=unmapped)
    logger.info(
        "Aggregated {facts} subscription(s) into {orgs} org rollup(s)",
        facts=sum(len(v) for v in facts_by_key.values()),
        orgs=len(ordered),
    )
    return Aggregation(rollups=ordered, facts_by_key=dict(facts_by_key), resolutions=resolutions)
