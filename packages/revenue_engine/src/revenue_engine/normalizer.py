"""Record Normalizer: raw table rows -> immutable typed facts.

Every function takes a DataFrame whose columns were already resolved by
``column_map.resolve_columns`` and returns ``(records, NormalizeStats)``.
Bad cells are coerced to safe defaults; rows without their key are skipped
and counted, never fatal.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

import pandas as pd
from loguru import logger

from revenue_engine.coerce import (
    to_bool,
    to_date,
    to_datetime,
    to_int,
    to_money,
    to_num,
    to_str,
)
from revenue_engine.records import (
    DiscountDuration,
    Interval,
    ManualChange,
    Membership,
    Organization,
    PromoRedemption,
    Role,
    SnapshotRow,
    SubscriptionFact,
    UserIdentity,
)

YEARLY_INTERVALS = {"year", "yearly", "annual", "annually", "yr"}
_FALSY_TEXT = {"false", "0", "no", "n", "none", "null"}

DEFAULT_EXCLUDED_TERMS = ("internal", "testing", "duplicate")
DEFAULT_FREE_SEAT_TERM = "free seat"


@dataclass
class NormalizeStats:
    """Row accounting for one table."""

    table: str
    rows_in: int = 0
    kept: int = 0
    excluded_flag: int = 0
    excluded_manual: int = 0
    skipped_malformed: int = 0

    @property
    def dropped(self) -> int:
        return self.excluded_flag + self.excluded_manual + self.skipped_malformed


@dataclass(frozen=True)
class SeatCredit:
    monthly: float = 30.0
    yearly: float = 288.0


@dataclass(frozen=True)
class ManualRules:
    excluded_terms: tuple[str, ...] = DEFAULT_EXCLUDED_TERMS
    free_seat_term: str = DEFAULT_FREE_SEAT_TERM
    seat_credit: SeatCredit = field(default_factory=SeatCredit)

    def is_excluded(self, reason: str) -> bool:
        return any(term in reason for term in self.excluded_terms)

    def is_free_seat(self, reason: str) -> bool:
        return bool(self.free_seat_term) and self.free_seat_term in reason


def _rows(df: pd.DataFrame | None) -> Iterator[Mapping[str, Any]]:
    if df is None or df.empty:
        return iter(())
    return iter(df.to_dict("records"))


def parse_interval(value: Any) -> Interval:
    """``year``/``annual``/``yr`` and friends -> YEAR; anything else -> MONTH."""
    return Interval.YEAR if to_str(value).lower() in YEARLY_INTERVALS else Interval.MONTH


def parse_discount_duration(value: Any, months: float = 0.0) -> DiscountDuration:
    text = to_str(value).lower()
    if text == "forever":
        return DiscountDuration.FOREVER
    if text == "once":
        return DiscountDuration.ONCE
    if text in ("repeating", "numbered") or months > 0:
        return DiscountDuration.NUMBERED
    return DiscountDuration.NONE


def has_payment_method(value: Any) -> bool:
    """Boolean flag, or a payment-method id string (``pm_...``) meaning yes."""
    if to_bool(value):
        return True
    text = to_str(value).lower()
    return bool(text) and text not in _FALSY_TEXT


def apply_seat_credit(amount: float, interval: Interval, quantity: int, credit: SeatCredit) -> float:
    """Subtract the per-seat credit for free seats, floored at zero."""
    if quantity <= 0:
        return amount
    per_seat = credit.yearly if interval is Interval.YEAR else credit.monthly
    return round(max(0.0, amount - per_seat * quantity), 2)


def normalize_manual_changes(df: pd.DataFrame | None) -> tuple[dict[str, ManualChange], NormalizeStats]:
    """Index manual changes by subscription id. The first row per id wins."""
    stats = NormalizeStats("manual_changes")
    out: dict[str, ManualChange] = {}
    for row in _rows(df):
        stats.rows_in += 1
        sub_id = to_str(row.get("subscription_id"))
        if not sub_id:
            stats.skipped_malformed += 1
            continue
        if sub_id in out:
            continue
        reason = ""
        for col in ("cancel_reason", "exclude_reason", "free_seat_note"):
            reason = to_str(row.get(col)).lower()
            if reason:
                break
        out[sub_id] = ManualChange(
            subscription_id=sub_id,
            reason=reason,
            quantity=to_int(row.get("quantity")),
            trial_extended_days=to_int(row.get("trial_extended")),
        )
        stats.kept += 1
    return out, stats


def normalize_subscriptions(
    df: pd.DataFrame,
    manual_changes: Mapping[str, ManualChange] | None = None,
    rules: ManualRules | None = None,
) -> tuple[list[SubscriptionFact], NormalizeStats]:
    """Parse subscription rows, applying hard filters and free-seat credits.

    Rows flagged ``exclude_from_ring`` or carrying a manual reason with an
    excluded term are dropped before anything else looks at them.
    """
    manual_changes = manual_changes or {}
    rules = rules or ManualRules()
    stats = NormalizeStats("subscriptions")
    facts: list[SubscriptionFact] = []

    for row in _rows(df):
        stats.rows_in += 1
        sub_id = to_str(row.get("subscription_id"))
        if not sub_id:
            stats.skipped_malformed += 1
            continue
        if to_bool(row.get("exclude_from_ring")):
            stats.excluded_flag += 1
            continue

        manual = manual_changes.get(sub_id)
        reason = manual.reason if manual else ""
        if reason and rules.is_excluded(reason):
            stats.excluded_manual += 1
            continue

        interval = parse_interval(row.get("interval"))
        raw_amount = to_money(row.get("amount"))
        amount = raw_amount
        if manual and rules.is_free_seat(reason):
            amount = apply_seat_credit(raw_amount, interval, manual.quantity, rules.seat_credit)

        months = to_num(row.get("discount_duration_months"))
        facts.append(
            SubscriptionFact(
                id=sub_id,
                status=to_str(row.get("status")).lower(),
                interval=interval,
                interval_count=max(1, to_int(row.get("interval_count"))),
                amount=amount,
                raw_amount=raw_amount,
                quantity=to_int(row.get("quantity")),
                discount_percent=min(100.0, max(0.0, to_num(row.get("discount_percent")))),
                discount_duration=parse_discount_duration(row.get("discount_duration"), months),
                discount_duration_months=max(0.0, months),
                created_at=to_datetime(row.get("created_at")),
                first_payment_at=to_datetime(row.get("first_payment_at")),
                current_period_start=to_datetime(row.get("current_period_start")),
                current_period_end=to_datetime(row.get("current_period_end")),
                canceled_at=to_datetime(row.get("canceled_at")),
                customer_email=to_str(row.get("customer_email")),
                customer_name=to_str(row.get("customer_name")),
                has_payment_method=has_payment_method(row.get("has_payment_method")),
                promo_code=to_str(row.get("promo_code")),
                org_id_hint=to_str(row.get("org_id")),
                org_name_hint=to_str(row.get("org_name")),
                plan_name=to_str(row.get("plan_name")),
                trial_extended_days=manual.trial_extended_days if manual else 0,
            )
        )
        stats.kept += 1

    logger.debug(
        "Subscriptions: {kept}/{rows} kept ({flag} flagged, {manual} manual, {bad} malformed)",
        kept=stats.kept,
        rows=stats.rows_in,
        flag=stats.excluded_flag,
        manual=stats.excluded_manual,
        bad=stats.skipped_malformed,
    )
    return facts, stats


def normalize_organizations(df: pd.DataFrame) -> tuple[list[Organization], NormalizeStats]:
    stats = NormalizeStats("organizations")
    orgs: list[Organization] = []
    seen: set[str] = set()
    for row in _rows(df):
        stats.rows_in += 1
        org_id = to_str(row.get("org_id"))
        if not org_id or org_id in seen:
            stats.skipped_malformed += 1
            continue
        seen.add(org_id)
        orgs.append(
            Organization(
                org_id=org_id,
                org_name=to_str(row.get("org_name")),
                org_created_at=to_datetime(row.get("created_at")),
            )
        )
        stats.kept += 1
    return orgs, stats


def normalize_memberships(df: pd.DataFrame) -> tuple[list[Membership], NormalizeStats]:
    stats = NormalizeStats("memberships")
    members: list[Membership] = []
    for row in _rows(df):
        stats.rows_in += 1
        org_id = to_str(row.get("org_id"))
        user_identity = to_str(row.get("user_identity"))
        email = to_str(row.get("email"))
        if not org_id or not (user_identity or email):
            stats.skipped_malformed += 1
            continue
        members.append(
            Membership(
                org_id=org_id,
                user_identity=user_identity,
                email=email,
                role=Role.parse(to_str(row.get("role"))),
                created_at=to_datetime(row.get("created_at")),
            )
        )
        stats.kept += 1
    return members, stats


def normalize_users(df: pd.DataFrame) -> tuple[list[UserIdentity], NormalizeStats]:
    stats = NormalizeStats("users")
    users: list[UserIdentity] = []
    for row in _rows(df):
        stats.rows_in += 1
        user_identity = to_str(row.get("user_identity"))
        email = to_str(row.get("email"))
        if not user_identity and not email:
            stats.skipped_malformed += 1
            continue
        users.append(
            UserIdentity(
                user_identity=user_identity,
                email=email,
                name=to_str(row.get("name")),
                org_id=to_str(row.get("org_id")),
                subscription_id=to_str(row.get("subscription_id")),
            )
        )
        stats.kept += 1
    return users, stats


def normalize_snapshots(df: pd.DataFrame | None) -> tuple[list[SnapshotRow], NormalizeStats]:
    """ARR history rows; negative ARR is clamped to zero."""
    stats = NormalizeStats("arr_snapshot")
    rows: list[SnapshotRow] = []
    for row in _rows(df):
        stats.rows_in += 1
        snapshot_date = to_date(row.get("snapshot_date"))
        org_id = to_str(row.get("org_id"))
        if snapshot_date is None or not org_id:
            stats.skipped_malformed += 1
            continue
        rows.append(
            SnapshotRow(
                snapshot_date=snapshot_date,
                org_id=org_id,
                bom_arr=max(0.0, to_money(row.get("bom_arr"))),
                eom_arr=max(0.0, to_money(row.get("eom_arr"))),
                org_name=to_str(row.get("org_name")),
                cohort_month=to_str(row.get("cohort_month")),
            )
        )
        stats.kept += 1
    return rows, stats


def normalize_redemptions(df: pd.DataFrame | None) -> tuple[list[PromoRedemption], NormalizeStats]:
    stats = NormalizeStats("promo_redemptions")
    out: list[PromoRedemption] = []
    for row in _rows(df):
        stats.rows_in += 1
        org_id = to_str(row.get("org_id"))
        if not org_id:
            stats.skipped_malformed += 1
            continue
        out.append(
            PromoRedemption(
                org_id=org_id,
                redeemed_at=to_datetime(row.get("redeemed_at")),
                promo_code=to_str(row.get("promo_code")),
            )
        )
        stats.kept += 1
    return out, stats


def summarize(stats: Iterable[NormalizeStats]) -> dict[str, dict[str, int]]:
    """Stats as plain dicts, keyed by table, for run records and the CLI."""
    return {
        s.table: {
            "rows_in": s.rows_in,
            "kept": s.kept,
            "excluded_flag": s.excluded_flag,
            "excluded_manual": s.excluded_manual,
            "skipped_malformed": s.skipped_malformed,
        }
        for s in stats
    }
