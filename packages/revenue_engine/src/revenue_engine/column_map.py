"""Per-table column aliases and required column definitions.

Headers are normalised to snake_case and mapped to canonical names exactly
once, when a table is loaded. Nothing downstream of the normalizer guesses
field names.
"""

from __future__ import annotations

import re

import pandas as pd

from revenue_engine.exceptions import ColumnMismatchError

REQUIRED_TABLES = ("subscriptions", "organizations", "memberships", "users")
OPTIONAL_TABLES = ("arr_snapshot", "promo_redemptions", "manual_changes")

REQUIRED_COLUMNS: dict[str, set[str]] = {
    "subscriptions": {
        "subscription_id",
        "status",
        "interval",
        "interval_count",
        "amount",
        "quantity",
        "discount_percent",
        "discount_duration",
        "discount_duration_months",
        "created_at",
        "first_payment_at",
        "current_period_start",
        "current_period_end",
        "canceled_at",
        "customer_email",
    },
    "organizations": {"org_id", "org_name", "created_at"},
    "memberships": {"org_id", "user_identity", "email", "role", "created_at"},
    "users": {"user_identity", "email"},
    "arr_snapshot": {"snapshot_date", "org_id", "bom_arr", "eom_arr"},
    "promo_redemptions": {"org_id", "redeemed_at", "promo_code"},
    "manual_changes": {"subscription_id"},
}

# canonical name -> accepted headers, in priority order. When a table carries
# several headers for the same canonical name the first listed one wins.
COLUMN_ALIASES: dict[str, dict[str, tuple[str, ...]]] = {
    "subscriptions": {
        "subscription_id": ("subscription_id", "stripe_subscription_id", "id", "sub_id"),
        "status": ("status", "subscription_status"),
        "interval": ("interval", "billing_interval", "plan_interval"),
        "interval_count": ("interval_count", "plan_interval_count"),
        "amount": ("amount", "plan_amount", "unit_amount", "price"),
        "quantity": ("quantity", "quantity_total", "seats"),
        "discount_percent": ("discount_percent", "percent_off", "coupon_percent_off"),
        "discount_duration": ("discount_duration", "coupon_duration", "duration"),
        "discount_duration_months": (
            "discount_duration_months",
            "coupon_duration_in_months",
            "duration_in_months",
        ),
        "created_at": ("created_at", "created", "subscription_created_at"),
        "first_payment_at": ("first_payment_at", "first_paid_at", "first_invoice_paid_at"),
        "current_period_start": ("current_period_start", "period_start"),
        "current_period_end": ("current_period_end", "period_end"),
        "canceled_at": ("canceled_at", "cancelled_at"),
        "customer_email": ("customer_email", "billing_email", "email"),
        "customer_name": ("customer_name", "name"),
        "has_payment_method": (
            "has_payment_method",
            "default_payment_method",
            "payment_method",
        ),
        "promo_code": ("promo_code", "promotion_code", "coupon_code", "coupon"),
        "org_id": ("org_id", "metadata_org_id", "clerk_org_id"),
        "org_name": ("org_name", "metadata_org_name"),
        "plan_name": ("plan_name", "product_name", "plan"),
        "exclude_from_ring": ("exclude_from_ring", "metadata_exclude_from_ring"),
    },
    "organizations": {
        "org_id": ("org_id", "clerk_org_id", "organization_id", "id"),
        "org_name": ("org_name", "organization_name", "name"),
        "created_at": ("created_at", "org_created_at", "created"),
    },
    "memberships": {
        "org_id": ("org_id", "clerk_org_id", "organization_id"),
        "user_identity": ("user_identity", "user_id", "clerk_user_id"),
        "email": ("email", "user_email", "email_address"),
        "role": ("role", "membership_role"),
        "created_at": ("created_at", "joined_at"),
    },
    "users": {
        "user_identity": ("user_identity", "user_id", "clerk_user_id", "id"),
        "email": ("email", "email_address", "primary_email"),
        "name": ("name", "full_name", "display_name"),
        "org_id": ("org_id", "clerk_org_id", "organization_id"),
        "subscription_id": ("subscription_id", "stripe_subscription_id"),
    },
    "arr_snapshot": {
        "snapshot_date": ("snapshot_date", "date", "month"),
        "org_id": ("org_id", "clerk_org_id"),
        "bom_arr": ("bom_arr", "bom"),
        "eom_arr": ("eom_arr", "eom", "arr"),
        "org_name": ("org_name", "name"),
        "cohort_month": ("cohort_month", "trial_cohort", "cohort"),
    },
    "promo_redemptions": {
        "org_id": ("org_id", "clerk_org_id"),
        "redeemed_at": ("redeemed_at", "created_at", "timestamp"),
        "promo_code": ("promo_code", "code", "coupon"),
    },
    "manual_changes": {
        "subscription_id": ("subscription_id", "stripe_subscription_id", "sub_id"),
        "cancel_reason": ("cancel_reason",),
        "exclude_reason": ("exclude_reason",),
        "free_seat_note": ("free_seats", "free_seat", "free_seat_reason"),
        "quantity": ("quantity", "free_seats_quantity"),
        "trial_extended": ("trial_extended", "trial_extended_days"),
    },
}

_SEPARATORS = re.compile(r"[\s\-]+")


def normalize_header(header: object) -> str:
    """``" Customer Email "`` -> ``customer_email``."""
    return _SEPARATORS.sub("_", str(header).strip().lower())


def resolve_columns(df: pd.DataFrame, table: str) -> pd.DataFrame:
    """Rename columns of ``table`` to canonical names.

    Returns a new DataFrame holding only the canonical columns that were
    found. Raises ColumnMismatchError if required columns are missing.
    """
    aliases = COLUMN_ALIASES[table]
    by_header = {normalize_header(col): col for col in reversed(list(df.columns))}

    rename_map: dict[object, str] = {}
    for canonical, candidates in aliases.items():
        for candidate in candidates:
            col = by_header.get(candidate)
            if col is not None and col not in rename_map:
                rename_map[col] = canonical
                break

    result = df[list(rename_map)].rename(columns=rename_map)

    resolved = set(result.columns)
    missing = REQUIRED_COLUMNS[table] - resolved
    if missing:
        raise ColumnMismatchError(
            table, missing=missing, available={normalize_header(c) for c in df.columns}
        )
    return result
