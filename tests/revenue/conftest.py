"""Shared fixtures for revenue_engine tests."""

from __future__ import annotations

from datetime import date, datetime, timezone
from pathlib import Path

import pandas as pd
import pytest

from revenue_engine.config import EngineSettings
from revenue_engine.identity import IdentityIndex
from revenue_engine.records import (
    DiscountDuration,
    Interval,
    Membership,
    Organization,
    Role,
    SnapshotRow,
    SubscriptionFact,
    UserIdentity,
)


def utc(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, tzinfo=timezone.utc)


@pytest.fixture()
def make_fact():
    """Factory for SubscriptionFact with sensible paid-monthly defaults."""

    def _make(id: str = "sub_1", **overrides) -> SubscriptionFact:
        fields = {
            "id": id,
            "status": "active",
            "interval": Interval.MONTH,
            "amount": 100.0,
            "raw_amount": overrides.get("amount", 100.0),
            "quantity": 1,
            "created_at": utc(2025, 1, 5),
            "customer_email": "owner@acme.com",
        }
        fields.update(overrides)
        return SubscriptionFact(**fields)

    return _make


@pytest.fixture()
def organizations() -> list[Organization]:
    return [
        Organization("org_acme", "Acme", utc(2025, 1, 1)),
        Organization("org_beta", "Beta", utc(2025, 2, 10)),
        Organization("org_idle", "Idle Co", utc(2025, 3, 1)),
    ]


@pytest.fixture()
def memberships() -> list[Membership]:
    return [
        Membership("org_acme", "user_owner", "owner@acme.com", Role.OWNER, utc(2025, 1, 1)),
        Membership("org_acme", "user_member", "member@acme.com", Role.MEMBER, utc(2025, 1, 3)),
        Membership("org_beta", "user_beta", "Admin+Billing@Beta.io", Role.ADMIN, utc(2025, 2, 10)),
        Membership("org_idle", "user_idle", "idle@idle.co", Role.OWNER, utc(2025, 3, 1)),
    ]


@pytest.fixture()
def users() -> list[UserIdentity]:
    return [
        UserIdentity("user_owner", "owner@acme.com", "Olive Owner", "org_acme"),
        UserIdentity("user_member", "member@acme.com", "Max Member", "org_acme"),
        UserIdentity("user_beta", "admin@beta.io", "Bea Admin", "org_beta"),
        UserIdentity("user_idle", "idle@idle.co", "Ida Idle", "org_idle"),
    ]


@pytest.fixture()
def index(users, memberships, organizations) -> IdentityIndex:
    return IdentityIndex(users, memberships, organizations)


@pytest.fixture()
def forever_free(make_fact):
    return make_fact(
        "sub_free",
        amount=500.0,
        discount_percent=100.0,
        discount_duration=DiscountDuration.FOREVER,
    )


@pytest.fixture()
def snapshot_rows() -> list[SnapshotRow]:
    return [
        SnapshotRow(date(2025, 5, 1), "org_a", 1000.0, 1000.0, "A", "2025-01"),
        SnapshotRow(date(2025, 6, 1), "org_a", 1000.0, 0.0, "A", "2025-01"),
    ]


# ---------------------------------------------------------------------------
# Raw tables, as they arrive from the export files
# ---------------------------------------------------------------------------

SUBSCRIPTION_COLUMNS = [
    "id",
    "status",
    "interval",
    "interval_count",
    "amount",
    "quantity_total",
    "discount_percent",
    "discount_duration",
    "discount_duration_months",
    "created_at",
    "first_payment_at",
    "current_period_start",
    "current_period_end",
    "canceled_at",
    "customer_email",
    "has_payment_method",
    "promo_code",
    "exclude_from_ring",
]


@pytest.fixture()
def raw_subscriptions() -> pd.DataFrame:
    rows = [
        # Acme pays yearly, money has moved
        ["sub_acme", "active", "year", "1", "$1,200.00", "3", "", "", "", "2025-01-05",
         "2025-01-05", "2025-01-05", "2026-01-05", "", "Owner@Acme.com", "pm_123", "", ""],
        # Beta on a promo trial with a card on file
        ["sub_beta", "trialing", "month", "1", "50", "2", "100", "repeating", "3", "2025-02-12",
         "", "2025-02-12", "2025-03-12", "", "admin+billing@beta.io", "true", "LAUNCH", ""],
        # Internal test account, flagged out
        ["sub_flagged", "active", "month", "1", "999", "1", "", "", "", "2025-01-01",
         "2025-01-01", "", "", "", "qa@acme.com", "", "", "YES"],
        # Courtesy account, 100% forever
        ["sub_courtesy", "active", "month", "1", "80", "1", "100", "forever", "", "2025-01-01",
         "", "", "", "", "friend@nowhere.com", "", "", ""],
        # Unknown customer, free trial
        ["sub_orphan", "trialing", "month", "1", "20", "1", "", "", "", "2025-04-01",
         "", "", "", "", "stray@unknown.org", "", "", ""],
        # Malformed: no id
        ["", "active", "month", "1", "10", "1", "", "", "", "2025-01-01",
         "", "", "", "", "x@y.z", "", "", ""],
    ]
    return pd.DataFrame(rows, columns=SUBSCRIPTION_COLUMNS)


@pytest.fixture()
def raw_organizations() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "Org ID": ["org_acme", "org_beta", "org_idle"],
            "Org Name": ["Acme", "Beta", "Idle Co"],
            "Created At": ["2025-01-01", "2025-02-10", "2025-03-01"],
        }
    )


@pytest.fixture()
def raw_memberships() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "org_id": ["org_acme", "org_acme", "org_beta", "org_idle"],
            "user_id": ["user_owner", "user_member", "user_beta", "user_idle"],
            "email": ["owner@acme.com", "member@acme.com", "admin@beta.io", "idle@idle.co"],
            "role": ["org:owner", "org:member", "org:admin", "owner"],
            "created_at": ["2025-01-01", "2025-01-03", "2025-02-10", "2025-03-01"],
        }
    )


@pytest.fixture()
def raw_users() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "user_id": ["user_owner", "user_member", "user_beta", "user_idle"],
            "email": ["owner@acme.com", "member@acme.com", "admin@beta.io", "idle@idle.co"],
            "name": ["Olive Owner", "Max Member", "Bea Admin", "Ida Idle"],
            "org_id": ["org_acme", "org_acme", "org_beta", "org_idle"],
        }
    )


@pytest.fixture()
def raw_snapshots() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "snapshot_date": ["2025-05-01", "2025-06-01", "2025-06-01"],
            "org_id": ["org_acme", "org_acme", "org_gone"],
            "bom_arr": ["1200", "1200", "600"],
            "eom_arr": ["1200", "1500", "0"],
        }
    )


@pytest.fixture()
def input_dir(
    tmp_path: Path,
    raw_subscriptions,
    raw_organizations,
    raw_memberships,
    raw_users,
    raw_snapshots,
) -> Path:
    """Directory of CSV exports, one file per table."""
    d = tmp_path / "input"
    d.mkdir()
    raw_subscriptions.to_csv(d / "subscriptions.csv", index=False)
    raw_organizations.to_csv(d / "organizations.csv", index=False)
    raw_memberships.to_csv(d / "memberships.csv", index=False)
    raw_users.to_csv(d / "users.csv", index=False)
    raw_snapshots.to_csv(d / "arr_snapshot.csv", index=False)
    pd.DataFrame(
        {"org_id": ["org_beta"], "redeemed_at": ["2025-02-12"], "promo_code": ["LAUNCH"]}
    ).to_csv(d / "promo_redemptions.csv", index=False)
    pd.DataFrame(
        {"subscription_id": ["sub_acme"], "free_seats": ["1 free seat for founder"], "quantity": ["1"]}
    ).to_csv(d / "manual_changes.csv", index=False)
    return d


@pytest.fixture()
def engine_settings(input_dir: Path, tmp_path: Path) -> EngineSettings:
    return EngineSettings(
        as_of=date(2025, 7, 1),
        paths={"input_dir": input_dir, "output_dir": tmp_path / "output"},
        lock={"timeout_seconds": 1, "poll_seconds": 0.05},
    )
