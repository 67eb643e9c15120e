"""Invariants checked over seeded random inputs."""

from __future__ import annotations

import random
from datetime import date, datetime, timedelta, timezone

import pytest

from revenue_engine.aggregator import aggregate
from revenue_engine.coerce import normalize_email
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
from revenue_engine.retention import compute_retention
from revenue_engine.snapshot import build_snapshot_rows, new_rows_only
from revenue_engine.stages import Stage
from revenue_engine.trial import compute_trial_window
from revenue_engine.waterfall import Metric, by_cohort, decompose, latest_facts

SEEDS = range(5)
BASE = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _random_world(rng: random.Random):
    orgs = [Organization(f"org_{i}", f"Org {i}", BASE + timedelta(days=rng.randint(0, 90))) for i in range(8)]
    users = [UserIdentity(f"u_{i}", f"user{i}@corp.io", org_id=f"org_{i}") for i in range(8)]
    memberships = [
        Membership(f"org_{i}", f"u_{i}", f"user{i}@corp.io", rng.choice(list(Role)), BASE) for i in range(8)
    ]
    facts = []
    for n in range(40):
        who = rng.randint(0, 11)  # 8..11 are strangers
        facts.append(
            SubscriptionFact(
                id=f"sub_{n}",
                status=rng.choice(["active", "trialing", "canceled", "past_due"]),
                interval=rng.choice(list(Interval)),
                amount=float(rng.randint(0, 5000)),
                quantity=rng.randint(0, 10),
                discount_percent=rng.choice([0.0, 25.0, 100.0]),
                discount_duration=rng.choice(list(DiscountDuration)),
                discount_duration_months=float(rng.choice([0, 1, 2, 3, 6])),
                created_at=BASE + timedelta(days=rng.randint(0, 120)),
                customer_email=f"User{who}+tag@Corp.io",
                has_payment_method=rng.random() < 0.5,
            )
        )
    return orgs, users, memberships, facts


def _random_history(rng: random.Random) -> list[SnapshotRow]:
    rows = []
    for month in (4, 5, 6):
        for i in range(10):
            rows.append(
                SnapshotRow(
                    date(2025, month, 1),
                    f"org_{i}",
                    float(rng.choice([0, rng.randint(1, 3000)])),
                    float(rng.choice([0, rng.randint(1, 3000)])),
                    cohort_month=rng.choice(["", "2025-01", "2025-02"]),
                )
            )
    return rows


@pytest.mark.parametrize("seed", SEEDS)
def test_stage_exclusive_and_totals_additive(seed):
    orgs, users, memberships, facts = _random_world(random.Random(seed))
    result = aggregate(facts, IdentityIndex(users, memberships, orgs), orgs)
    for r in result.rollups:
        matches = [
            r.has_paid,
            not r.has_paid and r.has_promo,
            not r.has_paid and not r.has_promo and r.has_free,
            not (r.has_paid or r.has_promo or r.has_free),
        ]
        assert matches.count(True) == 1
        assert r.stage in set(Stage)
        assert r.arr_total == pytest.approx(r.paid.arr + r.promo.arr + r.free.arr)


@pytest.mark.parametrize("seed", SEEDS)
def test_forever_free_never_counted(seed):
    orgs, users, memberships, facts = _random_world(random.Random(seed))
    index = IdentityIndex(users, memberships, orgs)
    counted = aggregate([f for f in facts if not f.is_forever_free], index, orgs)
    with_free = aggregate(facts, index, orgs)
    assert sum(r.arr_total for r in with_free.rollups) == pytest.approx(
        sum(r.arr_total for r in counted.rollups)
    )
    assert sum(r.mrr_total for r in with_free.rollups) == pytest.approx(
        sum(r.mrr_total for r in counted.rollups)
    )


@pytest.mark.parametrize("seed", SEEDS)
def test_waterfall_reconciles(seed):
    history = _random_history(random.Random(seed))
    for row in history:
        amounts = {f.metric: f.amount for f in decompose(row)}
        assert amounts[Metric.EOM] == pytest.approx(
            amounts[Metric.SOM] + amounts[Metric.UPGRADE] - amounts[Metric.DOWNGRADE] - amounts[Metric.CHURN]
        )
    assert all(b.reconciles for b in by_cohort(latest_facts(history)))


@pytest.mark.parametrize("seed", SEEDS)
def test_retention_rates_bounded(seed):
    summary = compute_retention(_random_history(random.Random(seed)))
    assert 0.0 <= summary.grr <= 1.0
    assert 0.0 <= summary.logo_churn_rate <= 1.0
    assert summary.full_arr_churn_rate <= summary.gross_arr_churn_rate + 1e-9


@pytest.mark.parametrize("seed", SEEDS)
def test_trial_never_shorter_than_standard(seed):
    orgs, _, _, facts = _random_world(random.Random(seed))
    for org in orgs:
        window = compute_trial_window(org.org_created_at, facts)
        assert window.trial_end >= window.standard_end


@pytest.mark.parametrize("seed", SEEDS)
def test_snapshot_append_idempotent(seed):
    rng = random.Random(seed)
    orgs, users, memberships, facts = _random_world(rng)
    history = _random_history(rng)
    rollups = aggregate(facts, IdentityIndex(users, memberships, orgs), orgs).rollups
    candidates = build_snapshot_rows(rollups, date(2025, 7, 1), history)
    first = new_rows_only(history, candidates)
    second = new_rows_only(history + first, candidates)
    assert second == []
    keys = [r.key for r in history + first]
    assert len(keys) == len(set(keys))


@pytest.mark.parametrize(
    "raw",
    ["User+Test@Example.com", "user@example.com", " USER@example.COM ", "user+a+b@Example.com"],
)
def test_email_join_stable(raw):
    assert normalize_email(raw) == "user@example.com"
