"""Tests for revenue_engine.trial."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from revenue_engine.trial import add_months, compute_trial_window


def utc(year, month, day):
    return datetime(year, month, day, tzinfo=timezone.utc)


START = utc(2025, 1, 1)


@pytest.fixture()
def free_months(make_fact):
    def _make(id="sub_ext", created=utc(2025, 1, 5), months=3.0, percent=100.0):
        return make_fact(
            id,
            status="trialing",
            created_at=created,
            discount_percent=percent,
            discount_duration_months=months,
        )

    return _make


class TestStandardWindow:
    def test_unknown_start(self):
        assert compute_trial_window(None, []) is None

    def test_fourteen_days(self):
        window = compute_trial_window(START, [])
        assert window.standard_end == utc(2025, 1, 15)
        assert window.trial_end == utc(2025, 1, 15)
        assert not window.extended

    def test_custom_length(self):
        assert compute_trial_window(START, [], standard_days=30).trial_end == utc(2025, 1, 31)


class TestExtension:
    def test_free_months_extend(self, free_months):
        window = compute_trial_window(START, [free_months()])
        assert window.trial_end == utc(2025, 4, 5)
        assert window.extension_subscription_id == "sub_ext"
        assert window.extended

    def test_start_on_window_boundary_counts(self, free_months):
        window = compute_trial_window(START, [free_months(created=utc(2025, 1, 15), months=1)])
        assert window.trial_end == utc(2025, 2, 15)

    def test_start_after_window_ignored(self, free_months):
        window = compute_trial_window(START, [free_months(created=utc(2025, 2, 1))])
        assert window.trial_end == utc(2025, 1, 15)

    def test_start_before_trial_ignored(self, free_months):
        window = compute_trial_window(START, [free_months(created=utc(2024, 12, 31))])
        assert not window.extended

    @pytest.mark.parametrize("months", [0.0, 0.5, float("nan"), -2.0])
    def test_less_than_one_month_ignored(self, free_months, months):
        assert not compute_trial_window(START, [free_months(months=months)]).extended

    def test_fractional_months_truncated(self, free_months):
        window = compute_trial_window(START, [free_months(created=utc(2025, 1, 3), months=1.5)])
        assert window.extended
        assert window.trial_end == utc(2025, 2, 3)

    def test_truncation_never_ends_before_standard_window(self, free_months):
        window = compute_trial_window(START, [free_months(created=utc(2025, 1, 1), months=1.9)])
        assert window.trial_end == utc(2025, 2, 1)
        assert window.trial_end >= window.standard_end

    def test_partial_discount_ignored(self, free_months):
        assert not compute_trial_window(START, [free_months(percent=50.0)]).extended

    def test_earliest_extension_governs(self, free_months):
        facts = [
            free_months("sub_long", created=utc(2025, 1, 10), months=6),
            free_months("sub_short", created=utc(2025, 1, 3), months=1),
        ]
        window = compute_trial_window(START, facts)
        assert window.extension_subscription_id == "sub_short"
        assert window.trial_end == utc(2025, 2, 3)

    def test_same_start_ties_on_id(self, free_months):
        facts = [free_months("sub_b", months=2), free_months("sub_a", months=1)]
        assert compute_trial_window(START, facts).extension_subscription_id == "sub_a"

    def test_never_ends_before_standard_window(self, free_months):
        window = compute_trial_window(START, [free_months(created=utc(2025, 1, 2), months=1)])
        assert window.trial_end >= window.standard_end


class TestAddMonths:
    def test_month_end_clamps(self):
        assert add_months(utc(2025, 1, 31), 1) == utc(2025, 2, 28)

    def test_leap_year(self):
        assert add_months(utc(2024, 1, 31), 1) == utc(2024, 2, 29)

    def test_across_year(self):
        assert add_months(utc(2025, 11, 15), 3) == utc(2026, 2, 15)
