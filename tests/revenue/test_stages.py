"""Tests for revenue_engine.stages."""

from __future__ import annotations

import itertools

import pytest

from revenue_engine.stages import Stage, classify


@pytest.mark.parametrize(
    "flags, expected",
    [
        ((True, True, True), Stage.PAID),
        ((True, False, False), Stage.PAID),
        ((False, True, True), Stage.PROMO_TRIAL),
        ((False, False, True), Stage.FREE_TRIAL),
        ((False, False, False), Stage.OTHER),
    ],
)
def test_priority(flags, expected):
    assert classify(*flags) is expected


def test_every_combination_has_exactly_one_stage():
    for flags in itertools.product([True, False], repeat=3):
        assert classify(*flags) in set(Stage)


def test_labels():
    assert [s.value for s in Stage] == ["Paid", "Promo Trial", "Free Trial", "Other"]
