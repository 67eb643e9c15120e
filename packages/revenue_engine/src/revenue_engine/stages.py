"""Stage Classifier: one lifecycle stage per org, paid always dominates."""

from __future__ import annotations

from enum import Enum


class Stage(str, Enum):
    PAID = "Paid"
    PROMO_TRIAL = "Promo Trial"
    FREE_TRIAL = "Free Trial"
    OTHER = "Other"


def classify(has_paid: bool, has_promo: bool, has_free: bool) -> Stage:
    if has_paid:
        return Stage.PAID
    if has_promo:
        return Stage.PROMO_TRIAL
    if has_free:
        return Stage.FREE_TRIAL
    return Stage.OTHER
