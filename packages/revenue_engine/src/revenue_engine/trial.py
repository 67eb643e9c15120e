"""Trial Window Calculator.

A trial lasts ``standard_days`` from the org's creation, unless a 100%
discount with at least one free month started inside that standard window.
The earliest such subscription governs, and its free months run from its
own start date. Fractional month counts are truncated.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

from revenue_engine.records import SubscriptionFact

STANDARD_TRIAL_DAYS = 14


@dataclass(frozen=True)
class TrialWindow:
    trial_start: datetime
    standard_end: datetime
    trial_end: datetime
    extension_subscription_id: str = ""

    @property
    def extended(self) -> bool:
        return bool(self.extension_subscription_id)


def add_months(start: datetime, months: int) -> datetime:
    """Calendar month arithmetic; Jan 31 + 1 month -> last day of February."""
    return start + relativedelta(months=months)


def _extension_months(fact: SubscriptionFact) -> int:
    months = fact.discount_duration_months
    if fact.discount_percent != 100 or not math.isfinite(months) or months <= 0:
        return 0
    return int(months)


def compute_trial_window(
    trial_start: datetime | None,
    facts: Iterable[SubscriptionFact],
    standard_days: int = STANDARD_TRIAL_DAYS,
) -> TrialWindow | None:
    """Trial window for one org, or None when the trial start is unknown."""
    if trial_start is None:
        return None
    standard_end = trial_start + timedelta(days=standard_days)

    governing: tuple[datetime, str, int] | None = None
    for fact in facts:
        months = _extension_months(fact)
        start = fact.start_at
        if not months or start is None:
            continue
        if not trial_start <= start <= standard_end:
            continue
        candidate = (start, fact.id, months)
        if governing is None or candidate[:2] < governing[:2]:
            governing = candidate

    if governing is None:
        return TrialWindow(trial_start, standard_end, standard_end)

    start, sub_id, months = governing
    trial_end = max(standard_end, add_months(start, months))
    return TrialWindow(trial_start, standard_end, trial_end, sub_id)
