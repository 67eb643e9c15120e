"""Typed facts produced by normalization.

Every downstream component consumes these immutable records; nothing past
the normalizer looks at raw column names.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum, IntEnum

from revenue_engine.coerce import normalize_email


class Interval(str, Enum):
    MONTH = "month"
    YEAR = "year"


class DiscountDuration(str, Enum):
    NONE = ""
    ONCE = "once"
    FOREVER = "forever"
    NUMBERED = "numbered"


class Bucket(str, Enum):
    """Per-subscription revenue bucket (the org stage is derived from these)."""

    PAID = "Paid"
    PROMO_TRIAL = "Promo Trial"
    FREE_TRIAL = "Free Trial"


class Role(IntEnum):
    """Membership roles, ordered best-first for tie-breaking."""

    OWNER = 0
    ADMIN = 1
    MANAGER = 2
    MEMBER = 3
    OTHER = 4

    @classmethod
    def parse(cls, raw: str) -> Role:
        """Map free-text roles (``org:admin``, ``Owner``...) to the ordered set."""
        text = (raw or "").strip().lower()
        for role in (cls.OWNER, cls.ADMIN, cls.MANAGER, cls.MEMBER):
            if role.name.lower() in text:
                return role
        return cls.OTHER

    @property
    def is_ownerish(self) -> bool:
        return self <= Role.ADMIN


@dataclass(frozen=True)
class SubscriptionFact:
    id: str
    status: str
    interval: Interval = Interval.MONTH
    interval_count: int = 1
    amount: float = 0.0
    raw_amount: float = 0.0
    quantity: int = 0
    discount_percent: float = 0.0
    discount_duration: DiscountDuration = DiscountDuration.NONE
    discount_duration_months: float = 0.0
    created_at: datetime | None = None
    first_payment_at: datetime | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    canceled_at: datetime | None = None
    customer_email: str = ""
    customer_name: str = ""
    has_payment_method: bool = False
    promo_code: str = ""
    org_id_hint: str = ""
    org_name_hint: str = ""
    plan_name: str = ""
    trial_extended_days: int = 0

    @property
    def email_key(self) -> str:
        return normalize_email(self.customer_email)

    @property
    def is_forever_free(self) -> bool:
        """100% discount forever: a courtesy account, never revenue."""
        return self.discount_percent == 100 and self.discount_duration is DiscountDuration.FOREVER

    @property
    def mrr(self) -> float:
        if self.interval is Interval.YEAR:
            return self.amount / 12
        return self.amount

    @property
    def arr(self) -> float:
        if self.interval is Interval.YEAR:
            return self.amount
        return self.amount * 12

    @property
    def start_at(self) -> datetime | None:
        return self.created_at or self.current_period_start

    @property
    def bucket(self) -> Bucket | None:
        if self.is_forever_free:
            return None
        if self.status == "active":
            return Bucket.PAID
        if self.status == "trialing":
            return Bucket.PROMO_TRIAL if self.has_payment_method else Bucket.FREE_TRIAL
        return None

    @property
    def has_promo_evidence(self) -> bool:
        return bool(
            self.promo_code
            or self.discount_percent > 0
            or self.discount_duration_months > 0
            or self.discount_duration in (DiscountDuration.NUMBERED, DiscountDuration.FOREVER)
        )


@dataclass(frozen=True)
class Organization:
    org_id: str
    org_name: str = ""
    org_created_at: datetime | None = None


@dataclass(frozen=True)
class Membership:
    org_id: str
    user_identity: str = ""
    email: str = ""
    role: Role = Role.OTHER
    created_at: datetime | None = None

    @property
    def email_key(self) -> str:
        return normalize_email(self.email)


@dataclass(frozen=True)
class UserIdentity:
    user_identity: str
    email: str = ""
    name: str = ""
    org_id: str = ""
    subscription_id: str = ""

    @property
    def email_key(self) -> str:
        return normalize_email(self.email)


@dataclass(frozen=True)
class ManualChange:
    """Operator-maintained override for one subscription."""

    subscription_id: str
    reason: str = ""
    quantity: int = 0
    trial_extended_days: int = 0


@dataclass(frozen=True)
class PromoRedemption:
    org_id: str
    redeemed_at: datetime | None = None
    promo_code: str = ""


@dataclass(frozen=True)
class SnapshotRow:
    """One org's ARR for one snapshot date. Append-only history."""

    snapshot_date: date
    org_id: str
    bom_arr: float = 0.0
    eom_arr: float = 0.0
    org_name: str = ""
    cohort_month: str = ""

    @property
    def key(self) -> tuple[date, str]:
        return (self.snapshot_date, self.org_id)
