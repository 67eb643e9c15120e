"""Identity Resolver: subscription -> owning organization and contact.

Resolution is a pure function of a prebuilt ``IdentityIndex`` and one
subscription fact, returning a tagged ``Resolved`` or ``Unresolved`` value.
Every join goes through ``normalize_email``.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Union

from revenue_engine.records import Membership, Organization, Role, SubscriptionFact, UserIdentity

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)
_NO_ROLE_RANK = len(Role)


@dataclass(frozen=True)
class Resolved:
    org_id: str
    org_name: str = ""
    email: str = ""
    display_name: str = ""


@dataclass(frozen=True)
class Unresolved:
    """Why no org was found. ``reason`` is ``no_candidate`` or ``no_membership``."""

    reason: str
    email: str = ""
    display_name: str = ""


Resolution = Union[Resolved, Unresolved]


def _created_key(m: Membership) -> datetime:
    return m.created_at or _FAR_FUTURE


def _membership_order(m: Membership) -> tuple:
    return (m.role, _created_key(m), m.org_id)


class IdentityIndex:
    """Read-once lookup tables over users, memberships and organizations."""

    def __init__(
        self,
        users: Iterable[UserIdentity],
        memberships: Iterable[Membership],
        organizations: Iterable[Organization] = (),
    ) -> None:
        self.users_by_sub: dict[str, list[UserIdentity]] = defaultdict(list)
        self.users_by_email: dict[str, list[UserIdentity]] = defaultdict(list)
        self.memberships_by_user: dict[str, list[Membership]] = defaultdict(list)
        self.memberships_by_email: dict[str, list[Membership]] = defaultdict(list)
        self.memberships_by_org: dict[str, list[Membership]] = defaultdict(list)
        self.org_names: dict[str, str] = {o.org_id: o.org_name for o in organizations}

        for user in users:
            if user.subscription_id:
                self.users_by_sub[user.subscription_id].append(user)
            if user.email_key:
                self.users_by_email[user.email_key].append(user)
        for m in memberships:
            if m.user_identity:
                self.memberships_by_user[m.user_identity].append(m)
            if m.email_key:
                self.memberships_by_email[m.email_key].append(m)
            self.memberships_by_org[m.org_id].append(m)

    def memberships_for(self, user: UserIdentity) -> list[Membership]:
        """Memberships joined by user identity, else by email key."""
        found = self.memberships_by_user.get(user.user_identity) if user.user_identity else None
        if not found and user.email_key:
            found = self.memberships_by_email.get(user.email_key)
        return list(found or ())

    def role_rank(self, user: UserIdentity) -> int:
        memberships = self.memberships_for(user)
        if not memberships:
            return _NO_ROLE_RANK
        return int(min(m.role for m in memberships))

    def best_membership(self, user: UserIdentity) -> Membership | None:
        memberships = self.memberships_for(user)
        if not memberships:
            return None
        return min(memberships, key=_membership_order)

    def owner_email(self, org_id: str) -> str:
        return pick_owner_email(self.memberships_by_org.get(org_id, ()))


def candidates_for(index: IdentityIndex, sub: SubscriptionFact) -> list[UserIdentity]:
    """Users linked by subscription id, else by billing email key.

    When some candidates share the billing email key exactly, only those
    are kept.
    """
    email_key = sub.email_key
    candidates = list(index.users_by_sub.get(sub.id, ()))
    if not candidates and email_key:
        candidates = list(index.users_by_email.get(email_key, ()))
    if email_key:
        exact = [u for u in candidates if u.email_key == email_key]
        if exact:
            candidates = exact
    return candidates


def resolve(index: IdentityIndex, sub: SubscriptionFact) -> Resolution:
    candidates = candidates_for(index, sub)
    if not candidates:
        return Unresolved("no_candidate", email=sub.customer_email, display_name=sub.customer_name)

    pick = min(candidates, key=lambda u: (index.role_rank(u), u.email_key, u.user_identity))
    display_name = pick.name or sub.customer_name
    email = pick.email or sub.customer_email

    membership = index.best_membership(pick)
    org_id = membership.org_id if membership else pick.org_id
    if not org_id:
        return Unresolved("no_membership", email=email, display_name=display_name)
    return Resolved(
        org_id=org_id,
        org_name=index.org_names.get(org_id, ""),
        email=email,
        display_name=display_name,
    )


def pick_owner_email(memberships: Iterable[Membership]) -> str:
    """Earliest owner, else earliest admin, else earliest member of any role."""
    ordered = sorted(
        (m for m in memberships if m.email),
        key=lambda m: (_created_key(m), m.email_key),
    )
    for role in (Role.OWNER, Role.ADMIN):
        for m in ordered:
            if m.role is role:
                return m.email
    return ordered[0].email if ordered else ""
