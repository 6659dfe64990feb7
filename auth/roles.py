"""
auth/roles.py -- Role tiers and the plan catalogue.

Roles double as subscription tiers. The paid tiers are ordered
free < professional < business < enterprise; admin sits outside the order
and passes every tier check.

Layer rule: no imports from api/, teams/, or notify/.
"""

from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    free = "free"
    professional = "professional"
    business = "business"
    enterprise = "enterprise"
    admin = "admin"


class Plan(str, Enum):
    free = "free"
    professional = "professional"
    business = "business"
    enterprise = "enterprise"


class SubscriptionStatus(str, Enum):
    active = "active"
    canceled = "canceled"
    expired = "expired"
    past_due = "past_due"


_TIER_LEVELS: dict[str, int] = {
    Role.free.value: 0,
    Role.professional.value: 1,
    Role.business.value: 2,
    Role.enterprise.value: 3,
}

# Plans whose owners may invite team members at all. Only business is
# seat-limited; professional teams are bounded by the plan catalogue below,
# which is informational and not enforced.
TEAM_PLANS: frozenset[str] = frozenset({Plan.business.value, Plan.professional.value})

# Roles allowed to use the invite UI.
_INVITER_ROLES: frozenset[str] = frozenset({Role.business.value, Role.enterprise.value, Role.admin.value})

PLANS_DATA: dict[str, dict] = {
    Plan.free.value: {"price": 0, "allowed_reports": 5, "allowed_users": 1},
    Plan.professional.value: {"price": 19, "allowed_reports": 20, "allowed_users": 5},
    Plan.business.value: {"price": 49, "allowed_reports": 50, "allowed_users": 10},
    Plan.enterprise.value: {"price": 99, "allowed_reports": 100, "allowed_users": 20},
}


def has_tier(role: str, minimum: str) -> bool:
    """Return True if role is at or above minimum. Admin always passes.

    Unknown roles never pass -- a typo in the DB must not grant access.
    """
    if role == Role.admin.value:
        return True
    if role not in _TIER_LEVELS or minimum not in _TIER_LEVELS:
        return False
    return _TIER_LEVELS[role] >= _TIER_LEVELS[minimum]


def eligible_to_invite(role: str) -> bool:
    return role in _INVITER_ROLES
