from __future__ import annotations

from typing import Iterable, Optional, Union

from loanease.service.errors import Rejection, RejectionKind

SUPER_ADMIN = "super_admin"
ADMIN_TEAM = "admin_team"
REFERRER_ADMIN = "referrer_admin"
REFERRER_TEAM = "referrer_team"

ADMIN_ROLES = frozenset({SUPER_ADMIN, ADMIN_TEAM})
REFERRER_ROLES = frozenset({REFERRER_ADMIN, REFERRER_TEAM})
ALL_ROLES = ADMIN_ROLES | REFERRER_ROLES


def has_role(role: Optional[str], allowed: Iterable[str]) -> bool:
    return role is not None and role in set(allowed)


def is_admin(role: Optional[str]) -> bool:
    return has_role(role, ADMIN_ROLES)


def is_referrer(role: Optional[str]) -> bool:
    return has_role(role, REFERRER_ROLES)


def require_role(role: Optional[str], allowed: Iterable[str]) -> Optional[Rejection]:
    """Return an ``UNAUTHORIZED`` rejection unless ``role`` is one of ``allowed``."""
    if has_role(role, allowed):
        return None
    return Rejection(RejectionKind.UNAUTHORIZED)


def can_manage_organisation(
    role: Optional[str], user_organisation_id: Optional[str], organisation_id: str
) -> Union[Rejection, None]:
    """Admins manage every organisation; referrer admins only their own."""
    if is_admin(role):
        return None
    if role == REFERRER_ADMIN and user_organisation_id == organisation_id:
        return None
    return Rejection(RejectionKind.UNAUTHORIZED)
