"""Role hierarchy and access checks.

Navigation checks fail open (routes without a rule are allowed) while money
checks fail closed (no profile, no limit or an inactive profile means no).
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional

from .models import UserProfile

# Lowest to highest privilege.
ROLE_HIERARCHY: tuple[str, ...] = ("employee", "finance", "manager", "admin")

# Older profiles carry the access-control vocabulary (user|manager|admin).
LEGACY_ROLE_ALIASES = {"user": "employee"}

ROUTE_RULES: dict[str, tuple[str, ...]] = {
    "/dashboard": ("employee", "finance", "manager", "admin"),
    "/expenses": ("employee", "finance", "manager", "admin"),
    "/approvals": ("manager", "admin"),
    "/reports": ("finance", "manager", "admin"),
    "/settings": ("admin",),
    "/users": ("admin",),
}


def normalize_role(role: Optional[str]) -> Optional[str]:
    if role is None:
        return None
    role = LEGACY_ROLE_ALIASES.get(role, role)
    return role if role in ROLE_HIERARCHY else None


def role_level(role: Optional[str]) -> int:
    role = normalize_role(role)
    return ROLE_HIERARCHY.index(role) if role is not None else -1


class RolePolicy:
    def __init__(self, profile: Optional[UserProfile]):
        self.profile = profile
        self.role = normalize_role(profile.role) if profile is not None else None

    @property
    def is_admin(self) -> bool:
        return self.has_role("admin")

    @property
    def is_manager(self) -> bool:
        return self.has_role("manager")

    def has_role(self, role: str) -> bool:
        return self.role is not None and self.role == normalize_role(role)

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return any(self.has_role(role) for role in roles)

    def has_min_role(self, floor: str) -> bool:
        required = role_level(floor)
        if required < 0:
            return False
        return role_level(self.role) >= required

    def can_approve_expense(self, amount: Decimal) -> bool:
        if not self._active():
            return False
        if self.is_admin:
            return True
        if self.is_manager:
            limit = self.profile.approval_limit
            return limit is not None and Decimal(amount) <= limit
        return False

    def can_self_approve(self, amount: Decimal) -> bool:
        if not self._active():
            return False
        if self.is_admin:
            return True
        if self.is_manager:
            limit = self.profile.single_transaction_limit
            if limit is None:
                limit = self.profile.approval_limit
            return limit is not None and Decimal(amount) <= limit
        return False

    def can_access_route(self, path: str) -> bool:
        prefix = _matching_prefix(path)
        if prefix is None:
            return True
        if self.role is None:
            return False
        return self.has_any_role(ROUTE_RULES[prefix])

    def _active(self) -> bool:
        return self.profile is not None and self.role is not None and self.profile.is_active


def _matching_prefix(path: str) -> Optional[str]:
    best: Optional[str] = None
    for prefix in ROUTE_RULES:
        if path == prefix or path.startswith(prefix + "/"):
            if best is None or len(prefix) > len(best):
                best = prefix
    return best
