"""
Role capability checks.

Capabilities are checked before any write is attempted. A denied action raises
AuthorizationError. It is not a StoreError: a missing capability and a
rejected write are different failures.
"""

from __future__ import annotations

from dataclasses import dataclass

MANAGING_ROLES = frozenset({"owner", "manager"})
FINANCE_ROLES = frozenset({"owner", "investor"})


@dataclass(frozen=True)
class Principal:
    """The authenticated user as reported by the backend."""

    id: str
    role: str = "staff"


class AuthorizationError(PermissionError):
    """Raised when the current principal lacks a capability."""

    def __init__(self, capability: str, role: str | None):
        message = f"role '{role or 'anonymous'}' may not {capability.replace('_', ' ')}"
        super().__init__(message)
        self.code = "forbidden"
        self.capability = capability
        self.role = role
        self.message = message


def can_manage(role: str) -> bool:
    return role in MANAGING_ROLES


def is_owner(role: str) -> bool:
    return role == "owner"


def can_view_all_tasks(role: str) -> bool:
    return role in MANAGING_ROLES


def can_assign_tasks(role: str) -> bool:
    return role in MANAGING_ROLES


def can_create_tasks(role: str) -> bool:
    return role in MANAGING_ROLES


def can_delete_tasks(role: str) -> bool:
    return role in MANAGING_ROLES


def can_access_finance(role: str) -> bool:
    return role in FINANCE_ROLES


def can_access_settings(role: str) -> bool:
    return role == "owner"


CAPABILITIES = {
    "manage_projects": can_manage,
    "view_all_tasks": can_view_all_tasks,
    "assign_tasks": can_assign_tasks,
    "create_tasks": can_create_tasks,
    "delete_tasks": can_delete_tasks,
    "access_finance": can_access_finance,
    "access_settings": can_access_settings,
}


def require(principal: Principal | None, capability: str) -> Principal:
    """Return the principal if it holds the capability, else raise."""
    check = CAPABILITIES[capability]
    if principal is None:
        raise AuthorizationError(capability, None)
    if not check(principal.role):
        raise AuthorizationError(capability, principal.role)
    return principal
