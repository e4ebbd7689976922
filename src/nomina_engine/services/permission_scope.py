"""Permission scope resolution.

Permissions are strings of the form ``resource:action`` or
``resource:action:scope`` (``own``, ``subordinates``, ``company``), plus the
super-admin grant ``*`` and resource wildcards such as ``payroll:*``.

The authorization layer upstream decides which permissions a caller holds;
this module only turns them into a scope and a query filter. Scope is
always applied when selecting records, never to computed results.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from sqlalchemy import and_, false, true
from sqlalchemy.sql.elements import ColumnElement

from nomina_engine.models import Employee

SUPER_ADMIN_PERMISSION = "*"


class Scope(str, Enum):
    ALL = "ALL"
    COMPANY = "COMPANY"
    SUBORDINATES = "SUBORDINATES"
    OWN = "OWN"


# Most permissive first
_SCOPED_GRANTS = (
    ("company", Scope.COMPANY),
    ("subordinates", Scope.SUBORDINATES),
    ("own", Scope.OWN),
)


class PermissionDeniedError(Exception):
    """Caller holds no grant for the requested action."""

    def __init__(self, resource: str, action: str):
        self.resource = resource
        self.action = action
        super().__init__(f"Permission denied: {resource}:{action}")


def resolve_scope(permissions: Iterable[str], resource: str, action: str) -> Scope | None:
    """Resolve the broadest scope granted for ``resource:action``.

    Precedence: ``*`` > ``resource:*`` > ``resource:action`` (unscoped,
    meaning ALL) > scoped grants, most permissive wins.
    """
    granted = set(permissions)
    if SUPER_ADMIN_PERMISSION in granted:
        return Scope.ALL
    if f"{resource}:*" in granted:
        return Scope.ALL
    if f"{resource}:{action}" in granted:
        return Scope.ALL
    for suffix, scope in _SCOPED_GRANTS:
        if f"{resource}:{action}:{suffix}" in granted:
            return scope
    return None


def has_permission(permissions: Iterable[str], required: str) -> bool:
    """Check a single permission, honouring wildcards and unscoped grants."""
    granted = set(permissions)
    if SUPER_ADMIN_PERMISSION in granted or required in granted:
        return True
    parts = required.split(":")
    resource = parts[0]
    if f"{resource}:*" in granted:
        return True
    if len(parts) == 3 and f"{resource}:{parts[1]}" in granted:
        return True
    return False


@dataclass(frozen=True)
class CallerContext:
    """Resolved identity of the caller, supplied by the authorization layer."""

    permissions: tuple[str, ...]
    company_id: UUID | None = None
    employee_id: UUID | None = None

    @classmethod
    def system(cls) -> CallerContext:
        """Unrestricted caller for internal jobs and the CLI."""
        return cls(permissions=(SUPER_ADMIN_PERMISSION,))

    def scope_for(self, resource: str, action: str) -> Scope | None:
        return resolve_scope(self.permissions, resource, action)

    def require(self, resource: str, action: str) -> Scope:
        """Resolve a scope or raise ``PermissionDeniedError``."""
        scope = self.scope_for(resource, action)
        if scope is None:
            raise PermissionDeniedError(resource, action)
        return scope

    def employee_filter(self, scope: Scope) -> ColumnElement[bool]:
        """SQL criterion on ``Employee`` for the given scope.

        A scope the caller cannot anchor (no company or employee id) selects
        nothing.
        """
        if scope == Scope.ALL:
            return true()
        if scope == Scope.COMPANY:
            if self.company_id is None:
                return false()
            return Employee.company_id == self.company_id
        if scope == Scope.SUBORDINATES:
            if self.employee_id is None:
                return false()
            criteria = Employee.manager_id == self.employee_id
            if self.company_id is not None:
                criteria = and_(criteria, Employee.company_id == self.company_id)
            return criteria
        if self.employee_id is None:
            return false()
        return Employee.employee_id == self.employee_id

    def company_allowed(self, scope: Scope, company_id: UUID) -> bool:
        """Whether a company-level record is visible at all."""
        if scope == Scope.ALL:
            return True
        return self.company_id is not None and self.company_id == company_id
