"""
Role definitions and role hierarchy for the institutional RBAC engine.

This module defines the fixed role enumeration used throughout the engine and
the total privilege order over it. The hierarchy drives two decisions:

- approval rules in the role change processor (is a transition an upgrade,
  a downgrade, or a move into an administrative role?)
- escalation detection in the role audit service (how many levels did a
  change cross?)

Role Hierarchy (in order of increasing privileges):
- STUDENT: enrolled learner, self-scoped access
- TEACHER: instructor, department-scoped content and class management
- DEPARTMENT_ADMIN: manages one department
- INSTITUTION_ADMIN: manages one institution and its departments
- SYSTEM_ADMIN: platform-wide administration
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Union


class UserRole(str, Enum):
    """
    Python Enum of the roles a user can hold.

    Values are the lowercase identifiers stored in assignments, requests and
    audit entries.
    """

    STUDENT = "student"
    TEACHER = "teacher"
    DEPARTMENT_ADMIN = "department_admin"
    INSTITUTION_ADMIN = "institution_admin"
    SYSTEM_ADMIN = "system_admin"

    @classmethod
    def get_hierarchy_order(cls) -> Dict["UserRole", int]:
        """
        Return role hierarchy levels, student = 1 through system_admin = 5.

        Returns:
            Dict[UserRole, int]: Mapping of roles to hierarchy levels
        """
        return dict(_HIERARCHY)

    @property
    def level(self) -> int:
        return _HIERARCHY[self]

    @property
    def is_administrative(self) -> bool:
        return self in ADMIN_ROLES

    @classmethod
    def parse(cls, value: Union[str, "UserRole"]) -> "UserRole":
        """
        Convert a role name into a ``UserRole``.

        Raises:
            ValueError: If the name is not one of the known roles
        """
        if isinstance(value, UserRole):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown role: {value!r}") from None

    def __str__(self) -> str:
        return self.value


_HIERARCHY: Dict[UserRole, int] = {
    UserRole.STUDENT: 1,
    UserRole.TEACHER: 2,
    UserRole.DEPARTMENT_ADMIN: 3,
    UserRole.INSTITUTION_ADMIN: 4,
    UserRole.SYSTEM_ADMIN: 5,
}

ADMIN_ROLES: FrozenSet[UserRole] = frozenset({
    UserRole.DEPARTMENT_ADMIN,
    UserRole.INSTITUTION_ADMIN,
    UserRole.SYSTEM_ADMIN,
})


class AssignmentStatus(str, Enum):
    """Lifecycle status of a user role assignment."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    REVOKED = "revoked"

    def __str__(self) -> str:
        return self.value


class RoleRequestStatus(str, Enum):
    """Status of a pending ask to transition a user to another role."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not RoleRequestStatus.PENDING

    def __str__(self) -> str:
        return self.value


class VerificationMethod(str, Enum):
    """How a role request is verified before it can take effect."""

    EMAIL_DOMAIN = "email_domain"
    MANUAL_REVIEW = "manual_review"
    ADMIN_APPROVAL = "admin_approval"

    def __str__(self) -> str:
        return self.value


def compare_roles(old_role: UserRole, new_role: UserRole) -> int:
    """Return the signed number of hierarchy levels between two roles."""
    return new_role.level - old_role.level


def is_upgrade(old_role: UserRole, new_role: UserRole) -> bool:
    return compare_roles(old_role, new_role) > 0


def is_downgrade(old_role: UserRole, new_role: UserRole) -> bool:
    return compare_roles(old_role, new_role) < 0


def parse_roles(values: Iterable[Union[str, UserRole]]) -> List[UserRole]:
    """Parse a sequence of role names, preserving order and dropping duplicates."""
    roles: List[UserRole] = []
    for value in values:
        role = UserRole.parse(value)
        if role not in roles:
            roles.append(role)
    return roles
