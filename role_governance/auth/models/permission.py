"""
Permission catalog for the role governance engine.

The catalog is static configuration data: the list of permissions the
platform knows about, and the default grants mapping each role to the
permissions it holds, optionally narrowed by conditions evaluated against the
resource context of a check.

Permission identifiers are dotted ``<resource>.<action>`` strings such as
``class.create``. A ``system_admin`` assignment is granted every catalogued
permission without conditions.
"""

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from ...utils.datetime import parse_timestamp
from .role import UserRole


class PermissionCategory(str, Enum):
    CONTENT = "content"
    USER_MANAGEMENT = "user_management"
    ANALYTICS = "analytics"
    SYSTEM = "system"


class PermissionScope(str, Enum):
    """Boundary within which a permission grant is valid."""
    SELF = "self"
    DEPARTMENT = "department"
    INSTITUTION = "institution"
    SYSTEM = "system"


class ConditionType(str, Enum):
    DEPARTMENT_MATCH = "department_match"
    INSTITUTION_MATCH = "institution_match"
    RESOURCE_OWNER = "resource_owner"
    TIME_BASED = "time_based"


# Recognized parameter keys per condition type
CONDITION_PARAMETER_KEYS: Dict[ConditionType, FrozenSet[str]] = {
    ConditionType.DEPARTMENT_MATCH: frozenset(),
    ConditionType.INSTITUTION_MATCH: frozenset(),
    ConditionType.RESOURCE_OWNER: frozenset(),
    ConditionType.TIME_BASED: frozenset({"start_time", "end_time"}),
}


@dataclass(frozen=True)
class Permission:
    """Catalog-defined permission. Immutable."""
    name: str
    category: PermissionCategory
    scope: PermissionScope
    description: str = ""

    @property
    def id(self) -> str:
        return self.name

    @property
    def resource_type(self) -> str:
        return self.name.split(".", 1)[0]

    @property
    def action(self) -> str:
        return self.name.split(".", 1)[-1]

    def to_dict(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "category": self.category.value,
            "scope": self.scope.value,
            "description": self.description,
        }


@dataclass(frozen=True)
class PermissionCondition:
    """
    Condition narrowing a role grant.

    Only the keys listed in ``CONDITION_PARAMETER_KEYS`` for the condition type
    are accepted as parameters; ``time_based`` parameters are parsed into aware
    UTC datetimes at construction.

    Raises:
        ValueError: On unrecognized parameter keys or unparseable timestamps
    """
    type: ConditionType
    start_time: Optional[datetime.datetime] = None
    end_time: Optional[datetime.datetime] = None

    @classmethod
    def from_parameters(cls, condition_type, parameters: Optional[Mapping[str, object]] = None) -> "PermissionCondition":
        condition_type = ConditionType(condition_type)
        parameters = dict(parameters or {})
        unknown = set(parameters) - CONDITION_PARAMETER_KEYS[condition_type]
        if unknown:
            raise ValueError(
                f"Unrecognized parameters for {condition_type.value} condition: {sorted(unknown)}"
            )
        return cls(
            type=condition_type,
            start_time=parse_timestamp(parameters.get("start_time")),
            end_time=parse_timestamp(parameters.get("end_time")),
        )

    @property
    def parameters(self) -> Dict[str, str]:
        params = {}
        if self.start_time is not None:
            params["start_time"] = self.start_time.isoformat()
        if self.end_time is not None:
            params["end_time"] = self.end_time.isoformat()
        return params


@dataclass(frozen=True)
class RolePermission:
    """Default grant of a permission to a role."""
    role: UserRole
    permission_name: str
    conditions: Tuple[PermissionCondition, ...] = field(default_factory=tuple)

    @property
    def id(self) -> str:
        return f"{self.role.value}:{self.permission_name}"


_C = PermissionCategory
_S = PermissionScope

PERMISSIONS: Tuple[Permission, ...] = (
    # Content management
    Permission("content.create", _C.CONTENT, _S.DEPARTMENT, "Create new content"),
    Permission("content.read", _C.CONTENT, _S.SELF, "View content"),
    Permission("content.update", _C.CONTENT, _S.SELF, "Edit existing content"),
    Permission("content.delete", _C.CONTENT, _S.SELF, "Delete content"),
    Permission("content.manage", _C.CONTENT, _S.DEPARTMENT, "Full content management access"),

    # Class management
    Permission("class.create", _C.CONTENT, _S.DEPARTMENT, "Create new classes"),
    Permission("class.read", _C.CONTENT, _S.INSTITUTION, "View class information"),
    Permission("class.update", _C.CONTENT, _S.SELF, "Edit class information"),
    Permission("class.delete", _C.CONTENT, _S.SELF, "Delete classes"),
    Permission("class.manage", _C.CONTENT, _S.DEPARTMENT, "Full class management access"),

    # Enrollment
    Permission("enrollment.create", _C.CONTENT, _S.SELF, "Enroll in classes"),
    Permission("enrollment.read", _C.CONTENT, _S.SELF, "View enrollment information"),
    Permission("enrollment.update", _C.CONTENT, _S.DEPARTMENT, "Modify enrollment status"),
    Permission("enrollment.delete", _C.CONTENT, _S.DEPARTMENT, "Remove enrollments"),
    Permission("enrollment.approve", _C.CONTENT, _S.DEPARTMENT, "Approve enrollment requests"),

    # User management
    Permission("user.create", _C.USER_MANAGEMENT, _S.INSTITUTION, "Create new users"),
    Permission("user.read", _C.USER_MANAGEMENT, _S.DEPARTMENT, "View user information"),
    Permission("user.update", _C.USER_MANAGEMENT, _S.SELF, "Edit user information"),
    Permission("user.delete", _C.USER_MANAGEMENT, _S.INSTITUTION, "Delete users"),
    Permission("user.manage", _C.USER_MANAGEMENT, _S.INSTITUTION, "Full user management access"),

    # Role management
    Permission("role.assign", _C.USER_MANAGEMENT, _S.INSTITUTION, "Assign roles to users"),
    Permission("role.revoke", _C.USER_MANAGEMENT, _S.INSTITUTION, "Revoke user roles"),
    Permission("role.approve", _C.USER_MANAGEMENT, _S.INSTITUTION, "Approve role requests"),
    Permission("role.audit", _C.USER_MANAGEMENT, _S.INSTITUTION, "View role audit logs"),

    # Analytics
    Permission("analytics.read", _C.ANALYTICS, _S.DEPARTMENT, "View analytics data"),
    Permission("analytics.export", _C.ANALYTICS, _S.INSTITUTION, "Export analytics data"),

    # System administration
    Permission("system.configure", _C.SYSTEM, _S.SYSTEM, "Configure system settings"),
    Permission("system.audit", _C.SYSTEM, _S.SYSTEM, "View system audit logs"),
    Permission("institution.create", _C.SYSTEM, _S.SYSTEM, "Create new institutions"),
    Permission("institution.manage", _C.USER_MANAGEMENT, _S.INSTITUTION, "Manage institution settings"),

    # Departments
    Permission("department.create", _C.USER_MANAGEMENT, _S.INSTITUTION, "Create new departments"),
    Permission("department.manage", _C.USER_MANAGEMENT, _S.DEPARTMENT, "Manage department settings"),
)

_PERMISSIONS_BY_NAME: Dict[str, Permission] = {p.name: p for p in PERMISSIONS}

_DEPT = (PermissionCondition(ConditionType.DEPARTMENT_MATCH),)
_INST = (PermissionCondition(ConditionType.INSTITUTION_MATCH),)
_OWNER = (PermissionCondition(ConditionType.RESOURCE_OWNER),)

_GRANTS: Dict[UserRole, Tuple[Tuple[str, Tuple[PermissionCondition, ...]], ...]] = {
    UserRole.STUDENT: (
        ("content.read", ()),
        ("class.read", ()),
        ("enrollment.create", ()),
        ("enrollment.read", _OWNER),
        ("user.update", _OWNER),
    ),
    UserRole.TEACHER: (
        ("content.create", _DEPT),
        ("content.read", ()),
        ("content.update", _OWNER),
        ("content.delete", _OWNER),
        ("class.create", _DEPT),
        ("class.read", ()),
        ("class.update", _OWNER),
        ("class.delete", _OWNER),
        ("enrollment.read", _DEPT),
        ("enrollment.update", _OWNER),
        ("enrollment.approve", _OWNER),
        ("user.read", ()),
        ("analytics.read", _DEPT),
    ),
    UserRole.DEPARTMENT_ADMIN: (
        ("content.manage", _DEPT),
        ("class.manage", _DEPT),
        ("enrollment.update", _DEPT),
        ("enrollment.delete", _DEPT),
        ("enrollment.approve", _DEPT),
        ("user.read", _DEPT),
        ("analytics.read", _DEPT),
        ("department.manage", _DEPT),
    ),
    UserRole.INSTITUTION_ADMIN: (
        ("user.create", _INST),
        ("user.manage", _INST),
        ("user.delete", _INST),
        ("role.assign", _INST),
        ("role.revoke", _INST),
        ("role.approve", _INST),
        ("role.audit", _INST),
        ("analytics.export", ()),
        ("department.create", ()),
        ("institution.manage", ()),
    ),
    UserRole.SYSTEM_ADMIN: tuple((p.name, ()) for p in PERMISSIONS),
}

ROLE_PERMISSIONS: Tuple[RolePermission, ...] = tuple(
    RolePermission(role=role, permission_name=name, conditions=conditions)
    for role, grants in _GRANTS.items()
    for name, conditions in grants
)

_ROLE_PERMISSIONS_BY_ROLE: Dict[UserRole, Dict[str, RolePermission]] = {
    role: {rp.permission_name: rp for rp in ROLE_PERMISSIONS if rp.role is role}
    for role in UserRole
}


def get_permission(name: str) -> Optional[Permission]:
    return _PERMISSIONS_BY_NAME.get(name)


def get_all_permissions() -> List[Permission]:
    return list(PERMISSIONS)


def get_role_permissions(role: UserRole) -> List[RolePermission]:
    """Return the default grants for a role."""
    return list(_ROLE_PERMISSIONS_BY_ROLE[UserRole.parse(role)].values())


def get_role_permission(role: UserRole, permission_name: str) -> Optional[RolePermission]:
    return _ROLE_PERMISSIONS_BY_ROLE[UserRole.parse(role)].get(permission_name)


def get_permissions_for_role(role: UserRole) -> List[Permission]:
    """Expand a role into the catalog permissions it is granted, in catalog order."""
    grants = _ROLE_PERMISSIONS_BY_ROLE[UserRole.parse(role)]
    return [p for p in PERMISSIONS if p.name in grants]


def get_permission_names_for_roles(roles: Iterable[UserRole]) -> FrozenSet[str]:
    names = set()
    for role in roles:
        names.update(_ROLE_PERMISSIONS_BY_ROLE[UserRole.parse(role)])
    return frozenset(names)


def get_permissions_by_category(category: PermissionCategory) -> List[Permission]:
    return [p for p in PERMISSIONS if p.category == category]


def get_permissions_by_scope(scope: PermissionScope) -> List[Permission]:
    return [p for p in PERMISSIONS if p.scope == scope]
