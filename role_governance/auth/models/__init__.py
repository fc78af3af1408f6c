"""Domain records and the static permission catalog."""

from .audit import (
    AuditAction,
    AuditLogQuery,
    AuditQueryResult,
    AuditReport,
    ReportSummary,
    RoleAuditEntry,
    SuspiciousActivity,
    SuspiciousActivityFilters,
    SuspiciousActivitySeverity,
    SuspiciousActivityType,
)
from .permission import (
    ConditionType,
    Permission,
    PermissionCategory,
    PermissionCondition,
    PermissionScope,
    RolePermission,
    get_permission,
    get_permissions_for_role,
)
from .role import (
    ADMIN_ROLES,
    AssignmentStatus,
    RoleRequestStatus,
    UserRole,
    VerificationMethod,
)
from .user_role_assignment import (
    Action,
    ResourceContext,
    RoleChangeRequest,
    RoleRequest,
    UserRoleAssignment,
)

__all__ = [
    'Action',
    'ADMIN_ROLES',
    'AssignmentStatus',
    'AuditAction',
    'AuditLogQuery',
    'AuditQueryResult',
    'AuditReport',
    'ConditionType',
    'Permission',
    'PermissionCategory',
    'PermissionCondition',
    'PermissionScope',
    'ReportSummary',
    'ResourceContext',
    'RoleAuditEntry',
    'RoleChangeRequest',
    'RolePermission',
    'RoleRequest',
    'RoleRequestStatus',
    'SuspiciousActivity',
    'SuspiciousActivityFilters',
    'SuspiciousActivitySeverity',
    'SuspiciousActivityType',
    'UserRole',
    'UserRoleAssignment',
    'VerificationMethod',
    'get_permission',
    'get_permissions_for_role',
]
