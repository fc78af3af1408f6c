"""
Permission Checker for the Role Governance Engine

Evaluates whether a user holds a permission given their active role
assignments, the permission's declared scope, and the conditions attached to
the role's grant. Results are memoized in a ``PermissionCache`` owned by the
checker and invalidated explicitly whenever a user's roles change.

Key Features:
- Single, resource-level and bulk permission evaluation
- Scope checks (self, department, institution, system)
- Grant conditions (department/institution match, resource owner, time window)
- Administrative scope checks
- TTL-bound result caching with per-user invalidation

The scope check, condition checks, admin check, action mapping and cache key
generation are module-level pure functions so they can be tested directly.
"""

import datetime
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union
from urllib.parse import quote

from ..persistence.repositories import RoleAssignmentRepository
from ..utils.config import GovernanceConfig
from ..utils.datetime import now_utc
from ..utils.error_handling import (
    AuthorizationError,
    BulkCheckLimitExceededError,
    ValidationError,
    storage_operation,
)
from ..utils.logging import get_logger
from ..utils.monitoring import GovernanceMetrics
from .models.permission import (
    ConditionType,
    Permission,
    PermissionCondition,
    PermissionScope,
    get_permission,
    get_permissions_for_role,
    get_role_permission,
)
from .models.role import UserRole
from .models.user_role_assignment import Action, ResourceContext, UserRoleAssignment
from .permission_cache import PermissionCache

logger = get_logger(__name__, component="permission_checker")

GLOBAL_CONTEXT_KEY = "global"
CACHE_KEY_DELIMITER = ":"

ContextLike = Union[ResourceContext, Mapping[str, Any], None]


class AdminScope(str, Enum):
    SYSTEM = "system"
    INSTITUTION = "institution"
    DEPARTMENT = "department"


@dataclass(frozen=True)
class PermissionCheck:
    permission: str
    context: Optional[ResourceContext] = None


@dataclass(frozen=True)
class PermissionResult:
    permission: str
    granted: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"permission": self.permission, "granted": self.granted, "reason": self.reason}


# ==================== PURE EVALUATION FUNCTIONS ====================

def _escape_key_component(value: Optional[str]) -> str:
    if value is None:
        return ""
    return quote(str(value), safe="")


def generate_cache_key(user_id: str, permission: str, context: Optional[ResourceContext] = None) -> str:
    """
    Build the cache key for a check.

    Components are percent-encoded so the ``:`` delimiter never occurs inside
    one; absent context dimensions encode as empty components and a missing
    context as the literal ``global`` marker.
    """
    parts = [_escape_key_component(user_id), _escape_key_component(permission)]
    if context is None:
        parts.append(GLOBAL_CONTEXT_KEY)
    else:
        parts.extend(
            _escape_key_component(value)
            for value in (
                context.resource_id,
                context.resource_type,
                context.department_id,
                context.institution_id,
                context.owner_id,
            )
        )
    return CACHE_KEY_DELIMITER.join(parts)


def check_permission_scope(
    permission: Permission,
    assignment: UserRoleAssignment,
    context: Optional[ResourceContext] = None,
) -> bool:
    """
    Check the permission's declared scope against the assignment and context.

    ``system`` scope always requires a system_admin assignment, which in turn
    passes every scope. Without a context, the remaining scopes pass.
    """
    if assignment.role is UserRole.SYSTEM_ADMIN:
        return True
    if permission.scope is PermissionScope.SYSTEM:
        return False
    if context is None:
        return True
    if permission.scope is PermissionScope.SELF:
        return context.owner_id is not None and context.owner_id == assignment.user_id
    if permission.scope is PermissionScope.DEPARTMENT:
        return context.department_id is None or context.department_id == assignment.department_id
    if permission.scope is PermissionScope.INSTITUTION:
        return context.institution_id is None or context.institution_id == assignment.institution_id
    return False


def check_time_window(
    start_time: Optional[datetime.datetime],
    end_time: Optional[datetime.datetime],
    assignment: UserRoleAssignment,
    now: datetime.datetime,
) -> bool:
    """Usable when ``now`` is inside the window and the assignment has not expired."""
    if start_time is not None and now < start_time:
        return False
    if end_time is not None and now > end_time:
        return False
    return not assignment.is_expired(now)


def check_condition(
    condition: PermissionCondition,
    assignment: UserRoleAssignment,
    context: Optional[ResourceContext],
    now: datetime.datetime,
) -> bool:
    """Evaluate one grant condition; match conditions only compare dimensions present in the context."""
    if condition.type is ConditionType.TIME_BASED:
        return check_time_window(condition.start_time, condition.end_time, assignment, now)
    if context is None:
        return True
    if condition.type is ConditionType.DEPARTMENT_MATCH:
        return context.department_id is None or context.department_id == assignment.department_id
    if condition.type is ConditionType.INSTITUTION_MATCH:
        return context.institution_id is None or context.institution_id == assignment.institution_id
    if condition.type is ConditionType.RESOURCE_OWNER:
        return context.owner_id is None or context.owner_id == assignment.user_id
    return False


def assignment_grants(
    assignment: UserRoleAssignment,
    permission: Permission,
    context: Optional[ResourceContext],
    now: datetime.datetime,
) -> bool:
    """True when this single assignment grants ``permission`` for ``context``."""
    if not assignment.is_usable(now):
        return False
    grant = get_role_permission(assignment.role, permission.name)
    if grant is None:
        return False
    if not check_permission_scope(permission, assignment, context):
        return False
    return all(check_condition(c, assignment, context, now) for c in grant.conditions)


def is_admin_assignment(
    assignment: UserRoleAssignment,
    scope: Union[AdminScope, str],
    scope_id: Optional[str] = None,
    institution_id: Optional[str] = None,
) -> bool:
    """
    Decide whether an assignment confers administrative rights at ``scope``.

    system_admin satisfies every scope. institution_admin satisfies the
    institution scope for its own institution, and the department scope for
    departments of its institution: ``institution_id`` names the department's
    institution when known. department_admin satisfies only the department
    scope of its own department.
    """
    scope = AdminScope(scope)
    role = assignment.role
    if role is UserRole.SYSTEM_ADMIN:
        return True
    if scope is AdminScope.SYSTEM:
        return False
    if scope is AdminScope.INSTITUTION:
        return role is UserRole.INSTITUTION_ADMIN and (
            scope_id is None or assignment.institution_id == scope_id
        )
    # department scope
    if role is UserRole.INSTITUTION_ADMIN:
        if institution_id is not None:
            return assignment.institution_id == institution_id
        return scope_id is None or assignment.department_id == scope_id
    if role is UserRole.DEPARTMENT_ADMIN:
        if institution_id is not None and assignment.institution_id != institution_id:
            return False
        return scope_id is None or assignment.department_id == scope_id
    return False


def map_action_to_permissions(action: Union[Action, str], resource_type: str) -> List[str]:
    """``CREATE`` on ``class`` maps to ``class.create`` and ``class.manage``; ``MANAGE`` only to itself."""
    action = Action(action)
    names = [f"{resource_type}.{action.value}"]
    if action is not Action.MANAGE:
        names.append(f"{resource_type}.{Action.MANAGE.value}")
    return names


# ==================== CHECKER ====================

class PermissionChecker:
    """
    Evaluates permissions against a user's active role assignments.

    Args:
        repository: Source of role assignments
        config: Cache switch, TTL and bulk limit
        cache: Cache instance; built from ``config`` when omitted and caching is enabled
        metrics: Optional Prometheus metrics
        now: Clock returning aware UTC datetimes
    """

    def __init__(
        self,
        repository: RoleAssignmentRepository,
        config: Optional[GovernanceConfig] = None,
        cache: Optional[PermissionCache] = None,
        metrics: Optional[GovernanceMetrics] = None,
        now: Callable[[], datetime.datetime] = now_utc,
    ):
        self.repository = repository
        self.config = config or GovernanceConfig()
        self.metrics = metrics
        self._now = now
        if self.config.cache_enabled:
            self.cache = cache or PermissionCache(self.config.cache_ttl, metrics=metrics)
        else:
            self.cache = None

    @property
    def cache_enabled(self) -> bool:
        return self.cache is not None

    def has_permission(self, user_id: str, permission: str, context: ContextLike = None) -> bool:
        """
        Return whether ``user_id`` holds ``permission`` for ``context``.

        Unknown users and unknown permissions resolve to ``False``. Storage
        failures raise ``StorageError`` and are never cached.
        """
        context = ResourceContext.coerce(context)
        cache_key = generate_cache_key(user_id, permission, context)

        generation = None
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached
            generation = self.cache.generation(user_id)

        start = time.perf_counter()
        granted = self._evaluate(user_id, permission, context)

        if self.cache is not None:
            self.cache.set(cache_key, user_id, granted, generation=generation)
        if self.metrics is not None:
            self.metrics.track_permission_check(granted, time.perf_counter() - start)
        if not granted:
            logger.debug("Permission denied", user_id=user_id, permission=permission)
        return granted

    def can_access_resource(
        self,
        user_id: str,
        resource_id: str,
        action: Union[Action, str],
        context: ContextLike = None,
    ) -> bool:
        """Check an action on a resource; ``resource_type`` defaults to ``unknown``."""
        partial = ResourceContext.coerce(context) or ResourceContext()
        full_context = ResourceContext(
            resource_id=resource_id,
            resource_type=partial.resource_type or "unknown",
            owner_id=partial.owner_id,
            department_id=partial.department_id,
            institution_id=partial.institution_id,
        )
        return any(
            self.has_permission(user_id, name, full_context)
            for name in map_action_to_permissions(action, full_context.resource_type)
        )

    def get_user_permissions(self, user_id: str) -> List[Permission]:
        """Aggregate permissions across usable assignments, de-duplicated, in catalog order."""
        now = self._now()
        seen = set()
        permissions: List[Permission] = []
        for assignment in self._load_assignments(user_id):
            if not assignment.is_usable(now):
                continue
            for permission in get_permissions_for_role(assignment.role):
                if permission.name not in seen:
                    seen.add(permission.name)
                    permissions.append(permission)
        return permissions

    def check_bulk_permissions(
        self,
        user_id: str,
        checks: Sequence[Union[PermissionCheck, Mapping[str, Any]]],
    ) -> List[PermissionResult]:
        """
        Evaluate several checks independently.

        The limit is enforced before any check is evaluated. An exception while
        evaluating one check becomes a denied result carrying the error message.

        Raises:
            BulkCheckLimitExceededError: If ``len(checks)`` exceeds the bulk limit
        """
        limit = self.config.bulk_check_limit
        if len(checks) > limit:
            if self.metrics is not None:
                self.metrics.track_bulk_check('rejected')
            raise BulkCheckLimitExceededError(limit=limit, requested=len(checks))

        results: List[PermissionResult] = []
        for raw in checks:
            name = _check_name(raw)
            try:
                check = self._coerce_check(raw)
                granted = self.has_permission(user_id, check.permission, check.context)
                results.append(PermissionResult(
                    permission=check.permission,
                    granted=granted,
                    reason="Permission granted" if granted else "Permission denied",
                ))
            except Exception as exc:
                logger.warning("Bulk permission check item failed", user_id=user_id,
                               permission=name, error=str(exc))
                results.append(PermissionResult(permission=name, granted=False, reason=str(exc)))

        if self.metrics is not None:
            self.metrics.track_bulk_check('completed')
        return results

    def is_admin(
        self,
        user_id: str,
        scope: Union[AdminScope, str],
        scope_id: Optional[str] = None,
        institution_id: Optional[str] = None,
    ) -> bool:
        now = self._now()
        return any(
            assignment.is_usable(now) and is_admin_assignment(assignment, scope, scope_id, institution_id)
            for assignment in self._load_assignments(user_id)
        )

    def require_permission(self, user_id: str, permission: str, context: ContextLike = None,
                           message: Optional[str] = None) -> None:
        """
        Raise ``AuthorizationError`` unless the user holds the permission.
        """
        if not self.has_permission(user_id, permission, context):
            logger.info("Authorization denied", user_id=user_id, permission=permission)
            raise AuthorizationError(message or f"Missing permission: {permission}", permission=permission)

    def invalidate_user_cache(self, user_id: str) -> None:
        """Drop cached results for ``user_id``. No-op when caching is disabled."""
        if self.cache is not None:
            self.cache.invalidate_user(user_id)

    def clear_cache(self) -> None:
        if self.cache is not None:
            self.cache.clear()

    def _evaluate(self, user_id: str, permission_name: str, context: Optional[ResourceContext]) -> bool:
        permission = get_permission(permission_name)
        if permission is None:
            return False
        now = self._now()
        return any(
            assignment_grants(assignment, permission, context, now)
            for assignment in self._load_assignments(user_id)
        )

    def _load_assignments(self, user_id: str) -> List[UserRoleAssignment]:
        if not user_id:
            return []
        with storage_operation("load role assignments"):
            return self.repository.get_active_assignments(user_id)

    @staticmethod
    def _coerce_check(raw: Union[PermissionCheck, Mapping[str, Any]]) -> PermissionCheck:
        if isinstance(raw, PermissionCheck):
            return raw
        if not isinstance(raw, Mapping) or not raw.get("permission"):
            raise ValidationError("Each bulk check requires a permission")
        return PermissionCheck(permission=str(raw["permission"]),
                               context=ResourceContext.coerce(raw.get("context")))


def _check_name(raw: Any) -> str:
    if isinstance(raw, PermissionCheck):
        return raw.permission
    if isinstance(raw, Mapping):
        return str(raw.get("permission") or "")
    return str(raw)
