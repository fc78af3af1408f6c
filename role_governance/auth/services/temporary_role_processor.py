"""
Temporary role lifecycle: assignment, extension and expiration.

Temporary assignments carry ``expires_at`` and optionally the role the user
reverts to (``metadata.reverts_to``, student by default). The permission
checker already treats an assignment past its expiration as inactive;
``process_expired_roles`` makes that durable by transitioning the assignment
to ``expired`` and creating the reversion assignment. The host schedules the
processing calls; the engine has no scheduler of its own.
"""

import datetime
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ...notifications import NotificationDispatcher, NotificationService
from ...persistence.repositories import RoleAssignmentRepository
from ...utils.config import GovernanceConfig
from ...utils.datetime import ensure_utc, now_utc
from ...utils.error_handling import GovernanceError, NotFoundError, ValidationError, storage_operation
from ...utils.logging import get_logger
from ...utils.monitoring import GovernanceMetrics
from ..models.role import AssignmentStatus, RoleRequestStatus, UserRole
from ..models.user_role_assignment import ResourceContext, UserRoleAssignment
from ..permission_checker import PermissionChecker
from .role_audit_service import RoleAuditService

DEFAULT_REVERSION_ROLE = UserRole.STUDENT


@dataclass
class ExpirationProcessingResult:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "errors": list(self.errors),
        }


class TemporaryRoleProcessor:
    """Assigns, extends and expires temporary roles, and expires stale role requests."""

    def __init__(
        self,
        repository: RoleAssignmentRepository,
        permission_checker: PermissionChecker,
        audit_service: RoleAuditService,
        notification_service: NotificationService,
        config: Optional[GovernanceConfig] = None,
        metrics: Optional[GovernanceMetrics] = None,
        now: Callable[[], datetime.datetime] = now_utc,
    ):
        self.repository = repository
        self.permission_checker = permission_checker
        self.audit_service = audit_service
        self.notifications = NotificationDispatcher(notification_service, metrics)
        self.config = config or GovernanceConfig()
        self.metrics = metrics
        self._now = now
        self._processing = threading.Lock()
        self.logger = get_logger(__name__, component="temporary_role_processor")

    def assign_temporary_role(
        self,
        user_id: str,
        role: UserRole,
        expires_at: datetime.datetime,
        assigned_by: str,
        reason: str,
        institution_id: Optional[str] = None,
        department_id: Optional[str] = None,
        reverts_to: Optional[UserRole] = None,
    ) -> UserRoleAssignment:
        """
        Grant ``role`` until ``expires_at``.

        Raises:
            AuthorizationError: ``assigned_by`` lacks ``role.assign`` for the user
            ValidationError: Missing reason or an expiration not in the future
        """
        self.permission_checker.require_permission(
            assigned_by, "role.assign",
            ResourceContext(resource_id=user_id, resource_type="user",
                            institution_id=institution_id, department_id=department_id),
            message="Insufficient permissions to assign temporary roles",
        )
        if not (reason or "").strip():
            raise ValidationError("Reason for temporary role assignment is required")
        expires_at = ensure_utc(expires_at)
        now = self._now()
        if expires_at is None or expires_at <= now:
            raise ValidationError("Temporary role expiration must be in the future")

        assignment = UserRoleAssignment(
            user_id=user_id,
            role=role,
            institution_id=institution_id,
            department_id=department_id,
            assigned_by=assigned_by,
            assigned_at=now,
            expires_at=expires_at,
            is_temporary=True,
            metadata={
                "role_change_type": "temporary",
                "reverts_to": UserRole.parse(reverts_to) if reverts_to else None,
                "justification": reason,
            },
        )
        with storage_operation("create temporary role assignment"):
            created = self.repository.create_assignment(assignment)

        self.permission_checker.invalidate_user_cache(user_id)
        self._audit("log_role_assignment", created, assigned_by, reason)
        self.logger.info("Temporary role assigned", user_id=user_id, role=created.role.value,
                         expires_at=expires_at.isoformat(), assignment_id=created.id)
        return created

    def extend_temporary_role(
        self,
        assignment_id: str,
        new_expires_at: datetime.datetime,
        extended_by: str,
        reason: str,
    ) -> UserRoleAssignment:
        """
        Move the expiration of an active temporary assignment later.

        Raises:
            NotFoundError: Unknown assignment id
            ValidationError: Not temporary, not active, or a date not in the future
        """
        with storage_operation("load role assignment"):
            assignment = self.repository.get_assignment(assignment_id)
        if assignment is None:
            raise NotFoundError(f"Role assignment {assignment_id} not found",
                                resource_type="user_role_assignment", resource_id=assignment_id)
        if not assignment.is_temporary:
            raise ValidationError("Cannot extend non-temporary role assignment")
        if assignment.status != AssignmentStatus.ACTIVE:
            raise ValidationError(f"Cannot extend role assignment with status {assignment.status.value}")

        now = self._now()
        new_expires_at = ensure_utc(new_expires_at)
        if new_expires_at is None or new_expires_at <= now:
            raise ValidationError("New expiration date must be in the future")

        previous_expires_at = assignment.expires_at
        assignment.expires_at = new_expires_at
        assignment.updated_at = now
        assignment.metadata = dict(assignment.metadata, extended_by=extended_by,
                                   extension_reason=reason,
                                   original_expires_at=assignment.metadata.get(
                                       "original_expires_at", previous_expires_at.isoformat()))
        with storage_operation("extend temporary role"):
            updated = self.repository.update_assignment(assignment)

        self.permission_checker.invalidate_user_cache(assignment.user_id)
        self._audit(
            "log_role_change", assignment.user_id, assignment.role, assignment.role, extended_by,
            f"Temporary role extended: {reason}", assignment.institution_id, assignment.department_id,
            {"assignment_id": assignment.id, "previous_expires_at": previous_expires_at,
             "expires_at": new_expires_at, "extension_reason": reason,
             "role_change_type": "extension"},
        )
        return updated

    def process_expired_roles(self) -> ExpirationProcessingResult:
        """
        Expire every active temporary assignment past its expiration.

        A failure on one assignment is recorded in the result and does not
        stop the others. Concurrent calls do not overlap: a call made while
        processing is under way returns an empty result.
        """
        if not self._processing.acquire(blocking=False):
            self.logger.info("Role expiration processing already in progress, skipping")
            return ExpirationProcessingResult()

        try:
            now = self._now()
            with storage_operation("load expired role assignments"):
                expired = self.repository.get_expired_assignments(now)

            result = ExpirationProcessingResult(processed=len(expired))
            for assignment in expired:
                try:
                    self._expire_assignment(assignment, now)
                    result.successful += 1
                except GovernanceError as exc:
                    result.failed += 1
                    result.errors.append({
                        "assignment_id": assignment.id,
                        "user_id": assignment.user_id,
                        "error": exc.message,
                    })
                    self.logger.error("Failed to expire temporary role", assignment_id=assignment.id,
                                      user_id=assignment.user_id, error=exc.message)

            self.logger.info("Role expiration processing complete", processed=result.processed,
                             successful=result.successful, failed=result.failed)
            return result
        finally:
            self._processing.release()

    def _expire_assignment(self, assignment: UserRoleAssignment, now: datetime.datetime) -> None:
        reverted_to = None
        with storage_operation("expire temporary role"):
            with self.repository.transaction():
                others = [
                    a for a in self.repository.get_active_assignments(assignment.user_id)
                    if a.id != assignment.id
                    and a.institution_id == assignment.institution_id
                    and a.is_usable(now)
                ]
                assignment.status = AssignmentStatus.EXPIRED
                assignment.updated_at = now
                self.repository.update_assignment(assignment)

                if not others:
                    reverted_to = UserRole.parse(assignment.metadata.get("reverts_to")
                                                 or DEFAULT_REVERSION_ROLE)
                    self.repository.create_assignment(UserRoleAssignment(
                        user_id=assignment.user_id,
                        role=reverted_to,
                        institution_id=assignment.institution_id,
                        department_id=assignment.department_id,
                        assigned_by=self.config.system_actor,
                        assigned_at=now,
                        metadata={
                            "role_change_type": "reversion",
                            "previous_role": assignment.role,
                            "source": assignment.id,
                        },
                    ))

        self.permission_checker.invalidate_user_cache(assignment.user_id)
        self._audit(
            "log_role_expiration", assignment.user_id, assignment.role, assignment.institution_id,
            assignment.department_id, "Temporary role assignment expired",
            {"assignment_id": assignment.id, "reverted_to": reverted_to, "expired_at": assignment.expires_at},
        )
        self.notifications.dispatch("role_expired", assignment.user_id, assignment.role, reverted_to)
        if self.metrics is not None:
            self.metrics.track_role_change("expired")

    def expire_stale_requests(self) -> ExpirationProcessingResult:
        """Transition pending role requests past their expiration to ``expired``."""
        now = self._now()
        with storage_operation("load expired role requests"):
            stale = self.repository.get_expired_pending_requests(now)

        result = ExpirationProcessingResult(processed=len(stale))
        for role_request in stale:
            try:
                with storage_operation("expire role request"):
                    self.repository.update_request_status(
                        role_request.id, RoleRequestStatus.EXPIRED, None,
                        "Request expired before review", now,
                    )
                self._audit(
                    "log_role_expiration", role_request.user_id, role_request.requested_role,
                    role_request.institution_id, role_request.department_id, "Role request expired",
                    {"request_id": role_request.id, "expired_at": role_request.expires_at},
                )
                result.successful += 1
            except GovernanceError as exc:
                result.failed += 1
                result.errors.append({"request_id": role_request.id, "user_id": role_request.user_id,
                                      "error": exc.message})
                self.logger.error("Failed to expire role request", request_id=role_request.id,
                                  error=exc.message)
        return result

    def _audit(self, operation: str, *args: Any) -> None:
        """Audit after a committed mutation; a failure is logged, never raised."""
        try:
            getattr(self.audit_service, operation)(*args)
        except GovernanceError as exc:
            self.logger.error("Audit logging failed after role mutation", operation=operation,
                              error=exc.message)
