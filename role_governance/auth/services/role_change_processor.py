"""
Role Change Processor

Validates and executes role transitions for the governance engine.

Workflow:
    validated -> pending request (approval required) -> approved | denied | expired
    validated -> active (auto-approved or bypassed)

Key Features:
- Validation reported as structured data, never raised
- Approval rules over the role hierarchy and configured role lists
- Atomic revoke-then-assign unit for immediate changes, approvals and
  rollbacks, with compensation when the repository is not transactional
- Permission cache invalidation after every mutation
- Audit entries and notifications that never undo a successful mutation

Authorization failures on approve, deny and rollback raise
``AuthorizationError`` before anything is mutated. A revoke that cannot be
followed by an assignment, nor undone, raises ``RoleChangeConsistencyError``.
"""

import datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from ...notifications import NotificationDispatcher, NotificationService
from ...persistence.repositories import RoleAssignmentRepository
from ...utils.config import GovernanceConfig
from ...utils.datetime import now_utc
from ...utils.error_handling import (
    GovernanceError,
    NotFoundError,
    RoleChangeConsistencyError,
    RoleRequestStateError,
    StorageError,
    ValidationError,
    storage_error_message,
    storage_operation,
)
from ...utils.logging import get_logger, log_audit_event
from ...utils.monitoring import GovernanceMetrics
from ..models.permission import Permission, get_permissions_for_role
from ..models.role import ADMIN_ROLES, RoleRequestStatus, UserRole, VerificationMethod, is_upgrade
from ..models.user_role_assignment import (
    ResourceContext,
    RoleChangeRequest,
    RoleRequest,
    UserRoleAssignment,
)
from ..permission_checker import PermissionChecker
from .role_audit_service import RoleAuditService


@dataclass
class RoleChangeValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    requires_approval: bool = True
    approval_reason: Optional[str] = None


@dataclass
class RoleChangeProcessingOptions:
    bypass_approval: bool = False
    force_approval: bool = False
    notify_user: bool = True
    audit_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RoleChangeResult:
    """Outcome of ``process_role_change``; ``result`` is an assignment or a pending request."""
    success: bool
    result: Optional[Union[UserRoleAssignment, RoleRequest]] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class ChangeImpactPreview:
    current_permissions: List[Permission]
    new_permissions: List[Permission]
    added_permissions: List[Permission]
    removed_permissions: List[Permission]


class RoleChangeProcessor:
    """
    Validates, executes and reviews role changes.

    Args:
        repository: Role assignment and role request storage
        permission_checker: Authorization checks and cache invalidation
        audit_service: Audit log for every mutation and decision
        notification_service: Fire-and-forget notification collaborator
        config: Approval role lists and request expiration
        metrics: Optional Prometheus metrics
        now: Clock returning aware UTC datetimes
    """

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
        self.logger = get_logger(__name__, component="role_change_processor")

    # ==================== VALIDATION ====================

    def validate_role_change(self, request: RoleChangeRequest) -> RoleChangeValidationResult:
        """
        Validate a role change request.

        Checks required fields, that the roles differ, that the subject holds
        the claimed current role, and that a third-party actor holds
        ``role.assign`` for the subject. A pending request for the subject is
        a warning only.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if not request.user_id or not request.current_role or not request.new_role:
            errors.append("Missing required fields for role change")
        elif request.current_role == request.new_role:
            errors.append("Current role and new role cannot be the same")

        if not (request.reason or "").strip():
            errors.append("Reason for role change is required")

        if request.user_id and request.current_role:
            try:
                if self._find_current_assignment(request.user_id, request.current_role,
                                                 request.institution_id, request.department_id) is None:
                    errors.append("User does not have the specified current role")
            except GovernanceError as exc:
                self.logger.error("Current role lookup failed", user_id=request.user_id, error=exc.message)
                errors.append("Failed to verify user's current role")

        if request.user_id:
            try:
                if self.repository.get_pending_requests(request.user_id, request.institution_id):
                    warnings.append("User has existing pending role requests")
            except Exception as exc:
                self.logger.warning("Pending request lookup failed", user_id=request.user_id, error=str(exc))
                warnings.append("Could not check for existing pending requests")

        if request.user_id and request.changed_by != request.user_id:
            try:
                if not self.permission_checker.has_permission(
                    request.changed_by, "role.assign", self._subject_context(
                        request.user_id, request.institution_id, request.department_id)
                ):
                    errors.append("Insufficient permissions to change roles for other users")
            except GovernanceError as exc:
                self.logger.error("Role assign permission check failed",
                                  changed_by=request.changed_by, error=exc.message)
                errors.append("Failed to verify role change permissions")

        requires_approval, approval_reason = True, None
        if request.current_role and request.new_role:
            requires_approval, approval_reason = self.determine_approval_requirement(
                request.current_role, request.new_role
            )

        return RoleChangeValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            requires_approval=requires_approval,
            approval_reason=approval_reason,
        )

    def determine_approval_requirement(self, current_role: UserRole, new_role: UserRole):
        """
        Decide whether a transition needs approval, in precedence order.

        Returns:
            Tuple of (requires_approval, approval_reason)
        """
        if new_role in ADMIN_ROLES:
            return True, "Administrative roles require approval"
        if self.config.requires_approval_for(new_role):
            return True, f"The {new_role.value} role requires approval"
        if new_role is UserRole.TEACHER and current_role is UserRole.STUDENT:
            return True, "Teacher role requires verification and approval"
        if is_upgrade(current_role, new_role):
            return True, "Role upgrades require administrator approval"
        if self.config.is_auto_approved(new_role):
            return False, None
        return True, "Role changes require approval for security"

    def get_verification_method(self, role: UserRole) -> VerificationMethod:
        if self.config.is_auto_approved(role):
            return VerificationMethod.EMAIL_DOMAIN
        if self.config.requires_approval_for(role):
            return VerificationMethod.ADMIN_APPROVAL
        return VerificationMethod.MANUAL_REVIEW

    # ==================== PROCESSING ====================

    def process_role_change(
        self,
        request: RoleChangeRequest,
        options: Optional[RoleChangeProcessingOptions] = None,
    ) -> RoleChangeResult:
        """
        Validate and then either execute the change or open a role request.

        Validation and storage failures are reported on the result.

        Raises:
            RoleChangeConsistencyError: If the subject was left without a role
        """
        options = options or RoleChangeProcessingOptions()
        validation = self.validate_role_change(request)
        if not validation.is_valid:
            self._track("failed")
            return RoleChangeResult(
                success=False,
                error=f"Validation failed: {', '.join(validation.errors)}",
                warnings=list(validation.warnings),
            )

        if options.force_approval:
            requires_approval = True
        elif options.bypass_approval:
            requires_approval = False
        else:
            requires_approval = validation.requires_approval

        warnings = list(validation.warnings)
        try:
            if requires_approval:
                role_request = self._create_role_request(request)
                warnings.extend(self._audit("log_role_request", role_request))
                if options.notify_user:
                    self.notifications.dispatch("role_change_requested", role_request)
                self._track("requested")
                return RoleChangeResult(success=True, result=role_request, warnings=warnings)

            assignment = self._execute_role_change(request, options, warnings)
            if options.notify_user:
                self.notifications.dispatch("role_changed", request.user_id, request.current_role,
                                            request.new_role, request.reason)
            self._track("executed")
            return RoleChangeResult(success=True, result=assignment, warnings=warnings)
        except RoleChangeConsistencyError:
            raise
        except GovernanceError as exc:
            self.logger.error("Role change processing failed", user_id=request.user_id,
                              error=exc.message, error_code=exc.error_code)
            self._track("failed")
            return RoleChangeResult(success=False, error=exc.message, warnings=warnings)

    def _execute_role_change(self, request: RoleChangeRequest, options: RoleChangeProcessingOptions,
                             warnings: List[str]) -> UserRoleAssignment:
        current = self._find_current_assignment(request.user_id, request.current_role,
                                                request.institution_id, request.department_id)
        if current is None:
            raise NotFoundError("User does not have the specified current role",
                                resource_type="user_role_assignment")

        metadata = dict(request.metadata)
        metadata.update(options.audit_metadata)
        metadata.update({
            "role_change_type": "immediate",
            "previous_role": request.current_role,
            "justification": f"Role change from {request.current_role.value} to "
                             f"{request.new_role.value}: {request.reason}",
        })
        replacement = UserRoleAssignment(
            user_id=request.user_id,
            role=request.new_role,
            institution_id=request.institution_id,
            department_id=request.department_id,
            assigned_by=request.changed_by,
            assigned_at=self._now(),
            metadata=metadata,
        )

        assignment = self._swap_assignment(current, replacement, request.changed_by,
                                           f"Role change: {request.reason}")
        self.permission_checker.invalidate_user_cache(request.user_id)

        warnings.extend(self._audit(
            "log_role_change", request.user_id, request.current_role, request.new_role,
            request.changed_by, request.reason, request.institution_id, request.department_id,
            {"assignment_id": assignment.id, "revoked_assignment_id": current.id,
             "role_change_type": "immediate"},
        ))
        return assignment

    def _create_role_request(self, request: RoleChangeRequest) -> RoleRequest:
        now = self._now()
        role_request = RoleRequest(
            user_id=request.user_id,
            requested_role=request.new_role,
            current_role=request.current_role,
            justification=request.reason,
            institution_id=request.institution_id,
            department_id=request.department_id,
            verification_method=self.get_verification_method(request.new_role),
            requested_by=request.changed_by,
            requested_at=now,
            expires_at=now + datetime.timedelta(days=self.config.role_request_expiration_days),
        )
        with storage_operation("create role request"):
            created = self.repository.create_request(role_request)
        log_audit_event(self.logger, "Role change requested", action="requested",
                        subject_user_id=request.user_id, actor_id=request.changed_by,
                        request_id=created.id, requested_role=request.new_role.value)
        return created

    # ==================== REVIEW ====================

    def approve_role_change(
        self,
        request_id: str,
        approver_id: str,
        notes: Optional[str] = None,
        options: Optional[RoleChangeProcessingOptions] = None,
    ) -> UserRoleAssignment:
        """
        Approve a pending role request and apply it.

        Raises:
            NotFoundError: Unknown request id
            AuthorizationError: Approver lacks ``role.approve`` for the subject
            RoleRequestStateError: Request not pending, or expired (it is then
                marked expired)
            StorageError: Persistence failure; nothing was applied
            RoleChangeConsistencyError: Subject left without a role
        """
        options = options or RoleChangeProcessingOptions()
        role_request = self._load_request(request_id)
        self.permission_checker.require_permission(
            approver_id, "role.approve",
            self._subject_context(role_request.user_id, role_request.institution_id,
                                  role_request.department_id),
            message="Insufficient permissions to approve role requests",
        )
        self._ensure_pending(role_request)

        now = self._now()
        if role_request.is_expired(now):
            self._expire_request(role_request, now)
            raise RoleRequestStateError("Role request has expired", request_id=request_id,
                                        status=RoleRequestStatus.EXPIRED.value)

        replacement = UserRoleAssignment(
            user_id=role_request.user_id,
            role=role_request.requested_role,
            institution_id=role_request.institution_id,
            department_id=role_request.department_id,
            assigned_by=approver_id,
            assigned_at=now,
            metadata={
                "role_change_type": "approved",
                "previous_role": role_request.current_role,
                "request_id": role_request.id,
                "justification": role_request.justification,
            },
        )

        current = None
        if role_request.current_role is not None:
            current = self._find_current_assignment(role_request.user_id, role_request.current_role,
                                                    role_request.institution_id,
                                                    role_request.department_id)
            if current is None:
                self.logger.warning("Approved request has no current assignment to revoke",
                                    request_id=request_id, current_role=role_request.current_role.value)

        with storage_operation("approve role request"):
            with self.repository.transaction():
                if current is not None:
                    assignment = self._swap_assignment(
                        current, replacement, approver_id,
                        f"Role change: {role_request.justification}",
                    )
                else:
                    assignment = self.repository.create_assignment(replacement)
                approved = self.repository.update_request_status(
                    request_id, RoleRequestStatus.APPROVED, approver_id, notes, now
                )

        self.permission_checker.invalidate_user_cache(role_request.user_id)

        self._audit("log_role_request_decision", approved, "approved", approver_id, notes)
        if current is not None:
            self._audit(
                "log_role_change", role_request.user_id, current.role, assignment.role, approver_id,
                role_request.justification, role_request.institution_id, role_request.department_id,
                {"assignment_id": assignment.id, "revoked_assignment_id": current.id,
                 "request_id": request_id, "role_change_type": "approved"},
            )
        else:
            self._audit("log_role_assignment", assignment, approver_id, role_request.justification)

        if options.notify_user:
            self.notifications.dispatch("role_change_approved", role_request.user_id,
                                        role_request.requested_role, notes)
        self._track("approved")
        return assignment

    def deny_role_change(
        self,
        request_id: str,
        approver_id: str,
        reason: str,
        options: Optional[RoleChangeProcessingOptions] = None,
    ) -> RoleRequest:
        """
        Deny a pending role request. No role assignment is touched.

        Raises:
            NotFoundError: Unknown request id
            AuthorizationError: Approver lacks ``role.approve`` for the subject
            ValidationError: Empty denial reason
            RoleRequestStateError: Request not pending
        """
        options = options or RoleChangeProcessingOptions()
        role_request = self._load_request(request_id)
        self.permission_checker.require_permission(
            approver_id, "role.approve",
            self._subject_context(role_request.user_id, role_request.institution_id,
                                  role_request.department_id),
            message="Insufficient permissions to deny role requests",
        )
        if not (reason or "").strip():
            raise ValidationError("Reason for denial is required")
        self._ensure_pending(role_request)

        with storage_operation("deny role request"):
            denied = self.repository.update_request_status(
                request_id, RoleRequestStatus.DENIED, approver_id, reason, self._now()
            )

        self._audit("log_role_request_decision", denied, "denied", approver_id, reason)
        if options.notify_user:
            self.notifications.dispatch("role_change_denied", role_request.user_id,
                                        role_request.requested_role, reason)
        self._track("denied")
        return denied

    def rollback_role_change(self, assignment_id: str, actor_id: str, reason: str) -> UserRoleAssignment:
        """
        Restore the role an assignment replaced.

        Only assignments created by a role change carry the ``previous_role``
        needed to roll back.

        Raises:
            NotFoundError: Unknown assignment id
            AuthorizationError: Actor lacks ``role.revoke`` for the subject
            ValidationError: Empty reason, inactive assignment, or no previous role
        """
        with storage_operation("load role assignment"):
            assignment = self.repository.get_assignment(assignment_id)
        if assignment is None:
            raise NotFoundError(f"Role assignment not found: {assignment_id}",
                                resource_type="user_role_assignment", resource_id=assignment_id)

        self.permission_checker.require_permission(
            actor_id, "role.revoke",
            self._subject_context(assignment.user_id, assignment.institution_id,
                                  assignment.department_id),
            message="Insufficient permissions to roll back role changes",
        )
        if not (reason or "").strip():
            raise ValidationError("Reason for rollback is required")
        if not assignment.is_usable(self._now()):
            raise ValidationError("Only active role assignments can be rolled back")
        previous_role = assignment.previous_role
        if previous_role is None:
            raise ValidationError("Role assignment has no previous role to restore")

        restored = UserRoleAssignment(
            user_id=assignment.user_id,
            role=previous_role,
            institution_id=assignment.institution_id,
            department_id=assignment.department_id,
            assigned_by=actor_id,
            assigned_at=self._now(),
            metadata={
                "role_change_type": "rollback",
                "previous_role": assignment.role,
                "rollback_of": assignment.id,
                "justification": reason,
            },
        )
        created = self._swap_assignment(assignment, restored, actor_id, f"Rollback: {reason}")
        self.permission_checker.invalidate_user_cache(assignment.user_id)

        self._audit(
            "log_role_change", assignment.user_id, assignment.role, previous_role, actor_id,
            reason, assignment.institution_id, assignment.department_id,
            {"assignment_id": created.id, "revoked_assignment_id": assignment.id,
             "rollback_of": assignment.id, "role_change_type": "rollback"},
        )
        self.notifications.dispatch("role_changed", assignment.user_id, assignment.role,
                                    previous_role, reason)
        self._track("rolled_back")
        return created

    def get_change_impact_preview(
        self,
        user_id: str,
        from_role: UserRole,
        to_role: UserRole,
        institution_id: Optional[str] = None,
        department_id: Optional[str] = None,
    ) -> ChangeImpactPreview:
        """Permission sets of both roles and their difference. No side effects."""
        current = get_permissions_for_role(from_role)
        new = get_permissions_for_role(to_role)
        current_names = {p.name for p in current}
        new_names = {p.name for p in new}
        return ChangeImpactPreview(
            current_permissions=current,
            new_permissions=new,
            added_permissions=[p for p in new if p.name not in current_names],
            removed_permissions=[p for p in current if p.name not in new_names],
        )

    # ==================== ATOMIC UNIT ====================

    def _swap_assignment(
        self,
        current: UserRoleAssignment,
        replacement: UserRoleAssignment,
        actor_id: str,
        revoke_reason: str,
    ) -> UserRoleAssignment:
        """
        Revoke ``current`` and create ``replacement`` as one unit of work.

        Transactional repositories roll both steps back together. Otherwise a
        failed create is compensated by reactivating ``current``.
        """
        with storage_operation("execute role change"):
            with self.repository.transaction():
                self.repository.revoke_assignment(current.id, actor_id, revoke_reason, self._now())
                try:
                    created = self.repository.create_assignment(replacement)
                except Exception as exc:
                    if self.repository.transactional:
                        raise
                    self._compensate(current, exc)
        self.logger.info("Role assignment replaced", user_id=current.user_id,
                         old_role=current.role.value, new_role=created.role.value,
                         revoked_assignment_id=current.id, assignment_id=created.id)
        return created

    def _compensate(self, revoked: UserRoleAssignment, cause: Exception) -> None:
        try:
            self.repository.reactivate_assignment(revoked.id)
        except Exception as restore_error:
            self.logger.critical("Role change left user without a role", user_id=revoked.user_id,
                                 revoked_assignment_id=revoked.id, create_error=str(cause),
                                 restore_error=str(restore_error))
            self._track("inconsistent")
            raise RoleChangeConsistencyError(
                f"Revoked assignment {revoked.id} for user {revoked.user_id} but could neither "
                f"create the new assignment ({cause}) nor restore the old one ({restore_error})",
                user_id=revoked.user_id,
                revoked_assignment_id=revoked.id,
            ) from cause

        self.logger.error("Role assignment creation failed, previous assignment restored",
                          user_id=revoked.user_id, revoked_assignment_id=revoked.id, error=str(cause))
        raise StorageError(storage_error_message("create role assignment", cause),
                           operation="create role assignment") from cause

    # ==================== HELPERS ====================

    def _find_current_assignment(
        self,
        user_id: str,
        role: UserRole,
        institution_id: Optional[str],
        department_id: Optional[str],
    ) -> Optional[UserRoleAssignment]:
        now = self._now()
        with storage_operation("load role assignments"):
            assignments = self.repository.get_active_assignments(user_id)
        for assignment in assignments:
            if (assignment.role == role
                    and assignment.is_usable(now)
                    and assignment.institution_id == institution_id
                    and (not department_id or assignment.department_id == department_id)):
                return assignment
        return None

    def _load_request(self, request_id: str) -> RoleRequest:
        with storage_operation("load role request"):
            role_request = self.repository.get_request(request_id)
        if role_request is None:
            raise NotFoundError("Role request not found", resource_type="role_request",
                                resource_id=request_id)
        return role_request

    @staticmethod
    def _ensure_pending(role_request: RoleRequest) -> None:
        if not role_request.is_pending:
            raise RoleRequestStateError("Role request is not in pending status",
                                        request_id=role_request.id, status=role_request.status.value)

    def _expire_request(self, role_request: RoleRequest, now: datetime.datetime) -> None:
        with storage_operation("expire role request"):
            self.repository.update_request_status(
                role_request.id, RoleRequestStatus.EXPIRED, None, "Request expired before review", now
            )
        self._audit("log_role_expiration", role_request.user_id, role_request.requested_role,
                    role_request.institution_id, role_request.department_id,
                    "Role request expired", {"request_id": role_request.id})
        self._track("expired")

    @staticmethod
    def _subject_context(user_id: str, institution_id: Optional[str],
                         department_id: Optional[str]) -> ResourceContext:
        return ResourceContext(resource_id=user_id, resource_type="user",
                               institution_id=institution_id, department_id=department_id)

    def _audit(self, operation: str, *args: Any) -> List[str]:
        """Call an audit service operation; a failure becomes a warning, never an exception."""
        try:
            getattr(self.audit_service, operation)(*args)
            return []
        except GovernanceError as exc:
            self.logger.error("Audit logging failed after role mutation", operation=operation,
                              error=exc.message)
            return [f"Audit logging failed: {exc.message}"]

    def _track(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.track_role_change(outcome)
