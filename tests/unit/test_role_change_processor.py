"""
Unit tests for the role change processor.

The processor runs against the SQLAlchemy repositories on in-memory SQLite
with a frozen clock; notifications are recorded by the fixture notifier.
"""

import datetime
from contextlib import contextmanager
from unittest.mock import Mock

import pytest

from role_governance.auth.models.audit import AuditAction
from role_governance.auth.models.role import (
    AssignmentStatus,
    RoleRequestStatus,
    UserRole,
    VerificationMethod,
)
from role_governance.auth.models.user_role_assignment import RoleRequest, UserRoleAssignment
from role_governance.auth.services.role_audit_service import RoleAuditService
from role_governance.auth.services.role_change_processor import (
    RoleChangeProcessingOptions,
    RoleChangeProcessor,
)
from role_governance.persistence.sqlalchemy_repository import SQLAlchemyRoleAssignmentRepository
from role_governance.utils.error_handling import (
    AuthorizationError,
    NotFoundError,
    RoleChangeConsistencyError,
    RoleRequestStateError,
    StorageError,
    ValidationError,
)

from tests.factories import RoleChangeRequestFactory, RoleRequestFactory


class FailingAssignmentRepository(SQLAlchemyRoleAssignmentRepository):
    """Assignment repository whose create and reactivate steps can be made to fail."""

    def __init__(self, session_factory, fail_create=False, fail_reactivate=False):
        super().__init__(session_factory)
        self.fail_create = fail_create
        self.fail_reactivate = fail_reactivate

    def create_assignment(self, assignment: UserRoleAssignment) -> UserRoleAssignment:
        if self.fail_create:
            raise RuntimeError("disk full")
        return super().create_assignment(assignment)

    def reactivate_assignment(self, assignment_id: str) -> UserRoleAssignment:
        if self.fail_reactivate:
            raise RuntimeError("connection lost")
        return super().reactivate_assignment(assignment_id)


class AutocommitAssignmentRepository(FailingAssignmentRepository):
    """Commits every call on its own session, like a store without transactions."""

    transactional = False

    @contextmanager
    def transaction(self):
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


@pytest.fixture
def admin(assign_role):
    """Institution admin for inst-1."""
    return assign_role("admin", UserRole.INSTITUTION_ADMIN)


@pytest.fixture
def make_processor(permission_checker, audit_service, notifier, config, metrics, clock):
    def _make(repository, audit=None, **config_changes):
        return RoleChangeProcessor(repository, permission_checker, audit or audit_service, notifier,
                                   config=config.replace(**config_changes) if config_changes else config,
                                   metrics=metrics, now=clock)
    return _make


def self_service_upgrade(user_id="u1"):
    return RoleChangeRequestFactory.build(user_id=user_id, current_role=UserRole.STUDENT,
                                          new_role=UserRole.TEACHER, department_id="dept-1")


def admin_downgrade(user_id="u2", actor="admin"):
    return RoleChangeRequestFactory.build(user_id=user_id, current_role=UserRole.TEACHER,
                                          new_role=UserRole.STUDENT, changed_by=actor,
                                          reason="Moved back to coursework")


def roles_of(repository, user_id):
    return sorted(a.role.value for a in repository.get_active_assignments(user_id))


class TestApprovalRequirement:

    @pytest.mark.parametrize("current,new,required,reason", [
        (UserRole.STUDENT, UserRole.DEPARTMENT_ADMIN, True, "Administrative roles require approval"),
        (UserRole.TEACHER, UserRole.SYSTEM_ADMIN, True, "Administrative roles require approval"),
        (UserRole.STUDENT, UserRole.TEACHER, True, "Teacher role requires verification and approval"),
        (UserRole.TEACHER, UserRole.STUDENT, False, None),
        (UserRole.DEPARTMENT_ADMIN, UserRole.TEACHER, True, "Role changes require approval for security"),
    ])
    def test_default_rules(self, role_change_processor, current, new, required, reason):
        assert role_change_processor.determine_approval_requirement(current, new) == (required, reason)

    def test_configured_role_list(self, make_processor, assignment_repository):
        processor = make_processor(assignment_repository, require_approval_for_roles=[UserRole.TEACHER])
        assert processor.determine_approval_requirement(UserRole.STUDENT, UserRole.TEACHER) == (
            True, "The teacher role requires approval")

    def test_auto_approve_list_is_configurable(self, make_processor, assignment_repository):
        processor = make_processor(assignment_repository, require_approval_for_roles=[],
                                   auto_approve_roles=[UserRole.TEACHER])
        assert processor.determine_approval_requirement(UserRole.STUDENT, UserRole.TEACHER) == (
            True, "Teacher role requires verification and approval")
        assert processor.determine_approval_requirement(UserRole.TEACHER, UserRole.STUDENT) == (
            True, "Role changes require approval for security")

    def test_verification_method(self, make_processor, assignment_repository, role_change_processor):
        assert role_change_processor.get_verification_method(UserRole.STUDENT) is VerificationMethod.EMAIL_DOMAIN
        assert role_change_processor.get_verification_method(UserRole.TEACHER) is VerificationMethod.MANUAL_REVIEW
        assert role_change_processor.get_verification_method(
            UserRole.INSTITUTION_ADMIN) is VerificationMethod.ADMIN_APPROVAL

        processor = make_processor(assignment_repository, require_approval_for_roles=[UserRole.TEACHER])
        assert processor.get_verification_method(UserRole.TEACHER) is VerificationMethod.ADMIN_APPROVAL


class TestValidation:

    def test_valid_self_service_request(self, role_change_processor, assign_role):
        assign_role("u1", UserRole.STUDENT)
        result = role_change_processor.validate_role_change(self_service_upgrade())
        assert result.is_valid
        assert result.errors == []
        assert result.requires_approval is True
        assert result.approval_reason == "Teacher role requires verification and approval"

    def test_same_role_and_missing_reason(self, role_change_processor, assign_role):
        assign_role("u1", UserRole.TEACHER)
        request = RoleChangeRequestFactory.build(user_id="u1", current_role=UserRole.TEACHER,
                                                 new_role=UserRole.TEACHER, reason="  ")
        result = role_change_processor.validate_role_change(request)
        assert not result.is_valid
        assert "Current role and new role cannot be the same" in result.errors
        assert "Reason for role change is required" in result.errors

    def test_missing_fields(self, role_change_processor):
        request = RoleChangeRequestFactory.build(user_id="u1", current_role=UserRole.STUDENT, new_role=None)
        result = role_change_processor.validate_role_change(request)
        assert "Missing required fields for role change" in result.errors

    def test_claimed_role_must_be_held(self, role_change_processor, assign_role):
        assign_role("u1", UserRole.STUDENT)
        request = RoleChangeRequestFactory.build(user_id="u1", current_role=UserRole.TEACHER,
                                                 new_role=UserRole.STUDENT)
        result = role_change_processor.validate_role_change(request)
        assert result.errors == ["User does not have the specified current role"]

    def test_claimed_role_in_other_institution(self, role_change_processor, assign_role):
        assign_role("u1", UserRole.TEACHER, institution_id="inst-2")
        result = role_change_processor.validate_role_change(admin_downgrade(user_id="u1"))
        assert "User does not have the specified current role" in result.errors

    def test_third_party_needs_role_assign(self, role_change_processor, assign_role):
        assign_role("u2", UserRole.TEACHER)
        assign_role("t1", UserRole.TEACHER)
        result = role_change_processor.validate_role_change(admin_downgrade(actor="t1"))
        assert result.errors == ["Insufficient permissions to change roles for other users"]

    def test_admin_of_other_institution(self, role_change_processor, assign_role):
        assign_role("u2", UserRole.TEACHER)
        assign_role("other-admin", UserRole.INSTITUTION_ADMIN, institution_id="inst-2")
        result = role_change_processor.validate_role_change(admin_downgrade(actor="other-admin"))
        assert "Insufficient permissions to change roles for other users" in result.errors

    def test_pending_request_is_a_warning(self, role_change_processor, assign_role):
        assign_role("u1", UserRole.STUDENT)
        role_change_processor.process_role_change(self_service_upgrade())
        result = role_change_processor.validate_role_change(self_service_upgrade())
        assert result.is_valid
        assert result.warnings == ["User has existing pending role requests"]


class TestProcessRoleChange:

    def test_approval_required_opens_request(self, role_change_processor, assign_role,
                                             assignment_repository, audit_service, notifier, clock,
                                             metrics, config):
        assign_role("u1", UserRole.STUDENT)
        result = role_change_processor.process_role_change(self_service_upgrade())

        assert result.success
        role_request = result.result
        assert isinstance(role_request, RoleRequest)
        assert role_request.status is RoleRequestStatus.PENDING
        assert role_request.verification_method is VerificationMethod.MANUAL_REVIEW
        assert role_request.requested_by == "u1"
        assert role_request.expires_at == clock() + datetime.timedelta(days=config.role_request_expiration_days)
        assert assignment_repository.get_request(role_request.id).status is RoleRequestStatus.PENDING
        assert roles_of(assignment_repository, "u1") == ["student"]

        requested = audit_service.query_role_audit_logs(user_id="u1", action=AuditAction.REQUESTED)
        assert requested.total_count == 1
        assert notifier.events() == ["role_change_requested"]
        assert metrics.get_sample_value("role_changes_total", {"outcome": "requested"}) == 1

    def test_auto_approved_change_executes(self, role_change_processor, admin, assign_role,
                                           assignment_repository, audit_service, notifier,
                                           permission_checker, metrics):
        previous = assign_role("u2", UserRole.TEACHER)
        assert permission_checker.has_permission("u2", "user.read") is True

        result = role_change_processor.process_role_change(admin_downgrade())

        assert result.success, result.error
        assignment = result.result
        assert assignment.role is UserRole.STUDENT
        assert assignment.assigned_by == "admin"
        assert assignment.previous_role is UserRole.TEACHER
        assert assignment.metadata["role_change_type"] == "immediate"
        assert roles_of(assignment_repository, "u2") == ["student"]

        revoked = assignment_repository.get_assignment(previous.id)
        assert revoked.status is AssignmentStatus.REVOKED
        assert revoked.revoked_by == "admin"

        assert permission_checker.has_permission("u2", "user.read") is False

        entry = audit_service.query_role_audit_logs(user_id="u2", action=AuditAction.CHANGED).entries[0]
        assert entry.metadata["assignment_id"] == assignment.id
        assert entry.metadata["revoked_assignment_id"] == previous.id
        assert notifier.sent == [("role_changed", ("u2", UserRole.TEACHER, UserRole.STUDENT,
                                                   "Moved back to coursework"))]
        assert metrics.get_sample_value("role_changes_total", {"outcome": "executed"}) == 1

    def test_validation_failure(self, role_change_processor, metrics, notifier):
        result = role_change_processor.process_role_change(self_service_upgrade())
        assert not result.success
        assert result.error == "Validation failed: User does not have the specified current role"
        assert notifier.sent == []
        assert metrics.get_sample_value("role_changes_total", {"outcome": "failed"}) == 1

    def test_bypass_approval(self, role_change_processor, assign_role, assignment_repository):
        assign_role("u1", UserRole.STUDENT)
        result = role_change_processor.process_role_change(
            self_service_upgrade(), RoleChangeProcessingOptions(bypass_approval=True))
        assert result.success
        assert result.result.role is UserRole.TEACHER
        assert roles_of(assignment_repository, "u1") == ["teacher"]

    def test_force_approval_wins_over_bypass(self, role_change_processor, admin, assign_role):
        assign_role("u2", UserRole.TEACHER)
        result = role_change_processor.process_role_change(
            admin_downgrade(), RoleChangeProcessingOptions(bypass_approval=True, force_approval=True))
        assert isinstance(result.result, RoleRequest)
        assert result.result.verification_method is VerificationMethod.EMAIL_DOMAIN

    def test_audit_metadata_is_kept(self, role_change_processor, admin, assign_role):
        assign_role("u2", UserRole.TEACHER)
        result = role_change_processor.process_role_change(
            admin_downgrade(), RoleChangeProcessingOptions(audit_metadata={"source": "sis-sync"}))
        assert result.result.metadata["source"] == "sis-sync"

    def test_notify_user_false(self, role_change_processor, admin, assign_role, notifier):
        assign_role("u2", UserRole.TEACHER)
        role_change_processor.process_role_change(admin_downgrade(),
                                                  RoleChangeProcessingOptions(notify_user=False))
        assert notifier.sent == []

    def test_notification_failure_does_not_undo_change(self, role_change_processor, admin, assign_role,
                                                       notifier, metrics, assignment_repository):
        assign_role("u2", UserRole.TEACHER)
        notifier.fail = True
        result = role_change_processor.process_role_change(admin_downgrade())
        assert result.success
        assert roles_of(assignment_repository, "u2") == ["student"]
        assert metrics.get_sample_value("role_changes_total", {"outcome": "notification_failed"}) == 1

    def test_audit_failure_becomes_warning(self, make_processor, assignment_repository, admin,
                                           assign_role):
        audit = Mock(spec=RoleAuditService)
        audit.log_role_change.side_effect = StorageError("Failed to store role audit entry: locked")
        processor = make_processor(assignment_repository, audit=audit)
        assign_role("u2", UserRole.TEACHER)

        result = processor.process_role_change(admin_downgrade())

        assert result.success
        assert result.warnings == ["Audit logging failed: Failed to store role audit entry: locked"]
        assert roles_of(assignment_repository, "u2") == ["student"]


class TestAtomicity:

    def test_transactional_rollback(self, make_processor, session_factory, admin, assign_role,
                                    assignment_repository):
        previous = assign_role("u2", UserRole.TEACHER)
        processor = make_processor(FailingAssignmentRepository(session_factory, fail_create=True))

        result = processor.process_role_change(admin_downgrade())

        assert not result.success
        assert result.error == "Failed to execute role change: disk full"
        assert assignment_repository.get_assignment(previous.id).status is AssignmentStatus.ACTIVE

    def test_compensation_restores_previous_assignment(self, make_processor, session_factory, admin,
                                                       assign_role, assignment_repository, notifier):
        previous = assign_role("u2", UserRole.TEACHER)
        processor = make_processor(AutocommitAssignmentRepository(session_factory, fail_create=True))

        result = processor.process_role_change(admin_downgrade())

        assert not result.success
        assert result.error == "Failed to create role assignment: disk full"
        restored = assignment_repository.get_assignment(previous.id)
        assert restored.status is AssignmentStatus.ACTIVE
        assert restored.revoked_at is None
        assert notifier.sent == []

    def test_failed_compensation_is_a_consistency_error(self, make_processor, session_factory, admin,
                                                        assign_role, assignment_repository, metrics):
        previous = assign_role("u2", UserRole.TEACHER)
        processor = make_processor(AutocommitAssignmentRepository(
            session_factory, fail_create=True, fail_reactivate=True))

        with pytest.raises(RoleChangeConsistencyError) as exc_info:
            processor.process_role_change(admin_downgrade())

        assert exc_info.value.details["revoked_assignment_id"] == previous.id
        assert assignment_repository.get_assignment(previous.id).status is AssignmentStatus.REVOKED
        assert metrics.get_sample_value("role_changes_total", {"outcome": "inconsistent"}) == 1


class TestApprove:

    @pytest.fixture
    def pending(self, role_change_processor, assign_role):
        assign_role("u1", UserRole.STUDENT)
        return role_change_processor.process_role_change(self_service_upgrade()).result

    def test_approve(self, role_change_processor, admin, pending, assignment_repository,
                     audit_service, notifier, metrics):
        assignment = role_change_processor.approve_role_change(pending.id, "admin", "Verified credentials")

        assert assignment.role is UserRole.TEACHER
        assert assignment.assigned_by == "admin"
        assert assignment.metadata["request_id"] == pending.id
        assert roles_of(assignment_repository, "u1") == ["teacher"]

        stored = assignment_repository.get_request(pending.id)
        assert stored.status is RoleRequestStatus.APPROVED
        assert stored.reviewed_by == "admin"
        assert stored.review_notes == "Verified credentials"

        actions = {e.action for e in audit_service.query_role_audit_logs(user_id="u1").entries}
        assert actions == {AuditAction.REQUESTED, AuditAction.APPROVED, AuditAction.CHANGED}
        assert notifier.events()[-1] == "role_change_approved"
        assert metrics.get_sample_value("role_changes_total", {"outcome": "approved"}) == 1

    def test_unknown_request_before_authorization(self, role_change_processor):
        with pytest.raises(NotFoundError):
            role_change_processor.approve_role_change("missing", "nobody")

    def test_unauthorized_approver(self, role_change_processor, pending, assign_role,
                                   assignment_repository):
        assign_role("t1", UserRole.TEACHER)
        with pytest.raises(AuthorizationError):
            role_change_processor.approve_role_change(pending.id, "t1")
        assert assignment_repository.get_request(pending.id).status is RoleRequestStatus.PENDING

    def test_not_pending(self, role_change_processor, admin, pending):
        role_change_processor.approve_role_change(pending.id, "admin")
        with pytest.raises(RoleRequestStateError):
            role_change_processor.approve_role_change(pending.id, "admin")

    def test_expired_request(self, role_change_processor, admin, pending, assignment_repository,
                             audit_service, clock, config):
        clock.advance(days=config.role_request_expiration_days, seconds=1)
        with pytest.raises(RoleRequestStateError, match="Role request has expired"):
            role_change_processor.approve_role_change(pending.id, "admin")

        assert assignment_repository.get_request(pending.id).status is RoleRequestStatus.EXPIRED
        assert roles_of(assignment_repository, "u1") == ["student"]
        assert audit_service.query_role_audit_logs(user_id="u1", action=AuditAction.EXPIRED).total_count == 1

    def test_request_without_current_role(self, role_change_processor, admin, assignment_repository,
                                          audit_service, clock):
        request = assignment_repository.create_request(RoleRequestFactory.build(
            user_id="u5", current_role=None, requested_at=clock()))
        assignment = role_change_processor.approve_role_change(request.id, "admin")
        assert assignment.role is UserRole.TEACHER
        assert audit_service.query_role_audit_logs(user_id="u5", action=AuditAction.ASSIGNED).total_count == 1


class TestDeny:

    @pytest.fixture
    def pending(self, role_change_processor, assign_role):
        assign_role("u1", UserRole.STUDENT)
        return role_change_processor.process_role_change(self_service_upgrade()).result

    def test_deny(self, role_change_processor, admin, pending, assignment_repository, audit_service,
                  notifier):
        denied = role_change_processor.deny_role_change(pending.id, "admin", "Missing teaching certificate")

        assert denied.status is RoleRequestStatus.DENIED
        assert denied.review_notes == "Missing teaching certificate"
        assert roles_of(assignment_repository, "u1") == ["student"]
        assert audit_service.query_role_audit_logs(user_id="u1", action=AuditAction.DENIED).total_count == 1
        assert notifier.sent[-1] == ("role_change_denied", ("u1", UserRole.TEACHER,
                                                            "Missing teaching certificate"))

    def test_reason_required(self, role_change_processor, admin, pending):
        with pytest.raises(ValidationError):
            role_change_processor.deny_role_change(pending.id, "admin", "")

    def test_deny_twice(self, role_change_processor, admin, pending):
        role_change_processor.deny_role_change(pending.id, "admin", "No")
        with pytest.raises(RoleRequestStateError):
            role_change_processor.deny_role_change(pending.id, "admin", "Still no")


class TestRollback:

    @pytest.fixture
    def changed(self, role_change_processor, admin, assign_role):
        assign_role("u2", UserRole.TEACHER)
        return role_change_processor.process_role_change(admin_downgrade()).result

    def test_rollback_restores_previous_role(self, role_change_processor, changed, assignment_repository,
                                             metrics):
        restored = role_change_processor.rollback_role_change(changed.id, "admin", "Changed the wrong user")

        assert restored.role is UserRole.TEACHER
        assert restored.metadata["rollback_of"] == changed.id
        assert restored.previous_role is UserRole.STUDENT
        assert roles_of(assignment_repository, "u2") == ["teacher"]
        assert assignment_repository.get_assignment(changed.id).status is AssignmentStatus.REVOKED
        assert metrics.get_sample_value("role_changes_total", {"outcome": "rolled_back"}) == 1

    def test_requires_previous_role(self, role_change_processor, admin, assign_role):
        original = assign_role("u3", UserRole.TEACHER)
        with pytest.raises(ValidationError, match="no previous role"):
            role_change_processor.rollback_role_change(original.id, "admin", "Undo")

    def test_requires_reason(self, role_change_processor, changed):
        with pytest.raises(ValidationError):
            role_change_processor.rollback_role_change(changed.id, "admin", " ")

    def test_requires_active_assignment(self, role_change_processor, changed):
        role_change_processor.rollback_role_change(changed.id, "admin", "Undo")
        with pytest.raises(ValidationError, match="Only active"):
            role_change_processor.rollback_role_change(changed.id, "admin", "Undo again")

    def test_requires_revoke_permission(self, role_change_processor, changed, assign_role):
        assign_role("t1", UserRole.TEACHER)
        with pytest.raises(AuthorizationError):
            role_change_processor.rollback_role_change(changed.id, "t1", "Undo")

    def test_unknown_assignment(self, role_change_processor):
        with pytest.raises(NotFoundError):
            role_change_processor.rollback_role_change("missing", "admin", "Undo")


class TestImpactPreview:

    def test_student_to_teacher(self, role_change_processor):
        preview = role_change_processor.get_change_impact_preview("u1", UserRole.STUDENT, UserRole.TEACHER)
        added = {p.name for p in preview.added_permissions}
        removed = {p.name for p in preview.removed_permissions}
        assert "class.create" in added
        assert "content.read" not in added
        assert removed == {"enrollment.create", "user.update"}
        assert len(preview.current_permissions) == 5
        assert len(preview.new_permissions) == 13

    def test_no_side_effects(self, role_change_processor, assignment_repository, notifier):
        role_change_processor.get_change_impact_preview("u1", UserRole.TEACHER, UserRole.SYSTEM_ADMIN)
        assert assignment_repository.get_active_assignments("u1") == []
        assert notifier.sent == []
