"""
Unit tests for the governance domain records.

Covers the role hierarchy, the permission catalog and default grants,
assignment and request records, and audit record metadata validation.
"""

import datetime

import pytest

from role_governance.auth.models.audit import (
    AuditAction,
    AuditLogQuery,
    AuditReport,
    ReportSummary,
    RoleAuditEntry,
    SuspiciousActivity,
    SuspiciousActivitySeverity,
    SuspiciousActivityType,
)
from role_governance.auth.models.permission import (
    PERMISSIONS,
    ConditionType,
    PermissionCategory,
    PermissionCondition,
    PermissionScope,
    get_all_permissions,
    get_permission,
    get_permission_names_for_roles,
    get_permissions_by_category,
    get_permissions_by_scope,
    get_permissions_for_role,
    get_role_permission,
    get_role_permissions,
)
from role_governance.auth.models.role import (
    ADMIN_ROLES,
    AssignmentStatus,
    RoleRequestStatus,
    UserRole,
    compare_roles,
    is_downgrade,
    is_upgrade,
    parse_roles,
)
from role_governance.auth.models.user_role_assignment import ResourceContext, UserRoleAssignment

from tests.factories import (
    FACTORY_NOW,
    RoleAuditEntryFactory,
    RoleChangeRequestFactory,
    RoleRequestFactory,
    UserRoleAssignmentFactory,
)


class TestRoleHierarchy:

    def test_levels(self):
        order = UserRole.get_hierarchy_order()
        assert [order[r] for r in UserRole] == [1, 2, 3, 4, 5]
        assert UserRole.SYSTEM_ADMIN.level == 5

    def test_admin_roles(self):
        assert ADMIN_ROLES == {UserRole.DEPARTMENT_ADMIN, UserRole.INSTITUTION_ADMIN, UserRole.SYSTEM_ADMIN}
        assert UserRole.DEPARTMENT_ADMIN.is_administrative
        assert not UserRole.TEACHER.is_administrative

    def test_compare_roles(self):
        assert compare_roles(UserRole.STUDENT, UserRole.INSTITUTION_ADMIN) == 3
        assert is_upgrade(UserRole.STUDENT, UserRole.TEACHER)
        assert is_downgrade(UserRole.TEACHER, UserRole.STUDENT)
        assert not is_upgrade(UserRole.TEACHER, UserRole.TEACHER)

    def test_parse(self):
        assert UserRole.parse(" Teacher ") is UserRole.TEACHER
        assert str(UserRole.SYSTEM_ADMIN) == "system_admin"
        with pytest.raises(ValueError, match="Unknown role"):
            UserRole.parse("principal")

    def test_parse_roles_dedupes(self):
        assert parse_roles(["student", UserRole.STUDENT, "teacher"]) == [UserRole.STUDENT, UserRole.TEACHER]

    def test_request_status_terminal(self):
        assert not RoleRequestStatus.PENDING.is_terminal
        assert RoleRequestStatus.DENIED.is_terminal


class TestPermissionCatalog:

    def test_catalog_size_and_lookup(self):
        assert len(PERMISSIONS) == 32
        assert len(get_all_permissions()) == 32
        permission = get_permission("class.create")
        assert permission.scope is PermissionScope.DEPARTMENT
        assert permission.resource_type == "class"
        assert permission.action == "create"
        assert permission.id == "class.create"
        assert get_permission("class.teleport") is None

    def test_names_are_unique(self):
        names = [p.name for p in PERMISSIONS]
        assert len(names) == len(set(names))

    def test_system_permissions(self):
        system = {p.name for p in get_permissions_by_scope(PermissionScope.SYSTEM)}
        assert system == {"system.configure", "system.audit", "institution.create"}
        assert {p.name for p in get_permissions_by_category(PermissionCategory.ANALYTICS)} == {
            "analytics.read", "analytics.export",
        }

    @pytest.mark.parametrize("role,count", [
        (UserRole.STUDENT, 5),
        (UserRole.TEACHER, 13),
        (UserRole.DEPARTMENT_ADMIN, 8),
        (UserRole.INSTITUTION_ADMIN, 10),
        (UserRole.SYSTEM_ADMIN, 32),
    ])
    def test_default_grant_counts(self, role, count):
        assert len(get_role_permissions(role)) == count

    def test_system_admin_grants_are_unconditional(self):
        assert all(not grant.conditions for grant in get_role_permissions(UserRole.SYSTEM_ADMIN))

    def test_grant_conditions(self):
        grant = get_role_permission(UserRole.TEACHER, "class.update")
        assert [c.type for c in grant.conditions] == [ConditionType.RESOURCE_OWNER]
        assert grant.id == "teacher:class.update"
        assert get_role_permission(UserRole.STUDENT, "class.manage") is None

    def test_permissions_for_role_in_catalog_order(self):
        names = [p.name for p in get_permissions_for_role(UserRole.STUDENT)]
        assert names == ["content.read", "class.read", "enrollment.create", "enrollment.read", "user.update"]

    def test_permission_names_for_roles(self):
        names = get_permission_names_for_roles([UserRole.STUDENT, UserRole.TEACHER])
        assert "enrollment.create" in names
        assert "class.create" in names
        assert "class.manage" not in names


class TestPermissionCondition:

    def test_time_based_parameters_are_parsed(self):
        condition = PermissionCondition.from_parameters("time_based", {
            "start_time": "2024-03-01T00:00:00Z",
            "end_time": "2024-03-31T23:59:59+00:00",
        })
        assert condition.type is ConditionType.TIME_BASED
        assert condition.start_time == datetime.datetime(2024, 3, 1, tzinfo=datetime.timezone.utc)
        assert condition.parameters["end_time"].startswith("2024-03-31T23:59:59")

    def test_unknown_parameter_rejected(self):
        with pytest.raises(ValueError, match="Unrecognized parameters"):
            PermissionCondition.from_parameters("department_match", {"department_id": "d1"})

    def test_bad_timestamp_rejected(self):
        with pytest.raises(ValueError, match="Invalid timestamp"):
            PermissionCondition.from_parameters("time_based", {"start_time": "next tuesday"})


class TestUserRoleAssignment:

    def test_roles_and_status_parsed_from_strings(self):
        assignment = UserRoleAssignment(user_id="u1", role="teacher", status="suspended")
        assert assignment.role is UserRole.TEACHER
        assert assignment.status is AssignmentStatus.SUSPENDED
        assert not assignment.is_usable()

    def test_temporary_requires_expiration(self):
        with pytest.raises(ValueError, match="expiration"):
            UserRoleAssignment(user_id="u1", role=UserRole.TEACHER, is_temporary=True)

    def test_expiry_is_strict(self):
        assignment = UserRoleAssignmentFactory.build(temporary=True)
        assert not assignment.is_expired(assignment.expires_at)
        assert assignment.is_expired(assignment.expires_at + datetime.timedelta(seconds=1))
        assert not assignment.is_usable(assignment.expires_at + datetime.timedelta(seconds=1))

    def test_naive_timestamps_become_utc(self):
        assignment = UserRoleAssignment(user_id="u1", role="student",
                                        assigned_at=datetime.datetime(2024, 1, 1, 12, 0))
        assert assignment.assigned_at.tzinfo is datetime.timezone.utc

    def test_metadata_normalized(self):
        assignment = UserRoleAssignment(user_id="u1", role="teacher", metadata={
            "previous_role": UserRole.STUDENT,
            "original_expires_at": FACTORY_NOW,
            "request_id": None,
        })
        assert assignment.metadata == {
            "previous_role": "student",
            "original_expires_at": "2024-03-13T10:00:00+00:00",
        }
        assert assignment.previous_role is UserRole.STUDENT

    def test_unknown_metadata_key_rejected(self):
        with pytest.raises(ValueError, match="Unrecognized assignment metadata keys: favourite_colour"):
            UserRoleAssignment(user_id="u1", role="teacher", metadata={"favourite_colour": "blue"})

    def test_to_dict(self):
        assignment = UserRoleAssignmentFactory.build(user_id="u1", role=UserRole.TEACHER)
        data = assignment.to_dict()
        assert data["role"] == "teacher"
        assert data["status"] == "active"
        assert data["expires_at"] is None


class TestRequests:

    def test_role_request_expiry(self):
        request = RoleRequestFactory.build()
        assert request.is_pending
        assert not request.is_expired(request.expires_at)
        assert request.is_expired(request.expires_at + datetime.timedelta(microseconds=1))
        assert request.to_dict()["verification_method"] == "manual_review"

    def test_role_change_request_defaults_actor_to_subject(self):
        request = RoleChangeRequestFactory.build(user_id="u1", changed_by=None)
        assert request.changed_by == "u1"

    def test_resource_context_from_mapping(self):
        context = ResourceContext.coerce({"owner_id": "u1", "department_id": None, "extra": "ignored"})
        assert context == ResourceContext(owner_id="u1")
        assert ResourceContext.coerce(None) is None
        with pytest.raises(TypeError):
            ResourceContext.coerce(["u1"])


class TestAuditRecords:

    def test_entry_metadata_validated_per_action(self):
        entry = RoleAuditEntryFactory.build(metadata={"assignment_id": "a1", "role_change_type": "immediate"})
        assert entry.is_role_mutation
        with pytest.raises(ValueError, match="changed audit"):
            RoleAuditEntryFactory.build(metadata={"verification_method": "manual_review"})

    def test_request_entries_are_not_mutations(self):
        entry = RoleAuditEntryFactory.build(action=AuditAction.REQUESTED)
        assert not entry.is_role_mutation

    def test_entry_is_immutable(self):
        entry = RoleAuditEntryFactory.build()
        with pytest.raises(AttributeError):
            entry.reason = "edited"

    def test_activity_metadata_validated_per_type(self):
        activity = SuspiciousActivity(
            type="privilege_escalation", severity="critical", description="escalation",
            user_id="u1", performed_by="a1",
            metadata={"old_role": UserRole.STUDENT, "new_role": UserRole.SYSTEM_ADMIN, "level_jump": 4},
        )
        assert activity.type is SuspiciousActivityType.PRIVILEGE_ESCALATION
        assert activity.severity is SuspiciousActivitySeverity.CRITICAL
        assert activity.metadata["new_role"] == "system_admin"
        with pytest.raises(ValueError):
            SuspiciousActivity(type="rapid_role_changes", severity="high", description="x",
                               user_id="u1", performed_by="a1", metadata={"level_jump": 2})

    def test_query_validation(self):
        with pytest.raises(ValueError, match="limit"):
            AuditLogQuery(limit=0)
        with pytest.raises(ValueError, match="offset"):
            AuditLogQuery(offset=-1)
        assert AuditLogQuery(role="teacher", action="assigned").role is UserRole.TEACHER

    def test_report_summary_covers_every_role(self):
        summary = ReportSummary()
        assert set(summary.role_distribution) == set(UserRole)
        report = AuditReport(title="Q1", generated_by="a1", period_start=FACTORY_NOW,
                             period_end=FACTORY_NOW, summary=summary,
                             entries=[RoleAuditEntryFactory.build(id="e1")])
        data = report.to_dict()
        assert data["entry_ids"] == ["e1"]
        assert data["summary"]["role_distribution"]["system_admin"] == 0
