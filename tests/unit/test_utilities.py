"""
Unit tests for the shared utilities: timestamps, structured logging,
Prometheus metrics and notification dispatch.
"""

import datetime
import importlib

import pytest
import structlog
from structlog.testing import capture_logs

from role_governance.auth.models.role import UserRole
from role_governance.notifications import LoggingNotificationService, NotificationDispatcher
from role_governance.utils.datetime import (
    DateTimeError,
    ensure_utc,
    get_timezone,
    parse_timestamp,
    to_isoformat,
)
from role_governance.utils.logging import (
    bind_request_context,
    clear_request_context,
    get_logger,
    log_audit_event,
    log_security_event,
)
from role_governance.utils.monitoring import GovernanceMetrics

from tests.factories import RoleRequestFactory

UTC = datetime.timezone.utc


class TestDatetimeHelpers:

    def test_naive_values_are_utc(self):
        assert ensure_utc(datetime.datetime(2024, 3, 13, 10, 0)) == datetime.datetime(2024, 3, 13, 10, 0, tzinfo=UTC)

    def test_offsets_are_converted(self):
        value = datetime.datetime(2024, 3, 13, 12, 0, tzinfo=datetime.timezone(datetime.timedelta(hours=2)))
        converted = ensure_utc(value)
        assert converted.hour == 10
        assert converted.tzinfo is UTC

    @pytest.mark.parametrize("raw,expected", [
        ("2024-03-13T10:00:00Z", datetime.datetime(2024, 3, 13, 10, 0, tzinfo=UTC)),
        ("2024-03-13T05:00:00-05:00", datetime.datetime(2024, 3, 13, 10, 0, tzinfo=UTC)),
        ("2024-03-13", datetime.datetime(2024, 3, 13, tzinfo=UTC)),
        ("", None),
        (None, None),
    ])
    def test_parse_timestamp(self, raw, expected):
        assert parse_timestamp(raw) == expected

    def test_parse_timestamp_rejects_garbage(self):
        with pytest.raises(DateTimeError):
            parse_timestamp("next tuesday")

    def test_unknown_timezone(self):
        assert get_timezone("Europe/Berlin").key == "Europe/Berlin"
        with pytest.raises(DateTimeError, match="Unknown timezone"):
            get_timezone("Mars/Olympus_Mons")

    def test_to_isoformat(self):
        assert to_isoformat(None) is None
        assert to_isoformat(datetime.datetime(2024, 3, 13, 10, 0)) == "2024-03-13T10:00:00+00:00"


class TestLogging:

    def test_bind_request_context(self):
        correlation_id = bind_request_context(actor_id="admin-1", ip_address="10.0.0.8")
        bound = structlog.contextvars.get_contextvars()
        assert bound["correlation_id"] == correlation_id
        assert bound["actor_id"] == "admin-1"
        assert bound["ip_address"] == "10.0.0.8"
        assert "session_id" not in bound

        clear_request_context()
        assert structlog.contextvars.get_contextvars() == {}

    def test_explicit_correlation_id(self):
        assert bind_request_context(correlation_id="req-42") == "req-42"

    def test_audit_and_security_events(self):
        logger = get_logger("governance.test", component="tests")
        with capture_logs() as logs:
            log_audit_event(logger, "Role changed", action="changed", subject_user_id="u1",
                            actor_id="admin-1", new_role="teacher")
            log_security_event(logger, "Escalation", severity="critical", user_id="u1")

        audit, security = logs
        assert audit["category"] == "audit"
        assert audit["outcome"] == "success"
        assert audit["new_role"] == "teacher"
        assert audit["log_level"] == "info"
        assert security["category"] == "security"
        assert security["severity"] == "critical"
        assert security["log_level"] == "warning"

    def test_logger_binds_name_and_component(self):
        logger = get_logger("x", component="y")
        with capture_logs() as logs:
            logger.info("Bound")

        assert logs == [{"event": "Bound", "log_level": "info", "logger_name": "x", "component": "y"}]

    @pytest.mark.parametrize("module", [
        "role_governance.auth.permission_cache",
        "role_governance.auth.permission_checker",
        "role_governance.persistence.sqlalchemy_repository",
        "role_governance.container",
    ])
    def test_modules_with_module_level_loggers_import(self, module):
        assert importlib.import_module(module).logger is not None


class TestMetrics:

    def test_instances_do_not_share_registries(self):
        first, second = GovernanceMetrics(), GovernanceMetrics()
        first.track_role_change("executed")
        assert first.get_sample_value("role_changes_total", {"outcome": "executed"}) == 1
        assert second.get_sample_value("role_changes_total", {"outcome": "executed"}) == 0

    def test_cache_events_ignore_zero_counts(self, metrics):
        metrics.track_cache_event("invalidation", 0)
        metrics.track_cache_event("invalidation", 3)
        assert metrics.get_sample_value("permission_cache_events_total", {"event": "invalidation"}) == 3

    def test_time_permission_check(self, metrics):
        with metrics.time_permission_check():
            pass
        assert metrics.get_sample_value("permission_check_seconds_count") == 1

    def test_get_metric(self, metrics):
        assert metrics.get_metric("audit_entries_total") is not None
        assert metrics.get_metric("unknown") is None

    def test_export(self, metrics):
        metrics.track_suspicious_activity("privilege_escalation", "critical")
        output = metrics.export().decode("utf-8")
        assert "role_governance_suspicious_activities_total{" in output
        assert 'type="privilege_escalation"' in output

    def test_namespace(self):
        metrics = GovernanceMetrics(namespace="campus")
        metrics.track_audit_entry("assigned")
        assert metrics.get_sample_value("audit_entries_total", {"action": "assigned"}) == 1
        assert b"campus_audit_entries_total" in metrics.export()


class TestNotifications:

    def test_logging_service(self):
        service = LoggingNotificationService()
        request = RoleRequestFactory.build(user_id="u1")
        with capture_logs() as logs:
            service.notify_role_change_requested(request)
            service.notify_role_expired("u1", UserRole.TEACHER, None)

        assert logs[0]["event"] == "Role change requested"
        assert logs[0]["verification_method"] == "manual_review"
        assert logs[1]["reverted_to"] is None

    def test_dispatcher_delivers(self, notifier, metrics):
        dispatcher = NotificationDispatcher(notifier, metrics)
        assert dispatcher.dispatch("role_change_denied", "u1", UserRole.TEACHER, "No") is True
        assert notifier.sent == [("role_change_denied", ("u1", UserRole.TEACHER, "No"))]

    def test_dispatcher_swallows_failures(self, notifier, metrics):
        notifier.fail = True
        dispatcher = NotificationDispatcher(notifier, metrics)
        with capture_logs() as logs:
            delivered = dispatcher.dispatch("role_changed", "u1", UserRole.TEACHER, UserRole.STUDENT, "r")

        assert delivered is False
        assert logs[-1]["event"] == "Notification delivery failed"
        assert logs[-1]["error_type"] == "ConnectionError"
        assert metrics.get_sample_value("role_changes_total", {"outcome": "notification_failed"}) == 1
