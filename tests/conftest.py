"""
Pytest configuration and fixtures for the role governance engine.

Fixtures provide a frozen clock, an isolated in-memory SQLite database per
test, the SQLAlchemy repositories, and fully wired services sharing one
Prometheus registry. Factory Boy factories for domain records live in
``tests/factories.py``.

Markers:
- unit: component tests (auto-applied under tests/unit)
- integration: tests across services and the database (auto-applied under tests/integration)
- database: tests exercising the SQLAlchemy repositories
"""

import datetime
from typing import Any, Callable, List, Tuple

import pytest

from role_governance.auth.models.role import UserRole
from role_governance.auth.models.user_role_assignment import UserRoleAssignment
from role_governance.auth.permission_checker import PermissionChecker
from role_governance.auth.services.role_audit_service import RoleAuditService
from role_governance.auth.services.role_change_processor import RoleChangeProcessor
from role_governance.auth.services.temporary_role_processor import TemporaryRoleProcessor
from role_governance.notifications import NotificationService
from role_governance.persistence.sqlalchemy_repository import (
    SQLAlchemyAuditLogRepository,
    SQLAlchemyRoleAssignmentRepository,
    create_engine_and_session_factory,
    create_schema,
)
from role_governance.utils.config import get_config
from role_governance.utils.logging import clear_request_context, configure_logging
from role_governance.utils.monitoring import GovernanceMetrics

from tests.factories import UserRoleAssignmentFactory

# Wednesday, inside default business hours
DEFAULT_NOW = datetime.datetime(2024, 3, 13, 10, 0, tzinfo=datetime.timezone.utc)

INSTITUTION_ID = "inst-1"
DEPARTMENT_ID = "dept-1"


# =============================================================================
# PYTEST CONFIGURATION AND MARKERS
# =============================================================================

def pytest_configure(config):
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Tests across services and storage")
    config.addinivalue_line("markers", "database: Tests exercising the SQLAlchemy repositories")
    configure_logging(get_config("testing").log_level, json_output=False)


def pytest_collection_modifyitems(config, items):
    """Apply markers based on test location."""
    for item in items:
        path = str(item.fspath)
        if "unit" in path:
            item.add_marker(pytest.mark.unit)
        elif "integration" in path:
            item.add_marker(pytest.mark.integration)

        if "repository" in path or "test_db" in item.name:
            item.add_marker(pytest.mark.database)


# =============================================================================
# CLOCK AND CONFIGURATION
# =============================================================================

class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime.datetime = DEFAULT_NOW):
        self.current = start

    def __call__(self) -> datetime.datetime:
        return self.current

    def advance(self, **kwargs) -> datetime.datetime:
        self.current = self.current + datetime.timedelta(**kwargs)
        return self.current

    def set(self, value: datetime.datetime) -> None:
        self.current = value


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def config():
    return get_config("testing")


@pytest.fixture
def metrics():
    return GovernanceMetrics()


@pytest.fixture(autouse=True)
def _reset_request_context():
    yield
    clear_request_context()


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def session_factory():
    engine, factory = create_engine_and_session_factory("sqlite:///:memory:")
    create_schema(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def assignment_repository(session_factory):
    return SQLAlchemyRoleAssignmentRepository(session_factory)


@pytest.fixture
def audit_repository(session_factory):
    return SQLAlchemyAuditLogRepository(session_factory)


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class RecordingNotificationService(NotificationService):
    """Keeps every notification as ``(event, args)``; raises when ``fail`` is set."""

    def __init__(self):
        self.sent: List[Tuple[str, Tuple[Any, ...]]] = []
        self.fail = False

    def _record(self, event: str, *args: Any) -> None:
        if self.fail:
            raise ConnectionError("notification backend unavailable")
        self.sent.append((event, args))

    def events(self) -> List[str]:
        return [event for event, _ in self.sent]

    def notify_role_change_requested(self, request):
        self._record("role_change_requested", request)

    def notify_role_changed(self, user_id, old_role, new_role, reason):
        self._record("role_changed", user_id, old_role, new_role, reason)

    def notify_role_change_approved(self, user_id, role, notes):
        self._record("role_change_approved", user_id, role, notes)

    def notify_role_change_denied(self, user_id, role, reason):
        self._record("role_change_denied", user_id, role, reason)

    def notify_role_expired(self, user_id, role, reverted_to):
        self._record("role_expired", user_id, role, reverted_to)


@pytest.fixture
def notifier():
    return RecordingNotificationService()


# =============================================================================
# SERVICES
# =============================================================================

@pytest.fixture
def permission_checker(assignment_repository, config, metrics, clock):
    return PermissionChecker(assignment_repository, config=config, metrics=metrics, now=clock)


@pytest.fixture
def audit_service(audit_repository, config, metrics, clock):
    return RoleAuditService(audit_repository, config=config, metrics=metrics, now=clock)


@pytest.fixture
def role_change_processor(assignment_repository, permission_checker, audit_service, notifier,
                          config, metrics, clock):
    return RoleChangeProcessor(assignment_repository, permission_checker, audit_service, notifier,
                               config=config, metrics=metrics, now=clock)


@pytest.fixture
def temporary_role_processor(assignment_repository, permission_checker, audit_service, notifier,
                             config, metrics, clock):
    return TemporaryRoleProcessor(assignment_repository, permission_checker, audit_service, notifier,
                                  config=config, metrics=metrics, now=clock)


@pytest.fixture
def assign_role(assignment_repository, clock) -> Callable[..., UserRoleAssignment]:
    """Persist an active assignment; defaults to ``inst-1`` / ``dept-1``."""

    def _assign(user_id: str, role: UserRole, **overrides: Any) -> UserRoleAssignment:
        overrides.setdefault("institution_id", INSTITUTION_ID)
        overrides.setdefault("department_id", DEPARTMENT_ID)
        overrides.setdefault("assigned_at", clock() - datetime.timedelta(days=30))
        assignment = UserRoleAssignmentFactory.build(user_id=user_id, role=role, **overrides)
        return assignment_repository.create_assignment(assignment)

    return _assign
