"""
Persistence collaborators used by the governance engine.

The engine never talks to a database directly; it depends on these two narrow
repository interfaces. ``role_governance.persistence.sqlalchemy_repository``
provides the SQLAlchemy implementation.

Atomicity:
    ``RoleAssignmentRepository.transaction()`` groups the revoke-then-assign
    unit of a role change. Implementations whose ``transaction()`` is truly
    atomic set ``transactional = True``; otherwise the role change processor
    compensates for a failed assignment itself.
"""

import datetime
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from ..auth.models.audit import (
    AuditAction,
    AuditLogQuery,
    AuditReport,
    RoleAuditEntry,
    SuspiciousActivity,
    SuspiciousActivityFilters,
)
from ..auth.models.role import RoleRequestStatus
from ..auth.models.user_role_assignment import RoleRequest, UserRoleAssignment


class RoleAssignmentRepository(ABC):
    """Role assignments and role requests."""

    transactional: bool = False

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group several calls into one unit of work. Not atomic by default."""
        yield

    @abstractmethod
    def get_active_assignments(self, user_id: str) -> List[UserRoleAssignment]:
        """
        Return assignments with status ``active`` for the user.

        Assignments past ``expires_at`` may still be returned while their
        status has not been transitioned; callers filter them.
        """

    @abstractmethod
    def get_assignment(self, assignment_id: str) -> Optional[UserRoleAssignment]:
        pass

    @abstractmethod
    def create_assignment(self, assignment: UserRoleAssignment) -> UserRoleAssignment:
        pass

    @abstractmethod
    def revoke_assignment(
        self,
        assignment_id: str,
        revoked_by: str,
        reason: str,
        revoked_at: datetime.datetime,
    ) -> UserRoleAssignment:
        """Transition an assignment to ``revoked``. Raises ``NotFoundError`` for unknown ids."""

    @abstractmethod
    def reactivate_assignment(self, assignment_id: str) -> UserRoleAssignment:
        """Return a revoked assignment to ``active``, clearing revocation fields."""

    @abstractmethod
    def update_assignment(self, assignment: UserRoleAssignment) -> UserRoleAssignment:
        pass

    @abstractmethod
    def get_expired_assignments(self, now: datetime.datetime) -> List[UserRoleAssignment]:
        """Active temporary assignments whose ``expires_at`` is before ``now``."""

    @abstractmethod
    def get_pending_requests(self, user_id: str, institution_id: Optional[str] = None) -> List[RoleRequest]:
        pass

    @abstractmethod
    def get_request(self, request_id: str) -> Optional[RoleRequest]:
        pass

    @abstractmethod
    def create_request(self, request: RoleRequest) -> RoleRequest:
        pass

    @abstractmethod
    def update_request_status(
        self,
        request_id: str,
        status: RoleRequestStatus,
        reviewer_id: Optional[str] = None,
        notes: Optional[str] = None,
        reviewed_at: Optional[datetime.datetime] = None,
    ) -> RoleRequest:
        """Raises ``NotFoundError`` for unknown ids."""

    @abstractmethod
    def get_expired_pending_requests(self, now: datetime.datetime) -> List[RoleRequest]:
        pass


class AuditLogRepository(ABC):
    """Append-only audit log, suspicious activities and stored reports."""

    @abstractmethod
    def insert_entry(self, entry: RoleAuditEntry) -> None:
        pass

    @abstractmethod
    def query_entries(self, query: AuditLogQuery) -> Tuple[List[RoleAuditEntry], int]:
        """
        Return one page of matching entries, newest first, and the total
        number of matches ignoring pagination.
        """

    @abstractmethod
    def find_entries_for_user(
        self,
        user_id: str,
        since: datetime.datetime,
        until: datetime.datetime,
        actions: Optional[Iterable[AuditAction]] = None,
    ) -> List[RoleAuditEntry]:
        """Entries for the subject user with ``since <= timestamp <= until``."""

    @abstractmethod
    def insert_suspicious_activity(self, activity: SuspiciousActivity) -> None:
        pass

    @abstractmethod
    def get_suspicious_activity(self, activity_id: str) -> Optional[SuspiciousActivity]:
        pass

    @abstractmethod
    def query_suspicious_activities(self, filters: SuspiciousActivityFilters) -> List[SuspiciousActivity]:
        """Matching activities, most recently detected first."""

    @abstractmethod
    def flag_suspicious_activity(
        self,
        activity_id: str,
        reviewer_id: str,
        notes: Optional[str],
        reviewed_at: datetime.datetime,
    ) -> Optional[SuspiciousActivity]:
        """Set the reviewer fields. Returns ``None`` when the id is unknown."""

    @abstractmethod
    def insert_report(self, report: AuditReport) -> None:
        pass

    @abstractmethod
    def get_report(self, report_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored report document, or ``None``."""
