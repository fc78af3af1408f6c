"""
SQLAlchemy implementation of the governance repositories.

Key Features:
- Thread-local unit of work: nested ``transaction()`` calls on the same thread
  join the outermost transaction, which commits or rolls back once
- Conversion between table records and domain dataclasses
- Engine and schema helpers for SQLite (tests, development) and PostgreSQL
"""

import datetime
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import create_engine, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..auth.models.audit import (
    AuditAction,
    AuditLogQuery,
    AuditReport,
    RoleAuditEntry,
    SuspiciousActivity,
    SuspiciousActivityFilters,
)
from ..auth.models.role import AssignmentStatus, RoleRequestStatus
from ..auth.models.user_role_assignment import RoleRequest, UserRoleAssignment
from ..utils.error_handling import NotFoundError
from ..utils.logging import get_logger
from .repositories import AuditLogRepository, RoleAssignmentRepository
from .tables import (
    AuditReportRecord,
    Base,
    RoleAuditLogRecord,
    RoleRequestRecord,
    SuspiciousActivityRecord,
    UserRoleAssignmentRecord,
)

logger = get_logger(__name__)


def create_engine_and_session_factory(url: str, echo: bool = False, **engine_kwargs: Any) -> Tuple[Engine, sessionmaker]:
    """
    Create an engine and a session factory for ``url``.

    In-memory SQLite databases use a ``StaticPool`` so every session and
    thread sees the same database.
    """
    if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") == "sqlite:"):
        engine_kwargs.setdefault("poolclass", StaticPool)
        engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_engine(url, echo=echo, **engine_kwargs)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    return engine, factory


def create_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)
    logger.debug("Governance schema created", url=str(engine.url))


def drop_schema(engine: Engine) -> None:
    Base.metadata.drop_all(engine)


class SQLAlchemyRepository:
    """Shared session handling for the SQLAlchemy repositories."""

    transactional = True

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._local = threading.local()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Yield the session of the current unit of work, opening one if needed.

        Only the outermost call commits; an exception anywhere inside rolls the
        whole unit back.
        """
        session = getattr(self._local, "session", None)
        if session is not None:
            yield session
            return

        session = self._session_factory()
        self._local.session = session
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            self._local.session = None
            session.close()


# ==================== RECORD CONVERSION ====================

def _assignment_from_record(record: UserRoleAssignmentRecord) -> UserRoleAssignment:
    return UserRoleAssignment(
        id=record.id,
        user_id=record.user_id,
        role=record.role,
        status=record.status,
        institution_id=record.institution_id,
        department_id=record.department_id,
        assigned_by=record.assigned_by,
        assigned_at=record.assigned_at,
        expires_at=record.expires_at,
        is_temporary=record.is_temporary,
        metadata=dict(record.extra or {}),
        revoked_at=record.revoked_at,
        revoked_by=record.revoked_by,
        revocation_reason=record.revocation_reason,
        updated_at=record.updated_at,
    )


def _apply_assignment(record: UserRoleAssignmentRecord, assignment: UserRoleAssignment) -> None:
    record.user_id = assignment.user_id
    record.role = assignment.role.value
    record.status = assignment.status.value
    record.institution_id = assignment.institution_id
    record.department_id = assignment.department_id
    record.assigned_by = assignment.assigned_by
    record.assigned_at = assignment.assigned_at
    record.expires_at = assignment.expires_at
    record.is_temporary = assignment.is_temporary
    record.extra = dict(assignment.metadata)
    record.revoked_at = assignment.revoked_at
    record.revoked_by = assignment.revoked_by
    record.revocation_reason = assignment.revocation_reason
    record.updated_at = assignment.updated_at


def _request_from_record(record: RoleRequestRecord) -> RoleRequest:
    return RoleRequest(
        id=record.id,
        user_id=record.user_id,
        requested_role=record.requested_role,
        current_role=record.current_role,
        justification=record.justification,
        institution_id=record.institution_id,
        department_id=record.department_id,
        verification_method=record.verification_method,
        status=record.status,
        requested_by=record.requested_by,
        requested_at=record.requested_at,
        expires_at=record.expires_at,
        reviewed_by=record.reviewed_by,
        reviewed_at=record.reviewed_at,
        review_notes=record.review_notes,
    )


def _entry_from_record(record: RoleAuditLogRecord) -> RoleAuditEntry:
    return RoleAuditEntry(
        id=record.id,
        user_id=record.user_id,
        action=record.action,
        old_role=record.old_role,
        new_role=record.new_role,
        changed_by=record.changed_by,
        reason=record.reason,
        timestamp=record.timestamp,
        institution_id=record.institution_id,
        department_id=record.department_id,
        metadata=dict(record.extra or {}),
        ip_address=record.ip_address,
        user_agent=record.user_agent,
        session_id=record.session_id,
    )


def _activity_from_record(record: SuspiciousActivityRecord) -> SuspiciousActivity:
    return SuspiciousActivity(
        id=record.id,
        type=record.type,
        severity=record.severity,
        description=record.description,
        user_id=record.user_id,
        performed_by=record.performed_by,
        detected_at=record.detected_at,
        related_audit_ids=list(record.related_audit_ids or []),
        institution_id=record.institution_id,
        department_id=record.department_id,
        metadata=dict(record.extra or {}),
        flagged=record.flagged,
        reviewed_by=record.reviewed_by,
        reviewed_at=record.reviewed_at,
        review_notes=record.review_notes,
    )


# ==================== REPOSITORIES ====================

class SQLAlchemyRoleAssignmentRepository(SQLAlchemyRepository, RoleAssignmentRepository):

    def get_active_assignments(self, user_id: str) -> List[UserRoleAssignment]:
        with self.transaction() as session:
            records = session.scalars(
                select(UserRoleAssignmentRecord)
                .where(UserRoleAssignmentRecord.user_id == user_id,
                       UserRoleAssignmentRecord.status == AssignmentStatus.ACTIVE.value)
                .order_by(UserRoleAssignmentRecord.assigned_at)
            ).all()
            return [_assignment_from_record(r) for r in records]

    def get_assignment(self, assignment_id: str) -> Optional[UserRoleAssignment]:
        with self.transaction() as session:
            record = session.get(UserRoleAssignmentRecord, assignment_id)
            return _assignment_from_record(record) if record else None

    def create_assignment(self, assignment: UserRoleAssignment) -> UserRoleAssignment:
        with self.transaction() as session:
            record = UserRoleAssignmentRecord(id=assignment.id)
            _apply_assignment(record, assignment)
            session.add(record)
            session.flush()
            return _assignment_from_record(record)

    def revoke_assignment(self, assignment_id: str, revoked_by: str, reason: str,
                          revoked_at: datetime.datetime) -> UserRoleAssignment:
        with self.transaction() as session:
            record = self._require_assignment(session, assignment_id)
            record.status = AssignmentStatus.REVOKED.value
            record.revoked_at = revoked_at
            record.revoked_by = revoked_by
            record.revocation_reason = reason
            record.updated_at = revoked_at
            session.flush()
            return _assignment_from_record(record)

    def reactivate_assignment(self, assignment_id: str) -> UserRoleAssignment:
        with self.transaction() as session:
            record = self._require_assignment(session, assignment_id)
            record.status = AssignmentStatus.ACTIVE.value
            record.revoked_at = None
            record.revoked_by = None
            record.revocation_reason = None
            session.flush()
            return _assignment_from_record(record)

    def update_assignment(self, assignment: UserRoleAssignment) -> UserRoleAssignment:
        with self.transaction() as session:
            record = self._require_assignment(session, assignment.id)
            _apply_assignment(record, assignment)
            session.flush()
            return _assignment_from_record(record)

    def get_expired_assignments(self, now: datetime.datetime) -> List[UserRoleAssignment]:
        with self.transaction() as session:
            records = session.scalars(
                select(UserRoleAssignmentRecord)
                .where(UserRoleAssignmentRecord.status == AssignmentStatus.ACTIVE.value,
                       UserRoleAssignmentRecord.is_temporary.is_(True),
                       UserRoleAssignmentRecord.expires_at < now)
                .order_by(UserRoleAssignmentRecord.expires_at)
            ).all()
            return [_assignment_from_record(r) for r in records]

    def get_pending_requests(self, user_id: str, institution_id: Optional[str] = None) -> List[RoleRequest]:
        with self.transaction() as session:
            stmt = select(RoleRequestRecord).where(
                RoleRequestRecord.user_id == user_id,
                RoleRequestRecord.status == RoleRequestStatus.PENDING.value,
            )
            if institution_id is not None:
                stmt = stmt.where(RoleRequestRecord.institution_id == institution_id)
            records = session.scalars(stmt.order_by(RoleRequestRecord.requested_at)).all()
            return [_request_from_record(r) for r in records]

    def get_request(self, request_id: str) -> Optional[RoleRequest]:
        with self.transaction() as session:
            record = session.get(RoleRequestRecord, request_id)
            return _request_from_record(record) if record else None

    def create_request(self, request: RoleRequest) -> RoleRequest:
        with self.transaction() as session:
            record = RoleRequestRecord(
                id=request.id,
                user_id=request.user_id,
                requested_role=request.requested_role.value,
                current_role=request.current_role.value if request.current_role else None,
                justification=request.justification,
                institution_id=request.institution_id,
                department_id=request.department_id,
                verification_method=request.verification_method.value,
                status=request.status.value,
                requested_by=request.requested_by,
                requested_at=request.requested_at,
                expires_at=request.expires_at,
            )
            session.add(record)
            session.flush()
            return _request_from_record(record)

    def update_request_status(self, request_id: str, status: RoleRequestStatus,
                              reviewer_id: Optional[str] = None, notes: Optional[str] = None,
                              reviewed_at: Optional[datetime.datetime] = None) -> RoleRequest:
        with self.transaction() as session:
            record = session.get(RoleRequestRecord, request_id)
            if record is None:
                raise NotFoundError("Role request not found", resource_type="role_request",
                                    resource_id=request_id)
            record.status = RoleRequestStatus(status).value
            record.reviewed_by = reviewer_id
            record.reviewed_at = reviewed_at
            record.review_notes = notes
            session.flush()
            return _request_from_record(record)

    def get_expired_pending_requests(self, now: datetime.datetime) -> List[RoleRequest]:
        with self.transaction() as session:
            records = session.scalars(
                select(RoleRequestRecord)
                .where(RoleRequestRecord.status == RoleRequestStatus.PENDING.value,
                       RoleRequestRecord.expires_at.is_not(None),
                       RoleRequestRecord.expires_at < now)
                .order_by(RoleRequestRecord.expires_at)
            ).all()
            return [_request_from_record(r) for r in records]

    @staticmethod
    def _require_assignment(session: Session, assignment_id: str) -> UserRoleAssignmentRecord:
        record = session.get(UserRoleAssignmentRecord, assignment_id)
        if record is None:
            raise NotFoundError(f"Role assignment not found: {assignment_id}",
                                resource_type="user_role_assignment", resource_id=assignment_id)
        return record


class SQLAlchemyAuditLogRepository(SQLAlchemyRepository, AuditLogRepository):

    def insert_entry(self, entry: RoleAuditEntry) -> None:
        with self.transaction() as session:
            session.add(RoleAuditLogRecord(
                id=entry.id,
                user_id=entry.user_id,
                action=entry.action.value,
                old_role=entry.old_role.value if entry.old_role else None,
                new_role=entry.new_role.value if entry.new_role else None,
                changed_by=entry.changed_by,
                reason=entry.reason,
                timestamp=entry.timestamp,
                institution_id=entry.institution_id,
                department_id=entry.department_id,
                extra=dict(entry.metadata),
                ip_address=entry.ip_address,
                user_agent=entry.user_agent,
                session_id=entry.session_id,
            ))

    def query_entries(self, query: AuditLogQuery) -> Tuple[List[RoleAuditEntry], int]:
        conditions = []
        table = RoleAuditLogRecord
        if query.user_id:
            conditions.append(table.user_id == query.user_id)
        if query.changed_by:
            conditions.append(table.changed_by == query.changed_by)
        if query.action:
            conditions.append(table.action == query.action.value)
        if query.role:
            conditions.append(or_(table.old_role == query.role.value, table.new_role == query.role.value))
        if query.institution_id:
            conditions.append(table.institution_id == query.institution_id)
        if query.department_id:
            conditions.append(table.department_id == query.department_id)
        if query.start_date:
            conditions.append(table.timestamp >= query.start_date)
        if query.end_date:
            conditions.append(table.timestamp <= query.end_date)

        with self.transaction() as session:
            total = session.scalar(select(func.count()).select_from(table).where(*conditions))
            stmt = (select(table).where(*conditions)
                    .order_by(table.timestamp.desc(), table.id)
                    .offset(query.offset))
            if query.limit:
                stmt = stmt.limit(query.limit)
            records = session.scalars(stmt).all()
            return [_entry_from_record(r) for r in records], int(total or 0)

    def find_entries_for_user(self, user_id: str, since: datetime.datetime, until: datetime.datetime,
                              actions: Optional[Iterable[AuditAction]] = None) -> List[RoleAuditEntry]:
        table = RoleAuditLogRecord
        stmt = select(table).where(table.user_id == user_id,
                                   table.timestamp >= since,
                                   table.timestamp <= until)
        if actions is not None:
            stmt = stmt.where(table.action.in_([AuditAction(a).value for a in actions]))
        with self.transaction() as session:
            records = session.scalars(stmt.order_by(table.timestamp.desc())).all()
            return [_entry_from_record(r) for r in records]

    def insert_suspicious_activity(self, activity: SuspiciousActivity) -> None:
        with self.transaction() as session:
            session.add(SuspiciousActivityRecord(
                id=activity.id,
                type=activity.type.value,
                severity=activity.severity.value,
                description=activity.description,
                user_id=activity.user_id,
                performed_by=activity.performed_by,
                detected_at=activity.detected_at,
                related_audit_ids=list(activity.related_audit_ids),
                institution_id=activity.institution_id,
                department_id=activity.department_id,
                extra=dict(activity.metadata),
                flagged=activity.flagged,
                reviewed_by=activity.reviewed_by,
                reviewed_at=activity.reviewed_at,
                review_notes=activity.review_notes,
            ))

    def get_suspicious_activity(self, activity_id: str) -> Optional[SuspiciousActivity]:
        with self.transaction() as session:
            record = session.get(SuspiciousActivityRecord, activity_id)
            return _activity_from_record(record) if record else None

    def query_suspicious_activities(self, filters: SuspiciousActivityFilters) -> List[SuspiciousActivity]:
        table = SuspiciousActivityRecord
        stmt = select(table)
        if filters.severities:
            stmt = stmt.where(table.severity.in_([s.value for s in filters.severities]))
        if filters.flagged is not None:
            stmt = stmt.where(table.flagged.is_(filters.flagged))
        if filters.start_date:
            stmt = stmt.where(table.detected_at >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(table.detected_at <= filters.end_date)
        if filters.institution_id:
            stmt = stmt.where(table.institution_id == filters.institution_id)
        if filters.department_id:
            stmt = stmt.where(table.department_id == filters.department_id)
        if filters.user_id:
            stmt = stmt.where(table.user_id == filters.user_id)
        with self.transaction() as session:
            records = session.scalars(stmt.order_by(table.detected_at.desc(), table.id)).all()
            return [_activity_from_record(r) for r in records]

    def flag_suspicious_activity(self, activity_id: str, reviewer_id: str, notes: Optional[str],
                                 reviewed_at: datetime.datetime) -> Optional[SuspiciousActivity]:
        with self.transaction() as session:
            record = session.get(SuspiciousActivityRecord, activity_id)
            if record is None:
                return None
            record.flagged = True
            record.reviewed_by = reviewer_id
            record.reviewed_at = reviewed_at
            record.review_notes = notes
            session.flush()
            return _activity_from_record(record)

    def insert_report(self, report: AuditReport) -> None:
        document = report.to_dict()
        with self.transaction() as session:
            session.add(AuditReportRecord(
                id=report.id,
                title=report.title,
                generated_by=report.generated_by,
                generated_at=report.generated_at,
                period_start=report.period_start,
                period_end=report.period_end,
                institution_id=report.institution_id,
                department_id=report.department_id,
                summary=document["summary"],
                entry_ids=document["entry_ids"],
                suspicious_activity_ids=document["suspicious_activity_ids"],
            ))

    def get_report(self, report_id: str) -> Optional[Dict[str, Any]]:
        with self.transaction() as session:
            record = session.get(AuditReportRecord, report_id)
            if record is None:
                return None
            return {
                "id": record.id,
                "title": record.title,
                "generated_by": record.generated_by,
                "generated_at": record.generated_at.isoformat(),
                "period_start": record.period_start.isoformat(),
                "period_end": record.period_end.isoformat(),
                "institution_id": record.institution_id,
                "department_id": record.department_id,
                "summary": dict(record.summary),
                "entry_ids": list(record.entry_ids or []),
                "suspicious_activity_ids": list(record.suspicious_activity_ids or []),
            }
