"""
SQLAlchemy table definitions for the governance engine.

Timestamps are stored as naive UTC through ``UTCDateTime`` and come back as
aware UTC datetimes, so the same schema behaves identically on SQLite and
PostgreSQL. Metadata maps are stored in JSON columns.
"""

import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, String, Text
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from ..utils.datetime import ensure_utc


class UTCDateTime(TypeDecorator):
    """DateTime column normalizing every value to UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=datetime.timezone.utc)


class Base(DeclarativeBase):
    pass


class UserRoleAssignmentRecord(Base):
    __tablename__ = "user_role_assignments"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    role = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, index=True)
    institution_id = Column(String(255), nullable=True, index=True)
    department_id = Column(String(255), nullable=True)
    assigned_by = Column(String(255), nullable=True)
    assigned_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=True)
    is_temporary = Column(Boolean, nullable=False, default=False)
    # "metadata" is reserved on declarative classes
    extra = Column("metadata", JSON, nullable=False, default=dict)
    revoked_at = Column(UTCDateTime, nullable=True)
    revoked_by = Column(String(255), nullable=True)
    revocation_reason = Column(Text, nullable=True)
    updated_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_user_role_assignments_user_status", "user_id", "status"),
    )


class RoleRequestRecord(Base):
    __tablename__ = "role_requests"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    requested_role = Column(String(32), nullable=False)
    current_role = Column(String(32), nullable=True)
    justification = Column(Text, nullable=False)
    institution_id = Column(String(255), nullable=True)
    department_id = Column(String(255), nullable=True)
    verification_method = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, index=True)
    requested_by = Column(String(255), nullable=True)
    requested_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=True)
    reviewed_by = Column(String(255), nullable=True)
    reviewed_at = Column(UTCDateTime, nullable=True)
    review_notes = Column(Text, nullable=True)


class RoleAuditLogRecord(Base):
    __tablename__ = "role_audit_log"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    action = Column(String(16), nullable=False, index=True)
    old_role = Column(String(32), nullable=True)
    new_role = Column(String(32), nullable=True)
    changed_by = Column(String(255), nullable=False, index=True)
    reason = Column(Text, nullable=True)
    timestamp = Column(UTCDateTime, nullable=False, index=True)
    institution_id = Column(String(255), nullable=True, index=True)
    department_id = Column(String(255), nullable=True)
    extra = Column("metadata", JSON, nullable=False, default=dict)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    session_id = Column(String(255), nullable=True)


class SuspiciousActivityRecord(Base):
    __tablename__ = "role_suspicious_activities"

    id = Column(String(36), primary_key=True)
    type = Column(String(32), nullable=False)
    severity = Column(String(16), nullable=False, index=True)
    description = Column(Text, nullable=False)
    user_id = Column(String(255), nullable=False, index=True)
    performed_by = Column(String(255), nullable=False)
    detected_at = Column(UTCDateTime, nullable=False, index=True)
    related_audit_ids = Column(JSON, nullable=False, default=list)
    institution_id = Column(String(255), nullable=True)
    department_id = Column(String(255), nullable=True)
    extra = Column("metadata", JSON, nullable=False, default=dict)
    flagged = Column(Boolean, nullable=False, default=False)
    reviewed_by = Column(String(255), nullable=True)
    reviewed_at = Column(UTCDateTime, nullable=True)
    review_notes = Column(Text, nullable=True)


class AuditReportRecord(Base):
    __tablename__ = "role_audit_reports"

    id = Column(String(36), primary_key=True)
    title = Column(String(255), nullable=False)
    generated_by = Column(String(255), nullable=False)
    generated_at = Column(UTCDateTime, nullable=False)
    period_start = Column(UTCDateTime, nullable=False)
    period_end = Column(UTCDateTime, nullable=False)
    institution_id = Column(String(255), nullable=True)
    department_id = Column(String(255), nullable=True)
    summary = Column(JSON, nullable=False)
    entry_ids = Column(JSON, nullable=False, default=list)
    suspicious_activity_ids = Column(JSON, nullable=False, default=list)
