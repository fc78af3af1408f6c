"""
Audit records produced by the role audit service.

Key Features:
- ``RoleAuditEntry``: immutable record of a role-affecting action
- ``SuspiciousActivity``: heuristic finding with a reviewer workflow
- ``AuditLogQuery`` / ``SuspiciousActivityFilters``: query parameters
- ``AuditReport`` / ``ReportSummary``: persisted audit report

Metadata on entries and activities is a typed key-value map. Each audit
action and each suspicious activity type has a fixed set of recognized keys
(``AUDIT_METADATA_KEYS`` / ``ACTIVITY_METADATA_KEYS``); anything else is
rejected at construction.
"""

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

from ...utils.datetime import ensure_utc, now_utc, to_isoformat
from .role import UserRole
from .user_role_assignment import ASSIGNMENT_METADATA_KEYS, generate_id, normalize_metadata


class AuditAction(str, Enum):
    ASSIGNED = "assigned"
    CHANGED = "changed"
    REVOKED = "revoked"
    REQUESTED = "requested"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


# Actions that mutate a user's assignments; these feed the suspicion heuristics
ROLE_MUTATING_ACTIONS: FrozenSet[AuditAction] = frozenset({
    AuditAction.ASSIGNED,
    AuditAction.CHANGED,
    AuditAction.REVOKED,
})


class SuspiciousActivityType(str, Enum):
    RAPID_ROLE_CHANGES = "rapid_role_changes"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    UNUSUAL_PATTERN = "unusual_pattern"


class SuspiciousActivitySeverity(str, Enum):
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_ASSIGNMENT_KEYS = ASSIGNMENT_METADATA_KEYS | frozenset({"assignment_id", "is_temporary", "expires_at"})

AUDIT_METADATA_KEYS: Dict[AuditAction, FrozenSet[str]] = {
    AuditAction.ASSIGNED: _ASSIGNMENT_KEYS,
    AuditAction.CHANGED: frozenset({
        "assignment_id", "revoked_assignment_id", "request_id", "role_change_type",
        "rollback_of", "previous_expires_at", "expires_at", "extension_reason",
    }),
    AuditAction.REVOKED: frozenset({"assignment_id", "role_change_type"}),
    AuditAction.REQUESTED: frozenset({"request_id", "verification_method", "expires_at"}),
    AuditAction.APPROVED: frozenset({"request_id", "original_justification", "verification_method"}),
    AuditAction.DENIED: frozenset({"request_id", "original_justification", "verification_method"}),
    AuditAction.EXPIRED: frozenset({"automated", "assignment_id", "request_id", "reverted_to", "expired_at"}),
}

ACTIVITY_METADATA_KEYS: Dict[SuspiciousActivityType, FrozenSet[str]] = {
    SuspiciousActivityType.RAPID_ROLE_CHANGES: frozenset({"change_count", "time_window_seconds"}),
    SuspiciousActivityType.PRIVILEGE_ESCALATION: frozenset({"old_role", "new_role", "level_jump"}),
    SuspiciousActivityType.UNUSUAL_PATTERN: frozenset({
        "timestamp", "local_time", "timezone", "is_weekend", "is_outside_business_hours", "hour", "weekday",
    }),
}


@dataclass(frozen=True)
class RoleAuditEntry:
    """Append-only record of a role-affecting action. Never mutated after creation."""
    user_id: str
    action: AuditAction
    changed_by: str
    old_role: Optional[UserRole] = None
    new_role: Optional[UserRole] = None
    reason: Optional[str] = None
    timestamp: datetime.datetime = field(default_factory=now_utc)
    institution_id: Optional[str] = None
    department_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    id: str = field(default_factory=generate_id)

    def __post_init__(self):
        action = AuditAction(self.action)
        object.__setattr__(self, "action", action)
        object.__setattr__(self, "old_role", UserRole.parse(self.old_role) if self.old_role else None)
        object.__setattr__(self, "new_role", UserRole.parse(self.new_role) if self.new_role else None)
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))
        object.__setattr__(
            self, "metadata",
            normalize_metadata(self.metadata, AUDIT_METADATA_KEYS[action], f"{action.value} audit"),
        )

    @property
    def is_role_mutation(self) -> bool:
        return self.action in ROLE_MUTATING_ACTIONS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action.value,
            "old_role": self.old_role.value if self.old_role else None,
            "new_role": self.new_role.value if self.new_role else None,
            "changed_by": self.changed_by,
            "reason": self.reason,
            "timestamp": to_isoformat(self.timestamp),
            "institution_id": self.institution_id,
            "department_id": self.department_id,
            "metadata": dict(self.metadata),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "session_id": self.session_id,
        }


@dataclass
class SuspiciousActivity:
    """
    Heuristic finding over the audit log.

    Write-once except for the reviewer fields, which change only through the
    flag operation of the role audit service.
    """
    type: SuspiciousActivityType
    severity: SuspiciousActivitySeverity
    description: str
    user_id: str
    performed_by: str
    related_audit_ids: List[str] = field(default_factory=list)
    detected_at: datetime.datetime = field(default_factory=now_utc)
    institution_id: Optional[str] = None
    department_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    flagged: bool = False
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime.datetime] = None
    review_notes: Optional[str] = None
    id: str = field(default_factory=generate_id)

    def __post_init__(self):
        self.type = SuspiciousActivityType(self.type)
        self.severity = SuspiciousActivitySeverity(self.severity)
        self.detected_at = ensure_utc(self.detected_at)
        self.reviewed_at = ensure_utc(self.reviewed_at)
        self.related_audit_ids = list(self.related_audit_ids)
        self.metadata = normalize_metadata(
            self.metadata, ACTIVITY_METADATA_KEYS[self.type], f"{self.type.value} activity"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "user_id": self.user_id,
            "performed_by": self.performed_by,
            "related_audit_ids": list(self.related_audit_ids),
            "detected_at": to_isoformat(self.detected_at),
            "institution_id": self.institution_id,
            "department_id": self.department_id,
            "metadata": dict(self.metadata),
            "flagged": self.flagged,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": to_isoformat(self.reviewed_at),
            "review_notes": self.review_notes,
        }


@dataclass
class AuditLogQuery:
    """
    Filters for the role audit log.

    ``role`` matches either the old or the new role. The date range is
    inclusive on both ends. ``limit`` falls back to the configured default
    when omitted.
    """
    user_id: Optional[str] = None
    changed_by: Optional[str] = None
    action: Optional[AuditAction] = None
    role: Optional[UserRole] = None
    institution_id: Optional[str] = None
    department_id: Optional[str] = None
    start_date: Optional[datetime.datetime] = None
    end_date: Optional[datetime.datetime] = None
    limit: Optional[int] = None
    offset: int = 0

    def __post_init__(self):
        if self.action is not None:
            self.action = AuditAction(self.action)
        if self.role is not None:
            self.role = UserRole.parse(self.role)
        self.start_date = ensure_utc(self.start_date)
        self.end_date = ensure_utc(self.end_date)
        if self.limit is not None and self.limit <= 0:
            raise ValueError("limit must be positive")
        if self.offset < 0:
            raise ValueError("offset must not be negative")


@dataclass
class AuditQueryResult:
    entries: List[RoleAuditEntry]
    total_count: int
    has_more: bool


@dataclass
class SuspiciousActivityFilters:
    severities: Optional[Sequence[SuspiciousActivitySeverity]] = None
    flagged: Optional[bool] = None
    start_date: Optional[datetime.datetime] = None
    end_date: Optional[datetime.datetime] = None
    institution_id: Optional[str] = None
    department_id: Optional[str] = None
    user_id: Optional[str] = None

    def __post_init__(self):
        if self.severities is not None:
            self.severities = tuple(SuspiciousActivitySeverity(s) for s in self.severities)
        self.start_date = ensure_utc(self.start_date)
        self.end_date = ensure_utc(self.end_date)


@dataclass
class ActorActivity:
    user_id: str
    action_count: int


@dataclass
class DepartmentActivity:
    department_id: str
    action_count: int


@dataclass
class ReportSummary:
    total_role_changes: int = 0
    role_assignments: int = 0
    role_changes: int = 0
    role_revocations: int = 0
    role_requests: int = 0
    approvals: int = 0
    denials: int = 0
    expirations: int = 0
    suspicious_activities: int = 0
    role_distribution: Dict[UserRole, int] = field(default_factory=lambda: {role: 0 for role in UserRole})
    top_actors: List[ActorActivity] = field(default_factory=list)
    department_activity: List[DepartmentActivity] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_role_changes": self.total_role_changes,
            "role_assignments": self.role_assignments,
            "role_changes": self.role_changes,
            "role_revocations": self.role_revocations,
            "role_requests": self.role_requests,
            "approvals": self.approvals,
            "denials": self.denials,
            "expirations": self.expirations,
            "suspicious_activities": self.suspicious_activities,
            "role_distribution": {role.value: count for role, count in self.role_distribution.items()},
            "top_actors": [
                {"user_id": a.user_id, "action_count": a.action_count} for a in self.top_actors
            ],
            "department_activity": [
                {"department_id": d.department_id, "action_count": d.action_count}
                for d in self.department_activity
            ],
        }


@dataclass
class AuditReport:
    title: str
    generated_by: str
    period_start: datetime.datetime
    period_end: datetime.datetime
    summary: ReportSummary
    entries: List[RoleAuditEntry] = field(default_factory=list)
    suspicious_activities: List[SuspiciousActivity] = field(default_factory=list)
    institution_id: Optional[str] = None
    department_id: Optional[str] = None
    generated_at: datetime.datetime = field(default_factory=now_utc)
    id: str = field(default_factory=generate_id)

    def __post_init__(self):
        self.period_start = ensure_utc(self.period_start)
        self.period_end = ensure_utc(self.period_end)
        self.generated_at = ensure_utc(self.generated_at)

    @property
    def period(self) -> Tuple[datetime.datetime, datetime.datetime]:
        return self.period_start, self.period_end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "generated_by": self.generated_by,
            "generated_at": to_isoformat(self.generated_at),
            "period_start": to_isoformat(self.period_start),
            "period_end": to_isoformat(self.period_end),
            "institution_id": self.institution_id,
            "department_id": self.department_id,
            "summary": self.summary.to_dict(),
            "entry_ids": [entry.id for entry in self.entries],
            "suspicious_activity_ids": [activity.id for activity in self.suspicious_activities],
        }
