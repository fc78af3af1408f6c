"""
Role Audit Service

Persists an immutable audit entry for every role-affecting action and runs
suspicion heuristics over the stream of role mutations.

Key Features:
- One logging operation per action kind (assigned, changed, revoked,
  requested, approved/denied, expired), each returning the entry id
- Filtered, paginated audit log queries
- Independent suspicion heuristics: rapid role changes, privilege escalation,
  activity outside business hours
- Audit reports combining log entries, suspicious activities and summary
  counters, persisted as their own record
- Reviewer workflow for suspicious activities

Storage failures while writing entries or reports surface as ``StorageError``
with a message naming the failing operation. Heuristics are isolated from each
other and from the entry that triggered them: a failing heuristic is logged
and counted, never propagated.
"""

import dataclasses
import datetime
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from ...persistence.repositories import AuditLogRepository
from ...utils.config import GovernanceConfig
from ...utils.datetime import get_timezone, now_utc
from ...utils.error_handling import StorageError, storage_operation
from ...utils.logging import get_logger, log_audit_event, log_security_event
from ...utils.monitoring import GovernanceMetrics
from ..models.audit import (
    ROLE_MUTATING_ACTIONS,
    ActorActivity,
    AuditAction,
    AuditLogQuery,
    AuditQueryResult,
    AuditReport,
    DepartmentActivity,
    ReportSummary,
    RoleAuditEntry,
    SuspiciousActivity,
    SuspiciousActivityFilters,
    SuspiciousActivitySeverity,
    SuspiciousActivityType,
)
from ..models.role import UserRole, compare_roles
from ..models.user_role_assignment import RoleRequest, UserRoleAssignment

_REQUEST_CONTEXT_KEYS = ("ip_address", "user_agent", "session_id")


def role_change_severity(old_role: Optional[UserRole], new_role: Optional[UserRole]) -> str:
    """Severity attached to the structured log line of a role change."""
    if new_role is UserRole.SYSTEM_ADMIN:
        return "critical"
    if old_role is None or new_role is None:
        return "medium"
    jump = compare_roles(old_role, new_role)
    if jump > 1:
        return "high"
    if jump > 0:
        return "medium"
    return "low"


class RoleAuditService:
    """
    Audit logging and suspicious activity detection for role mutations.

    Args:
        repository: Audit log storage
        config: Heuristic thresholds, business hours, query limits
        metrics: Optional Prometheus metrics
        now: Clock returning aware UTC datetimes
    """

    def __init__(
        self,
        repository: AuditLogRepository,
        config: Optional[GovernanceConfig] = None,
        metrics: Optional[GovernanceMetrics] = None,
        now: Callable[[], datetime.datetime] = now_utc,
    ):
        self.repository = repository
        self.config = config or GovernanceConfig()
        self.metrics = metrics
        self._now = now
        self.logger = get_logger(__name__, component="role_audit_service")
        self._heuristics = (
            ("rapid_role_changes", self._check_rapid_role_changes),
            ("privilege_escalation", self._check_privilege_escalation),
            ("unusual_pattern", self._check_unusual_pattern),
        )

    # ------------------------------------------------------------------
    # Logging operations
    # ------------------------------------------------------------------

    def log_role_assignment(
        self,
        assignment: UserRoleAssignment,
        performed_by: str,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        metadata = dict(assignment.metadata)
        metadata.update({
            "assignment_id": assignment.id,
            "is_temporary": assignment.is_temporary,
            "expires_at": assignment.expires_at,
        })
        entry = self._build_entry(
            user_id=assignment.user_id,
            action=AuditAction.ASSIGNED,
            changed_by=performed_by,
            new_role=assignment.role,
            reason=reason,
            institution_id=assignment.institution_id,
            department_id=assignment.department_id,
            metadata=metadata,
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=session_id,
        )
        return self._record(entry)

    def log_role_revocation(
        self,
        user_id: str,
        old_role: UserRole,
        performed_by: str,
        reason: Optional[str] = None,
        institution_id: Optional[str] = None,
        department_id: Optional[str] = None,
        assignment_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        entry = self._build_entry(
            user_id=user_id,
            action=AuditAction.REVOKED,
            changed_by=performed_by,
            old_role=old_role,
            reason=reason,
            institution_id=institution_id,
            department_id=department_id,
            metadata={"assignment_id": assignment_id},
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=session_id,
        )
        return self._record(entry)

    def log_role_change(
        self,
        user_id: str,
        old_role: UserRole,
        new_role: UserRole,
        performed_by: str,
        reason: Optional[str] = None,
        institution_id: Optional[str] = None,
        department_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        entry = self._build_entry(
            user_id=user_id,
            action=AuditAction.CHANGED,
            changed_by=performed_by,
            old_role=old_role,
            new_role=new_role,
            reason=reason,
            institution_id=institution_id,
            department_id=department_id,
            metadata=metadata,
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=session_id,
        )
        return self._record(entry, severity=role_change_severity(entry.old_role, entry.new_role))

    def log_role_request(
        self,
        request: RoleRequest,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        entry = self._build_entry(
            user_id=request.user_id,
            action=AuditAction.REQUESTED,
            changed_by=request.requested_by or request.user_id,
            old_role=request.current_role,
            new_role=request.requested_role,
            reason=request.justification,
            institution_id=request.institution_id,
            department_id=request.department_id,
            metadata={
                "request_id": request.id,
                "verification_method": request.verification_method,
                "expires_at": request.expires_at,
            },
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=session_id,
        )
        return self._record(entry, severity="low")

    def log_role_request_decision(
        self,
        request: RoleRequest,
        decision: str,
        reviewed_by: str,
        review_notes: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        """
        Log an approval or denial of a role request.

        Raises:
            ValueError: If ``decision`` is neither ``approved`` nor ``denied``
        """
        action = AuditAction(decision)
        if action not in (AuditAction.APPROVED, AuditAction.DENIED):
            raise ValueError(f"Invalid role request decision: {decision}")
        entry = self._build_entry(
            user_id=request.user_id,
            action=action,
            changed_by=reviewed_by,
            old_role=request.current_role,
            new_role=request.requested_role,
            reason=review_notes or f"Role request {action.value}",
            institution_id=request.institution_id,
            department_id=request.department_id,
            metadata={
                "request_id": request.id,
                "original_justification": request.justification,
                "verification_method": request.verification_method,
            },
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=session_id,
        )
        return self._record(entry, severity="medium" if action is AuditAction.DENIED else "low")

    def log_role_expiration(
        self,
        user_id: str,
        expired_role: UserRole,
        institution_id: Optional[str] = None,
        department_id: Optional[str] = None,
        reason: str = "Temporary role expired",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        values = {"automated": True}
        values.update(metadata or {})
        entry = self._build_entry(
            user_id=user_id,
            action=AuditAction.EXPIRED,
            changed_by=self.config.system_actor,
            old_role=expired_role,
            reason=reason,
            institution_id=institution_id,
            department_id=department_id,
            metadata=values,
        )
        return self._record(entry)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query_role_audit_logs(self, query: Optional[AuditLogQuery] = None, **filters: Any) -> AuditQueryResult:
        """
        Query the audit log, newest first.

        Accepts an ``AuditLogQuery`` or its fields as keyword arguments.
        """
        query = query or AuditLogQuery(**filters)
        limit = query.limit or self.config.audit_query_default_limit
        resolved = dataclasses.replace(query, limit=limit)

        with storage_operation("query role audit logs"):
            entries, total = self.repository.query_entries(resolved)

        return AuditQueryResult(
            entries=entries,
            total_count=total,
            has_more=resolved.offset + limit < total,
        )

    def get_suspicious_activities(
        self,
        filters: Optional[SuspiciousActivityFilters] = None,
        **kwargs: Any,
    ) -> List[SuspiciousActivity]:
        filters = filters or SuspiciousActivityFilters(**kwargs)
        with storage_operation("get suspicious activities"):
            return self.repository.query_suspicious_activities(filters)

    def flag_suspicious_activity(
        self,
        activity_id: str,
        reviewer_id: str,
        notes: Optional[str] = None,
    ) -> SuspiciousActivity:
        """
        Mark a suspicious activity as reviewed. Repeating the call leaves it flagged.

        Raises:
            StorageError: If no activity has this id or the update fails
        """
        with storage_operation("flag suspicious activity"):
            activity = self.repository.flag_suspicious_activity(
                activity_id, reviewer_id, notes, self._now()
            )
        if activity is None:
            raise StorageError(
                f"Failed to flag suspicious activity: no suspicious activity with id {activity_id}",
                operation="flag suspicious activity",
            )
        self.logger.info("Suspicious activity flagged", activity_id=activity_id, reviewer_id=reviewer_id)
        return activity

    # ------------------------------------------------------------------
    # Suspicious activity detection
    # ------------------------------------------------------------------

    def detect_suspicious_activity(self, entry: RoleAuditEntry) -> List[SuspiciousActivity]:
        """
        Run every heuristic against ``entry`` and persist each finding.

        Returns:
            List[SuspiciousActivity]: Activities stored for this entry
        """
        detected: List[SuspiciousActivity] = []
        for name, heuristic in self._heuristics:
            try:
                activity = heuristic(entry)
            except Exception as exc:
                self.logger.error("Suspicious activity heuristic failed", heuristic=name,
                                  audit_entry_id=entry.id, error_type=type(exc).__name__,
                                  error=str(exc))
                if self.metrics is not None:
                    self.metrics.track_heuristic_failure(name)
                continue
            if activity is None:
                continue
            try:
                with storage_operation("store suspicious activity"):
                    self.repository.insert_suspicious_activity(activity)
            except Exception as exc:
                self.logger.error("Suspicious activity not stored", heuristic=name,
                                  audit_entry_id=entry.id, error=str(exc))
                if self.metrics is not None:
                    self.metrics.track_heuristic_failure(name)
                continue
            detected.append(activity)
            log_security_event(self.logger, "Suspicious role activity detected",
                               severity=activity.severity.value,
                               activity_type=activity.type.value,
                               user_id=activity.user_id,
                               performed_by=activity.performed_by,
                               activity_id=activity.id)
            if self.metrics is not None:
                self.metrics.track_suspicious_activity(activity.type.value, activity.severity.value)
        return detected

    def _check_rapid_role_changes(self, entry: RoleAuditEntry) -> Optional[SuspiciousActivity]:
        window = self.config.rapid_change_window
        since = entry.timestamp - datetime.timedelta(seconds=window)
        recent = self.repository.find_entries_for_user(
            entry.user_id, since, entry.timestamp, ROLE_MUTATING_ACTIONS
        )
        related = {e.id: e for e in recent}
        related.setdefault(entry.id, entry)
        count = len(related)
        if count < self.config.rapid_change_threshold:
            return None

        ordered = sorted(related.values(), key=lambda e: e.timestamp, reverse=True)
        return self._activity(
            entry,
            SuspiciousActivityType.RAPID_ROLE_CHANGES,
            SuspiciousActivitySeverity.HIGH,
            f"{count} role changes detected within {window} seconds for user {entry.user_id}",
            related_audit_ids=[e.id for e in ordered],
            metadata={"change_count": count, "time_window_seconds": window},
        )

    def _check_privilege_escalation(self, entry: RoleAuditEntry) -> Optional[SuspiciousActivity]:
        old_role, new_role = entry.old_role, entry.new_role
        if old_role is None or new_role is None:
            return None

        jump = compare_roles(old_role, new_role)
        if jump <= 0:
            return None
        if new_role is UserRole.SYSTEM_ADMIN:
            severity = SuspiciousActivitySeverity.CRITICAL
        elif jump >= 3:
            severity = SuspiciousActivitySeverity.HIGH
        elif jump == 2:
            severity = SuspiciousActivitySeverity.MEDIUM
        else:
            return None

        return self._activity(
            entry,
            SuspiciousActivityType.PRIVILEGE_ESCALATION,
            severity,
            f"Privilege escalation from {old_role.value} to {new_role.value}",
            metadata={"old_role": old_role, "new_role": new_role, "level_jump": jump},
        )

    def _check_unusual_pattern(self, entry: RoleAuditEntry) -> Optional[SuspiciousActivity]:
        if entry.changed_by == self.config.system_actor:
            return None

        tz = get_timezone(self.config.business_timezone)
        local = entry.timestamp.astimezone(tz)
        is_weekend = local.weekday() >= 5
        is_outside_hours = (local.hour < self.config.business_hours_start
                            or local.hour > self.config.business_hours_end)
        if not (is_weekend or is_outside_hours):
            return None

        return self._activity(
            entry,
            SuspiciousActivityType.UNUSUAL_PATTERN,
            SuspiciousActivitySeverity.MEDIUM,
            f"Role change performed outside business hours: {entry.timestamp.isoformat()}",
            metadata={
                "timestamp": entry.timestamp,
                "local_time": local.isoformat(),
                "timezone": self.config.business_timezone,
                "is_weekend": is_weekend,
                "is_outside_business_hours": is_outside_hours,
                "hour": local.hour,
                "weekday": local.weekday(),
            },
        )

    def _activity(self, entry: RoleAuditEntry, activity_type: SuspiciousActivityType,
                  severity: SuspiciousActivitySeverity, description: str,
                  metadata: Dict[str, Any], related_audit_ids: Optional[List[str]] = None) -> SuspiciousActivity:
        return SuspiciousActivity(
            type=activity_type,
            severity=severity,
            description=description,
            user_id=entry.user_id,
            performed_by=entry.changed_by,
            related_audit_ids=related_audit_ids or [entry.id],
            detected_at=self._now(),
            institution_id=entry.institution_id,
            department_id=entry.department_id,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def generate_role_audit_report(
        self,
        title: str,
        requested_by: str,
        start_date: datetime.datetime,
        end_date: datetime.datetime,
        institution_id: Optional[str] = None,
        department_id: Optional[str] = None,
    ) -> AuditReport:
        """
        Build and persist an audit report for ``[start_date, end_date]``.

        Raises:
            ValueError: If ``start_date`` is after ``end_date``
            StorageError: If querying or storing fails
        """
        if start_date > end_date:
            raise ValueError("Report start date must not be after end date")

        result = self.query_role_audit_logs(AuditLogQuery(
            institution_id=institution_id,
            department_id=department_id,
            start_date=start_date,
            end_date=end_date,
            limit=self.config.report_entry_limit,
        ))
        if result.has_more:
            self.logger.warning("Audit report truncated", total_count=result.total_count,
                                limit=self.config.report_entry_limit)

        activities = self.get_suspicious_activities(SuspiciousActivityFilters(
            start_date=start_date,
            end_date=end_date,
            institution_id=institution_id,
            department_id=department_id,
        ))

        report = AuditReport(
            title=title,
            generated_by=requested_by,
            period_start=start_date,
            period_end=end_date,
            summary=self._summarize(result.entries, activities),
            entries=result.entries,
            suspicious_activities=activities,
            institution_id=institution_id,
            department_id=department_id,
            generated_at=self._now(),
        )

        with storage_operation("store role audit report"):
            self.repository.insert_report(report)

        self.logger.info("Role audit report generated", report_id=report.id,
                         generated_by=requested_by, entries=len(report.entries),
                         suspicious_activities=len(activities))
        return report

    def _summarize(self, entries: Sequence[RoleAuditEntry],
                   activities: Sequence[SuspiciousActivity]) -> ReportSummary:
        actions = Counter(entry.action for entry in entries)
        summary = ReportSummary(
            total_role_changes=len(entries),
            role_assignments=actions[AuditAction.ASSIGNED],
            role_changes=actions[AuditAction.CHANGED],
            role_revocations=actions[AuditAction.REVOKED],
            role_requests=actions[AuditAction.REQUESTED],
            approvals=actions[AuditAction.APPROVED],
            denials=actions[AuditAction.DENIED],
            expirations=actions[AuditAction.EXPIRED],
            suspicious_activities=len(activities),
        )

        for entry in entries:
            if entry.new_role is not None:
                summary.role_distribution[entry.new_role] += 1

        top = self.config.report_top_actor_count
        actors = Counter(e.changed_by for e in entries if e.changed_by != self.config.system_actor)
        summary.top_actors = [
            ActorActivity(user_id=user_id, action_count=count)
            for user_id, count in actors.most_common(top)
        ]
        departments = Counter(e.department_id for e in entries if e.department_id)
        summary.department_activity = [
            DepartmentActivity(department_id=department_id, action_count=count)
            for department_id, count in departments.most_common(top)
        ]
        return summary

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_entry(self, **values: Any) -> RoleAuditEntry:
        bound = structlog.contextvars.get_contextvars()
        for key in _REQUEST_CONTEXT_KEYS:
            if values.get(key) is None and bound.get(key):
                values[key] = bound[key]
        metadata = values.pop("metadata", None) or {}
        values["metadata"] = {k: v for k, v in metadata.items() if v is not None}
        return RoleAuditEntry(timestamp=self._now(), **values)

    def _record(self, entry: RoleAuditEntry, severity: Optional[str] = None) -> str:
        with storage_operation("store role audit entry"):
            self.repository.insert_entry(entry)

        if self.metrics is not None:
            self.metrics.track_audit_entry(entry.action.value)
        log_audit_event(
            self.logger,
            "Role audit entry recorded",
            action=entry.action.value,
            subject_user_id=entry.user_id,
            actor_id=entry.changed_by,
            audit_entry_id=entry.id,
            old_role=entry.old_role.value if entry.old_role else None,
            new_role=entry.new_role.value if entry.new_role else None,
            severity=severity or role_change_severity(entry.old_role, entry.new_role),
        )

        if entry.is_role_mutation:
            self.detect_suspicious_activity(entry)
        return entry.id
