"""
Prometheus metrics for the role governance engine.

Each ``GovernanceMetrics`` instance owns its own ``CollectorRegistry`` so that
several engine instances (and test cases) never collide on metric names in a
process-wide registry. The host application exposes ``export()`` on whatever
metrics endpoint it serves.

Tracked:
- permission checks by result, with latency histogram
- permission cache hits, misses, stores and invalidations
- bulk permission check outcomes
- role change outcomes (executed, requested, approved, denied, failed,
  rolled_back, expired)
- audit entries by action
- suspicious activities by type and severity, and heuristic failures
"""

import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

from .logging import get_logger


class GovernanceMetrics:
    """Prometheus metrics manager for the governance engine."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "role_governance"):
        self.logger = get_logger(__name__)
        self.registry = registry or CollectorRegistry()
        self.namespace = namespace
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        ns = self.namespace

        # Permission evaluation
        self._metrics['permission_checks_total'] = Counter(
            f'{ns}_permission_checks_total',
            'Total permission checks by result',
            ['result'],
            registry=self.registry
        )
        self._metrics['permission_check_seconds'] = Histogram(
            f'{ns}_permission_check_seconds',
            'Permission check duration in seconds',
            buckets=[0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0],
            registry=self.registry
        )
        self._metrics['permission_cache_events_total'] = Counter(
            f'{ns}_permission_cache_events_total',
            'Permission cache events by type',
            ['event'],
            registry=self.registry
        )
        self._metrics['bulk_permission_checks_total'] = Counter(
            f'{ns}_bulk_permission_checks_total',
            'Bulk permission check requests by outcome',
            ['outcome'],
            registry=self.registry
        )

        # Role lifecycle
        self._metrics['role_changes_total'] = Counter(
            f'{ns}_role_changes_total',
            'Role change operations by outcome',
            ['outcome'],
            registry=self.registry
        )

        # Audit
        self._metrics['audit_entries_total'] = Counter(
            f'{ns}_audit_entries_total',
            'Role audit entries written by action',
            ['action'],
            registry=self.registry
        )
        self._metrics['suspicious_activities_total'] = Counter(
            f'{ns}_suspicious_activities_total',
            'Suspicious activities detected by type and severity',
            ['type', 'severity'],
            registry=self.registry
        )
        self._metrics['heuristic_failures_total'] = Counter(
            f'{ns}_heuristic_failures_total',
            'Suspicious activity heuristics that raised while evaluating an entry',
            ['heuristic'],
            registry=self.registry
        )

    def track_permission_check(self, granted: bool, duration: float = 0):
        """Track a single permission evaluation."""
        self._metrics['permission_checks_total'].labels(
            result='granted' if granted else 'denied'
        ).inc()
        if duration > 0:
            self._metrics['permission_check_seconds'].observe(duration)

    @contextmanager
    def time_permission_check(self) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self._metrics['permission_check_seconds'].observe(time.perf_counter() - start)

    def track_cache_event(self, event: str, count: int = 1):
        if count > 0:
            self._metrics['permission_cache_events_total'].labels(event=event).inc(count)

    def track_bulk_check(self, outcome: str):
        self._metrics['bulk_permission_checks_total'].labels(outcome=outcome).inc()

    def track_role_change(self, outcome: str):
        """Track role change outcomes."""
        self._metrics['role_changes_total'].labels(outcome=outcome).inc()

    def track_audit_entry(self, action: str):
        self._metrics['audit_entries_total'].labels(action=action).inc()

    def track_suspicious_activity(self, activity_type: str, severity: str):
        self._metrics['suspicious_activities_total'].labels(
            type=activity_type,
            severity=severity
        ).inc()

    def track_heuristic_failure(self, heuristic: str):
        self._metrics['heuristic_failures_total'].labels(heuristic=heuristic).inc()

    def get_metric(self, name: str):
        """Get specific metric by name."""
        return self._metrics.get(name)

    def get_sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """
        Return the current value of a sample, 0.0 when it has not been recorded.

        ``name`` is the metric name without namespace, e.g. ``role_changes_total``.
        """
        value = self.registry.get_sample_value(f'{self.namespace}_{name}', labels or {})
        return value or 0.0

    def export(self) -> bytes:
        """Generate metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
