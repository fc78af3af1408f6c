"""
Notification collaborator for role lifecycle events.

Notification delivery is external to the engine. Services call the methods of
a ``NotificationService`` with plain data; ``LoggingNotificationService`` is
the default implementation and records each event as a structured log line.
Delivery failures never roll back a role mutation that has already succeeded:
callers go through ``NotificationDispatcher``, which logs and counts them.
"""

from abc import ABC, abstractmethod
from typing import Optional

from .auth.models.role import UserRole
from .auth.models.user_role_assignment import RoleRequest
from .utils.logging import LogCategory, get_logger
from .utils.monitoring import GovernanceMetrics


class NotificationService(ABC):

    @abstractmethod
    def notify_role_change_requested(self, request: RoleRequest) -> None:
        pass

    @abstractmethod
    def notify_role_changed(self, user_id: str, old_role: Optional[UserRole],
                            new_role: UserRole, reason: Optional[str]) -> None:
        pass

    @abstractmethod
    def notify_role_change_approved(self, user_id: str, role: UserRole, notes: Optional[str]) -> None:
        pass

    @abstractmethod
    def notify_role_change_denied(self, user_id: str, role: UserRole, reason: str) -> None:
        pass

    @abstractmethod
    def notify_role_expired(self, user_id: str, role: UserRole, reverted_to: Optional[UserRole]) -> None:
        pass


class LoggingNotificationService(NotificationService):
    """Emits one structlog event per notification."""

    def __init__(self):
        self.logger = get_logger(__name__, component="notifications",
                                 category=LogCategory.APPLICATION.value)

    def notify_role_change_requested(self, request: RoleRequest) -> None:
        self.logger.info("Role change requested", user_id=request.user_id,
                         request_id=request.id, requested_role=request.requested_role.value,
                         verification_method=request.verification_method.value)

    def notify_role_changed(self, user_id, old_role, new_role, reason) -> None:
        self.logger.info("Role changed", user_id=user_id,
                         old_role=old_role.value if old_role else None,
                         new_role=new_role.value, reason=reason)

    def notify_role_change_approved(self, user_id, role, notes) -> None:
        self.logger.info("Role change approved", user_id=user_id, role=role.value, notes=notes)

    def notify_role_change_denied(self, user_id, role, reason) -> None:
        self.logger.info("Role change denied", user_id=user_id, role=role.value, reason=reason)

    def notify_role_expired(self, user_id, role, reverted_to) -> None:
        self.logger.info("Role expired", user_id=user_id, role=role.value,
                         reverted_to=reverted_to.value if reverted_to else None)


class NotificationDispatcher:
    """
    Fire-and-forget wrapper around a ``NotificationService``.

    Every call returns ``True`` on delivery and ``False`` when the underlying
    service raised; failures are logged at error level and counted as
    ``notification_failed`` role change outcomes.
    """

    def __init__(self, service: NotificationService, metrics: Optional[GovernanceMetrics] = None):
        self.service = service
        self.metrics = metrics
        self.logger = get_logger(__name__, component="notification_dispatcher")

    def dispatch(self, event: str, *args, **kwargs) -> bool:
        handler = getattr(self.service, f"notify_{event}")
        try:
            handler(*args, **kwargs)
            return True
        except Exception as exc:
            self.logger.error("Notification delivery failed", notification=event,
                              error_type=type(exc).__name__, error=str(exc))
            if self.metrics is not None:
                self.metrics.track_role_change('notification_failed')
            return False
