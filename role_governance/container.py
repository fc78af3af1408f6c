"""
Dependency injection wiring for the governance engine.

``GovernanceModule`` binds every engine component as an application-wide
singleton so one permission cache, one metrics registry and one session
factory are shared by the checker and both processors.

Usage:
    injector = create_injector(get_config("development"))
    processor = injector.get(RoleChangeProcessor)
"""

from typing import Optional

from injector import Injector, Module, provider, singleton
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker

from .auth.permission_cache import PermissionCache
from .auth.permission_checker import PermissionChecker
from .auth.services.role_audit_service import RoleAuditService
from .auth.services.role_change_processor import RoleChangeProcessor
from .auth.services.temporary_role_processor import TemporaryRoleProcessor
from .notifications import LoggingNotificationService, NotificationService
from .persistence.repositories import AuditLogRepository, RoleAssignmentRepository
from .persistence.sqlalchemy_repository import (
    SQLAlchemyAuditLogRepository,
    SQLAlchemyRoleAssignmentRepository,
    create_engine_and_session_factory,
    create_schema,
)
from .utils.config import GovernanceConfig, get_config
from .utils.logging import configure_logging, get_logger, is_configured
from .utils.monitoring import GovernanceMetrics

logger = get_logger(__name__)


class GovernanceModule(Module):
    """Singleton bindings for the engine components."""

    def __init__(self, config: GovernanceConfig, create_tables: bool = True):
        self.config = config
        self.create_tables = create_tables
        self._session_factory: Optional[sessionmaker] = None

    def configure(self, binder):
        binder.bind(GovernanceConfig, to=self.config, scope=singleton)
        binder.bind(NotificationService, to=LoggingNotificationService, scope=singleton)

    @singleton
    @provider
    def provide_engine(self, config: GovernanceConfig) -> Engine:
        engine, self._session_factory = create_engine_and_session_factory(config.database_url)
        if self.create_tables:
            create_schema(engine)
        logger.info("Database engine initialized", dialect=engine.dialect.name)
        return engine

    @singleton
    @provider
    def provide_session_factory(self, engine: Engine) -> sessionmaker:
        return self._session_factory

    @singleton
    @provider
    def provide_assignment_repository(self, session_factory: sessionmaker) -> RoleAssignmentRepository:
        return SQLAlchemyRoleAssignmentRepository(session_factory)

    @singleton
    @provider
    def provide_audit_repository(self, session_factory: sessionmaker) -> AuditLogRepository:
        return SQLAlchemyAuditLogRepository(session_factory)

    @singleton
    @provider
    def provide_metrics(self) -> GovernanceMetrics:
        return GovernanceMetrics()

    @singleton
    @provider
    def provide_permission_checker(
        self,
        repository: RoleAssignmentRepository,
        config: GovernanceConfig,
        metrics: GovernanceMetrics,
    ) -> PermissionChecker:
        cache = PermissionCache(config.cache_ttl, metrics=metrics) if config.cache_enabled else None
        return PermissionChecker(repository, config=config, cache=cache, metrics=metrics)

    @singleton
    @provider
    def provide_audit_service(
        self,
        repository: AuditLogRepository,
        config: GovernanceConfig,
        metrics: GovernanceMetrics,
    ) -> RoleAuditService:
        return RoleAuditService(repository, config=config, metrics=metrics)

    @singleton
    @provider
    def provide_role_change_processor(
        self,
        repository: RoleAssignmentRepository,
        checker: PermissionChecker,
        audit_service: RoleAuditService,
        notifications: NotificationService,
        config: GovernanceConfig,
        metrics: GovernanceMetrics,
    ) -> RoleChangeProcessor:
        return RoleChangeProcessor(repository, checker, audit_service, notifications,
                                   config=config, metrics=metrics)

    @singleton
    @provider
    def provide_temporary_role_processor(
        self,
        repository: RoleAssignmentRepository,
        checker: PermissionChecker,
        audit_service: RoleAuditService,
        notifications: NotificationService,
        config: GovernanceConfig,
        metrics: GovernanceMetrics,
    ) -> TemporaryRoleProcessor:
        return TemporaryRoleProcessor(repository, checker, audit_service, notifications,
                                      config=config, metrics=metrics)


def create_injector(config: Optional[GovernanceConfig] = None, create_tables: bool = True) -> Injector:
    """
    Build an injector for ``config`` (the environment configuration by default).

    Logging is configured from the config unless the host application already
    configured it.
    """
    config = config or get_config()
    if not is_configured():
        configure_logging(config.log_level, json_output=config.log_json)
    injector = Injector([GovernanceModule(config, create_tables=create_tables)])
    logger.info("Governance container created", database_url=_redact(config.database_url))
    return injector


def _redact(url: str) -> str:
    return make_url(url).render_as_string(hide_password=True)
