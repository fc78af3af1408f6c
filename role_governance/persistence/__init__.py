"""Repository interfaces and their SQLAlchemy implementation."""

from .repositories import AuditLogRepository, RoleAssignmentRepository
from .sqlalchemy_repository import (
    SQLAlchemyAuditLogRepository,
    SQLAlchemyRoleAssignmentRepository,
    create_engine_and_session_factory,
    create_schema,
)

__all__ = [
    'AuditLogRepository',
    'RoleAssignmentRepository',
    'SQLAlchemyAuditLogRepository',
    'SQLAlchemyRoleAssignmentRepository',
    'create_engine_and_session_factory',
    'create_schema',
]
