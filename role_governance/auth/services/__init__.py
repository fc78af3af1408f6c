"""Role governance services built on the permission checker."""

from .role_audit_service import RoleAuditService
from .role_change_processor import (
    ChangeImpactPreview,
    RoleChangeProcessingOptions,
    RoleChangeProcessor,
    RoleChangeResult,
    RoleChangeValidationResult,
)
from .temporary_role_processor import ExpirationProcessingResult, TemporaryRoleProcessor

__all__ = [
    'ChangeImpactPreview',
    'ExpirationProcessingResult',
    'RoleAuditService',
    'RoleChangeProcessingOptions',
    'RoleChangeProcessor',
    'RoleChangeResult',
    'RoleChangeValidationResult',
    'TemporaryRoleProcessor',
]
