"""
Role-based authorization and governance engine.

Components:
- ``auth.permission_checker``: contextual permission evaluation with caching
- ``auth.services.role_change_processor``: validated, audited role transitions
- ``auth.services.role_audit_service``: audit trail, suspicious activity, reports
- ``container``: injector wiring over the SQLAlchemy repositories
"""

__version__ = "1.0.0"
