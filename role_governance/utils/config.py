"""
Configuration Management for the Role Governance Engine

The engine is a library component: its configuration is supplied at
construction time as a ``GovernanceConfig`` instance, built either directly,
from an environment preset, or from environment variables.

Features:
- Dataclass configuration with validation in ``__post_init__``
- Environment-specific presets (development, testing, production)
- Environment variable loading through python-dotenv
- Role lists parsed and validated against the role enumeration

Environment variables (prefix ``ROLE_GOVERNANCE_``):
- CACHE_ENABLED, CACHE_TTL, BULK_CHECK_LIMIT
- REQUIRE_APPROVAL_FOR_ROLES, AUTO_APPROVE_ROLES (comma separated role names)
- ROLE_REQUEST_EXPIRATION_DAYS, RAPID_CHANGE_WINDOW, RAPID_CHANGE_THRESHOLD
- BUSINESS_HOURS_START, BUSINESS_HOURS_END, BUSINESS_TIMEZONE
- AUDIT_QUERY_DEFAULT_LIMIT, REPORT_ENTRY_LIMIT, REPORT_TOP_ACTOR_COUNT
- SYSTEM_ACTOR, DATABASE_URL, LOG_LEVEL, LOG_JSON
"""

import dataclasses
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv

from ..auth.models.role import UserRole, parse_roles
from .datetime import DateTimeError, get_timezone
from .error_handling import ConfigurationError
from .logging import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "ROLE_GOVERNANCE_"

_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}


class Environment(Enum):
    """Environment enumeration for configuration presets"""
    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


def _default_approval_roles() -> List[UserRole]:
    return [UserRole.DEPARTMENT_ADMIN, UserRole.INSTITUTION_ADMIN, UserRole.SYSTEM_ADMIN]


def _default_auto_approve_roles() -> List[UserRole]:
    return [UserRole.STUDENT]


@dataclass
class GovernanceConfig:
    """
    Runtime configuration for the permission checker, role change processor
    and role audit service.
    """
    cache_enabled: bool = True
    cache_ttl: int = 300
    bulk_check_limit: int = 100
    require_approval_for_roles: List[UserRole] = field(default_factory=_default_approval_roles)
    auto_approve_roles: List[UserRole] = field(default_factory=_default_auto_approve_roles)
    role_request_expiration_days: int = 7
    rapid_change_window: int = 3600
    rapid_change_threshold: int = 3
    business_hours_start: int = 9
    business_hours_end: int = 17
    business_timezone: str = "UTC"
    audit_query_default_limit: int = 100
    report_entry_limit: int = 10000
    report_top_actor_count: int = 10
    system_actor: str = "system"
    database_url: str = "sqlite:///:memory:"
    log_level: str = "INFO"
    log_json: bool = True

    def __post_init__(self):
        """Normalize role lists and validate configuration values"""
        try:
            self.require_approval_for_roles = parse_roles(self.require_approval_for_roles)
            self.auto_approve_roles = parse_roles(self.auto_approve_roles)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

        for name in ("cache_ttl", "bulk_check_limit", "role_request_expiration_days",
                     "rapid_change_window", "rapid_change_threshold",
                     "audit_query_default_limit", "report_entry_limit",
                     "report_top_actor_count"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

        for name in ("business_hours_start", "business_hours_end"):
            value = getattr(self, name)
            if not 0 <= value <= 23:
                raise ConfigurationError(f"{name} must be between 0 and 23, got {value}")
        if self.business_hours_start >= self.business_hours_end:
            raise ConfigurationError("business_hours_start must be earlier than business_hours_end")

        try:
            get_timezone(self.business_timezone)
        except DateTimeError as exc:
            raise ConfigurationError(str(exc)) from exc

        overlap = set(self.require_approval_for_roles) & set(self.auto_approve_roles)
        if overlap:
            names = ", ".join(sorted(role.value for role in overlap))
            raise ConfigurationError(
                f"Roles cannot both require approval and be auto-approved: {names}"
            )

        if not self.system_actor:
            raise ConfigurationError("system_actor must not be empty")

    def requires_approval_for(self, role: UserRole) -> bool:
        return role in self.require_approval_for_roles

    def is_auto_approved(self, role: UserRole) -> bool:
        return role in self.auto_approve_roles

    def replace(self, **changes: Any) -> "GovernanceConfig":
        """Return a validated copy with the given fields changed."""
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["require_approval_for_roles"] = [r.value for r in self.require_approval_for_roles]
        data["auto_approve_roles"] = [r.value for r in self.auto_approve_roles]
        return data

    @classmethod
    def from_environment(
        cls,
        prefix: str = ENV_PREFIX,
        environ: Optional[Mapping[str, str]] = None,
        base: Optional["GovernanceConfig"] = None,
    ) -> "GovernanceConfig":
        """
        Build configuration from environment variables.

        ``.env`` files are loaded first when reading the process environment.
        Variables that are not set keep the value from ``base`` (or the
        dataclass defaults).

        Args:
            prefix: Variable name prefix
            environ: Mapping to read instead of ``os.environ``
            base: Configuration supplying values for unset variables

        Raises:
            ConfigurationError: If a variable cannot be converted or the
                resulting configuration is invalid
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        values = (base or cls()).to_dict()
        for config_field in dataclasses.fields(cls):
            raw = environ.get(prefix + config_field.name.upper())
            if raw is None:
                continue
            values[config_field.name] = _convert(config_field.name, raw, values[config_field.name])

        config = cls(**values)
        logger.debug("Configuration loaded from environment", prefix=prefix)
        return config


def _convert(name: str, raw: str, current: Any) -> Any:
    raw = raw.strip()
    if isinstance(current, bool):
        lowered = raw.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ConfigurationError(f"Invalid boolean for {name}: {raw!r}")
    if isinstance(current, int):
        try:
            return int(raw)
        except ValueError:
            raise ConfigurationError(f"Invalid integer for {name}: {raw!r}") from None
    if isinstance(current, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


CONFIG_PRESETS: Dict[Environment, Dict[str, Any]] = {
    Environment.DEVELOPMENT: {
        "log_level": "DEBUG",
        "log_json": False,
        "database_url": "sqlite:///role_governance_dev.db",
    },
    Environment.TESTING: {
        "cache_ttl": 60,
        "log_level": "DEBUG",
        "log_json": False,
        "database_url": "sqlite:///:memory:",
    },
    Environment.PRODUCTION: {
        "log_level": "INFO",
        "log_json": True,
    },
}


def get_config(environment: Optional[str] = None, **overrides: Any) -> GovernanceConfig:
    """
    Return the configuration preset for an environment.

    Args:
        environment: Environment name (development, testing, production);
            read from ``ROLE_GOVERNANCE_ENV`` when omitted, defaulting to production
        **overrides: Field values applied on top of the preset

    Returns:
        GovernanceConfig: Validated configuration
    """
    name = (environment or os.getenv(f"{ENV_PREFIX}ENV", Environment.PRODUCTION.value)).lower()
    try:
        env = Environment(name)
    except ValueError:
        raise ConfigurationError(f"Invalid environment: {name}") from None

    values = dict(CONFIG_PRESETS[env])
    values.update(overrides)
    return GovernanceConfig(**values)
