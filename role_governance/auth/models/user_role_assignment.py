"""
Role assignment, role request and role change request records.

Metadata carried on assignments is a typed key-value map restricted to
``ASSIGNMENT_METADATA_KEYS``; values are normalized to JSON-compatible
primitives so records serialize identically across storage backends.
"""

import datetime
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

from ...utils.datetime import ensure_utc, now_utc, to_isoformat
from .role import AssignmentStatus, RoleRequestStatus, UserRole, VerificationMethod

ASSIGNMENT_METADATA_KEYS: FrozenSet[str] = frozenset({
    "previous_role",
    "role_change_type",
    "request_id",
    "justification",
    "reverts_to",
    "rollback_of",
    "extended_by",
    "extension_reason",
    "original_expires_at",
    "source",
})


def generate_id() -> str:
    return str(uuid.uuid4())


def normalize_metadata(
    metadata: Optional[Mapping[str, Any]],
    recognized_keys: Iterable[str],
    kind: str,
) -> Dict[str, Any]:
    """
    Validate metadata keys and convert values to JSON-compatible primitives.

    Enum members become their values and datetimes become ISO 8601 strings;
    ``None`` values are dropped.

    Raises:
        ValueError: If a key is not recognized for the record kind
    """
    if not metadata:
        return {}
    recognized = frozenset(recognized_keys)
    unknown = sorted(set(metadata) - recognized)
    if unknown:
        raise ValueError(f"Unrecognized {kind} metadata keys: {', '.join(unknown)}")
    return {key: _normalize_value(value) for key, value in metadata.items() if value is not None}


def _normalize_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime.datetime):
        return to_isoformat(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_normalize_value(v) for v in value]
    if isinstance(value, Mapping):
        return {str(k): _normalize_value(v) for k, v in value.items()}
    return value


class Action(str, Enum):
    """CRUD-style actions mapped onto ``<resource_type>.<action>`` permissions."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE = "manage"
    APPROVE = "approve"


@dataclass(frozen=True)
class ResourceContext:
    """Resource a permission check is evaluated against."""
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    owner_id: Optional[str] = None
    department_id: Optional[str] = None
    institution_id: Optional[str] = None

    @classmethod
    def coerce(cls, value) -> Optional["ResourceContext"]:
        """Accept a ``ResourceContext``, a mapping of its fields, or ``None``."""
        if value is None or isinstance(value, ResourceContext):
            return value
        if isinstance(value, Mapping):
            return cls(**{k: value[k] for k in cls.__dataclass_fields__ if value.get(k) is not None})
        raise TypeError(f"Cannot build ResourceContext from {type(value).__name__}")


@dataclass
class UserRoleAssignment:
    """
    Grant of a role to a user within an institution (and optionally a department).

    A temporary assignment must carry ``expires_at``. An assignment whose
    ``expires_at`` has passed is logically inactive even while its status is
    still ``active``.
    """
    user_id: str
    role: UserRole
    institution_id: Optional[str] = None
    department_id: Optional[str] = None
    status: AssignmentStatus = AssignmentStatus.ACTIVE
    assigned_by: Optional[str] = None
    assigned_at: datetime.datetime = field(default_factory=now_utc)
    expires_at: Optional[datetime.datetime] = None
    is_temporary: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=generate_id)
    revoked_at: Optional[datetime.datetime] = None
    revoked_by: Optional[str] = None
    revocation_reason: Optional[str] = None
    updated_at: Optional[datetime.datetime] = None

    def __post_init__(self):
        self.role = UserRole.parse(self.role)
        self.status = AssignmentStatus(self.status)
        self.assigned_at = ensure_utc(self.assigned_at)
        self.expires_at = ensure_utc(self.expires_at)
        self.revoked_at = ensure_utc(self.revoked_at)
        self.updated_at = ensure_utc(self.updated_at)
        if self.is_temporary and self.expires_at is None:
            raise ValueError("Temporary role assignments require an expiration timestamp")
        self.metadata = normalize_metadata(self.metadata, ASSIGNMENT_METADATA_KEYS, "assignment")

    def is_expired(self, now: Optional[datetime.datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or now_utc()) > self.expires_at

    def is_usable(self, now: Optional[datetime.datetime] = None) -> bool:
        """Active status and not past its expiration."""
        return self.status == AssignmentStatus.ACTIVE and not self.is_expired(now)

    @property
    def previous_role(self) -> Optional[UserRole]:
        value = self.metadata.get("previous_role")
        return UserRole.parse(value) if value else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "role": self.role.value,
            "status": self.status.value,
            "institution_id": self.institution_id,
            "department_id": self.department_id,
            "assigned_by": self.assigned_by,
            "assigned_at": to_isoformat(self.assigned_at),
            "expires_at": to_isoformat(self.expires_at),
            "is_temporary": self.is_temporary,
            "metadata": dict(self.metadata),
            "revoked_at": to_isoformat(self.revoked_at),
            "revoked_by": self.revoked_by,
            "revocation_reason": self.revocation_reason,
        }


@dataclass
class RoleRequest:
    """Pending ask to move a user to ``requested_role``, reviewed by an approver."""
    user_id: str
    requested_role: UserRole
    current_role: Optional[UserRole]
    justification: str
    institution_id: Optional[str] = None
    department_id: Optional[str] = None
    verification_method: VerificationMethod = VerificationMethod.ADMIN_APPROVAL
    status: RoleRequestStatus = RoleRequestStatus.PENDING
    requested_by: Optional[str] = None
    requested_at: datetime.datetime = field(default_factory=now_utc)
    expires_at: Optional[datetime.datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime.datetime] = None
    review_notes: Optional[str] = None
    id: str = field(default_factory=generate_id)

    def __post_init__(self):
        self.requested_role = UserRole.parse(self.requested_role)
        if self.current_role is not None:
            self.current_role = UserRole.parse(self.current_role)
        self.verification_method = VerificationMethod(self.verification_method)
        self.status = RoleRequestStatus(self.status)
        self.requested_at = ensure_utc(self.requested_at)
        self.expires_at = ensure_utc(self.expires_at)
        self.reviewed_at = ensure_utc(self.reviewed_at)

    @property
    def is_pending(self) -> bool:
        return self.status == RoleRequestStatus.PENDING

    def is_expired(self, now: Optional[datetime.datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or now_utc()) > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "requested_role": self.requested_role.value,
            "current_role": self.current_role.value if self.current_role else None,
            "justification": self.justification,
            "institution_id": self.institution_id,
            "department_id": self.department_id,
            "verification_method": self.verification_method.value,
            "status": self.status.value,
            "requested_by": self.requested_by,
            "requested_at": to_isoformat(self.requested_at),
            "expires_at": to_isoformat(self.expires_at),
            "reviewed_by": self.reviewed_by,
            "reviewed_at": to_isoformat(self.reviewed_at),
            "review_notes": self.review_notes,
        }


@dataclass
class RoleChangeRequest:
    """
    Caller-supplied description of a role transition.

    ``current_role`` is a claim; the role change processor verifies it against
    the subject's active assignments rather than trusting it. ``changed_by``
    defaults to the subject (a self-service change).
    """
    user_id: str
    current_role: Optional[UserRole]
    new_role: Optional[UserRole]
    reason: str
    changed_by: Optional[str] = None
    institution_id: Optional[str] = None
    department_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.current_role:
            self.current_role = UserRole.parse(self.current_role)
        if self.new_role:
            self.new_role = UserRole.parse(self.new_role)
        if not self.changed_by:
            self.changed_by = self.user_id
        self.metadata = normalize_metadata(self.metadata, ASSIGNMENT_METADATA_KEYS, "role change")
