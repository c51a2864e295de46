from leadflow.security.capabilities import (
    CapabilityBackend,
    DbCapabilityBackend,
    StaticCapabilityBackend,
    get_capability_backend,
    set_capability_backend,
)
from leadflow.security.context import AccessContext
from leadflow.security.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictReason,
    ErrorKind,
    InfrastructureError,
    LeadflowError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from leadflow.security.events import (
    SecurityEventLog,
    SecurityEventType,
    Severity,
    get_security_event_log,
    record_security_event,
    set_security_event_log,
)
from leadflow.security.roles import Capability, Role, RolePermissions, get_permissions, is_in_role_group

__all__ = [
    "AccessContext",
    "AuthenticationError",
    "AuthorizationError",
    "Capability",
    "CapabilityBackend",
    "ConflictReason",
    "DbCapabilityBackend",
    "ErrorKind",
    "InfrastructureError",
    "LeadflowError",
    "NotFoundError",
    "Role",
    "RolePermissions",
    "SecurityEventLog",
    "SecurityEventType",
    "Severity",
    "StateConflictError",
    "StaticCapabilityBackend",
    "ValidationError",
    "get_capability_backend",
    "get_permissions",
    "get_security_event_log",
    "is_in_role_group",
    "record_security_event",
    "set_capability_backend",
    "set_security_event_log",
]
