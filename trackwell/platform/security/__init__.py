from trackwell.platform.security.context import ActorContext, Role
from trackwell.platform.security.errors import AuthorizationError, PermissionDeniedError
from trackwell.platform.security.policies import (
    RECORD_KINDS,
    PolicyBackend,
    ResourceAction,
    ResourceKind,
    RoleMatrixPolicy,
    can_perform,
    get_policy_backend,
    set_policy_backend,
)

__all__ = [
    "ActorContext",
    "Role",
    "AuthorizationError",
    "PermissionDeniedError",
    "RECORD_KINDS",
    "PolicyBackend",
    "ResourceAction",
    "ResourceKind",
    "RoleMatrixPolicy",
    "can_perform",
    "get_policy_backend",
    "set_policy_backend",
]
