from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from threading import Lock
from typing import Any, Protocol

from trackwell.platform.security.context import ActorContext, Role


class ResourceAction(StrEnum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    PURGE = "purge"


class ResourceKind(StrEnum):
    LEAD = "Lead"
    CUSTOMER = "Customer"
    DEAL = "Deal"
    TASK = "Task"
    PRODUCT = "Product"
    USER = "User"
    SYSTEM = "System"


RECORD_KINDS = frozenset(
    {ResourceKind.LEAD, ResourceKind.CUSTOMER, ResourceKind.DEAL, ResourceKind.TASK, ResourceKind.PRODUCT}
)

# Owners are stored as display names, so two users sharing a name are conflated.
OWNER_FIELDS: dict[ResourceKind, str] = {
    ResourceKind.LEAD: "assigned_to",
    ResourceKind.CUSTOMER: "account_manager",
    ResourceKind.DEAL: "owner",
    ResourceKind.TASK: "assigned_to",
}


def _read(source: Any, name: str) -> Any:
    if source is None:
        return None
    if isinstance(source, Mapping):
        return source.get(name)
    return getattr(source, name, None)


class PolicyBackend(Protocol):
    """Pluggable policy backend interface for role/ownership checks."""

    def is_allowed(
        self,
        actor: ActorContext,
        action: ResourceAction,
        kind: ResourceKind,
        record: Any | None = None,
    ) -> bool:
        ...


class RoleMatrixPolicy:
    """Role matrix with sales-rep ownership rules on the record kinds."""

    def is_allowed(
        self,
        actor: ActorContext,
        action: ResourceAction,
        kind: ResourceKind,
        record: Any | None = None,
    ) -> bool:
        if actor.role == Role.ADMIN:
            return True
        if kind not in RECORD_KINDS or action == ResourceAction.PURGE:
            return False
        if actor.role == Role.MANAGER:
            return True
        if actor.role != Role.SALES_REP:
            return False

        if kind == ResourceKind.PRODUCT:
            return action == ResourceAction.READ
        if action in {ResourceAction.CREATE, ResourceAction.READ}:
            return True
        if record is None:
            return False
        return self.owns(actor, kind, record)

    @staticmethod
    def owns(actor: ActorContext, kind: ResourceKind, record: Any) -> bool:
        owner_field = OWNER_FIELDS.get(kind)
        if owner_field is not None and _read(record, owner_field) == actor.name:
            return True
        if kind == ResourceKind.TASK:
            creator_id = _read(_read(record, "created_by"), "id")
            return creator_id is not None and creator_id == actor.user_id
        return False


_POLICY_BACKEND: PolicyBackend = RoleMatrixPolicy()
_POLICY_LOCK = Lock()


def get_policy_backend() -> PolicyBackend:
    """Get the active policy backend instance."""

    return _POLICY_BACKEND


def set_policy_backend(backend: PolicyBackend) -> None:
    global _POLICY_BACKEND
    with _POLICY_LOCK:
        _POLICY_BACKEND = backend


def can_perform(
    actor: ActorContext | None,
    action: ResourceAction | str,
    kind: ResourceKind | str,
    record: Any | None = None,
) -> bool:
    if actor is None:
        return False
    return get_policy_backend().is_allowed(actor, ResourceAction(action), ResourceKind(kind), record)
