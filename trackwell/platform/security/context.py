from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class Role(StrEnum):
    ADMIN = "admin"
    MANAGER = "manager"
    SALES_REP = "sales_rep"


@dataclass(slots=True)
class ActorContext:
    """The acting user, passed explicitly into every lifecycle call."""

    user_id: str
    name: str
    role: Role
    email: str | None = None
    correlation_id: str | None = None
