from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for role and ownership enforcement failures."""


class PermissionDeniedError(AuthorizationError):
    """Raised when the active policy rejects an action before any effect."""

    def __init__(self, action: str, kind: str, actor_id: str | None = None) -> None:
        self.action = action
        self.kind = kind
        self.actor_id = actor_id
        who = actor_id or "anonymous"
        super().__init__(f"Permission denied: {who} cannot {action} {kind}")
