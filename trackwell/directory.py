from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from trackwell.crm.schemas import DirectoryUser


class UserDirectory(Protocol):
    """Read-only view of the external identity store."""

    def get(self, user_id: str) -> DirectoryUser | None:
        ...

    def find_by_name(self, name: str | None) -> DirectoryUser | None:
        ...

    def resolve_mention(self, token: str) -> DirectoryUser | None:
        ...

    def all(self) -> list[DirectoryUser]:
        ...


class InMemoryUserDirectory:
    def __init__(self, users: Iterable[DirectoryUser] = ()) -> None:
        self._users: dict[str, DirectoryUser] = {user.id: user for user in users}

    def get(self, user_id: str) -> DirectoryUser | None:
        return self._users.get(user_id)

    def find_by_name(self, name: str | None) -> DirectoryUser | None:
        if not name:
            return None
        return next((user for user in self._users.values() if user.name == name), None)

    def resolve_mention(self, token: str) -> DirectoryUser | None:
        needle = token.lower()
        for user in self._users.values():
            if user.name.lower() == needle or str(user.email).split("@", 1)[0].lower() == needle:
                return user
        return None

    def all(self) -> list[DirectoryUser]:
        return list(self._users.values())
