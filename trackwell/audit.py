from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from typing import Any

from pydantic import ValidationError

from trackwell.crm.custom_fields import CustomFieldSchemaStore
from trackwell.crm.errors import ValidationFailedError
from trackwell.crm.schemas import (
    ActivityDetails,
    ActivityLogEntry,
    ActivityType,
    AuditEntityType,
    CustomFieldValue,
    utcnow,
)
from trackwell.metrics import observe_audit_entry
from trackwell.platform.security.context import ActorContext

logger = logging.getLogger("trackwell.audit")

SYSTEM_ACTOR_ID = "system-user"
SYSTEM_ACTOR_NAME = "System"


@dataclass(frozen=True, slots=True)
class CustomFieldChange:
    name: str
    label: str
    old_value: str | None
    new_value: str | None


def diff_custom_fields(
    schema: CustomFieldSchemaStore,
    kind: str,
    old: Mapping[str, CustomFieldValue],
    new: Mapping[str, CustomFieldValue],
) -> list[CustomFieldChange]:
    """Changed custom values, labelled with the definition label as of now."""

    changes: list[CustomFieldChange] = []
    for name in sorted(set(old) | set(new)):
        before = old.get(name)
        after = new.get(name)
        if before == after:
            continue
        changes.append(
            CustomFieldChange(
                name=name,
                label=schema.label_for(kind, name),
                old_value=before.as_text() if before is not None else None,
                new_value=after.as_text() if after is not None else None,
            )
        )
    return changes


class AuditTrail:
    """Append-only activity log. Entries are frozen and never removed."""

    def __init__(
        self,
        entries: Iterable[ActivityLogEntry] = (),
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._entries: list[ActivityLogEntry] = list(entries)
        self._clock = clock
        self._lock = RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def record(self, entry: ActivityLogEntry | Mapping[str, Any]) -> ActivityLogEntry:
        if not isinstance(entry, ActivityLogEntry):
            try:
                entry = ActivityLogEntry.model_validate(entry)
            except ValidationError as exc:
                raise ValidationFailedError.from_pydantic(exc) from exc
        with self._lock:
            self._entries.append(entry)
        observe_audit_entry(entry.activity_type.value)
        logger.debug(
            "audit.recorded",
            extra={
                "activity_type": entry.activity_type.value,
                "kind": entry.entity_type.value,
                "record_id": entry.entity_id,
                "actor_id": entry.actor_id,
            },
        )
        return entry

    def log(
        self,
        actor: ActorContext | None,
        entity_id: str,
        entity_type: AuditEntityType | str,
        activity_type: ActivityType,
        description: str,
        details: ActivityDetails | None = None,
    ) -> ActivityLogEntry:
        return self.record(
            {
                "timestamp": self._clock(),
                "entity_id": entity_id,
                "entity_type": entity_type,
                "actor_id": actor.user_id if actor is not None else SYSTEM_ACTOR_ID,
                "actor_name": actor.name if actor is not None else SYSTEM_ACTOR_NAME,
                "activity_type": activity_type,
                "description": description,
                "details": details,
            }
        )

    def query(self, entity_id: str, entity_type: AuditEntityType | str) -> list[ActivityLogEntry]:
        with self._lock:
            matching = [
                entry
                for entry in reversed(self._entries)
                if entry.entity_id == entity_id and entry.entity_type == entity_type
            ]
        return sorted(matching, key=lambda entry: entry.timestamp, reverse=True)

    def list_entries(
        self,
        *,
        activity_types: Iterable[ActivityType | str] | None = None,
        entity_types: Iterable[AuditEntityType | str] | None = None,
        actor_id: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[ActivityLogEntry]:
        wanted_activities = {str(item) for item in activity_types} if activity_types is not None else None
        wanted_entities = {str(item) for item in entity_types} if entity_types is not None else None

        with self._lock:
            candidates = list(reversed(self._entries))

        filtered = [
            entry
            for entry in candidates
            if (wanted_activities is None or entry.activity_type.value in wanted_activities)
            and (wanted_entities is None or entry.entity_type.value in wanted_entities)
            and (actor_id is None or entry.actor_id == actor_id)
            and (date_from is None or entry.timestamp >= date_from)
            and (date_to is None or entry.timestamp <= date_to)
        ]
        ordered = sorted(filtered, key=lambda entry: entry.timestamp, reverse=True)
        start = max(offset, 0)
        return ordered[start : start + limit] if limit is not None else ordered[start:]

    def snapshot(self) -> list[ActivityLogEntry]:
        with self._lock:
            return list(self._entries)
