from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, delete, func, select
from sqlalchemy.orm import Mapped, Session, mapped_column, sessionmaker

from trackwell.core.database import Base, build_engine, build_session_factory
from trackwell.core.events import WILDCARD, InProcessEventBus, InternalEvent
from trackwell.crm.schemas import (
    ActivityLogEntry,
    CustomFieldDefinition,
    NotificationItem,
    RecordBase,
    SystemSettings,
    utcnow,
)
from trackwell.crm.store import RECORD_TYPES, kind_of
from trackwell.platform.security.policies import ResourceKind

logger = logging.getLogger("trackwell.persistence")

SYSTEM_SETTINGS_KEY = "system"


class StoredRecord(Base):
    __tablename__ = "tracker_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    stored_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class StoredActivityEntry(Base):
    __tablename__ = "tracker_activity_log"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True)
    id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)


class StoredNotification(Base):
    __tablename__ = "tracker_notifications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)


class StoredCustomFieldDefinition(Base):
    __tablename__ = "tracker_custom_field_definitions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)


class StoredSetting(Base):
    __tablename__ = "tracker_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)


@dataclass
class TrackerState:
    records: list[RecordBase] = field(default_factory=list)
    definitions: list[CustomFieldDefinition] = field(default_factory=list)
    activity_log: list[ActivityLogEntry] = field(default_factory=list)
    inboxes: dict[str, list[NotificationItem]] = field(default_factory=dict)
    system_settings: SystemSettings | None = None


class SqlAlchemyStateRepository:
    """Durable copy of the tracker state: loaded at startup, flushed after every mutation."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str | None = None) -> SqlAlchemyStateRepository:
        engine = build_engine(database_url)
        Base.metadata.create_all(bind=engine)
        return cls(build_session_factory(engine))

    def load(self) -> TrackerState:
        state = TrackerState()
        with self._session_factory() as session:
            for row in session.scalars(select(StoredRecord)).all():
                record_type = RECORD_TYPES[ResourceKind(row.kind)]
                state.records.append(record_type.model_validate(row.payload))

            for row in session.scalars(select(StoredCustomFieldDefinition)).all():
                state.definitions.append(CustomFieldDefinition.model_validate(row.payload))

            for row in session.scalars(select(StoredActivityEntry).order_by(StoredActivityEntry.seq.asc())).all():
                state.activity_log.append(ActivityLogEntry.model_validate(row.payload))

            for row in session.scalars(select(StoredNotification)).all():
                item = NotificationItem.model_validate(row.payload)
                state.inboxes.setdefault(item.user_id, []).append(item)
            for items in state.inboxes.values():
                items.sort(key=lambda item: item.timestamp)

            settings_row = session.get(StoredSetting, SYSTEM_SETTINGS_KEY)
            if settings_row is not None:
                state.system_settings = SystemSettings.model_validate(settings_row.payload)

        logger.info(
            "persistence.loaded",
            extra={"status": f"{len(state.records)} records, {len(state.activity_log)} entries"},
        )
        return state

    def flush(self, state: TrackerState) -> None:
        with self._session_factory() as session:
            self._flush_records(session, state.records)
            self._flush_definitions(session, state.definitions)
            self._flush_activity_log(session, state.activity_log)
            self._flush_inboxes(session, state.inboxes)
            if state.system_settings is not None:
                session.merge(
                    StoredSetting(key=SYSTEM_SETTINGS_KEY, payload=state.system_settings.model_dump(mode="json"))
                )
            session.commit()

    def attach(self, bus: InProcessEventBus, state_provider: Callable[[], TrackerState]) -> None:
        def _on_event(event: InternalEvent) -> None:
            self.flush(state_provider())
            logger.debug("persistence.flushed", extra={"event_type": event.name})

        bus.subscribe(WILDCARD, _on_event)

    def _flush_records(self, session: Session, records: list[RecordBase]) -> None:
        current_ids = {record.id for record in records}
        stored_ids = set(session.scalars(select(StoredRecord.id)).all())
        gone = stored_ids - current_ids
        if gone:
            session.execute(delete(StoredRecord).where(StoredRecord.id.in_(gone)))
        for record in records:
            session.merge(
                StoredRecord(
                    id=record.id,
                    kind=kind_of(record).value,
                    is_deleted=record.is_deleted,
                    payload=record.model_dump(mode="json"),
                    stored_at=utcnow(),
                )
            )

    def _flush_definitions(self, session: Session, definitions: list[CustomFieldDefinition]) -> None:
        current_ids = {definition.id for definition in definitions}
        stored_ids = set(session.scalars(select(StoredCustomFieldDefinition.id)).all())
        gone = stored_ids - current_ids
        if gone:
            session.execute(delete(StoredCustomFieldDefinition).where(StoredCustomFieldDefinition.id.in_(gone)))
        for definition in definitions:
            session.merge(
                StoredCustomFieldDefinition(
                    id=definition.id,
                    entity_type=definition.entity_type.value,
                    name=definition.name,
                    payload=definition.model_dump(mode="json"),
                )
            )

    def _flush_activity_log(self, session: Session, entries: list[ActivityLogEntry]) -> None:
        already_stored = session.scalar(select(func.count()).select_from(StoredActivityEntry)) or 0
        for offset, entry in enumerate(entries[already_stored:], start=already_stored + 1):
            session.add(
                StoredActivityEntry(
                    seq=offset,
                    id=entry.id,
                    entity_id=entry.entity_id,
                    entity_type=entry.entity_type.value,
                    activity_type=entry.activity_type.value,
                    timestamp=entry.timestamp,
                    payload=entry.model_dump(mode="json"),
                )
            )

    def _flush_inboxes(self, session: Session, inboxes: dict[str, list[NotificationItem]]) -> None:
        for user_id, items in inboxes.items():
            for item in items:
                session.merge(
                    StoredNotification(
                        id=item.id,
                        user_id=user_id,
                        is_read=item.is_read,
                        payload=item.model_dump(mode="json"),
                    )
                )
