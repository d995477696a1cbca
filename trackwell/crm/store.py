from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from threading import Lock, RLock

from trackwell.crm.schemas import Customer, Deal, Lead, Product, RecordBase, SystemSettings, Task
from trackwell.platform.security.policies import RECORD_KINDS, ResourceKind

RECORD_TYPES: dict[ResourceKind, type[RecordBase]] = {
    ResourceKind.LEAD: Lead,
    ResourceKind.CUSTOMER: Customer,
    ResourceKind.DEAL: Deal,
    ResourceKind.TASK: Task,
    ResourceKind.PRODUCT: Product,
}


def kind_of(record: RecordBase) -> ResourceKind:
    for kind, record_type in RECORD_TYPES.items():
        if type(record) is record_type:
            return kind
    raise TypeError(f"unsupported record type: {type(record).__name__}")


class _RecordLock:
    def __init__(self) -> None:
        self.lock = RLock()
        self.users = 0


class CRMStore:
    """Process-wide record tables. Callers always receive copies."""

    def __init__(self, records: Iterable[RecordBase] = (), system_settings: SystemSettings | None = None) -> None:
        self._tables: dict[ResourceKind, dict[str, RecordBase]] = {kind: {} for kind in RECORD_KINDS}
        self._record_locks: dict[tuple[ResourceKind, str], _RecordLock] = {}
        self._guard = Lock()
        self._system_settings = system_settings or SystemSettings()
        for record in records:
            self._tables[kind_of(record)][record.id] = record.model_copy(deep=True)

    @contextmanager
    def lock_for(self, kind: ResourceKind, record_id: str) -> Iterator[None]:
        """Hold the lock of one record.

        The lock is dropped once no caller holds or waits on it and the
        record is not stored, so lookups of unknown ids leave nothing behind.
        """

        key = (kind, record_id)
        with self._guard:
            entry = self._record_locks.setdefault(key, _RecordLock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0 and record_id not in self._tables[kind]:
                    self._record_locks.pop(key, None)

    def lock_count(self) -> int:
        with self._guard:
            return len(self._record_locks)

    def get(self, kind: ResourceKind, record_id: str) -> RecordBase | None:
        with self._guard:
            record = self._tables[kind].get(record_id)
            return record.model_copy(deep=True) if record is not None else None

    def put(self, kind: ResourceKind, record: RecordBase) -> None:
        with self._guard:
            self._tables[kind][record.id] = record.model_copy(deep=True)

    def remove(self, kind: ResourceKind, record_id: str) -> RecordBase | None:
        with self._guard:
            return self._tables[kind].pop(record_id, None)

    def all(self, kind: ResourceKind) -> list[RecordBase]:
        with self._guard:
            return [record.model_copy(deep=True) for record in self._tables[kind].values()]

    def system_settings(self) -> SystemSettings:
        with self._guard:
            return self._system_settings.model_copy(deep=True)

    def replace_system_settings(self, settings: SystemSettings) -> None:
        with self._guard:
            self._system_settings = settings.model_copy(deep=True)

    def snapshot(self) -> list[RecordBase]:
        with self._guard:
            return [record.model_copy(deep=True) for table in self._tables.values() for record in table.values()]
