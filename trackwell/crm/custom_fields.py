from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from threading import RLock
from typing import Any

from pydantic import TypeAdapter, ValidationError

from trackwell.crm.errors import ValidationFailedError
from trackwell.crm.schemas import (
    TAGGED_VALUE_TYPES,
    BoolValue,
    CustomFieldDefinition,
    CustomFieldType,
    CustomFieldValue,
    DateValue,
    NumberValue,
    SelectValue,
    TextValue,
)
from trackwell.platform.security.policies import RECORD_KINDS, ResourceKind

FIELD_NAME_RE = re.compile(r"^[a-z0-9_]+$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
URL_RE = re.compile(r"^(https?://)?([\da-z.-]+)\.([a-z.]{2,6})([/\w .-]*)/?$")

_VALUE_ADAPTER: TypeAdapter[CustomFieldValue] = TypeAdapter(CustomFieldValue)


class _FieldError(Exception):
    pass


class CustomFieldSchemaStore:
    """Custom field definitions per record kind, plus value validation against them."""

    def __init__(self, definitions: Iterable[CustomFieldDefinition] = ()) -> None:
        self._definitions: dict[str, CustomFieldDefinition] = {}
        self._lock = RLock()
        for definition in definitions:
            self._definitions[definition.id] = definition

    def all(self) -> list[CustomFieldDefinition]:
        with self._lock:
            return [item.model_copy(deep=True) for item in self._definitions.values()]

    def definitions_for(self, kind: ResourceKind | str) -> list[CustomFieldDefinition]:
        with self._lock:
            return [item.model_copy(deep=True) for item in self._definitions.values() if item.entity_type == kind]

    def get(self, definition_id: str) -> CustomFieldDefinition | None:
        with self._lock:
            definition = self._definitions.get(definition_id)
            return definition.model_copy(deep=True) if definition is not None else None

    def find(self, kind: ResourceKind | str, name: str) -> CustomFieldDefinition | None:
        with self._lock:
            for definition in self._definitions.values():
                if definition.entity_type == kind and definition.name == name:
                    return definition.model_copy(deep=True)
        return None

    def add(self, definition: CustomFieldDefinition) -> None:
        with self._lock:
            if self.find(definition.entity_type, definition.name) is not None:
                raise ValidationFailedError.single("name", f"'{definition.name}' is already defined for {definition.entity_type}")
            self._definitions[definition.id] = definition.model_copy(deep=True)

    def replace(self, definition: CustomFieldDefinition) -> None:
        with self._lock:
            self._definitions[definition.id] = definition.model_copy(deep=True)

    def remove(self, definition_id: str) -> CustomFieldDefinition | None:
        with self._lock:
            return self._definitions.pop(definition_id, None)

    def label_for(self, kind: ResourceKind | str, name: str) -> str:
        definition = self.find(kind, name)
        return definition.label if definition is not None else name

    def orphaned_values(self, kind: ResourceKind | str, values: Mapping[str, Any]) -> dict[str, Any]:
        defined = {item.name for item in self.definitions_for(kind)}
        return {name: value for name, value in values.items() if name not in defined}

    def validate_values(
        self,
        kind: ResourceKind | str,
        provided: Mapping[str, Any] | None,
        existing: Mapping[str, CustomFieldValue] | None = None,
        *,
        enforce_required: bool,
    ) -> dict[str, CustomFieldValue]:
        """Merge ``provided`` into ``existing`` and return the validated map.

        ``None`` clears a value. Names with no definition are rejected, except
        orphans already stored on the record: those may be kept or cleared.
        """

        definitions = {item.name: item for item in self.definitions_for(kind)}
        current = dict(existing or {})
        merged = dict(current)
        errors: dict[str, list[str]] = {}

        for name, raw in (provided or {}).items():
            key = f"custom_fields.{name}"
            definition = definitions.get(name)
            if definition is None:
                if name not in current:
                    errors.setdefault(key, []).append(f"'{name}' is not a defined field for {kind}")
                elif raw is None:
                    merged.pop(name, None)
                elif not _same_value(raw, current[name]):
                    errors.setdefault(key, []).append(f"'{name}' is no longer defined and cannot be changed")
                continue

            try:
                value = coerce_value(definition, raw)
            except _FieldError as exc:
                errors.setdefault(key, []).append(str(exc))
                continue
            if value is None:
                merged.pop(name, None)
            else:
                merged[name] = value

        if enforce_required:
            for name, definition in definitions.items():
                if not definition.is_required:
                    continue
                value = merged.get(name)
                if definition.type == CustomFieldType.CHECKBOX:
                    missing = not (isinstance(value, BoolValue) and value.value)
                else:
                    missing = value is None
                if missing:
                    errors.setdefault(f"custom_fields.{name}", []).append(f"{definition.label} is required")

        if errors:
            raise ValidationFailedError(errors)
        return merged


def validate_definition_shape(name: str, field_type: CustomFieldType, options: list[str] | None) -> list[str]:
    errors: dict[str, list[str]] = {}
    if not FIELD_NAME_RE.match(name):
        errors["name"] = ["name may only contain lowercase letters, numbers and underscores"]
    cleaned = [item.strip() for item in options or []]
    if field_type == CustomFieldType.SELECT:
        if not cleaned or any(not item for item in cleaned):
            errors["options"] = ["select fields need at least one non-empty option"]
    elif cleaned:
        errors["options"] = ["options are only supported for select fields"]
    if errors:
        raise ValidationFailedError(errors)
    return cleaned


def _as_tagged(raw: Any) -> Any:
    if isinstance(raw, Mapping) and "kind" in raw:
        return _VALUE_ADAPTER.validate_python(raw)
    return raw


def _same_value(raw: Any, stored: CustomFieldValue) -> bool:
    try:
        return _as_tagged(raw) == stored
    except ValidationError:
        return False


def coerce_value(definition: CustomFieldDefinition, raw: Any) -> CustomFieldValue | None:
    try:
        raw = _as_tagged(raw)
    except ValidationError as exc:
        raise _FieldError(f"{definition.label} has an invalid value") from exc
    if isinstance(raw, TAGGED_VALUE_TYPES):
        raw = raw.value
    if raw is None:
        return None

    field_type = definition.type
    if field_type == CustomFieldType.CHECKBOX:
        if isinstance(raw, bool):
            return BoolValue(value=raw)
        if isinstance(raw, str) and raw.strip().lower() in {"true", "false"}:
            return BoolValue(value=raw.strip().lower() == "true")
        raise _FieldError(f"{definition.label} must be true or false")

    if field_type == CustomFieldType.NUMBER:
        if isinstance(raw, bool):
            raise _FieldError(f"{definition.label} must be a valid number")
        if isinstance(raw, str) and not raw.strip():
            return None
        try:
            number = Decimal(str(raw).strip())
        except InvalidOperation as exc:
            raise _FieldError(f"{definition.label} must be a valid number") from exc
        if not number.is_finite():
            raise _FieldError(f"{definition.label} must be a valid number")
        return NumberValue(value=number)

    if field_type == CustomFieldType.DATE:
        if isinstance(raw, datetime):
            return DateValue(value=raw.date())
        if isinstance(raw, date):
            return DateValue(value=raw)
        if isinstance(raw, str):
            if not raw.strip():
                return None
            try:
                return DateValue(value=date.fromisoformat(raw.strip()))
            except ValueError as exc:
                raise _FieldError(f"{definition.label} must be an ISO date") from exc
        raise _FieldError(f"{definition.label} must be an ISO date")

    if not isinstance(raw, str):
        raise _FieldError(f"{definition.label} must be text")
    if not raw.strip():
        return None

    if field_type == CustomFieldType.EMAIL:
        if not EMAIL_RE.match(raw.strip()):
            raise _FieldError(f"{definition.label} must be a valid email address")
        return TextValue(value=raw.strip())
    if field_type == CustomFieldType.URL:
        if not URL_RE.match(raw.strip()):
            raise _FieldError(f"{definition.label} must be a valid URL")
        return TextValue(value=raw.strip())
    if field_type == CustomFieldType.SELECT:
        if raw not in definition.options:
            raise _FieldError(f"{definition.label} must be one of: {', '.join(definition.options)}")
        return SelectValue(value=raw)
    return TextValue(value=raw)


def supported_kind(kind: ResourceKind | str) -> bool:
    return kind in RECORD_KINDS
