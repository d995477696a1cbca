from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, cast
from urllib.parse import quote

from opentelemetry.trace import Span, Status, StatusCode
from pydantic import BaseModel, ValidationError

from trackwell.audit import AuditTrail, diff_custom_fields
from trackwell.context import reset_correlation_id, set_correlation_id
from trackwell.core.config import Settings, get_settings
from trackwell.core.events import InProcessEventBus, build_envelope
from trackwell.crm.custom_fields import CustomFieldSchemaStore, supported_kind, validate_definition_shape
from trackwell.crm.errors import BusinessRuleBlockedError, CRMError, NotFoundError, ValidationFailedError
from trackwell.crm.kinds import CUSTOMER, DEAL, LEAD, PRODUCT, TASK, KindDescriptor
from trackwell.crm.persistence import SqlAlchemyStateRepository, TrackerState
from trackwell.crm.schemas import (
    CLOSED_DEAL_STAGES,
    ActivityDetails,
    ActivityType,
    Attachment,
    AuditEntityType,
    BlockedProduct,
    BulkToggleResult,
    CustomFieldDefinition,
    CustomFieldDefinitionCreate,
    CustomFieldDefinitionUpdate,
    Deal,
    DealLineItem,
    DealLineItemInput,
    NotificationItem,
    PendingUpload,
    Product,
    ProductUpdate,
    RecordBase,
    RejectedUpload,
    RelatedEntityType,
    SaveResult,
    SystemSettings,
    Task,
    TaskCreator,
    TaskStatus,
    new_id,
    utcnow,
)
from trackwell.crm.store import CRMStore
from trackwell.directory import UserDirectory
from trackwell.metrics import (
    observe_business_rule_block,
    observe_mutation,
    observe_permission_denied,
    observe_rejected_upload,
)
from trackwell.notifications import NotificationEngine
from trackwell.otel import get_tracer
from trackwell.platform.security.context import ActorContext
from trackwell.platform.security.errors import AuthorizationError, PermissionDeniedError
from trackwell.platform.security.policies import ResourceAction, ResourceKind, can_perform

logger = logging.getLogger("trackwell.crm")
tracer = get_tracer("trackwell.crm")

CONTROL_FIELDS = {"custom_fields", "new_attachments", "removed_attachment_ids", "line_items"}


@dataclass
class ServiceDependencies:
    store: CRMStore
    audit: AuditTrail
    notifications: NotificationEngine
    schema: CustomFieldSchemaStore
    directory: UserDirectory
    bus: InProcessEventBus
    settings: Settings
    clock: Callable[[], datetime]


def _parse(model: type[BaseModel], payload: BaseModel | Mapping[str, Any]) -> Any:
    if isinstance(payload, model):
        return payload
    source = payload.model_dump(exclude_unset=True) if isinstance(payload, BaseModel) else payload
    try:
        return model.model_validate(source)
    except ValidationError as exc:
        raise ValidationFailedError.from_pydantic(exc) from exc


def _build(record_type: type[RecordBase], data: Mapping[str, Any]) -> RecordBase:
    try:
        return record_type.model_validate(dict(data))
    except ValidationError as exc:
        raise ValidationFailedError.from_pydantic(exc) from exc


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    return str(value)


class _ServiceBase:
    resource_label = "System"

    def __init__(self, deps: ServiceDependencies) -> None:
        self._deps = deps

    @contextmanager
    def _operation(self, action: str, actor: ActorContext | None, record_id: str | None = None) -> Iterator[Span]:
        label = self.resource_label
        token = set_correlation_id(actor.correlation_id) if actor is not None and actor.correlation_id else None
        started = time.perf_counter()
        status = "failed"

        with tracer.start_as_current_span(f"crm.{label.lower()}.{action}") as span:
            span.set_attribute("kind", label)
            span.set_attribute("action", action)
            if record_id is not None:
                span.set_attribute("record_id", record_id)
            if actor is not None:
                span.set_attribute("actor_id", actor.user_id)
            if actor is not None and actor.correlation_id:
                span.set_attribute("correlation_id", actor.correlation_id)
            try:
                yield span
                status = "succeeded"
            except (AuthorizationError, CRMError) as exc:
                status = "rejected"
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.info(
                    "crm.operation.rejected",
                    extra={
                        "kind": label,
                        "action": action,
                        "record_id": record_id,
                        "actor_id": actor.user_id if actor is not None else None,
                        "error": str(exc),
                    },
                )
                raise
            finally:
                duration = time.perf_counter() - started
                observe_mutation(label, action, status, duration)
                if status == "succeeded":
                    logger.info(
                        "crm.operation.finished",
                        extra={
                            "kind": label,
                            "action": action,
                            "record_id": record_id,
                            "status": status,
                            "duration_ms": round(duration * 1000, 2),
                        },
                    )
                if token is not None:
                    reset_correlation_id(token)

    def _require(
        self,
        actor: ActorContext | None,
        action: ResourceAction,
        kind: ResourceKind,
        record: Any | None = None,
    ) -> ActorContext:
        if actor is not None and can_perform(actor, action, kind, record):
            return actor
        observe_permission_denied(kind.value, action.value)
        logger.warning(
            "crm.permission_denied",
            extra={"kind": kind.value, "action": action.value, "actor_id": actor.user_id if actor is not None else None},
        )
        raise PermissionDeniedError(action.value, kind.value, actor.user_id if actor is not None else None)

    def _publish(self, event_type: str, actor: ActorContext | None, payload: dict[str, Any]) -> None:
        envelope = build_envelope(event_type, actor.user_id if actor is not None else None, payload)
        self._deps.bus.publish(event_type, envelope)


class RecordService(_ServiceBase):
    """Generic lifecycle engine for one record kind.

    Mutations hold the per-record lock from the permission check until the
    last audit entry and notification have been written.
    """

    def __init__(self, descriptor: KindDescriptor, deps: ServiceDependencies) -> None:
        super().__init__(deps)
        self.descriptor = descriptor
        self.resource_label = descriptor.label

    @property
    def kind(self) -> ResourceKind:
        return self.descriptor.kind

    def create(self, actor: ActorContext | None, payload: BaseModel | Mapping[str, Any]) -> SaveResult:
        with self._operation("create", actor) as span:
            actor = self._require(actor, ResourceAction.CREATE, self.kind)
            dto = _parse(self.descriptor.create_type, payload)

            fields = dto.model_dump(exclude=CONTROL_FIELDS)
            descriptor = self.descriptor
            if descriptor.state_field is not None and fields.get(descriptor.state_field) is None:
                fields[descriptor.state_field] = descriptor.initial_state
            if descriptor.owner_field is not None and not fields.get(descriptor.owner_field):
                fields[descriptor.owner_field] = actor.name or "Unassigned"

            custom_fields = self._deps.schema.validate_values(
                self.kind, dto.custom_fields, {}, enforce_required=True
            )
            warnings: list[str] = []
            self._prepare_create(actor, dto, fields, warnings)

            now = self._deps.clock()
            record_id = new_id(descriptor.id_prefix)
            attachments, rejected = self._accept_uploads(actor, dto.new_attachments, now)
            record = _build(
                descriptor.record_type,
                {
                    **fields,
                    "id": record_id,
                    "created_at": now,
                    "updated_at": now,
                    "custom_fields": custom_fields,
                    "attachments": attachments,
                },
            )
            span.set_attribute("record_id", record.id)

            with self._deps.store.lock_for(self.kind, record.id):
                self._deps.store.put(self.kind, record)
                name = descriptor.display_name(record)
                self._log(actor, record, ActivityType.CREATED, f"{descriptor.label} '{name}' created.")
                if record.notes:
                    self._log(actor, record, ActivityType.NOTE_ADDED, f"Note added to {self._noun} '{name}'.")
                self._log_custom_field_changes(actor, record, {}, record.custom_fields)
                for attachment in attachments:
                    self._log_attachment_added(actor, record, attachment)
                self._log_rejected_uploads(actor, record, rejected)
                self._after_create(actor, record)

                self._notify_owner(actor, None, record)
                if descriptor.supports_mentions:
                    self._deps.notifications.notify_mentions(
                        record.notes, actor, descriptor.label, name, descriptor.link_for(record)
                    )

            self._publish(f"crm.{self._noun}.created", actor, {"record_id": record.id})
            return SaveResult(record=record, rejected_uploads=rejected, warnings=warnings)

    def update(
        self,
        actor: ActorContext | None,
        record_id: str,
        payload: BaseModel | Mapping[str, Any],
    ) -> SaveResult:
        with self._operation("update", actor, record_id):
            with self._deps.store.lock_for(self.kind, record_id):
                return self._apply_update(actor, record_id, payload)

    def soft_delete(self, actor: ActorContext | None, record_id: str) -> None:
        with self._operation("soft_delete", actor, record_id):
            with self._deps.store.lock_for(self.kind, record_id):
                record = self._deps.store.get(self.kind, record_id)
                if record is None or record.is_deleted:
                    return
                self._require(actor, ResourceAction.DELETE, self.kind, record)

                trashed = record.model_copy(update={"is_deleted": True, "deleted_at": self._deps.clock()})
                self._deps.store.put(self.kind, trashed)
                self._log_lifecycle(actor, trashed, ActivityType.SOFT_DELETED, "moved to trash")
            self._publish(f"crm.{self._noun}.soft_deleted", actor, {"record_id": record_id})

    def restore(self, actor: ActorContext | None, record_id: str) -> None:
        with self._operation("restore", actor, record_id):
            with self._deps.store.lock_for(self.kind, record_id):
                record = self._deps.store.get(self.kind, record_id)
                if record is None or not record.is_deleted:
                    return

                restored = record.model_copy(update={"is_deleted": False, "deleted_at": None})
                self._deps.store.put(self.kind, restored)
                self._log_lifecycle(actor, restored, ActivityType.RESTORED, "restored from trash")
            self._publish(f"crm.{self._noun}.restored", actor, {"record_id": record_id})

    def purge(self, actor: ActorContext | None, record_id: str) -> None:
        with self._operation("purge", actor, record_id):
            with self._deps.store.lock_for(self.kind, record_id):
                record = self._deps.store.get(self.kind, record_id)
                if record is None or not record.is_deleted:
                    raise NotFoundError(self.kind.value, record_id, f"{self.kind.value} '{record_id}' is not in the trash")
                self._require(actor, ResourceAction.PURGE, self.kind, record)

                self._deps.store.remove(self.kind, record_id)
                self._log_lifecycle(actor, record, ActivityType.PERMANENTLY_DELETED, "permanently deleted")
            self._publish(f"crm.{self._noun}.purged", actor, {"record_id": record_id})

    def get(self, actor: ActorContext | None, record_id: str) -> RecordBase:
        record = self._get_active(record_id)
        self._require(actor, ResourceAction.READ, self.kind, record)
        return record

    def list(self, actor: ActorContext | None) -> list[RecordBase]:
        self._require(actor, ResourceAction.READ, self.kind)
        return [record for record in self._deps.store.all(self.kind) if not record.is_deleted]

    def list_trashed(self, actor: ActorContext | None) -> list[RecordBase]:
        self._require(actor, ResourceAction.READ, self.kind)
        return [record for record in self._deps.store.all(self.kind) if record.is_deleted]

    def orphaned_custom_fields(self, actor: ActorContext | None, record_id: str) -> dict[str, Any]:
        """Stored values whose definition has been deleted."""

        record = self.get(actor, record_id)
        return self._deps.schema.orphaned_values(self.kind, record.custom_fields)

    def restore_attachment(self, actor: ActorContext | None, record_id: str, attachment_id: str) -> RecordBase:
        with self._operation("restore_attachment", actor, record_id):
            with self._deps.store.lock_for(self.kind, record_id):
                record = self._get_active(record_id)
                self._require(actor, ResourceAction.UPDATE, self.kind, record)
                attachment = self._find_attachment(record, attachment_id)
                if attachment is None or not attachment.is_deleted:
                    raise NotFoundError("Attachment", attachment_id)

                attachments = [
                    item.model_copy(update={"is_deleted": False, "deleted_at": None}) if item.id == attachment_id else item
                    for item in record.attachments
                ]
                updated = record.model_copy(update={"attachments": attachments})
                self._deps.store.put(self.kind, updated)
                self._deps.audit.log(
                    actor,
                    record.id,
                    AuditEntityType(self.kind.value),
                    ActivityType.RESTORED,
                    f"File '{attachment.filename}' restored on {self._noun} '{self.descriptor.display_name(record)}'.",
                    self._attachment_details(record, attachment),
                )
            self._publish(f"crm.{self._noun}.attachment_restored", actor, {"record_id": record_id, "attachment_id": attachment_id})
            return updated

    def purge_attachment(self, actor: ActorContext | None, record_id: str, attachment_id: str) -> RecordBase:
        with self._operation("purge_attachment", actor, record_id):
            with self._deps.store.lock_for(self.kind, record_id):
                record = self._deps.store.get(self.kind, record_id)
                if record is None:
                    raise NotFoundError(self.kind.value, record_id)
                self._require(actor, ResourceAction.PURGE, self.kind, record)
                attachment = self._find_attachment(record, attachment_id)
                if attachment is None or not attachment.is_deleted:
                    raise NotFoundError("Attachment", attachment_id)

                updated = record.model_copy(
                    update={"attachments": [item for item in record.attachments if item.id != attachment_id]}
                )
                self._deps.store.put(self.kind, updated)
                self._deps.audit.log(
                    actor,
                    record.id,
                    AuditEntityType(self.kind.value),
                    ActivityType.PERMANENTLY_DELETED,
                    f"File '{attachment.filename}' permanently deleted from {self._noun} '{self.descriptor.display_name(record)}'.",
                    self._attachment_details(record, attachment),
                )
            self._publish(f"crm.{self._noun}.attachment_purged", actor, {"record_id": record_id, "attachment_id": attachment_id})
            return updated

    @property
    def _noun(self) -> str:
        return self.descriptor.label.lower()

    def _apply_update(
        self,
        actor: ActorContext | None,
        record_id: str,
        payload: BaseModel | Mapping[str, Any],
        *,
        note: str = "",
    ) -> SaveResult:
        descriptor = self.descriptor
        current = self._get_active(record_id)
        actor = self._require(actor, ResourceAction.UPDATE, self.kind, current)
        dto = _parse(descriptor.update_type, payload)

        changes = dto.model_dump(exclude_unset=True, exclude=CONTROL_FIELDS)
        if "notes" in changes and changes["notes"] is None:
            changes["notes"] = ""
        # explicit nulls only clear optional fields
        record_fields = descriptor.record_type.model_fields
        changes = {
            key: value
            for key, value in changes.items()
            if value is not None or (key in record_fields and record_fields[key].default is None)
        }
        if dto.custom_fields is None:
            custom_fields = current.custom_fields
        else:
            custom_fields = self._deps.schema.validate_values(
                self.kind, dto.custom_fields, current.custom_fields, enforce_required=True
            )
        warnings: list[str] = []
        self._prepare_update(actor, current, dto, changes, warnings)

        now = self._deps.clock()
        attachments, removed, added, rejected = self._reconcile_attachments(actor, current, dto, now)
        candidate = _build(
            descriptor.record_type,
            {
                **current.model_dump(),
                **changes,
                "custom_fields": custom_fields,
                "attachments": attachments,
            },
        )

        changed = candidate.model_dump(exclude={"updated_at"}) != current.model_dump(exclude={"updated_at"})
        if not changed and not rejected:
            return SaveResult(record=current, warnings=warnings)

        updated = candidate.model_copy(update={"updated_at": now}) if changed else current
        if changed:
            self._deps.store.put(self.kind, updated)

        name = descriptor.display_name(updated)
        for attachment in removed:
            self._log(
                actor,
                updated,
                ActivityType.FILE_REMOVED,
                f"File '{attachment.filename}' removed from {self._noun} '{name}'.",
                ActivityDetails(file_name=attachment.filename, file_size=attachment.size),
            )
        for attachment in added:
            self._log_attachment_added(actor, updated, attachment)
        self._log_rejected_uploads(actor, updated, rejected)

        old_state = descriptor.state_of(current)
        new_state = descriptor.state_of(updated)
        if descriptor.state_activity is not None and old_state != new_state:
            self._log(
                actor,
                updated,
                descriptor.state_activity,
                f"{descriptor.state_field.capitalize()} of {self._noun} '{name}' changed from '{old_state}' to '{new_state}'{note}.",
                ActivityDetails(field=descriptor.state_field, old_value=_text(old_state), new_value=_text(new_state)),
            )
        self._log_field_changes(actor, current, updated)
        if current.notes != updated.notes:
            self._log(
                actor,
                updated,
                ActivityType.NOTE_UPDATED,
                f"Notes updated for {self._noun} '{name}'.",
                ActivityDetails(field="notes", old_value=current.notes, new_value=updated.notes),
            )
        self._log_custom_field_changes(actor, updated, current.custom_fields, updated.custom_fields)
        self._after_update(actor, current, updated, note)

        self._notify_owner(actor, current, updated)
        if descriptor.supports_mentions and current.notes != updated.notes:
            self._deps.notifications.notify_mentions(
                updated.notes, actor, descriptor.label, name, descriptor.link_for(updated)
            )

        self._publish(f"crm.{self._noun}.updated", actor, {"record_id": updated.id})
        return SaveResult(record=updated, rejected_uploads=rejected, warnings=warnings)

    def _get_active(self, record_id: str) -> RecordBase:
        record = self._deps.store.get(self.kind, record_id)
        if record is None or record.is_deleted:
            raise NotFoundError(self.kind.value, record_id)
        return record

    @staticmethod
    def _find_attachment(record: RecordBase, attachment_id: str) -> Attachment | None:
        return next((item for item in record.attachments if item.id == attachment_id), None)

    def _attachment_details(self, record: RecordBase, attachment: Attachment) -> ActivityDetails:
        return ActivityDetails(
            file_name=attachment.filename,
            file_size=attachment.size,
            parent_entity_id=record.id,
            parent_entity_type=self.kind.value,
        )

    def _accept_uploads(
        self,
        actor: ActorContext,
        uploads: Sequence[PendingUpload],
        now: datetime,
    ) -> tuple[list[Attachment], list[RejectedUpload]]:
        limit = self._deps.settings.max_attachment_bytes
        accepted: list[Attachment] = []
        rejected: list[RejectedUpload] = []
        for upload in uploads:
            if upload.size > limit:
                rejected.append(RejectedUpload(filename=upload.filename, size=upload.size, max_size=limit))
                continue
            attachment_id = new_id("att")
            accepted.append(
                Attachment(
                    id=attachment_id,
                    filename=upload.filename,
                    mime_type=upload.mime_type,
                    size=upload.size,
                    url=upload.url or f"attachments/{attachment_id}/{quote(upload.filename)}",
                    uploaded_by=actor.name,
                    uploaded_at=now,
                )
            )
        observe_rejected_upload(self.kind.value, len(rejected))
        return accepted, rejected

    def _reconcile_attachments(
        self,
        actor: ActorContext,
        current: RecordBase,
        dto: Any,
        now: datetime,
    ) -> tuple[list[Attachment], list[Attachment], list[Attachment], list[RejectedUpload]]:
        removal_ids = set(dto.removed_attachment_ids)
        attachments: list[Attachment] = []
        removed: list[Attachment] = []
        for attachment in current.attachments:
            if attachment.id in removal_ids and not attachment.is_deleted:
                attachment = attachment.model_copy(update={"is_deleted": True, "deleted_at": now})
                removed.append(attachment)
            attachments.append(attachment)
        added, rejected = self._accept_uploads(actor, dto.new_attachments, now)
        return attachments + added, removed, added, rejected

    def _log(
        self,
        actor: ActorContext | None,
        record: RecordBase,
        activity_type: ActivityType,
        description: str,
        details: ActivityDetails | None = None,
    ) -> None:
        self._deps.audit.log(actor, record.id, AuditEntityType(self.kind.value), activity_type, description, details)

    def _log_lifecycle(self, actor: ActorContext | None, record: RecordBase, activity_type: ActivityType, verb: str) -> None:
        self._log(actor, record, activity_type, f"{self.descriptor.label} '{self.descriptor.display_name(record)}' {verb}.")

    def _log_attachment_added(self, actor: ActorContext, record: RecordBase, attachment: Attachment) -> None:
        self._log(
            actor,
            record,
            ActivityType.FILE_ATTACHED,
            f"File '{attachment.filename}' attached to {self._noun} '{self.descriptor.display_name(record)}'.",
            ActivityDetails(file_name=attachment.filename, file_size=attachment.size),
        )

    def _log_rejected_uploads(self, actor: ActorContext, record: RecordBase, rejected: Sequence[RejectedUpload]) -> None:
        for upload in rejected:
            self._log(
                actor,
                record,
                ActivityType.FILE_TOO_LARGE,
                f"File '{upload.filename}' exceeds the upload limit and was not attached to {self._noun} "
                f"'{self.descriptor.display_name(record)}'.",
                ActivityDetails(file_name=upload.filename, file_size=upload.size, max_file_size=upload.max_size),
            )

    def _log_custom_field_changes(
        self,
        actor: ActorContext,
        record: RecordBase,
        old: Mapping[str, Any],
        new: Mapping[str, Any],
    ) -> None:
        name = self.descriptor.display_name(record)
        for change in diff_custom_fields(self._deps.schema, self.kind.value, old, new):
            self._log(
                actor,
                record,
                ActivityType.CUSTOM_FIELD_UPDATED,
                f"{change.label} of {self._noun} '{name}' changed from "
                f"'{change.old_value or ''}' to '{change.new_value or ''}'.",
                ActivityDetails(
                    field=change.name,
                    custom_field_label=change.label,
                    old_value=change.old_value,
                    new_value=change.new_value,
                ),
            )

    def _notify_owner(self, actor: ActorContext, before: RecordBase | None, after: RecordBase) -> None:
        descriptor = self.descriptor
        if descriptor.owner_field is None:
            return
        owner = descriptor.owner_of(after)
        target = self._deps.directory.find_by_name(owner)
        if target is None or target.id == actor.user_id:
            return

        name = descriptor.display_name(after)
        link = descriptor.link_for(after)
        if before is None or descriptor.owner_of(before) != owner:
            if descriptor.assigned_notification is None:
                return
            title = f"New {descriptor.label}: {name}" if before is None else f"{descriptor.label} Assigned: {name}"
            self._deps.notifications.notify(
                target.id,
                descriptor.assigned_notification,
                title,
                f'{descriptor.label} "{name}" has been assigned to you{self._assignment_suffix(after)}.',
                link,
                actor,
            )
            return

        old_state = descriptor.state_of(before)
        new_state = descriptor.state_of(after)
        if descriptor.updated_notification is not None and old_state != new_state:
            self._deps.notifications.notify(
                target.id,
                descriptor.updated_notification,
                f"{descriptor.label} Updated: {name}",
                f'{descriptor.state_field.capitalize()} of {self._noun} "{name}" changed to {new_state}.',
                link,
                actor,
            )

    def _assignment_suffix(self, record: RecordBase) -> str:
        return ""

    def _prepare_create(self, actor: ActorContext, dto: Any, fields: dict[str, Any], warnings: list[str]) -> None:
        pass

    def _prepare_update(
        self,
        actor: ActorContext,
        current: RecordBase,
        dto: Any,
        changes: dict[str, Any],
        warnings: list[str],
    ) -> None:
        pass

    def _log_field_changes(self, actor: ActorContext, before: RecordBase, after: RecordBase) -> None:
        pass

    def _after_create(self, actor: ActorContext, record: RecordBase) -> None:
        pass

    def _after_update(self, actor: ActorContext, before: RecordBase, after: RecordBase, note: str) -> None:
        pass


class DealService(RecordService):
    def _prepare_create(self, actor: ActorContext, dto: Any, fields: dict[str, Any], warnings: list[str]) -> None:
        line_items = self._price_line_items(dto.line_items)
        fields["line_items"] = line_items
        if line_items:
            fields["value"], fields["currency"] = self._derive_value(line_items)
        else:
            fields["value"] = dto.value if dto.value is not None else Decimal("0")
            fields["currency"] = dto.currency or self._deps.store.system_settings().default_currency

    def _prepare_update(
        self,
        actor: ActorContext,
        current: RecordBase,
        dto: Any,
        changes: dict[str, Any],
        warnings: list[str],
    ) -> None:
        line_items = cast(Deal, current).line_items
        if dto.line_items is not None:
            line_items = self._price_line_items(dto.line_items, existing=line_items)
            changes["line_items"] = line_items
        if line_items:
            changes["value"], changes["currency"] = self._derive_value(line_items)

    def _log_field_changes(self, actor: ActorContext, before: RecordBase, after: RecordBase) -> None:
        before = cast(Deal, before)
        after = cast(Deal, after)
        if before.value == after.value and before.currency == after.currency:
            return
        old_value = f"{_text(before.value)} {before.currency}"
        new_value = f"{_text(after.value)} {after.currency}"
        self._log(
            actor,
            after,
            ActivityType.FIELD_UPDATED,
            f"Value of deal '{after.deal_name}' changed from {old_value} to {new_value}.",
            ActivityDetails(field="value", old_value=old_value, new_value=new_value),
        )

    def _price_line_items(
        self,
        inputs: Sequence[DealLineItemInput],
        existing: Sequence[DealLineItem] = (),
    ) -> list[DealLineItem]:
        """Price each input line from the catalog.

        A line matching an already priced one on product and quantity keeps
        that line, price included, and skips the catalog checks.
        """

        unused = list(existing)
        priced: list[DealLineItem] = []
        errors: dict[str, list[str]] = {}
        for index, item in enumerate(inputs):
            kept = next(
                (line for line in unused if line.product_id == item.product_id and line.quantity == item.quantity),
                None,
            )
            if kept is not None:
                unused.remove(kept)
                priced.append(kept)
                continue

            key = f"line_items.{index}.product_id"
            record = self._deps.store.get(ResourceKind.PRODUCT, item.product_id)
            if record is None or record.is_deleted:
                errors.setdefault(key, []).append(f"product '{item.product_id}' not found")
                continue
            product = cast(Product, record)
            if not product.is_active:
                errors.setdefault(key, []).append(f"product '{product.name}' is inactive")
                continue
            priced.append(
                DealLineItem(
                    id=new_id("li"),
                    product_id=product.id,
                    product_name=product.name,
                    quantity=item.quantity,
                    unit_price=product.price,
                    currency=product.currency,
                    total_price=product.price * item.quantity,
                )
            )
        if errors:
            raise ValidationFailedError(errors)
        return priced

    @staticmethod
    def _derive_value(line_items: Sequence[DealLineItem]) -> tuple[Decimal, str]:
        total = sum((item.total_price for item in line_items), Decimal("0"))
        return total, line_items[0].currency

    def _assignment_suffix(self, record: RecordBase) -> str:
        record = cast(Deal, record)
        return f" ({_text(record.value)} {record.currency})"


class TaskService(RecordService):
    def _prepare_create(self, actor: ActorContext, dto: Any, fields: dict[str, Any], warnings: list[str]) -> None:
        now = self._deps.clock()
        fields["created_by"] = TaskCreator(id=actor.user_id, name=actor.name)
        if fields.get("due_date") is None:
            fields["due_date"] = now.date()
        if fields.get("status") == TaskStatus.COMPLETED:
            fields["completed_at"] = now

    def _prepare_update(
        self,
        actor: ActorContext,
        current: RecordBase,
        dto: Any,
        changes: dict[str, Any],
        warnings: list[str],
    ) -> None:
        current = cast(Task, current)
        if changes.get("status") == TaskStatus.COMPLETED and current.completed_at is None:
            changes["completed_at"] = self._deps.clock()

    def _after_create(self, actor: ActorContext, record: RecordBase) -> None:
        record = cast(Task, record)
        related = self._linked_entity(record)
        if related is not None:
            entity_type, entity_id, entity_name = related
            self._deps.audit.log(
                actor,
                entity_id,
                entity_type,
                ActivityType.TASK_CREATED_LINKED,
                f"Task '{record.title}' created for {entity_type.value} '{entity_name}'.",
                ActivityDetails(task_id=record.id, task_title=record.title, task_status=record.status.value),
            )
        self._remind(actor, record)

    def _after_update(self, actor: ActorContext, before: RecordBase, after: RecordBase, note: str) -> None:
        before = cast(Task, before)
        after = cast(Task, after)
        related = self._linked_entity(after)
        if related is not None:
            entity_type, entity_id, entity_name = related
            if before.status != after.status:
                self._deps.audit.log(
                    actor,
                    entity_id,
                    entity_type,
                    ActivityType.TASK_STATUS_CHANGED_LINKED,
                    f"Status of task '{after.title}' for {entity_type.value} '{entity_name}' changed to '{after.status}'.",
                    ActivityDetails(
                        task_id=after.id,
                        task_title=after.title,
                        task_status=after.status.value,
                        old_value=before.status.value,
                        new_value=after.status.value,
                    ),
                )
            else:
                self._deps.audit.log(
                    actor,
                    entity_id,
                    entity_type,
                    ActivityType.TASK_UPDATED_LINKED,
                    f"Task '{after.title}' for {entity_type.value} '{entity_name}' updated.",
                    ActivityDetails(task_id=after.id, task_title=after.title),
                )
        self._remind(actor, after)

    def _log_lifecycle(self, actor: ActorContext | None, record: RecordBase, activity_type: ActivityType, verb: str) -> None:
        record = cast(Task, record)
        related = self._linked_entity(record)
        if related is None:
            super()._log_lifecycle(actor, record, activity_type, verb)
            return
        entity_type, entity_id, entity_name = related
        self._deps.audit.log(
            actor,
            entity_id,
            entity_type,
            activity_type,
            f"Task '{record.title}' for {entity_type.value} '{entity_name}' {verb}.",
            ActivityDetails(task_id=record.id, task_title=record.title),
        )

    def _assignment_suffix(self, record: RecordBase) -> str:
        record = cast(Task, record)
        return f" (due {record.due_date.isoformat()})" if record.due_date is not None else ""

    @staticmethod
    def _linked_entity(task: Task) -> tuple[AuditEntityType, str, str] | None:
        related = task.related_to
        if related is None or related.type == RelatedEntityType.GENERAL or not related.id:
            return None
        return AuditEntityType(related.type.value), related.id, related.name or task.title

    def _remind(self, actor: ActorContext, task: Task) -> None:
        assignee = self._deps.directory.find_by_name(task.assigned_to)
        self._deps.notifications.remind_if_due(
            task,
            assignee.id if assignee is not None else None,
            self.descriptor.link_for(task),
            actor,
        )


class ProductService(RecordService):
    def toggle_active(self, actor: ActorContext | None, product_id: str) -> Product:
        with self._operation("toggle_active", actor, product_id):
            with self._deps.store.lock_for(self.kind, product_id):
                current = cast(Product, self._get_active(product_id))
                result = self._apply_update(actor, product_id, ProductUpdate(is_active=not current.is_active))
                return cast(Product, result.record)

    def bulk_set_active(
        self,
        actor: ActorContext | None,
        product_ids: Sequence[str],
        activate: bool,
    ) -> BulkToggleResult:
        """Apply the activation change to each product independently."""

        with self._operation("bulk_set_active", actor):
            self._require(actor, ResourceAction.UPDATE, self.kind)
            result = BulkToggleResult()
            for product_id in dict.fromkeys(product_ids):
                with self._deps.store.lock_for(self.kind, product_id):
                    record = self._deps.store.get(self.kind, product_id)
                    if record is None or record.is_deleted:
                        result.missing.append(product_id)
                        continue
                    product = cast(Product, record)
                    if product.is_active == activate:
                        result.unchanged.append(product_id)
                        continue
                    try:
                        self._apply_update(actor, product_id, ProductUpdate(is_active=activate), note=" (bulk action)")
                    except BusinessRuleBlockedError as exc:
                        result.blocked[product_id] = BlockedProduct(name=product.name, deals=exc.blocking)
                        continue
                    result.applied.append(product_id)
            logger.info(
                "crm.product.bulk_set_active",
                extra={"kind": self.kind.value, "status": f"applied={result.applied_count} blocked={result.blocked_count}"},
            )
            return result

    def open_deals_for(self, product_id: str) -> list[Deal]:
        deals: list[Deal] = []
        for record in self._deps.store.all(ResourceKind.DEAL):
            record = cast(Deal, record)
            if record.is_deleted or record.stage in CLOSED_DEAL_STAGES:
                continue
            if any(item.product_id == product_id for item in record.line_items):
                deals.append(record)
        return deals

    def _prepare_create(self, actor: ActorContext, dto: Any, fields: dict[str, Any], warnings: list[str]) -> None:
        self._ensure_unique_sku(fields.get("sku"), exclude_id=None)

    def _prepare_update(
        self,
        actor: ActorContext,
        current: RecordBase,
        dto: Any,
        changes: dict[str, Any],
        warnings: list[str],
    ) -> None:
        current = cast(Product, current)
        if "sku" in changes:
            self._ensure_unique_sku(changes["sku"], exclude_id=current.id)

        if changes.get("is_active") is False and current.is_active:
            blocking = [deal.deal_name for deal in self.open_deals_for(current.id)]
            if blocking:
                observe_business_rule_block("product_in_open_deal")
                raise BusinessRuleBlockedError(
                    f"Product '{current.name}' is part of open deals: {', '.join(blocking)}",
                    blocking,
                )

        renamed = "name" in changes and changes["name"] != current.name
        resku = "sku" in changes and changes["sku"] != current.sku
        if (renamed or resku) and self._referenced_by_deals(current.id):
            warnings.append(
                f"Product '{current.name}' is used in existing deals; their line items keep the previous name and SKU."
            )

    def _after_update(self, actor: ActorContext, before: RecordBase, after: RecordBase, note: str) -> None:
        before = cast(Product, before)
        after = cast(Product, after)
        if before.is_active == after.is_active:
            return
        activity_type = ActivityType.PRODUCT_ACTIVATED if after.is_active else ActivityType.PRODUCT_DEACTIVATED
        verb = "activated" if after.is_active else "deactivated"
        self._log(actor, after, activity_type, f"Product '{after.name}' {verb}{note}.")

    def _referenced_by_deals(self, product_id: str) -> bool:
        for record in self._deps.store.all(ResourceKind.DEAL):
            record = cast(Deal, record)
            if not record.is_deleted and any(item.product_id == product_id for item in record.line_items):
                return True
        return False

    def _ensure_unique_sku(self, sku: str | None, exclude_id: str | None) -> None:
        normalized = (sku or "").strip().lower()
        if not normalized:
            return
        for record in self._deps.store.all(self.kind):
            record = cast(Product, record)
            if record.id != exclude_id and (record.sku or "").strip().lower() == normalized:
                raise ValidationFailedError.single("sku", f"SKU '{sku}' is already used by product '{record.name}'")


class CustomFieldService(_ServiceBase):
    resource_label = "CustomFieldDefinition"

    def list_definitions(self, actor: ActorContext | None, kind: ResourceKind | str) -> list[CustomFieldDefinition]:
        self._require(actor, ResourceAction.READ, ResourceKind(kind))
        return self._deps.schema.definitions_for(kind)

    def create_definition(
        self,
        actor: ActorContext | None,
        payload: CustomFieldDefinitionCreate | Mapping[str, Any],
    ) -> CustomFieldDefinition:
        with self._operation("create", actor) as span:
            self._require(actor, ResourceAction.CREATE, ResourceKind.SYSTEM)
            dto = _parse(CustomFieldDefinitionCreate, payload)
            if not supported_kind(dto.entity_type):
                raise ValidationFailedError.single("entity_type", f"custom fields are not supported on {dto.entity_type}")
            name = dto.name.strip()
            options = validate_definition_shape(name, dto.type, dto.options)

            definition = CustomFieldDefinition(
                id=new_id("cfd"),
                entity_type=dto.entity_type,
                name=name,
                label=dto.label.strip(),
                type=dto.type,
                is_required=dto.is_required,
                options=options,
                placeholder=dto.placeholder,
                created_at=self._deps.clock(),
            )
            self._deps.schema.add(definition)
            span.set_attribute("record_id", definition.id)
            self._deps.audit.log(
                actor,
                definition.id,
                AuditEntityType.CUSTOM_FIELD_DEFINITION,
                ActivityType.CUSTOM_FIELD_DEFINITION_CREATED,
                f"Custom field '{definition.label}' ({definition.type.value}) created for {definition.entity_type.value}.",
                ActivityDetails(field=definition.name, definition_entity_type=definition.entity_type.value),
            )
            self._publish("crm.custom_field_definition.created", actor, {"definition_id": definition.id})
            return definition

    def update_definition(
        self,
        actor: ActorContext | None,
        definition_id: str,
        payload: CustomFieldDefinitionUpdate | Mapping[str, Any],
    ) -> CustomFieldDefinition:
        with self._operation("update", actor, definition_id):
            current = self._deps.schema.get(definition_id)
            if current is None:
                raise NotFoundError("CustomFieldDefinition", definition_id)
            self._require(actor, ResourceAction.UPDATE, ResourceKind.SYSTEM)
            dto = _parse(CustomFieldDefinitionUpdate, payload)

            changes = {
                key: value
                for key, value in dto.model_dump(exclude_unset=True).items()
                if value is not None or key == "placeholder"
            }
            if "options" in changes:
                changes["options"] = validate_definition_shape(current.name, current.type, changes["options"])
            if "label" in changes:
                changes["label"] = changes["label"].strip()
            updated = current.model_copy(update=changes)
            if updated == current:
                return current

            updated = updated.model_copy(update={"updated_at": self._deps.clock()})
            self._deps.schema.replace(updated)
            changed_fields = sorted(key for key in changes if getattr(current, key) != getattr(updated, key))
            self._deps.audit.log(
                actor,
                definition_id,
                AuditEntityType.CUSTOM_FIELD_DEFINITION,
                ActivityType.CUSTOM_FIELD_DEFINITION_UPDATED,
                f"Custom field '{updated.label}' for {updated.entity_type.value} updated: {', '.join(changed_fields)}.",
                ActivityDetails(
                    field=updated.name,
                    definition_entity_type=updated.entity_type.value,
                    old_value=current.label if current.label != updated.label else None,
                    new_value=updated.label if current.label != updated.label else None,
                ),
            )
            self._publish("crm.custom_field_definition.updated", actor, {"definition_id": definition_id})
            return updated

    def delete_definition(self, actor: ActorContext | None, definition_id: str) -> None:
        """Remove the definition. Values already stored on records stay in place as orphaned data."""

        with self._operation("delete", actor, definition_id):
            current = self._deps.schema.get(definition_id)
            if current is None:
                raise NotFoundError("CustomFieldDefinition", definition_id)
            self._require(actor, ResourceAction.DELETE, ResourceKind.SYSTEM)

            self._deps.schema.remove(definition_id)
            self._deps.audit.log(
                actor,
                definition_id,
                AuditEntityType.CUSTOM_FIELD_DEFINITION,
                ActivityType.CUSTOM_FIELD_DEFINITION_DELETED,
                f"Custom field '{current.label}' deleted from {current.entity_type.value}; stored values are kept.",
                ActivityDetails(field=current.name, definition_entity_type=current.entity_type.value),
            )
            self._publish("crm.custom_field_definition.deleted", actor, {"definition_id": definition_id})


class SystemSettingsService(_ServiceBase):
    resource_label = "System"

    def get(self) -> SystemSettings:
        return self._deps.store.system_settings()

    def save(self, actor: ActorContext | None, payload: SystemSettings | Mapping[str, Any]) -> SystemSettings:
        with self._operation("update", actor):
            self._require(actor, ResourceAction.UPDATE, ResourceKind.SYSTEM)
            current = self._deps.store.system_settings()
            source = payload.model_dump() if isinstance(payload, SystemSettings) else {**current.model_dump(), **payload}
            updated = _parse(SystemSettings, source)

            changes = [
                f"{key.replace('_', ' ')} from '{getattr(current, key)}' to '{getattr(updated, key)}'"
                for key in SystemSettings.model_fields
                if getattr(current, key) != getattr(updated, key)
            ]
            self._deps.store.replace_system_settings(updated)
            description = (
                f"System settings updated: {'; '.join(changes)}."
                if changes
                else "System settings saved; no changes detected."
            )
            self._deps.audit.log(actor, "system", AuditEntityType.SYSTEM, ActivityType.SYSTEM_SETTINGS_UPDATED, description)
            self._publish("system.settings.updated", actor, {"changed": len(changes)})
            return updated

    def record_login(self, actor: ActorContext) -> None:
        self._deps.audit.log(actor, actor.user_id, AuditEntityType.USER, ActivityType.LOGIN, f"User '{actor.name}' logged in.")
        self._publish("user.logged_in", actor, {"user_id": actor.user_id})

    def record_logout(self, actor: ActorContext) -> None:
        self._deps.audit.log(actor, actor.user_id, AuditEntityType.USER, ActivityType.LOGOUT, f"User '{actor.name}' logged out.")
        self._publish("user.logged_out", actor, {"user_id": actor.user_id})


class TrackerCore:
    """Wires the lifecycle services to one shared store, audit trail and inbox set."""

    def __init__(
        self,
        directory: UserDirectory,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        state: TrackerState | None = None,
        bus: InProcessEventBus | None = None,
    ) -> None:
        resolved = settings or get_settings()
        state = state or TrackerState()
        system_settings = state.system_settings or SystemSettings(default_currency=resolved.default_currency)

        self.directory = directory
        self.bus = bus or InProcessEventBus()
        self.store = CRMStore(state.records, system_settings)
        self.schema = CustomFieldSchemaStore(state.definitions)
        self.audit = AuditTrail(state.activity_log, clock=clock)
        self.notifications = NotificationEngine(directory, inboxes=state.inboxes, clock=clock, settings=resolved)

        deps = ServiceDependencies(
            store=self.store,
            audit=self.audit,
            notifications=self.notifications,
            schema=self.schema,
            directory=directory,
            bus=self.bus,
            settings=resolved,
            clock=clock,
        )
        self.leads = RecordService(LEAD, deps)
        self.customers = RecordService(CUSTOMER, deps)
        self.deals = DealService(DEAL, deps)
        self.tasks = TaskService(TASK, deps)
        self.products = ProductService(PRODUCT, deps)
        self.custom_fields = CustomFieldService(deps)
        self.system = SystemSettingsService(deps)
        self._services: dict[ResourceKind, RecordService] = {
            service.kind: service for service in (self.leads, self.customers, self.deals, self.tasks, self.products)
        }

    @classmethod
    def from_repository(
        cls,
        repository: SqlAlchemyStateRepository,
        directory: UserDirectory,
        **kwargs: Any,
    ) -> TrackerCore:
        core = cls(directory, state=repository.load(), **kwargs)
        repository.attach(core.bus, core.state)
        return core

    def service_for(self, kind: ResourceKind | str) -> RecordService:
        return self._services[ResourceKind(kind)]

    def state(self) -> TrackerState:
        return TrackerState(
            records=self.store.snapshot(),
            definitions=self.schema.all(),
            activity_log=self.audit.snapshot(),
            inboxes=self.notifications.snapshot(),
            system_settings=self.store.system_settings(),
        )

    def notifications_for(self, actor: ActorContext, *, unread_only: bool = False) -> list[NotificationItem]:
        return self.notifications.list_for_user(actor.user_id, unread_only=unread_only)

    def unread_count(self, actor: ActorContext) -> int:
        return self.notifications.unread_count(actor.user_id)

    def mark_notification_read(self, actor: ActorContext, notification_id: str) -> NotificationItem:
        item = self.notifications.mark_read(actor.user_id, notification_id)
        self.bus.publish(
            "notification.read",
            build_envelope("notification.read", actor.user_id, {"notification_id": notification_id}),
        )
        return item

    def mark_all_notifications_read(self, actor: ActorContext) -> int:
        changed = self.notifications.mark_all_read(actor.user_id)
        if changed:
            self.bus.publish(
                "notification.read_all",
                build_envelope("notification.read_all", actor.user_id, {"count": changed}),
            )
        return changed
