from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from trackwell.platform.security.context import Role
from trackwell.platform.security.policies import ResourceKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


class LeadStatus(StrEnum):
    NEW = "New"
    CONTACTED = "Contacted"
    QUALIFIED = "Qualified"
    PROPOSAL_SENT = "Proposal Sent"
    NEGOTIATION = "Negotiation"
    LOST = "Lost"
    CONVERTED = "Converted to Customer"


class DealStage(StrEnum):
    PROSPECTING = "Prospecting"
    QUALIFICATION = "Qualification"
    NEEDS_ANALYSIS = "Needs Analysis"
    VALUE_PROPOSITION = "Value Proposition"
    NEGOTIATION = "Negotiation/Review"
    CLOSED_WON = "Closed Won"
    CLOSED_LOST = "Closed Lost"


CLOSED_DEAL_STAGES = frozenset({DealStage.CLOSED_WON, DealStage.CLOSED_LOST})


class TaskStatus(StrEnum):
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    DEFERRED = "Deferred"
    CANCELLED = "Cancelled"


class TaskPriority(StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class RelatedEntityType(StrEnum):
    LEAD = "Lead"
    CUSTOMER = "Customer"
    DEAL = "Deal"
    GENERAL = "General"


class AuditEntityType(StrEnum):
    LEAD = "Lead"
    CUSTOMER = "Customer"
    DEAL = "Deal"
    TASK = "Task"
    PRODUCT = "Product"
    USER = "User"
    SYSTEM = "System"
    CUSTOM_FIELD_DEFINITION = "CustomFieldDefinition"


class ActivityType(StrEnum):
    CREATED = "created"
    FIELD_UPDATED = "field_updated"
    STATUS_UPDATED = "status_updated"
    STAGE_UPDATED = "stage_updated"
    NOTE_ADDED = "note_added"
    NOTE_UPDATED = "note_updated"
    FILE_ATTACHED = "file_attached"
    FILE_REMOVED = "file_removed"
    FILE_TOO_LARGE = "file_too_large"
    SOFT_DELETED = "soft_deleted"
    RESTORED = "restored"
    PERMANENTLY_DELETED = "permanently_deleted"
    CUSTOM_FIELD_UPDATED = "custom_field_updated"
    ROLE_CHANGED = "role_changed"
    PROFILE_UPDATED = "profile_updated"
    LOGIN = "login"
    LOGOUT = "logout"
    SYSTEM_SETTINGS_UPDATED = "system_settings_updated"
    TASK_CREATED_LINKED = "task_created_linked"
    TASK_UPDATED_LINKED = "task_updated_linked"
    TASK_STATUS_CHANGED_LINKED = "task_status_changed_linked"
    PRODUCT_ACTIVATED = "product_activated"
    PRODUCT_DEACTIVATED = "product_deactivated"
    CUSTOM_FIELD_DEFINITION_CREATED = "custom_field_definition_created"
    CUSTOM_FIELD_DEFINITION_UPDATED = "custom_field_definition_updated"
    CUSTOM_FIELD_DEFINITION_DELETED = "custom_field_definition_deleted"


class NotificationType(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    MENTION = "mention"
    LEAD_ASSIGNED = "lead_assigned"
    LEAD_UPDATED = "lead_updated"
    DEAL_ASSIGNED = "deal_assigned"
    DEAL_UPDATED = "deal_updated"
    TASK_ASSIGNED = "task_assigned"
    TASK_UPDATED = "task_updated"
    REMINDER = "reminder"


class CustomFieldType(StrEnum):
    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    DATE = "date"
    EMAIL = "email"
    URL = "url"
    SELECT = "select"
    CHECKBOX = "checkbox"


class TextValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    value: str

    def as_text(self) -> str:
        return self.value


class NumberValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["number"] = "number"
    value: Decimal

    def as_text(self) -> str:
        return format(self.value.normalize(), "f")


class DateValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["date"] = "date"
    value: date

    def as_text(self) -> str:
        return self.value.isoformat()


class BoolValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["bool"] = "bool"
    value: bool

    def as_text(self) -> str:
        return "true" if self.value else "false"


class SelectValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["select"] = "select"
    value: str

    def as_text(self) -> str:
        return self.value


CustomFieldValue = Annotated[
    TextValue | NumberValue | DateValue | BoolValue | SelectValue,
    Field(discriminator="kind"),
]
TAGGED_VALUE_TYPES = (TextValue, NumberValue, DateValue, BoolValue, SelectValue)


class CustomFieldDefinition(BaseModel):
    id: str
    entity_type: ResourceKind
    name: str
    label: str
    type: CustomFieldType
    is_required: bool = False
    options: list[str] = Field(default_factory=list)
    placeholder: str | None = None
    created_at: datetime
    updated_at: datetime | None = None


class CustomFieldDefinitionCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entity_type: ResourceKind
    name: str = Field(min_length=1)
    label: str = Field(min_length=1)
    type: CustomFieldType
    is_required: bool = False
    options: list[str] | None = None
    placeholder: str | None = None


class CustomFieldDefinitionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    label: str | None = Field(default=None, min_length=1)
    is_required: bool | None = None
    options: list[str] | None = None
    placeholder: str | None = None


class Attachment(BaseModel):
    id: str
    filename: str
    mime_type: str
    size: int = Field(ge=0)
    url: str
    uploaded_by: str
    uploaded_at: datetime
    is_deleted: bool = False
    deleted_at: datetime | None = None


class PendingUpload(BaseModel):
    """Metadata of a file the caller has already received."""

    filename: str = Field(min_length=1)
    mime_type: str = "application/octet-stream"
    size: int = Field(ge=0)
    url: str | None = None


class RejectedUpload(BaseModel):
    filename: str
    size: int
    max_size: int


class RecordBase(BaseModel):
    id: str
    created_at: datetime
    updated_at: datetime | None = None
    notes: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    custom_fields: dict[str, CustomFieldValue] = Field(default_factory=dict)
    is_deleted: bool = False
    deleted_at: datetime | None = None


class Lead(RecordBase):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    status: LeadStatus = LeadStatus.NEW
    source: str | None = None
    assigned_to: str = "Unassigned"
    last_contacted: date | None = None


class Customer(RecordBase):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    account_manager: str = "Unassigned"
    last_purchase_date: date | None = None
    total_revenue: Decimal | None = None


class DealLineItem(BaseModel):
    id: str
    product_id: str
    product_name: str
    quantity: int = Field(gt=0)
    unit_price: Decimal
    currency: str
    total_price: Decimal


class Deal(RecordBase):
    deal_name: str = Field(min_length=1)
    customer_id: str | None = None
    lead_id: str | None = None
    stage: DealStage = DealStage.PROSPECTING
    value: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    close_date: date | None = None
    owner: str = "Unassigned"
    description: str | None = None
    line_items: list[DealLineItem] = Field(default_factory=list)


class TaskCreator(BaseModel):
    id: str
    name: str


class RelatedEntity(BaseModel):
    type: RelatedEntityType
    id: str | None = None
    name: str | None = None


class Task(RecordBase):
    title: str = Field(min_length=1)
    description: str | None = None
    due_date: date | None = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    assigned_to: str = "Unassigned"
    created_by: TaskCreator
    related_to: RelatedEntity | None = None
    completed_at: datetime | None = None


class Product(RecordBase):
    name: str = Field(min_length=1)
    description: str | None = None
    category: str | None = None
    price: Decimal = Field(ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    sku: str | None = None
    is_active: bool = True


RecordT = TypeVar("RecordT", bound=RecordBase)


class RecordCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    notes: str = ""
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    new_attachments: list[PendingUpload] = Field(default_factory=list)


class RecordUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    notes: str | None = None
    custom_fields: dict[str, Any] | None = None
    new_attachments: list[PendingUpload] = Field(default_factory=list)
    removed_attachment_ids: list[str] = Field(default_factory=list)


class LeadCreate(RecordCreate):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    status: LeadStatus | None = None
    source: str | None = None
    assigned_to: str | None = None
    last_contacted: date | None = None


class LeadUpdate(RecordUpdate):
    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    status: LeadStatus | None = None
    source: str | None = None
    assigned_to: str | None = None
    last_contacted: date | None = None


class CustomerCreate(RecordCreate):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    account_manager: str | None = None
    last_purchase_date: date | None = None
    total_revenue: Decimal | None = None


class CustomerUpdate(RecordUpdate):
    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    account_manager: str | None = None
    last_purchase_date: date | None = None
    total_revenue: Decimal | None = None


class DealLineItemInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)


class DealCreate(RecordCreate):
    deal_name: str = Field(min_length=1)
    customer_id: str | None = None
    lead_id: str | None = None
    stage: DealStage | None = None
    value: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    close_date: date | None = None
    owner: str | None = None
    description: str | None = None
    line_items: list[DealLineItemInput] = Field(default_factory=list)


class DealUpdate(RecordUpdate):
    deal_name: str | None = Field(default=None, min_length=1)
    customer_id: str | None = None
    lead_id: str | None = None
    stage: DealStage | None = None
    value: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    close_date: date | None = None
    owner: str | None = None
    description: str | None = None
    line_items: list[DealLineItemInput] | None = None


class TaskCreate(RecordCreate):
    title: str = Field(min_length=1)
    description: str | None = None
    due_date: date | None = None
    status: TaskStatus | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    assigned_to: str | None = None
    related_to: RelatedEntity | None = None


class TaskUpdate(RecordUpdate):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    due_date: date | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    assigned_to: str | None = None
    related_to: RelatedEntity | None = None


class ProductCreate(RecordCreate):
    name: str = Field(min_length=1)
    description: str | None = None
    category: str | None = None
    price: Decimal = Field(ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    sku: str | None = None
    is_active: bool = True


class ProductUpdate(RecordUpdate):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    category: str | None = None
    price: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    sku: str | None = None
    is_active: bool | None = None


class ActivityDetails(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    field: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    file_name: str | None = None
    file_size: int | None = None
    max_file_size: int | None = None
    task_id: str | None = None
    task_title: str | None = None
    task_status: str | None = None
    parent_entity_id: str | None = None
    parent_entity_type: str | None = None
    custom_field_label: str | None = None
    definition_entity_type: str | None = None
    target_user_id: str | None = None


class ActivityLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("log"))
    timestamp: datetime
    entity_id: str = Field(min_length=1)
    entity_type: AuditEntityType
    actor_id: str = Field(min_length=1)
    actor_name: str = Field(min_length=1)
    activity_type: ActivityType
    description: str = Field(min_length=1)
    details: ActivityDetails | None = None


class NotificationActor(BaseModel):
    id: str
    name: str


class NotificationItem(BaseModel):
    id: str = Field(default_factory=lambda: new_id("ntf"))
    user_id: str
    timestamp: datetime
    type: NotificationType
    title: str
    message: str
    is_read: bool = False
    link: str | None = None
    actor: NotificationActor | None = None


class DirectoryUser(BaseModel):
    id: str
    name: str
    email: EmailStr
    role: Role = Role.SALES_REP


class SystemSettings(BaseModel):
    company_name: str = "Trackwell"
    default_currency: str = Field(default="USD", min_length=3, max_length=3)


class SaveResult(BaseModel, Generic[RecordT]):
    record: RecordT
    rejected_uploads: list[RejectedUpload] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class BlockedProduct(BaseModel):
    name: str
    deals: list[str] = Field(default_factory=list)


class BulkToggleResult(BaseModel):
    applied: list[str] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)
    blocked: dict[str, BlockedProduct] = Field(default_factory=dict)
    missing: list[str] = Field(default_factory=list)

    @property
    def applied_count(self) -> int:
        return len(self.applied)

    @property
    def blocked_count(self) -> int:
        return len(self.blocked)
