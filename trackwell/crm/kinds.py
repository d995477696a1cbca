from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from pydantic import BaseModel

from trackwell.crm.schemas import (
    ActivityType,
    Customer,
    CustomerCreate,
    CustomerUpdate,
    Deal,
    DealCreate,
    DealStage,
    DealUpdate,
    Lead,
    LeadCreate,
    LeadStatus,
    LeadUpdate,
    NotificationType,
    Product,
    ProductCreate,
    ProductUpdate,
    RecordBase,
    Task,
    TaskCreate,
    TaskStatus,
    TaskUpdate,
)
from trackwell.platform.security.policies import OWNER_FIELDS, ResourceKind


@dataclass(frozen=True, slots=True)
class KindDescriptor:
    """Everything the generic lifecycle engine needs to know about one record kind."""

    kind: ResourceKind
    record_type: type[RecordBase]
    create_type: type[BaseModel]
    update_type: type[BaseModel]
    id_prefix: str
    route: str
    name_field: str
    owner_field: str | None = None
    state_field: str | None = None
    state_activity: ActivityType | None = None
    initial_state: Any = None
    assigned_notification: NotificationType | None = None
    updated_notification: NotificationType | None = None
    supports_mentions: bool = True

    @property
    def label(self) -> str:
        return self.kind.value

    def display_name(self, record: RecordBase) -> str:
        return str(getattr(record, self.name_field))

    def owner_of(self, record: RecordBase) -> str | None:
        if self.owner_field is None:
            return None
        return getattr(record, self.owner_field)

    def state_of(self, record: RecordBase) -> Any:
        if self.state_field is None:
            return None
        return getattr(record, self.state_field)

    def link_for(self, record: RecordBase) -> str:
        return f"/{self.route}?search={quote(self.display_name(record), safe='')}"


LEAD = KindDescriptor(
    kind=ResourceKind.LEAD,
    record_type=Lead,
    create_type=LeadCreate,
    update_type=LeadUpdate,
    id_prefix="lead",
    route="leads",
    name_field="name",
    owner_field=OWNER_FIELDS[ResourceKind.LEAD],
    state_field="status",
    state_activity=ActivityType.STATUS_UPDATED,
    initial_state=LeadStatus.NEW,
    assigned_notification=NotificationType.LEAD_ASSIGNED,
    updated_notification=NotificationType.LEAD_UPDATED,
)

CUSTOMER = KindDescriptor(
    kind=ResourceKind.CUSTOMER,
    record_type=Customer,
    create_type=CustomerCreate,
    update_type=CustomerUpdate,
    id_prefix="cust",
    route="customers",
    name_field="name",
    owner_field=OWNER_FIELDS[ResourceKind.CUSTOMER],
    assigned_notification=NotificationType.INFO,
)

DEAL = KindDescriptor(
    kind=ResourceKind.DEAL,
    record_type=Deal,
    create_type=DealCreate,
    update_type=DealUpdate,
    id_prefix="deal",
    route="deals",
    name_field="deal_name",
    owner_field=OWNER_FIELDS[ResourceKind.DEAL],
    state_field="stage",
    state_activity=ActivityType.STAGE_UPDATED,
    initial_state=DealStage.PROSPECTING,
    assigned_notification=NotificationType.DEAL_ASSIGNED,
    updated_notification=NotificationType.DEAL_UPDATED,
)

TASK = KindDescriptor(
    kind=ResourceKind.TASK,
    record_type=Task,
    create_type=TaskCreate,
    update_type=TaskUpdate,
    id_prefix="task",
    route="tasks",
    name_field="title",
    owner_field=OWNER_FIELDS[ResourceKind.TASK],
    state_field="status",
    state_activity=ActivityType.STATUS_UPDATED,
    initial_state=TaskStatus.PENDING,
    assigned_notification=NotificationType.TASK_ASSIGNED,
    updated_notification=NotificationType.TASK_UPDATED,
)

PRODUCT = KindDescriptor(
    kind=ResourceKind.PRODUCT,
    record_type=Product,
    create_type=ProductCreate,
    update_type=ProductUpdate,
    id_prefix="prod",
    route="products",
    name_field="name",
    supports_mentions=False,
)

DESCRIPTORS: dict[ResourceKind, KindDescriptor] = {
    descriptor.kind: descriptor for descriptor in (LEAD, CUSTOMER, DEAL, TASK, PRODUCT)
}
