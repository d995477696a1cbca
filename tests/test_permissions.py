from __future__ import annotations

from typing import Any

import pytest

from trackwell.crm.service import TrackerCore
from trackwell.platform.security import (
    ActorContext,
    PermissionDeniedError,
    ResourceAction,
    ResourceKind,
    can_perform,
    set_policy_backend,
)

RECORD_KINDS = [ResourceKind.LEAD, ResourceKind.CUSTOMER, ResourceKind.DEAL, ResourceKind.TASK, ResourceKind.PRODUCT]


def test_admin_is_allowed_everything(admin: ActorContext) -> None:
    for kind in ResourceKind:
        for action in ResourceAction:
            assert can_perform(admin, action, kind) is True


def test_manager_has_full_crud_on_record_kinds_only(manager: ActorContext) -> None:
    for kind in RECORD_KINDS:
        for action in (ResourceAction.CREATE, ResourceAction.READ, ResourceAction.UPDATE, ResourceAction.DELETE):
            assert can_perform(manager, action, kind) is True
        assert can_perform(manager, ResourceAction.PURGE, kind) is False

    for kind in (ResourceKind.USER, ResourceKind.SYSTEM):
        for action in ResourceAction:
            assert can_perform(manager, action, kind) is False


def test_sales_rep_update_requires_ownership(alice: ActorContext) -> None:
    owned = {"assigned_to": "Alice Sales"}
    foreign = {"assigned_to": "Bob Rep"}

    assert can_perform(alice, ResourceAction.CREATE, ResourceKind.LEAD) is True
    assert can_perform(alice, ResourceAction.READ, ResourceKind.LEAD, foreign) is True
    assert can_perform(alice, ResourceAction.UPDATE, ResourceKind.LEAD, owned) is True
    assert can_perform(alice, ResourceAction.UPDATE, ResourceKind.LEAD, foreign) is False
    assert can_perform(alice, ResourceAction.DELETE, ResourceKind.LEAD, owned) is True
    assert can_perform(alice, ResourceAction.DELETE, ResourceKind.LEAD, foreign) is False
    assert can_perform(alice, ResourceAction.UPDATE, ResourceKind.LEAD) is False
    assert can_perform(alice, ResourceAction.PURGE, ResourceKind.LEAD, owned) is False


def test_sales_rep_ownership_field_varies_by_kind(alice: ActorContext) -> None:
    assert can_perform(alice, ResourceAction.UPDATE, ResourceKind.CUSTOMER, {"account_manager": "Alice Sales"}) is True
    assert can_perform(alice, ResourceAction.UPDATE, ResourceKind.CUSTOMER, {"assigned_to": "Alice Sales"}) is False
    assert can_perform(alice, ResourceAction.UPDATE, ResourceKind.DEAL, {"owner": "Alice Sales"}) is True
    assert can_perform(alice, ResourceAction.UPDATE, ResourceKind.DEAL, {"owner": "Bob Rep"}) is False


def test_task_creator_is_matched_by_identity(alice: ActorContext) -> None:
    created_by_alice = {"assigned_to": "Bob Rep", "created_by": {"id": "u-alice", "name": "Someone Else"}}
    same_name_other_id = {"assigned_to": "Bob Rep", "created_by": {"id": "u-other", "name": "Alice Sales"}}

    assert can_perform(alice, ResourceAction.UPDATE, ResourceKind.TASK, created_by_alice) is True
    assert can_perform(alice, ResourceAction.UPDATE, ResourceKind.TASK, same_name_other_id) is False


def test_sales_rep_is_read_only_on_products_and_denied_on_system(alice: ActorContext) -> None:
    assert can_perform(alice, ResourceAction.READ, ResourceKind.PRODUCT) is True
    for action in (ResourceAction.CREATE, ResourceAction.UPDATE, ResourceAction.DELETE):
        assert can_perform(alice, action, ResourceKind.PRODUCT, {"name": "Widget"}) is False
    for kind in (ResourceKind.USER, ResourceKind.SYSTEM):
        for action in ResourceAction:
            assert can_perform(alice, action, kind) is False


def test_missing_actor_is_denied_everything() -> None:
    for kind in ResourceKind:
        for action in ResourceAction:
            assert can_perform(None, action, kind) is False


def test_policy_backend_can_be_swapped(alice: ActorContext) -> None:
    class DenyAll:
        def is_allowed(self, actor: ActorContext, action: ResourceAction, kind: ResourceKind, record: Any = None) -> bool:
            return False

    set_policy_backend(DenyAll())
    assert can_perform(alice, ResourceAction.READ, ResourceKind.LEAD) is False


def test_denied_update_has_no_partial_effect(core: TrackerCore, alice: ActorContext, bob: ActorContext) -> None:
    lead = core.leads.create(alice, {"name": "Acme Corp"}).record
    entries_before = len(core.audit)

    with pytest.raises(PermissionDeniedError) as exc_info:
        core.leads.update(bob, lead.id, {"status": "Contacted", "notes": "@alice hello"})
    assert exc_info.value.actor_id == "u-bob"
    assert exc_info.value.action == "update"
    assert str(exc_info.value) == "Permission denied: u-bob cannot update Lead"

    assert core.leads.get(alice, lead.id) == lead
    assert len(core.audit) == entries_before
    assert core.notifications.list_for_user("u-alice") == []


def test_ownership_is_checked_against_the_stored_owner(core: TrackerCore, manager: ActorContext, bob: ActorContext) -> None:
    lead = core.leads.create(manager, {"name": "Globex", "assigned_to": "Alice Sales"}).record

    with pytest.raises(PermissionDeniedError):
        core.leads.update(bob, lead.id, {"assigned_to": "Bob Rep"})

    assert core.leads.get(manager, lead.id).assigned_to == "Alice Sales"


def test_sales_rep_cannot_create_products(core: TrackerCore, alice: ActorContext) -> None:
    with pytest.raises(PermissionDeniedError) as exc_info:
        core.products.create(alice, {"name": "Widget", "price": "10"})
    assert exc_info.value.kind == "Product"
    assert core.products.list(alice) == []


def test_operations_without_an_actor_are_denied(core: TrackerCore, admin: ActorContext) -> None:
    lead = core.leads.create(admin, {"name": "Acme"}).record

    with pytest.raises(PermissionDeniedError):
        core.leads.create(None, {"name": "Anonymous"})
    with pytest.raises(PermissionDeniedError):
        core.leads.update(None, lead.id, {"status": "Lost"})

    assert [record.name for record in core.leads.list(admin)] == ["Acme"]
