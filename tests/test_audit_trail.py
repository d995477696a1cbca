from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from trackwell.audit import SYSTEM_ACTOR_ID, SYSTEM_ACTOR_NAME, AuditTrail
from trackwell.crm.errors import ValidationFailedError
from trackwell.crm.schemas import ActivityType, AuditEntityType
from trackwell.crm.service import TrackerCore
from trackwell.platform.security import ActorContext, PermissionDeniedError
from tests.support import FrozenClock


@pytest.fixture()
def trail(clock: FrozenClock) -> AuditTrail:
    return AuditTrail(clock=clock)


def test_query_returns_newest_first(trail: AuditTrail, clock: FrozenClock, alice: ActorContext) -> None:
    trail.log(alice, "lead-1", AuditEntityType.LEAD, ActivityType.CREATED, "Lead 'A' created.")
    clock.advance(seconds=1)
    trail.log(alice, "lead-1", AuditEntityType.LEAD, ActivityType.NOTE_ADDED, "Note added.")
    trail.log(alice, "lead-1", AuditEntityType.LEAD, ActivityType.FILE_ATTACHED, "File attached.")
    trail.log(alice, "lead-2", AuditEntityType.LEAD, ActivityType.CREATED, "Lead 'B' created.")
    trail.log(alice, "lead-1", AuditEntityType.DEAL, ActivityType.CREATED, "Same id, other kind.")

    kinds = [entry.activity_type for entry in trail.query("lead-1", "Lead")]
    assert kinds == [ActivityType.FILE_ATTACHED, ActivityType.NOTE_ADDED, ActivityType.CREATED]


def test_query_is_a_fresh_snapshot(trail: AuditTrail, alice: ActorContext) -> None:
    trail.log(alice, "lead-1", "Lead", ActivityType.CREATED, "Created.")
    first = trail.query("lead-1", "Lead")
    trail.log(alice, "lead-1", "Lead", ActivityType.NOTE_ADDED, "Note.")

    assert len(first) == 1
    assert len(trail.query("lead-1", "Lead")) == 2


def test_entries_are_immutable(trail: AuditTrail, alice: ActorContext) -> None:
    entry = trail.log(alice, "lead-1", "Lead", ActivityType.CREATED, "Created.")

    with pytest.raises(ValidationError):
        entry.description = "rewritten"


def test_malformed_entries_are_refused(trail: AuditTrail) -> None:
    with pytest.raises(ValidationFailedError) as exc_info:
        trail.record(
            {
                "timestamp": datetime(2026, 3, 10, tzinfo=timezone.utc),
                "entity_id": "lead-1",
                "entity_type": "Spaceship",
                "actor_id": "u-1",
                "actor_name": "Someone",
                "activity_type": "created",
                "description": "",
            }
        )
    assert set(exc_info.value.field_errors) == {"entity_type", "description"}
    assert len(trail) == 0


def test_system_actor_is_used_without_an_actor(trail: AuditTrail) -> None:
    entry = trail.log(None, "lead-1", "Lead", ActivityType.RESTORED, "Restored.")

    assert entry.actor_id == SYSTEM_ACTOR_ID
    assert entry.actor_name == SYSTEM_ACTOR_NAME


def test_list_entries_filters_and_pages(
    trail: AuditTrail,
    clock: FrozenClock,
    alice: ActorContext,
    bob: ActorContext,
) -> None:
    start = clock.now
    trail.log(alice, "lead-1", "Lead", ActivityType.CREATED, "one")
    clock.advance(hours=1)
    trail.log(bob, "deal-1", "Deal", ActivityType.STAGE_UPDATED, "two")
    clock.advance(hours=1)
    trail.log(alice, "lead-1", "Lead", ActivityType.STATUS_UPDATED, "three")
    clock.advance(hours=1)
    trail.log(None, "system", "System", ActivityType.SYSTEM_SETTINGS_UPDATED, "four")

    assert [entry.description for entry in trail.list_entries()] == ["four", "three", "two", "one"]
    assert [entry.description for entry in trail.list_entries(actor_id="u-alice")] == ["three", "one"]
    assert [entry.description for entry in trail.list_entries(entity_types=["Deal", "System"])] == ["four", "two"]
    assert [
        entry.description
        for entry in trail.list_entries(activity_types=[ActivityType.STATUS_UPDATED, ActivityType.STAGE_UPDATED])
    ] == ["three", "two"]
    assert [
        entry.description
        for entry in trail.list_entries(date_from=start + timedelta(minutes=30), date_to=start + timedelta(hours=2))
    ] == ["three", "two"]
    assert [entry.description for entry in trail.list_entries(offset=1, limit=2)] == ["three", "two"]


def test_system_settings_changes_are_audited(core: TrackerCore, admin: ActorContext, manager: ActorContext) -> None:
    saved = core.system.save(admin, {"company_name": "Acme Inc"})
    assert saved.company_name == "Acme Inc"
    assert saved.default_currency == "USD"

    core.system.save(admin, {"company_name": "Acme Inc"})

    descriptions = [entry.description for entry in core.audit.query("system", "System")]
    assert descriptions == [
        "System settings saved; no changes detected.",
        "System settings updated: company name from 'Trackwell' to 'Acme Inc'.",
    ]

    with pytest.raises(PermissionDeniedError):
        core.system.save(manager, {"company_name": "Nope"})
    assert core.system.get().company_name == "Acme Inc"


def test_login_and_logout_are_recorded(core: TrackerCore, alice: ActorContext) -> None:
    core.system.record_login(alice)
    core.system.record_logout(alice)

    kinds = [entry.activity_type for entry in core.audit.query("u-alice", "User")]
    assert kinds == [ActivityType.LOGOUT, ActivityType.LOGIN]
