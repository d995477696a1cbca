from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from trackwell.crm.custom_fields import CustomFieldSchemaStore
from trackwell.crm.errors import NotFoundError, ValidationFailedError
from trackwell.crm.schemas import (
    ActivityType,
    BoolValue,
    CustomFieldDefinition,
    CustomFieldType,
    DateValue,
    NumberValue,
    SelectValue,
    TextValue,
)
from trackwell.crm.service import TrackerCore
from trackwell.platform.security import ActorContext, PermissionDeniedError, ResourceKind


def _definition(name: str, field_type: CustomFieldType, **kwargs: object) -> CustomFieldDefinition:
    return CustomFieldDefinition(
        id=f"cfd-{name}",
        entity_type=ResourceKind.LEAD,
        name=name,
        label=name.replace("_", " ").title(),
        type=field_type,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        **kwargs,
    )


@pytest.fixture()
def schema() -> CustomFieldSchemaStore:
    return CustomFieldSchemaStore(
        [
            _definition("budget", CustomFieldType.NUMBER),
            _definition("kickoff", CustomFieldType.DATE),
            _definition("website", CustomFieldType.URL),
            _definition("billing_email", CustomFieldType.EMAIL),
            _definition("tier", CustomFieldType.SELECT, options=["Gold", "Silver"]),
            _definition("consent", CustomFieldType.CHECKBOX, is_required=True),
            _definition("summary", CustomFieldType.TEXTAREA),
        ]
    )


def test_values_are_coerced_to_tagged_types(schema: CustomFieldSchemaStore) -> None:
    values = schema.validate_values(
        ResourceKind.LEAD,
        {
            "budget": "1200.50",
            "kickoff": "2026-04-01",
            "website": "https://acme.io/about",
            "billing_email": "billing@acme.io",
            "tier": "Gold",
            "consent": "true",
            "summary": "Large account",
        },
        enforce_required=True,
    )

    assert values["budget"] == NumberValue(value=Decimal("1200.50"))
    assert values["kickoff"] == DateValue(value=date(2026, 4, 1))
    assert values["website"] == TextValue(value="https://acme.io/about")
    assert values["tier"] == SelectValue(value="Gold")
    assert values["consent"] == BoolValue(value=True)
    assert values["summary"].as_text() == "Large account"


def test_invalid_values_are_reported_per_field(schema: CustomFieldSchemaStore) -> None:
    with pytest.raises(ValidationFailedError) as exc_info:
        schema.validate_values(
            ResourceKind.LEAD,
            {
                "budget": True,
                "kickoff": "next tuesday",
                "website": "not a url",
                "billing_email": "billing-at-acme",
                "tier": "Bronze",
                "shoe_size": "42",
            },
            enforce_required=True,
        )

    errors = exc_info.value.field_errors
    assert set(errors) == {
        "custom_fields.budget",
        "custom_fields.kickoff",
        "custom_fields.website",
        "custom_fields.billing_email",
        "custom_fields.tier",
        "custom_fields.shoe_size",
        "custom_fields.consent",
    }
    assert errors["custom_fields.tier"] == ["Tier must be one of: Gold, Silver"]
    assert errors["custom_fields.consent"] == ["Consent is required"]


def test_required_checkbox_must_be_checked(schema: CustomFieldSchemaStore) -> None:
    with pytest.raises(ValidationFailedError) as exc_info:
        schema.validate_values(ResourceKind.LEAD, {"consent": False}, enforce_required=True)
    assert "custom_fields.consent" in exc_info.value.field_errors

    assert schema.validate_values(ResourceKind.LEAD, {"consent": False}, enforce_required=False) == {
        "consent": BoolValue(value=False)
    }


def test_blank_and_null_values_clear_existing(schema: CustomFieldSchemaStore) -> None:
    existing = {"budget": NumberValue(value=Decimal("10")), "summary": TextValue(value="old")}

    merged = schema.validate_values(ResourceKind.LEAD, {"budget": "", "summary": None}, existing, enforce_required=False)

    assert merged == {}


def test_definition_lifecycle_is_audited(core: TrackerCore, admin: ActorContext) -> None:
    definition = core.custom_fields.create_definition(
        admin,
        {"entity_type": "Lead", "name": "industry", "label": "Industry", "type": "select", "options": ["Tech", " Retail "]},
    )
    assert definition.options == ["Tech", "Retail"]
    assert core.custom_fields.list_definitions(admin, "Lead") == [definition]

    updated = core.custom_fields.update_definition(admin, definition.id, {"label": "Sector"})
    assert updated.label == "Sector"

    core.custom_fields.delete_definition(admin, definition.id)
    assert core.custom_fields.list_definitions(admin, "Lead") == []

    kinds = [entry.activity_type for entry in core.audit.query(definition.id, "CustomFieldDefinition")]
    assert kinds == [
        ActivityType.CUSTOM_FIELD_DEFINITION_DELETED,
        ActivityType.CUSTOM_FIELD_DEFINITION_UPDATED,
        ActivityType.CUSTOM_FIELD_DEFINITION_CREATED,
    ]

    with pytest.raises(NotFoundError):
        core.custom_fields.delete_definition(admin, definition.id)


def test_definition_shape_is_validated(core: TrackerCore, admin: ActorContext) -> None:
    with pytest.raises(ValidationFailedError) as exc_info:
        core.custom_fields.create_definition(admin, {"entity_type": "Lead", "name": "Bad Name", "label": "Bad", "type": "select"})
    assert set(exc_info.value.field_errors) == {"name", "options"}

    with pytest.raises(ValidationFailedError) as exc_info:
        core.custom_fields.create_definition(
            admin, {"entity_type": "Lead", "name": "size", "label": "Size", "type": "text", "options": ["S"]}
        )
    assert "options" in exc_info.value.field_errors

    with pytest.raises(ValidationFailedError) as exc_info:
        core.custom_fields.create_definition(admin, {"entity_type": "System", "name": "x", "label": "X", "type": "text"})
    assert "entity_type" in exc_info.value.field_errors

    core.custom_fields.create_definition(admin, {"entity_type": "Lead", "name": "size", "label": "Size", "type": "text"})
    with pytest.raises(ValidationFailedError) as exc_info:
        core.custom_fields.create_definition(admin, {"entity_type": "Lead", "name": "size", "label": "Size 2", "type": "text"})
    assert "name" in exc_info.value.field_errors


def test_only_admins_manage_definitions(core: TrackerCore, manager: ActorContext) -> None:
    with pytest.raises(PermissionDeniedError):
        core.custom_fields.create_definition(
            manager, {"entity_type": "Lead", "name": "industry", "label": "Industry", "type": "text"}
        )


def test_record_custom_fields_are_validated_and_audited(core: TrackerCore, admin: ActorContext, alice: ActorContext) -> None:
    core.custom_fields.create_definition(
        admin, {"entity_type": "Lead", "name": "industry", "label": "Industry", "type": "select", "options": ["Tech", "Retail"]}
    )
    core.custom_fields.create_definition(admin, {"entity_type": "Lead", "name": "budget", "label": "Budget", "type": "number"})

    with pytest.raises(ValidationFailedError) as exc_info:
        core.leads.create(alice, {"name": "Acme", "custom_fields": {"industry": "Mining"}})
    assert list(exc_info.value.field_errors) == ["custom_fields.industry"]

    lead = core.leads.create(alice, {"name": "Acme", "custom_fields": {"industry": "Tech", "budget": 5000}}).record
    assert lead.custom_fields["industry"] == SelectValue(value="Tech")

    descriptions = [
        entry.description
        for entry in core.audit.query(lead.id, "Lead")
        if entry.activity_type == ActivityType.CUSTOM_FIELD_UPDATED
    ]
    assert sorted(descriptions) == [
        "Budget of lead 'Acme' changed from '' to '5000'.",
        "Industry of lead 'Acme' changed from '' to 'Tech'.",
    ]


def test_labels_are_resolved_when_the_entry_is_written(core: TrackerCore, admin: ActorContext) -> None:
    definition = core.custom_fields.create_definition(
        admin, {"entity_type": "Lead", "name": "industry", "label": "Industry", "type": "text"}
    )
    lead = core.leads.create(admin, {"name": "Acme", "custom_fields": {"industry": "Tech"}}).record

    core.custom_fields.update_definition(admin, definition.id, {"label": "Sector"})
    core.leads.update(admin, lead.id, {"custom_fields": {"industry": "Retail"}})

    descriptions = [
        entry.description
        for entry in core.audit.query(lead.id, "Lead")
        if entry.activity_type == ActivityType.CUSTOM_FIELD_UPDATED
    ]
    assert descriptions == [
        "Sector of lead 'Acme' changed from 'Tech' to 'Retail'.",
        "Industry of lead 'Acme' changed from '' to 'Tech'.",
    ]


def test_deleting_a_definition_leaves_orphaned_values(core: TrackerCore, admin: ActorContext) -> None:
    definition = core.custom_fields.create_definition(
        admin, {"entity_type": "Lead", "name": "industry", "label": "Industry", "type": "text"}
    )
    lead = core.leads.create(admin, {"name": "Acme", "custom_fields": {"industry": "Tech"}}).record
    core.custom_fields.delete_definition(admin, definition.id)

    assert core.leads.orphaned_custom_fields(admin, lead.id) == {"industry": TextValue(value="Tech")}

    core.leads.update(admin, lead.id, {"status": "Contacted"})
    assert core.leads.get(admin, lead.id).custom_fields == {"industry": TextValue(value="Tech")}

    with pytest.raises(ValidationFailedError):
        core.leads.update(admin, lead.id, {"custom_fields": {"industry": "Retail"}})

    core.leads.update(admin, lead.id, {"custom_fields": {"industry": None}})
    assert core.leads.get(admin, lead.id).custom_fields == {}


def test_required_fields_apply_on_create_and_when_custom_fields_are_sent(core: TrackerCore, admin: ActorContext) -> None:
    lead = core.leads.create(admin, {"name": "Before"}).record
    core.custom_fields.create_definition(
        admin, {"entity_type": "Lead", "name": "region", "label": "Region", "type": "text", "is_required": True}
    )

    with pytest.raises(ValidationFailedError):
        core.leads.create(admin, {"name": "After"})

    core.leads.update(admin, lead.id, {"status": "Qualified"})
    with pytest.raises(ValidationFailedError):
        core.leads.update(admin, lead.id, {"custom_fields": {}})
