# tests/unit/test_form_state.py
import pytest
from pydantic import ValidationError

from field_intake.form_state import (
    ConversationState,
    FieldCandidate,
    FieldSlot,
    RefrigeratorForm,
    SessionRecord,
    SlotSource,
    VehicleFields,
    VehicleForm,
    confirm_slot,
    get_slot,
    new_form,
    reset_slot,
    slots_of,
    with_slots,
    with_updates,
)


def test_session_record_discriminates_form_type():
    rec = SessionRecord.model_validate(
        {"conversation_key": "k", "state": "COLLECTING", "form": {"form_type": "VEHICLE"}}
    )
    assert isinstance(rec.form, VehicleForm)
    assert set(slots_of(rec.form)) == {"employee_number", "equipment_code", "description", "location"}

    rec2 = SessionRecord.model_validate(
        {"conversation_key": "k", "state": "COLLECTING", "form": {"form_type": "REFRIGERATOR"}}
    )
    assert isinstance(rec2.form, RefrigeratorForm)


def test_session_record_json_roundtrip_keeps_variant():
    form = new_form("REFRIGERATOR", linked_entity_id="EQ-1")
    rec = SessionRecord(conversation_key="k", state=ConversationState.CONFIRM_LINKED_ENTITY, form=form, version=3)
    back = SessionRecord.model_validate_json(rec.model_dump_json())
    assert back == rec
    assert isinstance(back.form, RefrigeratorForm)


def test_field_maps_forbid_stray_fields():
    with pytest.raises(ValidationError):
        VehicleFields.model_validate({"serial_number": {}})


def test_candidate_confidence_bounds():
    with pytest.raises(ValidationError):
        FieldCandidate(field_hint="description", value="x", confidence=101, source=SlotSource.REGEX)


def test_get_slot_unknown_field():
    with pytest.raises(KeyError):
        get_slot(new_form("REFRIGERATOR"), "location")


def test_helpers_return_new_instances():
    form = new_form("VEHICLE")
    slot = FieldSlot(value="4471", complete=False, source=SlotSource.AI, confidence=40)
    filled = with_slots(form, {**slots_of(form), "employee_number": slot})

    assert get_slot(form, "employee_number").is_empty
    assert get_slot(filled, "employee_number") == slot

    confirmed = confirm_slot(filled, "employee_number")
    s = get_slot(confirmed, "employee_number")
    assert (s.complete, s.source, s.confidence, s.requires_confirmation) == (True, SlotSource.USER_CONFIRMED, 100, False)
    assert get_slot(filled, "employee_number").confidence == 40

    cleared = reset_slot(confirmed, "employee_number")
    assert get_slot(cleared, "employee_number") == FieldSlot()


def test_with_updates_validates():
    form = new_form("VEHICLE")
    assert with_updates(form, pending_field="location").pending_field == "location"
    with pytest.raises(ValidationError):
        with_updates(form, not_a_field=1)


@pytest.mark.parametrize(
    "state, terminal",
    [
        (ConversationState.COLLECTING, False),
        (ConversationState.CONFIRM_LINKED_ENTITY, False),
        (ConversationState.CONFIRM_BULK_EXTRACTION, False),
        (ConversationState.TERMINAL_CANCELLED, True),
        (ConversationState.TERMINAL_COMPLETED, True),
        (ConversationState.TERMINAL_TIMEOUT, True),
    ],
)
def test_terminal_states(state, terminal):
    assert state.is_terminal is terminal
