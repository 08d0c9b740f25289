# tests/unit/test_bulk_confirmation.py
from conftest import filled_form
from field_intake import bulk_confirmation
from field_intake.form_state import FieldCandidate, SlotSource, confirm_slot, get_slot, new_form, slots_of, with_updates


def vision(field, value, confidence):
    return FieldCandidate(field_hint=field, value=value, confidence=confidence, source=SlotSource.VISION)


def test_stage_validates_and_keeps_best(registry):
    form = new_form("VEHICLE")
    res = bulk_confirmation.stage(
        form,
        [
            vision("description", "cracked windshield", 70),
            vision("equipment_code", "77-88-123", 60),
            vision("equipment_code", "7788124", 90),
            vision("employee_number", "x", 90),
            vision("serial", "ABC", 99),
        ],
        registry=registry,
    )
    assert res.staged == ["equipment_code", "description"]
    assert res.form.staged_extraction["equipment_code"].value == "7788124"
    assert [e.field for e in res.validation_errors] == ["employee_number"]
    # staging never touches slots
    assert slots_of(res.form) == slots_of(form)
    assert res.form.staged_extraction


def test_stage_cleans_values(registry):
    res = bulk_confirmation.stage(new_form("VEHICLE"), [vision("equipment_code", "77-88-123", 60)], registry=registry)
    assert res.form.staged_extraction["equipment_code"].value == "7788123"


def test_commit_completes_every_staged_field(registry):
    staged = bulk_confirmation.stage(
        new_form("VEHICLE"),
        [vision("description", "cracked windshield", 70), vision("equipment_code", "7788123", 92)],
        registry=registry,
    ).form

    form, committed = bulk_confirmation.commit(staged, registry=registry)
    assert sorted(committed) == ["description", "equipment_code"]
    desc = get_slot(form, "description")
    code = get_slot(form, "equipment_code")
    assert desc.complete and code.complete
    assert desc.source == code.source == SlotSource.AI_VISION_CONFIRMED
    assert desc.confidence == 70
    assert code.confidence == 92
    assert form.staged_extraction == {}


def test_commit_raises_low_confidence_to_threshold_only(registry):
    staged = bulk_confirmation.stage(new_form("VEHICLE"), [vision("description", "cracked windshield", 45)], registry=registry).form
    form, _ = bulk_confirmation.commit(staged, registry=registry)
    desc = get_slot(form, "description")
    assert desc.complete
    assert desc.confidence == 60


def test_commit_new_code_unlinks_confirmed_entity(registry):
    linked = with_updates(
        filled_form("REFRIGERATOR", equipment_code="4567890"),
        linked_entity_id="EQ-1",
        linked_entity_data={"id": "EQ-1", "code": "4567890"},
        entity_confirmed=True,
    )
    staged = bulk_confirmation.stage(linked, [vision("equipment_code", "9999911", 90)], registry=registry).form

    form, committed = bulk_confirmation.commit(staged, registry=registry)
    assert committed == ["equipment_code"]
    assert get_slot(form, "equipment_code").value == "9999911"
    assert form.linked_entity_id is None
    assert form.linked_entity_data is None
    assert not form.entity_confirmed


def test_commit_same_code_keeps_confirmed_slot(registry):
    linked = with_updates(
        filled_form("REFRIGERATOR", equipment_code="4567890"),
        linked_entity_id="EQ-1",
        entity_confirmed=True,
    )
    linked = confirm_slot(linked, "equipment_code")
    staged = bulk_confirmation.stage(
        linked,
        [vision("equipment_code", "4567890", 70), vision("description", "door seal torn", 80)],
        registry=registry,
    ).form

    form, committed = bulk_confirmation.commit(staged, registry=registry)
    assert committed == ["description"]
    assert get_slot(form, "equipment_code").source == SlotSource.USER_CONFIRMED
    assert (form.linked_entity_id, form.entity_confirmed) == ("EQ-1", True)


def test_discard_changes_no_slot(registry):
    base = new_form("VEHICLE")
    staged = bulk_confirmation.stage(base, [vision("description", "cracked windshield", 70)], registry=registry).form
    out = bulk_confirmation.discard(staged)
    assert slots_of(out) == slots_of(base)
    assert out.staged_extraction == {}
