"""
tests/unit/test_field_merger.py

What this tests (and why)
-------------------------
1) Confidence arbitration: empty slots fill, strictly-higher confidence
   replaces, equal or lower never does; threshold decides completeness.
2) Re-merging the same candidates changes nothing.
3) Invalid values come back as ValidationIssue rows and leave slots alone.
4) Inferred candidates only fill empty free-text fields and always need
   confirmation.
5) Contextual override: an ambiguous short answer goes to the pending field
   only.
"""

import pytest

from field_intake.field_merger import apply_contextual_override, merge
from field_intake.form_state import FieldCandidate, FieldSlot, SlotSource, new_form, slots_of


def cand(field, value, confidence, source=SlotSource.REGEX, raw=None):
    return FieldCandidate(field_hint=field, value=value, confidence=confidence, source=source, raw_input=raw)


@pytest.fixture()
def vehicle_slots():
    return slots_of(new_form("VEHICLE"))


def test_fills_empty_slot_and_marks_complete(vehicle_slots, registry):
    res = merge(vehicle_slots, [cand("equipment_code", "7788123", 95)], "VEHICLE", registry=registry)
    slot = res.merged_slots["equipment_code"]
    assert (slot.value, slot.complete, slot.confidence, slot.source) == ("7788123", True, 95, SlotSource.REGEX)
    assert res.updated_fields == ["equipment_code"]
    assert vehicle_slots["equipment_code"].is_empty


def test_below_threshold_is_present_but_incomplete(vehicle_slots, registry):
    res = merge(vehicle_slots, [cand("location", "Av. Reforma 222", 50, SlotSource.AI)], "VEHICLE", registry=registry)
    slot = res.merged_slots["location"]
    assert slot.value == "Av. Reforma 222"
    assert not slot.complete


@pytest.mark.parametrize("incoming, replaced", [(94, False), (95, False), (96, True)])
def test_strictly_greater_confidence_replaces(vehicle_slots, registry, incoming, replaced):
    first = merge(vehicle_slots, [cand("equipment_code", "7788123", 95)], "VEHICLE", registry=registry)
    second = merge(first.merged_slots, [cand("equipment_code", "5550001", incoming)], "VEHICLE", registry=registry)
    assert (second.merged_slots["equipment_code"].value == "5550001") is replaced
    assert (second.updated_fields == ["equipment_code"]) is replaced


def test_merge_is_idempotent(vehicle_slots, registry):
    cands = [
        cand("employee_number", "4471", 90),
        cand("description", "brakes grind when I stop", 75),
        cand("location", "the motorway exit 12", 40, SlotSource.AI),
    ]
    once = merge(vehicle_slots, cands, "VEHICLE", registry=registry)
    twice = merge(once.merged_slots, cands, "VEHICLE", registry=registry)
    assert twice.merged_slots == once.merged_slots
    assert twice.updated_fields == []


def test_confidence_never_decreases(vehicle_slots, registry):
    slots = vehicle_slots
    seen = 0
    for c in (60, 90, 70, 90, 30, 99, 10):
        slots = merge(slots, [cand("description", f"noise level {c}", c)], "VEHICLE", registry=registry).merged_slots
        assert slots["description"].confidence >= seen
        seen = slots["description"].confidence
    assert seen == 99


def test_invalid_candidate_reported_not_raised(vehicle_slots, registry):
    res = merge(vehicle_slots, [cand("equipment_code", "123", 95)], "VEHICLE", registry=registry)
    assert res.merged_slots["equipment_code"].is_empty
    assert res.updated_fields == []
    [issue] = res.validation_errors
    assert issue.field == "equipment_code"
    assert issue.source == "regex"
    assert "5 digits" in issue.error


def test_unknown_field_ignored(registry):
    slots = slots_of(new_form("REFRIGERATOR"))
    res = merge(slots, [cand("location", "Av. Reforma 222", 95)], "REFRIGERATOR", registry=registry)
    assert res.merged_slots == slots
    assert res.validation_errors == []


def test_user_confirmed_is_complete_below_threshold(vehicle_slots, registry):
    res = merge(vehicle_slots, [cand("location", "Depot 4 yard", 30, SlotSource.USER_CONFIRMED)], "VEHICLE", registry=registry)
    assert res.merged_slots["location"].complete


def test_inferred_fills_empty_free_text_only(vehicle_slots, registry):
    text = "the engine makes a loud noise since yesterday"
    res = merge(vehicle_slots, [cand("description", text, 40, SlotSource.INFERRED)], "VEHICLE", registry=registry)
    slot = res.merged_slots["description"]
    assert slot.value == text
    assert slot.requires_confirmation
    assert not slot.complete

    # a confident value is never displaced by an inferred one
    existing = dict(vehicle_slots, description=FieldSlot(value="flat tire", complete=True, source=SlotSource.REGEX, confidence=75))
    res2 = merge(existing, [cand("description", text, 99, SlotSource.INFERRED)], "VEHICLE", registry=registry)
    assert res2.merged_slots["description"].value == "flat tire"

    # non free-text fields ignore inferred candidates
    res3 = merge(vehicle_slots, [cand("equipment_code", "7788123", 40, SlotSource.INFERRED)], "VEHICLE", registry=registry)
    assert res3.merged_slots["equipment_code"].is_empty


def test_contextual_override_assigns_pending_field_only(vehicle_slots, registry):
    cands = [
        cand("equipment_code", "12345", 80, raw="12345"),
        cand("employee_number", "12345", 95, SlotSource.CONTEXTUAL, raw="12345"),
    ]
    res = merge(vehicle_slots, cands, "VEHICLE", pending_field="employee_number", registry=registry)
    assert res.merged_slots["employee_number"].value == "12345"
    assert res.merged_slots["employee_number"].source == SlotSource.CONTEXTUAL
    assert res.merged_slots["employee_number"].confidence == 95
    assert res.merged_slots["equipment_code"].is_empty
    assert res.updated_fields == ["employee_number"]


def test_contextual_override_uses_candidate_value_not_raw(registry):
    cands = [cand("equipment_code", "12345", 80, raw="#12345")]
    out = apply_contextual_override(cands, "VEHICLE", "employee_number", registry=registry)
    [forced] = out
    assert forced.field_hint == "employee_number"
    assert forced.value == "12345"


def test_contextual_override_skips_long_input(vehicle_slots, registry):
    raw = "the truck code is 12345 I think, please check"
    cands = [cand("equipment_code", "12345", 80, raw=raw)]
    res = merge(vehicle_slots, cands, "VEHICLE", pending_field="employee_number", registry=registry)
    assert res.merged_slots["equipment_code"].value == "12345"
    assert res.merged_slots["employee_number"].is_empty


def test_contextual_override_needs_short_value_pending_field(vehicle_slots, registry):
    cands = [cand("equipment_code", "12345", 80, raw="12345")]
    res = merge(vehicle_slots, cands, "VEHICLE", pending_field="description", registry=registry)
    assert res.merged_slots["equipment_code"].value == "12345"


def test_contextual_override_requires_ambiguity(registry):
    # only one short-value field on refrigerator reports: nothing to disambiguate
    cands = [cand("equipment_code", "4567890", 80, raw="4567890")]
    assert apply_contextual_override(cands, "REFRIGERATOR", "equipment_code", registry=registry) == cands


def test_contextual_override_leaves_keyword_input_alone(vehicle_slots, registry):
    # "truck 7788123" names its field; only a bare "7788123" is ambiguous
    cands = [cand("equipment_code", "7788123", 95, raw="truck 7788123")]
    assert apply_contextual_override(cands, "VEHICLE", "employee_number", registry=registry) == cands

    res = merge(vehicle_slots, cands, "VEHICLE", pending_field="employee_number", registry=registry)
    assert res.merged_slots["equipment_code"].value == "7788123"
    assert res.merged_slots["employee_number"].is_empty
