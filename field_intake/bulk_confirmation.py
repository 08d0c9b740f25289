# field_intake/bulk_confirmation.py
"""
Bulk-extraction sub-flow: a batch of image-derived candidates is staged on the
form under `staged_extraction` and gated by a single yes/no.

- commit: every staged field becomes a completed slot (source ai_vision_confirmed);
  a new identifying value unlinks the entity so it is confirmed again
- discard: the batch is dropped and no slot changes
No partial commit either way.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from field_intake.field_merger import ValidationIssue
from field_intake.form_state import (
    FieldCandidate,
    FieldSlot,
    FormState,
    SlotSource,
    form_type_of,
    slots_of,
    with_slots,
    with_updates,
)
from field_intake.schema_registry import SchemaRegistry, default_registry

@dataclass(frozen=True)
class StageResult:
    form: FormState
    staged: List[str] = field(default_factory=list)
    validation_errors: List[ValidationIssue] = field(default_factory=list)


def stage(form: FormState, candidates: Sequence[FieldCandidate], *, registry: Optional[SchemaRegistry] = None) -> StageResult:
    """Validate and stage a batch. The highest-confidence valid candidate wins per field."""
    reg = registry or default_registry()
    ft = form_type_of(form)
    staged: Dict[str, FieldCandidate] = {}
    errors: List[ValidationIssue] = []

    for cand in candidates:
        definition = reg.get_field(ft, cand.field_hint)
        if definition is None:
            continue
        result = definition.validate(cand.value)
        if not result.valid:
            errors.append(
                ValidationIssue(
                    field=definition.name,
                    value=cand.value,
                    source=SlotSource(cand.source).value,
                    error=result.error or "invalid value",
                )
            )
            continue
        prior = staged.get(definition.name)
        if prior is None or cand.confidence > prior.confidence:
            staged[definition.name] = cand.model_copy(update={"value": result.cleaned})

    return StageResult(
        form=with_updates(form, staged_extraction=staged),
        staged=[d.name for d in reg.get_definition(ft) if d.name in staged],
        validation_errors=errors,
    )


def commit(form: FormState, *, registry: Optional[SchemaRegistry] = None) -> Tuple[FormState, List[str]]:
    """
    Commit every staged field; returns (form, committed field names).

    A staged identifying value that differs from the one behind the linked
    entity unlinks it, so the new code goes through lookup and confirmation
    again. The same value leaves the confirmed slot as it is.
    """
    reg = registry or default_registry()
    ft = form_type_of(form)
    ident = reg.identifying_field(ft) if reg.requires_entity(ft) else None
    slots = slots_of(form)
    committed: List[str] = []
    unlink = False
    for name, cand in form.staged_extraction.items():
        definition = reg.get_field(ft, name)
        if definition is None:
            continue
        if name == ident and form.linked_entity_id:
            if cand.value == slots[name].value:
                continue
            unlink = True
        slots[name] = FieldSlot(
            value=cand.value,
            complete=True,
            source=SlotSource.AI_VISION_CONFIRMED,
            confidence=max(cand.confidence, reg.threshold_for(definition)),
            requires_confirmation=False,
            coordinates=cand.coordinates,
        )
        committed.append(name)
    out = with_updates(with_slots(form, slots), staged_extraction={})
    if unlink:
        out = with_updates(out, linked_entity_id=None, linked_entity_data=None, entity_confirmed=False)
    return out, committed


def discard(form: FormState) -> FormState:
    return with_updates(form, staged_extraction={})
