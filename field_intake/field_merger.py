"""
Project: Field Intake
File: field_merger.py
Author: roger erismann

Merge extracted candidates into a form's field slots with confidence arbitration.

Rules
- Candidates for fields the form type does not define are ignored.
- Every candidate is validated with its field's validator; invalid ones are
  returned as ValidationIssue rows, never raised.
- A candidate replaces a slot iff the slot is empty or the candidate's
  confidence is strictly greater (equal confidence never overwrites).
- confidence >= threshold (or source user_confirmed) marks the slot complete;
  lower confidence leaves it present but unconfirmed.
- An inferred candidate only fills an empty free-text field, and is never
  complete on its own (requires_confirmation=True).
- Contextual override: with a pending field F, a short input that is nothing
  but the value itself (a bare token such as "12345") and validates for F and
  for at least one other short-value field is force-assigned to F at the
  contextual confidence; competing candidates for other fields derived from
  the same raw input are dropped. Input carrying a keyword ("truck 12345")
  is never overridden.

Merging the same candidate set twice is a no-op.

Methods & Classes
- ValidationIssue, MergeResult (dataclasses)
- apply_contextual_override(candidates, form_type, pending_field, *, registry) -> list[FieldCandidate]
- merge(current_slots, candidates, form_type, *, pending_field=None, registry=None) -> MergeResult

Dependencies
- Internal: schema_registry, form_state
- Stdlib: dataclasses, logging, re, typing
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from field_intake.form_state import FieldCandidate, FieldSlot, FormType, SlotSource
from field_intake.schema_registry import FieldDefinition, SchemaRegistry, default_registry

LOGGER = logging.getLogger("field_intake.merger")


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    value: str
    source: str
    error: str


@dataclass(frozen=True)
class MergeResult:
    merged_slots: Dict[str, FieldSlot]
    updated_fields: List[str] = field(default_factory=list)
    validation_errors: List[ValidationIssue] = field(default_factory=list)


def _raw_of(c: FieldCandidate) -> str:
    return (c.raw_input if c.raw_input is not None else c.value).strip()


_SEPARATORS = re.compile(r"[^0-9A-Za-z]")


def _is_bare_token(raw: str, value: str) -> bool:
    # "12345" or "#12345", not "truck 12345"
    return bool(value) and _SEPARATORS.sub("", raw) == _SEPARATORS.sub("", value)


def _is_ambiguous(value: str, target: FieldDefinition, defs: Sequence[FieldDefinition]) -> bool:
    if not target.validate(value).valid:
        return False
    return any(d.name != target.name and d.short_value and d.validate(value).valid for d in defs)


def apply_contextual_override(
    candidates: Sequence[FieldCandidate],
    form_type: FormType | str,
    pending_field: Optional[str],
    *,
    registry: SchemaRegistry,
) -> List[FieldCandidate]:
    """
    Resolve ambiguous short values in favour of the pending field.

    Returns a new candidate list; the input is not modified.
    """
    out = list(candidates)
    if not pending_field:
        return out

    defs = registry.get_definition(form_type)
    target = registry.get_field(form_type, pending_field)
    if target is None or not target.short_value:
        return out

    max_len = registry.settings.short_value_max_len
    conf = registry.settings.contextual_confidence

    for raw in dict.fromkeys(_raw_of(c) for c in candidates):
        if not raw or len(raw) > max_len:
            continue
        same_raw = [c for c in out if _raw_of(c) == raw]
        values = dict.fromkeys(c.value for c in same_raw if _is_bare_token(raw, c.value))
        chosen = next((v for v in values if _is_ambiguous(v, target, defs)), None)
        if chosen is None:
            continue

        forced = FieldCandidate(
            field_hint=target.name,
            value=chosen,
            confidence=conf,
            source=SlotSource.CONTEXTUAL,
            raw_input=raw,
        )
        dropped = [c.field_hint for c in same_raw if c.field_hint != target.name]
        out = [c for c in out if _raw_of(c) != raw] + [forced]
        LOGGER.info(
            "contextual_override_applied",
            extra={"pending_field": pending_field, "dropped": dropped},
        )
    return out


def _is_complete(confidence: int, source: SlotSource, threshold: int) -> bool:
    return source == SlotSource.USER_CONFIRMED or confidence >= threshold


def merge(
    current_slots: Mapping[str, FieldSlot],
    candidates: Sequence[FieldCandidate],
    form_type: FormType | str,
    *,
    pending_field: Optional[str] = None,
    registry: Optional[SchemaRegistry] = None,
) -> MergeResult:
    """Merge candidates into a copy of current_slots; see module docstring for the rules."""
    reg = registry or default_registry()
    slots: Dict[str, FieldSlot] = dict(current_slots)
    updated: List[str] = []
    errors: List[ValidationIssue] = []

    for cand in apply_contextual_override(candidates, form_type, pending_field, registry=reg):
        definition = reg.get_field(form_type, cand.field_hint)
        if definition is None:
            LOGGER.debug("candidate_ignored_unknown_field", extra={"field": cand.field_hint})
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

        current = slots.get(definition.name) or FieldSlot()

        if cand.source == SlotSource.INFERRED:
            if not definition.free_text or not current.is_empty:
                continue
            new_slot = FieldSlot(
                value=result.cleaned,
                complete=False,
                source=SlotSource.INFERRED,
                confidence=cand.confidence,
                requires_confirmation=True,
                coordinates=cand.coordinates,
            )
        else:
            if not current.is_empty and cand.confidence <= current.confidence:
                continue
            new_slot = FieldSlot(
                value=result.cleaned,
                complete=_is_complete(cand.confidence, cand.source, reg.threshold_for(definition)),
                source=cand.source,
                confidence=cand.confidence,
                requires_confirmation=False,
                coordinates=cand.coordinates,
            )

        if new_slot == current:
            continue
        slots[definition.name] = new_slot
        if definition.name not in updated:
            updated.append(definition.name)

    return MergeResult(merged_slots=slots, updated_fields=updated, validation_errors=errors)
