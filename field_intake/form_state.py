#!/usr/bin/env python3
"""
Project: Field Intake
File: form_state.py
Author: roger erismann

Canonical per-conversation data model: field candidates, field slots, the
per-form-type field maps (a tagged union keyed by form type) and the versioned
session record the store persists.

All mutators return new instances (model_dump -> modify -> model_validate);
nothing here edits a model in place.

Methods & Classes
- FormType, SlotSource, ConversationState (str enums)
- Coordinates, FieldCandidate, FieldSlot, FinalizationClaim
- RefrigeratorFields, VehicleFields: fixed per-type slot maps (extra keys forbidden)
- RefrigeratorForm, VehicleForm, FormState (discriminated union on form_type)
- SessionRecord: conversation_key, state, form, version, last_activity
- new_form(form_type) -> FormState
- slots_of(form) -> dict[str, FieldSlot]
- get_slot(form, name) -> FieldSlot
- with_slots(form, slots) -> FormState
- with_updates(form, **changes) -> FormState
- reset_slot(form, name) -> FormState
- confirm_slot(form, name) -> FormState

Dependencies
- External: pydantic
- Stdlib: datetime, enum, typing
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# ------------------------------------------------------------------------------
# Enums
# ------------------------------------------------------------------------------

class FormType(str, Enum):
    REFRIGERATOR = "REFRIGERATOR"
    VEHICLE = "VEHICLE"


class SlotSource(str, Enum):
    REGEX = "regex"
    AI = "ai"
    VISION = "vision"
    CONTEXTUAL = "contextual"
    USER_CONFIRMED = "user_confirmed"
    LOCATION = "location"
    INFERRED = "inferred"
    AI_VISION_CONFIRMED = "ai_vision_confirmed"


class ConversationState(str, Enum):
    COLLECTING = "COLLECTING"
    CONFIRM_LINKED_ENTITY = "CONFIRM_LINKED_ENTITY"
    CONFIRM_BULK_EXTRACTION = "CONFIRM_BULK_EXTRACTION"
    TERMINAL_CANCELLED = "TERMINAL_CANCELLED"
    TERMINAL_COMPLETED = "TERMINAL_COMPLETED"
    TERMINAL_TIMEOUT = "TERMINAL_TIMEOUT"

    @property
    def is_terminal(self) -> bool:
        return self.value.startswith("TERMINAL_")


# ------------------------------------------------------------------------------
# Candidates & slots
# ------------------------------------------------------------------------------

class Coordinates(BaseModel):
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    model_config = ConfigDict(extra="forbid", frozen=True)


class FieldCandidate(BaseModel):
    """A proposed value for a field, produced by an extractor and not yet merged."""
    field_hint: str
    value: str
    confidence: int = Field(..., ge=0, le=100)
    source: SlotSource
    raw_input: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    model_config = ConfigDict(extra="forbid", frozen=True)


class FieldSlot(BaseModel):
    value: Optional[str] = None
    complete: bool = False
    source: Optional[SlotSource] = None
    confidence: int = Field(default=0, ge=0, le=100)
    requires_confirmation: bool = False
    coordinates: Optional[Coordinates] = None
    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def is_empty(self) -> bool:
        return self.value is None or self.value == ""


class FinalizationClaim(BaseModel):
    token: str
    claimed_at: str
    model_config = ConfigDict(extra="forbid", frozen=True)


# ------------------------------------------------------------------------------
# Per-form-type field maps
# ------------------------------------------------------------------------------

class RefrigeratorFields(BaseModel):
    equipment_code: FieldSlot = Field(default_factory=FieldSlot)
    description: FieldSlot = Field(default_factory=FieldSlot)
    model_config = ConfigDict(extra="forbid", frozen=True)


class VehicleFields(BaseModel):
    employee_number: FieldSlot = Field(default_factory=FieldSlot)
    equipment_code: FieldSlot = Field(default_factory=FieldSlot)
    description: FieldSlot = Field(default_factory=FieldSlot)
    location: FieldSlot = Field(default_factory=FieldSlot)
    model_config = ConfigDict(extra="forbid", frozen=True)


FIELD_MAPS: Dict[FormType, type[BaseModel]] = {
    FormType.REFRIGERATOR: RefrigeratorFields,
    FormType.VEHICLE: VehicleFields,
}


class _FormBase(BaseModel):
    linked_entity_id: Optional[str] = None
    linked_entity_data: Optional[Dict[str, Any]] = None
    entity_confirmed: bool = False
    derived_data: Optional[Dict[str, Any]] = None
    pending_field: Optional[str] = None
    staged_extraction: Dict[str, FieldCandidate] = Field(default_factory=dict)
    finalization_claim: Optional[FinalizationClaim] = None
    created_at: str = Field(default_factory=now_iso)
    model_config = ConfigDict(extra="forbid", frozen=True)


class RefrigeratorForm(_FormBase):
    form_type: Literal["REFRIGERATOR"] = "REFRIGERATOR"
    fields: RefrigeratorFields = Field(default_factory=RefrigeratorFields)


class VehicleForm(_FormBase):
    form_type: Literal["VEHICLE"] = "VEHICLE"
    fields: VehicleFields = Field(default_factory=VehicleFields)


FormState = Annotated[Union[RefrigeratorForm, VehicleForm], Field(discriminator="form_type")]

_FORM_CLASSES: Dict[FormType, type[BaseModel]] = {
    FormType.REFRIGERATOR: RefrigeratorForm,
    FormType.VEHICLE: VehicleForm,
}


class SessionRecord(BaseModel):
    conversation_key: str
    state: ConversationState
    form: Optional[FormState] = None
    version: int = Field(default=0, ge=0)
    last_activity: str = Field(default_factory=now_iso)
    model_config = ConfigDict(extra="forbid", frozen=True)


# ------------------------------------------------------------------------------
# Helpers (immutable)
# ------------------------------------------------------------------------------

def new_form(form_type: FormType | str, **kwargs: Any) -> FormState:
    cls = _FORM_CLASSES[FormType(form_type)]
    return cls(**kwargs)  # type: ignore[return-value]


def form_type_of(form: FormState) -> FormType:
    return FormType(form.form_type)


def slots_of(form: FormState) -> Dict[str, FieldSlot]:
    return {name: getattr(form.fields, name) for name in type(form.fields).model_fields}


def get_slot(form: FormState, name: str) -> FieldSlot:
    if name not in type(form.fields).model_fields:
        raise KeyError(f"{form.form_type} has no field {name!r}")
    return getattr(form.fields, name)


def with_updates(form: FormState, **changes: Any) -> FormState:
    """Return a copy of form with top-level attributes replaced (validated)."""
    data = form.model_dump()
    for k, v in changes.items():
        data[k] = v.model_dump() if isinstance(v, BaseModel) else v
    return type(form).model_validate(data)


def with_slots(form: FormState, slots: Dict[str, FieldSlot]) -> FormState:
    """Return a copy of form whose field map is replaced by `slots` (validated against the per-type map)."""
    fields_cls = FIELD_MAPS[form_type_of(form)]
    fields = fields_cls.model_validate({k: v.model_dump() for k, v in slots.items()})
    return with_updates(form, fields=fields)


def reset_slot(form: FormState, name: str) -> FormState:
    slots = slots_of(form)
    get_slot(form, name)
    slots[name] = FieldSlot()
    return with_slots(form, slots)


def confirm_slot(form: FormState, name: str) -> FormState:
    """Mark a slot as confirmed by the user: complete, confidence 100."""
    slot = get_slot(form, name)
    slots = slots_of(form)
    slots[name] = slot.model_copy(
        update={
            "complete": True,
            "source": SlotSource.USER_CONFIRMED,
            "confidence": 100,
            "requires_confirmation": False,
        }
    )
    return with_slots(form, slots)
