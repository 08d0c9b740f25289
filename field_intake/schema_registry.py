"""
Project: Field Intake
File: schema_registry.py
Author: roger erismann

Validating registry of per-form-type field definitions. Each form type has an
ordered, immutable tuple of FieldDefinitions (order = ask priority, required
flag, completion threshold, validator). The registry checks on construction
that its definitions line up one-to-one with the form model's field map and
raises on typos, missing or stray fields.

It also answers the completion questions the orchestrator asks: which required
fields are missing, the progress counter, and whether a form is ready to
finalize.

Methods & Classes
- ValidationResult(valid, cleaned, error)
- validate_equipment_code / validate_employee_number / validate_description / validate_location
- FieldDefinition (frozen dataclass)
- FormDefinition (frozen dataclass): fields, requires_entity
- DEFAULT_DEFINITIONS: canonical mapping FormType -> FormDefinition
- class SchemaRegistry(mapping)
  - _validate() -> None
  - get_definition(form_type) -> tuple[FieldDefinition, ...]
  - get_field(form_type, name) -> FieldDefinition
  - requires_entity(form_type) / identifying_field(form_type) / free_text_fields(form_type)
  - missing_fields(form) -> list[str]
  - next_field(form) -> str | None
  - progress(form) -> (done, total)
  - is_complete(form) -> bool
- default_registry() -> SchemaRegistry

Dependencies
- Internal: form_state (FormType, FIELD_MAPS, slots_of), config.Settings
- Stdlib: dataclasses, logging, re, typing
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from field_intake.config import Settings
from field_intake.error_handler import UnknownFormType
from field_intake.form_state import FIELD_MAPS, FormState, FormType, form_type_of, slots_of

LOGGER = logging.getLogger("field_intake.registry")


# ------------------------------------------------------------------------------
# Validators
# ------------------------------------------------------------------------------

@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    cleaned: str
    error: Optional[str] = None


Validator = Callable[[Optional[str]], ValidationResult]


def validate_equipment_code(value: Optional[str]) -> ValidationResult:
    if not value or not isinstance(value, str):
        return ValidationResult(False, "", "equipment code is required")
    cleaned = re.sub(r"\D", "", value)
    if len(cleaned) < 5:
        return ValidationResult(False, cleaned, "equipment code must have at least 5 digits")
    if len(cleaned) > 10:
        return ValidationResult(False, cleaned, "equipment code must have at most 10 digits")
    return ValidationResult(True, cleaned)


def validate_employee_number(value: Optional[str]) -> ValidationResult:
    if not value or not isinstance(value, str):
        return ValidationResult(False, "", "employee number is required")
    cleaned = value.strip()
    if len(cleaned) < 3:
        return ValidationResult(False, cleaned, "employee number must have at least 3 characters")
    if len(cleaned) > 20:
        return ValidationResult(False, cleaned, "employee number must have at most 20 characters")
    return ValidationResult(True, cleaned)


def _min_length(label: str, n: int) -> Validator:
    def _check(value: Optional[str]) -> ValidationResult:
        cleaned = value.strip() if isinstance(value, str) else ""
        if len(cleaned) < n:
            return ValidationResult(False, cleaned, f"{label} must have at least {n} characters")
        return ValidationResult(True, cleaned)
    return _check


validate_description = _min_length("description", 5)
validate_location = _min_length("location", 5)


# ------------------------------------------------------------------------------
# Definitions
# ------------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldDefinition:
    name: str
    order: int
    label: str
    prompt: str
    validator: Validator
    required: bool = True
    threshold: Optional[int] = None      # None -> Settings.confidence_threshold
    free_text: bool = False              # may be filled by an inferred candidate
    identifying: bool = False            # completing it triggers an entity lookup
    short_value: bool = False            # eligible for contextual disambiguation

    def validate(self, value: Optional[str]) -> ValidationResult:
        return self.validator(value)


@dataclass(frozen=True)
class FormDefinition:
    fields: Tuple[FieldDefinition, ...]
    requires_entity: bool = False


DEFAULT_DEFINITIONS: Dict[FormType, FormDefinition] = {
    FormType.REFRIGERATOR: FormDefinition(
        requires_entity=True,
        fields=(
            FieldDefinition(
                name="equipment_code",
                order=1,
                label="Equipment code",
                prompt="Please send the equipment code printed on the refrigerator's label (5 to 10 digits).",
                validator=validate_equipment_code,
                identifying=True,
                short_value=True,
            ),
            FieldDefinition(
                name="description",
                order=2,
                label="Problem description",
                prompt="Please describe the problem with the refrigerator.",
                validator=validate_description,
                free_text=True,
            ),
        ),
    ),
    FormType.VEHICLE: FormDefinition(
        requires_entity=False,
        fields=(
            FieldDefinition(
                name="employee_number",
                order=1,
                label="Employee number",
                prompt="Please send your employee number.",
                validator=validate_employee_number,
                short_value=True,
            ),
            FieldDefinition(
                name="equipment_code",
                order=2,
                label="Vehicle code",
                prompt="Please send the vehicle's equipment code (5 to 10 digits).",
                validator=validate_equipment_code,
                short_value=True,
            ),
            FieldDefinition(
                name="description",
                order=3,
                label="Problem description",
                prompt="Please describe the problem with the vehicle.",
                validator=validate_description,
                free_text=True,
            ),
            FieldDefinition(
                name="location",
                order=4,
                label="Location",
                prompt="Please share your location or type the address where the vehicle is.",
                validator=validate_location,
            ),
        ),
    ),
}


class SchemaRegistry:
    def __init__(self, mapping: Mapping[FormType, FormDefinition], settings: Optional[Settings] = None):
        self._settings = settings or Settings()
        self._mapping: Dict[FormType, FormDefinition] = {
            FormType(k): FormDefinition(
                fields=tuple(sorted(v.fields, key=lambda d: d.order)),
                requires_entity=v.requires_entity,
            )
            for k, v in mapping.items()
        }
        self._validate()

    def _validate(self) -> None:
        # 1) every form type has a definition
        missing_types = [t.value for t in FormType if t not in self._mapping]
        if missing_types:
            LOGGER.error("schema_registry_invalid", extra={"missing_types": missing_types})
            raise RuntimeError(f"Schema registry invalid. missing form types={missing_types}")

        for form_type, definition in self._mapping.items():
            # 2) field names line up with the form model's slot map
            expected = set(FIELD_MAPS[form_type].model_fields)
            names = [d.name for d in definition.fields]
            missing = sorted(expected - set(names))
            unknown = sorted(set(names) - expected)
            dupes = sorted({n for n in names if names.count(n) > 1})
            if missing or unknown or dupes:
                LOGGER.error(
                    "schema_registry_fields_invalid",
                    extra={"form_type": form_type.value, "missing": missing, "unknown": unknown, "dupes": dupes},
                )
                raise RuntimeError(
                    f"Schema for {form_type.value} invalid. missing={missing} unknown={unknown} duplicate={dupes}"
                )

            # 3) an entity-backed form needs exactly one identifying field
            identifying = [d.name for d in definition.fields if d.identifying]
            if definition.requires_entity and len(identifying) != 1:
                raise RuntimeError(
                    f"Schema for {form_type.value} requires an entity but has identifying fields {identifying}"
                )

        LOGGER.info("schema_registry_validated", extra={"form_types": sorted(t.value for t in self._mapping)})

    @property
    def settings(self) -> Settings:
        return self._settings

    # ------------------------------ lookups -----------------------------------

    def _form(self, form_type: FormType | str) -> FormDefinition:
        try:
            return self._mapping[FormType(form_type)]
        except (KeyError, ValueError):
            LOGGER.error("form_type_not_found", extra={"form_type": str(form_type)})
            raise UnknownFormType(f"Unknown form type: {form_type}") from None

    def get_definition(self, form_type: FormType | str) -> Tuple[FieldDefinition, ...]:
        """Ordered (by `order`) field definitions for a form type."""
        return self._form(form_type).fields

    def get_field(self, form_type: FormType | str, name: str) -> Optional[FieldDefinition]:
        for d in self.get_definition(form_type):
            if d.name == name:
                return d
        return None

    def threshold_for(self, definition: FieldDefinition) -> int:
        return definition.threshold if definition.threshold is not None else self._settings.confidence_threshold

    def requires_entity(self, form_type: FormType | str) -> bool:
        return self._form(form_type).requires_entity

    def identifying_field(self, form_type: FormType | str) -> Optional[str]:
        for d in self.get_definition(form_type):
            if d.identifying:
                return d.name
        return None

    def free_text_fields(self, form_type: FormType | str) -> List[str]:
        return [d.name for d in self.get_definition(form_type) if d.free_text]

    # ----------------------------- completion ---------------------------------

    def missing_fields(self, form: FormState) -> List[str]:
        """Required fields that are not complete, in ask order."""
        slots = slots_of(form)
        return [d.name for d in self.get_definition(form_type_of(form)) if d.required and not slots[d.name].complete]

    def next_field(self, form: FormState) -> Optional[str]:
        missing = self.missing_fields(form)
        return missing[0] if missing else None

    def progress(self, form: FormState) -> Tuple[int, int]:
        required = [d for d in self.get_definition(form_type_of(form)) if d.required]
        slots = slots_of(form)
        done = sum(1 for d in required if slots[d.name].complete)
        return done, len(required)

    def entity_satisfied(self, form: FormState) -> bool:
        if not self.requires_entity(form_type_of(form)):
            return True
        return bool(form.linked_entity_id) and form.entity_confirmed

    def is_complete(self, form: FormState) -> bool:
        """All required slots complete and the entity dependency (if any) linked and confirmed."""
        return not self.missing_fields(form) and self.entity_satisfied(form)


@lru_cache(maxsize=1)
def default_registry() -> SchemaRegistry:
    return SchemaRegistry(DEFAULT_DEFINITIONS)
