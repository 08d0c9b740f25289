"""
Project: Field Intake
File: extractors.py
Author: roger erismann

Deterministic extractors (no model calls) and a composite that fans out to
several extractors.

RegexExtractor
- equipment code: keyword-prefixed 5-10 digits (95) or a bare 5-10 digit run (80)
- employee number: keyword-prefixed id (90)
- description: "problem: ..." style prefix (75)
- location: decimal coordinates (95, with coordinates) or address phrases (70)
- contextual answers: when a field is pending and the message reads as a direct
  answer to it (a short single token for code-like fields, plain text for
  description/location), emit a contextual candidate for that field
- inferred description: long free text with no description found becomes an
  inferred candidate (40) that the user must confirm

LocationExtractor
- shared coordinates (dict / tuple / Coordinates) -> location candidate (100)

CompositeExtractor
- runs extractors in order, concatenates results; a failing member is logged
  and skipped

Dependencies
- Internal: form_state, schema_registry, app_logger
- Stdlib: logging, re, typing
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from field_intake import app_logger
from field_intake.form_state import Coordinates, FieldCandidate, SlotSource
from field_intake.schema_registry import SchemaRegistry, validate_employee_number, validate_equipment_code, default_registry

LOGGER = logging.getLogger("field_intake.extractors")

CODE_KEYWORD_CONFIDENCE = 95
CODE_BARE_CONFIDENCE = 80
EMPLOYEE_CONFIDENCE = 90
DESCRIPTION_CONFIDENCE = 75
COORDINATES_CONFIDENCE = 95
ADDRESS_CONFIDENCE = 70
SHARED_LOCATION_CONFIDENCE = 100
CONTEXTUAL_DESCRIPTION_CONFIDENCE = 90
CONTEXTUAL_LOCATION_CONFIDENCE = 85
INFERRED_CONFIDENCE = 40

_CODE_KEYWORD = re.compile(
    r"\b(?:sap|code|codigo|c[oó]digo|equipment|equipo|unit|fridge|refrigerator|refri|refrigerador"
    r"|vehicle|veh[ií]culo|truck)\b(?:\s*(?:number|no\.?|num\.?|#|is))*[:\s#-]*(\d{5,10})\b",
    re.IGNORECASE,
)
_CODE_BARE = re.compile(r"(?:^|\s)(\d{5,10})(?=\s|$|[.,;!?])")

_EMPLOYEE = [
    re.compile(
        r"\b(?:employee|empleado)(?:\s*(?:number|no\.?|num\.?|id|#|numero|n[uú]mero))?(?:\s+is)?[:\s#-]*"
        r"([A-Za-z]{0,4}\d[A-Za-z0-9-]{1,18})\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(?:my\s+(?:staff\s+)?(?:number|id)\s+is|mi\s+n[uú]mero\s+es|soy\s+el\s+empleado)[:\s-]*"
        r"([A-Za-z]{0,4}\d[A-Za-z0-9-]{1,18})\b",
        re.IGNORECASE,
    ),
    re.compile(r"(?:^|\s)EMP[:\s#-]*(\d[A-Za-z0-9-]{2,19})\b", re.IGNORECASE),
]

_DESCRIPTION = re.compile(
    r"\b(?:problem|issue|fault|description|problema|falla|descripci[oó]n)\s*(?:is)?\s*[:\-]\s*(.{5,})",
    re.IGNORECASE | re.DOTALL,
)

_COORDINATES = re.compile(r"(-?\d{1,3}\.\d{4,8})[,\s]+(-?\d{1,3}\.\d{4,8})")
_ADDRESS = [
    re.compile(
        r"\b(?:i'?m\s+at|i\s+am\s+at|located\s+at|location|address|street|avenue|ave\.|"
        r"estoy\s+en|ubicaci[oó]n|direcci[oó]n|calle|avenida|colonia)\b[:\s]*(.{10,100})",
        re.IGNORECASE,
    ),
    re.compile(r"\b(?:near|close\s+to|me\s+encuentro\s+en|cerca\s+de)\b[:\s]*(.{10,100})", re.IGNORECASE),
]

_ONLY_DIGITS = re.compile(r"^\d+$")
_SHORT_REPLIES = {"yes", "no", "ok", "okay", "si", "sí", "confirm", "correct", "confirmo", "correcto"}


def _cand(field: str, value: str, confidence: int, source: SlotSource, raw: str, **kw: Any) -> FieldCandidate:
    return FieldCandidate(field_hint=field, value=value, confidence=confidence, source=source, raw_input=raw, **kw)


def extract_equipment_code(text: str) -> Optional[Dict[str, Any]]:
    m = _CODE_KEYWORD.search(text)
    if m:
        v = validate_equipment_code(m.group(1))
        if v.valid:
            return {"value": v.cleaned, "confidence": CODE_KEYWORD_CONFIDENCE}
    m = _CODE_BARE.search(text)
    if m:
        v = validate_equipment_code(m.group(1))
        if v.valid:
            return {"value": v.cleaned, "confidence": CODE_BARE_CONFIDENCE}
    return None


def extract_employee_number(text: str) -> Optional[Dict[str, Any]]:
    for pattern in _EMPLOYEE:
        m = pattern.search(text)
        if m:
            v = validate_employee_number(m.group(1))
            if v.valid:
                return {"value": v.cleaned, "confidence": EMPLOYEE_CONFIDENCE}
    return None


def extract_location(text: str) -> Optional[Dict[str, Any]]:
    m = _COORDINATES.search(text)
    if m:
        lat, lng = float(m.group(1)), float(m.group(2))
        if -90 <= lat <= 90 and -180 <= lng <= 180:
            return {
                "value": f"{lat}, {lng}",
                "confidence": COORDINATES_CONFIDENCE,
                "coordinates": Coordinates(latitude=lat, longitude=lng),
            }
    for pattern in _ADDRESS:
        m = pattern.search(text)
        if m:
            address = m.group(1).strip()
            if len(address) >= 10:
                return {"value": address, "confidence": ADDRESS_CONFIDENCE}
    return None


def extract_description(text: str) -> Optional[Dict[str, Any]]:
    m = _DESCRIPTION.search(text)
    if m:
        value = m.group(1).strip()
        if len(value) >= 5:
            return {"value": value, "confidence": DESCRIPTION_CONFIDENCE}
    return None


class RegexExtractor:
    def __init__(self, registry: Optional[SchemaRegistry] = None):
        self._registry = registry or default_registry()

    def extract_candidates(self, raw_input: Any, *, form_type: str, pending_field: Optional[str] = None) -> List[FieldCandidate]:
        text = re.sub(r"\s+", " ", str(raw_input or "")).strip()
        if not text:
            return []

        fields = {d.name for d in self._registry.get_definition(form_type)}
        out: List[FieldCandidate] = []

        employee = extract_employee_number(text) if "employee_number" in fields else None
        if employee:
            out.append(_cand("employee_number", employee["value"], employee["confidence"], SlotSource.REGEX, text))

        if "equipment_code" in fields:
            code = extract_equipment_code(text)
            # a bare digit run already read as the employee id is not also a code
            if code and not (employee and code["confidence"] == CODE_BARE_CONFIDENCE and code["value"] == employee["value"]):
                out.append(_cand("equipment_code", code["value"], code["confidence"], SlotSource.REGEX, text))

        if "location" in fields:
            loc = extract_location(text)
            if loc:
                out.append(
                    _cand("location", loc["value"], loc["confidence"], SlotSource.REGEX, text, coordinates=loc.get("coordinates"))
                )

        if "description" in fields:
            desc = extract_description(text)
            if desc:
                out.append(_cand("description", desc["value"], desc["confidence"], SlotSource.REGEX, text))

        out.extend(self._contextual(text, form_type=form_type, pending_field=pending_field, found=out))
        out.extend(self._inferred(text, fields=fields, pending_field=pending_field, found=out))
        return out

    def _contextual(self, text: str, *, form_type: str, pending_field: Optional[str], found: Sequence[FieldCandidate]) -> List[FieldCandidate]:
        if not pending_field:
            return []
        definition = self._registry.get_field(form_type, pending_field)
        if definition is None:
            return []
        settings = self._registry.settings
        compact = text.replace(" ", "")

        if definition.short_value:
            if len(text) > settings.short_value_max_len or " " in text:
                return []
            v = definition.validate(compact)
            if not v.valid:
                return []
            return [_cand(definition.name, v.cleaned, settings.contextual_confidence, SlotSource.CONTEXTUAL, text)]

        # plain answers to a free-text or location question
        if _ONLY_DIGITS.match(compact) or text.lower() in _SHORT_REPLIES:
            return []
        if found:
            return []
        v = definition.validate(text)
        if not v.valid:
            return []
        conf = CONTEXTUAL_DESCRIPTION_CONFIDENCE if definition.free_text else CONTEXTUAL_LOCATION_CONFIDENCE
        return [_cand(definition.name, v.cleaned, conf, SlotSource.CONTEXTUAL, text)]

    def _inferred(self, text: str, *, fields: set, pending_field: Optional[str], found: Sequence[FieldCandidate]) -> List[FieldCandidate]:
        if "description" not in fields or any(c.field_hint == "description" for c in found):
            return []
        if len(text) <= 20 or _ONLY_DIGITS.match(text.replace(" ", "")):
            return []
        return [_cand("description", text, INFERRED_CONFIDENCE, SlotSource.INFERRED, text)]


def _coordinates_from(raw_input: Any) -> Optional[Coordinates]:
    if isinstance(raw_input, Coordinates):
        return raw_input
    if isinstance(raw_input, dict):
        lat = raw_input.get("latitude", raw_input.get("lat"))
        lng = raw_input.get("longitude", raw_input.get("lng", raw_input.get("lon")))
        if lat is None or lng is None:
            return None
        return Coordinates(latitude=float(lat), longitude=float(lng))
    if isinstance(raw_input, (tuple, list)) and len(raw_input) == 2:
        return Coordinates(latitude=float(raw_input[0]), longitude=float(raw_input[1]))
    if isinstance(raw_input, str):
        m = _COORDINATES.search(raw_input) or re.search(r"(-?\d{1,3}(?:\.\d+)?)\s*,\s*(-?\d{1,3}(?:\.\d+)?)", raw_input)
        if m:
            return Coordinates(latitude=float(m.group(1)), longitude=float(m.group(2)))
    return None


class LocationExtractor:
    """A shared location (coordinates, optionally with a name/address) is taken at face value."""

    def extract_candidates(self, raw_input: Any, *, form_type: str, pending_field: Optional[str] = None) -> List[FieldCandidate]:
        coords = _coordinates_from(raw_input)
        if coords is None:
            return []
        label = ""
        if isinstance(raw_input, dict):
            label = str(raw_input.get("address") or raw_input.get("name") or "").strip()
        value = label or f"{coords.latitude}, {coords.longitude}"
        return [
            FieldCandidate(
                field_hint="location",
                value=value,
                confidence=SHARED_LOCATION_CONFIDENCE,
                source=SlotSource.LOCATION,
                raw_input=None,
                coordinates=coords,
            )
        ]


class CompositeExtractor:
    def __init__(self, extractors: Sequence[Any], *, name: str = "composite"):
        self._extractors = list(extractors)
        self._name = name

    def extract_candidates(self, raw_input: Any, *, form_type: str, pending_field: Optional[str] = None) -> List[FieldCandidate]:
        out: List[FieldCandidate] = []
        for ex in self._extractors:
            try:
                out.extend(ex.extract_candidates(raw_input, form_type=form_type, pending_field=pending_field))
            except Exception as e:
                app_logger.log_event(
                    "Extractor.MEMBER_FAILED",
                    {"composite": self._name, "extractor": type(ex).__name__, "error": f"{type(e).__name__}: {e}"},
                    level=logging.WARNING,
                )
        return out
