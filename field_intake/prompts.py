"""
Project: Field Intake
File: prompts.py
Author: roger erismann

Transport-neutral prompt specs handed to the Notifier. A PromptSpec is purely
semantic (kind, body, options, progress); rendering into a chat message,
buttons or a CLI line is the caller's business.

Methods & Classes
- PromptOption, Progress, PromptSpec (pydantic)
- request_field(definition, *, progress, notice=None, existing=None) -> PromptSpec
- confirm_entity(form, *, progress) -> PromptSpec
- confirm_bulk(staged, *, registry, form_type) -> PromptSpec
- not_understood(previous) -> PromptSpec
- completed(record_id) / cancelled() / finalizing() / expired()

Dependencies
- External: pydantic
- Internal: schema_registry.FieldDefinition, form_state
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from field_intake.form_state import FieldCandidate, FieldSlot, FormState, FormType
from field_intake.replies import OPTION_CONFIRM, OPTION_REJECT
from field_intake.schema_registry import FieldDefinition, SchemaRegistry


class PromptOption(BaseModel):
    id: str
    label: str
    model_config = ConfigDict(extra="forbid", frozen=True)


class Progress(BaseModel):
    done: int = Field(..., ge=0)
    total: int = Field(..., ge=0)
    model_config = ConfigDict(extra="forbid", frozen=True)


class PromptSpec(BaseModel):
    kind: Literal["text", "choice"] = "text"
    body: str
    options: List[PromptOption] = Field(default_factory=list)
    progress: Optional[Progress] = None
    notice: Optional[str] = None
    field: Optional[str] = None
    model_config = ConfigDict(extra="forbid", frozen=True)


_CONFIRM_OPTIONS = [
    PromptOption(id=OPTION_CONFIRM, label="Yes, that's right"),
    PromptOption(id=OPTION_REJECT, label="No, that's wrong"),
]


def _progress(p: Optional[Tuple[int, int]]) -> Optional[Progress]:
    if p is None:
        return None
    return Progress(done=p[0], total=p[1])


def request_field(
    definition: FieldDefinition,
    *,
    progress: Optional[Tuple[int, int]] = None,
    notice: Optional[str] = None,
    existing: Optional[FieldSlot] = None,
) -> PromptSpec:
    """
    Ask for one field. When the slot holds an inferred value waiting for the
    user's approval, ask a yes/no question about that value instead.
    """
    if existing is not None and existing.requires_confirmation and existing.value:
        return PromptSpec(
            kind="choice",
            body=f'{definition.label}: is "{existing.value}" correct? '
                 f"Reply yes to keep it or send the right {definition.label.lower()}.",
            options=list(_CONFIRM_OPTIONS),
            progress=_progress(progress),
            notice=notice,
            field=definition.name,
        )
    return PromptSpec(
        kind="text",
        body=definition.prompt,
        progress=_progress(progress),
        notice=notice,
        field=definition.name,
    )


def _entity_summary(data: Optional[Mapping[str, Any]]) -> str:
    if not data:
        return ""
    parts = []
    for key in ("description", "model", "brand", "location", "customer"):
        v = data.get(key)
        if v:
            parts.append(f"{key}: {v}")
    return "; ".join(parts)


def confirm_entity(form: FormState, *, progress: Optional[Tuple[int, int]] = None, notice: Optional[str] = None) -> PromptSpec:
    summary = _entity_summary(form.linked_entity_data)
    body = f"I found equipment {form.linked_entity_id}"
    body += f" ({summary})." if summary else "."
    body += " Is this the right one?"
    return PromptSpec(
        kind="choice",
        body=body,
        options=list(_CONFIRM_OPTIONS),
        progress=_progress(progress),
        notice=notice,
    )


def confirm_bulk(staged: Mapping[str, FieldCandidate], *, registry: SchemaRegistry, form_type: FormType | str) -> PromptSpec:
    lines: List[str] = []
    for d in registry.get_definition(form_type):
        cand = staged.get(d.name)
        if cand is not None:
            lines.append(f"- {d.label}: {cand.value}")
    body = "I read the following from your image:\n" + "\n".join(lines) + "\nIs all of this correct?"
    return PromptSpec(kind="choice", body=body, options=list(_CONFIRM_OPTIONS))


def not_understood(previous: PromptSpec) -> PromptSpec:
    """Re-issue the previous confirmation question with a short notice."""
    return previous.model_copy(update={"notice": "Sorry, I didn't understand. Please answer yes or no."})


def completed(record_id: str) -> PromptSpec:
    return PromptSpec(kind="text", body=f"Your report has been created. Reference: {record_id}.")


def cancelled() -> PromptSpec:
    return PromptSpec(kind="text", body="Your report has been cancelled. Nothing was submitted.")


def finalizing() -> PromptSpec:
    return PromptSpec(kind="text", body="Your report is being submitted. I'll confirm shortly.")


def expired() -> PromptSpec:
    return PromptSpec(kind="text", body="This report was closed after a period of inactivity.")


def describe_derived(derived: Optional[Dict[str, Any]]) -> Optional[str]:
    """Notice line for auxiliary data (nearest service center + ETA), if present."""
    if not derived:
        return None
    center = derived.get("service_center")
    eta = derived.get("eta_minutes")
    if not center:
        return None
    if eta is None:
        return f"Nearest service center: {center}."
    return f"Nearest service center: {center} (about {int(eta)} min away)."
