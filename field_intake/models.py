"""
Project: Field Intake
File: models.py
Author: roger erismann

LLM wiring (ModelFactory / StructuredModel over outlines + openai, and a
LangChain ChatOpenAI helper), the strict JSON schemas the models fill, and the
two model-backed extractors: free-text field extraction and image (vision)
extraction.

Both extractors return FieldCandidate lists. They raise on transport errors;
the extractor registry wraps them so the engine sees an empty list instead.

Methods & Classes
- Constants: NOT_PROVIDED
- class StructuredModel(client, model_name): __call__(prompt, output_type) -> {"parsed", "raw", "tokens", "model"}
- class ModelFactory: get() -> StructuredModel (cached); reads OPENAI_API_KEY/OPENAI_MODEL
- chatllm_invoke(messages, *, temperature, max_tokens, response_format, model_name) -> dict
- AIFieldExtraction, VisionFieldExtraction: strict schemas (extra="forbid")
- candidates_from_extraction(parsed, *, source, raw_input, form_fields) -> list[FieldCandidate]
- class BaseExtractor: build_prompt / extract / extract_candidates
- class LLMFieldExtractor(BaseExtractor)
- class VisionExtractor(caption_extractor=None, model_name=None)

Dependencies
- External: outlines, openai, pydantic, langchain_openai
- Internal: form_state, schema_registry
- Stdlib: base64, json, os, functools.lru_cache, typing
"""

from __future__ import annotations

import base64
import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import openai
import outlines
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ConfigDict, Field

from field_intake.form_state import FieldCandidate, SlotSource
from field_intake.schema_registry import SchemaRegistry, default_registry

NOT_PROVIDED = "Not provided"


class StructuredModel:
    """
    Unified entry point for Outlines+OpenAI structured calls.

    Return shape (always the same):
        {
          "parsed": <Pydantic instance of output_type>,
          "raw": <str>,
          "tokens": {"in": int, "out": int},
          "model": <str>,
        }
    """

    def __init__(self, client: openai.OpenAI, model_name: str):
        self._client = client
        self._model_name = model_name
        self._fn = outlines.from_openai(client, model_name)

    def __call__(self, prompt: str, output_type: type[BaseModel], **kwargs) -> dict:
        resp = self._fn(prompt, output_type, **kwargs)

        if isinstance(resp, BaseModel):
            parsed = resp
            raw_text = parsed.model_dump_json(exclude_none=False)
        else:
            parsed = output_type.model_validate_json(resp)
            raw_text = resp

        return {"parsed": parsed, "raw": raw_text, "tokens": {"in": 0, "out": 0}, "model": self._model_name}


class ModelFactory:
    @staticmethod
    @lru_cache(maxsize=1)
    def get() -> StructuredModel:
        if not os.getenv("OPENAI_API_KEY"):
            raise RuntimeError("OPENAI_API_KEY is not set")
        model_name = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        client = openai.OpenAI()
        return StructuredModel(client, model_name)


def chatllm_invoke(
    messages: List[Dict[str, Any]],
    *,
    temperature: float = 0.0,
    max_tokens: Optional[int] = None,
    response_format: Optional[Dict[str, str]] = None,
    model_name: Optional[str] = None,
) -> Dict[str, Any]:
    mdl = model_name or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    llm = ChatOpenAI(
        model=mdl,
        temperature=temperature,
        max_tokens=max_tokens,
        **({"response_format": response_format} if response_format else {})
    )
    ai_msg = llm.invoke(messages)

    meta = getattr(ai_msg, "response_metadata", {}) or {}
    usage = meta.get("token_usage", {}) or {}
    tokens = {
        "in": int(usage.get("prompt_tokens", usage.get("input_tokens", 0)) or 0),
        "out": int(usage.get("completion_tokens", usage.get("output_tokens", 0)) or 0),
    }

    content = ai_msg.content if isinstance(ai_msg.content, str) else str(ai_msg.content)
    parsed: Optional[Any] = None
    if response_format and response_format.get("type") == "json_object":
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError:
            parsed = None

    return {"text": content, "parsed": parsed, "tokens": tokens, "model": mdl, "raw": ai_msg}


# ---------- Strict schemas (LLM-facing) ----------

class AIFieldExtraction(BaseModel):
    equipment_code: str = Field(...)
    employee_number: str = Field(...)
    description: str = Field(...)
    location: str = Field(...)
    confidence: float = Field(..., ge=0.0, le=1.0)
    model_config = ConfigDict(extra="forbid")


class VisionFieldExtraction(BaseModel):
    equipment_code: str = Field(default=NOT_PROVIDED)
    description: str = Field(default=NOT_PROVIDED)
    equipment_type: str = Field(default=NOT_PROVIDED)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    model_config = ConfigDict(extra="ignore")


_FIELD_NAMES = ("equipment_code", "employee_number", "description", "location")


def _provided(v: Optional[str]) -> bool:
    return bool(v) and v.strip() != "" and v.strip() != NOT_PROVIDED


def candidates_from_extraction(
    parsed: BaseModel,
    *,
    source: SlotSource,
    raw_input: Optional[str],
    form_fields: Sequence[str],
) -> List[FieldCandidate]:
    """Map a filled schema onto candidates for the fields this form type has."""
    conf = int(round(float(getattr(parsed, "confidence", 0.5) or 0.5) * 100))
    out: List[FieldCandidate] = []
    for name in _FIELD_NAMES:
        if name not in form_fields:
            continue
        value = getattr(parsed, name, None)
        if not _provided(value):
            continue
        out.append(
            FieldCandidate(
                field_hint=name,
                value=value.strip(),
                confidence=max(0, min(conf, 100)),
                source=source,
                raw_input=raw_input,
            )
        )
    return out


def build_prompt(*, form_type: str, fields: Sequence[str], pending_field: Optional[str], user_text: str) -> str:
    pending = f"The user was just asked for: {pending_field}.\n" if pending_field else ""
    return (
        "You extract maintenance-report fields from a user's chat message.\n"
        f"Report type: {form_type}. Fields of interest: {', '.join(fields)}.\n"
        f"{pending}"
        "Rules:\n"
        f"- Copy values verbatim from the message; if a field is absent, use exactly '{NOT_PROVIDED}'.\n"
        "- equipment_code is 5-10 digits; employee_number is the person's staff id.\n"
        "- description is the problem the user reports, in their words.\n"
        "- confidence is your overall confidence between 0 and 1.\n"
        "- Output only JSON matching the schema.\n\n"
        f"Message:\n{user_text}"
    )


class BaseExtractor:
    schema_cls: type[BaseModel] = AIFieldExtraction
    source: SlotSource = SlotSource.AI

    def __init__(self, registry: Optional[SchemaRegistry] = None):
        self._registry = registry or default_registry()

    def _fields(self, form_type: str) -> List[str]:
        return [d.name for d in self._registry.get_definition(form_type)]

    def build_prompt(self, user_text: str, *, form_type: str, pending_field: Optional[str]) -> str:
        raise NotImplementedError

    def extract(self, user_text: str, *, form_type: str, pending_field: Optional[str] = None) -> Dict[str, Any]:
        model = ModelFactory.get()
        prompt = self.build_prompt(user_text, form_type=form_type, pending_field=pending_field)
        return model(prompt, self.schema_cls)

    def extract_candidates(self, raw_input: Any, *, form_type: str, pending_field: Optional[str] = None) -> List[FieldCandidate]:
        text = str(raw_input or "").strip()
        if not text:
            return []
        out = self.extract(text, form_type=form_type, pending_field=pending_field)
        return candidates_from_extraction(
            out["parsed"], source=self.source, raw_input=text, form_fields=self._fields(form_type)
        )


class LLMFieldExtractor(BaseExtractor):
    schema_cls = AIFieldExtraction
    source = SlotSource.AI

    def build_prompt(self, user_text: str, *, form_type: str, pending_field: Optional[str]) -> str:
        return build_prompt(
            form_type=form_type,
            fields=self._fields(form_type),
            pending_field=pending_field,
            user_text=user_text,
        )


_VISION_SYSTEM = (
    "You read photos sent by field staff reporting broken equipment. "
    "Return a JSON object with keys equipment_code (5-10 digit code visible on a label or plate), "
    "description (visible problem, short), equipment_type, and confidence (0-1). "
    f"Use '{NOT_PROVIDED}' for anything you cannot see."
)


def _image_bytes(raw_input: Any) -> tuple[bytes, str]:
    """Accept bytes, a path, or {"path"|"bytes", "caption"}; returns (bytes, caption)."""
    caption = ""
    data = raw_input
    if isinstance(raw_input, dict):
        caption = str(raw_input.get("caption") or "")
        data = raw_input.get("bytes") or raw_input.get("path")
    if isinstance(data, (bytes, bytearray)):
        return bytes(data), caption
    if isinstance(data, (str, Path)):
        return Path(data).read_bytes(), caption
    raise TypeError(f"unsupported image input: {type(raw_input).__name__}")


class VisionExtractor:
    """Image -> candidates via a multimodal chat call; any caption is also run through `caption_extractor`."""

    def __init__(self, caption_extractor=None, *, model_name: Optional[str] = None, registry: Optional[SchemaRegistry] = None):
        self._caption_extractor = caption_extractor
        self._model_name = model_name
        self._registry = registry or default_registry()

    def extract_candidates(self, raw_input: Any, *, form_type: str, pending_field: Optional[str] = None) -> List[FieldCandidate]:
        image, caption = _image_bytes(raw_input)
        b64 = base64.b64encode(image).decode("ascii")
        messages = [
            {"role": "system", "content": _VISION_SYSTEM},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": caption or "What does this photo show?"},
                    {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{b64}"}},
                ],
            },
        ]
        out = chatllm_invoke(messages, response_format={"type": "json_object"}, model_name=self._model_name)
        parsed = VisionFieldExtraction.model_validate(out["parsed"] or {})

        fields = [d.name for d in self._registry.get_definition(form_type)]
        cands = candidates_from_extraction(parsed, source=SlotSource.VISION, raw_input=None, form_fields=fields)

        if caption.strip() and self._caption_extractor is not None:
            seen = {c.field_hint for c in cands}
            for c in self._caption_extractor.extract_candidates(caption, form_type=form_type, pending_field=None):
                if c.field_hint not in seen:
                    cands.append(c)
        return cands
