"""
Project: Field Intake
File: extractor_registry.py
Author: roger erismann

Validating registry that maps inbound input kinds ("text", "image",
"location") to extractor instances. Ensures every kind has an extractor,
catches typos, and wraps each extractor so that transport/model failures are
logged and turned into an empty candidate list instead of reaching the engine.

Methods & Classes
- INPUT_KINDS: the canonical input kinds
- class SafeExtractor(inner, kind): extract_candidates(...) -> list (never raises)
- class ExtractorRegistry(mapping: dict[str, extractor])
  - _validate() -> None: required kinds present, no unknown kinds, each has extract_candidates
  - get(kind) -> SafeExtractor
- default_registry(settings=None) -> ExtractorRegistry

Dependencies
- Internal: extractors (RegexExtractor, LocationExtractor, CompositeExtractor),
            models (LLMFieldExtractor, VisionExtractor), config, app_logger, error_handler
- Stdlib: logging, typing
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from field_intake import app_logger
from field_intake.config import Settings, load_settings
from field_intake.error_handler import ErrorCode, ErrorOrigin, make_error
from field_intake.extractors import CompositeExtractor, LocationExtractor, RegexExtractor
from field_intake.form_state import FieldCandidate
from field_intake.models import LLMFieldExtractor, VisionExtractor

LOGGER = logging.getLogger("field_intake.extractor_registry")

INPUT_KINDS = ("text", "image", "location")


class SafeExtractor:
    def __init__(self, inner: Any, kind: str):
        self._inner = inner
        self.kind = kind

    @property
    def inner(self) -> Any:
        return self._inner

    def extract_candidates(
        self,
        raw_input: Any,
        *,
        form_type: str,
        pending_field: Optional[str] = None,
        correlation_id: Optional[str] = None,
        conversation_key: Optional[str] = None,
    ) -> List[FieldCandidate]:
        try:
            out = self._inner.extract_candidates(raw_input, form_type=form_type, pending_field=pending_field)
        except Exception as e:
            err = make_error(
                code=ErrorCode.EXTRACTOR_FAILURE,
                origin=ErrorOrigin.EXTRACTOR,
                retryable=True,
                dev_message=f"{type(e).__name__}: {e}",
                details={"extractor": type(self._inner).__name__, "kind": self.kind},
                context={"form_type": str(form_type), "pending_field": pending_field},
                correlation_id=correlation_id,
            )
            app_logger.log_error_event("Extractor.FAILED", err, conversation_key=conversation_key)
            return []
        return list(out or [])


class ExtractorRegistry:
    def __init__(self, mapping: Mapping[str, Any]):
        self._mapping: Dict[str, Any] = dict(mapping)
        self._validate()

    def _validate(self) -> None:
        missing = [k for k in INPUT_KINDS if k not in self._mapping]
        wrong = [
            k for k, ex in self._mapping.items()
            if k in INPUT_KINDS and not callable(getattr(ex, "extract_candidates", None))
        ]
        if missing or wrong:
            LOGGER.error("extractor_registry_invalid", extra={"missing": missing, "wrong": wrong})
            raise RuntimeError(f"Extractor registry invalid. missing={missing} wrong={wrong}")

        unknown = [k for k in self._mapping if k not in INPUT_KINDS]
        if unknown:
            LOGGER.error("extractor_registry_unknown_kinds", extra={"unknown": unknown})
            raise RuntimeError(f"Unknown input kinds in registry: {unknown}")

        LOGGER.info("extractor_registry_validated", extra={"kinds": sorted(self._mapping)})

    def get(self, kind: str) -> SafeExtractor:
        ex = self._mapping.get(kind)
        if ex is None:
            LOGGER.error("extractor_not_found", extra={"kind": kind})
            raise KeyError(f"No extractor for input kind: {kind}")
        return SafeExtractor(ex, kind)


def default_registry(settings: Optional[Settings] = None) -> ExtractorRegistry:
    """Regex (+ LLM when enabled) for text, vision for images when enabled, coordinates for locations."""
    s = settings or load_settings()
    regex = RegexExtractor()

    text_members: List[Any] = [regex]
    if s.use_llm_extractor:
        text_members.append(LLMFieldExtractor())

    if s.use_vision_extractor:
        image: Any = VisionExtractor(caption_extractor=regex, model_name=s.openai_model)
    else:
        image = _CaptionOnly(regex)

    return ExtractorRegistry(
        {
            "text": CompositeExtractor(text_members, name="text"),
            "image": image,
            "location": LocationExtractor(),
        }
    )


class _CaptionOnly:
    """Image handling when vision is disabled: only the caption text is read."""

    def __init__(self, text_extractor: Any):
        self._text = text_extractor

    def extract_candidates(self, raw_input: Any, *, form_type: str, pending_field: Optional[str] = None) -> List[FieldCandidate]:
        caption = raw_input.get("caption") if isinstance(raw_input, dict) else None
        if not caption:
            return []
        return self._text.extract_candidates(caption, form_type=form_type, pending_field=None)
