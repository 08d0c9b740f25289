"""
config.py, author: roger erismann
Runtime configuration flags and tunables for the field-intake engine.

Values come from the process environment (optionally seeded from a local .env
through python-dotenv). Everything has a default so tests and the CLI run
without any configuration.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _to_bool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "y", "on"}


def _to_int(val: str | None, default: int) -> int:
    if val is None or not str(val).strip():
        return default
    try:
        return int(str(val).strip())
    except ValueError:
        return default


def _to_float(val: str | None, default: float) -> float:
    if val is None or not str(val).strip():
        return default
    try:
        return float(str(val).strip())
    except ValueError:
        return default


USE_LLM_EXTRACTOR: bool = _to_bool(os.getenv("USE_LLM_EXTRACTOR"), default=False)
USE_VISION_EXTRACTOR: bool = _to_bool(os.getenv("USE_VISION_EXTRACTOR"), default=False)


@dataclass(frozen=True)
class Settings:
    max_write_attempts: int = 3
    retry_base_delay_ms: int = 50
    retry_max_delay_ms: int = 1000

    confidence_threshold: int = 60
    contextual_confidence: int = 95
    short_value_max_len: int = 20

    finalize_claim_ttl_seconds: int = 120
    session_timeout_minutes: int = 30

    use_llm_extractor: bool = False
    use_vision_extractor: bool = False
    openai_model: str = "gpt-4o-mini"

    entity_cache_ttl_seconds: int = 300
    average_speed_kmh: float = 40.0


def load_settings() -> Settings:
    """Build Settings from the environment (FIELD_INTAKE_* overrides)."""
    d = Settings()
    return Settings(
        max_write_attempts=_to_int(os.getenv("FIELD_INTAKE_MAX_WRITE_ATTEMPTS"), d.max_write_attempts),
        retry_base_delay_ms=_to_int(os.getenv("FIELD_INTAKE_RETRY_BASE_MS"), d.retry_base_delay_ms),
        retry_max_delay_ms=_to_int(os.getenv("FIELD_INTAKE_RETRY_MAX_MS"), d.retry_max_delay_ms),
        confidence_threshold=_to_int(os.getenv("FIELD_INTAKE_CONFIDENCE_THRESHOLD"), d.confidence_threshold),
        contextual_confidence=_to_int(os.getenv("FIELD_INTAKE_CONTEXTUAL_CONFIDENCE"), d.contextual_confidence),
        short_value_max_len=_to_int(os.getenv("FIELD_INTAKE_SHORT_VALUE_MAX_LEN"), d.short_value_max_len),
        finalize_claim_ttl_seconds=_to_int(os.getenv("FIELD_INTAKE_FINALIZE_CLAIM_TTL"), d.finalize_claim_ttl_seconds),
        session_timeout_minutes=_to_int(os.getenv("FIELD_INTAKE_SESSION_TIMEOUT_MINUTES"), d.session_timeout_minutes),
        use_llm_extractor=USE_LLM_EXTRACTOR,
        use_vision_extractor=USE_VISION_EXTRACTOR,
        openai_model=os.getenv("OPENAI_MODEL", d.openai_model),
        entity_cache_ttl_seconds=_to_int(os.getenv("FIELD_INTAKE_ENTITY_CACHE_TTL"), d.entity_cache_ttl_seconds),
        average_speed_kmh=_to_float(os.getenv("FIELD_INTAKE_AVERAGE_SPEED_KMH"), d.average_speed_kmh),
    )
