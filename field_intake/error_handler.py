# field_intake/error_handler.py
"""
Unified, actionable error envelope for the field-intake engine.

The orchestrator never lets recoverable conditions escape; the two failures
that do reach callers (finalization failure and exhausted version-conflict
retries) travel as an "error object" on the FlowResult. This module defines
that shape, the exception types raised internally, and small helpers to build
and log errors consistently.

Error object contract (MUST NOT BREAK):
---------------------------------------
{
  "code": <ENUM>,              # stable, app-specific
  "origin": <str>,             # "merge" | "extractor" | "lookup" | "store" | "finalizer" | "flow" | "unknown"
  "retryable": <bool>,         # can the user simply try again?
  "user_message": <str>,       # short, user-safe message (rendered verbatim)
  "next_actions": <list[str]>, # 1–3 verbs a client maps to quick replies
  "dev_message": <str|None>,   # terse technical reason, safe to log
  "details": <dict>,           # diagnostics (exception type, attempts, ...)
  "context": <dict>,           # e.g., {"form_type": "VEHICLE", "state": "COLLECTING"}
  "timestamp": <iso-utc>,
  "correlation_id": <str>      # ties together log lines for one inbound event
}

Usage:
------
err = make_error(
    code=ErrorCode.FINALIZATION_FAILURE,
    origin=ErrorOrigin.FINALIZER,
    retryable=True,
    dev_message=f"{type(exc).__name__}: {exc}",
    context={"conversation_key": key},
    correlation_id=cid,
)
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union
import uuid


# ----------------------------- Exceptions -----------------------------------

class FieldIntakeError(Exception):
    """Base class for engine exceptions."""


class VersionConflict(FieldIntakeError):
    """A conditional write saw a different version than the caller read."""

    def __init__(self, key: str, expected: int, actual: int):
        super().__init__(f"version conflict on {key!r}: expected {expected}, found {actual}")
        self.key = key
        self.expected = expected
        self.actual = actual


class RetriesExhausted(FieldIntakeError):
    """Every optimistic attempt lost its race."""

    def __init__(self, key: str, attempts: int):
        super().__init__(f"gave up on {key!r} after {attempts} conflicting attempts")
        self.key = key
        self.attempts = attempts


class FinalizationFailure(FieldIntakeError):
    pass


class UnknownFormType(FieldIntakeError, KeyError):
    pass


# ----------------------------- Enums & constants -----------------------------

class ErrorCode(str, Enum):
    VALIDATION_FAILED = "VALIDATION_FAILED"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    ENTITY_NOT_FOUND = "ENTITY_NOT_FOUND"
    EXTRACTOR_FAILURE = "EXTRACTOR_FAILURE"
    AUXILIARY_LOOKUP_FAILURE = "AUXILIARY_LOOKUP_FAILURE"
    FINALIZATION_FAILURE = "FINALIZATION_FAILURE"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ErrorOrigin(str, Enum):
    MERGE = "merge"
    EXTRACTOR = "extractor"
    LOOKUP = "lookup"
    STORE = "store"
    FINALIZER = "finalizer"
    FLOW = "flow"
    UNKNOWN = "unknown"


class NextAction(str, Enum):
    RESEND = "RESEND"
    TRY_REPHRASE = "TRY_REPHRASE"
    START_NEW = "START_NEW"
    RETRY_LATER = "RETRY_LATER"


_DEFAULT_USER_MESSAGES: Mapping[ErrorCode, str] = {
    ErrorCode.VALIDATION_FAILED: "That value doesn't look right. Please check it and send it again.",
    ErrorCode.VERSION_CONFLICT: "Several messages arrived at once and I couldn't save yours. Please resend it.",
    ErrorCode.ENTITY_NOT_FOUND: "I couldn't find equipment with that code. Please check it and send it again.",
    ErrorCode.EXTRACTOR_FAILURE: "I couldn't read details from that message. Try typing them instead.",
    ErrorCode.AUXILIARY_LOOKUP_FAILURE: "I couldn't work out the nearest service center, but your report continues.",
    ErrorCode.FINALIZATION_FAILURE: "I couldn't submit your report just now. Send any message to try again.",
    ErrorCode.SESSION_NOT_FOUND: "There is no open report for this conversation. Start a new one.",
    ErrorCode.UNKNOWN_ERROR: "Something went wrong. Please try again.",
}

_DEFAULT_ACTIONS: Mapping[ErrorCode, Tuple[NextAction, ...]] = {
    ErrorCode.VALIDATION_FAILED: (NextAction.TRY_REPHRASE,),
    ErrorCode.VERSION_CONFLICT: (NextAction.RESEND,),
    ErrorCode.ENTITY_NOT_FOUND: (NextAction.TRY_REPHRASE,),
    ErrorCode.EXTRACTOR_FAILURE: (NextAction.TRY_REPHRASE,),
    ErrorCode.AUXILIARY_LOOKUP_FAILURE: (NextAction.RETRY_LATER,),
    ErrorCode.FINALIZATION_FAILURE: (NextAction.RESEND, NextAction.RETRY_LATER),
    ErrorCode.SESSION_NOT_FOUND: (NextAction.START_NEW,),
    ErrorCode.UNKNOWN_ERROR: (NextAction.TRY_REPHRASE,),
}


# ----------------------------- Utility helpers ------------------------------

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def new_correlation_id(prefix: str = "evt") -> str:
    """
    Build a correlation id that can be grepped across log lines for one inbound event.
    """
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _ensure_actions(values: Optional[Sequence[Union[str, NextAction]]]) -> List[str]:
    if not values:
        return []
    out: List[str] = []
    for v in values:
        s = v.value if isinstance(v, NextAction) else str(v)
        if s and s not in out:
            out.append(s)
    return out[:3]


# ------------------------------- Main factory --------------------------------

def make_error(
    *,
    code: Union[ErrorCode, str],
    origin: Union[ErrorOrigin, str] = ErrorOrigin.UNKNOWN,
    retryable: bool,
    user_message: Optional[str] = None,
    next_actions: Optional[Sequence[Union[str, NextAction]]] = None,
    dev_message: Optional[str] = None,
    details: Optional[Mapping[str, Any]] = None,
    context: Optional[Mapping[str, Any]] = None,
    correlation_id: Optional[str] = None,
    now: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Construct a fully-formed error object (dict) consistent with the contract above.

    `user_message` and `next_actions` default from the code when omitted.
    """
    try:
        code_enum = ErrorCode(code)
    except ValueError:
        code_enum = ErrorCode.UNKNOWN_ERROR

    try:
        origin_enum = ErrorOrigin(origin)
    except ValueError:
        origin_enum = ErrorOrigin.UNKNOWN

    msg = (user_message or _DEFAULT_USER_MESSAGES.get(code_enum) or _DEFAULT_USER_MESSAGES[ErrorCode.UNKNOWN_ERROR]).strip()
    actions = _ensure_actions(next_actions) or [a.value for a in _DEFAULT_ACTIONS.get(code_enum, (NextAction.TRY_REPHRASE,))]

    return {
        "code": code_enum.value,
        "origin": origin_enum.value,
        "retryable": bool(retryable),
        "user_message": msg,
        "next_actions": actions,
        "dev_message": (dev_message or None),
        "details": dict(details or {}),
        "context": dict(context or {}),
        "timestamp": (now or _now_iso()),
        "correlation_id": correlation_id or new_correlation_id(),
    }


def summarize_for_log(error_obj: Optional[Mapping[str, Any]]) -> str:
    """
    Compact single-line summary for log messages.
    """
    if not error_obj:
        return ""
    code = error_obj.get("code", "UNKNOWN")
    origin = error_obj.get("origin", "unknown")
    retryable = error_obj.get("retryable", False)
    cid = error_obj.get("correlation_id", "")
    return f"{code} origin={origin} retryable={retryable} cid={cid}"
