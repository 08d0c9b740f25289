# field_intake/app_logger.py
"""
One JSON line per engine event, written to LOG_DIR/LOG_FILE.

Every line carries the conversation key; when a SessionRecord is at hand it
also carries the record's state, version and form type, so one conversation
can be replayed by filtering on `key` and ordering by `version`. Store
conflicts add the attempt number and the expected/actual versions.

Line shape:
  {"ts", "lvl", "event", "cid", "key", "state"?, "version"?, "form_type"?,
   "attempt"?, "payload"?}

Env overrides: LOG_DIR, LOG_FILE, LOG_LEVEL, LOG_STDOUT
"""
from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from field_intake.form_state import SessionRecord

LOGGER_NAME = "field_intake"

# optional top-level keys, in output order
_CONTEXT_KEYS = ("key", "state", "version", "form_type", "attempt")


class _JsonlFormatter(logging.Formatter):
    converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%SZ"),
            "lvl": record.levelname,
            "event": record.getMessage(),
            "cid": getattr(record, "cid", None),
        }
        context = getattr(record, "context", None) or {}
        for k in _CONTEXT_KEYS:
            if context.get(k) is not None:
                line[k] = context[k]
        payload = getattr(record, "payload", None)
        if payload:
            line["payload"] = payload
        return json.dumps(line, ensure_ascii=False, separators=(",", ":"), default=str)


_logger: Optional[logging.Logger] = None


def _level(value: str | int | None) -> int:
    if isinstance(value, int):
        return value
    return getattr(logging, str(value or "INFO").upper(), logging.INFO)


def configure(*, root_dir: str | Path = "logs", filename: str = "field_intake.jsonl", to_stdout: bool = False) -> logging.Logger:
    """Attach the JSONL file handler (and the optional stdout mirror) once."""
    global _logger
    if _logger is not None:
        return _logger

    log_dir = Path(os.getenv("LOG_DIR", str(root_dir)))
    log_dir.mkdir(parents=True, exist_ok=True)
    lvl = _level(os.getenv("LOG_LEVEL"))

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(lvl)
    logger.propagate = False

    handlers: list[logging.Handler] = [logging.FileHandler(log_dir / os.getenv("LOG_FILE", filename), encoding="utf-8")]
    if to_stdout or os.getenv("LOG_STDOUT", "").strip().lower() in {"1", "true", "yes"}:
        handlers.append(logging.StreamHandler())
    for h in handlers:
        h.setFormatter(_JsonlFormatter())
        logger.addHandler(h)

    _logger = logger
    return logger


def reset() -> None:
    """Close and drop the handlers; the next event reconfigures from env (tests move LOG_DIR)."""
    global _logger
    logger = logging.getLogger(LOGGER_NAME)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    _logger = None


def get() -> logging.Logger:
    return _logger or configure()


def record_context(record: Optional[SessionRecord], conversation_key: Optional[str] = None) -> Dict[str, Any]:
    """Top-level log keys for a session record; terminal records have no form."""
    ctx: Dict[str, Any] = {"key": conversation_key}
    if record is None:
        return ctx
    ctx["key"] = conversation_key or record.conversation_key
    ctx["state"] = record.state.value
    ctx["version"] = record.version
    if record.form is not None:
        ctx["form_type"] = record.form.form_type
    return ctx


def log_event(
    event: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    correlation_id: Optional[str] = None,
    conversation_key: Optional[str] = None,
    record: Optional[SessionRecord] = None,
    attempt: Optional[int] = None,
    level: int = logging.INFO,
) -> None:
    context = record_context(record, conversation_key)
    context["attempt"] = attempt
    get().log(level, event, extra={"cid": correlation_id, "context": context, "payload": payload or None})


def log_flow_event(event: str, payload: Optional[Dict[str, Any]] = None, **kw: Any) -> None:
    """Orchestrator step, logged as 'Flow.<event>'."""
    log_event(f"Flow.{event}", payload, **kw)


def log_error_event(
    event: str,
    error_obj: Dict[str, Any],
    *,
    conversation_key: Optional[str] = None,
    record: Optional[SessionRecord] = None,
) -> None:
    """Error envelope as the payload; the envelope's correlation id becomes the line's cid."""
    log_event(
        event,
        error_obj,
        correlation_id=error_obj.get("correlation_id"),
        conversation_key=conversation_key,
        record=record,
        level=logging.ERROR,
    )


def log_version_conflict(
    conversation_key: str,
    *,
    attempt: int,
    max_attempts: int,
    expected: int,
    actual: Optional[int],
    correlation_id: Optional[str] = None,
) -> None:
    log_event(
        "Store.VERSION_CONFLICT",
        {"max_attempts": max_attempts, "expected": expected, "actual": actual},
        correlation_id=correlation_id,
        conversation_key=conversation_key,
        attempt=attempt,
        level=logging.WARNING,
    )


def log_retries_exhausted(conversation_key: str, *, attempts: int, correlation_id: Optional[str] = None) -> None:
    log_event(
        "Store.RETRIES_EXHAUSTED",
        correlation_id=correlation_id,
        conversation_key=conversation_key,
        attempt=attempts,
        level=logging.ERROR,
    )
