"""
tests/unit/test_error_envelope.py

What this tests (and why)
-------------------------
1) make_error always produces the full envelope, defaulting the user message
   and next actions from the code.
2) Unknown codes/origins degrade to UNKNOWN rather than raising.
3) The JSONL logger writes one parseable line per event, with the session
   record's key, state, version and form type, and attempt numbers for
   store conflicts.
4) Settings read FIELD_INTAKE_* overrides and ignore junk values.
"""

import json

from field_intake import app_logger, config
from field_intake.error_handler import (
    ErrorCode,
    NextAction,
    make_error,
    new_correlation_id,
    summarize_for_log,
)
from field_intake.form_state import ConversationState, SessionRecord, new_form

ENVELOPE_KEYS = {
    "code",
    "origin",
    "retryable",
    "user_message",
    "next_actions",
    "dev_message",
    "details",
    "context",
    "timestamp",
    "correlation_id",
}


def test_make_error_defaults():
    err = make_error(code=ErrorCode.FINALIZATION_FAILURE, origin="finalizer", retryable=True, correlation_id="evt-1")
    assert set(err) == ENVELOPE_KEYS
    assert err["code"] == "FINALIZATION_FAILURE"
    assert err["origin"] == "finalizer"
    assert err["retryable"] is True
    assert err["next_actions"] == ["RESEND", "RETRY_LATER"]
    assert "submit" in err["user_message"]
    assert err["correlation_id"] == "evt-1"
    assert err["dev_message"] is None


def test_make_error_unknowns_degrade():
    err = make_error(code="NOPE", origin="mars", retryable=False)
    assert err["code"] == "UNKNOWN_ERROR"
    assert err["origin"] == "unknown"
    assert err["correlation_id"].startswith("evt-")


def test_next_actions_deduped_and_capped():
    err = make_error(
        code=ErrorCode.VERSION_CONFLICT,
        retryable=True,
        next_actions=[NextAction.RESEND, "RESEND", NextAction.RETRY_LATER, NextAction.START_NEW, NextAction.TRY_REPHRASE],
    )
    assert err["next_actions"] == ["RESEND", "RETRY_LATER", "START_NEW"]


def test_summarize_for_log():
    assert summarize_for_log(None) == ""
    err = make_error(code=ErrorCode.VERSION_CONFLICT, origin="store", retryable=True, correlation_id="evt-9")
    assert summarize_for_log(err) == "VERSION_CONFLICT origin=store retryable=True cid=evt-9"


def test_correlation_id_prefix():
    a, b = new_correlation_id("start"), new_correlation_id("start")
    assert a.startswith("start-") and a != b


def _log_lines(tmp_path, monkeypatch, emit):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    monkeypatch.setenv("LOG_FILE", "events.jsonl")
    app_logger.reset()
    try:
        emit()
        for h in app_logger.get().handlers:
            h.flush()
        return [json.loads(line) for line in (tmp_path / "events.jsonl").read_text(encoding="utf-8").splitlines()]
    finally:
        app_logger.reset()


def test_jsonl_logger_carries_record_context(tmp_path, monkeypatch):
    rec = SessionRecord(
        conversation_key="k",
        state=ConversationState.COLLECTING,
        form=new_form("VEHICLE"),
        version=4,
    )
    [row] = _log_lines(
        tmp_path,
        monkeypatch,
        lambda: app_logger.log_flow_event("FIELD_REQUESTED", {"field": "location"}, correlation_id="evt-1", record=rec),
    )
    assert row["event"] == "Flow.FIELD_REQUESTED"
    assert row["lvl"] == "INFO"
    assert row["cid"] == "evt-1"
    assert (row["key"], row["state"], row["version"], row["form_type"]) == ("k", "COLLECTING", 4, "VEHICLE")
    assert row["payload"] == {"field": "location"}
    assert "attempt" not in row


def test_jsonl_logger_store_and_terminal_lines(tmp_path, monkeypatch):
    done = SessionRecord(conversation_key="k", state=ConversationState.TERMINAL_COMPLETED, version=7)

    def emit():
        app_logger.log_version_conflict("k", attempt=2, max_attempts=3, expected=5, actual=6, correlation_id="evt-2")
        app_logger.log_retries_exhausted("k", attempts=3)
        app_logger.log_event("Session.TIMED_OUT", record=done)

    conflict, exhausted, terminal = _log_lines(tmp_path, monkeypatch, emit)
    assert conflict["event"] == "Store.VERSION_CONFLICT"
    assert conflict["lvl"] == "WARNING"
    assert conflict["attempt"] == 2
    assert conflict["payload"] == {"max_attempts": 3, "expected": 5, "actual": 6}
    assert exhausted["lvl"] == "ERROR"
    assert exhausted["attempt"] == 3
    assert "payload" not in exhausted
    assert (terminal["key"], terminal["state"], terminal["version"]) == ("k", "TERMINAL_COMPLETED", 7)
    assert "form_type" not in terminal


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("FIELD_INTAKE_CONFIDENCE_THRESHOLD", "70")
    monkeypatch.setenv("FIELD_INTAKE_MAX_WRITE_ATTEMPTS", "five")
    monkeypatch.setenv("FIELD_INTAKE_AVERAGE_SPEED_KMH", "55.5")
    s = config.load_settings()
    assert s.confidence_threshold == 70
    assert s.max_write_attempts == 3
    assert s.average_speed_kmh == 55.5
    assert s.short_value_max_len == 20
