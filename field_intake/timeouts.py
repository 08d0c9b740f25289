# field_intake/timeouts.py
"""
Session-timeout sweep. Idle non-terminal sessions are moved to
TERMINAL_TIMEOUT through the same optimistic write path the orchestrator
uses, so a racing user event simply makes one side retry.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from field_intake import app_logger
from field_intake.form_state import ConversationState, SessionRecord
from field_intake.ports import VersionedStore
from field_intake.retry import Step, TransactionResult, optimistic_transaction


def _parse_iso(ts: str) -> datetime:
    dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def is_expired(record: SessionRecord, *, now: datetime, timeout_minutes: int) -> bool:
    if record.state.is_terminal:
        return False
    return now - _parse_iso(record.last_activity) >= timedelta(minutes=timeout_minutes)


def find_expired(store: VersionedStore, *, now: Optional[datetime] = None, timeout_minutes: int = 30) -> List[str]:
    now = now or datetime.now(timezone.utc)
    out: List[str] = []
    for key in store.keys():
        rec = store.read(key)
        if rec is not None and is_expired(rec, now=now, timeout_minutes=timeout_minutes):
            out.append(key)
    return out


def expire_session(
    store: VersionedStore,
    key: str,
    *,
    now: Optional[datetime] = None,
    timeout_minutes: Optional[int] = None,
    max_attempts: int = 3,
) -> TransactionResult:
    """
    Write TERMINAL_TIMEOUT (form cleared). With `timeout_minutes`, the idle
    check is re-done on every attempt against the freshly read record.
    """
    now = now or datetime.now(timezone.utc)

    def _mutate(rec: Optional[SessionRecord]) -> Step:
        if rec is None or rec.state.is_terminal:
            return Step(form=None, state=ConversationState.TERMINAL_TIMEOUT, outcome=False, write=False)
        if timeout_minutes is not None and not is_expired(rec, now=now, timeout_minutes=timeout_minutes):
            return Step(form=rec.form, state=rec.state, outcome=False, write=False)
        return Step(form=None, state=ConversationState.TERMINAL_TIMEOUT, outcome=True)

    result = optimistic_transaction(store, key, _mutate, max_attempts=max_attempts)
    if result.written:
        app_logger.log_event("Session.TIMED_OUT", conversation_key=key, record=result.record)
    return result


def sweep(store: VersionedStore, *, now: Optional[datetime] = None, timeout_minutes: int = 30) -> List[str]:
    """Expire every idle session; returns the keys that were moved to TERMINAL_TIMEOUT."""
    expired: List[str] = []
    for key in find_expired(store, now=now, timeout_minutes=timeout_minutes):
        result = expire_session(store, key, now=now, timeout_minutes=timeout_minutes)
        if result.written:
            expired.append(key)
    return expired
