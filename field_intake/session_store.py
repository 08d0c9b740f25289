# field_intake/session_store.py
"""
In-memory versioned session store.

write() is a compare-and-swap on the record version: it succeeds only when the
stored version equals `expected_version` (0 means "no record yet") and bumps
the version by exactly one. The lock only makes the compare and the swap one
step; callers still race and resolve through retry.optimistic_transaction.
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, Optional

from field_intake.error_handler import VersionConflict
from field_intake.form_state import ConversationState, FormState, SessionRecord, now_iso


def next_record(
    key: str,
    current: Optional[SessionRecord],
    form: Optional[FormState],
    state: ConversationState,
    expected_version: int,
) -> SessionRecord:
    """Shared CAS check; returns the record to store or raises VersionConflict."""
    actual = current.version if current is not None else 0
    if actual != expected_version:
        raise VersionConflict(key, expected_version, actual)
    return SessionRecord(
        conversation_key=key,
        state=state,
        form=form,
        version=actual + 1,
        last_activity=now_iso(),
    )


class InMemorySessionStore:
    def __init__(self) -> None:
        self._records: Dict[str, SessionRecord] = {}
        self._lock = threading.Lock()

    def read(self, key: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._records.get(key)

    def write(
        self,
        key: str,
        form: Optional[FormState],
        state: ConversationState,
        expected_version: int,
    ) -> SessionRecord:
        with self._lock:
            rec = next_record(key, self._records.get(key), form, state, expected_version)
            self._records[key] = rec
            return rec

    def keys(self) -> Iterable[str]:
        with self._lock:
            return list(self._records)
