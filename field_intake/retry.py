"""
Project: Field Intake
File: retry.py
Author: roger erismann

Generic optimistic-concurrency combinator.

optimistic_transaction(store, key, mutate) reads the current record, asks
`mutate` for the next (form, state), and writes it conditioned on the version
it read. On VersionConflict it sleeps (exponential backoff with jitter), then
re-reads and calls `mutate` again on the fresh record: the same semantic
change is re-applied, never the stale bytes. After `max_attempts` conflicts it
raises RetriesExhausted so the caller can surface "please resend".

`mutate` must not call the notifier or the finalizer; it may call read-only
lookups. It may decline to write by returning Step(write=False, ...).

Methods & Classes
- Step(form, state, outcome=None, write=True)
- TransactionResult(record, outcome, attempts, written)
- backoff_delay(attempt, *, base_ms, max_ms, jitter=0.25, rng=random.random) -> float seconds
- optimistic_transaction(store, key, mutate, *, max_attempts=3, base_delay_ms=50, max_delay_ms=1000,
                         sleep=time.sleep, rng=random.random, correlation_id=None) -> TransactionResult

Dependencies
- Internal: error_handler (VersionConflict, RetriesExhausted), app_logger, ports.VersionedStore
- Stdlib: dataclasses, random, time
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from field_intake import app_logger
from field_intake.error_handler import RetriesExhausted, VersionConflict
from field_intake.form_state import ConversationState, FormState, SessionRecord
from field_intake.ports import VersionedStore


@dataclass(frozen=True)
class Step:
    form: Optional[FormState]
    state: ConversationState
    outcome: Any = None
    write: bool = True


@dataclass(frozen=True)
class TransactionResult:
    record: Optional[SessionRecord]
    outcome: Any
    attempts: int
    written: bool


Mutation = Callable[[Optional[SessionRecord]], Step]


def backoff_delay(
    attempt: int,
    *,
    base_ms: int = 50,
    max_ms: int = 1000,
    jitter: float = 0.25,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay in seconds before retry number `attempt` (1-based): base * 2^(attempt-1), ±jitter, capped."""
    raw = min(base_ms * (2 ** max(attempt - 1, 0)), max_ms)
    spread = raw * jitter
    delay = raw + (rng() * 2 - 1) * spread
    return max(0.0, min(delay, max_ms)) / 1000.0


def optimistic_transaction(
    store: VersionedStore,
    key: str,
    mutate: Mutation,
    *,
    max_attempts: int = 3,
    base_delay_ms: int = 50,
    max_delay_ms: int = 1000,
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
    correlation_id: Optional[str] = None,
) -> TransactionResult:
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last: Optional[VersionConflict] = None
    for attempt in range(1, max_attempts + 1):
        current = store.read(key)
        step = mutate(current)
        if not step.write:
            return TransactionResult(record=current, outcome=step.outcome, attempts=attempt, written=False)

        expected = current.version if current is not None else 0
        try:
            rec = store.write(key, step.form, step.state, expected)
        except VersionConflict as e:
            last = e
            app_logger.log_version_conflict(
                key,
                attempt=attempt,
                max_attempts=max_attempts,
                expected=e.expected,
                actual=e.actual,
                correlation_id=correlation_id,
            )
            if attempt < max_attempts:
                sleep(backoff_delay(attempt, base_ms=base_delay_ms, max_ms=max_delay_ms, rng=rng))
            continue
        return TransactionResult(record=rec, outcome=step.outcome, attempts=attempt, written=True)

    app_logger.log_retries_exhausted(key, attempts=max_attempts, correlation_id=correlation_id)
    raise RetriesExhausted(key, max_attempts) from last
