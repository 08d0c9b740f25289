"""
tests/unit/test_retry_store.py

What this tests (and why)
-------------------------
1) The store's conditional write: version 0 means "absent", every write bumps
   the version by one, a stale expected version raises VersionConflict.
2) Backoff: 50ms * 2^(n-1), +/-25% jitter, capped at 1000ms.
3) optimistic_transaction re-applies the mutation to the fresh record after a
   conflict, gives up with RetriesExhausted after max_attempts, and lets a
   mutation decline to write.
4) Two threads hammering one key lose no update.
"""

import threading

import pytest

from field_intake.error_handler import RetriesExhausted, VersionConflict
from field_intake.form_state import ConversationState, new_form, with_updates
from field_intake.retry import Step, backoff_delay, optimistic_transaction
from field_intake.session_store import InMemorySessionStore

COLLECTING = ConversationState.COLLECTING


def _counter(rec):
    if rec is None or rec.form is None:
        return 0
    return (rec.form.derived_data or {}).get("n", 0)


def _increment(rec):
    form = rec.form if rec is not None and rec.form is not None else new_form("VEHICLE")
    n = _counter(rec) + 1
    return Step(form=with_updates(form, derived_data={"n": n}), state=COLLECTING, outcome=n)


class RacingStore(InMemorySessionStore):
    """Sneaks in a competing write right before the first `races` writes."""

    def __init__(self, races=1):
        super().__init__()
        self.races = races

    def write(self, key, form, state, expected_version):
        if self.races > 0:
            self.races -= 1
            cur = self.read(key)
            super().write(key, _increment(cur).form, state, cur.version if cur else 0)
        return super().write(key, form, state, expected_version)


class AlwaysConflictStore(InMemorySessionStore):
    def write(self, key, form, state, expected_version):
        raise VersionConflict(key, expected_version, expected_version + 1)


def test_store_cas():
    store = InMemorySessionStore()
    rec = store.write("k", new_form("VEHICLE"), COLLECTING, 0)
    assert rec.version == 1
    assert store.write("k", rec.form, COLLECTING, 1).version == 2

    with pytest.raises(VersionConflict) as exc:
        store.write("k", rec.form, COLLECTING, 1)
    assert (exc.value.expected, exc.value.actual) == (1, 2)

    with pytest.raises(VersionConflict):
        store.write("new", None, COLLECTING, 1)
    assert list(store.keys()) == ["k"]


@pytest.mark.parametrize("attempt, expected", [(1, 0.05), (2, 0.1), (3, 0.2), (5, 0.8), (6, 1.0), (10, 1.0)])
def test_backoff_without_jitter(attempt, expected):
    assert backoff_delay(attempt, rng=lambda: 0.5) == pytest.approx(expected)


def test_backoff_jitter_bounds():
    assert backoff_delay(1, rng=lambda: 0.0) == pytest.approx(0.0375)
    assert backoff_delay(1, rng=lambda: 1.0) == pytest.approx(0.0625)
    assert backoff_delay(10, rng=lambda: 1.0) == pytest.approx(1.0)


def test_conflict_reapplies_mutation_on_fresh_record():
    store = InMemorySessionStore()
    optimistic_transaction(store, "k", _increment)

    racing = RacingStore(races=1)
    racing._records = dict(store._records)
    sleeps = []
    seen = []

    def mutate(rec):
        seen.append(_counter(rec))
        return _increment(rec)

    res = optimistic_transaction(racing, "k", mutate, sleep=sleeps.append, rng=lambda: 0.5)
    assert res.written
    assert res.attempts == 2
    assert seen == [1, 2]
    assert res.outcome == 3
    assert res.record.version == 3
    assert sleeps == [pytest.approx(0.05)]


def test_retries_exhausted():
    sleeps = []
    calls = []

    def mutate(rec):
        calls.append(rec)
        return _increment(rec)

    with pytest.raises(RetriesExhausted) as exc:
        optimistic_transaction(AlwaysConflictStore(), "k", mutate, max_attempts=3, sleep=sleeps.append)
    assert exc.value.attempts == 3
    assert len(calls) == 3
    assert len(sleeps) == 2


def test_mutation_may_decline_to_write():
    store = InMemorySessionStore()
    res = optimistic_transaction(store, "k", lambda rec: Step(form=None, state=COLLECTING, outcome="skip", write=False))
    assert not res.written
    assert res.outcome == "skip"
    assert store.read("k") is None


def test_two_threads_lose_no_update():
    store = InMemorySessionStore()
    per_thread = 25
    barrier = threading.Barrier(2)
    errors = []

    def worker():
        barrier.wait()
        try:
            for _ in range(per_thread):
                optimistic_transaction(store, "k", _increment, max_attempts=200, sleep=lambda _s: None)
        except Exception as e:  # surfaced by the assert below
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    rec = store.read("k")
    assert _counter(rec) == 2 * per_thread
    assert rec.version == 2 * per_thread
