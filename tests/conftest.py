"""
tests/conftest.py

Purpose
-------
Global pytest configuration and shared fakes for the whole suite.

What this does
--------------
1) Loads `.env` values at session start and points the JSONL logger at a
   session temp dir (LOG_DIR), so test runs never write into ./logs.
2) Provides a sensible fallback for `OPENAI_MODEL` ("gpt-4o-mini").
3) Provides deterministic collaborators for the orchestrator: an in-memory
   store, a catalog entity lookup, a recording finalizer, a collecting
   notifier, and a `make_orchestrator` factory that wires them with the
   regex/location extractors and a no-op sleep.

File / module dependencies
--------------------------
- field_intake.* (system under test)
- dotenv (loads local .env for dev convenience)
- pytest (fixture system)
"""

import os
from typing import Any, Dict, List, Optional

import pytest
from dotenv import load_dotenv

from field_intake import app_logger
from field_intake.config import Settings
from field_intake.error_handler import FinalizationFailure
from field_intake.extractors import LocationExtractor, RegexExtractor
from field_intake.form_state import FieldSlot, SlotSource, new_form, with_slots
from field_intake.lookups import CatalogEntityLookup, NearestServiceCenterLookup
from field_intake.notifiers import CollectingNotifier
from field_intake.orchestrator import FlowOrchestrator
from field_intake.schema_registry import default_registry
from field_intake.session_store import InMemorySessionStore

load_dotenv()

CATALOG = [
    {"code": "4567890", "id": "EQ-1", "description": "Walk-in cooler", "location": "Store 12"},
    {"code": "1234567", "id": "EQ-2", "description": "Display fridge", "location": "Store 40"},
]

CENTERS = [
    {"id": "SC-N", "name": "North Depot", "latitude": 19.50, "longitude": -99.13},
    {"id": "SC-S", "name": "South Depot", "latitude": 19.30, "longitude": -99.15},
]


@pytest.fixture(scope="session", autouse=True)
def configure_log_root(tmp_path_factory):
    """Send every test's log lines to one session temp file."""
    log_dir = tmp_path_factory.mktemp("logs")
    os.environ["LOG_DIR"] = str(log_dir)
    os.environ.setdefault("OPENAI_MODEL", "gpt-4o-mini")
    app_logger.reset()
    yield
    app_logger.reset()


# ---- tiny fakes ----

class FakeFinalizer:
    """Records committed forms; fails the first `fail_times` commits."""

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.calls = 0
        self.committed: List[Any] = []

    def commit(self, form) -> str:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise FinalizationFailure("backend unavailable")
        self.committed.append(form)
        return f"REC-{len(self.committed)}"


class FakeImageExtractor:
    """Returns a canned candidate list for any image payload."""

    def __init__(self, candidates=None):
        self.candidates = list(candidates or [])
        self.calls = 0

    def extract_candidates(self, raw_input, *, form_type, pending_field=None):
        self.calls += 1
        return list(self.candidates)


class BoomLookup:
    def find_by_code(self, code):
        raise ConnectionError("catalog down")

    def compute(self, payload):
        raise TimeoutError("routing down")


def filled_form(form_type: str, confidence: int = 95, **values: str):
    """Form whose named slots are complete regex values."""
    slots = {
        name: FieldSlot(value=v, complete=True, source=SlotSource.REGEX, confidence=confidence)
        for name, v in values.items()
    }
    return with_slots(new_form(form_type), slots)


@pytest.fixture()
def registry():
    return default_registry()


@pytest.fixture()
def store():
    return InMemorySessionStore()


@pytest.fixture()
def notifier():
    return CollectingNotifier()


@pytest.fixture()
def finalizer():
    return FakeFinalizer()


@pytest.fixture()
def catalog():
    return CatalogEntityLookup(CATALOG)


@pytest.fixture()
def centers():
    return NearestServiceCenterLookup(CENTERS)


@pytest.fixture()
def make_orchestrator(store, notifier, finalizer, catalog):
    """
    Factory so tests can override one collaborator at a time:
        orch = make_orchestrator(finalizer=FakeFinalizer(fail_times=1))
    """

    def _make(
        *,
        image: Optional[Any] = None,
        auxiliary_lookup: Optional[Any] = None,
        settings: Optional[Settings] = None,
        **overrides: Any,
    ) -> FlowOrchestrator:
        extractors: Dict[str, Any] = {
            "text": RegexExtractor(),
            "location": LocationExtractor(),
            "image": image or FakeImageExtractor(),
        }
        kwargs: Dict[str, Any] = dict(
            store=store,
            extractors=extractors,
            entity_lookup=catalog,
            finalizer=finalizer,
            notifier=notifier,
            auxiliary_lookup=auxiliary_lookup,
            settings=settings or Settings(),
            sleep=lambda _s: None,
        )
        kwargs.update(overrides)
        return FlowOrchestrator(**kwargs)

    return _make
