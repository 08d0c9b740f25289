# field_intake/ports.py
"""
Capability ports the engine consumes. Concrete adapters live in extractors.py,
lookups.py, session_store.py and local_store.py; tests pass small fakes.

Every collaborator is injected into the orchestrator; the engine keeps no
module-level caches or clients of its own.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from field_intake.form_state import ConversationState, FieldCandidate, FormState, SessionRecord
from field_intake.prompts import PromptSpec


@runtime_checkable
class Extractor(Protocol):
    def extract_candidates(
        self,
        raw_input: Any,
        *,
        form_type: str,
        pending_field: Optional[str] = None,
    ) -> List[FieldCandidate]:
        """Empty list means nothing found. Transport failures are the caller's to swallow."""
        ...


@runtime_checkable
class EntityLookup(Protocol):
    def find_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        """Entity dict (must carry "id") or None when not found."""
        ...


@runtime_checkable
class AuxiliaryLookup(Protocol):
    def compute(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...


@runtime_checkable
class Finalizer(Protocol):
    def commit(self, form: FormState) -> str:
        """Persist the final record and return its id."""
        ...


@runtime_checkable
class Notifier(Protocol):
    def send(self, conversation_key: str, prompt: PromptSpec) -> None:
        ...


@runtime_checkable
class VersionedStore(Protocol):
    def read(self, key: str) -> Optional[SessionRecord]:
        ...

    def write(
        self,
        key: str,
        form: Optional[FormState],
        state: ConversationState,
        expected_version: int,
    ) -> SessionRecord:
        """Write iff the stored version equals expected_version (0 = absent); raises VersionConflict."""
        ...

    def keys(self) -> Iterable[str]:
        ...


@runtime_checkable
class CachePort(Protocol):
    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ...
