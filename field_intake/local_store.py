# field_intake/local_store.py
from __future__ import annotations

import json
import re
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from field_intake.error_handler import FinalizationFailure
from field_intake.form_state import (
    ConversationState,
    FormState,
    SessionRecord,
    form_type_of,
    now_iso,
    slots_of,
)
from field_intake.session_store import next_record


@dataclass(frozen=True)
class _Paths:
    root: Path

    @property
    def sessions_dir(self) -> Path:
        return self.root / "sessions"

    @property
    def records_dir(self) -> Path:
        return self.root / "records"

    @property
    def records_jsonl(self) -> Path:
        return self.root / "records.jsonl"

    def session_json(self, key: str) -> Path:
        return self.sessions_dir / f"{_safe_name(key)}.json"

    def record_json(self, record_id: str) -> Path:
        return self.records_dir / f"{record_id}.json"


def _safe_name(key: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", key) or "_"


def _read_json(path: Path) -> Dict[str, Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Expected object in {path}, got {type(data)}")
    return data


def _write_json_atomic(path: Path, obj: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + f".{uuid.uuid4().hex[:8]}.tmp")
    tmp.write_text(json.dumps(obj, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(path)


def _append_jsonl(path: Path, obj: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(obj, ensure_ascii=False) + "\n")


class JsonFileSessionStore:
    """
    Versioned session store on the local filesystem.

    PUBLIC API (VersionedStore):
      read(key) -> SessionRecord | None
      write(key, form, state, expected_version) -> SessionRecord   (raises VersionConflict)
      keys() -> list[str]

    INTERNALS:
      - One JSON file per conversation under <root>/sessions/.
      - Writes are atomic (tmp file + replace). The compare-and-swap is
        serialized by an in-process lock, so one store instance per root.
    """

    def __init__(self, root: str | Path):
        self._p = _Paths(Path(root))
        self._lock = threading.Lock()

    def read(self, key: str) -> Optional[SessionRecord]:
        path = self._p.session_json(key)
        if not path.exists():
            return None
        raw = _read_json(path)
        return SessionRecord.model_validate(raw.get("session", raw))

    def write(
        self,
        key: str,
        form: Optional[FormState],
        state: ConversationState,
        expected_version: int,
    ) -> SessionRecord:
        with self._lock:
            rec = next_record(key, self.read(key), form, state, expected_version)
            _write_json_atomic(self._p.session_json(key), {"session": rec.model_dump(mode="json")})
            return rec

    def keys(self) -> List[str]:
        d = self._p.sessions_dir
        if not d.exists():
            return []
        out: List[str] = []
        for path in sorted(d.glob("*.json")):
            try:
                raw = _read_json(path)
            except (OSError, ValueError):
                continue
            key = (raw.get("session") or raw).get("conversation_key")
            if key:
                out.append(key)
        return out


def record_payload(form: FormState, record_id: str) -> Dict[str, Any]:
    """Flatten a finished form into the committed record shape."""
    return {
        "record_id": record_id,
        "form_type": form_type_of(form).value,
        "fields": {
            name: {
                "value": slot.value,
                "source": slot.source.value if slot.source else None,
                "confidence": slot.confidence,
                "coordinates": slot.coordinates.model_dump() if slot.coordinates else None,
            }
            for name, slot in slots_of(form).items()
        },
        "linked_entity_id": form.linked_entity_id,
        "linked_entity_data": form.linked_entity_data,
        "derived_data": form.derived_data,
        "created_at": form.created_at,
        "committed_at": now_iso(),
    }


class LocalRecordFinalizer:
    """
    Finalizer that writes the committed record to <root>/records/<id>.json and
    appends it to <root>/records.jsonl.
    """

    def __init__(self, root: str | Path, *, prefix: str = "RPT"):
        self._p = _Paths(Path(root))
        self._prefix = prefix

    def new_record_id(self) -> str:
        return f"{self._prefix}-{uuid.uuid4().hex[:8].upper()}"

    def commit(self, form: FormState) -> str:
        record_id = self.new_record_id()
        payload = record_payload(form, record_id)
        try:
            _write_json_atomic(self._p.record_json(record_id), payload)
            _append_jsonl(self._p.records_jsonl, payload)
        except OSError as e:
            raise FinalizationFailure(f"could not write record {record_id}: {e}") from e
        return record_id

    def list_records(self) -> List[Dict[str, Any]]:
        path = self._p.records_jsonl
        if not path.exists():
            return []
        rows: List[Dict[str, Any]] = []
        with path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    rows.append(json.loads(line))
        return rows
