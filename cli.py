#!/usr/bin/env python3
"""
Field Intake CLI

Purpose
-------
Drive the field-intake engine locally: open a report conversation, answer its
prompts in any order (text, image files, shared coordinates), and inspect the
records it commits. Sessions and records live under a local store directory.

Top-level entrypoints
---------------------
- chat  --form-type REFRIGERATOR|VEHICLE [--key KEY] [--store DIR] [--catalog FILE] [--centers FILE]
- ask   --key KEY --text "MESSAGE" [--kind text|image|location] [--json] [--store DIR] ...
- records list [--store DIR]
- sweep [--store DIR] [--minutes N]

In-session slash commands
-------------------------
- /help                 Show available commands
- /location LAT,LNG     Share a location
- /image PATH [caption] Send a photo (caption optional)
- /show                 Print the current session record
- /quit                 Exit

Catalog / centers files
-----------------------
JSON or YAML. Catalog: a list of {"code", "id"?, "description"?, ...} (or
{"entities": [...]}). Centers: a list of {"id", "name", "latitude", "longitude"}
(or {"centers": [...]}).
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from field_intake.config import Settings, load_settings
from field_intake.extractor_registry import default_registry as default_extractors
from field_intake.form_state import FormType
from field_intake.local_store import JsonFileSessionStore, LocalRecordFinalizer
from field_intake.lookups import CachedEntityLookup, CatalogEntityLookup, InMemoryTTLCache, NearestServiceCenterLookup
from field_intake.notifiers import LoggingNotifier
from field_intake.orchestrator import FlowOrchestrator, FlowResult
from field_intake.prompts import PromptSpec
from field_intake.timeouts import sweep

DEFAULT_STORE = "local_store"

# ---------------- utils ----------------

def _load_list(p: Optional[str | Path], key: str) -> List[Dict[str, Any]]:
    if not p:
        return []
    p = Path(p)
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() in (".yaml", ".yml"):
        raw = yaml.safe_load(text)
    else:
        raw = json.loads(text)
    if isinstance(raw, dict):
        raw = raw.get(key, [])
    if not isinstance(raw, list):
        raise ValueError(f"Expected a list (or {{'{key}': [...]}}) in {p}")
    return raw


def build_orchestrator(
    *,
    store_dir: str | Path = DEFAULT_STORE,
    catalog: Optional[str | Path] = None,
    centers: Optional[str | Path] = None,
    settings: Optional[Settings] = None,
    notifier: Any = None,
) -> FlowOrchestrator:
    s = settings or load_settings()
    lookup = CachedEntityLookup(
        CatalogEntityLookup(_load_list(catalog, "entities")),
        InMemoryTTLCache(),
        ttl_seconds=s.entity_cache_ttl_seconds,
    )
    center_rows = _load_list(centers, "centers")
    aux = NearestServiceCenterLookup(center_rows, average_speed_kmh=s.average_speed_kmh) if center_rows else None
    return FlowOrchestrator(
        store=JsonFileSessionStore(store_dir),
        extractors=default_extractors(s),
        entity_lookup=lookup,
        finalizer=LocalRecordFinalizer(store_dir),
        notifier=notifier or LoggingNotifier(),
        auxiliary_lookup=aux,
        settings=s,
    )


def render_prompt(prompt: Optional[PromptSpec]) -> str:
    if prompt is None:
        return ""
    lines: List[str] = []
    if prompt.notice:
        lines.append(f"({prompt.notice})")
    lines.append(prompt.body)
    if prompt.options:
        lines.append("  " + "  ".join(f"[{o.id}] {o.label}" for o in prompt.options))
    if prompt.progress:
        lines.append(f"  progress: {prompt.progress.done}/{prompt.progress.total}")
    return "\n".join(lines)


def render_result(result: FlowResult) -> str:
    if result.kind in ("error", "conflict") and result.error:
        return result.error["user_message"]
    if result.kind == "inactive":
        if result.error:
            return result.error["user_message"]
        return "This conversation is closed. Start a new report with `chat --form-type ...`."
    return render_prompt(result.prompt)


def _parse_latlng(arg: str) -> Dict[str, float]:
    parts = [p.strip() for p in arg.replace(";", ",").split(",") if p.strip()]
    if len(parts) != 2:
        raise ValueError("usage: /location LAT,LNG")
    return {"latitude": float(parts[0]), "longitude": float(parts[1])}


def _print_chat_help():
    print(
        "Commands:\n"
        "  /help                   Show this help\n"
        "  /location LAT,LNG       Share a location\n"
        "  /image PATH [caption]   Send a photo\n"
        "  /show                   Show the current session record\n"
        "  /quit                   Exit\n"
        "Anything else is sent as a message. Type 'cancel' to cancel the report.\n"
    )

# ---------------- chat ----------------

def cmd_chat(args):
    orch = build_orchestrator(store_dir=args.store, catalog=args.catalog, centers=args.centers)
    key = args.key or "cli"
    first = orch.start_flow(key, args.form_type)
    print(f"New {args.form_type} report on conversation '{key}'. Type '/help' for commands.")
    print(render_prompt(first))

    while True:
        try:
            line = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            print(); break
        if not line:
            continue

        if line.startswith("/"):
            cmd, _, rest = line.partition(" ")
            if cmd in ("/quit", "/exit"):
                break
            if cmd == "/help":
                _print_chat_help(); continue
            if cmd == "/show":
                rec = orch.store.read(key)
                print(json.dumps(rec.model_dump(mode="json") if rec else {"note": "(no session)"}, indent=2, ensure_ascii=False))
                continue
            if cmd == "/location":
                try:
                    payload = _parse_latlng(rest)
                except ValueError as e:
                    print(str(e)); continue
                result = orch.handle_inbound_event(key, payload, "location")
            elif cmd == "/image":
                path, _, caption = rest.strip().partition(" ")
                if not path:
                    print("usage: /image PATH [caption]"); continue
                if not Path(path).exists():
                    print(f"{path}: not found"); continue
                result = orch.handle_inbound_event(key, {"path": path, "caption": caption}, "image")
            else:
                print("Unknown command. Type /help for options."); continue
        else:
            result = orch.handle_inbound_event(key, line, "text")

        print(render_result(result))
        if result.kind in ("completed", "cancelled", "inactive"):
            break
    return 0

# ---------------- ask ----------------

def cmd_ask(args):
    orch = build_orchestrator(store_dir=args.store, catalog=args.catalog, centers=args.centers)
    payload: Any = args.text
    if args.kind == "location":
        try:
            payload = _parse_latlng(args.text)
        except ValueError as e:
            print(str(e), file=sys.stderr); return 2
    elif args.kind == "image":
        payload = {"path": args.text, "caption": args.caption or ""}

    result = orch.handle_inbound_event(args.key, payload, args.kind)
    if args.json:
        print(json.dumps(
            {
                "kind": result.kind,
                "prompt": result.prompt.model_dump(mode="json") if result.prompt else None,
                "record_id": result.record_id,
                "error": result.error,
                "state": result.state.value if result.state else None,
                "version": result.version,
            },
            ensure_ascii=False,
            indent=2,
        ))
    else:
        print(render_result(result))
    return 0 if result.kind not in ("error", "conflict") else 1

# ---------------- records / sweep ----------------

def cmd_records_list(args):
    rows = LocalRecordFinalizer(args.store).list_records()
    if not rows:
        print("No records.")
        return 0
    for r in rows:
        fields = r.get("fields") or {}
        desc = ((fields.get("description") or {}).get("value") or "")[:40]
        print(f"{r.get('record_id',''):>12} | {r.get('form_type',''):12} | {desc:40} | {r.get('committed_at','')}")
    return 0


def cmd_sweep(args):
    expired = sweep(JsonFileSessionStore(args.store), timeout_minutes=args.minutes)
    for key in expired:
        print(f"{key}: timed out")
    if not expired:
        print("Nothing to expire.")
    return 0

# ---------------- parser ----------------

def _add_store_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--store", default=DEFAULT_STORE, help="local store directory")
    p.add_argument("--catalog", help="equipment catalog (JSON/YAML)")
    p.add_argument("--centers", help="service centers (JSON/YAML)")


def build_parser():
    p = argparse.ArgumentParser(prog="field-intake")
    sub = p.add_subparsers(dest="cmd")

    p_chat = sub.add_parser("chat", help="interactive report conversation")
    p_chat.add_argument("--form-type", required=True, choices=[t.value for t in FormType])
    p_chat.add_argument("--key", help="conversation key (default: cli)")
    _add_store_args(p_chat)
    p_chat.set_defaults(func=cmd_chat)

    p_ask = sub.add_parser("ask", help="send one event to an open conversation")
    p_ask.add_argument("--key", required=True)
    p_ask.add_argument("--text", required=True, help="message text, LAT,LNG for locations, or an image path")
    p_ask.add_argument("--kind", default="text", choices=["text", "image", "location"])
    p_ask.add_argument("--caption", help="image caption")
    p_ask.add_argument("--json", action="store_true")
    _add_store_args(p_ask)
    p_ask.set_defaults(func=cmd_ask)

    p_records = sub.add_parser("records", help="committed records")
    sub_records = p_records.add_subparsers(dest="sub")
    pr_list = sub_records.add_parser("list", help="list committed records")
    pr_list.add_argument("--store", default=DEFAULT_STORE)
    pr_list.set_defaults(func=cmd_records_list)

    p_sweep = sub.add_parser("sweep", help="time out idle conversations")
    p_sweep.add_argument("--store", default=DEFAULT_STORE)
    p_sweep.add_argument("--minutes", type=int, default=load_settings().session_timeout_minutes)
    p_sweep.set_defaults(func=cmd_sweep)

    return p


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "cmd", None):
        parser.print_help()
        return 0
    if args.cmd == "records" and not getattr(args, "sub", None):
        parser.parse_args([args.cmd, "-h"])
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
