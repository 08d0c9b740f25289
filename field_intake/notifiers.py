# field_intake/notifiers.py
"""
Notifier adapters: a logging notifier for services without a transport, and a
collecting notifier the CLI (and tests) read back from.
"""

from __future__ import annotations

from typing import Dict, List, Tuple

from field_intake import app_logger
from field_intake.prompts import PromptSpec


class LoggingNotifier:
    def send(self, conversation_key: str, prompt: PromptSpec) -> None:
        app_logger.log_event(
            "Notifier.SEND",
            prompt.model_dump(mode="json", exclude_none=True),
            conversation_key=conversation_key,
        )


class CollectingNotifier:
    """Keeps every prompt in memory, per conversation."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, PromptSpec]] = []

    def send(self, conversation_key: str, prompt: PromptSpec) -> None:
        self.sent.append((conversation_key, prompt))

    def for_key(self, conversation_key: str) -> List[PromptSpec]:
        return [p for k, p in self.sent if k == conversation_key]

    def drain(self) -> Dict[str, List[PromptSpec]]:
        out: Dict[str, List[PromptSpec]] = {}
        for k, p in self.sent:
            out.setdefault(k, []).append(p)
        self.sent = []
        return out
