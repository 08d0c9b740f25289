# field_intake/replies.py
"""
Classify free-text replies to confirmation prompts and detect cancellation.

The affirmative and negative sets are disjoint full-match patterns, so a reply
can never count as both. Choice-prompt option ids ("confirm" / "reject") are
accepted as-is, which lets a client echo a button id straight back.
"""

from __future__ import annotations

import re
import unicodedata
from enum import Enum

OPTION_CONFIRM = "confirm"
OPTION_REJECT = "reject"


class Reply(str, Enum):
    AFFIRMATIVE = "AFFIRMATIVE"
    NEGATIVE = "NEGATIVE"
    UNKNOWN = "UNKNOWN"


_AFFIRMATIVE = re.compile(
    r"^(?:yes|y|yeah|yep|yup|sure|ok|okay|correct|right|confirm|confirmed|that'?s right|that'?s it"
    r"|it is|of course|si|claro|correcto|confirmo|exacto|afirmativo|de acuerdo|esta bien)$"
)
_NEGATIVE = re.compile(
    r"^(?:no|n|nope|nah|not|incorrect|wrong|reject|rejected|not that one|that'?s wrong|it is not|isn'?t"
    r"|incorrecto|negativo|no es|no es ese|equivocado|rechazar)$"
)
_CANCEL = re.compile(r"^(?:cancel|exit|quit|stop|abort|cancelar|salir|terminar|no quiero)$")


def _normalize(text: str) -> str:
    s = unicodedata.normalize("NFKD", text or "")
    s = "".join(ch for ch in s if not unicodedata.combining(ch))
    s = s.strip().lower()
    s = re.sub(r"[\s]+", " ", s)
    return s.strip(" .!¡?¿,")


def classify_reply(text: str) -> Reply:
    s = _normalize(text)
    if not s:
        return Reply.UNKNOWN
    if s == OPTION_CONFIRM or _AFFIRMATIVE.match(s):
        return Reply.AFFIRMATIVE
    if s == OPTION_REJECT or _NEGATIVE.match(s):
        return Reply.NEGATIVE
    return Reply.UNKNOWN


def is_cancellation(text: str) -> bool:
    return bool(_CANCEL.match(_normalize(text)))
