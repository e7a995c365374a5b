"""
raffle/utils/sanitizer.py — Free-text entry field normalization
Pure, total, deterministic. Never raises.
"""
from __future__ import annotations

import re
from typing import Optional

MAX_LENGTH = 25

# HTML / SQL meta characters stripped from every field
_DANGEROUS_CHARS = re.compile(r"""[<>'"\\/{}\[\];]""")
_SCRIPT = re.compile(r"script", re.IGNORECASE)


def _sanitize_once(text: str) -> str:
    text = _DANGEROUS_CHARS.sub("", text)
    text = text.replace("--", "_")
    text = _SCRIPT.sub("", text)
    return text.strip()


def sanitize(text: Optional[str], max_length: int = MAX_LENGTH) -> str:
    """
    Strip dangerous characters, collapse `--`, drop any `script` substring
    (case-insensitive), trim and truncate to `max_length`.

    Removals can splice new forbidden sequences together ("scrscriptipt",
    "-<-"), so the pass repeats until the text stops changing. Every pass
    that changes the text shortens it, so the loop terminates. A prefix of
    a clean string is clean, so truncating last keeps the result a fixpoint:
    sanitize(sanitize(x)) == sanitize(x).
    """
    if not text or not isinstance(text, str):
        return ""

    previous = None
    while text != previous:
        previous = text
        text = _sanitize_once(text)

    return text[:max_length].strip()
