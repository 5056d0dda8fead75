from __future__ import annotations

import re

MAX_NORMALIZED_CHARS = 5000
SHORT_TEXT_MAX_TOKENS = 20
LONG_TEXT_MIN_TOKENS = 500
DEFAULT_CHUNK_TOKENS = 500

WHITESPACE_RE = re.compile(r"\s+")
DISALLOWED_CHARS_RE = re.compile(r"[^\w\s.,!?-]")


def normalize_text(text: str) -> str:
    clean = str(text or "").lower().strip()
    clean = WHITESPACE_RE.sub(" ", clean)
    clean = DISALLOWED_CHARS_RE.sub("", clean)
    # Removing characters can leave doubled spaces behind.
    clean = WHITESPACE_RE.sub(" ", clean).strip()
    return clean[:MAX_NORMALIZED_CHARS]


def tokenize(text: str) -> list[str]:
    return str(text or "").split()


def token_count(text: str) -> int:
    return len(tokenize(text))


def is_short_text(text: str) -> bool:
    return token_count(text) < SHORT_TEXT_MAX_TOKENS


def is_long_text(text: str) -> bool:
    return token_count(text) > LONG_TEXT_MIN_TOKENS


def chunk_long_text(text: str, chunk_size: int = DEFAULT_CHUNK_TOKENS) -> list[str]:
    size = max(1, int(chunk_size))
    words = tokenize(text)
    return [" ".join(words[i : i + size]) for i in range(0, len(words), size)]
