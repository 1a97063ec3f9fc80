"""Utility helpers for the catalog service."""

from __future__ import annotations

import math
import re
import unicodedata
from typing import Any


PUNCTUATION_RE = re.compile(r"[^\w\s]", re.UNICODE)
WHITESPACE_RE = re.compile(r"\s+")


def normalize_title(value: str) -> str:
    """Return the exact-match key for a title variant."""

    value = PUNCTUATION_RE.sub("", value.lower())
    return WHITESPACE_RE.sub(" ", value).strip()


def fold_text(value: str) -> str:
    """Return a case- and accent-insensitive sort key."""

    value = unicodedata.normalize("NFKD", value)
    value = "".join(char for char in value if not unicodedata.combining(char))
    return value.casefold()


def parse_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    text = str(value).strip()
    try:
        return int(text)
    except (TypeError, ValueError):
        parsed = parse_float(text)
    if parsed is None:
        return None
    return int(parsed)


def parse_float(value: Any) -> float | None:
    """Parse a finite float; blanks, garbage, NaN and infinities become ``None``."""

    if value is None or value == "":
        return None
    try:
        parsed = float(str(value).strip())
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(parsed):
        return None
    return parsed


def split_multi(value: str | None) -> list[str]:
    """Split a ``|`` or ``,`` joined cell into trimmed, non-empty names."""

    if not value:
        return []
    separator = "|" if "|" in value else ","
    return [part.strip() for part in value.split(separator) if part.strip()]
