"""Color token normalization.

``normalize_color`` turns a raw color string from a filename or a catalog row
into a ``NormalizedColor``: an alphabetic ``base`` plus a trailing numeric
color code. Normalization is pure and never consults the synonym table.
"""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from functools import lru_cache

# Trailing multi-image sequence markers: BLACK_1, BLACK_2, BLACK_1_2
_SEQUENCE_SUFFIX_RE = re.compile(r"(?:_\d+)+$")
# Clean shape: letters then digits, either part may be empty
_BASE_DIGITS_RE = re.compile(r"([^\W\d_]*)(\d*)")
# Non-semantic trailing markers, stripped in this order
NON_SEMANTIC_SUFFIXES = ("OS", "LOGO")
# A suffix is only stripped when at least this many characters remain
_MIN_REMAINDER = 3


def strip_invisible(s: str) -> str:
    """Drop zero-width and other format (Cf) characters such as U+200B or U+FEFF."""
    return "".join(ch for ch in s if unicodedata.category(ch) != "Cf")


def clean_color(raw: str) -> str:
    """Upper-case and keep only alphanumerics (Unicode letters are kept)."""
    s = strip_invisible(raw or "").upper()
    return "".join(ch for ch in s if ch.isalnum())


@dataclass(frozen=True)
class NormalizedColor:
    base: str
    numeric_suffix: str = ""

    @property
    def key(self) -> str:
        return f"{self.base}{self.numeric_suffix}"

    def __bool__(self) -> bool:
        return bool(self.key)

    def __str__(self) -> str:
        if self.numeric_suffix and self.base:
            return f"{self.base}+{self.numeric_suffix}"
        return self.key


def _strip_suffixes(s: str) -> str:
    for suffix in NON_SEMANTIC_SUFFIXES:
        if s.endswith(suffix) and len(s) - len(suffix) >= _MIN_REMAINDER:
            s = s[: -len(suffix)]
    return s


@lru_cache(maxsize=65536)
def normalize_color(raw: str) -> NormalizedColor:
    s = strip_invisible(raw or "").upper().strip()
    stripped = _SEQUENCE_SUFFIX_RE.sub("", s)
    if clean_color(stripped):
        s = stripped
    cleaned = _strip_suffixes(clean_color(s))
    m = _BASE_DIGITS_RE.fullmatch(cleaned)
    if m:
        return NormalizedColor(base=m.group(1), numeric_suffix=m.group(2))
    # Mixed shapes like 1BLACK or BL4CK keep their content as the base
    return NormalizedColor(base=cleaned, numeric_suffix="")
