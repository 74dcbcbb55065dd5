"""Color equivalence decisions.

``ColorMatcher.match(a, b)`` answers whether an image color token and a
catalog color denote the same color, and why. Checks run in a fixed order and
the first decisive one wins:

1. exact          raw strings equal after upper-casing and trimming
2. normalized     same base, same numeric code (leading zeros ignored)
3. numeric gate   both sides carry a numeric code and the codes differ -> reject
   base           same base, only one side carries a numeric code
4. synonym        a synonym of one side's base/code equals the other side
5. prefix         a 2-4 letter base is a prefix of, or contained in, the other side

Every check is symmetric, so ``match(a, b).matched == match(b, a).matched``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Optional

from reconcile.colors import NormalizedColor, normalize_color, strip_invisible
from reconcile.synonyms import SynonymTable

EXACT = "exact"
NORMALIZED = "normalized"
NUMERIC_CONFLICT = "numeric_conflict"
BASE = "base"
SYNONYM = "synonym"
PREFIX = "prefix"
NO_MATCH = "none"
EMPTY = "empty"


@dataclass(frozen=True)
class ColorMatch:
    matched: bool
    reason: str
    detail: str = ""

    def __bool__(self) -> bool:
        return self.matched


def _code_value(suffix: str) -> str:
    return suffix.lstrip("0") or "0"


def _terms(c: NormalizedColor) -> FrozenSet[str]:
    return frozenset(t for t in (c.key, c.base) if t)


class ColorMatcher:
    def __init__(self, synonyms: Optional[SynonymTable] = None, min_code_len: int = 2, max_code_len: int = 4) -> None:
        self.synonyms = synonyms or SynonymTable()
        self.min_code_len = min_code_len
        self.max_code_len = max_code_len

    def match(self, a: str, b: str) -> ColorMatch:
        ua = strip_invisible(a or "").upper().strip()
        ub = strip_invisible(b or "").upper().strip()
        if not ua or not ub:
            return ColorMatch(False, EMPTY)
        if ua == ub:
            return ColorMatch(True, EXACT, ua)

        na, nb = normalize_color(ua), normalize_color(ub)
        if not na or not nb:
            return ColorMatch(False, EMPTY)
        both_coded = bool(na.numeric_suffix and nb.numeric_suffix)
        if both_coded:
            same_code = _code_value(na.numeric_suffix) == _code_value(nb.numeric_suffix)
        else:
            same_code = na.numeric_suffix == nb.numeric_suffix
        if na.base == nb.base and same_code:
            return ColorMatch(True, NORMALIZED, na.key)

        if both_coded and not same_code:
            return ColorMatch(False, NUMERIC_CONFLICT, f"{na.numeric_suffix}!={nb.numeric_suffix}")

        # one side carries a code the other omits: BLACK01 vs BLACK
        if na.base and na.base == nb.base:
            return ColorMatch(True, BASE, na.base)

        via = self._synonym_link(na, nb) or self._synonym_link(nb, na)
        if via:
            return ColorMatch(True, SYNONYM, via)

        contained = self._contained(na, nb) or self._contained(nb, na)
        if contained:
            return ColorMatch(True, PREFIX, contained)
        return ColorMatch(False, NO_MATCH)

    def equivalent(self, a: str, b: str) -> bool:
        return self.match(a, b).matched

    def _synonym_link(self, x: NormalizedColor, y: NormalizedColor) -> Optional[str]:
        targets = _terms(y)
        for term in sorted(_terms(x)):
            for linked in self.synonyms.related(term):
                ln = normalize_color(linked)
                if _terms(ln) & targets:
                    return f"{term}->{linked}"
        return None

    def _contained(self, x: NormalizedColor, y: NormalizedColor) -> Optional[str]:
        code = x.base
        if not (self.min_code_len <= len(code) <= self.max_code_len):
            return None
        if y.base.startswith(code) or code in y.key:
            return f"{code}~{y.key}"
        return None
