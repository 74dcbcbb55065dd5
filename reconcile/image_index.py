"""In-memory image index.

Two structures built in one pass over the image records:

- exact index: ``model_ref -> color (as parsed) -> [ImageRecord]``; every
  record lands under its own key, in the order it was supplied.
- prefix index: sorted distinct model refs from HIGH confidence parses only,
  queried with ``bisect`` for longest-matching-prefix fallback.

The index is derived data. It is rebuilt wholesale from records (or merged
from per-worker partial indexes), never patched in place.
"""
from __future__ import annotations

import json
from bisect import bisect_left
from collections import Counter
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from reconcile.errors import CorpusInconsistencyError, ParseFailure
from reconcile.records import HIGH, ImageRecord


class PrefixIndex:
    def __init__(self, model_refs: Iterable[str] = ()) -> None:
        self._refs: List[str] = sorted(set(model_refs))

    def __len__(self) -> int:
        return len(self._refs)

    def __contains__(self, model_ref: object) -> bool:
        if not isinstance(model_ref, str):
            return False
        i = bisect_left(self._refs, model_ref)
        return i < len(self._refs) and self._refs[i] == model_ref

    def starting_with(self, prefix: str) -> List[str]:
        out: List[str] = []
        i = bisect_left(self._refs, prefix)
        while i < len(self._refs) and self._refs[i].startswith(prefix):
            out.append(self._refs[i])
            i += 1
        return out

    def candidates(self, model_ref: str, min_len: int = 5, max_len: int = 7) -> Tuple[int, List[str]]:
        """Longest prefix (max_len..min_len) shared with at least one other model ref.

        Returns ``(prefix_length, candidates)``; stops at the first non-empty
        length and never merges candidates across lengths.
        """
        q = (model_ref or "").strip().upper()
        for length in range(min(max_len, len(q) - 1), min_len - 1, -1):
            found = [r for r in self.starting_with(q[:length]) if r != q]
            if found:
                return length, found
        return 0, []

    def refs(self) -> List[str]:
        return list(self._refs)


class ImageIndex:
    def __init__(
        self,
        exact: Optional[Dict[str, Dict[str, List[ImageRecord]]]] = None,
        unparsed: Sequence[ParseFailure] = (),
    ) -> None:
        self._exact: Dict[str, Dict[str, List[ImageRecord]]] = exact or {}
        self.prefix = PrefixIndex(
            mr for mr, by_color in self._exact.items()
            if any(r.is_high_confidence for recs in by_color.values() for r in recs)
        )
        self.unparsed: Tuple[ParseFailure, ...] = tuple(unparsed)

    @classmethod
    def build(cls, records: Iterable[ImageRecord], unparsed: Iterable[ParseFailure] = ()) -> "ImageIndex":
        exact: Dict[str, Dict[str, List[ImageRecord]]] = {}
        for rec in records:
            exact.setdefault(rec.model_ref, {}).setdefault(rec.color, []).append(rec)
        return cls(exact, tuple(unparsed))

    @classmethod
    def merge(cls, partials: Iterable["ImageIndex"]) -> "ImageIndex":
        """Combine partial indexes: concatenate per key, stable-sort by filename.

        A filename present in two partials must describe the same blob.
        """
        seen: Dict[str, ImageRecord] = {}
        unparsed: Dict[str, ParseFailure] = {}
        for part in partials:
            for rec in part.records():
                prev = seen.get(rec.filename)
                if prev is not None and prev.storage_locator != rec.storage_locator:
                    raise CorpusInconsistencyError(rec.filename, prev.storage_locator, rec.storage_locator)
                seen.setdefault(rec.filename, rec)
            for failure in part.unparsed:
                unparsed.setdefault(failure.filename, failure)
        records = sorted(seen.values(), key=lambda r: r.filename)
        return cls.build(records, [unparsed[k] for k in sorted(unparsed)])

    # -- queries ---------------------------------------------------------

    def __contains__(self, model_ref: object) -> bool:
        return isinstance(model_ref, str) and model_ref.strip().upper() in self._exact

    def __len__(self) -> int:
        return sum(len(recs) for by_color in self._exact.values() for recs in by_color.values())

    def lookup(self, model_ref: str) -> Mapping[str, List[ImageRecord]]:
        return MappingProxyType(self._exact.get((model_ref or "").strip().upper(), {}))

    def colors(self, model_ref: str) -> List[str]:
        return sorted(self.lookup(model_ref).keys())

    def images(self, model_ref: str, colors: Optional[Iterable[str]] = None) -> List[ImageRecord]:
        by_color = self.lookup(model_ref)
        keys = sorted(by_color) if colors is None else list(colors)
        return [rec for key in keys for rec in by_color.get(key, [])]

    def model_refs(self) -> List[str]:
        return sorted(self._exact)

    def prefix_candidates(self, model_ref: str, min_len: int = 5, max_len: int = 7) -> Tuple[int, List[str]]:
        return self.prefix.candidates(model_ref, min_len=min_len, max_len=max_len)

    def records(self) -> Iterator[ImageRecord]:
        for by_color in self._exact.values():
            for recs in by_color.values():
                yield from recs

    def stats(self) -> Dict[str, int]:
        confidences = Counter(r.parse_confidence for r in self.records())
        return {
            "records": len(self),
            "model_refs": len(self._exact),
            "color_keys": sum(len(by_color) for by_color in self._exact.values()),
            "high_confidence": confidences.get(HIGH, 0),
            "low_confidence": sum(v for k, v in confidences.items() if k != HIGH),
            "prefix_model_refs": len(self.prefix),
            "unparsed": len(self.unparsed),
        }

    # -- snapshot --------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exact": {
                mr: {color: [r.to_dict() for r in recs] for color, recs in by_color.items()}
                for mr, by_color in self._exact.items()
            },
            "prefix": self.prefix.refs(),
            "unparsed": [{"filename": f.filename, "reason": f.reason, "storage_locator": f.storage_locator}
                         for f in self.unparsed],
        }

    def dumps(self) -> str:
        """Deterministic JSON: identical record sets yield identical bytes."""
        return json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=False, indent=2)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageIndex":
        exact = {
            mr: {color: [ImageRecord.from_dict(r) for r in recs] for color, recs in by_color.items()}
            for mr, by_color in (data.get("exact") or {}).items()
        }
        unparsed = [ParseFailure(u["filename"], u.get("reason") or "", u.get("storage_locator"))
                    for u in (data.get("unparsed") or [])]
        return cls(exact, unparsed)
