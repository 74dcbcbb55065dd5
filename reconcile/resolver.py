"""Resolve catalog variants to images.

Strategy, in strict order, for a variant ``(model_ref, color)``:

1. EXACT         model_ref is indexed and one or more of its color keys is
                 equivalent to the variant color.
2. EXACT (ambiguous)  model_ref is indexed but no color key is equivalent; every
                 image of the model is returned as a capped fallback bundle.
3. PREFIX_COLOR  model_ref is not indexed; prefix candidates are tested for an
                 equivalent color. Several candidate families matching at once
                 are flagged ambiguous and all of them are listed.
4. PREFIX_ANY    candidates exist but none has an equivalent color; capped
                 bundle of every candidate image, always ambiguous.
5. NONE          nothing found.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from reconcile.config import ReconcileConfig
from reconcile.equivalence import ColorMatch, ColorMatcher
from reconcile.image_index import ImageIndex
from reconcile.records import CatalogVariant, ImageRecord

_log = logging.getLogger(__name__)


class Tier(str, Enum):
    EXACT = "EXACT"
    PREFIX_COLOR = "PREFIX_COLOR"
    PREFIX_ANY = "PREFIX_ANY"
    NONE = "NONE"


@dataclass(frozen=True)
class MatchResult:
    variant: CatalogVariant
    images: Tuple[ImageRecord, ...]
    tier: Tier
    ambiguous: bool = False
    # every model ref considered at the deciding stage
    candidates: Tuple[str, ...] = ()
    # "MODEL/COLOR: reason" for each color key that matched
    reasons: Tuple[str, ...] = ()
    prefix_length: int = 0
    # images left out of a capped fallback bundle
    dropped: int = 0
    note: str = ""

    @property
    def primary_image(self) -> Optional[ImageRecord]:
        return self.images[0] if self.images else None

    @property
    def needs_review(self) -> bool:
        return self.tier != Tier.EXACT or self.ambiguous

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_ref": self.variant.model_ref,
            "color": self.variant.color,
            "tier": self.tier.value,
            "ambiguous": self.ambiguous,
            "images": [r.filename for r in self.images],
            "storage_locators": [r.storage_locator for r in self.images],
            "candidates": list(self.candidates),
            "reasons": list(self.reasons),
            "prefix_length": self.prefix_length,
            "dropped": self.dropped,
            "note": self.note,
        }


@dataclass
class _Hits:
    model_ref: str
    colors: List[str] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)


class Resolver:
    def __init__(self, index: ImageIndex, matcher: ColorMatcher, config: Optional[ReconcileConfig] = None) -> None:
        self.index = index
        self.matcher = matcher
        self.config = config or ReconcileConfig()

    def resolve(self, model_ref: str, color: str) -> MatchResult:
        return self.resolve_variant(CatalogVariant(model_ref=model_ref, color=color))

    def resolve_all(self, variants: Iterable[CatalogVariant]) -> Iterator[MatchResult]:
        for v in variants:
            yield self.resolve_variant(v)

    def resolve_variant(self, variant: CatalogVariant) -> MatchResult:
        mr, _ = variant.key
        if not mr:
            return MatchResult(variant, (), Tier.NONE, note="empty model reference")

        if mr in self.index:
            hits = self._color_hits(mr, variant.color)
            if hits.colors:
                return MatchResult(
                    variant,
                    tuple(self.index.images(mr, hits.colors)),
                    Tier.EXACT,
                    candidates=(mr,),
                    reasons=tuple(hits.reasons),
                )
            images, dropped = self._capped(self.index.images(mr))
            _log.debug("no equivalent color for %s/%s; model fallback bundle of %d", mr, variant.color, len(images))
            return MatchResult(
                variant, images, Tier.EXACT, ambiguous=True, candidates=(mr,), dropped=dropped,
                note="no equivalent color; all images of the model",
            )

        length, candidates = self.index.prefix_candidates(
            mr, min_len=self.config.min_prefix_len, max_len=self.config.max_prefix_len
        )
        if not candidates:
            return MatchResult(variant, (), Tier.NONE, note="no model or prefix candidates")

        matched = [h for h in (self._color_hits(c, variant.color) for c in candidates) if h.colors]
        reasons = tuple(r for h in matched for r in h.reasons)
        if len(matched) == 1:
            only = matched[0]
            return MatchResult(
                variant,
                tuple(self.index.images(only.model_ref, only.colors)),
                Tier.PREFIX_COLOR,
                candidates=tuple(candidates),
                reasons=reasons,
                prefix_length=length,
            )
        if matched:
            pooled = [rec for h in matched for rec in self.index.images(h.model_ref, h.colors)]
            images, dropped = self._capped(pooled)
            _log.debug("ambiguous prefix match for %s/%s: %s", mr, variant.color,
                       ", ".join(h.model_ref for h in matched))
            return MatchResult(
                variant, images, Tier.PREFIX_COLOR, ambiguous=True,
                candidates=tuple(candidates), reasons=reasons, prefix_length=length, dropped=dropped,
                note=f"{len(matched)} model families match this color",
            )

        if not self.config.prefix_any_allowed_for(mr):
            return MatchResult(
                variant, (), Tier.NONE, candidates=tuple(candidates), prefix_length=length,
                note="prefix candidates without equivalent color; any-color fallback disabled",
            )
        pooled = [rec for c in candidates for rec in self.index.images(c)]
        images, dropped = self._capped(pooled)
        return MatchResult(
            variant, images, Tier.PREFIX_ANY, ambiguous=True,
            candidates=tuple(candidates), prefix_length=length, dropped=dropped,
            note="prefix candidates without equivalent color",
        )

    def _color_hits(self, model_ref: str, color: str) -> _Hits:
        hits = _Hits(model_ref)
        for key in self.index.colors(model_ref):
            m: ColorMatch = self.matcher.match(key, color)
            if m.matched:
                hits.colors.append(key)
                hits.reasons.append(f"{model_ref}/{key}: {m.reason} {m.detail}".rstrip())
        return hits

    def _capped(self, images: Sequence[ImageRecord]) -> Tuple[Tuple[ImageRecord, ...], int]:
        cap = self.config.max_bundle_images
        return tuple(images[:cap]), max(0, len(images) - cap)
