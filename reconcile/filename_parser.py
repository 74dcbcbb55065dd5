"""Parse image filenames into ``(model_ref, color_token, view_tag)``.

Vendors name files differently (``PD760221_BLO_DITA_B.jpg``,
``HBSE-325-0037_BLACK_1.jpg``, ``HBSE-ANNIE-BLACK-2.jpg``). Instead of one
parser per campaign, ``FilenameParser`` tries an ordered list of rules; the
first rule that applies decides the split. ``DelimitedRule`` is the general
convention and always runs last.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath, PureWindowsPath
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from reconcile.colors import strip_invisible
from reconcile.errors import ParseFailure
from reconcile.records import HIGH, LOW, ImageRecord

# letters then >=4 digits, optional single trailing letter (after removing separators)
_PLAUSIBLE_SKU_RE = re.compile(r"[A-Z]+\d{4,}[A-Z]?")
_SKU_NOISE_RE = re.compile(r"[\s\-_.]+")
_EXTENSION_RE = re.compile(r"\.[A-Za-z0-9]{1,5}$")


def plausible_sku(model_ref: str) -> bool:
    compact = _SKU_NOISE_RE.sub("", (model_ref or "").upper())
    return bool(_PLAUSIBLE_SKU_RE.fullmatch(compact))


def parse_confidence(model_ref: str) -> str:
    return HIGH if plausible_sku(model_ref) else LOW


def filename_stem(filename: str) -> str:
    """Base name without directory, extension or invisible characters."""
    name = PureWindowsPath(PurePosixPath(filename or "").name).name
    name = strip_invisible(name).strip()
    return _EXTENSION_RE.sub("", name)


@dataclass(frozen=True)
class Split:
    model_ref: str
    color_token: str
    view_tag: str = ""


@dataclass(frozen=True)
class ParsedFilename:
    filename: str
    model_ref: str
    color_token: str
    view_tag: str
    confidence: str
    rule: str

    def to_record(self, storage_locator: str) -> ImageRecord:
        return ImageRecord(
            filename=self.filename,
            model_ref=self.model_ref,
            color=self.color_token,
            storage_locator=storage_locator,
            parse_confidence=self.confidence,
            view_tag=self.view_tag,
        )


# A rule returns a Split, a failure reason, or None when it does not apply
RuleResult = Union[Split, str, None]


def _segments(stem: str, delim: str) -> List[str]:
    # consecutive delimiters produce no empty segments
    return [p.strip() for p in stem.split(delim) if p.strip()]


class DelimitedRule:
    """MODELREF<d>COLOR[<d>VIEW...] with ``_`` preferred over ``-``.

    When the first segment is not SKU-shaped, the model may span the first
    two or three segments (``HBSE-3250037-BLACK``, ``HBSE-325-0037-BLACK-1``);
    the shortest SKU-shaped join that still leaves a color segment wins.
    """

    name = "delimited"

    def split(self, stem: str) -> RuleResult:
        if "_" in stem:
            delim = "_"
        elif "-" in stem:
            delim = "-"
        else:
            return "no delimiter"
        parts = _segments(stem, delim)
        if len(parts) < 2:
            return "fewer than two segments"
        color_at = 1
        model = parts[0]
        if not plausible_sku(model):
            for span in (2, 3):
                joined = delim.join(parts[:span])
                if len(parts) > span and plausible_sku(joined):
                    model = joined
                    color_at = span
                    break
        return Split(
            model_ref=model.upper().strip(),
            color_token=parts[color_at].upper().strip(),
            view_tag=delim.join(parts[color_at + 1:]),
        )


class BrandPrefixRule:
    """Brand codes always followed by a model segment: ``HBSE-ANNIE-BLACK_2``."""

    name = "brand_prefix"

    def __init__(self, prefixes: Iterable[str]) -> None:
        self.prefixes = frozenset(p.strip().upper() for p in prefixes if p and p.strip())

    def split(self, stem: str) -> RuleResult:
        parts = [p.strip() for p in re.split(r"[-_]+", stem) if p.strip()]
        if len(parts) < 3 or parts[0].upper() not in self.prefixes:
            return None
        # SKU-shaped codes such as HBSE-325-0037 are left to DelimitedRule
        if plausible_sku(f"{parts[0]}{parts[1]}") or plausible_sku(f"{parts[0]}{parts[1]}{parts[2]}"):
            return None
        return Split(
            model_ref=f"{parts[0]}-{parts[1]}".upper(),
            color_token=parts[2].upper(),
            view_tag="_".join(parts[3:]),
        )


class FilenameParser:
    def __init__(self, rules: Optional[Sequence[object]] = None) -> None:
        rules = list(rules or [])
        if not any(isinstance(r, DelimitedRule) for r in rules):
            rules.append(DelimitedRule())
        self.rules: Tuple[object, ...] = tuple(rules)

    @classmethod
    def from_config(cls, config) -> "FilenameParser":
        rules: List[object] = []
        if config.brand_prefixes:
            rules.append(BrandPrefixRule(config.brand_prefixes))
        return cls(rules)

    def parse(self, filename: str) -> Union[ParsedFilename, ParseFailure]:
        stem = filename_stem(filename)
        if not stem:
            return ParseFailure(filename, "empty filename")
        reason = "no rule matched"
        for rule in self.rules:
            result = rule.split(stem)  # type: ignore[attr-defined]
            if result is None:
                continue
            if isinstance(result, str):
                reason = result
                continue
            if not result.model_ref:
                return ParseFailure(filename, "empty model reference")
            if not result.color_token:
                return ParseFailure(filename, "empty color token")
            return ParsedFilename(
                filename=filename,
                model_ref=result.model_ref,
                color_token=result.color_token,
                view_tag=result.view_tag,
                confidence=parse_confidence(result.model_ref),
                rule=rule.name,  # type: ignore[attr-defined]
            )
        return ParseFailure(filename, reason)


_DEFAULT_PARSER = FilenameParser()


def parse_filename(filename: str) -> Union[ParsedFilename, ParseFailure]:
    """Parse with the delimiter convention only."""
    return _DEFAULT_PARSER.parse(filename)
