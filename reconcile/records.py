from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

HIGH = "HIGH"
LOW = "LOW"


@dataclass(frozen=True)
class ListingEntry:
    """One row of a raw image listing."""

    filename: str
    storage_locator: str


@dataclass(frozen=True)
class ImageRecord:
    """One physical image file, keyed by ``filename``.

    Records are never mutated; a re-scan produces a new record that replaces
    the old one under the same key.
    """

    filename: str
    model_ref: str
    color: str
    storage_locator: str
    parse_confidence: str = LOW
    view_tag: str = ""

    @property
    def is_high_confidence(self) -> bool:
        return self.parse_confidence == HIGH

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageRecord":
        return cls(
            filename=data["filename"],
            model_ref=data["model_ref"],
            color=data["color"],
            storage_locator=data.get("storage_locator") or "",
            parse_confidence=data.get("parse_confidence") or LOW,
            view_tag=data.get("view_tag") or "",
        )


@dataclass(frozen=True)
class CatalogVariant:
    model_ref: str
    color: str
    # Commercial fields from the catalog, carried through untouched
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.model_ref.strip().upper(), self.color.strip().upper())

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Optional["CatalogVariant"]:
        mr = row.get("modelRef") or row.get("model_ref") or ""
        color = row.get("color") or ""
        if not str(mr).strip():
            return None
        extra = {k: v for k, v in row.items() if k not in ("modelRef", "model_ref", "color")}
        return cls(model_ref=str(mr).strip(), color=str(color).strip(), extra=extra)
