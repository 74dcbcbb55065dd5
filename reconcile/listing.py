"""Raw image listings and catalog variant sources.

A listing is an enumerable, paginated sequence of ``ListingEntry`` with a
stable total count per run. Pages are produced in a fixed order so an
interrupted build can be resumed page by page.
"""
from __future__ import annotations

import csv
import json
import logging
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from reconcile.errors import ConfigError
from reconcile.records import CatalogVariant, ListingEntry

_log = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".webp"})
# macOS metadata files copied along with image folders
_SIDECAR_NAMES = frozenset({".DS_Store", "Thumbs.db"})


def is_image_file(name: str) -> bool:
    base = Path(name).name
    if base in _SIDECAR_NAMES or base.startswith("._"):
        return False
    return Path(base).suffix.lower() in IMAGE_EXTENSIONS


class Listing:
    """Base listing over an already materialized, ordered entry list."""

    def __init__(self, entries: Sequence[ListingEntry] = ()) -> None:
        self._entries: List[ListingEntry] = list(entries)

    def entries(self) -> List[ListingEntry]:
        return self._entries

    @property
    def total(self) -> int:
        return len(self.entries())

    def pages(self, page_size: int) -> Iterator[List[ListingEntry]]:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        entries = self.entries()
        for start in range(0, len(entries), page_size):
            yield entries[start:start + page_size]

    def __iter__(self) -> Iterator[ListingEntry]:
        return iter(self.entries())


StaticListing = Listing


class DirectoryListing(Listing):
    """Image files under ``root``, sorted by relative POSIX path.

    The storage locator is the relative path; the filename key is the base
    name, so the same file copied into two folders is a corpus inconsistency.
    """

    def __init__(self, root: str | Path, recursive: bool = True) -> None:
        self.root = Path(root)
        if not self.root.is_dir():
            raise ConfigError(f"listing root is not a directory: {self.root}")
        self.recursive = recursive
        self._cached: Optional[List[ListingEntry]] = None
        super().__init__()

    def entries(self) -> List[ListingEntry]:
        # walked once so the total stays stable for the run
        if self._cached is None:
            it = self.root.rglob("*") if self.recursive else self.root.glob("*")
            rels = sorted(p.relative_to(self.root).as_posix() for p in it if p.is_file() and is_image_file(p.name))
            self._cached = [ListingEntry(filename=Path(rel).name, storage_locator=rel) for rel in rels]
            _log.info("listed %d image files under %s", len(self._cached), self.root)
        return self._cached


class JsonListing(Listing):
    """``[{"filename": ..., "storage_locator": ...}, ...]`` (``storageLocator``/``url`` also accepted)."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigError(f"failed to read listing {self.path}: {e}") from e
        if isinstance(data, dict):
            data = data.get("images") or data.get("items") or []
        if not isinstance(data, list):
            raise ConfigError(f"{self.path}: expected a list of listing entries")
        entries: List[ListingEntry] = []
        for i, item in enumerate(data):
            if not isinstance(item, dict) or not item.get("filename"):
                raise ConfigError(f"{self.path}: entry {i} has no filename")
            locator = item.get("storage_locator") or item.get("storageLocator") or item.get("url") or item["filename"]
            entries.append(ListingEntry(filename=str(item["filename"]), storage_locator=str(locator)))
        super().__init__(entries)


def load_variants(path: str | Path) -> List[CatalogVariant]:
    """Catalog variants from JSON (list of objects) or CSV (``modelRef``/``color`` columns).

    Rows without a model reference are skipped; other columns ride along in
    ``CatalogVariant.extra``.
    """
    p = Path(path)
    try:
        if p.suffix.lower() == ".csv":
            with p.open("r", encoding="utf-8-sig", newline="") as f:
                rows = list(csv.DictReader(f))
        else:
            rows = json.loads(p.read_text(encoding="utf-8"))
            if isinstance(rows, dict):
                rows = rows.get("variants") or []
    except (OSError, ValueError) as e:
        raise ConfigError(f"failed to read variants {p}: {e}") from e
    out: List[CatalogVariant] = []
    skipped = 0
    for row in rows:
        v = CatalogVariant.from_row(row) if isinstance(row, dict) else None
        if v is None:
            skipped += 1
            continue
        out.append(v)
    if skipped:
        _log.warning("skipped %d variant rows without a model reference in %s", skipped, p)
    return out
