from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


class ReconcileError(Exception):
    pass


class ConfigError(ReconcileError):
    pass


class StoreError(ReconcileError):
    pass


class TransientStoreError(StoreError):
    """Retryable I/O failure while reading or writing the persisted index."""


class IndexBuildError(ReconcileError):
    """A full rebuild could not persist every page; the active index is untouched."""

    def __init__(self, message: str, failed_keys: Optional[list[str]] = None, report: Any = None) -> None:
        super().__init__(message)
        self.failed_keys = list(failed_keys or [])
        self.report = report


class CorpusInconsistencyError(ReconcileError):
    """The same filename was listed twice in one run with different locators.

    This points at a bug in the upstream listing; the run stops instead of
    picking one of the two blobs.
    """

    def __init__(self, filename: str, first_locator: str, second_locator: str) -> None:
        self.filename = filename
        self.first_locator = first_locator
        self.second_locator = second_locator
        super().__init__(
            f"filename {filename!r} listed twice with different locators: "
            f"{first_locator!r} != {second_locator!r}"
        )


@dataclass(frozen=True)
class ParseFailure:
    """A filename that no parsing rule accepted. Kept for manual review."""

    filename: str
    reason: str
    storage_locator: Optional[str] = None

    def __bool__(self) -> bool:
        return False
