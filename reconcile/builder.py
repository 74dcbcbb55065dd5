"""Index builder: listing -> parsed records -> persisted index.

Runs page by page so a failure loses at most one page. Parsing is pure and
may fan out over a process pool (``config.workers > 1``); writing is a single
writer. Every write is insert-or-replace keyed by filename, so re-running a
build, retrying a page or resuming an interrupted rebuild never duplicates a
record.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import Executor, ProcessPoolExecutor
from dataclasses import asdict, dataclass, field
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from reconcile.config import ReconcileConfig
from reconcile.errors import CorpusInconsistencyError, IndexBuildError, ParseFailure, TransientStoreError
from reconcile.filename_parser import FilenameParser
from reconcile.image_index import ImageIndex
from reconcile.listing import Listing
from reconcile.records import ImageRecord, ListingEntry
from reconcile.store import IndexStore, call_with_retries

_log = logging.getLogger(__name__)


def parse_entry(entry: ListingEntry, parser: FilenameParser) -> Union[ImageRecord, ParseFailure]:
    """Parse one listing entry. Module level so process pools can pickle it."""
    parsed = parser.parse(entry.filename)
    if isinstance(parsed, ParseFailure):
        return ParseFailure(entry.filename, parsed.reason, entry.storage_locator)
    return parsed.to_record(entry.storage_locator)


@dataclass
class BuildReport:
    mode: str
    generation: Optional[int] = None
    total: int = 0
    pages: int = 0
    written: int = 0
    unparsed: int = 0
    # duplicate listing rows, or rows already stored by an interrupted run
    skipped: int = 0
    deleted: int = 0
    failed_pages: List[int] = field(default_factory=list)
    failed_keys: List[str] = field(default_factory=list)
    activated: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed_pages

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class IndexBuilder:
    def __init__(
        self,
        store: IndexStore,
        parser: Optional[FilenameParser] = None,
        config: Optional[ReconcileConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.config = config or ReconcileConfig()
        self.parser = parser or FilenameParser.from_config(self.config)
        self._sleep = sleep

    # -- public operations -----------------------------------------------

    def rebuild(self, listing: Listing, resume: bool = False) -> BuildReport:
        """Write the whole listing into a staging generation, then swap it in.

        With ``resume`` the newest pending staging generation is continued and
        rows it already holds are skipped. Raises ``IndexBuildError`` when a
        page could not be written; the staging generation is then left pending
        and the active index is unchanged.
        """
        report = BuildReport("rebuild", total=listing.total)
        gen = self._retry(self.store.pending_staging) if resume else None
        if resume and gen is None:
            _log.info("no pending staging generation to resume; starting a fresh rebuild")
        if gen is None:
            self._discard_pending()
            gen = self._retry(self.store.begin_staging)
        else:
            _log.info("resuming staging generation %d", gen)
        report.generation = gen

        seen: Dict[str, str] = {}
        with self._executor() as pool:
            for page_no, page in enumerate(listing.pages(self.config.page_size)):
                self._write_page(gen, page_no, page, seen, report, pool, skip_stored=resume)

        if resume:
            self._drop_stale(gen, seen, report)

        if report.failed_pages:
            raise IndexBuildError(
                f"{len(report.failed_pages)} page(s) failed; staging generation {gen} left pending "
                f"(re-run with --resume)",
                failed_keys=report.failed_keys,
                report=report,
            )
        try:
            self._retry(self.store.activate, gen)
        except TransientStoreError as e:
            raise IndexBuildError(f"could not activate generation {gen}: {e}", report=report) from e
        report.activated = True
        _log.info("rebuild complete: generation %d active with %d records, %d unparsed",
                  gen, report.written, report.unparsed)
        return report

    def upsert(self, listing: Listing) -> BuildReport:
        """Incremental run into the active generation; failed pages are reported, not fatal."""
        report = BuildReport("upsert", total=listing.total)
        gen = self._retry(self.store.ensure_active)
        report.generation = gen
        seen: Dict[str, str] = {}
        with self._executor() as pool:
            for page_no, page in enumerate(listing.pages(self.config.page_size)):
                self._write_page(gen, page_no, page, seen, report, pool)
        if report.failed_pages:
            _log.error("upsert finished with %d failed page(s), %d filename(s) not written",
                       len(report.failed_pages), len(report.failed_keys))
        return report

    def delete(self, filenames: Iterable[str]) -> BuildReport:
        names = sorted({n for n in filenames if n})
        report = BuildReport("delete", total=len(names))
        gen = self._retry(self.store.active_generation)
        report.generation = gen
        if gen is None:
            return report
        size = self.config.page_size
        for page_no, start in enumerate(range(0, len(names), size)):
            chunk = names[start:start + size]
            report.pages += 1
            try:
                report.deleted += self._retry(self.store.delete, gen, chunk)
            except TransientStoreError as e:
                _log.error("delete page %d failed after retries: %s", page_no, e)
                report.failed_pages.append(page_no)
                report.failed_keys.extend(chunk)
        return report

    def dry_run(self, listing: Listing) -> Tuple[ImageIndex, BuildReport]:
        """Build the index without touching the store.

        Each page becomes a partial index; the partials are merged the same
        way parallel builders would be.
        """
        report = BuildReport("dry-run", total=listing.total)
        seen: Dict[str, str] = {}
        partials: List[ImageIndex] = []
        with self._executor() as pool:
            for page in listing.pages(self.config.page_size):
                report.pages += 1
                records, failures = self._parse_page(page, seen, report, pool)
                partials.append(ImageIndex.build(records, failures))
                report.written += len(records)
                report.unparsed += len(failures)
        return ImageIndex.merge(partials), report

    # -- internals -------------------------------------------------------

    def _retry(self, fn: Callable[..., Any], *args: Any) -> Any:
        return call_with_retries(
            fn, *args,
            retries=self.config.max_retries,
            backoff_base=self.config.backoff_base,
            sleep=self._sleep,
            what=getattr(fn, "__name__", "store call"),
        )

    def _executor(self) -> "_PoolContext":
        return _PoolContext(self.config.workers)

    def _discard_pending(self) -> None:
        while True:
            stale = self._retry(self.store.pending_staging)
            if stale is None:
                return
            _log.info("discarding abandoned staging generation %d", stale)
            self._retry(self.store.discard, stale)

    def _parse_page(
        self,
        page: Sequence[ListingEntry],
        seen: Dict[str, str],
        report: BuildReport,
        pool: "_PoolContext",
    ) -> Tuple[List[ImageRecord], List[ParseFailure]]:
        fresh: List[ListingEntry] = []
        for entry in page:
            prev = seen.get(entry.filename)
            if prev is not None:
                if prev != entry.storage_locator:
                    raise CorpusInconsistencyError(entry.filename, prev, entry.storage_locator)
                report.skipped += 1
                continue
            seen[entry.filename] = entry.storage_locator
            fresh.append(entry)

        records: List[ImageRecord] = []
        failures: List[ParseFailure] = []
        for result in pool.map(partial(parse_entry, parser=self.parser), fresh):
            if isinstance(result, ParseFailure):
                _log.debug("unparsed %s: %s", result.filename, result.reason)
                failures.append(result)
            else:
                records.append(result)
        return records, failures

    def _write_page(
        self,
        gen: int,
        page_no: int,
        page: Sequence[ListingEntry],
        seen: Dict[str, str],
        report: BuildReport,
        pool: "_PoolContext",
        skip_stored: bool = False,
    ) -> None:
        report.pages += 1
        records, failures = self._parse_page(page, seen, report, pool)
        keys = [r.filename for r in records] + [f.filename for f in failures]
        try:
            if skip_stored and keys:
                stored = self._retry(self.store.known_locators, gen, keys)
                before = len(records) + len(failures)
                records = [r for r in records if stored.get(r.filename) != r.storage_locator]
                failures = [f for f in failures if stored.get(f.filename) != f.storage_locator]
                report.skipped += before - len(records) - len(failures)
            if records or failures:
                self._retry(self.store.upsert_page, gen, records, failures)
        except TransientStoreError as e:
            _log.error("page %d failed after %d attempts; %d filename(s) not written: %s",
                       page_no, self.config.max_retries + 1, len(keys), e)
            report.failed_pages.append(page_no)
            report.failed_keys.extend(keys)
            return
        report.written += len(records)
        report.unparsed += len(failures)
        if failures:
            _log.warning("page %d: %d unparsed filename(s)", page_no, len(failures))
        _log.info("page %d: %d written, %d unparsed", page_no, len(records), len(failures))

    def _stored_names(self, gen: int) -> List[str]:
        names = [r.filename for r in self.store.scan_records(gen, page_size=self.config.page_size)]
        names += [f.filename for f in self.store.scan_unparsed(gen)]
        return names

    def _drop_stale(self, gen: int, seen: Dict[str, str], report: BuildReport) -> None:
        # rows written by the interrupted run for files no longer listed
        try:
            stale = [name for name in self._retry(self._stored_names, gen) if name not in seen]
            if stale:
                _log.info("dropping %d row(s) no longer in the listing from staging generation %d",
                          len(stale), gen)
                report.deleted += self._retry(self.store.delete, gen, stale)
        except TransientStoreError as e:
            raise IndexBuildError(
                f"could not drop stale rows from staging generation {gen}: {e} (re-run with --resume)",
                report=report,
            ) from e


class _PoolContext:
    """In-process ``map`` or a process pool, depending on the worker count."""

    def __init__(self, workers: int) -> None:
        self.workers = workers
        self._pool: Optional[Executor] = None

    def __enter__(self) -> "_PoolContext":
        if self.workers > 1:
            self._pool = ProcessPoolExecutor(max_workers=self.workers)
        return self

    def __exit__(self, *exc: Any) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None

    def map(self, fn: Callable[[Any], Any], items: Sequence[Any]) -> List[Any]:
        if self._pool is None or len(items) < 2:
            return [fn(item) for item in items]
        chunk = max(1, len(items) // (self.workers * 4))
        return list(self._pool.map(fn, items, chunksize=chunk))
