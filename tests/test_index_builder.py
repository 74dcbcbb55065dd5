"""Index builder against the in-memory store: idempotence, atomic swap,
page failure handling, resume and corpus inconsistency."""
from __future__ import annotations

import unittest
from typing import List, Set

from reconcile.builder import IndexBuilder
from reconcile.config import ReconcileConfig
from reconcile.errors import CorpusInconsistencyError, IndexBuildError, TransientStoreError
from reconcile.listing import StaticListing
from reconcile.records import ListingEntry
from reconcile.store import MemoryIndexStore, call_with_retries, load_index

_NAMES = [
    "PD760221_BLO_DITA_B.jpg",
    "PD760221_BLO_DITA_2.jpg",
    "PD760221_RED_1.jpg",
    "HBSE-325-0037_BLACK_1.jpg",
    "HBSE-ANNIE-BLACK-2.jpg",
    "AB1113_RED_1.jpg",
    "AB1113_RED_2.jpg",
    "nodelimiter.jpg",
    "SAMPLE_NAVY_1.jpg",
]


def _listing(names=_NAMES, folder="campaign") -> StaticListing:
    return StaticListing([ListingEntry(n, f"{folder}/{n}") for n in names])


class FlakyStore(MemoryIndexStore):
    """Fails upsert_page for pages containing ``poison`` names, or the first ``fail_times`` calls."""

    def __init__(self, fail_times: int = 0, poison: Set[str] = frozenset()) -> None:
        super().__init__()
        self.fail_times = fail_times
        self.poison = set(poison)
        self.calls = 0

    def upsert_page(self, generation, records, unparsed=()):
        self.calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise TransientStoreError("database is locked")
        names = {r.filename for r in records} | {f.filename for f in unparsed}
        if names & self.poison:
            raise TransientStoreError("connection reset")
        super().upsert_page(generation, records, unparsed)


class LockedScanStore(MemoryIndexStore):
    """``scan_unparsed`` raises while ``locked`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.locked = False

    def scan_unparsed(self, generation):
        if self.locked:
            raise TransientStoreError("database is locked")
        return super().scan_unparsed(generation)


def _builder(store, sleeps: List[float] = None, **config) -> IndexBuilder:
    cfg = ReconcileConfig(**{"backoff_base": 0.5, **config})
    recorder = sleeps if sleeps is not None else []
    return IndexBuilder(store, config=cfg, sleep=recorder.append)


class TestRebuild(unittest.TestCase):
    def test_rebuild_activates_and_buckets_unparsed(self):
        store = MemoryIndexStore()
        report = _builder(store, page_size=4).rebuild(_listing())
        self.assertTrue(report.activated)
        self.assertEqual(report.pages, 3)
        self.assertEqual(report.written, 8)
        self.assertEqual(report.unparsed, 1)
        self.assertEqual(store.active_generation(), report.generation)
        idx = load_index(store)
        self.assertEqual(len(idx), 8)
        self.assertEqual([f.filename for f in idx.unparsed], ["nodelimiter.jpg"])
        self.assertEqual(idx.unparsed[0].storage_locator, "campaign/nodelimiter.jpg")
        self.assertIn("HBSE-ANNIE", idx)

    def test_idempotent_byte_identical(self):
        store = MemoryIndexStore()
        builder = _builder(store, page_size=3)
        builder.rebuild(_listing())
        first = load_index(store).dumps()
        builder.rebuild(_listing())
        self.assertEqual(load_index(store).dumps(), first)
        builder.upsert(_listing())
        self.assertEqual(load_index(store).dumps(), first)

    def test_dry_run_matches_persisted_index(self):
        store = MemoryIndexStore()
        builder = _builder(store, page_size=2)
        dry, report = builder.dry_run(_listing())
        self.assertIsNone(store.active_generation())
        self.assertEqual(report.written, 8)
        builder.rebuild(_listing())
        self.assertEqual(load_index(store).dumps(), dry.dumps())

    def test_rebuild_drops_files_gone_from_corpus(self):
        store = MemoryIndexStore()
        builder = _builder(store)
        builder.rebuild(_listing())
        builder.rebuild(_listing(_NAMES[:3]))
        idx = load_index(store)
        self.assertEqual(len(idx), 3)
        self.assertEqual(idx.unparsed, ())

    def test_duplicate_listing_rows_are_skipped(self):
        store = MemoryIndexStore()
        listing = _listing(_NAMES + _NAMES[:2])
        report = _builder(store, page_size=4).rebuild(listing)
        self.assertEqual(report.skipped, 2)
        self.assertEqual(len(load_index(store)), 8)

    def test_corpus_inconsistency_is_fatal_and_keeps_active(self):
        store = MemoryIndexStore()
        builder = _builder(store)
        builder.rebuild(_listing())
        active = store.active_generation()
        before = load_index(store).dumps()
        entries = list(_listing()) + [ListingEntry("PD760221_RED_1.jpg", "other/PD760221_RED_1.jpg")]
        with self.assertRaises(CorpusInconsistencyError) as ctx:
            builder.rebuild(StaticListing(entries))
        self.assertEqual(ctx.exception.first_locator, "campaign/PD760221_RED_1.jpg")
        self.assertEqual(ctx.exception.second_locator, "other/PD760221_RED_1.jpg")
        self.assertEqual(store.active_generation(), active)
        self.assertEqual(load_index(store).dumps(), before)


class TestTransientFailures(unittest.TestCase):
    def test_retry_with_backoff(self):
        sleeps: List[float] = []
        store = FlakyStore(fail_times=2)
        report = _builder(store, sleeps, page_size=100).rebuild(_listing())
        self.assertTrue(report.ok)
        self.assertEqual(sleeps, [0.5, 1.0])
        self.assertEqual(len(load_index(store)), 8)

    def test_failed_page_keeps_old_index_and_resume_finishes(self):
        store = FlakyStore()
        builder = _builder(store, page_size=3, max_retries=2)
        builder.rebuild(_listing())
        active = store.active_generation()
        before = load_index(store).dumps()

        store.poison = {"HBSE-ANNIE-BLACK-2.jpg"}
        with self.assertRaises(IndexBuildError) as ctx:
            builder.rebuild(_listing())
        err = ctx.exception
        self.assertEqual(err.report.failed_pages, [1])
        self.assertEqual(sorted(err.failed_keys), sorted(_NAMES[3:6]))
        self.assertEqual(store.active_generation(), active)
        self.assertEqual(load_index(store).dumps(), before)
        pending = store.pending_staging()
        self.assertEqual(pending, err.report.generation)

        store.poison = set()
        report = builder.rebuild(_listing(), resume=True)
        self.assertEqual(report.generation, pending)
        self.assertEqual(report.skipped, 6)
        self.assertEqual(report.written, 3)
        self.assertTrue(report.activated)
        self.assertIsNone(store.pending_staging())
        self.assertEqual(load_index(store).dumps(), before)

    def test_resume_scan_failure_is_a_build_error(self):
        sleeps: List[float] = []
        store = LockedScanStore()
        builder = _builder(store, sleeps, max_retries=2)
        builder.rebuild(_listing())
        active = store.active_generation()
        pending = store.begin_staging()

        store.locked = True
        with self.assertRaises(IndexBuildError) as ctx:
            builder.rebuild(_listing(), resume=True)
        self.assertEqual(ctx.exception.report.generation, pending)
        self.assertFalse(ctx.exception.report.activated)
        self.assertEqual(sleeps, [0.5, 1.0])
        self.assertEqual(store.pending_staging(), pending)
        self.assertEqual(store.active_generation(), active)

        store.locked = False
        report = builder.rebuild(_listing(), resume=True)
        self.assertEqual(report.generation, pending)
        self.assertTrue(report.activated)

    def test_resume_without_pending_starts_fresh(self):
        store = MemoryIndexStore()
        report = _builder(store).rebuild(_listing(), resume=True)
        self.assertTrue(report.activated)
        self.assertEqual(report.skipped, 0)

    def test_new_rebuild_discards_abandoned_staging(self):
        store = FlakyStore(poison={"AB1113_RED_1.jpg"})
        builder = _builder(store, page_size=3, max_retries=0)
        with self.assertRaises(IndexBuildError):
            builder.rebuild(_listing())
        abandoned = store.pending_staging()
        store.poison = set()
        report = builder.rebuild(_listing())
        self.assertNotEqual(report.generation, abandoned)
        self.assertIsNone(store.pending_staging())

    def test_upsert_reports_failed_page_and_continues(self):
        store = FlakyStore(poison={"PD760221_RED_1.jpg"})
        report = _builder(store, page_size=3, max_retries=1).upsert(_listing())
        self.assertFalse(report.ok)
        self.assertEqual(report.failed_pages, [0])
        self.assertEqual(report.written, 5)
        idx = load_index(store)
        self.assertNotIn("PD760221", idx)
        self.assertIn("AB1113", idx)

    def test_call_with_retries_gives_up(self):
        sleeps: List[float] = []

        def boom():
            raise TransientStoreError("still locked")

        with self.assertRaises(TransientStoreError):
            call_with_retries(boom, retries=3, backoff_base=1.0, sleep=sleeps.append)
        self.assertEqual(sleeps, [1.0, 2.0, 4.0])


class TestIncremental(unittest.TestCase):
    def test_upsert_then_delete(self):
        store = MemoryIndexStore()
        builder = _builder(store)
        report = builder.upsert(_listing(_NAMES[:3]))
        self.assertEqual(report.written, 3)
        builder.upsert(_listing(_NAMES[3:6]))
        self.assertEqual(len(load_index(store)), 6)
        deleted = builder.delete(["PD760221_RED_1.jpg", "missing.jpg"])
        self.assertEqual(deleted.deleted, 1)
        idx = load_index(store)
        self.assertEqual(idx.colors("PD760221"), ["BLO"])

    def test_delete_on_empty_store(self):
        report = _builder(MemoryIndexStore()).delete(["a.jpg"])
        self.assertIsNone(report.generation)
        self.assertEqual(report.deleted, 0)

    def test_replaced_locator_on_rescan(self):
        store = MemoryIndexStore()
        builder = _builder(store)
        builder.upsert(_listing(_NAMES[:1], folder="old"))
        builder.upsert(_listing(_NAMES[:1], folder="new"))
        recs = list(load_index(store).records())
        self.assertEqual(len(recs), 1)
        self.assertEqual(recs[0].storage_locator, "new/PD760221_BLO_DITA_B.jpg")


class TestWorkers(unittest.TestCase):
    def test_process_pool_gives_same_index(self):
        names = [f"PD76{i:04d}_{c}_{v}.jpg" for i in range(40) for c in ("BLO", "NAVY") for v in (1, 2)]
        in_process, _ = _builder(MemoryIndexStore(), page_size=50).dry_run(_listing(names))
        pooled, _ = _builder(MemoryIndexStore(), page_size=50, workers=2).dry_run(_listing(names))
        self.assertEqual(pooled.dumps(), in_process.dumps())


if __name__ == "__main__":
    unittest.main()
