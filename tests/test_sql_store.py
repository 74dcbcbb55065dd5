"""SqlIndexStore against a temporary SQLite file."""
from __future__ import annotations

import shutil
import tempfile
import unittest
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import func
from sqlalchemy.exc import OperationalError

from db.models import GENERATION_RETIRED, ImageRow, IndexGeneration
from reconcile.builder import IndexBuilder
from reconcile.config import ReconcileConfig
from reconcile.errors import ParseFailure, StoreError, TransientStoreError
from reconcile.listing import StaticListing
from reconcile.records import HIGH, ImageRecord, ListingEntry
from reconcile.store import MemoryIndexStore, SqlIndexStore, load_index


def _rec(name: str, model: str = "PD760221", color: str = "BLO", folder: str = "img") -> ImageRecord:
    return ImageRecord(name, model, color, f"{folder}/{name}", HIGH, "1")


class SqlStoreTestCase(unittest.TestCase):
    def setUp(self):
        self._dir = tempfile.mkdtemp(prefix="imgrecon-")
        self.db_path = Path(self._dir) / "index.db"
        self.store = SqlIndexStore.for_url(f"sqlite:///{self.db_path.as_posix()}")

    def tearDown(self):
        shutil.rmtree(self._dir, ignore_errors=True)

    def _row_count(self) -> int:
        with self.store._session_factory() as session:
            return session.query(func.count(ImageRow.id)).scalar()


class TestUpsert(SqlStoreTestCase):
    def test_insert_or_replace_by_filename(self):
        gen = self.store.ensure_active()
        self.store.upsert_page(gen, [_rec("a.jpg"), _rec("b.jpg")])
        self.store.upsert_page(gen, [_rec("a.jpg", color="RED", folder="moved"), _rec("b.jpg")])
        self.assertEqual(self.store.count(gen), 2)
        self.assertEqual(self._row_count(), 2)
        recs = {r.filename: r for r in self.store.scan_records(gen)}
        self.assertEqual(recs["a.jpg"].color, "RED")
        self.assertEqual(recs["a.jpg"].storage_locator, "moved/a.jpg")
        self.assertEqual(recs["a.jpg"].view_tag, "1")

    def test_ensure_active_is_stable(self):
        self.assertIsNone(self.store.active_generation())
        gen = self.store.ensure_active()
        self.assertEqual(self.store.ensure_active(), gen)
        self.assertEqual(self.store.active_generation(), gen)

    def test_parse_outcome_moves_between_tables(self):
        gen = self.store.ensure_active()
        self.store.upsert_page(gen, [], [ParseFailure("x.jpg", "no delimiter", "img/x.jpg")])
        self.assertEqual([f.filename for f in self.store.scan_unparsed(gen)], ["x.jpg"])
        self.store.upsert_page(gen, [_rec("x.jpg")])
        self.assertEqual(list(self.store.scan_unparsed(gen)), [])
        self.assertEqual(self.store.count(gen), 1)
        self.store.upsert_page(gen, [], [ParseFailure("x.jpg", "renamed", "img/x.jpg")])
        self.assertEqual(self.store.count(gen), 0)

    def test_paged_scan_in_filename_order(self):
        gen = self.store.ensure_active()
        names = [f"PD7602{i:02d}_BLO.jpg" for i in range(11)]
        self.store.upsert_page(gen, [_rec(n) for n in reversed(names)])
        self.assertEqual([r.filename for r in self.store.scan_records(gen, page_size=3)], names)

    def test_large_page_is_chunked(self):
        gen = self.store.ensure_active()
        recs = [_rec(f"PD{i:06d}_BLO.jpg", model=f"PD{i:06d}") for i in range(1200)]
        self.store.upsert_page(gen, recs)
        self.store.upsert_page(gen, recs)
        self.assertEqual(self.store.count(gen), 1200)

    def test_delete_and_known_locators(self):
        gen = self.store.ensure_active()
        self.store.upsert_page(gen, [_rec("a.jpg"), _rec("b.jpg")], [ParseFailure("c.jpg", "no delimiter", "img/c.jpg")])
        self.assertEqual(self.store.known_locators(gen, ["a.jpg", "c.jpg", "z.jpg"]),
                         {"a.jpg": "img/a.jpg", "c.jpg": "img/c.jpg"})
        self.assertEqual(self.store.delete(gen, ["a.jpg", "c.jpg", "z.jpg"]), 2)
        self.assertEqual([r.filename for r in self.store.scan_records(gen)], ["b.jpg"])

    def test_list_unparsed_paging(self):
        gen = self.store.ensure_active()
        self.store.upsert_page(gen, [], [ParseFailure(f"u{i}.jpg", "no delimiter") for i in range(5)])
        page = self.store.list_unparsed(gen, limit=2, offset=2)
        self.assertEqual([f.filename for f in page], ["u2.jpg", "u3.jpg"])

    def test_unknown_generation(self):
        with self.assertRaises(StoreError):
            self.store.upsert_page(999, [_rec("a.jpg")])


class TestGenerations(SqlStoreTestCase):
    def test_staging_invisible_until_activated(self):
        old = self.store.ensure_active()
        self.store.upsert_page(old, [_rec("a.jpg")])
        staging = self.store.begin_staging()
        self.store.upsert_page(staging, [_rec("b.jpg"), _rec("c.jpg")])
        self.assertEqual(self.store.pending_staging(), staging)
        self.assertEqual([r.filename for r in load_index(self.store).records()], ["a.jpg"])

        self.store.activate(staging)
        self.assertEqual(self.store.active_generation(), staging)
        self.assertIsNone(self.store.pending_staging())
        self.assertEqual(sorted(r.filename for r in load_index(self.store).records()), ["b.jpg", "c.jpg"])
        # retired generation's rows are purged in the same swap
        self.assertEqual(self._row_count(), 2)
        with self.store._session_factory() as session:
            gen_row = session.get(IndexGeneration, old)
            self.assertEqual(gen_row.status, GENERATION_RETIRED)
            self.assertEqual(session.get(IndexGeneration, staging).record_count, 2)

    def test_activate_requires_staging(self):
        gen = self.store.ensure_active()
        with self.assertRaises(StoreError):
            self.store.activate(gen)

    def test_discard(self):
        staging = self.store.begin_staging()
        self.store.upsert_page(staging, [_rec("a.jpg")])
        self.store.discard(staging)
        self.assertIsNone(self.store.pending_staging())
        self.assertEqual(self._row_count(), 0)
        with self.assertRaises(StoreError):
            self.store.discard(self.store.ensure_active())

    def test_revision_tracks_writes_to_active_generation(self):
        for store in (self.store, MemoryIndexStore()):
            with self.subTest(store=type(store).__name__):
                self.assertIsNone(store.active_revision())
                gen = store.ensure_active()
                start = store.active_revision()
                self.assertEqual(start[0], gen)

                store.upsert_page(gen, [_rec("a.jpg"), _rec("b.jpg")])
                after_upsert = store.active_revision()
                self.assertEqual(after_upsert[0], gen)
                self.assertGreater(after_upsert[1], start[1])

                store.delete(gen, ["missing.jpg"])
                self.assertEqual(store.active_revision(), after_upsert)
                store.delete(gen, ["a.jpg"])
                after_delete = store.active_revision()
                self.assertGreater(after_delete[1], after_upsert[1])

                # staging writes do not touch the active revision
                staging = store.begin_staging()
                store.upsert_page(staging, [_rec("c.jpg")])
                self.assertEqual(store.active_revision(), after_delete)
                store.activate(staging)
                self.assertEqual(store.active_revision()[0], staging)


class TestErrorMapping(unittest.TestCase):
    def test_operational_error_is_transient(self):
        @contextmanager
        def locked_session():
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))
            yield  # pragma: no cover

        store = SqlIndexStore(locked_session)
        with self.assertRaises(TransientStoreError):
            store.active_generation()


class TestBuilderOnSql(SqlStoreTestCase):
    def test_same_index_as_memory_store(self):
        names = ["PD760221_BLO_DITA_B.jpg", "PD760221_BLO_DITA_2.jpg", "HBSE-325-0037_BLACK_1.jpg",
                 "HBSE-ANNIE-BLACK-2.jpg", "nodelimiter.jpg", "AB1113_RED_1.jpg"]
        listing = StaticListing([ListingEntry(n, f"c/{n}") for n in names])
        cfg = ReconcileConfig(page_size=2)
        mem = MemoryIndexStore()
        IndexBuilder(mem, config=cfg).rebuild(listing)
        IndexBuilder(self.store, config=cfg).rebuild(listing)
        IndexBuilder(self.store, config=cfg).rebuild(listing)
        self.assertEqual(load_index(self.store).dumps(), load_index(mem).dumps())
        self.assertEqual(self._row_count(), 5)


if __name__ == "__main__":
    unittest.main()
