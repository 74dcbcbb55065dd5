from __future__ import annotations

import unittest
from unittest import mock

from fastapi.testclient import TestClient

from api import main
from reconcile.builder import IndexBuilder
from reconcile.config import DEFAULT_SYNONYMS_PATH, ReconcileConfig
from reconcile.equivalence import ColorMatcher
from reconcile.listing import StaticListing
from reconcile.records import ListingEntry
from reconcile.store import MemoryIndexStore
from reconcile.synonyms import SynonymTable

_NAMES = [
    "PD760221_BLO_DITA_B.jpg",
    "PD760221_BLO_DITA_2.jpg",
    "HBSE-325-0037_BLACK_1.jpg",
    "AB1113_RED_1.jpg",
    "AB1113_RED_2.jpg",
    "nodelimiter.jpg",
]


def _listing(names):
    return StaticListing([ListingEntry(n, f"campaign/{n}") for n in names])


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        self.config = ReconcileConfig()
        self.store = MemoryIndexStore()
        IndexBuilder(self.store, config=self.config).rebuild(_listing(_NAMES))
        matcher = ColorMatcher(SynonymTable.load(DEFAULT_SYNONYMS_PATH))
        cache = main.ResolverCache()
        main.app.dependency_overrides[main.get_store] = lambda: self.store
        main.app.dependency_overrides[main.get_config] = lambda: self.config
        main.app.dependency_overrides[main.get_matcher] = lambda: matcher
        main.app.dependency_overrides[main.get_resolver_cache] = lambda: cache
        self.client = TestClient(main.app)

    def tearDown(self):
        main.app.dependency_overrides.clear()


class TestHealth(ApiTestCase):
    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok", "active_generation": self.store.active_generation()})


class TestResolve(ApiTestCase):
    def test_exact_bundle(self):
        resp = self.client.get("/resolve", params={"model_ref": "PD760221", "color": "BLACK"})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["tier"], "EXACT")
        self.assertFalse(body["ambiguous"])
        self.assertEqual(sorted(body["images"]), ["PD760221_BLO_DITA_2.jpg", "PD760221_BLO_DITA_B.jpg"])
        self.assertEqual(body["primary_image"], body["storage_locators"][0])

    def test_prefix_any(self):
        body = self.client.get("/resolve", params={"model_ref": "AB1111", "color": "NAVY"}).json()
        self.assertEqual(body["tier"], "PREFIX_ANY")
        self.assertTrue(body["ambiguous"])
        self.assertEqual(body["candidates"], ["AB1113"])

    def test_none(self):
        body = self.client.get("/resolve", params={"model_ref": "ZZ999999", "color": "RED"}).json()
        self.assertEqual(body["tier"], "NONE")
        self.assertEqual(body["images"], [])
        self.assertIsNone(body["primary_image"])

    def test_model_ref_required(self):
        self.assertEqual(self.client.get("/resolve", params={"color": "RED"}).status_code, 422)

    def test_swap_refreshes_cached_resolver(self):
        before = self.client.get("/resolve", params={"model_ref": "PD760221", "color": "RED"}).json()
        self.assertTrue(before["ambiguous"])
        IndexBuilder(self.store, config=self.config).rebuild(_listing(_NAMES + ["PD760221_RED_1.jpg"]))
        after = self.client.get("/resolve", params={"model_ref": "PD760221", "color": "RED"}).json()
        self.assertEqual(after["tier"], "EXACT")
        self.assertFalse(after["ambiguous"])
        self.assertEqual(after["images"], ["PD760221_RED_1.jpg"])

    def test_upsert_refreshes_cached_resolver(self):
        gen = self.store.active_generation()
        before = self.client.get("/resolve", params={"model_ref": "PD760221", "color": "RED"}).json()
        self.assertTrue(before["ambiguous"])
        IndexBuilder(self.store, config=self.config).upsert(_listing(["PD760221_RED_1.jpg"]))
        self.assertEqual(self.store.active_generation(), gen)
        after = self.client.get("/resolve", params={"model_ref": "PD760221", "color": "RED"}).json()
        self.assertEqual(after["tier"], "EXACT")
        self.assertFalse(after["ambiguous"])
        self.assertEqual(after["images"], ["PD760221_RED_1.jpg"])

    def test_index_loaded_once_per_revision(self):
        with mock.patch.object(main, "load_index", wraps=main.load_index) as loads:
            for _ in range(3):
                self.client.get("/resolve", params={"model_ref": "AB1113", "color": "RED"})
            self.assertEqual(loads.call_count, 1)
            IndexBuilder(self.store, config=self.config).upsert(_listing(["AB1113_BLUE_1.jpg"]))
            self.client.get("/resolve", params={"model_ref": "AB1113", "color": "RED"})
            self.client.get("/resolve", params={"model_ref": "AB1113", "color": "RED"})
            self.assertEqual(loads.call_count, 2)


class TestStoreDependency(unittest.TestCase):
    def setUp(self):
        main.get_store.cache_clear()

    def tearDown(self):
        main.get_store.cache_clear()

    def test_one_store_per_process(self):
        self.assertIs(main.get_store(), main.get_store())


class TestIndexEndpoints(ApiTestCase):
    def test_stats(self):
        body = self.client.get("/index/stats").json()
        self.assertEqual(body["records"], 5)
        self.assertEqual(body["unparsed"], 1)
        self.assertEqual(body["active_generation"], self.store.active_generation())

    def test_unparsed_paging(self):
        body = self.client.get("/index/unparsed", params={"limit": 1}).json()
        self.assertEqual(body["limit"], 1)
        self.assertEqual([i["filename"] for i in body["items"]], ["nodelimiter.jpg"])
        self.assertEqual(body["items"][0]["storage_locator"], "campaign/nodelimiter.jpg")
        self.assertEqual(self.client.get("/index/unparsed", params={"limit": 0}).status_code, 422)

    def test_unparsed_on_empty_store(self):
        main.app.dependency_overrides[main.get_store] = MemoryIndexStore
        body = self.client.get("/index/unparsed").json()
        self.assertIsNone(body["generation"])
        self.assertEqual(body["items"], [])


class TestAudit(ApiTestCase):
    def _post(self, include_all: bool):
        return self.client.post("/audit", json={
            "variants": [
                {"model_ref": "PD760221", "color": "BLACK", "extra": {"sku": "1001"}},
                {"model_ref": "ZZ999999", "color": "RED"},
            ],
            "include_all": include_all,
        })

    def test_flagged_only(self):
        resp = self._post(False)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["total_variants"], 2)
        self.assertEqual(body["flagged"], 1)
        self.assertEqual(body["tiers"], {"EXACT": 1, "PREFIX_COLOR": 0, "PREFIX_ANY": 0, "NONE": 1})
        self.assertEqual([r["model_ref"] for r in body["results"]], ["ZZ999999"])

    def test_include_all(self):
        body = self._post(True).json()
        self.assertEqual(len(body["results"]), 2)


if __name__ == "__main__":
    unittest.main()
