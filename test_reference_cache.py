import datetime as dt
import threading
import unittest

from purchase_api import ServerFailure, StaticCredentials
from purchase_store import PurchaseStore, connect
from reference_cache import ReferenceCacheManager, RefreshStatus, SyncTimestamps

NOW = dt.datetime(2024, 6, 1, 12, 0, tzinfo=dt.timezone.utc)


class FakeReferenceApi:
    def __init__(self):
        self.calls = []
        self.suppliers = [{"id": 1, "name": "Acme"}, {"id": 2, "name": "Bolt Ltd"}]
        self.products = [{"product_id": 10, "product_name": "Widget", "sub_sku": "W-1"}]
        self.locations = [{"id": 1, "name": "Main Store"}]
        self.error = None
        self._lock = threading.Lock()

    def _record(self, name):
        with self._lock:
            self.calls.append(name)
        if self.error:
            raise self.error

    def get_suppliers(self):
        self._record("suppliers")
        return self.suppliers

    def get_products(self):
        self._record("products")
        return self.products

    def get_locations(self):
        self._record("locations")
        return self.locations


class ReferenceCacheManagerTest(unittest.TestCase):
    def setUp(self):
        self.store = PurchaseStore(connect(":memory:"))
        self.api = FakeReferenceApi()
        self.online = True
        self.credentials = StaticCredentials("tkn")
        self.manager = ReferenceCacheManager(
            self.store, self.api, lambda: self.online, self.credentials, clock=lambda: NOW)
        self.clock = SyncTimestamps(self.store)

    def tearDown(self):
        self.store.close()

    def test_fresh_cache_skips_network(self):
        self.clock.mark("products", NOW - dt.timedelta(minutes=5))
        result = self.manager.refresh_if_stale("products", max_age=dt.timedelta(minutes=10))
        self.assertIs(result.status, RefreshStatus.SKIPPED_FRESH)
        self.assertEqual(self.api.calls, [])

    def test_stale_cache_is_refreshed(self):
        self.clock.mark("products", NOW - dt.timedelta(minutes=15))
        result = self.manager.refresh_if_stale("products", max_age=dt.timedelta(minutes=10))
        self.assertIs(result.status, RefreshStatus.REFRESHED)
        self.assertEqual(result.count, 1)
        self.assertEqual(self.api.calls, ["products"])
        self.assertEqual(self.clock.last_sync("products"), NOW)

    def test_age_equal_to_max_age_is_stale(self):
        self.clock.mark("locations", NOW - dt.timedelta(hours=24))
        self.assertTrue(self.manager.is_stale("locations"))
        self.clock.mark("locations", NOW - dt.timedelta(hours=23))
        self.assertFalse(self.manager.is_stale("locations"))

    def test_missing_or_garbled_stamp_is_stale(self):
        self.assertTrue(self.manager.is_stale("suppliers"))
        self.store.set_value("suppliers_last_sync", "not a date")
        self.assertTrue(self.manager.is_stale("suppliers"))

    def test_offline_keeps_stale_cache(self):
        self.store.replace_cache("suppliers", [{"id": 9, "name": "Cached"}], "2024-01-01T00:00:00+00:00")
        self.online = False
        result = self.manager.refresh_if_stale("suppliers")
        self.assertIs(result.status, RefreshStatus.FAILED_KEPT_STALE)
        self.assertEqual(result.reason, "offline")
        self.assertEqual(self.api.calls, [])
        self.assertEqual([r["name"] for r in self.manager.search("suppliers")], ["Cached"])

    def test_unauthenticated_does_not_call_remote(self):
        self.manager.credentials = StaticCredentials(None)
        result = self.manager.refresh_if_stale("suppliers")
        self.assertEqual(result.reason, "unauthenticated")
        self.assertEqual(self.api.calls, [])

    def test_remote_failure_is_swallowed(self):
        self.store.replace_cache("suppliers", [{"id": 9, "name": "Cached"}], "2024-01-01T00:00:00+00:00")
        self.api.error = ServerFailure("boom", 500)
        result = self.manager.refresh_if_stale("suppliers")
        self.assertIs(result.status, RefreshStatus.FAILED_KEPT_STALE)
        self.assertEqual(result.reason, "server")
        self.assertEqual(result.count, 1)
        self.assertEqual(self.store.get_value("suppliers_last_sync"), "2024-01-01T00:00:00+00:00")

    def test_empty_remote_set_keeps_cache(self):
        self.store.replace_cache("locations", [{"id": 1, "name": "Old"}], "2024-01-01T00:00:00+00:00")
        self.api.locations = []
        result = self.manager.refresh_if_stale("locations")
        self.assertEqual(result.reason, "empty")
        self.assertEqual(self.store.count_cache("locations"), 1)

    def test_refresh_all_runs_every_type(self):
        results = self.manager.refresh_all()
        self.assertEqual(sorted(self.api.calls), ["locations", "products", "suppliers"])
        self.assertTrue(all(r.status is RefreshStatus.REFRESHED for r in results.values()))
        self.assertEqual(self.clock.last_full_refresh(), NOW)
        stats = self.manager.stats()
        self.assertEqual(stats["suppliers"]["count"], 2)
        self.assertFalse(stats["products"]["stale"])

        self.api.calls = []
        results = self.manager.refresh_all()
        self.assertEqual(self.api.calls, [])
        self.assertTrue(all(r.status is RefreshStatus.SKIPPED_FRESH for r in results.values()))

        self.manager.refresh_all(force=True)
        self.assertEqual(len(self.api.calls), 3)

    def test_search_orders_by_name(self):
        self.manager.refresh("suppliers")
        self.assertEqual([r["name"] for r in self.manager.search("suppliers", "")], ["Acme", "Bolt Ltd"])
        self.assertEqual([r["id"] for r in self.manager.search("suppliers", "BOLT")], [2])

    def test_clear_wipes_rows_and_stamps(self):
        self.manager.refresh_all()
        self.manager.clear()
        stats = self.manager.stats()
        self.assertEqual(stats["products"]["count"], 0)
        self.assertIsNone(stats["products"]["last_sync"])
        self.assertIsNone(stats["last_refresh"])

    def test_unknown_entity(self):
        with self.assertRaises(ValueError):
            self.manager.refresh_if_stale("customers")


if __name__ == "__main__":
    unittest.main()
