import unittest

from purchase_api import PurchasePage, ServerFailure, StaticCredentials, parse_purchase_page
from purchase_store import PurchaseStore, connect
from purchase_view import PurchaseFilters, PurchaseViewBuilder

LINES = [{"product_id": 1, "quantity": 1, "unit_price": 10}]


class FakeListApi:
    def __init__(self, rows=None):
        self.rows = rows or []
        self.calls = []
        self.error = None
        self.body = None

    def list_purchases(self, **params):
        self.calls.append(params)
        if self.error:
            raise self.error
        if self.body is not None:
            return parse_purchase_page(self.body)
        return PurchasePage(purchases=list(self.rows), current_page=1, last_page=2,
                            per_page=params.get("per_page", 20), total=len(self.rows))


class PurchaseViewTest(unittest.TestCase):
    def setUp(self):
        self.store = PurchaseStore(connect(":memory:"))
        self.store.replace_cache("suppliers", [{"id": 4, "name": "Acme"}, {"id": 5, "name": "Bolt"}])
        self.store.replace_cache("locations", [{"id": 1, "name": "Main"}])
        self.api = FakeListApi()
        self.online = True
        self.view = PurchaseViewBuilder(self.store, self.api, lambda: self.online, StaticCredentials("tkn"))

    def tearDown(self):
        self.store.close()

    def _refs(self, listing):
        return [p["ref_no"] for p in listing.purchases]

    def test_merge_returns_local_unsynced_plus_remote_page(self):
        a = self.store.create_purchase({"ref_no": "A", "contact_id": 4, "status": "ordered"}, LINES)
        self.api.rows = [
            {"id": 10, "ref_no": "B", "contact_id": 5, "status": "received", "final_total": "12.5000"},
            {"id": 11, "ref_no": "C", "contact_id": 4, "status": "ordered"},
        ]
        listing = self.view.list()
        self.assertEqual(sorted(self._refs(listing)), ["A", "B", "C"])
        local_row = [p for p in listing.purchases if p["ref_no"] == "A"][0]
        self.assertEqual((local_row["source"], local_row["local_id"], local_row["transaction_id"]), ("local", a, None))
        remote_row = listing.purchases[0]
        self.assertEqual((remote_row["source"], remote_row["supplier_name"], remote_row["final_total"]),
                         ("remote", "Bolt", 12.5))
        self.assertTrue(listing.has_next_page)
        self.assertFalse(listing.offline)

    def test_synced_local_rows_are_replaced_by_remote_page(self):
        mirror = self.store.create_purchase({"ref_no": "B-local"}, LINES)
        self.store.mark_synced(mirror, 10)
        self.store.upsert_remote_header({"id": 99, "ref_no": "old-page"})
        self.api.rows = [{"id": 10, "ref_no": "B"}]
        listing = self.view.list()
        self.assertEqual(self._refs(listing), ["B"])
        self.assertEqual(listing.purchases[0]["local_id"], mirror)
        self.assertFalse(listing.purchases[0]["pending_changes"])

    def test_locally_edited_record_is_not_duplicated(self):
        pid = self.store.create_purchase({"ref_no": "B"}, LINES)
        self.store.mark_synced(pid, 10)
        self.store.update_header(pid, {"additional_notes": "changed"})
        self.api.rows = [{"id": 10, "ref_no": "B"}]
        listing = self.view.list()
        self.assertEqual(len(listing.purchases), 1)
        self.assertTrue(listing.purchases[0]["pending_changes"])

    def test_supplier_and_ref_no_fallback_match(self):
        self.store.create_purchase({"ref_no": "PO-9", "contact_id": 4}, LINES)
        self.store.create_purchase({"ref_no": "PO-9", "contact_id": 5}, LINES)
        self.api.rows = [{"id": 12, "ref_no": "PO-9", "contact_id": 4}]
        listing = self.view.list()
        self.assertEqual(len(listing.purchases), 2)
        self.assertEqual([p["source"] for p in listing.purchases], ["remote", "local"])
        self.assertEqual(listing.purchases[1]["contact_id"], 5)

    def test_duplicate_remote_entries_collapse_to_last(self):
        self.api.rows = [{"id": 10, "ref_no": "first"}, {"id": 11, "ref_no": "x"}, {"id": 10, "ref_no": "second"}]
        listing = self.view.list()
        self.assertEqual(self._refs(listing), ["second", "x"])

    def test_local_rows_appended_only_when_they_match_filters(self):
        self.store.create_purchase({"ref_no": "keep", "contact_id": 4, "status": "ordered"}, LINES)
        self.store.create_purchase({"ref_no": "other-status", "contact_id": 4, "status": "received"}, LINES)
        self.store.create_purchase({"ref_no": "other-supplier", "contact_id": 5, "status": "ordered"}, LINES)
        listing = self.view.list(PurchaseFilters(status="ordered", supplier_id=4))
        self.assertEqual(self._refs(listing), ["keep"])
        self.assertEqual(self.api.calls[0]["status"], "ordered")
        self.assertEqual(self.api.calls[0]["supplier_id"], 4)

    def test_offline_lists_local_rows_with_local_filters(self):
        self.store.create_purchase({"ref_no": "A", "contact_id": 4, "status": "ordered", "location_id": 1}, LINES)
        synced = self.store.create_purchase({"ref_no": "B", "contact_id": 4, "status": "ordered"}, LINES)
        self.store.mark_synced(synced, 10)
        self.store.create_purchase({"ref_no": "C", "contact_id": 4, "status": "received"}, LINES)
        self.online = False
        listing = self.view.list(PurchaseFilters(status="ordered"))
        self.assertTrue(listing.offline)
        self.assertEqual(self._refs(listing), ["B", "A"])
        self.assertEqual(self.api.calls, [])
        self.assertEqual(listing.purchases[1]["location_name"], "Main")
        self.assertEqual(listing.purchases[1]["supplier_name"], "Acme")

    def test_remote_failure_falls_back_to_local(self):
        self.store.create_purchase({"ref_no": "A"}, LINES)
        self.api.error = ServerFailure("Server error occurred", 503)
        listing = self.view.list()
        self.assertFalse(listing.offline)
        self.assertIn("Server error", listing.error)
        self.assertEqual(self._refs(listing), ["A"])

    def test_garbled_page_metadata_falls_back_to_local(self):
        self.store.create_purchase({"ref_no": "A"}, LINES)
        self.api.body = {"data": [{"id": 1, "ref_no": "R"}], "current_page": "1", "last_page": "?"}
        listing = self.view.list()
        self.assertIsNotNone(listing.error)
        self.assertEqual(self._refs(listing), ["A"])

    def test_filters_from_query_args(self):
        filters = PurchaseFilters.from_mapping({"supplier_id": "4", "page": "2", "status": "", "per_page": "x"})
        self.assertEqual((filters.supplier_id, filters.page, filters.status, filters.per_page), (4, 2, None, 20))


if __name__ == "__main__":
    unittest.main()
