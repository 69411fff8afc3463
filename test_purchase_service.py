import threading
import unittest

from purchase_api import RemoteRequestError, ServerFailure, StaticCredentials
from purchase_service import PurchaseService, PurchaseServiceError
from purchase_store import PurchaseStore, connect

LINES = [{"product_id": 1, "quantity": 2, "unit_price": 5}]


class FakeServiceApi:
    def __init__(self):
        self.created = []
        self.updated = []
        self.deleted = []
        self.status_calls = []
        self.fetched = []
        self.fetch_rows = []
        self.delete_error = None
        self.fetch_error = None

    def create_purchase(self, payload):
        self.created.append(payload)
        return {"success": True, "id": 900 + len(self.created)}

    def update_purchase(self, remote_id, payload):
        self.updated.append(remote_id)
        return {"success": True}

    def delete_purchase(self, remote_id):
        if self.delete_error:
            raise self.delete_error
        self.deleted.append(remote_id)
        return {"success": True}

    def update_status(self, remote_id, status):
        self.status_calls.append((remote_id, status))
        return {"success": True}

    def get_purchases(self, remote_ids):
        self.fetched.append(list(remote_ids))
        if self.fetch_error:
            raise self.fetch_error
        return self.fetch_rows

    def check_reference(self, contact_id, ref_no):
        return ref_no == "TAKEN"

    def get_suppliers(self):
        return []

    def get_products(self):
        return []

    def get_locations(self):
        return []


class PurchaseServiceTest(unittest.TestCase):
    def setUp(self):
        self.store = PurchaseStore(connect(":memory:"))
        self.api = FakeServiceApi()
        self.online = True
        self.service = PurchaseService(self.store, self.api, lambda: self.online, StaticCredentials("tkn"))

    def tearDown(self):
        self.store.close()

    def _synced(self, ref_no, remote_id):
        pid = self.store.create_purchase({"ref_no": ref_no, "status": "ordered"}, LINES)
        self.store.mark_synced(pid, remote_id)
        return pid

    def test_create_online_pushes_immediately(self):
        result = self.service.create_purchase({"ref_no": "PO-1", "status": "ordered"}, LINES)
        self.assertEqual(result["sync"]["synced"], 1)
        self.assertEqual(result["purchase"]["transaction_id"], 901)
        self.assertEqual(len(result["purchase"]["lines"]), 1)

    def test_create_offline_is_queued(self):
        self.online = False
        result = self.service.create_purchase({"ref_no": "PO-1", "status": "ordered"}, LINES)
        self.assertTrue(result["sync"]["offline"])
        self.assertEqual(result["purchase"]["is_synced"], 0)
        self.assertEqual(self.api.created, [])
        self.online = True
        self.assertEqual(self.service.sync().synced, 1)

    def test_edit_replaces_lines_and_requeues(self):
        pid = self._synced("PO-1", 10)
        self.service.edit_purchase(pid, {"status": "received"},
                                   lines=[{"product_id": 3, "quantity": 1, "unit_price": 1}])
        header = self.store.get_header(pid)
        self.assertEqual((header["status"], header["is_synced"], header["transaction_id"]), ("received", 0, 10))
        self.assertEqual([l["product_id"] for l in self.store.get_lines(pid)], [3])
        with self.assertRaises(PurchaseServiceError):
            self.service.edit_purchase(999, {"status": "received"})

    def test_delete_synced_purchase_online(self):
        pid = self._synced("PO-1", 10)
        self.assertTrue(self.service.delete_purchase(pid))
        self.assertEqual(self.api.deleted, [10])
        self.assertIsNone(self.store.get_header(pid))
        self.assertEqual(self.store.get_lines(pid), [])

    def test_delete_synced_purchase_offline_is_refused(self):
        pid = self._synced("PO-1", 10)
        self.online = False
        with self.assertRaises(PurchaseServiceError):
            self.service.delete_purchase(pid)
        self.assertIsNotNone(self.store.get_header(pid))

    def test_delete_local_only_purchase_offline(self):
        self.online = False
        pid = self.store.create_purchase({"ref_no": "draft"}, LINES)
        self.assertTrue(self.service.delete_purchase(pid))
        self.assertEqual(self.api.deleted, [])
        self.assertFalse(self.service.delete_purchase(pid))

    def test_delete_already_gone_remotely(self):
        pid = self._synced("PO-1", 10)
        self.api.delete_error = RemoteRequestError("Purchase not found", 404)
        self.assertTrue(self.service.delete_purchase(pid))
        self.assertIsNone(self.store.get_header(pid))

    def test_delete_remote_failure_keeps_local_row(self):
        pid = self._synced("PO-1", 10)
        self.api.delete_error = ServerFailure("boom", 500)
        with self.assertRaises(ServerFailure):
            self.service.delete_purchase(pid)
        self.assertIsNotNone(self.store.get_header(pid))

    def test_delete_waits_for_an_in_flight_push(self):
        pid = self.store.create_purchase({"ref_no": "PO-1", "status": "ordered"}, LINES)
        entered, release = threading.Event(), threading.Event()
        create = self.api.create_purchase

        def slow_create(payload):
            entered.set()
            release.wait(5)
            return create(payload)

        self.api.create_purchase = slow_create
        pusher = threading.Thread(target=self.service.sync)
        pusher.start()
        self.assertTrue(entered.wait(5))
        deleter = threading.Thread(target=self.service.delete_purchase, args=(pid,))
        deleter.start()
        deleter.join(0.2)
        self.assertTrue(deleter.is_alive())
        release.set()
        pusher.join(5)
        deleter.join(5)
        self.assertEqual(self.api.deleted, [901])
        self.assertIsNone(self.store.get_header(pid))

    def test_status_update_online_stays_synced(self):
        pid = self._synced("PO-1", 10)
        purchase = self.service.update_status(pid, "received")
        self.assertEqual(self.api.status_calls, [(10, "received")])
        self.assertEqual((purchase["status"], purchase["is_synced"]), ("received", 1))

    def test_status_update_offline_requeues(self):
        pid = self._synced("PO-1", 10)
        self.online = False
        purchase = self.service.update_status(pid, "partial")
        self.assertEqual(self.api.status_calls, [])
        self.assertEqual((purchase["status"], purchase["is_synced"]), ("partial", 0))
        with self.assertRaises(ValueError):
            self.service.update_status(pid, "lost")

    def test_fetch_specified_mirrors_and_prunes(self):
        refreshed = self._synced("R-100", 100)
        vanished = self._synced("R-101", 101)
        edited = self._synced("R-102", 102)
        self.store.update_header(edited, {"ref_no": "R-102-edited"})
        self.api.fetch_rows = [
            {"id": 100, "ref_no": "R-100-new", "status": "received"},
            {"id": 103, "ref_no": "R-103", "status": "ordered"},
        ]
        rows = self.service.fetch_specified([100, 101, 102, 103])
        self.assertEqual(len(rows), 2)
        self.assertEqual(self.store.get_header(refreshed)["ref_no"], "R-100-new")
        self.assertIsNone(self.store.get_header(vanished))
        self.assertEqual(self.store.get_header(edited)["ref_no"], "R-102-edited")
        mirrored = self.store.header_by_remote_id(103)
        self.assertEqual((mirrored["ref_no"], mirrored["is_synced"]), ("R-103", 1))

    def test_fetch_specified_failure_changes_nothing(self):
        pid = self._synced("R-100", 100)
        self.api.fetch_error = ServerFailure("boom", 500)
        self.assertEqual(self.service.fetch_specified([100]), [])
        self.assertIsNotNone(self.store.get_header(pid))
        self.online = False
        self.assertEqual(self.service.fetch_specified([100]), [])
        self.assertEqual(len(self.api.fetched), 1)

    def test_check_reference(self):
        self.assertTrue(self.service.check_reference(4, "TAKEN"))
        self.assertFalse(self.service.check_reference(4, "FREE"))
        self.online = False
        self.assertIsNone(self.service.check_reference(4, "TAKEN"))

    def test_cache_stats_and_clear(self):
        self.store.replace_cache("suppliers", [{"id": 1, "name": "Acme"}])
        self.assertEqual(self.service.cache_stats()["suppliers"]["count"], 1)
        self.assertEqual(len(self.service.search_reference("suppliers", "acm")), 1)
        self.service.clear_cache()
        self.assertEqual(self.service.cache_stats()["suppliers"]["count"], 0)


if __name__ == "__main__":
    unittest.main()
