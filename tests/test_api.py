"""Tests for the scan service HTTP API.

These tests exercise item CRUD, every scan branch, the scanner mode and the
transaction history against a throwaway SQLite file.

Copyright (c) Bryn Gwalad 2025
"""

# Ensure the project root is on sys.path so tests can be executed directly from
# the `tests/` directory (e.g. `python test_api.py`) and still import the
# `scanstock` package.
import os
import sys
import tempfile
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# Point the store at a temporary database before the package is imported.
os.environ.setdefault("SQLITE_FILE", os.path.join(tempfile.mkdtemp(prefix="scanstock-tests-"), "test.db"))
os.environ.pop("DATABASE_URL", None)

import unittest
import uuid
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from scanstock import database
from scanstock.errors import StoreUnavailableError
from scanstock.main import app
from scanstock.models import ScannerModeRecord


def new_barcode() -> str:
    return uuid.uuid4().hex[:12]


class InventoryAPITest(unittest.TestCase):
    """Unittests for the scan service API. Using unittest lets you run all
    tests together (python -m unittest) or still run them via pytest.
    """

    @classmethod
    def setUpClass(cls):
        database.init_db()
        # TestClient is created once for the test class
        cls.client = TestClient(app)

    def create_item(self, quantity=20, name="Widget", category="Parts"):
        barcode = new_barcode()
        resp = self.client.post(
            "/items",
            json={"name": name, "category": category, "quantity": quantity, "barcode": barcode},
        )
        self.assertEqual(resp.status_code, 201, resp.text)
        return barcode

    def set_mode(self, mode, quantity=1):
        resp = self.client.put("/scanner-mode", json={"mode": mode, "quantity": quantity})
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()

    def set_stock(self, barcode, quantity, original_stock=None):
        body = {"quantity": quantity}
        if original_stock is not None:
            body["originalStock"] = original_stock
        resp = self.client.patch(f"/items/{barcode}", json=body)
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()

    def transactions_for(self, barcode):
        resp = self.client.get("/transactions")
        self.assertEqual(resp.status_code, 200)
        return [t for t in resp.json() if t["barcode"] == barcode]

    def scan(self, barcode):
        return self.client.post("/scan", json={"barcode": barcode})

    # -- items ---------------------------------------------------------------

    def test_create_then_get_round_trip(self):
        barcode = self.create_item(quantity=12, name="Hammer", category="Tools")

        resp = self.client.get(f"/item/{barcode}")
        self.assertEqual(resp.status_code, 200)
        item = resp.json()
        self.assertEqual(item["barcode"], barcode)
        self.assertEqual(item["id"], barcode)
        self.assertEqual(item["name"], "Hammer")
        self.assertEqual(item["category"], "Tools")
        self.assertEqual(item["quantity"], 12)
        self.assertEqual(item["originalStock"], 12)
        self.assertEqual(item["status"], "healthy")
        self.assertIn("createdAt", item)

    def test_create_coerces_numeric_quantity(self):
        barcode = new_barcode()
        resp = self.client.post(
            "/items", json={"name": "Bolt", "category": "Parts", "quantity": "7", "barcode": barcode}
        )
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["quantity"], 7)
        self.assertEqual(resp.json()["originalStock"], 7)

    def test_duplicate_barcode_is_rejected(self):
        barcode = self.create_item(quantity=3, name="Original")
        before = self.client.get("/items").json()

        resp = self.client.post(
            "/items", json={"name": "Impostor", "category": "Other", "quantity": 99, "barcode": barcode}
        )
        self.assertEqual(resp.status_code, 400)
        self.assertIn("error", resp.json())

        self.assertEqual(self.client.get("/items").json(), before)
        item = self.client.get(f"/item/{barcode}").json()
        self.assertEqual(item["name"], "Original")
        self.assertEqual(item["quantity"], 3)

    def test_create_with_missing_fields_returns_400(self):
        resp = self.client.post("/items", json={"name": "No barcode", "category": "Parts", "quantity": 1})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post("/items", json={"name": "", "category": "Parts", "quantity": 1, "barcode": new_barcode()})
        self.assertEqual(resp.status_code, 400)

    def test_list_items_newest_first_and_repeatable(self):
        first = self.create_item()
        second = self.create_item()

        items = self.client.get("/items").json()
        barcodes = [i["barcode"] for i in items]
        self.assertLess(barcodes.index(second), barcodes.index(first))

        self.assertEqual(self.client.get("/items").json(), items)

    def test_patch_sets_quantity_and_original_stock(self):
        barcode = self.create_item(quantity=10)

        item = self.set_stock(barcode, 4)
        self.assertEqual(item["quantity"], 4)
        self.assertEqual(item["originalStock"], 10)

        item = self.set_stock(barcode, 4, original_stock=4)
        self.assertEqual(item["originalStock"], 4)
        self.assertEqual(self.client.get(f"/item/{barcode}").json()["status"], "healthy")

    def test_patch_requires_quantity(self):
        barcode = self.create_item()
        resp = self.client.patch(f"/items/{barcode}", json={"originalStock": 5})
        self.assertEqual(resp.status_code, 400)

    def test_patch_unknown_item_returns_404(self):
        resp = self.client.patch(f"/items/{new_barcode()}", json={"quantity": 1})
        self.assertEqual(resp.status_code, 404)

    def test_delete_item_keeps_transactions(self):
        barcode = self.create_item(quantity=5)
        self.set_mode("DECREMENT", 1)
        self.assertEqual(self.scan(barcode).status_code, 200)

        resp = self.client.delete(f"/items/{barcode}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"success": True})
        self.assertEqual(self.client.get(f"/item/{barcode}").status_code, 404)

        history = self.transactions_for(barcode)
        self.assertEqual(len(history), 1)
        self.assertIsNone(history[0]["itemName"])
        self.assertIsNone(history[0]["category"])

        self.assertEqual(self.client.delete(f"/items/{barcode}").status_code, 404)

    def test_get_unknown_item_returns_404(self):
        self.assertEqual(self.client.get(f"/item/{new_barcode()}").status_code, 404)

    def test_status_tracks_quantity(self):
        barcode = self.create_item(quantity=100)
        self.assertEqual(self.set_stock(barcode, 31)["quantity"], 31)
        self.assertEqual(self.client.get(f"/item/{barcode}").json()["status"], "healthy")
        self.set_stock(barcode, 30)
        self.assertEqual(self.client.get(f"/item/{barcode}").json()["status"], "low")
        self.set_stock(barcode, 0)
        self.assertEqual(self.client.get(f"/item/{barcode}").json()["status"], "out_of_stock")

    # -- scans ---------------------------------------------------------------

    def test_decrement_scan(self):
        barcode = self.create_item(quantity=20)
        self.set_stock(barcode, 5)
        self.set_mode("DECREMENT", 3)

        resp = self.scan(barcode)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["action"], "DEDUCT")
        self.assertEqual(body["newStock"], 2)
        self.assertEqual(body["quantityChanged"], 3)
        self.assertEqual(body["requestedQuantity"], 3)
        self.assertFalse(body["wasPartialDeduction"])
        self.assertEqual(body["stockHealth"], "low")
        self.assertEqual(body["name"], "Widget")
        self.assertEqual(body["item"]["quantity"], 2)

        history = self.transactions_for(barcode)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["action"], "DEDUCT")
        self.assertEqual(history[0]["quantity"], 3)
        self.assertEqual(history[0]["itemName"], "Widget")
        self.assertEqual(history[0]["id"], body["transactionId"])

    def test_decrement_scan_with_insufficient_stock_is_partial(self):
        barcode = self.create_item(quantity=2)
        self.set_mode("DECREMENT", 5)

        body = self.scan(barcode).json()
        self.assertTrue(body["success"])
        self.assertEqual(body["newStock"], 0)
        self.assertEqual(body["quantityChanged"], 2)
        self.assertEqual(body["requestedQuantity"], 5)
        self.assertTrue(body["wasPartialDeduction"])
        self.assertEqual(body["stockHealth"], "out_of_stock")
        self.assertEqual(self.client.get(f"/item/{barcode}").json()["quantity"], 0)
        self.assertEqual(self.transactions_for(barcode)[0]["quantity"], 2)

    def test_decrement_scan_at_zero_stock_fails_without_transaction(self):
        barcode = self.create_item(quantity=0)
        self.set_mode("DECREMENT", 1)

        resp = self.scan(barcode)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["newStock"], 0)
        self.assertEqual(body["quantityChanged"], 0)
        self.assertEqual(body["stockHealth"], "out_of_stock")
        self.assertIn("message", body)
        self.assertEqual(self.transactions_for(barcode), [])

    def test_increment_scan(self):
        barcode = self.create_item(quantity=10)
        self.set_mode("INCREMENT", 5)

        body = self.scan(barcode).json()
        self.assertTrue(body["success"])
        self.assertEqual(body["action"], "ADD")
        self.assertEqual(body["newStock"], 15)
        self.assertEqual(body["quantityChanged"], 5)
        self.assertEqual(body["stockHealth"], "healthy")

        item = self.client.get(f"/item/{barcode}").json()
        self.assertEqual(item["quantity"], 15)
        self.assertEqual(item["originalStock"], 10)

        history = self.transactions_for(barcode)
        self.assertEqual([(t["action"], t["quantity"]) for t in history], [("ADD", 5)])

    def test_details_scan_only_records_a_view(self):
        barcode = self.create_item(quantity=8)
        self.set_mode("DETAILS")

        body = self.scan(barcode).json()
        self.assertTrue(body["success"])
        self.assertEqual(body["action"], "VIEW")
        self.assertEqual(body["quantityChanged"], 0)
        self.assertEqual(body["newStock"], 8)
        self.assertEqual(self.client.get(f"/item/{barcode}").json()["quantity"], 8)

        history = self.transactions_for(barcode)
        self.assertEqual([(t["action"], t["quantity"]) for t in history], [("VIEW", 0)])

    def test_scan_unknown_barcode(self):
        resp = self.scan(new_barcode())
        self.assertEqual(resp.status_code, 404)
        body = resp.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["message"], "Item not found")

    def test_scan_requires_barcode(self):
        self.assertEqual(self.client.post("/scan", json={}).status_code, 400)
        self.assertEqual(self.client.post("/scan", json={"barcode": ""}).status_code, 400)

    def test_details_scan_does_not_reread_the_item_after_commit(self):
        barcode = self.create_item(quantity=8)
        self.set_mode("DETAILS")
        real_find_item = database.find_item
        calls = []

        def find_item_once(code):
            calls.append(code)
            if len(calls) > 1:
                raise StoreUnavailableError("Data store operation failed")
            return real_find_item(code)

        with patch.object(database, "find_item", side_effect=find_item_once):
            resp = self.scan(barcode)

        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertTrue(resp.json()["success"])
        history = self.transactions_for(barcode)
        self.assertEqual([(t["action"], t["itemName"]) for t in history], [("VIEW", "Widget")])

    def test_scan_with_corrupt_stored_mode_returns_400(self):
        barcode = self.create_item(quantity=5)
        with database.get_session() as session:
            record = session.get(ScannerModeRecord, 1)
            record.mode = "SIDEWAYS"
            session.add(record)
            session.commit()
        try:
            resp = self.scan(barcode)
            self.assertEqual(resp.status_code, 400)
            self.assertIn("SIDEWAYS", resp.json()["error"])
            self.assertEqual(self.client.get(f"/item/{barcode}").json()["quantity"], 5)
            self.assertEqual(self.transactions_for(barcode), [])
        finally:
            self.set_mode("DECREMENT", 1)

    def test_every_stock_changing_scan_has_one_transaction(self):
        barcode = self.create_item(quantity=3)
        self.set_mode("DECREMENT", 1)
        for _ in range(4):
            self.scan(barcode)

        self.assertEqual(self.client.get(f"/item/{barcode}").json()["quantity"], 0)
        history = self.transactions_for(barcode)
        self.assertEqual(len(history), 3)
        self.assertTrue(all(t["action"] == "DEDUCT" and t["quantity"] == 1 for t in history))

    # -- scanner mode --------------------------------------------------------

    def test_scanner_mode_round_trip(self):
        self.assertEqual(self.set_mode("INCREMENT", 4), {"mode": "INCREMENT", "quantity": 4})
        self.assertEqual(self.client.get("/scanner-mode").json(), {"mode": "INCREMENT", "quantity": 4})

    def test_details_mode_forces_quantity(self):
        self.assertEqual(self.set_mode("DETAILS", 9), {"mode": "DETAILS", "quantity": 1})

    def test_invalid_scanner_mode_is_rejected(self):
        self.set_mode("DECREMENT", 2)
        resp = self.client.put("/scanner-mode", json={"mode": "EXPLODE", "quantity": 1})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.put("/scanner-mode", json={"mode": "INCREMENT", "quantity": 0})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.client.get("/scanner-mode").json(), {"mode": "DECREMENT", "quantity": 2})

    # -- transactions and misc ----------------------------------------------

    def test_transactions_are_newest_first_and_capped(self):
        barcode = self.create_item(quantity=1)
        self.set_mode("DETAILS")
        for _ in range(database.TRANSACTION_HISTORY_LIMIT + 5):
            self.assertEqual(self.scan(barcode).status_code, 200)

        history = self.client.get("/transactions").json()
        self.assertEqual(len(history), database.TRANSACTION_HISTORY_LIMIT)
        keys = [(t["timestamp"], int(t["id"])) for t in history]
        self.assertEqual(keys, sorted(keys, reverse=True))

        self.assertEqual(self.client.get("/transactions").json(), history)

    def test_api_prefix_mirrors_routes(self):
        barcode = self.create_item(quantity=2)
        self.set_mode("DECREMENT", 1)
        resp = self.client.post("/api/scan", json={"barcode": barcode})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["newStock"], 1)
        self.assertEqual(self.client.get("/api/items").status_code, 200)

    # -- store failures ------------------------------------------------------

    def test_store_failure_on_listing_is_logged_500(self):
        failure = OperationalError("SELECT", {}, Exception("disk I/O error"))
        with patch.object(Session, "exec", side_effect=failure):
            with self.assertLogs("scanstock.api", level="ERROR") as logs:
                resp = self.client.get("/items")

        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json(), {"error": "Data store operation failed"})
        self.assertTrue(any("GET /items failed" in line for line in logs.output))

    def test_store_failure_during_scan_is_logged_500(self):
        barcode = self.create_item(quantity=5)
        self.set_mode("DECREMENT", 1)
        failure = OperationalError("SELECT", {}, Exception("database is locked"))
        with patch.object(Session, "get", side_effect=failure):
            with self.assertLogs("scanstock.api", level="ERROR") as logs:
                resp = self.scan(barcode)

        self.assertEqual(resp.status_code, 500)
        self.assertIn("error", resp.json())
        self.assertTrue(any("POST /scan failed" in line for line in logs.output))
        self.assertEqual(self.client.get(f"/item/{barcode}").json()["quantity"], 5)
        self.assertEqual(self.transactions_for(barcode), [])

    def test_health(self):
        for path in ("/health", "/healthz"):
            resp = self.client.get(path)
            self.assertEqual(resp.status_code, 200)
            self.assertEqual(resp.json()["status"], "ok")
            self.assertIn("timestamp", resp.json())


if __name__ == "__main__":
    # Allow running this test file directly
    unittest.main()
