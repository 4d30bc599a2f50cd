"""
Purchase order and AP API tests.

Verifies:
- PO create / status / edit endpoints and their permissions
- Settlement and reversal through HTTP with idempotent retries
- Rate lock, pending-rate queue and extra cost endpoints
- AP views and the CSV statement export
- Failed writes leave a FAIL audit row pointing at the PO
"""

import pytest

from backoffice.models import AuditEvent, PurchaseOrderPayment
from backoffice.services import purchase_ap_service


def po_payload(product, **overrides):
    payload = {
        "supplier_name": "Lao Beverage Co",
        "purchase_currency": "LAK",
        "items": [{"product_id": product.id, "qty_ordered": 12, "unit_cost_purchase": 5000}],
        "shipping_cost": 6000,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def received_po_id(client, admin_headers, product):
    created = client.post("/api/purchase-orders", json=po_payload(product), headers=admin_headers)
    po_id = created.get_json()["purchase_order"]["id"]
    client.patch(f"/api/purchase-orders/{po_id}", json={"status": "RECEIVED"}, headers=admin_headers)
    return po_id


class TestPurchaseOrderApi:

    def test_create_returns_201(self, client, admin_headers, product):
        response = client.post("/api/purchase-orders", json=po_payload(product), headers=admin_headers)
        assert response.status_code == 201

        po = response.get_json()["purchase_order"]
        assert po["status"] == "DRAFT"
        assert po["grand_total_base"] == 66000
        assert po["items"][0]["landed_cost_per_unit"] == 5500
        assert po["ap"] is None

    def test_viewer_cannot_create(self, client, viewer_headers, product):
        response = client.post("/api/purchase-orders", json=po_payload(product), headers=viewer_headers)
        assert response.status_code == 403
        assert response.get_json()["required_permission"] == "purchase.create"

    def test_invalid_body(self, client, admin_headers):
        response = client.post("/api/purchase-orders", data="[]", headers=admin_headers, content_type="application/json")
        assert response.status_code == 400
        assert response.get_json()["reason_code"] == "VALIDATION_ERROR"

    def test_status_flow_and_receipt(self, client, admin_headers, product):
        po_id = client.post("/api/purchase-orders", json=po_payload(product), headers=admin_headers).get_json()["purchase_order"]["id"]

        ordered = client.patch(f"/api/purchase-orders/{po_id}", json={"status": "ORDERED"}, headers=admin_headers)
        assert ordered.get_json()["purchase_order"]["status"] == "ORDERED"

        shipped = client.patch(
            f"/api/purchase-orders/{po_id}",
            json={"status": "SHIPPED", "tracking_info": "EMS-123"},
            headers=admin_headers,
        )
        assert shipped.get_json()["purchase_order"]["tracking_info"] == "EMS-123"

        received = client.patch(f"/api/purchase-orders/{po_id}", json={"status": "RECEIVED"}, headers=admin_headers)
        po = received.get_json()["purchase_order"]
        assert po["status"] == "RECEIVED"
        assert po["ap"]["outstanding_base"] == 66000

        balance = client.get(f"/api/stock/products/{product.id}/balance", headers=admin_headers).get_json()
        assert balance["on_hand"] == 12

        again = client.patch(f"/api/purchase-orders/{po_id}", json={"status": "RECEIVED"}, headers=admin_headers)
        assert again.status_code == 409
        assert again.get_json()["reason_code"] == "ALREADY_RECEIVED"

    def test_invalid_transition(self, client, admin_headers, product):
        po_id = client.post("/api/purchase-orders", json=po_payload(product), headers=admin_headers).get_json()["purchase_order"]["id"]
        response = client.patch(f"/api/purchase-orders/{po_id}", json={"status": "SHIPPED"}, headers=admin_headers)
        assert response.status_code == 400
        assert response.get_json()["reason_code"] == "INVALID_STATUS_TRANSITION"

    def test_edit_draft(self, client, admin_headers, product):
        po_id = client.post("/api/purchase-orders", json=po_payload(product), headers=admin_headers).get_json()["purchase_order"]["id"]
        response = client.put(f"/api/purchase-orders/{po_id}", json={"shipping_cost": 0, "note": "No freight"}, headers=admin_headers)
        assert response.status_code == 200
        po = response.get_json()["purchase_order"]
        assert po["grand_total_base"] == 60000
        assert po["note"] == "No freight"

    def test_list_and_detail_are_store_scoped(self, client, admin_headers, outsider_headers, product):
        po_id = client.post("/api/purchase-orders", json=po_payload(product), headers=admin_headers).get_json()["purchase_order"]["id"]

        listing = client.get("/api/purchase-orders?status=draft", headers=admin_headers).get_json()
        assert listing["count"] == 1

        assert client.get(f"/api/purchase-orders/{po_id}", headers=admin_headers).status_code == 200
        assert client.get(f"/api/purchase-orders/{po_id}", headers=outsider_headers).status_code == 404
        assert client.get("/api/purchase-orders", headers=outsider_headers).get_json()["count"] == 0

        response = client.get("/api/purchase-orders?status=LOST", headers=admin_headers)
        assert response.status_code == 400


class TestSettlementApi:

    def test_settle_with_retry_is_applied_once(self, client, db_session, admin_headers, received_po_id):
        headers = {**admin_headers, "Idempotency-Key": "pay-001"}
        first = client.post(f"/api/purchase-orders/{received_po_id}/settle", json={"amount": 16000}, headers=headers)
        second = client.post(f"/api/purchase-orders/{received_po_id}/settle", json={"amount": 16000}, headers=headers)

        assert first.status_code == 200
        assert first.get_json()["outstanding"]["outstanding_base"] == 50000
        assert second.data == first.data
        assert PurchaseOrderPayment.query.filter_by(purchase_order_id=received_po_id).count() == 1

    def test_overpayment(self, client, admin_headers, received_po_id):
        response = client.post(f"/api/purchase-orders/{received_po_id}/settle", json={"amount": 70000}, headers=admin_headers)
        assert response.status_code == 400
        assert response.get_json()["reason_code"] == "OVERPAYMENT"

    def test_clerk_cannot_settle(self, client, clerk_headers, received_po_id):
        response = client.post(f"/api/purchase-orders/{received_po_id}/settle", json={"amount": 1}, headers=clerk_headers)
        assert response.status_code == 403
        assert response.get_json()["required_permission"] == "purchase.settle"

    def test_reverse_payment(self, client, admin_headers, received_po_id):
        paid = client.post(f"/api/purchase-orders/{received_po_id}/settle", json={"amount": 66000}, headers=admin_headers).get_json()
        assert paid["outstanding"]["payment_status"] == "PAID"

        url = f"/api/purchase-orders/{received_po_id}/payments/{paid['payment']['id']}/reverse"
        reversed_ = client.post(url, json={"note": "Transfer bounced"}, headers=admin_headers)
        assert reversed_.status_code == 200
        assert reversed_.get_json()["outstanding"]["outstanding_base"] == 66000

        again = client.post(url, json={}, headers=admin_headers)
        assert again.status_code == 409
        assert again.get_json()["reason_code"] == "PAYMENT_ALREADY_REVERSED"

    def test_failed_settle_is_audited_against_po(self, client, db_session, admin_headers, product):
        po_id = client.post("/api/purchase-orders", json=po_payload(product), headers=admin_headers).get_json()["purchase_order"]["id"]
        response = client.post(f"/api/purchase-orders/{po_id}/settle", json={"amount": 100}, headers=admin_headers)
        assert response.get_json()["reason_code"] == "PO_NOT_RECEIVED"

        db_session.expire_all()
        event = AuditEvent.query.filter_by(action="PURCHASE_ORDER_SETTLE").one()
        assert event.result == "FAIL"
        assert event.entity_id == str(po_id)
        assert event.reason_code == "PO_NOT_RECEIVED"


class TestRateLockAndExtraCostApi:

    @pytest.fixture
    def estimated_po_id(self, client, admin_headers, product):
        payload = po_payload(
            product,
            purchase_currency="USD",
            exchange_rate="20000",
            lock_exchange_rate=False,
            receive_immediately=True,
            items=[{"product_id": product.id, "qty_ordered": 4, "unit_cost_purchase": 3}],
            shipping_cost=0,
        )
        return client.post("/api/purchase-orders", json=payload, headers=admin_headers).get_json()["purchase_order"]["id"]

    def test_pending_queue_then_lock(self, client, db_session, admin_headers, estimated_po_id):
        queue = client.get("/api/purchase-orders/pending-rate", headers=admin_headers).get_json()
        assert queue["count"] == 1
        assert queue["items"][0]["id"] == estimated_po_id

        blocked = client.post(f"/api/purchase-orders/{estimated_po_id}/settle", json={"amount": 1}, headers=admin_headers)
        assert blocked.status_code == 400
        assert blocked.get_json()["reason_code"] == "RATE_NOT_LOCKED"

        headers = {**admin_headers, "Idempotency-Key": "rate-lock-001"}
        url = f"/api/purchase-orders/{estimated_po_id}/exchange-rate"
        locked = client.post(url, json={"exchange_rate": "21000", "note": "Bank rate"}, headers=headers)
        assert locked.status_code == 200
        po = locked.get_json()["purchase_order"]
        assert po["exchange_rate_locked"] is True
        assert po["grand_total_base"] == 252000

        # Same key replays; a fresh key hits the lock
        assert client.post(url, json={"exchange_rate": "21000", "note": "Bank rate"}, headers=headers).data == locked.data
        again = client.post(url, json={"exchange_rate": "22000"}, headers=admin_headers)
        assert again.status_code == 409
        assert again.get_json()["reason_code"] == "RATE_ALREADY_LOCKED"

        assert client.get("/api/purchase-orders/pending-rate", headers=admin_headers).get_json()["count"] == 0

        db_session.expire_all()
        event = AuditEvent.query.filter_by(action="PURCHASE_ORDER_RATE_LOCK", result="SUCCESS").one()
        assert event.entity_id == str(estimated_po_id)
        assert event.to_dict()["metadata"] == {"previous_rate": "20000", "next_rate": "21000"}

    def test_pending_queue_bad_date(self, client, admin_headers):
        response = client.get("/api/purchase-orders/pending-rate?received_from=yesterday", headers=admin_headers)
        assert response.status_code == 400
        assert response.get_json()["reason_code"] == "VALIDATION_ERROR"

    def test_clerk_cannot_lock_rate(self, client, clerk_headers, estimated_po_id):
        response = client.post(
            f"/api/purchase-orders/{estimated_po_id}/exchange-rate",
            json={"exchange_rate": "21000"},
            headers=clerk_headers,
        )
        assert response.status_code == 403
        assert response.get_json()["required_permission"] == "purchase.update"

    def test_extra_cost(self, client, db_session, admin_headers, received_po_id):
        url = f"/api/purchase-orders/{received_po_id}/extra-cost"
        response = client.post(url, json={"other_cost": 12000, "other_cost_note": "Customs"}, headers=admin_headers)
        assert response.status_code == 200
        po = response.get_json()["purchase_order"]
        assert po["grand_total_base"] == 78000
        assert po["items"][0]["landed_cost_per_unit"] == 6500

        client.post(f"/api/purchase-orders/{received_po_id}/settle", json={"amount": 78000}, headers=admin_headers)
        paid = client.post(url, json={"shipping_cost": 0}, headers=admin_headers)
        assert paid.status_code == 409
        assert paid.get_json()["reason_code"] == "PO_ALREADY_PAID"

        db_session.expire_all()
        events = AuditEvent.query.filter_by(action="PURCHASE_ORDER_EXTRA_COST").order_by(AuditEvent.id).all()
        assert [e.result for e in events] == ["SUCCESS", "FAIL"]


class TestApViewsApi:

    def test_supplier_views(self, client, admin_headers, received_po_id):
        client.post(f"/api/purchase-orders/{received_po_id}/settle", json={"amount": 6000}, headers=admin_headers)

        summary = client.get("/api/purchase-orders/ap-by-supplier?fresh=1", headers=admin_headers).get_json()
        assert summary["suppliers"][0]["supplier_key"] == "lao beverage co"
        assert summary["suppliers"][0]["total_outstanding_base"] == 60000

        statement = client.get(
            "/api/purchase-orders/ap-by-supplier/statement?supplier_key=lao%20beverage%20co",
            headers=admin_headers,
        ).get_json()
        assert statement["rows"][0]["payment_status"] == "PARTIAL"

        aging = client.get("/api/purchase-orders/ap-aging?fresh=1", headers=admin_headers).get_json()
        assert aging["total_outstanding_base"] == 60000

        reminders = client.get("/api/purchase-orders/ap-reminders?fresh=1", headers=admin_headers).get_json()
        assert reminders["summary"]["items"] == []

    def test_statement_requires_supplier(self, client, admin_headers):
        response = client.get("/api/purchase-orders/ap-by-supplier/statement", headers=admin_headers)
        assert response.status_code == 400

    def test_csv_export(self, client, admin_headers, received_po_id):
        response = client.get(
            "/api/purchase-orders/ap-by-supplier/export-csv?supplier_key=lao%20beverage%20co",
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.mimetype == "text/csv"
        assert response.headers["Content-Disposition"].startswith('attachment; filename="ap-statement-lao-beverage-co-')
        assert response.headers["Cache-Control"] == "no-store"

        lines = response.get_data(as_text=True).split("\n")
        assert lines[0] == ",".join(purchase_ap_service.STATEMENT_CSV_COLUMNS)
        assert len(lines) == 2
        assert lines[1].startswith("Lao Beverage Co,PO-")
