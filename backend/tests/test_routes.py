# Overview: Pytest coverage for the JSON API surface.

"""
API Route Tests

Checks the HTTP contract rather than the ledger math (covered in the
service tests): tenant headers, status codes, and the
{"error", "kind", "state"} error body.
"""

from conftest import headers_for


class TestTenantHeaders:

    def test_missing_tenant_header(self, client, db_session):
        response = client.get("/api/invoices")
        assert response.status_code == 401
        assert response.get_json()["kind"] == "CrossTenantViolation"

    def test_non_integer_tenant_header(self, client, db_session):
        response = client.get("/api/invoices", headers={"X-Tenant-Id": "abc"})
        assert response.status_code == 400

    def test_invalid_role(self, client, ctx_a):
        headers = {**headers_for(ctx_a), "X-User-Role": "Root"}
        response = client.get("/api/invoices", headers=headers)
        assert response.status_code == 400

    def test_cross_tenant_read(self, client, ctx_a, ctx_b, customer_b, widget_b):
        created = client.post("/api/invoices", headers=headers_for(ctx_b), json={
            "customer_id": customer_b.id,
            "items": [{"item_id": widget_b.id, "quantity": 1}],
        })
        invoice_id = created.get_json()["invoice"]["id"]

        response = client.get(f"/api/invoices/{invoice_id}", headers=headers_for(ctx_a))
        assert response.status_code == 403
        body = response.get_json()
        assert body["kind"] == "CrossTenantViolation"
        assert body["state"] is None


class TestInvoiceFlow:

    def test_create_send_pay(self, client, ctx_a, customer_a, consulting_a):
        headers = headers_for(ctx_a)

        created = client.post("/api/invoices", headers=headers, json={
            "customer_id": customer_a.id,
            "items": [{"item_id": consulting_a.id, "quantity": 2}],
            "due_date": "2024-07-01T00:00:00Z",
        })
        assert created.status_code == 201
        invoice = created.get_json()["invoice"]
        assert invoice["status"] == "DRAFT"
        assert invoice["total"] == "108.00"
        assert invoice["due_date"] == "2024-07-01T00:00:00Z"
        assert len(invoice["items"]) == 1

        sent = client.post(f"/api/invoices/{invoice['id']}/send", headers=headers)
        assert sent.status_code == 200
        assert sent.get_json()["invoice"]["status"] == "SENT"

        paid = client.post("/api/payments", headers=headers, json={
            "invoice_id": invoice["id"], "amount": 60.00, "method": "CASH", "reference": "r-1",
        })
        assert paid.status_code == 201
        body = paid.get_json()
        assert body["payment"]["amount"] == "60.00"
        assert body["invoice"]["status"] == "PARTIALLY_PAID"
        assert body["invoice"]["balance_due"] == "48.00"

        replay = client.post("/api/payments", headers=headers, json={
            "invoice_id": invoice["id"], "amount": "60.00", "method": "CASH", "reference": "r-1",
        })
        assert replay.status_code == 201
        assert replay.get_json()["payment"]["id"] == body["payment"]["id"]
        assert replay.get_json()["invoice"]["amount_paid"] == "60.00"

        verify = client.get(f"/api/invoices/{invoice['id']}/verify", headers=headers)
        assert verify.get_json() == {"invoice_id": invoice["id"], "consistent": True, "problems": []}

        listing = client.get("/api/invoices?unpaid_only=true", headers=headers)
        assert listing.get_json()["total"] == 1

    def test_cancel_paid_invoice_returns_state(self, client, ctx_a, customer_a, consulting_a):
        headers = headers_for(ctx_a)
        invoice_id = client.post("/api/invoices", headers=headers, json={
            "customer_id": customer_a.id,
            "items": [{"item_id": consulting_a.id, "quantity": 2}],
        }).get_json()["invoice"]["id"]
        client.post("/api/payments", headers=headers, json={
            "invoice_id": invoice_id, "amount": "10.00", "method": "CASH",
        })

        response = client.post(f"/api/invoices/{invoice_id}/cancel", headers=headers, json={"reason": "oops"})
        assert response.status_code == 409
        body = response.get_json()
        assert body["kind"] == "InvalidStateTransition"
        assert body["state"]["status"] == "PARTIALLY_PAID"
        assert body["state"]["amount_paid"] == "10.00"

    def test_missing_customer(self, client, ctx_a):
        response = client.post("/api/invoices", headers=headers_for(ctx_a), json={"items": []})
        assert response.status_code == 400
        assert response.get_json()["kind"] == "ValidationError"

    def test_add_and_remove_line(self, client, ctx_a, customer_a, consulting_a):
        headers = headers_for(ctx_a)
        invoice_id = client.post("/api/invoices", headers=headers, json={
            "customer_id": customer_a.id, "items": [],
        }).get_json()["invoice"]["id"]

        added = client.post(f"/api/invoices/{invoice_id}/items", headers=headers, json={
            "item_id": consulting_a.id, "quantity": 1.5, "unit_price": 20.00,
        })
        assert added.status_code == 201
        invoice = added.get_json()["invoice"]
        assert invoice["subtotal"] == "30.00"
        line_id = invoice["items"][0]["id"]

        removed = client.delete(f"/api/invoices/{invoice_id}/items/{line_id}", headers=headers)
        assert removed.status_code == 200
        assert removed.get_json()["invoice"]["items"] == []

        deleted = client.delete(f"/api/invoices/{invoice_id}", headers=headers)
        assert deleted.get_json() == {"deleted": invoice_id}

    def test_strict_overpayment_status(self, client, ctx_a, customer_a, consulting_a, billing_config):
        billing_config(BILLING_OVERPAYMENT_POLICY="reject")
        headers = headers_for(ctx_a)
        invoice_id = client.post("/api/invoices", headers=headers, json={
            "customer_id": customer_a.id,
            "items": [{"item_id": consulting_a.id, "quantity": 2}],
        }).get_json()["invoice"]["id"]

        response = client.post("/api/payments", headers=headers, json={
            "invoice_id": invoice_id, "amount": "500.00", "method": "CASH",
        })
        assert response.status_code == 422
        assert response.get_json()["kind"] == "OverpaymentRejected"

    def test_out_of_range_amounts_are_validation_errors(self, client, ctx_a, customer_a, consulting_a):
        headers = headers_for(ctx_a)

        created = client.post("/api/invoices", headers=headers, json={
            "customer_id": customer_a.id,
            "items": [{"item_id": consulting_a.id, "quantity": "999999999"}],
        })
        assert created.status_code == 400
        assert created.get_json()["kind"] == "ValidationError"
        assert created.get_json()["state"] is None

        invoice_id = client.post("/api/invoices", headers=headers, json={
            "customer_id": customer_a.id, "items": [],
        }).get_json()["invoice"]["id"]

        added = client.post(f"/api/invoices/{invoice_id}/items", headers=headers, json={
            "item_id": consulting_a.id, "quantity": "999999999",
        })
        assert added.status_code == 400
        body = added.get_json()
        assert body["kind"] == "ValidationError"
        assert body["state"]["id"] == invoice_id
        assert body["state"]["total"] == "0.00"

        paid = client.post("/api/payments", headers=headers, json={
            "invoice_id": invoice_id, "amount": "99999999999.00", "method": "CASH",
        })
        assert paid.status_code == 400
        assert paid.get_json()["state"]["status"] == "DRAFT"


class TestWebhook:

    def test_webhook_confirms_pending_payment(self, client, ctx_a, customer_a, consulting_a):
        headers = headers_for(ctx_a)
        invoice_id = client.post("/api/invoices", headers=headers, json={
            "customer_id": customer_a.id,
            "items": [{"item_id": consulting_a.id, "quantity": 2}],
        }).get_json()["invoice"]["id"]
        payment = client.post("/api/payments", headers=headers, json={
            "invoice_id": invoice_id, "amount": "108.00", "method": "ONLINE", "reference": "pi_1",
        }).get_json()["payment"]
        assert payment["status"] == "PENDING"

        for _ in range(2):
            response = client.post("/api/payments/webhook", json={
                "payment_id": payment["id"], "outcome": "COMPLETED",
            })
            assert response.status_code == 200
            assert response.get_json()["invoice"]["status"] == "PAID"

        ledger = client.get(f"/api/payments/invoices/{invoice_id}/transactions", headers=headers)
        assert [t["transaction_type"] for t in ledger.get_json()["transactions"]] == ["PENDING", "CONFIRM"]

    def test_webhook_requires_fields(self, client, db_session):
        response = client.post("/api/payments/webhook", json={"outcome": "COMPLETED"})
        assert response.status_code == 400


class TestSubscriptionRoutes:

    def test_start_and_current(self, client, ctx_a, packages_a):
        headers = headers_for(ctx_a)
        started = client.post("/api/subscriptions", headers=headers, json={
            "package_id": packages_a["Pro"].id, "seats": 3,
        })
        assert started.status_code == 201
        assert started.get_json()["subscription"]["status"] == "ACTIVE"

        conflict = client.post("/api/subscriptions", headers=headers, json={
            "package_id": packages_a["Basic"].id,
        })
        assert conflict.status_code == 409
        assert conflict.get_json()["kind"] == "SubscriptionConflict"

        current = client.get("/api/subscriptions/current", headers=headers).get_json()
        assert current["subscription"]["package_name"] == "Pro"
        assert "Multi_Currency_Support" in current["capabilities"]

    def test_list_packages(self, client, ctx_a, packages_a):
        response = client.get("/api/subscriptions/packages", headers=headers_for(ctx_a))
        names = [p["name"] for p in response.get_json()["packages"]]
        assert names == ["Free", "Basic", "Pro", "Enterprise"]


class TestSyncRoutes:

    def test_ack_and_conflict(self, client, ctx_a, customer_a):
        headers = headers_for(ctx_a)
        pending = client.get("/api/sync/customer", headers=headers).get_json()
        assert [r["id"] for r in pending["records"]] == [customer_a.id]

        synced = client.post(f"/api/sync/customer/{customer_a.id}/ack", headers=headers,
                             json={"status": "SYNCED", "server_version": 2})
        assert synced.status_code == 200
        assert synced.get_json()["record"]["sync_status"] == "SYNCED"

        conflict = client.post(f"/api/sync/customer/{customer_a.id}/ack", headers=headers,
                               json={"status": "FAILED", "server_version": 4, "reason": "stale"})
        assert conflict.status_code == 409
        assert conflict.get_json()["kind"] == "SyncConflict"

        failed = client.get("/api/sync/customer?status=failed", headers=headers).get_json()
        assert failed["records"][0]["retry_after_seconds"] == 30

    def test_ack_rejects_non_integer_version(self, client, ctx_a, customer_a):
        response = client.post(f"/api/sync/customer/{customer_a.id}/ack", headers=headers_for(ctx_a),
                               json={"status": "SYNCED", "server_version": "2"})
        assert response.status_code == 400


class TestSystemRoutes:

    def test_health(self, client, db_session):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.get_json()["status"] == "healthy"

    def test_version(self, client):
        assert client.get("/api/version").get_json()["api_version"] == "1.0.0"
