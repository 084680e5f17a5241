"""HTTP API tests: routing, auth, serialisation and the error envelope."""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.orm.exc import StaleDataError

from invoicer.auth.jwt import create_access_token
from invoicer.main import app
from invoicer.models.subscription import Subscription
from invoicer.services import payments as payment_engine
from invoicer.services.ledger import LedgerService, get_ledger
from invoicer.utils.clock import today


def _invoice_body(client_id: str, **overrides) -> dict:
    body = {
        "client_id": client_id,
        "items": [
            {"description": "Design work", "quantity": "2", "rate": "100.00"},
            {"description": "Hosting", "quantity": "1", "rate": "50.00"},
        ],
        "tax_rate": "10",
        "due_date": (today() + timedelta(days=30)).isoformat(),
    }
    body.update(overrides)
    return body


async def _create_invoice(client, auth_headers, customer, **overrides) -> dict:
    resp = await client.post(
        "/api/invoices", json=_invoice_body(customer.id, **overrides), headers=auth_headers
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.api
@pytest.mark.asyncio
class TestAuth:

    async def test_missing_token(self, client):
        resp = await client.get("/api/invoices")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "HTTP_401"

    async def test_bad_token(self, client):
        resp = await client.get("/api/invoices", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    async def test_expired_token(self, client, owner_id):
        token = create_access_token(owner_id, expires_delta=timedelta(minutes=-1))
        resp = await client.get("/api/invoices", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    async def test_health_is_public(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200


@pytest.mark.api
@pytest.mark.asyncio
class TestSubscriptionEndpoints:

    async def test_open_and_read(self, client, auth_headers):
        resp = await client.post("/api/subscriptions", headers=auth_headers)
        assert resp.status_code == 201
        assert resp.json()["plan"] == "free"

        resp = await client.get("/api/subscriptions/limits", headers=auth_headers)
        body = resp.json()
        assert body["remaining_invoices"] == 5
        assert body["can_create_clients"] is True

    async def test_no_subscription(self, client, auth_headers):
        resp = await client.get("/api/subscriptions/me", headers=auth_headers)
        assert resp.status_code == 404

    async def test_change_plan(self, client, auth_headers, account):
        resp = await client.post(
            "/api/subscriptions/plan", json={"plan": "basic"}, headers=auth_headers
        )
        assert resp.status_code == 200
        assert resp.json()["invoice_limit"] == 50

    async def test_unknown_plan_rejected(self, client, auth_headers, account):
        resp = await client.post(
            "/api/subscriptions/plan", json={"plan": "platinum"}, headers=auth_headers
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.api
@pytest.mark.asyncio
class TestInvoiceEndpoints:

    async def test_preview(self, client, auth_headers):
        resp = await client.post("/api/invoices/preview", json={
            "items": [{"description": "A", "quantity": "2", "rate": "100"},
                      {"description": "B", "quantity": "1", "rate": "50"}],
            "tax_rate": "10",
        }, headers=auth_headers)

        assert resp.status_code == 200
        body = resp.json()
        assert Decimal(body["subtotal"]) == Decimal("250.00")
        assert Decimal(body["tax_amount"]) == Decimal("25.00")
        assert Decimal(body["total"]) == Decimal("275.00")

    async def test_create_and_fetch(self, client, auth_headers, customer):
        created = await _create_invoice(client, auth_headers, customer)

        assert created["status"] == "draft"
        assert created["display_status"] == "draft"
        assert created["invoice_number"].startswith("INV-")
        assert created["client_name"] == "Acme Corp"
        assert Decimal(created["total"]) == Decimal("275.00")
        assert len(created["items"]) == 2

        resp = await client.get(f"/api/invoices/{created['id']}", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["invoice_number"] == created["invoice_number"]

    async def test_other_owner_gets_404(self, client, auth_headers, customer):
        created = await _create_invoice(client, auth_headers, customer)
        stranger = {"Authorization": f"Bearer {create_access_token(str(uuid.uuid4()))}"}

        resp = await client.get(f"/api/invoices/{created['id']}", headers=stranger)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "RESOURCE_NOT_FOUND"

    async def test_invalid_line_item(self, client, auth_headers, customer):
        body = _invoice_body(customer.id, items=[{"description": "x", "quantity": "0", "rate": "1"}])
        resp = await client.post("/api/invoices", json=body, headers=auth_headers)

        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "INVALID_LINE_ITEM"

    async def test_tax_rate_out_of_range(self, client, auth_headers, customer):
        resp = await client.post(
            "/api/invoices", json=_invoice_body(customer.id, tax_rate="150"), headers=auth_headers
        )
        assert resp.status_code == 422

    async def test_quota_exceeded(self, client, auth_headers, customer, session_factory, owner_id):
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Subscription)
                    .where(Subscription.owner_id == owner_id)
                    .values(invoices_sent=5)
                )

        resp = await client.post(
            "/api/invoices", json=_invoice_body(customer.id), headers=auth_headers
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "QUOTA_EXCEEDED"

    async def test_patch_recomputes(self, client, auth_headers, customer):
        created = await _create_invoice(client, auth_headers, customer)

        resp = await client.patch(
            f"/api/invoices/{created['id']}",
            json={"discount_amount": "50"},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        assert Decimal(resp.json()["total"]) == Decimal("220.00")

    async def test_status_flow_and_public_view(self, client, auth_headers, customer):
        created = await _create_invoice(client, auth_headers, customer)
        invoice_id = created["id"]

        resp = await client.get(f"/api/invoices/{invoice_id}/view")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "INVALID_STATUS_TRANSITION"

        resp = await client.post(f"/api/invoices/{invoice_id}/send", headers=auth_headers)
        assert resp.json()["status"] == "sent"

        resp = await client.get(f"/api/invoices/{invoice_id}/view")
        assert resp.status_code == 200
        assert resp.json()["status"] == "viewed"

        resp = await client.post(
            f"/api/invoices/{invoice_id}/status", json={"status": "overdue"}, headers=auth_headers
        )
        assert resp.status_code == 409

    async def test_mark_paid_then_frozen(self, client, auth_headers, customer):
        created = await _create_invoice(client, auth_headers, customer)
        invoice_id = created["id"]

        resp = await client.post(f"/api/invoices/{invoice_id}/mark-paid", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["status"] == "paid"
        assert Decimal(resp.json()["amount_due"]) == Decimal("0")

        resp = await client.patch(
            f"/api/invoices/{invoice_id}", json={"notes": "late edit"}, headers=auth_headers
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "INVOICE_IMMUTABLE"
        details = resp.json()["error"]["details"]
        assert details["field"] == "notes"
        assert details["unlock_hint"]

        resp = await client.delete(f"/api/invoices/{invoice_id}", headers=auth_headers)
        assert resp.status_code == 409

        resp = await client.get(f"/api/invoices/{invoice_id}/payments", headers=auth_headers)
        assert [p["method"] for p in resp.json()] == ["other"]

    async def test_delete_draft(self, client, auth_headers, customer):
        created = await _create_invoice(client, auth_headers, customer)

        resp = await client.delete(f"/api/invoices/{created['id']}", headers=auth_headers)
        assert resp.status_code == 204

        resp = await client.get(f"/api/invoices/{created['id']}", headers=auth_headers)
        assert resp.status_code == 404

    async def test_list_overdue_and_stats(self, client, auth_headers, customer):
        await _create_invoice(client, auth_headers, customer)
        await _create_invoice(
            client, auth_headers, customer,
            issue_date=(today() - timedelta(days=45)).isoformat(),
            due_date=(today() - timedelta(days=15)).isoformat(),
        )

        resp = await client.get("/api/invoices", params={"status": "overdue"}, headers=auth_headers)
        body = resp.json()
        assert body["total"] == 1
        assert body["items"][0]["is_overdue"] is True
        assert body["items"][0]["status"] == "draft"

        resp = await client.get("/api/invoices/overdue", headers=auth_headers)
        assert len(resp.json()) == 1

        resp = await client.get("/api/invoices/stats", headers=auth_headers)
        stats = resp.json()
        assert stats["total_invoices"] == 2
        assert stats["overdue"] == 1

        resp = await client.get("/api/invoices", params={"status": "bogus"}, headers=auth_headers)
        assert resp.status_code == 422


@pytest.mark.api
@pytest.mark.asyncio
class TestPaymentEndpoints:

    async def test_partial_and_full_payment(self, client, auth_headers, customer):
        invoice = await _create_invoice(client, auth_headers, customer)

        resp = await client.post("/api/payments", json={
            "invoice_id": invoice["id"], "amount": "150", "method": "bank_transfer",
        }, headers=auth_headers)
        assert resp.status_code == 201
        assert resp.json()["status"] == "completed"

        resp = await client.get(f"/api/invoices/{invoice['id']}", headers=auth_headers)
        assert Decimal(resp.json()["amount_due"]) == Decimal("125.00")

        resp = await client.post("/api/payments", json={
            "invoice_id": invoice["id"], "amount": "125.01", "method": "cash",
        }, headers=auth_headers)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "PAYMENT_EXCEEDS_AMOUNT_DUE"

        resp = await client.post("/api/payments", json={
            "invoice_id": invoice["id"], "amount": "125", "method": "cash",
        }, headers=auth_headers)
        assert resp.status_code == 201

        resp = await client.get(f"/api/invoices/{invoice['id']}", headers=auth_headers)
        assert resp.json()["status"] == "paid"

        resp = await client.post("/api/payments", json={
            "invoice_id": invoice["id"], "amount": "1", "method": "cash",
        }, headers=auth_headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "INVOICE_ALREADY_PAID"

    async def test_pending_lifecycle(self, client, auth_headers, customer):
        invoice = await _create_invoice(client, auth_headers, customer)

        resp = await client.post("/api/payments", json={
            "invoice_id": invoice["id"], "amount": "75", "method": "check", "status": "pending",
        }, headers=auth_headers)
        payment = resp.json()
        assert payment["status"] == "pending"

        resp = await client.post(f"/api/payments/{payment['id']}/complete", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"

        resp = await client.delete(f"/api/payments/{payment['id']}", headers=auth_headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "PAYMENT_IMMUTABLE"

        resp = await client.get("/api/payments/stats", headers=auth_headers)
        assert Decimal(resp.json()["total_amount"]) == Decimal("75.00")

    async def test_failed_status_not_accepted_on_create(self, client, auth_headers, customer):
        invoice = await _create_invoice(client, auth_headers, customer)
        resp = await client.post("/api/payments", json={
            "invoice_id": invoice["id"], "amount": "10", "method": "cash", "status": "failed",
        }, headers=auth_headers)
        assert resp.status_code == 422


@pytest.mark.api
@pytest.mark.asyncio
class TestClientEndpoints:

    async def test_create_client_uses_quota(self, client, auth_headers, account):
        resp = await client.post("/api/clients", json={"name": "Globex"}, headers=auth_headers)
        assert resp.status_code == 201
        assert resp.json()["name"] == "Globex"

        resp = await client.get("/api/subscriptions/me", headers=auth_headers)
        assert resp.json()["clients_created"] == 1

    async def test_create_client_without_subscription(self, client, auth_headers):
        resp = await client.post("/api/clients", json={"name": "Globex"}, headers=auth_headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "NO_SUBSCRIPTION"


@pytest.mark.api
@pytest.mark.asyncio
class TestContentionEnvelope:

    async def test_exhausted_retries_return_503(
        self, client, auth_headers, customer, session_factory, monkeypatch
    ):
        invoice = await _create_invoice(client, auth_headers, customer)

        impatient = LedgerService(session_factory, max_retries=2, retry_backoff_seconds=0.001)
        app.dependency_overrides[get_ledger] = lambda: impatient
        attempts = []

        def always_stale(*args, **kwargs):
            attempts.append(args)
            raise StaleDataError("version mismatch")

        monkeypatch.setattr(payment_engine, "apply_payment", always_stale)

        resp = await client.post("/api/payments", json={
            "invoice_id": invoice["id"], "amount": "10", "method": "cash",
        }, headers=auth_headers)

        assert resp.status_code == 503
        assert resp.headers["Retry-After"] == "1"
        error = resp.json()["error"]
        assert error["code"] == "CONTENTION"
        assert error["details"] == {"retryable": True}
        assert len(attempts) == 2
