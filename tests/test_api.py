"""
HTTP layer: status codes, error bodies and the staff header.
"""

from conftest import STAFF, line
from tableside.models import PaymentGateway


async def _place(client, seed, token=None, items=None, table="t1"):
    return await client.post("/api/orders", json={
        "restaurant_id": seed.diner if table != "p1" else seed.grill,
        "table_id": getattr(seed, table),
        "security_token": token,
        "items": items or [line(seed.fries)],
    })


class TestOrdersApi:

    async def test_place_order(self, client, seed):
        response = await _place(client, seed, items=[line(seed.burger), line(seed.fries, 2)])

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        assert data["is_new_session"] is True
        assert len(data["security_token"]) == 8
        assert data["order"]["status"] == "PENDING"
        assert data["order"]["total"] == 20.9
        assert data["order"]["items"][0]["name"] == "Burger"

    async def test_token_mismatch_is_403(self, client, seed):
        first = (await _place(client, seed)).json()

        response = await _place(client, seed, token="00000000")
        assert response.status_code == 403
        assert response.json() == {
            "success": False,
            "error": "Security Violation",
            "detail": "This table's session has changed. Please re-scan the QR code on your table.",
        }

        response = await _place(client, seed, token=first["security_token"])
        assert response.status_code == 201
        assert response.json()["session_id"] == first["session_id"]

    async def test_insufficient_stock_is_409(self, client, seed):
        response = await _place(client, seed, items=[line(seed.burger, 3)])

        assert response.status_code == 409
        assert response.json()["error"] == "Insufficient Stock"

    async def test_empty_cart_is_422(self, client, seed):
        response = await client.post("/api/orders", json={"restaurant_id": seed.diner, "items": []})
        assert response.status_code == 422

    async def test_unknown_order_is_404(self, client, seed):
        response = await client.get("/api/orders/9999")
        assert response.status_code == 404
        assert response.json()["error"] == "Not Found"

    async def test_status_change_requires_staff(self, client, seed):
        order_id = (await _place(client, seed)).json()["order"]["id"]

        response = await client.patch(f"/api/orders/{order_id}/status", json={"status": "ACCEPTED"})
        assert response.status_code == 400

        response = await client.patch(f"/api/orders/{order_id}/status", json={"status": "ACCEPTED"},
                                      headers=STAFF)
        assert response.status_code == 200
        data = response.json()
        assert data["previous_status"] == "PENDING"
        assert data["order"]["status"] == "ACCEPTED"
        assert data["warnings"] == []

    async def test_invalid_transition_is_409(self, client, seed):
        order_id = (await _place(client, seed)).json()["order"]["id"]

        response = await client.patch(f"/api/orders/{order_id}/status", json={"status": "READY"},
                                      headers=STAFF)
        assert response.status_code == 409
        assert response.json()["detail"] == "Cannot transition from PENDING to READY"

    async def test_customer_cancel_and_history(self, client, seed):
        order_id = (await _place(client, seed)).json()["order"]["id"]

        response = await client.request("DELETE", f"/api/orders/{order_id}",
                                        json={"reason": "Ordered by mistake"})
        assert response.status_code == 200
        assert response.json()["order"]["status"] == "CANCELLED"
        assert response.json()["order"]["cancellation_reason"] == "Ordered by mistake"

        history = (await client.get(f"/api/orders/{order_id}/history")).json()
        assert [h["status"] for h in history] == ["PENDING", "CANCELLED"]
        assert history[1]["actor"] is None

    async def test_void_served_order(self, client, seed):
        order_id = (await _place(client, seed, items=[line(seed.burger, 2)])).json()["order"]["id"]
        await client.patch(f"/api/orders/{order_id}/status", json={"status": "SERVED"}, headers=STAFF)

        response = await client.post(f"/api/orders/{order_id}/void", json={"reason": "Dish returned"},
                                     headers=STAFF)

        assert response.status_code == 200
        assert response.json()["previous_status"] == "SERVED"
        assert response.json()["order"]["status"] == "CANCELLED"

    async def test_record_cash_payment_frees_table(self, client, seed):
        order_id = (await _place(client, seed)).json()["order"]["id"]

        response = await client.patch(
            f"/api/orders/{order_id}/payment",
            json={"payment_status": "PAID", "payment_method": "CASH"},
            headers=STAFF,
        )

        assert response.status_code == 200
        assert response.json()["changed"] is True
        assert response.json()["table_released"] is True

    async def test_list_orders(self, client, seed):
        await _place(client, seed)
        await _place(client, seed, table="t2")

        response = await client.get("/api/orders", params={"restaurant_id": seed.diner, "table_id": seed.t2})
        assert response.status_code == 200
        assert response.json()["total"] == 1


class TestTablesApi:

    async def test_token_bill_and_reset(self, client, seed):
        token = (await client.get(f"/api/tables/{seed.t1}/token")).json()["security_token"]
        placed = (await _place(client, seed, token=token)).json()
        assert placed["security_token"] == token

        bill = (await client.get(f"/api/tables/{seed.t1}/bill")).json()
        assert bill["session_id"] == placed["session_id"]
        assert bill["outstanding"] == placed["order"]["total"]
        assert "security_token" not in bill["table"]

        response = await client.patch(f"/api/tables/{seed.t1}/reset")
        assert response.status_code == 400

        response = await client.patch(f"/api/tables/{seed.t1}/reset", headers=STAFF)
        assert response.status_code == 200
        assert response.json()["table"]["status"] == "FREE"


class TestPaymentsApi:

    async def test_stripe_checkout_and_webhook(self, client, gateways, seed):
        order_id = (await _place(client, seed)).json()["order"]["id"]

        created = await client.post("/api/payments/create", json={"order_id": order_id})
        assert created.status_code == 200
        handle = created.json()["data"]
        assert handle["gateway"] == "STRIPE"

        body, signature = gateways[PaymentGateway.STRIPE].build_webhook(handle["tracking_id"], "COMPLETED")

        rejected = await client.post("/api/payments/webhook/stripe", content=body,
                                     headers={"stripe-signature": "forged"})
        assert rejected.status_code == 400
        assert rejected.json()["error"] == "Invalid Signature"

        accepted = await client.post("/api/payments/webhook/stripe", content=body,
                                     headers={"stripe-signature": signature})
        assert accepted.status_code == 200
        assert accepted.json()["received"] is True
        assert accepted.json()["result"]["order_marked_paid"] is True

        replay = await client.post("/api/payments/webhook/stripe", content=body,
                                   headers={"stripe-signature": signature})
        assert replay.json()["result"]["order_marked_paid"] is False

        order = (await client.get(f"/api/orders/{order_id}")).json()
        assert order["payment_status"] == "PAID"

        payments = (await client.get(f"/api/payments/order/{order_id}")).json()
        assert [p["status"] for p in payments] == ["COMPLETED"]

        again = await client.post("/api/payments/create", json={"order_id": order_id})
        assert again.status_code == 409

    async def test_safepay_webhook(self, client, gateways, seed):
        order_id = (await _place(client, seed, table="p1", items=[line(seed.karahi)])).json()["order"]["id"]
        handle = (await client.post("/api/payments/create", json={"order_id": order_id})).json()["data"]
        assert handle["gateway"] == "SAFEPAY"

        body, signature = gateways[PaymentGateway.SAFEPAY].build_webhook(handle["tracking_id"], "PAID")
        response = await client.post("/api/payments/webhook/safepay", content=body,
                                     headers={"X-SFPY-Signature": signature})

        assert response.status_code == 200
        assert response.json()["result"]["status"] == "COMPLETED"
        assert response.json()["result"]["table_released"] is True

    async def test_verify_and_refund(self, client, gateways, seed):
        order_id = (await _place(client, seed)).json()["order"]["id"]
        handle = (await client.post("/api/payments/create", json={"order_id": order_id})).json()["data"]
        gateways[PaymentGateway.STRIPE].set_state(handle["tracking_id"], "COMPLETED")

        verified = await client.post("/api/payments/verify", json={"payment_id": handle["payment_id"]})
        assert verified.json()["data"]["order_marked_paid"] is True

        refund = await client.post(f"/api/payments/{handle['payment_id']}/refund", json={}, headers=STAFF)
        assert refund.status_code == 200
        assert refund.json()["data"]["status"] == "succeeded"

        order = (await client.get(f"/api/orders/{order_id}")).json()
        assert order["payment_status"] == "REFUNDED"

        again = await client.post("/api/payments/create", json={"order_id": order_id})
        assert again.status_code == 400

    async def test_payment_methods(self, client, seed):
        pkr = (await client.get("/api/payments/methods", params={"currency": "PKR"})).json()["data"]
        assert pkr["gateway"] == "SAFEPAY"

        diner = (await client.get("/api/payments/methods", params={"restaurant_id": seed.diner})).json()["data"]
        assert diner["gateway"] == "STRIPE"
        assert diner["currency"] == "USD"

        missing = await client.get("/api/payments/methods")
        assert missing.status_code == 400

        unknown = await client.get("/api/payments/methods", params={"restaurant_id": 9999})
        assert unknown.status_code == 404
        assert unknown.json()["error"] == "Not Found"


async def test_health(client, seed):
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "operational"
    assert data["database"] == "healthy"
    assert data["event_bus"] == "healthy"
    assert data["payment_gateways"] == {"STRIPE": "healthy", "SAFEPAY": "healthy"}


async def test_root(client):
    response = await client.get("/")
    assert response.json()["health"] == "/health"
