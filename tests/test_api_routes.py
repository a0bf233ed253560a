"""
HTTP API tests through FastAPI's TestClient
"""

import httpx
import pytest

from conftest import SELLER_ID, auth, pix_body
from config import Config
from utils.webhook_security import WebhookSecurity

WEBHOOK_SECRET = "test_webhook_secret"


def _checkout(client, listing_id, quantity=1, token="buyer-token"):
    return client.post("/checkout", json={"listingId": listing_id, "quantity": quantity}, headers=auth(token))


def _signed(body: bytes):
    return {"X-Webhook-Signature": WebhookSecurity.compute_signature(body, WEBHOOK_SECRET)}


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(Config, "PAYMENT_WEBHOOK_SECRET", WEBHOOK_SECRET)
    return WEBHOOK_SECRET


class TestCheckoutRoutes:

    def test_checkout_returns_order_and_payment(self, client, make_listing):
        listing = make_listing(price_cents=1990, stock=2)

        response = _checkout(client, listing.id, quantity=2)

        assert response.status_code == 200
        data = response.json()
        assert data["order"]["status"] == "awaiting_payment"
        assert data["order"]["totalAmountCents"] == 3980
        assert data["payment"]["status"] == "pending"
        assert data["payment"]["txid"]

    def test_checkout_requires_credentials(self, client, make_listing):
        listing = make_listing(stock=1)

        response = client.post("/checkout", json={"listingId": listing.id, "quantity": 1})

        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    def test_out_of_stock_is_409(self, client, make_listing):
        listing = make_listing(stock=1)
        assert _checkout(client, listing.id).status_code == 200

        response = _checkout(client, listing.id, token="other-buyer-token")

        assert response.status_code == 409
        assert response.json()["error"] == "out_of_stock"

    def test_invalid_quantity_is_422(self, client, make_listing):
        listing = make_listing(stock=1)

        assert _checkout(client, listing.id, quantity=0).status_code == 422
        assert _checkout(client, listing.id, quantity=Config.MAX_CHECKOUT_QUANTITY + 1).status_code == 422

    def test_unknown_listing_is_404(self, client):
        assert _checkout(client, 9999).status_code == 404


class TestPaymentWebhookRoute:

    def test_signed_webhook_confirms_payment(self, client, make_listing, webhook_secret):
        listing = make_listing(stock=1)
        checkout = _checkout(client, listing.id).json()
        body = pix_body(checkout["payment"]["txid"], 1500)

        response = client.post("/webhooks/payments", content=body, headers=_signed(body))

        assert response.status_code == 200
        assert response.json()["processed"] == 1
        order = client.get(f"/orders/{checkout['order']['id']}", headers=auth("buyer-token")).json()
        assert order["order"]["status"] == "delivered"
        assert order["settlement"]["settlement"] == "held"
        assert order["settlement"]["heldCents"] == 1500

    def test_replay_is_acknowledged_as_duplicate(self, client, make_listing, webhook_secret):
        listing = make_listing(stock=1)
        checkout = _checkout(client, listing.id).json()
        body = pix_body(checkout["payment"]["txid"], 1500)
        client.post("/webhooks/payments", content=body, headers=_signed(body))

        response = client.post("/webhooks/payments", content=body, headers=_signed(body))

        assert response.status_code == 200
        assert response.json()["duplicates"] == 1

    def test_malformed_body_is_400(self, client):
        response = client.post("/webhooks/payments", content=b"{not json")

        assert response.status_code == 400

    def test_unknown_txid_is_acked(self, client):
        body = pix_body("unknown-txid-00000000000000")

        response = client.post("/webhooks/payments", content=body)

        assert response.status_code == 200
        assert response.json()["ignored"] == 1

    def test_production_rejects_bad_signature(self, client, monkeypatch, webhook_secret):
        monkeypatch.setattr(Config, "IS_PRODUCTION", True)
        body = pix_body("some-txid-000000000000000000")

        missing = client.post("/webhooks/payments", content=body)
        invalid = client.post("/webhooks/payments", content=body, headers={"X-Webhook-Signature": "deadbeef"})

        assert missing.status_code == 401
        assert invalid.status_code == 401

    def test_production_accepts_prefixed_signature(self, client, monkeypatch, webhook_secret):
        monkeypatch.setattr(Config, "IS_PRODUCTION", True)
        body = pix_body("some-txid-000000000000000000")
        signature = "sha256=" + WebhookSecurity.compute_signature(body, WEBHOOK_SECRET)

        response = client.post("/webhooks/payments", content=body, headers={"X-Webhook-Signature": signature})

        assert response.status_code == 200


class TestOrderAndAdminRoutes:

    def _delivered_order_id(self, client, make_listing):
        listing = make_listing(stock=1, price_cents=1500)
        checkout = _checkout(client, listing.id).json()
        body = pix_body(checkout["payment"]["txid"], 1500)
        client.post("/webhooks/payments", content=body)
        return checkout["order"]["id"]

    def test_other_users_cannot_see_order(self, client, make_listing):
        order_id = self._delivered_order_id(client, make_listing)

        assert client.get(f"/orders/{order_id}", headers=auth("other-buyer-token")).status_code == 404
        assert client.get(f"/orders/{order_id}", headers=auth("seller-token")).status_code == 200

    def test_confirm_and_admin_release(self, client, make_listing):
        order_id = self._delivered_order_id(client, make_listing)

        confirm = client.post(f"/orders/{order_id}/confirm", headers=auth("buyer-token"))
        release = client.post(
            f"/admin/orders/{order_id}/release", json={"reason": "Manual release"}, headers=auth("admin-token")
        )
        balance = client.get("/wallet/balance", headers=auth("seller-token")).json()

        assert confirm.json()["order"]["status"] == "completed"
        assert release.status_code == 200
        assert release.json()["settlement"] == "released"
        assert balance["userId"] == SELLER_ID
        assert balance["availableCents"] == 1500

    def test_dispute_and_refund_resolution(self, client, make_listing):
        order_id = self._delivered_order_id(client, make_listing)

        dispute = client.post(
            f"/orders/{order_id}/dispute", json={"reason": "Code already used"}, headers=auth("buyer-token")
        ).json()["dispute"]
        forbidden = client.post(
            f"/admin/disputes/{dispute['id']}/resolve", json={"action": "refund"}, headers=auth("seller-token")
        )
        resolved = client.post(
            f"/admin/disputes/{dispute['id']}/resolve",
            json={"action": "refund", "reason": "Code was invalid"},
            headers=auth("admin-token"),
        )
        again = client.post(
            f"/admin/disputes/{dispute['id']}/resolve", json={"action": "release"}, headers=auth("admin-token")
        )

        assert forbidden.status_code == 403
        assert resolved.status_code == 200
        assert resolved.json()["orderStatus"] == "refunded"
        assert resolved.json()["disputeStatus"] == "resolved"
        assert again.status_code == 409
        assert again.json()["error"] == "invalid_state"

    def test_payout_route(self, client, make_listing):
        order_id = self._delivered_order_id(client, make_listing)
        client.post(f"/orders/{order_id}/confirm", headers=auth("buyer-token"))
        client.post(f"/admin/orders/{order_id}/release", headers=auth("admin-token"))

        payout = client.post("/wallet/payouts", json={"amountCents": 1000}, headers=auth("seller-token"))
        overdraw = client.post("/wallet/payouts", json={"amountCents": 1000}, headers=auth("seller-token"))

        assert payout.status_code == 200
        assert payout.json()["balance"]["availableCents"] == 500
        assert overdraw.status_code == 409

    def test_seller_uploads_inventory(self, client, make_listing):
        listing = make_listing(stock=0)

        response = client.post(
            f"/listings/{listing.id}/inventory", json={"text": "A1\nA2\nA2"}, headers=auth("seller-token")
        )
        forbidden = client.post(
            f"/listings/{listing.id}/inventory", json={"codes": ["B1"]}, headers=auth("buyer-token")
        )

        assert response.json() == {"listingId": listing.id, "created": 2, "skipped": 1}
        assert forbidden.status_code == 403

    def test_manual_listing_refuses_inventory(self, client, make_listing):
        listing = make_listing(stock=0, delivery_type="manual")

        response = client.post(
            f"/listings/{listing.id}/inventory", json={"codes": ["C1"]}, headers=auth("seller-token")
        )

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_state"

    def test_buyer_cancels_unpaid_order(self, client, make_listing):
        listing = make_listing(stock=1)
        order_id = _checkout(client, listing.id).json()["order"]["id"]

        response = client.post(f"/orders/{order_id}/cancel", headers=auth("buyer-token"))

        assert response.status_code == 200
        assert response.json()["order"]["status"] == "cancelled"
        assert _checkout(client, listing.id, token="other-buyer-token").status_code == 200


class TestAsyncTransport:

    @pytest.mark.asyncio
    async def test_webhook_over_asgi_transport(self, app):
        body = pix_body("unknown-txid-00000000000000")
        transport = httpx.ASGITransport(app=app)

        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as async_client:
            response = await async_client.post("/webhooks/payments", content=body)
            malformed = await async_client.post("/webhooks/payments", content=b"")

        assert response.status_code == 200
        assert response.json()["ignored"] == 1
        assert malformed.status_code == 400
