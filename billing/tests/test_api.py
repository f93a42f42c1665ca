"""
Tests for the JSON HTTP surface.

Verifies:
- login / me / logout and the JSON 401
- error taxonomy mapped onto HTTP statuses
- the quote -> discount -> accept -> pay flow end to end
"""

from datetime import timedelta

import pytest

from billing.extensions import db
from billing.models import Quote
from billing.services import SubscriptionManager
from billing.utils import utcnow

ITEMS = [{"name": "Seat", "unit_price": 1000, "quantity": 2}]


class TestAuth:

    def test_unauthenticated_is_json_401(self, client):
        response = client.get("/auth/me")
        assert response.status_code == 401
        assert response.get_json()["error"] == "unauthorized"

    def test_bad_credentials(self, client, sales):
        response = client.post("/auth/login", json={"username": sales.username, "password": "nope"})
        assert response.status_code == 401

    def test_me_lists_allowed_actions(self, sales_client):
        body = sales_client.get("/auth/me").get_json()
        assert body["user"]["role"] == "sales"
        assert "create_quote" in body["allowed_actions"]
        assert "approve_discount" not in body["allowed_actions"]

    def test_logout(self, sales_client):
        assert sales_client.post("/auth/logout").status_code == 200
        assert sales_client.get("/auth/me").status_code == 401

    def test_csrf_token_endpoint(self, client):
        assert client.get("/auth/csrf-token").get_json()["csrf_token"]


class TestQuoteFlow:

    def _create(self, sales_client, customer, **extra):
        payload = {"customer_id": customer.id, "items": ITEMS, "tax": 50}
        payload.update(extra)
        response = sales_client.post("/quotes/", json=payload)
        assert response.status_code == 201, response.get_json()
        return response.get_json()

    def test_full_flow(self, sales_client, admin_client, customer_client, finance_client, customer):
        quote = self._create(sales_client, customer)
        assert (quote["subtotal"], quote["total"], quote["status"]) == (2000, 2050, "pending")

        discount = sales_client.post(
            "/discounts/", json={"quote_id": quote["id"], "discount_percent": 10, "justification": "promo"}
        ).get_json()
        approved = admin_client.post(
            f"/discounts/{discount['id']}/approve", json={"version": discount["version"]}
        )
        assert approved.status_code == 200
        assert approved.get_json()["status"] == "approved"

        quote = customer_client.get(f"/quotes/{quote['id']}").get_json()
        assert (quote["discount_amount"], quote["total"]) == (200, 1850)

        accepted = customer_client.post(f"/quotes/{quote['id']}/accept", json={"version": quote["version"]})
        assert accepted.status_code == 200
        invoice = accepted.get_json()["invoice"]
        assert invoice["total"] == 1850

        paid = finance_client.post(
            f"/invoices/{invoice['id']}/pay",
            json={"payment_reference": "TRX-42", "version": invoice["version"]},
        )
        assert paid.status_code == 200
        assert paid.get_json()["status"] == "paid"

    def test_customer_cannot_create_quote(self, customer_client, customer):
        response = customer_client.post("/quotes/", json={"customer_id": customer.id, "items": ITEMS})
        assert response.status_code == 403
        assert response.get_json()["error"] == "forbidden"

    def test_validation_error_is_400(self, sales_client, customer):
        response = sales_client.post("/quotes/", json={"customer_id": customer.id, "items": []})
        assert response.status_code == 400
        assert response.get_json()["error"] == "validation_error"

    def test_unknown_quote_is_404(self, customer_client):
        assert customer_client.get("/quotes/999").status_code == 404

    def test_stale_version_is_409(self, sales_client, customer_client, customer):
        quote = self._create(sales_client, customer)
        response = customer_client.post(f"/quotes/{quote['id']}/accept", json={"version": 3})
        assert response.status_code == 409
        assert response.get_json()["details"]["current_version"] == 1

    def test_expired_is_410(self, sales_client, customer_client, customer):
        quote = self._create(sales_client, customer)
        row = db.session.get(Quote, quote["id"])
        row.expiry_date = utcnow() - timedelta(minutes=1)
        db.session.commit()

        response = customer_client.post(f"/quotes/{quote['id']}/accept", json={"version": row.version})
        assert response.status_code == 410
        assert response.get_json()["error"] == "expired"

    def test_non_text_payment_reference_is_400(self, finance_client, customer):
        invoice = finance_client.post(
            "/invoices/", json={"customer_id": customer.id, "items": ITEMS, "tax": 0}
        ).get_json()
        response = finance_client.post(
            f"/invoices/{invoice['id']}/pay", json={"payment_reference": 12345, "version": invoice["version"]}
        )
        assert response.status_code == 400
        assert response.get_json()["error"] == "validation_error"

    def test_customer_lists_only_own_quotes(self, sales_client, customer_client, customer, other_customer):
        self._create(sales_client, customer)
        self._create(sales_client, other_customer)
        quotes = customer_client.get("/quotes/").get_json()
        assert len(quotes) == 1
        assert quotes[0]["customer_id"] == customer.id


class TestSubscriptionsApi:

    def test_activate_and_consume(self, customer_client, admin_client, basic_plan):
        created = customer_client.post("/subscriptions/", json={"plan_id": basic_plan.id})
        assert created.status_code == 201
        body = created.get_json()
        assert body["token_balance"]["balance"] == 100

        consumed = admin_client.post(
            f"/subscriptions/{body['id']}/consume",
            json={"amount": 150, "version": body["token_balance"]["version"]},
        )
        assert consumed.status_code == 402
        assert consumed.get_json()["error"] == "insufficient_balance"

        consumed = admin_client.post(
            f"/subscriptions/{body['id']}/consume",
            json={"amount": 40, "version": body["token_balance"]["version"]},
        )
        assert consumed.status_code == 200
        assert consumed.get_json()["balance"] == 60

        usage = customer_client.get(f"/subscriptions/{body['id']}/usage").get_json()
        assert [u["amount"] for u in usage["usage"]] == [40]

    @pytest.mark.parametrize("flag", ["false", 0, None])
    def test_auto_renew_must_be_boolean(self, customer_client, basic_plan, flag):
        response = customer_client.post("/subscriptions/", json={"plan_id": basic_plan.id, "auto_renew": flag})
        assert response.status_code == 400
        assert response.get_json()["error"] == "validation_error"

    def test_auto_renew_false_is_kept(self, customer_client, basic_plan):
        response = customer_client.post("/subscriptions/", json={"plan_id": basic_plan.id, "auto_renew": False})
        assert response.status_code == 201
        assert response.get_json()["auto_renew"] is False

    def test_other_customer_cannot_view(self, customer, basic_plan, other_customer_client, now):
        subscription = SubscriptionManager.activate(customer.id, basic_plan.id, actor=customer, now=now)
        assert other_customer_client.get(f"/subscriptions/{subscription.id}").status_code == 403
