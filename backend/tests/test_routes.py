"""
API route tests.

Exercise the HTTP surface end to end: principal checks, tenant scoping,
error codes, and the gateway notification endpoints.
"""

import pytest

from sokonet.models import Order, Product, QRToken, Transaction

from conftest import principal_headers


def as_user(user):
    return principal_headers("user", user.id)


def as_business(business):
    return principal_headers("business", business.id)


def as_staff(business, staff_id=900):
    return principal_headers("staff", staff_id, business.id)


def as_admin():
    return principal_headers("admin", 1)


def place_order(client, customer, token, product, quantity=1):
    response = client.post(
        "/api/orders/",
        json={"qr_token_id": token.id, "items": [{"product_id": product.id, "quantity": quantity}]},
        headers=as_user(customer),
    )
    assert response.status_code == 201, response.get_json()
    return response.get_json()["order"]


class TestPrincipals:
    def test_missing_principal(self, client, db_session):
        response = client.get("/api/orders/")
        assert response.status_code == 401

    def test_malformed_principal(self, client, db_session):
        response = client.get("/api/orders/", headers={"X-Principal-Kind": "user", "X-Principal-Id": "abc"})
        assert response.status_code == 401

    def test_staff_without_business(self, client, db_session):
        response = client.get("/api/orders/", headers=principal_headers("staff", 5))
        assert response.status_code == 401

    def test_wrong_kind(self, client, db_session, customer, token):
        response = client.post(f"/api/qr/{token.id}/unassign", headers=as_user(customer))
        assert response.status_code == 403
        assert response.get_json()["required_kind"] == ["business", "staff", "admin"]


class TestOrderRoutes:
    def test_create_order(self, client, db_session, customer, token, widget):
        order = place_order(client, customer, token, widget, 2)

        assert order["total_cents"] == 200
        assert order["status"] == "pending"
        assert order["lines"][0]["product_name"] == "Widget"

    def test_token_of_another_customer(self, client, db_session, other_customer, token, widget):
        response = client.post(
            "/api/orders/",
            json={"qr_token_id": token.id, "items": [{"product_id": widget.id, "quantity": 1}]},
            headers=as_user(other_customer),
        )
        assert response.status_code == 403
        assert db_session.query(Order).count() == 0

    def test_staff_of_another_business(self, client, db_session, other_business, token, widget):
        response = client.post(
            "/api/orders/",
            json={"qr_token_id": token.id, "items": [{"product_id": widget.id, "quantity": 1}]},
            headers=as_staff(other_business),
        )
        assert response.status_code == 403

    def test_insufficient_stock(self, client, db_session, customer, token, widget):
        response = client.post(
            "/api/orders/",
            json={"qr_token_id": token.id, "items": [{"product_id": widget.id, "quantity": 6}]},
            headers=as_user(customer),
        )
        assert response.status_code == 409
        body = response.get_json()
        assert body["code"] == "INSUFFICIENT_STOCK"
        assert body["details"]["available"] == 5

    def test_invalid_items(self, client, db_session, customer, token):
        response = client.post(
            "/api/orders/",
            json={"qr_token_id": token.id, "items": []},
            headers=as_user(customer),
        )
        assert response.status_code == 400
        assert response.get_json()["code"] == "VALIDATION_ERROR"

    def test_unbound_token(self, client, db_session, business, unbound_token, widget):
        response = client.post(
            "/api/orders/",
            json={"qr_token_id": unbound_token.id, "items": [{"product_id": widget.id, "quantity": 1}]},
            headers=as_business(business),
        )
        assert response.status_code == 409
        assert response.get_json()["code"] == "INVALID_TOKEN"

    def test_order_hidden_from_other_business(self, client, db_session, customer, token, widget, other_business):
        order = place_order(client, customer, token, widget)

        response = client.get(f"/api/orders/{order['id']}", headers=as_business(other_business))
        assert response.status_code == 404

        response = client.get(f"/api/orders/{order['id']}", headers=as_user(customer))
        assert response.status_code == 200

    def test_list_scoped_to_customer(self, client, db_session, customer, other_customer, token, widget):
        place_order(client, customer, token, widget)

        mine = client.get("/api/orders/", headers=as_user(customer)).get_json()
        theirs = client.get("/api/orders/", headers=as_user(other_customer)).get_json()

        assert mine["pagination"]["count"] == 1
        assert theirs["orders"] == []

    def test_status_transition(self, client, db_session, business, customer, token, widget):
        order = place_order(client, customer, token, widget)

        response = client.patch(
            f"/api/orders/{order['id']}/status", json={"status": "confirmed"}, headers=as_staff(business)
        )
        assert response.status_code == 200
        assert response.get_json()["order"]["status"] == "confirmed"

        response = client.patch(
            f"/api/orders/{order['id']}/status", json={"status": "delivered"}, headers=as_staff(business)
        )
        assert response.status_code == 409
        assert response.get_json()["code"] == "INVALID_TRANSITION"

    def test_customer_cannot_change_status(self, client, db_session, customer, token, widget):
        order = place_order(client, customer, token, widget)
        response = client.patch(
            f"/api/orders/{order['id']}/status", json={"status": "confirmed"}, headers=as_user(customer)
        )
        assert response.status_code == 403

    def test_cancel_restores_stock(self, client, db_session, customer, token, widget):
        order = place_order(client, customer, token, widget, 3)

        response = client.post(
            f"/api/orders/{order['id']}/cancel", json={"reason": "Wrong size"}, headers=as_user(customer)
        )

        assert response.status_code == 200
        assert response.get_json()["order"]["cancellation_reason"] == "Wrong size"
        db_session.expire_all()
        assert db_session.get(Product, widget.id).stock == 5

    def test_order_stats(self, client, db_session, business, customer, token, widget):
        place_order(client, customer, token, widget)

        response = client.get("/api/orders/stats", headers=as_business(business))

        assert response.status_code == 200
        assert response.get_json()["stats"]["total_orders"] == 1

    def test_admin_stats_need_business(self, client, db_session):
        response = client.get("/api/orders/stats", headers=as_admin())
        assert response.status_code == 400


class TestPaymentRoutes:
    def test_initiate(self, client, db_session, gateway, customer, token, widget):
        order = place_order(client, customer, token, widget)

        response = client.post("/api/payments/initiate", json={"order_id": order["id"]}, headers=as_user(customer))

        assert response.status_code == 201
        payment = response.get_json()["payment"]
        assert payment["tracking_id"] == "T-1"
        assert payment["redirect_url"] == "https://pay.test/checkout/T-1"
        assert payment["amount_cents"] == 100

    def test_initiate_twice(self, client, db_session, gateway, customer, token, widget):
        order = place_order(client, customer, token, widget)
        client.post("/api/payments/initiate", json={"order_id": order["id"]}, headers=as_user(customer))

        response = client.post("/api/payments/initiate", json={"order_id": order["id"]}, headers=as_user(customer))

        assert response.status_code == 409
        assert response.get_json()["code"] == "PAYMENT_ALREADY_INITIATED"

    def test_initiate_other_users_order(self, client, db_session, gateway, customer, other_customer, token, widget):
        order = place_order(client, customer, token, widget)
        response = client.post(
            "/api/payments/initiate", json={"order_id": order["id"]}, headers=as_user(other_customer)
        )
        assert response.status_code == 404

    def test_initiate_gateway_down(self, client, db_session, gateway, customer, token, widget):
        from sokonet.services.gateway_client import GatewayUnavailable

        order = place_order(client, customer, token, widget)
        gateway.submit_error = GatewayUnavailable("Payment gateway unreachable")

        response = client.post("/api/payments/initiate", json={"order_id": order["id"]}, headers=as_user(customer))

        assert response.status_code == 502
        assert response.get_json()["code"] == "GATEWAY_UNAVAILABLE"

    def test_callback_redirects(self, client, db_session, gateway, customer, token, widget):
        order = place_order(client, customer, token, widget)
        client.post("/api/payments/initiate", json={"order_id": order["id"]}, headers=as_user(customer))
        gateway.report("T-1", "COMPLETED")

        response = client.get(
            f"/api/payments/callback?OrderTrackingId=T-1&OrderMerchantReference={order['id']}"
        )

        assert response.status_code == 302
        assert response.headers["Location"] == (
            f"https://front.test/payment/success?orderId={order['id']}&trackingId=T-1"
        )

    def test_callback_error_redirect(self, client, db_session, gateway):
        response = client.get("/api/payments/callback?OrderTrackingId=T-404")

        assert response.status_code == 302
        assert response.headers["Location"] == "https://front.test/payment/error"

    def test_callback_ignores_status_in_query(self, client, db_session, gateway, customer, token, widget):
        order = place_order(client, customer, token, widget)
        client.post("/api/payments/initiate", json={"order_id": order["id"]}, headers=as_user(customer))
        gateway.report("T-1", "PENDING")

        response = client.get("/api/payments/callback?OrderTrackingId=T-1&status=COMPLETED")

        assert "/payment/pending?" in response.headers["Location"]
        assert db_session.get(Order, order["id"]).payment_status == "pending"

    @pytest.mark.parametrize("method", ["get", "post"])
    def test_ipn_acknowledged(self, client, db_session, gateway, customer, token, widget, method):
        order = place_order(client, customer, token, widget)
        client.post("/api/payments/initiate", json={"order_id": order["id"]}, headers=as_user(customer))
        gateway.report("T-1", "COMPLETED")
        params = {
            "OrderTrackingId": "T-1",
            "OrderMerchantReference": str(order["id"]),
            "OrderNotificationType": "IPNCHANGE",
        }

        if method == "get":
            response = client.get("/api/payments/ipn", query_string=params)
        else:
            response = client.post("/api/payments/ipn", json=params)

        assert response.status_code == 200
        assert response.get_json() == {
            "orderNotificationType": "IPNCHANGE",
            "orderTrackingId": "T-1",
            "orderMerchantReference": str(order["id"]),
            "status": 200,
        }
        db_session.expire_all()
        assert db_session.get(Order, order["id"]).status == "confirmed"

    def test_ipn_unknown_tracking(self, client, db_session, gateway):
        response = client.get("/api/payments/ipn?OrderTrackingId=T-404&OrderNotificationType=IPNCHANGE")

        assert response.status_code == 404
        assert response.get_json()["status"] == 500

    def test_ipn_without_tracking_id(self, client, db_session, gateway):
        response = client.get("/api/payments/ipn")

        assert response.status_code == 400
        assert response.get_json()["status"] == 500
        assert gateway.queries == []

    def test_verify_by_tracking_id(self, client, db_session, gateway, customer, token, widget):
        order = place_order(client, customer, token, widget)
        client.post("/api/payments/initiate", json={"order_id": order["id"]}, headers=as_user(customer))
        gateway.report("T-1", "COMPLETED")

        response = client.get("/api/payments/verify?tracking_id=T-1", headers=as_user(customer))

        assert response.status_code == 200
        body = response.get_json()
        assert body["transaction"]["status"] == "paid"
        assert body["order"]["status"] == "confirmed"
        assert body["verification"]["changed"] is True

    def test_verify_by_order_for_business(self, client, db_session, gateway, business, customer, token, widget):
        order = place_order(client, customer, token, widget)

        response = client.get(f"/api/payments/verify?order_id={order['id']}", headers=as_business(business))

        assert response.status_code == 200
        body = response.get_json()
        assert body["order"]["id"] == order["id"]
        assert body["transaction"] is None
        assert body["verification"] is None

    def test_verify_outside_scope(self, client, db_session, gateway, other_business, customer, other_customer, token, widget):
        order = place_order(client, customer, token, widget)
        client.post("/api/payments/initiate", json={"order_id": order["id"]}, headers=as_user(customer))
        gateway.report("T-1", "COMPLETED")

        response = client.get("/api/payments/verify?tracking_id=T-1", headers=as_user(other_customer))
        assert response.status_code == 404
        assert response.get_json()["code"] == "TRANSACTION_NOT_FOUND"

        response = client.get(f"/api/payments/verify?order_id={order['id']}", headers=as_business(other_business))
        assert response.status_code == 404
        assert gateway.queries == []

    @pytest.mark.parametrize("query", ["", "?order_id=abc", "?tracking_id=%20"])
    def test_verify_bad_parameters(self, client, db_session, gateway, customer, query):
        response = client.get(f"/api/payments/verify{query}", headers=as_user(customer))
        assert response.status_code == 400

    def test_refund(self, client, db_session, gateway, business, customer, token, widget):
        order = place_order(client, customer, token, widget, 3)
        payment = client.post(
            "/api/payments/initiate", json={"order_id": order["id"]}, headers=as_user(customer)
        ).get_json()["payment"]
        gateway.report("T-1", "COMPLETED")
        client.get("/api/payments/ipn?OrderTrackingId=T-1")

        response = client.post(
            f"/api/payments/transactions/{payment['transaction_id']}/refund",
            json={"amount_cents": 100, "reason": "One item missing"},
            headers=as_business(business),
        )

        assert response.status_code == 201
        body = response.get_json()
        assert body["refund"]["amount_cents"] == -100
        assert body["original"]["refunded_cents"] == 100
        assert body["original"]["status"] == "paid"

    def test_refund_exceeding(self, client, db_session, gateway, business, customer, token, widget):
        order = place_order(client, customer, token, widget)
        payment = client.post(
            "/api/payments/initiate", json={"order_id": order["id"]}, headers=as_user(customer)
        ).get_json()["payment"]
        gateway.report("T-1", "COMPLETED")
        client.get("/api/payments/ipn?OrderTrackingId=T-1")

        response = client.post(
            f"/api/payments/transactions/{payment['transaction_id']}/refund",
            json={"amount_cents": 101},
            headers=as_business(business),
        )

        assert response.status_code == 409
        assert response.get_json()["code"] == "REFUND_EXCEEDS_BALANCE"
        assert db_session.query(Transaction).filter_by(type="refund").count() == 0

    def test_refund_by_other_business(self, client, db_session, gateway, other_business, customer, token, widget):
        order = place_order(client, customer, token, widget)
        payment = client.post(
            "/api/payments/initiate", json={"order_id": order["id"]}, headers=as_user(customer)
        ).get_json()["payment"]

        response = client.post(
            f"/api/payments/transactions/{payment['transaction_id']}/refund",
            json={"amount_cents": 50},
            headers=as_business(other_business),
        )
        assert response.status_code == 404

    def test_transaction_history_for_customer(self, client, db_session, gateway, customer, other_customer, token, widget):
        order = place_order(client, customer, token, widget)
        client.post("/api/payments/initiate", json={"order_id": order["id"]}, headers=as_user(customer))

        mine = client.get("/api/payments/transactions", headers=as_user(customer)).get_json()
        theirs = client.get("/api/payments/transactions", headers=as_user(other_customer)).get_json()

        assert [t["tracking_id"] for t in mine["transactions"]] == ["T-1"]
        assert theirs["transactions"] == []

    def test_transaction_history_bad_filter(self, client, db_session, business):
        response = client.get("/api/payments/transactions?type=chargeback", headers=as_business(business))
        assert response.status_code == 400


class TestQrRoutes:
    def test_generate(self, client, db_session, business):
        response = client.post("/api/qr/generate", json={"quantity": 3}, headers=as_business(business))

        assert response.status_code == 201
        tokens = response.get_json()["tokens"]
        assert len(tokens) == 3
        assert all(t["business_id"] == business.id for t in tokens)

    def test_admin_generate_requires_business(self, client, db_session):
        response = client.post("/api/qr/generate", json={"quantity": 3}, headers=as_admin())
        assert response.status_code == 400

    def test_assign(self, client, db_session, business, unbound_token, other_customer):
        response = client.post(
            f"/api/qr/{unbound_token.id}/assign",
            json={"user_id": other_customer.id},
            headers=as_staff(business, staff_id=31),
        )

        assert response.status_code == 200
        token = response.get_json()["token"]
        assert token["user_id"] == other_customer.id
        assert token["assigned_by"] == 31

    def test_assign_already_bound(self, client, db_session, business, token, other_customer):
        response = client.post(
            f"/api/qr/{token.id}/assign", json={"user_id": other_customer.id}, headers=as_business(business)
        )
        assert response.status_code == 409
        assert response.get_json()["code"] == "ALREADY_BOUND"

    def test_assign_token_of_other_business(self, client, db_session, other_business, unbound_token, other_customer):
        response = client.post(
            f"/api/qr/{unbound_token.id}/assign",
            json={"user_id": other_customer.id},
            headers=as_business(other_business),
        )
        assert response.status_code == 404
        assert db_session.get(QRToken, unbound_token.id).user_id is None

    def test_deactivate_and_scan(self, client, db_session, business, token):
        response = client.patch(f"/api/qr/{token.id}/active", json={"is_active": False}, headers=as_business(business))
        assert response.status_code == 200
        assert response.get_json()["token"]["is_active"] is False

        response = client.post("/api/qr/scan", json={"code": token.code}, headers=as_staff(business))
        assert response.status_code == 200
        assert response.get_json()["token"]["scan_count"] == 1

    def test_list_with_filters(self, client, db_session, business, token, unbound_token):
        response = client.get("/api/qr/?is_assigned=false", headers=as_staff(business))

        assert response.status_code == 200
        body = response.get_json()
        assert [t["id"] for t in body["tokens"]] == [unbound_token.id]
        assert body["pagination"]["count"] == 1

        response = client.get("/api/qr/?is_printed=maybe", headers=as_business(business))
        assert response.status_code == 400

    def test_mark_printed(self, client, db_session, business, token, unbound_token):
        response = client.post(
            "/api/qr/printed", json={"token_ids": [token.id, unbound_token.id]}, headers=as_business(business)
        )

        assert response.status_code == 200
        assert all(t["is_printed"] for t in response.get_json()["tokens"])
        stats = client.get("/api/qr/stats", headers=as_business(business)).get_json()["stats"]
        assert stats["printed"] == 2

    def test_delete(self, client, db_session, business, token, unbound_token):
        token_id, unbound_id = token.id, unbound_token.id

        response = client.delete(f"/api/qr/{token_id}", headers=as_business(business))
        assert response.status_code == 409
        assert response.get_json()["code"] == "ALREADY_BOUND"

        response = client.delete(f"/api/qr/{unbound_id}", headers=as_staff(business))
        assert response.status_code == 403

        response = client.delete(f"/api/qr/{unbound_id}", headers=as_business(business))
        assert response.status_code == 200
        assert response.get_json() == {"deleted": unbound_id}

    def test_stats(self, client, db_session, business, token, unbound_token):
        response = client.get("/api/qr/stats", headers=as_business(business))

        assert response.status_code == 200
        assert response.get_json()["stats"]["assigned"] == 1


class TestHealth:
    def test_healthy(self, client, db_session):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "healthy"
        assert set(body["checks"]) == {"database", "payment_gateway", "reconciliation"}
        assert body["checks"]["payment_gateway"]["details"]["credentials_configured"] is True
