# Overview: Flask API routes for payments; gateway sessions, callback/IPN endpoints, refunds.

"""
Payment API Routes

DESIGN:
- /initiate opens a gateway charge session and returns the redirect
- /callback is the user-facing redirect target: reconcile, then redirect
  the browser to the front-end result page
- /ipn is the server-to-server notification: reconcile, then answer with
  the acknowledgement body the gateway expects
- Neither endpoint trusts status fields in the request; only the tracking
  id is read and the gateway is queried for the real status
- /verify lets the owning user or business re-check a payment on demand

SECURITY:
- /callback and /ipn are called by the gateway and the customer's browser,
  so they carry no principal
- Refunds are business/admin operations, scoped to the caller's business
"""

from flask import Blueprint, g, jsonify, redirect, request, current_app

from ..decorators import (
    PRINCIPAL_ADMIN,
    PRINCIPAL_BUSINESS,
    PRINCIPAL_STAFF,
    PRINCIPAL_USER,
    require_principal,
)
from ..services import payment_service
from ..validation import CommerceError, ValidationError, coerce_positive_int


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _notification_params():
    """Gateway notification fields, from the query string or a JSON body."""
    params = dict(request.args)
    if request.method == "POST":
        body = request.get_json(silent=True)
        params.update(body if isinstance(body, dict) else request.form.to_dict())
    return (
        params.get("OrderTrackingId"),
        params.get("OrderMerchantReference"),
        params.get("OrderNotificationType"),
    )


# =============================================================================
# PAYMENT INITIATION
# =============================================================================

@payments_bp.post("/initiate")
@require_principal(PRINCIPAL_USER, PRINCIPAL_ADMIN)
def initiate_payment_route():
    """
    Open a payment session for an order.

    Request body: {"order_id": 42}

    Returns:
        201: {"payment": {order_id, transaction_id, tracking_id, redirect_url, amount_cents}}
        404: Order not found
        409: Payment already initiated, or order not payable
        502: Gateway failure (details carry the order/transaction ids)
    """
    try:
        data = request.get_json(silent=True) or {}
        if "order_id" not in data:
            raise ValidationError("order_id is required")
        order_id = coerce_positive_int(data["order_id"], "order_id")

        user_id = g.principal.id if g.principal.kind == PRINCIPAL_USER else None
        session = payment_service.initiate_payment(order_id, user_id=user_id)
        return jsonify({"payment": session.to_dict()}), 201

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to initiate payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# GATEWAY NOTIFICATIONS
# =============================================================================

@payments_bp.get("/callback")
def payment_callback_route():
    """User-facing redirect from the gateway after checkout."""
    tracking_id, merchant_reference, _ = _notification_params()
    frontend = current_app.config["FRONTEND_URL"].rstrip("/")
    try:
        outcome = payment_service.handle_payment_callback(tracking_id, merchant_reference)
        return redirect(outcome["redirect_url"])

    except CommerceError as e:
        current_app.logger.warning(
            "[Tracking: %s] Payment callback failed: %s (%s)", tracking_id, e.message, e.code
        )
        return redirect(f"{frontend}/payment/error")
    except Exception:
        current_app.logger.exception("[Tracking: %s] Payment callback error", tracking_id)
        return redirect(f"{frontend}/payment/error")


@payments_bp.route("/ipn", methods=["GET", "POST"])
def payment_ipn_route():
    """
    Server-to-server payment notification.

    Returns the gateway acknowledgement:
    {"orderNotificationType", "orderTrackingId", "orderMerchantReference", "status"}
    status 200 means handled; 500 asks the gateway to retry.
    """
    tracking_id, merchant_reference, notification_type = _notification_params()
    try:
        ack = payment_service.handle_payment_ipn(tracking_id, merchant_reference, notification_type)
        return jsonify(ack), 200

    except CommerceError as e:
        current_app.logger.warning(
            "[Tracking: %s] IPN not processed: %s (%s)", tracking_id, e.message, e.code
        )
        ack = payment_service.ipn_error_ack(tracking_id, merchant_reference, notification_type)
        return jsonify(ack), e.status_code
    except Exception:
        current_app.logger.exception("[Tracking: %s] IPN processing error", tracking_id)
        ack = payment_service.ipn_error_ack(tracking_id, merchant_reference, notification_type)
        return jsonify(ack), 500


# =============================================================================
# REFUNDS
# =============================================================================

@payments_bp.post("/transactions/<int:transaction_id>/refund")
@require_principal(PRINCIPAL_BUSINESS, PRINCIPAL_ADMIN)
def refund_route(transaction_id: int):
    """
    Refund part or all of a paid purchase.

    Request body:
    {
        "amount_cents": 5000,
        "reason": "Damaged goods"  (optional)
    }

    Returns:
        201: Refund transaction created
        400: Invalid amount
        404: Transaction not found
        409: Not refundable, or amount exceeds refundable balance
    """
    try:
        data = request.get_json(silent=True) or {}
        if "amount_cents" not in data:
            raise ValidationError("amount_cents is required")

        refund = payment_service.process_refund(
            transaction_id,
            data["amount_cents"],
            data.get("reason"),
            actor_id=g.principal.id,
            business_id=g.principal.scope_business_id,
        )
        original = payment_service.get_transaction(transaction_id)
        return jsonify({
            "refund": refund.to_dict(),
            "original": original.to_dict(),
        }), 201

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to process refund")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENT QUERIES
# =============================================================================

@payments_bp.get("/verify")
@require_principal(PRINCIPAL_USER, PRINCIPAL_BUSINESS, PRINCIPAL_ADMIN)
def verify_payment_route():
    """
    Check a payment against the gateway on demand.

    Query params: tracking_id and/or order_id (at least one)

    Returns:
        200: {"order", "transaction", "verification"}
        400: Neither parameter given
        404: Order or transaction not found in the caller's scope
    """
    try:
        principal = g.principal
        order_id = request.args.get("order_id")
        if order_id is not None:
            order_id = coerce_positive_int(order_id, "order_id")

        outcome = payment_service.verify_payment(
            tracking_id=request.args.get("tracking_id"),
            order_id=order_id,
            user_id=principal.id if principal.kind == PRINCIPAL_USER else None,
            business_id=principal.scope_business_id,
        )
        order, txn, verification = outcome["order"], outcome["transaction"], outcome["verification"]
        return jsonify({
            "order": order.to_dict() if order is not None else None,
            "transaction": txn.to_dict() if txn is not None else None,
            "verification": verification.to_dict() if verification is not None else None,
        }), 200

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to verify payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/transactions")
@require_principal()
def transaction_history_route():
    """
    Transaction history visible to the caller.

    Query params: type, status, start, end (ISO-8601), page, per_page
    """
    try:
        principal = g.principal
        business_id = principal.scope_business_id
        user_id = principal.id if principal.kind == PRINCIPAL_USER else None
        if principal.kind == PRINCIPAL_ADMIN:
            business_id = request.args.get("business_id", type=int)

        result = payment_service.get_transaction_history(
            business_id=business_id,
            user_id=user_id,
            type=request.args.get("type"),
            status=request.args.get("status"),
            start=request.args.get("start"),
            end=request.args.get("end"),
            page=request.args.get("page", 1, type=int),
            per_page=request.args.get("per_page", 20, type=int),
        )
        return jsonify({
            "transactions": [t.to_dict() for t in result["transactions"]],
            "pagination": result["pagination"],
        }), 200

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list transactions")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/stats")
@require_principal(PRINCIPAL_BUSINESS, PRINCIPAL_STAFF, PRINCIPAL_ADMIN)
def payment_stats_route():
    business_id = g.principal.scope_business_id
    if g.principal.kind == PRINCIPAL_ADMIN:
        business_id = request.args.get("business_id", type=int)
    if business_id is None:
        return jsonify({"error": "business_id is required"}), 400
    return jsonify({"stats": payment_service.get_payment_stats(business_id)}), 200
