# Overview: Flask API routes for orders; parses input and returns JSON responses.

"""
Order API Routes

DESIGN:
- Orders are placed against a QR token (the customer's identity anchor)
- Status changes go through the state machine in order_service
- Every read and write is scoped to the caller: customers see their own
  orders, business accounts and staff see their business's orders

SECURITY:
- Caller identity comes from the upstream auth layer (require_principal)
- An order outside the caller's scope is reported as 404
"""

from flask import Blueprint, g, jsonify, request, current_app

from ..decorators import (
    PRINCIPAL_ADMIN,
    PRINCIPAL_BUSINESS,
    PRINCIPAL_STAFF,
    PRINCIPAL_USER,
    require_principal,
)
from ..services import order_service, qr_service
from ..validation import CommerceError, ValidationError, coerce_positive_int


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _scope():
    """(business_id, user_id) filters for the current principal."""
    principal = g.principal
    if principal.kind == PRINCIPAL_USER:
        return None, principal.id
    if principal.kind == PRINCIPAL_ADMIN:
        return request.args.get("business_id", type=int), None
    return principal.scope_business_id, None


# =============================================================================
# ORDER CREATION
# =============================================================================

@orders_bp.post("/")
@require_principal()
def create_order_route():
    """
    Place an order through a QR token.

    Request body:
    {
        "qr_token_id": 12,
        "items": [{"product_id": 1, "quantity": 2}],
        "payment_method": "mpesa",            (optional, default cash)
        "delivery_info": {"address": "...", "notes": "..."}  (optional)
    }

    Returns:
        201: Order created (stock reserved)
        400: Invalid input
        404: Token/product not found
        409: Invalid token, product unavailable, or insufficient stock
    """
    try:
        data = request.get_json(silent=True) or {}
        if "qr_token_id" not in data:
            raise ValidationError("qr_token_id is required")
        token_id = coerce_positive_int(data["qr_token_id"], "qr_token_id")

        # The token must belong to the caller (customer) or the caller's business
        business_id, user_id = qr_service.resolve(token_id)
        principal = g.principal
        if principal.kind == PRINCIPAL_USER and not principal.owns(user_id):
            return jsonify({"error": "QR token is not assigned to you"}), 403
        if principal.kind in (PRINCIPAL_BUSINESS, PRINCIPAL_STAFF) and not principal.can_manage_business(business_id):
            return jsonify({"error": "QR token belongs to another business"}), 403

        order = order_service.create_order(
            token_id,
            data.get("items"),
            payment_method=data.get("payment_method") or "cash",
            delivery_info=data.get("delivery_info"),
        )
        return jsonify({"order": order.to_dict(include_lines=True)}), 201

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ORDER QUERIES
# =============================================================================

@orders_bp.get("/")
@require_principal()
def list_orders_route():
    """
    List orders visible to the caller.

    Query params: status, payment_status, page, per_page
    (admin only: business_id)
    """
    try:
        business_id, user_id = _scope()
        result = order_service.list_orders(
            business_id=business_id,
            user_id=user_id,
            status=request.args.get("status"),
            payment_status=request.args.get("payment_status"),
            page=request.args.get("page", 1, type=int),
            per_page=request.args.get("per_page", 20, type=int),
        )
        return jsonify({
            "orders": [o.to_dict() for o in result["orders"]],
            "pagination": result["pagination"],
        }), 200

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/stats")
@require_principal(PRINCIPAL_BUSINESS, PRINCIPAL_STAFF, PRINCIPAL_ADMIN)
def order_stats_route():
    business_id, _ = _scope()
    if business_id is None:
        return jsonify({"error": "business_id is required"}), 400
    return jsonify({"stats": order_service.get_order_stats(business_id)}), 200


@orders_bp.get("/<int:order_id>")
@require_principal()
def get_order_route(order_id: int):
    try:
        business_id, user_id = _scope()
        order = order_service.get_order(order_id, business_id=business_id, user_id=user_id)
        return jsonify({"order": order.to_dict(include_lines=True)}), 200

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# STATUS TRANSITIONS
# =============================================================================

@orders_bp.patch("/<int:order_id>/status")
@require_principal(PRINCIPAL_BUSINESS, PRINCIPAL_STAFF, PRINCIPAL_ADMIN)
def update_order_status_route(order_id: int):
    """
    Move an order along the state machine.

    Request body:
    {
        "status": "confirmed",
        "reason": "..."  (optional, recorded on cancellation)
    }

    Returns:
        200: Order updated
        400: Unknown status
        404: Order not found
        409: Transition not allowed from the current status
    """
    try:
        data = request.get_json(silent=True) or {}
        business_id, _ = _scope()
        order = order_service.update_order_status(
            order_id,
            data.get("status"),
            actor_id=g.principal.id,
            reason=data.get("reason"),
            business_id=business_id,
        )
        return jsonify({"order": order.to_dict()}), 200

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_principal()
def cancel_order_route(order_id: int):
    """
    Cancel an order and restore its stock.

    Request body: {"reason": "..."}  (optional)
    """
    try:
        data = request.get_json(silent=True) or {}
        business_id, user_id = _scope()
        order = order_service.cancel_order(
            order_id,
            reason=data.get("reason"),
            actor_id=g.principal.id,
            business_id=business_id,
            user_id=user_id,
        )
        return jsonify({"order": order.to_dict()}), 200

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500
