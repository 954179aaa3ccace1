# Overview: Service-layer operations for orders; creation against a QR identity and the status state machine.

"""
Order Aggregate & State Machine

STATE MACHINE:
    pending -> confirmed -> preparing -> ready -> delivered
    pending | confirmed | preparing -> cancelled

    delivered and cancelled are terminal. ready -> cancelled is forbidden.
    Cancelling twice is an InvalidTransition, not a no-op.

CREATION (create_order):
    1. Resolve the QR token to (business_id, user_id)
    2. Load each product scoped to the business; must be active and available
    3. Snapshot the current catalog price onto each line
    4. Reserve stock for all lines atomically (InsufficientStock propagates,
       no order is created)
    5. Persist the order: status=pending, payment_status=pending

CONCURRENCY:
    Status changes lock the order row and rely on version_id_col. A writer
    that lost the race gets StaleDataError, run_with_retry re-runs the
    operation, and the transition is re-validated against the fresh status.
    Stock release on cancellation happens in the same unit of work as the
    status change, so inventory is restored exactly once.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Order, OrderLine, Product
from ..validation import (
    ConflictError,
    NotFoundError,
    coerce_choice,
    optional_text,
    validate_order_items,
)
from sokonet.time_utils import utcnow
from . import qr_service, stock_service
from .concurrency import lock_for_update, run_with_retry


# =============================================================================
# ORDER STATUS (CONSTANTS)
# =============================================================================

ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_CONFIRMED = "confirmed"
ORDER_STATUS_PREPARING = "preparing"
ORDER_STATUS_READY = "ready"
ORDER_STATUS_DELIVERED = "delivered"
ORDER_STATUS_CANCELLED = "cancelled"

ORDER_STATUSES = [
    ORDER_STATUS_PENDING,
    ORDER_STATUS_CONFIRMED,
    ORDER_STATUS_PREPARING,
    ORDER_STATUS_READY,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_CANCELLED,
]

ALLOWED_TRANSITIONS = {
    ORDER_STATUS_PENDING: {ORDER_STATUS_CONFIRMED, ORDER_STATUS_CANCELLED},
    ORDER_STATUS_CONFIRMED: {ORDER_STATUS_PREPARING, ORDER_STATUS_CANCELLED},
    ORDER_STATUS_PREPARING: {ORDER_STATUS_READY, ORDER_STATUS_CANCELLED},
    ORDER_STATUS_READY: {ORDER_STATUS_DELIVERED},
    ORDER_STATUS_DELIVERED: set(),
    ORDER_STATUS_CANCELLED: set(),
}

PAYMENT_METHODS = ["cash", "card", "mpesa", "wallet"]


class OrderNotFound(NotFoundError):
    code = "ORDER_NOT_FOUND"


class ProductUnavailable(ConflictError):
    code = "PRODUCT_UNAVAILABLE"


class InvalidTransition(ConflictError):
    code = "INVALID_TRANSITION"


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


# =============================================================================
# ORDER CREATION
# =============================================================================

def create_order(
    token_id: int,
    items,
    payment_method: str = "cash",
    delivery_info: dict | None = None,
) -> Order:
    """
    Place an order on behalf of the user bound to a QR token.

    Args:
        token_id: QR token presented at the point of sale
        items: [{"product_id": int, "quantity": int}, ...]
        payment_method: cash, card, mpesa, wallet
        delivery_info: optional {"address": str, "notes": str}

    Raises:
        ValidationError: malformed input (nothing is touched)
        InvalidToken: token missing, inactive, or unbound
        ProductUnavailable: product missing, inactive, unavailable, or
            belonging to another business
        InsufficientStock: reservation failed; no order is created
    """
    lines_requested = validate_order_items(items)
    payment_method = coerce_choice(payment_method or "cash", "payment_method", PAYMENT_METHODS)
    delivery_info = delivery_info or {}
    delivery_address = optional_text(delivery_info.get("address"), "delivery_address")
    notes = optional_text(delivery_info.get("notes"), "notes", max_length=2000)

    def _op():
        business_id, user_id = qr_service.resolve(token_id)

        product_ids = {line["product_id"] for line in lines_requested}
        products = {
            p.id: p
            for p in db.session.query(Product).filter(
                Product.id.in_(product_ids),
                Product.business_id == business_id,
            )
        }

        order_lines = []
        total_cents = 0
        for requested in lines_requested:
            product = products.get(requested["product_id"])
            if product is None or not product.is_orderable:
                raise ProductUnavailable(
                    f"Product {requested['product_id']} not found or inactive",
                    details={"product_id": requested["product_id"]},
                )

            line_total = product.price_cents * requested["quantity"]
            total_cents += line_total
            order_lines.append(OrderLine(
                product_id=product.id,
                product_name=product.name,
                quantity=requested["quantity"],
                unit_price_cents=product.price_cents,
                line_total_cents=line_total,
            ))

        order = Order(
            business_id=business_id,
            user_id=user_id,
            qr_token_id=token_id,
            payment_method=payment_method,
            delivery_address=delivery_address,
            notes=notes,
            total_cents=total_cents,
            status=ORDER_STATUS_PENDING,
            payment_status="pending",
            lines=order_lines,
        )
        db.session.add(order)
        db.session.flush()  # Get order ID

        stock_service.reserve(lines_requested, order_id=order.id)

        order.order_number = f"ORD-{order.id:08d}"
        db.session.commit()

        current_app.logger.info(
            "Order %s created for business %s user %s total_cents=%s",
            order.id, business_id, user_id, total_cents,
        )
        return order

    return run_with_retry(_op)


# =============================================================================
# STATUS TRANSITIONS
# =============================================================================

def _transition_locked(
    order: Order,
    target: str,
    *,
    actor_id: int | None = None,
    reason: str | None = None,
) -> Order:
    """
    Apply a validated transition to a locked order. Does not commit.

    Cancellation releases every line's stock in the same transaction.
    """
    if not can_transition(order.status, target):
        raise InvalidTransition(
            f"Cannot change status from {order.status} to {target}",
            details={"order_id": order.id, "current": order.status, "target": target},
        )

    now = utcnow()
    previous = order.status
    order.status = target
    setattr(order, f"{target}_at", now)

    if target == ORDER_STATUS_CANCELLED:
        order.cancellation_reason = reason
        order.cancelled_by = actor_id
        stock_service.release(
            [{"product_id": line.product_id, "quantity": line.quantity} for line in order.lines],
            order_id=order.id,
        )

    current_app.logger.info("Order %s: %s -> %s", order.id, previous, target)
    return order


def _load_order_locked(order_id: int, business_id: int | None = None) -> Order:
    query = db.session.query(Order).filter_by(id=order_id)
    if business_id is not None:
        query = query.filter_by(business_id=business_id)
    order = lock_for_update(query).first()
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found")
    return order


def update_order_status(
    order_id: int,
    target: str,
    *,
    actor_id: int | None = None,
    reason: str | None = None,
    business_id: int | None = None,
) -> Order:
    """
    Move an order to target status.

    Raises:
        ValidationError: target is not an order status
        OrderNotFound: order missing (or not owned by business_id)
        InvalidTransition: target not allowed from the current status
    """
    target = coerce_choice(target, "status", ORDER_STATUSES)
    reason = optional_text(reason, "reason")

    def _op():
        order = _load_order_locked(order_id, business_id)
        _transition_locked(order, target, actor_id=actor_id, reason=reason)
        db.session.commit()
        return order

    return run_with_retry(_op)


def cancel_order(
    order_id: int,
    *,
    reason: str | None = None,
    actor_id: int | None = None,
    business_id: int | None = None,
    user_id: int | None = None,
) -> Order:
    """
    Cancel an order and restore its stock.

    Cancelling a delivered, ready, or already-cancelled order raises
    InvalidTransition and leaves stock untouched.
    """
    reason = optional_text(reason, "reason")

    def _op():
        order = _load_order_locked(order_id, business_id)
        if user_id is not None and order.user_id != user_id:
            raise OrderNotFound(f"Order {order_id} not found")
        if order.status == ORDER_STATUS_CANCELLED:
            raise InvalidTransition(
                "Order is already cancelled",
                details={"order_id": order.id, "current": order.status, "target": ORDER_STATUS_CANCELLED},
            )
        if order.status == ORDER_STATUS_DELIVERED:
            raise InvalidTransition(
                "Cannot cancel delivered order",
                details={"order_id": order.id, "current": order.status, "target": ORDER_STATUS_CANCELLED},
            )
        _transition_locked(order, ORDER_STATUS_CANCELLED, actor_id=actor_id, reason=reason)
        db.session.commit()
        return order

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_order(order_id: int, *, business_id: int | None = None, user_id: int | None = None) -> Order:
    """Scoped read: an order outside the caller's business/user is reported as missing."""
    query = db.session.query(Order).filter_by(id=order_id)
    if business_id is not None:
        query = query.filter_by(business_id=business_id)
    if user_id is not None:
        query = query.filter_by(user_id=user_id)
    order = query.first()
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found")
    return order


def list_orders(
    *,
    business_id: int | None = None,
    user_id: int | None = None,
    status: str | None = None,
    payment_status: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    query = db.session.query(Order)
    if business_id is not None:
        query = query.filter(Order.business_id == business_id)
    if user_id is not None:
        query = query.filter(Order.user_id == user_id)
    if status:
        query = query.filter(Order.status == status)
    if payment_status:
        query = query.filter(Order.payment_status == payment_status)

    page = max(page, 1)
    per_page = min(max(per_page, 1), 100)
    total = query.count()
    orders = query.order_by(Order.created_at.desc(), Order.id.desc()).offset(
        (page - 1) * per_page
    ).limit(per_page).all()

    return {
        "orders": orders,
        "pagination": {
            "page": page,
            "per_page": per_page,
            "count": total,
            "pages": (total + per_page - 1) // per_page,
        },
    }


def get_order_stats(business_id: int) -> dict:
    counts = dict(
        db.session.query(Order.status, func.count(Order.id))
        .filter(Order.business_id == business_id)
        .group_by(Order.status)
        .all()
    )
    delivered_revenue = db.session.query(
        func.coalesce(func.sum(Order.total_cents), 0)
    ).filter(
        Order.business_id == business_id,
        Order.status == ORDER_STATUS_DELIVERED,
    ).scalar() or 0

    return {
        "total_orders": sum(counts.values()),
        "by_status": {status: counts.get(status, 0) for status in ORDER_STATUSES},
        "delivered_revenue_cents": int(delivered_revenue),
    }
