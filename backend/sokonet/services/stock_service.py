# Overview: Service-layer operations for the stock ledger; atomic conditional stock adjustments.

"""
Stock Ledger

INVARIANTS:
- Product.stock never goes negative.
- Every adjustment is ONE conditional UPDATE:
      UPDATE products SET stock = stock + :delta
      WHERE id = :id AND stock + :delta >= 0
  The row either matches (and is changed) or not. There is no
  read-then-write window for two orders to race through.
- reserve() is all-or-nothing: its updates run under a savepoint, so the
  first failing line rolls every earlier line back before the error
  reaches the caller. It never commits the enclosing transaction.
- release() is the exact inverse of reserve() for the same items.
- Every successful adjustment appends a StockMovement in the same transaction.
"""

from __future__ import annotations

from ..extensions import db
from ..models import Product, StockMovement
from ..validation import ConflictError, NotFoundError, ValidationError, coerce_positive_int
from sokonet.time_utils import utcnow
from .concurrency import run_with_retry


REASON_ORDER_RESERVED = "order.reserved"
REASON_ORDER_CANCELLED = "order.cancelled"
REASON_MANUAL_RESTOCK = "manual.restock"


class InsufficientStock(ConflictError):
    """Raised when an adjustment would take stock below zero."""
    code = "INSUFFICIENT_STOCK"


def adjust(product_id: int, delta: int, *, reason: str, order_id: int | None = None) -> None:
    """
    Apply delta to a product's stock (positive=restore, negative=consume).

    Does not commit.

    Raises:
        InsufficientStock: post-adjustment stock would be negative
        NotFoundError: product does not exist
    """
    if delta == 0:
        raise ValidationError("Stock adjustment delta must be non-zero")

    matched = db.session.query(Product).filter(
        Product.id == product_id,
        Product.stock + delta >= 0,
    ).update(
        {
            Product.stock: Product.stock + delta,
            Product.version_id: Product.version_id + 1,
        },
        synchronize_session="fetch",
    )

    if matched != 1:
        product = db.session.query(Product.id, Product.name, Product.stock).filter(
            Product.id == product_id
        ).first()
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        raise InsufficientStock(
            f"Insufficient stock for {product.name}. Available: {product.stock}",
            details={
                "product_id": product_id,
                "requested_quantity": -delta,
                "available": product.stock,
            },
        )

    db.session.add(StockMovement(
        product_id=product_id,
        order_id=order_id,
        delta=delta,
        reason=reason,
        occurred_at=utcnow(),
    ))


def _aggregate(items: list[dict]) -> list[tuple[int, int]]:
    """Sum quantities per product; ascending product id keeps lock order stable."""
    totals: dict[int, int] = {}
    for item in items:
        totals[item["product_id"]] = totals.get(item["product_id"], 0) + item["quantity"]
    return sorted(totals.items())


def reserve(items: list[dict], *, order_id: int | None = None) -> None:
    """
    Consume stock for every item, all-or-nothing.

    items: [{"product_id": int, "quantity": int}, ...]

    Does not commit. On InsufficientStock the savepoint is rolled back, so
    a caller that swallows the error and commits persists none of the lines.
    """
    with db.session.begin_nested():
        for product_id, quantity in _aggregate(items):
            adjust(product_id, -quantity, reason=REASON_ORDER_RESERVED, order_id=order_id)


def release(items: list[dict], *, order_id: int | None = None) -> None:
    """Restore stock for every item. Exact inverse of reserve(); does not commit."""
    with db.session.begin_nested():
        for product_id, quantity in _aggregate(items):
            adjust(product_id, quantity, reason=REASON_ORDER_CANCELLED, order_id=order_id)


def restock(product_id: int, quantity) -> Product:
    """Business-side replenishment. Commits."""
    quantity = coerce_positive_int(quantity, "quantity")

    def _op():
        adjust(product_id, quantity, reason=REASON_MANUAL_RESTOCK)
        db.session.commit()
        return db.session.get(Product, product_id)

    return run_with_retry(_op)


def get_stock(product_id: int) -> int:
    stock = db.session.query(Product.stock).filter(Product.id == product_id).scalar()
    if stock is None:
        raise NotFoundError(f"Product {product_id} not found")
    return int(stock)


def get_movements(product_id: int, order_id: int | None = None) -> list[StockMovement]:
    query = db.session.query(StockMovement).filter_by(product_id=product_id)
    if order_id is not None:
        query = query.filter_by(order_id=order_id)
    return query.order_by(StockMovement.id).all()
