from __future__ import annotations

from ..extensions import db
from sokonet.time_utils import to_utc_z


class Order(db.Model):
    """
    Purchase intent placed through a QR token.

    STATE MACHINE (see services/order_service.py):
        pending -> confirmed -> preparing -> ready -> delivered
        pending | confirmed | preparing -> cancelled

    TOTAL: total_cents is the sum of line totals at creation time and is
    immutable afterwards. Orders are never deleted; cancellation is a status.

    CONCURRENCY: version_id_col turns every ORM update into a
    compare-and-swap on the row version, so a reconciliation racing a
    cancellation cannot both win.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_business_status", "business_id", "status"),
        db.Index("ix_orders_business_created", "business_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=True, unique=True)

    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    qr_token_id = db.Column(db.Integer, db.ForeignKey("qr_tokens.id"), nullable=False, index=True)

    payment_method = db.Column(db.String(16), nullable=False, default="cash")
    delivery_address = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    total_cents = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    payment_attempts = db.Column(db.Integer, nullable=False, default=0)

    # Transition timestamps (<status>_at)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    preparing_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ready_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    cancellation_reason = db.Column(db.String(255), nullable=True)
    cancelled_by = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    business = db.relationship("Business", backref=db.backref("orders", lazy=True))
    user = db.relationship("User", backref=db.backref("orders", lazy=True))
    qr_token = db.relationship("QRToken")
    lines = db.relationship(
        "OrderLine",
        back_populates="order",
        order_by="OrderLine.id",
        cascade="all, delete-orphan",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status} payment_status={self.payment_status}>"

    def to_dict(self, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "business_id": self.business_id,
            "user_id": self.user_id,
            "qr_token_id": self.qr_token_id,
            "payment_method": self.payment_method,
            "delivery_address": self.delivery_address,
            "notes": self.notes,
            "total_cents": self.total_cents,
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_attempts": self.payment_attempts,
            "created_at": to_utc_z(self.created_at),
            "confirmed_at": to_utc_z(self.confirmed_at),
            "preparing_at": to_utc_z(self.preparing_at),
            "ready_at": to_utc_z(self.ready_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "paid_at": to_utc_z(self.paid_at),
            "cancellation_reason": self.cancellation_reason,
            "cancelled_by": self.cancelled_by,
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class OrderLine(db.Model):
    """
    Line item owned by an order (no independent lifecycle).

    unit_price_cents and product_name are snapshots taken at order time.
    """
    __tablename__ = "order_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_lines_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    product_name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    order = db.relationship("Order", back_populates="lines")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }
