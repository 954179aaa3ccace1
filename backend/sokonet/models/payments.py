from __future__ import annotations

from ..extensions import db
from sokonet.time_utils import to_utc_z


class Transaction(db.Model):
    """
    One monetary movement tied to an order.

    TYPES:
    - purchase: gateway charge session for an order (positive amount)
    - refund: money returned against a paid purchase (negative amount)
    - topup: wallet top-up (positive amount)

    STATUS (monotonic, never regresses):
        pending -> paid | failed
        paid -> refunded (once refunded_cents == amount_cents)

    A payment retry after failure creates a new transaction; failed rows
    are never reused. tracking_id is the gateway's reference and the
    reconciliation key.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.Index("ix_transactions_order_type_status", "order_id", "type", "status"),
        db.Index("ix_transactions_business_created", "business_id", "created_at"),
        db.CheckConstraint("refunded_cents >= 0", name="ck_transactions_refunded_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # Signed: positive for charges, negative for refunds
    amount_cents = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(16), nullable=False, index=True)
    payment_method = db.Column(db.String(16), nullable=False, default="card")
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    # Gateway references
    tracking_id = db.Column(db.String(64), nullable=True, unique=True)
    merchant_reference = db.Column(db.String(64), nullable=True, index=True)
    redirect_url = db.Column(db.String(512), nullable=True)

    # Last authoritative gateway answer
    gateway_status = db.Column(db.String(32), nullable=True)
    gateway_payment_method = db.Column(db.String(64), nullable=True)
    confirmation_code = db.Column(db.String(64), nullable=True)
    last_notification_source = db.Column(db.String(16), nullable=True)  # callback, ipn, sweep, verify
    last_reconciled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Refund bookkeeping
    refunded_cents = db.Column(db.Integer, nullable=False, default=0)
    original_transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True, index=True)
    refund_reason = db.Column(db.String(255), nullable=True)
    created_by = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("transactions", lazy=True))
    original_transaction = db.relationship("Transaction", remote_side=[id])
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Transaction id={self.id} type={self.type} status={self.status} tracking_id={self.tracking_id!r}>"

    @property
    def refundable_cents(self) -> int:
        return self.amount_cents - (self.refunded_cents or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "business_id": self.business_id,
            "user_id": self.user_id,
            "amount_cents": self.amount_cents,
            "type": self.type,
            "payment_method": self.payment_method,
            "status": self.status,
            "tracking_id": self.tracking_id,
            "merchant_reference": self.merchant_reference,
            "redirect_url": self.redirect_url,
            "gateway_status": self.gateway_status,
            "gateway_payment_method": self.gateway_payment_method,
            "confirmation_code": self.confirmation_code,
            "last_notification_source": self.last_notification_source,
            "last_reconciled_at": to_utc_z(self.last_reconciled_at),
            "refunded_cents": self.refunded_cents,
            "original_transaction_id": self.original_transaction_id,
            "refund_reason": self.refund_reason,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "paid_at": to_utc_z(self.paid_at),
            "version_id": self.version_id,
        }


class GatewayRegistration(db.Model):
    """
    IPN endpoint registered with the payment gateway.

    Registration happens once per deployment (per IPN URL); the returned
    ipn_id is reused for every charge request.
    """
    __tablename__ = "gateway_registrations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    ipn_url = db.Column(db.String(512), nullable=False, unique=True)
    ipn_id = db.Column(db.String(64), nullable=False)
    notification_type = db.Column(db.String(8), nullable=False, default="GET")
    registered_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ipn_url": self.ipn_url,
            "ipn_id": self.ipn_id,
            "notification_type": self.notification_type,
            "registered_at": to_utc_z(self.registered_at),
        }
