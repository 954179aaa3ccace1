from __future__ import annotations

from ..extensions import db
from sokonet.time_utils import to_utc_z


class QRToken(db.Model):
    """
    Physical QR tag that identifies an end user at a business's point of sale.

    BINDING RULES:
    - A token is bound to at most one user (user_id nullable, set once)
    - A user holds at most one token per business
      (UniqueConstraint business_id + user_id; NULLs do not collide)
    - Codes are unique per business and never reused across businesses

    LIFECYCLE: generated in batches -> printed -> bound -> optionally
    unbound. Deactivated tokens cannot authorize orders. Only unbound tokens
    that no order references may be deleted.
    """
    __tablename__ = "qr_tokens"
    __table_args__ = (
        db.UniqueConstraint("business_id", "code", name="uq_qr_tokens_business_code"),
        db.UniqueConstraint("business_id", "user_id", name="uq_qr_tokens_business_user"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    code = db.Column(db.String(32), nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    assigned_at = db.Column(db.DateTime(timezone=True), nullable=True)
    assigned_by = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_printed = db.Column(db.Boolean, nullable=False, default=False)
    printed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    scan_count = db.Column(db.Integer, nullable=False, default=0)
    last_scanned_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    business = db.relationship("Business", backref=db.backref("qr_tokens", lazy=True))
    user = db.relationship("User", backref=db.backref("qr_tokens", lazy=True))

    def __repr__(self) -> str:
        return f"<QRToken id={self.id} code={self.code!r} business_id={self.business_id} user_id={self.user_id}>"

    @property
    def is_bound(self) -> bool:
        return self.user_id is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "code": self.code,
            "user_id": self.user_id,
            "assigned_at": to_utc_z(self.assigned_at),
            "assigned_by": self.assigned_by,
            "is_active": self.is_active,
            "is_printed": self.is_printed,
            "printed_at": to_utc_z(self.printed_at),
            "scan_count": self.scan_count,
            "last_scanned_at": to_utc_z(self.last_scanned_at),
            "created_at": to_utc_z(self.created_at),
        }
