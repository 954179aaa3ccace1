# Overview: Service-layer operations for QR identity binding; token batches, bind/unbind, resolution.

"""
QR Identity Binding

A QR token is the physical identity anchor a customer carries instead of a
login session. resolve() is the sole authorization gate for order creation.

RULES:
- bind: token must be unbound (AlreadyBound) and the user must not already
  hold a token of the same business (DuplicateBinding)
- unbind: token must be bound (NotBound)
- resolve: token must exist, be active, and be bound (InvalidToken)
- delete: token must be unbound (AlreadyBound) and referenced by no order
  (TokenInUse)

Binding is a conditional UPDATE ... WHERE user_id IS NULL, backed by the
unique (business_id, user_id) constraint, so two concurrent binds cannot
both succeed.
"""

from __future__ import annotations

import secrets
import string

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Business, Order, QRToken, User
from ..validation import ConflictError, NotFoundError, ValidationError, coerce_positive_int
from sokonet.time_utils import utcnow
from .concurrency import run_with_retry


CODE_ALPHABET = string.ascii_uppercase + string.digits
MIN_CODE_LENGTH = 6
MAX_CODE_LENGTH = 12


class QRTokenNotFound(NotFoundError):
    code = "QR_TOKEN_NOT_FOUND"


class AlreadyBound(ConflictError):
    code = "ALREADY_BOUND"


class DuplicateBinding(ConflictError):
    code = "DUPLICATE_BINDING"


class NotBound(ConflictError):
    code = "NOT_BOUND"


class InvalidToken(ConflictError):
    """Token cannot authorize an order: missing, inactive, or unbound."""
    code = "INVALID_TOKEN"


class TokenInUse(ConflictError):
    """Token is referenced by orders and cannot be deleted."""
    code = "QR_TOKEN_IN_USE"


def _get_token(token_id: int) -> QRToken:
    token = db.session.get(QRToken, token_id)
    if token is None:
        raise QRTokenNotFound(f"QR token {token_id} not found")
    return token


def get_token(token_id: int, *, business_id: int | None = None) -> QRToken:
    """Scoped read: a token of another business is reported as missing."""
    token = _get_token(token_id)
    if business_id is not None and token.business_id != business_id:
        raise QRTokenNotFound(f"QR token {token_id} not found")
    return token


def generate_code(length: int | None = None) -> str:
    length = length or current_app.config.get("QR_CODE_LENGTH", 8)
    if not MIN_CODE_LENGTH <= length <= MAX_CODE_LENGTH:
        raise ValidationError(
            f"QR code length must be between {MIN_CODE_LENGTH} and {MAX_CODE_LENGTH}"
        )
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def generate_tokens(business_id: int, quantity) -> list[QRToken]:
    """
    Create a batch of unbound tokens for a business.

    Codes are unique within the business; collisions with existing codes
    (or within the batch) are regenerated.
    """
    max_batch = current_app.config.get("QR_BATCH_MAX", 100)
    quantity = coerce_positive_int(quantity, "quantity", maximum=max_batch)

    def _op():
        business = db.session.get(Business, business_id)
        if business is None:
            raise NotFoundError(f"Business {business_id} not found")

        existing = {
            code for (code,) in db.session.query(QRToken.code).filter_by(business_id=business_id)
        }
        tokens = []
        while len(tokens) < quantity:
            code = generate_code()
            if code in existing:
                continue
            existing.add(code)
            tokens.append(QRToken(business_id=business_id, code=code))

        db.session.add_all(tokens)
        db.session.commit()
        current_app.logger.info("Generated %s QR tokens for business %s", len(tokens), business_id)
        return tokens

    return run_with_retry(_op)


def bind(token_id: int, user_id: int, *, assigned_by: int | None = None) -> QRToken:
    """
    Bind a token to a user.

    Raises:
        QRTokenNotFound, NotFoundError (user), AlreadyBound, DuplicateBinding
    """
    def _op():
        token = _get_token(token_id)
        if db.session.get(User, user_id) is None:
            raise NotFoundError(f"User {user_id} not found")

        if token.user_id is not None:
            raise AlreadyBound(f"QR token {token.code} is already assigned")

        holder = db.session.query(QRToken.id).filter(
            QRToken.business_id == token.business_id,
            QRToken.user_id == user_id,
        ).first()
        if holder is not None:
            raise DuplicateBinding(
                "User already has a QR token for this business",
                details={"user_id": user_id, "qr_token_id": holder.id},
            )

        matched = db.session.query(QRToken).filter(
            QRToken.id == token_id,
            QRToken.user_id.is_(None),
        ).update(
            {
                QRToken.user_id: user_id,
                QRToken.assigned_at: utcnow(),
                QRToken.assigned_by: assigned_by,
            },
            synchronize_session="fetch",
        )
        if matched != 1:
            raise AlreadyBound(f"QR token {token.code} is already assigned")

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise DuplicateBinding(
                "User already has a QR token for this business",
                details={"user_id": user_id},
            )
        return token

    return run_with_retry(_op)


def unbind(token_id: int) -> QRToken:
    """Clear a token's binding. Raises NotBound if the token has no user."""
    def _op():
        token = _get_token(token_id)
        matched = db.session.query(QRToken).filter(
            QRToken.id == token_id,
            QRToken.user_id.isnot(None),
        ).update(
            {
                QRToken.user_id: None,
                QRToken.assigned_at: None,
                QRToken.assigned_by: None,
            },
            synchronize_session="fetch",
        )
        if matched != 1:
            raise NotBound(f"QR token {token.code} is not assigned")
        db.session.commit()
        return token

    return run_with_retry(_op)


def resolve(token_id: int) -> tuple[int, int]:
    """
    Resolve a token to its (business_id, user_id) pair.

    Raises:
        InvalidToken: token missing, inactive, or unbound
    """
    token = db.session.get(QRToken, token_id)
    if token is None or not token.is_active or not token.is_bound:
        raise InvalidToken("Invalid or inactive QR code", details={"qr_token_id": token_id})
    return token.business_id, token.user_id


def set_active(token_id: int, is_active: bool, *, business_id: int | None = None) -> QRToken:
    if not isinstance(is_active, bool):
        raise ValidationError("is_active must be a boolean value")

    def _op():
        token = get_token(token_id, business_id=business_id)
        token.is_active = is_active
        db.session.commit()
        return token

    return run_with_retry(_op)


def record_scan(business_id: int, code: str) -> QRToken:
    """
    Look up a token by its printed code at a business and bump its scan
    counter atomically.
    """
    if not isinstance(code, str) or not code.strip():
        raise ValidationError("code is required")
    code = code.strip().upper()

    def _op():
        matched = db.session.query(QRToken).filter(
            QRToken.business_id == business_id,
            QRToken.code == code,
        ).update(
            {
                QRToken.scan_count: QRToken.scan_count + 1,
                QRToken.last_scanned_at: utcnow(),
            },
            synchronize_session="fetch",
        )
        if matched != 1:
            raise QRTokenNotFound(f"QR code {code} not found")
        db.session.commit()
        return db.session.query(QRToken).filter_by(business_id=business_id, code=code).one()

    return run_with_retry(_op)


def get_token_stats(business_id: int) -> dict:
    base = db.session.query(QRToken).filter(QRToken.business_id == business_id)
    total = base.count()
    assigned = base.filter(QRToken.user_id.isnot(None)).count()
    active = base.filter(QRToken.is_active.is_(True)).count()
    printed = base.filter(QRToken.is_printed.is_(True)).count()
    total_scans = db.session.query(
        func.coalesce(func.sum(QRToken.scan_count), 0)
    ).filter(QRToken.business_id == business_id).scalar() or 0

    return {
        "total": total,
        "assigned": assigned,
        "unassigned": total - assigned,
        "active": active,
        "printed": printed,
        "unprinted": total - printed,
        "total_scans": int(total_scans),
        "avg_scans_per_code": round(total_scans / total, 2) if total else 0,
    }


def list_tokens(
    business_id: int,
    *,
    search: str | None = None,
    is_active: bool | None = None,
    is_assigned: bool | None = None,
    is_printed: bool | None = None,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    """Tokens of a business, newest first. search matches part of the code."""
    query = db.session.query(QRToken).filter(QRToken.business_id == business_id)
    if search and search.strip():
        query = query.filter(QRToken.code.contains(search.strip().upper(), autoescape=True))
    if is_active is not None:
        query = query.filter(QRToken.is_active.is_(is_active))
    if is_assigned is not None:
        query = query.filter(QRToken.user_id.isnot(None) if is_assigned else QRToken.user_id.is_(None))
    if is_printed is not None:
        query = query.filter(QRToken.is_printed.is_(is_printed))

    page = max(page, 1)
    per_page = min(max(per_page, 1), 100)
    total = query.count()
    tokens = query.order_by(QRToken.created_at.desc(), QRToken.id.desc()).offset(
        (page - 1) * per_page
    ).limit(per_page).all()

    return {
        "tokens": tokens,
        "pagination": {
            "page": page,
            "per_page": per_page,
            "count": total,
            "pages": (total + per_page - 1) // per_page,
        },
    }


def mark_printed(business_id: int, token_ids) -> list[QRToken]:
    """
    Flag tokens of a business as printed. Ids of other businesses are ignored.

    Raises:
        ValidationError: token_ids empty, too long, or not positive integers
        QRTokenNotFound: none of the ids belongs to the business
    """
    max_batch = current_app.config.get("QR_BATCH_MAX", 100)
    if not isinstance(token_ids, list) or not token_ids:
        raise ValidationError("token_ids must be a non-empty list")
    if len(token_ids) > max_batch:
        raise ValidationError(f"token_ids cannot exceed {max_batch} entries")
    ids = sorted({coerce_positive_int(token_id, "token_id") for token_id in token_ids})

    def _op():
        matched = db.session.query(QRToken).filter(
            QRToken.business_id == business_id,
            QRToken.id.in_(ids),
        ).update(
            {QRToken.is_printed: True, QRToken.printed_at: utcnow()},
            synchronize_session="fetch",
        )
        if matched == 0:
            raise QRTokenNotFound("No QR tokens found for this business")
        db.session.commit()
        current_app.logger.info("Marked %s QR tokens printed for business %s", matched, business_id)
        return db.session.query(QRToken).filter(
            QRToken.business_id == business_id,
            QRToken.id.in_(ids),
        ).order_by(QRToken.id).all()

    return run_with_retry(_op)


def delete_token(token_id: int, *, business_id: int | None = None) -> None:
    """
    Delete an unbound token.

    Raises:
        QRTokenNotFound: missing or outside business_id
        AlreadyBound: token is assigned; unbind it first
        TokenInUse: orders reference the token
    """
    def _op():
        token = get_token(token_id, business_id=business_id)
        code = token.code
        if token.is_bound:
            raise AlreadyBound(f"QR token {code} is assigned; unassign it before deleting")

        referenced = db.session.query(Order.id).filter(Order.qr_token_id == token_id).first()
        if referenced is not None:
            raise TokenInUse(
                f"QR token {code} is referenced by orders",
                details={"qr_token_id": token_id},
            )

        deleted = db.session.query(QRToken).filter(
            QRToken.id == token_id,
            QRToken.user_id.is_(None),
        ).delete(synchronize_session="fetch")
        if deleted != 1:
            raise AlreadyBound(f"QR token {code} is assigned; unassign it before deleting")
        db.session.commit()
        current_app.logger.info("Deleted QR token %s (%s)", token_id, code)

    run_with_retry(_op)
