# Overview: Service-layer operations for payments; gateway charge sessions, reconciliation, and refunds.

"""
Payment Session Manager & Reconciliation Engine

INITIATION (initiate_payment):
    1. Lock the order; it must be payable (not cancelled, payment_status
       pending, or failed for a retry) with no live purchase transaction
    2. Claim the attempt: persist a pending purchase Transaction and commit,
       so a concurrent initiate sees it and is rejected
    3. Submit the charge to the gateway (outside any DB transaction)
    4. Attach tracking_id + redirect_url to the claimed transaction and
       commit BEFORE returning the redirect to the caller

    A submission that definitely created nothing (including any failure
    before the charge request is sent) marks the claim failed and leaves
    the order's payment status alone.
    A submission with an unknown outcome (ChargeSubmissionUncertain) keeps
    the claim pending: it blocks further attempts until an operator
    reconciles it, so the customer is never charged twice.

RECONCILIATION (reconcile_payment):
    Callback and IPN both land here. The gateway is queried for the
    authoritative status; caller-supplied status fields are never trusted.

    gateway            local
    COMPLETED       -> paid
    FAILED/INVALID  -> failed
    anything else   -> pending

    Transaction status is monotonic: pending -> paid | failed. A report
    equal to the current status is a duplicate and changes nothing. A
    report that would move a settled transaction anywhere else raises
    StaleNotification and keeps the existing state.

REFUNDS (process_refund):
    Negative refund transaction + refunded_cents accumulated on the
    original; the original becomes refunded once fully offset. Refunds
    never restore stock.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal, InvalidOperation
from urllib.parse import urlencode

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db, get_gateway
from ..models import GatewayRegistration, Order, Transaction, User
from ..validation import (
    CommerceError,
    ConflictError,
    NotFoundError,
    ValidationError,
    coerce_amount_cents,
    coerce_choice,
    optional_text,
)
from sokonet.time_utils import minutes_ago, parse_iso_datetime, utcnow
from .concurrency import lock_for_update, run_with_retry
from .gateway_client import ChargeSubmissionUncertain
from .order_service import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_CONFIRMED,
    ORDER_STATUS_PENDING,
    OrderNotFound,
)


# =============================================================================
# PAYMENT STATUS (CONSTANTS)
# =============================================================================

PAYMENT_STATUS_PENDING = "pending"
PAYMENT_STATUS_PAID = "paid"
PAYMENT_STATUS_FAILED = "failed"
PAYMENT_STATUS_REFUNDED = "refunded"

PAYMENT_STATUSES = [
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_REFUNDED,
]

TRANSACTION_TYPE_PURCHASE = "purchase"
TRANSACTION_TYPE_REFUND = "refund"
TRANSACTION_TYPE_TOPUP = "topup"

TRANSACTION_TYPES = [
    TRANSACTION_TYPE_PURCHASE,
    TRANSACTION_TYPE_REFUND,
    TRANSACTION_TYPE_TOPUP,
]

GATEWAY_PAYMENT_METHOD = "pesapal"

SOURCE_CALLBACK = "callback"
SOURCE_IPN = "ipn"
SOURCE_SWEEP = "sweep"
SOURCE_VERIFY = "verify"
NOTIFICATION_SOURCES = [SOURCE_CALLBACK, SOURCE_IPN, SOURCE_SWEEP, SOURCE_VERIFY]

# Gateway status vocabulary
GATEWAY_STATUS_MAP = {
    "COMPLETED": PAYMENT_STATUS_PAID,
    "FAILED": PAYMENT_STATUS_FAILED,
    "INVALID": PAYMENT_STATUS_FAILED,
    "PENDING": PAYMENT_STATUS_PENDING,
}


class TransactionNotFound(NotFoundError):
    code = "TRANSACTION_NOT_FOUND"


class PaymentAlreadyInitiated(ConflictError):
    code = "PAYMENT_ALREADY_INITIATED"


class PaymentNotAllowed(ConflictError):
    code = "PAYMENT_NOT_ALLOWED"


class StaleNotification(ConflictError):
    code = "STALE_NOTIFICATION"


class AmountMismatch(ConflictError):
    """Gateway reports a completed amount different from the one charged."""
    code = "AMOUNT_MISMATCH"


class RefundExceedsBalance(ConflictError):
    code = "REFUND_EXCEEDS_BALANCE"


@dataclass(frozen=True)
class PaymentSession:
    order_id: int
    transaction_id: int
    tracking_id: str
    redirect_url: str
    amount_cents: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ReconcileResult:
    tracking_id: str
    order_id: int | None
    transaction_status: str
    order_status: str | None
    payment_status: str | None
    changed: bool
    gateway_status: str

    def to_dict(self) -> dict:
        return asdict(self)


def map_gateway_status(description: str | None) -> str:
    """Map the gateway's status vocabulary onto local transaction statuses."""
    key = (description or "").strip().upper()
    mapped = GATEWAY_STATUS_MAP.get(key)
    if mapped is None:
        current_app.logger.warning(
            "Unmapped gateway payment status %r treated as pending", description
        )
        return PAYMENT_STATUS_PENDING
    return mapped


def cents_to_amount(cents: int) -> Decimal:
    return Decimal(cents) / 100


def amount_to_cents(amount) -> int | None:
    """Gateway decimal amount -> cents. None when absent or unreadable."""
    if amount is None or amount == "":
        return None
    try:
        return int((Decimal(str(amount)) * 100).to_integral_value())
    except (InvalidOperation, ValueError):
        return None


# =============================================================================
# IPN REGISTRATION
# =============================================================================

def register_ipn(*, force: bool = False) -> GatewayRegistration:
    """
    Register the configured IPN URL with the gateway, once per deployment.

    The returned ipn_id is persisted; later calls reuse it unless force=True.
    """
    url = current_app.config["PESAPAL_IPN_URL"]
    notification_type = current_app.config["PESAPAL_IPN_NOTIFICATION_TYPE"]

    registration = db.session.query(GatewayRegistration).filter_by(ipn_url=url).first()
    if registration is not None and not force:
        return registration

    ipn_id = get_gateway().register_ipn(url, notification_type)

    def _op():
        row = db.session.query(GatewayRegistration).filter_by(ipn_url=url).first()
        if row is None:
            row = GatewayRegistration(ipn_url=url, notification_type=notification_type)
            db.session.add(row)
        row.ipn_id = ipn_id
        row.notification_type = notification_type
        row.registered_at = utcnow()
        try:
            db.session.commit()
        except IntegrityError:
            # Registered concurrently by another worker; keep theirs
            db.session.rollback()
            row = db.session.query(GatewayRegistration).filter_by(ipn_url=url).one()
        return row

    registration = run_with_retry(_op)
    current_app.logger.info("IPN registration for %s: ipn_id=%s", url, registration.ipn_id)
    return registration


def _get_ipn_id() -> str:
    return register_ipn().ipn_id


# =============================================================================
# INITIATION
# =============================================================================

def _load_order_locked(order_id: int, user_id: int | None = None) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None or (user_id is not None and order.user_id != user_id):
        raise OrderNotFound(f"Order {order_id} not found")
    return order


def _claim_payment(order_id: int, user_id: int | None) -> Transaction:
    order = _load_order_locked(order_id, user_id)

    if order.status == ORDER_STATUS_CANCELLED:
        raise PaymentNotAllowed("Cannot pay for a cancelled order", details={"order_id": order.id})
    if order.total_cents <= 0:
        raise PaymentNotAllowed("Order has nothing to pay", details={"order_id": order.id})
    if order.payment_status not in (PAYMENT_STATUS_PENDING, PAYMENT_STATUS_FAILED):
        raise PaymentAlreadyInitiated(
            f"Order payment is already {order.payment_status}",
            details={"order_id": order.id, "payment_status": order.payment_status},
        )

    live = db.session.query(Transaction).filter(
        Transaction.order_id == order.id,
        Transaction.type == TRANSACTION_TYPE_PURCHASE,
        Transaction.status != PAYMENT_STATUS_FAILED,
    ).first()
    if live is not None:
        raise PaymentAlreadyInitiated(
            "A payment session already exists for this order",
            details={"order_id": order.id, "transaction_id": live.id, "tracking_id": live.tracking_id},
        )

    order.payment_attempts = (order.payment_attempts or 0) + 1
    order.payment_status = PAYMENT_STATUS_PENDING

    # Gateway merchant references must be unique per charge request
    reference = str(order.id) if order.payment_attempts == 1 else f"{order.id}-{order.payment_attempts}"

    txn = Transaction(
        order_id=order.id,
        business_id=order.business_id,
        user_id=order.user_id,
        amount_cents=order.total_cents,
        type=TRANSACTION_TYPE_PURCHASE,
        payment_method=GATEWAY_PAYMENT_METHOD,
        status=PAYMENT_STATUS_PENDING,
        merchant_reference=reference,
        created_by=user_id,
    )
    db.session.add(txn)
    db.session.commit()
    return txn


def _build_charge_payload(txn: Transaction, ipn_id: str) -> dict:
    cfg = current_app.config
    order = db.session.get(Order, txn.order_id)
    user = db.session.get(User, txn.user_id)
    return {
        "id": txn.merchant_reference,
        "currency": cfg["PAYMENT_CURRENCY"],
        "amount": float(cents_to_amount(txn.amount_cents)),
        "description": f"Order {order.order_number or order.id}",
        "callback_url": cfg["PESAPAL_CALLBACK_URL"],
        "notification_id": ipn_id,
        "billing_address": {
            "email_address": user.email or "",
            "phone_number": user.phone or "",
            "country_code": cfg["PAYMENT_COUNTRY_CODE"],
            "first_name": user.first_name,
            "last_name": user.last_name,
        },
    }


def _abandon_claim(transaction_id: int, reason: str) -> None:
    """
    Mark a claim failed after a submission that provably created no charge.

    The order keeps its payment status: no payment existed, so there is
    nothing to report as failed and the order stays open for a retry.
    """
    def _op():
        txn = lock_for_update(db.session.query(Transaction).filter_by(id=transaction_id)).one()
        txn.status = PAYMENT_STATUS_FAILED
        txn.gateway_status = reason[:32]
        db.session.commit()

    run_with_retry(_op)


def initiate_payment(order_id: int, *, user_id: int | None = None) -> PaymentSession:
    """
    Open a gateway charge session for an order.

    Args:
        order_id: Order to pay
        user_id: When given, the order must belong to this user

    Returns:
        PaymentSession with the redirect the customer should follow

    Raises:
        OrderNotFound: order missing or not owned by user_id
        PaymentNotAllowed: order cancelled or zero total
        PaymentAlreadyInitiated: payment already paid/refunded or a live
            session exists
        GatewayAuthFailed, GatewayUnavailable, GatewayError: gateway failure,
            no charge created
        ChargeSubmissionUncertain: charge may exist; manual reconciliation
    """
    txn = run_with_retry(lambda: _claim_payment(order_id, user_id))
    transaction_id = txn.id

    try:
        payload = _build_charge_payload(txn, _get_ipn_id())
    except Exception as exc:
        # Nothing has been sent to the charge endpoint yet
        db.session.rollback()
        if isinstance(exc, CommerceError):
            current_app.logger.warning(
                "[Order: %s] Payment setup failed for transaction %s: %s",
                order_id, transaction_id, exc.message,
            )
        else:
            current_app.logger.exception(
                "[Order: %s] Unexpected error preparing charge for transaction %s",
                order_id, transaction_id,
            )
        _abandon_claim(transaction_id, exc.code if isinstance(exc, CommerceError) else exc.__class__.__name__)
        raise

    try:
        session = get_gateway().submit_order(payload)
    except ChargeSubmissionUncertain as exc:
        current_app.logger.error(
            "[Order: %s] Charge submission uncertain for transaction %s; left pending for manual reconciliation: %s",
            order_id, transaction_id, exc.message,
        )
        exc.details.setdefault("transaction_id", transaction_id)
        raise
    except CommerceError as exc:
        current_app.logger.warning(
            "[Order: %s] Payment initiation failed for transaction %s: %s",
            order_id, transaction_id, exc.message,
        )
        _abandon_claim(transaction_id, exc.code)
        raise
    except Exception:
        current_app.logger.exception(
            "[Order: %s] Unexpected error submitting charge for transaction %s; left pending for manual reconciliation",
            order_id, transaction_id,
        )
        raise

    def _attach():
        row = lock_for_update(db.session.query(Transaction).filter_by(id=transaction_id)).one()
        row.tracking_id = session.tracking_id
        row.merchant_reference = session.merchant_reference
        row.redirect_url = session.redirect_url
        db.session.commit()
        return row

    try:
        row = run_with_retry(_attach)
    except Exception:
        current_app.logger.exception(
            "[Order: %s] Charge %s created at gateway but not recorded on transaction %s",
            order_id, session.tracking_id, transaction_id,
        )
        raise

    current_app.logger.info(
        "[Order: %s] Payment session opened: transaction=%s tracking_id=%s",
        order_id, row.id, row.tracking_id,
    )
    return PaymentSession(
        order_id=row.order_id,
        transaction_id=row.id,
        tracking_id=row.tracking_id,
        redirect_url=row.redirect_url,
        amount_cents=row.amount_cents,
    )


# =============================================================================
# RECONCILIATION
# =============================================================================

def _find_transaction_locked(tracking_id: str, merchant_reference: str | None) -> Transaction | None:
    txn = lock_for_update(
        db.session.query(Transaction).filter_by(tracking_id=tracking_id)
    ).first()
    if txn is not None or not merchant_reference:
        return txn

    # Charge recorded at the gateway before its tracking id reached us
    txn = lock_for_update(
        db.session.query(Transaction).filter(
            Transaction.merchant_reference == merchant_reference,
            Transaction.type == TRANSACTION_TYPE_PURCHASE,
            Transaction.tracking_id.is_(None),
        )
    ).first()
    if txn is not None:
        txn.tracking_id = tracking_id
        current_app.logger.warning(
            "[Tracking: %s] Attached to untracked transaction %s by merchant reference %s",
            tracking_id, txn.id, merchant_reference,
        )
    return txn


def _apply_paid(txn: Transaction, order: Order | None, now) -> None:
    txn.paid_at = now
    if order is None:
        return

    if order.payment_status == PAYMENT_STATUS_PAID:
        current_app.logger.warning(
            "[Tracking: %s] Order %s already paid by another transaction; refund required",
            txn.tracking_id, order.id,
        )
    else:
        order.payment_status = PAYMENT_STATUS_PAID
        order.paid_at = now

    if order.status == ORDER_STATUS_PENDING:
        order.status = ORDER_STATUS_CONFIRMED
        order.confirmed_at = now
    else:
        current_app.logger.warning(
            "[Tracking: %s] Order %s is %s; payment recorded, order status untouched",
            txn.tracking_id, order.id, order.status,
        )


def _apply_failed(txn: Transaction, order: Order | None) -> None:
    if order is None:
        return
    if order.payment_status == PAYMENT_STATUS_PENDING:
        order.payment_status = PAYMENT_STATUS_FAILED
    else:
        current_app.logger.warning(
            "[Tracking: %s] Order %s payment status is %s; failure not applied to order",
            txn.tracking_id, order.id, order.payment_status,
        )


def reconcile_payment(tracking_id: str, *, source: str = SOURCE_IPN) -> ReconcileResult:
    """
    Bring a local transaction (and its order) in line with the gateway.

    Idempotent: repeated calls with the same gateway answer leave the state
    exactly as the first call did.

    Raises:
        ValidationError: blank tracking id or unknown source
        UnknownTracking: gateway has no record of tracking_id
        TransactionNotFound: no local transaction for tracking_id
        StaleNotification: report would move a settled transaction
        AmountMismatch: completed amount differs from the amount charged
    """
    if not isinstance(tracking_id, str) or not tracking_id.strip():
        raise ValidationError("tracking_id is required")
    tracking_id = tracking_id.strip()
    source = coerce_choice(source, "source", NOTIFICATION_SOURCES)

    reported = get_gateway().get_transaction_status(tracking_id)
    mapped = map_gateway_status(reported.status_description)

    def _op():
        txn = _find_transaction_locked(tracking_id, reported.merchant_reference)
        if txn is None:
            current_app.logger.error(
                "[Tracking: %s] No local transaction for gateway tracking id (%s)",
                tracking_id, source,
            )
            raise TransactionNotFound(
                f"No transaction for tracking id {tracking_id}",
                details={"tracking_id": tracking_id},
            )

        order = None
        if txn.order_id is not None:
            order = lock_for_update(db.session.query(Order).filter_by(id=txn.order_id)).first()

        def result(changed: bool) -> ReconcileResult:
            return ReconcileResult(
                tracking_id=tracking_id,
                order_id=txn.order_id,
                transaction_status=txn.status,
                order_status=order.status if order is not None else None,
                payment_status=order.payment_status if order is not None else None,
                changed=changed,
                gateway_status=reported.status_description,
            )

        current = txn.status
        # A completed charge that was later refunded is still "completed" at the gateway
        if current == mapped or (current == PAYMENT_STATUS_REFUNDED and mapped == PAYMENT_STATUS_PAID):
            db.session.commit()
            current_app.logger.info(
                "[Tracking: %s] Duplicate %s notification (%s); no change", tracking_id, source, current
            )
            return result(False)

        if current != PAYMENT_STATUS_PENDING:
            current_app.logger.warning(
                "[Tracking: %s] Stale %s notification for order %s: local=%s gateway=%s",
                tracking_id, source, txn.order_id, current, reported.status_description,
            )
            raise StaleNotification(
                f"Transaction is already {current}; gateway reports {reported.status_description}",
                details={
                    "tracking_id": tracking_id,
                    "order_id": txn.order_id,
                    "current": current,
                    "reported": mapped,
                },
            )

        if mapped == PAYMENT_STATUS_PAID:
            reported_cents = amount_to_cents(reported.amount)
            if reported_cents is not None and reported_cents != txn.amount_cents:
                current_app.logger.error(
                    "[Tracking: %s] Amount mismatch for order %s: charged=%s reported=%s",
                    tracking_id, txn.order_id, txn.amount_cents, reported_cents,
                )
                raise AmountMismatch(
                    "Gateway reported amount does not match the charge",
                    details={
                        "tracking_id": tracking_id,
                        "order_id": txn.order_id,
                        "expected_cents": txn.amount_cents,
                        "reported_cents": reported_cents,
                    },
                )

        now = utcnow()
        txn.status = mapped
        txn.gateway_status = reported.status_description
        txn.gateway_payment_method = reported.payment_method
        txn.confirmation_code = reported.confirmation_code
        txn.last_notification_source = source
        txn.last_reconciled_at = now

        if mapped == PAYMENT_STATUS_PAID:
            _apply_paid(txn, order, now)
        else:
            _apply_failed(txn, order)

        db.session.commit()
        current_app.logger.info(
            "[Tracking: %s] Transaction %s %s -> %s via %s",
            tracking_id, txn.id, current, mapped, source,
        )
        return result(True)

    return run_with_retry(_op)


def _frontend_url(path: str, **params) -> str:
    base = current_app.config["FRONTEND_URL"].rstrip("/")
    query = urlencode({k: v for k, v in params.items() if v is not None})
    return f"{base}{path}?{query}" if query else f"{base}{path}"


def handle_payment_callback(tracking_id: str, merchant_reference: str | None = None) -> dict:
    """
    User-facing redirect callback.

    Returns {"result": ReconcileResult, "redirect_url": str}; the redirect
    points to the front-end success, failed or pending page.
    """
    current_app.logger.info(
        "[Tracking: %s] Payment callback received (merchant reference %s)",
        tracking_id, merchant_reference or "-",
    )
    result = reconcile_payment(tracking_id, source=SOURCE_CALLBACK)
    page = {
        PAYMENT_STATUS_PAID: "/payment/success",
        PAYMENT_STATUS_REFUNDED: "/payment/success",
        PAYMENT_STATUS_FAILED: "/payment/failed",
    }.get(result.transaction_status, "/payment/pending")
    return {
        "result": result,
        "redirect_url": _frontend_url(page, orderId=result.order_id, trackingId=tracking_id),
    }


def handle_payment_ipn(
    tracking_id: str,
    merchant_reference: str | None = None,
    notification_type: str | None = None,
) -> dict:
    """
    Server-to-server notification.

    Returns the acknowledgement body the gateway expects. A stale
    notification is acknowledged (the gateway cannot act on it) with the
    existing state kept; every other failure propagates so the gateway
    retries.
    """
    try:
        reconcile_payment(tracking_id, source=SOURCE_IPN)
    except StaleNotification as exc:
        current_app.logger.info("[Tracking: %s] Stale IPN acknowledged: %s", tracking_id, exc.message)

    return {
        "orderNotificationType": notification_type or "IPNCHANGE",
        "orderTrackingId": tracking_id,
        "orderMerchantReference": merchant_reference or "",
        "status": 200,
    }


def ipn_error_ack(tracking_id, merchant_reference=None, notification_type=None) -> dict:
    return {
        "orderNotificationType": notification_type or "IPNCHANGE",
        "orderTrackingId": tracking_id or "",
        "orderMerchantReference": merchant_reference or "",
        "status": 500,
    }


def verify_payment(
    *,
    tracking_id: str | None = None,
    order_id: int | None = None,
    user_id: int | None = None,
    business_id: int | None = None,
) -> dict:
    """
    On-demand payment check for a customer or business.

    Looks up the caller's purchase by tracking id, or the latest tracked
    purchase of an order, and reconciles it against the gateway. Records
    outside the caller's user/business scope are reported as missing.

    Returns {"order": Order | None, "transaction": Transaction | None,
    "verification": ReconcileResult | None}. verification is None when the
    order has no tracked purchase yet; it carries changed=False when the
    gateway answer is stale against a settled transaction.

    Raises:
        ValidationError: neither tracking_id nor order_id given
        OrderNotFound: order missing or outside the caller's scope
        TransactionNotFound: no purchase for tracking_id in scope
        UnknownTracking, GatewayUnavailable: gateway lookup failed
    """
    if isinstance(tracking_id, str):
        tracking_id = tracking_id.strip() or None
    if tracking_id is None and order_id is None:
        raise ValidationError("tracking_id or order_id is required")

    order = None
    if order_id is not None:
        query = db.session.query(Order).filter_by(id=order_id)
        if business_id is not None:
            query = query.filter_by(business_id=business_id)
        if user_id is not None:
            query = query.filter_by(user_id=user_id)
        order = query.first()
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")

    query = db.session.query(Transaction).filter(Transaction.type == TRANSACTION_TYPE_PURCHASE)
    if business_id is not None:
        query = query.filter(Transaction.business_id == business_id)
    if user_id is not None:
        query = query.filter(Transaction.user_id == user_id)
    if order is not None:
        query = query.filter(Transaction.order_id == order.id)

    if tracking_id is not None:
        txn = query.filter(Transaction.tracking_id == tracking_id).first()
        if txn is None:
            raise TransactionNotFound(
                f"No transaction for tracking id {tracking_id}",
                details={"tracking_id": tracking_id},
            )
    else:
        txn = query.filter(Transaction.tracking_id.isnot(None)).order_by(Transaction.id.desc()).first()
        if txn is None:
            latest = query.order_by(Transaction.id.desc()).first()
            return {"order": order, "transaction": latest, "verification": None}

    tracking_id = txn.tracking_id
    transaction_id = txn.id
    try:
        verification = reconcile_payment(tracking_id, source=SOURCE_VERIFY)
    except StaleNotification as exc:
        current_app.logger.info("[Tracking: %s] Verification kept settled state: %s", tracking_id, exc.message)
        verification = None

    txn = db.session.get(Transaction, transaction_id)
    order = db.session.get(Order, txn.order_id) if txn.order_id is not None else None

    if verification is None:
        verification = ReconcileResult(
            tracking_id=tracking_id,
            order_id=txn.order_id,
            transaction_status=txn.status,
            order_status=order.status if order is not None else None,
            payment_status=order.payment_status if order is not None else None,
            changed=False,
            gateway_status=txn.gateway_status or "",
        )
    return {"order": order, "transaction": txn, "verification": verification}


def reconcile_pending_transactions(older_than_minutes: int | None = None) -> dict:
    """
    Re-query the gateway for purchases still pending after a grace period.

    Submissions whose notifications never arrived are tracked to completion
    here. Per-transaction failures are logged and collected, not raised.
    """
    if older_than_minutes is None:
        older_than_minutes = current_app.config["PENDING_RECONCILE_AFTER_MINUTES"]
    cutoff = minutes_ago(older_than_minutes)

    pending = db.session.query(Transaction).filter(
        Transaction.type == TRANSACTION_TYPE_PURCHASE,
        Transaction.status == PAYMENT_STATUS_PENDING,
        Transaction.created_at <= cutoff,
    ).order_by(Transaction.id).all()

    summary = {"checked": 0, "changed": 0, "untracked": [], "errors": []}
    for txn in pending:
        if not txn.tracking_id:
            summary["untracked"].append(txn.id)
            continue
        tracking_id = txn.tracking_id
        summary["checked"] += 1
        try:
            result = reconcile_payment(tracking_id, source=SOURCE_SWEEP)
        except CommerceError as exc:
            current_app.logger.warning(
                "[Tracking: %s] Pending sweep failed: %s (%s)", tracking_id, exc.message, exc.code
            )
            summary["errors"].append({"tracking_id": tracking_id, **exc.to_dict()})
            continue
        if result.changed:
            summary["changed"] += 1

    if summary["untracked"]:
        current_app.logger.warning(
            "Pending transactions without tracking id need manual reconciliation: %s",
            summary["untracked"],
        )
    return summary


# =============================================================================
# REFUNDS
# =============================================================================

def process_refund(
    transaction_id: int,
    amount_cents,
    reason: str | None = None,
    *,
    actor_id: int | None = None,
    business_id: int | None = None,
) -> Transaction:
    """
    Refund part or all of a paid purchase.

    Raises:
        ValidationError: amount not a positive integer
        TransactionNotFound: missing (or outside business_id)
        PaymentNotAllowed: not a purchase, or not paid
        RefundExceedsBalance: amount > amount_cents - refunded_cents
    """
    amount_cents = coerce_amount_cents(amount_cents)
    reason = optional_text(reason, "reason")

    def _op():
        query = db.session.query(Transaction).filter_by(id=transaction_id)
        if business_id is not None:
            query = query.filter_by(business_id=business_id)
        original = lock_for_update(query).first()
        if original is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")

        if original.type != TRANSACTION_TYPE_PURCHASE:
            raise PaymentNotAllowed(
                "Only purchase transactions can be refunded",
                details={"transaction_id": original.id, "type": original.type},
            )
        if original.status not in (PAYMENT_STATUS_PAID, PAYMENT_STATUS_REFUNDED):
            raise PaymentNotAllowed(
                "Cannot refund unpaid transaction",
                details={"transaction_id": original.id, "status": original.status},
            )

        available = original.refundable_cents
        if original.status == PAYMENT_STATUS_REFUNDED or amount_cents > available:
            raise RefundExceedsBalance(
                "Refund amount exceeds refundable balance",
                details={
                    "transaction_id": original.id,
                    "requested_cents": amount_cents,
                    "available_cents": max(available, 0),
                },
            )

        now = utcnow()
        refund = Transaction(
            order_id=original.order_id,
            business_id=original.business_id,
            user_id=original.user_id,
            amount_cents=-amount_cents,
            type=TRANSACTION_TYPE_REFUND,
            payment_method=original.payment_method,
            status=PAYMENT_STATUS_PAID,
            merchant_reference=original.merchant_reference,
            original_transaction_id=original.id,
            refund_reason=reason,
            created_by=actor_id,
            paid_at=now,
        )
        db.session.add(refund)

        original.refunded_cents = (original.refunded_cents or 0) + amount_cents
        if original.refunded_cents >= original.amount_cents:
            original.status = PAYMENT_STATUS_REFUNDED
            if original.order_id is not None:
                order = lock_for_update(db.session.query(Order).filter_by(id=original.order_id)).first()
                if order is not None:
                    order.payment_status = PAYMENT_STATUS_REFUNDED

        db.session.commit()
        current_app.logger.info(
            "Refund %s of %s cents on transaction %s (order %s); refunded total %s/%s",
            refund.id, amount_cents, original.id, original.order_id,
            original.refunded_cents, original.amount_cents,
        )
        return refund

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_transaction(transaction_id: int, *, business_id: int | None = None) -> Transaction:
    query = db.session.query(Transaction).filter_by(id=transaction_id)
    if business_id is not None:
        query = query.filter_by(business_id=business_id)
    txn = query.first()
    if txn is None:
        raise TransactionNotFound(f"Transaction {transaction_id} not found")
    return txn


def _parse_bound(value, field: str):
    try:
        return parse_iso_datetime(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an ISO-8601 datetime")


def get_transaction_history(
    *,
    business_id: int | None = None,
    user_id: int | None = None,
    type: str | None = None,
    status: str | None = None,
    start: str | None = None,
    end: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    query = db.session.query(Transaction)
    if business_id is not None:
        query = query.filter(Transaction.business_id == business_id)
    if user_id is not None:
        query = query.filter(Transaction.user_id == user_id)
    if type:
        query = query.filter(Transaction.type == coerce_choice(type, "type", TRANSACTION_TYPES))
    if status:
        query = query.filter(Transaction.status == coerce_choice(status, "status", PAYMENT_STATUSES))

    start_dt = _parse_bound(start, "start")
    end_dt = _parse_bound(end, "end")
    if start_dt and end_dt and start_dt > end_dt:
        raise ValidationError("start must be before end")
    if start_dt:
        query = query.filter(Transaction.created_at >= start_dt)
    if end_dt:
        query = query.filter(Transaction.created_at <= end_dt)

    page = max(page, 1)
    per_page = min(max(per_page, 1), 100)
    total = query.count()
    rows = query.order_by(Transaction.created_at.desc(), Transaction.id.desc()).offset(
        (page - 1) * per_page
    ).limit(per_page).all()

    return {
        "transactions": rows,
        "pagination": {
            "page": page,
            "per_page": per_page,
            "count": total,
            "pages": (total + per_page - 1) // per_page,
        },
    }


def get_payment_stats(business_id: int) -> dict:
    """Revenue (settled purchases), refunds, and net for a business, in cents."""
    revenue = db.session.query(func.coalesce(func.sum(Transaction.amount_cents), 0)).filter(
        Transaction.business_id == business_id,
        Transaction.type == TRANSACTION_TYPE_PURCHASE,
        Transaction.status.in_([PAYMENT_STATUS_PAID, PAYMENT_STATUS_REFUNDED]),
    ).scalar() or 0

    refunded = db.session.query(func.coalesce(func.sum(Transaction.amount_cents), 0)).filter(
        Transaction.business_id == business_id,
        Transaction.type == TRANSACTION_TYPE_REFUND,
    ).scalar() or 0

    counts = dict(
        db.session.query(Transaction.status, func.count(Transaction.id))
        .filter(
            Transaction.business_id == business_id,
            Transaction.type == TRANSACTION_TYPE_PURCHASE,
        )
        .group_by(Transaction.status)
        .all()
    )

    revenue = int(revenue)
    refunded = -int(refunded)
    return {
        "revenue_cents": revenue,
        "refunded_cents": refunded,
        "net_revenue_cents": revenue - refunded,
        "purchases_by_status": {status: counts.get(status, 0) for status in PAYMENT_STATUSES},
    }
