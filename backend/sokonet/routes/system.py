# backend/sokonet/routes/system.py
"""
System health endpoint.

Reports database reachability, payment gateway configuration, and the
reconciliation backlog (purchases stuck in pending).
"""

import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import Business, GatewayRegistration, Order, Transaction
from sokonet.time_utils import minutes_ago, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        business_count = db.session.query(Business).count()
        order_count = db.session.query(Order).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "businesses": business_count,
                "orders": order_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_payment_gateway_health() -> dict:
    """
    Configuration-only check; the gateway itself is not called so health
    probes never spend gateway quota.
    """
    cfg = current_app.config
    try:
        credentials = bool(cfg.get("PESAPAL_CONSUMER_KEY")) and bool(cfg.get("PESAPAL_CONSUMER_SECRET"))
        ipn_registered = db.session.query(GatewayRegistration).filter_by(
            ipn_url=cfg.get("PESAPAL_IPN_URL")
        ).first() is not None
    except Exception:
        current_app.logger.exception("Payment gateway health check failed")
        return {"status": "unhealthy", "error": "Gateway registration lookup failed"}

    details = {
        "environment": cfg.get("PESAPAL_ENVIRONMENT"),
        "credentials_configured": credentials,
        "ipn_registered": ipn_registered,
    }
    if not credentials:
        return {"status": "degraded", "warning": "Gateway credentials not configured", "details": details}
    return {"status": "healthy", "details": details}


def check_reconciliation_backlog() -> dict:
    threshold = current_app.config.get("PENDING_RECONCILE_AFTER_MINUTES", 10)
    try:
        stuck = db.session.query(Transaction).filter(
            Transaction.type == "purchase",
            Transaction.status == "pending",
            Transaction.created_at <= minutes_ago(threshold),
        ).count()
    except Exception:
        current_app.logger.exception("Reconciliation backlog check failed")
        return {"status": "unhealthy", "error": "Transaction lookup failed"}

    result = {"details": {"pending_older_than_minutes": threshold, "count": stuck}}
    if stuck:
        result["status"] = "degraded"
        result["warning"] = "Pending payments awaiting reconciliation"
    else:
        result["status"] = "healthy"
    return result


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: one or more checks unhealthy
    """
    start_time = time.time()

    checks = {
        "database": check_database_health(),
        "payment_gateway": check_payment_gateway_health(),
        "reconciliation": check_reconciliation_backlog(),
    }

    statuses = [check["status"] for check in checks.values()]
    if "unhealthy" in statuses:
        overall_status, http_status = "unhealthy", 503
    elif "degraded" in statuses:
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": checks,
    }, http_status
