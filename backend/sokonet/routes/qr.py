# Overview: Flask API routes for QR tokens; batch generation, listing, binding, printing, scans, deletion.

from flask import Blueprint, g, jsonify, request, current_app

from ..decorators import PRINCIPAL_ADMIN, PRINCIPAL_BUSINESS, PRINCIPAL_STAFF, require_principal
from ..services import qr_service
from ..validation import CommerceError, ValidationError, coerce_positive_int


qr_bp = Blueprint("qr", __name__, url_prefix="/api/qr")


def _business_scope(data=None):
    """Business the caller acts for; admins name it explicitly."""
    principal = g.principal
    if principal.kind != PRINCIPAL_ADMIN:
        return principal.scope_business_id
    raw = (data or {}).get("business_id", request.args.get("business_id"))
    if raw is None:
        raise ValidationError("business_id is required")
    return coerce_positive_int(raw, "business_id")


def _bool_arg(name):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    value = raw.strip().lower()
    if value in ("true", "1"):
        return True
    if value in ("false", "0"):
        return False
    raise ValidationError(f"{name} must be true or false")


@qr_bp.post("/generate")
@require_principal(PRINCIPAL_BUSINESS, PRINCIPAL_ADMIN)
def generate_tokens_route():
    """
    Generate a batch of unassigned QR tokens.

    Request body: {"quantity": 10}  (1..QR_BATCH_MAX)
    """
    try:
        data = request.get_json(silent=True) or {}
        business_id = _business_scope(data)
        tokens = qr_service.generate_tokens(business_id, data.get("quantity"))
        return jsonify({"tokens": [t.to_dict() for t in tokens]}), 201

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to generate QR tokens")
        return jsonify({"error": "Internal server error"}), 500


@qr_bp.get("/")
@require_principal(PRINCIPAL_BUSINESS, PRINCIPAL_STAFF, PRINCIPAL_ADMIN)
def list_tokens_route():
    """
    List the business's tokens, newest first.

    Query params: search, is_active, is_assigned, is_printed (true/false),
    page, per_page
    """
    try:
        business_id = _business_scope()
        result = qr_service.list_tokens(
            business_id,
            search=request.args.get("search"),
            is_active=_bool_arg("is_active"),
            is_assigned=_bool_arg("is_assigned"),
            is_printed=_bool_arg("is_printed"),
            page=request.args.get("page", 1, type=int),
            per_page=request.args.get("per_page", 20, type=int),
        )
        return jsonify({
            "tokens": [t.to_dict() for t in result["tokens"]],
            "pagination": result["pagination"],
        }), 200

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list QR tokens")
        return jsonify({"error": "Internal server error"}), 500


@qr_bp.post("/<int:token_id>/assign")
@require_principal(PRINCIPAL_BUSINESS, PRINCIPAL_STAFF, PRINCIPAL_ADMIN)
def assign_token_route(token_id: int):
    """
    Bind a token to a customer.

    Request body: {"user_id": 7}

    Returns:
        200: Token bound
        404: Token or user not found
        409: Token already bound, or user already holds a token here
    """
    try:
        data = request.get_json(silent=True) or {}
        if "user_id" not in data:
            raise ValidationError("user_id is required")
        user_id = coerce_positive_int(data["user_id"], "user_id")

        qr_service.get_token(token_id, business_id=g.principal.scope_business_id)
        token = qr_service.bind(token_id, user_id, assigned_by=g.principal.id)
        return jsonify({"token": token.to_dict()}), 200

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to assign QR token")
        return jsonify({"error": "Internal server error"}), 500


@qr_bp.post("/<int:token_id>/unassign")
@require_principal(PRINCIPAL_BUSINESS, PRINCIPAL_STAFF, PRINCIPAL_ADMIN)
def unassign_token_route(token_id: int):
    try:
        qr_service.get_token(token_id, business_id=g.principal.scope_business_id)
        token = qr_service.unbind(token_id)
        return jsonify({"token": token.to_dict()}), 200

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to unassign QR token")
        return jsonify({"error": "Internal server error"}), 500


@qr_bp.patch("/<int:token_id>/active")
@require_principal(PRINCIPAL_BUSINESS, PRINCIPAL_ADMIN)
def set_token_active_route(token_id: int):
    """Request body: {"is_active": false}"""
    try:
        data = request.get_json(silent=True) or {}
        token = qr_service.set_active(
            token_id,
            data.get("is_active"),
            business_id=g.principal.scope_business_id,
        )
        return jsonify({"token": token.to_dict()}), 200

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update QR token")
        return jsonify({"error": "Internal server error"}), 500


@qr_bp.post("/scan")
@require_principal(PRINCIPAL_BUSINESS, PRINCIPAL_STAFF, PRINCIPAL_ADMIN)
def scan_token_route():
    """
    Record a scan of a printed code at the caller's business.

    Request body: {"code": "AB12CD34"}
    """
    try:
        data = request.get_json(silent=True) or {}
        business_id = _business_scope(data)
        token = qr_service.record_scan(business_id, data.get("code"))
        return jsonify({"token": token.to_dict()}), 200

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record QR scan")
        return jsonify({"error": "Internal server error"}), 500


@qr_bp.get("/stats")
@require_principal(PRINCIPAL_BUSINESS, PRINCIPAL_STAFF, PRINCIPAL_ADMIN)
def token_stats_route():
    try:
        business_id = _business_scope()
        return jsonify({"stats": qr_service.get_token_stats(business_id)}), 200

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get QR token stats")
        return jsonify({"error": "Internal server error"}), 500


@qr_bp.post("/printed")
@require_principal(PRINCIPAL_BUSINESS, PRINCIPAL_ADMIN)
def mark_printed_route():
    """
    Flag tokens as printed once their labels are produced.

    Request body: {"token_ids": [1, 2, 3]}
    """
    try:
        data = request.get_json(silent=True) or {}
        business_id = _business_scope(data)
        tokens = qr_service.mark_printed(business_id, data.get("token_ids"))
        return jsonify({"tokens": [t.to_dict() for t in tokens]}), 200

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to mark QR tokens printed")
        return jsonify({"error": "Internal server error"}), 500


@qr_bp.delete("/<int:token_id>")
@require_principal(PRINCIPAL_BUSINESS, PRINCIPAL_ADMIN)
def delete_token_route(token_id: int):
    """
    Delete an unassigned token.

    Returns:
        200: Token deleted
        404: Token not found
        409: Token assigned, or referenced by orders
    """
    try:
        qr_service.delete_token(token_id, business_id=g.principal.scope_business_id)
        return jsonify({"deleted": token_id}), 200

    except CommerceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete QR token")
        return jsonify({"error": "Internal server error"}), 500
