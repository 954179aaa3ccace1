# Overview: Request decorators for API routes; caller identity from the upstream auth layer.

from __future__ import annotations

from dataclasses import dataclass
from functools import wraps

from flask import g, jsonify, request


PRINCIPAL_USER = "user"
PRINCIPAL_BUSINESS = "business"
PRINCIPAL_STAFF = "staff"
PRINCIPAL_ADMIN = "admin"

PRINCIPAL_KINDS = (PRINCIPAL_USER, PRINCIPAL_BUSINESS, PRINCIPAL_STAFF, PRINCIPAL_ADMIN)


@dataclass(frozen=True)
class Principal:
    """
    Authenticated caller, one of several account kinds.

    Credential checks and session issuance happen upstream; routes only ask
    the principal what it may touch.

    - user: end customer (id = user id)
    - business: business account (id = business id)
    - staff: scanner/dispatcher acting for business_id
    - admin: platform operator, unrestricted
    """
    kind: str
    id: int
    business_id: int | None = None

    @property
    def scope_business_id(self) -> int | None:
        """Business every query must be scoped to; None means unrestricted or not a business actor."""
        if self.kind == PRINCIPAL_BUSINESS:
            return self.id
        if self.kind == PRINCIPAL_STAFF:
            return self.business_id
        return None

    def can_manage_business(self, business_id: int) -> bool:
        if self.kind == PRINCIPAL_ADMIN:
            return True
        return self.scope_business_id is not None and self.scope_business_id == business_id

    def owns(self, user_id: int) -> bool:
        return self.kind == PRINCIPAL_USER and self.id == user_id


def _header_int(name: str) -> int | None:
    raw = request.headers.get(name, "").strip()
    if not raw.isdigit():
        return None
    return int(raw)


def load_principal() -> Principal | None:
    """
    Build the caller from the trusted headers set by the auth gateway:
    X-Principal-Kind, X-Principal-Id, and X-Principal-Business-Id (staff).
    """
    kind = request.headers.get("X-Principal-Kind", "").strip().lower()
    principal_id = _header_int("X-Principal-Id")
    if kind not in PRINCIPAL_KINDS or principal_id is None:
        return None

    business_id = _header_int("X-Principal-Business-Id")
    if kind == PRINCIPAL_STAFF and business_id is None:
        return None
    return Principal(kind=kind, id=principal_id, business_id=business_id)


def require_principal(*kinds: str):
    """
    Require an authenticated caller, optionally of specific kinds.

    Sets g.principal. Returns 401 without a principal and 403 when the
    principal's kind is not allowed.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            principal = load_principal()
            if principal is None:
                return jsonify({"error": "Authentication required"}), 401
            if kinds and principal.kind not in kinds:
                return jsonify({
                    "error": "Permission denied",
                    "required_kind": list(kinds),
                }), 403
            g.principal = principal
            return f(*args, **kwargs)

        return decorated_function
    return decorator
