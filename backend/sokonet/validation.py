# Overview: Error taxonomy and strict input coercion shared by services and routes.

from __future__ import annotations

from typing import Any, Iterable


# Maximum single amount: 9,999,999.99 (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999

# Maximum quantity of one product on one order line
MAX_LINE_QUANTITY = 10_000


class CommerceError(Exception):
    """
    Base class for every domain error the core can return to a caller.

    status_code is the HTTP-ish class of the error; code is a stable,
    transport-independent identifier.
    """
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(CommerceError, ValueError):
    """400-level input problem. Raised before any mutation."""
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(CommerceError):
    """404-level: a referenced entity does not exist."""
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(CommerceError):
    """409-level business rule conflict (e.g., insufficient stock)."""
    status_code = 409
    code = "CONFLICT"


class ExternalServiceError(CommerceError):
    """502-level: the payment gateway failed or could not be reached."""
    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion.

    Rejects bools, floats, decimals in strings and scientific notation
    ("1e3"), which JSON clients otherwise slip through as numbers.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def coerce_positive_int(value: Any, field: str, *, maximum: int | None = None) -> int:
    number = coerce_int(value, field)
    if number <= 0:
        raise ValidationError(f"{field} must be > 0")
    if maximum is not None and number > maximum:
        raise ValidationError(f"{field} cannot exceed {maximum}")
    return number


def coerce_amount_cents(value: Any, field: str = "amount_cents") -> int:
    return coerce_positive_int(value, field, maximum=MAX_AMOUNT_CENTS)


def coerce_choice(value: Any, field: str, choices: Iterable[str]) -> str:
    allowed = list(choices)
    if not isinstance(value, str) or value not in allowed:
        raise ValidationError(
            f"Invalid {field} '{value}'. Must be one of: {', '.join(allowed)}"
        )
    return value


def validate_order_items(items: Any) -> list[dict]:
    """
    Normalize requested order lines to [{"product_id": int, "quantity": int}].

    Line order is preserved; duplicate products stay as separate lines and
    are aggregated only for the stock reservation.
    """
    if not isinstance(items, list) or not items:
        raise ValidationError("Order items are required")

    cleaned = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        if "product_id" not in item or "quantity" not in item:
            raise ValidationError(f"items[{index}] requires product_id and quantity")
        cleaned.append({
            "product_id": coerce_positive_int(item["product_id"], f"items[{index}].product_id"),
            "quantity": coerce_positive_int(
                item["quantity"], f"items[{index}].quantity", maximum=MAX_LINE_QUANTITY
            ),
        })
    return cleaned


def optional_text(value: Any, field: str, *, max_length: int = 255) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    stripped = value.strip()
    if not stripped:
        return None
    if len(stripped) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}")
    return stripped
