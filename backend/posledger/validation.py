from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .errors import ValidationError

CENT = Decimal("0.01")

# Maximum price: $9,999,999.99
# Keeps values inside NUMERIC(12, 2) with room for line totals
MAX_MONEY = Decimal("9999999.99")


def quantize_money(value: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_money(value, field: str, *, allow_zero: bool = True) -> Decimal:
    """
    Coerce a client-supplied amount to a cent-rounded Decimal.

    Floats are routed through str() so 0.1 stays 0.10 rather than its binary
    expansion. Negative amounts and amounts above MAX_MONEY are rejected.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required", {field: value})
    try:
        amount = Decimal(str(value).strip()) if not isinstance(value, Decimal) else value
    except InvalidOperation:
        raise ValidationError(f"{field} must be a number", {field: value})
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number", {field: str(value)})

    amount = quantize_money(amount)
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative", {field: str(amount)})
    if not allow_zero and amount == 0:
        raise ValidationError(f"{field} must be greater than zero", {field: str(amount)})
    if amount > MAX_MONEY:
        raise ValidationError(f"{field} exceeds maximum of {MAX_MONEY}", {field: str(amount)})
    return amount


def parse_percentage(value, field: str) -> Decimal:
    amount = parse_money(value, field)
    if amount > 100:
        raise ValidationError(f"{field} cannot exceed 100", {field: str(amount)})
    return amount


def require_positive_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", {field: value})
    if value <= 0:
        raise ValidationError(f"{field} must be greater than zero", {field: value})
    return value


def require_non_negative_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", {field: value})
    if value < 0:
        raise ValidationError(f"{field} cannot be negative", {field: value})
    return value


def require_text(value, field: str, *, max_length: int | None = None) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required")
    text = str(value).strip()
    if max_length is not None and len(text) > max_length:
        raise ValidationError(f"{field} cannot exceed {max_length} characters", {field: text})
    return text
