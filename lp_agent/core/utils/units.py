from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_DOWN


def _to_decimal(value: str | int | float | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return Decimal(value)
    return Decimal(str(value).strip())


def to_erc20_raw(amount_tokens: str | int | float | Decimal, decimals: int) -> int:
    try:
        amt = _to_decimal(amount_tokens)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid token amount: {amount_tokens}") from exc
    if not amt.is_finite():
        raise ValueError(f"Invalid token amount: {amount_tokens}")
    if amt < 0:
        raise ValueError("Amount must be non-negative")
    scale = Decimal(10) ** int(decimals)
    return int((amt * scale).to_integral_value(rounding=ROUND_DOWN))


def from_erc20_raw(amount_raw: int, decimals: int) -> Decimal:
    return Decimal(int(amount_raw)).scaleb(-int(decimals))


def format_units(amount_raw: int, decimals: int) -> str:
    """Exact decimal rendering of a base-unit integer, for display only."""
    value = from_erc20_raw(amount_raw, decimals)
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
