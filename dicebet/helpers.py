from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal, InvalidOperation, localcontext
from typing import Any, Optional, Union

# Enough digits for any 256-bit base-unit amount.
DECIMAL_PRECISION = 80

AmountLike = Union[str, int, Decimal]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_base_units(amount: AmountLike) -> int:
    """
    Parse a smallest-unit amount given as an integer or a string of digits.

    Raises ValueError for anything that is not a non-negative whole number.
    """
    if isinstance(amount, bool):
        raise ValueError("boolean is not an amount")
    if isinstance(amount, int):
        if amount < 0:
            raise ValueError("negative amount")
        return amount
    text = str(amount).strip()
    if not (text.isascii() and text.isdigit()):
        raise ValueError(f"not a base-unit integer: {amount!r}")
    return int(text)


def to_decimal(base_units: AmountLike, decimals: int) -> Decimal:
    """Exact base-unit to decimal conversion."""
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        return Decimal(parse_base_units(base_units)).scaleb(-decimals)


def to_base_units(amount: AmountLike, decimals: int) -> int:
    """
    Convert a decimal amount to base units, truncating any precision beyond
    the asset's decimals.
    """
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        try:
            value = Decimal(str(amount).strip()) if not isinstance(amount, Decimal) else amount
        except InvalidOperation as exc:
            raise ValueError(f"not a decimal amount: {amount!r}") from exc
        if not value.is_finite() or value < 0:
            raise ValueError(f"not a non-negative amount: {amount!r}")
        truncated = value.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)
        return int(truncated.scaleb(decimals))


def convert_amount(source_base_units: int, source_decimals: int, unit_price: Decimal, target_decimals: int) -> int:
    """
    Price a source amount in the target asset.

    source base units -> exact decimal -> times unit price -> truncated to the
    target's decimals -> target base units. Never rounds up.
    """
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        target = to_decimal(source_base_units, source_decimals) * Decimal(unit_price)
        return to_base_units(target, target_decimals)


def unit_price_of(source_base_units: int, source_decimals: int, target_base_units: int, target_decimals: int) -> Decimal:
    source = to_decimal(source_base_units, source_decimals)
    if source == 0:
        return Decimal(0)
    with localcontext() as ctx:
        ctx.prec = 18
        return (to_decimal(target_base_units, target_decimals) / source).normalize()


def format_token_amount(base_units: AmountLike, decimals: int) -> str:
    """
    Render base units as a plain decimal string at full precision
    ("1500000", 6 -> "1.5").
    """
    text = format(to_decimal(base_units, decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def parse_token_amount(amount: AmountLike, decimals: int) -> str:
    """Inverse of format_token_amount; returns an integer string."""
    return str(to_base_units(amount, decimals))


def display_token_amount(base_units: AmountLike, decimals: int) -> str:
    """Short UI rendering: 2 places for 6-decimal assets, 4 otherwise."""
    places = 2 if decimals == 6 else 4
    try:
        value = to_decimal(base_units, decimals)
    except ValueError:
        return "0.00"
    return str(value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN))


def same_account(left: str | None, right: str | None) -> bool:
    if not left or not right:
        return False
    return left.lower() == right.lower()


def receipt_status(receipt: Any) -> Optional[int]:
    """The receipt's status as an int, or None when the receipt is malformed."""
    try:
        return int(receipt["status"])
    except (KeyError, TypeError, ValueError):
        return None
