"""Yuan <-> fen conversions. Amounts are stored and compared in integer fen."""
from decimal import Decimal, InvalidOperation


def to_cents(price) -> int:
    """'10.00' / 10 / '10.5' -> 1000 / 1000 / 1050. Raises ValueError on garbage."""
    try:
        value = Decimal(str(price).strip())
    except InvalidOperation as exc:
        raise ValueError(f"invalid amount: {price!r}") from exc
    if not value.is_finite():
        raise ValueError(f"invalid amount: {price!r}")
    return int((value * 100).to_integral_value())


def format_cents(amount_cents: int) -> str:
    """1000 -> "10.00", the two-decimal yuan string the gateway expects."""
    return f"{amount_cents // 100}.{amount_cents % 100:02d}"
