from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

_EXPONENTS: dict[int, Decimal] = {}


def format_decimal(value: Decimal | int | str, places: int = 2) -> str:
    """Render *value* with exactly *places* decimal digits (half-up rounding)."""
    exp = _EXPONENTS.get(places)
    if exp is None:
        exp = _EXPONENTS[places] = Decimal(1).scaleb(-places)
    return f"{Decimal(value).quantize(exp, rounding=ROUND_HALF_UP):f}"


def format_money(value: Decimal | int | str) -> str:
    return format_decimal(value, 2)


def format_quantity(value: Decimal | int | str) -> str:
    return format_decimal(value, 4)


def format_unit_price(value: Decimal | int | str) -> str:
    return format_decimal(value, 10)


def format_brl(value: Decimal | str) -> str:
    """Format a numeric value as R$ X.XXX,XX."""
    d = Decimal(value)
    formatted = f"{d:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"R$ {formatted}"


def format_access_key(chave: str) -> str:
    """Group a 44-digit access key in blocks of four, as printed on the DANFE."""
    return " ".join(chave[i : i + 4] for i in range(0, len(chave), 4))
