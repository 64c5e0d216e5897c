"""Coercion helpers shared by the ``from_dict`` constructors."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from emissor_nfe.services.exceptions import ValidationError


def _mapping(d: Any, where: str) -> dict:
    if not isinstance(d, dict):
        raise ValidationError(f"{where}: esperado objeto, recebido {type(d).__name__}")
    return d


def required(d: dict, key: str, where: str) -> Any:
    value = _mapping(d, where).get(key)
    if value is None or value == "":
        raise ValidationError(f"{where}.{key}: campo obrigatorio ausente")
    return value


def text(d: dict, key: str, where: str) -> str:
    return str(required(d, key, where)).strip()


def optional_text(d: dict, key: str, where: str = "objeto") -> str | None:
    value = _mapping(d, where).get(key)
    if value is None or str(value).strip() == "":
        return None
    return str(value).strip()


def code(d: dict, key: str, where: str, width: int | None = None, default: str | None = None) -> str:
    """Read an enumerated code, accepting ints from YAML (``1`` -> ``"1"``, ``8`` -> ``"08"``)."""
    value = _mapping(d, where).get(key)
    if value is None or value == "":
        if default is None:
            raise ValidationError(f"{where}.{key}: campo obrigatorio ausente")
        return default
    value = str(value).strip()
    return value.zfill(width) if width else value


def to_decimal(value: Any, where: str) -> Decimal:
    try:
        d = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{where}: valor numerico invalido '{value}'") from None
    if not d.is_finite():
        raise ValidationError(f"{where}: valor numerico invalido '{value}'")
    return d


def decimal(d: dict, key: str, where: str) -> Decimal:
    return to_decimal(required(d, key, where), f"{where}.{key}")


def optional_decimal(d: dict, key: str, where: str) -> Decimal | None:
    """Missing, null and zero all mean "not informed" for optional tax fields."""
    value = _mapping(d, where).get(key)
    if value is None or value == "":
        return None
    result = to_decimal(value, f"{where}.{key}")
    return result if result != 0 else None


def integer(d: dict, key: str, where: str) -> int:
    value = required(d, key, where)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{where}.{key}: inteiro invalido '{value}'") from None
