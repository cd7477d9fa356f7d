from __future__ import annotations

import math
from typing import Any, Iterable

from .errors import ValidationError

# Maximum price: 9,999,999.99
# This prevents database overflow issues and nonsensical prices
MAX_PRICE = 9_999_999.99


def require_text(value: Any, field: str) -> str:
    """Non-empty string after stripping."""
    if value is None or not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", field)
    return value.strip()


def optional_text(value: Any, field: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", field)
    stripped = value.strip()
    return stripped or None


def require_number(value: Any, field: str, *, minimum: float = 0.0, strict: bool = False) -> float:
    """
    Real number >= minimum (or > minimum when strict).

    Booleans are rejected even though bool is an int subclass.
    Numeric strings are accepted, as forms post them that way.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number", field)
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            raise ValidationError(f"{field} must be a number", field)
    if not isinstance(value, (int, float)):
        raise ValidationError(f"{field} must be a number", field)
    value = float(value)
    if math.isnan(value) or math.isinf(value):
        raise ValidationError(f"{field} must be a finite number", field)
    if strict and value <= minimum:
        raise ValidationError(f"{field} must be greater than {minimum:g}", field)
    if not strict and value < minimum:
        raise ValidationError(f"{field} cannot be negative", field)
    if value > MAX_PRICE:
        raise ValidationError(f"{field} cannot exceed {MAX_PRICE:,.2f}", field)
    return value


def require_int(value: Any, field: str, *, minimum: int = 0, strict: bool = False) -> int:
    """Integer >= minimum (or > minimum when strict); rejects floats and scientific notation."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be an integer", field)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped or "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{field} must be a plain integer", field)
        try:
            value = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer", field)
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"{field} must be an integer, not a decimal", field)
        value = int(value)
    if not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", field)
    if strict and value <= minimum:
        raise ValidationError(f"{field} must be greater than {minimum}", field)
    if not strict and value < minimum:
        raise ValidationError(f"{field} cannot be less than {minimum}", field)
    return value


def require_choice(value: Any, field: str, choices: Iterable[str]) -> str:
    choices = tuple(choices)
    if value not in choices:
        raise ValidationError(f"{field} must be one of: {', '.join(choices)}", field)
    return value


def validate_variants(variants: Any, field: str = "variants") -> dict | None:
    """
    Variant groups: {"sizes": [{"name": str, "price": number}], ...}.

    Returns None for absent or empty groupings.
    """
    if variants is None:
        return None
    if not isinstance(variants, dict):
        raise ValidationError(f"{field} must be an object of variant groups", field)
    cleaned: dict[str, list[dict]] = {}
    for group, options in variants.items():
        if not isinstance(options, list):
            raise ValidationError(f"{field}.{group} must be a list", field)
        group_options = []
        for index, option in enumerate(options):
            where = f"{field}.{group}[{index}]"
            if not isinstance(option, dict):
                raise ValidationError(f"{where} must be an object", field)
            name = require_text(option.get("name"), f"{where}.name")
            # Deltas may be negative (e.g. a "small" size)
            price = option.get("price", 0)
            if isinstance(price, bool) or not isinstance(price, (int, float)):
                raise ValidationError(f"{where}.price must be a number", field)
            group_options.append({**option, "name": name, "price": price})
        cleaned[group] = group_options
    return cleaned or None
