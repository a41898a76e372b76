"""Type coercion for canonical field mapping."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

_TRUE = {"true", "1", "yes", "y", "t"}
_FALSE = {"false", "0", "no", "n", "f"}


def to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("bool is not an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            return round(value)
        return int(value)
    if isinstance(value, str):
        return round(float(value.strip().replace(",", "")))
    raise TypeError(f"Cannot coerce {type(value).__name__} to int")


def to_float(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("bool is not a number")
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        text = value.strip().replace(",", "")
        if text.endswith("%"):
            return float(text[:-1])
        return float(text)
    raise TypeError(f"Cannot coerce {type(value).__name__} to float")


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
    raise ValueError(f"Cannot coerce {value!r} to bool")


def to_datetime(value: Any) -> datetime:
    """Parse ISO strings and epoch seconds; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        raise TypeError("bool is not a timestamp")
    elif isinstance(value, int | float):
        parsed = datetime.fromtimestamp(value, tz=UTC)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise TypeError(f"Cannot coerce {type(value).__name__} to datetime")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def to_str(value: Any) -> str:
    if isinstance(value, dict | list | tuple | set):
        raise TypeError(f"Cannot coerce {type(value).__name__} to str")
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


COERCERS = {
    "str": to_str,
    "int": to_int,
    "float": to_float,
    "bool": to_bool,
    "datetime": to_datetime,
}


def coerce(value: Any, field_type: str) -> Any:
    """Coerce ``value`` to a canonical type.

    Raises:
        ValueError: If the value cannot be parsed.
        TypeError: If the value has an incompatible type.
    """
    return COERCERS[field_type](value)
