from typing import Any, Dict, Mapping, Optional

# SQLite INTEGER (and BIGINT elsewhere) is a signed 64-bit value
INT_MIN = -(2**63)
INT_MAX = 2**63 - 1


def _to_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        digits = text[1:] if text[:1] in "+-" else text
        # isdecimal() alone lets through non-ASCII digits such as "٣"
        if digits.isascii() and digits.isdecimal():
            try:
                return int(text)
            except ValueError:
                return None
    return None


def int_field(
    data: Mapping[str, Any],
    name: str,
    errors: Dict[str, str],
    path: Optional[str] = None,
    minimum: Optional[int] = None,
) -> Optional[int]:
    """Read an integer field, recording a message under ``path`` when it is invalid."""
    key = path or name
    raw = data.get(name)
    if raw is None:
        errors[key] = "is required"
        return None
    value = _to_int(raw)
    if value is None:
        errors[key] = "must be an integer"
        return None
    if not INT_MIN <= value <= INT_MAX:
        errors[key] = "is out of range"
        return None
    if minimum is not None and value < minimum:
        errors[key] = f"must be greater than or equal to {minimum}"
        return None
    return value
