"""Kubernetes resource quantity parsing and formatting.

Quantities are converted to exact integer byte counts with ``Decimal`` so
that percentage growth and max-size comparisons never pick up floating
point drift.
"""

from __future__ import annotations

import re
from decimal import ROUND_CEILING, Decimal, InvalidOperation

from volume_autoscaler.errors import InvalidQuantityError

_BINARY_SUFFIXES: dict[str, int] = {
    "Ki": 1024,
    "Mi": 1024**2,
    "Gi": 1024**3,
    "Ti": 1024**4,
    "Pi": 1024**5,
    "Ei": 1024**6,
}

_DECIMAL_SUFFIXES: dict[str, Decimal] = {
    "m": Decimal("0.001"),
    "": Decimal(1),
    "k": Decimal(1000),
    "M": Decimal(1000**2),
    "G": Decimal(1000**3),
    "T": Decimal(1000**4),
    "P": Decimal(1000**5),
    "E": Decimal(1000**6),
}

_QUANTITY_RE = re.compile(r"^([+-]?[0-9.]+(?:[eE][+-]?[0-9]+)?)(Ki|Mi|Gi|Ti|Pi|Ei|m|k|M|G|T|P|E)?$")

# Largest first; formatting picks the first suffix that divides exactly.
_FORMAT_ORDER: tuple[str, ...] = ("Ei", "Pi", "Ti", "Gi", "Mi", "Ki")

GIB: int = _BINARY_SUFFIXES["Gi"]


def parse_quantity(value: str | int) -> int:
    """Parse a quantity such as ``10Gi``, ``500M`` or ``1e9`` into bytes.

    Fractional byte results are rounded up, the same way the API server
    canonicalises storage requests.
    """
    if isinstance(value, int):
        return value
    text = str(value).strip()
    match = _QUANTITY_RE.match(text)
    if not match:
        raise InvalidQuantityError(f"Invalid quantity: {value!r}")

    number, suffix = match.group(1), match.group(2) or ""
    try:
        amount = Decimal(number)
    except InvalidOperation as exc:
        raise InvalidQuantityError(f"Invalid quantity: {value!r}") from exc

    if suffix in _BINARY_SUFFIXES:
        result = amount * _BINARY_SUFFIXES[suffix]
    else:
        result = amount * _DECIMAL_SUFFIXES[suffix]
    return int(result.to_integral_value(rounding=ROUND_CEILING))


def format_quantity(num_bytes: int) -> str:
    """Render bytes with the largest binary suffix that represents them exactly.

    Falls back to a plain byte count (``"1500"``) when no suffix divides
    evenly, so round-tripping through :func:`parse_quantity` is lossless.
    """
    if num_bytes == 0:
        return "0"
    for suffix in _FORMAT_ORDER:
        factor = _BINARY_SUFFIXES[suffix]
        if num_bytes % factor == 0:
            return f"{num_bytes // factor}{suffix}"
    return str(num_bytes)
