"""Next-size calculation for a PVC expansion."""

from __future__ import annotations

from volume_autoscaler.models.quantity import GIB

DEFAULT_INCREASE_MINIMUM: int = GIB


def calculate_new_size(
    current: int,
    increase_percent: int,
    increase_minimum: int | None,
    max_size: int,
) -> int:
    """Return the capacity, in bytes, a PVC of ``current`` bytes should grow to.

    The increase is ``increase_percent`` of ``current`` (integer division),
    floored at ``increase_minimum`` (1Gi when unset), and the result is
    capped at ``max_size``. A volume already above ``max_size`` is never
    shrunk: ``current`` is returned unchanged.
    """
    increase = current * increase_percent // 100
    floor = DEFAULT_INCREASE_MINIMUM if increase_minimum is None else increase_minimum
    increase = max(increase, floor)

    candidate = current + increase
    if candidate > max_size:
        return max(current, max_size)
    return candidate
