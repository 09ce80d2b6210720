"""Error taxonomy for the reservoir core.

Invalid parameters and lifecycle violations are programmer errors and are
raised at the call boundary. Degenerate numeric states (a zero weight sum at
finalize time, a zero target value) are not errors; they yield a zero
contribution instead.
"""

import math
import numbers


class RestirError(Exception):
    """Base class for all reservoir core errors."""


class InvalidParameterError(RestirError, ValueError):
    """A scalar input is negative, non-finite or otherwise out of range."""


class LifecycleViolationError(RestirError, RuntimeError):
    """An operation was attempted in a reservoir state that forbids it."""


def check_non_negative(name: str, value: float) -> float:
    """Validate a finite, non-negative scalar.

    Args:
        name: Parameter name used in the error message.
        value: The value to check.

    Returns:
        The value as a float.

    Raises:
        InvalidParameterError: If the value is negative or not finite.
    """
    value = float(value)
    if not math.isfinite(value):
        raise InvalidParameterError(f"{name} must be finite, got {value}")
    if value < 0.0:
        raise InvalidParameterError(f"{name} must be non-negative, got {value}")
    return value


def check_positive(name: str, value: float) -> float:
    """Validate a finite, strictly positive scalar.

    Raises:
        InvalidParameterError: If the value is not finite or not positive.
    """
    value = float(value)
    if not math.isfinite(value):
        raise InvalidParameterError(f"{name} must be finite, got {value}")
    if value <= 0.0:
        raise InvalidParameterError(f"{name} must be positive, got {value}")
    return value


def check_count_cap(count_cap: int) -> int:
    """Validate a confidence cap (a positive integer)."""
    if isinstance(count_cap, bool) or not isinstance(count_cap, int):
        raise InvalidParameterError(f"count_cap must be an int, got {count_cap!r}")
    if count_cap <= 0:
        raise InvalidParameterError(f"count_cap must be positive, got {count_cap}")
    return count_cap


def check_count(name: str, value: int) -> int:
    """Validate a confidence count (a non-negative integer)."""
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise InvalidParameterError(f"{name} must be an int, got {value!r}")
    if value < 0:
        raise InvalidParameterError(f"{name} must be non-negative, got {value}")
    return int(value)
