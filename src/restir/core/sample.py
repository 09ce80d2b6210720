"""Candidate samples fed into reservoirs.

A sample is an immutable observation: a domain point (opaque to the core),
the unnormalized target function value at that point (p-hat) and the density
of the distribution the point was drawn from.

Example:
    >>> from src.restir.core.sample import Sample
    >>> sample = Sample(point=("sun", 0.3), target_value=2.0, source_pdf=0.5)
    >>> sample.resampling_weight
    4.0
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from src.restir.core.errors import check_non_negative, check_positive

PointT = TypeVar("PointT")


@dataclass(frozen=True)
class Sample(Generic[PointT]):
    """An immutable candidate observation.

    Attributes:
        point: The domain value (e.g. a chosen light and a position on it).
            Never inspected by the core.
        target_value: Unnormalized target function value p-hat at ``point``.
            Must be finite and non-negative.
        source_pdf: Density used to draw ``point``. Must be finite and positive.
    """

    point: PointT
    target_value: float
    source_pdf: float = 1.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "target_value", check_non_negative("target_value", self.target_value))
        object.__setattr__(self, "source_pdf", check_positive("source_pdf", self.source_pdf))

    @property
    def resampling_weight(self) -> float:
        """The RIS weight p-hat / source pdf."""
        return self.target_value / self.source_pdf

    def with_target(self, point: PointT, target_value: float) -> "Sample[PointT]":
        """Return a copy moved to another domain with a re-evaluated target value."""
        return Sample(point=point, target_value=target_value, source_pdf=self.source_pdf)


# Evaluates p-hat at a domain point under a shading context (visibility included).
# Must be deterministic for identical inputs.
TargetFunction = Callable[[Any, Any], float]
