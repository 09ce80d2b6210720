"""Streaming reservoir for weighted resampling.

A reservoir keeps one selected candidate out of a stream, the running sum of
resampling weights and a confidence count (M). After the stream ends it is
finalized into an unbiased contribution weight (W):

    W = weight_sum / (M * p_hat(selected))

so that ``f(selected) * W`` is an unbiased one-sample estimate of the
integral of ``f``.

Each reservoir follows a strict per-frame lifecycle:

    EMPTY -> ACTIVE (any number of updates and combines) -> FINALIZED

Finalized reservoirs are read-only. Finalizing twice is allowed and
idempotent; updating or combining a finalized reservoir raises
LifecycleViolationError.

Example:
    >>> from src.restir.core.random import make_random_source
    >>> from src.restir.core.reservoir import Reservoir, finalize, update
    >>> from src.restir.core.sample import Sample
    >>> rng = make_random_source(0)
    >>> reservoir = Reservoir()
    >>> for point, value in [("a", 1.0), ("b", 3.0)]:
    ...     sample = Sample(point, target_value=value, source_pdf=0.5)
    ...     _ = update(reservoir, sample, sample.resampling_weight, rng)
    >>> w = finalize(reservoir)
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Generic

from src.restir.core.errors import (
    InvalidParameterError,
    LifecycleViolationError,
    check_count,
    check_count_cap,
    check_non_negative,
)
from src.restir.core.random import RandomSource
from src.restir.core.sample import PointT, Sample


class ReservoirState(Enum):
    """Lifecycle state of a reservoir within one frame."""

    EMPTY = "empty"
    ACTIVE = "active"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class ReservoirRecord(Generic[PointT]):
    """Flat, immutable snapshot of a finalized reservoir.

    This is the form reservoirs take inside frame-history buffers.

    Attributes:
        selected: The selected sample, or None.
        weight_sum: Accumulated resampling weight.
        count: Confidence count (M).
        output_weight: Unbiased contribution weight (W).
    """

    selected: Sample[PointT] | None
    weight_sum: float
    count: int
    output_weight: float

    def as_dict(self) -> dict[str, Any]:
        """Return the record as a plain mapping."""
        return {
            "selected": self.selected,
            "weight_sum": self.weight_sum,
            "count": self.count,
            "output_weight": self.output_weight,
        }


@dataclass
class Reservoir(Generic[PointT]):
    """Mutable streaming accumulator for one unit (pixel) and one frame.

    Attributes:
        selected: Currently selected sample. None until a candidate with
            positive weight has been streamed.
        weight_sum: Non-negative running sum of resampling weights.
        count: Confidence count M: the number of candidates streamed, or
            the accumulated confidence of merged reservoirs.
        output_weight: Contribution weight W, written by finalize().
        state: Lifecycle state.
    """

    selected: Sample[PointT] | None = None
    weight_sum: float = 0.0
    count: int = 0
    output_weight: float = 0.0
    state: ReservoirState = field(default=ReservoirState.EMPTY)

    @property
    def is_finalized(self) -> bool:
        """Whether finalize() has been called."""
        return self.state is ReservoirState.FINALIZED

    @property
    def has_weight(self) -> bool:
        """Whether the reservoir holds a selection that can contribute.

        Useful to skip the (expensive) target re-evaluation of a reused
        sample when it could not contribute anyway.
        """
        return self.selected is not None and self.weight_sum > 0.0

    def copy(self) -> "Reservoir[PointT]":
        """Return a snapshot that shares no mutable state with this reservoir."""
        return replace(self)

    def with_max_count(self, max_count: int) -> "Reservoir[PointT]":
        """Return a copy whose confidence is clamped to ``max_count``.

        The weight sum is rescaled along with the count so the contribution
        weight is unchanged; only the influence of the reservoir in later
        combines shrinks. The state is preserved.
        """
        check_count_cap(max_count)
        clamped = self.copy()
        if clamped.count > max_count:
            clamped.weight_sum *= max_count / clamped.count
            clamped.count = max_count
        return clamped

    def to_record(self) -> ReservoirRecord[PointT]:
        """Serialize into a flat record for a history buffer."""
        return ReservoirRecord(
            selected=self.selected,
            weight_sum=self.weight_sum,
            count=self.count,
            output_weight=self.output_weight,
        )

    @classmethod
    def from_record(cls, record: ReservoirRecord[PointT]) -> "Reservoir[PointT]":
        """Rebuild a finalized reservoir from a history record."""
        return cls(
            selected=record.selected,
            weight_sum=record.weight_sum,
            count=record.count,
            output_weight=record.output_weight,
            state=ReservoirState.FINALIZED,
        )

    @classmethod
    def from_sample(cls, sample: Sample[PointT]) -> "Reservoir[PointT]":
        """Build a finalized reservoir holding a single sample.

        The contribution weight is ``1 / source_pdf``, the plain importance
        sampling weight, so the result can be combined like any reused
        reservoir.
        """
        return cls(
            selected=sample,
            weight_sum=sample.resampling_weight,
            count=1,
            output_weight=1.0 / sample.source_pdf,
            state=ReservoirState.FINALIZED,
        )

    def __repr__(self) -> str:
        return (
            f"Reservoir(state={self.state.value}, count={self.count}, "
            f"weight_sum={self.weight_sum:.6g}, output_weight={self.output_weight:.6g}, "
            f"selected={self.selected!r})"
        )


def _check_mutable(reservoir: Reservoir, operation: str) -> None:
    if reservoir.is_finalized:
        raise LifecycleViolationError(f"cannot {operation} a finalized reservoir")


def _stream(
    reservoir: Reservoir[PointT],
    sample: Sample[PointT],
    weight: float,
    rng: RandomSource,
    count_increment: int,
) -> bool:
    """Fold one weighted candidate into the reservoir.

    Exactly one uniform draw is consumed, also for zero weights, so that the
    random sequence does not depend on candidate values.
    """
    u = rng()
    reservoir.weight_sum += weight
    reservoir.count += count_increment
    reservoir.state = ReservoirState.ACTIVE
    # u * weight_sum < weight <=> u < weight / weight_sum, without dividing by zero
    if reservoir.weight_sum > 0.0 and u * reservoir.weight_sum < weight:
        reservoir.selected = sample
        return True
    return False


def update(
    reservoir: Reservoir[PointT],
    sample: Sample[PointT],
    weight: float,
    rng: RandomSource,
) -> bool:
    """Stream one candidate into a reservoir (weighted reservoir sampling).

    The weight sum grows by ``weight``, the count by one, and ``sample``
    replaces the current selection with probability ``weight / weight_sum``.
    A zero weight increments the count but never replaces the selection.

    Args:
        reservoir: The reservoir to update. Must not be finalized.
        sample: The candidate.
        weight: Resampling weight of the candidate, usually
            ``sample.target_value / sample.source_pdf``.
        rng: Uniform random source; called exactly once.

    Returns:
        True if the candidate became the selection.

    Raises:
        InvalidParameterError: If ``weight`` is negative or not finite.
        LifecycleViolationError: If the reservoir is finalized.
    """
    _check_mutable(reservoir, "update")
    weight = check_non_negative("weight", weight)
    return _stream(reservoir, sample, weight, rng, count_increment=1)


def add_empty_sample(reservoir: Reservoir) -> None:
    """Register a candidate known to contribute nothing (e.g. occluded).

    Equivalent to a zero-weight update, without consuming a random draw.
    """
    _check_mutable(reservoir, "update")
    reservoir.count += 1
    reservoir.state = ReservoirState.ACTIVE


def merge_history(dest: Reservoir, source: Reservoir, count_cap: int) -> None:
    """Merge only the confidence of a reservoir that cannot contribute.

    Used when a reused reservoir has no weight, or its selected sample has
    zero target value in the destination domain: its candidates still count
    towards M even though none of them can be selected.
    """
    _check_mutable(dest, "combine into")
    check_count_cap(count_cap)
    dest.count = min(dest.count + source.count, count_cap)
    dest.state = ReservoirState.ACTIVE


def unmerge(dest: Reservoir, source: Reservoir) -> None:
    """Reverse the effect of merging ``source`` into ``dest``.

    Subtracts the source's weight sum and count. The current selection is
    kept; if the removed weight was all there was, ``dest`` finalizes to 0.

    Raises:
        InvalidParameterError: If ``source`` holds more confidence than ``dest``.
        LifecycleViolationError: If ``dest`` is finalized.
    """
    _check_mutable(dest, "unmerge from")
    if source.count > dest.count:
        raise InvalidParameterError(
            f"cannot unmerge count {source.count} from a reservoir with count {dest.count}"
        )
    # Clamp rounding residue so the weight sum stays non-negative
    dest.weight_sum = max(dest.weight_sum - source.weight_sum, 0.0)
    dest.count -= source.count


def unmerge_history(dest: Reservoir, source: Reservoir) -> None:
    """Reverse a count-only merge (see merge_history).

    Raises:
        InvalidParameterError: If ``source`` holds more confidence than ``dest``.
        LifecycleViolationError: If ``dest`` is finalized.
    """
    _check_mutable(dest, "unmerge from")
    if source.count > dest.count:
        raise InvalidParameterError(
            f"cannot unmerge count {source.count} from a reservoir with count {dest.count}"
        )
    dest.count -= source.count


def invalidate(reservoir: Reservoir) -> None:
    """Drop the value of the current selection, e.g. after a failed shadow ray.

    The selection's target value and the weight sum become 0; the count is
    kept, so the streamed candidates still count towards M and the
    reservoir finalizes to a zero contribution.
    """
    _check_mutable(reservoir, "invalidate")
    if reservoir.selected is not None:
        reservoir.selected = reservoir.selected.with_target(reservoir.selected.point, 0.0)
    reservoir.weight_sum = 0.0


def clamp_history(reservoir: Reservoir, max_count: int) -> None:
    """Clamp the confidence of an active reservoir in place.

    Clamping keeps reservoirs able to pick up new samples instead of going
    stale after a long temporal chain. The weight sum is rescaled so the
    eventual contribution weight does not change.
    """
    _check_mutable(reservoir, "clamp")
    check_count_cap(max_count)
    if reservoir.count > max_count:
        reservoir.weight_sum *= max_count / reservoir.count
        reservoir.count = max_count


def collapse(reservoir: Reservoir) -> None:
    """Collapse all streamed candidates into a single one.

    Divides the weight sum by the count and sets the count to one. Useful
    when merging with other reservoirs whose samples should weigh more than
    the ones collected so far.

    Raises:
        LifecycleViolationError: If the reservoir is finalized or has no samples.
    """
    _check_mutable(reservoir, "collapse")
    if reservoir.count == 0:
        raise LifecycleViolationError("cannot collapse a reservoir without samples")
    reservoir.weight_sum /= reservoir.count
    reservoir.count = 1


def finalize(
    reservoir: Reservoir,
    target_value: float | None = None,
    *,
    count: int | None = None,
) -> float:
    """Compute the unbiased contribution weight of the selected sample.

    ``W = weight_sum / (count * target_value)``, or 0 when the target value,
    the count or the weight sum is zero (no contribution). Only
    ``output_weight`` and the state are written; calling finalize again with
    the same inputs returns the same value.

    Args:
        reservoir: The reservoir to finalize.
        target_value: p-hat of the selected sample in this reservoir's
            domain. Defaults to the target value stored with the selection.
        count: Normalization count overriding ``reservoir.count`` (for
            unbiased reuse, where only reservoirs able to produce the
            selected sample are counted). ``reservoir.count`` is unchanged.

    Returns:
        The contribution weight W.

    Raises:
        InvalidParameterError: If ``target_value`` is negative or not finite,
            or ``count`` is not a non-negative int.
    """
    if target_value is None:
        target_value = reservoir.selected.target_value if reservoir.selected is not None else 0.0
    target_value = check_non_negative("target_value", target_value)

    if count is None:
        count = reservoir.count
    else:
        count = check_count("count", count)

    if reservoir.selected is not None and target_value > 0.0 and count > 0:
        output_weight = reservoir.weight_sum / (count * target_value)
    else:
        output_weight = 0.0

    reservoir.output_weight = output_weight
    reservoir.state = ReservoirState.FINALIZED
    return output_weight
