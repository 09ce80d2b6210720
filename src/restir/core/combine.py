"""Reservoir reuse: initial resampling, temporal and spatial combine.

Combining folds a finalized reservoir into another one as if it were a single
streamed candidate. Its resampling weight is

    w = p_hat_dest(y) * W_source * M_source * J

where ``y`` is the source's selected point moved into the destination
domain, ``p_hat_dest`` the target function re-evaluated there (visibility
included), and ``J`` the Jacobian of the shift. The destination count then
becomes ``min(M_dest + M_source, count_cap)``.

Example:
    >>> from src.restir.core.combine import combine_shifted, resample
    >>> from src.restir.core.reservoir import finalize
    >>> from src.restir.core.shift import identity_shift
    >>> current = resample(candidates, rng)
    >>> combine_shifted(current, previous, context, identity_shift, target, rng, count_cap=20)
    >>> finalize(current)
"""

import math
from collections.abc import Iterable
from typing import Any

from src.restir.core.errors import (
    InvalidParameterError,
    LifecycleViolationError,
    check_count_cap,
    check_non_negative,
    check_positive,
)
from src.restir.core.random import RandomSource
from src.restir.core.reservoir import Reservoir, _check_mutable, _stream, update
from src.restir.core.sample import PointT, Sample, TargetFunction
from src.restir.core.shift import ShiftMapping


def _check_reusable(source: Reservoir) -> None:
    if not source.is_finalized:
        raise LifecycleViolationError("source reservoir must be finalized before it is reused")


def combine(
    dest: Reservoir[PointT],
    source: Reservoir[PointT],
    target_value: float,
    jacobian: float,
    rng: RandomSource,
    count_cap: int,
    *,
    shifted_point: PointT | None = None,
) -> bool:
    """Merge a finalized reservoir into ``dest``.

    ``source`` is only read. ``dest`` receives one streamed step with the
    derived weight, and its count is capped at ``count_cap`` (temporal
    clamping). An empty source, or one without weight, leaves ``dest``
    unchanged.

    Args:
        dest: Reservoir being built. Must not be finalized.
        source: Finalized reservoir to reuse.
        target_value: p-hat of the source's selected point evaluated under
            the destination's shading context.
        jacobian: Jacobian of the domain shift, finite and positive.
        rng: Uniform random source; called once unless the source is empty.
        count_cap: Maximum confidence of ``dest`` after the merge.
        shifted_point: The selected point moved into the destination domain.
            Defaults to the source's point unchanged.

    Returns:
        True if the source's sample became the selection of ``dest``.

    Raises:
        InvalidParameterError: On a negative/non-finite target value, a
            non-positive/non-finite Jacobian or an invalid count cap.
        LifecycleViolationError: If ``dest`` is finalized or ``source`` is not.
    """
    _check_mutable(dest, "combine into")
    target_value = check_non_negative("target_value", target_value)
    jacobian = check_positive("jacobian", jacobian)
    check_count_cap(count_cap)
    _check_reusable(source)

    if not source.has_weight:
        return False

    weight = target_value * source.output_weight * source.count * jacobian
    if not math.isfinite(weight):
        raise InvalidParameterError(f"combined weight overflowed: {weight}")

    point = source.selected.point if shifted_point is None else shifted_point
    candidate = source.selected.with_target(point, target_value)

    prior_count = dest.count
    replaced = _stream(dest, candidate, weight, rng, count_increment=0)
    dest.count = min(prior_count + source.count, count_cap)
    return replaced


def combine_shifted(
    dest: Reservoir,
    source: Reservoir,
    dest_context: Any,
    shift: ShiftMapping,
    target_function: TargetFunction,
    rng: RandomSource,
    count_cap: int,
) -> bool:
    """Shift the source's selection into ``dest_context`` and combine it.

    The target function is re-evaluated at the shifted point under the
    destination context, which re-tests visibility there. When the shift is
    invalid the reuse is skipped: ``dest`` is left entirely unchanged,
    including its count.

    Returns:
        True if the shifted sample became the selection of ``dest``.
    """
    _check_mutable(dest, "combine into")
    check_count_cap(count_cap)
    _check_reusable(source)

    if not source.has_weight:
        return False

    shifted = shift(source.selected.point, dest_context)
    if shifted is None:
        return False

    point, jacobian = shifted
    target_value = target_function(point, dest_context)
    return combine(dest, source, target_value, jacobian, rng, count_cap, shifted_point=point)


def resample(
    candidates: Iterable[Sample[PointT]],
    rng: RandomSource,
    reservoir: Reservoir[PointT] | None = None,
) -> Reservoir[PointT]:
    """Resampled importance sampling over a stream of candidates.

    Each candidate is streamed with weight ``target_value / source_pdf``.

    Args:
        candidates: Candidate samples.
        rng: Uniform random source; one draw per candidate.
        reservoir: Reservoir to stream into. A new one is created if omitted.

    Returns:
        The (not yet finalized) reservoir.
    """
    if reservoir is None:
        reservoir = Reservoir()
    for sample in candidates:
        update(reservoir, sample, sample.resampling_weight, rng)
    return reservoir
