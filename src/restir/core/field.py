"""Data-parallel reservoirs for many units, backed by Taichi fields.

ReservoirField stores one reservoir per unit in structure-of-arrays layout
and runs streaming update, combine and finalize as Taichi kernels whose
outermost loop runs over units in parallel. Points are fixed-size float
vectors (e.g. a light index and a position on the light).

Randomness is drawn up front from an injected numpy Generator and passed to
the kernels, so results are reproducible and independent of Taichi's global
random state.

Double buffering is done by the caller with two fields: the previous frame's
finalized field is combined into the field of the current frame, then the
roles are swapped after ``reset()``.

Example:
    >>> import numpy as np
    >>> import taichi as ti
    >>> ti.init(arch=ti.cpu)
    >>> from src.restir.core.field import ReservoirField
    >>> rng = np.random.default_rng(0)
    >>> field = ReservoirField(num_units=64, point_dim=2)
    >>> field.stream(points, weights, targets, rng)  # (64, N, 2), (64, N), (64, N)
    >>> field.finalize()
    >>> w = field.output_weights()
"""

import numpy as np
import numpy.typing as npt
import taichi as ti

from src.restir.core.errors import (
    InvalidParameterError,
    LifecycleViolationError,
    check_count_cap,
)
from src.restir.core.reservoir import ReservoirRecord
from src.restir.core.sample import Sample

# Maximum number of float components per point
MAX_POINT_DIM = 16

# Source index marking a unit whose shift is invalid (reuse skipped)
NO_SOURCE = -1


def _as_float32(name: str, values: npt.ArrayLike, shape: tuple[int, ...]) -> npt.NDArray[np.float32]:
    array = np.ascontiguousarray(values, dtype=np.float32)
    if array.shape != shape:
        raise InvalidParameterError(f"{name} must have shape {shape}, got {array.shape}")
    return array


def _check_scalars(name: str, values: npt.NDArray[np.float32], positive: bool = False) -> None:
    if not np.all(np.isfinite(values)):
        raise InvalidParameterError(f"{name} must be finite")
    if positive and np.any(values <= 0.0):
        raise InvalidParameterError(f"{name} must be positive")
    if not positive and np.any(values < 0.0):
        raise InvalidParameterError(f"{name} must be non-negative")


@ti.data_oriented
class ReservoirField:
    """One reservoir per unit, updated by Taichi kernels.

    Attributes:
        num_units: Number of reservoirs.
        point_dim: Number of float components of a point.
        weight_sum: Accumulated resampling weight per unit.
        count: Confidence count (M) per unit.
        output_weight: Contribution weight (W) per unit, set by finalize().
        selected: Selected point per unit.
        selected_target: p-hat of the selected point per unit.
        has_selection: 1 where a point has been selected, else 0.
    """

    def __init__(self, num_units: int, point_dim: int = 1) -> None:
        """Allocate the fields.

        Args:
            num_units: Number of units (pixels).
            point_dim: Components per point (1..MAX_POINT_DIM).

        Raises:
            ValueError: If a dimension is out of range.
        """
        if num_units <= 0:
            raise ValueError(f"num_units must be positive, got {num_units}")
        if not 1 <= point_dim <= MAX_POINT_DIM:
            raise ValueError(f"point_dim must be in [1, {MAX_POINT_DIM}], got {point_dim}")

        self.num_units = num_units
        self.point_dim = point_dim
        self.weight_sum = ti.field(dtype=ti.f32, shape=num_units)
        self.count = ti.field(dtype=ti.i32, shape=num_units)
        self.output_weight = ti.field(dtype=ti.f32, shape=num_units)
        self.selected = ti.Vector.field(point_dim, dtype=ti.f32, shape=num_units)
        self.selected_target = ti.field(dtype=ti.f32, shape=num_units)
        self.has_selection = ti.field(dtype=ti.i32, shape=num_units)
        self._finalized = False
        self.reset()

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    def reset(self) -> None:
        """Empty every reservoir for a new frame."""
        self.weight_sum.fill(0.0)
        self.count.fill(0)
        self.output_weight.fill(0.0)
        self.selected.fill(0.0)
        self.selected_target.fill(0.0)
        self.has_selection.fill(0)
        self._finalized = False

    def _check_mutable(self, operation: str) -> None:
        if self._finalized:
            raise LifecycleViolationError(f"cannot {operation} a finalized reservoir field")

    # =========================================================================
    # Kernels
    # =========================================================================

    @ti.kernel
    def _stream_kernel(
        self,
        points: ti.types.ndarray(),
        weights: ti.types.ndarray(),
        targets: ti.types.ndarray(),
        uniforms: ti.types.ndarray(),
    ):
        for u in self.weight_sum:
            for j in range(weights.shape[1]):
                w = weights[u, j]
                self.count[u] += 1
                self.weight_sum[u] += w
                if self.weight_sum[u] > 0.0 and uniforms[u, j] * self.weight_sum[u] < w:
                    for d in ti.static(range(self.point_dim)):
                        self.selected[u][d] = points[u, j, d]
                    self.selected_target[u] = targets[u, j]
                    self.has_selection[u] = 1

    @ti.kernel
    def _combine_kernel(
        self,
        source: ti.template(),
        sources: ti.types.ndarray(),
        targets: ti.types.ndarray(),
        jacobians: ti.types.ndarray(),
        uniforms: ti.types.ndarray(),
        count_cap: ti.i32,
    ):
        for u in self.weight_sum:
            s = sources[u]
            if s >= 0:
                if source.has_selection[s] == 1 and source.weight_sum[s] > 0.0:
                    m = source.count[s]
                    w = targets[u] * source.output_weight[s] * ti.cast(m, ti.f32) * jacobians[u]
                    prior = self.count[u]
                    self.weight_sum[u] += w
                    if self.weight_sum[u] > 0.0 and uniforms[u] * self.weight_sum[u] < w:
                        self.selected[u] = source.selected[s]
                        self.selected_target[u] = targets[u]
                        self.has_selection[u] = 1
                    self.count[u] = ti.min(prior + m, count_cap)

    @ti.kernel
    def _finalize_kernel(self, targets: ti.types.ndarray()):
        for u in self.weight_sum:
            t = targets[u]
            m = self.count[u]
            w = 0.0
            if self.has_selection[u] == 1 and t > 0.0 and m > 0:
                w = self.weight_sum[u] / (ti.cast(m, ti.f32) * t)
            self.output_weight[u] = w

    # =========================================================================
    # Host-side API
    # =========================================================================

    def stream(
        self,
        points: npt.ArrayLike,
        weights: npt.ArrayLike,
        targets: npt.ArrayLike,
        rng: np.random.Generator,
    ) -> None:
        """Stream N candidates into every unit.

        Args:
            points: Candidate points, shape (num_units, N, point_dim). For
                ``point_dim == 1`` a (num_units, N) array is accepted.
            weights: Resampling weights, shape (num_units, N), non-negative.
            targets: p-hat of each candidate, shape (num_units, N).
            rng: Generator providing one uniform draw per candidate.

        Raises:
            InvalidParameterError: On wrong shapes or negative/non-finite values.
            LifecycleViolationError: If the field is finalized.
        """
        self._check_mutable("stream into")
        weights = np.ascontiguousarray(weights, dtype=np.float32)
        if weights.ndim != 2 or weights.shape[0] != self.num_units:
            raise InvalidParameterError(
                f"weights must have shape ({self.num_units}, N), got {weights.shape}"
            )
        num_candidates = weights.shape[1]
        targets = _as_float32("targets", targets, weights.shape)
        points = np.asarray(points, dtype=np.float32)
        if points.ndim == 2 and self.point_dim == 1:
            points = points[..., np.newaxis]
        points = _as_float32("points", points, (self.num_units, num_candidates, self.point_dim))
        _check_scalars("weights", weights)
        _check_scalars("targets", targets)
        if num_candidates == 0:
            return

        uniforms = rng.random(weights.shape, dtype=np.float32)
        self._stream_kernel(points, weights, targets, uniforms)

    def combine(
        self,
        source: "ReservoirField",
        sources: npt.ArrayLike,
        targets: npt.ArrayLike,
        jacobians: npt.ArrayLike,
        count_cap: int,
        rng: np.random.Generator,
    ) -> None:
        """Combine one finalized reservoir of ``source`` into every unit.

        Args:
            source: A finalized field of the same point dimension (the
                previous frame, or a frozen candidate buffer). Only read.
            sources: Index into ``source`` per unit, or NO_SOURCE where the
                shift is invalid; those units are left unchanged.
            targets: p-hat of the source's selected point re-evaluated in
                each unit's domain.
            jacobians: Shift Jacobian per unit; must be finite and positive
                wherever a source is given.
            count_cap: Maximum confidence after the merge.
            rng: Generator providing one uniform draw per unit.

        Raises:
            InvalidParameterError: On invalid shapes, indices or scalars.
            LifecycleViolationError: If this field is finalized, ``source``
                is not, or ``source`` is this field.
        """
        self._check_mutable("combine into")
        check_count_cap(count_cap)
        if source is self:
            raise LifecycleViolationError("a reservoir field cannot be combined into itself")
        if not source.is_finalized:
            raise LifecycleViolationError("source field must be finalized before it is reused")
        if source.point_dim != self.point_dim:
            raise InvalidParameterError(
                f"point_dim mismatch: {source.point_dim} != {self.point_dim}"
            )

        shape = (self.num_units,)
        sources = np.ascontiguousarray(sources, dtype=np.int32)
        if sources.shape != shape:
            raise InvalidParameterError(f"sources must have shape {shape}, got {sources.shape}")
        if np.any((sources < NO_SOURCE) | (sources >= source.num_units)):
            raise InvalidParameterError("source index out of range")
        targets = _as_float32("targets", targets, shape)
        jacobians = _as_float32("jacobians", jacobians, shape)
        _check_scalars("targets", targets)
        _check_scalars("jacobians", jacobians[sources != NO_SOURCE], positive=True)

        uniforms = rng.random(shape, dtype=np.float32)
        self._combine_kernel(source, sources, targets, jacobians, uniforms, count_cap)

    def finalize(self, targets: npt.ArrayLike | None = None) -> npt.NDArray[np.float32]:
        """Compute the contribution weight of every unit.

        Args:
            targets: p-hat of each selected point. Defaults to the values
                stored with the selections.

        Returns:
            The contribution weights, shape (num_units,).
        """
        if targets is None:
            targets = self.selected_target.to_numpy()
        targets = _as_float32("targets", targets, (self.num_units,))
        _check_scalars("targets", targets)
        self._finalize_kernel(targets)
        self._finalized = True
        return self.output_weights()

    def output_weights(self) -> npt.NDArray[np.float32]:
        """Contribution weights as a NumPy array of shape (num_units,)."""
        return self.output_weight.to_numpy()

    def selected_points(self) -> npt.NDArray[np.float32]:
        """Selected points as a NumPy array of shape (num_units, point_dim)."""
        return self.selected.to_numpy().reshape(self.num_units, self.point_dim)

    def to_records(self) -> list[ReservoirRecord]:
        """Export every unit as a flat record.

        Points become tuples of floats. The source pdf is folded into the
        resampling weights on this path and is recorded as 1.
        """
        weight_sum = self.weight_sum.to_numpy()
        count = self.count.to_numpy()
        output_weight = self.output_weight.to_numpy()
        targets = self.selected_target.to_numpy()
        has_selection = self.has_selection.to_numpy()
        points = self.selected_points()

        records = []
        for u in range(self.num_units):
            selected = None
            if has_selection[u]:
                selected = Sample(
                    point=tuple(float(x) for x in points[u]),
                    target_value=float(targets[u]),
                )
            records.append(
                ReservoirRecord(
                    selected=selected,
                    weight_sum=float(weight_sum[u]),
                    count=int(count[u]),
                    output_weight=float(output_weight[u]),
                )
            )
        return records

    def __repr__(self) -> str:
        return (
            f"ReservoirField(num_units={self.num_units}, point_dim={self.point_dim}, "
            f"finalized={self._finalized})"
        )
