"""Shift mappings between the domains of two units.

Reusing a sample from another pixel requires mapping its domain point into
the destination pixel's domain, together with the Jacobian determinant of
that mapping. The Jacobian multiplies the resampling weight of the reused
reservoir so the reuse stays unbiased.

Two strategies are provided:
    identity_shift: the point is valid unchanged in the destination domain
        (same-pixel temporal reuse, or points expressed in a shared measure
        such as area measure on the lights). Jacobian 1.
    ReconnectionShift: the path is reconnected from the destination shading
        point to the same light vertex. The solid-angle Jacobian is

            J = (cos_dst / cos_src) * (d_src^2 / d_dst^2)

        where cos_* is the cosine at the light vertex towards each shading
        point and d_* the distance to it.

A shift returns None when the mapping is geometrically invalid. Combine then
skips the reuse altogether instead of counting a zero-weight candidate.

Example:
    >>> import numpy as np
    >>> from src.restir.core.shift import LightVertex, ReconnectionPoint, ReconnectionShift, ShadingContext
    >>> vertex = LightVertex(position=(0.0, 2.0, 0.0), normal=(0.0, -1.0, 0.0))
    >>> point = ReconnectionPoint(vertex=vertex, origin=(0.0, 0.0, 0.0))
    >>> dest = ShadingContext(position=(1.0, 0.0, 0.0), normal=(0.0, 1.0, 0.0))
    >>> shifted, jacobian = ReconnectionShift()(point, dest)
"""

import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import numpy as np
import numpy.typing as npt

# Cosines and distances below these are treated as degenerate
DEFAULT_MIN_COSINE = 1e-6
DEFAULT_MIN_DISTANCE = 1e-6

# Visibility predicate: (shading position, light vertex position) -> unoccluded
VisibilityTest = Callable[[npt.NDArray[np.float64], npt.NDArray[np.float64]], bool]


class ShiftMapping(Protocol):
    """Maps a domain point into a destination context.

    Returns ``(shifted_point, jacobian)`` with a finite, positive Jacobian, or
    None when the shift is invalid in the destination.
    """

    def __call__(self, point: Any, dest_context: Any) -> tuple[Any, float] | None: ...


def identity_shift(point: Any, dest_context: Any = None) -> tuple[Any, float]:
    """Shift that keeps the point unchanged (Jacobian 1)."""
    return point, 1.0


def _as_vector(value: Any) -> npt.NDArray[np.float64]:
    return np.asarray(value, dtype=np.float64)


def _normalize(v: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    norm = float(np.linalg.norm(v))
    if norm == 0.0:
        raise ValueError("cannot normalize a zero-length vector")
    return v / norm


@dataclass(frozen=True, eq=False)
class ShadingContext:
    """Geometry of a shading point that receives light.

    Attributes:
        position: World-space position of the shading point.
        normal: Unit surface normal. Normalized on construction.
    """

    position: npt.NDArray[np.float64]
    normal: npt.NDArray[np.float64]

    def __post_init__(self) -> None:
        object.__setattr__(self, "position", _as_vector(self.position))
        object.__setattr__(self, "normal", _normalize(_as_vector(self.normal)))


@dataclass(frozen=True, eq=False)
class LightVertex:
    """A point on a light source used as reconnection vertex.

    Attributes:
        position: World-space position on the light.
        normal: Unit normal of the emitting surface, or None for a point
            light (no cosine falloff at the vertex).
    """

    position: npt.NDArray[np.float64]
    normal: npt.NDArray[np.float64] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "position", _as_vector(self.position))
        if self.normal is not None:
            object.__setattr__(self, "normal", _normalize(_as_vector(self.normal)))

    def cosine_towards(self, target: npt.NDArray[np.float64]) -> float:
        """Cosine between the light normal and the direction to ``target``."""
        if self.normal is None:
            return 1.0
        return float(np.dot(self.normal, _normalize(target - self.position)))


@dataclass(frozen=True, eq=False)
class ReconnectionPoint:
    """A light sample expressed from a specific shading point.

    Attributes:
        vertex: The light vertex.
        origin: Position of the shading point the sample belongs to.
    """

    vertex: LightVertex
    origin: npt.NDArray[np.float64]

    def __post_init__(self) -> None:
        object.__setattr__(self, "origin", _as_vector(self.origin))

    @property
    def distance(self) -> float:
        """Distance from the shading point to the light vertex."""
        return float(np.linalg.norm(self.vertex.position - self.origin))

    @property
    def direction(self) -> npt.NDArray[np.float64]:
        """Unit direction from the shading point towards the light vertex."""
        return _normalize(self.vertex.position - self.origin)


class ReconnectionShift:
    """Reconnect a light sample to another shading point.

    Args:
        visibility: Optional occlusion test between a shading position and a
            light vertex. An occluded reconnection is reported as an invalid
            shift.
        min_cosine: Cosines at or below this value make the shift invalid.
        min_distance: Distances below this value make the shift invalid.
    """

    def __init__(
        self,
        visibility: VisibilityTest | None = None,
        min_cosine: float = DEFAULT_MIN_COSINE,
        min_distance: float = DEFAULT_MIN_DISTANCE,
    ) -> None:
        self._visibility = visibility
        self._min_cosine = min_cosine
        self._min_distance = min_distance

    def jacobian(self, point: ReconnectionPoint, dest_context: ShadingContext) -> float | None:
        """Solid-angle Jacobian of moving ``point`` to ``dest_context``.

        Returns:
            The Jacobian, or None if either configuration is degenerate.
        """
        vertex = point.vertex
        d_src = point.distance
        d_dst = float(np.linalg.norm(vertex.position - dest_context.position))
        if d_src < self._min_distance or d_dst < self._min_distance:
            return None

        cos_src = vertex.cosine_towards(point.origin)
        cos_dst = vertex.cosine_towards(dest_context.position)
        if cos_src <= self._min_cosine or cos_dst <= self._min_cosine:
            return None

        jacobian = (cos_dst / cos_src) * (d_src * d_src) / (d_dst * d_dst)
        if not math.isfinite(jacobian) or jacobian <= 0.0:
            return None
        return jacobian

    def __call__(
        self, point: ReconnectionPoint, dest_context: ShadingContext
    ) -> tuple[ReconnectionPoint, float] | None:
        """Shift ``point`` into ``dest_context``.

        Returns:
            ``(shifted_point, jacobian)``, or None when the light vertex is
            below the destination horizon, faces away from it, is occluded,
            or the geometry is degenerate.
        """
        jacobian = self.jacobian(point, dest_context)
        if jacobian is None:
            return None

        shifted = ReconnectionPoint(vertex=point.vertex, origin=dest_context.position)
        if float(np.dot(dest_context.normal, shifted.direction)) <= self._min_cosine:
            return None

        if self._visibility is not None and not self._visibility(
            dest_context.position, point.vertex.position
        ):
            return None

        return shifted, jacobian

    def __repr__(self) -> str:
        return (
            f"ReconnectionShift(visibility={self._visibility is not None}, "
            f"min_cosine={self._min_cosine}, min_distance={self._min_distance})"
        )
