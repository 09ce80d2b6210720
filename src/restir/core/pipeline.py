"""Per-frame ReSTIR pipeline over a set of independent units.

This module drives the reservoir core for a whole frame, unit by unit
(a unit is typically a pixel):

    1. Stream ``initial_samples`` candidates from the candidate generator
       into a fresh reservoir and clamp its confidence.
    2. Temporal reuse: combine the previous frame's finalized reservoir of
       the same unit, re-evaluating the target at its point.
    3. Finalize and store into the candidate buffer; freeze it.
    4. Spatial reuse: a fresh reservoir absorbs the unit's own candidate
       reservoir and its neighbours' (through the spatial shift, with the
       target function re-testing visibility in the destination).
    5. Optionally normalize by the confidence of only those reservoirs that
       could have produced the selected sample (unbiased reuse).
    6. Finalize, store into the frame history and advance the generation.

The renderer around the pipeline supplies the collaborators: a candidate
generator, the target function and the per-unit shading contexts.

Example:
    >>> from src.restir.core.pipeline import RestirConfig, RestirPipeline, shade
    >>> pipeline = RestirPipeline(
    ...     num_units=len(contexts),
    ...     config=RestirConfig(initial_samples=8, seed=1),
    ...     generator=sample_light,
    ...     target_function=target,
    ...     contexts=contexts,
    ... )
    >>> reservoirs = pipeline.render_frame()
    >>> radiance = [shade(r, lambda point: integrand(point, ctx)) for r, ctx in zip(reservoirs, contexts)]
"""

from collections.abc import Callable, Generator, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from absl import logging

from src.restir.core.combine import combine, combine_shifted
from src.restir.core.history import FrameHistory, FrozenReservoirBuffer, ReservoirBuffer
from src.restir.core.random import RandomSource, spawn_random_sources
from src.restir.core.reservoir import (
    Reservoir,
    clamp_history,
    finalize,
    merge_history,
    update,
)
from src.restir.core.sample import Sample, TargetFunction
from src.restir.core.shift import ShiftMapping, identity_shift

# Generates one candidate for (unit index, shading context, rng)
CandidateGenerator = Callable[[int, Any, RandomSource], Sample]

# Returns the indices of the units whose reservoirs a unit reuses spatially
NeighborFunction = Callable[[int], Iterable[int]]

# Callback receives (frames_done, frames_total)
ProgressCallback = Callable[[int, int], None]


@dataclass
class RestirConfig:
    """Configuration of the per-frame reuse.

    Attributes:
        initial_samples: Candidates streamed per unit per frame.
        initial_count_cap: Confidence clamp after initial resampling.
        temporal_count_cap: Confidence clamp of the previous frame's
            reservoir and of the result of temporal reuse.
        spatial_neighbor_cap: Confidence clamp of each reused neighbour.
        spatial_count_cap: Confidence cap of the result of spatial reuse.
        spatial_offsets: Index offsets of the spatial neighbours.
        temporal: Enable temporal reuse.
        spatial: Enable spatial reuse.
        unbiased: Normalize spatial reuse by the confidence of the
            reservoirs able to produce the selected sample only.
        seed: Base seed for the per-unit random sources.
    """

    initial_samples: int = 4
    initial_count_cap: int = 1
    temporal_count_cap: int = 20
    spatial_neighbor_cap: int = 10
    spatial_count_cap: int = 64
    spatial_offsets: tuple[int, ...] = (-1, 1)
    temporal: bool = True
    spatial: bool = True
    unbiased: bool = True
    seed: int = 0

    def __post_init__(self) -> None:
        if isinstance(self.initial_samples, bool) or not isinstance(self.initial_samples, int):
            raise ValueError(f"initial_samples must be an int, got {self.initial_samples!r}")
        if self.initial_samples < 0:
            raise ValueError(f"initial_samples must be non-negative, got {self.initial_samples}")
        for name in (
            "initial_count_cap",
            "temporal_count_cap",
            "spatial_neighbor_cap",
            "spatial_count_cap",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an int, got {value!r}")
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
        # Temporal reuse needs room for at least one reused candidate
        if not self.initial_count_cap < self.temporal_count_cap <= self.spatial_count_cap:
            raise ValueError(
                "count caps must satisfy initial_count_cap < temporal_count_cap "
                f"<= spatial_count_cap, got {self.initial_count_cap}, "
                f"{self.temporal_count_cap}, {self.spatial_count_cap}"
            )
        self.spatial_offsets = tuple(self.spatial_offsets)
        if 0 in self.spatial_offsets:
            raise ValueError("spatial_offsets must not contain 0")


def shade(reservoir: Reservoir, integrand: Callable[[Any], Any]) -> Any:
    """Unbiased one-sample estimate ``f(selected) * W`` of a finalized reservoir.

    An empty reservoir, or one with zero contribution weight, contributes 0.
    """
    if reservoir.selected is None or reservoir.output_weight == 0.0:
        return 0.0
    return integrand(reservoir.selected.point) * reservoir.output_weight


class RestirPipeline:
    """Runs initial resampling, temporal and spatial reuse frame after frame.

    Units are independent: each unit gets its own random source per frame,
    and units only read frozen buffers of other units.

    Attributes:
        config: The reuse configuration.
    """

    def __init__(
        self,
        num_units: int,
        config: RestirConfig,
        generator: CandidateGenerator,
        target_function: TargetFunction,
        contexts: Sequence[Any] | None = None,
        neighbors: NeighborFunction | None = None,
        spatial_shift: ShiftMapping = identity_shift,
        temporal_shift: ShiftMapping = identity_shift,
    ) -> None:
        """Initialize the pipeline.

        Args:
            num_units: Number of units (pixels).
            config: Reuse configuration.
            generator: Produces one initial candidate for a unit.
            target_function: p-hat(point, context), visibility included.
            contexts: Default per-unit shading contexts.
            neighbors: Optional function returning spatial neighbour indices
                of a unit. Defaults to ``config.spatial_offsets``.
            spatial_shift: Shift mapping used for spatial reuse.
            temporal_shift: Shift mapping used for temporal reuse.

        Raises:
            ValueError: If ``num_units`` is negative or ``contexts`` has the
                wrong length.
        """
        if num_units < 0:
            raise ValueError(f"num_units must be non-negative, got {num_units}")
        self.config = config
        self._num_units = num_units
        self._generator = generator
        self._target_function = target_function
        self._contexts = self._check_contexts(contexts) if contexts is not None else None
        self._neighbors = neighbors
        self._spatial_shift = spatial_shift
        self._temporal_shift = temporal_shift
        self._history = FrameHistory(num_units)
        self._frame_index = 0

    @property
    def num_units(self) -> int:
        return self._num_units

    @property
    def frame_index(self) -> int:
        """Number of frames rendered since construction or the last reset."""
        return self._frame_index

    @property
    def history(self) -> FrameHistory:
        """The double-buffered frame history."""
        return self._history

    def reset(self) -> None:
        """Drop the temporal history and restart the frame counter."""
        self._history = FrameHistory(self._num_units)
        self._frame_index = 0

    def _check_contexts(self, contexts: Sequence[Any]) -> Sequence[Any]:
        if len(contexts) != self._num_units:
            raise ValueError(f"expected {self._num_units} contexts, got {len(contexts)}")
        return contexts

    def _neighbor_reservoirs(
        self, unit: int, candidates: FrozenReservoirBuffer
    ) -> list[tuple[int, Reservoir]]:
        if self._neighbors is None:
            return candidates.neighbors(unit, self.config.spatial_offsets)
        return [(index, candidates.load(index)) for index in self._neighbors(unit) if index != unit]

    def _initial(self, unit: int, context: Any, rng: RandomSource) -> Reservoir:
        reservoir = Reservoir()
        for _ in range(self.config.initial_samples):
            sample = self._generator(unit, context, rng)
            update(reservoir, sample, sample.resampling_weight, rng)
        clamp_history(reservoir, self.config.initial_count_cap)
        return reservoir

    def _temporal(
        self, reservoir: Reservoir, prior: Reservoir, context: Any, rng: RandomSource
    ) -> None:
        cap = self.config.temporal_count_cap
        room = cap - reservoir.count
        if room <= 0:
            return
        # Clamping the prior (not the sum) keeps weight sum and count consistent
        prior = prior.with_max_count(room)
        if prior.has_weight:
            combine_shifted(
                reservoir, prior, context, self._temporal_shift, self._target_function, rng, cap
            )
        else:
            merge_history(reservoir, prior, cap)

    def _spatial(
        self,
        unit: int,
        candidates: FrozenReservoirBuffer,
        contexts: Sequence[Any],
        rng: RandomSource,
    ) -> Reservoir:
        cap = self.config.spatial_count_cap
        context = contexts[unit]
        reservoir = Reservoir()

        own = candidates.load(unit)
        if own.has_weight:
            combine(reservoir, own, own.selected.target_value, 1.0, rng, cap)
        else:
            merge_history(reservoir, own, cap)
        normalization = own.count
        selected_from = unit

        reused = []
        for index, neighbor in self._neighbor_reservoirs(unit, candidates):
            room = cap - reservoir.count
            if room <= 0:
                break
            neighbor = neighbor.with_max_count(min(self.config.spatial_neighbor_cap, room))
            if not neighbor.has_weight:
                merge_history(reservoir, neighbor, cap)
                reused.append((index, neighbor))
                continue

            shifted = self._spatial_shift(neighbor.selected.point, context)
            if shifted is None:
                continue
            point, jacobian = shifted
            target_value = self._target_function(point, context)
            reused.append((index, neighbor))
            if combine(reservoir, neighbor, target_value, jacobian, rng, cap, shifted_point=point):
                selected_from = index

        if not self.config.unbiased:
            finalize(reservoir)
            return reservoir

        # Count only the reservoirs whose domain could have produced the selection
        if reservoir.selected is not None:
            for index, neighbor in reused:
                if index == selected_from or self._covers(reservoir.selected.point, contexts[index]):
                    normalization += neighbor.count
        finalize(reservoir, count=normalization)
        return reservoir

    def _covers(self, point: Any, context: Any) -> bool:
        shifted = self._spatial_shift(point, context)
        if shifted is None:
            return False
        return self._target_function(shifted[0], context) > 0.0

    def render_frame(self, contexts: Sequence[Any] | None = None) -> list[Reservoir]:
        """Run one frame of initial resampling and reuse for every unit.

        Args:
            contexts: Per-unit shading contexts for this frame. Defaults to
                the contexts given at construction.

        Returns:
            The finalized reservoirs of this frame, one per unit.

        Raises:
            ValueError: If no contexts are available or their count is wrong.
        """
        if contexts is None:
            if self._contexts is None:
                raise ValueError("no shading contexts given for this frame")
            contexts = self._contexts
        else:
            contexts = self._check_contexts(contexts)

        config = self.config
        rngs = spawn_random_sources(config.seed, self._num_units, frame=self._frame_index)
        previous = self._history.previous

        candidate_buffer = ReservoirBuffer(self._num_units, generation=self._history.generation)
        for unit in range(self._num_units):
            reservoir = self._initial(unit, contexts[unit], rngs[unit])
            if config.temporal:
                self._temporal(reservoir, previous.load(unit), contexts[unit], rngs[unit])
            finalize(reservoir)
            candidate_buffer.store(unit, reservoir)
        candidates = candidate_buffer.freeze()

        outputs = []
        for unit in range(self._num_units):
            if config.spatial:
                reservoir = self._spatial(unit, candidates, contexts, rngs[unit])
            else:
                reservoir = candidates.load(unit)
            self._history.current.store(unit, reservoir)
            outputs.append(reservoir)

        self._history.advance()
        self._frame_index += 1

        contributing = sum(r.output_weight > 0.0 for r in outputs)
        logging.debug(
            "Frame %d: %d/%d units contributing", self._frame_index, contributing, self._num_units
        )
        return outputs

    def render(
        self,
        num_frames: int,
        contexts: Sequence[Any] | None = None,
        callback: ProgressCallback | None = None,
    ) -> list[Reservoir]:
        """Render several frames, reusing history between them.

        Returns:
            The reservoirs of the last frame (empty list if ``num_frames`` <= 0).
        """
        outputs: list[Reservoir] = []
        for frames_done, outputs in enumerate(self.render_progressive(num_frames, contexts), 1):
            if callback is not None:
                callback(frames_done, num_frames)
        return outputs

    def render_progressive(
        self, num_frames: int, contexts: Sequence[Any] | None = None
    ) -> Generator[list[Reservoir], None, None]:
        """Render frames one at a time, yielding each frame's reservoirs."""
        if num_frames <= 0:
            return
        logging.info("Rendering %d frames for %d units", num_frames, self._num_units)
        for _ in range(num_frames):
            yield self.render_frame(contexts)

    def __repr__(self) -> str:
        return (
            f"RestirPipeline(num_units={self._num_units}, frame_index={self._frame_index}, "
            f"config={self.config!r})"
        )
