"""Core reservoir resampling module.

Components:
    errors: Error taxonomy (invalid parameters, lifecycle violations)
    sample: Immutable candidate samples and the target function contract
    random: Injectable, seedable uniform random sources
    reservoir: Reservoir state, streaming update and finalize
    combine: Initial resampling and temporal/spatial reuse
    shift: Shift mappings and their Jacobians
    history: Double-buffered frame history
    pipeline: Per-frame initial resampling and reuse over many units
    field: Taichi-backed data-parallel reservoirs

All operations are synchronous and pure apart from the reservoir they write;
randomness is always passed in explicitly.
"""

from .combine import combine, combine_shifted, resample
from .errors import InvalidParameterError, LifecycleViolationError, RestirError
from .history import FrameHistory, FrozenReservoirBuffer, ReservoirBuffer
from .pipeline import RestirConfig, RestirPipeline, shade
from .random import (
    RandomSource,
    SequenceRandom,
    make_generator,
    make_random_source,
    spawn_random_sources,
)
from .reservoir import (
    Reservoir,
    ReservoirRecord,
    ReservoirState,
    add_empty_sample,
    clamp_history,
    collapse,
    finalize,
    invalidate,
    merge_history,
    unmerge,
    unmerge_history,
    update,
)
from .sample import Sample, TargetFunction
from .shift import (
    LightVertex,
    ReconnectionPoint,
    ReconnectionShift,
    ShadingContext,
    ShiftMapping,
    identity_shift,
)

# Note: field is NOT imported here; it allocates Taichi fields and needs
# ti.init() to have run first. Import it directly:
#   from src.restir.core.field import ReservoirField

__all__ = [
    # Errors
    "RestirError",
    "InvalidParameterError",
    "LifecycleViolationError",
    # Samples and randomness
    "Sample",
    "TargetFunction",
    "RandomSource",
    "SequenceRandom",
    "make_random_source",
    "make_generator",
    "spawn_random_sources",
    # Reservoir
    "Reservoir",
    "ReservoirRecord",
    "ReservoirState",
    "update",
    "finalize",
    "add_empty_sample",
    "merge_history",
    "clamp_history",
    "collapse",
    "invalidate",
    "unmerge",
    "unmerge_history",
    # Reuse
    "combine",
    "combine_shifted",
    "resample",
    "ShiftMapping",
    "identity_shift",
    "ReconnectionShift",
    "ReconnectionPoint",
    "LightVertex",
    "ShadingContext",
    # History and pipeline
    "FrameHistory",
    "FrozenReservoirBuffer",
    "ReservoirBuffer",
    "RestirConfig",
    "RestirPipeline",
    "shade",
]
