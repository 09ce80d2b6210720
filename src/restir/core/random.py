"""Injectable random sources.

Every operation that draws randomness takes a ``RandomSource`` explicitly:
a zero-argument callable returning a uniform float in [0, 1). Sources are
never shared between units, so results are reproducible given a seed, a
frame index and a deterministic unit ordering.

Example:
    >>> from src.restir.core.random import make_random_source, spawn_random_sources
    >>> rng = make_random_source(42)
    >>> 0.0 <= rng() < 1.0
    True
    >>> per_unit = spawn_random_sources(seed=7, count=64, frame=3)
"""

from collections.abc import Callable, Iterable

import numpy as np

from src.restir.core.errors import InvalidParameterError

# Type alias for the uniform draw collaborator
RandomSource = Callable[[], float]


def make_random_source(seed: int | np.random.SeedSequence | None = None) -> RandomSource:
    """Create a seeded uniform source backed by a numpy Generator.

    Args:
        seed: Seed or SeedSequence. ``None`` draws fresh OS entropy.

    Returns:
        A callable returning floats in [0, 1).
    """
    return np.random.default_rng(seed).random


def spawn_random_sources(seed: int, count: int, frame: int = 0) -> list[RandomSource]:
    """Create independent per-unit sources for one frame.

    The streams are derived from ``(seed, frame)`` with ``SeedSequence.spawn``
    so no two units (and no two frames) share a generator.

    Args:
        seed: Base seed of the run.
        count: Number of units.
        frame: Frame index mixed into the entropy.

    Returns:
        A list of ``count`` independent random sources.
    """
    if count < 0:
        raise InvalidParameterError(f"count must be non-negative, got {count}")
    root = np.random.SeedSequence(entropy=seed, spawn_key=(frame,))
    return [make_random_source(child) for child in root.spawn(count)]


def make_generator(seed: int, frame: int = 0) -> np.random.Generator:
    """Create a numpy Generator for batch draws, keyed like ``spawn_random_sources``."""
    return np.random.default_rng(np.random.SeedSequence(entropy=seed, spawn_key=(frame,)))


class SequenceRandom:
    """A random source that replays a fixed sequence of draws.

    Useful for tests that need to force (or forbid) a replacement.

    Attributes:
        draws: Number of values consumed so far.
    """

    def __init__(self, values: Iterable[float]) -> None:
        self._values = [float(v) for v in values]
        for value in self._values:
            if not 0.0 <= value < 1.0:
                raise InvalidParameterError(f"uniform draws must lie in [0, 1), got {value}")
        self.draws = 0

    def __call__(self) -> float:
        if self.draws >= len(self._values):
            raise RuntimeError(f"SequenceRandom exhausted after {self.draws} draws")
        value = self._values[self.draws]
        self.draws += 1
        return value

    def __repr__(self) -> str:
        return f"SequenceRandom(remaining={len(self._values) - self.draws})"
