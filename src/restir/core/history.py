"""Double-buffered reservoir storage across frames.

Reservoirs are read by other units (spatial reuse) and by the next frame
(temporal reuse) only after they are finalized and frozen. Each buffer
generation has a single set of writers that produce every slot at most once;
freezing the buffer is the generation barrier after which it is read-only
and may be shared freely. No locking is needed under this discipline.

Example:
    >>> from src.restir.core.history import FrameHistory
    >>> history = FrameHistory(size=4)
    >>> history.current.store(0, finalized_reservoir)
    >>> history.advance()
    >>> previous = history.previous.load(0)
"""

from collections.abc import Iterable, Iterator, Sequence

from absl import logging

from src.restir.core.errors import InvalidParameterError, LifecycleViolationError
from src.restir.core.reservoir import Reservoir, ReservoirRecord


def _check_index(index: int, size: int) -> None:
    if not 0 <= index < size:
        raise IndexError(f"reservoir index {index} out of range for buffer of size {size}")


class FrozenReservoirBuffer:
    """Read-only generation of finalized reservoir records.

    Loading a slot returns a fresh finalized Reservoir, so readers can never
    alias (or mutate) the stored data.
    """

    def __init__(self, records: Sequence[ReservoirRecord | None], generation: int = 0) -> None:
        self._records = tuple(records)
        self._generation = generation

    @classmethod
    def empty(cls, size: int, generation: int = 0) -> "FrozenReservoirBuffer":
        """Create a generation in which every slot is unwritten."""
        return cls([None] * size, generation)

    @property
    def generation(self) -> int:
        """Frame generation that produced this buffer."""
        return self._generation

    @property
    def records(self) -> tuple[ReservoirRecord | None, ...]:
        """The stored records (None for slots never written)."""
        return self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[Reservoir]:
        for index in range(len(self._records)):
            yield self.load(index)

    def load(self, index: int) -> Reservoir:
        """Rebuild the finalized reservoir stored at ``index``.

        Slots that were never written load as empty finalized reservoirs
        (no contribution, zero confidence).
        """
        _check_index(index, len(self._records))
        record = self._records[index]
        if record is None:
            return Reservoir.from_record(ReservoirRecord(None, 0.0, 0, 0.0))
        return Reservoir.from_record(record)

    def neighbors(self, index: int, offsets: Iterable[int]) -> list[tuple[int, Reservoir]]:
        """Load the in-range neighbours of ``index`` at the given offsets.

        Returns:
            List of (neighbor_index, reservoir) pairs; out-of-range offsets
            are skipped.
        """
        result = []
        for offset in offsets:
            neighbor = index + offset
            if 0 <= neighbor < len(self._records) and neighbor != index:
                result.append((neighbor, self.load(neighbor)))
        return result

    def __repr__(self) -> str:
        written = sum(record is not None for record in self._records)
        return (
            f"FrozenReservoirBuffer(size={len(self)}, written={written}, "
            f"generation={self._generation})"
        )


class ReservoirBuffer:
    """Writable generation of reservoir records.

    Only finalized reservoirs may be stored, and each slot at most once per
    generation. Once frozen, the buffer rejects further writes.
    """

    def __init__(self, size: int, generation: int = 0) -> None:
        if size < 0:
            raise InvalidParameterError(f"buffer size must be non-negative, got {size}")
        self._records: list[ReservoirRecord | None] = [None] * size
        self._generation = generation
        self._frozen = False

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def __len__(self) -> int:
        return len(self._records)

    def store(self, index: int, reservoir: Reservoir) -> None:
        """Write a finalized reservoir into slot ``index``.

        Raises:
            IndexError: If the index is out of range.
            LifecycleViolationError: If the reservoir is not finalized, the
                slot was already written this generation, or the buffer is
                frozen.
        """
        _check_index(index, len(self._records))
        if self._frozen:
            raise LifecycleViolationError(
                f"buffer generation {self._generation} is frozen and cannot be written"
            )
        if not reservoir.is_finalized:
            raise LifecycleViolationError("only finalized reservoirs can be stored in history")
        if self._records[index] is not None:
            raise LifecycleViolationError(
                f"slot {index} already written in generation {self._generation}"
            )
        self._records[index] = reservoir.to_record()

    def freeze(self) -> FrozenReservoirBuffer:
        """Close this generation for writing and return its read-only view."""
        self._frozen = True
        return FrozenReservoirBuffer(self._records, self._generation)


class FrameHistory:
    """Two buffer generations: the previous frame's (frozen) and the current one.

    ``previous`` is read by temporal reuse while ``current`` is being
    written; ``advance()`` freezes ``current`` into ``previous`` and opens a
    new generation.

    Attributes:
        size: Number of units per generation.
    """

    def __init__(self, size: int) -> None:
        self.size = size
        self._generation = 0
        self._previous = FrozenReservoirBuffer.empty(size, generation=-1)
        self._current = ReservoirBuffer(size, generation=0)

    @property
    def generation(self) -> int:
        """Generation number of the buffer currently being written."""
        return self._generation

    @property
    def previous(self) -> FrozenReservoirBuffer:
        return self._previous

    @property
    def current(self) -> ReservoirBuffer:
        return self._current

    def advance(self) -> FrozenReservoirBuffer:
        """Generation barrier: publish the current buffer and start a new one.

        Returns:
            The newly frozen buffer (now ``previous``).
        """
        self._previous = self._current.freeze()
        self._generation += 1
        self._current = ReservoirBuffer(self.size, generation=self._generation)
        logging.debug("Reservoir history advanced to generation %d", self._generation)
        return self._previous

    def reset(self) -> None:
        """Drop all history (e.g. after a camera cut)."""
        self._previous = FrozenReservoirBuffer.empty(self.size, generation=self._generation - 1)
        self._current = ReservoirBuffer(self.size, generation=self._generation)

    def __repr__(self) -> str:
        return f"FrameHistory(size={self.size}, generation={self._generation})"
