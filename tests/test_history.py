"""Tests for double-buffered reservoir history.

Tests cover:
- Storing finalized reservoirs and loading non-aliasing copies
- Single-write-per-generation and freeze discipline
- Generation advance in FrameHistory
- Neighbour lookups
"""

import pytest

from src.restir.core.errors import LifecycleViolationError
from src.restir.core.history import FrameHistory, FrozenReservoirBuffer, ReservoirBuffer
from src.restir.core.random import SequenceRandom
from src.restir.core.reservoir import Reservoir, finalize, update
from src.restir.core.sample import Sample


def _finalized(point, weight=1.0):
    reservoir = Reservoir()
    update(reservoir, Sample(point, target_value=weight), weight, SequenceRandom([0.0]))
    finalize(reservoir)
    return reservoir


class TestReservoirBuffer:
    """Tests for the writable generation."""

    def test_store_and_freeze(self):
        """Test that stored reservoirs load back from the frozen view."""
        buffer = ReservoirBuffer(3)
        buffer.store(1, _finalized("a", 2.0))

        frozen = buffer.freeze()

        assert isinstance(frozen, FrozenReservoirBuffer)
        assert len(frozen) == 3
        assert frozen.load(1).selected.point == "a"
        assert frozen.load(1).is_finalized

    def test_rejects_unfinalized(self):
        """Test that only finalized reservoirs enter history."""
        buffer = ReservoirBuffer(1)

        with pytest.raises(LifecycleViolationError, match="finalized"):
            buffer.store(0, Reservoir())

    def test_rejects_second_write(self):
        """Test that each slot is written once per generation."""
        buffer = ReservoirBuffer(1)
        buffer.store(0, _finalized("a"))

        with pytest.raises(LifecycleViolationError, match="already written"):
            buffer.store(0, _finalized("b"))

    def test_rejects_write_after_freeze(self):
        """Test that a frozen generation is read-only."""
        buffer = ReservoirBuffer(2)
        buffer.freeze()

        assert buffer.is_frozen
        with pytest.raises(LifecycleViolationError, match="frozen"):
            buffer.store(0, _finalized("a"))

    def test_rejects_out_of_range(self):
        """Test index validation."""
        buffer = ReservoirBuffer(2)

        with pytest.raises(IndexError):
            buffer.store(2, _finalized("a"))

    def test_later_mutation_of_source_does_not_leak(self):
        """Test that the buffer stores a snapshot, not the reservoir itself."""
        reservoir = _finalized("a", 2.0)
        buffer = ReservoirBuffer(1)
        buffer.store(0, reservoir)
        reservoir.count = 99

        assert buffer.freeze().load(0).count == 1


class TestFrozenReservoirBuffer:
    """Tests for the read-only generation."""

    def test_unwritten_slot_loads_empty(self):
        """Test that missing slots load as empty finalized reservoirs."""
        frozen = FrozenReservoirBuffer.empty(2)

        reservoir = frozen.load(0)

        assert reservoir.selected is None
        assert reservoir.count == 0
        assert reservoir.is_finalized
        assert not reservoir.has_weight

    def test_load_returns_fresh_copies(self):
        """Test that readers cannot alias stored data."""
        buffer = ReservoirBuffer(1)
        buffer.store(0, _finalized("a"))
        frozen = buffer.freeze()

        first = frozen.load(0)
        first.count = 42

        assert frozen.load(0).count == 1
        assert first is not frozen.load(0)

    def test_neighbors_skips_out_of_range(self):
        """Test neighbour lookup at the border."""
        buffer = ReservoirBuffer(3)
        for index, point in enumerate("abc"):
            buffer.store(index, _finalized(point))
        frozen = buffer.freeze()

        at_border = frozen.neighbors(0, (-1, 1, 2))
        in_middle = frozen.neighbors(1, (-1, 1))

        assert [index for index, _ in at_border] == [1, 2]
        assert [r.selected.point for _, r in in_middle] == ["a", "c"]

    def test_iterates_reservoirs(self):
        """Test iteration over all slots."""
        buffer = ReservoirBuffer(2)
        buffer.store(0, _finalized("a"))
        reservoirs = list(buffer.freeze())

        assert len(reservoirs) == 2
        assert reservoirs[0].selected.point == "a"
        assert reservoirs[1].selected is None


class TestFrameHistory:
    """Tests for generation advance."""

    def test_initial_previous_is_empty(self):
        """Test that the first frame sees no history."""
        history = FrameHistory(2)

        assert history.generation == 0
        assert all(r.count == 0 for r in history.previous)

    def test_advance_publishes_current(self):
        """Test that advance freezes current into previous."""
        history = FrameHistory(2)
        history.current.store(0, _finalized("a"))
        writer = history.current

        published = history.advance()

        assert published is history.previous
        assert history.previous.load(0).selected.point == "a"
        assert history.generation == 1
        assert history.current is not writer
        assert writer.is_frozen

    def test_previous_is_stable_while_current_is_written(self):
        """Test the double-buffer discipline across a frame."""
        history = FrameHistory(1)
        history.current.store(0, _finalized("a"))
        history.advance()

        history.current.store(0, _finalized("b"))

        assert history.previous.load(0).selected.point == "a"
        history.advance()
        assert history.previous.load(0).selected.point == "b"

    def test_reset_drops_history(self):
        """Test that reset forgets the previous generation."""
        history = FrameHistory(1)
        history.current.store(0, _finalized("a"))
        history.advance()

        history.reset()

        assert history.previous.load(0).selected is None
