"""Tests for reservoir reuse.

Tests cover:
- combine weights, counts and selection probability
- Count capping in capped and uncapped regimes
- No-op and skip semantics (empty source, invalid shift)
- Parameter and lifecycle validation
- combine_shifted with target re-evaluation
- resample (initial RIS)
"""

import math

import pytest

from src.restir.core.combine import combine, combine_shifted, resample
from src.restir.core.errors import InvalidParameterError, LifecycleViolationError
from src.restir.core.random import SequenceRandom, make_random_source
from src.restir.core.reservoir import Reservoir, ReservoirState, finalize
from src.restir.core.sample import Sample
from src.restir.core.shift import identity_shift


def _active(point, weight_sum, count, target_value):
    return Reservoir(
        selected=Sample(point, target_value=target_value),
        weight_sum=weight_sum,
        count=count,
        state=ReservoirState.ACTIVE,
    )


def _never_called():
    raise AssertionError("random source must not be used")


class TestCombine:
    """Tests for combine."""

    def test_combine_weights_and_count(self, finalized_reservoir):
        """Test the worked example: A(5, 2) + B(3, 1) -> weight_sum 8, count 3."""
        dest = _active("a", weight_sum=5.0, count=2, target_value=5.0)
        source = finalized_reservoir("b", weight_sum=3.0, count=1, target_value=3.0)

        combine(dest, source, 3.0, 1.0, make_random_source(0), count_cap=100)

        assert dest.weight_sum == pytest.approx(8.0)
        assert dest.count == 3
        assert source.weight_sum == 3.0
        assert source.count == 1

    def test_combine_selection_probability(self, finalized_reservoir):
        """Test that the source's sample is taken with probability 3/8."""
        source = finalized_reservoir("b", weight_sum=3.0, count=1, target_value=3.0)
        rng = make_random_source(17)
        trials = 20000

        taken = 0
        for _ in range(trials):
            dest = _active("a", weight_sum=5.0, count=2, target_value=5.0)
            if combine(dest, source, 3.0, 1.0, rng, count_cap=100):
                taken += 1
                assert dest.selected.point == "b"

        assert taken / trials == pytest.approx(3.0 / 8.0, abs=0.015)

    def test_combine_replacement_threshold(self, finalized_reservoir):
        """Test the deterministic replacement rule with fixed draws."""
        source = finalized_reservoir("b", weight_sum=3.0, count=1, target_value=3.0)

        dest = _active("a", 5.0, 2, 5.0)
        assert combine(dest, source, 3.0, 1.0, SequenceRandom([0.37]), count_cap=10)

        dest = _active("a", 5.0, 2, 5.0)
        assert not combine(dest, source, 3.0, 1.0, SequenceRandom([0.38]), count_cap=10)
        assert dest.selected.point == "a"

    def test_weight_uses_target_output_weight_count_and_jacobian(self, finalized_reservoir):
        """Test w = target * W * M * J."""
        # W = 12 / (4 * 2) = 1.5
        source = finalized_reservoir("b", weight_sum=12.0, count=4, target_value=2.0)
        dest = Reservoir()

        combine(dest, source, 0.5, 2.0, SequenceRandom([0.0]), count_cap=100)

        assert dest.weight_sum == pytest.approx(0.5 * 1.5 * 4 * 2.0)
        assert dest.count == 4
        assert dest.selected.point == "b"
        assert dest.selected.target_value == 0.5

    def test_shifted_point_is_stored(self, finalized_reservoir):
        """Test that the selection takes the shifted point and re-evaluated target."""
        source = finalized_reservoir("b", weight_sum=1.0, count=1, target_value=1.0)
        dest = Reservoir()

        combine(dest, source, 2.0, 1.0, SequenceRandom([0.0]), 10, shifted_point="b'")

        assert dest.selected.point == "b'"
        assert dest.selected.target_value == 2.0

    def test_zero_target_counts_but_never_selects(self, finalized_reservoir):
        """Test that an invisible reused sample still contributes its count."""
        source = finalized_reservoir("b", weight_sum=3.0, count=4, target_value=1.0)
        dest = _active("a", 2.0, 1, 2.0)

        assert not combine(dest, source, 0.0, 1.0, SequenceRandom([0.0]), count_cap=100)

        assert dest.selected.point == "a"
        assert dest.weight_sum == 2.0
        assert dest.count == 5


class TestCountCap:
    """Tests for confidence capping."""

    def test_capped(self, finalized_reservoir):
        """Test that dest.count never exceeds the cap."""
        dest = _active("a", 5.0, 2, 5.0)
        source = finalized_reservoir("b", weight_sum=5.0, count=5, target_value=1.0)

        combine(dest, source, 1.0, 1.0, make_random_source(1), count_cap=2)

        assert dest.count == 2

    def test_capped_regardless_of_order(self, finalized_reservoir):
        """Test that the cap holds when the roles are swapped."""
        small = finalized_reservoir("a", weight_sum=5.0, count=2, target_value=5.0)
        dest = _active("b", 5.0, 5, 1.0)

        combine(dest, small, 5.0, 1.0, make_random_source(2), count_cap=2)

        assert dest.count == 2

    @pytest.mark.parametrize("count_cap, expected", [(3, 3), (7, 7), (1000, 7)])
    def test_capped_and_uncapped_regimes(self, finalized_reservoir, count_cap, expected):
        """Test the merged count below, at and above the cap."""
        dest = _active("a", 5.0, 2, 5.0)
        source = finalized_reservoir("b", weight_sum=5.0, count=5, target_value=1.0)

        combine(dest, source, 1.0, 1.0, make_random_source(3), count_cap=count_cap)

        assert dest.count == expected

    @pytest.mark.parametrize("count_cap", [0, -1, 2.5, None, True])
    def test_rejects_invalid_cap(self, finalized_reservoir, count_cap):
        """Test that the cap is a required positive integer."""
        source = finalized_reservoir("b", 1.0, 1, 1.0)

        with pytest.raises(InvalidParameterError):
            combine(Reservoir(), source, 1.0, 1.0, _never_called, count_cap=count_cap)


class TestCombineNoOps:
    """Tests for reuses that must leave the destination unchanged."""

    def test_empty_source_is_noop(self):
        """Test that an empty finalized source leaves dest unchanged."""
        source = Reservoir()
        finalize(source)
        dest = _active("a", 2.0, 3, 1.0)
        before = dest.copy()

        assert not combine(dest, source, 1.0, 1.0, _never_called, count_cap=10)
        assert dest == before

    def test_zero_weight_source_is_noop(self):
        """Test that a source with weight_sum 0 leaves dest unchanged."""
        source = Reservoir(selected=Sample("b", 0.0), weight_sum=0.0, count=3)
        finalize(source)
        dest = _active("a", 2.0, 3, 1.0)
        before = dest.copy()

        combine(dest, source, 1.0, 1.0, _never_called, count_cap=10)

        assert dest == before

    def test_invalid_shift_skips_reuse(self, finalized_reservoir):
        """Test that a shift returning None leaves dest entirely unchanged."""
        source = finalized_reservoir("b", 3.0, 4, 1.0)
        dest = _active("a", 2.0, 3, 1.0)
        before = dest.copy()

        def target(point, context):
            raise AssertionError("target must not be evaluated for an invalid shift")

        replaced = combine_shifted(
            dest, source, "ctx", lambda point, ctx: None, target, _never_called, count_cap=10
        )

        assert not replaced
        assert dest == before
        assert dest.count == 3


class TestCombineValidation:
    """Tests for parameter and lifecycle validation."""

    @pytest.mark.parametrize("jacobian", [0.0, -1.0, math.inf, math.nan])
    def test_rejects_invalid_jacobian(self, finalized_reservoir, jacobian):
        """Test that non-positive or non-finite Jacobians are rejected."""
        source = finalized_reservoir("b", 3.0, 1, 3.0)
        dest = _active("a", 5.0, 2, 5.0)
        before = dest.copy()

        with pytest.raises(InvalidParameterError, match="jacobian"):
            combine(dest, source, 3.0, jacobian, _never_called, count_cap=10)

        assert dest == before

    @pytest.mark.parametrize("target", [-0.5, math.nan])
    def test_rejects_invalid_target(self, finalized_reservoir, target):
        """Test that invalid re-evaluated targets are rejected."""
        source = finalized_reservoir("b", 3.0, 1, 3.0)

        with pytest.raises(InvalidParameterError):
            combine(Reservoir(), source, target, 1.0, _never_called, count_cap=10)

    def test_rejects_finalized_dest(self, finalized_reservoir):
        """Test that a finalized destination cannot be combined into."""
        source = finalized_reservoir("b", 3.0, 1, 3.0)
        dest = finalized_reservoir("a", 5.0, 2, 5.0)

        with pytest.raises(LifecycleViolationError):
            combine(dest, source, 3.0, 1.0, _never_called, count_cap=10)

    def test_rejects_unfinalized_source(self):
        """Test that only finalized reservoirs can be reused."""
        source = _active("b", 3.0, 1, 3.0)

        with pytest.raises(LifecycleViolationError, match="finalized"):
            combine(Reservoir(), source, 3.0, 1.0, _never_called, count_cap=10)


class TestCombineShifted:
    """Tests for combine_shifted."""

    def test_re_evaluates_target_in_destination(self, finalized_reservoir):
        """Test that the target is evaluated at the shifted point under dest's context."""
        source = finalized_reservoir(1.0, weight_sum=2.0, count=2, target_value=1.0)
        calls = []

        def shift(point, context):
            return point + context, 0.5

        def target(point, context):
            calls.append((point, context))
            return 4.0

        dest = Reservoir()
        combine_shifted(dest, source, 10.0, shift, target, SequenceRandom([0.0]), count_cap=50)

        assert calls == [(11.0, 10.0)]
        # W_source = 2 / (2 * 1) = 1; w = 4 * 1 * 2 * 0.5
        assert dest.weight_sum == pytest.approx(4.0)
        assert dest.selected.point == 11.0
        assert dest.count == 2

    def test_identity_shift_matches_combine(self, finalized_reservoir):
        """Test that combine_shifted with identity_shift equals a plain combine."""
        source = finalized_reservoir("b", 3.0, 1, 3.0)

        a = _active("a", 5.0, 2, 5.0)
        b = _active("a", 5.0, 2, 5.0)
        combine(a, source, 3.0, 1.0, SequenceRandom([0.2]), count_cap=10)
        combine_shifted(b, source, None, identity_shift, lambda p, c: 3.0, SequenceRandom([0.2]), 10)

        assert a == b


class TestResample:
    """Tests for initial resampling."""

    def test_streams_all_candidates(self):
        """Test that every candidate is streamed with target / pdf."""
        candidates = [
            Sample("a", target_value=1.0, source_pdf=0.5),
            Sample("b", target_value=3.0, source_pdf=0.25),
        ]

        reservoir = resample(candidates, SequenceRandom([0.0, 0.99]))

        assert reservoir.weight_sum == pytest.approx(2.0 + 12.0)
        assert reservoir.count == 2
        assert reservoir.selected.point == "a"
        assert not reservoir.is_finalized

    def test_continues_existing_reservoir(self):
        """Test streaming more candidates into a given reservoir."""
        reservoir = resample([Sample("a", 1.0)], SequenceRandom([0.0]))

        same = resample([Sample("b", 1.0)], SequenceRandom([0.9]), reservoir=reservoir)

        assert same is reservoir
        assert reservoir.count == 2
