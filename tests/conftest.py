"""Pytest configuration for reservoir tests.

This module provides shared fixtures for all test modules, including
Taichi initialization which must happen once per session.
"""

import pytest
import taichi as ti


@pytest.fixture(scope="session", autouse=True)
def init_taichi_session():
    """Initialize Taichi once for the entire test session.

    Using session scope prevents multiple ti.init() calls which can cause
    segmentation faults due to Taichi runtime conflicts.
    """
    ti.init(arch=ti.cpu, random_seed=42)
    yield


@pytest.fixture
def rng():
    """A seeded uniform source, fresh for each test."""
    from src.restir.core.random import make_random_source

    return make_random_source(1234)


@pytest.fixture
def finalized_reservoir():
    """Factory building a finalized reservoir with given statistics."""
    from src.restir.core.reservoir import Reservoir, ReservoirState, finalize
    from src.restir.core.sample import Sample

    def _make(point, weight_sum, count, target_value):
        reservoir = Reservoir(
            selected=Sample(point, target_value=target_value),
            weight_sum=weight_sum,
            count=count,
            state=ReservoirState.ACTIVE,
        )
        finalize(reservoir)
        return reservoir

    return _make
