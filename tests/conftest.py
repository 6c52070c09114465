"""Shared fixtures for propagation tests."""

import numpy as np
import pytest

from propagation import (
    EARTH_MU,
    NumericalPropagator,
    PointMassGravity,
    RungeKutta4,
    SciPyIntegrator,
    SpacecraftState,
)

LEO_RADIUS = 7.0e6


def free_flight(state):
    """Motion without forces: constant velocity and mass."""
    ydot = np.zeros(7)
    ydot[0:3] = state.velocity
    return ydot


@pytest.fixture
def linear_state():
    """State moving along x at 1 m/s, so that x equals t."""
    return SpacecraftState(0.0, [0.0, 0.0, 0.0], [1.0, 0.0, 0.0])


@pytest.fixture
def make_linear_propagator(linear_state):
    """Factory of free-flight propagators with a fixed step integrator."""

    def make(step=10.0, state=None):
        propagator = NumericalPropagator(RungeKutta4(step), free_flight)
        propagator.reset_initial_state(
            linear_state if state is None else state
        )
        return propagator

    return make


@pytest.fixture
def leo_state():
    """Circular equatorial low Earth orbit state."""
    v = np.sqrt(EARTH_MU / LEO_RADIUS)
    return SpacecraftState(0.0, [LEO_RADIUS, 0.0, 0.0], [0.0, v, 0.0])


@pytest.fixture
def make_leo_propagator(leo_state):
    """Factory of point-mass gravity propagators."""

    def make(integrator=None, state=None):
        if integrator is None:
            integrator = SciPyIntegrator("DOP853", rtol=1e-10, atol=1e-6)
        propagator = NumericalPropagator(integrator, PointMassGravity())
        propagator.reset_initial_state(leo_state if state is None else state)
        return propagator

    return make
