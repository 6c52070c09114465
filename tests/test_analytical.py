"""Tests for propagation.analytical module."""

import numpy as np
import pytest

from propagation import (
    EARTH_MU,
    DateDetector,
    FunctionalDetector,
    FunctionStateProvider,
    KeplerianPropagator,
    PropagationError,
    RecordAndContinue,
    ResetStateOnEvent,
    SpacecraftState,
    StopOnEvent,
)
from propagation.analytical import stumpff_c, stumpff_s, universal_kepler


def circular_period(state):
    radius = np.linalg.norm(state.position)
    return 2 * np.pi * np.sqrt(radius**3 / EARTH_MU)


def test_kepler_full_period(leo_state):
    """Test that a circular orbit closes after one period."""
    propagator = KeplerianPropagator(leo_state)
    final = propagator.propagate(circular_period(leo_state))
    np.testing.assert_allclose(final.position, leo_state.position, atol=1e-3)
    np.testing.assert_allclose(final.velocity, leo_state.velocity, atol=1e-6)
    assert final.mass == leo_state.mass


@pytest.mark.parametrize("factor", [0.8, 1.2])
def test_kepler_matches_numerical(make_leo_propagator, leo_state, factor):
    """Test elliptic orbits against numerical integration."""
    state = leo_state.with_position_velocity(
        leo_state.position, factor * leo_state.velocity
    )
    kepler = KeplerianPropagator(state)
    numerical = make_leo_propagator(state=state)
    for t in [500.0, 2500.0, 4000.0]:
        expected = numerical.propagate(t)
        actual = kepler.propagate(t)
        np.testing.assert_allclose(actual.position, expected.position, atol=1.0)
        np.testing.assert_allclose(actual.velocity, expected.velocity, atol=1e-3)


def test_kepler_hyperbolic(make_leo_propagator, leo_state):
    """Test an escape trajectory against numerical integration."""
    radius = np.linalg.norm(leo_state.position)
    v_escape = np.sqrt(2 * EARTH_MU / radius)
    state = leo_state.with_position_velocity(
        leo_state.position, [0.0, 1.5 * v_escape, 0.0]
    )
    kepler = KeplerianPropagator(state)
    final = kepler.propagate(3000.0)
    expected = make_leo_propagator(state=state).propagate(3000.0)

    np.testing.assert_allclose(final.position, expected.position, atol=10.0)
    speed = np.linalg.norm(final.velocity)
    radius = np.linalg.norm(final.position)
    assert 0.5 * speed**2 > EARTH_MU / radius


def test_kepler_backward_and_back(leo_state):
    propagator = KeplerianPropagator(leo_state)
    earlier = propagator.propagate(-1500.0)
    assert earlier.t == -1500.0
    back = propagator.propagate(0.0)
    np.testing.assert_allclose(back.position, leo_state.position, atol=1e-4)


def test_kepler_validation(leo_state):
    with pytest.raises(ValueError, match="mu"):
        KeplerianPropagator(leo_state, mu=0.0)


def test_no_integrated_additional_states(leo_state):
    propagator = KeplerianPropagator(leo_state)
    assert not hasattr(propagator, "add_additional_derivatives_provider")


def test_additional_state_providers(leo_state):
    """Test providers and unmanaged states on analytical states."""
    state = leo_state.with_additional_state("tag", [3.0])
    propagator = KeplerianPropagator(state)
    propagator.add_additional_state_provider(
        FunctionStateProvider("radius", lambda s: np.linalg.norm(s.position))
    )
    final = propagator.propagate(1234.0)
    np.testing.assert_allclose(
        final.get_additional_state("radius"),
        [np.linalg.norm(leo_state.position)],
        rtol=1e-10,
    )
    np.testing.assert_array_equal(final.get_additional_state("tag"), [3.0])


def test_kepler_events(leo_state):
    """Test node crossings located within the single analytical step."""
    period = circular_period(leo_state)
    recorder = RecordAndContinue()
    propagator = KeplerianPropagator(leo_state)
    propagator.add_event_detector(
        FunctionalDetector(
            lambda s: s.position[1], max_check=300.0, handler=recorder
        )
    )
    propagator.propagate(1.2 * period)

    times = [e.state.t for e in recorder.events]
    np.testing.assert_allclose(times, [0.5 * period, period], atol=1e-6)
    assert [e.increasing for e in recorder.events] == [False, True]


def test_kepler_stop_on_event(leo_state):
    period = circular_period(leo_state)
    propagator = KeplerianPropagator(leo_state)
    propagator.add_event_detector(
        FunctionalDetector(
            lambda s: s.position[1], max_check=300.0, handler=StopOnEvent()
        )
    )
    final = propagator.propagate(period - 100.0)
    assert final.t == pytest.approx(0.5 * period, abs=1e-6)
    assert propagator.initial_state is final


def test_kepler_reset_state(leo_state):
    """Test that a velocity change re-seeds the analytical model."""
    resets = []

    def boost(state):
        new_state = state.with_position_velocity(
            state.position, 1.1 * state.velocity
        )
        resets.append(new_state)
        return new_state

    propagator = KeplerianPropagator(leo_state)
    propagator.add_event_detector(
        DateDetector(1000.0, handler=ResetStateOnEvent(boost))
    )
    final = propagator.propagate(2000.0)

    assert len(resets) == 1
    reset = resets[0]
    assert reset.t == pytest.approx(1000.0, abs=1e-6)
    r, v = universal_kepler(
        reset.position, reset.velocity, 2000.0 - reset.t, EARTH_MU
    )
    np.testing.assert_allclose(final.position, r, atol=1e-6)
    np.testing.assert_allclose(final.velocity, v, atol=1e-9)


def test_universal_kepler_zero_dt():
    r0 = np.array([7.0e6, 0.0, 0.0])
    v0 = np.array([0.0, 7.5e3, 0.0])
    r, v = universal_kepler(r0, v0, 0.0, EARTH_MU)
    np.testing.assert_array_equal(r, r0)
    assert r is not r0


def test_universal_kepler_no_convergence():
    r0 = np.array([7.0e6, 0.0, 0.0])
    v0 = np.array([0.0, 9.0e3, 0.0])
    with pytest.raises(PropagationError, match="did not converge"):
        universal_kepler(r0, v0, 3000.0, EARTH_MU, max_iter=1)


def test_stumpff_series_continuity():
    for z in [-1e-3, 1e-3]:
        below = z * (1 - 1e-9)
        above = z * (1 + 1e-9)
        assert stumpff_c(below) == pytest.approx(stumpff_c(above), rel=1e-9)
        assert stumpff_s(below) == pytest.approx(stumpff_s(above), rel=1e-9)
    assert stumpff_c(0.0) == 0.5
    assert stumpff_s(0.0) == pytest.approx(1 / 6)


def test_kepler_state_frame_and_time():
    state = SpacecraftState(
        100.0, [7.0e6, 0.0, 0.0], [0.0, 7.5e3, 0.0], frame="EME2000", mass=500.0
    )
    final = KeplerianPropagator(state).propagate(160.0)
    assert final.t == 160.0
    assert final.frame == "EME2000"
    assert final.mass == 500.0


def test_kepler_event_at_target(leo_state):
    recorder = RecordAndContinue()
    propagator = KeplerianPropagator(leo_state)
    propagator.add_event_detector(DateDetector(1000.0, handler=recorder))
    final = propagator.propagate(1000.0)
    assert final.t == 1000.0
    assert [e.state.t for e in recorder.events] == [1000.0]
