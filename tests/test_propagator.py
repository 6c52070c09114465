"""Tests for propagation.propagator module."""

import numpy as np
import pytest

from propagation import (
    EARTH_MU,
    Attitude,
    CombinedDerivatives,
    ConfigurationError,
    ConstantStateProvider,
    FunctionalDetector,
    FunctionDerivativesProvider,
    FunctionStateProvider,
    NumericalPropagator,
    PointMassGravity,
    RecordAndContinue,
    RungeKutta4,
    SpacecraftState,
)


class GridRecorder:
    """Fixed-step handler keeping track of every call."""

    def __init__(self):
        self.inits = []
        self.states = []
        self.finals = []

    def init(self, initial_state, target, step):
        self.inits.append((initial_state.t, target, step))
        self.states = []

    def handle_step(self, state):
        self.states.append(state)

    def finish(self, final_state):
        self.finals.append(final_state)

    @property
    def times(self):
        return [s.t for s in self.states]


def orbital_energy(state):
    return (
        0.5 * np.dot(state.velocity, state.velocity)
        - EARTH_MU / np.linalg.norm(state.position)
    )


def test_propagate_linear(make_linear_propagator):
    """Test free flight with a fixed-step integrator."""
    propagator = make_linear_propagator()
    final = propagator.propagate(95.0)
    assert final.t == 95.0
    np.testing.assert_allclose(final.position, [95.0, 0.0, 0.0])
    assert propagator.initial_state is final
    assert propagator.evaluations > 0


def test_propagate_backward(make_linear_propagator):
    propagator = make_linear_propagator()
    final = propagator.propagate(-42.0)
    assert final.t == -42.0
    np.testing.assert_allclose(final.position, [-42.0, 0.0, 0.0])


def test_propagate_to_initial_time(make_linear_propagator, linear_state):
    propagator = make_linear_propagator()
    final = propagator.propagate(0.0)
    assert final.t == 0.0
    np.testing.assert_array_equal(final.position, linear_state.position)


def test_missing_initial_state():
    propagator = NumericalPropagator(RungeKutta4(1.0), PointMassGravity())
    assert propagator.initial_state is None
    with pytest.raises(ConfigurationError, match="no initial state"):
        propagator.propagate(10.0)


def test_leo_energy_over_one_period(make_leo_propagator, leo_state):
    """Test that a full circular orbit comes back to its start."""
    radius = np.linalg.norm(leo_state.position)
    period = 2 * np.pi * np.sqrt(radius**3 / EARTH_MU)
    propagator = make_leo_propagator()
    final = propagator.propagate(period)

    np.testing.assert_allclose(
        orbital_energy(final), orbital_energy(leo_state), rtol=1e-8
    )
    np.testing.assert_allclose(final.position, leo_state.position, atol=10.0)
    np.testing.assert_allclose(final.velocity, leo_state.velocity, atol=1e-2)
    assert final.mass == leo_state.mass


def test_provider_registration():
    """Test managed names and duplicate detection."""
    propagator = NumericalPropagator(RungeKutta4(1.0), PointMassGravity())
    propagator.add_additional_state_provider(ConstantStateProvider("area", 1.0))
    propagator.add_additional_derivatives_provider(
        FunctionDerivativesProvider("fuel", 1, lambda s: [-1.0])
    )

    assert propagator.get_managed_additional_states() == ["area", "fuel"]
    assert propagator.is_additional_state_managed("fuel")
    assert not propagator.is_additional_state_managed("other")
    assert len(propagator.get_additional_state_providers()) == 1
    assert len(propagator.get_additional_derivatives_providers()) == 1

    with pytest.raises(ConfigurationError, match="already registered"):
        propagator.add_additional_state_provider(
            ConstantStateProvider("area", 2.0)
        )
    with pytest.raises(ConfigurationError, match="already registered"):
        propagator.add_additional_derivatives_provider(
            FunctionDerivativesProvider("area", 1, lambda s: [0.0])
        )
    with pytest.raises(ConfigurationError, match="already registered"):
        propagator.add_additional_state_provider(
            ConstantStateProvider("fuel", 2.0)
        )


def test_provider_dependencies_along_propagation(make_leo_propagator):
    """Test that dependent providers use fresh values at every time."""
    propagator = make_leo_propagator()
    propagator.add_additional_state_provider(
        FunctionStateProvider(
            "double",
            lambda s: 2 * s.get_additional_state("radius"),
            depends_on=["radius"],
        )
    )
    propagator.add_additional_state_provider(
        FunctionStateProvider("radius", lambda s: np.linalg.norm(s.position))
    )
    recorder = GridRecorder()
    propagator.set_step_handler(150.0, recorder)
    final = propagator.propagate(1000.0)

    assert len(recorder.states) == 8
    for state in recorder.states + [final]:
        radius = np.linalg.norm(state.position)
        np.testing.assert_allclose(
            state.get_additional_state("radius"), [radius], rtol=1e-14
        )
        np.testing.assert_allclose(
            state.get_additional_state("double"), [2 * radius], rtol=1e-14
        )


def test_provider_dependency_on_moving_state(make_linear_propagator):
    """Test a provider chain on a state whose radius changes."""
    propagator = make_linear_propagator()
    propagator.add_additional_state_provider(
        FunctionStateProvider(
            "half",
            lambda s: 0.5 * s.get_additional_state("x"),
            depends_on=["x"],
        )
    )
    propagator.add_additional_state_provider(
        FunctionStateProvider("x", lambda s: s.position[0])
    )
    recorder = GridRecorder()
    propagator.set_step_handler(5.0, recorder)
    propagator.propagate(40.0)

    for state in recorder.states:
        np.testing.assert_allclose(
            state.get_additional_state("half"), [0.5 * state.t], atol=1e-12
        )


def test_integrated_additional_state(make_linear_propagator, linear_state):
    """Test integration of a clock alongside the main state."""
    state = linear_state.with_additional_state("clock", [0.0])
    propagator = make_linear_propagator(state=state)
    propagator.add_additional_derivatives_provider(
        FunctionDerivativesProvider("clock", 1, lambda s: [1.0])
    )
    recorder = GridRecorder()
    propagator.set_step_handler(7.5, recorder)
    final = propagator.propagate(100.0)

    np.testing.assert_allclose(final.get_additional_state("clock"), [100.0])
    np.testing.assert_array_equal(
        final.get_additional_state_derivative("clock"), [1.0]
    )
    for s in recorder.states:
        np.testing.assert_allclose(
            s.get_additional_state("clock"), [s.t], atol=1e-9
        )


def test_integrated_state_missing_initial_value(make_linear_propagator):
    propagator = make_linear_propagator()
    propagator.add_additional_derivatives_provider(
        FunctionDerivativesProvider("clock", 1, lambda s: [1.0])
    )
    with pytest.raises(ConfigurationError, match="clock"):
        propagator.propagate(10.0)


def test_derivatives_provider_dependencies(make_linear_propagator, linear_state):
    """Test a derivatives provider waiting for another derivative."""
    state = linear_state.with_additional_state(
        "a", [0.0]
    ).with_additional_state("b", [0.0])
    propagator = make_linear_propagator(state=state)
    propagator.add_additional_derivatives_provider(
        FunctionDerivativesProvider(
            "b",
            1,
            lambda s: 2 * s.get_additional_state_derivative("a"),
            depends_on=["a"],
        )
    )
    propagator.add_additional_derivatives_provider(
        FunctionDerivativesProvider("a", 1, lambda s: [3.0])
    )
    final = propagator.propagate(10.0)
    np.testing.assert_allclose(final.get_additional_state("a"), [30.0])
    np.testing.assert_allclose(final.get_additional_state("b"), [60.0])


def test_wrong_derivatives_size(make_linear_propagator, linear_state):
    state = linear_state.with_additional_state("q", [0.0, 0.0])
    propagator = make_linear_propagator(state=state)
    propagator.add_additional_derivatives_provider(
        FunctionDerivativesProvider("q", 2, lambda s: [1.0])
    )
    with pytest.raises(ConfigurationError, match="returned 1 derivatives"):
        propagator.propagate(10.0)


def test_wrong_main_state_equations_shape(linear_state):
    propagator = NumericalPropagator(RungeKutta4(1.0), lambda s: np.zeros(6))
    propagator.reset_initial_state(linear_state)
    with pytest.raises(ConfigurationError, match="main state equations"):
        propagator.propagate(1.0)


def test_main_state_increments(make_linear_propagator, linear_state):
    """Test a thrust-like provider adding to the main state derivatives."""
    state = linear_state.with_additional_state("fuel", [100.0])
    propagator = make_linear_propagator(step=2.0, state=state)
    increments = np.zeros(7)
    increments[3] = 0.1  # acceleration along x
    increments[6] = -1.0  # mass flow

    propagator.add_additional_derivatives_provider(
        FunctionDerivativesProvider(
            "fuel", 1, lambda s: CombinedDerivatives([-1.0], increments)
        )
    )
    final = propagator.propagate(10.0)

    np.testing.assert_allclose(final.position, [15.0, 0.0, 0.0])
    np.testing.assert_allclose(final.velocity, [2.0, 0.0, 0.0])
    np.testing.assert_allclose(final.mass, 990.0)
    np.testing.assert_allclose(final.get_additional_state("fuel"), [90.0])


def test_propagate_from_start_time(make_linear_propagator):
    """Test that reaching the start time triggers no events nor handlers."""
    propagator = make_linear_propagator()
    early = RecordAndContinue()
    late = RecordAndContinue()
    propagator.add_event_detector(
        FunctionalDetector(lambda s: s.position[0] - 5.0, handler=early)
    )
    propagator.add_event_detector(
        FunctionalDetector(lambda s: s.position[0] - 15.0, handler=late)
    )
    recorder = GridRecorder()
    propagator.set_step_handler(5.0, recorder)

    final = propagator.propagate(10.0, 20.0)

    assert final.t == 20.0
    assert early.events == []
    assert len(late.events) == 1
    assert late.events[0].state.t == pytest.approx(15.0, abs=1e-6)
    assert recorder.inits == [(10.0, 20.0, 5.0)]
    assert recorder.times == [10.0, 15.0, 20.0]


def test_step_normalizer_grid(make_linear_propagator):
    """Test grid times forward then backward, with native step 7 s."""
    propagator = make_linear_propagator(step=7.0)
    recorder = GridRecorder()
    propagator.set_step_handler(10.0, recorder)

    propagator.propagate(30.0)
    np.testing.assert_allclose(recorder.times, [0.0, 10.0, 20.0, 30.0])
    assert recorder.inits == [(0.0, 30.0, 10.0)]
    assert [s.t for s in recorder.finals] == [30.0]

    propagator.propagate(5.0)
    np.testing.assert_allclose(recorder.times, [30.0, 20.0, 10.0, 5.0])
    assert [s.t for s in recorder.finals] == [30.0, 5.0]
    for state in recorder.states:
        np.testing.assert_allclose(state.position[0], state.t, atol=1e-12)


def test_variable_step_handler(make_linear_propagator):
    """Test interpolators cover the propagation without gaps."""
    steps = []

    class Handler:
        def init(self, initial_state, target):
            steps.clear()

        def handle_step(self, interpolator):
            steps.append(
                (interpolator.previous_state.t, interpolator.current_state.t)
            )

        def finish(self, final_state):
            steps.append(("final", final_state.t))

    propagator = make_linear_propagator(step=10.0)
    propagator.set_step_handler(Handler())
    propagator.propagate(25.0)
    assert steps == [(0.0, 10.0), (10.0, 20.0), (20.0, 25.0), ("final", 25.0)]

    propagator.clear_step_handlers()
    propagator.propagate(30.0)
    assert steps[-1] == ("final", 25.0)


def test_set_step_handler_arguments(make_linear_propagator):
    propagator = make_linear_propagator()
    with pytest.raises(TypeError):
        propagator.set_step_handler()
    with pytest.raises(ValueError, match="positive"):
        propagator.set_step_handler(0.0, GridRecorder())


def test_frozen_attitude(leo_state):
    """Test that an initial attitude is kept frozen and re-dated."""
    attitude = Attitude(0.0, "GCRF", [1.0, 0.0, 0.0, 1.0])
    state = leo_state.with_attitude(attitude)
    propagator = NumericalPropagator(RungeKutta4(30.0), PointMassGravity())
    propagator.reset_initial_state(state)
    final = propagator.propagate(300.0)

    assert final.attitude.t == 300.0
    assert final.attitude.frame == "GCRF"
    np.testing.assert_allclose(
        final.attitude.quaternion, [np.sqrt(0.5), 0, 0, np.sqrt(0.5)]
    )


def test_attitude_provider(leo_state):
    """Test an attitude law evaluated on every produced state."""

    class Pointing:
        def get_attitude(self, t, position, velocity, frame):
            angle = np.arctan2(position[1], position[0])
            return Attitude(
                t, frame, [np.cos(angle / 2), 0, 0, np.sin(angle / 2)]
            )

    propagator = NumericalPropagator(
        RungeKutta4(30.0), PointMassGravity(), attitude_provider=Pointing()
    )
    propagator.reset_initial_state(leo_state)
    final = propagator.propagate(600.0)
    angle = np.arctan2(final.position[1], final.position[0])
    np.testing.assert_allclose(
        final.attitude.quaternion,
        [np.cos(angle / 2), 0, 0, np.sin(angle / 2)],
        atol=1e-12,
    )


def test_non_integrated_state_not_in_buffer(make_linear_propagator):
    """Test carried values are kept as they are on unmanaged states."""
    state = SpacecraftState(
        0.0, [0, 0, 0], [1, 0, 0], additional_states={"tag": [7.0]}
    )
    propagator = make_linear_propagator(state=state)
    final = propagator.propagate(30.0)
    np.testing.assert_array_equal(final.get_additional_state("tag"), [7.0])
