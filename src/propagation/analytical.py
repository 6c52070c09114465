"""Analytical propagation drivers.

An analytical propagator computes the state at any time in closed form,
so a whole propagation is processed as a single step whose interpolator
evaluates the model directly. Events are located within that step using
the detectors' max check intervals.
"""

import logging
from typing import Optional

import numpy as np

from propagation.errors import PropagationError
from propagation.events import Action
from propagation.models import EARTH_MU
from propagation.propagator import AbstractPropagator
from propagation.sampling import StepInterpolator
from propagation.state import AttitudeProvider, SpacecraftState

logger = logging.getLogger(__name__)


class AnalyticalStepInterpolator(StepInterpolator):
    """Interpolator evaluating the analytical model."""

    def __init__(self, forward, previous_state, current_state, propagator):
        super().__init__(forward, previous_state, current_state)
        self.propagator = propagator

    def compute_interpolated_state(self, t):
        return self.propagator.state_at(t)


class AbstractAnalyticalPropagator(AbstractPropagator):
    """Base class for closed-form propagators.

    Subclasses implement :meth:`propagate_orbit`, returning the
    kinematic state at a given time, and :meth:`reset_intermediate_state`
    to re-seed the model when an event handler replaces the state.
    """

    def __init__(self, attitude_provider: Optional[AttitudeProvider] = None):
        super().__init__(attitude_provider)
        self._reference: Optional[SpacecraftState] = None

    def propagate_orbit(self, t: float) -> SpacecraftState:
        raise NotImplementedError

    def reset_intermediate_state(self, state: SpacecraftState):
        raise NotImplementedError

    def reset_initial_state(self, state):
        super().reset_initial_state(state)
        self.reset_intermediate_state(state)
        self._reference = state

    def state_at(self, t: float) -> SpacecraftState:
        """Complete state at time t from the current model."""
        reference = self._reference
        state = self.propagate_orbit(t)
        attitude = None
        provider = self._attitude_provider_for(reference)
        if provider is not None:
            attitude = provider.get_attitude(
                t, state.position, state.velocity, state.frame
            )
        state = state.replace(
            attitude=attitude,
            additional_states=reference.additional_states,
        )
        return self.update_additional_states(state)

    def _propagate_steps(self, state, target, manager, handlers):
        forward = target >= state.t
        self._reference = state
        while True:
            if state.t == target:
                return state
            interpolator = AnalyticalStepInterpolator(
                forward, state, self.state_at(target), self
            )
            new_state, action = manager.accept_step(interpolator, handlers)
            if action is None or action is Action.STOP:
                return new_state
            logger.debug("restarting at t=%s (%s)", new_state.t, action.name)
            if action is Action.RESET_STATE:
                self.reset_intermediate_state(new_state)
                self._reference = new_state
            state = new_state


class KeplerianPropagator(AbstractAnalyticalPropagator):
    """Two-body propagator using universal variables.

    Works for elliptic, parabolic and hyperbolic orbits. Mass is kept
    constant.

    Parameters
    ----------
    initial_state : SpacecraftState
        State seeding the orbit
    mu : float, optional
        Central body gravitational parameter [m^3/s^2]
    attitude_provider : AttitudeProvider, optional
        Attitude law applied to produced states

    Examples
    --------
    >>> propagator = KeplerianPropagator(state)
    >>> later = propagator.propagate(state.t + 5400.0)
    """

    def __init__(
        self,
        initial_state: SpacecraftState,
        mu: float = EARTH_MU,
        attitude_provider: Optional[AttitudeProvider] = None,
    ):
        super().__init__(attitude_provider)
        if not mu > 0:
            raise ValueError(f"mu must be positive, got {mu}")
        self.mu = float(mu)
        self.reset_initial_state(initial_state)

    def reset_intermediate_state(self, state):
        self._seed = state

    def propagate_orbit(self, t):
        seed = self._seed
        position, velocity = universal_kepler(
            seed.position, seed.velocity, t - seed.t, self.mu
        )
        return SpacecraftState(
            t, position, velocity, frame=seed.frame, mass=seed.mass
        )

    def __repr__(self):
        return f"KeplerianPropagator(mu={self.mu})"


def stumpff_c(z: float) -> float:
    if abs(z) < 1e-3:
        return 1 / 2 - z / 24 + z**2 / 720 - z**3 / 40320
    if z > 0:
        return (1 - np.cos(np.sqrt(z))) / z
    return (np.cosh(np.sqrt(-z)) - 1) / -z


def stumpff_s(z: float) -> float:
    if abs(z) < 1e-3:
        return 1 / 6 - z / 120 + z**2 / 5040 - z**3 / 362880
    if z > 0:
        sz = np.sqrt(z)
        return (sz - np.sin(sz)) / sz**3
    sz = np.sqrt(-z)
    return (np.sinh(sz) - sz) / sz**3


def universal_kepler(r0, v0, dt, mu, tol=1e-12, max_iter=100):
    """Solve the two-body problem over dt with the universal anomaly.

    Parameters
    ----------
    r0, v0 : array-like
        Initial position [m] and velocity [m/s]
    dt : float
        Time of flight [s], negative for backward propagation
    mu : float
        Gravitational parameter [m^3/s^2]

    Returns
    -------
    r, v : ndarray
        Position and velocity after dt

    Raises
    ------
    PropagationError
        If the Newton iteration does not converge.
    """
    r0 = np.asarray(r0, dtype=float)
    v0 = np.asarray(v0, dtype=float)
    if dt == 0:
        return r0.copy(), v0.copy()
    sqrt_mu = np.sqrt(mu)
    r0n = np.linalg.norm(r0)
    vr0 = np.dot(r0, v0) / r0n
    alpha = 2.0 / r0n - np.dot(v0, v0) / mu

    chi = sqrt_mu * abs(alpha) * dt
    if alpha <= 0 or chi == 0:
        chi = sqrt_mu * dt / r0n
    for _ in range(max_iter):
        z = alpha * chi**2
        c, s = stumpff_c(z), stumpff_s(z)
        f = (
            r0n * vr0 / sqrt_mu * chi**2 * c
            + (1 - alpha * r0n) * chi**3 * s
            + r0n * chi
            - sqrt_mu * dt
        )
        df = (
            r0n * vr0 / sqrt_mu * chi * (1 - alpha * chi**2 * s)
            + (1 - alpha * r0n) * chi**2 * c
            + r0n
        )
        ratio = f / df
        chi -= ratio
        if abs(ratio) <= tol * max(1.0, abs(chi)):
            break
    else:
        raise PropagationError(
            f"universal Kepler equation did not converge for dt={dt}"
        )

    z = alpha * chi**2
    c, s = stumpff_c(z), stumpff_s(z)
    f = 1 - chi**2 / r0n * c
    g = dt - chi**3 / sqrt_mu * s
    r = f * r0 + g * v0
    rn = np.linalg.norm(r)
    fdot = sqrt_mu / (rn * r0n) * (alpha * chi**3 * s - chi)
    gdot = 1 - chi**2 / rn * c
    v = fdot * r0 + gdot * v0
    return r, v
