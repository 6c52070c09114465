"""Main state equations (physical models) for numerical propagation."""

from typing import Protocol

import numpy as np

from propagation.state import SpacecraftState

# Earth gravitational parameter [m^3/s^2]
EARTH_MU = 3.986004415e14


class MainStateEquations(Protocol):
    """Protocol for the dynamics of the primary state block.

    Called with the current state, returns the time derivatives of
    ``[x, y, z, vx, vy, vz, mass]`` as an array of shape (7,).
    """

    def __call__(self, state: SpacecraftState) -> np.ndarray:
        ...


class PointMassGravity:
    """Keplerian acceleration of a point-mass central body.

    Parameters
    ----------
    mu : float, optional
        Gravitational parameter [m^3/s^2], Earth by default

    Examples
    --------
    >>> gravity = PointMassGravity()
    >>> gravity(state)[3:6]  # acceleration
    """

    def __init__(self, mu: float = EARTH_MU):
        if not mu > 0:
            raise ValueError(f"mu must be positive, got {mu}")
        self.mu = float(mu)

    def acceleration(self, position) -> np.ndarray:
        r = np.linalg.norm(position)
        return -self.mu / r**3 * np.asarray(position)

    def __call__(self, state):
        ydot = np.zeros(7)
        ydot[0:3] = state.velocity
        ydot[3:6] = self.acceleration(state.position)
        return ydot

    def __repr__(self):
        return f"PointMassGravity(mu={self.mu})"
