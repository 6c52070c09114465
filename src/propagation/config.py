"""Configuration objects for integrators and event detection."""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from propagation.integrators import SCIPY_METHODS, RungeKutta4, SciPyIntegrator


class EventDefaults:
    """Default settings of event detectors."""

    MAX_CHECK_INTERVAL = 600.0  # s
    THRESHOLD = 1.0e-6  # s
    MAX_ITER = 100


@dataclass
class IntegratorConfig:
    """Configuration of the integrator used by a numerical propagator.

    Parameters
    ----------
    method : str, optional
        'RK4' for the fixed-step Runge-Kutta integrator, or the name of a
        ``scipy.integrate`` solver ('DOP853', 'RK45', ...). Default is
        'DOP853'.
    step : float, optional
        Step size [s], required (and only used) for 'RK4'
    rtol, atol : float, optional
        Tolerances of adaptive solvers
    max_step : float, optional
        Maximum step size of adaptive solvers [s]
    first_step : float, optional
        Initial step size of adaptive solvers [s]

    Examples
    --------
    >>> config = IntegratorConfig(method="RK4", step=30.0)
    >>> integrator = config.build()
    """

    method: str = "DOP853"
    step: Optional[float] = None
    rtol: float = 1.0e-10
    atol: float = 1.0e-6
    max_step: float = np.inf
    first_step: Optional[float] = None

    def __post_init__(self):
        """Validate configuration."""
        if self.method == "RK4":
            if self.step is None:
                raise ValueError("RK4 integrator requires a step size")
            if not self.step > 0:
                raise ValueError(f"step must be positive, got {self.step}")
        elif self.method not in SCIPY_METHODS:
            raise ValueError(
                f"unknown integration method '{self.method}', expected 'RK4' "
                f"or one of {sorted(SCIPY_METHODS)}"
            )
        if not (self.rtol > 0 and self.atol > 0):
            raise ValueError("tolerances must be positive")
        if not self.max_step > 0:
            raise ValueError(f"max_step must be positive, got {self.max_step}")

    def build(self):
        """Create the configured integrator."""
        if self.method == "RK4":
            return RungeKutta4(self.step)
        return SciPyIntegrator(
            self.method,
            rtol=self.rtol,
            atol=self.atol,
            max_step=self.max_step,
            first_step=self.first_step,
        )
