"""Numerical integrators used by numerical propagators.

An integrator advances a flat state array ``y`` under ``dy/dt = fun(t, y)``
from ``t0`` to ``t_end`` (forward or backward) and reports every native
step to a step handler together with a dense interpolant covering that
step. The handler may ask the integrator to stop early or to restart
from a modified state (e.g. after an event reset).

The step algorithms themselves come from ``scipy.integrate``: adaptive
solvers are used as-is, and a classic fixed-step Runge-Kutta scheme is
provided as an :class:`scipy.integrate.OdeSolver` subclass so both share
the same stepping loop.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Tuple

import numpy as np
from scipy.integrate import (
    BDF,
    DOP853,
    LSODA,
    RK23,
    RK45,
    DenseOutput,
    OdeSolver,
    Radau,
)

from propagation.errors import IntegrationError

SCIPY_METHODS = {
    "RK23": RK23,
    "RK45": RK45,
    "DOP853": DOP853,
    "Radau": Radau,
    "BDF": BDF,
    "LSODA": LSODA,
}


@dataclass
class IntegratorStep:
    """One native integrator step with its dense interpolant.

    Parameters
    ----------
    t_previous, t_current : float
        Step bounds (t_current < t_previous for backward integration)
    y_previous, y_current : ndarray
        States at the step bounds
    dense : callable
        ``dense(t) -> y`` valid for t within the step
    is_last : bool
        True if the integrator reached its end time with this step
    """

    t_previous: float
    t_current: float
    y_previous: np.ndarray
    y_current: np.ndarray
    dense: Callable[[float], np.ndarray]
    is_last: bool = False

    @property
    def forward(self) -> bool:
        return self.t_current >= self.t_previous

    def __call__(self, t: float) -> np.ndarray:
        """Interpolated state at time t, exact at the step bounds."""
        if t == self.t_current:
            return self.y_current
        if t == self.t_previous:
            return self.y_previous
        return np.asarray(self.dense(t), dtype=float)


@dataclass
class StepOutcome:
    """Request returned by a step handler to interrupt integration.

    Parameters
    ----------
    t : float
        Time at which integration is interrupted (within the last step)
    y : ndarray
        State at time t, possibly modified by the caller
    stop : bool, optional
        If True integration ends at (t, y), otherwise it restarts from
        (t, y) with fresh derivatives.
    """

    t: float
    y: Any
    stop: bool = False


StepHandler = Callable[[IntegratorStep], Optional[StepOutcome]]


class Integrator(Protocol):
    """Protocol for integrators used by numerical propagators."""

    def integrate(
        self,
        fun: Callable[[float, np.ndarray], np.ndarray],
        t0: float,
        y0: np.ndarray,
        t_end: float,
        step_handler: StepHandler,
    ) -> Tuple[float, np.ndarray]:
        """Integrate from t0 to t_end, reporting each native step.

        Returns
        -------
        t, y : float, ndarray
            Final time and state (t < t_end if the handler stopped early)
        """
        ...


class StepLoopIntegrator:
    """Base class running any ``OdeSolver`` step by step.

    Subclasses implement :meth:`make_solver`.
    """

    name = "integrator"

    def make_solver(self, fun, t0, y0, t_end) -> OdeSolver:
        raise NotImplementedError

    def integrate(self, fun, t0, y0, t_end, step_handler):
        t = float(t0)
        y = np.array(y0, dtype=float)
        t_end = float(t_end)
        if t == t_end:
            return t, y

        while True:
            solver = self.make_solver(fun, t, y, t_end)
            t_prev, y_prev = t, y
            outcome = None
            while solver.status == "running":
                message = solver.step()
                if solver.status == "failed":
                    raise IntegrationError(
                        f"{self.name} failed at t={solver.t}: {message}"
                    )
                y_curr = np.array(solver.y, dtype=float)
                step = IntegratorStep(
                    t_previous=t_prev,
                    t_current=solver.t,
                    y_previous=y_prev,
                    y_current=y_curr,
                    dense=solver.dense_output(),
                    is_last=solver.status == "finished",
                )
                outcome = step_handler(step)
                if outcome is not None:
                    break
                t_prev, y_prev = solver.t, y_curr

            if outcome is None:
                return solver.t, np.array(solver.y, dtype=float)
            if outcome.stop:
                return float(outcome.t), np.array(outcome.y, dtype=float)
            # restart from the state provided by the handler
            t, y = float(outcome.t), np.array(outcome.y, dtype=float)
            if t == t_end:
                return t, y


# ============================================================================
# Fixed-step Runge-Kutta
# ============================================================================


class HermiteDenseOutput(DenseOutput):
    """Cubic Hermite interpolant from states and derivatives at both ends."""

    def __init__(self, t_old, t, y_old, f_old, y, f):
        super().__init__(t_old, t)
        self.h = t - t_old
        self.y_old = y_old
        self.f_old = f_old
        self.y_new = y
        self.f_new = f

    def _call_impl(self, t):
        s = (t - self.t_old) / self.h
        s2 = s * s
        s3 = s2 * s
        h00 = 2 * s3 - 3 * s2 + 1
        h10 = s3 - 2 * s2 + s
        h01 = -2 * s3 + 3 * s2
        h11 = s3 - s2
        if np.ndim(t) == 0:
            return (
                h00 * self.y_old
                + h10 * self.h * self.f_old
                + h01 * self.y_new
                + h11 * self.h * self.f_new
            )
        return (
            np.outer(self.y_old, h00)
            + np.outer(self.h * self.f_old, h10)
            + np.outer(self.y_new, h01)
            + np.outer(self.h * self.f_new, h11)
        )


class RK4Solver(OdeSolver):
    """Classic 4th-order Runge-Kutta with a fixed step size.

    The last step is shortened so the solver lands exactly on t_bound.
    """

    def __init__(self, fun, t0, y0, t_bound, step, vectorized=False):
        super().__init__(fun, t0, y0, t_bound, vectorized)
        self.h_abs = float(step)
        self.f = self.fun(self.t, self.y)
        self.y_old = None
        self.f_old = None

    def _step_impl(self):
        t, y, f = self.t, self.y, self.f
        remaining = abs(self.t_bound - t)
        if remaining <= self.h_abs * (1 + 1e-10):
            t_new = self.t_bound
        else:
            t_new = t + self.direction * self.h_abs
        h = t_new - t

        k1 = f
        k2 = self.fun(t + h / 2, y + h / 2 * k1)
        k3 = self.fun(t + h / 2, y + h / 2 * k2)
        k4 = self.fun(t + h, y + h * k3)
        y_new = y + h / 6 * (k1 + 2 * k2 + 2 * k3 + k4)

        self.y_old, self.f_old = y, f
        self.t = t_new
        self.y = y_new
        self.f = self.fun(t_new, y_new)
        return True, None

    def _dense_output_impl(self):
        return HermiteDenseOutput(
            self.t_old, self.t, self.y_old, self.f_old, self.y, self.f
        )


class RungeKutta4(StepLoopIntegrator):
    """Classic 4th-order Runge-Kutta integrator with fixed step.

    Good for tests and prototyping; steps are laid out from the start
    time (or restart time after an event reset).

    Parameters
    ----------
    step : float
        Step size magnitude [s]

    Examples
    --------
    >>> integrator = RungeKutta4(step=10.0)
    >>> t, y = integrator.integrate(
    ...     lambda t, y: -y, 0.0, np.array([1.0]), 1.0, lambda step: None
    ... )
    """

    name = "RK4"

    def __init__(self, step: float):
        if not step > 0:
            raise ValueError(f"step must be positive, got {step}")
        self.step = float(step)

    def make_solver(self, fun, t0, y0, t_end):
        return RK4Solver(fun, t0, y0, t_end, self.step)

    def __repr__(self):
        return f"RungeKutta4(step={self.step})"


# ============================================================================
# SciPy adaptive integrators
# ============================================================================


class SciPyIntegrator(StepLoopIntegrator):
    """Adaptive step-size integrator from ``scipy.integrate``.

    Parameters
    ----------
    method : str, optional
        Solver class name: 'RK45', 'RK23', 'DOP853', 'Radau', 'BDF',
        'LSODA'. Default is 'DOP853'.
    rtol, atol : float, optional
        Relative and absolute tolerances
    max_step : float, optional
        Maximum step size [s], unbounded by default
    first_step : float, optional
        Initial step size, chosen by the solver if None

    Examples
    --------
    >>> integrator = SciPyIntegrator("DOP853", rtol=1e-10, atol=1e-6)
    """

    def __init__(
        self,
        method: str = "DOP853",
        rtol: float = 1e-10,
        atol: float = 1e-6,
        max_step: float = np.inf,
        first_step: Optional[float] = None,
    ):
        if method not in SCIPY_METHODS:
            raise ValueError(
                f"unknown method '{method}', "
                f"expected one of {sorted(SCIPY_METHODS)}"
            )
        self.method = method
        self.name = method
        self.rtol = rtol
        self.atol = atol
        self.max_step = max_step
        self.first_step = first_step

    def make_solver(self, fun, t0, y0, t_end):
        kwargs = dict(rtol=self.rtol, atol=self.atol, max_step=self.max_step)
        if self.first_step is not None:
            kwargs["first_step"] = min(self.first_step, abs(t_end - t0))
        return SCIPY_METHODS[self.method](fun, t0, y0, t_end, **kwargs)

    def __repr__(self):
        return (
            f"SciPyIntegrator(method='{self.method}', rtol={self.rtol}, "
            f"atol={self.atol})"
        )
