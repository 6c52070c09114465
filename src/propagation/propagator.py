"""Single-spacecraft propagation drivers.

:class:`AbstractPropagator` holds what every driver shares: the initial
state, additional state providers, event detectors and step handlers,
and the ``propagate`` entry point. :class:`NumericalPropagator` advances
the state by numerical integration of the main state equations together
with integrated additional states.

Typical use::

    propagator = NumericalPropagator(RungeKutta4(step=10.0), PointMassGravity())
    propagator.reset_initial_state(state)
    propagator.add_event_detector(FunctionalDetector(lambda s: s.position[2]))
    propagator.set_step_handler(60.0, recorder)
    final = propagator.propagate(state.t + 3600.0)
"""

import logging
from typing import List, Optional

import numpy as np

from propagation.errors import ConfigurationError
from propagation.events import Action, EventsManager
from propagation.integrators import Integrator, StepOutcome
from propagation.models import MainStateEquations
from propagation.providers import resolve_providers
from propagation.sampling import StepHandlerMultiplexer, StepInterpolator
from propagation.state import (
    AttitudeProvider,
    FrozenAttitudeProvider,
    SpacecraftState,
)
from propagation.state_vector import MAIN_STATE_DIMENSION, StateMapper

logger = logging.getLogger(__name__)


def _apply_state_provider(provider, state):
    return state.with_additional_state(
        provider.name, provider.get_additional_state(state)
    )


class AbstractPropagator:
    """Common behaviour of propagation drivers.

    Parameters
    ----------
    attitude_provider : AttitudeProvider, optional
        Attitude law applied to produced states. If None and the initial
        state has an attitude, that attitude is kept frozen.
    """

    def __init__(self, attitude_provider: Optional[AttitudeProvider] = None):
        self._initial_state: Optional[SpacecraftState] = None
        self.attitude_provider = attitude_provider
        self._state_providers: List = []
        self._detectors: List = []
        self.multiplexer = StepHandlerMultiplexer()

    # ------------------------------------------------------------------
    # Initial state
    # ------------------------------------------------------------------

    @property
    def initial_state(self) -> Optional[SpacecraftState]:
        return self._initial_state

    def reset_initial_state(self, state: SpacecraftState):
        self._initial_state = state

    def _attitude_provider_for(self, state):
        if self.attitude_provider is None and state.attitude is not None:
            return FrozenAttitudeProvider(state.attitude)
        return self.attitude_provider

    # ------------------------------------------------------------------
    # Providers and detectors
    # ------------------------------------------------------------------

    def add_additional_state_provider(self, provider):
        """Register a non-integrated additional state provider.

        Raises
        ------
        ConfigurationError
            If the name is already managed by this propagator.
        """
        self._check_unique(provider.name)
        self._state_providers.append(provider)

    def get_additional_state_providers(self) -> List:
        return list(self._state_providers)

    def _check_unique(self, name):
        if self.is_additional_state_managed(name):
            raise ConfigurationError(
                f"additional state '{name}' is already registered"
            )

    def get_managed_additional_states(self) -> List[str]:
        """Names of all additional states managed by providers."""
        return [p.name for p in self._state_providers]

    def is_additional_state_managed(self, name: str) -> bool:
        return name in self.get_managed_additional_states()

    def add_event_detector(self, detector):
        self._detectors.append(detector)

    def get_event_detectors(self) -> List:
        return list(self._detectors)

    def clear_event_detectors(self):
        self._detectors.clear()

    def update_additional_states(
        self, state: SpacecraftState
    ) -> SpacecraftState:
        """Apply non-integrated providers to a state.

        Values of managed states already on the state are dropped first,
        so dependent providers never see a stale value.
        """
        return resolve_providers(
            self._state_providers,
            self._drop_managed(state),
            _apply_state_provider,
        )

    def _drop_managed(self, state):
        managed = {p.name for p in self._state_providers}
        if not managed.intersection(state.additional_states):
            return state
        return state.replace(
            additional_states={
                name: value
                for name, value in state.additional_states.items()
                if name not in managed
            }
        )

    # ------------------------------------------------------------------
    # Step handlers
    # ------------------------------------------------------------------

    def set_step_handler(self, *args):
        """Replace step handlers by a single one.

        ``set_step_handler(handler)`` registers a variable step handler,
        ``set_step_handler(step, handler)`` a fixed-step handler.
        """
        self.multiplexer.clear()
        if len(args) == 1:
            self.multiplexer.add(args[0])
        elif len(args) == 2:
            self.multiplexer.add_fixed(*args)
        else:
            raise TypeError(
                "set_step_handler expects (handler) or (step, handler)"
            )

    def clear_step_handlers(self):
        self.multiplexer.clear()

    # ------------------------------------------------------------------
    # Propagation
    # ------------------------------------------------------------------

    def propagate(self, start: float, target: Optional[float] = None):
        """Propagate to a target time.

        Parameters
        ----------
        start : float
            Start time [s], or the target time if ``target`` is omitted
        target : float, optional
            Target time [s]

        Returns
        -------
        state : SpacecraftState
            State at the target time, or at the time an event stopped
            propagation. It becomes the new initial state.

        Raises
        ------
        ConfigurationError
            If no initial state has been set.
        """
        if target is None:
            start, target = None, start
        if self._initial_state is None:
            raise ConfigurationError(
                f"{type(self).__name__} has no initial state"
            )
        initial = self._initial_state
        if start is not None and start != initial.t:
            # reach the start time without events nor step handlers
            logger.debug("moving from t=%s to start t=%s", initial.t, start)
            initial = self._run(initial, float(start), active=False)
            self._initial_state = initial

        logger.info(
            "%s propagating from t=%s to t=%s",
            type(self).__name__,
            initial.t,
            target,
        )
        final = self._run(initial, float(target), active=True)
        self._initial_state = final
        logger.info("%s stopped at t=%s", type(self).__name__, final.t)
        return final

    def _run(self, initial, target, active):
        state = self._initialize(initial, target)
        manager = EventsManager(self._detectors if active else [])
        handlers = self.multiplexer if active else StepHandlerMultiplexer()
        manager.init(state, target)
        handlers.init(state, target)
        final = self._propagate_steps(state, target, manager, handlers)
        handlers.finish(final)
        return final

    def _initialize(self, state, target):
        """Initialize providers and complete the initial state."""

        def apply(provider, s):
            provider.init(s, target)
            return _apply_state_provider(provider, s)

        return resolve_providers(
            self._state_providers, self._drop_managed(state), apply
        )

    def _propagate_steps(self, state, target, manager, handlers):
        raise NotImplementedError


# ============================================================================
# Numerical propagation
# ============================================================================


class IntegratedStepInterpolator(StepInterpolator):
    """Interpolator over one native integrator step."""

    def __init__(self, forward, previous_state, current_state, step,
                 propagator, mapper):
        super().__init__(forward, previous_state, current_state)
        self.step = step
        self.propagator = propagator
        self.mapper = mapper

    def compute_interpolated_state(self, t):
        return self.propagator._complete_state(self.mapper, t, self.step(t))


class NumericalPropagator(AbstractPropagator):
    """Propagator integrating the equations of motion numerically.

    Parameters
    ----------
    integrator : Integrator
        Integrator advancing the flat state vector
    dynamics : MainStateEquations
        Derivatives of the primary state block ``[r, v, m]``
    attitude_provider : AttitudeProvider, optional
        Attitude law applied to produced states

    Attributes
    ----------
    evaluations : int
        Number of derivative evaluations in the last propagation

    Examples
    --------
    >>> propagator = NumericalPropagator(
    ...     SciPyIntegrator("DOP853"), PointMassGravity()
    ... )
    >>> propagator.reset_initial_state(state.with_additional_state("dv", [0.0]))
    >>> propagator.add_additional_derivatives_provider(
    ...     FunctionDerivativesProvider("dv", 1, lambda s: [0.0])
    ... )
    >>> final = propagator.propagate(state.t + 600.0)
    """

    def __init__(
        self,
        integrator: Integrator,
        dynamics: MainStateEquations,
        attitude_provider: Optional[AttitudeProvider] = None,
    ):
        super().__init__(attitude_provider)
        self.integrator = integrator
        self.dynamics = dynamics
        self._derivatives_providers: List = []
        self.evaluations = 0

    def add_additional_derivatives_provider(self, provider):
        """Register an integrated additional state provider.

        Raises
        ------
        ConfigurationError
            If the name is already managed by this propagator.
        """
        self._check_unique(provider.name)
        if int(provider.dimension) <= 0:
            raise ConfigurationError(
                f"provider '{provider.name}' dimension must be positive"
            )
        self._derivatives_providers.append(provider)

    def get_additional_derivatives_providers(self) -> List:
        return list(self._derivatives_providers)

    def get_managed_additional_states(self):
        return super().get_managed_additional_states() + [
            p.name for p in self._derivatives_providers
        ]

    def _initialize(self, state, target):
        state = super()._initialize(state, target)
        for provider in self._derivatives_providers:
            provider.init(state, target)
        return state

    def _make_mapper(self, state):
        return StateMapper(
            state,
            self._derivatives_providers,
            self._attitude_provider_for(state),
        )

    def _complete_state(self, mapper, t, y):
        """Decode a flat array and apply non-integrated providers."""
        return self.update_additional_states(mapper.from_flat_buffer(y, t))

    def _compute_derivatives(self, mapper, t, y):
        """Full derivatives vector and the state carrying derivatives."""
        self.evaluations += 1
        state = self._complete_state(mapper, t, y)
        main = np.asarray(self.dynamics(state), dtype=float)
        if main.shape != (MAIN_STATE_DIMENSION,):
            raise ConfigurationError(
                f"main state equations returned shape {main.shape}, "
                f"expected ({MAIN_STATE_DIMENSION},)"
            )
        ydot = np.zeros(mapper.dimension)
        ydot[:MAIN_STATE_DIMENSION] = main

        def apply(provider, s):
            combined = provider.combined_derivatives(s)
            derivatives = np.atleast_1d(
                np.asarray(combined.additional_derivatives, dtype=float)
            )
            if derivatives.size != provider.dimension:
                raise ConfigurationError(
                    f"provider '{provider.name}' returned "
                    f"{derivatives.size} derivatives, declared dimension is "
                    f"{provider.dimension}"
                )
            ydot[mapper.segment(provider.name)] = derivatives
            if combined.main_state_increments is not None:
                increments = np.asarray(
                    combined.main_state_increments, dtype=float
                )
                if increments.shape != (MAIN_STATE_DIMENSION,):
                    raise ConfigurationError(
                        f"provider '{provider.name}' main state increments "
                        f"have shape {increments.shape}, expected "
                        f"({MAIN_STATE_DIMENSION},)"
                    )
                ydot[:MAIN_STATE_DIMENSION] += increments
            return s.with_additional_state_derivative(
                provider.name, derivatives
            )

        state = resolve_providers(self._derivatives_providers, state, apply)
        return ydot, state

    def _propagate_steps(self, state, target, manager, handlers):
        self.evaluations = 0
        forward = target >= state.t
        mapper = self._make_mapper(state)
        y0 = mapper.to_flat_buffer(state)

        def fun(t, y):
            return self._compute_derivatives(mapper, t, y)[0]

        def on_step(step):
            nonlocal mapper
            previous = self._complete_state(
                mapper, step.t_previous, step.y_previous
            )
            current = self._complete_state(
                mapper, step.t_current, step.y_current
            )
            interpolator = IntegratedStepInterpolator(
                forward, previous, current, step, self, mapper
            )
            new_state, action = manager.accept_step(interpolator, handlers)
            if action is None:
                return None
            if action is Action.RESET_STATE:
                mapper = self._make_mapper(new_state)
            logger.debug(
                "integration interrupted at t=%s (%s)", new_state.t, action.name
            )
            return StepOutcome(
                new_state.t,
                mapper.to_flat_buffer(new_state),
                stop=action is Action.STOP,
            )

        t, y = self.integrator.integrate(fun, state.t, y0, target, on_step)
        logger.debug(
            "%r finished at t=%s after %d evaluations",
            self.integrator,
            t,
            self.evaluations,
        )
        return self._compute_derivatives(mapper, t, y)[1]

    def __repr__(self):
        return (
            f"NumericalPropagator(integrator={self.integrator!r}, "
            f"dynamics={self.dynamics!r})"
        )
