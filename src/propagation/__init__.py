"""Spacecraft state propagation with additional states and events.

This package propagates spacecraft states forward or backward in time,
numerically or analytically. Drivers can be extended with named
additional quantities, either computed from the state or integrated
along with it, and with event detectors that locate zero crossings of
switching functions and react to them. Several drivers can be run in
lockstep so a single handler observes all spacecraft at shared times.

Main Components
---------------
SpacecraftState : Immutable state with additional quantities
NumericalPropagator : Driver integrating the equations of motion
KeplerianPropagator : Two-body analytical driver
PropagatorsParallelizer : Lockstep multi-spacecraft propagation

Providers
---------
FunctionStateProvider, ConstantStateProvider : Non-integrated quantities
FunctionDerivativesProvider : Integrated quantities

Events
------
DateDetector, FunctionalDetector : Switching functions
StopOnEvent, ContinueOnEvent, RecordAndContinue, ... : Handlers

Integrators
-----------
RungeKutta4 : Fixed step classic Runge-Kutta
SciPyIntegrator : Adaptive solvers of scipy.integrate

Examples
--------
>>> from propagation import (
...     SpacecraftState, NumericalPropagator, PointMassGravity,
...     RungeKutta4, FunctionalDetector, EphemerisRecorder
... )
>>> state = SpacecraftState(0.0, [7.0e6, 0, 0], [0, 7546.0, 0])
>>> propagator = NumericalPropagator(RungeKutta4(10.0), PointMassGravity())
>>> propagator.reset_initial_state(state)
>>> propagator.add_event_detector(
...     FunctionalDetector(lambda s: s.position[1], max_check=60.0)
... )
>>> recorder = EphemerisRecorder()
>>> propagator.set_step_handler(60.0, recorder)
>>> final = propagator.propagate(7200.0)
>>> recorder.to_result().plot()
"""

# State
from propagation.state import (
    Attitude,
    AttitudeProvider,
    FrozenAttitudeProvider,
    SpacecraftState,
)
from propagation.state_vector import MAIN_STATE_DIMENSION, StateMapper

# Errors
from propagation.errors import (
    ConfigurationError,
    EventHandlerError,
    IntegrationError,
    PropagationError,
    UnknownAdditionalStateError,
)

# Providers
from propagation.providers import (
    AdditionalDerivativesProvider,
    AdditionalStateProvider,
    CombinedDerivatives,
    ConstantStateProvider,
    FunctionDerivativesProvider,
    FunctionStateProvider,
)

# Events
from propagation.events import (
    AbstractDetector,
    Action,
    ContinueOnEvent,
    DateDetector,
    Event,
    FixedInterval,
    FunctionalDetector,
    FunctionHandler,
    RecordAndContinue,
    ResetStateOnEvent,
    StopOnDecreasing,
    StopOnEvent,
    StopOnIncreasing,
)

# Step handling
from propagation.sampling import (
    StepHandlerMultiplexer,
    StepInterpolator,
    StepNormalizer,
)

# Drivers
from propagation.propagator import AbstractPropagator, NumericalPropagator
from propagation.analytical import (
    AbstractAnalyticalPropagator,
    KeplerianPropagator,
)
from propagation.parallel import MultiSatStepNormalizer, PropagatorsParallelizer

# Models and integrators
from propagation.models import EARTH_MU, PointMassGravity
from propagation.integrators import RungeKutta4, SciPyIntegrator

# Configuration and results
from propagation.config import EventDefaults, IntegratorConfig
from propagation.setup import (
    load_propagation_settings,
    read_param_values,
    read_param_values_pint,
)
from propagation.results import EphemerisRecorder, PropagationResult

__all__ = [
    # State
    "SpacecraftState",
    "Attitude",
    "AttitudeProvider",
    "FrozenAttitudeProvider",
    "StateMapper",
    "MAIN_STATE_DIMENSION",
    # Errors
    "PropagationError",
    "ConfigurationError",
    "IntegrationError",
    "EventHandlerError",
    "UnknownAdditionalStateError",
    # Providers
    "AdditionalStateProvider",
    "AdditionalDerivativesProvider",
    "CombinedDerivatives",
    "ConstantStateProvider",
    "FunctionStateProvider",
    "FunctionDerivativesProvider",
    # Events
    "Action",
    "AbstractDetector",
    "DateDetector",
    "FunctionalDetector",
    "FixedInterval",
    "Event",
    "ContinueOnEvent",
    "StopOnEvent",
    "StopOnIncreasing",
    "StopOnDecreasing",
    "RecordAndContinue",
    "ResetStateOnEvent",
    "FunctionHandler",
    # Step handling
    "StepInterpolator",
    "StepNormalizer",
    "StepHandlerMultiplexer",
    # Drivers
    "AbstractPropagator",
    "NumericalPropagator",
    "AbstractAnalyticalPropagator",
    "KeplerianPropagator",
    "PropagatorsParallelizer",
    "MultiSatStepNormalizer",
    # Models and integrators
    "PointMassGravity",
    "EARTH_MU",
    "RungeKutta4",
    "SciPyIntegrator",
    # Configuration and results
    "EventDefaults",
    "IntegratorConfig",
    "load_propagation_settings",
    "read_param_values",
    "read_param_values_pint",
    "EphemerisRecorder",
    "PropagationResult",
]
