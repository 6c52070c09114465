"""Additional quantity providers.

Two kinds of providers can augment a spacecraft state with named
quantities:

- non-integrated providers (:class:`AdditionalStateProvider`) compute
  their value directly from a state, and are recomputed on every state a
  driver produces, including interpolated ones;
- integrated providers (:class:`AdditionalDerivativesProvider`) supply
  time derivatives of a fixed-size quantity, which the numerical
  integrator advances together with the main state.

Providers are duck-typed: any object with the protocol attributes works.
The function-based adapters below cover the common cases.

Dependencies between providers are expressed through ``yields``: a
provider returning True is deferred until the others have been applied.
:func:`resolve_providers` runs this cooperative fixed point.
"""

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence

import numpy as np

from propagation.errors import ConfigurationError
from propagation.state import SpacecraftState


class AdditionalStateProvider(Protocol):
    """Protocol for non-integrated additional state providers."""

    name: str

    def init(self, initial_state: SpacecraftState, target: float) -> None:
        """Called once before each propagation."""
        ...

    def yields(self, state: SpacecraftState) -> bool:
        """Return True to be deferred until other providers have run."""
        ...

    def get_additional_state(self, state: SpacecraftState) -> Any:
        """Compute the additional state value for a state."""
        ...


@dataclass
class CombinedDerivatives:
    """Derivatives returned by an integrated provider.

    Parameters
    ----------
    additional_derivatives : ndarray
        Time derivative of the provider's own additional state
    main_state_increments : ndarray, optional
        Contribution added to the main state derivatives
        ``[dx, dy, dz, dvx, dvy, dvz, dm]``
    """

    additional_derivatives: Any
    main_state_increments: Optional[Any] = None


class AdditionalDerivativesProvider(Protocol):
    """Protocol for integrated additional state providers."""

    name: str
    dimension: int

    def init(self, initial_state: SpacecraftState, target: float) -> None:
        ...

    def yields(self, state: SpacecraftState) -> bool:
        ...

    def combined_derivatives(
        self, state: SpacecraftState
    ) -> CombinedDerivatives:
        ...


def resolve_providers(
    providers: Sequence[Any],
    state: SpacecraftState,
    apply: Callable[[Any, SpacecraftState], SpacecraftState],
) -> SpacecraftState:
    """Apply providers in dependency order.

    Providers are tried in registration order. A provider whose
    ``yields(state)`` is True is deferred to the next pass; passes are
    repeated until every provider has been applied.

    Parameters
    ----------
    providers : sequence
        Providers exposing ``name`` and ``yields(state)``
    state : SpacecraftState
        State to start from
    apply : callable
        ``apply(provider, state) -> state`` applying one provider

    Returns
    -------
    state : SpacecraftState
        State after all providers have been applied

    Raises
    ------
    ConfigurationError
        If a pass makes no progress while providers are still pending.
    """
    pending = list(providers)
    while pending:
        deferred = []
        for provider in pending:
            if provider.yields(state):
                deferred.append(provider)
            else:
                state = apply(provider, state)
        if len(deferred) == len(pending):
            names = [p.name for p in deferred]
            raise ConfigurationError(
                f"unsatisfiable provider dependencies, still yielding: {names}"
            )
        pending = deferred
    return state


# ============================================================================
# Function-based providers
# ============================================================================


class _DependentProvider:
    """Shared ``init``/``yields`` behaviour of the adapters."""

    def __init__(self, name: str, depends_on: Iterable[str] = ()):
        if not name:
            raise ConfigurationError("provider name must be a non-empty string")
        self.name = name
        self.depends_on = tuple(depends_on)

    def init(self, initial_state, target):
        pass

    def yields(self, state):
        return any(not state.has_additional_state(n) for n in self.depends_on)


class ConstantStateProvider(_DependentProvider):
    """Non-integrated provider returning the same value for every state.

    Examples
    --------
    >>> p = ConstantStateProvider("area", [12.0])
    >>> p.get_additional_state(state)
    array([12.])
    """

    def __init__(self, name: str, value: Any):
        super().__init__(name)
        self.value = np.atleast_1d(np.asarray(value, dtype=float))

    def get_additional_state(self, state):
        return self.value

    def __repr__(self):
        return f"ConstantStateProvider(name='{self.name}', value={self.value})"


class FunctionStateProvider(_DependentProvider):
    """Non-integrated provider wrapping a function of the state.

    Parameters
    ----------
    name : str
        Additional state name
    func : callable
        ``func(state) -> array-like``
    depends_on : iterable of str, optional
        Names of additional states that must be present on the state
        before this provider can be evaluated

    Examples
    --------
    >>> radius = FunctionStateProvider(
    ...     "radius", lambda s: [np.linalg.norm(s.position)]
    ... )
    >>> altitude = FunctionStateProvider(
    ...     "altitude",
    ...     lambda s: s.get_additional_state("radius") - 6378137.0,
    ...     depends_on=["radius"],
    ... )
    """

    def __init__(
        self,
        name: str,
        func: Callable[[SpacecraftState], Any],
        depends_on: Iterable[str] = (),
    ):
        super().__init__(name, depends_on)
        self.func = func

    def get_additional_state(self, state):
        return np.atleast_1d(np.asarray(self.func(state), dtype=float))

    def __repr__(self):
        func_name = getattr(self.func, "__name__", repr(self.func))
        return f"FunctionStateProvider(name='{self.name}', func={func_name})"


class FunctionDerivativesProvider(_DependentProvider):
    """Integrated provider wrapping a derivative function.

    Parameters
    ----------
    name : str
        Additional state name
    dimension : int
        Size of the integrated quantity
    func : callable
        ``func(state) -> derivatives`` or
        ``func(state) -> (derivatives, main_state_increments)``
    depends_on : iterable of str, optional
        Names of additional state derivatives that must already be
        computed before this provider runs

    Examples
    --------
    >>> # Integrate the time spent in the propagation
    >>> clock = FunctionDerivativesProvider("clock", 1, lambda s: [1.0])
    """

    def __init__(
        self,
        name: str,
        dimension: int,
        func: Callable[[SpacecraftState], Any],
        depends_on: Iterable[str] = (),
    ):
        super().__init__(name, depends_on)
        if int(dimension) <= 0:
            raise ConfigurationError(
                f"provider '{name}' dimension must be positive, got {dimension}"
            )
        self.dimension = int(dimension)
        self.func = func

    def yields(self, state):
        return any(
            not state.has_additional_state_derivative(n)
            for n in self.depends_on
        )

    def combined_derivatives(self, state):
        result = self.func(state)
        if isinstance(result, CombinedDerivatives):
            return result
        if isinstance(result, tuple):
            derivatives, increments = result
            return CombinedDerivatives(derivatives, increments)
        return CombinedDerivatives(result)

    def __repr__(self):
        return (
            f"FunctionDerivativesProvider(name='{self.name}', "
            f"dimension={self.dimension})"
        )
