"""Step interpolators and step handlers.

Drivers report their progress as a sequence of steps. Each step is a
:class:`StepInterpolator` covering ``[previous_state.t, current_state.t]``
(decreasing for backward propagation) that can produce the complete
state at any time inside the step.

Step handlers receive these interpolators. Fixed-step handlers receive
states on a regular grid through a :class:`StepNormalizer`.
"""

import copy
from abc import ABC, abstractmethod
from typing import List, Protocol

from propagation.state import SpacecraftState


class StepInterpolator(ABC):
    """Interpolator over one propagation step.

    Parameters
    ----------
    forward : bool
        Propagation direction
    previous_state, current_state : SpacecraftState
        States at the step bounds
    """

    def __init__(
        self,
        forward: bool,
        previous_state: SpacecraftState,
        current_state: SpacecraftState,
    ):
        self.forward = forward
        self.previous_state = previous_state
        self.current_state = current_state

    @property
    def is_forward(self) -> bool:
        return self.forward

    @abstractmethod
    def compute_interpolated_state(self, t: float) -> SpacecraftState:
        """Compute the complete state at time t within the step."""

    def get_interpolated_state(self, t: float) -> SpacecraftState:
        """Complete state at time t, exact at the step bounds."""
        if t == self.previous_state.t:
            return self.previous_state
        if t == self.current_state.t:
            return self.current_state
        return self.compute_interpolated_state(t)

    def restrict_step(
        self, previous_state: SpacecraftState, current_state: SpacecraftState
    ) -> "StepInterpolator":
        """Copy of this interpolator with narrower step bounds."""
        restricted = copy.copy(self)
        restricted.previous_state = previous_state
        restricted.current_state = current_state
        return restricted

    def __repr__(self):
        return (
            f"{type(self).__name__}(previous={self.previous_state.t}, "
            f"current={self.current_state.t})"
        )


class StepHandler(Protocol):
    """Protocol for variable step handlers."""

    def init(self, initial_state: SpacecraftState, target: float) -> None:
        ...

    def handle_step(self, interpolator: StepInterpolator) -> None:
        ...

    def finish(self, final_state: SpacecraftState) -> None:
        ...


class FixedStepHandler(Protocol):
    """Protocol for handlers called on a regular time grid."""

    def init(
        self, initial_state: SpacecraftState, target: float, step: float
    ) -> None:
        ...

    def handle_step(self, state: SpacecraftState) -> None:
        ...

    def finish(self, final_state: SpacecraftState) -> None:
        ...


class StepNormalizer:
    """Adapt a fixed-step handler to variable-size steps.

    The handler is called with the first state, with every state on the
    grid ``t0 + k * step`` (in the direction of propagation) and with
    the final state if it falls off the grid.

    Parameters
    ----------
    step : float
        Grid spacing magnitude [s]
    handler : FixedStepHandler
        Handler to call on grid states
    """

    def __init__(self, step: float, handler: FixedStepHandler):
        if not step > 0:
            raise ValueError(f"step must be positive, got {step}")
        self.step = float(step)
        self.handler = handler
        self._t0 = None
        self._count = 0
        self._last = None

    def init(self, initial_state, target):
        self._t0 = None
        self._count = 0
        self._last = None
        self.handler.init(initial_state, target, self.step)

    def handle_step(self, interpolator):
        if self._last is None:
            self._t0 = interpolator.previous_state.t
            self._last = interpolator.previous_state
            self.handler.handle_step(self._last)

        h = self.step if interpolator.is_forward else -self.step
        end = interpolator.current_state.t
        next_t = self._t0 + (self._count + 1) * h
        while (next_t - end) * h <= 0:
            self._last = interpolator.get_interpolated_state(next_t)
            self.handler.handle_step(self._last)
            self._count += 1
            next_t = self._t0 + (self._count + 1) * h

    def finish(self, final_state):
        if self._last is None or self._last.t != final_state.t:
            self.handler.handle_step(final_state)
            self._last = final_state
        self.handler.finish(final_state)

    def __repr__(self):
        return f"StepNormalizer(step={self.step}, handler={self.handler!r})"


class StepHandlerMultiplexer:
    """Dispatch steps to several step handlers.

    Handlers may be added and removed between propagations; each
    dispatch works on a snapshot of the registered handlers.
    """

    def __init__(self):
        self._handlers: List[StepHandler] = []

    @property
    def handlers(self) -> List[StepHandler]:
        return list(self._handlers)

    def add(self, handler: StepHandler) -> None:
        self._handlers.append(handler)

    def add_fixed(
        self, step: float, handler: FixedStepHandler
    ) -> StepNormalizer:
        """Register a fixed-step handler, returns the normalizer used."""
        normalizer = StepNormalizer(step, handler)
        self._handlers.append(normalizer)
        return normalizer

    def remove(self, handler) -> None:
        """Remove a handler (or the normalizer wrapping a fixed handler)."""
        for registered in list(self._handlers):
            if registered is handler or (
                isinstance(registered, StepNormalizer)
                and registered.handler is handler
            ):
                self._handlers.remove(registered)

    def clear(self) -> None:
        self._handlers.clear()

    def __len__(self):
        return len(self._handlers)

    def init(self, initial_state, target):
        for handler in self.handlers:
            handler.init(initial_state, target)

    def handle_step(self, interpolator):
        for handler in self.handlers:
            handler.handle_step(interpolator)

    def finish(self, final_state):
        for handler in self.handlers:
            handler.finish(final_state)
