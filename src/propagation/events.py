"""Event detection during propagation.

An event detector monitors a continuous scalar switching function
``g(state)`` along the trajectory. When ``g`` changes sign, the root is
located to within the detector threshold and the detector handler
decides what happens next:

- ``Action.CONTINUE``: nothing changes, watching resumes;
- ``Action.STOP``: propagation ends at the event;
- ``Action.RESET_STATE``: the handler supplies a replacement state;
- ``Action.RESET_DERIVATIVES``: integration restarts from the event state
  so derivatives are recomputed.

:class:`EventState` holds the per-detector search state (watching,
bracketed, handling) and :class:`EventsManager` runs all detectors of a
driver over each step. Searches use signed elapsed time so backward
propagation behaves exactly like forward propagation. When several
events fall in the same step the earliest is handled first; events at
exactly the same time are handled in detector registration order.
"""

import copy
import logging
from bisect import bisect_left
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol, Tuple

import numpy as np
from scipy.optimize import brentq

from propagation.config import EventDefaults
from propagation.errors import (
    ConfigurationError,
    EventHandlerError,
    PropagationError,
)
from propagation.state import DATE_INCONSISTENCY_THRESHOLD, SpacecraftState

logger = logging.getLogger(__name__)


class Action(Enum):
    """Action requested by an event handler."""

    CONTINUE = "continue"
    RESET_STATE = "reset_state"
    RESET_DERIVATIVES = "reset_derivatives"
    STOP = "stop"


class EventPhase(Enum):
    """Phases of the per-detector search."""

    WATCHING = "watching"
    BRACKETED = "bracketed"
    HANDLING = "handling"


# ============================================================================
# Max check intervals
# ============================================================================


class AdaptableInterval(Protocol):
    """Protocol for state-dependent maximum check intervals."""

    def current_interval(self, state: SpacecraftState) -> float:
        ...


class FixedInterval:
    """Constant maximum check interval [s]."""

    def __init__(self, seconds: float):
        if not seconds > 0:
            raise ConfigurationError(
                f"max check interval must be positive, got {seconds}"
            )
        self.seconds = float(seconds)

    def current_interval(self, state):
        return self.seconds

    def __repr__(self):
        return f"FixedInterval({self.seconds})"


class FunctionInterval:
    """Maximum check interval computed from the state by a function."""

    def __init__(self, func: Callable[[SpacecraftState], float]):
        self.func = func

    def current_interval(self, state):
        return float(self.func(state))


def as_interval(value) -> AdaptableInterval:
    """Convert a number, callable or interval object to an interval."""
    if hasattr(value, "current_interval"):
        return value
    if callable(value):
        return FunctionInterval(value)
    return FixedInterval(value)


# ============================================================================
# Handlers
# ============================================================================


class EventHandler(Protocol):
    """Protocol for event handlers."""

    def init(self, initial_state, target, detector) -> None:
        ...

    def event_occurred(self, state, detector, increasing) -> Action:
        ...

    def reset_state(self, detector, old_state) -> SpacecraftState:
        ...


class _BaseHandler:
    def init(self, initial_state, target, detector):
        pass

    def reset_state(self, detector, old_state):
        return old_state

    def __repr__(self):
        return f"{type(self).__name__}()"


class ContinueOnEvent(_BaseHandler):
    """Always continue."""

    def event_occurred(self, state, detector, increasing):
        return Action.CONTINUE


class StopOnEvent(_BaseHandler):
    """Always stop propagation at the event."""

    def event_occurred(self, state, detector, increasing):
        return Action.STOP


class StopOnIncreasing(_BaseHandler):
    """Stop on increasing events, continue on decreasing ones."""

    def event_occurred(self, state, detector, increasing):
        return Action.STOP if increasing else Action.CONTINUE


class StopOnDecreasing(_BaseHandler):
    """Stop on decreasing events, continue on increasing ones."""

    def event_occurred(self, state, detector, increasing):
        return Action.CONTINUE if increasing else Action.STOP


@dataclass
class Event:
    """Event occurrence recorded by :class:`RecordAndContinue`."""

    state: SpacecraftState
    increasing: bool
    detector: Any


class RecordAndContinue(_BaseHandler):
    """Record every event occurrence and continue.

    Examples
    --------
    >>> recorder = RecordAndContinue()
    >>> detector = DateDetector(100.0, handler=recorder)
    >>> # ... propagate ...
    >>> [e.state.t for e in recorder.events]
    """

    def __init__(self):
        self.events: List[Event] = []

    def event_occurred(self, state, detector, increasing):
        self.events.append(Event(state, increasing, detector))
        return Action.CONTINUE

    def clear(self):
        self.events.clear()


class FunctionHandler(_BaseHandler):
    """Handler delegating to ``func(state, detector, increasing)``.

    Parameters
    ----------
    func : callable
        Returns the :class:`Action` to take
    reset : callable, optional
        ``reset(detector, old_state) -> new_state`` used on RESET_STATE
    """

    def __init__(self, func, reset=None):
        self.func = func
        self.reset = reset

    def event_occurred(self, state, detector, increasing):
        return self.func(state, detector, increasing)

    def reset_state(self, detector, old_state):
        if self.reset is None:
            return old_state
        return self.reset(detector, old_state)


class ResetStateOnEvent(_BaseHandler):
    """Replace the state at each event using ``func(state) -> state``.

    Examples
    --------
    >>> # Impulsive change of an additional state at t = 600 s
    >>> handler = ResetStateOnEvent(
    ...     lambda s: s.with_additional_state("counter", [1.0])
    ... )
    >>> detector = DateDetector(600.0, handler=handler)
    """

    def __init__(self, func: Callable[[SpacecraftState], SpacecraftState]):
        self.func = func

    def event_occurred(self, state, detector, increasing):
        return Action.RESET_STATE

    def reset_state(self, detector, old_state):
        return self.func(old_state)


# ============================================================================
# Detectors
# ============================================================================


class EventDetector(Protocol):
    """Protocol for event detectors."""

    max_check_interval: AdaptableInterval
    threshold: float
    max_iter: int
    handler: EventHandler

    def init(self, initial_state: SpacecraftState, target: float) -> None:
        ...

    def g(self, state: SpacecraftState) -> float:
        ...


class AbstractDetector:
    """Base class for detectors with the usual settings.

    Parameters
    ----------
    max_check : float or callable or AdaptableInterval, optional
        Maximum interval between switching function evaluations [s]
    threshold : float, optional
        Convergence threshold on event time [s]
    max_iter : int, optional
        Maximum number of root search iterations
    handler : EventHandler, optional
        Handler called on events, defaults to :class:`StopOnEvent`
    """

    def __init__(
        self,
        max_check=EventDefaults.MAX_CHECK_INTERVAL,
        threshold: float = EventDefaults.THRESHOLD,
        max_iter: int = EventDefaults.MAX_ITER,
        handler: Optional[EventHandler] = None,
    ):
        if not threshold > 0:
            raise ConfigurationError(
                f"threshold must be positive, got {threshold}"
            )
        if int(max_iter) < 1:
            raise ConfigurationError(
                f"max_iter must be at least 1, got {max_iter}"
            )
        self.max_check_interval = as_interval(max_check)
        self.threshold = float(threshold)
        self.max_iter = int(max_iter)
        self.handler = handler if handler is not None else StopOnEvent()

    def init(self, initial_state, target):
        self.handler.init(initial_state, target, self)

    def g(self, state: SpacecraftState) -> float:
        raise NotImplementedError

    def _with(self, **changes):
        detector = copy.copy(self)
        for key, value in changes.items():
            setattr(detector, key, value)
        return detector

    def with_max_check(self, max_check):
        return self._with(max_check_interval=as_interval(max_check))

    def with_threshold(self, threshold: float):
        return self._with(threshold=float(threshold))

    def with_max_iter(self, max_iter: int):
        return self._with(max_iter=int(max_iter))

    def with_handler(self, handler: EventHandler):
        return self._with(handler=handler)


class FunctionalDetector(AbstractDetector):
    """Detector whose switching function is a plain function.

    Examples
    --------
    >>> # Detect crossings of the equatorial plane
    >>> node = FunctionalDetector(lambda s: s.position[2], max_check=60.0)
    """

    def __init__(self, function: Callable[[SpacecraftState], float], **kwargs):
        super().__init__(**kwargs)
        self.function = function

    def g(self, state):
        return self.function(state)

    def __repr__(self):
        name = getattr(self.function, "__name__", repr(self.function))
        return f"FunctionalDetector(function={name})"


class DateDetector(AbstractDetector):
    """Detector triggered at one or several fixed times.

    The switching function is a saw-tooth that changes sign at each
    date, so events alternate between increasing and decreasing.

    Parameters
    ----------
    *dates : float
        Event times [s]
    **kwargs
        Settings of :class:`AbstractDetector`; the default max check is
        half the smallest gap between dates.
    """

    def __init__(self, *dates: float, **kwargs):
        self.dates = sorted(float(d) for d in dates)
        if len(self.dates) > 1 and "max_check" not in kwargs:
            gap = float(np.min(np.diff(self.dates)))
            kwargs["max_check"] = min(EventDefaults.MAX_CHECK_INTERVAL, gap / 2)
        super().__init__(**kwargs)

    def add_event_date(self, t: float):
        """Add a date, keeping max check below half of the smallest gap."""
        dates = sorted(self.dates + [float(t)])
        gap = float(np.min(np.diff(dates))) if len(dates) > 1 else None
        if gap is not None and gap <= 0:
            raise ConfigurationError(f"date {t} is already registered")
        self.dates = dates
        if gap is not None:
            current = self.max_check_interval
            if isinstance(current, FixedInterval) and current.seconds > gap / 2:
                self.max_check_interval = FixedInterval(gap / 2)

    def g(self, state):
        if not self.dates:
            return -1.0
        i = bisect_left(self.dates, state.t)
        if i == len(self.dates) or (
            i > 0 and state.t - self.dates[i - 1] < self.dates[i] - state.t
        ):
            i -= 1
        sign = 1.0 if i % 2 == 0 else -1.0
        return sign * (state.t - self.dates[i])

    def __repr__(self):
        return f"DateDetector(dates={self.dates})"


# ============================================================================
# Search state machine
# ============================================================================


@dataclass
class EventOccurrence:
    """Outcome of handling an event."""

    action: Action
    state: SpacecraftState


class EventState:
    """Root search state of one detector over a propagation.

    Parameters
    ----------
    detector : EventDetector
        Detector being monitored
    """

    def __init__(self, detector: EventDetector):
        self.detector = detector
        self.phase = EventPhase.WATCHING
        self.forward = True
        self.t0 = np.nan
        self.g0 = np.nan
        self.g0_positive = True
        self.pending_event = False
        self.pending_event_time = np.nan
        self.increasing = True

    def _call(self, func, *args):
        try:
            return func(*args)
        except PropagationError:
            raise
        except Exception as err:
            raise EventHandlerError(
                f"event detector {self.detector!r} failed: {err}"
            ) from err

    def g(self, state: SpacecraftState) -> float:
        return float(self._call(self.detector.g, state))

    def init(self, initial_state: SpacecraftState, target: float):
        """Reset the search state at the start of a propagation."""
        self._call(self.detector.init, initial_state, target)
        self.forward = target >= initial_state.t
        self.phase = EventPhase.WATCHING
        self.t0 = np.nan
        self.g0 = np.nan
        self.pending_event = False
        self.pending_event_time = np.nan

    def reinitialize_begin(self, interpolator):
        """Evaluate the switching function at the start of a propagation."""
        self.forward = interpolator.is_forward
        s0 = interpolator.previous_state
        self.t0 = s0.t
        self.g0 = self.g(s0)
        if self.g0 == 0.0:
            # a zero exactly at start is ignored, use the sign just after
            offset = 0.5 * self.detector.threshold
            t_start = self.t0 + (offset if self.forward else -offset)
            self.g0 = self.g(interpolator.get_interpolated_state(t_start))
        self.g0_positive = self.g0 > 0
        self.pending_event = False
        self.phase = EventPhase.WATCHING

    def _sign_changed(self, g: float) -> bool:
        return (g > 0) != self.g0_positive

    def _crossed(self, g: float) -> bool:
        # an exact zero counts as reaching the root
        return g == 0.0 or self._sign_changed(g)

    def evaluate_step(self, interpolator) -> bool:
        """Look for a sign change between t0 and the end of the step.

        Returns
        -------
        found : bool
            True if an event is pending within the step
        """
        self.forward = interpolator.is_forward
        direction = 1.0 if self.forward else -1.0
        t1 = interpolator.current_state.t
        if abs(t1 - self.t0) < self.detector.threshold:
            # step too small to be meaningful
            self.pending_event = False
            return False

        ta, ga = self.t0, self.g0
        state_a = interpolator.get_interpolated_state(ta)
        while (t1 - ta) * direction > 0:
            h = self._call(
                self.detector.max_check_interval.current_interval, state_a
            )
            if not h > 0:
                raise ConfigurationError(
                    f"max check interval must be positive, got {h}"
                )
            tb = ta + direction * h
            if (tb - t1) * direction >= 0:
                tb = t1
            state_b = interpolator.get_interpolated_state(tb)
            gb = self.g(state_b)
            if self._crossed(gb):
                self._find_root(interpolator, ta, ga, tb, gb)
                return True
            ta, ga, state_a = tb, gb, state_b

        self.pending_event = False
        return False

    def _find_root(self, interpolator, ta, ga, tb, gb):
        """Locate the root bracketed in [ta, tb] and mark it pending."""
        threshold = self.detector.threshold
        direction = 1.0 if self.forward else -1.0

        def f(t):
            return self.g(interpolator.get_interpolated_state(t))

        root = None
        if ga == 0.0 or self._sign_changed(ga):
            # bracket starts on a previous root, probe just after it
            probe = ta + direction * min(0.5 * threshold, abs(tb - ta))
            gp = f(probe)
            if self._sign_changed(gp):
                root = probe
            else:
                ta, ga = probe, gp

        if root is None:
            if gb == 0.0:
                root = tb
            else:
                lo, hi = (ta, tb) if ta < tb else (tb, ta)
                root, info = brentq(
                    f,
                    lo,
                    hi,
                    xtol=0.5 * threshold,
                    maxiter=self.detector.max_iter,
                    full_output=True,
                    disp=False,
                )
                if not info.converged:
                    raise PropagationError(
                        f"event root of {self.detector!r} not found in "
                        f"{self.detector.max_iter} iterations: {info.flag}"
                    )
                # move to the side where the sign has already changed
                while not self._crossed(f(root)):
                    if abs(tb - root) <= 0.5 * threshold:
                        root = tb
                        break
                    root = root + direction * 0.5 * threshold

        self.pending_event = True
        self.pending_event_time = root
        self.increasing = not self.g0_positive
        self.phase = EventPhase.BRACKETED

    def try_advance(self, state: SpacecraftState, interpolator) -> bool:
        """Move the search start to ``state`` unless an event comes first.

        Returns
        -------
        earlier : bool
            True if an event was found strictly before ``state``, or a
            newly found event occurs at exactly that time
        """
        t = state.t
        direction = 1.0 if self.forward else -1.0
        if self.pending_event and (self.pending_event_time - t) * direction <= 0:
            # already known, ties keep registration order
            return (self.pending_event_time - t) * direction < 0
        if (t - self.t0) * direction <= 0:
            # empty search interval
            return False
        g = self.g(state)
        if not self._crossed(g):
            self.t0, self.g0 = t, g
            return False
        self._find_root(interpolator, self.t0, self.g0, t, g)
        return True

    def do_event(self, state: SpacecraftState) -> EventOccurrence:
        """Call the handler for the pending event at ``state``."""
        self.phase = EventPhase.HANDLING
        handler = self.detector.handler
        # increasing with respect to time, not to the propagation direction
        increasing = self.increasing == self.forward
        action = self._call(
            handler.event_occurred, state, self.detector, increasing
        )
        if not isinstance(action, Action):
            raise EventHandlerError(
                f"event handler {handler!r} returned {action!r}, "
                f"expected an Action"
            )
        logger.debug(
            "event %r at t=%s (%s), action %s",
            self.detector,
            state.t,
            "increasing" if increasing else "decreasing",
            action.name,
        )
        new_state = state
        if action is Action.RESET_STATE:
            new_state = self._call(handler.reset_state, self.detector, state)

        self.pending_event = False
        self.pending_event_time = np.nan
        self.t0 = state.t
        self.g0 = self.g(state)
        self.g0_positive = self.increasing
        self.phase = EventPhase.WATCHING
        return EventOccurrence(action, new_state)

    def step_accepted(self, state: SpacecraftState):
        """Move the search start to the end of an accepted step."""
        self.t0 = state.t
        self.g0 = self.g(state)
        if self.g0 != 0.0:
            self.g0_positive = self.g0 > 0
        self.pending_event = False
        self.phase = EventPhase.WATCHING


def _check_reset(old_state, new_state):
    if not isinstance(new_state, SpacecraftState):
        raise EventHandlerError(
            f"reset_state returned {type(new_state).__name__}, "
            f"expected a SpacecraftState"
        )
    if abs(new_state.t - old_state.t) > DATE_INCONSISTENCY_THRESHOLD:
        raise ConfigurationError(
            f"reset state time {new_state.t} differs from event time "
            f"{old_state.t}"
        )
    old_state.ensure_compatible_additional_states(new_state)


class EventsManager:
    """Run all detectors of a driver over its steps.

    Parameters
    ----------
    detectors : sequence of EventDetector
        Detectors in registration order
    """

    def __init__(self, detectors):
        self.states = [EventState(d) for d in detectors]
        self._order = {id(s): i for i, s in enumerate(self.states)}
        self._starting = True

    def init(self, initial_state: SpacecraftState, target: float):
        for event_state in self.states:
            event_state.init(initial_state, target)
        self._starting = True

    def accept_step(
        self, interpolator, step_handlers
    ) -> Tuple[SpacecraftState, Optional[Action]]:
        """Process events over one step and feed step handlers.

        Parameters
        ----------
        interpolator : StepInterpolator
            Step to process
        step_handlers : StepHandlerMultiplexer
            Handlers to feed with the (possibly truncated) step

        Returns
        -------
        state, action : SpacecraftState, Action or None
            ``(current_state, None)`` if the whole step was accepted,
            otherwise the event state (after handler reset) and the
            non-CONTINUE action that truncated the step.
        """
        if self._starting:
            for event_state in self.states:
                event_state.reinitialize_begin(interpolator)
            self._starting = False

        sign = 1.0 if interpolator.is_forward else -1.0
        previous = interpolator.previous_state
        current = interpolator.current_state

        def order(event_state):
            return (
                sign * event_state.pending_event_time,
                self._order[id(event_state)],
            )

        occurring = [s for s in self.states if s.evaluate_step(interpolator)]
        while occurring:
            current_event = min(occurring, key=order)
            occurring.remove(current_event)
            event_time = current_event.pending_event_time
            event_state = interpolator.get_interpolated_state(event_time)

            # other detectors may reveal an earlier event up to this time
            earlier = False
            for other in self.states:
                if other is current_event:
                    continue
                if other.try_advance(event_state, interpolator):
                    earlier = True
                    if other not in occurring:
                        occurring.append(other)
            if earlier:
                occurring.append(current_event)
                continue

            step_handlers.handle_step(
                interpolator.restrict_step(previous, event_state)
            )
            occurrence = current_event.do_event(event_state)
            if occurrence.action is Action.RESET_STATE:
                _check_reset(event_state, occurrence.state)
            if occurrence.action is not Action.CONTINUE:
                self._starting = True
                return occurrence.state, occurrence.action

            previous = event_state
            remaining = interpolator.restrict_step(event_state, current)
            if current_event.evaluate_step(remaining):
                occurring.append(current_event)

        for event_state in self.states:
            event_state.step_accepted(current)
        step_handlers.handle_step(interpolator.restrict_step(previous, current))
        return current, None
