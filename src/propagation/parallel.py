"""Lockstep propagation of several spacecraft.

:class:`PropagatorsParallelizer` runs one propagator per worker thread
and lets a single multi-spacecraft step handler observe all of them at
shared synchronization times.

Each worker registers a monitor step handler on its propagator. The
monitor publishes every step and then blocks until the coordinating
(calling) thread releases it, so workers never run ahead of the joint
view. The coordinator always releases the worker whose step ends
first, restricting every pending step to the common interval before
handing them to the multi-spacecraft handler.

Protocol between a worker and the coordinator, per worker::

    worker                       coordinator
    ------                       -----------
    ("start", state)      --->
    ("step", interpolator) -->
                          <---   CONTINUE or STOP
    ...
    ("final", state) | ("cancelled", None) | ("error", exception)
"""

import logging
import queue
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Protocol, Sequence

from propagation.errors import ConfigurationError, PropagationError
from propagation.sampling import StepInterpolator
from propagation.state import SpacecraftState

logger = logging.getLogger(__name__)

_CONTINUE = "continue"
_STOP = "stop"
_TERMINAL = ("final", "cancelled", "error")


class MultiSatStepHandler(Protocol):
    """Protocol for handlers observing several propagators at once."""

    def init(self, states: List[SpacecraftState], target: float) -> None:
        ...

    def handle_step(self, interpolators: List[StepInterpolator]) -> None:
        ...

    def finish(self, final_states: List[SpacecraftState]) -> None:
        ...


class MultiSatFixedStepHandler(Protocol):
    """Protocol for multi-spacecraft handlers on a regular time grid."""

    def init(
        self, states: List[SpacecraftState], target: float, step: float
    ) -> None:
        ...

    def handle_step(self, states: List[SpacecraftState]) -> None:
        ...

    def finish(self, final_states: List[SpacecraftState]) -> None:
        ...


class MultiSatStepNormalizer:
    """Adapt a multi-spacecraft fixed-step handler to joint steps.

    Parameters
    ----------
    step : float
        Grid spacing magnitude [s]
    handler : MultiSatFixedStepHandler
        Handler called with the states of all spacecraft on the grid
    """

    def __init__(self, step: float, handler: MultiSatFixedStepHandler):
        if not step > 0:
            raise ValueError(f"step must be positive, got {step}")
        self.step = float(step)
        self.handler = handler
        self._t0 = None
        self._count = 0
        self._last = None

    def init(self, states, target):
        self._t0 = None
        self._count = 0
        self._last = None
        self.handler.init(states, target, self.step)

    def handle_step(self, interpolators):
        if self._last is None:
            self._last = [i.previous_state for i in interpolators]
            self._t0 = self._last[0].t
            self.handler.handle_step(self._last)

        h = self.step if interpolators[0].is_forward else -self.step
        end = interpolators[0].current_state.t
        next_t = self._t0 + (self._count + 1) * h
        while (next_t - end) * h <= 0:
            self._last = [i.get_interpolated_state(next_t) for i in interpolators]
            self.handler.handle_step(self._last)
            self._count += 1
            next_t = self._t0 + (self._count + 1) * h

    def finish(self, final_states):
        if self._last is None or self._last[0].t != final_states[0].t:
            self.handler.handle_step(final_states)
            self._last = final_states
        self.handler.finish(final_states)


class _Cancelled(Exception):
    """Raised inside a worker to abandon its propagation."""


class _Channel:
    """Pair of single-slot queues linking one worker to the coordinator."""

    def __init__(self):
        self.published = queue.Queue(maxsize=1)
        self.commands = queue.Queue(maxsize=1)
        self.awaiting = False
        self.done = False

    # worker side

    def publish(self, kind, payload):
        self.published.put((kind, payload))

    def wait(self):
        return self.commands.get()

    # coordinator side

    def receive(self):
        kind, payload = self.published.get()
        if kind == "step":
            self.awaiting = True
        elif kind in _TERMINAL:
            self.done = True
        return kind, payload

    def release(self, command):
        self.awaiting = False
        self.commands.put(command)


class _Monitor:
    """Step handler publishing a worker's progress."""

    def __init__(self, channel: _Channel):
        self.channel = channel

    def init(self, initial_state, target):
        self.channel.publish("start", initial_state)

    def handle_step(self, interpolator):
        self.channel.publish("step", interpolator)
        if self.channel.wait() == _STOP:
            raise _Cancelled()

    def finish(self, final_state):
        pass


class PropagatorsParallelizer:
    """Propagate several spacecraft in lockstep.

    Parameters
    ----------
    propagators : sequence of AbstractPropagator
        Distinct propagators, each with an initial state
    *handler
        Either a :class:`MultiSatStepHandler`, or a step size and a
        :class:`MultiSatFixedStepHandler`

    Examples
    --------
    >>> parallelizer = PropagatorsParallelizer([p1, p2], 60.0, recorder)
    >>> s1, s2 = parallelizer.propagate(t0, t0 + 3600.0)

    Notes
    -----
    Worker threads live only during :meth:`propagate`. A propagator must
    not be used by two parallelizers at the same time.
    """

    def __init__(self, propagators: Sequence, *handler):
        self.propagators = list(propagators)
        if not self.propagators:
            raise ConfigurationError("at least one propagator is required")
        if len({id(p) for p in self.propagators}) != len(self.propagators):
            raise ConfigurationError("propagators must be distinct instances")
        if len(handler) == 1:
            self.handler = handler[0]
        elif len(handler) == 2:
            self.handler = MultiSatStepNormalizer(*handler)
        else:
            raise TypeError(
                "PropagatorsParallelizer expects (propagators, handler) "
                "or (propagators, step, fixed_handler)"
            )

    def propagate(self, start: float, target: float) -> List[SpacecraftState]:
        """Propagate all spacecraft from start to target.

        Returns
        -------
        states : list of SpacecraftState
            Final states, in the order of the propagators

        Raises
        ------
        PropagationError
            If any propagator or handler fails. Exceptions that are not
            already a PropagationError are chained as ``__cause__``.
        """
        start, target = float(start), float(target)
        logger.info(
            "propagating %d spacecraft from t=%s to t=%s",
            len(self.propagators),
            start,
            target,
        )
        try:
            if start == target:
                states = self._propagate_in_place(start)
            else:
                states = self._propagate_threads(start, target)
        except PropagationError:
            raise
        except Exception as err:
            raise PropagationError(f"parallel propagation failed: {err}") from err
        logger.info("parallel propagation ended at t=%s", states[0].t)
        return states

    def _propagate_in_place(self, t):
        states = [p.propagate(t, t) for p in self.propagators]
        self.handler.init(states, t)
        self.handler.finish(states)
        return states

    def _propagate_threads(self, start, target):
        channels = [_Channel() for _ in self.propagators]
        error: Optional[BaseException] = None
        states = None
        with ThreadPoolExecutor(
            max_workers=len(self.propagators), thread_name_prefix="propagator"
        ) as executor:
            for index, (propagator, channel) in enumerate(
                zip(self.propagators, channels)
            ):
                executor.submit(
                    self._work, index, propagator, channel, start, target
                )
            try:
                states = self._coordinate(channels, start, target)
            except Exception as err:
                error = err
            finally:
                self._drain(channels)
        if error is not None:
            raise error
        return states

    @staticmethod
    def _work(index, propagator, channel, start, target):
        monitor = _Monitor(channel)
        propagator.multiplexer.add(monitor)
        message = ("error", PropagationError(f"worker {index} interrupted"))
        try:
            message = ("final", propagator.propagate(start, target))
        except _Cancelled:
            message = ("cancelled", None)
        except Exception as err:
            message = ("error", err)
        finally:
            propagator.multiplexer.remove(monitor)
            channel.publish(*message)

    @staticmethod
    def _receive(channel):
        kind, payload = channel.receive()
        if kind == "error":
            raise payload
        return kind, payload

    def _coordinate(self, channels, start, target):
        sign = 1.0 if target >= start else -1.0
        n = len(channels)

        initial = [self._receive(channel)[1] for channel in channels]
        self.handler.init(initial, target)

        pending = []
        for index, channel in enumerate(channels):
            kind, payload = self._receive(channel)
            if kind != "step":
                raise PropagationError(
                    f"propagator {index} finished at t={payload.t} without "
                    f"producing a step"
                )
            pending.append(payload)

        sync_time = start
        while True:
            selected = min(
                range(n), key=lambda i: (sign * pending[i].current_state.t, i)
            )
            t_sync = pending[selected].current_state.t
            if t_sync != sync_time:
                restricted = [
                    step.restrict_step(
                        step.get_interpolated_state(sync_time),
                        step.get_interpolated_state(t_sync),
                    )
                    for step in pending
                ]
                self.handler.handle_step(restricted)
                logger.debug("synchronized at t=%s", t_sync)
                sync_time = t_sync

            channels[selected].release(_CONTINUE)
            kind, payload = self._receive(channels[selected])
            if kind == "step":
                pending[selected] = payload
                continue
            return self._finish(channels, pending, selected, payload, target)

    def _finish(self, channels, pending, selected, final_state, target):
        """End the run after propagator ``selected`` has finished."""
        t_stop = final_state.t
        states = []
        for index, channel in enumerate(channels):
            if index == selected:
                states.append(final_state)
                continue
            step = pending[index]
            if step.current_state.t == t_stop == target:
                channel.release(_CONTINUE)
                kind, payload = self._receive(channel)
                if kind == "final":
                    states.append(payload)
                    continue
            state = step.get_interpolated_state(t_stop)
            if channel.awaiting:
                channel.release(_STOP)
            while not channel.done:
                self._receive(channel)
            self.propagators[index].reset_initial_state(state)
            states.append(state)
        self.handler.finish(states)
        return states

    def _drain(self, channels):
        """Cancel and wait for every worker still running."""
        for index, channel in enumerate(channels):
            while not channel.done:
                if channel.awaiting:
                    channel.release(_STOP)
                kind, payload = channel.receive()
                if kind == "error":
                    logger.warning(
                        "propagator %d also failed: %s", index, payload
                    )
