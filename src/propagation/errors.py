"""Exception types raised by the propagation package.

All errors derive from :class:`PropagationError`, which is the single
channel through which failures of drivers, handlers and the parallel
engine reach the caller.
"""


class PropagationError(RuntimeError):
    """Base class for all propagation failures."""


class ConfigurationError(PropagationError, ValueError):
    """Invalid setup detected before or at propagation start.

    Raised for duplicate provider names, dimension mismatches,
    unsatisfiable provider dependencies, missing initial states and
    inconsistent state construction.
    """


class IntegrationError(PropagationError):
    """The numerical integrator failed (e.g. step size underflow)."""


class EventHandlerError(PropagationError):
    """User event code (switching function or handler) raised.

    The original exception is available as ``__cause__``.
    """


class UnknownAdditionalStateError(PropagationError, KeyError):
    """Lookup of an additional state name that was never registered."""

    def __init__(self, name, available=()):
        self.name = name
        self.available = tuple(available)
        super().__init__(
            f"unknown additional state '{name}', "
            f"known names: {list(self.available)}"
        )

    def __str__(self):
        # KeyError quotes its argument, keep the plain message
        return self.args[0]
