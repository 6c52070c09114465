"""Mapping between spacecraft states and flat integration buffers.

The integrated buffer layout is::

    [x, y, z, vx, vy, vz, mass, <provider 1>, <provider 2>, ...]

where each integrated provider occupies exactly its declared dimension,
in registration order. Non-integrated additional states never enter the
buffer; they are carried over unchanged from a reference state.
"""

from typing import Optional, Sequence

import numpy as np

from propagation.errors import ConfigurationError
from propagation.state import AttitudeProvider, SpacecraftState

# Position (3), velocity (3), mass (1)
MAIN_STATE_DIMENSION = 7


class StateMapper:
    """Encode states to flat arrays and decode them back.

    Parameters
    ----------
    reference_state : SpacecraftState
        State providing the frame and the non-integrated additional
        states carried over on decoding
    integrated : sequence
        Integrated providers (objects with ``name`` and ``dimension``),
        in registration order
    attitude_provider : AttitudeProvider, optional
        Attitude law used to rebuild the attitude of decoded states

    Examples
    --------
    >>> mapper = StateMapper(state, [clock])
    >>> y = mapper.to_flat_buffer(state)
    >>> y.shape
    (8,)
    >>> same = mapper.from_flat_buffer(y, state.t)
    """

    def __init__(
        self,
        reference_state: SpacecraftState,
        integrated: Sequence = (),
        attitude_provider: Optional[AttitudeProvider] = None,
    ):
        self.reference_state = reference_state
        self.attitude_provider = attitude_provider
        self.names = [p.name for p in integrated]
        self.dimensions = [int(p.dimension) for p in integrated]
        self._slices = {}
        start = MAIN_STATE_DIMENSION
        for name, dim in zip(self.names, self.dimensions):
            self._slices[name] = slice(start, start + dim)
            start += dim
        self.dimension = start

        # non-integrated additional states are carried over unchanged
        self._carried = {
            name: value
            for name, value in reference_state.additional_states.items()
            if name not in self._slices
        }

    def segment(self, name: str) -> slice:
        """Slice of the flat buffer holding an integrated provider."""
        return self._slices[name]

    def to_flat_buffer(self, state: SpacecraftState) -> np.ndarray:
        """Encode a state into a flat array.

        Raises
        ------
        ConfigurationError
            If an integrated additional state is missing from the state
            or its size differs from the declared dimension.
        """
        y = np.empty(self.dimension)
        y[0:3] = state.position
        y[3:6] = state.velocity
        y[6] = state.mass
        for name, dim in zip(self.names, self.dimensions):
            if not state.has_additional_state(name):
                raise ConfigurationError(
                    f"initial value of integrated additional state '{name}' "
                    f"is missing from the state"
                )
            value = state.get_additional_state(name)
            if value.size != dim:
                raise ConfigurationError(
                    f"additional state '{name}' has {value.size} components, "
                    f"provider declares {dim}"
                )
            y[self._slices[name]] = value
        return y

    def from_flat_buffer(self, y, t: float) -> SpacecraftState:
        """Decode a flat array into a state at time t.

        Raises
        ------
        ConfigurationError
            If the array length does not match the mapper layout.
        """
        y = np.asarray(y, dtype=float)
        if y.shape != (self.dimension,):
            raise ConfigurationError(
                f"flat buffer has shape {y.shape}, expected "
                f"({self.dimension},) for main state and "
                f"{dict(zip(self.names, self.dimensions))}"
            )
        additional = dict(self._carried)
        for name in self.names:
            additional[name] = y[self._slices[name]]

        position = y[0:3]
        velocity = y[3:6]
        frame = self.reference_state.frame
        attitude = None
        if self.attitude_provider is not None:
            attitude = self.attitude_provider.get_attitude(
                t, position, velocity, frame
            )
        return SpacecraftState(
            t,
            position,
            velocity,
            frame=frame,
            mass=y[6],
            attitude=attitude,
            additional_states=additional,
        )

    def extract(self, y, name: str) -> np.ndarray:
        """Get the segment of an integrated provider from a flat array."""
        return np.asarray(y)[self._slices[name]]

    def __repr__(self):
        return (
            f"StateMapper(dimension={self.dimension}, "
            f"integrated={self.names})"
        )
