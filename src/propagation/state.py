"""Spacecraft state representation.

A :class:`SpacecraftState` is an immutable snapshot of one spacecraft at
one instant: kinematics (position, velocity and optionally acceleration
in a named reference frame), optional attitude, mass, and any number of
named additional states and additional state derivatives.

Every transformation returns a new state; nothing is mutated in place.
"""

import dataclasses
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional, Protocol

import numpy as np

from propagation.errors import ConfigurationError, UnknownAdditionalStateError

# Maximum time offset tolerated between state components
DATE_INCONSISTENCY_THRESHOLD = 1.0e-11


def _frozen_vector(value, name, size=None):
    arr = np.array(value, dtype=float).reshape(-1)
    if size is not None and arr.shape != (size,):
        raise ConfigurationError(
            f"{name} must have {size} components, got shape {arr.shape}"
        )
    arr.setflags(write=False)
    return arr


def _frozen_mapping(values, kind):
    frozen = {}
    for name, value in dict(values or {}).items():
        if not isinstance(name, str) or not name:
            raise ConfigurationError(f"invalid {kind} name {name!r}")
        frozen[name] = _frozen_vector(value, f"{kind} '{name}'")
    return MappingProxyType(frozen)


@dataclass(frozen=True, eq=False)
class Attitude:
    """Orientation of the spacecraft at a given time.

    Parameters
    ----------
    t : float
        Time of the attitude [s]
    frame : str
        Name of the reference frame the orientation is expressed in
    quaternion : array-like
        Rotation quaternion, scalar first (normalised on construction)
    spin : array-like, optional
        Angular velocity [rad/s], defaults to zero
    """

    t: float
    frame: str
    quaternion: Any
    spin: Any = None

    def __post_init__(self):
        q = np.array(self.quaternion, dtype=float).reshape(-1)
        if q.shape != (4,):
            raise ConfigurationError("attitude quaternion must have 4 components")
        norm = np.linalg.norm(q)
        if norm == 0.0:
            raise ConfigurationError("attitude quaternion must be non-zero")
        q = q / norm
        q.setflags(write=False)
        spin = np.zeros(3) if self.spin is None else self.spin
        object.__setattr__(self, "t", float(self.t))
        object.__setattr__(self, "quaternion", q)
        object.__setattr__(self, "spin", _frozen_vector(spin, "spin", 3))

    def with_time(self, t: float) -> "Attitude":
        """Same orientation re-dated at time t."""
        return dataclasses.replace(self, t=t)


class AttitudeProvider(Protocol):
    """Protocol for attitude laws (external collaborators)."""

    def get_attitude(
        self, t: float, position: np.ndarray, velocity: np.ndarray, frame: str
    ) -> Attitude:
        ...


class FrozenAttitudeProvider:
    """Attitude law keeping a fixed orientation with respect to its frame.

    Parameters
    ----------
    attitude : Attitude
        Reference attitude, only its frame and quaternion are used
    """

    def __init__(self, attitude: Attitude):
        self.attitude = attitude

    def get_attitude(self, t, position, velocity, frame):
        return Attitude(t, frame, self.attitude.quaternion)

    def __repr__(self):
        return f"FrozenAttitudeProvider(frame='{self.attitude.frame}')"


@dataclass(frozen=True, eq=False)
class SpacecraftState:
    """Immutable state of a spacecraft at one instant.

    Parameters
    ----------
    t : float
        Time [s] from the caller's reference epoch
    position : array-like
        Position vector (3,) [m]
    velocity : array-like
        Velocity vector (3,) [m/s]
    frame : str, optional
        Reference frame name, by default 'GCRF'
    mass : float, optional
        Spacecraft mass [kg], by default 1000.0
    attitude : Attitude, optional
        Attitude at the same time and in the same frame
    acceleration : array-like, optional
        Acceleration vector (3,) [m/s^2]
    additional_states : dict of str to array-like, optional
        Named additional quantities carried with the state
    additional_derivatives : dict of str to array-like, optional
        Time derivatives of integrated additional quantities

    Raises
    ------
    ConfigurationError
        If the attitude time or frame is inconsistent with the state, or
        a vector has the wrong size.

    Examples
    --------
    >>> s = SpacecraftState(0.0, [7.0e6, 0, 0], [0, 7.5e3, 0])
    >>> s = s.with_additional_state("energy", [1.0])
    >>> s.get_additional_state("energy")
    array([1.])
    """

    t: float
    position: Any
    velocity: Any
    frame: str = "GCRF"
    mass: float = 1000.0
    attitude: Optional[Attitude] = None
    acceleration: Any = None
    additional_states: Mapping[str, np.ndarray] = field(default_factory=dict)
    additional_derivatives: Mapping[str, np.ndarray] = field(
        default_factory=dict
    )

    def __post_init__(self):
        set_ = object.__setattr__
        set_(self, "t", float(self.t))
        set_(self, "mass", float(self.mass))
        set_(self, "position", _frozen_vector(self.position, "position", 3))
        set_(self, "velocity", _frozen_vector(self.velocity, "velocity", 3))
        if self.acceleration is not None:
            set_(
                self,
                "acceleration",
                _frozen_vector(self.acceleration, "acceleration", 3),
            )
        if not np.isfinite(self.mass):
            raise ConfigurationError(f"mass must be finite, got {self.mass}")
        if self.attitude is not None:
            if abs(self.attitude.t - self.t) > DATE_INCONSISTENCY_THRESHOLD:
                raise ConfigurationError(
                    f"attitude time {self.attitude.t} differs from state "
                    f"time {self.t}"
                )
            if self.attitude.frame != self.frame:
                raise ConfigurationError(
                    f"attitude frame '{self.attitude.frame}' differs from "
                    f"state frame '{self.frame}'"
                )
        set_(
            self,
            "additional_states",
            _frozen_mapping(self.additional_states, "additional state"),
        )
        set_(
            self,
            "additional_derivatives",
            _frozen_mapping(
                self.additional_derivatives, "additional derivative"
            ),
        )

    # ------------------------------------------------------------------
    # Kinematics
    # ------------------------------------------------------------------

    @property
    def pv(self) -> np.ndarray:
        """Position and velocity stacked in a (6,) array."""
        return np.concatenate((self.position, self.velocity))

    def shifted_by(self, dt: float) -> "SpacecraftState":
        """Simple Taylor shift of the state by dt seconds.

        Kinematics use a constant acceleration (zero if unknown),
        additional states with a known derivative are shifted linearly.
        Attitude orientation is kept.
        """
        acc = (
            self.acceleration if self.acceleration is not None else np.zeros(3)
        )
        position = self.position + dt * self.velocity + 0.5 * dt**2 * acc
        velocity = self.velocity + dt * acc
        additional = {}
        for name, value in self.additional_states.items():
            rate = self.additional_derivatives.get(name)
            if rate is not None and rate.shape == value.shape:
                additional[name] = value + dt * rate
            else:
                additional[name] = value
        attitude = (
            None if self.attitude is None
            else self.attitude.with_time(self.t + dt)
        )
        return dataclasses.replace(
            self,
            t=self.t + dt,
            position=position,
            velocity=velocity,
            attitude=attitude,
            additional_states=additional,
        )

    # ------------------------------------------------------------------
    # Copy-with helpers
    # ------------------------------------------------------------------

    def replace(self, **changes) -> "SpacecraftState":
        """Return a new state with some fields replaced (validated)."""
        return dataclasses.replace(self, **changes)

    def with_mass(self, mass: float) -> "SpacecraftState":
        return dataclasses.replace(self, mass=mass)

    def with_attitude(self, attitude: Optional[Attitude]) -> "SpacecraftState":
        return dataclasses.replace(self, attitude=attitude)

    def with_position_velocity(self, position, velocity) -> "SpacecraftState":
        return dataclasses.replace(
            self, position=position, velocity=velocity, acceleration=None
        )

    def with_additional_state(self, name: str, value) -> "SpacecraftState":
        """Return a new state with an additional state added or replaced."""
        states = dict(self.additional_states)
        states[name] = value
        return dataclasses.replace(self, additional_states=states)

    def with_additional_state_derivative(
        self, name: str, value
    ) -> "SpacecraftState":
        """Return a new state with an additional derivative added or replaced."""
        derivatives = dict(self.additional_derivatives)
        derivatives[name] = value
        return dataclasses.replace(self, additional_derivatives=derivatives)

    # ------------------------------------------------------------------
    # Additional state access
    # ------------------------------------------------------------------

    def has_additional_state(self, name: str) -> bool:
        return name in self.additional_states

    def has_additional_state_derivative(self, name: str) -> bool:
        return name in self.additional_derivatives

    def get_additional_state(self, name: str) -> np.ndarray:
        """Get an additional state by name.

        Raises
        ------
        UnknownAdditionalStateError
            If no additional state with this name is present.
        """
        try:
            return self.additional_states[name]
        except KeyError:
            raise UnknownAdditionalStateError(
                name, self.additional_states.keys()
            ) from None

    def get_additional_state_derivative(self, name: str) -> np.ndarray:
        """Get an additional state derivative by name.

        Raises
        ------
        UnknownAdditionalStateError
            If no additional derivative with this name is present.
        """
        try:
            return self.additional_derivatives[name]
        except KeyError:
            raise UnknownAdditionalStateError(
                name, self.additional_derivatives.keys()
            ) from None

    def ensure_compatible_additional_states(self, other: "SpacecraftState"):
        """Check another state carries the same additional states.

        Raises
        ------
        ConfigurationError
            If a name is missing in ``other`` or dimensions differ.
        """
        for name, value in self.additional_states.items():
            if name not in other.additional_states:
                raise ConfigurationError(
                    f"additional state '{name}' missing from reset state"
                )
            if other.additional_states[name].shape != value.shape:
                raise ConfigurationError(
                    f"additional state '{name}' dimension changed from "
                    f"{value.size} to {other.additional_states[name].size}"
                )

    def __repr__(self):
        extra = ", ".join(self.additional_states.keys())
        return (
            f"SpacecraftState(t={self.t}, frame='{self.frame}', "
            f"mass={self.mass}, additional=[{extra}])"
        )
