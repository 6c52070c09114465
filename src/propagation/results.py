"""Recording and analysis of propagated ephemerides.

This module provides :class:`EphemerisRecorder`, a step handler storing
the states it sees, and :class:`PropagationResult`, which holds the
recorded trajectory as a pandas DataFrame.
"""

import os
from dataclasses import dataclass
from typing import List, Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from propagation.sampling import StepInterpolator
from propagation.state import SpacecraftState

MAIN_COLUMNS = ["x", "y", "z", "vx", "vy", "vz", "mass"]


def state_to_row(state: SpacecraftState) -> dict:
    """Flatten a state into a dict of named scalars.

    Additional states of size 1 use their name as column, larger ones
    get one column per component (``name_0``, ``name_1``, ...).
    """
    row = dict(zip(MAIN_COLUMNS, np.concatenate((state.pv, [state.mass]))))
    for name, value in state.additional_states.items():
        if value.size == 1:
            row[name] = float(value[0])
        else:
            for i, component in enumerate(value):
                row[f"{name}_{i}"] = float(component)
    return row


@dataclass
class PropagationResult:
    """Container for a propagated trajectory.

    Parameters
    ----------
    time : ndarray
        Time points [s], shape (n_steps,)
    states : DataFrame
        One row per time point with columns x, y, z, vx, vy, vz, mass
        followed by additional state columns
    frame : str, optional
        Reference frame of positions and velocities

    Examples
    --------
    >>> result = recorder.to_result()
    >>> result.states["x"].max()
    >>> fig, axes = result.plot()
    >>> result.save("ephemeris.npz")
    """

    time: np.ndarray
    states: pd.DataFrame
    frame: Optional[str] = None

    def __post_init__(self):
        """Validate dimensions and set the time index."""
        self.time = np.asarray(self.time, dtype=float)
        if len(self.states) != len(self.time):
            raise ValueError(
                f"States length {len(self.states)} != time length "
                f"{len(self.time)}"
            )
        self.states.index = pd.Index(self.time, name="time")

    @classmethod
    def from_states(cls, states: List[SpacecraftState]) -> "PropagationResult":
        if not states:
            raise ValueError("no states to build a result from")
        df = pd.DataFrame([state_to_row(s) for s in states])
        return cls(
            time=np.array([s.t for s in states]),
            states=df,
            frame=states[0].frame,
        )

    @property
    def n_steps(self) -> int:
        return len(self.time)

    @property
    def additional_columns(self) -> List[str]:
        return [c for c in self.states.columns if c not in MAIN_COLUMNS]

    def positions(self) -> np.ndarray:
        return self.states[["x", "y", "z"]].to_numpy()

    def velocities(self) -> np.ndarray:
        return self.states[["vx", "vy", "vz"]].to_numpy()

    def plot(self, figsize=(10, 8), **kwargs):
        """Plot position, velocity and the other recorded quantities.

        Parameters
        ----------
        figsize : tuple, optional
            Figure size (width, height), by default (10, 8)
        **kwargs
            Additional arguments passed to plt.plot()

        Returns
        -------
        fig : matplotlib.figure.Figure
            Figure object
        axes : ndarray
            Array of axes objects
        """
        panels = [
            ("Position [m]", ["x", "y", "z"]),
            ("Velocity [m/s]", ["vx", "vy", "vz"]),
        ]
        others = ["mass"] + self.additional_columns
        panels.append(("Other", others))

        fig, axes = plt.subplots(
            len(panels), 1, figsize=figsize, sharex=True, squeeze=False
        )
        axes = axes.flatten()
        for ax, (label, columns) in zip(axes, panels):
            for col in columns:
                ax.plot(self.time, self.states[col], label=col, **kwargs)
            ax.set_ylabel(label)
            ax.legend()
            ax.grid(True, alpha=0.3)
        axes[-1].set_xlabel("Time [s]")

        plt.tight_layout()
        return fig, axes

    def to_dataframe(self) -> pd.DataFrame:
        """Single DataFrame with time as a column."""
        return self.states.reset_index()

    def save(self, filename: str):
        """Save results to a .npz or .csv file."""
        ext = os.path.splitext(filename)[1].lower()

        if ext == ".npz":
            np.savez_compressed(
                filename,
                time=self.time,
                states=self.states.to_numpy(),
                state_columns=np.array(self.states.columns.tolist()),
                frame=np.array(self.frame or ""),
            )
        elif ext == ".csv":
            self.to_dataframe().to_csv(filename, index=False)
        else:
            raise ValueError(
                f"Unsupported file extension '{ext}'. Use .npz or .csv"
            )

    @classmethod
    def load(cls, filename: str) -> "PropagationResult":
        """Load results saved with :meth:`save`."""
        ext = os.path.splitext(filename)[1].lower()

        if ext == ".npz":
            with np.load(filename) as data:
                columns = data["state_columns"].tolist()
                states = pd.DataFrame(data["states"], columns=columns)
                frame = str(data["frame"]) or None
                return cls(time=data["time"], states=states, frame=frame)
        elif ext == ".csv":
            df = pd.read_csv(filename)
            time = df.pop("time").to_numpy()
            return cls(time=time, states=df)
        raise ValueError(
            f"Unsupported file extension '{ext}'. Use .npz or .csv"
        )


class EphemerisRecorder:
    """Step handler recording the states it receives.

    Works both as a fixed-step handler (registered with a step size,
    records each grid state) and as a variable step handler (records the
    end of every step).

    Examples
    --------
    >>> recorder = EphemerisRecorder()
    >>> propagator.set_step_handler(60.0, recorder)
    >>> propagator.propagate(t0 + 3600.0)
    >>> df = recorder.to_result().to_dataframe()
    """

    def __init__(self):
        self.states: List[SpacecraftState] = []
        self.step: Optional[float] = None

    def init(self, initial_state, target, step=None):
        self.states = []
        self.step = step

    def handle_step(self, state_or_interpolator):
        if isinstance(state_or_interpolator, StepInterpolator):
            if not self.states:
                self.states.append(state_or_interpolator.previous_state)
            self.states.append(state_or_interpolator.current_state)
        else:
            self.states.append(state_or_interpolator)

    def finish(self, final_state):
        if not self.states or self.states[-1].t != final_state.t:
            self.states.append(final_state)

    def to_result(self) -> PropagationResult:
        return PropagationResult.from_states(self.states)
