"""Observation series and the simulation time grid.

A :class:`Dataset` is an ordered sequence of (time, count) pairs together with
the population size and the time ``t0`` of the initial state. The particle
filter walks a :class:`StepPlan` derived from it: for each observation, the
number of full Euler steps of size ``dt`` since the previous observation plus
an optional shorter final step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Optional, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from epi_inference.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

BSFLU_POPULATION = 763

# Relative slack when deciding whether an interval is a whole number of steps
_GRID_RTOL = 1e-9


@dataclass(frozen=True)
class Dataset:
    """Observed counts at strictly increasing times.

    Attributes:
        times: Observation times, shape (T,).
        counts: Non-negative integer counts, shape (T,).
        population: Population size N.
        t0: Time of the initial state, not after ``times[0]``.
        name: Label used in logs and result tables.
    """
    times: NDArray[np.float64]
    counts: NDArray[np.int64]
    population: int
    t0: float = 0.0
    name: str = "data"

    def __post_init__(self):
        times = np.asarray(self.times, dtype=np.float64).ravel()
        raw = np.asarray(self.counts).ravel()
        if times.size == 0:
            raise ConfigurationError("dataset has no observations")
        if times.shape != raw.shape:
            raise ConfigurationError(
                f"times and counts differ in length ({times.size} vs {raw.size})")
        if not np.all(np.isfinite(times)):
            raise ConfigurationError("observation times must be finite")
        if np.any(np.diff(times) <= 0):
            raise ConfigurationError("observation times must be strictly increasing")
        if np.any(pd.isna(raw)):
            raise ConfigurationError("missing observations are not supported")
        counts = raw.astype(np.int64)
        if np.any(counts != raw) or np.any(counts < 0):
            raise ConfigurationError("counts must be non-negative integers")
        if self.population < 1:
            raise ConfigurationError(f"population must be positive, got {self.population}")
        if self.t0 > times[0]:
            raise ConfigurationError(f"t0={self.t0} is after the first observation {times[0]}")
        times.setflags(write=False)
        counts.setflags(write=False)
        object.__setattr__(self, 'times', times)
        object.__setattr__(self, 'counts', counts)
        object.__setattr__(self, 'population', int(self.population))
        object.__setattr__(self, 't0', float(self.t0))

    def __len__(self) -> int:
        return self.times.size

    def __eq__(self, other) -> bool:
        return (isinstance(other, Dataset)
                and np.array_equal(self.times, other.times)
                and np.array_equal(self.counts, other.counts)
                and self.population == other.population
                and self.t0 == other.t0)

    def __hash__(self):
        return hash((self.times.tobytes(), self.counts.tobytes(), self.population, self.t0))

    @classmethod
    def from_frame(cls, frame: pd.DataFrame, time_col: str, count_col: str,
                   population: int, t0: Optional[float] = None, name: str = "data") -> "Dataset":
        for col in (time_col, count_col):
            if col not in frame.columns:
                raise ConfigurationError(f"column {col!r} not found; have {list(frame.columns)}")
        times = frame[time_col].to_numpy(dtype=np.float64)
        counts = frame[count_col].to_numpy()
        if t0 is None:
            t0 = float(times[0]) - 1.0 if times.size else 0.0
        return cls(times, counts, population, t0, name)

    @classmethod
    def from_csv(cls, path: Union[str, Path], time_col: str, count_col: str,
                 population: int, t0: Optional[float] = None, name: Optional[str] = None) -> "Dataset":
        """Load a series from a CSV file with the given column names.

        ``t0`` defaults to one time unit before the first observation.
        """
        frame = pd.read_csv(path)
        logger.debug("Loaded %d rows from %s", len(frame), path)
        return cls.from_frame(frame, time_col, count_col, population, t0,
                              name or Path(path).stem)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({'time': self.times, 'count': self.counts})


def load_bsflu(t0: float = 0.0) -> Dataset:
    """Daily bed-confinement counts from the 1978 boarding-school outbreak."""
    source = resources.files('epi_inference').joinpath('data', 'bsflu.csv')
    with source.open('r') as fh:
        frame = pd.read_csv(fh)
    return Dataset.from_frame(frame, 'day', 'B', BSFLU_POPULATION, t0=t0, name='bsflu')


# ---------------------------------------------------------------------------
# Step plan
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StepPlan:
    """How to move from one observation time to the next.

    ``n_steps[k]`` full steps of size ``dt`` followed, when
    ``remainder[k] > 0``, by one step of length ``remainder[k]``.
    """
    dt: float
    n_steps: NDArray[np.int64]
    remainder: NDArray[np.float64]

    def __len__(self) -> int:
        return self.n_steps.size

    @property
    def aligned(self) -> bool:
        return not np.any(self.remainder > 0)


def build_step_plan(times, t0: float, dt: float, on_misaligned: str = 'partial') -> StepPlan:
    """Split each inter-observation interval into Euler steps.

    Args:
        times: Strictly increasing observation times.
        t0: Start time, not after ``times[0]``.
        dt: Step size.
        on_misaligned: ``'partial'`` adds a final step of the remaining length;
            ``'error'`` rejects any interval that is not a whole number of steps.

    Raises:
        ConfigurationError: Invalid ``dt`` or policy, or a misaligned interval
            under ``'error'``.
    """
    if not dt > 0 or not np.isfinite(dt):
        raise ConfigurationError(f"dt must be positive and finite, got {dt}")
    if on_misaligned not in ('partial', 'error'):
        raise ConfigurationError(f"on_misaligned must be 'partial' or 'error', got {on_misaligned!r}")
    times = np.asarray(times, dtype=np.float64)
    deltas = np.diff(np.concatenate([[t0], times]))
    if np.any(deltas < 0) or np.any(deltas[1:] == 0):
        raise ConfigurationError("observation times must be strictly increasing and not before t0")

    ratio = deltas / dt
    n_steps = np.floor(ratio + _GRID_RTOL * np.maximum(ratio, 1.0)).astype(np.int64)
    remainder = deltas - n_steps * dt
    remainder[np.abs(remainder) <= _GRID_RTOL * max(dt, 1.0)] = 0.0
    remainder = np.maximum(remainder, 0.0)

    misaligned = np.flatnonzero(remainder > 0)
    if misaligned.size:
        if on_misaligned == 'error':
            k = int(misaligned[0])
            raise ConfigurationError(
                f"interval ending at t={times[k]} (length {deltas[k]}) is not a multiple of dt={dt}")
        logger.debug("%d intervals end with a partial step", misaligned.size)
    return StepPlan(float(dt), n_steps, remainder)
