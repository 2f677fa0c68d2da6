"""Type definitions for compartments, parameters and model components.

Compartments are an :class:`IntEnum` so they can index the columns of a
particle-state array directly, both in vectorised numpy code and inside
Numba-compiled kernels.
"""

from enum import Enum, IntEnum
from typing import Mapping, Protocol, TypeAlias

import numpy as np
from numpy.typing import NDArray


class Compartment(IntEnum):
    """Columns of a particle-state array."""
    S = 0    # susceptible
    I = 1    # infectious
    R1 = 2   # bed-confined
    R2 = 3   # convalescent
    R3 = 4   # fully recovered

    def __repr__(self):
        return f"Compartment.{self.name}"


N_COMPARTMENTS = len(Compartment)


class ParamMode(Enum):
    """Whether a parameter is held at its value or estimated."""
    FIXED = "fixed"
    ESTIMATED = "estimated"


class TransformKind(Enum):
    """Map from a parameter's natural domain to the real line."""
    IDENTITY = "identity"
    LOG = "log"
    LOGIT = "logit"


StateArray: TypeAlias = NDArray[np.int64]          # shape (n_particles, N_COMPARTMENTS)
ParamColumns: TypeAlias = Mapping[str, NDArray[np.float64]]  # name -> shape (n_particles,)


class ProcessModel(Protocol):
    """Draws stochastically updated states."""

    def advance(
        self,
        states: StateArray,
        params: ParamColumns,
        dt: float,
        rng: np.random.Generator,
        n_steps: int = 1,
    ) -> StateArray:
        ...


class ObservationModel(Protocol):
    """Scores and simulates one observed count per particle."""

    def log_density(self, observed: int, states: StateArray, params: ParamColumns) -> NDArray[np.float64]:
        ...

    def simulate(self, states: StateArray, params: ParamColumns, rng: np.random.Generator) -> NDArray[np.int64]:
        ...


class InitSampler(Protocol):
    """Draws the initial particle states."""

    def __call__(self, n: int, params: ParamColumns, rng: np.random.Generator) -> StateArray:
        ...


def as_mode(mode) -> ParamMode:
    """Normalize a mode given as :class:`ParamMode` or its string value."""
    if isinstance(mode, ParamMode):
        return mode
    try:
        return ParamMode(str(mode).lower())
    except ValueError as e:
        raise TypeError(f"invalid parameter mode: {mode!r}") from e


def as_transform(transform) -> TransformKind:
    """Normalize a transform given as :class:`TransformKind` or its string value."""
    if isinstance(transform, TransformKind):
        return transform
    try:
        return TransformKind(str(transform).lower())
    except ValueError as e:
        raise TypeError(f"invalid transform: {transform!r}") from e
