"""Process simulator for the five-compartment influenza model.

Core design:
1. transition_probability(rate, dt)        # per-step event probability
2. TrackingConfig                          # which compartments are simulated
3. binomial_substeps(..., seed, counter)   # per-particle kernel, Numba friendly
4. CompartmentalProcess.advance(...)       # vectorised front end, two backends
5. make_init_sampler / make_poisson_init_sampler

Flows per Euler step of length dt, all drawn from the pre-step state::

    S  --Beta*I/N-->  I  --mu_I-->  R1  --mu_R1-->  R2  --mu_R2-->  R3

Each transition count is Binomial(source count, 1 - exp(-rate * dt)).

Random numbers in the Numba kernel follow the seed + counter pattern
(``np.random.seed(seed + counter)``), the only seeding Numba supports. The
seed itself is drawn from the injected ``numpy.random.Generator``, so both
backends are reproducible from the caller's generator alone.

Example:
    >>> process = CompartmentalProcess(population=763)
    >>> init = make_init_sampler({"S": 762, "I": 1, "R1": 0}, population=763)
    >>> rng = np.random.default_rng(1)
    >>> params = {"Beta": 2.0, "mu_I": 1.0, "mu_R1": 1 / 3}
    >>> x = init(1000, params, rng)
    >>> x = process.advance(x, params, dt=1 / 12, rng=rng, n_steps=12)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from epi_inference.utils.errors import ConfigurationError
from epi_inference.utils.numba_utils import numba_switchable
from epi_inference.utils.type_def import N_COMPARTMENTS, Compartment, ParamColumns, StateArray

logger = logging.getLogger(__name__)

BACKENDS = ('numpy', 'numba')

# Column indices, usable inside compiled kernels
IDX_S = int(Compartment.S)
IDX_I = int(Compartment.I)
IDX_R1 = int(Compartment.R1)
IDX_R2 = int(Compartment.R2)
IDX_R3 = int(Compartment.R3)

_SEED_BOUND = 2 ** 31 - 1


def transition_probability(rate, dt: float):
    """``1 - exp(-rate * dt)`` clamped into [0, 1]."""
    return np.clip(-np.expm1(-np.asarray(rate, dtype=np.float64) * dt), 0.0, 1.0)


# ---------------------------------------------------------------------------
# Tracking
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TrackingConfig:
    """Which compartments beyond S, I and R1 are simulated.

    When R2 is not tracked, individuals leaving R1 leave the tracked state, so
    S + I + R1 can only decrease. With full tracking the population total is
    conserved. Untracked columns stay at zero.
    """
    track_r2: bool = False
    track_r3: bool = False

    def __post_init__(self):
        if self.track_r3 and not self.track_r2:
            raise ConfigurationError("R3 can only be tracked together with R2")

    @classmethod
    def reduced(cls) -> "TrackingConfig":
        return cls(False, False)

    @classmethod
    def full(cls) -> "TrackingConfig":
        return cls(True, True)

    @classmethod
    def from_name(cls, name: Union[str, "TrackingConfig"]) -> "TrackingConfig":
        if isinstance(name, TrackingConfig):
            return name
        if name == 'reduced':
            return cls.reduced()
        if name == 'full':
            return cls.full()
        raise ConfigurationError(f"unknown tracking {name!r}; use 'reduced' or 'full'")

    @property
    def tracked(self) -> Tuple[Compartment, ...]:
        out = [Compartment.S, Compartment.I, Compartment.R1]
        if self.track_r2:
            out.append(Compartment.R2)
        if self.track_r3:
            out.append(Compartment.R3)
        return tuple(out)

    @property
    def conserves_population(self) -> bool:
        return self.track_r2 and self.track_r3


# ---------------------------------------------------------------------------
# Kernels
# ---------------------------------------------------------------------------

@numba_switchable(cache=True)
def binomial_substeps(
    states: NDArray[np.int64],
    beta: NDArray[np.float64],
    mu_i: NDArray[np.float64],
    mu_r1: NDArray[np.float64],
    mu_r2: NDArray[np.float64],
    population: float,
    dt: float,
    n_steps: int,
    track_r2: bool,
    track_r3: bool,
    seed: int,
    counter: int,
) -> NDArray[np.int64]:
    """Advance every particle ``n_steps`` Euler steps, one particle at a time.

    Args:
        states: (n_particles, 5) compartment counts. Not modified.
        beta, mu_i, mu_r1, mu_r2: Per-particle rates, shape (n_particles,).
        population: N in the force of infection Beta * I / N.
        dt: Step length.
        n_steps: Number of steps.
        track_r2, track_r3: Tracking flags, see :class:`TrackingConfig`.
        seed: Base random seed.
        counter: Offset added to ``seed``.

    Returns:
        New (n_particles, 5) array.
    """
    np.random.seed(seed + counter)
    out = states.copy()
    n = out.shape[0]
    for p in range(n):
        s = out[p, 0]
        inf = out[p, 1]
        r1 = out[p, 2]
        r2 = out[p, 3]
        r3 = out[p, 4]
        q_ir1 = min(max(-np.expm1(-mu_i[p] * dt), 0.0), 1.0)
        q_r1r2 = min(max(-np.expm1(-mu_r1[p] * dt), 0.0), 1.0)
        q_r2r3 = min(max(-np.expm1(-mu_r2[p] * dt), 0.0), 1.0)
        for _ in range(n_steps):
            q_si = min(max(-np.expm1(-beta[p] * inf / population * dt), 0.0), 1.0)
            d_si = np.random.binomial(s, q_si)
            d_ir1 = np.random.binomial(inf, q_ir1)
            d_r1r2 = np.random.binomial(r1, q_r1r2)
            d_r2r3 = 0
            if track_r2:
                d_r2r3 = np.random.binomial(r2, q_r2r3)
            s = s - d_si
            inf = inf + d_si - d_ir1
            r1 = r1 + d_ir1 - d_r1r2
            if track_r2:
                r2 = r2 + d_r1r2 - d_r2r3
            if track_r3:
                r3 = r3 + d_r2r3
        out[p, 0] = s
        out[p, 1] = inf
        out[p, 2] = r1
        out[p, 3] = r2
        out[p, 4] = r3
    return out


def _numpy_substeps(
    states: StateArray,
    beta: NDArray[np.float64],
    mu_i: NDArray[np.float64],
    mu_r1: NDArray[np.float64],
    mu_r2: NDArray[np.float64],
    population: float,
    dt: float,
    n_steps: int,
    tracking: TrackingConfig,
    rng: np.random.Generator,
) -> StateArray:
    out = states.copy()
    s = out[:, IDX_S]
    inf = out[:, IDX_I]
    r1 = out[:, IDX_R1]
    r2 = out[:, IDX_R2]
    r3 = out[:, IDX_R3]
    q_ir1 = transition_probability(mu_i, dt)
    q_r1r2 = transition_probability(mu_r1, dt)
    q_r2r3 = transition_probability(mu_r2, dt)
    for _ in range(n_steps):
        q_si = transition_probability(beta * inf / population, dt)
        d_si = rng.binomial(s, q_si)
        d_ir1 = rng.binomial(inf, q_ir1)
        d_r1r2 = rng.binomial(r1, q_r1r2)
        s -= d_si
        inf += d_si - d_ir1
        r1 += d_ir1 - d_r1r2
        if tracking.track_r2:
            d_r2r3 = rng.binomial(r2, q_r2r3)
            r2 += d_r1r2 - d_r2r3
            if tracking.track_r3:
                r3 += d_r2r3
    return out


# ---------------------------------------------------------------------------
# Front end
# ---------------------------------------------------------------------------

class CompartmentalProcess:
    """Binomial-chain simulator implementing the ``ProcessModel`` protocol.

    Args:
        population: N used in the force of infection.
        tracking: :class:`TrackingConfig` or ``'reduced'`` / ``'full'``.
        backend: ``'numpy'`` (vectorised over particles) or ``'numba'``
            (compiled per-particle loop, see :func:`binomial_substeps`).
    """

    def __init__(self, population: int, tracking=None, backend: str = 'numpy'):
        if population < 1:
            raise ConfigurationError(f"population must be positive, got {population}")
        if backend not in BACKENDS:
            raise ConfigurationError(f"unknown backend {backend!r}; use one of {BACKENDS}")
        self.population = int(population)
        self.tracking = TrackingConfig.from_name(tracking if tracking is not None else 'reduced')
        self.backend = backend

    def __repr__(self):
        return (f"CompartmentalProcess(population={self.population}, "
                f"tracking={self.tracking}, backend={self.backend!r})")

    def required_parameters(self) -> Tuple[str, ...]:
        names = ('Beta', 'mu_I', 'mu_R1')
        if self.tracking.track_r2:
            names += ('mu_R2',)
        return names

    def _rates(self, params: ParamColumns, n: int):
        missing = [k for k in self.required_parameters() if k not in params]
        if missing:
            raise ConfigurationError(f"process model needs parameters {missing}")

        def col(name):
            if name not in params:
                return np.zeros(n, dtype=np.float64)
            return np.ascontiguousarray(
                np.broadcast_to(np.asarray(params[name], dtype=np.float64), (n,)))

        return col('Beta'), col('mu_I'), col('mu_R1'), col('mu_R2')

    def advance(
        self,
        states: StateArray,
        params: ParamColumns,
        dt: float,
        rng: np.random.Generator,
        n_steps: int = 1,
    ) -> StateArray:
        """Draw states ``n_steps * dt`` time units ahead.

        Args:
            states: (n_particles, 5) int64 counts.
            params: Parameter columns, scalars or arrays of length n_particles.
            dt: Step length; must be positive.
            rng: Source of all randomness of this call.
            n_steps: Number of steps; 0 returns a copy.

        Returns:
            New (n_particles, 5) int64 array.
        """
        states = np.ascontiguousarray(states, dtype=np.int64)
        if states.ndim != 2 or states.shape[1] != N_COMPARTMENTS:
            raise ValueError(f"states must have shape (n, {N_COMPARTMENTS}), got {states.shape}")
        if dt <= 0:
            raise ValueError(f"dt must be positive, got {dt}")
        if n_steps == 0:
            return states.copy()
        beta, mu_i, mu_r1, mu_r2 = self._rates(params, states.shape[0])
        if self.backend == 'numba':
            seed = int(rng.integers(_SEED_BOUND))
            return binomial_substeps(
                states, beta, mu_i, mu_r1, mu_r2, float(self.population), float(dt),
                int(n_steps), self.tracking.track_r2, self.tracking.track_r3, seed, 0)
        return _numpy_substeps(
            states, beta, mu_i, mu_r1, mu_r2, float(self.population), float(dt),
            int(n_steps), self.tracking, rng)


# ---------------------------------------------------------------------------
# Initial-state samplers
# ---------------------------------------------------------------------------

def state_vector(state: Union[Mapping[str, int], NDArray], population: Optional[int] = None) -> StateArray:
    """Normalise ``{'S': .., 'I': ..}`` or a length-5 vector to a state row."""
    if isinstance(state, Mapping):
        out = np.zeros(N_COMPARTMENTS, dtype=np.int64)
        for name, count in state.items():
            try:
                out[Compartment[name]] = int(count)
            except KeyError:
                raise ConfigurationError(f"unknown compartment {name!r}") from None
    else:
        out = np.asarray(state, dtype=np.int64).ravel()
        if out.shape != (N_COMPARTMENTS,):
            raise ConfigurationError(f"state must have {N_COMPARTMENTS} entries, got {out.shape}")
    if np.any(out < 0):
        raise ConfigurationError(f"negative compartment count in {out.tolist()}")
    if population is not None and out.sum() > population:
        raise ConfigurationError(f"initial state {out.tolist()} exceeds population {population}")
    return out


class FixedInitSampler:
    """Every particle starts at the same state."""

    def __init__(self, state, population: Optional[int] = None):
        self.state = state_vector(state, population)

    def __repr__(self):
        return f"FixedInitSampler({self.state.tolist()})"

    def __call__(self, n: int, params: ParamColumns, rng: np.random.Generator) -> StateArray:
        return np.tile(self.state, (n, 1))


class PoissonInitSampler:
    """I(0) ~ max(min_infected, Poisson(mean)); everyone else susceptible.

    ``mean_infected`` may name a parameter column, which lets the initial
    condition be estimated like any other parameter.
    """

    def __init__(self, population: int, mean_infected: Union[float, str] = 1.0,
                 min_infected: int = 1):
        if min_infected < 0 or min_infected > population:
            raise ConfigurationError(f"min_infected must lie in [0, {population}]")
        self.population = int(population)
        self.mean_infected = mean_infected
        self.min_infected = int(min_infected)

    def __repr__(self):
        return (f"PoissonInitSampler(population={self.population}, "
                f"mean_infected={self.mean_infected!r}, min_infected={self.min_infected})")

    def __call__(self, n: int, params: ParamColumns, rng: np.random.Generator) -> StateArray:
        if isinstance(self.mean_infected, str):
            lam = np.broadcast_to(np.asarray(params[self.mean_infected], dtype=np.float64), (n,))
        else:
            lam = np.full(n, float(self.mean_infected))
        i0 = np.clip(rng.poisson(lam), self.min_infected, self.population)
        out = np.zeros((n, N_COMPARTMENTS), dtype=np.int64)
        out[:, IDX_I] = i0
        out[:, IDX_S] = self.population - i0
        return out


def make_init_sampler(state, population: Optional[int] = None) -> FixedInitSampler:
    """Deterministic initializer; samplers are picklable for worker processes."""
    return FixedInitSampler(state, population)


def make_poisson_init_sampler(population: int, mean_infected: Union[float, str] = 1.0,
                              min_infected: int = 1) -> PoissonInitSampler:
    return PoissonInitSampler(population, mean_infected, min_infected)
