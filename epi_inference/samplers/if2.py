"""Iterated filtering (IF2) for maximum-likelihood estimation.

Each IF2 iteration is one particle-filter pass in which every particle carries
its own copy of the estimated parameters. At each observation step the
parameter particles receive Gaussian noise on the estimation scale with sd
``rw_sd * cooling_factor(m, n)``, and resampling selects the parameter values
that explain the data. The mean of the final parameter particles (estimation
scale, back-transformed) starts the next iteration. As the noise cools the
swarm contracts onto a likelihood maximiser.

Iteration numbers are global: a continued run picks up the cooling schedule
where the previous run stopped.

Example:
    >>> fit = mif2(model, params, Mif2Settings(2000, 50, {"Beta": 0.02}), seed=1)
    >>> fit = fit.continue_run(n_mif=50)      # iterations 51..100
    >>> fit.trace.tail()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Mapping, Optional

import numpy as np
import pandas as pd

from epi_inference.samplers.helpers import (
    DEFAULT_TOL,
    RESAMPLING_SCHEMES,
    filter_pass,
)
from epi_inference.utils.errors import (
    ConfigurationError,
    NonFiniteLikelihoodError,
    ParameterDomainError,
    RunError,
)
from epi_inference.utils.parameters import ParameterSet
from epi_inference.utils.tools import derive_seed

if TYPE_CHECKING:
    from epi_inference.utils.model import PartiallyObservedModel

logger = logging.getLogger(__name__)

COOLING_TYPES = ('geometric', 'hyperbolic')


# =============================================================================
# Cooling
# =============================================================================

def cooling_factor(iteration: int, step: int, n_obs: int, cooling_fraction_50: float,
                   cooling_type: str = 'geometric') -> float:
    """Multiplier of the random-walk sd at ``step`` of ``iteration`` (both from 0).

    Geometric: ``f50 ** ((iteration + step / n_obs) / 50)``, so the factor at
    the start of iteration 50 is exactly ``f50`` and at iteration 100 ``f50**2``.

    Hyperbolic: ``(1 + s) / (s + step + n_obs * iteration)`` with
    ``s = (50 * n_obs * f50 - 1) / (1 - f50)``, which also equals ``f50`` at
    the start of iteration 50 but decays more slowly afterwards.
    """
    if not 0 < cooling_fraction_50 <= 1:
        raise ConfigurationError(f"cooling_fraction_50 must lie in (0, 1], got {cooling_fraction_50}")
    if cooling_fraction_50 == 1:
        return 1.0
    if cooling_type == 'geometric':
        return float(cooling_fraction_50 ** ((iteration + step / n_obs) / 50.0))
    if cooling_type == 'hyperbolic':
        s = (50.0 * n_obs * cooling_fraction_50 - 1.0) / (1.0 - cooling_fraction_50)
        return float((1.0 + s) / (s + step + n_obs * iteration))
    raise ConfigurationError(f"unknown cooling_type {cooling_type!r}; use one of {COOLING_TYPES}")


# =============================================================================
# Settings and result
# =============================================================================

@dataclass(frozen=True)
class Mif2Settings:
    """Algorithmic settings of an IF2 run; carried over by continuation.

    Attributes:
        n_particles: Particles per filtering iteration.
        n_mif: Number of iterations.
        rw_sd: Random-walk sd on the estimation scale, keyed by estimated
            parameter name. Estimated parameters not listed are not perturbed.
        cooling_fraction_50: Fraction of the perturbation left after 50 iterations.
        cooling_type: ``'geometric'`` or ``'hyperbolic'``.
        resampling: ``'systematic'`` or ``'multinomial'``.
        tol: Filtering-failure threshold.
    """
    n_particles: int
    n_mif: int
    rw_sd: Mapping[str, float] = field(default_factory=dict)
    cooling_fraction_50: float = 0.5
    cooling_type: str = 'geometric'
    resampling: str = 'systematic'
    tol: float = DEFAULT_TOL

    def __post_init__(self):
        object.__setattr__(self, 'rw_sd', {k: float(v) for k, v in dict(self.rw_sd).items()})
        if self.n_particles < 1:
            raise ConfigurationError(f"n_particles must be >= 1, got {self.n_particles}")
        if self.n_mif < 0:
            raise ConfigurationError(f"n_mif must be >= 0, got {self.n_mif}")
        if any(sd < 0 or not np.isfinite(sd) for sd in self.rw_sd.values()):
            raise ConfigurationError(f"rw_sd values must be finite and non-negative: {self.rw_sd}")
        if not 0 < self.cooling_fraction_50 <= 1:
            raise ConfigurationError("cooling_fraction_50 must lie in (0, 1]")
        if self.cooling_type not in COOLING_TYPES:
            raise ConfigurationError(f"cooling_type must be one of {COOLING_TYPES}")
        if self.resampling not in RESAMPLING_SCHEMES:
            raise ConfigurationError(f"resampling must be one of {RESAMPLING_SCHEMES}")
        if not 0 < self.tol < 1:
            raise ConfigurationError("tol must lie in (0, 1)")

    def __hash__(self):
        return hash((self.n_particles, self.n_mif, tuple(sorted(self.rw_sd.items())),
                     self.cooling_fraction_50, self.cooling_type, self.resampling, self.tol))

    def sd_vector(self, params: ParameterSet) -> np.ndarray:
        """Random-walk sds aligned with ``params.estimated_names``."""
        unknown = [k for k in self.rw_sd if k not in params.estimated_names]
        if unknown:
            raise ConfigurationError(
                f"rw_sd given for {unknown}, which are not estimated parameters "
                f"(estimated: {list(params.estimated_names)})")
        return np.array([self.rw_sd.get(n, 0.0) for n in params.estimated_names])


@dataclass
class Mif2Result:
    """Outcome of an IF2 run.

    Attributes:
        params: Final estimate (full parameter set, natural scale).
        settings: Settings used, reused by :meth:`continue_run`.
        trace: One row per iteration: ``iteration``, ``loglik``,
            ``n_failures`` and the estimate after that iteration. Row 0 of a
            fresh run holds the starting values.
        iterations_completed: Global iteration count, including earlier runs.
        loglik: Log-likelihood of the last filtering iteration. This is a
            perturbed-filter value; evaluate the estimate with
            :func:`~epi_inference.samplers.helpers.replicate_loglik`.
        seed: Seed of the most recent run.
        model: The model fitted.
        stopped_early: Whether a stop event ended the run.
    """
    params: ParameterSet
    settings: Mif2Settings
    trace: pd.DataFrame
    iterations_completed: int
    loglik: float
    seed: int
    model: Any = field(repr=False)
    stopped_early: bool = False

    def continue_run(self, n_mif: Optional[int] = None, seed: Optional[int] = None,
                     **overrides) -> "Mif2Result":
        """Shorthand for :func:`continue_mif2`."""
        return continue_mif2(self, n_mif=n_mif, seed=seed, **overrides)


# =============================================================================
# Driver
# =============================================================================

def _trace_row(iteration: int, loglik: float, n_failures: int, params: ParameterSet) -> dict:
    row = {'iteration': iteration, 'loglik': loglik, 'n_failures': n_failures}
    row.update(params.as_dict())
    return row


def _iterate(
    model: "PartiallyObservedModel",
    params: ParameterSet,
    settings: Mif2Settings,
    start: int,
    seed: int,
    stop_event=None,
    verbose: bool = False,
):
    """Run ``settings.n_mif`` iterations numbered from ``start``."""
    sd = settings.sd_vector(params)
    est_idx = params.estimated_index
    n_obs = model.n_obs
    rng = np.random.default_rng(seed)
    level = logging.INFO if verbose else logging.DEBUG

    rows = []
    loglik = float('nan')
    stopped = False
    completed = start
    for i in range(settings.n_mif):
        if stop_event is not None and stop_event.is_set():
            logger.info("mif2 stopped after %d iterations", completed)
            stopped = True
            break
        m = start + i

        def perturb(matrix, n, m=m):
            if est_idx.size == 0:
                return matrix
            scale = sd * cooling_factor(m, n, n_obs, settings.cooling_fraction_50,
                                        settings.cooling_type)
            u = params.to_estimation_matrix(matrix)
            u = u + rng.normal(0.0, 1.0, size=u.shape) * scale
            return params.from_estimation_matrix(u, matrix)

        try:
            result = filter_pass(
                model, params, params.to_matrix(settings.n_particles), rng,
                perturb=perturb, resampling=settings.resampling, tol=settings.tol)
            if est_idx.size:
                u_mean = params.to_estimation_matrix(result.param_particles).mean(axis=0)
                params = params.with_estimated(u_mean, scale="estimation")
        except (NonFiniteLikelihoodError, ParameterDomainError) as e:
            raise RunError(f"mif2 iteration {m + 1} failed: {e}", iteration=m + 1,
                           params=params.as_dict()) from e
        loglik = result.loglik
        completed = m + 1
        rows.append(_trace_row(completed, loglik, result.n_failures, params))
        logger.log(level, "mif2 iteration %d: loglik=%.3f, failures=%d, %s",
                   completed, loglik, result.n_failures, params)
    return params, rows, loglik, completed, stopped


def mif2(
    model: "PartiallyObservedModel",
    params: ParameterSet,
    settings: Mif2Settings,
    seed: Optional[int] = None,
    stop_event=None,
    verbose: bool = False,
) -> Mif2Result:
    """Run IF2 from ``params``.

    Args:
        model: The partially observed model.
        params: Starting values; only ESTIMATED parameters move.
        settings: :class:`Mif2Settings`.
        seed: Root seed; drawn from the OS when None and stored in the result.
        stop_event: Object with ``is_set()``, checked between iterations.
        verbose: Log every iteration at INFO instead of DEBUG.

    Returns:
        :class:`Mif2Result`.
    """
    model.check_parameters(params)
    params.check_domain(params.values)
    settings.sd_vector(params)
    if seed is None:
        seed = int(np.random.SeedSequence().generate_state(1)[0])

    start_row = _trace_row(0, float('nan'), 0, params)
    est, rows, loglik, completed, stopped = _iterate(
        model, params, settings, 0, seed, stop_event, verbose)
    trace = pd.DataFrame([start_row] + rows)
    return Mif2Result(est, settings, trace, completed, loglik, seed, model, stopped)


def continue_mif2(
    previous: Mif2Result,
    n_mif: Optional[int] = None,
    seed: Optional[int] = None,
    stop_event=None,
    verbose: bool = False,
    **overrides,
) -> Mif2Result:
    """Continue an IF2 run from its final estimate.

    Settings are those of ``previous`` except for ``n_mif`` and any keyword in
    ``overrides`` (``n_particles``, ``rw_sd``, ``cooling_fraction_50``, ...).
    Iterations are numbered after ``previous.iterations_completed`` so the
    cooling schedule continues, and the new trace rows are appended to the
    old trace. The seed defaults to one derived from the previous seed and
    iteration count.
    """
    changes = dict(overrides)
    if n_mif is not None:
        changes['n_mif'] = n_mif
    try:
        settings = replace(previous.settings, **changes)
    except TypeError as e:
        raise ConfigurationError(f"invalid IF2 override: {e}") from e
    if seed is None:
        seed = derive_seed(previous.seed, previous.iterations_completed)

    est, rows, loglik, completed, stopped = _iterate(
        previous.model, previous.params, settings, previous.iterations_completed,
        seed, stop_event, verbose)
    if rows:
        trace = pd.concat([previous.trace, pd.DataFrame(rows, columns=previous.trace.columns)],
                          ignore_index=True)
    else:
        trace = previous.trace.copy()
        loglik = previous.loglik
    return Mif2Result(est, settings, trace, completed, loglik, seed, previous.model, stopped)
