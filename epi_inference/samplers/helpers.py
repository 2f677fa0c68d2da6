"""Bootstrap particle filter and related helpers.

The filter propagates ``n_particles`` simulated states through the
observation sequence. At every observation it weights particles by the
observation density, accumulates ``log(mean weight)`` into the
log-likelihood estimate and resamples. The estimate of the likelihood (not of
its logarithm) is unbiased, which is what pMCMC relies on.

A *filtering failure* is a step at which every particle's likelihood falls
below ``tol``. The step then contributes ``log(tol)``, particles are carried
forward without resampling and the step is recorded. Failures are
diagnostics, never exceptions.

Each particle also carries its own row of parameter values. Plain filtering
uses identical rows; IF2 perturbs them through the ``perturb`` hook of
:func:`filter_pass`, and they are resampled together with the states.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, List, NamedTuple, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from epi_inference.utils.errors import NonFiniteLikelihoodError
from epi_inference.utils.parameters import ParameterSet
from epi_inference.utils.tools import (
    derive_seed,
    effective_sample_size,
    log_mean_weight,
    logmeanexp,
    make_rng,
    normalized_weights,
)
from epi_inference.utils.type_def import N_COMPARTMENTS

if TYPE_CHECKING:
    from epi_inference.utils.model import PartiallyObservedModel

logger = logging.getLogger(__name__)

DEFAULT_TOL = 1e-17
RESAMPLING_SCHEMES = ('systematic', 'multinomial')

# Perturbation hook: (param_matrix, step) -> param_matrix
Perturbation = Callable[[NDArray[np.float64], int], NDArray[np.float64]]


# =============================================================================
# Result container
# =============================================================================

class FilterResult(NamedTuple):
    """Output of one particle-filter pass.

    Attributes:
        loglik: Log-likelihood estimate, the sum of ``cond_loglik``.
        cond_loglik: (T,) conditional log-likelihood of each observation.
        ess: (T,) effective sample size before resampling; 0 at failed steps.
        n_failures: Number of filtering failures.
        failure_steps: Indices of the failed steps.
        filter_mean: (T, 5) weighted mean state at each observation.
        param_particles: (n_particles, n_params) final parameter particles,
            natural scale, column order of the parameter set.
        states: (T, n_particles, 5) filtered states, or None unless requested.
    """
    loglik: float
    cond_loglik: NDArray[np.float64]
    ess: NDArray[np.float64]
    n_failures: int
    failure_steps: Tuple[int, ...]
    filter_mean: NDArray[np.float64]
    param_particles: NDArray[np.float64]
    states: Optional[NDArray[np.int64]]


# =============================================================================
# Resampling
# =============================================================================

def systematic_resampling(weights: NDArray[np.float64], num_samples: int,
                          rng: np.random.Generator) -> NDArray[np.int64]:
    """Indices drawn by systematic resampling.

    One uniform offset ``u0 ~ U(0, 1/n)`` and the evenly spaced positions
    ``u0 + k/n`` are located in the cumulative weights.

    Args:
        weights: Non-negative weights, need not be normalised.
        num_samples: Number of indices to draw.
        rng: Random source.

    Returns:
        (num_samples,) ancestor indices, sorted.
    """
    cumulative_weights = np.cumsum(weights, dtype=np.float64)
    cumulative_weights /= cumulative_weights[-1]
    u0 = rng.uniform(0, 1 / num_samples)
    positions = u0 + np.arange(num_samples) / num_samples
    indices = np.searchsorted(cumulative_weights, positions, side='right')
    return np.minimum(indices, len(weights) - 1)


def multinomial_resampling(weights: NDArray[np.float64], num_samples: int,
                           rng: np.random.Generator) -> NDArray[np.int64]:
    """Indices drawn independently with probability proportional to weight."""
    p = np.asarray(weights, dtype=np.float64)
    return rng.choice(p.size, size=num_samples, replace=True, p=p / p.sum())


_RESAMPLERS = {
    'systematic': systematic_resampling,
    'multinomial': multinomial_resampling,
}


def get_resampler(name: str):
    try:
        return _RESAMPLERS[name]
    except KeyError:
        raise ValueError(f"unknown resampling scheme {name!r}; use one of {RESAMPLING_SCHEMES}") from None


# =============================================================================
# Filter
# =============================================================================

def _advance(model, states, cols, n, rng):
    plan = model.plan
    k = int(plan.n_steps[n])
    if k > 0:
        states = model.process.advance(states, cols, plan.dt, rng, k)
    rem = float(plan.remainder[n])
    if rem > 0:
        states = model.process.advance(states, cols, rem, rng, 1)
    return states


def filter_pass(
    model: "PartiallyObservedModel",
    params: ParameterSet,
    param_matrix: NDArray[np.float64],
    rng: np.random.Generator,
    perturb: Optional[Perturbation] = None,
    resampling: str = 'systematic',
    tol: float = DEFAULT_TOL,
    save_states: bool = False,
) -> FilterResult:
    """One pass of the bootstrap filter over the whole series.

    ``param_matrix`` holds one row of natural-scale parameter values per
    particle; its row count sets the number of particles. If ``perturb`` is
    given it is called as ``perturb(param_matrix, n)`` at the start of every
    observation step ``n``, before the initial states are drawn at ``n = 0``.

    Raises:
        NonFiniteLikelihoodError: An observation log-density is NaN or +inf.
    """
    if not 0 < tol < 1:
        raise ValueError(f"tol must lie in (0, 1), got {tol}")
    resample = get_resampler(resampling)
    n_particles = param_matrix.shape[0]
    if n_particles < 1:
        raise ValueError("need at least one particle")
    times = model.dataset.times
    y = model.dataset.counts
    n_obs = len(y)
    log_tol = float(np.log(tol))

    cond_loglik = np.empty(n_obs, dtype=np.float64)
    ess = np.empty(n_obs, dtype=np.float64)
    filter_mean = np.empty((n_obs, N_COMPARTMENTS), dtype=np.float64)
    saved = np.empty((n_obs, n_particles, N_COMPARTMENTS), dtype=np.int64) if save_states else None
    failures: List[int] = []

    states = None
    for n in range(n_obs):
        if perturb is not None:
            param_matrix = perturb(param_matrix, n)
        cols = params.columns(param_matrix)
        if states is None:
            states = model.init_sampler(n_particles, cols, rng)
        states = _advance(model, states, cols, n, rng)

        log_w = np.asarray(model.observation.log_density(y[n], states, cols), dtype=np.float64)
        if np.any(np.isnan(log_w)) or np.any(log_w == np.inf):
            raise NonFiniteLikelihoodError(
                f"non-finite observation log-density at step {n} (t={times[n]})",
                step=n, time=float(times[n]))

        if np.max(log_w) < log_tol:
            # every particle is incompatible with y[n]
            cond_loglik[n] = log_tol
            ess[n] = 0.0
            filter_mean[n] = states.mean(axis=0)
            failures.append(n)
            logger.debug("Filtering failure at step %d (t=%g, y=%d)", n, times[n], y[n])
        else:
            cond_loglik[n] = log_mean_weight(log_w)
            w = normalized_weights(log_w)
            ess[n] = effective_sample_size(w)
            filter_mean[n] = w @ states
            idx = resample(w, n_particles, rng)
            states = states[idx]
            param_matrix = param_matrix[idx]
        if saved is not None:
            saved[n] = states

    loglik = float(np.sum(cond_loglik))
    if not np.isfinite(loglik):
        raise NonFiniteLikelihoodError(f"log-likelihood is {loglik}", step=n_obs - 1,
                                       time=float(times[-1]))
    if len(failures) > n_obs / 2:
        logger.warning(
            "Filtering failed at %d of %d observations; the model cannot explain the data "
            "at these parameters", len(failures), n_obs)
    return FilterResult(
        loglik=loglik,
        cond_loglik=cond_loglik,
        ess=ess,
        n_failures=len(failures),
        failure_steps=tuple(failures),
        filter_mean=filter_mean,
        param_particles=param_matrix,
        states=saved,
    )


def particle_filter(
    model: "PartiallyObservedModel",
    params: ParameterSet,
    n_particles: int,
    seed: Optional[int] = None,
    rng: Optional[np.random.Generator] = None,
    resampling: str = 'systematic',
    tol: float = DEFAULT_TOL,
    save_states: bool = False,
    verbose: bool = False,
) -> FilterResult:
    """Estimate the log-likelihood of ``params`` with a bootstrap filter.

    Args:
        model: The partially observed model.
        params: Natural-scale parameters; the fixed/estimated split is ignored.
        n_particles: Number of particles (>= 1).
        seed: Seed for a fresh generator, used when ``rng`` is None.
        rng: Generator supplying every random draw of the pass.
        resampling: ``'systematic'`` or ``'multinomial'``.
        tol: Likelihood threshold defining a filtering failure.
        save_states: Keep the filtered particle states at every observation.
        verbose: Log the result at INFO instead of DEBUG.

    Returns:
        :class:`FilterResult`.

    Example:
        >>> from epi_inference import bsflu_model, default_parameters
        >>> pf = particle_filter(bsflu_model(), default_parameters(), 1000, seed=1)
        >>> pf.n_failures
        0
    """
    if n_particles < 1:
        raise ValueError(f"n_particles must be >= 1, got {n_particles}")
    model.check_parameters(params)
    matrix = params.to_matrix(n_particles)
    params.check_domain(matrix)
    rng = make_rng(rng if rng is not None else seed)

    result = filter_pass(model, params, matrix, rng, resampling=resampling, tol=tol,
                         save_states=save_states)
    logger.log(logging.INFO if verbose else logging.DEBUG,
               "pfilter: loglik=%.3f, failures=%d, min ESS=%.1f",
               result.loglik, result.n_failures, float(np.min(result.ess)))
    return result


def replicate_loglik(
    model: "PartiallyObservedModel",
    params: ParameterSet,
    n_particles: int,
    n_replicates: int,
    seed: Optional[int] = None,
    resampling: str = 'systematic',
    tol: float = DEFAULT_TOL,
) -> Tuple[float, float]:
    """Combine independent filter runs into ``(loglik, standard error)``.

    Replicate ``r`` uses the seed ``derive_seed(seed, r)``; the replicates are
    averaged on the likelihood scale with :func:`logmeanexp`.
    """
    if n_replicates < 1:
        raise ValueError(f"n_replicates must be >= 1, got {n_replicates}")
    lls = np.array([
        particle_filter(model, params, n_particles, seed=derive_seed(seed, r),
                        resampling=resampling, tol=tol).loglik
        for r in range(n_replicates)
    ])
    est, se = logmeanexp(lls, se=True)
    logger.debug("replicate_loglik: %s -> %.3f (se %.3f)", np.round(lls, 2), est, se)
    return est, se


def simulate_observations(
    model: "PartiallyObservedModel",
    params: ParameterSet,
    n_sims: int = 1,
    seed: Optional[int] = None,
) -> Tuple[NDArray[np.int64], NDArray[np.int64]]:
    """Simulate synthetic data sets at the observation times of ``model``.

    Returns:
        ``(counts, states)`` with shapes ``(n_sims, T)`` and ``(n_sims, T, 5)``.
    """
    model.check_parameters(params)
    rng = make_rng(seed)
    cols = params.columns(params.to_matrix(n_sims))
    n_obs = model.n_obs
    counts = np.empty((n_sims, n_obs), dtype=np.int64)
    paths = np.empty((n_sims, n_obs, N_COMPARTMENTS), dtype=np.int64)
    x = model.init_sampler(n_sims, cols, rng)
    for n in range(n_obs):
        x = _advance(model, x, cols, n, rng)
        paths[:, n] = x
        counts[:, n] = model.observation.simulate(x, cols, rng)
    return counts, paths
