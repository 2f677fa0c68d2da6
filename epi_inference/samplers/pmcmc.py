"""Particle marginal Metropolis-Hastings (PMMH)
=============================================

A Metropolis-Hastings chain over the estimated parameters in which the
intractable likelihood is replaced by a particle-filter estimate. Because
the estimate of the likelihood is unbiased, the chain still targets the exact
posterior (Andrieu, Doucet & Holenstein, 2010), provided the estimate of the
current state is stored and reused after a rejection, never recomputed.

Layout
------
1. Core functions (Numba friendly): ``mh_accept``
2. Priors: ``log_uniform_prior``, ``make_uniform_prior``
3. Proposals: ``random_walk_proposal``, ``AdaptiveProposal``
4. Driver: ``run_pmcmc`` -> ``PMCMCResult``

Proposals are made on the estimation scale (log / logit). Priors are
densities on the natural scale, so the target on the estimation scale
includes the log-Jacobian of the back-transform.

Example::

    prior = make_uniform_prior(params, {"Beta": (1, 4), "mu_I": (0.5, 3), "rho": (0.5, 1)})
    proposal = AdaptiveProposal(params.estimated_names, rw_sd={"Beta": 0.02, "mu_I": 0.02, "rho": 0.02})
    result = run_pmcmc(model, params, n_iter=5000, n_particles=200,
                       log_prior_fn=prior, proposal=proposal, seed=42)
    print(f"acceptance rate: {result.acceptance_rate:.3f}")
    posterior = result.to_frame().iloc[1000:]

References
----------
.. [1] Andrieu, C., Doucet, A., & Holenstein, R. (2010).
       Particle Markov chain Monte Carlo methods.
       Journal of the Royal Statistical Society: Series B, 72(3), 269-342.

.. [2] Roberts, G. O., & Rosenthal, J. S. (2009).
       Examples of adaptive MCMC.
       Journal of Computational and Graphical Statistics, 18(2), 349-367.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Mapping, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from epi_inference.samplers.helpers import DEFAULT_TOL, particle_filter
from epi_inference.utils.errors import (
    ConfigurationError,
    NonFiniteLikelihoodError,
    ParameterDomainError,
    RunError,
)
from epi_inference.utils.numba_utils import numba_switchable
from epi_inference.utils.parameters import ParameterSet

if TYPE_CHECKING:
    from epi_inference.utils.model import PartiallyObservedModel

logger = logging.getLogger(__name__)

# Optimal random-walk scaling for Gaussian targets (Roberts & Rosenthal)
OPTIMAL_SCALE = 2.38


# =============================================================================
# Result container
# =============================================================================

class PMCMCResult(NamedTuple):
    """PMMH output.

    Attributes:
        names: Estimated parameter names, the columns of ``theta_chain``.
        theta_chain: (n_iter + 1, d) natural-scale states; row 0 is the start.
            Rejections repeat the previous row.
        loglik_chain: (n_iter + 1,) stored log-likelihood estimates.
        logprior_chain: (n_iter + 1,) log-prior densities.
        accepted: (n_iter + 1,) bool; row 0 is False.
        acceptance_rate: Accepted proposals / iterations.
        proposal_cov: Final proposal covariance (estimation scale).
        n_filter_failures: Filtering failures summed over all filter runs.

    Burn-in is left to the caller::

        >>> posterior = result.theta_chain[1000:]
    """
    names: Tuple[str, ...]
    theta_chain: NDArray
    loglik_chain: NDArray
    logprior_chain: NDArray
    accepted: NDArray
    acceptance_rate: float
    proposal_cov: NDArray
    n_filter_failures: int

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(self.theta_chain, columns=list(self.names))
        frame['loglik'] = self.loglik_chain
        frame['logprior'] = self.logprior_chain
        frame['accepted'] = self.accepted
        frame.index.name = 'iteration'
        return frame


# =============================================================================
# Core functions
# =============================================================================

@numba_switchable
def mh_accept(
    loglik_prop: float, logprior_prop: float,
    loglik_curr: float, logprior_curr: float,
    log_u: float
) -> bool:
    """Metropolis-Hastings accept/reject for a symmetric proposal.

    Accept when ``log_u < (loglik_prop + logprior_prop) - (loglik_curr + logprior_curr)``,
    with ``log_u = log(u)``, ``u ~ U(0, 1)``.

    Args:
        loglik_prop: Log-likelihood estimate at the proposal.
        logprior_prop: Log-prior (plus log-Jacobian) at the proposal.
        loglik_curr: Stored log-likelihood estimate of the current state.
        logprior_curr: Log-prior (plus log-Jacobian) of the current state.
        log_u: Log of a uniform draw.

    Returns:
        True to accept.

    Example:
        >>> mh_accept(-100.0, -1.0, -200.0, -1.0, np.log(0.5))
        True
        >>> mh_accept(-200.0, -1.0, -100.0, -1.0, np.log(0.5))
        False

    Notes:
        A non-finite proposal log-likelihood or log-prior is always rejected.
    """
    if not np.isfinite(loglik_prop) or not np.isfinite(logprior_prop):
        return False
    log_alpha = (loglik_prop + logprior_prop) - (loglik_curr + logprior_curr)
    return log_u < log_alpha


# =============================================================================
# Priors
# =============================================================================

def log_uniform_prior(theta: NDArray, bounds: Sequence[Tuple[float, float]]) -> float:
    """Log density of independent uniform priors on closed boxes.

    Returns ``-sum(log(hi - lo))`` inside the box and ``-inf`` outside.

    Example:
        >>> log_uniform_prior(np.array([0.5, 1.0]), [(0.0, 1.0), (0.0, 2.0)])  # -log(2)
    """
    for i, (lo, hi) in enumerate(bounds):
        if theta[i] < lo or theta[i] > hi:
            return -np.inf
    return -sum(np.log(hi - lo) for lo, hi in bounds)


def make_uniform_prior(params: ParameterSet,
                       box: Mapping[str, Tuple[float, float]]) -> Callable[[NDArray], float]:
    """Uniform prior over ``box`` for the estimated parameters of ``params``.

    The returned function takes natural-scale values ordered as
    ``params.estimated_names``.
    """
    names = params.estimated_names
    missing = [n for n in names if n not in box]
    if missing:
        raise ConfigurationError(f"no prior range for {missing}")
    bounds = [tuple(map(float, box[n])) for n in names]
    for n, (lo, hi) in zip(names, bounds):
        if not lo < hi:
            raise ConfigurationError(f"empty prior range for {n}: ({lo}, {hi})")

    def log_prior(theta: NDArray) -> float:
        return log_uniform_prior(theta, bounds)

    return log_prior


# =============================================================================
# Proposals
# =============================================================================

def random_walk_proposal(theta: NDArray, cov: NDArray, rng: np.random.Generator) -> NDArray:
    """Gaussian random walk ``theta' ~ N(theta, cov)``; symmetric."""
    return rng.multivariate_normal(theta, cov, method='cholesky')


class AdaptiveProposal:
    """Random-walk proposal whose covariance adapts to the chain.

    The schedule follows the usual two phases:

    * From iteration ``scale_start`` until ``shape_start`` proposals have been
      accepted, only the global scale is tuned by a Robbins-Monro step towards
      ``target`` acceptance, ``cov = scaling**2 * cov_init``.
    * Afterwards the shape is learned as well,
      ``cov = scaling**2 * 2.38**2 / d * empirical_cov`` with ``scaling``
      restarted at 1 and tuned by the same rule.

    The Robbins-Monro gain ``scale_cooling ** (n - scale_start)`` vanishes
    geometrically. With ``adapt_until`` set, the covariance is frozen after
    that many iterations. The two controls are independent: ``scale_start=None``
    keeps ``scaling`` at 1 throughout, ``shape_start=None`` never learns the shape.

    Args:
        names: Estimated parameter names (for messages and ordering).
        rw_sd: Initial sds on the estimation scale, per name.
        scale_start: Iteration at which scale tuning starts, or None.
        scale_cooling: Decay of the Robbins-Monro gain.
        shape_start: Acceptances needed before the shape is learned, or None.
        target: Target acceptance rate.
        max_scaling: Upper bound of the scaling factor.
        adapt_until: Last adapting iteration, or None.
    """

    def __init__(
        self,
        names: Sequence[str],
        rw_sd: Mapping[str, float],
        scale_start: Optional[int] = 100,
        scale_cooling: float = 0.999,
        shape_start: Optional[int] = 200,
        target: float = 0.234,
        max_scaling: float = 50.0,
        adapt_until: Optional[int] = None,
    ):
        self.names = tuple(names)
        missing = [n for n in self.names if n not in rw_sd]
        unknown = [n for n in rw_sd if n not in self.names]
        if missing or unknown:
            raise ConfigurationError(
                f"rw_sd must name exactly the estimated parameters {list(self.names)}; "
                f"missing {missing}, unknown {unknown}")
        sd = np.array([float(rw_sd[n]) for n in self.names])
        if np.any(sd <= 0) or not np.all(np.isfinite(sd)):
            raise ConfigurationError(f"rw_sd must be positive: {dict(rw_sd)}")
        if not 0 < target < 1:
            raise ConfigurationError(f"target must lie in (0, 1), got {target}")
        if not 0 < scale_cooling <= 1:
            raise ConfigurationError(f"scale_cooling must lie in (0, 1], got {scale_cooling}")
        if max_scaling <= 0:
            raise ConfigurationError("max_scaling must be positive")

        self.dim = len(self.names)
        self.cov_init = np.diag(sd ** 2)
        self.cov = self.cov_init.copy()
        self.scale_start = scale_start
        self.scale_cooling = float(scale_cooling)
        self.shape_start = shape_start
        self.target = float(target)
        self.max_scaling = float(max_scaling)
        self.adapt_until = adapt_until
        self.scaling = 1.0
        self.shape_adapting = False
        # running moments of the chain (Welford)
        self._n = 0
        self._mean = np.zeros(self.dim)
        self._m2 = np.zeros((self.dim, self.dim))

    @classmethod
    def from_config(cls, names: Sequence[str], rw_sd: Mapping[str, float],
                    cfg: Mapping) -> "AdaptiveProposal":
        """Build from a ``PMCMC_CONFIG``-style dict."""
        return cls(names, rw_sd, scale_start=cfg.get('scale_start'),
                   scale_cooling=cfg.get('scale_cooling', 0.999),
                   shape_start=cfg.get('shape_start'), target=cfg.get('target_accept', 0.234),
                   max_scaling=cfg.get('max_scaling', 50.0), adapt_until=cfg.get('adapt_until'))

    def propose(self, theta: NDArray, rng: np.random.Generator) -> NDArray:
        return random_walk_proposal(theta, self.cov, rng)

    @property
    def empirical_cov(self) -> NDArray:
        if self._n < 2:
            return np.zeros((self.dim, self.dim))
        return self._m2 / (self._n - 1)

    def _record(self, theta: NDArray) -> None:
        self._n += 1
        delta = theta - self._mean
        self._mean = self._mean + delta / self._n
        self._m2 = self._m2 + np.outer(delta, theta - self._mean)

    def update(self, theta: NDArray, iteration: int, n_accepted: int) -> None:
        """Record the chain state after ``iteration`` (1-based) and adapt."""
        self._record(np.asarray(theta, dtype=np.float64))
        if self.adapt_until is not None and iteration > self.adapt_until:
            return
        tune_scale = self.scale_start is not None and iteration >= self.scale_start
        if self.shape_start is not None and n_accepted >= self.shape_start:
            if not self.shape_adapting:
                self.shape_adapting = True
                self.scaling = 1.0
                logger.debug("Proposal shape adaptation starts at iteration %d", iteration)
            if tune_scale:
                self._tune_scaling(iteration, n_accepted)
            emp = self.empirical_cov
            if np.all(np.isfinite(emp)) and np.all(np.diag(emp) > 0):
                jitter = 1e-10 * np.eye(self.dim)
                self.cov = self.scaling ** 2 * (OPTIMAL_SCALE ** 2 / self.dim) * emp + jitter
                return
        elif not tune_scale:
            return
        else:
            self._tune_scaling(iteration, n_accepted)
        self.cov = self.scaling ** 2 * self.cov_init

    def _tune_scaling(self, iteration: int, n_accepted: int) -> None:
        gain = self.scale_cooling ** (iteration - self.scale_start)
        rate = n_accepted / iteration
        self.scaling = min(self.scaling * np.exp(gain * (rate - self.target)), self.max_scaling)


# =============================================================================
# Driver
# =============================================================================

def _log_target_prior(params: ParameterSet, u: NDArray, log_prior_fn) -> Tuple[float, Optional[ParameterSet]]:
    """Log-prior plus log-Jacobian at estimation-scale ``u``, and the parameter set."""
    try:
        candidate = params.with_estimated(u, scale="estimation")
    except ParameterDomainError:
        return -np.inf, None
    lp = float(log_prior_fn(candidate.estimated_vector(scale="natural")))
    if not np.isfinite(lp):
        return -np.inf, candidate
    return lp + params.log_jacobian(u), candidate


def run_pmcmc(
    model: "PartiallyObservedModel",
    params: ParameterSet,
    n_iter: int,
    n_particles: int,
    log_prior_fn: Callable[[NDArray], float],
    proposal: Optional[AdaptiveProposal] = None,
    rw_sd: Optional[Mapping[str, float]] = None,
    seed: Optional[int] = None,
    resampling: str = 'systematic',
    tol: float = DEFAULT_TOL,
    stop_event=None,
    verbose: bool = False,
    log_every: int = 100,
) -> PMCMCResult:
    """Run a PMMH chain from ``params``.

    Args:
        model: The partially observed model.
        params: Starting values; ESTIMATED parameters are sampled.
        n_iter: Number of MH iterations.
        n_particles: Particles per likelihood estimate.
        log_prior_fn: Natural-scale log-prior of the estimated parameters,
            ordered as ``params.estimated_names``.
        proposal: Proposal; built from ``rw_sd`` with default adaptation when None.
        rw_sd: Initial proposal sds (estimation scale), used when ``proposal`` is None.
        seed: Root seed of the chain.
        resampling, tol: Particle-filter options.
        stop_event: Object with ``is_set()``, checked between iterations.
        verbose: Log progress at INFO instead of DEBUG.
        log_every: Progress logging interval.

    Returns:
        :class:`PMCMCResult` truncated to the iterations actually run.

    Raises:
        ValueError: The starting point has a non-finite log-prior or log-likelihood.
    """
    names = params.estimated_names
    if not names:
        raise ConfigurationError("pMCMC needs at least one estimated parameter")
    if n_iter < 0:
        raise ValueError(f"n_iter must be >= 0, got {n_iter}")
    if proposal is None:
        if rw_sd is None:
            raise ConfigurationError("give either a proposal or rw_sd")
        proposal = AdaptiveProposal(names, rw_sd)
    elif tuple(proposal.names) != tuple(names):
        raise ConfigurationError(f"proposal is over {proposal.names}, chain over {names}")
    model.check_parameters(params)
    rng = np.random.default_rng(seed)
    level = logging.INFO if verbose else logging.DEBUG

    u_curr = params.estimated_vector()
    lp_curr, current = _log_target_prior(params, u_curr, log_prior_fn)
    if not np.isfinite(lp_curr):
        raise ValueError(f"starting point has zero prior density: {params}")
    pf = particle_filter(model, current, n_particles, rng=rng, resampling=resampling, tol=tol)
    ll_curr = pf.loglik
    n_failures = pf.n_failures
    if not np.isfinite(ll_curr):
        raise ValueError(f"starting point has non-finite log-likelihood {ll_curr}")

    d = len(names)
    theta_chain = np.empty((n_iter + 1, d))
    loglik_chain = np.empty(n_iter + 1)
    logprior_chain = np.empty(n_iter + 1)
    accepted = np.zeros(n_iter + 1, dtype=bool)
    theta_chain[0] = current.estimated_vector(scale="natural")
    loglik_chain[0] = ll_curr
    logprior_chain[0] = lp_curr - params.log_jacobian(u_curr)

    n_accepted = 0
    last = 0
    for it in range(1, n_iter + 1):
        if stop_event is not None and stop_event.is_set():
            logger.info("pMCMC stopped after %d iterations", it - 1)
            break
        u_prop = proposal.propose(u_curr, rng)
        lp_prop, candidate = _log_target_prior(params, u_prop, log_prior_fn)
        ll_prop = -np.inf
        if np.isfinite(lp_prop):
            try:
                pf = particle_filter(model, candidate, n_particles, rng=rng,
                                     resampling=resampling, tol=tol)
            except NonFiniteLikelihoodError as e:
                raise RunError(f"pMCMC iteration {it} failed: {e}", iteration=it,
                               params=candidate.as_dict()) from e
            ll_prop = pf.loglik
            n_failures += pf.n_failures
        log_u = float(np.log(rng.random()))

        if mh_accept(ll_prop, lp_prop, ll_curr, lp_curr, log_u):
            u_curr, ll_curr, lp_curr, current = u_prop, ll_prop, lp_prop, candidate
            n_accepted += 1
            accepted[it] = True

        theta_chain[it] = current.estimated_vector(scale="natural")
        loglik_chain[it] = ll_curr
        logprior_chain[it] = lp_curr - params.log_jacobian(u_curr)
        proposal.update(u_curr, it, n_accepted)
        last = it
        if it % log_every == 0:
            logger.log(level, "pMCMC iteration %d: loglik=%.3f, acceptance=%.3f, scaling=%.3f",
                       it, ll_curr, n_accepted / it, proposal.scaling)

    n_rows = last + 1
    return PMCMCResult(
        names=tuple(names),
        theta_chain=theta_chain[:n_rows],
        loglik_chain=loglik_chain[:n_rows],
        logprior_chain=logprior_chain[:n_rows],
        accepted=accepted[:n_rows],
        acceptance_rate=n_accepted / last if last else 0.0,
        proposal_cov=proposal.cov.copy(),
        n_filter_failures=n_failures,
    )
