"""Samplers - particle filtering, iterated filtering and particle MCMC."""

from epi_inference.samplers.helpers import (
    FilterResult,
    filter_pass,
    multinomial_resampling,
    particle_filter,
    replicate_loglik,
    simulate_observations,
    systematic_resampling,
)
from epi_inference.samplers.if2 import (
    Mif2Result,
    Mif2Settings,
    continue_mif2,
    cooling_factor,
    mif2,
)
from epi_inference.samplers.observation import PoissonObservation
from epi_inference.samplers.pmcmc import (
    # result container
    PMCMCResult,
    # core functions
    mh_accept,
    random_walk_proposal,
    # priors
    log_uniform_prior,
    make_uniform_prior,
    # adaptation
    AdaptiveProposal,
    # driver
    run_pmcmc,
)

__all__ = [
    # helpers
    'FilterResult', 'filter_pass', 'particle_filter', 'replicate_loglik',
    'simulate_observations', 'systematic_resampling', 'multinomial_resampling',
    # if2
    'Mif2Settings', 'Mif2Result', 'mif2', 'continue_mif2', 'cooling_factor',
    # observation
    'PoissonObservation',
    # pmcmc
    'PMCMCResult', 'mh_accept', 'random_walk_proposal',
    'log_uniform_prior', 'make_uniform_prior', 'AdaptiveProposal', 'run_pmcmc',
]
