import logging

import numpy as np
import pytest

from epi_inference.samplers.helpers import (
    DEFAULT_TOL,
    filter_pass,
    get_resampler,
    multinomial_resampling,
    particle_filter,
    replicate_loglik,
    simulate_observations,
    systematic_resampling,
)
from epi_inference.utils.dataset import Dataset
from epi_inference.utils.errors import ConfigurationError, NonFiniteLikelihoodError
from epi_inference.utils.model import PartiallyObservedModel, bsflu_model
from epi_inference.utils.parameters import ParameterSet


# ---------------------------------------------------------------------------
# Resampling
# ---------------------------------------------------------------------------

def test_systematic_resampling_counts_are_exact(rng):
    idx = systematic_resampling(np.array([0.25, 0.75]), 4, rng)
    assert np.bincount(idx, minlength=2).tolist() == [1, 3]


def test_resampling_never_picks_zero_weights(rng):
    w = np.array([0.0, 2.0, 0.0, 1.0])
    for resample in (systematic_resampling, multinomial_resampling):
        idx = resample(w, 300, rng)
        assert set(np.unique(idx)) <= {1, 3}


class ZeroOffset:
    """Generator stand-in whose uniform draw is the lower endpoint."""

    def uniform(self, low, high):
        return low


def test_systematic_resampling_skips_leading_zero_weight_at_zero_offset():
    idx = systematic_resampling(np.array([0.0, 0.0, 1.0, 1.0]), 4, ZeroOffset())
    assert idx.tolist() == [2, 2, 3, 3]


def test_systematic_resampling_is_proportional(rng):
    w = rng.random(10)
    counts = np.bincount(systematic_resampling(w, 1000, rng), minlength=10)
    expected = 1000 * w / w.sum()
    assert np.all(np.abs(counts - expected) <= 1)


def test_unknown_resampler():
    with pytest.raises(ValueError):
        get_resampler('residual')


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------

def test_filter_result_shapes(model, params):
    pf = particle_filter(model, params, 300, seed=1, save_states=True)
    assert np.isfinite(pf.loglik)
    assert pf.loglik == pytest.approx(pf.cond_loglik.sum())
    assert pf.cond_loglik.shape == (14,)
    assert pf.ess.shape == (14,)
    assert np.all((pf.ess >= 0) & (pf.ess <= 300 + 1e-9))
    assert pf.filter_mean.shape == (14, 5)
    assert pf.states.shape == (14, 300, 5)
    assert pf.param_particles.shape == (300, len(params))


def test_filter_is_reproducible(model, params):
    a = particle_filter(model, params, 200, seed=42)
    b = particle_filter(model, params, 200, seed=42)
    c = particle_filter(model, params, 200, seed=43)
    assert a.loglik == b.loglik
    assert np.array_equal(a.cond_loglik, b.cond_loglik)
    assert a.loglik != c.loglik


def test_filter_accepts_generator(model, params):
    a = particle_filter(model, params, 100, rng=np.random.default_rng(9))
    b = particle_filter(model, params, 100, seed=9)
    assert a.loglik == b.loglik


def test_pathological_data_counts_failures(params, caplog):
    data = Dataset(np.array([1.0, 2.0, 3.0]), np.array([700, 700, 700]), population=763)
    model = bsflu_model(dataset=data)
    with caplog.at_level(logging.WARNING, logger='epi_inference.samplers.helpers'):
        pf = particle_filter(model, params, 100, seed=1)
    assert pf.n_failures == 3
    assert pf.failure_steps == (0, 1, 2)
    assert np.all(pf.ess == 0)
    assert pf.loglik == pytest.approx(3 * np.log(DEFAULT_TOL))
    assert "Filtering failed" in caplog.text


def test_single_failure_does_not_stop_the_filter(params):
    data = load_counts_with_outlier()
    model = bsflu_model(dataset=data)
    pf = particle_filter(model, params, 500, seed=2)
    assert 3 in pf.failure_steps
    assert np.isfinite(pf.loglik)
    assert pf.cond_loglik[3] == pytest.approx(np.log(DEFAULT_TOL))
    assert pf.n_failures < len(data)


def load_counts_with_outlier():
    base = bsflu_model().dataset
    counts = base.counts.copy()
    counts[3] = 5000
    return Dataset(base.times, counts, population=base.population, t0=base.t0)


class NanObservation:
    def log_density(self, observed, states, params):
        out = np.zeros(states.shape[0])
        out[0] = np.nan
        return out

    def simulate(self, states, params, rng):
        return np.zeros(states.shape[0], dtype=np.int64)


def test_nan_density_raises(model, params):
    bad = PartiallyObservedModel(model.dataset, model.init_sampler, model.process,
                                 NanObservation(), model.dt)
    with pytest.raises(NonFiniteLikelihoodError) as err:
        particle_filter(bad, params, 10, seed=1)
    assert err.value.step == 0
    assert err.value.time == 1.0


def test_filter_argument_checks(model, params):
    with pytest.raises(ValueError):
        particle_filter(model, params, 0)
    with pytest.raises(ConfigurationError):
        particle_filter(model, ParameterSet([s for s in params.specs if s.name != "rho"]), 10)
    with pytest.raises(ValueError):
        particle_filter(model, params, 10, seed=1, tol=0.0)
    with pytest.raises(ValueError):
        particle_filter(model, params, 10, seed=1, resampling='stratified')


def test_perturbation_hook_sees_every_step(model, params, rng):
    seen = []

    def perturb(matrix, n):
        seen.append(n)
        return matrix

    filter_pass(model, params, params.to_matrix(20), rng, perturb=perturb)
    assert seen == list(range(14))


def test_partial_steps_give_a_finite_likelihood(params):
    model = bsflu_model(dt=0.3)
    assert not model.plan.aligned
    assert np.isfinite(particle_filter(model, params, 200, seed=1).loglik)


def test_numba_backend_filter(model, params):
    pf = particle_filter(model.with_backend('numba'), params, 200, seed=1)
    assert np.isfinite(pf.loglik)
    assert pf.loglik == particle_filter(model.with_backend('numba'), params, 200, seed=1).loglik


def test_full_tracking_filter(params):
    pf = particle_filter(bsflu_model(tracking='full'), params, 200, seed=1)
    assert np.isfinite(pf.loglik)


# ---------------------------------------------------------------------------
# Replicates and simulation
# ---------------------------------------------------------------------------

def test_replicate_loglik(model, params):
    est, se = replicate_loglik(model, params, 200, 5, seed=3)
    assert np.isfinite(est)
    assert se >= 0
    assert (est, se) == replicate_loglik(model, params, 200, 5, seed=3)
    with pytest.raises(ValueError):
        replicate_loglik(model, params, 200, 0, seed=3)


@pytest.mark.slow
def test_standard_error_shrinks_with_particles(model, params):
    _, se_small = replicate_loglik(model, params, 100, 10, seed=1)
    _, se_large = replicate_loglik(model, params, 5000, 10, seed=1)
    assert se_large < se_small


def test_simulate_observations(model, params):
    counts, paths = simulate_observations(model, params, n_sims=30, seed=4)
    assert counts.shape == (30, 14)
    assert paths.shape == (30, 14, 5)
    assert np.all(counts >= 0)
    assert np.all(paths.sum(axis=2) <= 763)
    again, _ = simulate_observations(model, params, n_sims=30, seed=4)
    assert np.array_equal(counts, again)
