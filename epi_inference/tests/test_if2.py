import threading

import numpy as np
import pytest

from epi_inference.samplers.if2 import Mif2Settings, continue_mif2, cooling_factor, mif2
from epi_inference.utils.errors import ConfigurationError, ParameterDomainError, RunError
from epi_inference.utils.parameters import ParameterSet

RW_SD = {'Beta': 0.02, 'mu_I': 0.02, 'rho': 0.02}


@pytest.fixture
def settings():
    return Mif2Settings(n_particles=150, n_mif=3, rw_sd=RW_SD, cooling_fraction_50=0.5)


# ---------------------------------------------------------------------------
# Cooling
# ---------------------------------------------------------------------------

def test_geometric_cooling_halves_every_fifty_iterations():
    assert cooling_factor(0, 0, 14, 0.5) == pytest.approx(1.0)
    assert cooling_factor(50, 0, 14, 0.5) == pytest.approx(0.5)
    assert cooling_factor(100, 0, 14, 0.5) == pytest.approx(0.25)
    # within an iteration the factor falls towards the next iteration's value
    assert cooling_factor(0, 7, 14, 0.5) == pytest.approx(0.5 ** (0.5 / 50))


def test_hyperbolic_cooling():
    assert cooling_factor(50, 0, 14, 0.5, 'hyperbolic') == pytest.approx(0.5)
    # decays more slowly than geometric after iteration 50
    assert cooling_factor(100, 0, 14, 0.5, 'hyperbolic') > cooling_factor(100, 0, 14, 0.5)
    values = [cooling_factor(m, n, 14, 0.5, 'hyperbolic') for m in range(3) for n in range(14)]
    assert np.all(np.diff(values) < 0)


def test_cooling_disabled_and_invalid():
    assert cooling_factor(80, 3, 14, 1.0) == 1.0
    with pytest.raises(ConfigurationError):
        cooling_factor(0, 0, 14, 0.0)
    with pytest.raises(ConfigurationError):
        cooling_factor(0, 0, 14, 0.5, 'linear')


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("kwargs", [
    {'n_particles': 0},
    {'n_mif': -1},
    {'rw_sd': {'Beta': -0.1}},
    {'cooling_fraction_50': 1.5},
    {'cooling_type': 'linear'},
    {'resampling': 'residual'},
    {'tol': 0.0},
])
def test_invalid_settings(kwargs):
    base = dict(n_particles=10, n_mif=1, rw_sd=RW_SD)
    base.update(kwargs)
    with pytest.raises(ConfigurationError):
        Mif2Settings(**base)


def test_sd_vector(params, settings):
    assert settings.sd_vector(params).tolist() == [0.02, 0.02, 0.02]
    partial = Mif2Settings(10, 1, rw_sd={'rho': 0.05})
    assert partial.sd_vector(params).tolist() == [0.0, 0.0, 0.05]
    with pytest.raises(ConfigurationError):
        Mif2Settings(10, 1, rw_sd={'mu_R1': 0.01}).sd_vector(params)


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------

def test_mif2_run(model, params, settings):
    fit = mif2(model, params, settings, seed=17)
    assert fit.iterations_completed == 3
    assert fit.trace['iteration'].tolist() == [0, 1, 2, 3]
    assert fit.trace.loc[0, 'Beta'] == params['Beta']
    assert np.isnan(fit.trace.loc[0, 'loglik'])
    assert np.all(np.isfinite(fit.trace['loglik'].iloc[1:]))
    assert fit.seed == 17
    assert not fit.stopped_early
    # fixed parameters never move
    assert fit.params['mu_R1'] == params['mu_R1']
    assert fit.params['mu_R2'] == params['mu_R2']
    assert 0 < fit.params['rho'] < 1
    assert fit.params['Beta'] != params['Beta']
    assert fit.params.estimated_names == params.estimated_names


def test_mif2_is_reproducible(model, params, settings):
    a = mif2(model, params, settings, seed=5)
    b = mif2(model, params, settings, seed=5)
    assert a.params == b.params
    assert a.trace.equals(b.trace)


def test_zero_random_walk_keeps_parameters(model, params):
    fit = mif2(model, params, Mif2Settings(50, 2, rw_sd={}), seed=1)
    assert fit.params.values == pytest.approx(params.values)


def test_continuation_carries_numbering_and_settings(model, params, settings):
    fit = mif2(model, params, settings, seed=11)
    more = fit.continue_run(n_mif=2)
    assert more.iterations_completed == 5
    assert more.trace['iteration'].tolist() == [0, 1, 2, 3, 4, 5]
    assert more.trace.iloc[:4].equals(fit.trace)
    assert more.settings.n_particles == settings.n_particles
    assert more.settings.rw_sd == settings.rw_sd
    assert more.settings.n_mif == 2
    assert more.seed != fit.seed
    # continuing is deterministic given the previous run
    assert more.params == fit.continue_run(n_mif=2).params


def test_continuation_overrides(model, params, settings):
    fit = mif2(model, params, settings, seed=11)
    more = continue_mif2(fit, n_mif=1, n_particles=60, cooling_fraction_50=0.3, seed=4)
    assert more.settings.n_particles == 60
    assert more.settings.cooling_fraction_50 == 0.3
    assert more.seed == 4
    with pytest.raises(ConfigurationError):
        continue_mif2(fit, n_mif=1, particles=10)
    with pytest.raises(ConfigurationError):
        continue_mif2(fit, n_mif=1, n_particles=0)


def test_stop_event_ends_run(model, params, settings):
    stop = threading.Event()
    stop.set()
    fit = mif2(model, params, settings, seed=1, stop_event=stop)
    assert fit.stopped_early
    assert fit.iterations_completed == 0
    assert len(fit.trace) == 1
    assert fit.params == params

    resumed = fit.continue_run(n_mif=1)
    assert resumed.iterations_completed == 1
    assert resumed.trace['iteration'].tolist() == [0, 1]


def test_domain_error_is_reported_with_iteration_context(model, params, settings, monkeypatch):
    def saturated(self, vector, scale="estimation"):
        raise ParameterDomainError("rho=1.0 lies outside its domain (0.0, 1.0)")

    monkeypatch.setattr(ParameterSet, 'with_estimated', saturated)
    with pytest.raises(RunError) as info:
        mif2(model, params, settings, seed=1)
    assert info.value.iteration == 1
    assert info.value.params == params.as_dict()
    assert isinstance(info.value.__cause__, ParameterDomainError)


def test_mif2_rejects_unknown_rw_names(model, params):
    with pytest.raises(ConfigurationError):
        mif2(model, params, Mif2Settings(10, 1, rw_sd={'gamma': 0.1}), seed=1)


@pytest.mark.slow
def test_mif2_improves_likelihood(model, params):
    from epi_inference.samplers.helpers import replicate_loglik

    start = params.with_values(Beta=1.5, mu_I=0.8)
    fit = mif2(model, start, Mif2Settings(1000, 30, rw_sd=RW_SD), seed=3)
    before, _ = replicate_loglik(model, start, 1000, 5, seed=1)
    after, _ = replicate_loglik(model, fit.params, 1000, 5, seed=1)
    assert after > before
