import pickle
import warnings

import pytest

from epi_inference.configs import inference_config as config
from epi_inference.utils import numba_utils
from epi_inference.utils.errors import ConfigurationError, NonFiniteLikelihoodError, RunError
from epi_inference.utils.model import bsflu_model, default_parameters
from epi_inference.utils.parameters import ParameterSet


@numba_utils.numba_switchable(cache=False)
def untypable_kernel(n):
    table = {1: "a", "b": 2}
    return n + len(table)


def test_shipped_configuration_is_valid():
    assert config.validate_config() == []


def test_validation_reports_problems(monkeypatch):
    monkeypatch.setattr(config, 'MAX_WORKERS', 0)
    monkeypatch.setitem(config.PFILTER_CONFIG, 'resampling', 'residual')
    monkeypatch.setitem(config.RW_SD, 'mu_R1', 0.01)
    errors = config.validate_config()
    assert len(errors) == 3
    assert any('MAX_WORKERS' in e for e in errors)
    assert any('mu_R1' in e for e in errors)


def test_default_model_and_parameters():
    model = bsflu_model()
    params = default_parameters()
    assert model.required_parameters() == ('Beta', 'mu_I', 'mu_R1', 'rho')
    assert bsflu_model(tracking='full').required_parameters() == (
        'Beta', 'mu_I', 'mu_R1', 'mu_R2', 'rho')
    model.check_parameters(params)
    with pytest.raises(ConfigurationError):
        model.check_parameters(ParameterSet([s for s in params.specs if s.name != 'mu_I']))
    assert model.plan.aligned
    assert model.with_backend('numba').process.backend == 'numba'


def test_errors_keep_context_through_pickling():
    err = RunError("boom", run_id=4, seed=9, iteration=12, params={'Beta': 2.0})
    back = pickle.loads(pickle.dumps(err))
    assert (back.run_id, back.seed, back.iteration, back.params) == (4, 9, 12, {'Beta': 2.0})
    assert "iteration=12" in str(back)

    nf = pickle.loads(pickle.dumps(NonFiniteLikelihoodError("nan", step=3, time=4.0)))
    assert (nf.step, nf.time) == (3, 4.0)
    assert isinstance(nf, ArithmeticError)


def test_jit_switch_resolves_longest_name():
    kernel = 'epi_inference.utils.simulation_kernels.binomial_substeps'
    try:
        assert numba_utils.jit_enabled(kernel)
        numba_utils.set_jit('epi_inference.utils.simulation_kernels', False)
        assert not numba_utils.jit_enabled(kernel)
        assert numba_utils.jit_enabled('epi_inference.samplers.pmcmc.mh_accept')
        numba_utils.set_jit(kernel, True)
        assert numba_utils.jit_enabled(kernel)
        numba_utils.disable_globally()
        assert not numba_utils.jit_enabled('epi_inference.samplers.pmcmc.mh_accept')
        assert numba_utils.status()['overrides'] == {
            'epi_inference.utils.simulation_kernels': False, kernel: True}
    finally:
        numba_utils.reset_config()
    assert numba_utils.status()['overrides'] == {}


def test_kernel_numba_cannot_type_runs_as_python():
    numba_utils.reset_config()
    with pytest.warns(RuntimeWarning, match="could not compile"):
        assert untypable_kernel(3) == 5
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        assert untypable_kernel(4) == 6
    assert not [w for w in caught if "could not compile" in str(w.message)]
