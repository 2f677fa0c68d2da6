import numpy as np
import pytest
from scipy import stats

from epi_inference.utils import numba_utils
from epi_inference.utils.dataset import Dataset
from epi_inference.utils.model import PartiallyObservedModel, bsflu_model, default_parameters
from epi_inference.utils.type_def import N_COMPARTMENTS


@pytest.fixture
def model():
    return bsflu_model()


@pytest.fixture
def params():
    return default_parameters()


@pytest.fixture
def rng():
    return np.random.default_rng(123)


@pytest.fixture
def python_kernels():
    """Run switchable kernels as plain Python for the duration of a test."""
    numba_utils.disable_globally()
    yield
    numba_utils.reset_config()


# ---------------------------------------------------------------------------
# A latent-free model: constant states, y_n ~ Poisson(lam).
# The filter is then exact and the posterior of lam is known in closed form.
# ---------------------------------------------------------------------------

class ConstantProcess:
    def advance(self, states, params, dt, rng, n_steps=1):
        return np.array(states, copy=True)


class ZeroInit:
    def __call__(self, n, params, rng):
        return np.zeros((n, N_COMPARTMENTS), dtype=np.int64)


class PoissonRate:
    def required_parameters(self):
        return ('lam',)

    def log_density(self, observed, states, params):
        lam = np.broadcast_to(np.asarray(params['lam'], dtype=np.float64), (states.shape[0],))
        return stats.poisson.logpmf(int(observed), lam)

    def simulate(self, states, params, rng):
        lam = np.broadcast_to(np.asarray(params['lam'], dtype=np.float64), (states.shape[0],))
        return rng.poisson(lam)


def poisson_rate_model(counts):
    counts = np.asarray(counts)
    data = Dataset(np.arange(1, counts.size + 1, dtype=float), counts, population=1000)
    return PartiallyObservedModel(data, ZeroInit(), ConstantProcess(), PoissonRate(), dt=1.0)


@pytest.fixture
def rate_counts():
    return np.random.default_rng(2024).poisson(5.0, size=20)


@pytest.fixture
def rate_model(rate_counts):
    return poisson_rate_model(rate_counts)
