import numpy as np
import pytest

from epi_inference.utils.tools import (
    derive_seed,
    effective_sample_size,
    log_mean_weight,
    logmeanexp,
    make_rng,
    normalized_weights,
    spawn_seeds,
)


def test_logmeanexp_basic_values():
    assert logmeanexp([0.0, np.log(3.0)]) == pytest.approx(np.log(2.0))
    assert logmeanexp([-5.0]) == pytest.approx(-5.0)


def test_logmeanexp_is_stable_for_large_magnitudes():
    assert logmeanexp([-1000.0, -1000.0]) == pytest.approx(-1000.0)
    assert logmeanexp([1000.0, 1000.0]) == pytest.approx(1000.0)


def test_logmeanexp_ignores_order():
    x = np.random.default_rng(123).normal(-200.0, 3.0, size=25)
    assert logmeanexp(x) == pytest.approx(logmeanexp(x[::-1]))
    assert logmeanexp(x, se=True)[1] == pytest.approx(logmeanexp(np.sort(x), se=True)[1])


def test_logmeanexp_standard_error():
    est, se = logmeanexp(np.full(10, -3.0), se=True)
    assert est == pytest.approx(-3.0)
    assert se == pytest.approx(0.0, abs=1e-12)

    _, se_one = logmeanexp([1.0], se=True)
    assert np.isnan(se_one)

    rng = np.random.default_rng(123)
    _, se_wide = logmeanexp(rng.normal(0, 2.0, 50), se=True)
    _, se_narrow = logmeanexp(rng.normal(0, 0.2, 50), se=True)
    assert se_narrow < se_wide


def test_logmeanexp_empty():
    with pytest.raises(ValueError):
        logmeanexp([])


def test_weights_and_ess():
    log_w = np.log(np.array([1.0, 1.0, 2.0]))
    w = normalized_weights(log_w)
    assert w.sum() == pytest.approx(1.0)
    assert w.tolist() == pytest.approx([0.25, 0.25, 0.5])
    assert log_mean_weight(log_w) == pytest.approx(np.log(4.0 / 3.0))

    assert effective_sample_size(np.ones(8)) == pytest.approx(8.0)
    assert effective_sample_size(np.array([0.0, 1.0, 0.0])) == pytest.approx(1.0)
    assert effective_sample_size(np.zeros(4)) == 0.0


def test_derive_seed():
    assert derive_seed(42, 3) == derive_seed(42, 3)
    assert derive_seed(42, 3) != derive_seed(42, 4)
    assert derive_seed(42, 3) != derive_seed(43, 3)
    assert derive_seed(42, 0, 1) != derive_seed(42, 0, 0)
    assert 0 <= derive_seed(42, 7) < 2 ** 32


def test_spawn_seeds_are_distinct():
    seeds = spawn_seeds(998468235, 50)
    assert len(set(seeds)) == 50
    assert seeds == spawn_seeds(998468235, 50)


def test_make_rng_passes_generators_through():
    g = np.random.default_rng(1)
    assert make_rng(g) is g
    assert make_rng(5).random() == np.random.default_rng(5).random()
