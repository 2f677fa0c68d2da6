import numpy as np
import pandas as pd
import pytest

from epi_inference.batch_run import (
    design_starts,
    evaluate_likelihoods,
    evaluate_task,
    run_global_search,
    run_local_search,
    run_tasks_in_parallel,
)
from epi_inference.samplers.if2 import Mif2Settings
from epi_inference.samplers.observation import PoissonObservation
from epi_inference.utils.errors import ConfigurationError, RunError
from epi_inference.utils.model import PartiallyObservedModel
from epi_inference.utils.results import ResultsTable
from epi_inference.utils.tools import derive_seed

BOX = {'Beta': (1.0, 4.0), 'mu_I': (0.5, 3.0), 'rho': (0.5, 1.0)}


@pytest.fixture
def settings():
    return Mif2Settings(n_particles=60, n_mif=2, rw_sd={'Beta': 0.02, 'mu_I': 0.02, 'rho': 0.02})


class FragileObservation(PoissonObservation):
    """Produces NaN densities whenever rho exceeds 0.95."""

    def log_density(self, observed, states, params):
        out = super().log_density(observed, states, params)
        return np.where(np.asarray(params['rho']) > 0.95, np.nan, out)


# ---------------------------------------------------------------------------
# Designs
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("design", ['sobol', 'uniform'])
def test_design_starts_fill_the_box(design):
    starts = design_starts(BOX, 20, design, seed=3)
    assert list(starts.columns) == ['Beta', 'mu_I', 'rho']
    assert len(starts) == 20
    for name, (lo, hi) in BOX.items():
        assert starts[name].between(lo, hi).all()
    assert starts.equals(design_starts(BOX, 20, design, seed=3))
    assert not starts.equals(design_starts(BOX, 20, design, seed=4))


def test_design_starts_edge_cases():
    assert len(design_starts(BOX, 0, seed=1)) == 0
    with pytest.raises(ConfigurationError):
        design_starts(BOX, 4, 'latin', seed=1)
    with pytest.raises(ConfigurationError):
        design_starts({'Beta': (2.0, 1.0)}, 4, seed=1)
    with pytest.raises(ConfigurationError):
        design_starts({}, 4, seed=1)


# ---------------------------------------------------------------------------
# Fan-out / fan-in
# ---------------------------------------------------------------------------

def square(task):
    if task['x'] < 0:
        raise ValueError("negative input")
    return task['x'] ** 2


def test_run_tasks_collects_results_and_failures():
    tasks = [{'run_id': k, 'seed': k, 'x': x} for k, x in enumerate([1, -2, 3])]
    seen = []
    results, failures = run_tasks_in_parallel(square, tasks, max_workers=1, on_result=seen.append)
    assert sorted(results) == [1, 9]
    assert seen == results
    assert len(failures) == 1
    assert isinstance(failures[0], RunError)
    assert failures[0].run_id == 1
    assert "negative input" in str(failures[0])


def test_process_pool_matches_serial_run():
    tasks = [{'run_id': k, 'seed': k, 'x': k} for k in range(12)]
    serial, _ = run_tasks_in_parallel(square, tasks, max_workers=1)
    pooled, failures = run_tasks_in_parallel(square, tasks, max_workers=2)
    assert not failures
    assert sorted(pooled) == sorted(serial)


def test_local_search(model, params, settings, tmp_path):
    table = ResultsTable(params.names, tmp_path / "local.csv")
    rows, failures = run_local_search(model, params, settings, n_runs=3, root_seed=1,
                                      n_eval=2, n_eval_particles=80, max_workers=1, table=table)
    assert not failures
    assert rows['run_id'].tolist() == [0, 1, 2]
    assert rows['seed'].tolist() == [derive_seed(1, k) for k in range(3)]
    assert (rows['kind'] == 'local').all()
    assert np.all(np.isfinite(rows['loglik']))
    assert (rows['mu_R1'] == params['mu_R1']).all()
    assert len(table) == 3
    on_disk = pd.read_csv(tmp_path / "local.csv")
    assert sorted(on_disk['run_id']) == [0, 1, 2]

    again, _ = run_local_search(model, params, settings, n_runs=3, root_seed=1,
                                n_eval=2, n_eval_particles=80, max_workers=1)
    pd.testing.assert_frame_equal(rows, again)


def test_global_search(model, params, settings):
    rows, failures = run_global_search(model, params, settings, box=BOX, n_starts=3,
                                       root_seed=7, n_eval=2, n_eval_particles=80, max_workers=1)
    assert not failures
    assert len(rows) == 3
    assert (rows['kind'] == 'global').all()
    assert rows['Beta'].nunique() == 3


def test_global_search_box_must_name_estimated_parameters(model, params, settings):
    with pytest.raises(ConfigurationError):
        run_global_search(model, params, settings, box={'mu_R1': (0.1, 1.0)}, n_starts=2)


def test_evaluation_is_order_independent(model, params):
    points = pd.DataFrame({'Beta': [2.0, 2.5, 3.0, 3.5], 'rho': [0.9, 0.8, 0.7, 0.9],
                           'note': ['a', 'b', 'c', 'd']})
    serial, _ = evaluate_likelihoods(model, params, points, n_particles=80, n_replicates=2,
                                     root_seed=5, max_workers=1)
    pooled, failures = evaluate_likelihoods(model, params, points, n_particles=80,
                                            n_replicates=2, root_seed=5, max_workers=2)
    assert not failures
    assert 'note' not in serial.columns
    pd.testing.assert_frame_equal(serial, pooled)
    assert serial['Beta'].tolist() == [2.0, 2.5, 3.0, 3.5]


def test_single_task_reproduces_its_row(model, params):
    points = pd.DataFrame({'Beta': [2.0, 3.0]})
    rows, _ = evaluate_likelihoods(model, params, points, n_particles=80, n_replicates=2,
                                   root_seed=5, max_workers=1)
    task = {'kind': 'eval', 'run_id': 1, 'seed': derive_seed(5, 1), 'model': model,
            'params': params, 'start': {'Beta': 3.0}, 'n_eval': 2, 'n_eval_particles': 80}
    assert evaluate_task(task)['loglik'] == rows.loc[1, 'loglik']


def test_failed_runs_are_counted_not_fatal(model, params, tmp_path):
    fragile = PartiallyObservedModel(model.dataset, model.init_sampler, model.process,
                                     FragileObservation(), model.dt)
    points = pd.DataFrame({'rho': [0.9, 0.99, 0.8, 0.97]})
    table = ResultsTable(params.names, tmp_path / "eval.csv")
    rows, failures = evaluate_likelihoods(fragile, params, points, n_particles=50,
                                          n_replicates=1, root_seed=2, max_workers=1, table=table)
    assert rows['run_id'].tolist() == [0, 2]
    assert sorted(f.run_id for f in failures) == [1, 3]
    assert all(f.seed == derive_seed(2, f.run_id) for f in failures)
    assert len(table) == 2
