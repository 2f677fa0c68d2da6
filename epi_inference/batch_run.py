#!/usr/bin/env python3
"""
Parallel batch runs
===================

Fans independent runs out over a process pool and collects one result row
per run:

1. Local search: replicate IF2 chains from the same starting point
2. Global search: IF2 chains from starting points spread over a box
3. Likelihood evaluation: replicated particle filters at given points

Every task gets a seed derived from the root seed and its own index, so each
run is reproducible on its own whatever order runs finish in. Rows are
appended to a :class:`ResultsTable` as runs complete; a failing run is logged
with its context and counted, and the other runs carry on.
"""

import logging
import math
from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import qmc

from epi_inference.configs import inference_config as config
from epi_inference.samplers.helpers import replicate_loglik
from epi_inference.samplers.if2 import Mif2Settings, mif2
from epi_inference.utils.errors import ConfigurationError, RunError
from epi_inference.utils.parameters import ParameterSet
from epi_inference.utils.results import ResultsTable
from epi_inference.utils.tools import derive_seed

logger = logging.getLogger(__name__)

# Offsets separating the seed streams of one task
_FIT_STREAM = 0
_EVAL_STREAM = 1


# ============================================================================
# Worker pool
# ============================================================================

def _as_run_error(exc: BaseException, task: Mapping) -> RunError:
    if isinstance(exc, RunError):
        if exc.run_id is None:
            exc.run_id = task.get('run_id')
        if exc.seed is None:
            exc.seed = task.get('seed')
        return exc
    return RunError(f"{type(exc).__name__}: {exc}", run_id=task.get('run_id'),
                    seed=task.get('seed'), params=task.get('start'))


def run_tasks_in_parallel(
    fn: Callable[[Dict], Any],
    tasks: Sequence[Dict],
    max_workers: Optional[int] = None,
    on_result: Optional[Callable[[Any], None]] = None,
) -> Tuple[List[Any], List[RunError]]:
    """Run ``fn(task)`` for every task and gather the outcomes.

    Args:
        fn: Module-level function (it is pickled to the workers).
        tasks: Dicts with at least ``run_id`` and ``seed``.
        max_workers: Pool size; 1 runs in this process, which keeps stack
            traces and debuggers usable. Defaults to ``MAX_WORKERS``.
        on_result: Called with each result as soon as it arrives.

    Returns:
        ``(results, failures)``. Results are in completion order.
    """
    max_workers = max_workers or config.MAX_WORKERS
    results: List[Any] = []
    failures: List[RunError] = []
    n_tasks = len(tasks)

    def collect(task, result=None, exc=None):
        if exc is not None:
            err = _as_run_error(exc, task)
            failures.append(err)
            logger.error("Run %s failed: %s", err.run_id, err)
        else:
            results.append(result)
            if on_result is not None:
                on_result(result)
        done = len(results) + len(failures)
        if done % 10 == 0 or done == n_tasks:
            logger.info("Progress: %d/%d (ok: %d, failed: %d)",
                        done, n_tasks, len(results), len(failures))

    logger.info("Running %d tasks on %d worker(s)", n_tasks, max_workers)
    if max_workers == 1:
        for task in tasks:
            try:
                collect(task, result=fn(task))
            except Exception as e:
                collect(task, exc=e)
        return results, failures

    with ProcessPoolExecutor(max_workers=max_workers) as executor:
        future_to_task = {executor.submit(fn, task): task for task in tasks}
        for future in as_completed(future_to_task):
            task = future_to_task[future]
            try:
                result = future.result()
            except Exception as e:
                collect(task, exc=e)
            else:
                collect(task, result=result)
    return results, failures


# ============================================================================
# Task functions (module level so they can be pickled)
# ============================================================================

def _row(params: ParameterSet, loglik: float, se: float, task: Mapping, n_failures: int = 0) -> Dict:
    row = params.as_dict()
    row.update(loglik=loglik, loglik_se=se, kind=task['kind'], run_id=task['run_id'],
               seed=task['seed'], n_failures=n_failures)
    return row


def mif2_task(task: Dict) -> Dict:
    """IF2 from ``task['start']``, then a replicated likelihood evaluation."""
    params: ParameterSet = task['params']
    if task.get('start'):
        params = params.with_values(task['start'])
    fit = mif2(task['model'], params, task['settings'],
               seed=derive_seed(task['seed'], _FIT_STREAM))
    loglik, se = replicate_loglik(task['model'], fit.params, task['n_eval_particles'],
                                  task['n_eval'], seed=derive_seed(task['seed'], _EVAL_STREAM))
    n_failures = int(fit.trace['n_failures'].iloc[-1]) if len(fit.trace) else 0
    return _row(fit.params, loglik, se, task, n_failures)


def evaluate_task(task: Dict) -> Dict:
    """Replicated particle-filter likelihood at ``task['start']``."""
    params = task['params'].with_values(task['start'])
    loglik, se = replicate_loglik(task['model'], params, task['n_eval_particles'],
                                  task['n_eval'], seed=derive_seed(task['seed'], _EVAL_STREAM))
    return _row(params, loglik, se, task)


# ============================================================================
# Designs
# ============================================================================

def design_starts(box: Mapping[str, Tuple[float, float]], n: int, design: str = 'sobol',
                  seed: Optional[int] = None) -> pd.DataFrame:
    """``n`` starting points in a box, one column per parameter.

    ``'sobol'`` uses a scrambled Sobol sequence (scipy.stats.qmc), ``'uniform'``
    independent uniform draws.
    """
    names = list(box)
    if not names:
        raise ConfigurationError("empty parameter box")
    lo = np.array([float(box[k][0]) for k in names])
    hi = np.array([float(box[k][1]) for k in names])
    if np.any(lo >= hi):
        raise ConfigurationError(f"empty range in box {dict(box)}")
    if design == 'sobol':
        m = max(0, math.ceil(math.log2(n))) if n > 0 else 0
        unit = qmc.Sobol(d=len(names), scramble=True, seed=seed).random_base2(m)[:n]
    elif design == 'uniform':
        unit = np.random.default_rng(seed).random((n, len(names)))
    else:
        raise ConfigurationError(f"unknown design {design!r}; use 'sobol' or 'uniform'")
    return pd.DataFrame(qmc.scale(unit, lo, hi) if n else unit.reshape(0, len(names)),
                        columns=names)


# ============================================================================
# Drivers
# ============================================================================

def _run(fn, tasks, table: Optional[ResultsTable], max_workers):
    results, failures = run_tasks_in_parallel(
        fn, tasks, max_workers, on_result=table.append if table is not None else None)
    if failures:
        logger.warning("%d of %d runs failed", len(failures), len(tasks))
    frame = pd.DataFrame(results)
    if len(frame):
        frame = frame.sort_values('run_id', ignore_index=True)
    return frame, failures


def _search_tasks(kind, model, params, settings, starts, root_seed, n_eval, n_eval_particles):
    return [
        {
            'kind': kind,
            'run_id': k,
            'seed': derive_seed(root_seed, k),
            'model': model,
            'params': params,
            'settings': settings,
            'start': start,
            'n_eval': n_eval,
            'n_eval_particles': n_eval_particles,
        }
        for k, start in enumerate(starts)
    ]


def run_local_search(
    model,
    params: ParameterSet,
    settings: Mif2Settings,
    n_runs: Optional[int] = None,
    root_seed: Optional[int] = None,
    n_eval: Optional[int] = None,
    n_eval_particles: Optional[int] = None,
    max_workers: Optional[int] = None,
    table: Optional[ResultsTable] = None,
) -> Tuple[pd.DataFrame, List[RunError]]:
    """Replicate IF2 chains from ``params`` and evaluate each estimate.

    Returns:
        ``(rows, failures)``, rows sorted by ``run_id``.
    """
    sc = config.SEARCH_CONFIG
    n_runs = n_runs if n_runs is not None else sc['n_replicates']
    tasks = _search_tasks('local', model, params, settings, [None] * n_runs,
                          root_seed if root_seed is not None else config.SEED_START,
                          n_eval or sc['n_eval'], n_eval_particles or sc['n_eval_particles'])
    return _run(mif2_task, tasks, table, max_workers)


def run_global_search(
    model,
    params: ParameterSet,
    settings: Mif2Settings,
    box: Optional[Mapping[str, Tuple[float, float]]] = None,
    n_starts: Optional[int] = None,
    design: Optional[str] = None,
    root_seed: Optional[int] = None,
    n_eval: Optional[int] = None,
    n_eval_particles: Optional[int] = None,
    max_workers: Optional[int] = None,
    table: Optional[ResultsTable] = None,
) -> Tuple[pd.DataFrame, List[RunError]]:
    """IF2 chains from starting points spread over ``box``.

    Box names must be estimated parameters; the design itself is seeded from
    the root seed so the set of starts is reproducible too.
    """
    sc = config.SEARCH_CONFIG
    box = box or config.PARAMETER_BOX
    not_estimated = [k for k in box if k not in params.estimated_names]
    if not_estimated:
        raise ConfigurationError(f"box names non-estimated parameters {not_estimated}")
    root_seed = root_seed if root_seed is not None else config.SEED_START
    starts = design_starts(box, n_starts if n_starts is not None else sc['n_starts'],
                           design or sc['design'], seed=derive_seed(root_seed, 2 ** 20))
    tasks = _search_tasks('global', model, params, settings, starts.to_dict('records'),
                          root_seed, n_eval or sc['n_eval'],
                          n_eval_particles or sc['n_eval_particles'])
    return _run(mif2_task, tasks, table, max_workers)


def evaluate_likelihoods(
    model,
    params: ParameterSet,
    points: pd.DataFrame,
    n_particles: Optional[int] = None,
    n_replicates: Optional[int] = None,
    root_seed: Optional[int] = None,
    max_workers: Optional[int] = None,
    table: Optional[ResultsTable] = None,
) -> Tuple[pd.DataFrame, List[RunError]]:
    """Replicated likelihood estimates at every row of ``points``.

    Columns of ``points`` that are not parameters of ``params`` are ignored.
    """
    sc = config.SEARCH_CONFIG
    cols = [c for c in points.columns if c in params]
    starts = points[cols].to_dict('records')
    tasks = _search_tasks('eval', model, params, None, starts,
                          root_seed if root_seed is not None else config.SEED_START,
                          n_replicates or sc['n_eval'], n_particles or sc['n_eval_particles'])
    return _run(evaluate_task, tasks, table, max_workers)
