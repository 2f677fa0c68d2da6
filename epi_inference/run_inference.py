#!/usr/bin/env python3
"""
Command-line front end
======================

Usage::

    # replicated particle-filter likelihood at the configured parameters
    python -m epi_inference.run_inference pfilter --n-particles 1000 --n-replicates 10

    # one IF2 run, estimate evaluated afterwards
    python -m epi_inference.run_inference mif2 --n-mif 50 --trace trace.csv --out results.csv

    # local or global search over a process pool
    python -m epi_inference.run_inference search --mode global --n-starts 300 --out results.csv

    # particle MCMC with uniform priors over PARAMETER_BOX
    python -m epi_inference.run_inference pmcmc --n-iter 5000 --out chain.csv

Defaults come from ``epi_inference/configs/inference_config.py``; explicit
arguments override them.
"""

import argparse
import logging
import sys
from typing import List, Optional

from epi_inference.batch_run import run_global_search, run_local_search
from epi_inference.configs import inference_config as config
from epi_inference.samplers.helpers import replicate_loglik
from epi_inference.samplers.if2 import Mif2Settings, mif2
from epi_inference.samplers.pmcmc import AdaptiveProposal, make_uniform_prior, run_pmcmc
from epi_inference.utils.dataset import Dataset
from epi_inference.utils.errors import EpiInferenceError
from epi_inference.utils.model import bsflu_model, default_parameters
from epi_inference.utils.results import ResultsTable

logger = logging.getLogger(__name__)


def _key_value(text: str):
    name, sep, value = text.partition('=')
    if not sep:
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got {text!r}")
    try:
        return name, float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}") from None


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        prog='epi-inference',
        description='Particle filtering, IF2 and pMCMC for the boarding-school influenza model')

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--seed', type=int, default=config.SEED_START, help='Root random seed')
    common.add_argument('--backend', choices=('numpy', 'numba'), default=None,
                        help='Process simulator backend')
    common.add_argument('--tracking', choices=('reduced', 'full'), default=None)
    common.add_argument('--dt', type=float, default=None, help='Euler step (days)')
    common.add_argument('--data', type=str, default=None,
                        help='CSV file replacing the bundled series')
    common.add_argument('--time-col', default='day')
    common.add_argument('--count-col', default='B')
    common.add_argument('--population', type=int, default=config.MODEL_CONFIG['population'])
    common.add_argument('--set', dest='values', type=_key_value, nargs='+', default=[],
                        metavar='NAME=VALUE', help='Override parameter values')
    common.add_argument('--fix', nargs='+', default=[], metavar='NAME',
                        help='Hold these parameters fixed')
    common.add_argument('--out', type=str, default=None, help='CSV file to append results to')
    common.add_argument('-v', '--verbose', action='store_true')

    sub = parser.add_subparsers(dest='command', required=True)

    pf = sub.add_parser('pfilter', parents=[common], help='Replicated likelihood estimate')
    pf.add_argument('--n-particles', type=int, default=config.PFILTER_CONFIG['n_particles'])
    pf.add_argument('--n-replicates', type=int, default=config.PFILTER_CONFIG['n_replicates'])

    def add_mif_args(p):
        p.add_argument('--n-particles', type=int, default=config.MIF2_CONFIG['n_particles'])
        p.add_argument('--n-mif', type=int, default=config.MIF2_CONFIG['n_mif'])
        p.add_argument('--cooling-fraction', type=float,
                       default=config.MIF2_CONFIG['cooling_fraction_50'])
        p.add_argument('--cooling-type', choices=('geometric', 'hyperbolic'),
                       default=config.MIF2_CONFIG['cooling_type'])
        p.add_argument('--n-eval', type=int, default=config.SEARCH_CONFIG['n_eval'])
        p.add_argument('--n-eval-particles', type=int,
                       default=config.SEARCH_CONFIG['n_eval_particles'])

    mf = sub.add_parser('mif2', parents=[common], help='One IF2 run')
    add_mif_args(mf)
    mf.add_argument('--trace', type=str, default=None, help='CSV file for the iteration trace')

    sr = sub.add_parser('search', parents=[common], help='Parallel local or global IF2 search')
    add_mif_args(sr)
    sr.add_argument('--mode', choices=('local', 'global'), default='global')
    sr.add_argument('--n-runs', type=int, default=config.SEARCH_CONFIG['n_replicates'],
                    help='Local search: number of chains')
    sr.add_argument('--n-starts', type=int, default=config.SEARCH_CONFIG['n_starts'],
                    help='Global search: number of starting points')
    sr.add_argument('--design', choices=('sobol', 'uniform'), default=config.SEARCH_CONFIG['design'])
    sr.add_argument('--workers', type=int, default=config.MAX_WORKERS)

    mc = sub.add_parser('pmcmc', parents=[common], help='Particle marginal Metropolis-Hastings')
    mc.add_argument('--n-iter', type=int, default=config.PMCMC_CONFIG['n_iter'])
    mc.add_argument('--n-particles', type=int, default=config.PMCMC_CONFIG['n_particles'])

    return parser.parse_args(argv)


def build_model(args):
    dataset = None
    if args.data:
        dataset = Dataset.from_csv(args.data, args.time_col, args.count_col, args.population,
                                   t0=config.MODEL_CONFIG['t0'])
    return bsflu_model(dt=args.dt, tracking=args.tracking, backend=args.backend, dataset=dataset)


def build_parameters(args):
    params = default_parameters()
    if args.values:
        params = params.with_values(dict(args.values))
    if args.fix:
        params = params.fix(*args.fix)
    return params


def mif2_settings(args, params) -> Mif2Settings:
    return Mif2Settings(
        n_particles=args.n_particles,
        n_mif=args.n_mif,
        rw_sd={k: v for k, v in config.RW_SD.items() if k in params.estimated_names},
        cooling_fraction_50=args.cooling_fraction,
        cooling_type=args.cooling_type,
        resampling=config.PFILTER_CONFIG['resampling'],
        tol=config.PFILTER_CONFIG['tol'],
    )


def cmd_pfilter(args, model, params) -> int:
    loglik, se = replicate_loglik(model, params, args.n_particles, args.n_replicates,
                                  seed=args.seed, resampling=config.PFILTER_CONFIG['resampling'],
                                  tol=config.PFILTER_CONFIG['tol'])
    logger.info("loglik = %.3f (se %.3f) at %s", loglik, se, params)
    print(f"{loglik:.4f}\t{se:.4f}")
    if args.out:
        ResultsTable(params.names, args.out).append(
            dict(params.as_dict(), loglik=loglik, loglik_se=se, kind='pfilter', seed=args.seed))
    return 0


def cmd_mif2(args, model, params) -> int:
    fit = mif2(model, params, mif2_settings(args, params), seed=args.seed, verbose=args.verbose)
    loglik, se = replicate_loglik(model, fit.params, args.n_eval_particles, args.n_eval,
                                  seed=args.seed)
    logger.info("mif2 estimate %s: loglik = %.3f (se %.3f)", fit.params, loglik, se)
    print(fit.trace.tail().to_string(index=False))
    if args.trace:
        fit.trace.to_csv(args.trace, index=False)
    if args.out:
        ResultsTable(params.names, args.out).append(
            dict(fit.params.as_dict(), loglik=loglik, loglik_se=se, kind='mif2', seed=args.seed))
    return 0


def cmd_search(args, model, params) -> int:
    table = ResultsTable(params.names, args.out)
    settings = mif2_settings(args, params)
    if args.mode == 'local':
        rows, failures = run_local_search(
            model, params, settings, n_runs=args.n_runs, root_seed=args.seed,
            n_eval=args.n_eval, n_eval_particles=args.n_eval_particles,
            max_workers=args.workers, table=table)
    else:
        rows, failures = run_global_search(
            model, params, settings, n_starts=args.n_starts, design=args.design,
            root_seed=args.seed, n_eval=args.n_eval, n_eval_particles=args.n_eval_particles,
            max_workers=args.workers, table=table)
    if len(rows):
        print(rows.sort_values('loglik', ascending=False).head(10).to_string(index=False))
    return 0 if not failures else 1


def cmd_pmcmc(args, model, params) -> int:
    names = params.estimated_names
    prior = make_uniform_prior(params, {k: config.PARAMETER_BOX[k] for k in names})
    proposal = AdaptiveProposal.from_config(
        names, {k: config.RW_SD[k] for k in names}, config.PMCMC_CONFIG)
    result = run_pmcmc(model, params, args.n_iter, args.n_particles, prior, proposal=proposal,
                       seed=args.seed, resampling=config.PFILTER_CONFIG['resampling'],
                       tol=config.PFILTER_CONFIG['tol'], verbose=args.verbose)
    frame = result.to_frame()
    logger.info("acceptance rate %.3f, filter failures %d",
                result.acceptance_rate, result.n_filter_failures)
    print(frame[list(names)].describe().to_string())
    if args.out:
        frame.to_csv(args.out)
    return 0


COMMANDS = {
    'pfilter': cmd_pfilter,
    'mif2': cmd_mif2,
    'search': cmd_search,
    'pmcmc': cmd_pmcmc,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    errors = config.validate_config()
    if errors:
        for err in errors:
            logger.error("Configuration: %s", err)
        return 2
    try:
        model = build_model(args)
        params = build_parameters(args)
        return COMMANDS[args.command](args, model, params)
    except (EpiInferenceError, KeyError) as e:
        logger.error("%s", e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
