"""
Inference configuration
=======================

Default settings for the boarding-school influenza model and for every
inference driver. Edit this file to change what the command-line front end
and the batch runner use when no explicit argument is given.
"""

# ============================================================================
# Model configuration
# ============================================================================

MODEL_CONFIG = {
    'population': 763,          # boarding-school size N
    't0': 0.0,                  # time of the initial state (days)
    'dt': 1.0 / 12.0,           # Euler step (days)
    'on_misaligned': 'partial', # 'partial' or 'error'
    'tracking': 'reduced',      # 'reduced' (S, I, R1) or 'full' (S, I, R1, R2, R3)
    'initial_state': {'S': 762, 'I': 1, 'R1': 0},
}

# name -> (value, mode, transform)
PARAMETERS = {
    'Beta':  (2.0,       'estimated', 'log'),
    'mu_I':  (1.0,       'estimated', 'log'),
    'mu_R1': (1.0 / 3.0, 'fixed',     'log'),
    'mu_R2': (1.0 / 2.0, 'fixed',     'log'),
    'rho':   (0.9,       'estimated', 'logit'),
}

# Random-walk sds on the estimation (transformed) scale
RW_SD = {
    'Beta': 0.02,
    'mu_I': 0.02,
    'rho': 0.02,
}

# Uniform prior ranges for pMCMC and the starting box for global searches
PARAMETER_BOX = {
    'Beta': (1.0, 4.0),
    'mu_I': (0.5, 3.0),
    'rho': (0.5, 1.0),
}

# ============================================================================
# Particle filter
# ============================================================================

PFILTER_CONFIG = {
    'n_particles': 1000,
    'n_replicates': 10,
    'resampling': 'systematic',  # 'systematic' or 'multinomial'
    'tol': 1e-17,                # likelihood below which a particle counts as failed
    'backend': 'numpy',          # 'numpy' or 'numba'
}

# ============================================================================
# IF2
# ============================================================================

MIF2_CONFIG = {
    'n_particles': 2000,
    'n_mif': 50,
    'cooling_fraction_50': 0.5,
    'cooling_type': 'geometric',  # 'geometric' or 'hyperbolic'
}

# ============================================================================
# pMCMC
# ============================================================================

PMCMC_CONFIG = {
    'n_iter': 5000,
    'n_particles': 200,
    'scale_start': 100,      # iteration at which global scale tuning begins
    'scale_cooling': 0.999,
    'shape_start': 200,      # accepted proposals before covariance adaptation
    'target_accept': 0.234,
    'max_scaling': 50.0,
    'adapt_until': None,     # None: adapt for the whole run
}

# ============================================================================
# Searches and worker pool
# ============================================================================

SEARCH_CONFIG = {
    'n_replicates': 20,     # local search: mif2 chains from the same start
    'n_starts': 300,        # global search: starting points
    'design': 'sobol',      # 'sobol' or 'uniform'
    'n_eval': 10,           # pfilter replicates per likelihood evaluation
    'n_eval_particles': 5000,
}

# Number of worker processes
MAX_WORKERS = 8

# Root seed; None draws one from the operating system
SEED_START = 998468235

# ============================================================================
# Validation
# ============================================================================

def validate_config():
    """Check the configuration and return a list of error messages."""
    errors = []

    if MAX_WORKERS < 1 or MAX_WORKERS > 128:
        errors.append("MAX_WORKERS must be between 1 and 128")

    if MODEL_CONFIG['population'] < 1:
        errors.append("population must be positive")
    if MODEL_CONFIG['dt'] <= 0:
        errors.append("dt must be positive")
    if MODEL_CONFIG['on_misaligned'] not in ('partial', 'error'):
        errors.append("on_misaligned must be 'partial' or 'error'")
    if MODEL_CONFIG['tracking'] not in ('reduced', 'full'):
        errors.append("tracking must be 'reduced' or 'full'")
    if sum(MODEL_CONFIG['initial_state'].values()) > MODEL_CONFIG['population']:
        errors.append("initial state exceeds the population size")

    for name, (value, mode, transform) in PARAMETERS.items():
        if mode not in ('fixed', 'estimated'):
            errors.append(f"{name}: unknown mode {mode!r}")
        if transform not in ('identity', 'log', 'logit'):
            errors.append(f"{name}: unknown transform {transform!r}")
        if transform == 'log' and value <= 0:
            errors.append(f"{name}: log-transformed value must be positive")
        if transform == 'logit' and not 0 < value < 1:
            errors.append(f"{name}: logit-transformed value must lie in (0, 1)")

    estimated = {n for n, (_, mode, _) in PARAMETERS.items() if mode == 'estimated'}
    for name, sd in RW_SD.items():
        if name not in estimated:
            errors.append(f"RW_SD names {name!r}, which is not an estimated parameter")
        if sd < 0:
            errors.append(f"RW_SD[{name!r}] must be non-negative")
    for name, (lo, hi) in PARAMETER_BOX.items():
        if lo >= hi:
            errors.append(f"PARAMETER_BOX[{name!r}] is empty")

    if PFILTER_CONFIG['n_particles'] < 1:
        errors.append("PFILTER_CONFIG['n_particles'] must be >= 1")
    if PFILTER_CONFIG['resampling'] not in ('systematic', 'multinomial'):
        errors.append("PFILTER_CONFIG['resampling'] must be 'systematic' or 'multinomial'")
    if not 0 < PFILTER_CONFIG['tol'] < 1:
        errors.append("PFILTER_CONFIG['tol'] must lie in (0, 1)")
    if PFILTER_CONFIG['backend'] not in ('numpy', 'numba'):
        errors.append("PFILTER_CONFIG['backend'] must be 'numpy' or 'numba'")

    if not 0 < MIF2_CONFIG['cooling_fraction_50'] <= 1:
        errors.append("cooling_fraction_50 must lie in (0, 1]")
    if MIF2_CONFIG['cooling_type'] not in ('geometric', 'hyperbolic'):
        errors.append("cooling_type must be 'geometric' or 'hyperbolic'")

    if not 0 < PMCMC_CONFIG['target_accept'] < 1:
        errors.append("target_accept must lie in (0, 1)")

    if SEARCH_CONFIG['design'] not in ('sobol', 'uniform'):
        errors.append("SEARCH_CONFIG['design'] must be 'sobol' or 'uniform'")

    return errors
