import numpy as np
from numpy.typing import NDArray
from scipy.special import logsumexp
from typing import List, Optional, Tuple, Union


def logmeanexp(x, se: bool = False) -> Union[float, Tuple[float, float]]:
    """
    Log of the mean of ``exp(x)``, computed stably.

    This is how replicate particle-filter log-likelihoods are combined: the
    filter is unbiased for the likelihood, not the log-likelihood, so the
    replicates are averaged on the natural scale.

    Args:
        x: 1D array of log-likelihoods.
        se: Also return a jackknife standard error of the estimate.

    Returns:
        The estimate, or ``(estimate, standard_error)`` when ``se`` is True.
        The standard error is ``nan`` for fewer than two values.
    """
    x = np.asarray(x, dtype=np.float64).ravel()
    if x.size == 0:
        raise ValueError("logmeanexp of an empty sequence")
    est = float(logsumexp(x) - np.log(x.size))
    if not se:
        return est
    n = x.size
    if n < 2:
        return est, float('nan')
    # leave-one-out estimates
    jk = np.array([logsumexp(np.delete(x, k)) - np.log(n - 1) for k in range(n)])
    return est, float((n - 1) * np.std(jk, ddof=1) / np.sqrt(n))


def log_mean_weight(log_w: NDArray[np.float64]) -> float:
    """``log(mean(exp(log_w)))``, the per-step likelihood estimate."""
    return float(logsumexp(log_w) - np.log(log_w.size))


def normalized_weights(log_w: NDArray[np.float64]) -> NDArray[np.float64]:
    """Weights summing to one from unnormalized log-weights."""
    return np.exp(log_w - logsumexp(log_w))


def effective_sample_size(weights: NDArray[np.float64]) -> float:
    """
    ESS = (sum w)^2 / sum w^2.

    Accepts unnormalized weights; returns 0 when all weights are zero.
    """
    w = np.asarray(weights, dtype=np.float64)
    s2 = np.sum(w * w)
    if s2 <= 0.0:
        return 0.0
    return float(np.sum(w) ** 2 / s2)


# ----------------------------------------------------------------------------
# Seeds
# ----------------------------------------------------------------------------

def derive_seed(root_seed: Optional[int], *offsets: int) -> int:
    """
    Deterministic 32-bit seed for the task identified by ``offsets``.

    Different offset tuples give statistically independent streams
    (``numpy.random.SeedSequence`` spawn keys), so a run is reproducible from
    the root seed and its own position alone, whatever order runs finish in.
    """
    ss = np.random.SeedSequence(entropy=root_seed, spawn_key=tuple(int(o) for o in offsets))
    return int(ss.generate_state(1, dtype=np.uint32)[0])


def spawn_seeds(root_seed: Optional[int], n: int) -> List[int]:
    """Seeds for ``n`` sibling tasks of ``root_seed``."""
    return [derive_seed(root_seed, i) for i in range(n)]


def make_rng(seed=None) -> np.random.Generator:
    """Accept a Generator, a SeedSequence or an int/None seed."""
    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(seed)
