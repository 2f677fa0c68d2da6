"""Observation model: reported counts given the latent compartments.

The observed count at each time is Poisson with mean ``rho * R1 + epsilon``.
``epsilon`` keeps the mean positive when R1 is empty, so a non-zero count
gets a tiny but finite likelihood instead of zero.
"""

import numpy as np
from numpy.typing import NDArray
from scipy import stats

from epi_inference.utils.type_def import Compartment, ParamColumns, StateArray

DEFAULT_EPSILON = 1e-6


class PoissonObservation:
    """Poisson reporting of one compartment.

    Args:
        compartment: Observed compartment (default R1, bed-confined).
        reporting: Name of the reporting-probability parameter.
        epsilon: Positive constant added to the Poisson mean.
    """

    def __init__(self, compartment=Compartment.R1, reporting: str = 'rho',
                 epsilon: float = DEFAULT_EPSILON):
        if not epsilon > 0:
            raise ValueError(f"epsilon must be positive, got {epsilon}")
        self.compartment = Compartment(compartment)
        self.reporting = reporting
        self.epsilon = float(epsilon)

    def __repr__(self):
        return (f"PoissonObservation(compartment={self.compartment.name}, "
                f"reporting={self.reporting!r}, epsilon={self.epsilon})")

    def required_parameters(self):
        return (self.reporting,)

    def mean(self, states: StateArray, params: ParamColumns) -> NDArray[np.float64]:
        rho = np.asarray(params[self.reporting], dtype=np.float64)
        return rho * states[:, self.compartment] + self.epsilon

    def log_density(self, observed: int, states: StateArray, params: ParamColumns) -> NDArray[np.float64]:
        """Log Poisson pmf of ``observed`` under each particle's state."""
        return stats.poisson.logpmf(int(observed), self.mean(states, params))

    def simulate(self, states: StateArray, params: ParamColumns,
                 rng: np.random.Generator) -> NDArray[np.int64]:
        """One synthetic count per particle."""
        return rng.poisson(self.mean(states, params)).astype(np.int64)
