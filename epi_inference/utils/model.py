"""Partially observed Markov process model bundle.

:class:`PartiallyObservedModel` ties together everything a particle filter
needs besides parameters and randomness: the data, an initial-state sampler,
the process simulator, the observation model and the time grid. Its step plan
is built when the model is constructed, so a misaligned time grid is rejected
before any random number is drawn.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Optional

from epi_inference.configs import inference_config as config
from epi_inference.samplers.observation import PoissonObservation
from epi_inference.utils.dataset import Dataset, StepPlan, build_step_plan, load_bsflu
from epi_inference.utils.errors import ConfigurationError
from epi_inference.utils.parameters import ParameterSet
from epi_inference.utils.simulation_kernels import CompartmentalProcess, make_init_sampler
from epi_inference.utils.type_def import InitSampler, ObservationModel, ProcessModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PartiallyObservedModel:
    """Immutable model definition shared by every run.

    Attributes:
        dataset: Observations, population size and ``t0``.
        init_sampler: ``(n, params, rng) -> (n, 5)`` initial states.
        process: Object with ``advance(states, params, dt, rng, n_steps)``.
        observation: Object with ``log_density`` and ``simulate``.
        dt: Euler step size.
        on_misaligned: ``'partial'`` or ``'error'``, see :func:`build_step_plan`.
    """
    dataset: Dataset
    init_sampler: InitSampler
    process: ProcessModel
    observation: ObservationModel
    dt: float
    on_misaligned: str = 'partial'
    plan: StepPlan = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, 'plan', build_step_plan(
            self.dataset.times, self.dataset.t0, self.dt, self.on_misaligned))

    @property
    def n_obs(self) -> int:
        return len(self.dataset)

    def required_parameters(self):
        names = []
        for part in (self.process, self.observation):
            for name in getattr(part, 'required_parameters', lambda: ())():
                if name not in names:
                    names.append(name)
        return tuple(names)

    def check_parameters(self, params: ParameterSet) -> None:
        """Raise :class:`ConfigurationError` if ``params`` lacks a name the model uses."""
        missing = [n for n in self.required_parameters() if n not in params]
        if missing:
            raise ConfigurationError(f"parameter set lacks {missing}")

    def with_backend(self, backend: str) -> "PartiallyObservedModel":
        """Same model with the process simulator switched to ``backend``."""
        process = CompartmentalProcess(self.process.population, self.process.tracking, backend)
        return replace(self, process=process)


def default_parameters() -> ParameterSet:
    """Guess parameters from :mod:`epi_inference.configs.inference_config`."""
    return ParameterSet.from_config(config.PARAMETERS)


def bsflu_model(
    dt: Optional[float] = None,
    tracking: Optional[str] = None,
    backend: Optional[str] = None,
    on_misaligned: Optional[str] = None,
    dataset: Optional[Dataset] = None,
    initial_state=None,
) -> PartiallyObservedModel:
    """Boarding-school influenza model with defaults from the configuration.

    Args:
        dt: Euler step (default ``MODEL_CONFIG['dt']``).
        tracking: ``'reduced'`` or ``'full'``.
        backend: ``'numpy'`` or ``'numba'`` (default ``PFILTER_CONFIG['backend']``).
        on_misaligned: ``'partial'`` or ``'error'``.
        dataset: Replaces the bundled series.
        initial_state: Mapping of compartment names to counts.

    Example:
        >>> model = bsflu_model()
        >>> model.dataset.counts[:3]
        array([ 1,  6, 26])
    """
    mc = config.MODEL_CONFIG
    if dataset is None:
        dataset = load_bsflu(t0=mc['t0'])
    process = CompartmentalProcess(
        dataset.population,
        tracking=tracking or mc['tracking'],
        backend=backend or config.PFILTER_CONFIG['backend'],
    )
    init = make_init_sampler(initial_state or mc['initial_state'], population=dataset.population)
    model = PartiallyObservedModel(
        dataset=dataset,
        init_sampler=init,
        process=process,
        observation=PoissonObservation(),
        dt=dt if dt is not None else mc['dt'],
        on_misaligned=on_misaligned or mc['on_misaligned'],
    )
    logger.debug("Built model: %d observations, dt=%g, %r", model.n_obs, model.dt, process)
    return model
