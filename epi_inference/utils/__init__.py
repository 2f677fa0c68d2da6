"""Model components, parameter handling and shared utilities."""

from epi_inference.utils.errors import (
    ConfigurationError,
    EpiInferenceError,
    NonFiniteLikelihoodError,
    ParameterDomainError,
    RunError,
)
from epi_inference.utils.type_def import Compartment, ParamMode, TransformKind
from epi_inference.utils.parameters import ParameterSet, ParameterSpec
from epi_inference.utils.dataset import Dataset, build_step_plan, load_bsflu
from epi_inference.utils.simulation_kernels import (
    CompartmentalProcess,
    TrackingConfig,
    make_init_sampler,
    make_poisson_init_sampler,
)
from epi_inference.utils.tools import derive_seed, logmeanexp
