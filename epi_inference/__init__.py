"""Particle filtering, IF2 and particle MCMC for a stochastic SIR-type model."""

from epi_inference.utils import (
    Compartment,
    CompartmentalProcess,
    ConfigurationError,
    Dataset,
    EpiInferenceError,
    NonFiniteLikelihoodError,
    ParameterDomainError,
    ParameterSet,
    ParameterSpec,
    ParamMode,
    RunError,
    TrackingConfig,
    TransformKind,
    load_bsflu,
    logmeanexp,
)
from epi_inference.utils.model import PartiallyObservedModel, bsflu_model, default_parameters

__version__ = "0.1.0"
