"""Exception types raised by the inference machinery.

Filtering failures are not exceptions: they are counted in
:class:`~epi_inference.samplers.helpers.FilterResult` and never abort a run.
"""

from typing import Any, Mapping, Optional


class EpiInferenceError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(EpiInferenceError, ValueError):
    """Inconsistent settings detected before any stochastic computation."""


class ParameterDomainError(EpiInferenceError, ValueError):
    """A parameter value lies outside its domain."""


class NonFiniteLikelihoodError(EpiInferenceError, ArithmeticError):
    """A NaN or +inf appeared in an observation log-density or likelihood."""

    def __init__(self, message: str, step: Optional[int] = None, time: Optional[float] = None):
        super().__init__(message)
        self.step = step
        self.time = time

    def __reduce__(self):
        return (type(self), (self.args[0], self.step, self.time))


class RunError(EpiInferenceError, RuntimeError):
    """An unrecoverable error inside one run of a batch.

    Carries enough context for the fan-in side to log the failure and carry on
    with the remaining runs.
    """

    def __init__(
        self,
        message: str,
        run_id: Any = None,
        seed: Optional[int] = None,
        iteration: Optional[int] = None,
        params: Optional[Mapping[str, float]] = None,
    ):
        super().__init__(message)
        self.run_id = run_id
        self.seed = seed
        self.iteration = iteration
        self.params = dict(params) if params is not None else None

    def __reduce__(self):
        return (type(self), (self.args[0], self.run_id, self.seed, self.iteration, self.params))

    def __str__(self):
        base = super().__str__()
        return (f"run {self.run_id} (seed={self.seed}, iteration={self.iteration}, "
                f"params={self.params}): {base}")
