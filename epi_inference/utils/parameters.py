"""Parameter vectors with an explicit fixed / estimated partition.

Every parameter is a :class:`ParameterSpec` carrying its natural-scale value,
a :class:`~epi_inference.utils.type_def.ParamMode` and, for estimated
parameters, a :class:`~epi_inference.utils.type_def.TransformKind`. Random
walks (IF2 perturbations, pMCMC proposals) move on the *estimation* scale,
the image of the natural domain under the transform, so a perturbed value
can never leave its domain.

Example:
    >>> params = ParameterSet([
    ...     ParameterSpec("Beta", 2.0, ParamMode.ESTIMATED, TransformKind.LOG),
    ...     ParameterSpec("rho", 0.9, ParamMode.ESTIMATED, TransformKind.LOGIT),
    ...     ParameterSpec("mu_R1", 1 / 3),
    ... ])
    >>> params.estimated_names
    ('Beta', 'rho')
    >>> u = params.estimated_vector()          # log(2), logit(0.9)
    >>> round(params.with_estimated(u)["rho"], 12)
    0.9
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Dict, Iterable, Iterator, Mapping, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
from scipy.special import expit, log_expit, logit

from epi_inference.utils.errors import ConfigurationError, ParameterDomainError
from epi_inference.utils.type_def import ParamMode, TransformKind, as_mode, as_transform

_NAME_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

_DEFAULT_BOUNDS = {
    TransformKind.IDENTITY: (-np.inf, np.inf),
    TransformKind.LOG: (0.0, np.inf),
    TransformKind.LOGIT: (0.0, 1.0),
}


def validate_name(name: str) -> bool:
    """Return True if ``name`` consists of letters, digits and underscores
    and does not start with a digit."""
    return bool(_NAME_PATTERN.match(name))


# =============================================================================
# Transforms
# =============================================================================

def transform(kind: TransformKind, x, bounds: Tuple[float, float]):
    """Map natural-scale values to the estimation scale."""
    x = np.asarray(x, dtype=np.float64)
    if kind is TransformKind.LOG:
        return np.log(x)
    if kind is TransformKind.LOGIT:
        lo, hi = bounds
        return logit((x - lo) / (hi - lo))
    return x.copy()


def untransform(kind: TransformKind, u, bounds: Tuple[float, float]):
    """Inverse of :func:`transform`."""
    u = np.asarray(u, dtype=np.float64)
    if kind is TransformKind.LOG:
        return np.exp(u)
    if kind is TransformKind.LOGIT:
        lo, hi = bounds
        return lo + (hi - lo) * expit(u)
    return u.copy()


def log_jacobian(kind: TransformKind, u, bounds: Tuple[float, float]):
    """``log |dx/du|`` of :func:`untransform` at ``u``.

    Needed whenever a density on the natural scale is sampled by a random
    walk on the estimation scale.
    """
    u = np.asarray(u, dtype=np.float64)
    if kind is TransformKind.LOG:
        return u.copy()
    if kind is TransformKind.LOGIT:
        lo, hi = bounds
        return np.log(hi - lo) + log_expit(u) + log_expit(-u)
    return np.zeros_like(u)


# =============================================================================
# Single parameter
# =============================================================================

@dataclass(frozen=True)
class ParameterSpec:
    """One named parameter.

    Attributes:
        name: Identifier used as column name everywhere (results tables,
            traces, parameter columns passed to the model).
        value: Natural-scale value.
        mode: FIXED or ESTIMATED.
        transform: Map to the estimation scale. Only used when estimated.
        bounds: Natural-scale domain. Defaults to the full image of the
            transform, e.g. ``(0, 1)`` for LOGIT. Estimated parameters must lie
            strictly inside; fixed parameters may sit on a finite endpoint,
            which allows for instance a reporting probability of exactly 1.
    """
    name: str
    value: float
    mode: ParamMode = ParamMode.FIXED
    transform: TransformKind = TransformKind.IDENTITY
    bounds: Optional[Tuple[float, float]] = None

    def __post_init__(self):
        if not validate_name(self.name):
            raise ConfigurationError(f"invalid parameter name: {self.name!r}")
        object.__setattr__(self, 'mode', as_mode(self.mode))
        object.__setattr__(self, 'transform', as_transform(self.transform))
        object.__setattr__(self, 'value', float(self.value))
        if self.bounds is None:
            object.__setattr__(self, 'bounds', _DEFAULT_BOUNDS[self.transform])
        lo, hi = (float(b) for b in self.bounds)
        if not lo < hi:
            raise ConfigurationError(f"{self.name}: empty bounds ({lo}, {hi})")
        if self.transform is TransformKind.LOG and lo < 0:
            raise ConfigurationError(f"{self.name}: log transform needs a positive domain")
        if self.transform is TransformKind.LOGIT and not (np.isfinite(lo) and np.isfinite(hi)):
            raise ConfigurationError(f"{self.name}: logit transform needs finite bounds")
        object.__setattr__(self, 'bounds', (lo, hi))
        strict = self.estimated and self.transform is not TransformKind.IDENTITY
        if not self.in_domain(self.value, strict=strict):
            raise ParameterDomainError(
                f"{self.name}={self.value} lies outside its domain {self.bounds}")

    @property
    def estimated(self) -> bool:
        return self.mode is ParamMode.ESTIMATED

    def in_domain(self, x, strict: bool = False) -> NDArray[np.bool_]:
        """Elementwise domain test; ``strict`` excludes finite endpoints."""
        x = np.asarray(x, dtype=np.float64)
        lo, hi = self.bounds
        if strict:
            ok = (x > lo) & (x < hi)
        else:
            ok = (x >= lo) & (x <= hi)
            if self.transform is TransformKind.LOG:
                ok &= x > 0
        return ok & np.isfinite(x)

    def to_estimation(self, x):
        return transform(self.transform, x, self.bounds)

    def from_estimation(self, u):
        return untransform(self.transform, u, self.bounds)

    def log_jacobian(self, u):
        return log_jacobian(self.transform, u, self.bounds)


# =============================================================================
# Parameter vector
# =============================================================================

class ParameterSet:
    """Ordered, immutable collection of :class:`ParameterSpec`.

    Column order of every parameter matrix produced or consumed here follows
    :attr:`names`. Methods that "change" the set return a new instance.
    """

    def __init__(self, specs: Iterable[ParameterSpec]):
        self._specs: Tuple[ParameterSpec, ...] = tuple(specs)
        names = [s.name for s in self._specs]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"duplicate parameter names in {names}")
        self._index = {name: i for i, name in enumerate(names)}

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def from_config(cls, config: Mapping[str, Tuple[float, str, str]]) -> "ParameterSet":
        """Build from ``{name: (value, mode, transform)}``."""
        return cls(ParameterSpec(name, value, mode, tr)
                   for name, (value, mode, tr) in config.items())

    @classmethod
    def from_values(
        cls,
        values: Mapping[str, float],
        estimated: Optional[Mapping[str, str]] = None,
    ) -> "ParameterSet":
        """Build from plain values; ``estimated`` maps names to transforms."""
        estimated = estimated or {}
        unknown = set(estimated) - set(values)
        if unknown:
            raise ConfigurationError(f"estimated names without values: {sorted(unknown)}")
        return cls(
            ParameterSpec(name, value, ParamMode.ESTIMATED, estimated[name])
            if name in estimated else ParameterSpec(name, value)
            for name, value in values.items()
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._specs)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names)

    def __contains__(self, name) -> bool:
        return name in self._index

    def __getitem__(self, name: str) -> float:
        return self.spec(name).value

    def __eq__(self, other) -> bool:
        return isinstance(other, ParameterSet) and self._specs == other._specs

    def __repr__(self) -> str:
        parts = []
        for s in self._specs:
            tag = f"~{s.transform.value}" if s.estimated else "fixed"
            parts.append(f"{s.name}={s.value:.6g} ({tag})")
        return f"ParameterSet({', '.join(parts)})"

    def spec(self, name: str) -> ParameterSpec:
        try:
            return self._specs[self._index[name]]
        except KeyError:
            raise KeyError(f"unknown parameter {name!r}") from None

    def index(self, name: str) -> int:
        return self._index[name]

    @property
    def specs(self) -> Tuple[ParameterSpec, ...]:
        return self._specs

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(s.name for s in self._specs)

    @property
    def estimated_names(self) -> Tuple[str, ...]:
        return tuple(s.name for s in self._specs if s.estimated)

    @property
    def fixed_names(self) -> Tuple[str, ...]:
        return tuple(s.name for s in self._specs if not s.estimated)

    @property
    def estimated_index(self) -> NDArray[np.int64]:
        return np.array([i for i, s in enumerate(self._specs) if s.estimated], dtype=np.int64)

    @property
    def values(self) -> NDArray[np.float64]:
        return np.array([s.value for s in self._specs], dtype=np.float64)

    def as_dict(self) -> Dict[str, float]:
        return {s.name: s.value for s in self._specs}

    # ------------------------------------------------------------------
    # Derived sets
    # ------------------------------------------------------------------
    def with_values(self, values: Optional[Mapping[str, float]] = None, **kwargs) -> "ParameterSet":
        """Return a copy with some natural-scale values replaced."""
        updates = dict(values or {}, **kwargs)
        unknown = set(updates) - set(self._index)
        if unknown:
            raise KeyError(f"unknown parameters: {sorted(unknown)}")
        return ParameterSet(
            replace(s, value=float(updates[s.name])) if s.name in updates else s
            for s in self._specs
        )

    def fix(self, *names: str) -> "ParameterSet":
        """Return a copy with ``names`` switched to FIXED."""
        for name in names:
            self.spec(name)
        return ParameterSet(
            replace(s, mode=ParamMode.FIXED) if s.name in names else s
            for s in self._specs
        )

    def estimate(self, name: str, transform=None, bounds=None) -> "ParameterSet":
        """Return a copy with ``name`` switched to ESTIMATED."""
        old = self.spec(name)
        tr = as_transform(transform) if transform is not None else old.transform
        new = replace(old, mode=ParamMode.ESTIMATED, transform=tr,
                      bounds=bounds if bounds is not None else
                      (old.bounds if tr is old.transform else None))
        return ParameterSet(new if s.name == name else s for s in self._specs)

    # ------------------------------------------------------------------
    # Estimation scale
    # ------------------------------------------------------------------
    def estimated_vector(self, scale: str = "estimation") -> NDArray[np.float64]:
        """Values of the estimated parameters on the given scale."""
        specs = [s for s in self._specs if s.estimated]
        if scale == "natural":
            return np.array([s.value for s in specs], dtype=np.float64)
        if scale != "estimation":
            raise ValueError(f"unknown scale {scale!r}")
        return np.array([float(s.to_estimation(s.value)) for s in specs], dtype=np.float64)

    def with_estimated(self, vector: Sequence[float], scale: str = "estimation") -> "ParameterSet":
        """Return a copy with the estimated parameters set from ``vector``."""
        vector = np.asarray(vector, dtype=np.float64)
        names = self.estimated_names
        if vector.shape != (len(names),):
            raise ValueError(f"expected {len(names)} values, got shape {vector.shape}")
        if scale == "estimation":
            updates = {n: float(self.spec(n).from_estimation(v)) for n, v in zip(names, vector)}
        elif scale == "natural":
            updates = dict(zip(names, vector.tolist()))
        else:
            raise ValueError(f"unknown scale {scale!r}")
        return self.with_values(updates)

    def log_jacobian(self, u: Sequence[float]) -> float:
        """Summed log-Jacobian of the back-transform at estimation-scale ``u``."""
        u = np.asarray(u, dtype=np.float64)
        specs = [s for s in self._specs if s.estimated]
        return float(sum(float(s.log_jacobian(ui)) for s, ui in zip(specs, u)))

    # ------------------------------------------------------------------
    # Particle matrices
    # ------------------------------------------------------------------
    def to_matrix(self, n: int) -> NDArray[np.float64]:
        """Natural-scale values tiled to shape ``(n, len(self))``."""
        return np.tile(self.values, (n, 1))

    def columns(self, matrix: NDArray[np.float64]) -> Dict[str, NDArray[np.float64]]:
        """Split a parameter matrix into ``{name: column}``."""
        return {name: matrix[:, i] for i, name in enumerate(self.names)}

    def to_estimation_matrix(self, matrix: NDArray[np.float64]) -> NDArray[np.float64]:
        """Estimated columns of a natural-scale matrix, on the estimation scale."""
        idx = self.estimated_index
        out = np.empty((matrix.shape[0], len(idx)), dtype=np.float64)
        for j, i in enumerate(idx):
            out[:, j] = self._specs[i].to_estimation(matrix[:, i])
        return out

    def from_estimation_matrix(
        self, u: NDArray[np.float64], base: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        """Copy of ``base`` with estimated columns back-transformed from ``u``."""
        out = base.copy()
        for j, i in enumerate(self.estimated_index):
            out[:, i] = self._specs[i].from_estimation(u[:, j])
        return out

    def check_domain(self, matrix: NDArray[np.float64]) -> None:
        """Raise :class:`ParameterDomainError` if any entry is outside its domain."""
        matrix = np.atleast_2d(matrix)
        bad = [s.name for i, s in enumerate(self._specs)
               if not np.all(s.in_domain(matrix[:, i]))]
        if bad:
            raise ParameterDomainError(f"parameters outside their domain: {bad}")
