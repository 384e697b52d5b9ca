"""Parameter Specification and Uniform Priors
===========================================

Defines the ordered, immutable parameter specification consumed by the
Metropolis-Hastings sampler. Each entry carries a starting value and a
bounded-uniform prior; name-to-index lookups and parameter blocks are built
once at construction.

Parameter configuration records follow the layout used by the simulation
scripts::

    {"Parameter": "b1", "StartingValue": "710",
     "Distribution": "Uniform", "DistParms": ["0", "2000"]}

Records may be given as a list of mappings or as a JSON string holding such
a list.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from metagrowth.optimization.exceptions import ConfigurationError
from metagrowth.utils.logging import get_logger

logger = get_logger(__name__)

SUPPORTED_DISTRIBUTIONS = ("Uniform",)

# Record keys of the external parameter configuration format
PARAMETER_KEY = "Parameter"
STARTING_VALUE_KEY = "StartingValue"
DISTRIBUTION_KEY = "Distribution"
DIST_PARMS_KEY = "DistParms"

# Names of the non fixed-effect parameters
CORRELATION_PARM = "rho"
RANDOM_EFFECT_VARIANCE = "sigma2stratum"
RESIDUAL_VARIANCE = "sigma2_res"
REG_LAG_PARM = "reg_lag"


@dataclass(frozen=True)
class UniformPrior:
    """Bounded uniform prior on ``[lower, upper]``."""

    lower: float
    upper: float

    def __post_init__(self):
        if not (np.isfinite(self.lower) and np.isfinite(self.upper)):
            raise ConfigurationError(
                f"Uniform prior requires finite bounds, got [{self.lower}, {self.upper}]"
            )
        if self.lower >= self.upper:
            raise ConfigurationError(
                f"Invalid bounds: lower ({self.lower}) >= upper ({self.upper})"
            )

    @property
    def width(self) -> float:
        return self.upper - self.lower

    def contains(self, value: float) -> bool:
        return self.lower <= value <= self.upper

    def log_density(self, value: float) -> float:
        if self.contains(value):
            return -float(np.log(self.width))
        return -np.inf


@dataclass(frozen=True)
class ParameterEntry:
    """One named parameter with its starting value and prior."""

    name: str
    starting_value: float
    prior: UniformPrior
    distribution: str = "Uniform"

    def __post_init__(self):
        if self.distribution not in SUPPORTED_DISTRIBUTIONS:
            raise ConfigurationError(
                f"Unsupported prior distribution '{self.distribution}'. "
                f"Supported: {list(SUPPORTED_DISTRIBUTIONS)}",
                parameter=self.name,
            )
        if not np.isfinite(self.starting_value):
            raise ConfigurationError(
                f"Starting value of '{self.name}' is not finite",
                parameter=self.name,
            )
        if not self.prior.contains(self.starting_value):
            raise ConfigurationError(
                f"Starting value {self.starting_value} of '{self.name}' lies outside "
                f"its prior bounds [{self.prior.lower}, {self.prior.upper}]",
                parameter=self.name,
            )

    def to_record(self) -> dict[str, Any]:
        return {
            PARAMETER_KEY: self.name,
            STARTING_VALUE_KEY: repr(float(self.starting_value)),
            DISTRIBUTION_KEY: self.distribution,
            DIST_PARMS_KEY: [repr(float(self.prior.lower)), repr(float(self.prior.upper))],
        }


def convert_parameters(values: Sequence[Any]) -> dict[str, Any]:
    """Build one configuration record from ``[name, start, dist, [lo, hi]]``.

    Examples
    --------
    >>> convert_parameters(["b1", "710", "Uniform", ["0", "2000"]])
    {'Parameter': 'b1', 'StartingValue': '710', 'Distribution': 'Uniform', 'DistParms': ['0', '2000']}
    """
    if len(values) != 4:
        raise ConfigurationError(
            f"A parameter record needs 4 fields (name, start, distribution, bounds), "
            f"got {len(values)}"
        )
    name, start, distribution, dist_parms = values
    return {
        PARAMETER_KEY: name,
        STARTING_VALUE_KEY: start,
        DISTRIBUTION_KEY: distribution,
        DIST_PARMS_KEY: list(dist_parms),
    }


def parse_parameter_records(records: str | Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Normalize parameter records given as a list or a JSON string."""
    if isinstance(records, str):
        try:
            records = json.loads(records)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Malformed parameter JSON: {e}") from e

    if isinstance(records, Mapping) or not isinstance(records, Iterable):
        raise ConfigurationError(
            f"Parameter records must be a list of mappings, got {type(records).__name__}"
        )

    normalized = []
    for i, record in enumerate(records):
        if not isinstance(record, Mapping):
            raise ConfigurationError(f"Parameter record {i} is not a mapping: {record!r}")
        missing = [
            key
            for key in (PARAMETER_KEY, STARTING_VALUE_KEY, DISTRIBUTION_KEY, DIST_PARMS_KEY)
            if key not in record
        ]
        if missing:
            raise ConfigurationError(
                f"Parameter record {i} is missing keys {missing}",
                parameter=record.get(PARAMETER_KEY),
            )
        normalized.append(dict(record))
    return normalized


def _to_float(value: Any, what: str, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Cannot convert {what} '{value}' of '{name}' to a number", parameter=name
        ) from e


def _entry_from_record(record: Mapping[str, Any]) -> ParameterEntry:
    name = str(record[PARAMETER_KEY])
    dist_parms = record[DIST_PARMS_KEY]
    if isinstance(dist_parms, str) or len(dist_parms) != 2:
        raise ConfigurationError(
            f"DistParms of '{name}' must hold exactly [lower, upper], got {dist_parms!r}",
            parameter=name,
        )
    prior = UniformPrior(
        lower=_to_float(dist_parms[0], "lower bound", name),
        upper=_to_float(dist_parms[1], "upper bound", name),
    )
    return ParameterEntry(
        name=name,
        starting_value=_to_float(record[STARTING_VALUE_KEY], "starting value", name),
        prior=prior,
        distribution=str(record[DISTRIBUTION_KEY]),
    )


@dataclass(frozen=True)
class ParameterSpecification:
    """Ordered, immutable set of sampled parameters.

    Attributes
    ----------
    entries : tuple[ParameterEntry, ...]
        Parameters in sampling order
    fixed_effects : tuple[str, ...]
        Names of the growth-curve fixed effects (always first)
    """

    entries: tuple[ParameterEntry, ...]
    fixed_effects: tuple[str, ...] = ("b1", "b2", "b3")
    _index: Mapping[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        names = [entry.name for entry in self.entries]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate parameter names in {names}")
        if tuple(names[: len(self.fixed_effects)]) != tuple(self.fixed_effects):
            raise ConfigurationError(
                f"Fixed effects {list(self.fixed_effects)} must lead the specification, "
                f"got {names}"
            )
        object.__setattr__(self, "_index", {name: i for i, name in enumerate(names)})

    @classmethod
    def from_records(
        cls,
        records: str | Iterable[Mapping[str, Any]],
        expected_names: Sequence[str] | None = None,
        fixed_effects: Sequence[str] = ("b1", "b2", "b3"),
    ) -> ParameterSpecification:
        """Build a specification from configuration records.

        Parameters
        ----------
        records : str or iterable of mappings
            Records or a JSON string of records
        expected_names : sequence of str, optional
            Exact ordered names required by a growth-model variant

        Raises
        ------
        ConfigurationError
            If records are malformed, incomplete, misordered, out of bounds,
            or use an unsupported prior family.
        """
        entries = tuple(_entry_from_record(r) for r in parse_parameter_records(records))
        if expected_names is not None:
            names = tuple(entry.name for entry in entries)
            if names != tuple(expected_names):
                missing = [n for n in expected_names if n not in names]
                extra = [n for n in names if n not in expected_names]
                raise ConfigurationError(
                    f"Parameter records {list(names)} do not match the expected "
                    f"parameters {list(expected_names)}",
                    error_context={"missing": missing, "unexpected": extra},
                )
        return cls(entries=entries, fixed_effects=tuple(fixed_effects))

    def to_records(self) -> list[dict[str, Any]]:
        return [entry.to_record() for entry in self.entries]

    def to_json(self) -> str:
        return json.dumps(self.to_records())

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(entry.name for entry in self.entries)

    @property
    def n_params(self) -> int:
        return len(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, name: str) -> bool:
        return name in self._index

    def index_of(self, name: str) -> int:
        if name not in self._index:
            raise KeyError(
                f"Parameter '{name}' not in specification. Available: {list(self.names)}"
            )
        return self._index[name]

    def get(self, name: str) -> ParameterEntry:
        return self.entries[self.index_of(name)]

    def starting_values(self) -> np.ndarray:
        return np.array([entry.starting_value for entry in self.entries], dtype=float)

    def bounds_arrays(self) -> tuple[np.ndarray, np.ndarray]:
        lower = np.array([entry.prior.lower for entry in self.entries], dtype=float)
        upper = np.array([entry.prior.upper for entry in self.entries], dtype=float)
        return lower, upper

    def fixed_effect_indices(self) -> tuple[int, ...]:
        return tuple(self._index[name] for name in self.fixed_effects)

    def log_prior(self, vector: np.ndarray) -> float:
        """Sum of uniform log densities; ``-inf`` outside the bounds."""
        lower, upper = self.bounds_arrays()
        vector = np.asarray(vector, dtype=float)
        if vector.shape != lower.shape:
            raise ValueError(
                f"Expected a vector of {lower.size} parameters, got shape {vector.shape}"
            )
        if np.any(vector < lower) or np.any(vector > upper):
            return -np.inf
        return -float(np.sum(np.log(upper - lower)))

    def sample_prior(self, rng: np.random.Generator, n: int) -> np.ndarray:
        """Draw ``n`` vectors uniformly inside the prior bounds, shape ``(n, n_params)``."""
        lower, upper = self.bounds_arrays()
        return rng.uniform(lower, upper, size=(n, lower.size))

    def as_dict(self, vector: np.ndarray) -> dict[str, float]:
        vector = np.asarray(vector, dtype=float)
        if vector.size != self.n_params:
            raise ValueError(f"Expected {self.n_params} parameters, got {vector.size}")
        return {name: float(value) for name, value in zip(self.names, vector)}

    def with_starting_values(self, values: Mapping[str, float]) -> ParameterSpecification:
        """Return a copy whose starting values are replaced by ``values``."""
        unknown = [name for name in values if name not in self._index]
        if unknown:
            raise ConfigurationError(f"Unknown parameters {unknown}")
        entries = tuple(
            ParameterEntry(
                name=entry.name,
                starting_value=float(values.get(entry.name, entry.starting_value)),
                prior=entry.prior,
                distribution=entry.distribution,
            )
            for entry in self.entries
        )
        return ParameterSpecification(entries=entries, fixed_effects=self.fixed_effects)

    def __str__(self) -> str:
        lines = ["ParameterSpecification:"]
        for entry in self.entries:
            lines.append(
                f"  {entry.name}: start={entry.starting_value:.6g} "
                f"~ {entry.distribution}[{entry.prior.lower:.6g}, {entry.prior.upper:.6g}]"
            )
        return "\n".join(lines)
