"""Metropolis-Hastings sampler configuration.

This module provides the MHSimulationParameters dataclass for parsing and
validating sampler settings from the YAML/JSON fit configuration.

Example config::

    metagrowth:
      sampler:
        n_initial_grid: 10000
        n_burn_in: 10000
        n_accepted: 20000
        max_iterations: 2000000
        coef_var: 0.01
        seed: 42
      adaptation:
        interval: 100
        factor: 1.2
        target_acceptance: [0.2, 0.4]
      quadrature:
        n_points: 5
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from metagrowth.optimization.exceptions import ConfigurationError
from metagrowth.utils.logging import get_logger

logger = get_logger(__name__)

MAX_QUADRATURE_POINTS = 100


@dataclass
class MHSimulationParameters:
    """Configuration of one Metropolis-Hastings fit.

    Attributes
    ----------
    n_initial_grid : int
        Number of prior draws evaluated to seed the chain (0 disables the grid)
    n_burn_in : int
        Number of discarded MH steps, during which the proposal is adapted
    n_accepted : int
        Target number of accepted draws kept in the posterior sample
    max_iterations : int
        Safety cap on post-grid MH steps
    coef_var : float
        Coefficient of variation of the initial proposal
    adaptation_interval : int
        Number of burn-in steps between two proposal-scale updates
    adaptation_factor : float
        Multiplicative step of the proposal-scale update (> 1)
    target_acceptance_low, target_acceptance_high : float
        Acceptance-rate band targeted by the burn-in adaptation
    n_quadrature_points : int
        Gauss-Hermite nodes used to integrate the random effect
    max_consecutive_failures : int
        Consecutive non-finite evaluations tolerated before the fit aborts
    log_interval : int
        Number of steps between two progress records
    seed : int | None
        Seed of ``numpy.random.default_rng``
    """

    # Grid and sampling
    n_initial_grid: int = 10000
    n_burn_in: int = 10000
    n_accepted: int = 20000
    max_iterations: int = 2_000_000
    coef_var: float = 0.01

    # Adaptation
    adaptation_interval: int = 100
    adaptation_factor: float = 1.2
    target_acceptance_low: float = 0.2
    target_acceptance_high: float = 0.4

    # Likelihood
    n_quadrature_points: int = 5

    # Safety and progress
    max_consecutive_failures: int = 1000
    log_interval: int = 10000
    seed: int | None = None

    _validation_errors: list[str] = field(default_factory=list, repr=False, compare=False)

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> MHSimulationParameters:
        """Create parameters from a nested configuration dictionary.

        Parameters
        ----------
        config_dict : dict
            Mapping with optional ``sampler``, ``adaptation`` and
            ``quadrature`` sections. Flat keys matching the field names are
            also accepted.

        Returns
        -------
        MHSimulationParameters
            Parameters, with validation problems logged as warnings.
        """
        sampler = dict(config_dict.get("sampler", {}))
        adaptation = config_dict.get("adaptation", {})
        quadrature = config_dict.get("quadrature", {})

        # Flat layout
        for key in cls.__dataclass_fields__:
            if key in config_dict and not key.startswith("_"):
                sampler.setdefault(key, config_dict[key])

        band = adaptation.get("target_acceptance")
        if band is not None:
            if len(band) != 2:
                raise ConfigurationError(
                    f"adaptation.target_acceptance must be [low, high], got {band!r}"
                )
            low, high = band
        else:
            low = sampler.get("target_acceptance_low", 0.2)
            high = sampler.get("target_acceptance_high", 0.4)

        config = cls(
            n_initial_grid=_as_int(sampler.get("n_initial_grid", 10000)),
            n_burn_in=_as_int(sampler.get("n_burn_in", 10000)),
            n_accepted=_as_int(sampler.get("n_accepted", 20000)),
            max_iterations=_as_int(sampler.get("max_iterations", 2_000_000)),
            coef_var=float(sampler.get("coef_var", 0.01)),
            adaptation_interval=_as_int(
                adaptation.get("interval", sampler.get("adaptation_interval", 100))
            ),
            adaptation_factor=float(
                adaptation.get("factor", sampler.get("adaptation_factor", 1.2))
            ),
            target_acceptance_low=float(low),
            target_acceptance_high=float(high),
            n_quadrature_points=_as_int(
                quadrature.get("n_points", sampler.get("n_quadrature_points", 5))
            ),
            max_consecutive_failures=_as_int(sampler.get("max_consecutive_failures", 1000)),
            log_interval=_as_int(sampler.get("log_interval", 10000)),
            seed=sampler.get("seed"),
        )

        errors = config.validate()
        if errors:
            for error in errors:
                logger.warning(f"Sampler config validation: {error}")

        return config

    def validate(self) -> list[str]:
        """Validate configuration values.

        Returns
        -------
        list[str]
            List of validation error messages (empty if valid).
        """
        errors: list[str] = []

        if not isinstance(self.n_initial_grid, int) or self.n_initial_grid < 0:
            errors.append(f"n_initial_grid must be non-negative int, got: {self.n_initial_grid}")
        if not isinstance(self.n_burn_in, int) or self.n_burn_in < 0:
            errors.append(f"n_burn_in must be non-negative int, got: {self.n_burn_in}")
        if not isinstance(self.n_accepted, int) or self.n_accepted <= 0:
            errors.append(f"n_accepted must be positive int, got: {self.n_accepted}")
        if not isinstance(self.max_iterations, int) or self.max_iterations <= 0:
            errors.append(f"max_iterations must be positive int, got: {self.max_iterations}")
        elif isinstance(self.n_burn_in, int) and self.max_iterations <= self.n_burn_in:
            errors.append(
                f"max_iterations ({self.max_iterations}) must exceed n_burn_in ({self.n_burn_in})"
            )

        if not self.coef_var > 0.0:
            errors.append(f"coef_var must be positive, got: {self.coef_var}")

        if not isinstance(self.adaptation_interval, int) or self.adaptation_interval <= 0:
            errors.append(
                f"adaptation_interval must be positive int, got: {self.adaptation_interval}"
            )
        if not self.adaptation_factor > 1.0:
            errors.append(f"adaptation_factor must be > 1, got: {self.adaptation_factor}")
        if not 0.0 < self.target_acceptance_low < self.target_acceptance_high < 1.0:
            errors.append(
                "target acceptance band must satisfy 0 < low < high < 1, got: "
                f"[{self.target_acceptance_low}, {self.target_acceptance_high}]"
            )

        if (
            not isinstance(self.n_quadrature_points, int)
            or not 1 <= self.n_quadrature_points <= MAX_QUADRATURE_POINTS
        ):
            errors.append(
                f"n_quadrature_points must be in [1, {MAX_QUADRATURE_POINTS}], "
                f"got: {self.n_quadrature_points}"
            )
        if not isinstance(self.max_consecutive_failures, int) or self.max_consecutive_failures <= 0:
            errors.append(
                "max_consecutive_failures must be positive int, got: "
                f"{self.max_consecutive_failures}"
            )
        if not isinstance(self.log_interval, int) or self.log_interval <= 0:
            errors.append(f"log_interval must be positive int, got: {self.log_interval}")
        if self.seed is not None and (not isinstance(self.seed, int) or self.seed < 0):
            errors.append(f"seed must be None or a non-negative int, got: {self.seed}")

        self._validation_errors = errors
        return errors

    def is_valid(self) -> bool:
        """Check if configuration is valid.

        Returns
        -------
        bool
            True if configuration has no validation errors.
        """
        return len(self.validate()) == 0

    def require_valid(self) -> None:
        """Raise ConfigurationError listing every validation problem."""
        errors = self.validate()
        if errors:
            raise ConfigurationError(
                "Invalid sampler configuration: " + "; ".join(errors),
                error_context={"n_errors": len(errors)},
            )

    def with_seed(self, seed: int | None) -> MHSimulationParameters:
        return replace(self, seed=seed)

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to a nested dictionary.

        Returns
        -------
        dict
            Configuration in the layout accepted by :meth:`from_dict`.
        """
        return {
            "sampler": {
                "n_initial_grid": self.n_initial_grid,
                "n_burn_in": self.n_burn_in,
                "n_accepted": self.n_accepted,
                "max_iterations": self.max_iterations,
                "coef_var": self.coef_var,
                "max_consecutive_failures": self.max_consecutive_failures,
                "log_interval": self.log_interval,
                "seed": self.seed,
            },
            "adaptation": {
                "interval": self.adaptation_interval,
                "factor": self.adaptation_factor,
                "target_acceptance": [self.target_acceptance_low, self.target_acceptance_high],
            },
            "quadrature": {"n_points": self.n_quadrature_points},
        }


def _as_int(value: Any) -> Any:
    """Normalize possibly stringified ints; other values are left for validate()."""
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value
