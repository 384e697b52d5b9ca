"""Fit Configuration Management
============================

YAML/JSON loading of meta-model fit settings. A configuration file holds a
single ``metagrowth`` section::

    metagrowth:
      variants:
        - ChapmanRichardsDerivativeWithRandomEffect
        - ChapmanRichardsDerivative
      variance_known: false
      regeneration_lag: false
      comparison: DIC
      convergence:
        criterion: acceptance_rate
        min_acceptance: 0.05
        max_acceptance: 0.75
      sampler:
        n_burn_in: 10000
        n_accepted: 20000
        seed: 42
      adaptation:
        target_acceptance: [0.2, 0.4]
      quadrature:
        n_points: 5
      parameters:
        ChapmanRichardsDerivativeWithRandomEffect:
          - {Parameter: b1, StartingValue: "710", Distribution: Uniform, DistParms: ["0", "2000"]}
          ...
      logging:
        level: INFO
        file: fit.log   # optional
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any

import yaml

from metagrowth.optimization.exceptions import ConfigurationError
from metagrowth.optimization.mcmc.config import MHSimulationParameters
from metagrowth.optimization.mcmc.diagnostics import (
    AcceptanceRateCriterion,
    CompositeCriterion,
    ConvergenceCriterion,
    EffectiveSampleSizeCriterion,
    GewekeCriterion,
    ModelComparisonStatistic,
    get_comparison_statistic,
)
from metagrowth.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

ROOT_KEY = "metagrowth"


def _default_config() -> dict[str, Any]:
    return {
        ROOT_KEY: {
            "variants": [
                "ChapmanRichardsDerivativeWithRandomEffect",
                "ChapmanRichardsDerivative",
            ],
            "variance_known": False,
            "regeneration_lag": False,
            "comparison": "DIC",
            "convergence": {"criterion": "acceptance_rate"},
            **MHSimulationParameters().to_dict(),
            "parameters": {},
        }
    }


class ConfigManager:
    """Configuration manager for meta-model fits.

    Usage:
        config_manager = ConfigManager('fit.yaml')
        mh_parameters = config_manager.get_mh_parameters()
    """

    def __init__(
        self,
        config_file: str | Path | None = None,
        config_override: dict[str, Any] | None = None,
    ):
        """Initialize configuration manager.

        Parameters
        ----------
        config_file : str or Path, optional
            Path to YAML/JSON configuration file
        config_override : dict, optional
            Configuration data used instead of loading a file
        """
        self.config_file = config_file
        self.config: dict[str, Any] = _default_config()

        if config_override is not None:
            self._merge(copy.deepcopy(config_override))
            logger.info("Configuration loaded from override data")
        elif config_file is not None:
            self.load_config()

        logging_section = self.section.get("logging") or {}
        if logging_section:
            configure_logging(
                logging_section.get("level", "INFO"), logging_section.get("file")
            )

    def load_config(self) -> None:
        """Load and parse the YAML/JSON configuration file.

        Raises
        ------
        ConfigurationError
            If the file is missing or cannot be parsed.
        """
        config_path = Path(self.config_file)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {self.config_file}")

        file_extension = config_path.suffix.lower()
        try:
            with open(config_path, encoding="utf-8") as f:
                if file_extension == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Cannot parse configuration file {config_path}: {e}"
            ) from e

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file {config_path} must hold a mapping, got {type(data).__name__}"
            )
        self._merge(data)
        logger.info(f"Configuration loaded from: {self.config_file}")

    def _merge(self, data: dict[str, Any]) -> None:
        section = data.get(ROOT_KEY, data)
        if not isinstance(section, dict):
            raise ConfigurationError(f"'{ROOT_KEY}' section must be a mapping")
        self.config[ROOT_KEY].update(section)

    @property
    def section(self) -> dict[str, Any]:
        return self.config[ROOT_KEY]

    def get_config(self) -> dict[str, Any]:
        """Get the current configuration dictionary."""
        return self.config

    def update_config(self, key: str, value: Any) -> None:
        """Update a configuration value using dot notation.

        Parameters
        ----------
        key : str
            Key below the ``metagrowth`` section (e.g. ``'sampler.seed'``)
        value : Any
            New value to set
        """
        keys = key.split(".")
        config_ref = self.section
        for k in keys[:-1]:
            if k not in config_ref:
                config_ref[k] = {}
            config_ref = config_ref[k]
        config_ref[keys[-1]] = value

    def get_mh_parameters(self) -> MHSimulationParameters:
        return MHSimulationParameters.from_dict(self.section)

    def get_variants(self) -> list[str]:
        variants = self.section.get("variants") or []
        if isinstance(variants, str):
            variants = [variants]
        return list(variants)

    def get_fit_options(self) -> dict[str, bool]:
        return {
            "variance_known": bool(self.section.get("variance_known", False)),
            "regeneration_lag": bool(self.section.get("regeneration_lag", False)),
        }

    def get_parameter_records(self) -> dict[str, Any]:
        """User parameter records keyed by implementation name."""
        return dict(self.section.get("parameters") or {})

    def get_comparison_statistic(self) -> ModelComparisonStatistic:
        try:
            return get_comparison_statistic(self.section.get("comparison", "DIC"))
        except ValueError as e:
            raise ConfigurationError(str(e), parameter="comparison") from e

    def get_convergence_criterion(self) -> ConvergenceCriterion:
        """Build the convergence criterion named in the ``convergence`` section.

        ``criterion`` may be a name or a list of names; a list builds a
        :class:`CompositeCriterion`.
        """
        settings = dict(self.section.get("convergence") or {})
        names = settings.pop("criterion", "acceptance_rate")
        if isinstance(names, str):
            return self._criterion(names, settings)
        return CompositeCriterion(criteria=[self._criterion(n, settings) for n in names])

    @staticmethod
    def _criterion(name: str, settings: dict[str, Any]) -> ConvergenceCriterion:
        if name == "acceptance_rate":
            return AcceptanceRateCriterion(
                min_acceptance=float(settings.get("min_acceptance", 0.05)),
                max_acceptance=float(settings.get("max_acceptance", 0.75)),
            )
        if name == "geweke":
            return GewekeCriterion(max_z=float(settings.get("max_z", 2.0)))
        if name == "effective_sample_size":
            return EffectiveSampleSizeCriterion(min_ess=float(settings.get("min_ess", 100.0)))
        raise ConfigurationError(
            f"Unknown convergence criterion '{name}'", parameter="convergence.criterion"
        )

    def apply_to(self, meta_model) -> None:
        """Push sampler settings and parameter records into a pre-fit meta-model."""
        meta_model.set_mh_parameters(self.get_mh_parameters())
        meta_model.convergence_criterion = self.get_convergence_criterion()
        meta_model.comparison_statistic = self.get_comparison_statistic()
        for implementation, records in self.get_parameter_records().items():
            meta_model.set_starting_values(implementation, records)


def load_fit_config(config_path: str | Path) -> ConfigManager:
    """Load a fit configuration file."""
    return ConfigManager(config_path)
