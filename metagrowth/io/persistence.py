"""Meta-model persistence.

A meta-model is stored as a single JSON document tagged with
``schema_version``. Older documents are upgraded on load through the
immutable :data:`MIGRATIONS` table, one version step at a time, before any
object is constructed.

Document layout (schema 2.0)::

    {
      "schema_version": [2, 0],
      "stratum_group": "RE2", "geo_domain": "...", "data_source": "...",
      "mh_parameters": {"sampler": {...}, "adaptation": {...}, "quadrature": {...}},
      "comparison_statistic": "DIC",
      "specifications": {"<implementation>": [<parameter records>]},
      "script_results": {"<stratum age>": {...}},
      "fit": null | {
        "output_type": "...", "fit_options": {...}, "selected": "<implementation>",
        "results": [{"implementation": ..., "specification": [...], "sample": {...}, ...}]
      }
    }
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from types import MappingProxyType
from typing import Any

import numpy as np

from metagrowth.config.parameter_space import ParameterSpecification
from metagrowth.core.metamodel import MetaModel
from metagrowth.core.models import create_model
from metagrowth.data.script_result import ScriptResult
from metagrowth.data.stratification import stratify
from metagrowth.optimization.exceptions import ConfigurationError
from metagrowth.optimization.mcmc.config import MHSimulationParameters
from metagrowth.optimization.mcmc.diagnostics import ComparisonScore, get_comparison_statistic
from metagrowth.optimization.mcmc.results import FitResult, PosteriorSample, SamplingStats
from metagrowth.utils.logging import get_logger, log_calls

logger = get_logger(__name__)

SCHEMA_VERSION = (2, 0)

# Implementation names of schema 1 documents
LEGACY_IMPLEMENTATION_NAMES = MappingProxyType(
    {
        "RichardsChapman": "ChapmanRichardsDerivative",
        "RichardsChapmanWithRandomEffect": "ChapmanRichardsDerivativeWithRandomEffect",
        "ChapmanRichardsDerivativeWithRandomEffect": "ChapmanRichardsDerivativeWithRandomEffect",
        "ChapmanRichardsDerivative": "ChapmanRichardsDerivative",
        "ModifiedChapmanRichardsDerivativeWithRandomEffect": (
            "ModifiedChapmanRichardsDerivativeWithRandomEffect"
        ),
        "ModifiedChapmanRichardsDerivative": "ModifiedChapmanRichardsDerivative",
    }
)

# Sampler keys of schema 1 documents
LEGACY_SAMPLER_KEYS = MappingProxyType(
    {
        "nbInitialGrid": "n_initial_grid",
        "nbBurnIn": "n_burn_in",
        "nbAcceptedRealizations": "n_accepted",
        "nbInternalIter": "max_iterations",
        "coefVar": "coef_var",
    }
)

# Top-level keys of schema 1 documents
LEGACY_DOCUMENT_KEYS = MappingProxyType(
    {
        "stratumGroup": "stratum_group",
        "geoDomain": "geo_domain",
        "dataSource": "data_source",
        "mhSimulationParameters": "mh_parameters",
        "scriptResults": "script_results",
        "parameterSpecifications": "specifications",
    }
)


def _rename_implementation(name: str) -> str:
    if name not in LEGACY_IMPLEMENTATION_NAMES:
        raise ConfigurationError(f"Unknown legacy implementation name '{name}'")
    return LEGACY_IMPLEMENTATION_NAMES[name]


def _migrate_1_0(document: dict[str, Any]) -> dict[str, Any]:
    """Schema 1.0 → 2.0: camelCase keys and legacy implementation names."""
    upgraded = {LEGACY_DOCUMENT_KEYS.get(k, k): v for k, v in document.items()}

    legacy_sampler = upgraded.get("mh_parameters") or {}
    upgraded["mh_parameters"] = {
        "sampler": {
            LEGACY_SAMPLER_KEYS[k]: v for k, v in legacy_sampler.items() if k in LEGACY_SAMPLER_KEYS
        }
    }
    upgraded["specifications"] = {
        _rename_implementation(k): v for k, v in (upgraded.get("specifications") or {}).items()
    }

    fit = upgraded.get("fit")
    if fit:
        fit = dict(fit)
        fit["selected"] = _rename_implementation(fit["selected"])
        fit["results"] = [
            {**r, "implementation": _rename_implementation(r["implementation"])}
            for r in fit.get("results", [])
        ]
        upgraded["fit"] = fit

    upgraded["schema_version"] = [2, 0]
    return upgraded


MIGRATIONS: MappingProxyType[tuple[int, int], Callable[[dict], dict]] = MappingProxyType(
    {(1, 0): _migrate_1_0}
)


@log_calls()
def migrate_document(document: dict[str, Any]) -> dict[str, Any]:
    """Upgrade a document to :data:`SCHEMA_VERSION`.

    Raises
    ------
    ConfigurationError
        If no migration exists for the document version.
    """
    version = tuple(document.get("schema_version", (1, 0)))
    while version != SCHEMA_VERSION:
        if version not in MIGRATIONS:
            raise ConfigurationError(
                f"Unsupported schema version {version}; expected {SCHEMA_VERSION}"
            )
        logger.info(f"Migrating meta-model document from schema {version}")
        document = MIGRATIONS[version](document)
        version = tuple(document["schema_version"])
    return document


def _convert_numpy(obj):
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.bool_):
        return bool(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _fit_result_to_dict(result: FitResult) -> dict[str, Any]:
    return {
        "implementation": result.implementation,
        "specification": result.specification.to_records(),
        "sample": result.sample.to_dict() if result.sample is not None else None,
        "stats": result.stats.to_dict(),
        "converged": result.converged,
        "warnings": list(result.warnings),
        "comparison": result.comparison.to_dict() if result.comparison is not None else None,
        "failure": result.failure,
        "seed": result.seed,
    }


def _fit_result_from_dict(data: dict[str, Any], fit_options: dict[str, bool]) -> FitResult:
    model = create_model(data["implementation"], **fit_options)
    sample = PosteriorSample.from_dict(data["sample"]) if data.get("sample") else None
    return FitResult(
        implementation=data["implementation"],
        model=model,
        specification=ParameterSpecification.from_records(
            data["specification"], expected_names=model.parameter_names()
        ),
        sample=sample,
        stats=SamplingStats.from_dict(data.get("stats", {})),
        converged=bool(data.get("converged", False)),
        warnings=list(data.get("warnings", [])),
        comparison=ComparisonScore.from_dict(data["comparison"]) if data.get("comparison") else None,
        failure=data.get("failure"),
        seed=data.get("seed"),
    )


def metamodel_to_dict(model: MetaModel) -> dict[str, Any]:
    document: dict[str, Any] = {
        "schema_version": list(SCHEMA_VERSION),
        "stratum_group": model.stratum_group,
        "geo_domain": model.geo_domain,
        "data_source": model.data_source,
        "mh_parameters": model.mh_parameters.to_dict(),
        "comparison_statistic": model.comparison_statistic.name,
        "specifications": {
            name: spec.to_records() for name, spec in model.specifications.items()
        },
        "script_results": {
            str(age): result.to_dict() for age, result in sorted(model.script_results.items())
        },
        "fit": None,
    }
    if model.is_fitted:
        document["fit"] = {
            "output_type": model.output_type,
            "fit_options": dict(model.fit_options),
            "selected": model.selected.implementation,
            "results": [_fit_result_to_dict(r) for r in model.fit_results],
        }
    return document


def metamodel_from_dict(document: dict[str, Any]) -> MetaModel:
    document = migrate_document(document)
    model = MetaModel(
        document["stratum_group"],
        document.get("geo_domain", ""),
        document.get("data_source", ""),
    )
    model.set_mh_parameters(MHSimulationParameters.from_dict(document.get("mh_parameters", {})))
    statistic = document.get("comparison_statistic")
    if statistic:
        model.comparison_statistic = get_comparison_statistic(statistic)
    for implementation, records in (document.get("specifications") or {}).items():
        model.set_starting_values(implementation, records)
    for age, result in sorted(
        (document.get("script_results") or {}).items(), key=lambda item: int(item[0])
    ):
        model.add_script_result(int(age), ScriptResult.from_dict(result))

    fit = document.get("fit")
    if fit:
        fit_options = {
            "variance_known": bool(fit.get("fit_options", {}).get("variance_known", False)),
            "regeneration_lag": bool(fit.get("fit_options", {}).get("regeneration_lag", False)),
        }
        results = [_fit_result_from_dict(r, fit_options) for r in fit["results"]]
        selected = next(
            (r for r in results if r.implementation == fit["selected"] and r.completed), None
        )
        if selected is None:
            raise ConfigurationError(
                f"Selected implementation '{fit['selected']}' has no stored posterior sample"
            )
        blocks = stratify(
            model.script_results, fit["output_type"], variance_known=fit_options["variance_known"]
        )
        model._complete_fit(fit["output_type"], results, selected, blocks, fit_options)
    return model


def save_metamodel(model: MetaModel, output_path: str | Path) -> Path:
    """Write ``model`` as a JSON document.

    Returns
    -------
    Path
        Path of the written file.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(metamodel_to_dict(model), f, indent=2, default=_convert_numpy)
    logger.info(f"Saved meta-model: {output_path}")
    return output_path


def load_metamodel(input_path: str | Path) -> MetaModel:
    """Read a meta-model written by :func:`save_metamodel` (any known schema).

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the path is not a regular ``.json`` file.
    ConfigurationError
        If the document cannot be migrated or parsed.
    """
    input_path = Path(input_path).resolve()
    if not input_path.exists():
        raise FileNotFoundError(f"Meta-model file not found: {input_path}")
    if input_path.suffix != ".json":
        raise ValueError(f"Expected .json file, got: {input_path.suffix}")
    if not input_path.is_file():
        raise ValueError(f"Path is not a regular file: {input_path}")

    with open(input_path, encoding="utf-8") as f:
        try:
            document = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Malformed meta-model document {input_path}: {e}") from e

    model = metamodel_from_dict(document)
    logger.info(f"Loaded meta-model {model.stratum_group} from {input_path}")
    return model
