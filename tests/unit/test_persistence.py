"""Unit Tests for Meta-Model Persistence and Exports
==================================================

Test Coverage:
- JSON round trip of fitted and unfitted meta-models
- Schema 1.0 migration
- Path validation and malformed documents
- CSV exports
"""

import json

import numpy as np
import pandas as pd
import pytest

from metagrowth.core.metamodel import MetaModelState
from metagrowth.data.stratification import FINAL_DATASET_COLUMNS
from metagrowth.io.exporters import export_all
from metagrowth.io.persistence import (
    SCHEMA_VERSION,
    load_metamodel,
    metamodel_from_dict,
    metamodel_to_dict,
    migrate_document,
    save_metamodel,
)
from metagrowth.optimization.exceptions import ConfigurationError


def to_schema_1(document):
    """Rewrite a current document in the schema 1.0 layout."""
    legacy_names = {
        "ChapmanRichardsDerivativeWithRandomEffect": "RichardsChapmanWithRandomEffect",
        "ChapmanRichardsDerivative": "RichardsChapman",
    }
    sampler = document["mh_parameters"]["sampler"]
    legacy = {
        "stratumGroup": document["stratum_group"],
        "geoDomain": document["geo_domain"],
        "dataSource": document["data_source"],
        "mhSimulationParameters": {
            "nbInitialGrid": sampler["n_initial_grid"],
            "nbBurnIn": sampler["n_burn_in"],
            "nbAcceptedRealizations": sampler["n_accepted"],
            "nbInternalIter": sampler["max_iterations"],
            "coefVar": sampler["coef_var"],
        },
        "scriptResults": document["script_results"],
        "parameterSpecifications": {
            legacy_names[k]: v for k, v in document["specifications"].items()
        },
        "fit": None,
    }
    if document["fit"]:
        fit = dict(document["fit"])
        fit["selected"] = legacy_names[fit["selected"]]
        fit["results"] = [
            {**r, "implementation": legacy_names[r["implementation"]]} for r in fit["results"]
        ]
        legacy["fit"] = fit
    return legacy


class TestRoundTrip:
    def test_fitted_model_predicts_identically(self, fitted_metamodel, temp_dir):
        path = save_metamodel(fitted_metamodel, temp_dir / "re2.json")
        restored = load_metamodel(path)

        assert restored.state is MetaModelState.FIT_COMPLETE
        assert restored.stratum_group == "RE2"
        assert restored.get_selected_implementation() == (
            fitted_metamodel.get_selected_implementation()
        )
        assert restored.predict(90) == fitted_metamodel.predict(90)
        pd.testing.assert_frame_equal(
            restored.monte_carlo_predict([30, 90], seed=11, n_draws=100),
            fitted_metamodel.monte_carlo_predict([30, 90], seed=11, n_draws=100),
        )
        pd.testing.assert_frame_equal(
            restored.get_model_comparison(), fitted_metamodel.get_model_comparison()
        )
        np.testing.assert_array_equal(
            restored.posterior_sample.draws, fitted_metamodel.posterior_sample.draws
        )

    def test_restored_model_keeps_configuration(self, fitted_metamodel, temp_dir):
        restored = load_metamodel(save_metamodel(fitted_metamodel, temp_dir / "re2.json"))
        assert restored.mh_parameters == fitted_metamodel.mh_parameters
        assert restored.specifications == fitted_metamodel.specifications
        assert len(restored.get_final_dataset()) == 30

    def test_unfitted_model(self, unfitted_metamodel):
        restored = metamodel_from_dict(metamodel_to_dict(unfitted_metamodel))
        assert restored.state is MetaModelState.PRE_FIT
        assert sorted(restored.script_results) == [10, 30, 50, 70, 90]
        assert restored.mh_parameters == unfitted_metamodel.mh_parameters

    def test_document_is_tagged(self, unfitted_metamodel):
        document = metamodel_to_dict(unfitted_metamodel)
        assert tuple(document["schema_version"]) == SCHEMA_VERSION
        assert document["stratum_group"] == "RE2"
        assert document["fit"] is None


class TestMigration:
    def test_schema_1_document(self, fitted_metamodel, temp_dir):
        path = save_metamodel(fitted_metamodel, temp_dir / "re2.json")
        legacy = to_schema_1(json.loads(path.read_text()))
        restored = metamodel_from_dict(legacy)
        assert restored.predict(90) == fitted_metamodel.predict(90)
        assert restored.mh_parameters.n_burn_in == fitted_metamodel.mh_parameters.n_burn_in
        assert set(restored.specifications) == set(fitted_metamodel.specifications)

    def test_migrated_keys(self):
        document = migrate_document(
            {
                "stratumGroup": "RE1",
                "mhSimulationParameters": {"nbBurnIn": 10, "coefVar": 0.05, "unknown": 1},
                "parameterSpecifications": {"RichardsChapman": []},
            }
        )
        assert document["schema_version"] == [2, 0]
        assert document["stratum_group"] == "RE1"
        assert document["mh_parameters"] == {"sampler": {"n_burn_in": 10, "coef_var": 0.05}}
        assert list(document["specifications"]) == ["ChapmanRichardsDerivative"]

    def test_unknown_legacy_implementation(self):
        with pytest.raises(ConfigurationError, match="legacy implementation"):
            migrate_document({"parameterSpecifications": {"Weibull": []}})

    def test_unsupported_version(self):
        with pytest.raises(ConfigurationError, match="Unsupported schema version"):
            migrate_document({"schema_version": [9, 0]})


class TestLoadErrors:
    def test_missing_file(self, temp_dir):
        with pytest.raises(FileNotFoundError):
            load_metamodel(temp_dir / "absent.json")

    def test_wrong_suffix(self, temp_dir):
        path = temp_dir / "model.yaml"
        path.write_text("{}")
        with pytest.raises(ValueError, match=".json"):
            load_metamodel(path)

    def test_malformed_json(self, temp_dir):
        path = temp_dir / "model.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError, match="Malformed"):
            load_metamodel(path)


class TestExports:
    def test_export_all(self, fitted_metamodel, temp_dir):
        paths = export_all(fitted_metamodel, temp_dir / "out")
        assert paths["final_dataset"].name == f"RE2_{fitted_metamodel.output_type}_dataset.csv"
        assert all(p.exists() for p in paths.values())

        dataset = pd.read_csv(paths["final_dataset"])
        assert tuple(dataset.columns) == FINAL_DATASET_COLUMNS
        assert len(dataset) == 30

        mcmc = pd.read_csv(paths["posterior_sample"])
        assert len(mcmc) == len(fitted_metamodel.posterior_sample)
        assert "LogLikelihood" in mcmc.columns

        comparison = pd.read_csv(paths["model_comparison"])
        assert list(comparison["ModelImplementation"]) == list(
            fitted_metamodel.get_model_comparison()["ModelImplementation"]
        )
