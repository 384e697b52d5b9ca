"""Unit Tests for Parameter Specifications
========================================

Test Coverage:
- Parsing of parameter records (list and JSON text)
- Rejection of out-of-bounds, unsupported and misordered records
- Uniform prior log density and prior sampling
- Record round trips
"""

import json

import numpy as np
import pytest

from metagrowth.config.parameter_space import (
    ParameterSpecification,
    UniformPrior,
    convert_parameters,
    parse_parameter_records,
)
from metagrowth.optimization.exceptions import ConfigurationError


@pytest.fixture
def records():
    return [
        convert_parameters(["b1", "710", "Uniform", ["0", "2000"]]),
        convert_parameters(["b2", "0.02", "Uniform", ["0.00001", "0.05"]]),
        convert_parameters(["b3", "2", "Uniform", ["0.8", "6"]]),
        convert_parameters(["rho", "0.92", "Uniform", ["0.80", "0.995"]]),
        convert_parameters(["sigma2_res", "250", "Uniform", ["0", "5000"]]),
    ]


class TestRecordParsing:
    def test_from_records(self, records):
        spec = ParameterSpecification.from_records(records)
        assert spec.names == ("b1", "b2", "b3", "rho", "sigma2_res")
        assert spec.get("b1").starting_value == 710.0
        assert spec.get("b2").prior == UniformPrior(0.00001, 0.05)
        assert spec.fixed_effect_indices() == (0, 1, 2)

    def test_from_json_text(self, records):
        spec = ParameterSpecification.from_records(json.dumps(records))
        assert spec.n_params == 5
        assert spec.index_of("rho") == 3

    def test_convert_parameters(self):
        record = convert_parameters(["b1", "710", "Uniform", ["0", "2000"]])
        assert record == {
            "Parameter": "b1",
            "StartingValue": "710",
            "Distribution": "Uniform",
            "DistParms": ["0", "2000"],
        }

    def test_convert_parameters_wrong_length(self):
        with pytest.raises(ConfigurationError, match="4 fields"):
            convert_parameters(["b1", "710", "Uniform"])

    def test_starting_value_outside_bounds(self, records):
        records[0]["StartingValue"] = "2500"
        with pytest.raises(ConfigurationError, match="outside") as exc_info:
            ParameterSpecification.from_records(records)
        assert exc_info.value.parameter == "b1"

    def test_unsupported_distribution(self, records):
        records[1]["Distribution"] = "Normal"
        with pytest.raises(ConfigurationError, match="Unsupported prior distribution"):
            ParameterSpecification.from_records(records)

    def test_inverted_bounds(self, records):
        records[2]["DistParms"] = ["6", "0.8"]
        with pytest.raises(ConfigurationError, match="Invalid bounds"):
            ParameterSpecification.from_records(records)

    def test_non_numeric_value(self, records):
        records[0]["StartingValue"] = "abc"
        with pytest.raises(ConfigurationError, match="Cannot convert"):
            ParameterSpecification.from_records(records)

    def test_missing_key(self, records):
        del records[3]["DistParms"]
        with pytest.raises(ConfigurationError, match="missing keys"):
            parse_parameter_records(records)

    def test_malformed_json(self):
        with pytest.raises(ConfigurationError, match="Malformed parameter JSON"):
            parse_parameter_records("[{")

    def test_mapping_is_not_a_record_list(self, records):
        with pytest.raises(ConfigurationError):
            parse_parameter_records(records[0])

    def test_expected_names_mismatch(self, records):
        with pytest.raises(ConfigurationError, match="do not match") as exc_info:
            ParameterSpecification.from_records(
                records, expected_names=("b1", "b2", "b3", "rho", "sigma2stratum", "sigma2_res")
            )
        assert exc_info.value.error_context["missing"] == ["sigma2stratum"]

    def test_fixed_effects_must_lead(self, records):
        with pytest.raises(ConfigurationError, match="must lead"):
            ParameterSpecification.from_records([records[3]] + records[:3] + records[4:])

    def test_duplicate_names(self, records):
        with pytest.raises(ConfigurationError, match="Duplicate"):
            ParameterSpecification.from_records(records + [records[-1]])


class TestPrior:
    def test_log_prior_inside_bounds(self, records):
        spec = ParameterSpecification.from_records(records)
        lower, upper = spec.bounds_arrays()
        expected = -np.sum(np.log(upper - lower))
        assert spec.log_prior(spec.starting_values()) == pytest.approx(expected)

    def test_log_prior_outside_bounds(self, records):
        spec = ParameterSpecification.from_records(records)
        theta = spec.starting_values()
        theta[3] = 0.999
        assert spec.log_prior(theta) == -np.inf

    def test_log_prior_wrong_shape(self, records):
        spec = ParameterSpecification.from_records(records)
        with pytest.raises(ValueError):
            spec.log_prior(np.zeros(3))

    def test_sample_prior_within_bounds(self, records, rng):
        spec = ParameterSpecification.from_records(records)
        draws = spec.sample_prior(rng, 500)
        lower, upper = spec.bounds_arrays()
        assert draws.shape == (500, 5)
        assert np.all(draws >= lower) and np.all(draws <= upper)


class TestRoundTrip:
    def test_json_round_trip(self, records):
        spec = ParameterSpecification.from_records(records)
        restored = ParameterSpecification.from_records(spec.to_json())
        assert restored == spec

    def test_with_starting_values(self, records):
        spec = ParameterSpecification.from_records(records)
        updated = spec.with_starting_values({"b1": 800.0})
        assert updated.get("b1").starting_value == 800.0
        assert spec.get("b1").starting_value == 710.0
        with pytest.raises(ConfigurationError):
            spec.with_starting_values({"b1": 5000.0})

    def test_as_dict(self, records):
        spec = ParameterSpecification.from_records(records)
        values = spec.as_dict(spec.starting_values())
        assert values["b1"] == 710.0
        assert list(values) == list(spec.names)
