"""Unit Tests for Script Results and Stratification
=================================================

Test Coverage:
- Averaging of realizations and variance of the mean
- Observation ages and elapsed time
- Block invariants (repeated measurements, increasing ages, read-only)
- Stratification errors
"""

import numpy as np
import pandas as pd
import pytest

from metagrowth.data.script_result import DATASET_COLUMNS, ScriptResult
from metagrowth.data.stratification import (
    FINAL_DATASET_COLUMNS,
    StratumDataBlock,
    collect_observations,
    observations_to_frame,
    stratify,
)
from metagrowth.optimization.exceptions import DataError
from tests.factories.synthetic_data import OUTPUT_TYPE, make_script_result


@pytest.fixture
def two_realization_result():
    return make_script_result(
        dates=[2015, 2025, 2035],
        estimates=[[10.0, 12.0], [20.0, 26.0], [30.0, 30.0]],
    )


class TestScriptResult:
    def test_missing_columns(self):
        with pytest.raises(DataError, match="missing columns"):
            ScriptResult(1, 10, "NoChange", "Artemis2009", pd.DataFrame({"DateYr": [2015]}))

    def test_empty_dataset_has_required_columns(self):
        empty = ScriptResult.create_empty_dataset()
        assert tuple(empty.columns) == DATASET_COLUMNS

    def test_aggregate_averages_realizations(self, two_realization_result):
        aggregated = two_realization_result.aggregate(OUTPUT_TYPE)
        np.testing.assert_allclose(aggregated["Estimate"], [11.0, 23.0, 30.0])
        # sample variance of the realizations divided by their count
        np.testing.assert_allclose(aggregated["Variance"], [1.0, 9.0, 0.0])

    def test_single_realization_keeps_reported_variance(self):
        result = make_script_result([2015, 2025], [5.0, 8.0], variances=[2.0, 3.0])
        np.testing.assert_allclose(result.aggregate(OUTPUT_TYPE)["Variance"], [2.0, 3.0])

    def test_observation_ages(self, two_realization_result):
        observations = two_realization_result.to_observations(30, OUTPUT_TYPE)
        assert [obs.age for obs in observations] == [30.0, 40.0, 50.0]
        assert [obs.time_since_start for obs in observations] == [0, 10, 20]
        assert all(obs.stratum_id == 30 for obs in observations)
        assert observations[0].metadata["growth_model"] == "Artemis2009"

    def test_output_types_and_compatibility(self, two_realization_result):
        other = make_script_result([2015], [1.0], output_type="StemDensity")
        assert two_realization_result.get_output_types() == [OUTPUT_TYPE]
        assert two_realization_result.is_compatible(other)
        assert not two_realization_result.is_compatible(
            make_script_result([2015], [1.0], climate_change_scenario="RCP4.5")
        )

    def test_dict_round_trip(self, two_realization_result):
        restored = ScriptResult.from_dict(two_realization_result.to_dict())
        pd.testing.assert_frame_equal(restored.dataset, two_realization_result.dataset)
        assert restored.n_realizations == 2


class TestStratumDataBlock:
    def test_requires_repeated_measurements(self):
        with pytest.raises(DataError, match="at least one repeated measurement"):
            StratumDataBlock(10, [10.0], [0.0], [5.0], [0.0])

    def test_requires_increasing_ages(self):
        with pytest.raises(DataError, match="strictly increasing"):
            StratumDataBlock(10, [10.0, 10.0], [0.0, 0.0], [5.0, 6.0], [0.0, 0.0])

    def test_rejects_non_finite_values(self):
        with pytest.raises(DataError, match="Non-finite"):
            StratumDataBlock(10, [10.0, 20.0], [0.0, 10.0], [5.0, np.nan], [0.0, 0.0])

    def test_arrays_are_read_only(self):
        block = StratumDataBlock(10, [10.0, 20.0], [0.0, 10.0], [5.0, 6.0], [1.0, 1.0])
        with pytest.raises(ValueError):
            block.values[0] = 1.0

    def test_lag_matrix(self):
        block = StratumDataBlock(10, [10.0, 20.0, 35.0], [0, 10, 25], [1, 2, 3], [0, 0, 0])
        np.testing.assert_array_equal(
            block.lag_matrix(), [[0, 10, 25], [10, 0, 15], [25, 15, 0]]
        )


class TestStratify:
    def test_one_block_per_stratum(self, synthetic_data):
        blocks = stratify(synthetic_data.script_results, OUTPUT_TYPE)
        assert [b.stratum_id for b in blocks] == [10, 30, 50, 70, 90]
        assert all(b.n_obs == 6 for b in blocks)
        np.testing.assert_array_equal(blocks[1].ages, [30, 40, 50, 60, 70, 80])

    def test_unknown_output_type(self, synthetic_data):
        with pytest.raises(DataError, match="No data available"):
            stratify(synthetic_data.script_results, "BasalArea")

    def test_single_date_stratum(self):
        results = {10: make_script_result([2015], [5.0])}
        with pytest.raises(DataError) as exc_info:
            stratify(results, OUTPUT_TYPE)
        assert exc_info.value.stratum == 10

    def test_known_variance_must_be_positive(self, two_realization_result):
        results = {30: two_realization_result}
        stratify(results, OUTPUT_TYPE)
        with pytest.raises(DataError, match="strictly positive"):
            stratify(results, OUTPUT_TYPE, variance_known=True)

    def test_observations_frame(self, synthetic_data):
        frame = observations_to_frame(
            collect_observations(synthetic_data.script_results, OUTPUT_TYPE)
        )
        assert tuple(frame.columns) == FINAL_DATASET_COLUMNS
        assert len(frame) == 30
        assert frame["AgeYr"].max() == 140.0
