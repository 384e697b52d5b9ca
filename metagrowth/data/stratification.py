"""Stratification of simulator output into likelihood units.

Every ScriptResult added to a meta-model becomes one stratum, identified by
the stand age it was added at. For a given output type, the observations of
a stratum form a :class:`StratumDataBlock`, the unit whose random effect is
integrated out of the likelihood.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import numpy as np
import pandas as pd

from metagrowth.data.script_result import Observation, ScriptResult
from metagrowth.optimization.exceptions import DataError
from metagrowth.utils.logging import get_logger

logger = get_logger(__name__)

STRATUM_AGE_YR = "StratumAgeYr"
DATE_YR = "DateYr"
TIME_SINCE_INITIAL_DATE_YR = "TimeSinceInitialDateYr"
AGE_YR = "AgeYr"
OUTPUT_TYPE = "OutputType"
ESTIMATE = "Estimate"
VARIANCE = "Variance"

FINAL_DATASET_COLUMNS = (
    STRATUM_AGE_YR,
    DATE_YR,
    TIME_SINCE_INITIAL_DATE_YR,
    AGE_YR,
    OUTPUT_TYPE,
    ESTIMATE,
    VARIANCE,
)


@dataclass(frozen=True, eq=False)
class StratumDataBlock:
    """Observations of one stratum for one output type, ordered by age.

    Attributes
    ----------
    stratum_id : int
        Stratum identifier (the stand age the run was added at)
    ages : np.ndarray
        Strictly increasing ages
    time_since_start : np.ndarray
        Years elapsed since the initial date of the run
    values : np.ndarray
        Averaged responses
    variances : np.ndarray
        Monte Carlo variances of the responses
    """

    stratum_id: int
    ages: np.ndarray
    time_since_start: np.ndarray
    values: np.ndarray
    variances: np.ndarray

    def __post_init__(self):
        for name in ("ages", "time_since_start", "values", "variances"):
            array = np.array(getattr(self, name), dtype=float)
            array.setflags(write=False)
            object.__setattr__(self, name, array)

        n = self.ages.size
        if not (self.time_since_start.size == self.values.size == self.variances.size == n):
            raise DataError("Block arrays have inconsistent lengths", stratum=self.stratum_id)
        if n < 2:
            raise DataError(
                f"Stratum has {n} observation(s); at least one repeated measurement is required",
                stratum=self.stratum_id,
            )
        if not np.all(np.isfinite(self.ages)) or not np.all(np.isfinite(self.values)):
            raise DataError("Non-finite age or response value", stratum=self.stratum_id)
        if np.any(np.diff(self.ages) <= 0):
            raise DataError("Ages must be strictly increasing", stratum=self.stratum_id)

    @property
    def n_obs(self) -> int:
        return int(self.ages.size)

    def lag_matrix(self) -> np.ndarray:
        """Absolute age differences ``|a_i - a_j|`` in years."""
        return np.abs(self.ages[:, None] - self.ages[None, :])

    @classmethod
    def from_observations(cls, observations: Iterable[Observation]) -> StratumDataBlock:
        ordered = sorted(observations, key=lambda obs: obs.age)
        if not ordered:
            raise DataError("Cannot build a block from no observations")
        stratum_ids = {obs.stratum_id for obs in ordered}
        if len(stratum_ids) != 1:
            raise DataError(f"Observations span several strata: {sorted(stratum_ids)}")
        return cls(
            stratum_id=ordered[0].stratum_id,
            ages=[obs.age for obs in ordered],
            time_since_start=[obs.time_since_start for obs in ordered],
            values=[obs.value for obs in ordered],
            variances=[0.0 if obs.variance is None else obs.variance for obs in ordered],
        )


def collect_observations(
    script_results: Mapping[int, ScriptResult], output_type: str | None = None
) -> list[Observation]:
    """Observations of every stratum, optionally restricted to one output type."""
    observations: list[Observation] = []
    for stratum_age in sorted(script_results):
        result = script_results[stratum_age]
        output_types = [output_type] if output_type is not None else result.get_output_types()
        for otype in output_types:
            observations.extend(result.to_observations(stratum_age, otype))
    return observations


def stratify(
    script_results: Mapping[int, ScriptResult],
    output_type: str,
    variance_known: bool = False,
) -> list[StratumDataBlock]:
    """Build one validated block per stratum for ``output_type``.

    Raises
    ------
    DataError
        If no stratum holds data for the output type, a block violates its
        invariants, or the variance is declared known but is not positive.
    """
    blocks = []
    for stratum_age in sorted(script_results):
        observations = script_results[stratum_age].to_observations(stratum_age, output_type)
        if not observations:
            logger.debug(f"Stratum {stratum_age} has no data for '{output_type}'")
            continue
        block = StratumDataBlock.from_observations(observations)
        if variance_known and np.any(~(block.variances > 0.0)):
            raise DataError(
                "Known-variance fitting requires strictly positive variances",
                stratum=block.stratum_id,
            )
        blocks.append(block)

    if not blocks:
        raise DataError(f"No data available for output type '{output_type}'")

    n_obs = sum(block.n_obs for block in blocks)
    logger.info(
        f"Stratified '{output_type}' into {len(blocks)} blocks ({n_obs} observations)"
    )
    return blocks


def observations_to_frame(observations: Iterable[Observation]) -> pd.DataFrame:
    rows = [
        {
            STRATUM_AGE_YR: obs.stratum_age,
            DATE_YR: obs.date_yr,
            TIME_SINCE_INITIAL_DATE_YR: obs.time_since_start,
            AGE_YR: obs.age,
            OUTPUT_TYPE: obs.output_type,
            ESTIMATE: obs.value,
            VARIANCE: obs.variance,
        }
        for obs in observations
    ]
    return pd.DataFrame(rows, columns=list(FINAL_DATASET_COLUMNS))
