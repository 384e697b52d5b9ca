"""Simulator run records.

A :class:`ScriptResult` wraps the tabular output of one simulator run: one
row per (date, realization, output type) with the estimate and its Monte
Carlo variance. :class:`Observation` is the immutable record the meta-model
fits against once the realizations have been averaged.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from metagrowth.optimization.exceptions import DataError
from metagrowth.utils.logging import get_logger

logger = get_logger(__name__)

DATE_YR = "DateYr"
REALIZATION_ID = "RealizationID"
OUTPUT_TYPE = "OutputType"
ESTIMATE = "Estimate"
VARIANCE = "Variance"

DATASET_COLUMNS = (DATE_YR, REALIZATION_ID, OUTPUT_TYPE, ESTIMATE, VARIANCE)


@dataclass(frozen=True)
class Observation:
    """One averaged response of a stratum at a given date.

    ``age`` is the stratum age plus the time elapsed since the initial date
    of the run.
    """

    stratum_id: int
    stratum_age: int
    date_yr: int
    time_since_start: int
    age: float
    output_type: str
    value: float
    variance: float = 0.0
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)


class ScriptResult:
    """Output of one simulator run.

    Parameters
    ----------
    n_realizations : int
        Number of Monte Carlo realizations of the run
    n_plots : int
        Number of plots in the simulated stratum
    climate_change_scenario : str
        Climate scenario label
    growth_model : str
        Name of the simulator that produced the data
    dataset : pandas.DataFrame
        Records with at least the columns of :data:`DATASET_COLUMNS`
    """

    def __init__(
        self,
        n_realizations: int,
        n_plots: int,
        climate_change_scenario: str,
        growth_model: str,
        dataset: pd.DataFrame,
    ):
        missing = [col for col in DATASET_COLUMNS if col not in dataset.columns]
        if missing:
            raise DataError(f"ScriptResult dataset is missing columns {missing}")
        if n_realizations < 1:
            raise DataError(f"n_realizations must be >= 1, got {n_realizations}")

        self.n_realizations = int(n_realizations)
        self.n_plots = int(n_plots)
        self.climate_change_scenario = str(climate_change_scenario)
        self.growth_model = str(growth_model)
        self.dataset = dataset.reset_index(drop=True).copy()

    @staticmethod
    def create_empty_dataset() -> pd.DataFrame:
        return pd.DataFrame(
            {
                DATE_YR: pd.Series(dtype="int64"),
                REALIZATION_ID: pd.Series(dtype="int64"),
                OUTPUT_TYPE: pd.Series(dtype="object"),
                ESTIMATE: pd.Series(dtype="float64"),
                VARIANCE: pd.Series(dtype="float64"),
            }
        )

    @property
    def metadata_columns(self) -> list[str]:
        return [col for col in self.dataset.columns if col not in DATASET_COLUMNS]

    def get_output_types(self) -> list[str]:
        return sorted(self.dataset[OUTPUT_TYPE].astype(str).unique().tolist())

    def initial_date(self) -> int:
        if self.dataset.empty:
            raise DataError("ScriptResult dataset is empty")
        return int(self.dataset[DATE_YR].min())

    def is_compatible(self, other: ScriptResult) -> bool:
        return (
            self.climate_change_scenario == other.climate_change_scenario
            and self.growth_model == other.growth_model
        )

    def aggregate(self, output_type: str) -> pd.DataFrame:
        """Average the realizations of one output type per date.

        With several realizations the variance is the sample variance of the
        estimates divided by their count; with one it is the reported
        variance.
        """
        subset = self.dataset[self.dataset[OUTPUT_TYPE] == output_type]
        if subset.empty:
            return pd.DataFrame(columns=[DATE_YR, ESTIMATE, VARIANCE])

        rows = []
        for date, group in subset.groupby(DATE_YR, sort=True):
            estimates = group[ESTIMATE].to_numpy(dtype=float)
            if estimates.size > 1:
                variance = float(np.var(estimates, ddof=1)) / estimates.size
            else:
                variance = float(group[VARIANCE].fillna(0.0).iloc[0])
            rows.append(
                {DATE_YR: int(date), ESTIMATE: float(np.mean(estimates)), VARIANCE: variance}
            )
        return pd.DataFrame(rows, columns=[DATE_YR, ESTIMATE, VARIANCE])

    def to_observations(
        self, stratum_age: int, output_type: str, stratum_id: int | None = None
    ) -> list[Observation]:
        """Convert the averaged records of ``output_type`` into Observations."""
        aggregated = self.aggregate(output_type)
        if aggregated.empty:
            return []
        initial = self.initial_date()
        metadata = {
            "climate_change_scenario": self.climate_change_scenario,
            "growth_model": self.growth_model,
            "n_realizations": self.n_realizations,
            "n_plots": self.n_plots,
        }
        sid = stratum_age if stratum_id is None else stratum_id
        observations = []
        for row in aggregated.itertuples(index=False):
            date = int(getattr(row, DATE_YR))
            elapsed = date - initial
            observations.append(
                Observation(
                    stratum_id=int(sid),
                    stratum_age=int(stratum_age),
                    date_yr=date,
                    time_since_start=elapsed,
                    age=float(stratum_age + elapsed),
                    output_type=output_type,
                    value=float(getattr(row, ESTIMATE)),
                    variance=float(getattr(row, VARIANCE)),
                    metadata=metadata,
                )
            )
        return observations

    def to_dict(self) -> dict[str, Any]:
        return {
            "n_realizations": self.n_realizations,
            "n_plots": self.n_plots,
            "climate_change_scenario": self.climate_change_scenario,
            "growth_model": self.growth_model,
            "dataset": self.dataset.to_dict(orient="list"),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ScriptResult:
        return cls(
            n_realizations=data["n_realizations"],
            n_plots=data["n_plots"],
            climate_change_scenario=data["climate_change_scenario"],
            growth_model=data["growth_model"],
            dataset=pd.DataFrame(data["dataset"]),
        )

    def __repr__(self) -> str:
        return (
            f"ScriptResult(n_realizations={self.n_realizations}, n_plots={self.n_plots}, "
            f"climate='{self.climate_change_scenario}', growth_model='{self.growth_model}', "
            f"n_records={len(self.dataset)})"
        )
