"""Meta-Model Orchestration
========================

:class:`MetaModel` owns the simulator output of one stratum group, fits the
candidate growth-model variants with Metropolis-Hastings, keeps the best
fit according to the model-comparison statistic and answers prediction
queries.

Lifecycle::

    PRE_FIT --fit()--> FIT_COMPLETE

``add_script_result`` and any configuration change are only accepted before
the fit. A cancelled or aborted fit, or a fit in which no candidate
completes, leaves the model in ``PRE_FIT`` so it can be retried.

Examples
--------
>>> model = MetaModel("RE2", "FMU02664", "Artemis2009")
>>> model.add_script_result(30, script_result)
>>> model.fit("AliveVolume_AllSpecies")
>>> model.predict(90)
"""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from concurrent.futures import ProcessPoolExecutor
from enum import Enum
from typing import Any

import numpy as np
import pandas as pd

from metagrowth.config.parameter_space import (
    RANDOM_EFFECT_VARIANCE,
    RESIDUAL_VARIANCE,
    ParameterSpecification,
)
from metagrowth.core.models import GrowthModel, create_model
from metagrowth.data.script_result import ScriptResult
from metagrowth.data.stratification import (
    StratumDataBlock,
    collect_observations,
    observations_to_frame,
    stratify,
)
from metagrowth.optimization.exceptions import (
    ConfigurationError,
    ConvergenceFailure,
    DataError,
    FitCancelledError,
    MetaModelStateError,
    NumericalError,
)
from metagrowth.optimization.mcmc.config import MHSimulationParameters
from metagrowth.optimization.mcmc.diagnostics import (
    AcceptanceRateCriterion,
    ConvergenceCriterion,
    DevianceInformationCriterion,
    ModelComparisonStatistic,
    build_comparison_table,
    check_convergence,
    summarize_diagnostics,
)
from metagrowth.optimization.mcmc.results import FitResult, PosteriorSample, SamplingStats
from metagrowth.optimization.mcmc.sampler import run_mh_sampling
from metagrowth.utils.logging import get_logger, log_operation

logger = get_logger(__name__)

DEFAULT_VARIANTS = (
    "ChapmanRichardsDerivativeWithRandomEffect",
    "ChapmanRichardsDerivative",
)

MC_PREDICTION_COLUMNS = ("AgeYr", "Pred", "Variance", "Lower95", "Upper95", "NbDraws")


class MetaModelState(Enum):
    PRE_FIT = "pre_fit"
    FIT_COMPLETE = "fit_complete"


def _fit_candidate(
    implementation: str,
    blocks: Sequence[StratumDataBlock],
    specification: ParameterSpecification | None,
    config: MHSimulationParameters,
    variance_known: bool,
    regeneration_lag: bool,
    criterion: ConvergenceCriterion,
    statistic: ModelComparisonStatistic,
    cancel_event: threading.Event | None = None,
) -> FitResult:
    """Fit one variant; runs in-process or in a worker process.

    An iteration-cap failure is recorded on the returned result. Cancellation
    and persistent numerical failures propagate.
    """
    model = create_model(
        implementation, variance_known=variance_known, regeneration_lag=regeneration_lag
    )
    spec = specification or model.default_parameter_specification()
    if spec.names != model.parameter_names():
        raise ConfigurationError(
            f"Parameters {list(spec.names)} do not match {implementation} "
            f"parameters {list(model.parameter_names())}",
            parameter=implementation,
        )

    logger.info(f"Fitting {model.implementation_name}: {model.model_definition()}")
    try:
        sample, stats, likelihood = run_mh_sampling(
            model, blocks, spec, config, cancel_event=cancel_event
        )
    except ConvergenceFailure as e:
        logger.warning(f"{implementation} did not complete: {e}")
        stats = SamplingStats(
            final_state="FAILED",
            n_iterations=e.iteration_count or 0,
            n_accepted=e.n_accepted or 0,
            acceptance_rate=e.acceptance_rate or 0.0,
        )
        return FitResult(
            implementation=implementation,
            model=model,
            specification=spec,
            sample=None,
            stats=stats,
            converged=False,
            warnings=[str(e)],
            failure=str(e),
            seed=config.seed,
        )

    converged, warnings = check_convergence(sample, stats, criterion)
    stats.final_state = "CONVERGED" if converged else "FAILED"
    try:
        comparison = statistic.compute(sample, lambda theta: likelihood.evaluate(theta)[0])
    except NumericalError as e:
        logger.warning(f"Cannot compute {statistic.name} for {implementation}: {e}")
        comparison = None
        warnings.append(f"{statistic.name} unavailable: {e}")

    result = FitResult(
        implementation=implementation,
        model=model,
        specification=spec,
        sample=sample,
        stats=stats,
        converged=converged,
        warnings=warnings,
        comparison=comparison,
        seed=config.seed,
    )
    logger.info(summarize_diagnostics(result))
    return result


def select_best(results: Sequence[FitResult]) -> FitResult | None:
    """Pick the completed fit with the lowest comparison value.

    Converged fits are preferred; ties keep the candidate order.
    """
    completed = [r for r in results if r.completed]
    if not completed:
        return None

    def key(item):
        index, result = item
        value = result.comparison.value if result.comparison is not None else np.inf
        return (not result.converged, value, index)

    return min(enumerate(completed), key=key)[1]


class MetaModel:
    """Growth-curve meta-model of one stratum group.

    Parameters
    ----------
    stratum_group : str
        Label of the stratum group (e.g. ``"RE2"``)
    geo_domain : str
        Geographic domain label (e.g. a forest management unit)
    data_source : str
        Label of the simulator dataset the strata come from
    """

    def __init__(self, stratum_group: str, geo_domain: str = "", data_source: str = ""):
        self.stratum_group = stratum_group
        self.geo_domain = geo_domain
        self.data_source = data_source

        self.script_results: dict[int, ScriptResult] = {}
        self._mh_parameters = MHSimulationParameters()
        self._specifications: dict[str, ParameterSpecification] = {}
        self._convergence_criterion: ConvergenceCriterion = AcceptanceRateCriterion()
        self._comparison_statistic: ModelComparisonStatistic = DevianceInformationCriterion()

        self.state = MetaModelState.PRE_FIT
        self.output_type: str | None = None
        self.fit_options: dict[str, bool] = {"variance_known": False, "regeneration_lag": False}
        self.fit_results: list[FitResult] = []
        self.selected: FitResult | None = None
        self.comparison_table: pd.DataFrame | None = None
        self._blocks: tuple[StratumDataBlock, ...] = ()
        self._posterior_mean: np.ndarray | None = None
        self._known_variance = 0.0

    # ------------------------------------------------------------------
    # Pre-fit configuration
    # ------------------------------------------------------------------

    def _require_pre_fit(self, action: str) -> None:
        if self.state is not MetaModelState.PRE_FIT:
            raise MetaModelStateError(
                f"Cannot {action}: the meta-model is already fitted",
                error_context={"state": self.state.name},
            )

    def _require_fitted(self, action: str) -> None:
        if self.state is not MetaModelState.FIT_COMPLETE:
            raise MetaModelStateError(
                f"Cannot {action}: the meta-model has not been fitted",
                error_context={"state": self.state.name},
            )

    @property
    def mh_parameters(self) -> MHSimulationParameters:
        return self._mh_parameters

    @mh_parameters.setter
    def mh_parameters(self, parameters: MHSimulationParameters) -> None:
        self.set_mh_parameters(parameters)

    def set_mh_parameters(self, parameters: MHSimulationParameters) -> None:
        self._require_pre_fit("change the sampler configuration")
        self._mh_parameters = parameters

    @property
    def convergence_criterion(self) -> ConvergenceCriterion:
        return self._convergence_criterion

    @convergence_criterion.setter
    def convergence_criterion(self, criterion: ConvergenceCriterion) -> None:
        self._require_pre_fit("change the convergence criterion")
        self._convergence_criterion = criterion

    @property
    def comparison_statistic(self) -> ModelComparisonStatistic:
        return self._comparison_statistic

    @comparison_statistic.setter
    def comparison_statistic(self, statistic: ModelComparisonStatistic) -> None:
        self._require_pre_fit("change the comparison statistic")
        self._comparison_statistic = statistic

    def add_script_result(self, stratum_age: int, script_result: ScriptResult) -> None:
        """Register the output of one simulator run at ``stratum_age``.

        Raises
        ------
        DataError
            If the climate scenario or simulator differs from the results
            already added.
        """
        self._require_pre_fit("add a script result")
        for age, existing in self.script_results.items():
            if age != stratum_age and not existing.is_compatible(script_result):
                raise DataError(
                    "ScriptResult is incompatible with the results already added "
                    f"(climate '{script_result.climate_change_scenario}' vs "
                    f"'{existing.climate_change_scenario}', growth model "
                    f"'{script_result.growth_model}' vs '{existing.growth_model}')",
                    stratum=stratum_age,
                )
        if stratum_age in self.script_results:
            logger.warning(f"Replacing the script result of stratum age {stratum_age}")
        self.script_results[int(stratum_age)] = script_result

    def set_starting_values(
        self, implementation: str, records: str | Sequence[Mapping[str, Any]]
    ) -> ParameterSpecification:
        """Set the parameter records of one implementation.

        ``records`` is a list of parameter records or its JSON text. The
        parameter names must match one layout of the implementation.
        """
        self._require_pre_fit("change starting values")
        spec = ParameterSpecification.from_records(records)
        layouts = [
            create_model(implementation, variance_known=vk, regeneration_lag=lag).parameter_names()
            for vk in (False, True)
            for lag in (False, True)
        ]
        if spec.names not in layouts:
            raise ConfigurationError(
                f"Parameters {list(spec.names)} match no layout of {implementation}",
                parameter=implementation,
                error_context={"layouts": [list(layout) for layout in layouts]},
            )
        self._specifications[implementation] = spec
        return spec

    @property
    def specifications(self) -> dict[str, ParameterSpecification]:
        """User parameter specifications keyed by implementation name."""
        return dict(self._specifications)

    def get_parameter_specification(
        self,
        implementation: str,
        variance_known: bool = False,
        regeneration_lag: bool = False,
    ) -> ParameterSpecification:
        """User specification when it fits the layout, else the model default."""
        model = create_model(
            implementation, variance_known=variance_known, regeneration_lag=regeneration_lag
        )
        spec = self._specifications.get(implementation)
        if spec is not None and spec.names == model.parameter_names():
            return spec
        return model.default_parameter_specification()

    # ------------------------------------------------------------------
    # Data queries
    # ------------------------------------------------------------------

    def get_possible_output_types(self) -> list[str]:
        output_types = set()
        for result in self.script_results.values():
            output_types.update(result.get_output_types())
        return sorted(output_types)

    def convert_script_results_into_dataset(self) -> pd.DataFrame:
        """All output types of every stratum as one table."""
        return observations_to_frame(collect_observations(self.script_results))

    def get_final_dataset(self) -> pd.DataFrame:
        """Observations of the fitted output type."""
        self._require_fitted("get the final dataset")
        return observations_to_frame(collect_observations(self.script_results, self.output_type))

    # ------------------------------------------------------------------
    # Fit
    # ------------------------------------------------------------------

    def fit(
        self,
        output_type: str,
        variants: Sequence[str] | None = None,
        variance_known: bool = False,
        regeneration_lag: bool = False,
        n_jobs: int = 1,
        cancel_event: threading.Event | None = None,
    ) -> list[FitResult]:
        """Fit every candidate variant and keep the best one.

        Parameters
        ----------
        output_type : str
            Output type to fit (see :meth:`get_possible_output_types`)
        variants : sequence of str, optional
            Implementation names; defaults to the Chapman-Richards derivative
            with and without random effect
        variance_known : bool
            Use the simulator variances instead of sampling a residual variance
        regeneration_lag : bool
            Sample a regeneration-lag parameter
        n_jobs : int
            Number of worker processes; 1 fits the candidates in order,
            in-process
        cancel_event : threading.Event, optional
            Setting the event cancels the fit

        Returns
        -------
        list[FitResult]
            One result per candidate, in candidate order

        Raises
        ------
        ConfigurationError
            If the model is already fitted or the configuration is invalid
        DataError
            If the data cannot be stratified
        FitCancelledError
            If the fit is cancelled
        NumericalError
            If a candidate hits too many consecutive non-finite evaluations
        """
        if self.state is MetaModelState.FIT_COMPLETE:
            raise ConfigurationError(
                "The meta-model is already fitted; create a new one to refit",
                error_context={"output_type": self.output_type},
            )
        if not self.script_results:
            raise DataError("No script result has been added")
        self._mh_parameters.require_valid()

        variants = list(variants) if variants else list(DEFAULT_VARIANTS)
        blocks = stratify(self.script_results, output_type, variance_known=variance_known)
        specifications = [
            self.get_parameter_specification(v, variance_known, regeneration_lag)
            for v in variants
        ]
        base_seed = self._mh_parameters.seed
        configs = [
            self._mh_parameters.with_seed(None if base_seed is None else base_seed + i)
            for i in range(len(variants))
        ]
        tasks = [
            (
                variant,
                blocks,
                spec,
                config,
                variance_known,
                regeneration_lag,
                self._convergence_criterion,
                self._comparison_statistic,
            )
            for variant, spec, config in zip(variants, specifications, configs)
        ]

        with log_operation(f"Fitting {self.stratum_group} '{output_type}'", logger=logger):
            if n_jobs > 1 and len(tasks) > 1:
                results = self._fit_parallel(tasks, n_jobs, cancel_event)
            else:
                results = [_fit_candidate(*task, cancel_event=cancel_event) for task in tasks]

        self.fit_results = results
        selected = select_best(results)
        if selected is None:
            logger.error("No candidate completed; the meta-model remains unfitted")
            return results

        self._complete_fit(
            output_type,
            results,
            selected,
            blocks,
            {"variance_known": variance_known, "regeneration_lag": regeneration_lag},
        )
        return results

    @staticmethod
    def _fit_parallel(tasks, n_jobs: int, cancel_event: threading.Event | None) -> list[FitResult]:
        # Workers cannot observe the event; it is checked between completions.
        with ProcessPoolExecutor(max_workers=min(n_jobs, len(tasks))) as executor:
            futures = [executor.submit(_fit_candidate, *task) for task in tasks]
            results = []
            for future in futures:
                if cancel_event is not None and cancel_event.is_set():
                    for pending in futures:
                        pending.cancel()
                    raise FitCancelledError("Fit cancelled")
                results.append(future.result())
        return results

    def _complete_fit(
        self,
        output_type: str,
        results: list[FitResult],
        selected: FitResult,
        blocks: Sequence[StratumDataBlock],
        fit_options: dict[str, bool],
    ) -> None:
        """Install a fit and move to FIT_COMPLETE."""
        self.output_type = output_type
        self.fit_results = list(results)
        self.selected = selected
        self.fit_options = dict(fit_options)
        self._blocks = tuple(blocks)
        self._posterior_mean = selected.posterior_mean()
        self._posterior_mean.setflags(write=False)
        variances = np.concatenate([b.variances for b in self._blocks]) if self._blocks else []
        self._known_variance = float(np.mean(variances)) if len(variances) else 0.0
        self.comparison_table = build_comparison_table(self.fit_results)
        self.state = MetaModelState.FIT_COMPLETE
        logger.info(
            f"Selected {selected.implementation} "
            f"(converged={selected.converged}, {len(self.comparison_table)} candidates compared)"
        )

    # ------------------------------------------------------------------
    # Post-fit queries
    # ------------------------------------------------------------------

    @property
    def is_fitted(self) -> bool:
        return self.state is MetaModelState.FIT_COMPLETE

    def has_converged(self) -> bool:
        return self.selected is not None and self.selected.converged

    @property
    def model(self) -> GrowthModel:
        self._require_fitted("access the growth model")
        return self.selected.model

    @property
    def posterior_sample(self) -> PosteriorSample:
        self._require_fitted("access the posterior sample")
        return self.selected.sample

    def get_selected_implementation(self) -> str:
        self._require_fitted("get the selected implementation")
        return self.selected.implementation

    def get_model_comparison(self) -> pd.DataFrame:
        self._require_fitted("get the model comparison")
        return self.comparison_table.copy()

    def get_posterior_mean(self) -> dict[str, float]:
        self._require_fitted("get the posterior mean")
        return self.selected.specification.as_dict(self._posterior_mean)

    def predict(self, age, time_since_start=0.0):
        """Population curve at the posterior mean, random effect 0."""
        self._require_fitted("predict")
        return self.selected.model.predict(age, time_since_start, 0.0, self._posterior_mean)

    def monte_carlo_predict(
        self,
        ages: Sequence[float],
        random_effect_variance: float | None = None,
        residual_variance: float | None = None,
        seed: int | None = None,
        n_draws: int = 1000,
    ) -> pd.DataFrame:
        """Prediction distribution per age from posterior draws.

        Each draw picks a posterior vector uniformly, adds a random effect
        ``u ~ N(0, sigma2stratum)`` scaled by the curve's loading and an
        independent residual ``N(0, sigma2_res)``. ``None`` uses the
        sampled variance of the drawn vector; 0 switches the term off.
        When both overrides are 0 every draw is the posterior-mean curve,
        so ``Pred`` equals :meth:`predict` exactly.
        """
        self._require_fitted("predict")
        if n_draws < 1:
            raise ValueError(f"n_draws must be >= 1, got {n_draws}")
        ages = np.atleast_1d(np.asarray(ages, dtype=float))

        if random_effect_variance == 0 and residual_variance == 0:
            pred = np.atleast_1d(self.predict(ages))
            return pd.DataFrame(
                {
                    "AgeYr": ages,
                    "Pred": pred,
                    "Variance": np.zeros_like(pred),
                    "Lower95": pred,
                    "Upper95": pred,
                    "NbDraws": n_draws,
                },
                columns=list(MC_PREDICTION_COLUMNS),
            )

        model = self.selected.model
        draws = self.selected.sample.draws
        re_index = model.index_of(RANDOM_EFFECT_VARIANCE)
        res_index = model.index_of(RESIDUAL_VARIANCE)
        rng = np.random.default_rng(seed)
        picks = rng.integers(0, draws.shape[0], size=n_draws)

        predictions = np.empty((n_draws, ages.size))
        for k, pick in enumerate(picks):
            theta = draws[pick]
            value = model.predict(ages, 0.0, 0.0, theta)

            if random_effect_variance is not None:
                re_var = float(random_effect_variance)
            else:
                re_var = float(theta[re_index]) if re_index is not None else 0.0
            if re_var > 0.0:
                effect = rng.normal(0.0, np.sqrt(re_var))
                value = value + effect * model.random_effect_loading(ages, theta)

            if residual_variance is not None:
                res_var = float(residual_variance)
            elif res_index is not None:
                res_var = float(theta[res_index])
            else:
                res_var = self._known_variance
            if res_var > 0.0:
                value = value + rng.normal(0.0, np.sqrt(res_var), size=ages.size)

            predictions[k] = value

        lower, upper = np.quantile(predictions, [0.025, 0.975], axis=0)
        return pd.DataFrame(
            {
                "AgeYr": ages,
                "Pred": predictions.mean(axis=0),
                "Variance": predictions.var(axis=0, ddof=1) if n_draws > 1 else 0.0,
                "Lower95": lower,
                "Upper95": upper,
                "NbDraws": n_draws,
            },
            columns=list(MC_PREDICTION_COLUMNS),
        )

    def get_summary(self) -> str:
        """Multi-line text summary of the fitted meta-model."""
        self._require_fitted("summarize")
        selected = self.selected
        lines = [
            f"Meta-model {self.stratum_group} ({self.geo_domain}, {self.data_source})",
            f"Output type: {self.output_type}",
            f"Implementation: {selected.implementation}",
            f"Model definition: {selected.model.model_definition()}",
            f"Converged: {selected.converged}",
            f"Acceptance rate: {selected.stats.acceptance_rate:.3f}",
        ]
        if selected.comparison is not None:
            lines.append(
                f"{selected.comparison.statistic}: {selected.comparison.value:.4f} "
                f"(pD={selected.comparison.effective_parameters:.3f})"
            )
        lines.append("Parameter estimates:")
        for row in selected.summary_frame().itertuples(index=False):
            lines.append(
                f"  {row.Parameter:>15s}: {row.Mean:.6g} ± {row.Std:.3g} "
                f"[{row.Lower95:.6g}, {row.Upper95:.6g}]"
            )
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"MetaModel(stratum_group='{self.stratum_group}', geo_domain='{self.geo_domain}', "
            f"n_strata={len(self.script_results)}, state={self.state.name})"
        )
