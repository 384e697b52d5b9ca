"""Convergence diagnostics and model comparison.

Convergence criteria and model-comparison statistics are pluggable. The
defaults are :class:`AcceptanceRateCriterion` and
:class:`DevianceInformationCriterion`.

Model comparison statistics (lower is better):

- DIC: ``D̄ + p_D`` with ``D̄ = mean(-2·ll)`` and
  ``p_D = D̄ - (-2·ll(θ̄))``
- WAIC: ``-2·(lppd - p_waic)`` over the per-stratum log-likelihoods
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import arviz as az
import numpy as np
import pandas as pd
from scipy.special import logsumexp

from metagrowth.optimization.mcmc.results import FitResult, PosteriorSample, SamplingStats
from metagrowth.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MIN_ACCEPTANCE = 0.05
DEFAULT_MAX_ACCEPTANCE = 0.75
DEFAULT_MIN_ESS = 100.0
DEFAULT_GEWEKE_Z = 2.0

COMPARISON_COLUMNS = (
    "ModelImplementation",
    "Statistic",
    "Value",
    "pD",
    "Converged",
    "AcceptanceRate",
)


# =============================================================================
# Convergence criteria
# =============================================================================


class ConvergenceCriterion(Protocol):
    name: str

    def evaluate(self, sample: PosteriorSample, stats: SamplingStats) -> tuple[bool, list[str]]:
        ...


@dataclass
class AcceptanceRateCriterion:
    """Sampling-phase acceptance rate within ``[min_acceptance, max_acceptance]``."""

    min_acceptance: float = DEFAULT_MIN_ACCEPTANCE
    max_acceptance: float = DEFAULT_MAX_ACCEPTANCE
    name: str = "acceptance_rate"

    def evaluate(self, sample, stats):
        rate = stats.acceptance_rate
        if self.min_acceptance <= rate <= self.max_acceptance:
            return True, []
        return False, [
            f"Acceptance rate {rate:.3f} outside [{self.min_acceptance}, {self.max_acceptance}]"
        ]


def geweke_z_scores(
    draws: np.ndarray, first: float = 0.1, last: float = 0.5
) -> np.ndarray:
    """Geweke z-score per column comparing the first and last chain segments."""
    draws = np.asarray(draws, dtype=float)
    n = draws.shape[0]
    n_first = max(int(first * n), 2)
    n_last = max(int(last * n), 2)
    a = draws[:n_first]
    b = draws[n - n_last :]
    se = np.sqrt(a.var(axis=0, ddof=1) / a.shape[0] + b.var(axis=0, ddof=1) / b.shape[0])
    with np.errstate(divide="ignore", invalid="ignore"):
        z = (a.mean(axis=0) - b.mean(axis=0)) / se
    # constant traces compare equal
    return np.where(se > 0.0, z, 0.0)


@dataclass
class GewekeCriterion:
    """|z| of the first-10% / last-50% mean difference below ``max_z`` for every parameter."""

    max_z: float = DEFAULT_GEWEKE_Z
    first: float = 0.1
    last: float = 0.5
    name: str = "geweke"

    def evaluate(self, sample, stats):
        if len(sample) < 4:
            return False, [f"Too few draws ({len(sample)}) for the Geweke diagnostic"]
        z = geweke_z_scores(sample.draws, self.first, self.last)
        bad = [n for n, v in zip(sample.parameter_names, z) if abs(v) >= self.max_z]
        if bad:
            return False, [f"Geweke |z| >= {self.max_z} for parameters: {bad}"]
        return True, []


@dataclass
class EffectiveSampleSizeCriterion:
    """ArviZ bulk ESS of every parameter at least ``min_ess``."""

    min_ess: float = DEFAULT_MIN_ESS
    name: str = "effective_sample_size"

    def evaluate(self, sample, stats):
        ess = compute_ess(sample)
        values = [v for v in ess.values() if not np.isnan(v)]
        min_value = min(values, default=0.0)
        if min_value < self.min_ess:
            bad = [k for k, v in ess.items() if not v >= self.min_ess]
            return False, [f"ESS < {self.min_ess} for parameters: {bad} (min={min_value:.0f})"]
        return True, []


@dataclass
class CompositeCriterion:
    """Passes when every member criterion passes."""

    criteria: Sequence[ConvergenceCriterion] = field(default_factory=list)
    name: str = "composite"

    def evaluate(self, sample, stats):
        converged = True
        warnings: list[str] = []
        for criterion in self.criteria:
            ok, messages = criterion.evaluate(sample, stats)
            converged = converged and ok
            warnings.extend(messages)
        return converged, warnings


def compute_ess(sample: PosteriorSample) -> dict[str, float]:
    """Bulk effective sample size per parameter.

    Parameters
    ----------
    sample : PosteriorSample
        Single-chain posterior sample.

    Returns
    -------
    dict[str, float]
        ESS per parameter name.
    """
    ess_dict: dict[str, float] = {}
    try:
        idata = az.from_dict(posterior=sample.to_arviz_dict())
        ess = az.ess(idata, method="bulk")
        for name in sample.parameter_names:
            if hasattr(ess, name):
                ess_dict[name] = float(getattr(ess, name).values)
            else:
                ess_dict[name] = np.nan
    except Exception as e:
        logger.warning(f"ArviZ ESS computation failed: {e}, using simple estimate")
        # Fallback: assume moderate autocorrelation
        for name in sample.parameter_names:
            ess_dict[name] = float(len(sample) / 10)
    return ess_dict


def check_convergence(
    sample: PosteriorSample,
    stats: SamplingStats,
    criteria: ConvergenceCriterion | None = None,
) -> tuple[bool, list[str]]:
    """Apply a convergence criterion.

    Returns
    -------
    tuple[bool, list[str]]
        (converged, warnings)
    """
    criterion = criteria if criteria is not None else AcceptanceRateCriterion()
    converged, warnings = criterion.evaluate(sample, stats)
    for warning in warnings:
        logger.warning(f"Convergence ({criterion.name}): {warning}")
    return converged, warnings


# =============================================================================
# Model comparison
# =============================================================================


@dataclass(frozen=True)
class ComparisonScore:
    """Model-comparison statistic of one fit."""

    statistic: str
    value: float
    effective_parameters: float
    details: dict[str, float] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "statistic": self.statistic,
            "value": self.value,
            "effective_parameters": self.effective_parameters,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ComparisonScore:
        return cls(
            statistic=data["statistic"],
            value=float(data["value"]),
            effective_parameters=float(data["effective_parameters"]),
            details=dict(data.get("details", {})),
        )


class ModelComparisonStatistic(Protocol):
    name: str

    def compute(
        self,
        sample: PosteriorSample,
        log_likelihood_at: Callable[[np.ndarray], float] | None = None,
    ) -> ComparisonScore:
        ...


class DevianceInformationCriterion:
    """Deviance information criterion of Spiegelhalter et al. (2002)."""

    name = "DIC"

    def compute(self, sample, log_likelihood_at=None):
        if log_likelihood_at is None:
            raise ValueError("DIC requires a log-likelihood evaluator")
        mean_deviance = float(np.mean(-2.0 * sample.log_likelihoods))
        deviance_at_mean = -2.0 * float(log_likelihood_at(sample.mean()))
        p_d = mean_deviance - deviance_at_mean
        return ComparisonScore(
            statistic=self.name,
            value=mean_deviance + p_d,
            effective_parameters=p_d,
            details={"mean_deviance": mean_deviance, "deviance_at_mean": deviance_at_mean},
        )


class WAIC:
    """Widely applicable information criterion on per-stratum log-likelihoods."""

    name = "WAIC"

    def compute(self, sample, log_likelihood_at=None):
        ll = sample.per_stratum_log_likelihoods
        if ll.shape[1] == 0:
            raise ValueError("WAIC requires per-stratum log-likelihoods")
        n = ll.shape[0]
        lppd = float(np.sum(logsumexp(ll, axis=0) - np.log(n)))
        p_waic = float(np.sum(np.var(ll, axis=0, ddof=1))) if n > 1 else 0.0
        return ComparisonScore(
            statistic=self.name,
            value=-2.0 * (lppd - p_waic),
            effective_parameters=p_waic,
            details={"lppd": lppd},
        )


COMPARISON_STATISTICS = {
    DevianceInformationCriterion.name: DevianceInformationCriterion,
    WAIC.name: WAIC,
}


def get_comparison_statistic(name: str) -> ModelComparisonStatistic:
    if name not in COMPARISON_STATISTICS:
        raise ValueError(
            f"Unknown comparison statistic '{name}'. Available: {list(COMPARISON_STATISTICS)}"
        )
    return COMPARISON_STATISTICS[name]()


def build_comparison_table(results: Sequence[FitResult]) -> pd.DataFrame:
    """One row per completed fit, sorted ascending by statistic value."""
    rows = []
    for result in results:
        if result.comparison is None:
            continue
        rows.append(
            {
                "ModelImplementation": result.implementation,
                "Statistic": result.comparison.statistic,
                "Value": result.comparison.value,
                "pD": result.comparison.effective_parameters,
                "Converged": result.converged,
                "AcceptanceRate": result.stats.acceptance_rate,
            }
        )
    table = pd.DataFrame(rows, columns=list(COMPARISON_COLUMNS))
    return table.sort_values("Value", kind="mergesort").reset_index(drop=True)


# =============================================================================
# Reporting
# =============================================================================


def create_diagnostics_dict(
    result: FitResult,
    ess: dict[str, float] | None = None,
) -> dict[str, Any]:
    """Create diagnostics dictionary for JSON output."""
    stats = result.stats
    diagnostics: dict[str, Any] = {
        "implementation": result.implementation,
        "converged": result.converged,
        "final_state": stats.final_state,
        "warnings": list(result.warnings),
        "acceptance_rate": stats.acceptance_rate,
        "burn_in_acceptance_rate": stats.burn_in_acceptance_rate,
        "proposal_scale": stats.final_scale,
        "n_iterations": stats.n_iterations,
        "n_accepted": stats.n_accepted,
        "n_numerical_failures": stats.n_numerical_failures,
        "timing": {
            "grid_seconds": stats.grid_time,
            "burn_in_seconds": stats.burn_in_time,
            "sampling_seconds": stats.sampling_time,
            "total_seconds": stats.total_time,
        },
    }
    if result.comparison is not None:
        diagnostics["comparison"] = result.comparison.to_dict()
    if ess is not None:
        values = [v for v in ess.values() if not np.isnan(v)]
        diagnostics["min_ess"] = min(values) if values else np.nan
        diagnostics["per_parameter"] = {name: {"ess": v} for name, v in ess.items()}
    if result.failure:
        diagnostics["failure"] = result.failure
    return diagnostics


def summarize_diagnostics(result: FitResult) -> str:
    """Create a one-line diagnostics summary."""
    stats = result.stats
    text = (
        f"{result.implementation}: converged={result.converged}, "
        f"acceptance={stats.acceptance_rate:.3f}, draws={stats.n_accepted}, "
        f"steps={stats.n_iterations}"
    )
    if result.comparison is not None:
        text += f", {result.comparison.statistic}={result.comparison.value:.3f}"
    return text
