"""Unit Tests for Convergence Diagnostics and Model Comparison
===========================================================

Test Coverage:
- DIC and WAIC against hand-computed values
- Convergence criteria (acceptance rate, Geweke, ESS, composite)
- Comparison table ordering
- Diagnostics reporting
"""

import numpy as np
import pytest
from scipy.special import logsumexp

from metagrowth.core.models import create_model
from metagrowth.optimization.mcmc.diagnostics import (
    COMPARISON_COLUMNS,
    WAIC,
    AcceptanceRateCriterion,
    ComparisonScore,
    CompositeCriterion,
    DevianceInformationCriterion,
    EffectiveSampleSizeCriterion,
    GewekeCriterion,
    build_comparison_table,
    compute_ess,
    create_diagnostics_dict,
    geweke_z_scores,
    get_comparison_statistic,
    summarize_diagnostics,
)
from metagrowth.optimization.mcmc.results import FitResult, PosteriorSample, SamplingStats


def make_sample(draws, log_likelihoods=None, per_stratum=None, names=("a", "b")):
    draws = np.asarray(draws, dtype=float)
    if log_likelihoods is None:
        log_likelihoods = np.zeros(draws.shape[0])
    sample = PosteriorSample(names)
    for i, theta in enumerate(draws):
        sample.append(
            theta, log_likelihoods[i], None if per_stratum is None else per_stratum[i]
        )
    return sample.freeze()


def make_result(implementation, value, converged=True, rate=0.3):
    model = create_model(implementation)
    return FitResult(
        implementation=implementation,
        model=model,
        specification=model.default_parameter_specification(),
        sample=None,
        stats=SamplingStats(acceptance_rate=rate),
        converged=converged,
        comparison=ComparisonScore("DIC", value, 3.0),
    )


# =============================================================================
# Comparison statistics
# =============================================================================


class TestDevianceInformationCriterion:
    def test_formula(self):
        log_likelihoods = np.array([-10.0, -12.0, -11.0, -13.0])
        sample = make_sample(np.arange(8.0).reshape(4, 2), log_likelihoods)
        score = DevianceInformationCriterion().compute(sample, lambda theta: -10.5)
        mean_deviance = np.mean(-2.0 * log_likelihoods)
        p_d = mean_deviance - 21.0
        assert score.statistic == "DIC"
        assert score.effective_parameters == pytest.approx(p_d)
        assert score.value == pytest.approx(mean_deviance + p_d)

    def test_evaluated_at_posterior_mean(self):
        seen = []
        sample = make_sample([[1.0, 2.0], [3.0, 4.0]], [-1.0, -1.0])
        DevianceInformationCriterion().compute(sample, lambda theta: seen.append(theta) or -1.0)
        np.testing.assert_allclose(seen[0], [2.0, 3.0])

    def test_requires_evaluator(self):
        sample = make_sample([[1.0, 2.0]])
        with pytest.raises(ValueError, match="log-likelihood evaluator"):
            DevianceInformationCriterion().compute(sample)


class TestWAIC:
    def test_formula(self, rng):
        per_stratum = rng.normal(-5.0, 0.3, size=(50, 3))
        sample = make_sample(
            rng.normal(size=(50, 2)), per_stratum.sum(axis=1), per_stratum
        )
        score = WAIC().compute(sample)
        lppd = np.sum(logsumexp(per_stratum, axis=0) - np.log(50))
        p_waic = np.sum(np.var(per_stratum, axis=0, ddof=1))
        assert score.value == pytest.approx(-2.0 * (lppd - p_waic))
        assert score.effective_parameters == pytest.approx(p_waic)

    def test_requires_per_stratum_values(self):
        with pytest.raises(ValueError, match="per-stratum"):
            WAIC().compute(make_sample([[1.0, 2.0], [2.0, 3.0]]))

    def test_lookup_by_name(self):
        assert isinstance(get_comparison_statistic("WAIC"), WAIC)
        assert isinstance(get_comparison_statistic("DIC"), DevianceInformationCriterion)
        with pytest.raises(ValueError, match="Unknown comparison statistic"):
            get_comparison_statistic("BIC")

    def test_score_round_trip(self):
        score = ComparisonScore("DIC", 12.5, 3.2, {"mean_deviance": 9.3})
        assert ComparisonScore.from_dict(score.to_dict()) == score


# =============================================================================
# Convergence criteria
# =============================================================================


class TestConvergenceCriteria:
    def test_acceptance_rate_inside_band(self):
        ok, warnings = AcceptanceRateCriterion().evaluate(None, SamplingStats(acceptance_rate=0.3))
        assert ok and warnings == []

    def test_acceptance_rate_outside_band(self):
        ok, warnings = AcceptanceRateCriterion().evaluate(None, SamplingStats(acceptance_rate=0.01))
        assert not ok
        assert "0.010" in warnings[0]

    def test_geweke_stationary_chain(self, rng):
        sample = make_sample(rng.normal(size=(2000, 2)))
        z = geweke_z_scores(sample.draws)
        assert np.all(np.abs(z) < 4.0)

    def test_geweke_detects_trend(self):
        trend = np.column_stack([np.linspace(0.0, 10.0, 500), np.linspace(0.0, 10.0, 500)])
        ok, warnings = GewekeCriterion().evaluate(make_sample(trend), SamplingStats())
        assert not ok
        assert "['a', 'b']" in warnings[0]

    def test_geweke_constant_chain(self):
        z = geweke_z_scores(np.ones((100, 2)))
        np.testing.assert_array_equal(z, [0.0, 0.0])

    def test_effective_sample_size(self, rng):
        sample = make_sample(rng.normal(size=(1000, 2)))
        ess = compute_ess(sample)
        assert set(ess) == {"a", "b"}
        assert all(v > 300 for v in ess.values())
        ok, _ = EffectiveSampleSizeCriterion(min_ess=100).evaluate(sample, SamplingStats())
        assert ok

    def test_composite_collects_every_warning(self):
        criterion = CompositeCriterion(
            criteria=[
                AcceptanceRateCriterion(min_acceptance=0.5),
                AcceptanceRateCriterion(max_acceptance=0.1),
            ]
        )
        ok, warnings = criterion.evaluate(None, SamplingStats(acceptance_rate=0.3))
        assert not ok
        assert len(warnings) == 2


# =============================================================================
# Comparison table and reporting
# =============================================================================


class TestComparisonTable:
    def test_sorted_ascending(self):
        results = [
            make_result("ChapmanRichardsDerivativeWithRandomEffect", 120.0),
            make_result("ChapmanRichardsDerivative", 100.0),
        ]
        table = build_comparison_table(results)
        assert tuple(table.columns) == COMPARISON_COLUMNS
        assert list(table["ModelImplementation"]) == [
            "ChapmanRichardsDerivative",
            "ChapmanRichardsDerivativeWithRandomEffect",
        ]

    def test_ties_keep_candidate_order(self):
        results = [
            make_result("ChapmanRichardsDerivativeWithRandomEffect", 100.0),
            make_result("ChapmanRichardsDerivative", 100.0),
        ]
        table = build_comparison_table(results)
        assert table["ModelImplementation"].iloc[0] == "ChapmanRichardsDerivativeWithRandomEffect"

    def test_results_without_score_are_skipped(self):
        failed = make_result("ChapmanRichardsDerivative", 0.0)
        failed.comparison = None
        table = build_comparison_table([failed])
        assert table.empty

    def test_diagnostics_dict(self):
        result = make_result("ChapmanRichardsDerivative", 100.0)
        diagnostics = create_diagnostics_dict(result, ess={"b1": 250.0, "b2": np.nan})
        assert diagnostics["converged"] is True
        assert diagnostics["min_ess"] == 250.0
        assert diagnostics["comparison"]["value"] == 100.0
        assert "DIC=100.000" in summarize_diagnostics(result)
