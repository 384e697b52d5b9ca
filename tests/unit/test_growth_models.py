"""Unit Tests for Growth-Curve Models
===================================

Test Coverage:
- Curve values and linearity in the random effect
- Analytic gradients against central finite differences
- Parameter layouts of every flavour
- Registry and factory
"""

import numpy as np
import pytest

from metagrowth.core.models import (
    MODEL_REGISTRY,
    ChapmanRichardsDerivativeModel,
    ModifiedChapmanRichardsDerivativeModel,
    create_model,
    get_available_models,
    parse_implementation_name,
)
from metagrowth.optimization.exceptions import ConfigurationError

CR_THETA = np.array([710.0, 0.02, 2.0, 0.9, 100.0, 25.0])
MODIFIED_THETA = np.array([5000.0, 0.005, 0.2, 0.9, 250000.0, 2500.0])


def finite_difference_gradient(model, ages, theta, eps=1e-6):
    columns = []
    for j in range(3):
        step = eps * max(abs(theta[j]), 1.0)
        up, down = theta.copy(), theta.copy()
        up[j] += step
        down[j] -= step
        columns.append(
            (model.predict(ages, 0.0, 0.0, up) - model.predict(ages, 0.0, 0.0, down))
            / (2.0 * step)
        )
    return np.column_stack(columns)


# =============================================================================
# Curves
# =============================================================================


class TestChapmanRichardsDerivative:
    def test_predict_matches_formula(self):
        model = ChapmanRichardsDerivativeModel()
        t = 90.0
        expected = 710.0 * np.exp(-0.02 * t) * (1.0 - np.exp(-0.02 * t)) ** 2.0
        assert model.predict(t, 0.0, 0.0, CR_THETA) == pytest.approx(expected, rel=1e-12)

    def test_scalar_age_returns_float(self):
        model = ChapmanRichardsDerivativeModel()
        assert isinstance(model.predict(50, 0, 0.0, CR_THETA), float)
        assert model.predict([10, 50], 0, 0.0, CR_THETA).shape == (2,)

    def test_zero_age_gives_zero(self):
        model = ChapmanRichardsDerivativeModel()
        assert model.predict(0.0, 0.0, 0.0, CR_THETA) == 0.0

    def test_linear_in_random_effect(self):
        model = ChapmanRichardsDerivativeModel()
        ages = np.array([10.0, 40.0, 90.0, 140.0])
        loading = model.random_effect_loading(ages, CR_THETA)
        base = model.predict(ages, 0.0, 0.0, CR_THETA)
        shifted = model.predict(ages, 0.0, 7.5, CR_THETA)
        np.testing.assert_allclose(shifted, base + 7.5 * loading, rtol=1e-12)

    @pytest.mark.parametrize("ages", [[5.0, 30.0, 90.0], [150.0, 250.0]])
    def test_gradient_matches_finite_differences(self, ages):
        model = ChapmanRichardsDerivativeModel()
        ages = np.array(ages)
        analytic = model.gradient(ages, 0.0, 0.0, CR_THETA)
        numeric = finite_difference_gradient(model, ages, CR_THETA)
        assert analytic.shape == (ages.size, 3)
        np.testing.assert_allclose(analytic, numeric, rtol=1e-5, atol=1e-8)

    def test_gradient_finite_at_zero_age(self):
        model = ChapmanRichardsDerivativeModel()
        grad = model.gradient(np.array([0.0, 10.0]), 0.0, 0.0, CR_THETA)
        assert np.all(np.isfinite(grad))
        np.testing.assert_array_equal(grad[0], [0.0, 0.0, 0.0])


class TestModifiedChapmanRichardsDerivative:
    def test_predict_matches_formula(self):
        model = ModifiedChapmanRichardsDerivativeModel()
        t = 60.0
        expected = 5000.0 * np.exp(-0.005 * t) * (1.0 - np.exp(-0.2 * t))
        assert model.predict(t, 0.0, 0.0, MODIFIED_THETA) == pytest.approx(expected)

    def test_gradient_matches_finite_differences(self):
        model = ModifiedChapmanRichardsDerivativeModel()
        ages = np.array([1.0, 20.0, 80.0])
        np.testing.assert_allclose(
            model.gradient(ages, 0.0, 0.0, MODIFIED_THETA),
            finite_difference_gradient(model, ages, MODIFIED_THETA),
            rtol=1e-5,
            atol=1e-8,
        )


# =============================================================================
# Parameter layouts
# =============================================================================


class TestParameterLayout:
    @pytest.mark.parametrize(
        "implementation, variance_known, regeneration_lag, expected",
        [
            (
                "ChapmanRichardsDerivativeWithRandomEffect",
                False,
                False,
                ("b1", "b2", "b3", "rho", "sigma2stratum", "sigma2_res"),
            ),
            ("ChapmanRichardsDerivative", False, False, ("b1", "b2", "b3", "rho", "sigma2_res")),
            (
                "ChapmanRichardsDerivativeWithRandomEffect",
                True,
                False,
                ("b1", "b2", "b3", "rho", "sigma2stratum"),
            ),
            ("ChapmanRichardsDerivative", True, True, ("b1", "b2", "b3", "rho", "reg_lag")),
        ],
    )
    def test_names(self, implementation, variance_known, regeneration_lag, expected):
        model = create_model(
            implementation, variance_known=variance_known, regeneration_lag=regeneration_lag
        )
        assert model.parameter_names() == expected
        assert model.n_params == len(expected)

    def test_index_of_absent_parameter(self):
        model = create_model("ChapmanRichardsDerivative")
        assert model.index_of("sigma2stratum") is None
        assert model.index_of("rho") == 3

    def test_default_specification_matches_layout(self):
        for implementation in get_available_models():
            for lag in (False, True):
                model = create_model(implementation, regeneration_lag=lag)
                spec = model.default_parameter_specification()
                assert spec.names == model.parameter_names()

    def test_regeneration_lag_shifts_age(self):
        model = create_model("ChapmanRichardsDerivative", regeneration_lag=True)
        theta = np.array([710.0, 0.02, 2.0, 0.9, 25.0, 5.0])
        plain = create_model("ChapmanRichardsDerivative")
        assert model.predict(35.0, 0.0, 0.0, theta) == pytest.approx(
            plain.predict(30.0, 0.0, 0.0, theta[:5])
        )
        # ages below the lag are clamped at zero
        assert model.predict(3.0, 0.0, 0.0, theta) == 0.0

    def test_starting_distribution(self):
        model = create_model("ChapmanRichardsDerivativeWithRandomEffect")
        mean, variance = model.starting_distribution(0.1)
        spec = model.default_parameter_specification()
        np.testing.assert_allclose(mean, spec.starting_values())
        np.testing.assert_allclose(variance, (mean * 0.1) ** 2)


# =============================================================================
# Registry
# =============================================================================


class TestRegistry:
    def test_registry_is_read_only(self):
        with pytest.raises(TypeError):
            MODEL_REGISTRY["Other"] = ChapmanRichardsDerivativeModel

    def test_unknown_model_raises(self):
        with pytest.raises(ConfigurationError, match="Unknown growth model"):
            create_model("Weibull")

    def test_implementation_name_round_trip(self):
        for implementation in get_available_models():
            assert create_model(implementation).implementation_name == implementation

    def test_parse_implementation_name(self):
        assert parse_implementation_name("ChapmanRichardsDerivativeWithRandomEffect") == (
            "ChapmanRichardsDerivative",
            True,
        )
        assert parse_implementation_name("ChapmanRichardsDerivative") == (
            "ChapmanRichardsDerivative",
            False,
        )
