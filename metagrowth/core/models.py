"""Growth-Curve Models for Meta-Model Fitting
==========================================

Object-oriented interface to the parametric growth curves fitted against
simulator output. Each variant is an independent strategy implementing the
:class:`GrowthModel` contract; the sampler and diagnostics only rely on that
contract.

Chapman-Richards derivative form:

    y(t) = (b1 + r) · exp(-b2·t) · (1 - exp(-b2·t))^b3

Modified form (stem density):

    y(t) = (b1 + r) · exp(-b2·t) · (1 - exp(-b3·t))

where t is the stand age in years (shifted by the regeneration lag when
that nuisance parameter is enabled) and r is the stratum random effect.

Sampled parameter vector, in order:
- b1, b2, b3: fixed effects
- rho: AR(1) correlation between repeated measurements of a stratum
- sigma2stratum: random-effect variance (mixed variants only)
- sigma2_res: residual variance (only when the variance is not known)
- reg_lag: regeneration lag in years (only when enabled)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from types import MappingProxyType

import numpy as np

from metagrowth.config.parameter_space import (
    CORRELATION_PARM,
    RANDOM_EFFECT_VARIANCE,
    REG_LAG_PARM,
    RESIDUAL_VARIANCE,
    ParameterSpecification,
    convert_parameters,
)
from metagrowth.optimization.exceptions import ConfigurationError
from metagrowth.utils.logging import get_logger

logger = get_logger(__name__)

FIXED_EFFECTS = ("b1", "b2", "b3")

_CORRELATION_DEFAULT = ("0.92", ("0.80", "0.995"))
_REG_LAG_DEFAULT = ("5", ("0", "15"))


class GrowthModel(ABC):
    """Abstract base class for all growth-curve variants.

    The parameter layout is computed once in ``__init__`` and never changes
    afterwards.

    Args:
        random_effect: Whether strata share a Gaussian random effect on b1
        variance_known: Whether the residual variance is supplied by the
            simulator instead of being sampled
        regeneration_lag: Whether a regeneration-lag parameter is sampled
    """

    name: str = ""

    def __init__(
        self,
        random_effect: bool = True,
        variance_known: bool = False,
        regeneration_lag: bool = False,
    ):
        self.random_effect = bool(random_effect)
        self.variance_known = bool(variance_known)
        self.regeneration_lag = bool(regeneration_lag)

        names = list(FIXED_EFFECTS) + [CORRELATION_PARM]
        if self.random_effect:
            names.append(RANDOM_EFFECT_VARIANCE)
        if not self.variance_known:
            names.append(RESIDUAL_VARIANCE)
        if self.regeneration_lag:
            names.append(REG_LAG_PARM)
        self._parameter_names = tuple(names)
        self._index = {n: i for i, n in enumerate(names)}

    @property
    def implementation_name(self) -> str:
        """Name of the variant including its random-effect flavour."""
        suffix = "WithRandomEffect" if self.random_effect else ""
        return f"{self.name}{suffix}"

    @abstractmethod
    def _curve(self, t: np.ndarray, b: np.ndarray, r: float) -> np.ndarray:
        """Mean response at effective age ``t``."""

    @abstractmethod
    def _curve_gradient(self, t: np.ndarray, b: np.ndarray, r: float) -> np.ndarray:
        """Partial derivatives w.r.t. (b1, b2, b3), shape ``(len(t), 3)``."""

    @abstractmethod
    def model_definition(self) -> str:
        """Human-readable formula."""

    @abstractmethod
    def _default_records(self) -> dict[str, tuple[str, tuple[str, str]]]:
        """Default (start, (lower, upper)) text values per parameter name."""

    def parameter_names(self) -> tuple[str, ...]:
        return self._parameter_names

    @property
    def n_params(self) -> int:
        return len(self._parameter_names)

    def index_of(self, name: str) -> int | None:
        return self._index.get(name)

    def is_intercept_model(self) -> bool:
        return False

    def effective_age(self, age, parameters: np.ndarray) -> np.ndarray:
        t = np.asarray(age, dtype=float)
        if self.regeneration_lag:
            lag = float(parameters[self._index[REG_LAG_PARM]])
            t = np.maximum(t - lag, 0.0)
        return t

    def predict(self, age, time_since_start, random_effect: float, parameters: np.ndarray):
        """Mean response for the given ages.

        ``time_since_start`` is accepted so that every variant shares the
        same call signature; the supplied variants depend on age only.
        Returns a float for scalar ``age`` and an array otherwise.
        """
        parameters = np.asarray(parameters, dtype=float)
        t = self.effective_age(age, parameters)
        pred = self._curve(np.atleast_1d(t), parameters[:3], float(random_effect))
        if np.ndim(age) == 0:
            return float(pred[0])
        return pred

    def gradient(self, age, time_since_start, random_effect: float, parameters: np.ndarray) -> np.ndarray:
        """Analytic gradient w.r.t. the fixed effects, shape ``(n_ages, 3)``."""
        parameters = np.asarray(parameters, dtype=float)
        t = np.atleast_1d(self.effective_age(age, parameters))
        return self._curve_gradient(t, parameters[:3], float(random_effect))

    def random_effect_loading(self, age, parameters: np.ndarray) -> np.ndarray:
        """Derivative of the response w.r.t. the random effect.

        The response is linear in the random effect, so the mean at random
        effect ``u`` is ``predict(age, ., 0) + u * loading``.
        """
        parameters = np.asarray(parameters, dtype=float)
        t = np.atleast_1d(self.effective_age(age, parameters))
        return self._curve(t, parameters[:3], 1.0) - self._curve(t, parameters[:3], 0.0)

    def default_parameter_specification(self) -> ParameterSpecification:
        defaults = self._default_records()
        records = [
            convert_parameters([name, defaults[name][0], "Uniform", list(defaults[name][1])])
            for name in self._parameter_names
        ]
        return ParameterSpecification.from_records(
            records, expected_names=self._parameter_names, fixed_effects=FIXED_EFFECTS
        )

    def starting_distribution(
        self, coef_var: float, specification: ParameterSpecification | None = None
    ) -> tuple[np.ndarray, np.ndarray]:
        """Diagonal Gaussian around the starting values.

        Returns the mean (starting values) and the diagonal variance
        ``(mean * coef_var) ** 2``.
        """
        spec = specification or self.default_parameter_specification()
        mean = spec.starting_values()
        variance = (mean * coef_var) ** 2
        return mean, variance

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(random_effect={self.random_effect}, "
            f"variance_known={self.variance_known}, "
            f"regeneration_lag={self.regeneration_lag})"
        )


class ChapmanRichardsDerivativeModel(GrowthModel):
    """Derivative form of the Chapman-Richards model.

    y = (b1 + r) · exp(-b2·t) · (1 - exp(-b2·t))^b3
    """

    name = "ChapmanRichardsDerivative"

    def _curve(self, t, b, r):
        b1, b2, b3 = b
        exp = np.exp(-b2 * t)
        return (b1 + r) * exp * np.power(1.0 - exp, b3)

    def _curve_gradient(self, t, b, r):
        b1, b2, b3 = b
        exp = np.exp(-b2 * t)
        root = 1.0 - exp
        root_b3 = np.power(root, b3)
        with np.errstate(divide="ignore", invalid="ignore"):
            d_b2 = -t * (b1 + r) * exp * root_b3 + (b1 + r) * exp * b3 * np.power(
                root, b3 - 1.0
            ) * exp * t
            d_b3 = (b1 + r) * exp * root_b3 * np.log(root)
        # the limits at t = 0 are zero
        d_b2 = np.where(root > 0.0, d_b2, 0.0)
        d_b3 = np.where(root > 0.0, d_b3, 0.0)
        return np.column_stack([exp * root_b3, d_b2, d_b3])

    def model_definition(self) -> str:
        return "y ~ b1*exp(-b2*t)*(1-exp(-b2*t))^b3"

    def _default_records(self):
        return {
            "b1": ("1000", ("0", "2000")),
            "b2": ("0.02", ("0.00001", "0.05")),
            "b3": ("2", ("0.8", "6")),
            CORRELATION_PARM: _CORRELATION_DEFAULT,
            RANDOM_EFFECT_VARIANCE: ("500", ("0", "15000")),
            RESIDUAL_VARIANCE: ("250", ("0", "5000")),
            REG_LAG_PARM: _REG_LAG_DEFAULT,
        }


class ModifiedChapmanRichardsDerivativeModel(GrowthModel):
    """A modified Chapman-Richards derivative model meant for stem density.

    y = (b1 + r) · exp(-b2·t) · (1 - exp(-b3·t))
    """

    name = "ModifiedChapmanRichardsDerivative"

    def _curve(self, t, b, r):
        b1, b2, b3 = b
        return (b1 + r) * np.exp(-b2 * t) * (1.0 - np.exp(-b3 * t))

    def _curve_gradient(self, t, b, r):
        b1, b2, b3 = b
        exp1 = np.exp(-b2 * t)
        exp2 = np.exp(-b3 * t)
        return np.column_stack(
            [
                exp1 * (1.0 - exp2),
                (b1 + r) * exp1 * (1.0 - exp2) * -t,
                (b1 + r) * exp1 * exp2 * t,
            ]
        )

    def model_definition(self) -> str:
        return "y ~ b1*exp(-b2*t)*(1-exp(-b3*t))"

    def _default_records(self):
        return {
            "b1": ("5000", ("0", "10000")),
            "b2": ("0.005", ("0.0001", "0.01")),
            "b3": ("0.2", ("0.001", "0.5")),
            CORRELATION_PARM: _CORRELATION_DEFAULT,
            RANDOM_EFFECT_VARIANCE: ("250000", ("0", "2500000")),
            RESIDUAL_VARIANCE: ("2500", ("0", "5000")),
            REG_LAG_PARM: _REG_LAG_DEFAULT,
        }


def _build_registry() -> MappingProxyType:
    return MappingProxyType(
        {
            ChapmanRichardsDerivativeModel.name: ChapmanRichardsDerivativeModel,
            ModifiedChapmanRichardsDerivativeModel.name: ModifiedChapmanRichardsDerivativeModel,
        }
    )


MODEL_REGISTRY = _build_registry()


def parse_implementation_name(implementation: str) -> tuple[str, bool]:
    """Split ``"<Variant>[WithRandomEffect]"`` into (variant, random_effect)."""
    suffix = "WithRandomEffect"
    if implementation.endswith(suffix):
        return implementation[: -len(suffix)], True
    return implementation, False


def create_model(
    implementation: str,
    variance_known: bool = False,
    regeneration_lag: bool = False,
) -> GrowthModel:
    """Factory function to create a growth model from its implementation name.

    Args:
        implementation: Variant key, optionally suffixed with
            ``WithRandomEffect`` (e.g. ``"ChapmanRichardsDerivativeWithRandomEffect"``)
        variance_known: Residual variance supplied by the simulator
        regeneration_lag: Sample a regeneration-lag parameter

    Returns:
        Configured GrowthModel instance
    """
    variant, random_effect = parse_implementation_name(implementation)
    if variant not in MODEL_REGISTRY:
        raise ConfigurationError(
            f"Unknown growth model '{implementation}'. "
            f"Available: {get_available_models()}"
        )
    model = MODEL_REGISTRY[variant](
        random_effect=random_effect,
        variance_known=variance_known,
        regeneration_lag=regeneration_lag,
    )
    logger.debug(f"Created {model!r}")
    return model


def get_available_models() -> list[str]:
    """List every implementation name accepted by :func:`create_model`."""
    names = []
    for variant in MODEL_REGISTRY:
        names.extend([variant, f"{variant}WithRandomEffect"])
    return names
