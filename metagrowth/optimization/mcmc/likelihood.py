"""Marginal likelihood of the stratified data.

For one stratum with ages ``a``, responses ``y`` and parameter vector θ:

    μ0 = f(a; θ, r=0),   g = f(a; θ, r=1) - f(a; θ, r=0)
    R_ij = rho^|a_i - a_j|
    V = sigma2_res · R            (sampled residual variance)
    V = D^½ R D^½, D = diag(v)    (known variance)

With a random effect r ~ N(0, sigma2stratum) the stratum likelihood is
integrated with Gauss-Hermite quadrature after the change of variable
r = sqrt(2·sigma2stratum)·x:

    L = (1/√π) Σ_k w_k · N(y - μ0 - r_k·g; 0, V)

evaluated in log space with ``logsumexp``. Strata are conditionally
independent, so the total log-likelihood is the sum over blocks.
"""

from __future__ import annotations

import functools
from collections.abc import Sequence

import numpy as np
from scipy.linalg import LinAlgError, cho_factor, cho_solve
from scipy.special import logsumexp, roots_hermite

from metagrowth.config.parameter_space import (
    CORRELATION_PARM,
    RANDOM_EFFECT_VARIANCE,
    RESIDUAL_VARIANCE,
)
from metagrowth.core.models import GrowthModel
from metagrowth.data.stratification import StratumDataBlock
from metagrowth.optimization.exceptions import ConfigurationError, NumericalError
from metagrowth.utils.logging import get_logger

logger = get_logger(__name__)

_LOG_2PI = float(np.log(2.0 * np.pi))
_LOG_SQRT_PI = 0.5 * float(np.log(np.pi))


@functools.lru_cache(maxsize=None)
def gauss_hermite_nodes(n_points: int) -> tuple[np.ndarray, np.ndarray]:
    """Physicists' Gauss-Hermite nodes and log weights, cached per node count."""
    if n_points < 1:
        raise ConfigurationError(f"n_quadrature_points must be >= 1, got {n_points}")
    nodes, weights = roots_hermite(n_points)
    log_weights = np.log(weights)
    nodes.setflags(write=False)
    log_weights.setflags(write=False)
    return nodes, log_weights


def mvn_logpdf(residuals: np.ndarray, covariance: np.ndarray) -> np.ndarray:
    """Zero-mean multivariate normal log density of each row of ``residuals``.

    Returns ``-inf`` for every row when the covariance is not positive
    definite, and for each row holding a non-finite residual.
    """
    residuals = np.atleast_2d(residuals)
    n = covariance.shape[0]
    result = np.full(residuals.shape[0], -np.inf)
    finite = np.all(np.isfinite(residuals), axis=1)
    if not np.any(finite):
        return result
    try:
        factor = cho_factor(covariance, lower=True, check_finite=True)
    except (LinAlgError, ValueError):
        return result
    log_det = 2.0 * np.sum(np.log(np.diag(factor[0])))
    rows = residuals[finite]
    solved = cho_solve(factor, rows.T, check_finite=False)
    quad = np.sum(rows.T * solved, axis=0)
    result[finite] = -0.5 * (n * _LOG_2PI + log_det + quad)
    return result


class MarginalLikelihood:
    """Log-likelihood evaluator for one growth model over a set of blocks.

    Parameters
    ----------
    model : GrowthModel
        Growth-curve variant
    blocks : sequence of StratumDataBlock
        Stratified data
    n_quadrature_points : int
        Gauss-Hermite node count used when the model has a random effect
    """

    def __init__(
        self,
        model: GrowthModel,
        blocks: Sequence[StratumDataBlock],
        n_quadrature_points: int = 5,
    ):
        if not blocks:
            raise ConfigurationError("MarginalLikelihood needs at least one block")
        self.model = model
        self.blocks = tuple(blocks)
        self.n_quadrature_points = int(n_quadrature_points)
        self._nodes, self._log_weights = gauss_hermite_nodes(self.n_quadrature_points)

        self._rho_index = model.index_of(CORRELATION_PARM)
        self._re_index = model.index_of(RANDOM_EFFECT_VARIANCE)
        self._res_index = model.index_of(RESIDUAL_VARIANCE)

        # Per-block constants
        self._lags = tuple(block.lag_matrix() for block in self.blocks)
        if model.variance_known:
            self._scales = tuple(
                np.sqrt(np.outer(block.variances, block.variances)) for block in self.blocks
            )
        else:
            self._scales = None

    @property
    def n_obs(self) -> int:
        return sum(block.n_obs for block in self.blocks)

    def covariance(self, block_index: int, theta: np.ndarray) -> np.ndarray:
        """Residual covariance of one block."""
        rho = theta[self._rho_index]
        correlation = np.power(rho, self._lags[block_index])
        if self._scales is not None:
            return self._scales[block_index] * correlation
        return theta[self._res_index] * correlation

    def block_log_likelihood(self, block_index: int, theta: np.ndarray) -> float:
        block = self.blocks[block_index]
        model = self.model
        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            mu0 = model.predict(block.ages, block.time_since_start, 0.0, theta)
            residuals = block.values - mu0
            covariance = self.covariance(block_index, theta)
            if self._re_index is None:
                return float(mvn_logpdf(residuals, covariance)[0])

            sigma2 = theta[self._re_index]
            if sigma2 < 0.0:
                return -np.inf
            loading = model.random_effect_loading(block.ages, theta)
            effects = np.sqrt(2.0 * sigma2) * self._nodes
            shifted = residuals[None, :] - effects[:, None] * loading[None, :]
            log_densities = mvn_logpdf(shifted, covariance)
            return float(logsumexp(log_densities + self._log_weights) - _LOG_SQRT_PI)

    def per_stratum(self, theta: np.ndarray) -> np.ndarray:
        """Log-likelihood of each block, shape ``(n_blocks,)``."""
        theta = np.asarray(theta, dtype=float)
        return np.array(
            [self.block_log_likelihood(i, theta) for i in range(len(self.blocks))]
        )

    def evaluate(self, theta: np.ndarray) -> tuple[float, np.ndarray]:
        """Total and per-block log-likelihood.

        Raises
        ------
        NumericalError
            If the total is not finite.
        """
        per_stratum = self.per_stratum(theta)
        total = float(np.sum(per_stratum))
        if not np.isfinite(total):
            raise NumericalError(
                "Non-finite log-likelihood",
                detection_point="likelihood",
                parameters=np.asarray(theta, dtype=float),
            )
        return total, per_stratum

    def __call__(self, theta: np.ndarray) -> float:
        return self.evaluate(theta)[0]


def exact_marginal_log_likelihood(
    likelihood: MarginalLikelihood, theta: np.ndarray
) -> float:
    """Closed-form marginal for models linear in the random effect.

    Since the response is linear in r, integrating r out gives
    ``N(y - μ0; 0, V + sigma2stratum·g·gᵀ)``. Used to check the accuracy of
    the quadrature.
    """
    theta = np.asarray(theta, dtype=float)
    model = likelihood.model
    re_index = model.index_of(RANDOM_EFFECT_VARIANCE)
    total = 0.0
    for i, block in enumerate(likelihood.blocks):
        mu0 = model.predict(block.ages, block.time_since_start, 0.0, theta)
        covariance = likelihood.covariance(i, theta)
        if re_index is not None:
            loading = model.random_effect_loading(block.ages, theta)
            covariance = covariance + theta[re_index] * np.outer(loading, loading)
        total += float(mvn_logpdf(block.values - mu0, covariance)[0])
    return total
