"""Metropolis-Hastings sampler.

The sampler is a small state machine:

    IDLE → INITIAL_GRID → BURN_IN → SAMPLING → {COMPLETED, FAILED}

- INITIAL_GRID seeds the chain at the best of ``n_initial_grid`` prior draws
  (or at the starting values when the grid is disabled or yields nothing).
- BURN_IN runs ``n_burn_in`` discarded steps and rescales the proposal every
  ``adaptation_interval`` steps toward the target acceptance band.
- SAMPLING keeps every accepted move until ``n_accepted`` draws are held.

COMPLETED only means the sample is full. Whether the chain converged is
decided afterwards by a convergence criterion.

The engine is generic: it only needs a log-likelihood callable returning
``(total, per_block)`` and a :class:`ParameterSpecification` for the prior.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from enum import Enum

import numpy as np

from metagrowth.config.parameter_space import ParameterSpecification
from metagrowth.core.models import GrowthModel
from metagrowth.data.stratification import StratumDataBlock
from metagrowth.optimization.exceptions import (
    ConvergenceFailure,
    FitCancelledError,
    NumericalError,
)
from metagrowth.optimization.mcmc.config import MHSimulationParameters
from metagrowth.optimization.mcmc.likelihood import MarginalLikelihood
from metagrowth.optimization.mcmc.results import PosteriorSample, SamplingStats
from metagrowth.utils.logging import get_logger, log_performance

logger = get_logger(__name__)

LogLikelihoodFn = Callable[[np.ndarray], tuple[float, np.ndarray]]


class SamplerState(Enum):
    IDLE = "idle"
    INITIAL_GRID = "initial_grid"
    BURN_IN = "burn_in"
    SAMPLING = "sampling"
    COMPLETED = "completed"
    FAILED = "failed"


def build_proposal_covariance(
    model: GrowthModel,
    blocks: Sequence[StratumDataBlock],
    specification: ParameterSpecification,
    coef_var: float,
) -> np.ndarray:
    """Initial proposal covariance.

    The diagonal comes from the starting distribution of the model, with
    zero entries replaced by ``((upper - lower) * coef_var) ** 2``. The
    fixed-effect block is replaced by the Gauss-Newton covariance
    ``s² (JᵀJ)⁻¹ · coef_var`` evaluated at the starting values whenever that
    matrix is finite and positive definite.
    """
    start, variance = model.starting_distribution(coef_var, specification)
    lower, upper = specification.bounds_arrays()
    variance = np.where(variance > 0.0, variance, ((upper - lower) * coef_var) ** 2)
    covariance = np.diag(variance)

    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        jacobian = np.vstack(
            [model.gradient(b.ages, b.time_since_start, 0.0, start) for b in blocks]
        )
        residuals = np.concatenate(
            [b.values - model.predict(b.ages, b.time_since_start, 0.0, start) for b in blocks]
        )
    fe = list(specification.fixed_effect_indices())
    dof = max(residuals.size - len(fe), 1)
    s2 = float(np.sum(residuals**2) / dof)

    try:
        gn = s2 * np.linalg.inv(jacobian.T @ jacobian) * coef_var
        if not np.all(np.isfinite(gn)):
            raise np.linalg.LinAlgError("non-finite Gauss-Newton covariance")
        np.linalg.cholesky(gn)
    except np.linalg.LinAlgError as e:
        logger.debug(f"Keeping diagonal fixed-effect proposal: {e}")
        return covariance

    covariance[np.ix_(fe, fe)] = gn
    return covariance


class MetropolisHastingsSampler:
    """Random-walk Metropolis-Hastings with adaptive proposal scale.

    Parameters
    ----------
    log_likelihood : callable
        ``theta -> (total, per_block)``; raises NumericalError when the
        evaluation is not finite
    specification : ParameterSpecification
        Parameter order, starting values and uniform priors
    config : MHSimulationParameters
        Sampler settings (validated by the caller)
    proposal_covariance : np.ndarray, optional
        Base proposal covariance; defaults to the diagonal starting
        distribution
    cancel_event : threading.Event, optional
        Checked at every grid draw and every MH step; when set the run
        raises FitCancelledError
    """

    def __init__(
        self,
        log_likelihood: LogLikelihoodFn,
        specification: ParameterSpecification,
        config: MHSimulationParameters,
        proposal_covariance: np.ndarray | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.log_likelihood = log_likelihood
        self.specification = specification
        self.config = config
        self.cancel_event = cancel_event
        self.state = SamplerState.IDLE

        n = specification.n_params
        if proposal_covariance is None:
            start = specification.starting_values()
            lower, upper = specification.bounds_arrays()
            variance = (np.abs(start) * config.coef_var) ** 2
            variance = np.where(variance > 0.0, variance, ((upper - lower) * config.coef_var) ** 2)
            proposal_covariance = np.diag(variance)
        proposal_covariance = np.asarray(proposal_covariance, dtype=float)
        if proposal_covariance.shape != (n, n):
            raise ValueError(
                f"Proposal covariance must be {n}x{n}, got {proposal_covariance.shape}"
            )
        self._chol = np.linalg.cholesky(proposal_covariance)

        self._rng = np.random.default_rng(config.seed)
        self._scale = 1.0
        self._consecutive_failures = 0
        self._current: np.ndarray | None = None
        self._current_ll = -np.inf
        self._current_per_stratum: np.ndarray | None = None
        self._current_log_post = -np.inf
        self.stats = SamplingStats()

    def _transition(self, state: SamplerState) -> None:
        logger.info(f"Sampler state: {self.state.name} -> {state.name}")
        self.state = state
        self.stats.final_state = state.name

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            self.state = SamplerState.IDLE
            self.stats.final_state = "CANCELLED"
            raise FitCancelledError(
                "Fit cancelled",
                error_context={"n_iterations": self.stats.n_iterations},
            )

    def _evaluate(self, theta: np.ndarray) -> tuple[float, float, np.ndarray]:
        """Log-posterior, log-likelihood and per-block log-likelihood."""
        log_prior = self.specification.log_prior(theta)
        if not np.isfinite(log_prior):
            return -np.inf, -np.inf, None
        ll, per_stratum = self.log_likelihood(theta)
        return ll + log_prior, ll, per_stratum

    def _seed(self) -> None:
        config = self.config
        self._transition(SamplerState.INITIAL_GRID)
        t0 = time.perf_counter()

        best = None
        if config.n_initial_grid > 0:
            candidates = self.specification.sample_prior(self._rng, config.n_initial_grid)
            best_log_post = -np.inf
            n_failed = 0
            for theta in candidates:
                self._check_cancelled()
                try:
                    log_post, ll, per_stratum = self._evaluate(theta)
                except NumericalError:
                    n_failed += 1
                    continue
                if log_post > best_log_post:
                    best_log_post = log_post
                    best = (theta.copy(), log_post, ll, per_stratum)
            logger.info(
                f"Initial grid: {config.n_initial_grid} draws, {n_failed} non-finite, "
                f"best log-posterior {best_log_post:.4f}"
            )
            if best is None:
                logger.warning("Initial grid found no finite draw; seeding at starting values")

        if best is None:
            theta = self.specification.starting_values()
            try:
                log_post, ll, per_stratum = self._evaluate(theta)
            except NumericalError as e:
                raise NumericalError(
                    "Log-likelihood is not finite at the starting values",
                    detection_point="seed",
                    parameters=theta,
                ) from e
            if not np.isfinite(log_post):
                raise NumericalError(
                    "Log-posterior is not finite at the starting values",
                    detection_point="seed",
                    parameters=theta,
                )
            best = (theta, log_post, ll, per_stratum)

        self._current, self._current_log_post, self._current_ll, self._current_per_stratum = best
        self.stats.grid_time = time.perf_counter() - t0

    def _step(self) -> bool:
        """One MH step; returns True when the proposal is accepted."""
        self._check_cancelled()
        self.stats.n_iterations += 1
        z = self._rng.standard_normal(self._current.size)
        candidate = self._current + np.sqrt(self._scale) * (self._chol @ z)
        log_u = np.log(self._rng.random())

        try:
            log_post, ll, per_stratum = self._evaluate(candidate)
        except NumericalError as e:
            self._consecutive_failures += 1
            self.stats.n_numerical_failures += 1
            if self._consecutive_failures > self.config.max_consecutive_failures:
                self._transition(SamplerState.FAILED)
                raise NumericalError(
                    f"{self._consecutive_failures} consecutive non-finite log-likelihood "
                    "evaluations; aborting fit",
                    detection_point=e.detection_point,
                    parameters=candidate,
                ) from e
            return False
        self._consecutive_failures = 0

        if not np.isfinite(log_post):
            return False
        if log_u < log_post - self._current_log_post:
            self._current = candidate
            self._current_log_post = log_post
            self._current_ll = ll
            self._current_per_stratum = per_stratum
            return True
        return False

    def _burn_in(self) -> None:
        config = self.config
        self._transition(SamplerState.BURN_IN)
        t0 = time.perf_counter()
        window_accepted = 0
        for i in range(1, config.n_burn_in + 1):
            accepted = self._step()
            self.stats.n_burn_in_accepted += accepted
            window_accepted += accepted

            if i % config.adaptation_interval == 0:
                rate = window_accepted / config.adaptation_interval
                self.stats.burn_in_window_rates.append(rate)
                if rate < config.target_acceptance_low:
                    self._scale /= config.adaptation_factor
                elif rate > config.target_acceptance_high:
                    self._scale *= config.adaptation_factor
                window_accepted = 0

            if i % config.log_interval == 0:
                logger.debug(
                    f"Burn-in step {i}/{config.n_burn_in}: "
                    f"accepted={self.stats.n_burn_in_accepted}, scale={self._scale:.4g}, "
                    f"log-likelihood={self._current_ll:.4f}"
                )

        if config.n_burn_in > 0:
            self.stats.burn_in_acceptance_rate = self.stats.n_burn_in_accepted / config.n_burn_in
        self.stats.final_scale = self._scale
        self.stats.burn_in_time = time.perf_counter() - t0
        logger.info(
            f"Burn-in complete: acceptance={self.stats.burn_in_acceptance_rate:.3f}, "
            f"proposal scale={self._scale:.4g}"
        )

    def _sample(self) -> PosteriorSample:
        config = self.config
        self._transition(SamplerState.SAMPLING)
        t0 = time.perf_counter()
        sample = PosteriorSample(self.specification.names)

        while len(sample) < config.n_accepted:
            if self.stats.n_iterations >= config.max_iterations:
                self.stats.n_accepted = len(sample)
                self.stats.sampling_time = time.perf_counter() - t0
                self._update_rate()
                self._transition(SamplerState.FAILED)
                raise ConvergenceFailure(
                    f"Iteration cap {config.max_iterations} reached with "
                    f"{len(sample)}/{config.n_accepted} accepted draws",
                    iteration_count=self.stats.n_iterations,
                    n_accepted=len(sample),
                    acceptance_rate=self.stats.acceptance_rate,
                )

            self.stats.n_sampling_steps += 1
            if self._step():
                sample.append(self._current, self._current_ll, self._current_per_stratum)

            if self.stats.n_sampling_steps % config.log_interval == 0:
                logger.debug(
                    f"Sampling step {self.stats.n_sampling_steps}: "
                    f"{len(sample)}/{config.n_accepted} accepted, "
                    f"log-likelihood={self._current_ll:.4f}"
                )

        self.stats.n_accepted = len(sample)
        self._update_rate()
        self.stats.sampling_time = time.perf_counter() - t0
        return sample.freeze()

    def _update_rate(self) -> None:
        if self.stats.n_sampling_steps:
            self.stats.acceptance_rate = self.stats.n_accepted / self.stats.n_sampling_steps

    @log_performance(threshold=1.0)
    def run(self) -> tuple[PosteriorSample, SamplingStats]:
        """Run grid, burn-in and sampling.

        Returns
        -------
        tuple[PosteriorSample, SamplingStats]
            Frozen sample holding exactly ``n_accepted`` draws, and the run
            statistics.

        Raises
        ------
        ConvergenceFailure
            If ``max_iterations`` is reached first; no draws are returned.
        FitCancelledError
            If the cancellation event is set.
        NumericalError
            If the seed is not finite or too many consecutive evaluations
            fail.
        """
        if self.state is not SamplerState.IDLE:
            raise RuntimeError(f"Sampler already ran (state {self.state.name})")
        t0 = time.perf_counter()
        try:
            self._seed()
            self._burn_in()
            sample = self._sample()
        finally:
            self.stats.total_time = time.perf_counter() - t0

        self._transition(SamplerState.COMPLETED)
        logger.info(
            f"Sampling complete: {len(sample)} draws in {self.stats.n_iterations} steps, "
            f"acceptance={self.stats.acceptance_rate:.3f}"
        )
        return sample, self.stats


def run_mh_sampling(
    model: GrowthModel,
    blocks: Sequence[StratumDataBlock],
    specification: ParameterSpecification,
    config: MHSimulationParameters,
    cancel_event: threading.Event | None = None,
) -> tuple[PosteriorSample, SamplingStats, MarginalLikelihood]:
    """Fit ``model`` to ``blocks`` with Metropolis-Hastings.

    Validates the configuration, builds the marginal likelihood and the
    Gauss-Newton proposal, then runs the sampler.
    """
    config.require_valid()
    likelihood = MarginalLikelihood(model, blocks, config.n_quadrature_points)
    covariance = build_proposal_covariance(model, blocks, specification, config.coef_var)
    sampler = MetropolisHastingsSampler(
        likelihood.evaluate,
        specification,
        config,
        proposal_covariance=covariance,
        cancel_event=cancel_event,
    )
    sample, stats = sampler.run()
    return sample, stats, likelihood
