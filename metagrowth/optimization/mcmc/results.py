"""Posterior sample and fit result containers.

:class:`PosteriorSample` is append-only while the sampler runs and becomes
read-only once frozen. :class:`FitResult` bundles one candidate fit: the
growth model, its parameter specification, the sample, sampler statistics,
convergence verdict and model-comparison score.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from metagrowth.optimization.exceptions import MetaModelStateError
from metagrowth.utils.logging import get_logger

if TYPE_CHECKING:
    from metagrowth.config.parameter_space import ParameterSpecification
    from metagrowth.core.models import GrowthModel
    from metagrowth.optimization.mcmc.diagnostics import ComparisonScore

logger = get_logger(__name__)

LOG_LIKELIHOOD_COLUMN = "LogLikelihood"


@dataclass
class SamplingStats:
    """Statistics of one Metropolis-Hastings run.

    Attributes
    ----------
    final_state : str
        Terminal sampler state; after a fit is judged, CONVERGED or FAILED
        from the convergence criterion
    n_iterations : int
        Post-grid MH steps (burn-in plus sampling)
    n_burn_in_accepted : int
        Accepted moves during burn-in
    n_sampling_steps : int
        MH steps of the sampling phase
    n_accepted : int
        Accepted moves of the sampling phase
    acceptance_rate : float
        Acceptance rate of the sampling phase
    burn_in_acceptance_rate : float
        Acceptance rate over the whole burn-in
    burn_in_window_rates : list[float]
        Acceptance rate of each adaptation window
    final_scale : float
        Proposal scale factor frozen at the end of burn-in
    n_numerical_failures : int
        Proposals rejected because their likelihood was not finite
    grid_time, burn_in_time, sampling_time, total_time : float
        Wall-clock durations in seconds
    """

    final_state: str = "IDLE"
    n_iterations: int = 0
    n_burn_in_accepted: int = 0
    n_sampling_steps: int = 0
    n_accepted: int = 0
    acceptance_rate: float = 0.0
    burn_in_acceptance_rate: float = 0.0
    burn_in_window_rates: list[float] = field(default_factory=list)
    final_scale: float = 1.0
    n_numerical_failures: int = 0
    grid_time: float = 0.0
    burn_in_time: float = 0.0
    sampling_time: float = 0.0
    total_time: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SamplingStats:
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class PosteriorSample:
    """Ordered accepted draws with their log-likelihoods.

    Parameters
    ----------
    parameter_names : sequence of str
        Names in parameter-vector order
    """

    def __init__(self, parameter_names: Sequence[str]):
        self.parameter_names = tuple(parameter_names)
        self._draws: list[np.ndarray] = []
        self._log_likelihoods: list[float] = []
        self._per_stratum: list[np.ndarray] = []
        self._frozen = False
        self._arrays: tuple[np.ndarray, np.ndarray, np.ndarray] | None = None

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def append(
        self,
        theta: np.ndarray,
        log_likelihood: float,
        per_stratum: np.ndarray | None = None,
    ) -> None:
        if self._frozen:
            raise MetaModelStateError("Cannot append to a frozen posterior sample")
        theta = np.array(theta, dtype=float)
        if theta.size != len(self.parameter_names):
            raise ValueError(
                f"Expected {len(self.parameter_names)} parameters, got {theta.size}"
            )
        self._draws.append(theta)
        self._log_likelihoods.append(float(log_likelihood))
        self._per_stratum.append(
            np.array([], dtype=float) if per_stratum is None else np.array(per_stratum, dtype=float)
        )

    def freeze(self) -> PosteriorSample:
        """Make the sample immutable and return it."""
        if not self._frozen:
            self._arrays = self._stack()
            for array in self._arrays:
                array.setflags(write=False)
            self._frozen = True
        return self

    def _stack(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        n_params = len(self.parameter_names)
        draws = np.array(self._draws, dtype=float).reshape(len(self._draws), n_params)
        log_likelihoods = np.array(self._log_likelihoods, dtype=float)
        if self._per_stratum and self._per_stratum[0].size:
            per_stratum = np.vstack(self._per_stratum)
        else:
            per_stratum = np.empty((len(self._draws), 0))
        return draws, log_likelihoods, per_stratum

    def _data(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        return self._arrays if self._frozen else self._stack()

    @property
    def draws(self) -> np.ndarray:
        """Accepted parameter vectors, shape ``(n_draws, n_params)``."""
        return self._data()[0]

    @property
    def log_likelihoods(self) -> np.ndarray:
        return self._data()[1]

    @property
    def per_stratum_log_likelihoods(self) -> np.ndarray:
        """Per-block log-likelihood of each draw, shape ``(n_draws, n_blocks)``."""
        return self._data()[2]

    def __len__(self) -> int:
        return len(self._draws)

    def mean(self) -> np.ndarray:
        if len(self) == 0:
            raise MetaModelStateError("Posterior sample is empty")
        return self.draws.mean(axis=0)

    def std(self) -> np.ndarray:
        return self.draws.std(axis=0, ddof=1) if len(self) > 1 else np.zeros(len(self.parameter_names))

    def quantiles(self, q: Sequence[float]) -> np.ndarray:
        """Quantiles per parameter, shape ``(len(q), n_params)``."""
        return np.quantile(self.draws, q, axis=0)

    def parameter(self, name: str) -> np.ndarray:
        return self.draws[:, self.parameter_names.index(name)]

    def to_arviz_dict(self) -> dict[str, np.ndarray]:
        """Draws per parameter shaped ``(1, n_draws)`` for ``az.from_dict``."""
        draws = self.draws
        return {name: draws[None, :, i] for i, name in enumerate(self.parameter_names)}

    def to_dataframe(self) -> pd.DataFrame:
        frame = pd.DataFrame(self.draws, columns=list(self.parameter_names))
        frame[LOG_LIKELIHOOD_COLUMN] = self.log_likelihoods
        return frame

    def to_dict(self) -> dict[str, Any]:
        return {
            "parameter_names": list(self.parameter_names),
            "draws": self.draws.tolist(),
            "log_likelihoods": self.log_likelihoods.tolist(),
            "per_stratum_log_likelihoods": self.per_stratum_log_likelihoods.tolist(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PosteriorSample:
        sample = cls(data["parameter_names"])
        per_stratum = data.get("per_stratum_log_likelihoods") or [None] * len(data["draws"])
        for theta, ll, ps in zip(data["draws"], data["log_likelihoods"], per_stratum):
            sample.append(theta, ll, ps if ps else None)
        return sample.freeze()

    def __repr__(self) -> str:
        state = "frozen" if self._frozen else "open"
        return f"PosteriorSample(n_draws={len(self)}, n_params={len(self.parameter_names)}, {state})"


@dataclass
class FitResult:
    """Outcome of fitting one growth-model variant.

    Attributes
    ----------
    implementation : str
        Implementation name (variant plus random-effect flavour)
    model : GrowthModel
        Fitted growth model
    specification : ParameterSpecification
        Parameter specification used by the sampler
    sample : PosteriorSample | None
        Frozen posterior sample, None when the sampler failed
    stats : SamplingStats
        Sampler statistics
    converged : bool
        Convergence verdict
    warnings : list[str]
        Convergence warnings
    comparison : ComparisonScore | None
        Model-comparison score
    failure : str | None
        Failure message when the sampler did not complete
    seed : int | None
        Seed used for the run
    """

    implementation: str
    model: GrowthModel
    specification: ParameterSpecification
    sample: PosteriorSample | None
    stats: SamplingStats
    converged: bool = False
    warnings: list[str] = field(default_factory=list)
    comparison: ComparisonScore | None = None
    failure: str | None = None
    seed: int | None = None

    @property
    def completed(self) -> bool:
        return self.sample is not None and self.failure is None

    def posterior_mean(self) -> np.ndarray:
        if self.sample is None:
            raise MetaModelStateError(f"Fit of {self.implementation} has no posterior sample")
        return self.sample.mean()

    def summary_frame(self) -> pd.DataFrame:
        """Posterior mean, std and 95% interval per parameter."""
        if self.sample is None:
            raise MetaModelStateError(f"Fit of {self.implementation} has no posterior sample")
        lower, upper = self.sample.quantiles([0.025, 0.975])
        return pd.DataFrame(
            {
                "Parameter": list(self.sample.parameter_names),
                "Mean": self.sample.mean(),
                "Std": self.sample.std(),
                "Lower95": lower,
                "Upper95": upper,
            }
        )
