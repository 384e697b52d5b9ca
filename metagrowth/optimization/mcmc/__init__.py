"""Metropolis-Hastings module for growth-curve meta-models.

Public API:
    run_mh_sampling: Fit one growth model to stratified data
    MHSimulationParameters: Sampler configuration dataclass
    PosteriorSample, FitResult: Result containers
"""

from metagrowth.optimization.mcmc.config import MHSimulationParameters
from metagrowth.optimization.mcmc.diagnostics import (
    WAIC,
    AcceptanceRateCriterion,
    CompositeCriterion,
    DevianceInformationCriterion,
    EffectiveSampleSizeCriterion,
    GewekeCriterion,
    build_comparison_table,
    check_convergence,
)
from metagrowth.optimization.mcmc.likelihood import MarginalLikelihood
from metagrowth.optimization.mcmc.results import FitResult, PosteriorSample, SamplingStats
from metagrowth.optimization.mcmc.sampler import (
    MetropolisHastingsSampler,
    SamplerState,
    run_mh_sampling,
)

__all__ = [
    "AcceptanceRateCriterion",
    "CompositeCriterion",
    "DevianceInformationCriterion",
    "EffectiveSampleSizeCriterion",
    "FitResult",
    "GewekeCriterion",
    "MHSimulationParameters",
    "MarginalLikelihood",
    "MetropolisHastingsSampler",
    "PosteriorSample",
    "SamplerState",
    "SamplingStats",
    "WAIC",
    "build_comparison_table",
    "check_convergence",
    "run_mh_sampling",
]
