"""metagrowth: Bayesian Growth-Curve Meta-Models
=============================================

Calibrates compact parametric growth-curve meta-models against stochastic
forest-growth simulator output, so that stand growth trajectories can be
evaluated without re-running the simulator.

Key Features:
- Chapman-Richards derivative growth curves with optional stratum random
  effect, known residual variance and regeneration lag
- Metropolis-Hastings sampling with grid warm start and adaptive proposal
- Gauss-Hermite integration of the random effect, AR(1) residuals
- Convergence diagnostics and DIC/WAIC model comparison
- Posterior-mean and Monte Carlo predictions

Core Equation:
    y(t) = (b1 + r) · exp(-b2·t) · (1 - exp(-b2·t))^b3

Quick Start:
    >>> from metagrowth import MetaModel, ScriptResult
    >>> model = MetaModel("RE2", "FMU02664", "Artemis2009")
    >>> model.add_script_result(30, script_result)
    >>> model.fit("AliveVolume_AllSpecies")
    >>> model.predict(90)
"""

__version__ = "1.0.0"

from metagrowth.core.metamodel import MetaModel, MetaModelState
from metagrowth.core.models import (
    MODEL_REGISTRY,
    ChapmanRichardsDerivativeModel,
    GrowthModel,
    ModifiedChapmanRichardsDerivativeModel,
    create_model,
)
from metagrowth.config.manager import ConfigManager
from metagrowth.config.parameter_space import ParameterSpecification, convert_parameters
from metagrowth.data.script_result import ScriptResult
from metagrowth.io.persistence import load_metamodel, save_metamodel
from metagrowth.optimization.exceptions import (
    ConfigurationError,
    ConvergenceFailure,
    DataError,
    FitCancelledError,
    MetaModelError,
    MetaModelStateError,
    NumericalError,
)
from metagrowth.optimization.mcmc.config import MHSimulationParameters

__all__ = [
    "__version__",
    "MetaModel",
    "MetaModelState",
    "GrowthModel",
    "ChapmanRichardsDerivativeModel",
    "ModifiedChapmanRichardsDerivativeModel",
    "MODEL_REGISTRY",
    "create_model",
    "ConfigManager",
    "ParameterSpecification",
    "convert_parameters",
    "ScriptResult",
    "MHSimulationParameters",
    "save_metamodel",
    "load_metamodel",
    "MetaModelError",
    "ConfigurationError",
    "DataError",
    "NumericalError",
    "ConvergenceFailure",
    "FitCancelledError",
    "MetaModelStateError",
]
