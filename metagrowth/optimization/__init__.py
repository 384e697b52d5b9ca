"""Fitting engine of the meta-models.

The Metropolis-Hastings engine lives in :mod:`metagrowth.optimization.mcmc`;
this package only re-exports the exception hierarchy.
"""

from metagrowth.optimization.exceptions import (
    ConfigurationError,
    ConvergenceFailure,
    DataError,
    FitCancelledError,
    MetaModelError,
    MetaModelStateError,
    NumericalError,
)

__all__ = [
    "ConfigurationError",
    "ConvergenceFailure",
    "DataError",
    "FitCancelledError",
    "MetaModelError",
    "MetaModelStateError",
    "NumericalError",
]
