"""Custom exceptions for meta-model fitting.

This module defines the exception hierarchy raised while configuring,
stratifying and fitting growth-curve meta-models.

Exception Hierarchy:
    MetaModelError (base)
    ├── ConfigurationError (bad parameter/sampler configuration)
    ├── DataError (invalid or insufficient stratified data)
    ├── NumericalError (non-finite likelihood evaluations)
    ├── ConvergenceFailure (iteration cap reached, degenerate acceptance)
    ├── FitCancelledError (cancellation requested during a fit)
    └── MetaModelStateError (operation not allowed in the current lifecycle state)

Configuration and data errors are raised before the sampler starts and are
fatal. A single :class:`NumericalError` is recovered inside the sampler as a
rejected proposal; it only escapes when such failures persist. A
:class:`ConvergenceFailure` is a terminal but non-corrupting outcome: the
meta-model keeps its data and configuration and can be refit.

Examples
--------
>>> try:
...     model.fit("AliveVolume_AllSpecies")
... except DataError as e:
...     logger.error(f"Cannot stratify: {e}")
... except MetaModelError as e:
...     logger.error(f"Fit failed: {e}")
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import numpy as np


class MetaModelError(Exception):
    """Base exception for all meta-model errors.

    Attributes
    ----------
    message : str
        Detailed error message
    error_context : dict
        Additional context about the error (parameter names, stratum ids, ...)
    """

    def __init__(self, message: str, error_context: dict | None = None):
        super().__init__(message)
        self.error_context = error_context or {}

    def __str__(self) -> str:
        """Return formatted error message with context."""
        base_msg = super().__str__()
        if self.error_context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.error_context.items())
            return f"{base_msg} (context: {context_str})"
        return base_msg


class ConfigurationError(MetaModelError):
    """Raised when a parameter or sampler configuration is invalid.

    Common Causes
    -------------
    - Starting value outside its prior bounds
    - Missing, extra or misordered parameter records
    - Unsupported prior family (only ``Uniform`` is recognized)
    - Unknown growth-model variant
    - Attempt to refit an already fitted meta-model
    """

    def __init__(
        self,
        message: str,
        parameter: str | None = None,
        error_context: dict | None = None,
    ):
        context = error_context or {}
        if parameter is not None:
            context["parameter"] = parameter
        super().__init__(message, context)
        self.parameter = parameter


class DataError(MetaModelError):
    """Raised when the simulated data cannot be stratified for fitting.

    Attributes
    ----------
    stratum : Any
        Identifier of the offending stratum, if any
    """

    def __init__(
        self,
        message: str,
        stratum: Any = None,
        error_context: dict | None = None,
    ):
        context = error_context or {}
        if stratum is not None:
            context["stratum"] = stratum
        super().__init__(message, context)
        self.stratum = stratum


class NumericalError(MetaModelError):
    """Raised when a log-likelihood evaluation is not finite.

    Inside the sampler this is an automatic rejection of the proposal. It is
    re-raised to the caller only after ``max_consecutive_failures``
    consecutive occurrences.

    Attributes
    ----------
    detection_point : str
        Where the non-finite value appeared ('covariance', 'quadrature',
        'likelihood', 'seed')
    parameters : np.ndarray
        Parameter vector being evaluated
    """

    def __init__(
        self,
        message: str,
        detection_point: str | None = None,
        parameters: np.ndarray | None = None,
        error_context: dict | None = None,
    ):
        context = error_context or {}
        if detection_point:
            context["detection_point"] = detection_point
        super().__init__(message, context)
        self.detection_point = detection_point
        self.parameters = parameters


class ConvergenceFailure(MetaModelError):
    """Raised when the sampler cannot produce a usable posterior sample.

    Attributes
    ----------
    iteration_count : int
        Number of MH steps performed
    n_accepted : int
        Number of accepted draws collected before termination
    acceptance_rate : float
        Realized acceptance rate
    """

    def __init__(
        self,
        message: str,
        iteration_count: int | None = None,
        n_accepted: int | None = None,
        acceptance_rate: float | None = None,
        error_context: dict | None = None,
    ):
        context = error_context or {}
        if iteration_count is not None:
            context["iteration_count"] = iteration_count
        if n_accepted is not None:
            context["n_accepted"] = n_accepted
        if acceptance_rate is not None:
            context["acceptance_rate"] = f"{acceptance_rate:.3f}"
        super().__init__(message, context)
        self.iteration_count = iteration_count
        self.n_accepted = n_accepted
        self.acceptance_rate = acceptance_rate


class FitCancelledError(MetaModelError):
    """Raised when a fit is cancelled through its cancellation event."""


class MetaModelStateError(MetaModelError):
    """Raised when an operation does not match the meta-model lifecycle state."""
