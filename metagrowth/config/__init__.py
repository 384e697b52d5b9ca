"""Parameter specifications and fit configuration loading."""

from metagrowth.config.parameter_space import (
    ParameterEntry,
    ParameterSpecification,
    UniformPrior,
    convert_parameters,
    parse_parameter_records,
)

__all__ = [
    "ParameterEntry",
    "ParameterSpecification",
    "UniformPrior",
    "convert_parameters",
    "parse_parameter_records",
]
