"""Growth-curve models and the meta-model orchestrator."""

from metagrowth.core.models import (
    MODEL_REGISTRY,
    GrowthModel,
    create_model,
    get_available_models,
)
from metagrowth.core.metamodel import MetaModel, MetaModelState

__all__ = [
    "GrowthModel",
    "MODEL_REGISTRY",
    "MetaModel",
    "MetaModelState",
    "create_model",
    "get_available_models",
]
