"""Persistence and CSV exports of meta-models."""

from metagrowth.io.exporters import (
    export_all,
    export_final_dataset,
    export_model_comparison,
    export_posterior_sample,
)
from metagrowth.io.persistence import load_metamodel, save_metamodel

__all__ = [
    "export_all",
    "export_final_dataset",
    "export_model_comparison",
    "export_posterior_sample",
    "load_metamodel",
    "save_metamodel",
]
