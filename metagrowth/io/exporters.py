"""CSV exports of a fitted meta-model.

- final dataset: observations of the fitted output type
- posterior sample: one row per accepted draw, plus its log-likelihood
- model comparison: one row per candidate variant
"""

from __future__ import annotations

from pathlib import Path

import pandas as pd

from metagrowth.core.metamodel import MetaModel
from metagrowth.utils.logging import get_logger, log_operation

logger = get_logger(__name__)


def _write_csv(frame: pd.DataFrame, output_path: str | Path, what: str) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(output_path, index=False)
    logger.info(f"Saved {what} ({len(frame)} rows): {output_path}")
    return output_path


def export_final_dataset(model: MetaModel, output_path: str | Path) -> Path:
    return _write_csv(model.get_final_dataset(), output_path, "final dataset")


def export_posterior_sample(model: MetaModel, output_path: str | Path) -> Path:
    return _write_csv(model.posterior_sample.to_dataframe(), output_path, "posterior sample")


def export_model_comparison(model: MetaModel, output_path: str | Path) -> Path:
    return _write_csv(model.get_model_comparison(), output_path, "model comparison")


def export_all(model: MetaModel, output_dir: str | Path) -> dict[str, Path]:
    """Write the three exports into ``output_dir``.

    Returns
    -------
    dict[str, Path]
        Paths to saved files.
    """
    output_dir = Path(output_dir)
    prefix = f"{model.stratum_group}_{model.output_type}"
    with log_operation(f"Exporting {prefix} to {output_dir}", logger=logger):
        return {
            "final_dataset": export_final_dataset(model, output_dir / f"{prefix}_dataset.csv"),
            "posterior_sample": export_posterior_sample(
                model, output_dir / f"{prefix}_mcmc.csv"
            ),
            "model_comparison": export_model_comparison(
                model, output_dir / f"{prefix}_comparison.csv"
            ),
        }
