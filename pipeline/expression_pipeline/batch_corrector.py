# File: pipeline/expression_pipeline/batch_corrector.py

import logging
import os
from typing import Optional, Tuple

import matplotlib
matplotlib.use("Agg")  # Headless backend for prior plots
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy import stats

from config.logger_config import configure_logger
from pipeline.expression_pipeline.combat import ComBatResult, combat_fit
from pipeline.expression_pipeline.sample_metadata import select_batch_samples


def build_covariates(metadata: pd.DataFrame, covariate: Optional[str]) -> Optional[np.ndarray]:
    """
    Builds the non-batch part of the ComBat model from sample metadata.

    A numeric covariate enters as a single column; a categorical one is dummy-coded
    against its first sorted level. None gives the intercept-only model.

    Args:
        metadata (pd.DataFrame): Metadata of the samples being corrected, in column order.
        covariate (Optional[str]): Metadata column to preserve (e.g. "stage").

    Returns:
        Optional[np.ndarray]: Samples x k covariate matrix, or None.
    """
    if not covariate:
        return None
    if covariate not in metadata.columns:
        raise ValueError(f"Covariate '{covariate}' is not a sample metadata column.")

    values = metadata[covariate]
    numeric = pd.to_numeric(values, errors="coerce")
    if numeric.notna().all():
        return numeric.to_numpy(dtype=float)[:, None]
    dummies = pd.get_dummies(values.astype(str), drop_first=True, dtype=float)
    return dummies.to_numpy()


class BatchCorrector:
    """
    Removes study-level batch effects from the group-labelled samples of the batch studies.

    Attributes:
        studies (list): Study accessions included in the batch model.
        covariate (Optional[str]): Metadata column kept in the model, None for intercept only.
        mean_only (bool): Location-only adjustment.
        prior_plots (bool): Write a PNG comparing empirical batch effects with their priors.
    """

    def __init__(self, batch_config: dict, logger: Optional[logging.Logger] = None) -> None:
        self.studies = list(batch_config.get("studies") or [])
        if len(self.studies) < 2:
            raise ValueError("Batch correction needs at least two studies.")
        self.covariate = batch_config.get("covariate")
        self.mean_only = bool(batch_config.get("mean_only", False))
        self.prior_plots = bool(batch_config.get("prior_plots", False))
        self.logger = logger or configure_logger(
            name="BatchCorrector",
            log_file="batch_corrector.log",
            level=logging.INFO,
            output="both"
        )

    def select(self, combined: pd.DataFrame, metadata: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Restricts the combined matrix to group-labelled samples of the batch studies.

        Returns:
            Tuple[pd.DataFrame, pd.DataFrame]: Matrix slice and its metadata, in the same order.
        """
        keep = select_batch_samples(metadata, self.studies)
        keep = keep[keep["name"].isin(combined.columns)]
        if keep.empty:
            raise ValueError(f"No group-labelled samples found for batch studies {self.studies}.")
        return combined.loc[:, keep["name"].tolist()], keep.reset_index(drop=True)

    def correct(self, combined: pd.DataFrame, metadata: pd.DataFrame) -> Tuple[pd.DataFrame, ComBatResult]:
        """
        Runs ComBat with study of origin as batch.

        Args:
            combined (pd.DataFrame): Combined genes x samples matrix (display-name columns).
            metadata (pd.DataFrame): Ordered sample metadata of the combined matrix.

        Returns:
            Tuple[pd.DataFrame, ComBatResult]: Batch-corrected matrix and the fitted ComBat parameters.
        """
        selected, keep = self.select(combined, metadata)
        covariates = build_covariates(keep, self.covariate)
        self.logger.info(
            f"Running ComBat on {selected.shape[1]} samples from {keep['GSE'].nunique()} studies "
            f"(covariate={self.covariate or 'intercept only'}, mean_only={self.mean_only})"
        )
        try:
            result = combat_fit(selected.to_numpy(), keep["GSE"].to_numpy(), covariates=covariates, mean_only=self.mean_only)
        except ValueError as e:
            self.logger.error(f"ComBat failed: {e}")
            raise

        corrected = pd.DataFrame(result.corrected, index=selected.index, columns=selected.columns)
        return corrected, result

    def plot_priors(self, result: ComBatResult, output_path: str) -> Optional[str]:
        """
        Plots the empirical batch location/scale estimates of the first batch against their priors.

        Args:
            result (ComBatResult): Fitted ComBat parameters.
            output_path (str): PNG path.

        Returns:
            Optional[str]: The written path, or None for a mean-only fit.
        """
        if result.a_prior is None:
            self.logger.info("Mean-only ComBat fit; skipping prior plots.")
            return None

        gamma = result.gamma_hat[0]
        delta = result.delta_hat[0]
        fig, (ax_gamma, ax_delta) = plt.subplots(1, 2, figsize=(10, 4))

        ax_gamma.hist(gamma, bins=50, density=True, color="lightgrey")
        grid = np.linspace(gamma.min(), gamma.max(), 200)
        ax_gamma.plot(grid, stats.norm.pdf(grid, result.gamma_bar[0], np.sqrt(result.t2[0])), color="red")
        ax_gamma.set_title(f"Batch {result.batch_levels[0]}: gamma")

        ax_delta.hist(delta, bins=50, density=True, color="lightgrey")
        grid = np.linspace(delta.min(), delta.max(), 200)
        ax_delta.plot(grid, stats.invgamma.pdf(grid, result.a_prior[0], scale=result.b_prior[0]), color="red")
        ax_delta.set_title(f"Batch {result.batch_levels[0]}: delta")

        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        fig.tight_layout()
        fig.savefig(output_path)
        plt.close(fig)
        self.logger.info(f"ComBat prior plots written to {output_path}")
        return output_path
