# File: pipeline/expression_pipeline/combat.py
"""
Parametric empirical-Bayes batch adjustment (ComBat; Johnson, Li and Rabinovic, 2007).

Follows sva::ComBat with par.prior=TRUE:
    - standardize genes with a pooled OLS fit of batch indicators plus covariates,
    - estimate per-batch location (gamma) and scale (delta) for every gene,
    - shrink them towards normal / inverse-gamma priors fitted across genes,
    - remove the shrunken batch effects and restore the non-batch mean.

Batches with a single sample force mean-only adjustment. Genes with zero variance
inside any batch are returned unchanged.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class ComBatResult:
    corrected: np.ndarray
    batch_levels: List[str]
    gamma_hat: np.ndarray
    delta_hat: np.ndarray
    gamma_star: np.ndarray
    delta_star: np.ndarray
    gamma_bar: np.ndarray
    t2: np.ndarray
    a_prior: Optional[np.ndarray] = None
    b_prior: Optional[np.ndarray] = None
    mean_only: bool = False
    unadjusted_genes: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=bool))


def _aprior(delta_hat: np.ndarray) -> float:
    m = np.mean(delta_hat)
    s2 = np.var(delta_hat, ddof=1)
    return (2 * s2 + m ** 2) / s2


def _bprior(delta_hat: np.ndarray) -> float:
    m = np.mean(delta_hat)
    s2 = np.var(delta_hat, ddof=1)
    return (m * s2 + m ** 3) / s2


def _postmean(g_hat, g_bar, n, d_star, t2):
    return (t2 * n * g_hat + d_star * g_bar) / (t2 * n + d_star)


def _postvar(sum2, n, a, b):
    return (0.5 * sum2 + b) / (n / 2.0 + a - 1.0)


def _it_sol(s_data, g_hat, d_hat, g_bar, t2, a, b, conv=1e-4, max_iter=10000):
    """
    Iterates the gamma/delta posterior means of one batch to convergence.
    """
    n = s_data.shape[1]
    g_old = g_hat.copy()
    d_old = d_hat.copy()
    for _ in range(max_iter):
        g_new = _postmean(g_hat, g_bar, n, d_old, t2)
        sum2 = ((s_data - g_new[:, None]) ** 2).sum(axis=1)
        d_new = _postvar(sum2, n, a, b)
        # Relative change is signed by g_old, as in sva's it.sol
        with np.errstate(divide="ignore", invalid="ignore"):
            change = max(
                np.nanmax(np.abs(g_new - g_old) / g_old),
                np.nanmax(np.abs(d_new - d_old) / d_old),
            )
        g_old, d_old = g_new, d_new
        if change <= conv:
            break
    else:
        logger.warning(f"ComBat posterior did not converge after {max_iter} iterations")
    return g_old, d_old


def _design_matrix(batch_idx, n_array, covariates):
    batchmod = np.zeros((n_array, len(batch_idx)))
    for j, idx in enumerate(batch_idx):
        batchmod[idx, j] = 1.0
    if covariates is None:
        return batchmod
    covariates = np.asarray(covariates, dtype=float)
    if covariates.ndim == 1:
        covariates = covariates[:, None]
    if covariates.shape[0] != n_array:
        raise ValueError(f"Covariates have {covariates.shape[0]} rows for {n_array} samples.")
    # Intercept columns duplicate the batch indicators
    keep = ~np.all(covariates == 1, axis=0)
    return np.hstack([batchmod, covariates[:, keep]])


def combat_fit(data, batch, covariates=None, mean_only: bool = False) -> ComBatResult:
    """
    Runs ComBat and returns the adjusted data together with the fitted parameters.

    Args:
        data: Genes x samples array.
        batch: Batch label per sample.
        covariates: Optional samples x k array of biological covariates to preserve.
        mean_only (bool): Adjust location only.

    Returns:
        ComBatResult: Corrected array (genes x samples) and per-batch estimates.

    Raises:
        ValueError: On shape mismatches, fewer than two batches, or a design confounded with batch.
    """
    data = np.asarray(data, dtype=float)
    batch = np.asarray(batch).astype(str)
    if data.ndim != 2:
        raise ValueError("ComBat expects a two-dimensional genes x samples array.")
    if data.shape[1] != batch.shape[0]:
        raise ValueError(f"Batch has {batch.shape[0]} labels for {data.shape[1]} samples.")
    if np.isnan(data).any():
        raise ValueError("ComBat input contains missing values.")

    levels = sorted(set(batch.tolist()))
    if len(levels) < 2:
        raise ValueError("ComBat needs at least two batches.")
    n_array = data.shape[1]
    batch_idx = [np.flatnonzero(batch == level) for level in levels]
    n_batches = np.array([len(idx) for idx in batch_idx], dtype=float)

    if (n_batches == 1).any() and not mean_only:
        logger.warning("At least one batch has a single sample; using mean-only adjustment.")
        mean_only = True

    zero_var = np.zeros(data.shape[0], dtype=bool)
    for idx in batch_idx:
        if len(idx) > 1:
            zero_var |= np.var(data[:, idx], axis=1, ddof=1) == 0
    if zero_var.any():
        logger.info(f"{int(zero_var.sum())} genes with zero within-batch variance are left unadjusted")
    work = data[~zero_var]

    design = _design_matrix(batch_idx, n_array, covariates)
    n_batch = len(levels)
    if np.linalg.matrix_rank(design) < design.shape[1]:
        raise ValueError("Covariates are confounded with batch.")

    # Standardize
    b_hat = np.linalg.solve(design.T @ design, design.T @ work.T)
    grand_mean = (n_batches / n_array) @ b_hat[:n_batch]
    var_pooled = ((work - (design @ b_hat).T) ** 2) @ np.full(n_array, 1.0 / n_array)
    stand_mean = np.outer(grand_mean, np.ones(n_array))
    if design.shape[1] > n_batch:
        tmp = design.copy()
        tmp[:, :n_batch] = 0
        stand_mean = stand_mean + (tmp @ b_hat).T
    s_data = (work - stand_mean) / np.sqrt(var_pooled)[:, None]

    # Batch effect estimates
    batch_design = design[:, :n_batch]
    gamma_hat = np.linalg.solve(batch_design.T @ batch_design, batch_design.T @ s_data.T)
    if mean_only:
        delta_hat = np.ones((n_batch, work.shape[0]))
    else:
        delta_hat = np.vstack([np.var(s_data[:, idx], axis=1, ddof=1) for idx in batch_idx])

    gamma_bar = gamma_hat.mean(axis=1)
    t2 = gamma_hat.var(axis=1, ddof=1)

    gamma_star = np.empty_like(gamma_hat)
    delta_star = np.ones_like(delta_hat)
    a_prior = b_prior = None
    if mean_only:
        for j in range(n_batch):
            gamma_star[j] = _postmean(gamma_hat[j], gamma_bar[j], 1, 1, t2[j])
    else:
        a_prior = np.array([_aprior(row) for row in delta_hat])
        b_prior = np.array([_bprior(row) for row in delta_hat])
        for j, idx in enumerate(batch_idx):
            gamma_star[j], delta_star[j] = _it_sol(
                s_data[:, idx], gamma_hat[j], delta_hat[j], gamma_bar[j], t2[j], a_prior[j], b_prior[j]
            )

    # Adjust
    adjusted = s_data.copy()
    for j, idx in enumerate(batch_idx):
        adjusted[:, idx] = (adjusted[:, idx] - gamma_star[j][:, None]) / np.sqrt(delta_star[j])[:, None]
    adjusted = adjusted * np.sqrt(var_pooled)[:, None] + stand_mean

    corrected = data.copy()
    corrected[~zero_var] = adjusted
    return ComBatResult(
        corrected=corrected,
        batch_levels=levels,
        gamma_hat=gamma_hat,
        delta_hat=delta_hat,
        gamma_star=gamma_star,
        delta_star=delta_star,
        gamma_bar=gamma_bar,
        t2=t2,
        a_prior=a_prior,
        b_prior=b_prior,
        mean_only=mean_only,
        unadjusted_genes=zero_var,
    )


def combat(data, batch, covariates=None, mean_only: bool = False) -> np.ndarray:
    """
    Batch-corrects a genes x samples array with parametric ComBat.
    """
    return combat_fit(data, batch, covariates=covariates, mean_only=mean_only).corrected
