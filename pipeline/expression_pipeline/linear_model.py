# File: pipeline/expression_pipeline/linear_model.py
"""
Per-gene linear models with empirical-Bayes moderated t-statistics.

Mirrors limma for complete data (no missing values, no weights):
    lm_fit         -> lmFit
    contrasts_fit  -> contrasts.fit
    e_bayes        -> eBayes (squeezeVar / fitFDist, moderated t, two-sided p-values)
"""

import logging
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import special, stats

from utils.exceptions import ContrastDesignError

logger = logging.getLogger(__name__)


@dataclass
class LinearModelFit:
    coefficients: pd.DataFrame  # genes x coefficients (or contrasts)
    stdev_unscaled: pd.DataFrame
    sigma: pd.Series
    df_residual: int
    cov_coefficients: pd.DataFrame
    df_prior: Optional[float] = None
    s2_prior: Optional[float] = None
    s2_post: Optional[pd.Series] = None
    t: Optional[pd.DataFrame] = None
    df_total: Optional[float] = None
    p_value: Optional[pd.DataFrame] = None


def group_design(groups: Sequence[str], levels: Optional[List[str]] = None) -> pd.DataFrame:
    """
    Cell-means design matrix (one indicator column per group, no intercept).

    Args:
        groups (Sequence[str]): Group label of each sample.
        levels (Optional[List[str]]): Column order; defaults to sorted unique labels.

    Returns:
        pd.DataFrame: Samples x groups indicator matrix.

    Raises:
        ContrastDesignError: If a sample's group is not a level or a level has no sample.
    """
    groups = list(groups)
    levels = list(levels) if levels else sorted(set(groups))
    unknown = sorted(set(groups) - set(levels))
    if unknown:
        raise ContrastDesignError(f"Samples have groups outside the configured levels: {unknown}")
    empty = [level for level in levels if level not in groups]
    if empty:
        raise ContrastDesignError(f"Groups without samples: {empty}")
    design = pd.DataFrame(
        [[1.0 if g == level else 0.0 for level in levels] for g in groups],
        columns=levels,
    )
    return design


def one_vs_rest_contrasts(levels: List[str]) -> pd.DataFrame:
    """
    Contrast matrix comparing each group with the average of all other groups.

    Args:
        levels (List[str]): Group names (design columns).

    Returns:
        pd.DataFrame: Groups x contrasts matrix; contrast "<g>vALL" = g - mean(others).
    """
    if len(levels) < 2:
        raise ContrastDesignError("One-vs-rest contrasts need at least two groups.")
    k = len(levels)
    matrix = np.full((k, k), -1.0 / (k - 1))
    np.fill_diagonal(matrix, 1.0)
    return pd.DataFrame(matrix, index=list(levels), columns=[f"{level}vALL" for level in levels])


def lm_fit(expr: pd.DataFrame, design: pd.DataFrame) -> LinearModelFit:
    """
    Fits an ordinary least-squares model to every gene.

    Args:
        expr (pd.DataFrame): Genes x samples matrix.
        design (pd.DataFrame): Samples x coefficients design matrix, rows in expr column order.

    Returns:
        LinearModelFit: Coefficients, unscaled standard errors and residual standard deviations.
    """
    x = design.to_numpy(dtype=float)
    y = expr.to_numpy(dtype=float).T
    n, p = x.shape
    if n != y.shape[0]:
        raise ContrastDesignError(f"Design has {n} rows for {y.shape[0]} samples.")
    if np.linalg.matrix_rank(x) < p:
        raise ContrastDesignError("Design matrix is not of full column rank.")
    if np.isnan(y).any():
        raise ValueError("Expression matrix contains missing values.")

    xtx_inv = np.linalg.inv(x.T @ x)
    beta = xtx_inv @ x.T @ y
    residuals = y - x @ beta
    df_residual = n - p
    with np.errstate(divide="ignore", invalid="ignore"):
        sigma = np.sqrt((residuals ** 2).sum(axis=0) / df_residual) if df_residual > 0 else np.full(y.shape[1], np.nan)

    columns = list(design.columns)
    stdev = np.tile(np.sqrt(np.diag(xtx_inv)), (y.shape[1], 1))
    return LinearModelFit(
        coefficients=pd.DataFrame(beta.T, index=expr.index, columns=columns),
        stdev_unscaled=pd.DataFrame(stdev, index=expr.index, columns=columns),
        sigma=pd.Series(sigma, index=expr.index),
        df_residual=df_residual,
        cov_coefficients=pd.DataFrame(xtx_inv, index=columns, columns=columns),
    )


def contrasts_fit(fit: LinearModelFit, contrasts: pd.DataFrame) -> LinearModelFit:
    """
    Re-expresses a fit in terms of contrasts of its coefficients.

    Args:
        fit (LinearModelFit): Output of lm_fit.
        contrasts (pd.DataFrame): Coefficients x contrasts matrix.

    Returns:
        LinearModelFit: Fit whose coefficients are the contrasts.
    """
    missing = [c for c in fit.coefficients.columns if c not in contrasts.index]
    if missing:
        raise ContrastDesignError(f"Contrast matrix lacks coefficients: {missing}")
    c = contrasts.loc[list(fit.coefficients.columns)].to_numpy(dtype=float)
    cov = c.T @ fit.cov_coefficients.to_numpy() @ c
    columns = list(contrasts.columns)
    stdev = np.tile(np.sqrt(np.diag(cov)), (len(fit.coefficients), 1))
    return replace(
        fit,
        coefficients=pd.DataFrame(fit.coefficients.to_numpy() @ c, index=fit.coefficients.index, columns=columns),
        stdev_unscaled=pd.DataFrame(stdev, index=fit.coefficients.index, columns=columns),
        cov_coefficients=pd.DataFrame(cov, index=columns, columns=columns),
        t=None,
        p_value=None,
    )


def trigamma_inverse(x: float) -> float:
    """
    Solves trigamma(y) = x for y by Newton iteration.
    """
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x
    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = special.polygamma(1, y)
        dif = tri * (1 - tri / x) / special.polygamma(2, y)
        y += dif
        if -dif / y < 1e-8:
            break
    else:
        logger.warning("trigamma_inverse: iteration limit exceeded")
    return float(y)


def fit_f_dist(s2: np.ndarray, df1: float):
    """
    Moment estimation of the scaled F distribution of sample variances.

    Args:
        s2 (np.ndarray): Residual variances, one per gene.
        df1 (float): Residual degrees of freedom.

    Returns:
        tuple: (s2_prior, df_prior); df_prior is inf when variances show no extra spread.
    """
    x = np.asarray(s2, dtype=float)
    x = x[np.isfinite(x)]
    if x.size == 0 or df1 <= 0:
        return np.nan, 0.0
    if x.size == 1:
        return float(x[0]), 0.0

    x = np.maximum(x, 0)
    m = np.median(x)
    if m == 0:
        logger.warning("More than half of residual variances are exactly zero: eBayes unreliable")
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    z = np.log(x)
    e = z - special.digamma(df1 / 2) + np.log(df1 / 2)
    emean = e.mean()
    evar = ((e - emean) ** 2).sum() / (x.size - 1)
    evar -= special.polygamma(1, df1 / 2)

    if evar > 0:
        df2 = 2 * trigamma_inverse(evar)
        s20 = float(np.exp(emean + special.digamma(df2 / 2) - np.log(df2 / 2)))
    else:
        df2 = np.inf
        s20 = float(x.mean())
    return s20, df2


def e_bayes(fit: LinearModelFit) -> LinearModelFit:
    """
    Moderates the standard errors of a fit towards a common prior variance.

    Args:
        fit (LinearModelFit): Output of lm_fit or contrasts_fit.

    Returns:
        LinearModelFit: Fit with prior, posterior variances, moderated t and p-values.
    """
    if fit.df_residual <= 0:
        raise ContrastDesignError("No residual degrees of freedom; replicate samples are required.")

    s2 = (fit.sigma ** 2).to_numpy()
    s2_prior, df_prior = fit_f_dist(s2, fit.df_residual)
    if np.isfinite(df_prior):
        s2_post = (fit.df_residual * s2 + df_prior * s2_prior) / (fit.df_residual + df_prior)
    else:
        s2_post = np.full_like(s2, s2_prior)

    t = fit.coefficients.to_numpy() / fit.stdev_unscaled.to_numpy() / np.sqrt(s2_post)[:, None]
    df_pooled = fit.df_residual * len(s2)
    df_total = min(fit.df_residual + df_prior, df_pooled)
    p_value = 2 * stats.t.sf(np.abs(t), df_total)

    index, columns = fit.coefficients.index, fit.coefficients.columns
    return replace(
        fit,
        df_prior=df_prior,
        s2_prior=s2_prior,
        s2_post=pd.Series(s2_post, index=index),
        t=pd.DataFrame(t, index=index, columns=columns),
        df_total=df_total,
        p_value=pd.DataFrame(p_value, index=index, columns=columns),
    )
