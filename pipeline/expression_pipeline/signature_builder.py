# File: pipeline/expression_pipeline/signature_builder.py

import csv
import logging
import os
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

from config.logger_config import configure_logger
from pipeline.expression_pipeline.limma_runner import LimmaContrastFit
from pipeline.expression_pipeline.linear_model import (
    LinearModelFit,
    contrasts_fit,
    e_bayes,
    group_design,
    lm_fit,
    one_vs_rest_contrasts,
)
from utils.exceptions import ContrastDesignError


def score_contrasts(fit: LinearModelFit) -> pd.DataFrame:
    """
    Unsigned combined-effect score |coefficient x log10(p)| per gene and contrast.
    """
    if fit.p_value is None:
        raise ValueError("Fit has no p-values; run e_bayes first.")
    with np.errstate(divide="ignore"):
        return (fit.coefficients * np.log10(fit.p_value)).abs()


def select_signature_genes(fit: LinearModelFit, top_k: int) -> List[str]:
    """
    Takes the top_k highest-scoring genes of every contrast.

    Genes are concatenated contrast by contrast and deduplicated keeping the first
    occurrence. Ties keep matrix row order.

    Args:
        fit (LinearModelFit): Moderated contrast fit.
        top_k (int): Genes taken per contrast.

    Returns:
        List[str]: Selected genes.
    """
    if top_k < 1:
        raise ValueError("top_k must be positive.")
    scores = score_contrasts(fit)
    selected: List[str] = []
    for contrast in scores.columns:
        ranked = scores[contrast].sort_values(ascending=False, kind="mergesort", na_position="last")
        selected.extend(ranked.index[:top_k])
    return list(dict.fromkeys(selected))


def build_signature_matrix(expr: pd.DataFrame, metadata: pd.DataFrame, genes: List[str]) -> pd.DataFrame:
    """
    Mean expression per group1 label for the selected genes.

    Args:
        expr (pd.DataFrame): Genes x samples matrix with display-name columns.
        metadata (pd.DataFrame): Sample metadata covering expr's columns.
        genes (List[str]): Genes to keep.

    Returns:
        pd.DataFrame: Genes (expr row order) x groups (sorted) matrix, index named "gene".
    """
    group_of = metadata.set_index("name")["group1"]
    selected = expr.loc[expr.index.isin(genes)]
    labels = [group_of.get(name) for name in selected.columns]
    if any(label is None for label in labels):
        raise ContrastDesignError("Signature samples without metadata rows.")
    signature = selected.T.groupby(labels, sort=True).mean().T
    signature.index.name = "gene"
    signature.columns.name = None
    return signature


def write_signature(signature: pd.DataFrame, path: str) -> str:
    """
    Writes a signature matrix as an unquoted tab-separated table with a leading gene column.
    """
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    signature.reset_index().to_csv(path, sep="\t", index=False, quoting=csv.QUOTE_NONE)
    return path


class SignatureBuilder:
    """
    Derives a group signature matrix for one reference study.

    Attributes:
        study_id (str): Reference study accession.
        groups (Optional[List[str]]): Ordered group levels; sorted labels when None.
        top_k (int): Genes taken per one-vs-rest contrast.
        engine (str): "limma" runs lmFit/contrasts.fit/eBayes in R; "python" uses the numpy port.
        rscript (Optional[str]): Rscript executable for the limma engine.
    """

    ENGINES = ("limma", "python")

    def __init__(
        self,
        study_id: str,
        groups: Optional[List[str]] = None,
        top_k: int = 50,
        engine: str = "limma",
        rscript: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if engine not in self.ENGINES:
            raise ValueError(f"Unknown differential expression engine '{engine}'. Expected one of {list(self.ENGINES)}.")
        self.study_id = study_id
        self.groups = list(groups) if groups else None
        self.top_k = int(top_k)
        self.engine = engine
        self.rscript = rscript
        self.logger = logger or configure_logger(
            name="SignatureBuilder",
            log_file="signature_builder.log",
            level=logging.INFO,
            output="both"
        )

    def fit(self, expr: pd.DataFrame, metadata: pd.DataFrame) -> LinearModelFit:
        """
        Fits the cell-means model and the one-vs-rest contrasts with empirical-Bayes moderation.

        Args:
            expr (pd.DataFrame): Batch-corrected slice of the study.
            metadata (pd.DataFrame): Sample metadata covering expr's columns.

        Returns:
            LinearModelFit: Moderated contrast fit.
        """
        group_of = metadata.set_index("name")["group1"]
        missing = [c for c in expr.columns if c not in group_of.index]
        if missing:
            raise ContrastDesignError(f"{self.study_id}: samples without metadata: {missing}")
        groups = [group_of[c] for c in expr.columns]

        design = group_design(groups, self.groups)
        contrasts = one_vs_rest_contrasts(list(design.columns))
        if self.engine == "limma":
            fit = LimmaContrastFit(self.study_id, rscript=self.rscript, logger=self.logger).fit(expr, design, contrasts)
        else:
            fit = e_bayes(contrasts_fit(lm_fit(expr, design), contrasts))
        self.logger.info(
            f"{self.study_id}: fitted {len(contrasts.columns)} contrasts on {expr.shape[0]} genes with {self.engine} "
            f"(df_residual={fit.df_residual}, df_prior={fit.df_prior:.2f})"
        )
        return fit

    def build(self, expr: pd.DataFrame, metadata: pd.DataFrame) -> Tuple[pd.DataFrame, List[str], LinearModelFit]:
        """
        Runs the contrasts, selects signature genes and summarizes them per group.

        Returns:
            Tuple[pd.DataFrame, List[str], LinearModelFit]: Signature matrix, selected genes, fit.
        """
        fit = self.fit(expr, metadata)
        genes = select_signature_genes(fit, self.top_k)
        signature = build_signature_matrix(expr, metadata, genes)
        self.logger.info(f"{self.study_id}: signature of {len(genes)} genes x {signature.shape[1]} groups")
        return signature, genes, fit
