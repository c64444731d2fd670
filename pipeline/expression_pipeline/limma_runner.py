# File: pipeline/expression_pipeline/limma_runner.py
"""
Runs limma's lmFit -> contrasts.fit -> eBayes through Rscript.

The expression matrix, design and contrast matrix are exported as TSV into a scratch
directory, the generated R script fits the model there, and the moderated statistics
are read back into a LinearModelFit aligned with the input genes.
"""

import logging
import os
import tempfile
from typing import Optional

import pandas as pd

from config.logger_config import configure_logger
from pipeline.expression_pipeline.linear_model import LinearModelFit
from utils.exceptions import DifferentialExpressionError
from utils.r_runner import r_str, resolve_rscript, run_r_script

# LinearModelFit field -> table written by the R job
MATRIX_OUTPUTS = {
    "coefficients": "coefficients.out.tsv",
    "stdev_unscaled": "stdev_unscaled.out.tsv",
    "t": "t.out.tsv",
    "p_value": "p_value.out.tsv",
}
GENE_OUTPUT = "genes.out.tsv"
COVARIANCE_OUTPUT = "cov_coefficients.out.tsv"
SUMMARY_OUTPUT = "summary.out.tsv"


def _read_table(path: str) -> pd.DataFrame:
    return pd.read_csv(path, sep="\t", index_col=0)


class LimmaContrastFit:
    """
    Moderated one-vs-rest contrast fit for one study, computed by limma in R.

    Attributes:
        study_id (str): Study the fit belongs to; used in errors and job names.
        rscript (Optional[str]): Rscript executable; PATH lookup when None.
    """

    def __init__(self, study_id: str, rscript: Optional[str] = None, logger: Optional[logging.Logger] = None) -> None:
        self.study_id = study_id
        self.rscript = rscript
        self.logger = logger or configure_logger(
            name="LimmaContrastFit",
            log_file="limma_runner.log",
            level=logging.INFO,
            output="both"
        )

    def build_r_script(self, work_dir: str) -> str:
        """
        Composes the R script that fits the contrasts and exports every table of the fit.

        Args:
            work_dir (str): Directory holding expr.tsv, design.tsv and contrasts.tsv.

        Returns:
            str: R source.
        """
        lines = [
            "suppressPackageStartupMessages(library(limma))",
            f"work_dir <- {r_str(work_dir)}",
            "read_matrix <- function(name) {",
            "  as.matrix(read.delim(file.path(work_dir, name), row.names = 1, check.names = FALSE,",
            "                       quote = \"\", comment.char = \"\", na.strings = character(0)))",
            "}",
            "write_matrix <- function(x, name) {",
            "  write.table(x, file.path(work_dir, name), sep = \"\\t\", quote = FALSE, col.names = NA)",
            "}",
            "expr <- read_matrix(\"expr.tsv\")",
            "design <- read_matrix(\"design.tsv\")",
            "contrasts <- read_matrix(\"contrasts.tsv\")",
            "fit <- lmFit(expr, design)",
            "fit <- contrasts.fit(fit, contrasts)",
            "fit <- eBayes(fit)",
            f"write_matrix(fit$coefficients, {r_str(MATRIX_OUTPUTS['coefficients'])})",
            f"write_matrix(fit$stdev.unscaled, {r_str(MATRIX_OUTPUTS['stdev_unscaled'])})",
            f"write_matrix(fit$t, {r_str(MATRIX_OUTPUTS['t'])})",
            f"write_matrix(fit$p.value, {r_str(MATRIX_OUTPUTS['p_value'])})",
            f"write_matrix(fit$cov.coefficients, {r_str(COVARIANCE_OUTPUT)})",
            f"write_matrix(data.frame(sigma = fit$sigma, s2_post = fit$s2.post), {r_str(GENE_OUTPUT)})",
            "summary <- data.frame(df_residual = fit$df.residual[1], df_prior = fit$df.prior[1],",
            "                      s2_prior = fit$s2.prior[1], df_total = fit$df.total[1])",
            f"write.table(summary, file.path(work_dir, {r_str(SUMMARY_OUTPUT)}), sep = \"\\t\", quote = FALSE, row.names = FALSE)",
            "",
        ]
        return "\n".join(lines)

    @staticmethod
    def write_inputs(work_dir: str, expr: pd.DataFrame, design: pd.DataFrame, contrasts: pd.DataFrame) -> None:
        """
        Exports the model inputs; design rows are labelled with the expression columns.
        """
        expr.to_csv(os.path.join(work_dir, "expr.tsv"), sep="\t")
        design.set_axis(list(expr.columns), axis=0).to_csv(os.path.join(work_dir, "design.tsv"), sep="\t")
        contrasts.to_csv(os.path.join(work_dir, "contrasts.tsv"), sep="\t")

    def read_outputs(self, work_dir: str, expr: pd.DataFrame) -> LinearModelFit:
        """
        Reads the tables written by the R job back into a LinearModelFit.

        Gene rows come back in input order, so they are relabelled with expr's index
        instead of the names R round-tripped.

        Raises:
            DifferentialExpressionError: If a table is missing or has the wrong number of genes.
        """
        expected = list(MATRIX_OUTPUTS.values()) + [GENE_OUTPUT, COVARIANCE_OUTPUT, SUMMARY_OUTPUT]
        missing = [name for name in expected if not os.path.exists(os.path.join(work_dir, name))]
        if missing:
            raise DifferentialExpressionError(self.study_id, f"limma wrote no {missing}")

        tables = {}
        for field, name in list(MATRIX_OUTPUTS.items()) + [("genes", GENE_OUTPUT)]:
            table = _read_table(os.path.join(work_dir, name))
            if len(table) != len(expr):
                raise DifferentialExpressionError(
                    self.study_id, f"{name} has {len(table)} rows for {len(expr)} genes"
                )
            table.index = expr.index
            tables[field] = table

        summary = pd.read_csv(os.path.join(work_dir, SUMMARY_OUTPUT), sep="\t", dtype=str).iloc[0]
        # R writes an infinite prior df as "Inf"
        values = {key: float(value) for key, value in summary.items()}
        return LinearModelFit(
            coefficients=tables["coefficients"],
            stdev_unscaled=tables["stdev_unscaled"],
            sigma=tables["genes"]["sigma"].rename(None),
            df_residual=int(values["df_residual"]),
            cov_coefficients=_read_table(os.path.join(work_dir, COVARIANCE_OUTPUT)),
            df_prior=values["df_prior"],
            s2_prior=values["s2_prior"],
            s2_post=tables["genes"]["s2_post"].rename(None),
            t=tables["t"],
            df_total=values["df_total"],
            p_value=tables["p_value"],
        )

    def fit(self, expr: pd.DataFrame, design: pd.DataFrame, contrasts: pd.DataFrame) -> LinearModelFit:
        """
        Fits the design to every gene and moderates the contrasts with limma.

        Args:
            expr (pd.DataFrame): Genes x samples matrix.
            design (pd.DataFrame): Samples x coefficients design, rows in expr column order.
            contrasts (pd.DataFrame): Coefficients x contrasts matrix.

        Returns:
            LinearModelFit: Moderated contrast fit indexed like expr.

        Raises:
            DifferentialExpressionError: If Rscript is unavailable or the R job fails.
        """
        if len(design) != expr.shape[1]:
            raise DifferentialExpressionError(
                self.study_id, f"design has {len(design)} rows for {expr.shape[1]} samples"
            )
        rscript = resolve_rscript(self.rscript)
        if not rscript:
            raise DifferentialExpressionError(self.study_id, "Rscript executable not found (set RSCRIPT or 'rscript' in config)")

        with tempfile.TemporaryDirectory(prefix=f"limma_{self.study_id}_") as work_dir:
            self.write_inputs(work_dir, expr, design, contrasts)
            self.logger.info(f"Running limma for {self.study_id} on {expr.shape[0]} genes x {expr.shape[1]} samples")
            result = run_r_script(self.build_r_script(work_dir), rscript, job_name=f"limma_{self.study_id}")
            if result.returncode != 0:
                raise DifferentialExpressionError(self.study_id, f"Rscript exited with code {result.returncode}")
            fit = self.read_outputs(work_dir, expr)

        self.logger.info(f"limma fitted {fit.coefficients.shape[1]} contrasts for {self.study_id}")
        return fit
