# File: pipeline/expression_pipeline/expression_normalizer.py

import glob
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from config.logger_config import configure_logger
from utils.exceptions import NormalizationError
from utils.r_runner import r_str, resolve_rscript, run_r_script


def quantile_normalize(expr: pd.DataFrame) -> pd.DataFrame:
    """
    Quantile-normalizes the columns of an expression matrix.

    Each value is replaced by the mean, across samples, of the values holding the same rank.
    Tied values share their average rank and receive the reference distribution linearly
    interpolated at that rank, as limma's normalizeQuantiles(ties=TRUE) does.

    Args:
        expr (pd.DataFrame): Probes x samples matrix without missing values.

    Returns:
        pd.DataFrame: Matrix of identical shape whose columns share one distribution.
    """
    if expr.empty:
        return expr.copy()
    n = len(expr)
    reference = np.sort(expr.to_numpy(dtype=float), axis=0).mean(axis=1)
    ranks = expr.rank(method="average").to_numpy(dtype=float) - 1
    normalized = np.interp(ranks, np.arange(n, dtype=float), reference)
    return pd.DataFrame(normalized, index=expr.index, columns=expr.columns)


class ExpressionNormalizer(ABC):
    """
    Base class for per-study normalization backends producing a probe-level matrix.

    Attributes:
        study_id (str): GEO series accession.
        raw_dir (str): Directory with the raw sample files of the study.
    """

    def __init__(self, study_id: str, raw_dir: str, logger: Optional[logging.Logger] = None) -> None:
        if not study_id:
            raise ValueError("Study ID cannot be empty.")
        self.study_id = study_id
        self.raw_dir = raw_dir
        self.logger = logger or configure_logger(
            name="ExpressionNormalizer",
            log_file="expression_normalizer.log",
            level=logging.INFO,
            output="both"
        )

    def _require_raw_dir(self) -> None:
        if not os.path.isdir(self.raw_dir):
            raise FileNotFoundError(f"Raw data directory for {self.study_id} not found: {self.raw_dir}")

    @abstractmethod
    def normalize(self) -> pd.DataFrame:
        """
        Runs the backend.

        Returns:
            pd.DataFrame: Probes x samples matrix, index named "ID".
        """
        raise NotImplementedError("Subclasses must implement this method.")


class ScanNormalizer(ExpressionNormalizer):
    """
    Normalizes CEL files one sample at a time with SCAN.UPC, run through Rscript.
    """

    def __init__(
        self,
        study_id: str,
        raw_dir: str,
        annotation_package: Optional[str] = None,
        rscript: Optional[str] = None,
        file_pattern: str = "*",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(study_id, raw_dir, logger=logger)
        self.annotation_package = annotation_package
        self.rscript = rscript
        self.file_pattern = file_pattern

    def build_r_script(self, output_path: str) -> str:
        """
        Composes the R script that runs SCAN and exports the expression matrix as TSV.

        Args:
            output_path (str): Where R writes the TSV.

        Returns:
            str: R source.
        """
        pattern = os.path.join(self.raw_dir, self.file_pattern)
        scan_args = r_str(pattern)
        if self.annotation_package:
            scan_args += f", annotationPackageName = {r_str(self.annotation_package)}"
        return "\n".join([
            "suppressPackageStartupMessages(library(SCAN.UPC))",
            f"eset <- SCAN({scan_args})",
            "expr <- exprs(eset)",
            "out <- data.frame(ID = rownames(expr), expr, check.names = FALSE)",
            f"write.table(out, {r_str(output_path)}, sep = \"\\t\", quote = FALSE, row.names = FALSE)",
            "",
        ])

    def normalize(self) -> pd.DataFrame:
        self._require_raw_dir()
        rscript = resolve_rscript(self.rscript)
        if not rscript:
            raise NormalizationError(self.study_id, "Rscript executable not found (set RSCRIPT or 'rscript' in config)")

        with tempfile.TemporaryDirectory(prefix=f"scan_{self.study_id}_") as tmpdir:
            output_path = os.path.join(tmpdir, f"SCAN.{self.study_id}.tsv")
            self.logger.info(f"Running SCAN for {self.study_id} on {self.raw_dir}")
            result = run_r_script(self.build_r_script(output_path), rscript, job_name=f"scan_{self.study_id}")
            if result.returncode != 0:
                raise NormalizationError(self.study_id, f"Rscript exited with code {result.returncode}")
            if not os.path.exists(output_path):
                raise NormalizationError(self.study_id, "SCAN produced no output table")
            expr = pd.read_csv(output_path, sep="\t", dtype={"ID": str}).set_index("ID")

        if expr.empty:
            raise NormalizationError(self.study_id, "SCAN output table is empty")
        self.logger.info(f"SCAN normalized {expr.shape[1]} samples x {expr.shape[0]} probes for {self.study_id}")
        return expr


class QuantileNormalizer(ExpressionNormalizer):
    """
    Builds a probe-level matrix from GEO sample tables (GSM*.txt) and quantile-normalizes it.

    Sample tables are either headerless two-column MINiML tables or SOFT tables with an
    ID_REF/VALUE header. Values are log2-transformed when they look unlogged.
    """

    def __init__(self, study_id: str, raw_dir: str, log2: str = "auto", logger: Optional[logging.Logger] = None) -> None:
        super().__init__(study_id, raw_dir, logger=logger)
        if log2 not in {"auto", True, False}:
            raise ValueError("log2 must be 'auto', True or False.")
        self.log2 = log2

    def _sample_files(self):
        files = sorted(
            glob.glob(os.path.join(self.raw_dir, "GSM*.txt")) + glob.glob(os.path.join(self.raw_dir, "GSM*.txt.gz"))
        )
        if not files:
            raise NormalizationError(self.study_id, f"no GSM sample tables in {self.raw_dir}")
        return files

    @staticmethod
    def read_sample_table(path: str) -> pd.Series:
        """
        Reads one GEO sample table into a probe-indexed Series named after the sample file.

        Args:
            path (str): Path to a GSM table.

        Returns:
            pd.Series: Expression values indexed by probe ID.
        """
        sample_id = os.path.basename(path).split("-")[0].split(".")[0]
        table = pd.read_csv(path, sep="\t", header=None, dtype=str, comment="#")
        if table.iloc[0, 0] == "ID_REF":
            table = table.iloc[1:]
        values = pd.to_numeric(table.iloc[:, 1], errors="coerce")
        series = pd.Series(values.to_numpy(), index=table.iloc[:, 0].to_numpy(), name=sample_id)
        series.index.name = "ID"
        return series[~series.index.duplicated(keep="first")]

    def normalize(self) -> pd.DataFrame:
        self._require_raw_dir()
        columns = [self.read_sample_table(path) for path in self._sample_files()]
        expr = pd.concat(columns, axis=1, join="inner")

        before = len(expr)
        expr = expr.dropna()
        if before != len(expr):
            self.logger.warning(f"Dropped {before - len(expr)} probes with missing values for {self.study_id}")
        if expr.empty:
            raise NormalizationError(self.study_id, "no probe measured in every sample")

        take_log = self.log2 is True or (self.log2 == "auto" and expr.to_numpy().max() > 100)
        if take_log:
            expr = np.log2(expr.clip(lower=1.0))
        self.logger.info(
            f"Quantile normalizing {expr.shape[1]} samples x {expr.shape[0]} probes for {self.study_id} (log2={take_log})"
        )
        return quantile_normalize(expr)


def build_normalizer(
    study_id: str, study_config: dict, rscript: Optional[str] = None, logger: Optional[logging.Logger] = None
) -> ExpressionNormalizer:
    """
    Instantiates the backend configured for a study.

    Args:
        study_id (str): GEO series accession.
        study_config (dict): Resolved study configuration.
        rscript (Optional[str]): Rscript executable for the SCAN backend.
        logger (Optional[logging.Logger]): Logger shared with the pipeline.

    Returns:
        ExpressionNormalizer: Configured backend.
    """
    backend = study_config.get("backend", "scan")
    if backend == "scan":
        return ScanNormalizer(
            study_id,
            study_config["raw_dir"],
            annotation_package=study_config.get("annotation_package"),
            rscript=rscript,
            file_pattern=study_config.get("file_pattern", "*"),
            logger=logger,
        )
    if backend == "quantile":
        return QuantileNormalizer(study_id, study_config["raw_dir"], log2=study_config.get("log2", "auto"), logger=logger)
    raise ValueError(f"Unknown normalization backend '{backend}' for {study_id}")


def normalize_with_cache(
    normalizer: ExpressionNormalizer, cache_path: str, force: bool = False
) -> Tuple[pd.DataFrame, bool]:
    """
    Loads a cached normalized matrix or runs the normalizer and caches its result.

    Args:
        normalizer (ExpressionNormalizer): Backend to run on a cache miss.
        cache_path (str): Pickle file holding the normalized matrix.
        force (bool): Recompute even when the cache exists.

    Returns:
        Tuple[pd.DataFrame, bool]: The probe-level matrix and whether it came from the cache.
    """
    if os.path.exists(cache_path) and not force:
        normalizer.logger.info(f"Loading cached normalized matrix for {normalizer.study_id}: {cache_path}")
        return pd.read_pickle(cache_path), True

    expr = normalizer.normalize()
    os.makedirs(os.path.dirname(cache_path) or ".", exist_ok=True)
    expr.to_pickle(cache_path)
    normalizer.logger.info(f"Cached normalized matrix for {normalizer.study_id}: {cache_path}")
    return expr, False
