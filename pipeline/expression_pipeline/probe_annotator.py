# File: pipeline/expression_pipeline/probe_annotator.py

import gzip
import io
import logging
import os
from typing import Optional

import pandas as pd

from config.logger_config import configure_logger
from utils.exceptions import AnnotationError, NormalizationError
from utils.r_runner import r_str, resolve_rscript, run_r_script

# Placeholders GEO and Bioconductor use for "no gene"
MISSING_SYMBOLS = {"", "---", "NA", "<NA>", "nan", "null"}


def read_annotation_table(path: str) -> pd.DataFrame:
    """
    Reads a platform annotation table as strings.

    Handles GEO SOFT files (.annot.gz, family.soft.gz) by slicing between the
    !platform_table_begin/end markers, and plain TSV files after skipping leading
    '#', '!' and '^' comment lines.

    Args:
        path (str): Path to the annotation file, optionally gzip-compressed.

    Returns:
        pd.DataFrame: Annotation table with its original header.
    """
    opener = gzip.open if path.endswith(".gz") else open
    with opener(path, "rt", encoding="utf-8", errors="replace") as fh:
        lines = fh.readlines()

    markers = [line.strip() for line in lines]
    if "!platform_table_begin" in markers:
        start = markers.index("!platform_table_begin") + 1
        end = markers.index("!platform_table_end") if "!platform_table_end" in markers else len(lines)
    else:
        start = 0
        while start < len(lines) and lines[start][:1] in {"#", "!", "^"}:
            start += 1
        end = len(lines)

    table = pd.read_csv(io.StringIO("".join(lines[start:end])), sep="\t", dtype=str, low_memory=False)
    table.columns = [str(c).strip().strip('"') for c in table.columns]
    return table.fillna("")


def clean_symbol(raw: str, subfield_separator: Optional[str] = None, subfield_index: int = 0) -> Optional[str]:
    """
    Extracts a single gene symbol from an annotation cell.

    Multi-gene cells ("A /// B") keep the first entry. When subfield_separator is set
    (e.g. " // " for Affymetrix gene_assignment), the field at subfield_index is used.

    Args:
        raw (str): Raw annotation cell.
        subfield_separator (Optional[str]): Separator of fields within one entry.
        subfield_index (int): Field holding the symbol.

    Returns:
        Optional[str]: The symbol, or None if the probe has no gene.
    """
    if raw is None or pd.isna(raw):
        return None
    entry = str(raw).split("///")[0].strip()
    if subfield_separator:
        parts = entry.split(subfield_separator.strip())
        entry = parts[subfield_index].strip() if len(parts) > subfield_index else ""
    if entry in MISSING_SYMBOLS:
        return None
    return entry


def load_platform_annotation(
    path: str,
    probe_column: str = "ID",
    symbol_column: str = "Gene symbol",
    subfield_separator: Optional[str] = None,
    subfield_index: int = 0,
) -> pd.Series:
    """
    Reads a platform annotation and returns one cleaned gene symbol per probe.

    Args:
        path (str): Annotation file.
        probe_column (str): Column holding probe IDs.
        symbol_column (str): Column holding gene symbols.
        subfield_separator (Optional[str]): See clean_symbol.
        subfield_index (int): See clean_symbol.

    Returns:
        pd.Series: Gene symbol indexed by probe ID; probes without a symbol are removed.

    Raises:
        AnnotationError: If the probe or symbol column is absent.
    """
    table = read_annotation_table(path)
    missing = [c for c in (probe_column, symbol_column) if c not in table.columns]
    if missing:
        raise AnnotationError(path, missing)

    symbols = table[symbol_column].map(lambda raw: clean_symbol(raw, subfield_separator, subfield_index))
    annotation = pd.Series(symbols.to_numpy(), index=table[probe_column].str.strip().to_numpy(), name="gene")
    return annotation.dropna()


def annotate_and_collapse(expr: pd.DataFrame, annotation: pd.Series) -> pd.DataFrame:
    """
    Attaches gene symbols to probes and keeps the per-sample maximum across probes of a gene.

    Probes without a symbol are dropped.

    Args:
        expr (pd.DataFrame): Probes x samples matrix.
        annotation (pd.Series): Gene symbol indexed by probe ID.

    Returns:
        pd.DataFrame: Genes x samples matrix, index "gene" sorted and unique.
    """
    annotation = annotation[~annotation.index.duplicated(keep="first")]
    genes = pd.Series(expr.index.astype(str), index=expr.index).map(annotation)
    keep = genes.notna().to_numpy()
    collapsed = expr.loc[keep].groupby(genes[keep].to_numpy(), sort=True).max()
    collapsed.index.name = "gene"
    collapsed.columns.name = None
    return collapsed


class ProbeAnnotator:
    """
    Loads the platform annotation of one study and summarizes its probes to genes.

    Attributes:
        study_id (str): GEO series accession.
        annotation_config (dict): Path, column names and symbol parsing options.
    """

    def __init__(
        self,
        study_id: str,
        annotation_config: dict,
        rscript: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not annotation_config or not annotation_config.get("path"):
            raise ValueError(f"Annotation path for {study_id} cannot be empty.")
        self.study_id = study_id
        self.annotation_config = annotation_config
        self.path = annotation_config["path"]
        self.rscript = rscript
        self.logger = logger or configure_logger(
            name="ProbeAnnotator",
            log_file="probe_annotator.log",
            level=logging.INFO,
            output="both"
        )

    def build_export_script(self) -> str:
        """
        Composes the R script exporting PROBEID/SYMBOL pairs from a Bioconductor annotation package.
        """
        package = self.annotation_config["db_package"]
        return "\n".join([
            "suppressPackageStartupMessages({",
            "  library(annotate)",
            f"  library({r_str(package)}, character.only = TRUE)",
            "})",
            f"ids <- AnnotationDbi::keys(get({r_str(package)}), keytype = \"PROBEID\")",
            f"sym <- getSYMBOL(ids, {r_str(package)})",
            "out <- data.frame(PROBEID = ids, SYMBOL = unname(sym))",
            f"write.table(out, {r_str(self.path)}, sep = \"\\t\", quote = FALSE, row.names = FALSE)",
            "",
        ])

    def ensure_annotation(self) -> str:
        """
        Makes sure the annotation file exists, exporting it from R when a db_package is configured.

        Returns:
            str: Path to the annotation file.

        Raises:
            FileNotFoundError: If the file is missing and cannot be exported.
        """
        if os.path.exists(self.path):
            return self.path

        if not self.annotation_config.get("db_package"):
            raise FileNotFoundError(f"Annotation file for {self.study_id} not found: {self.path}")

        rscript = resolve_rscript(self.rscript)
        if not rscript:
            raise NormalizationError(self.study_id, "Rscript executable not found for annotation export")
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        self.logger.info(f"Exporting {self.annotation_config['db_package']} symbols to {self.path}")
        result = run_r_script(self.build_export_script(), rscript, job_name=f"annotation_{self.study_id}")
        if result.returncode != 0 or not os.path.exists(self.path):
            raise FileNotFoundError(
                f"Annotation export for {self.study_id} failed; expected {self.path}"
            )
        return self.path

    def load_annotation(self) -> pd.Series:
        """
        Reads the annotation and returns the cleaned symbol per probe.

        Returns:
            pd.Series: Gene symbol indexed by probe ID (probes without a symbol removed).

        Raises:
            AnnotationError: If the configured probe or symbol column is absent.
        """
        path = self.ensure_annotation()
        try:
            annotation = load_platform_annotation(
                path,
                probe_column=self.annotation_config.get("probe_column", "ID"),
                symbol_column=self.annotation_config.get("symbol_column", "Gene symbol"),
                subfield_separator=self.annotation_config.get("subfield_separator"),
                subfield_index=int(self.annotation_config.get("subfield_index") or 0),
            )
        except AnnotationError as e:
            self.logger.error(f"{self.study_id}: {e}")
            raise
        self.logger.info(f"Loaded {len(annotation)} annotated probes for {self.study_id} from {path}")
        return annotation

    def collapse(self, expr: pd.DataFrame) -> pd.DataFrame:
        """
        Summarizes a probe-level matrix of this study to genes.

        Args:
            expr (pd.DataFrame): Probes x samples matrix.

        Returns:
            pd.DataFrame: Genes x samples matrix.
        """
        gene_table = annotate_and_collapse(expr, self.load_annotation())
        self.logger.info(
            f"Collapsed {expr.shape[0]} probes to {gene_table.shape[0]} genes for {self.study_id}"
        )
        if gene_table.empty:
            self.logger.warning(f"No probe of {self.study_id} matched the annotation in {self.path}")
        return gene_table
