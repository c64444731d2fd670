# File: pipeline/expression_pipeline/expression_merger.py

import logging
from functools import reduce
from typing import Dict, Optional, Tuple

import pandas as pd

from config.logger_config import configure_logger
from pipeline.expression_pipeline.sample_metadata import clean_sample_name, order_metadata, select_samples
from utils.exceptions import EmptyJoinError, SampleMetadataError


def merge_gene_tables(tables: Dict[str, pd.DataFrame]) -> pd.DataFrame:
    """
    Inner-joins gene-level tables on gene symbol.

    Only genes present in every table survive. Row order follows the first table.

    Args:
        tables (Dict[str, pd.DataFrame]): Gene-level matrix per study, in merge order.

    Returns:
        pd.DataFrame: Genes x samples matrix with the studies' columns side by side.

    Raises:
        ValueError: If no table is given or a table repeats a gene symbol.
        SampleMetadataError: If two tables share a sample column.
        EmptyJoinError: If no gene is shared by all tables.
    """
    if not tables:
        raise ValueError("At least one gene-level table is required.")

    for study_id, table in tables.items():
        if not table.index.is_unique:
            raise ValueError(f"Gene symbols of {study_id} are not unique; collapse probes first.")

    columns = pd.Index([c for table in tables.values() for c in table.columns])
    if columns.has_duplicates:
        raise SampleMetadataError(columns[columns.duplicated()].unique().tolist(), reason="sample in several studies")

    combined = reduce(lambda left, right: left.join(right, how="inner"), tables.values())
    combined.index.name = "gene"
    if combined.empty:
        raise EmptyJoinError(list(tables.keys()))
    return combined


def apply_display_names(combined: pd.DataFrame, metadata: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Renames raw sample columns to display names using the sample metadata.

    Args:
        combined (pd.DataFrame): Merged matrix with raw sample columns.
        metadata (pd.DataFrame): Loaded sample metadata.

    Returns:
        Tuple[pd.DataFrame, pd.DataFrame]: The renamed matrix and the metadata of its samples,
        ordered like its columns.
    """
    accessions = [clean_sample_name(c) for c in combined.columns]
    ordered = order_metadata(metadata, accessions)
    renamed = combined.copy()
    renamed.columns = ordered["name"].tolist()
    return renamed, ordered


def slice_study(matrix: pd.DataFrame, metadata: pd.DataFrame, study_id: str) -> pd.DataFrame:
    """
    Selects the group-labelled samples of one study from a matrix with display-name columns.

    Args:
        matrix (pd.DataFrame): Combined or batch-corrected matrix.
        metadata (pd.DataFrame): Ordered sample metadata.
        study_id (str): Study accession.

    Returns:
        pd.DataFrame: Column slice, in metadata order.
    """
    names = select_samples(metadata, studies=[study_id])["name"]
    return matrix.loc[:, [n for n in names if n in matrix.columns]]


class ExpressionMerger:
    """
    Combines per-study gene tables into one matrix keyed by human-readable sample names.
    """

    def __init__(self, metadata: pd.DataFrame, logger: Optional[logging.Logger] = None) -> None:
        self.metadata = metadata
        self.logger = logger or configure_logger(
            name="ExpressionMerger",
            log_file="expression_merger.log",
            level=logging.INFO,
            output="both"
        )

    def merge(self, tables: Dict[str, pd.DataFrame]) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Joins the gene tables and maps their columns to display names.

        Args:
            tables (Dict[str, pd.DataFrame]): Gene-level matrix per study.

        Returns:
            Tuple[pd.DataFrame, pd.DataFrame]: Combined matrix and its ordered sample metadata.
        """
        try:
            combined = merge_gene_tables(tables)
        except EmptyJoinError as e:
            self.logger.error(f"{e}. Check that all annotations use the same symbol nomenclature.")
            raise
        self.logger.info(
            f"Combined {len(tables)} studies: {combined.shape[0]} shared genes x {combined.shape[1]} samples"
        )

        combined, ordered = apply_display_names(combined, self.metadata)
        unused = len(self.metadata) - len(ordered)
        if unused:
            self.logger.info(f"{unused} metadata rows have no matching sample in the combined matrix")
        return combined, ordered

    def slice_studies(self, matrix: pd.DataFrame, metadata: pd.DataFrame, study_ids) -> Dict[str, pd.DataFrame]:
        """
        Returns the group-labelled slice of every listed study.
        """
        slices = {}
        for study_id in study_ids:
            slices[study_id] = slice_study(matrix, metadata, study_id)
            self.logger.info(f"Slice {study_id}: {slices[study_id].shape[1]} group-labelled samples")
        return slices
