# File: pipeline/expression_pipeline/sample_metadata.py
# Sample metadata: GSM accession -> display name, study, stage and group labels.

import os
import re
from typing import Iterable, List, Optional

import pandas as pd

from utils.exceptions import SampleMetadataError

SAMPLE_COLUMNS = ["GSM", "name", "GSE", "stage", "group1", "group2"]


def load_sample_metadata(path: str) -> pd.DataFrame:
    """
    Reads the headerless six-column sample metadata TSV.

    Args:
        path (str): Path to the metadata file.

    Returns:
        pd.DataFrame: Columns GSM, name, GSE, stage, group1, group2; empty cells are "".

    Raises:
        FileNotFoundError: If the file does not exist.
        SampleMetadataError: If the file does not have six columns or repeats an accession.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Sample metadata file not found: {path}")

    metadata = pd.read_csv(path, sep="\t", header=None, dtype=str, keep_default_na=False)
    if metadata.shape[1] != len(SAMPLE_COLUMNS):
        raise SampleMetadataError(
            [path], reason=f"expected {len(SAMPLE_COLUMNS)} columns, found {metadata.shape[1]}"
        )
    metadata.columns = SAMPLE_COLUMNS
    metadata = metadata.apply(lambda column: column.str.strip())

    duplicated = metadata.loc[metadata["GSM"].duplicated(), "GSM"].tolist()
    if duplicated:
        raise SampleMetadataError(duplicated, reason="duplicated accession")
    return metadata.reset_index(drop=True)


def clean_sample_name(column: str) -> str:
    """
    Turns a raw sample column (e.g. "GSM556617_CFU-E_1.CEL.gz") into its GSM accession.
    """
    name = re.sub(r"_.*", "", str(column))
    return re.sub(r"\.CEL(\.gz)?$", "", name, flags=re.IGNORECASE)


def order_metadata(metadata: pd.DataFrame, sample_ids: Iterable[str]) -> pd.DataFrame:
    """
    Returns the metadata rows of sample_ids, in that order.

    Args:
        metadata (pd.DataFrame): Loaded sample metadata.
        sample_ids (Iterable[str]): GSM accessions in matrix column order.

    Returns:
        pd.DataFrame: Ordered metadata with a fresh index.

    Raises:
        SampleMetadataError: If an accession has no metadata row or display names collide.
    """
    sample_ids = list(sample_ids)
    indexed = metadata.set_index("GSM", drop=False)
    missing = [s for s in sample_ids if s not in indexed.index]
    if missing:
        raise SampleMetadataError(missing)

    ordered = indexed.loc[sample_ids].reset_index(drop=True)
    repeated = ordered.loc[ordered["name"].duplicated(), "name"].tolist()
    if repeated:
        raise SampleMetadataError(repeated, reason="duplicated display name")
    return ordered


def has_group(metadata: pd.DataFrame) -> pd.Series:
    """
    Boolean mask of samples carrying a non-empty group1 label.
    """
    return metadata["group1"].fillna("").str.strip() != ""


def select_samples(
    metadata: pd.DataFrame, studies: Optional[List[str]] = None, require_group: bool = True
) -> pd.DataFrame:
    """
    Filters metadata to the given studies and, by default, to group-labelled samples.

    Row order is preserved.

    Args:
        metadata (pd.DataFrame): Ordered sample metadata.
        studies (Optional[List[str]]): Study accessions to keep (None keeps all).
        require_group (bool): Drop samples with an empty group1.

    Returns:
        pd.DataFrame: Filtered metadata.
    """
    mask = pd.Series(True, index=metadata.index)
    if studies is not None:
        mask &= metadata["GSE"].isin(studies)
    if require_group:
        mask &= has_group(metadata)
    return metadata.loc[mask]


def select_batch_samples(metadata: pd.DataFrame, studies: List[str]) -> pd.DataFrame:
    """
    Group-labelled samples of the batch studies, in metadata order.
    """
    return select_samples(metadata, studies=studies, require_group=True)
