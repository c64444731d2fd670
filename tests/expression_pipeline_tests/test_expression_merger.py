# File: tests/expression_pipeline_tests/test_expression_merger.py

from unittest.mock import MagicMock

import pandas as pd
import pytest

from pipeline.expression_pipeline.expression_merger import (
    ExpressionMerger,
    apply_display_names,
    merge_gene_tables,
    slice_study,
)
from utils.exceptions import EmptyJoinError, SampleMetadataError


def _table(genes, columns, start=0.0):
    values = [[start + i + j for j in range(len(columns))] for i in range(len(genes))]
    frame = pd.DataFrame(values, index=pd.Index(genes, name="gene"), columns=columns)
    return frame


@pytest.fixture
def tables():
    return {
        "GSEA": _table(["ALAS2", "GATA1", "HBB", "KLF1"], ["GSM1_x.CEL.gz", "GSM2_x.CEL.gz"]),
        "GSEB": _table(["GATA1", "HBB", "KLF1", "TAL1"], ["GSM5.CEL", "GSM6.CEL"], start=10.0),
    }


def test_merge_gene_tables_inner_join(tables):
    """
    Test that only genes shared by all studies survive, in the first table's order.
    """
    combined = merge_gene_tables(tables)
    assert combined.index.tolist() == ["GATA1", "HBB", "KLF1"]
    assert combined.columns.tolist() == ["GSM1_x.CEL.gz", "GSM2_x.CEL.gz", "GSM5.CEL", "GSM6.CEL"]
    assert combined.loc["GATA1", "GSM5.CEL"] == 10.0
    assert combined.index.name == "gene"


def test_merge_gene_tables_empty_join():
    tables = {"GSEA": _table(["A"], ["GSM1"]), "GSEB": _table(["B"], ["GSM2"])}
    with pytest.raises(EmptyJoinError) as excinfo:
        merge_gene_tables(tables)
    assert excinfo.value.study_ids == ["GSEA", "GSEB"]


def test_merge_gene_tables_duplicate_genes():
    tables = {"GSEA": _table(["A", "A"], ["GSM1"])}
    with pytest.raises(ValueError):
        merge_gene_tables(tables)


def test_merge_gene_tables_shared_sample_column():
    tables = {"GSEA": _table(["A"], ["GSM1"]), "GSEB": _table(["A"], ["GSM1"])}
    with pytest.raises(SampleMetadataError):
        merge_gene_tables(tables)


def test_merge_gene_tables_requires_input():
    with pytest.raises(ValueError):
        merge_gene_tables({})


def test_apply_display_names(tables, sample_metadata):
    combined = merge_gene_tables(tables)
    renamed, ordered = apply_display_names(combined, sample_metadata)
    assert renamed.columns.tolist() == ["A_CFU_1", "A_CFU_2", "B_CFU_1", "B_CFU_2"]
    assert ordered["GSM"].tolist() == ["GSM1", "GSM2", "GSM5", "GSM6"]
    pd.testing.assert_frame_equal(renamed.set_axis(combined.columns, axis=1), combined)


def test_apply_display_names_unknown_sample(sample_metadata):
    combined = _table(["A"], ["GSM1", "GSM404.CEL"])
    with pytest.raises(SampleMetadataError):
        apply_display_names(combined, sample_metadata)


def test_slice_study_drops_unlabelled_samples(sample_metadata):
    names = sample_metadata["name"].tolist()
    matrix = _table(["A", "B"], names)
    assert slice_study(matrix, sample_metadata, "GSEB").columns.tolist() == [
        "B_CFU_1", "B_CFU_2", "B_LATE_1", "B_LATE_2"
    ]
    assert slice_study(matrix, sample_metadata, "GSEC").empty


def test_expression_merger(tables, sample_metadata):
    merger = ExpressionMerger(sample_metadata, logger=MagicMock())
    combined, ordered = merger.merge(tables)
    slices = merger.slice_studies(combined, ordered, ["GSEA", "GSEB"])
    assert slices["GSEA"].columns.tolist() == ["A_CFU_1", "A_CFU_2"]
    assert slices["GSEB"].shape == (3, 2)
