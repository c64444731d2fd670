# File: tests/expression_pipeline_tests/test_signature_builder.py

from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest

from pipeline.expression_pipeline.linear_model import LinearModelFit
from pipeline.expression_pipeline.signature_builder import (
    SignatureBuilder,
    build_signature_matrix,
    score_contrasts,
    select_signature_genes,
    write_signature,
)
from utils.exceptions import ContrastDesignError


@pytest.fixture
def study(rng):
    """
    Batch-corrected slice of three groups with one marker gene per group.
    """
    groups = {"CFU_E": 3, "PRO_E": 3, "LATE_E": 3}
    names, rows = [], []
    for group, count in groups.items():
        for i in range(count):
            names.append(f"{group}_{i + 1}")
            rows.append([f"GSM{len(rows) + 1}", f"{group}_{i + 1}", "GSEA", group.lower(), group, ""])
    metadata = pd.DataFrame(rows, columns=["GSM", "name", "GSE", "stage", "group1", "group2"])

    genes = [f"G{i:02d}" for i in range(40)]
    values = rng.normal(6.0, 0.25, size=(len(genes), len(names)))
    values[5, 0:3] += 4.0   # CFU_E marker
    values[17, 3:6] += 4.0  # PRO_E marker
    values[30, 6:9] += 4.0  # LATE_E marker
    expr = pd.DataFrame(values, index=pd.Index(genes, name="gene"), columns=names)
    return expr, metadata


def _fit(coefficients, p_values):
    n_genes = len(next(iter(coefficients.values())))
    index = [f"g{i}" for i in range(n_genes)]
    coef = pd.DataFrame(coefficients, index=index)
    return LinearModelFit(
        coefficients=coef,
        stdev_unscaled=coef * 0 + 1,
        sigma=pd.Series(1.0, index=index),
        df_residual=4,
        cov_coefficients=pd.DataFrame(),
        p_value=pd.DataFrame(p_values, index=index),
    )


def test_score_contrasts():
    fit = _fit({"AvALL": [2.0, -1.0]}, {"AvALL": [0.01, 0.1]})
    scores = score_contrasts(fit)
    np.testing.assert_allclose(scores["AvALL"].to_numpy(), [4.0, 1.0])


def test_select_signature_genes_takes_highest_scores():
    """
    Test that each contrast contributes its top_k highest scores and duplicates are dropped.
    """
    fit = _fit(
        {"AvALL": [3.0, 0.1, 2.0, 0.2], "BvALL": [0.1, 0.2, 3.0, 1.0]},
        {"AvALL": [1e-4, 0.5, 1e-3, 0.5], "BvALL": [0.5, 0.5, 1e-4, 1e-2]},
    )
    assert select_signature_genes(fit, 2) == ["g0", "g2", "g3"]
    assert select_signature_genes(fit, 1) == ["g0", "g2"]
    with pytest.raises(ValueError):
        select_signature_genes(fit, 0)


def test_select_signature_genes_needs_p_values():
    fit = _fit({"AvALL": [1.0]}, {"AvALL": [0.5]})
    fit.p_value = None
    with pytest.raises(ValueError):
        select_signature_genes(fit, 1)


def test_build_signature_matrix(study):
    expr, metadata = study
    signature = build_signature_matrix(expr, metadata, ["G30", "G05"])
    # Rows keep matrix order, columns are sorted group labels
    assert signature.index.tolist() == ["G05", "G30"]
    assert signature.columns.tolist() == ["CFU_E", "LATE_E", "PRO_E"]
    np.testing.assert_allclose(signature.loc["G05", "CFU_E"], expr.loc["G05", expr.columns[:3]].mean())


def test_signature_builder_finds_markers(study):
    """
    Test that each group's marker appears in the signature and selection bounds hold.
    """
    expr, metadata = study
    builder = SignatureBuilder("GSEA", groups=["CFU_E", "PRO_E", "LATE_E"], top_k=2, engine="python", logger=MagicMock())
    signature, genes, fit = builder.build(expr, metadata)

    assert {"G05", "G17", "G30"} <= set(genes)
    assert len(genes) <= 2 * 3
    assert set(genes) <= set(expr.index)
    assert fit.coefficients.columns.tolist() == ["CFU_EvALL", "PRO_EvALL", "LATE_EvALL"]
    assert signature.shape == (len(genes), 3)
    assert signature.loc["G17", "PRO_E"] > signature.loc["G17", "CFU_E"]


def test_signature_builder_unknown_sample(study):
    expr, metadata = study
    expr = expr.rename(columns={"CFU_E_1": "unknown"})
    with pytest.raises(ContrastDesignError):
        SignatureBuilder("GSEA", logger=MagicMock()).fit(expr, metadata)


def test_write_signature(tmp_path, study):
    expr, metadata = study
    signature = build_signature_matrix(expr, metadata, ["G05", "G17"])
    path = write_signature(signature, str(tmp_path / "combined_SCAN_BN_SIG_GSEA.txt"))
    lines = open(path).read().splitlines()
    assert lines[0] == "gene\tCFU_E\tLATE_E\tPRO_E"
    assert lines[1].startswith("G05\t")
    assert '"' not in "".join(lines)
    assert len(lines) == 3


def test_write_signature_is_deterministic(tmp_path, study):
    expr, metadata = study
    signature = build_signature_matrix(expr, metadata, ["G05", "G17", "G30"])
    first = write_signature(signature, str(tmp_path / "a.txt"))
    second = write_signature(signature.copy(), str(tmp_path / "b.txt"))
    assert open(first, "rb").read() == open(second, "rb").read()


@patch("pipeline.expression_pipeline.signature_builder.LimmaContrastFit")
def test_signature_builder_runs_limma_by_default(mock_limma_cls, study):
    """
    Test that the default engine hands the design and one-vs-rest contrasts to limma.
    """
    expr, metadata = study
    python_fit = SignatureBuilder("GSEA", groups=["CFU_E", "PRO_E", "LATE_E"], engine="python", logger=MagicMock()).fit(
        expr, metadata
    )
    mock_limma_cls.return_value.fit.return_value = python_fit

    builder = SignatureBuilder("GSEA", groups=["CFU_E", "PRO_E", "LATE_E"], top_k=2, rscript="/opt/R/Rscript", logger=MagicMock())
    signature, genes, fit = builder.build(expr, metadata)

    assert builder.engine == "limma"
    assert mock_limma_cls.call_args.kwargs["rscript"] == "/opt/R/Rscript"
    _, design, contrasts = mock_limma_cls.return_value.fit.call_args.args
    assert design.columns.tolist() == ["CFU_E", "PRO_E", "LATE_E"]
    assert contrasts.columns.tolist() == ["CFU_EvALL", "PRO_EvALL", "LATE_EvALL"]
    assert fit is python_fit
    assert {"G05", "G17", "G30"} <= set(genes)


def test_signature_builder_unknown_engine():
    with pytest.raises(ValueError):
        SignatureBuilder("GSEA", engine="edger", logger=MagicMock())
