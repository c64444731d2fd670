# File: tests/test_config_utils.py

import os

import pytest
import yaml

from utils.config_utils import (
    DEFAULT_CONFIG_PATH,
    ConfigLoaderError,
    ensure_directories,
    load_config,
    load_pipeline_config,
    resolve_config,
    study_ids,
    validate_config,
)


@pytest.fixture
def minimal_config():
    return {
        "data_dir": "data",
        "output_dir": "processed",
        "sample_metadata": "data/Samples.txt",
        "studies": {
            "GSEA": {"annotation": {"path": "GPL1.annot.gz"}},
            "GSEB": {"backend": "quantile", "raw_dir": "b_tables", "annotation": {"path": "/abs/GPL2.tsv"}},
        },
        "signatures": {"GSEA": {"groups": ["X", "Y"]}},
    }


def test_load_config(tmp_path, minimal_config):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(minimal_config))
    assert load_config(str(path)) == minimal_config


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigLoaderError):
        load_config(str(tmp_path / "missing.yaml"))
    assert load_config(str(tmp_path / "missing.yaml"), default_config={"a": 1}) == {"a": 1}


def test_load_config_invalid_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("studies: [unclosed")
    with pytest.raises(ConfigLoaderError):
        load_config(str(path))


def test_validate_config_missing_keys(minimal_config):
    del minimal_config["sample_metadata"]
    with pytest.raises(ConfigLoaderError, match="sample_metadata"):
        validate_config(minimal_config)


@pytest.mark.parametrize("mutate", [
    lambda c: c["studies"]["GSEA"].update(backend="rma"),
    lambda c: c["studies"]["GSEA"].update(annotation={}),
    lambda c: c["studies"]["GSEA"].update(annotation=None),
    lambda c: c.update(batch_correction={"studies": ["GSEA", "GSEZ"]}),
    lambda c: c.update(batch_correction={"studies": ["GSEB"]}),
])
def test_validate_config_invalid(minimal_config, mutate):
    mutate(minimal_config)
    with pytest.raises(ConfigLoaderError):
        validate_config(minimal_config)


def test_validate_config_unknown_engine(minimal_config):
    minimal_config["batch_correction"] = {"studies": ["GSEA", "GSEB"]}
    validate_config(minimal_config)
    minimal_config["signatures"]["GSEA"]["engine"] = "edger"
    with pytest.raises(ConfigLoaderError, match="engine"):
        validate_config(minimal_config)


def test_resolve_config_defaults(tmp_path, minimal_config, monkeypatch):
    """
    Test that paths are anchored at base_dir and optional keys receive defaults.
    """
    monkeypatch.setenv("RSCRIPT", "/opt/R/bin/Rscript")
    resolved = resolve_config(minimal_config, base_dir=str(tmp_path))

    assert resolved["data_dir"] == str(tmp_path / "data")
    assert resolved["table_prefix"] == "SCAN"
    assert resolved["rscript"] == "/opt/R/bin/Rscript"

    study_a = resolved["studies"]["GSEA"]
    assert study_a["backend"] == "scan"
    assert study_a["raw_dir"] == str(tmp_path / "data" / "GSEA_RAW")
    assert study_a["annotation"]["path"] == str(tmp_path / "data" / "GPL1.annot.gz")
    assert study_a["annotation"]["symbol_column"] == "Gene symbol"

    study_b = resolved["studies"]["GSEB"]
    assert study_b["raw_dir"] == str(tmp_path / "data" / "b_tables")
    assert study_b["annotation"]["path"] == "/abs/GPL2.tsv"

    assert resolved["batch_correction"]["studies"] == ["GSEA", "GSEB"]
    assert resolved["batch_correction"]["covariate"] is None
    assert resolved["signatures"]["GSEA"] == {"groups": ["X", "Y"], "top_k": 50, "engine": "limma"}
    assert study_ids(resolved) == ["GSEA", "GSEB"]


def test_ensure_directories(tmp_path):
    config = {"output_dir": str(tmp_path / "out" / "nested")}
    ensure_directories(config, ["output_dir"])
    assert os.path.isdir(config["output_dir"])
    with pytest.raises(ConfigLoaderError):
        ensure_directories(config, ["data_dir"])


def test_default_config_is_valid(tmp_path):
    """
    Test that the shipped configuration covers the four erythroid studies.
    """
    config = load_pipeline_config(DEFAULT_CONFIG_PATH, base_dir=str(tmp_path))
    assert study_ids(config) == ["GSE22552", "GSE24759", "GSE41817", "GSE89540"]
    assert config["batch_correction"]["studies"] == ["GSE22552", "GSE24759", "GSE89540"]
    assert config["signatures"]["GSE22552"]["top_k"] == 50
    assert config["signatures"]["GSE24759"]["top_k"] == 40
    assert config["studies"]["GSE89540"]["annotation"]["db_package"] == "hugene20sttranscriptcluster.db"
