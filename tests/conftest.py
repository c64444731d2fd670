# tests/conftest.py
import pytest
import sys
import os

import numpy as np
import pandas as pd

# Add the parent directory to the system path to ensure correct module import
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from config.db_config import init_engine


@pytest.fixture(autouse=True)
def isolated_logs(tmp_path, monkeypatch):
    """
    Fixture that sends every pipeline log file to a temporary directory.
    """
    monkeypatch.setenv("PIPELINE_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def run_log_db(tmp_path, monkeypatch):
    """
    Fixture that binds the run-log session factory to a fresh SQLite file.

    Returns:
        str: The database URL.
    """
    url = f"sqlite:///{tmp_path / 'run_log.db'}"
    monkeypatch.setenv("PIPELINE_DATABASE_URL", url)
    init_engine(url)
    return url


@pytest.fixture
def sample_metadata():
    """
    Fixture with metadata for two batch studies and one unlabelled study.
    """
    rows = [
        ["GSM1", "A_CFU_1", "GSEA", "early", "CFU_E", ""],
        ["GSM2", "A_CFU_2", "GSEA", "early", "CFU_E", ""],
        ["GSM3", "A_LATE_1", "GSEA", "late", "LATE_E", ""],
        ["GSM4", "A_LATE_2", "GSEA", "late", "LATE_E", ""],
        ["GSM5", "B_CFU_1", "GSEB", "early", "CFU_E", ""],
        ["GSM6", "B_CFU_2", "GSEB", "early", "CFU_E", ""],
        ["GSM7", "B_LATE_1", "GSEB", "late", "LATE_E", ""],
        ["GSM8", "B_LATE_2", "GSEB", "late", "LATE_E", ""],
        ["GSM9", "C_1", "GSEC", "late", "", ""],
        ["GSM10", "C_2", "GSEC", "late", "", ""],
    ]
    return pd.DataFrame(rows, columns=["GSM", "name", "GSE", "stage", "group1", "group2"])


@pytest.fixture
def rng():
    return np.random.default_rng(7)
