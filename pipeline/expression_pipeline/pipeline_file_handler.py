# File: pipeline/expression_pipeline/pipeline_file_handler.py

import logging  # For logging operations
import os  # For file and directory operations
from datetime import date  # For timestamping log entries
from typing import List, Optional  # For type hinting

import pandas as pd
from sqlalchemy.dialects import postgresql, sqlite  # For dialect-specific upserts
from sqlalchemy.exc import SQLAlchemyError  # For handling SQLAlchemy-specific exceptions

from config.db_config import get_session_context  # For database session management
from config.logger_config import configure_logger  # For centralized logging configuration
from db.schema.pipeline_log_schema import PipelineRunLog  # Run-log table


class PipelineFileHandler:
    """
    Persists pipeline tables to the output directory and records step outcomes in the run log.
    """

    def __init__(self, output_dir: str, table_prefix: str = "SCAN", record_runs: bool = True, logger=None):
        """
        Initializes the file handler.

        Args:
            output_dir (str): Directory where tables are written.
            table_prefix (str): Normalization label used in file names (e.g. "SCAN").
            record_runs (bool): If False, step outcomes are only logged, not stored in the database.
            logger: Logger instance for logging operations (default: centralized logger).
        """
        if not output_dir:
            raise ValueError("Output directory path cannot be empty.")

        os.makedirs(output_dir, exist_ok=True)
        self.output_dir = output_dir
        self.table_prefix = table_prefix
        self.record_runs = record_runs

        self.logger = logger or configure_logger(
            name="PipelineFileHandler",
            log_file="pipeline_file_handler.log",
            level=logging.INFO,
            output="both"
        )
        self.logger.info(f"Initialized PipelineFileHandler with output_dir={output_dir}, table_prefix={table_prefix}")

    # ------------------ File naming ------------------

    def normalized_cache_path(self, study_id: str) -> str:
        return os.path.join(self.output_dir, f"{self.table_prefix}.{study_id}.pkl")

    def table_path(self, batch_corrected: bool = False, study_id: Optional[str] = None) -> str:
        """
        Path of a combined table, e.g. combined_SCAN_BN_GSE22552.pkl.
        """
        parts = ["combined", self.table_prefix]
        if batch_corrected:
            parts.append("BN")
        if study_id:
            parts.append(study_id)
        return os.path.join(self.output_dir, "_".join(parts) + ".pkl")

    def signature_path(self, study_id: str) -> str:
        return os.path.join(self.output_dir, f"combined_{self.table_prefix}_BN_SIG_{study_id}.txt")

    # ------------------ Persistence ------------------

    def save_table(self, table: pd.DataFrame, path: str) -> str:
        """
        Pickles a table, replacing any previous version atomically.

        Args:
            table (pd.DataFrame): Table to write.
            path (str): Destination path.

        Returns:
            str: The written path.
        """
        tmp_path = f"{path}.tmp"
        try:
            table.to_pickle(tmp_path)
            os.replace(tmp_path, path)
        except OSError as e:
            self.logger.error(f"Failed to write table {path}: {e}")
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        self.logger.info(f"Saved table {os.path.basename(path)} ({table.shape[0]} x {table.shape[1]})")
        return path

    @staticmethod
    def load_table(path: str) -> pd.DataFrame:
        if not os.path.exists(path):
            raise FileNotFoundError(f"Table not found: {path}")
        return pd.read_pickle(path)

    # ------------------ Run log ------------------

    @staticmethod
    def _insert(session):
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert
        if dialect == "sqlite":
            return sqlite.insert
        raise RuntimeError(f"Run log does not support the {dialect} dialect.")

    def log_step(
        self, study_id: str, step: str, status: str = "completed", message: str = "", file_names: List[str] = None
    ) -> None:
        """
        Upserts the outcome of a pipeline step for a study.

        Args:
            study_id (str): Study accession or "combined".
            step (str): Step name.
            status (str): "completed", "cached" or "failed".
            message (str): Free-text detail.
            file_names (List[str]): Files written by the step.
        """
        file_names = [os.path.basename(f) for f in (file_names or [])]
        self.logger.info(f"[{study_id}] {step}: {status}. {message}".rstrip())
        if not self.record_runs:
            return

        values = {
            "StudyID": study_id,
            "Step": step,
            "Status": status,
            "Message": message,
            "FileNames": file_names,
            "Timestamp": date.today(),
        }
        try:
            with get_session_context() as session:
                insert = self._insert(session)
                query = insert(PipelineRunLog).values(**values).on_conflict_do_update(
                    index_elements=["StudyID", "Step"],
                    set_={k: v for k, v in values.items() if k not in {"StudyID", "Step"}},
                )
                session.execute(query)
                session.commit()
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to record step {step} for {study_id}: {e}")
            raise

    def get_step_status(self, study_id: str, step: str) -> Optional[str]:
        """
        Returns the recorded status of a step, or None if it never ran.
        """
        with get_session_context() as session:
            entry = session.query(PipelineRunLog).filter_by(StudyID=study_id, Step=step).one_or_none()
            return entry.Status if entry else None
