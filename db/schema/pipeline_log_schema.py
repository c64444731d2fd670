"""
This module defines the run-log table of the SCAN expression pipeline.

Overview:
    - One row per (study, step) pair, upserted each time the step finishes or fails.
    - Steps: "downloaded", "normalized", "collapsed", "merged", "batch_corrected",
      "sliced", "signature_written".
    - The combined matrix and batch-corrected matrix are logged under the pseudo study "combined".
"""

from sqlalchemy import Column, Date, Index, Integer, JSON, String, Text, UniqueConstraint

from config.db_config import Base


class PipelineRunLog(Base):
    """
    Tracks the outcome of each pipeline step per study.
    """
    __tablename__ = 'pipeline_run_log'

    id = Column(Integer, primary_key=True, autoincrement=True)

    StudyID = Column(String, nullable=False)  # GEO series accession or "combined"
    Step = Column(String, nullable=False)  # Pipeline step name
    Status = Column(String, nullable=False)  # "completed", "cached" or "failed"
    Message = Column(Text, nullable=True)  # Detail or error description
    FileNames = Column(JSON, nullable=True)  # Files written by the step
    Timestamp = Column(Date, nullable=False)

    __table_args__ = (
        UniqueConstraint('StudyID', 'Step', name='uq_study_step'),
        Index('idx_run_log_study', 'StudyID'),
    )

    def __repr__(self):
        return f"<PipelineRunLog(StudyID={self.StudyID}, Step={self.Step}, Status={self.Status})>"
