# File: config/db_config.py
# Database configuration for the pipeline run log.
# The run log records which study went through which step, so the engine defaults to a local
# SQLite file and can be pointed at any SQLAlchemy URL through PIPELINE_DATABASE_URL.

import logging  # For logging messages
import os  # Import os for accessing environment variables
from contextlib import contextmanager  # For context-managed database sessions
from pathlib import Path  # Import Path for managing filesystem paths
from typing import Optional

from dotenv import load_dotenv  # Load environment variables from config/.env
from sqlalchemy import create_engine  # Establish the database connection
from sqlalchemy.engine import Engine  # Engine type for type hinting
from sqlalchemy.exc import SQLAlchemyError  # For SQLAlchemy error handling
from sqlalchemy.orm import declarative_base, sessionmaker  # ORM base and session factory

logger = logging.getLogger(__name__)

# Load environment variables from the .env file in the config directory (missing file is fine)
env_path = Path(__file__).resolve().parent / ".env"
load_dotenv(dotenv_path=env_path)

DEFAULT_DATABASE_URL = "sqlite:///processed/pipeline_log.db"

# Define the SQLAlchemy Base class for ORM models
Base = declarative_base()

_engine: Optional[Engine] = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def get_database_url() -> str:
    """
    Resolves the run-log database URL from the environment.

    Returns:
        str: SQLAlchemy database URL.
    """
    return os.getenv("PIPELINE_DATABASE_URL", DEFAULT_DATABASE_URL)


def init_engine(database_url: Optional[str] = None) -> Engine:
    """
    Creates the engine, binds the session factory and creates missing tables.

    Args:
        database_url (Optional[str]): URL to connect to; defaults to get_database_url().

    Returns:
        Engine: The initialized SQLAlchemy engine.

    Raises:
        RuntimeError: If the engine cannot be created or the schema cannot be initialized.
    """
    global _engine
    url = database_url or get_database_url()

    # SQLite files need their parent directory to exist
    if url.startswith("sqlite:///") and url != "sqlite:///:memory:":
        db_path = url[len("sqlite:///"):]
        parent = os.path.dirname(db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)

    try:
        _engine = create_engine(url, echo=os.getenv("DEBUG", "False").lower() == "true")
        SessionLocal.configure(bind=_engine)

        # Import inside the function so the schema registers against Base before create_all
        from db.schema.pipeline_log_schema import PipelineRunLog  # noqa: F401

        Base.metadata.create_all(_engine)
        logger.info(f"Run-log database initialized at {url}")
        return _engine
    except SQLAlchemyError as e:
        logger.error(f"Error initializing run-log database {url}: {e}")
        raise RuntimeError(
            f"Failed to initialize run-log database at {url}. Check PIPELINE_DATABASE_URL."
        ) from e


def get_engine() -> Engine:
    """
    Provides the SQLAlchemy engine, initializing it on first use.

    Returns:
        Engine: The run-log engine.
    """
    if _engine is None:
        return init_engine()
    return _engine


@contextmanager
def get_session_context():
    """
    Provides a run-log session as a context manager.

    Yields:
        Session: A SQLAlchemy session for ORM operations.
    """
    get_engine()
    session = SessionLocal()
    try:
        yield session
    except SQLAlchemyError as e:
        session.rollback()  # Rollback the transaction on error
        logger.error(f"Error during session operation: {e}")
        raise
    finally:
        session.close()
