# File: config/logger_config.py
# Centralized logging setup for the SCAN expression pipeline.
# Every pipeline step obtains its logger here so that runs leave one rotating log file per step
# under <project_root>/logs alongside console output.

import logging  # Provides logging functionality
import os  # For handling file system paths and directories
from logging.handlers import RotatingFileHandler  # For managing rotating log files
from typing import Optional  # For optional type hinting

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_log_dir() -> str:
    """
    Returns the centralized logs directory, overridable with PIPELINE_LOG_DIR.
    """
    project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    return os.getenv("PIPELINE_LOG_DIR", os.path.join(project_root, "logs"))


def configure_logger(
    name: Optional[str] = None,  # The name of the logger; None defaults to the root logger
    log_file: str = "scan_pipeline.log",  # Name of the log file
    level: int = logging.INFO,  # Logging level (e.g., DEBUG, INFO, WARNING, ERROR)
    max_bytes: int = 10 * 1024 * 1024,  # Maximum size of a log file before rotation (default: 10 MB)
    backup_count: int = 5,  # Number of backup files to keep during log rotation
    output: str = "both",  # Where to output logs: "file", "console", or "both"
) -> logging.Logger:
    """
    Configures and returns a logger instance.

    Args:
        name (Optional[str]): Name of the logger. If None, the root logger is used.
        log_file (str): Name of the log file inside the logs directory.
        level (int): Logging level (e.g., logging.INFO, logging.DEBUG).
        max_bytes (int): Maximum size of the log file before rotation.
        backup_count (int): Number of backup files to keep during rotation.
        output (str): Where to send logs: "file", "console", or "both".

    Returns:
        logging.Logger: Configured logger instance.

    Raises:
        ValueError: If the output target is not recognised.
        RuntimeError: If the log directory or handlers cannot be created.
    """
    if output not in {"file", "console", "both"}:
        raise ValueError(f"Invalid logger output '{output}'. Use 'file', 'console' or 'both'.")

    try:
        log_dir = get_log_dir()
        os.makedirs(log_dir, exist_ok=True)
        log_path = os.path.join(log_dir, log_file)

        logger = logging.getLogger(name)
        logger.setLevel(level)

        # Loggers are cached by name; only attach handlers the first time
        if not logger.handlers:
            formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

            if output in {"file", "both"}:
                file_handler = RotatingFileHandler(
                    log_path, maxBytes=max_bytes, backupCount=backup_count
                )
                file_handler.setLevel(level)
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)

            if output in {"console", "both"}:
                console_handler = logging.StreamHandler()
                console_handler.setLevel(level)
                console_handler.setFormatter(formatter)
                logger.addHandler(console_handler)

        return logger

    except OSError as e:  # Handle issues with creating log directories or files
        raise RuntimeError(
            f"Failed to create or access log directory: {e}"
        ) from e
