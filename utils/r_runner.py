# File: utils/r_runner.py
# Description: Helpers for composing R snippets and running them with Rscript.

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
import uuid
from typing import Optional

logger = logging.getLogger(__name__)


def r_str(value: Optional[str]) -> str:
    """Return a double-quoted R string literal with escapes."""
    if value is None:
        value = ""
    value = value.replace("\\", "\\\\").replace("\"", "\\\"")
    value = value.replace("\n", "\\n")
    return f'"{value}"'


def resolve_rscript(executable: Optional[str] = None) -> Optional[str]:
    """
    Locate the Rscript executable.

    Args:
        executable (Optional[str]): Explicit path from config or the RSCRIPT variable.

    Returns:
        Optional[str]: Path to Rscript, or None when it cannot be found.
    """
    if executable:
        return executable if (os.path.isfile(executable) or shutil.which(executable)) else None
    return shutil.which("Rscript")


def run_r_script(script_text: str, rscript: str, job_name: str = "job") -> subprocess.CompletedProcess:
    """
    Write script_text to a temporary file and execute it with Rscript.

    The temporary script is kept when KEEP_R_SCRIPTS=1 for debugging.

    Args:
        script_text (str): Full R source to run.
        rscript (str): Rscript executable.
        job_name (str): Label used in the temporary file name and log lines.

    Returns:
        subprocess.CompletedProcess: The finished process with captured output.
    """
    tmpdir = tempfile.mkdtemp(prefix=f"{job_name}_")
    script_path = os.path.join(tmpdir, f"{job_name}_{uuid.uuid4().hex}.R")
    with open(script_path, "w", encoding="utf-8") as fh:
        fh.write(script_text)

    argv = [rscript, "--vanilla", script_path]
    logger.info(f"[cmd] {' '.join(shlex.quote(x) for x in argv)}")
    try:
        result = subprocess.run(argv, capture_output=True, text=True, check=False)
    finally:
        if os.environ.get("KEEP_R_SCRIPTS") == "1":
            logger.info(f"KEEP_R_SCRIPTS=1; preserving {tmpdir}")
        else:
            shutil.rmtree(tmpdir, ignore_errors=True)

    if result.stdout:
        logger.debug(result.stdout.strip())
    if result.returncode != 0:
        logger.error(f"Rscript {job_name} exited with code {result.returncode}: {result.stderr.strip()}")
    return result
