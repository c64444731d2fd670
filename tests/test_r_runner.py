# File: tests/test_r_runner.py

import os
import subprocess
from unittest.mock import patch

from utils.r_runner import r_str, resolve_rscript, run_r_script


def test_r_str_escapes():
    assert r_str('a "b" \\ c') == '"a \\"b\\" \\\\ c"'
    assert r_str(None) == '""'


@patch("utils.r_runner.shutil.which", return_value="/usr/bin/Rscript")
def test_resolve_rscript_from_path(mock_which):
    assert resolve_rscript() == "/usr/bin/Rscript"
    mock_which.assert_called_with("Rscript")


@patch("utils.r_runner.shutil.which", return_value=None)
def test_resolve_rscript_missing(mock_which, tmp_path):
    assert resolve_rscript(str(tmp_path / "no-rscript")) is None
    assert resolve_rscript() is None


@patch("utils.r_runner.subprocess.run")
def test_run_r_script_writes_and_cleans_up(mock_run, monkeypatch):
    """
    Test that the script is written to a temporary file that is removed afterwards.
    """
    monkeypatch.delenv("KEEP_R_SCRIPTS", raising=False)
    seen = {}

    def fake_run(argv, capture_output, text, check):
        seen["argv"] = argv
        with open(argv[-1]) as fh:
            seen["script"] = fh.read()
        return subprocess.CompletedProcess(argv, 0, stdout="ok", stderr="")

    mock_run.side_effect = fake_run
    result = run_r_script("cat('hi')\n", "Rscript", job_name="demo")

    assert result.returncode == 0
    assert seen["argv"][:2] == ["Rscript", "--vanilla"]
    assert seen["script"] == "cat('hi')\n"
    assert not os.path.exists(seen["argv"][-1])


@patch("utils.r_runner.subprocess.run")
def test_run_r_script_keeps_script_on_request(mock_run, monkeypatch):
    monkeypatch.setenv("KEEP_R_SCRIPTS", "1")
    mock_run.side_effect = lambda argv, **kwargs: subprocess.CompletedProcess(argv, 2, stdout="", stderr="error")
    result = run_r_script("stop('x')", "Rscript", job_name="keep")
    script_path = mock_run.call_args[0][0][-1]
    assert result.returncode == 2
    assert os.path.exists(script_path)
