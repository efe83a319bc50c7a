import subprocess

import hl_backup


def test_mask_secrets_uses_equal_length_runs():
    assert hl_backup.mask_secrets("--password=s3cr3t db", ["s3cr3t"]) == "--password=****** db"


def test_mask_secrets_ignores_empty_values():
    assert hl_backup.mask_secrets("mysqldump shop", ["", None]) == "mysqldump shop"


def test_execute_command_redacts_logged_command(capsys):
    hl_backup.set_debug_logging(True)

    exit_code, output = hl_backup.execute_command(["echo", "s3cr3t"], debug_replace=["s3cr3t"])

    assert exit_code == 0
    assert output == ["s3cr3t"]
    logged = capsys.readouterr().out
    assert "s3cr3t" not in logged
    assert "running command: echo ******" in logged
    assert "result: 0" in logged


def test_execute_command_returns_failure_output_without_raising():
    exit_code, output = hl_backup.execute_command(["echo", "boom", "1>&2;", "exit", "3"])
    assert exit_code == 3
    assert output == ["boom"]


def test_execute_command_silent_without_debug(monkeypatch, capsys):
    completed = subprocess.CompletedProcess(args="true", returncode=0, stdout="", stderr=None)
    monkeypatch.setattr(subprocess, "run", lambda *args, **kwargs: completed)

    assert hl_backup.execute_command(["true"]) == (0, [])
    assert capsys.readouterr().out == ""
