from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd
import pytest
from typer.testing import CliRunner

from fakes import FakePasswords, fake_stages
from main import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def restore_logging():
    # The command reconfigures the root logger; put pytest's handlers back afterwards.
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


@pytest.fixture
def workspace(tmp_path, monkeypatch, write_pdf):
    monkeypatch.chdir(tmp_path)
    write_pdf(tmp_path / "input" / "a.pdf")
    write_pdf(tmp_path / "input" / "b.pdf", "ENCRYPTED")
    return tmp_path


@pytest.fixture
def fake_tools(monkeypatch):
    stages = fake_stages(encrypted={"b.pdf"}, passwords={"b.pdf": "x"})
    passwords = FakePasswords({"b.pdf": "x"})
    monkeypatch.setattr("pdf_sanitizer.orchestrator.default_stages", lambda: stages)
    monkeypatch.setattr("pdf_sanitizer.orchestrator.TerminalPasswordPrompt", lambda: passwords)
    return stages


def _config(path: Path, **entries: str) -> Path:
    base = {
        "INPUT_DIR": "./input",
        "OUTPUT_DIR": "./output",
        "LOG_FILE": "logs/sanitize_pdf.log",
        "PASSWORD_TIMEOUT": "5",
        "WORK_DIR": "./work",
    }
    base.update(entries)
    path.write_text("".join(f'{k}="{v}"\n' for k, v in base.items()), encoding="utf-8")
    return path


def test_first_run_bootstraps_config_and_processes_batch(workspace, fake_tools):
    result = runner.invoke(app, [])

    assert result.exit_code == 0, result.output
    assert (workspace / "sanitize_pdf.conf").exists()
    assert (workspace / "output" / "sanitized_a.pdf").exists()
    assert (workspace / "output" / "sanitized_b.pdf").exists()
    assert "a.pdf: succeeded (ok)" in result.stdout
    assert "2 succeeded, 0 skipped, 0 failed" in result.stdout
    log_text = (workspace / "sanitize_pdf.log").read_text(encoding="utf-8")
    assert "Successfully unlocked PDF" in log_text
    assert "Sanitization complete" in log_text


def test_batch_with_no_matches_exits_non_zero(workspace, fake_tools):
    _config(workspace / "sanitize_pdf.conf", FILE_PATTERN="*.xps")

    result = runner.invoke(app, [])

    assert result.exit_code == 1
    assert fake_tools.probe.calls == []


def test_invalid_config_exits_non_zero(workspace, fake_tools):
    _config(workspace / "sanitize_pdf.conf", PASSWORD_TIMEOUT="-1")

    result = runner.invoke(app, [])

    assert result.exit_code == 1
    assert not (workspace / "output").exists()


def test_dry_run_reports_would_process(workspace, fake_tools):
    _config(workspace / "sanitize_pdf.conf", DRY_RUN="yes")

    result = runner.invoke(app, ["--report", "report.xlsx"])

    assert result.exit_code == 0, result.output
    assert "a.pdf: succeeded (would process)" in result.stdout
    assert "b.pdf: succeeded (would process)" in result.stdout
    assert not (workspace / "output").exists()
    assert not (workspace / "report.xlsx").exists()
    log_text = (workspace / "logs" / "sanitize_pdf.log").read_text(encoding="utf-8")
    assert "[DRY RUN] Would process" in log_text


def test_failed_item_sets_exit_code_two(workspace, monkeypatch):
    stages = fake_stages(fail_rewrite={"a.pdf"})
    monkeypatch.setattr("pdf_sanitizer.orchestrator.default_stages", lambda: stages)
    monkeypatch.setattr("pdf_sanitizer.orchestrator.TerminalPasswordPrompt", lambda: FakePasswords())
    _config(workspace / "sanitize_pdf.conf")

    result = runner.invoke(app, [])

    assert result.exit_code == 2
    assert "a.pdf: failed" in result.stdout
    assert "b.pdf: succeeded" in result.stdout


def test_skipped_item_keeps_exit_code_zero(workspace, monkeypatch):
    stages = fake_stages(encrypted={"b.pdf"})
    monkeypatch.setattr("pdf_sanitizer.orchestrator.default_stages", lambda: stages)
    monkeypatch.setattr("pdf_sanitizer.orchestrator.TerminalPasswordPrompt", lambda: FakePasswords())
    _config(workspace / "sanitize_pdf.conf")

    result = runner.invoke(app, [])

    assert result.exit_code == 0
    assert "b.pdf: skipped (password timeout)" in result.stdout


def test_cli_pair_is_used_only_with_override(workspace, fake_tools):
    _config(workspace / "sanitize_pdf.conf", CLI_OVERRIDE="yes")

    result = runner.invoke(app, ["input/a.pdf", "single/clean.pdf"])

    assert result.exit_code == 0, result.output
    assert (workspace / "single" / "clean.pdf").exists()
    assert not (workspace / "output" / "sanitized_b.pdf").exists()


def test_cli_pair_is_ignored_without_override(workspace, fake_tools):
    _config(workspace / "sanitize_pdf.conf", CLI_OVERRIDE="no")

    result = runner.invoke(app, ["input/a.pdf", "single/clean.pdf"])

    assert result.exit_code == 0, result.output
    assert not (workspace / "single").exists()
    assert (workspace / "output" / "sanitized_a.pdf").exists()


def test_report_written_and_config_path_option(workspace, fake_tools):
    config_path = _config(workspace / "custom.conf", OUTPUT_PREFIX="clean_")

    result = runner.invoke(app, ["--config", str(config_path), "--report", "out/report.csv", "--workers", "2"])

    assert result.exit_code == 0, result.output
    assert not (workspace / "sanitize_pdf.conf").exists()
    report = pd.read_csv(workspace / "out" / "report.csv")
    assert list(report["status"]) == ["succeeded", "succeeded"]
    assert (workspace / "output" / "clean_a.pdf").exists()
