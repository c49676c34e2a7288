"""Shared fixtures for the sanitizer test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from pdf_sanitizer.config import RunConfig


@pytest.fixture
def input_dir(tmp_path: Path) -> Path:
    path = tmp_path / "input"
    path.mkdir()
    return path


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    return tmp_path / "output"


@pytest.fixture
def work_root(tmp_path: Path) -> Path:
    return tmp_path / "work"


@pytest.fixture
def make_config(tmp_path: Path, input_dir: Path, output_dir: Path, work_root: Path):
    """Build a RunConfig rooted in tmp_path; keyword arguments override fields."""

    def _make(**overrides) -> RunConfig:
        values = {
            "input_dir": input_dir,
            "output_dir": output_dir,
            "work_dir": work_root,
            "log_file": tmp_path / "sanitize_pdf.log",
            "password_timeout": 5,
        }
        values.update(overrides)
        return RunConfig(**values)

    return _make


@pytest.fixture
def write_pdf():
    def _write(path: Path, body: str = "content") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(f"%PDF-1.4 {body}".encode())
        return path

    return _write
