"""Shared test fixtures."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import pytest
import yaml


class RecordingDiagnostics:
    """Diagnostics sink that keeps every warning for assertions."""

    def __init__(self) -> None:
        self.warnings: list[tuple[str, dict[str, Any]]] = []

    def warn(self, event: str, **fields: Any) -> None:
        self.warnings.append((event, fields))

    @property
    def events(self) -> list[str]:
        return [event for event, _ in self.warnings]


@pytest.fixture(autouse=True)
def _mock_settings(monkeypatch):
    """Isolate every test from CSP_* variables of the calling shell."""
    for key in list(os.environ):
        if key.startswith("CSP_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("CSP_LOG_JSON", "false")
    monkeypatch.setenv("CSP_LOG_LEVEL", "debug")

    # Reset cached settings
    import csp_guard.config.loader as loader
    loader._settings = None
    yield
    loader._settings = None


@pytest.fixture
def diagnostics() -> RecordingDiagnostics:
    return RecordingDiagnostics()


@pytest.fixture
def project(tmp_path):
    """Project root with a config/ directory; returns a YAML writer."""
    (tmp_path / "config").mkdir()

    def write(data: Any, name: str = "content-security-policy.yaml") -> Path:
        path = tmp_path / "config" / name
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        return path

    write.root = tmp_path
    return write
