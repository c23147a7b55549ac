"""Shared fixtures for graphflow tests."""

import pytest

from graphflow.observability import clear_trace_context


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep a developer's ~/.graphflow/configuration.json out of the tests."""
    monkeypatch.setenv("GRAPHFLOW_CONFIG", str(tmp_path / "missing.json"))
    yield
    clear_trace_context()
