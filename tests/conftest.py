"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from vulnintel.core.config import load_settings
from vulnintel.logging_config import configure_logging
from vulnintel.services.metrics import MetricsFacade

from fakes import SleepRecorder


@pytest.fixture(autouse=True, scope="session")
def _configure_logging():
    configure_logging(force=True)


@pytest.fixture
def settings(tmp_path):
    return load_settings(
        {
            "CACHE_DIR": str(tmp_path / "cache"),
            "INDEX_PATH": str(tmp_path / "index.json"),
            "OUTPUT_DIR": str(tmp_path / "out"),
            "API_RETRY_JITTER": "none",
            "API_FETCH_RETRIES": "3",
            "OPENAI_API_KEY": "sk-test",
            "CLAUDE_API_KEY": "claude-test",
        }
    )


@pytest.fixture
def metrics_facade():
    return MetricsFacade()


@pytest.fixture
def sleeps():
    return SleepRecorder()
