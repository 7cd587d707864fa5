from pathlib import Path
from typing import Callable

import numpy as np
import pytest

from adaptive_ocr.config import ExecutorConfig
from adaptive_ocr.tracing import TraceSink

from tests.images import text_page


@pytest.fixture
def config() -> ExecutorConfig:
    """Default run configuration."""
    return ExecutorConfig()


@pytest.fixture
def make_config() -> Callable[..., ExecutorConfig]:
    """Factory for configurations with overrides."""
    def _make(**overrides) -> ExecutorConfig:
        return ExecutorConfig(**overrides)
    return _make


@pytest.fixture
def sink() -> TraceSink:
    trace_sink = TraceSink()
    yield trace_sink
    trace_sink.close()


@pytest.fixture
def page_image() -> np.ndarray:
    return text_page()


@pytest.fixture
def temp_directory(tmp_path) -> Path:
    """Temporary directory for test files."""
    return tmp_path


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
