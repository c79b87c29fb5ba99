"""
Global pytest configuration for devloop.
"""

import pytest


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "asyncio: mark test as an asyncio coroutine")
    config.addinivalue_line(
        "markers", "subprocess: marks tests that spawn real child processes"
    )


@pytest.fixture(autouse=True)
def _isolate_devloop_env(monkeypatch):
    """Keep DEVLOOP_* and OTLP settings from the developer shell out of tests."""
    import os

    for name in list(os.environ):
        if name.startswith("DEVLOOP_") or name.startswith("OTLP_"):
            monkeypatch.delenv(name, raising=False)
