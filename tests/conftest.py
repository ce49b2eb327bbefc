"""Global pytest configuration and shared fixtures for ivp_engine."""

from __future__ import annotations

import logging

import pytest

# -----------------------------------------------------------------------------
# Global markers registration safety (for local pytest runs)
# -----------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers used by the test suite."""
    config.addinivalue_line(
        "markers",
        "slow: mark test as a longer convergence/accuracy study",
    )


# -----------------------------------------------------------------------------
# Shared fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def engine_logs(caplog: pytest.LogCaptureFixture) -> pytest.LogCaptureFixture:
    """
    Capture ivp_engine log records at DEBUG level.

    Usage:
        def test_x(engine_logs):
            ...
            assert "integration start" in engine_logs.text
    """
    caplog.set_level(logging.DEBUG, logger="ivp_engine")
    return caplog
