"""
Pytest configuration for the AICore-5 simulator test suite.

    python -m pytest                 # fast suite
    python -m pytest --runslow       # include long random-stream sweeps
"""

import pytest


def pytest_addoption(parser):
    parser.addoption("--runslow", action="store_true", default=False,
                     help="run tests marked slow (long random sweeps, batch runs)")


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "slow: long random-stream sweeps and process-pool batch runs")


def pytest_collection_modifyitems(config, items):
    if config.getoption("--runslow"):
        return
    skip_slow = pytest.mark.skip(reason="needs --runslow")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)
