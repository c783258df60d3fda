"""
Pytest configuration for the PX-8 ROM tool test suite.

    python -m pytest                # everything
    python -m pytest -m cli         # only the command-line tests
    python -m pytest -m "not cli"   # only the library tests

Tests that drive makerom.main() / dumprom.main() are marked ``cli``.
makerom only accepts flat 8.3 names, so those tests run inside a
scratch directory (the ``rom_workdir`` fixture).
"""

import pytest


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "cli: tests that run the makerom / dumprom command-line entry points")


@pytest.fixture
def rom_workdir(tmp_path, monkeypatch):
    """Run the test with a fresh temporary directory as cwd."""
    monkeypatch.chdir(tmp_path)
    return tmp_path

