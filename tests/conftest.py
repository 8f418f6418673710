"""Pytest configuration and fixtures for modbuild tests.

Every test runs without the developer's MODBUILD_* environment, with the
timestamped output module pointed at the current stdout, and without the
stderr log handler a previous CLI test may have installed.
"""

import logging
import sys

import pytest

from modbuild import output


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):  # noqa: PT004
    """Clear modbuild environment overrides and reset output state."""
    for name in ("MODBUILD_CACHE_DIR", "MODBUILD_JOBS", "MODBUILD_DEV_MODE"):
        monkeypatch.delenv(name, raising=False)
    output.init_timer(sys.stdout)
    output.set_verbose(False)
    yield

    # cli.setup_logging binds a handler to this test's captured stderr
    logger = logging.getLogger("modbuild")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
