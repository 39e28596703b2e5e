"""Root conftest.py for hookrelay tests.

This file MUST be at the repository root for fixtures to be discovered
when running tests from any subdirectory.

Provides shared fixtures used across all test modules:
- hookrelay_protocols/tests
- hookrelay_shared/tests
- hookrelay/tests
"""

import pytest
from unittest.mock import MagicMock

from hookrelay_shared import ManualClock


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing.

    Components bind a component name onto injected loggers; bind returns
    the same mock so assertions see every call.
    """
    logger = MagicMock()
    logger.info = MagicMock()
    logger.debug = MagicMock()
    logger.warning = MagicMock()
    logger.error = MagicMock()
    logger.exception = MagicMock()
    logger.bind = MagicMock(return_value=logger)
    return logger


@pytest.fixture
def clock():
    """Deterministic clock starting at a fixed epoch second."""
    return ManualClock(start=1_700_000_000.0)
