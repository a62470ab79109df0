"""Pytest fixtures for Rebound tests."""

from __future__ import annotations

import logging
import random
from collections.abc import Generator

import pytest
import structlog

from rebound.core.errors import CategoryRegistry
from rebound.state import InMemoryAttemptRecorder


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset logging state before and after each test.

    This ensures test isolation for logging configuration.
    """
    from rebound.cli import helpers as cli_helpers

    cli_helpers.reset_logging_state()
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    original_level = root_logger.level
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    cli_helpers.reset_logging_state()
    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        if handler not in original_handlers:
            handler.close()
    for handler in original_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(original_level)


@pytest.fixture
def registry() -> CategoryRegistry:
    """A fresh registry with the built-in categories."""
    return CategoryRegistry()


@pytest.fixture
def recorder() -> InMemoryAttemptRecorder:
    return InMemoryAttemptRecorder()


@pytest.fixture
def rng() -> random.Random:
    """Seeded jitter source."""
    return random.Random(1234)
