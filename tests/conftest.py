"""Shared pytest fixtures."""

import logging

import pytest

from crm_sync.storage.db import SyncDatabase


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo setup_logging() so later tests see default propagation."""
    yield
    logger = logging.getLogger("crm_sync")
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def db():
    """Initialized in-memory database."""
    database = SyncDatabase(":memory:")
    database.initialize()
    return database
