"""Pytest configuration and shared fixtures."""

import logging
from collections.abc import Iterator

import pytest

# The dmsender testing plugin is registered via a ``pytest11`` entry
# point (pyproject.toml) for external consumers.  In our own test
# suite we disable it (``-p no:dmsender``) and load it explicitly here
# instead, so the dmsender import chain is first imported after
# ``pytest-cov`` starts tracing.
pytest_plugins = ["dmsender.testing._plugin"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (may require external services)"
    )


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    """Save and restore root logger handlers and level.

    ``configure_logging()`` runs during every App lifecycle and clears
    the root logger; this keeps that from leaking between tests.
    """
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    yield
    for h in root.handlers:
        if h not in original_handlers:
            h.close()
    root.handlers = original_handlers
    root.setLevel(original_level)
