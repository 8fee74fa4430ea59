"""Global pytest configuration."""

from __future__ import annotations


def pytest_collection_modifyitems(config, items):
    """Run integration tests last so unit failures surface first."""
    items.sort(key=lambda item: item.get_closest_marker("integration") is not None)
