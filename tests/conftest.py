"""Pytest configuration and shared fixtures."""

import pytest

# The upnp2mqtt testing plugin is registered via a ``pytest11`` entry
# point for external consumers.  This suite disables it
# (``-p no:upnp2mqtt``) and loads it here instead, so the import chain
# happens after coverage tracing starts.
pytest_plugins = ["upnp2mqtt.testing._plugin"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (in-memory doubles, whole bridge)"
    )
