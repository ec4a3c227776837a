"""Shared pytest fixtures."""

import pytest


@pytest.fixture
def mock_env_vars(monkeypatch):
    """Set mock environment variables for testing."""
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "TEST")
    monkeypatch.setenv("COSMOS_DATABASE", "sos-bridge-test")


@pytest.fixture
def clean_dispatch_env(monkeypatch):
    """Remove dispatch overrides that a developer's shell might set."""
    for name in (
        "SOS_DEDUP_RADIUS_KM",
        "SOS_MATCH_RADIUS_KM",
        "SOS_BROADCAST_RADIUS_KM",
        "SOS_MAX_NOTIFY",
    ):
        monkeypatch.delenv(name, raising=False)
