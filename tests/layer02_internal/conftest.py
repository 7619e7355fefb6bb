"""
Layer 02 Internal Test Fixtures.

These fixtures run the real client code against httpx.MockTransport.
"""

import dataclasses

import pytest

from core.config import ClientSettings
from core.types import ScanConfig
from streaming.api import ScanApiClient
from stream_helpers import EventRecorder


@pytest.fixture
def settings():
    """Settings with a short poll interval for fast tests."""
    return ClientSettings(base_url="http://scan.test/api", poll_interval_ms=10)


@pytest.fixture
def aws_config():
    """AWS scan of users and groups."""
    return ScanConfig(provider="aws", scan_targets={"users": True, "groups": True})


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def make_api(settings):
    """Factory for ScanApiClient over a given transport."""

    def _make(transport, **overrides):
        return ScanApiClient(dataclasses.replace(settings, **overrides), transport=transport)

    return _make
