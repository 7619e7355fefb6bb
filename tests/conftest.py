"""
Root pytest configuration for the scan client test suite.

Test Layer Architecture:
    layer02: Internal   [<10s]   Core modules against httpx.MockTransport
    unit:    Unit       [<1s]    Metrics, CLI helpers
"""

import pytest


def pytest_configure(config):
    """Register all custom markers."""

    # ==========================================================================
    # Layer Markers
    # ==========================================================================
    config.addinivalue_line(
        "markers", "layer02: Layer 02 tests - Internal modules (mocked transport)"
    )
    config.addinivalue_line("markers", "unit: Unit tests - no I/O")

    # ==========================================================================
    # Behavior Markers
    # ==========================================================================
    config.addinivalue_line("markers", "stream: Test exercises the event stream driver")
    config.addinivalue_line("markers", "polling: Test exercises the polling driver")
    config.addinivalue_line("markers", "fallback: Test covers stream to polling fallback")


def pytest_collection_modifyitems(config, items):
    """
    Auto-apply markers based on test location.

    Tests in layer directories automatically get the corresponding marker.
    """
    for item in items:
        test_path = str(item.fspath)

        if "layer02_internal" in test_path:
            item.add_marker(pytest.mark.layer02)
        elif "unit" in test_path:
            item.add_marker(pytest.mark.unit)
