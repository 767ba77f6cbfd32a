"""
pytest configuration for BLE middleware tests.

This file is automatically loaded by pytest before test collection begins.
It sets up the Python path to allow imports from src/ and provides shared
fixtures: a mock radio driver, coordinators and a recording subscriber.
"""

import sys
import os

# Calculate paths relative to this file's location
tests_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(tests_dir)
src_dir = os.path.join(project_root, 'src')

# Add src/ to path so tests run without installing the package
if src_dir not in sys.path:
    sys.path.insert(0, src_dir)
if tests_dir not in sys.path:
    sys.path.insert(0, tests_dir)

from unittest.mock import Mock

import pytest
import RNS

from ble_middleware import (
    AdapterState,
    ConnectionCoordinator,
    PeripheralRegistry,
)
from mock_radio_driver import MockRadioDriver
from recording_subscriber import RecordingSubscriber


# ============================================================================
# Logging
# ============================================================================

@pytest.fixture(autouse=True)
def rns_log(monkeypatch):
    """Silence RNS logging and expose the calls for assertions."""
    log = Mock()
    monkeypatch.setattr(RNS, "log", log)
    return log


# ============================================================================
# Mock Radio Components
# ============================================================================

@pytest.fixture
def mock_driver():
    """Mock radio driver with the adapter already powered on."""
    return MockRadioDriver(availability=AdapterState.POWERED_ON)


@pytest.fixture
def registry():
    return PeripheralRegistry()


@pytest.fixture
def coordinator(mock_driver):
    """Coordinator delivering notifications inline, for deterministic tests."""
    return ConnectionCoordinator(mock_driver, {
        "name": "TestBLE",
        "threaded_notifications": "no",
    })


@pytest.fixture
def threaded_coordinator(mock_driver):
    """Coordinator delivering notifications on its own thread."""
    coordinator = ConnectionCoordinator(mock_driver, {"name": "ThreadedBLE"})
    coordinator.start()
    yield coordinator
    coordinator.stop()


@pytest.fixture
def subscriber(coordinator):
    recorder = RecordingSubscriber()
    coordinator.subscribe(recorder)
    return recorder


@pytest.fixture
def threaded_subscriber(threaded_coordinator):
    recorder = RecordingSubscriber()
    threaded_coordinator.subscribe(recorder)
    return recorder


# ============================================================================
# Common Test Data
# ============================================================================

@pytest.fixture
def sample_advertisements():
    """Sample advertisement fields keyed by role."""
    return {
        'widget': {
            'address': "AA:BB:CC:DD:EE:01",
            'local_name': "Widget",
            'manufacturer_data': bytes([0x01, 0x02]),
            'rssi': -50,
        },
        'sensor': {
            'address': "AA:BB:CC:DD:EE:02",
            'name': "Sensor-2",
            'manufacturer_data': bytes([0x4C, 0x00, 0x10]),
            'rssi': -70,
        },
        'anonymous': {
            'address': "AA:BB:CC:DD:EE:03",
            'rssi': -90,
        },
    }
