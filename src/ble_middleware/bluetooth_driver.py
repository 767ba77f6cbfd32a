# MIT License
#
# Copyright (c) 2025 BLE Middleware Contributors
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in
# all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

"""
Radio driver abstraction for BLE central operations

The coordinator never talks to a Bluetooth stack directly. It consumes this
narrow interface instead, so the platform driver (bleak, a test double, ...)
can be swapped without touching registry or coordinator logic.

Commands (start_scanning, stop_scanning, connect, disconnect) are
fire-and-forget. Outcomes are reported later through the callback attributes,
which the consumer assigns after construction:

    driver.on_availability_changed = coordinator.on_adapter_state_changed
    driver.on_device_discovered = coordinator.on_peripheral_observed
    driver.on_device_connected = coordinator.on_connected
    driver.on_device_disconnected = coordinator.on_disconnected
    driver.on_error = coordinator.on_driver_error

Callbacks may fire on any thread and in any order relative to the commands
that caused them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional


class AdapterState(Enum):
    """Power/availability state reported by the local Bluetooth adapter."""
    UNKNOWN = "unknown"
    RESETTING = "resetting"
    UNSUPPORTED = "unsupported"
    UNAUTHORIZED = "unauthorized"
    POWERED_OFF = "powered_off"
    POWERED_ON = "powered_on"

    def __str__(self):
        return self.value


class DriverState(Enum):
    """Activity state of the driver itself."""
    IDLE = "idle"
    SCANNING = "scanning"


@dataclass
class Advertisement:
    """
    One observation of a peripheral, as reported by the radio.

    Attributes:
        address: Stable identifier assigned by the radio stack
        name: Name currently reported by the stack for this device, if any
        local_name: Name field carried in the advertisement payload, if any
        manufacturer_data: Raw manufacturer-specific payload, if any
        rssi: Signal strength in dBm
    """
    address: str
    name: Optional[str] = None
    local_name: Optional[str] = None
    manufacturer_data: Optional[bytes] = None
    rssi: Optional[int] = None


class RadioDriverInterface(ABC):
    """
    Abstract BLE central driver.

    Implementations own the radio stack and every handle it hands out.
    Consumers only ever refer to peripherals by address.
    """

    # Callbacks (assigned by consumer)
    on_availability_changed: Optional[Callable[[AdapterState], None]] = None
    on_device_discovered: Optional[Callable[[Advertisement], None]] = None
    on_device_connected: Optional[Callable[[str], None]] = None
    on_device_disconnected: Optional[Callable[[str, Optional[Exception]], None]] = None
    on_error: Optional[Callable[[str, str, Optional[Exception]], None]] = None

    # --- Lifecycle ---

    @abstractmethod
    def start(self):
        """Bring the driver up. Availability is reported via on_availability_changed."""

    @abstractmethod
    def stop(self):
        """Stop scanning, drop all connections and release the radio."""

    # --- State ---

    @property
    @abstractmethod
    def availability(self) -> AdapterState:
        """Current adapter availability state."""

    @property
    @abstractmethod
    def state(self) -> DriverState:
        """Current driver activity state."""

    # --- Commands ---

    @abstractmethod
    def start_scanning(self):
        """Begin reporting advertisements through on_device_discovered."""

    @abstractmethod
    def stop_scanning(self):
        """Stop scanning. Safe to call when not scanning."""

    @abstractmethod
    def connect(self, address: str):
        """Request a connection. Completion arrives via on_device_connected."""

    @abstractmethod
    def disconnect(self, address: str):
        """Request a disconnection. Completion arrives via on_device_disconnected."""
