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
BLE Middleware - central-role discovery and connection management

Key features:
- Deduplicated peripheral catalog with stable display names
- Connection state tracking driven by asynchronous radio events
- Multi-subscriber life-cycle notifications on a single delivery thread
- Pluggable radio driver (bleak-backed driver included)
"""

from .bluetooth_driver import AdapterState, Advertisement, DriverState, RadioDriverInterface
from .bleak_driver import BleakRadioDriver
from .coordinator import ConnectionCoordinator
from .exceptions import BLEMiddlewareError, PeripheralUnknown, RadioUnavailable, UntrackedEventWarning
from .notifications import NotificationDispatcher, PeripheralSubscriber
from .peripheral import ConnectionState, Peripheral, UNKNOWN_DEVICE_NAME
from .registry import PeripheralRegistry

__all__ = [
    "AdapterState",
    "Advertisement",
    "BLEMiddlewareError",
    "BleakRadioDriver",
    "ConnectionCoordinator",
    "ConnectionState",
    "DriverState",
    "NotificationDispatcher",
    "Peripheral",
    "PeripheralRegistry",
    "PeripheralSubscriber",
    "PeripheralUnknown",
    "RadioDriverInterface",
    "RadioUnavailable",
    "UNKNOWN_DEVICE_NAME",
    "UntrackedEventWarning",
]

