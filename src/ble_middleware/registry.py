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
PeripheralRegistry - canonical catalog of observed peripherals

The registry turns a stream of repeated advertisement reports into exactly one
Peripheral per identifier and keeps the connection bookkeeping for them. It
knows nothing about radio commands.
"""

import threading
from typing import Dict, List, Optional, Tuple

import RNS

from .peripheral import ConnectionState, Peripheral, UNKNOWN_DEVICE_NAME


class PeripheralRegistry:
    """
    Single source of truth for peripheral identity and connection state.

    VIEWS:
    - discovered: every peripheral ever observed, in first-observation order
    - connected: peripherals currently CONNECTED, in connection order
    Invariant: connected is always a subset of discovered.

    THREADING MODEL:
    - Every mutation and snapshot takes self.lock (re-entrant)
    - Peripheral fields are written only from inside this class
    - discovered()/connected() return copies, callers can iterate freely
    """

    def __init__(self, placeholder_name=UNKNOWN_DEVICE_NAME):
        """
        Initialize an empty registry.

        Args:
            placeholder_name: display_name used for peripherals with no name
        """
        self.placeholder_name = placeholder_name
        self.lock = threading.RLock()

        # dicts preserve insertion order: first observation / connection order
        self._discovered: Dict[object, Peripheral] = {}  # identifier -> Peripheral
        self._connected: Dict[object, Peripheral] = {}  # identifier -> Peripheral

    def observe(self, identifier, current_name=None, advertised_name=None,
                manufacturer_data=None, rssi=None, radio=None) -> Tuple[Peripheral, bool]:
        """
        Record one observation of a peripheral.

        Args:
            identifier: Stable identifier from the radio stack
            current_name: Name the stack currently reports, if any
            advertised_name: Name field from the advertisement payload, if any
            manufacturer_data: Manufacturer payload, None if not advertised
            rssi: Signal strength in dBm
            radio: Driver that produced the observation (held weakly)

        Returns:
            tuple: (peripheral, is_new) where is_new is True only for the
                   first observation of this identifier
        """
        with self.lock:
            peripheral = self._discovered.get(identifier)

            if peripheral is None:
                peripheral = Peripheral(identifier, placeholder_name=self.placeholder_name)
                peripheral._record_first_observation(current_name, advertised_name, manufacturer_data, rssi)
                peripheral._attach_radio(radio)
                self._discovered[identifier] = peripheral
                RNS.log(f"{self} discovered {peripheral.display_name} ({identifier})", RNS.LOG_DEBUG)
                return peripheral, True

            peripheral._record_repeat_observation(current_name, advertised_name, manufacturer_data, rssi)
            # Re-discovery may come from a fresh radio handle
            peripheral._attach_radio(radio)
            return peripheral, False

    def mark_connecting(self, identifier) -> Optional[Peripheral]:
        """
        Optimistically flag a peripheral as CONNECTING after a connect command.

        Purely informational: nothing times out of this state. A peripheral
        that is already CONNECTED is left alone.

        Returns:
            Peripheral or None if the identifier is unknown
        """
        with self.lock:
            peripheral = self._discovered.get(identifier)
            if peripheral is None:
                return None

            if peripheral.connection_state == ConnectionState.DISCONNECTED:
                peripheral._set_connection_state(ConnectionState.CONNECTING)
            return peripheral

    def cancel_connecting(self, identifier) -> Optional[Peripheral]:
        """
        Undo mark_connecting() when the connect command never went out.

        Only a CONNECTING peripheral is moved back to DISCONNECTED.

        Returns:
            Peripheral or None if the identifier is unknown
        """
        with self.lock:
            peripheral = self._discovered.get(identifier)
            if peripheral is None:
                return None

            if peripheral.connection_state == ConnectionState.CONNECTING:
                peripheral._set_connection_state(ConnectionState.DISCONNECTED)
            return peripheral

    def mark_connected(self, identifier) -> Optional[Peripheral]:
        """
        Transition a peripheral to CONNECTED and add it to the connected view.

        Connections can only be confirmed for previously observed peripherals;
        unknown identifiers are ignored.

        Returns:
            Peripheral or None if the identifier is unknown
        """
        with self.lock:
            peripheral = self._discovered.get(identifier)
            if peripheral is None:
                return None

            peripheral._set_connection_state(ConnectionState.CONNECTED)
            if identifier not in self._connected:
                self._connected[identifier] = peripheral
            return peripheral

    def mark_disconnected(self, identifier) -> Optional[Peripheral]:
        """
        Transition a peripheral to DISCONNECTED and drop it from the connected view.

        Idempotent: repeating the call leaves the same end state.

        Returns:
            Peripheral or None if the identifier is unknown
        """
        with self.lock:
            peripheral = self._discovered.get(identifier)
            if peripheral is None:
                return None

            peripheral._set_connection_state(ConnectionState.DISCONNECTED)
            self._connected.pop(identifier, None)
            return peripheral

    def discovered(self) -> List[Peripheral]:
        """Snapshot of all observed peripherals, in first-observation order."""
        with self.lock:
            return list(self._discovered.values())

    def connected(self) -> List[Peripheral]:
        """Snapshot of connected peripherals, in connection order."""
        with self.lock:
            return list(self._connected.values())

    def get(self, identifier) -> Optional[Peripheral]:
        with self.lock:
            return self._discovered.get(identifier)

    def clear(self) -> int:
        """
        Forget discovery history.

        Connected peripherals are kept so the connected view stays a subset
        of the discovered one; they are forgotten by a later clear() once
        they disconnect.

        Returns:
            int: Number of peripherals removed
        """
        with self.lock:
            stale = [identifier for identifier in self._discovered if identifier not in self._connected]
            for identifier in stale:
                del self._discovered[identifier]

        if stale:
            RNS.log(f"{self} cleared {len(stale)} peripheral(s) from discovery history", RNS.LOG_DEBUG)
        return len(stale)

    def __len__(self):
        with self.lock:
            return len(self._discovered)

    def __contains__(self, identifier):
        with self.lock:
            return identifier in self._discovered

    def __str__(self):
        return "PeripheralRegistry"
