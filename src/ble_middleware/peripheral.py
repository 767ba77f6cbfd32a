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
Peripheral - one remote BLE device as seen by the central

A Peripheral is the stable identity behind a stream of noisy advertisement
reports. Its fields are written only by PeripheralRegistry; everything exposed
here is read-only.
"""

import time
import weakref
from enum import Enum
from typing import Optional

UNKNOWN_DEVICE_NAME = "Unknown Device"


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"

    def __str__(self):
        return self.value


class Peripheral:
    """
    Tracks identity, advertisement payload and connection state of a peripheral.

    Name Policy:
    ------------
    Two names are tracked separately:

    1. advertised_name is captured from the first advertisement that carries a
       name and is never replaced afterwards. Advertisement names are what the
       user saw in the scan list, so they stay put.

    2. resolved_name follows whatever the radio stack currently reports. Stacks
       commonly refresh it after connecting (e.g. from the GAP Device Name
       characteristic), so it can change at any time.

    display_name prefers the advertised name, then the resolved one, then a
    placeholder. It is computed on every read.

    Manufacturer data, unlike the name, always reflects the latest
    advertisement: payloads frequently embed live sensor readings.

    Radio Reference:
    ----------------
    A peripheral holds only a weak reference to the driver that observed it.
    The driver owns every radio-level handle; a peripheral built by hand
    (outside the observation flow) has no reference and cannot be connected.
    """

    def __init__(self, identifier, placeholder_name=UNKNOWN_DEVICE_NAME):
        """
        Initialize a peripheral.

        Args:
            identifier: Stable identifier assigned by the radio stack
            placeholder_name: Name shown when no name has been observed yet
        """
        self._identifier = identifier
        self._placeholder_name = placeholder_name

        self._advertised_name: Optional[str] = None
        self._resolved_name: Optional[str] = None
        self._manufacturer_data: Optional[bytes] = None
        self._connection_state = ConnectionState.DISCONNECTED
        self._radio_ref: Optional[weakref.ref] = None

        self.rssi: Optional[int] = None
        self.first_seen = time.time()
        self.last_seen = self.first_seen

    # --- Identity ---

    @property
    def identifier(self):
        return self._identifier

    @property
    def advertised_name(self) -> Optional[str]:
        return self._advertised_name

    @property
    def resolved_name(self) -> Optional[str]:
        return self._resolved_name

    @property
    def display_name(self) -> str:
        if self._advertised_name:
            return self._advertised_name
        if self._resolved_name:
            return self._resolved_name
        return self._placeholder_name

    @property
    def name(self) -> str:
        """Alias for display_name."""
        return self.display_name

    # --- Advertisement payload ---

    @property
    def manufacturer_data(self) -> Optional[bytes]:
        return self._manufacturer_data

    def manufacturer_data_hex(self) -> str:
        """
        Render manufacturer data as space separated upper-case hex.

        Returns:
            str: e.g. "4C 00 02 15", or "" when no payload was advertised
        """
        if not self._manufacturer_data:
            return ""
        return " ".join(f"{b:02X}" for b in self._manufacturer_data)

    # --- Connection state ---

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection_state

    @property
    def is_connected(self) -> bool:
        return self._connection_state == ConnectionState.CONNECTED

    # --- Radio reference ---

    @property
    def radio(self):
        """The driver that observed this peripheral, or None if gone or never set."""
        if self._radio_ref is None:
            return None
        return self._radio_ref()

    @property
    def has_radio_reference(self) -> bool:
        return self.radio is not None

    # --- Registry-only mutators ---

    def _record_first_observation(self, current_name, advertised_name, manufacturer_data, rssi):
        self._advertised_name = advertised_name or current_name or None
        self._resolved_name = current_name or None
        self._manufacturer_data = manufacturer_data
        self.rssi = rssi

    def _record_repeat_observation(self, current_name, advertised_name, manufacturer_data, rssi):
        # Latest payload wins, even when this advertisement carried none
        self._manufacturer_data = manufacturer_data

        if current_name:
            self._resolved_name = current_name

        # Sticky once set: only fill an advertised name that was never recorded
        if not self._advertised_name and advertised_name:
            self._advertised_name = advertised_name

        if rssi is not None:
            self.rssi = rssi
        self.last_seen = time.time()

    def _attach_radio(self, radio):
        if radio is not None:
            self._radio_ref = weakref.ref(radio)

    def _set_connection_state(self, state: ConnectionState):
        self._connection_state = state

    # --- Dunder methods ---

    def __eq__(self, other):
        if not isinstance(other, Peripheral):
            return NotImplemented
        return self._identifier == other._identifier

    def __hash__(self):
        return hash(self._identifier)

    def __repr__(self):
        return (f"Peripheral({self._identifier}, {self.display_name!r}, "
                f"state={self._connection_state}, RSSI={self.rssi})")
