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
ConnectionCoordinator - routes radio events into the registry

The coordinator sits between a RadioDriverInterface and its subscribers:

- commands (discovery, connect, disconnect) go out to the driver
- driver callbacks come back, mutate the PeripheralRegistry and are
  republished to subscribers through a NotificationDispatcher

It owns no peripheral data of its own.
"""

import threading

import RNS

from .bluetooth_driver import AdapterState, Advertisement, DriverState, RadioDriverInterface
from .exceptions import PeripheralUnknown, RadioUnavailable, UntrackedEventWarning
from .notifications import NotificationDispatcher
from .peripheral import Peripheral, UNKNOWN_DEVICE_NAME
from .registry import PeripheralRegistry


def _parse_bool(value):
    # Configuration files carry "yes"/"no" strings
    if isinstance(value, str):
        return value.lower() in ["yes", "true", "1"]
    return bool(value)


class ConnectionCoordinator:
    """
    Central-role connection manager.

    STATE MACHINE (per peripheral, driven only by driver events):
    - Disconnected --connect(), on_connected--> Connected
    - Connected --disconnect(), on_disconnected--> Disconnected
    - Connected --on_disconnected (link loss, cause set)--> Disconnected
    - Disconnected --connect(), no on_connected--> Disconnected
      No timer is set here; callers needing a timeout call disconnect().
    - Connecting is only entered when optimistic_connecting is enabled.

    THREADING MODEL:
    - Driver callbacks may arrive on any thread, in any order
    - event_lock makes "mutate registry + queue notification" atomic, so
      notifications for one peripheral are queued in mutation order
    - Subscribers are called by the dispatcher, never under event_lock

    UNTRACKED EVENTS:
    - on_connected for an unknown identifier is logged and dropped
    - on_disconnected for an unknown identifier is logged and still
      forwarded, so subscribers can clean up state keyed by it
    """

    DEFAULT_NAME = "BLEMiddleware"

    def __init__(self, driver: RadioDriverInterface, configuration=None, registry=None):
        """
        Initialize the coordinator and wire the driver callbacks.

        Args:
            driver: Radio driver to command and listen to
            configuration: Optional dict with coordinator settings
            registry: Optional PeripheralRegistry to populate
        """
        c = configuration if configuration is not None else {}

        self.name = c.get("name", ConnectionCoordinator.DEFAULT_NAME)
        self.threaded_notifications = _parse_bool(c.get("threaded_notifications", True))
        self.optimistic_connecting = _parse_bool(c.get("optimistic_connecting", False))
        placeholder_name = c.get("placeholder_name", UNKNOWN_DEVICE_NAME)

        self.driver = driver
        self.registry = registry if registry is not None else PeripheralRegistry(placeholder_name=placeholder_name)
        self.dispatcher = NotificationDispatcher(
            threaded=self.threaded_notifications,
            name=f"BLE-Notifications-{self.name}"
        )

        self.event_lock = threading.RLock()
        self.scanning = False
        self.online = False

        # Set driver callbacks
        self.driver.on_availability_changed = self.on_adapter_state_changed
        self.driver.on_device_discovered = self.on_peripheral_observed
        self.driver.on_device_connected = self.on_connected
        self.driver.on_device_disconnected = self.on_disconnected
        self.driver.on_error = self.on_driver_error

        RNS.log(f"{self} initialized, notifications: "
                f"{'threaded' if self.threaded_notifications else 'inline'}, "
                f"optimistic connecting: {'ENABLED' if self.optimistic_connecting else 'DISABLED'}",
                RNS.LOG_DEBUG)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self):
        """Start notification delivery and the driver."""
        RNS.log(f"{self} starting", RNS.LOG_INFO)
        self.dispatcher.start()

        try:
            self.driver.start()
        except Exception as e:
            RNS.log(f"{self} failed to start driver: {e}", RNS.LOG_ERROR)
            raise

        self.online = True

    def stop(self):
        """Stop discovery and the driver, then drain pending notifications."""
        RNS.log(f"{self} stopping", RNS.LOG_INFO)
        self.online = False

        try:
            self.stop_discovery()
            self.driver.stop()
        except Exception as e:
            RNS.log(f"{self} error stopping driver: {e}", RNS.LOG_ERROR)

        self.dispatcher.stop()
        RNS.log(f"{self} stopped", RNS.LOG_DEBUG)

    # ========================================================================
    # Subscribers
    # ========================================================================

    def subscribe(self, subscriber):
        """Attach a PeripheralSubscriber. Attaching twice has no effect."""
        self.dispatcher.subscribe(subscriber)

    def unsubscribe(self, subscriber):
        self.dispatcher.unsubscribe(subscriber)

    # ========================================================================
    # Views
    # ========================================================================

    @property
    def discovered_peripherals(self):
        return self.registry.discovered()

    @property
    def connected_peripherals(self):
        return self.registry.connected()

    # ========================================================================
    # Commands
    # ========================================================================

    def start_discovery(self):
        """
        Start scanning for peripherals.

        Raises:
            RadioUnavailable: The adapter is not powered on. Not retried;
                call again after on_availability_changed(POWERED_ON).
        """
        with self.event_lock:
            state = self.driver.availability
            if state != AdapterState.POWERED_ON:
                RNS.log(f"{self} cannot start discovery, adapter state: {state}", RNS.LOG_WARNING)
                raise RadioUnavailable(state)

            # The driver may have dropped the scan on its own (scanner error)
            if self.scanning and self.driver.state == DriverState.SCANNING:
                RNS.log(f"{self} discovery already active", RNS.LOG_DEBUG)
                return

            RNS.log(f"{self} starting discovery", RNS.LOG_INFO)
            self.driver.start_scanning()
            self.scanning = True

    def stop_discovery(self):
        """Stop scanning. Safe to call when not scanning."""
        with self.event_lock:
            self.driver.stop_scanning()
            if self.scanning:
                RNS.log(f"{self} discovery stopped", RNS.LOG_INFO)
            self.scanning = False

    def connect(self, peripheral: Peripheral):
        """
        Request a connection. The outcome arrives later as a notification.

        Raises:
            PeripheralUnknown: The peripheral was not observed through this
                coordinator's driver.
        """
        self._require_radio_reference(peripheral)

        RNS.log(f"{self} connecting to {peripheral.display_name} ({peripheral.identifier})", RNS.LOG_INFO)

        if self.optimistic_connecting:
            self.registry.mark_connecting(peripheral.identifier)

        try:
            self.driver.connect(peripheral.identifier)
        except Exception as e:
            RNS.log(f"{self} connect command for {peripheral.identifier} failed: {e}", RNS.LOG_ERROR)
            if self.optimistic_connecting:
                self.registry.cancel_connecting(peripheral.identifier)
            raise

    def disconnect(self, peripheral: Peripheral):
        """
        Request a disconnection. Also serves as cancellation of an
        in-flight connect.

        Raises:
            PeripheralUnknown: The peripheral was not observed through this
                coordinator's driver.
        """
        self._require_radio_reference(peripheral)

        RNS.log(f"{self} disconnecting from {peripheral.display_name} ({peripheral.identifier})", RNS.LOG_INFO)
        self.driver.disconnect(peripheral.identifier)

    def _require_radio_reference(self, peripheral):
        if peripheral.radio is not self.driver:
            RNS.log(f"{self} rejecting command for {peripheral.identifier}: no live radio reference",
                    RNS.LOG_WARNING)
            raise PeripheralUnknown(peripheral.identifier)

    # ========================================================================
    # Driver callbacks
    # ========================================================================

    def on_adapter_state_changed(self, state: AdapterState):
        """Driver callback: forward availability changes verbatim."""
        RNS.log(f"{self} adapter state changed: {state}", RNS.LOG_INFO)

        with self.event_lock:
            if state != AdapterState.POWERED_ON and self.scanning:
                # The radio dropped the scan with the power; allow a fresh start
                self.scanning = False
            self.dispatcher.post("on_availability_changed", state)
        self.dispatcher.pump()

    def on_peripheral_observed(self, advertisement: Advertisement):
        """
        Driver callback: record an advertisement.

        Only the first observation of an identifier is republished; refreshed
        names and payloads stay silent to avoid UI churn.
        """
        with self.event_lock:
            peripheral, is_new = self.registry.observe(
                advertisement.address,
                current_name=advertisement.name,
                advertised_name=advertisement.local_name,
                manufacturer_data=advertisement.manufacturer_data,
                rssi=advertisement.rssi,
                radio=self.driver
            )

            if is_new:
                self.dispatcher.post("on_peripheral_discovered", peripheral)

        if is_new:
            RNS.log(f"{self} discovered {peripheral.display_name} ({peripheral.identifier}) "
                    f"RSSI: {peripheral.rssi}", RNS.LOG_VERBOSE)
            self.dispatcher.pump()

    def on_connected(self, identifier):
        """Driver callback: confirm a connection for a known peripheral."""
        with self.event_lock:
            peripheral = self.registry.mark_connected(identifier)
            if peripheral is not None:
                self.dispatcher.post("on_peripheral_connected", peripheral)

        if peripheral is None:
            # Radio connected to something never discovered: coordination bug, not fatal
            RNS.log(f"{self} {UntrackedEventWarning.__name__}: connection event for untracked "
                    f"peripheral {identifier}, dropped", RNS.LOG_WARNING)
            return

        RNS.log(f"{self} connected to {peripheral.display_name} ({identifier})", RNS.LOG_INFO)
        self.dispatcher.pump()

    def on_disconnected(self, identifier, cause=None):
        """
        Driver callback: record a disconnection.

        Forwarded even for untracked identifiers, with a detached placeholder
        Peripheral carrying the identifier.
        """
        with self.event_lock:
            peripheral = self.registry.mark_disconnected(identifier)
            tracked = peripheral is not None
            if not tracked:
                peripheral = Peripheral(identifier, placeholder_name=self.registry.placeholder_name)
            self.dispatcher.post("on_peripheral_disconnected", peripheral, cause)

        if not tracked:
            RNS.log(f"{self} {UntrackedEventWarning.__name__}: disconnection event for untracked "
                    f"peripheral {identifier}, forwarding anyway", RNS.LOG_WARNING)
        elif cause is not None:
            RNS.log(f"{self} lost connection to {peripheral.display_name} ({identifier}): {cause}",
                    RNS.LOG_WARNING)
        else:
            RNS.log(f"{self} disconnected from {peripheral.display_name} ({identifier})", RNS.LOG_INFO)

        self.dispatcher.pump()

    def on_driver_error(self, severity: str, message: str, exc: Exception = None):
        """Driver callback: log driver errors with the matching severity."""
        if severity == "critical":
            log_level = RNS.LOG_CRITICAL
        elif severity == "error":
            log_level = RNS.LOG_ERROR
        elif severity == "warning":
            log_level = RNS.LOG_WARNING
        else:
            log_level = RNS.LOG_DEBUG

        if exc:
            RNS.log(f"{self} driver {severity}: {message} - {type(exc).__name__}: {exc}", log_level)
        else:
            RNS.log(f"{self} driver {severity}: {message}", log_level)

    def __str__(self):
        return f"ConnectionCoordinator[{self.name}]"
