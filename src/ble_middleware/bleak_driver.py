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
Bleak Radio Driver

Implements RadioDriverInterface on top of bleak, which covers BlueZ (Linux),
CoreBluetooth (macOS) and WinRT (Windows) for central-role operations.

USAGE EXAMPLE:
--------------

    from ble_middleware import BleakRadioDriver, ConnectionCoordinator

    driver = BleakRadioDriver(connection_timeout=10.0, min_rssi=-90)
    coordinator = ConnectionCoordinator(driver)
    coordinator.subscribe(my_subscriber)
    coordinator.start()

    # once my_subscriber sees on_availability_changed(POWERED_ON):
    coordinator.start_discovery()

ARCHITECTURE:
-------------

The driver runs a dedicated asyncio event loop in a separate thread. Public
methods are called from any thread and hand work to that loop with
run_coroutine_threadsafe; none of them wait for the radio. Callbacks fire on
the loop thread.

bleak does not expose adapter power state directly, so start() probes the
adapter with a short scan and derives an AdapterState from the outcome. While
the adapter is unusable the probe repeats every probe_interval seconds, so a
recovery is reported as on_availability_changed(POWERED_ON).
"""

import asyncio
import threading
from typing import Dict, Optional

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

import RNS

from .bluetooth_driver import AdapterState, Advertisement, DriverState, RadioDriverInterface


def classify_adapter_error(exc: Exception) -> AdapterState:
    """
    Map a bleak/backend error to the adapter availability it implies.

    Backends only report these conditions as free-form messages, e.g. BlueZ's
    "No powered Bluetooth adapters found." or CoreBluetooth's
    "Bluetooth device is turned off".
    """
    message = str(exc).lower()

    if "not powered" in message or "no powered" in message or "turned off" in message or "powered off" in message:
        return AdapterState.POWERED_OFF
    if "permission" in message or "not authorized" in message or "unauthorized" in message or "access denied" in message:
        return AdapterState.UNAUTHORIZED
    if "no bluetooth adapters" in message or "unsupported" in message or "not supported" in message:
        return AdapterState.UNSUPPORTED
    if "resetting" in message:
        return AdapterState.RESETTING
    return AdapterState.UNKNOWN


def flatten_manufacturer_data(manufacturer_data) -> Optional[bytes]:
    """
    Convert bleak's {company_id: payload} mapping into one opaque payload.

    The company identifier is prepended little-endian, which is how it
    appears on air. Only the first entry is kept; advertisements carry one
    manufacturer-specific field in practice.

    Returns:
        bytes or None when the advertisement carried no manufacturer data
    """
    if not manufacturer_data:
        return None

    company_id, payload = next(iter(manufacturer_data.items()))
    return int(company_id).to_bytes(2, "little") + bytes(payload)


class BleakRadioDriver(RadioDriverInterface):
    """
    Central-role BLE driver backed by bleak.

    This driver provides:
    - Adapter availability probing
    - Continuous scanning with an RSSI floor
    - Connect/disconnect via BleakClient, with link-loss reporting
    - Dedicated asyncio event loop in separate thread
    """

    def __init__(
        self,
        connection_timeout: float = 10.0,
        min_rssi: int = -100,
        scan_service_uuids=None,
        probe_time: float = 0.5,
        probe_interval: float = 5.0
    ):
        """
        Initialize the driver. No radio access happens until start().

        Args:
            connection_timeout: Seconds bleak waits for a connection (default: 10.0)
            min_rssi: Advertisements weaker than this are ignored (default: -100 dBm)
            scan_service_uuids: Optional list of service UUIDs to filter scans by
            probe_time: Seconds the availability probe scans for (default: 0.5)
            probe_interval: Seconds between probes while the adapter is not
                            usable (default: 5.0)
        """
        # Configuration
        self.connection_timeout = connection_timeout
        self.min_rssi = min_rssi
        self.scan_service_uuids = list(scan_service_uuids) if scan_service_uuids else None
        self.probe_time = probe_time
        self.probe_interval = probe_interval

        # Callbacks (assigned by consumer)
        self.on_availability_changed = None
        self.on_device_discovered = None
        self.on_device_connected = None
        self.on_device_disconnected = None
        self.on_error = None

        # State
        self._availability = AdapterState.UNKNOWN
        self._state = DriverState.IDLE
        self._running = False
        self._scanning = False
        self._scanner: Optional[BleakScanner] = None

        # Latest radio handle per address; the driver owns these
        self._devices: Dict[str, object] = {}  # address -> bleak BLEDevice

        # Connections
        self._clients: Dict[str, BleakClient] = {}  # address -> BleakClient
        self._connecting_peers: set = set()
        self._requested_disconnects: set = set()
        self._peers_lock = threading.RLock()
        self._connect_futures: Dict[str, object] = {}  # address -> concurrent Future

        # Event loop management
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.loop_thread: Optional[threading.Thread] = None
        self._loop_ready = threading.Event()
        self._probe_future = None

        # Logging
        self.log_prefix = "BleakRadioDriver"

    def _log(self, message: str, level: str = "INFO"):
        """Log message with appropriate level."""
        level_map = {
            "DEBUG": RNS.LOG_DEBUG,
            "VERBOSE": RNS.LOG_VERBOSE,
            "INFO": RNS.LOG_INFO,
            "WARNING": RNS.LOG_WARNING,
            "ERROR": RNS.LOG_ERROR,
            "CRITICAL": RNS.LOG_CRITICAL,
            "EXTREME": RNS.LOG_EXTREME,
        }
        RNS.log(f"{self.log_prefix} {message}", level_map.get(level.upper(), RNS.LOG_INFO))

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self):
        """Start the event loop thread and probe the adapter."""
        if self._running:
            self._log("Already running", "DEBUG")
            return

        self._loop_ready.clear()
        self.loop_thread = threading.Thread(target=self._run_event_loop, daemon=True, name="BLE-EventLoop")
        self.loop_thread.start()
        self._loop_ready.wait(timeout=5.0)

        self._running = True
        self._log("Driver started")

        self._schedule_probe()

    def stop(self):
        """Stop scanning, disconnect every peer and shut the loop down."""
        if not self._running:
            return

        self._log("Stopping driver...")
        self.stop_scanning()

        with self._peers_lock:
            clients = list(self._clients.items())
            self._requested_disconnects.update(address for address, _ in clients)

        for address, client in clients:
            future = asyncio.run_coroutine_threadsafe(self._disconnect_client(address, client), self.loop)
            try:
                future.result(timeout=5.0)
            except Exception as e:
                self._log(f"Error disconnecting from {address} during shutdown: {e}", "WARNING")

        self._running = False

        # Pending work never completes once the loop stops
        if self._probe_future is not None:
            self._probe_future.cancel()
            self._probe_future = None

        with self._peers_lock:
            pending = list(self._connect_futures.values())
            self._connect_futures.clear()
            self._connecting_peers.clear()
            # Keep markers for links still closing so their disconnect stays "requested"
            self._requested_disconnects.intersection_update(self._clients)
        for future in pending:
            future.cancel()

        self._devices.clear()

        self.loop.call_soon_threadsafe(self.loop.stop)
        if self.loop_thread is not None:
            self.loop_thread.join(timeout=5.0)

        self._state = DriverState.IDLE
        self._log("Driver stopped")

    def _run_event_loop(self):
        """Run asyncio event loop in separate thread."""
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self._loop_ready.set()
        self._log("Event loop thread started", "DEBUG")
        self.loop.run_forever()
        self.loop.close()
        self._log("Event loop thread stopped", "DEBUG")

    # ========================================================================
    # State & Properties
    # ========================================================================

    @property
    def availability(self) -> AdapterState:
        return self._availability

    @property
    def state(self) -> DriverState:
        return self._state

    @property
    def connected_peers(self):
        with self._peers_lock:
            return list(self._clients.keys())

    def _set_availability(self, state: AdapterState):
        if state == self._availability:
            return

        self._log(f"Adapter availability: {self._availability} -> {state}")
        self._availability = state

        if self.on_availability_changed:
            try:
                self.on_availability_changed(state)
            except Exception as e:
                self._log(f"Error in availability changed callback: {e}", "ERROR")

    def _schedule_probe(self):
        """Start probing unless a probe is already pending. Callable from any thread."""
        if self._probe_future is not None and not self._probe_future.done():
            return
        self._probe_future = asyncio.run_coroutine_threadsafe(self._probe_adapter(), self.loop)

    async def _probe_adapter(self):
        """
        Probe the adapter, then keep re-probing every probe_interval while it
        is unusable and the driver runs, so a recovery is reported as
        POWERED_ON.
        """
        while True:
            state = await self._probe_once()
            self._set_availability(state)
            if state == AdapterState.POWERED_ON or not self._running:
                return
            await asyncio.sleep(self.probe_interval)

    async def _probe_once(self) -> AdapterState:
        """Run a short scan to find out whether the adapter is usable."""
        scanner = BleakScanner()
        try:
            await scanner.start()
            await asyncio.sleep(self.probe_time)
            await scanner.stop()
        except (BleakError, OSError) as e:
            self._log(f"Adapter probe failed: {e}", "WARNING")
            return classify_adapter_error(e)

        return AdapterState.POWERED_ON

    # ========================================================================
    # Scanning
    # ========================================================================

    def start_scanning(self):
        """Start scanning for BLE devices."""
        if not self._running:
            self._log("Cannot start scanning: driver not running", "ERROR")
            return

        if self._scanning:
            self._log("Already scanning", "DEBUG")
            return

        self._log("Starting BLE scanning...")
        self._scanning = True
        self._state = DriverState.SCANNING

        asyncio.run_coroutine_threadsafe(self._start_scanner(), self.loop)

    def stop_scanning(self):
        """Stop scanning for BLE devices."""
        if not self._scanning:
            return

        self._log("Stopping BLE scanning...")
        self._scanning = False
        self._state = DriverState.IDLE

        if self._running:
            asyncio.run_coroutine_threadsafe(self._stop_scanner(), self.loop)

    async def _start_scanner(self):
        scanner = BleakScanner(
            detection_callback=self._handle_detection,
            service_uuids=self.scan_service_uuids
        )

        try:
            await scanner.start()
        except (BleakError, OSError) as e:
            self._log(f"Scanner failed to start: {e}", "ERROR")
            self._scanning = False
            self._state = DriverState.IDLE

            # Transient errors (e.g. BlueZ "InProgress") say nothing about the adapter
            state = classify_adapter_error(e)
            if state != AdapterState.UNKNOWN:
                self._set_availability(state)
                if self._running:
                    self._schedule_probe()

            if self.on_error:
                self.on_error("error", "Failed to start scanning", e)
            return

        self._scanner = scanner
        if not self._scanning:
            # stop_scanning() raced the start
            await self._stop_scanner()

    async def _stop_scanner(self):
        scanner = self._scanner
        self._scanner = None
        if scanner is None:
            return

        try:
            await scanner.stop()
        except (BleakError, OSError) as e:
            self._log(f"Error stopping scanner: {e}", "WARNING")

    def _handle_detection(self, device, advertisement_data):
        """Called by bleak for each advertisement received."""
        rssi = advertisement_data.rssi
        if rssi is not None and rssi < self.min_rssi:
            self._log(f"{device.address}: RSSI {rssi} below threshold {self.min_rssi}", "EXTREME")
            return

        self._devices[device.address] = device

        advertisement = Advertisement(
            address=device.address,
            name=device.name,
            local_name=advertisement_data.local_name,
            manufacturer_data=flatten_manufacturer_data(advertisement_data.manufacturer_data),
            rssi=rssi
        )

        if self.on_device_discovered:
            try:
                self.on_device_discovered(advertisement)
            except Exception as e:
                self._log(f"Error in device discovered callback: {e}", "ERROR")

    # ========================================================================
    # Connection Management
    # ========================================================================

    def connect(self, address: str):
        """Connect to a peripheral (fire-and-forget)."""
        if not self._running:
            self._log("Cannot connect: driver not running", "ERROR")
            return

        with self._peers_lock:
            if address in self._clients:
                self._log(f"Already connected to {address}", "DEBUG")
                return
            if address in self._connecting_peers:
                self._log(f"Connection already in progress to {address}", "DEBUG")
                return
            self._connecting_peers.add(address)
            self._requested_disconnects.discard(address)

        future = asyncio.run_coroutine_threadsafe(self._connect(address), self.loop)
        with self._peers_lock:
            self._connect_futures[address] = future

        def cleanup_connecting_state(fut):
            with self._peers_lock:
                if self._connect_futures.get(address) is fut:
                    del self._connect_futures[address]
                    self._connecting_peers.discard(address)
            if not fut.cancelled() and fut.exception() is not None:
                self._log(f"Connection task for {address} failed: {fut.exception()}", "ERROR")

        future.add_done_callback(cleanup_connecting_state)

    async def _connect(self, address: str):
        # Prefer the scanned handle: some backends cannot connect by address alone
        target = self._devices.get(address, address)
        client = BleakClient(
            target,
            disconnected_callback=self._handle_client_disconnected,
            timeout=self.connection_timeout
        )

        try:
            await client.connect()
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            self._log(f"Failed to connect to {address}: {e}", "WARNING")
            with self._peers_lock:
                self._connecting_peers.discard(address)
                self._requested_disconnects.discard(address)
            if self.on_error:
                self.on_error("warning", f"Connection to {address} failed", e)
            self._emit_disconnected(address, e)
            return

        with self._peers_lock:
            self._connecting_peers.discard(address)
            cancelled = address in self._requested_disconnects
            if not cancelled:
                self._clients[address] = client

        if cancelled:
            # disconnect() arrived while the connection was being set up
            self._log(f"Connection to {address} cancelled during setup", "DEBUG")
            await self._disconnect_client(address, client)
            with self._peers_lock:
                self._requested_disconnects.discard(address)
            self._emit_disconnected(address, None)
            return

        self._log(f"Connected to {address}")
        if self.on_device_connected:
            try:
                self.on_device_connected(address)
            except Exception as e:
                self._log(f"Error in device connected callback: {e}", "ERROR")

    def disconnect(self, address: str):
        """Disconnect from a peripheral (fire-and-forget)."""
        with self._peers_lock:
            client = self._clients.get(address)
            if client is None:
                if address in self._connecting_peers:
                    self._requested_disconnects.add(address)
                    self._log(f"Cancelling in-flight connection to {address}", "DEBUG")
                else:
                    self._log(f"Not connected to {address}", "DEBUG")
                return
            self._requested_disconnects.add(address)

        if not self._running:
            return

        asyncio.run_coroutine_threadsafe(self._disconnect_client(address, client), self.loop)

    async def _disconnect_client(self, address: str, client):
        try:
            await client.disconnect()
        except (BleakError, OSError) as e:
            self._log(f"Error disconnecting from {address}: {e}", "WARNING")

    def _handle_client_disconnected(self, client):
        """BleakClient disconnected_callback, fires for requested and unexpected disconnects."""
        address = client.address

        with self._peers_lock:
            if self._clients.get(address) is not client:
                return
            del self._clients[address]
            requested = address in self._requested_disconnects
            self._requested_disconnects.discard(address)

        cause = None if requested else ConnectionError(f"Connection to {address} lost")
        self._emit_disconnected(address, cause)

    def _emit_disconnected(self, address: str, cause: Optional[Exception]):
        self._log(f"Disconnected from {address}" + (f" ({cause})" if cause else ""))
        if self.on_device_disconnected:
            try:
                self.on_device_disconnected(address, cause)
            except Exception as e:
                self._log(f"Error in device disconnected callback: {e}", "ERROR")
