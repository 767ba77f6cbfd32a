"""
Unit tests for BleakRadioDriver

bleak is patched out, so these run without Bluetooth hardware. They cover
adapter error classification, advertisement translation and the
connection bookkeeping around BleakClient.
"""

import threading
from unittest.mock import AsyncMock, Mock, patch

import pytest
from bleak.exc import BleakError

from ble_middleware import AdapterState, Advertisement, DriverState
from ble_middleware.bleak_driver import (
    BleakRadioDriver,
    classify_adapter_error,
    flatten_manufacturer_data,
)

ADDRESS = "AA:BB:CC:DD:EE:01"


@pytest.fixture
def driver():
    driver = BleakRadioDriver(connection_timeout=1.0, min_rssi=-80, probe_time=0)
    driver.on_availability_changed = Mock()
    driver.on_device_discovered = Mock()
    driver.on_device_connected = Mock()
    driver.on_device_disconnected = Mock()
    driver.on_error = Mock()
    return driver


def make_client(address=ADDRESS, connect_error=None):
    client = Mock()
    client.address = address
    client.connect = AsyncMock(side_effect=connect_error)
    client.disconnect = AsyncMock()
    return client


class TestClassifyAdapterError:
    """Test mapping backend error messages to adapter availability."""

    @pytest.mark.parametrize("message,expected", [
        ("No powered Bluetooth adapters found.", AdapterState.POWERED_OFF),
        ("Bluetooth device is turned off", AdapterState.POWERED_OFF),
        ("org.bluez.Error.NotReady: Adapter not powered", AdapterState.POWERED_OFF),
        ("BLE is not authorized - check macOS privacy settings", AdapterState.UNAUTHORIZED),
        ("[Errno 13] Permission denied", AdapterState.UNAUTHORIZED),
        ("No Bluetooth adapters found.", AdapterState.UNSUPPORTED),
        ("Bluetooth LE is not supported", AdapterState.UNSUPPORTED),
        ("Bluetooth device is resetting", AdapterState.RESETTING),
        ("Something unexpected", AdapterState.UNKNOWN),
    ])
    def test_classification(self, message, expected):
        assert classify_adapter_error(BleakError(message)) == expected


class TestFlattenManufacturerData:

    def test_company_id_prepended_little_endian(self):
        assert flatten_manufacturer_data({0x004C: b"\x02\x15"}) == bytes([0x4C, 0x00, 0x02, 0x15])

    def test_empty_mapping(self):
        assert flatten_manufacturer_data({}) is None
        assert flatten_manufacturer_data(None) is None

    def test_first_entry_kept(self):
        data = flatten_manufacturer_data({0x0059: b"\x01", 0x004C: b"\x02"})
        assert data == bytes([0x59, 0x00, 0x01])

    def test_bytearray_payload(self):
        assert flatten_manufacturer_data({0xFFFF: bytearray(b"\xAA")}) == bytes([0xFF, 0xFF, 0xAA])


class TestDetection:
    """Test translation of bleak detections into Advertisements."""

    def test_advertisement_emitted(self, driver):
        device = Mock(address=ADDRESS)
        device.name = "Widget"
        adv = Mock(rssi=-50, local_name="Widget-Adv", manufacturer_data={0x004C: b"\x01"})

        driver._handle_detection(device, adv)

        advertisement = driver.on_device_discovered.call_args.args[0]
        assert advertisement == Advertisement(
            address=ADDRESS,
            name="Widget",
            local_name="Widget-Adv",
            manufacturer_data=bytes([0x4C, 0x00, 0x01]),
            rssi=-50
        )
        assert driver._devices[ADDRESS] is device

    def test_weak_signal_filtered(self, driver):
        device = Mock(address=ADDRESS)
        adv = Mock(rssi=-95, local_name=None, manufacturer_data={})

        driver._handle_detection(device, adv)

        driver.on_device_discovered.assert_not_called()
        assert ADDRESS not in driver._devices

    def test_callback_errors_contained(self, driver, rns_log):
        driver.on_device_discovered.side_effect = RuntimeError("consumer bug")
        device = Mock(address=ADDRESS)
        device.name = None
        adv = Mock(rssi=-40, local_name=None, manufacturer_data={})

        driver._handle_detection(device, adv)

        assert any("consumer bug" in c.args[0] for c in rns_log.call_args_list)


class TestCommandsWhileStopped:
    """Commands before start() must not touch the radio."""

    def test_initial_state(self, driver):
        assert driver.availability == AdapterState.UNKNOWN
        assert driver.state == DriverState.IDLE
        assert driver.connected_peers == []

    def test_scanning_requires_running(self, driver):
        driver.start_scanning()

        assert driver.state == DriverState.IDLE
        assert not driver._scanning

    def test_connect_requires_running(self, driver):
        driver.connect(ADDRESS)

        assert ADDRESS not in driver._connecting_peers

    def test_disconnect_unknown_is_noop(self, driver):
        driver.disconnect(ADDRESS)

        assert ADDRESS not in driver._requested_disconnects
        driver.on_device_disconnected.assert_not_called()

    def test_disconnect_in_flight_connection_marks_cancel(self, driver):
        driver._connecting_peers.add(ADDRESS)

        driver.disconnect(ADDRESS)

        assert ADDRESS in driver._requested_disconnects

    def test_stop_when_not_running(self, driver):
        driver.stop()
        assert driver.state == DriverState.IDLE


class TestConnect:
    """Test the connection coroutine with a patched BleakClient."""

    @pytest.mark.asyncio
    async def test_successful_connect(self, driver):
        client = make_client()
        with patch("ble_middleware.bleak_driver.BleakClient", return_value=client) as client_cls:
            await driver._connect(ADDRESS)

        client_cls.assert_called_once_with(
            ADDRESS,
            disconnected_callback=driver._handle_client_disconnected,
            timeout=1.0
        )
        driver.on_device_connected.assert_called_once_with(ADDRESS)
        assert driver.connected_peers == [ADDRESS]

    @pytest.mark.asyncio
    async def test_connect_uses_scanned_device(self, driver):
        device = Mock(address=ADDRESS)
        driver._devices[ADDRESS] = device
        client = make_client()

        with patch("ble_middleware.bleak_driver.BleakClient", return_value=client) as client_cls:
            await driver._connect(ADDRESS)

        assert client_cls.call_args.args[0] is device

    @pytest.mark.asyncio
    async def test_failed_connect_reports_disconnect(self, driver):
        error = BleakError("Device with address AA:BB:CC:DD:EE:01 was not found")
        client = make_client(connect_error=error)

        with patch("ble_middleware.bleak_driver.BleakClient", return_value=client):
            await driver._connect(ADDRESS)

        driver.on_device_connected.assert_not_called()
        driver.on_device_disconnected.assert_called_once_with(ADDRESS, error)
        driver.on_error.assert_called_once()
        assert driver.on_error.call_args.args[0] == "warning"
        assert driver.connected_peers == []

    @pytest.mark.asyncio
    async def test_connect_timeout_reports_disconnect(self, driver):
        client = make_client(connect_error=TimeoutError())

        with patch("ble_middleware.bleak_driver.BleakClient", return_value=client):
            await driver._connect(ADDRESS)

        address, cause = driver.on_device_disconnected.call_args.args
        assert address == ADDRESS
        assert isinstance(cause, TimeoutError)

    @pytest.mark.asyncio
    async def test_cancelled_during_setup(self, driver):
        """disconnect() issued while connecting tears the link down again."""
        client = make_client()
        driver._connecting_peers.add(ADDRESS)
        driver.disconnect(ADDRESS)

        with patch("ble_middleware.bleak_driver.BleakClient", return_value=client):
            await driver._connect(ADDRESS)

        client.disconnect.assert_awaited_once()
        driver.on_device_connected.assert_not_called()
        driver.on_device_disconnected.assert_called_once_with(ADDRESS, None)
        assert driver.connected_peers == []
        assert ADDRESS not in driver._requested_disconnects


class TestClientDisconnected:
    """Test the BleakClient disconnected_callback."""

    def test_requested_disconnect_has_no_cause(self, driver):
        client = make_client()
        driver._clients[ADDRESS] = client
        driver._requested_disconnects.add(ADDRESS)

        driver._handle_client_disconnected(client)

        driver.on_device_disconnected.assert_called_once_with(ADDRESS, None)
        assert driver.connected_peers == []

    def test_unexpected_disconnect_has_cause(self, driver):
        client = make_client()
        driver._clients[ADDRESS] = client

        driver._handle_client_disconnected(client)

        address, cause = driver.on_device_disconnected.call_args.args
        assert address == ADDRESS
        assert isinstance(cause, ConnectionError)

    def test_stale_client_ignored(self, driver):
        current = make_client()
        stale = make_client()
        driver._clients[ADDRESS] = current

        driver._handle_client_disconnected(stale)

        driver.on_device_disconnected.assert_not_called()
        assert driver.connected_peers == [ADDRESS]

    def test_disconnect_while_stopped_marks_requested(self, driver):
        client = make_client()
        driver._clients[ADDRESS] = client

        driver.disconnect(ADDRESS)
        driver._handle_client_disconnected(client)

        driver.on_device_disconnected.assert_called_once_with(ADDRESS, None)


class TestAdapterProbe:
    """Test availability detection."""

    @pytest.mark.asyncio
    async def test_probe_success_powers_on(self, driver):
        scanner = Mock(start=AsyncMock(), stop=AsyncMock())

        with patch("ble_middleware.bleak_driver.BleakScanner", return_value=scanner):
            await driver._probe_adapter()

        assert driver.availability == AdapterState.POWERED_ON
        driver.on_availability_changed.assert_called_once_with(AdapterState.POWERED_ON)

    @pytest.mark.asyncio
    async def test_probe_failure_classified(self, driver):
        scanner = Mock(start=AsyncMock(side_effect=BleakError("No powered Bluetooth adapters found.")),
                       stop=AsyncMock())

        with patch("ble_middleware.bleak_driver.BleakScanner", return_value=scanner):
            await driver._probe_adapter()

        assert driver.availability == AdapterState.POWERED_OFF
        driver.on_availability_changed.assert_called_once_with(AdapterState.POWERED_OFF)

    @pytest.mark.asyncio
    async def test_unchanged_availability_not_repeated(self, driver):
        scanner = Mock(start=AsyncMock(), stop=AsyncMock())

        with patch("ble_middleware.bleak_driver.BleakScanner", return_value=scanner):
            await driver._probe_adapter()
            await driver._probe_adapter()

        assert driver.on_availability_changed.call_count == 1

    @pytest.mark.asyncio
    async def test_scanner_start_failure(self, driver):
        scanner = Mock(start=AsyncMock(side_effect=BleakError("Bluetooth device is turned off")),
                       stop=AsyncMock())
        driver._scanning = True
        driver._state = DriverState.SCANNING

        with patch("ble_middleware.bleak_driver.BleakScanner", return_value=scanner):
            await driver._start_scanner()

        assert driver.state == DriverState.IDLE
        assert not driver._scanning
        assert driver.availability == AdapterState.POWERED_OFF
        assert driver.on_error.call_args.args[0] == "error"

    @pytest.mark.asyncio
    async def test_transient_scanner_error_keeps_availability(self, driver):
        """A scanner error that says nothing about the adapter leaves it POWERED_ON."""
        error = BleakError("[org.bluez.Error.InProgress] Operation already in progress")
        scanner = Mock(start=AsyncMock(side_effect=error), stop=AsyncMock())
        driver._availability = AdapterState.POWERED_ON
        driver._scanning = True
        driver._state = DriverState.SCANNING
        driver._schedule_probe = Mock()

        with patch("ble_middleware.bleak_driver.BleakScanner", return_value=scanner):
            await driver._start_scanner()

        assert driver.availability == AdapterState.POWERED_ON
        assert driver.state == DriverState.IDLE
        driver.on_availability_changed.assert_not_called()
        driver._schedule_probe.assert_not_called()
        driver.on_error.assert_called_once_with("error", "Failed to start scanning", error)

    @pytest.mark.asyncio
    async def test_power_loss_on_scan_schedules_probe(self, driver):
        scanner = Mock(start=AsyncMock(side_effect=BleakError("Bluetooth device is turned off")),
                       stop=AsyncMock())
        driver._running = True
        driver._availability = AdapterState.POWERED_ON
        driver._scanning = True
        driver._schedule_probe = Mock()

        with patch("ble_middleware.bleak_driver.BleakScanner", return_value=scanner):
            await driver._start_scanner()

        assert driver.availability == AdapterState.POWERED_OFF
        driver._schedule_probe.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_probe_repeats_until_powered_on(self, driver):
        """While running, an unusable adapter is probed again until it recovers."""
        scanner = Mock(start=AsyncMock(side_effect=[BleakError("Bluetooth device is turned off"), None]),
                       stop=AsyncMock())
        driver._running = True
        driver.probe_interval = 0

        with patch("ble_middleware.bleak_driver.BleakScanner", return_value=scanner):
            await driver._probe_adapter()

        assert driver.availability == AdapterState.POWERED_ON
        assert [c.args[0] for c in driver.on_availability_changed.call_args_list] == [
            AdapterState.POWERED_OFF,
            AdapterState.POWERED_ON,
        ]

    @pytest.mark.asyncio
    async def test_probe_single_shot_when_stopped(self, driver):
        scanner = Mock(start=AsyncMock(side_effect=BleakError("Bluetooth device is turned off")),
                       stop=AsyncMock())

        with patch("ble_middleware.bleak_driver.BleakScanner", return_value=scanner):
            await driver._probe_adapter()

        assert scanner.start.await_count == 1
        assert driver.availability == AdapterState.POWERED_OFF


def test_start_and_stop_event_loop(driver):
    """start() spins up the loop thread and probes; stop() tears it down."""
    powered_on = threading.Event()
    driver.on_availability_changed = Mock(side_effect=lambda state: powered_on.set())
    scanner = Mock(start=AsyncMock(), stop=AsyncMock())

    with patch("ble_middleware.bleak_driver.BleakScanner", return_value=scanner):
        driver.start()
        try:
            assert powered_on.wait(timeout=5.0)
            assert driver.availability == AdapterState.POWERED_ON
            assert driver.loop_thread.is_alive()
        finally:
            driver.stop()

    assert not driver.loop_thread.is_alive()
    assert driver.state == DriverState.IDLE


def test_stop_forgets_pending_connections_and_devices(driver):
    """Connections still in flight at stop() do not block connect() after a restart."""
    scanner = Mock(start=AsyncMock(), stop=AsyncMock())
    pending = Mock()

    with patch("ble_middleware.bleak_driver.BleakScanner", return_value=scanner):
        driver.start()
        try:
            driver._connecting_peers.add(ADDRESS)
            driver._connect_futures[ADDRESS] = pending
            driver._requested_disconnects.add(ADDRESS)
            driver._devices[ADDRESS] = Mock(address=ADDRESS)
        finally:
            driver.stop()

    pending.cancel.assert_called_once_with()
    assert driver._connecting_peers == set()
    assert driver._connect_futures == {}
    assert driver._requested_disconnects == set()
    assert driver._devices == {}


def test_connect_after_restart_is_issued(driver):
    scanner = Mock(start=AsyncMock(), stop=AsyncMock())
    connected = threading.Event()
    driver.on_device_connected = Mock(side_effect=lambda address: connected.set())

    with patch("ble_middleware.bleak_driver.BleakScanner", return_value=scanner), \
            patch("ble_middleware.bleak_driver.BleakClient", return_value=make_client()):
        driver.start()
        driver._connecting_peers.add(ADDRESS)
        driver.stop()

        driver.start()
        try:
            driver.connect(ADDRESS)
            assert connected.wait(timeout=5.0)
        finally:
            driver.stop()

    driver.on_device_connected.assert_called_once_with(ADDRESS)
