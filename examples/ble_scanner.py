#!/usr/bin/env python3
"""
BLE Scanner Example

Scans for nearby peripherals through ConnectionCoordinator and prints the
discovered list, optionally connecting to one of them.

Usage:
    python ble_scanner.py [scan|connect ADDRESS|help] [seconds]

Commands:
    scan    - Discover peripherals and list them with manufacturer data
    connect - Discover, connect to ADDRESS, hold the link, then disconnect
"""

import sys
import os
import threading
import time

# Add parent directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

import RNS

from ble_middleware import (
    AdapterState,
    BleakRadioDriver,
    ConnectionCoordinator,
    PeripheralSubscriber,
    RadioUnavailable,
)


class ConsoleSubscriber(PeripheralSubscriber):
    """Prints coordinator notifications as they arrive."""

    def __init__(self):
        self.powered_on = threading.Event()
        self.connected = threading.Event()

    def on_availability_changed(self, state):
        print(f"[adapter] {state}")
        if state == AdapterState.POWERED_ON:
            self.powered_on.set()
        else:
            self.powered_on.clear()

    def on_peripheral_discovered(self, peripheral):
        print(f"[found]   {peripheral.identifier}  {peripheral.display_name}  RSSI {peripheral.rssi}")

    def on_peripheral_connected(self, peripheral):
        print(f"[connect] {peripheral.display_name} ({peripheral.identifier})")
        self.connected.set()

    def on_peripheral_disconnected(self, peripheral, cause):
        reason = f": {cause}" if cause else ""
        print(f"[gone]    {peripheral.display_name} ({peripheral.identifier}){reason}")
        self.connected.clear()


def print_peripherals(coordinator):
    peripherals = coordinator.discovered_peripherals
    print()
    print("=" * 60)
    print(f"Discovered {len(peripherals)} peripheral(s)")
    print("=" * 60)

    for i, peripheral in enumerate(peripherals, 1):
        print(f"{i}. {peripheral.display_name}")
        print(f"   Address: {peripheral.identifier}")
        print(f"   RSSI: {peripheral.rssi} dBm")
        if peripheral.manufacturer_data:
            print(f"   Manufacturer data: {peripheral.manufacturer_data_hex()}")
        print()


def wait_for_adapter(subscriber, coordinator, timeout=10.0):
    if subscriber.powered_on.wait(timeout=timeout):
        return True

    print(f"Bluetooth adapter not available (state: {coordinator.driver.availability})")
    return False


def run(command, address=None, seconds=5.0):
    driver = BleakRadioDriver(connection_timeout=10.0)
    coordinator = ConnectionCoordinator(driver, {"name": "Scanner"})
    subscriber = ConsoleSubscriber()
    coordinator.subscribe(subscriber)

    coordinator.start()
    try:
        if not wait_for_adapter(subscriber, coordinator):
            return False

        try:
            coordinator.start_discovery()
        except RadioUnavailable as e:
            print(f"ERROR: {e}")
            return False

        print(f"Scanning for {seconds:.0f} seconds...")
        time.sleep(seconds)
        coordinator.stop_discovery()

        if command == "scan":
            print_peripherals(coordinator)
            return True

        target = next((p for p in coordinator.discovered_peripherals if p.identifier == address), None)
        if target is None:
            print(f"{address} was not seen during the scan")
            return False

        coordinator.connect(target)
        if not subscriber.connected.wait(timeout=driver.connection_timeout + 5.0):
            # No timer in the coordinator; cancel the pending attempt ourselves
            print(f"No connection to {address}, giving up")
            coordinator.disconnect(target)
            return False

        print(f"Holding connection for {seconds:.0f} seconds...")
        time.sleep(seconds)
        coordinator.disconnect(target)
        coordinator.dispatcher.flush(timeout=5.0)
        return True
    finally:
        coordinator.stop()


def show_help():
    """Show usage information"""
    print("""
BLE Scanner

Usage:
    python ble_scanner.py [command] [seconds]

Commands:
    scan            - Scan and list nearby peripherals
    connect ADDRESS - Scan, then connect to ADDRESS
    help            - Show this help message

Examples:
    python ble_scanner.py scan 10
    python ble_scanner.py connect AA:BB:CC:DD:EE:FF
    """)


def main():
    """Main entry point"""
    RNS.loglevel = RNS.LOG_INFO

    args = sys.argv[1:]
    command = args[0].lower() if args else "scan"

    if command == "scan":
        seconds = float(args[1]) if len(args) > 1 else 5.0
        ok = run("scan", seconds=seconds)
    elif command == "connect" and len(args) > 1:
        seconds = float(args[2]) if len(args) > 2 else 5.0
        ok = run("connect", address=args[1], seconds=seconds)
    elif command == "help":
        show_help()
        ok = True
    else:
        print(f"Unknown command: {' '.join(args)}")
        show_help()
        ok = False

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
