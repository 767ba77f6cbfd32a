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

"""Errors raised synchronously by command issuance."""


class BLEMiddlewareError(Exception):
    """Base class for all middleware errors."""


class RadioUnavailable(BLEMiddlewareError):
    """Discovery requested while the adapter is not powered on."""

    def __init__(self, state):
        self.state = state
        super().__init__(f"Bluetooth adapter not ready (state: {state})")


class PeripheralUnknown(BLEMiddlewareError):
    """Command issued for a peripheral without a live radio reference."""

    def __init__(self, identifier):
        self.identifier = identifier
        super().__init__(f"Peripheral {identifier} has no live radio reference")


class UntrackedEventWarning(Warning):
    """
    Connected/disconnected event for an identifier the registry never saw.

    Only ever logged, never raised.
    """
