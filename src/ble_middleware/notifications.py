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
Subscriber interface and notification delivery

Driver callbacks arrive on whatever thread the radio stack uses. Subscribers
(UI layers, loggers, metrics) must instead see one serialized stream of
events, so every notification goes through a NotificationDispatcher:

- threaded mode (default): a single daemon thread drains a FIFO queue
- inline mode: the posting thread drains the queue itself, one event at a
  time, which keeps tests deterministic

Either way events are delivered in the order they were posted, so the
connect/disconnect sequence for a given peripheral is never reordered.
"""

import threading
from collections import deque
from typing import List

import RNS


class PeripheralSubscriber:
    """
    Receives life-cycle events from a ConnectionCoordinator.

    Override only what you need; every method defaults to a no-op.
    """

    def on_availability_changed(self, state):
        """Adapter availability changed (use it to gate start_discovery)."""

    def on_peripheral_discovered(self, peripheral):
        """A peripheral was observed for the first time."""

    def on_peripheral_connected(self, peripheral):
        """A connection to the peripheral was established."""

    def on_peripheral_disconnected(self, peripheral, cause):
        """
        The peripheral disconnected.

        cause is None for requested disconnections and carries the radio
        error for unexpected link loss.
        """


class NotificationDispatcher:
    """
    Delivers subscriber notifications on one consistent execution context.

    Subscriber exceptions are logged and swallowed here: one broken
    subscriber must not starve the others or stall the queue.
    """

    def __init__(self, threaded=True, name="BLE-Notifications"):
        """
        Initialize the dispatcher.

        Args:
            threaded: Deliver on a dedicated thread (True) or on the
                      posting thread (False)
            name: Name of the delivery thread
        """
        self.threaded = threaded
        self.name = name

        self._subscribers: List[PeripheralSubscriber] = []
        self._subscribers_lock = threading.Lock()

        self._queue = deque()  # (method_name, args)
        self._condition = threading.Condition()
        self._running = False
        self._in_flight = False
        self._draining = False
        self._thread = None

    # --- Subscribers ---

    def subscribe(self, subscriber):
        with self._subscribers_lock:
            if subscriber not in self._subscribers:
                self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber):
        with self._subscribers_lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    @property
    def subscribers(self) -> List[PeripheralSubscriber]:
        with self._subscribers_lock:
            return list(self._subscribers)

    # --- Lifecycle ---

    def start(self):
        """Start the delivery thread (threaded mode only)."""
        if not self.threaded:
            return

        with self._condition:
            if self._running:
                return
            self._running = True
            self._thread = threading.Thread(target=self._run, daemon=True, name=self.name)
            self._thread.start()

        RNS.log(f"{self} delivery thread started", RNS.LOG_DEBUG)

    def stop(self, timeout=2.0):
        """Deliver what is still queued, then stop the delivery thread."""
        if not self.threaded:
            self.pump()
            return

        with self._condition:
            if not self._running:
                return
            self._running = False
            self._condition.notify_all()
            thread = self._thread

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                RNS.log(f"{self} delivery thread did not stop within {timeout}s", RNS.LOG_WARNING)

        self._thread = None

    # --- Posting ---

    def post(self, method_name, *args):
        """
        Queue a notification for every current subscriber.

        In inline mode nothing is delivered until pump() runs; callers post
        while holding their own lock and pump after releasing it.
        """
        if self.threaded and not self._running:
            self.start()

        with self._condition:
            self._queue.append((method_name, args))
            self._condition.notify_all()

    def pump(self):
        """
        Deliver queued notifications on the calling thread (inline mode).

        Re-entrant calls (a subscriber triggering further events) only queue;
        the outermost pump delivers them afterwards, in order.
        """
        if self.threaded:
            return

        with self._condition:
            if self._draining:
                return
            self._draining = True

        try:
            while True:
                with self._condition:
                    if not self._queue:
                        # Release the drain under the same lock that saw the
                        # queue empty, or a concurrent post() would be stranded
                        self._draining = False
                        self._condition.notify_all()
                        return
                    method_name, args = self._queue.popleft()
                self._deliver(method_name, args)
        except BaseException:
            with self._condition:
                self._draining = False
                self._condition.notify_all()
            raise

    def flush(self, timeout=None) -> bool:
        """
        Block until every queued notification has been delivered.

        Returns:
            bool: True if the queue drained within timeout
        """
        if not self.threaded:
            self.pump()
            return True

        if self._thread is threading.current_thread():
            # Waiting on ourselves would never finish
            return False

        with self._condition:
            return self._condition.wait_for(
                lambda: not self._queue and not self._in_flight,
                timeout=timeout
            )

    # --- Delivery ---

    def _run(self):
        while True:
            with self._condition:
                while not self._queue and self._running:
                    self._condition.wait()

                if not self._queue:
                    break

                method_name, args = self._queue.popleft()
                self._in_flight = True

            try:
                self._deliver(method_name, args)
            finally:
                with self._condition:
                    self._in_flight = False
                    self._condition.notify_all()

        RNS.log(f"{self} delivery thread stopped", RNS.LOG_DEBUG)

    def _deliver(self, method_name, args):
        for subscriber in self.subscribers:
            handler = getattr(subscriber, method_name, None)
            if handler is None:
                continue

            try:
                handler(*args)
            except Exception as e:
                RNS.log(f"{self} subscriber {subscriber!r} failed in {method_name}: "
                        f"{type(e).__name__}: {e}", RNS.LOG_ERROR)

    def __str__(self):
        return f"NotificationDispatcher[{self.name}]"
