"""
Sensor sources that feed activity events into the monitor
"""

import threading
import time
from abc import ABC
from datetime import datetime
from typing import Callable, List, Optional

import serial

from lonelycare.config import BAUD_RATE, SERIAL_PORT
from lonelycare.logging_config import get_logger
from lonelycare.models import ActivityEvent, ActivitySource
from lonelycare.repository import LonelyCareError
from lonelycare.utils import to_local

logger = get_logger(__name__)

EventCallback = Callable[[ActivityEvent], None]
Unsubscribe = Callable[[], None]


class SerialSourceError(LonelyCareError):
    """Raised when the serial sensor cannot be opened."""
    pass


class SensorSource(ABC):
    """
    Anything that produces ActivityEvents.
    subscribe() returns a callable that removes the subscription.
    """

    def __init__(self):
        self._callbacks: List[EventCallback] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: EventCallback) -> Unsubscribe:
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks)

    def _publish(self, event: ActivityEvent) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Subscriber failed on {event.source.value} event: {e}")

    def start(self) -> None:
        """Begin producing events. No-op for push-style sources."""

    def stop(self) -> None:
        """Stop producing events."""


class QueueSensorSource(SensorSource):
    """In-process source: the host (or a test) pushes events with emit()."""

    def emit(self, event: ActivityEvent) -> None:
        self._publish(event)

    def emit_many(self, events: List[ActivityEvent]) -> None:
        for event in events:
            self._publish(event)


class SerialSensorSource(SensorSource):
    """
    Reads CSV sensor lines from a serial port.
    Runs in a separate thread to avoid blocking the event loop.

    Expected line format: timestamp,source,magnitude
    Example: 2025-12-31 14:30:15.250,accelerometer,3.42
    Discrete sources may leave magnitude empty: 2025-12-31 14:30:16,touch,
    """

    TIMESTAMP_FORMATS = ("%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d %H:%M:%S")

    def __init__(self, port: str = SERIAL_PORT, baud_rate: int = BAUD_RATE):
        super().__init__()
        self.port = port
        self.baud_rate = baud_rate
        self.serial_connection: Optional[serial.Serial] = None
        self.is_running = False
        self.read_thread: Optional[threading.Thread] = None

    def connect(self) -> bool:
        """
        Establish connection to the serial port.
        Returns True if successful, False otherwise.
        """
        if not self.port:
            logger.info("No serial port configured")
            return False
        try:
            self.serial_connection = serial.Serial(
                port=self.port,
                baudrate=self.baud_rate,
                timeout=1
            )
            logger.info(f"Connected to {self.port} at {self.baud_rate} baud")

            # Discard anything buffered before we attached
            self.serial_connection.reset_input_buffer()
            return True

        except serial.SerialException as e:
            logger.warning(f"Error connecting to {self.port}: {e}")
            return False

    def disconnect(self):
        """Close the serial connection"""
        if self.serial_connection and self.serial_connection.is_open:
            self.serial_connection.close()
            logger.info(f"Disconnected from {self.port}")

    @classmethod
    def parse_line(cls, line: str) -> Optional[ActivityEvent]:
        """Parse one CSV line. Returns None for headers and malformed lines."""
        parts = line.strip().split(",")
        if len(parts) != 3:
            return None

        timestamp = None
        for fmt in cls.TIMESTAMP_FORMATS:
            try:
                timestamp = datetime.strptime(parts[0].strip(), fmt)
                break
            except ValueError:
                continue
        if timestamp is None:
            return None

        try:
            source = ActivitySource(parts[1].strip().lower())
            magnitude = float(parts[2]) if parts[2].strip() else None
        except ValueError:
            return None

        return ActivityEvent(source=source, magnitude=magnitude, timestamp=to_local(timestamp))

    def _read_loop(self):
        """Main reading loop - runs in separate thread"""
        logger.info("Serial reading started")

        while self.is_running:
            try:
                if self.serial_connection and self.serial_connection.in_waiting > 0:
                    line = self.serial_connection.readline().decode("utf-8", errors="ignore")
                    event = self.parse_line(line)
                    if event:
                        self._publish(event)
                else:
                    # Small delay to prevent busy waiting
                    time.sleep(0.05)

            except serial.SerialException as e:
                logger.error(f"Error reading from serial: {e}")
                time.sleep(0.5)

        logger.info("Serial reading stopped")

    def start(self) -> None:
        """Start the background reading thread"""
        if self.is_running:
            return

        if not self.serial_connection or not self.serial_connection.is_open:
            if not self.connect():
                raise SerialSourceError(f"Cannot open serial port {self.port!r}")

        self.is_running = True
        self.read_thread = threading.Thread(target=self._read_loop, daemon=True)
        self.read_thread.start()

    def stop(self) -> None:
        """Stop the background reading thread"""
        self.is_running = False

        if self.read_thread:
            self.read_thread.join(timeout=2)
            self.read_thread = None

        self.disconnect()
