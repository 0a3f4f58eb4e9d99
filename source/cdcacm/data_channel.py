"""Byte streams over the bulk endpoints of a CDC-ACM data interface.

SerialReader is a pull interface: read() blocks until the device sends data, and returns it.
SerialWriter is a push interface: write() blocks until all bytes were accepted by the device.

libusb transfers are synchronous, so a transfer can't be interrupted once it has been submitted. To keep
cancellation bounded, transfers are submitted in slices of `poll_interval` milliseconds; a cancel request
takes effect when the running slice ends. A timed-out slice is not a failure: the bytes it moved (if any)
are accounted for, and the next slice continues where it left off.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from .behavior import SerialPortBehavior
from .errors import DeviceDisconnected, DeviceError, NotOpen, device_error_from_transfer
from .usb_transport import TransferStatus, UsbDeviceHandle, UsbTransferError

logger = logging.getLogger(__name__)


class TransferTracker:
    """Counts in-flight transfers of a session, and gates the submission of new ones.

    Once closed, no new transfer can start; wait_idle() lets the session wait for the running ones.
    """

    def __init__(self):
        self._condition = threading.Condition()
        self._in_flight = 0
        self._closed = False

    @property
    def in_flight(self) -> int:
        with self._condition:
            return self._in_flight

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    @contextmanager
    def transfer(self) -> Iterator[bool]:
        """Context for a single transfer; yields False (and counts nothing) if no new transfers are allowed."""
        with self._condition:
            if self._closed:
                allowed = False
            else:
                allowed = True
                self._in_flight += 1
        try:
            yield allowed
        finally:
            if allowed:
                with self._condition:
                    self._in_flight -= 1
                    self._condition.notify_all()

    def close(self) -> None:
        with self._condition:
            self._closed = True

    def wait_idle(self, timeout: float) -> bool:
        """Wait until no transfer is in flight (timeout in seconds); return False if the wait timed out."""
        with self._condition:
            return self._condition.wait_for(lambda: self._in_flight == 0, timeout)


class _EndpointStream:
    """State shared by the reader and the writer.

    `on_disconnect` is called when a transfer finds the device gone, with no stream lock held and no transfer
    counted as in flight.
    """

    def __init__(self, device_handle: UsbDeviceHandle, endpoint: int, get_buffer_size: Callable[[], int],
                 tracker: TransferTracker, behavior: SerialPortBehavior,
                 on_disconnect: Optional[Callable[[], None]] = None):
        self._device_handle = device_handle
        self._endpoint = endpoint
        self._get_buffer_size = get_buffer_size
        self._tracker = tracker
        self._behavior = behavior
        self._on_disconnect = on_disconnect
        self._lock = threading.Lock()
        self._cancelled = threading.Event()
        self._error: Optional[DeviceError] = None

    @property
    def endpoint(self) -> int:
        return self._endpoint

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def error(self) -> Optional[DeviceError]:
        """The failure that ended this stream, if any."""
        return self._error

    @property
    def done(self) -> bool:
        """True if the stream can't transfer any more data, and a new stream is needed."""
        return self._error is not None or self._cancelled.is_set() or self._tracker.closed

    def cancel(self) -> None:
        """Stop transferring. A transfer in progress ends within one poll interval."""
        self._cancelled.set()

    def _stopped(self) -> bool:
        return self._cancelled.is_set() or self._tracker.closed

    def _report_disconnect(self) -> None:
        if self._on_disconnect is not None:
            self._on_disconnect()

    def _fail(self, exception: UsbTransferError, operation: str, bytes_written: int = 0) -> DeviceError:
        """Record a transfer failure; return the DeviceError to raise."""
        if exception.status is TransferStatus.STALL and self._behavior.clear_halt_on_stall:
            try:
                self._device_handle.clear_halt(self._endpoint)
            except UsbTransferError as clear_exception:
                logger.warning("Unable to clear halt on endpoint 0x%02x: %s", self._endpoint, clear_exception)
        self._error = device_error_from_transfer(exception, operation, bytes_written=bytes_written)
        return self._error


class SerialReader(_EndpointStream):
    """Reads from the bulk-in endpoint.

    read() returns b"" once the reader has been cancelled or the session has ended. Iterating over the
    reader yields chunks until then.
    """

    def read(self) -> bytes:
        """Wait for data from the device and return it."""
        try:
            with self._lock:
                return self._read()
        except DeviceDisconnected:
            self._report_disconnect()
            raise

    def _read(self) -> bytes:
        while True:
            if self._error is not None:
                raise DeviceError("The stream failed earlier; get a new reader.", status=self._error.status)

            if self._stopped():
                return b""

            # The transfer size is taken from the options in effect right now.
            length = self._get_buffer_size()

            with self._tracker.transfer() as allowed:
                if not allowed:
                    return b""
                try:
                    data = self._device_handle.bulk_transfer_in(self._endpoint, length, self._behavior.poll_interval)
                except UsbTransferError as exception:
                    if exception.status is not TransferStatus.TIMEOUT:
                        raise self._fail(exception, "Bulk-in transfer") from exception
                    # Nothing (or only part of a transfer) arrived during this slice.
                    data = exception.data

            # Zero-length transfers are valid and carry no data; they don't signal the end of the stream.
            if len(data) != 0:
                return bytes(data)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            data = self.read()
            if len(data) == 0:
                return
            yield data


class SerialWriter(_EndpointStream):
    """Writes to the bulk-out endpoint.

    Only one write() is in progress at any time; concurrent callers wait for their turn, which keeps
    the byte order of each call intact.
    """

    def write(self, data: bytes) -> int:
        """Send all bytes to the device; return the number of bytes sent.

        The data is sent in chunks of at most `buffer_size` bytes, in order. If a chunk fails, the remaining
        chunks are not sent, and DeviceError is raised; its `bytes_written` attribute tells how many bytes
        reached the device.
        """
        data = memoryview(bytes(data))

        try:
            with self._lock:
                return self._write(data)
        except DeviceDisconnected:
            self._report_disconnect()
            raise

    def _write(self, data: memoryview) -> int:
        if self._error is not None:
            raise DeviceError("The stream failed earlier; get a new writer.", status=self._error.status)

        if self._stopped():
            raise NotOpen("The writer is closed.")

        chunk_size = self._get_buffer_size()

        offset = 0
        while offset != len(data):
            chunk = data[offset:offset + chunk_size]
            offset += self._write_chunk(chunk, offset)

        return offset

    def _write_chunk(self, chunk: memoryview, bytes_written: int) -> int:
        """Send a single chunk, possibly in multiple slices. Return the chunk size."""

        if self._behavior.write_timeout is None:
            deadline = None
        else:
            deadline = time.monotonic() + self._behavior.write_timeout / 1000.0

        offset = 0
        while offset != len(chunk):
            with self._tracker.transfer() as allowed:
                if (not allowed) or self._cancelled.is_set():
                    self._error = DeviceError("Write cancelled.", bytes_written=bytes_written + offset,
                                              status=TransferStatus.CANCELLED)
                    raise self._error
                try:
                    offset += self._device_handle.bulk_transfer_out(self._endpoint, bytes(chunk[offset:]),
                                                                    self._behavior.poll_interval)
                except UsbTransferError as exception:
                    offset += exception.transferred
                    timed_out = exception.status is TransferStatus.TIMEOUT
                    if timed_out and (deadline is None or time.monotonic() < deadline):
                        continue
                    raise self._fail(exception, "Bulk-out transfer", bytes_written + offset) from exception

        return offset
