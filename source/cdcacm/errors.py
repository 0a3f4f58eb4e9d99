"""Errors raised by the cdcacm package.

InvalidOption, AlreadyOpen, and NotOpen are raised before any I/O is done. DeviceError (and its subclass
DeviceDisconnected) means a transfer was submitted and failed; the port must be reopened before it can be
used again, except for stream failures, which only invalidate the stream that failed.
"""

from typing import Optional

from .usb_transport import TransferStatus, UsbTransferError


class SerialError(Exception):
    """Base class for all errors raised by the cdcacm package."""


class InvalidOption(SerialError):
    """A serial option has a value that cannot be used."""
    def __init__(self, field: str, value):
        super().__init__(field, value)
        self.field = field
        self.value = value

    def __str__(self):
        return f"InvalidOption(field={self.field!r}, value={self.value!r})"


class MalformedResponse(SerialError):
    """The device returned data that is inconsistent with the CDC-ACM specification."""
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return f"MalformedResponse(message={self.message!r})"


class DeviceError(SerialError):
    """A transfer failed.

    For writes, `bytes_written` is the number of bytes that reached the device before the failure;
    the caller can resume from that offset.
    """
    def __init__(self, message: str, *, bytes_written: int = 0, status: Optional[TransferStatus] = None):
        super().__init__(message)
        self.message = message
        self.bytes_written = bytes_written
        self.status = status

    def __str__(self):
        status = None if self.status is None else self.status.value
        return f"{self.__class__.__name__}(message={self.message!r}, status={status}, bytes_written={self.bytes_written})"


class DeviceDisconnected(DeviceError):
    """The device is gone."""


class AlreadyOpen(SerialError):
    """The port is not closed."""
    def __str__(self):
        return "AlreadyOpen()"


class NotOpen(SerialError):
    """The port (or the stream) is not open."""
    def __init__(self, message: str = "The port is not open."):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return f"NotOpen(message={self.message!r})"


class PortNotFound(SerialError):
    """No permitted CDC-ACM device matches the request."""
    def __str__(self):
        return "PortNotFound()"


def device_error_from_transfer(error: UsbTransferError, operation: str, *, bytes_written: int = 0) -> DeviceError:
    """Translate a transport failure into a DeviceError (or DeviceDisconnected) describing the failed operation."""
    exception_class = DeviceDisconnected if error.status is TransferStatus.DISCONNECTED else DeviceError
    message = f"{operation} failed ({error.status.value})"
    if error.message:
        message += f": {error.message}"
    return exception_class(message, bytes_written=bytes_written, status=error.status)
