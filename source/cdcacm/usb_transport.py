"""The USB services consumed by the CDC-ACM layer.

The serial port implementation never talks to a USB stack directly. Everything it needs (enumerating devices,
asking for permission to use a device, claiming interfaces, and submitting control and bulk transfers) goes
through the two abstract classes defined here:

* UsbBackend: device discovery, permissions, and connect/disconnect notification.
* UsbDeviceHandle: an opened device on which interfaces can be claimed and transfers can be submitted.

The libusb_transport module provides an implementation on top of libusb-1.0. Tests provide scripted fakes.

All timeouts are given in milliseconds.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import NamedTuple, Optional

from .events import EventSource

# Endpoint address and attribute bits, as defined in the USB 2.0 specification, section 9.6.6.
ENDPOINT_DIRECTION_MASK = 0x80
ENDPOINT_IN = 0x80
ENDPOINT_OUT = 0x00
ENDPOINT_TRANSFER_TYPE_MASK = 0x03
ENDPOINT_TRANSFER_TYPE_BULK = 0x02
ENDPOINT_TRANSFER_TYPE_INTERRUPT = 0x03


class TransferStatus(Enum):
    """Outcome of a failed transfer or device operation, as reported by the transport."""
    STALL = "stall"                # The endpoint (or the default control pipe) returned a STALL handshake.
    TIMEOUT = "timeout"            # The transfer did not complete within the requested time.
    DISCONNECTED = "disconnected"  # The device is gone.
    CANCELLED = "cancelled"        # The transfer was cancelled before completion.
    ERROR = "error"                # Any other failure (I/O error, overflow, access denied, ...).


class UsbTransferError(Exception):
    """A transfer or device operation failed.

    For bulk transfers, `transferred` holds the number of bytes that were moved before the failure, and `data`
    holds the bytes that were received (bulk-in only). A timed-out transfer may have moved some bytes.
    """
    def __init__(self, status: TransferStatus, message: str = "", *, transferred: int = 0, data: bytes = b""):
        super().__init__(status, message)
        self.status = status
        self.message = message
        self.transferred = transferred
        self.data = data

    def __str__(self):
        return f"UsbTransferError(status={self.status.value}, message={self.message!r}, transferred={self.transferred})"


class UsbEndpointInfo(NamedTuple):
    """An endpoint of an interface alternate setting."""
    address: int
    attributes: int
    max_packet_size: int

    @property
    def is_in(self) -> bool:
        return (self.address & ENDPOINT_DIRECTION_MASK) == ENDPOINT_IN

    @property
    def transfer_type(self) -> int:
        return self.attributes & ENDPOINT_TRANSFER_TYPE_MASK


class UsbInterfaceInfo(NamedTuple):
    """One alternate setting of an interface.

    The `extra` field holds the class-specific descriptors that follow the interface descriptor.
    """
    interface_number: int
    alternate_setting: int
    interface_class: int
    interface_subclass: int
    interface_protocol: int
    endpoints: tuple[UsbEndpointInfo, ...] = ()
    extra: bytes = b""


class UsbConfigurationInfo(NamedTuple):
    """A device configuration, with all alternate settings of all of its interfaces."""
    configuration_value: int
    interfaces: tuple[UsbInterfaceInfo, ...]


class UsbDeviceKey(NamedTuple):
    """Identifies an attached device for as long as it stays attached."""
    bus_number: int
    device_address: int

    def __str__(self):
        return f"{self.bus_number:03d}:{self.device_address:03d}"


class UsbDeviceInfo(NamedTuple):
    """Descriptor-level description of an attached device, obtained without opening it."""
    key: UsbDeviceKey
    vendor_id: int
    product_id: int
    configurations: tuple[UsbConfigurationInfo, ...]

    @property
    def vid_pid(self) -> str:
        return f"{self.vendor_id:04x}:{self.product_id:04x}"


class UsbDeviceEvent:
    """Notification about a device, posted by a UsbBackend."""
    def __init__(self, source: "UsbBackend", device: UsbDeviceInfo):
        self.source = source
        self.device = device

    def __repr__(self):
        return f"{self.__class__.__name__}(device={self.device.key!s} {self.device.vid_pid})"


class UsbDeviceConnectedEvent(UsbDeviceEvent):
    """A device was attached."""


class UsbDeviceDisconnectedEvent(UsbDeviceEvent):
    """A device was detached."""


class UsbDeviceHandle(ABC):
    """An opened USB device."""

    @abstractmethod
    def get_configuration(self) -> int:
        """Return the value of the active configuration (0 if the device is unconfigured)."""

    @abstractmethod
    def set_configuration(self, configuration_value: int) -> None:
        """Select a configuration."""

    @abstractmethod
    def claim_interface(self, interface_number: int) -> None:
        """Take exclusive control of an interface."""

    @abstractmethod
    def release_interface(self, interface_number: int) -> None:
        """Drop exclusive control of an interface."""

    @abstractmethod
    def set_alternate_setting(self, interface_number: int, alternate_setting: int) -> None:
        """Select an alternate setting of a claimed interface."""

    @abstractmethod
    def control_transfer_out(self, request_type: int, request: int, value: int, index: int, data: bytes,
                             timeout: int) -> int:
        """Execute a host-to-device control request; return the number of data bytes sent."""

    @abstractmethod
    def control_transfer_in(self, request_type: int, request: int, value: int, index: int, length: int,
                            timeout: int) -> bytes:
        """Execute a device-to-host control request; return the data received (at most `length` bytes)."""

    @abstractmethod
    def bulk_transfer_out(self, endpoint: int, data: bytes, timeout: int) -> int:
        """Execute a bulk-out transfer; return the number of bytes sent."""

    @abstractmethod
    def bulk_transfer_in(self, endpoint: int, length: int, timeout: int) -> bytes:
        """Execute a bulk-in transfer of at most `length` bytes. A zero-length result is valid."""

    @abstractmethod
    def clear_halt(self, endpoint: int) -> None:
        """Clear the halt condition of an endpoint."""

    @abstractmethod
    def close(self) -> None:
        """Close the handle. No other method may be called afterwards."""


class UsbBackend(ABC):
    """Device discovery and access.

    Connect and disconnect notifications are posted to `listeners` as UsbDeviceConnectedEvent and
    UsbDeviceDisconnectedEvent instances, once monitoring has been started.
    """

    def __init__(self):
        self.listeners = EventSource()

    @abstractmethod
    def list_devices(self) -> list[UsbDeviceInfo]:
        """Enumerate the currently attached devices."""

    @abstractmethod
    def request_permission(self, device: UsbDeviceInfo) -> bool:
        """Ask for permission to use the device; return True if it was granted."""

    @abstractmethod
    def is_permitted(self, device: UsbDeviceInfo) -> bool:
        """Return True if permission to use the device was granted before."""

    @abstractmethod
    def open_device(self, key: UsbDeviceKey) -> UsbDeviceHandle:
        """Open an attached device."""

    def start_monitoring(self) -> None:
        """Start posting connect/disconnect events. The default implementation posts nothing."""

    def stop_monitoring(self) -> None:
        """Stop posting connect/disconnect events."""


def find_endpoint(interface: UsbInterfaceInfo, transfer_type: int, is_in: bool) -> Optional[UsbEndpointInfo]:
    """Return the first endpoint of the given transfer type and direction, or None."""
    for endpoint in interface.endpoints:
        if endpoint.transfer_type == transfer_type and endpoint.is_in == is_in:
            return endpoint
    return None
