"""Scripted stand-ins for a USB stack, used by the unit tests.

FakeUsbDeviceHandle behaves like a well-mannered CDC-ACM device: it remembers the line coding it was given,
and hands it back on GET_LINE_CODING. Tests can queue bulk-in data, make individual requests fail, and
inspect every request that was made.
"""

import queue
import threading
from typing import NamedTuple, Optional

from cdcacm.behavior import SerialPortBehavior
from cdcacm.usb_transport import (TransferStatus, UsbBackend, UsbConfigurationInfo, UsbDeviceConnectedEvent,
                                  UsbDeviceDisconnectedEvent, UsbDeviceHandle, UsbDeviceInfo, UsbDeviceKey,
                                  UsbEndpointInfo, UsbInterfaceInfo, UsbTransferError)

BULK_IN_ENDPOINT = 0x81
BULK_OUT_ENDPOINT = 0x02
NOTIFICATION_ENDPOINT = 0x83

# Short slices keep the cancellation tests fast.
FAST_BEHAVIOR = SerialPortBehavior(poll_interval=10, cancel_timeout=500, control_timeout=100)


class ControlRecord(NamedTuple):
    request_type: int
    request: int
    value: int
    index: int
    data: bytes


def union_descriptor(control_interface: int, *subordinate_interfaces: int) -> bytes:
    return bytes([4 + len(subordinate_interfaces), 0x24, 0x06, control_interface, *subordinate_interfaces])


def header_descriptor() -> bytes:
    # Header Functional Descriptor, bcdCDC 1.10.
    return bytes([5, 0x24, 0x00, 0x10, 0x01])


def control_interface(number: int, extra: bytes = b"", interface_class: int = 0x02,
                      alternate_setting: int = 0) -> UsbInterfaceInfo:
    return UsbInterfaceInfo(number, alternate_setting, interface_class, 0x02, 0x01,
                            (UsbEndpointInfo(NOTIFICATION_ENDPOINT + 0x10 * number, 0x03, 16), ), extra)


def data_interface(number: int, bulk_in: int = BULK_IN_ENDPOINT, bulk_out: int = BULK_OUT_ENDPOINT,
                   interface_class: int = 0x0a) -> UsbInterfaceInfo:
    return UsbInterfaceInfo(number, 0, interface_class, 0x00, 0x00,
                            (UsbEndpointInfo(bulk_in, 0x02, 64), UsbEndpointInfo(bulk_out, 0x02, 64)))


def make_device(interfaces, *, bus_number: int = 1, device_address: int = 5, vendor_id: int = 0x2e8a,
                product_id: int = 0x000a, configuration_value: int = 1) -> UsbDeviceInfo:
    return UsbDeviceInfo(UsbDeviceKey(bus_number, device_address), vendor_id, product_id,
                         (UsbConfigurationInfo(configuration_value, tuple(interfaces)), ))


def make_cdc_acm_device(**kwargs) -> UsbDeviceInfo:
    """A single-port CDC-ACM device: control interface 0, data interface 1."""
    return make_device([control_interface(0, header_descriptor() + union_descriptor(0, 1)), data_interface(1)],
                       **kwargs)


class FakeUsbDeviceHandle(UsbDeviceHandle):

    def __init__(self, configuration_value: int = 1):
        self._lock = threading.Lock()
        self.configuration_value = configuration_value
        self.calls = []
        self.claimed = []
        self.released = []
        self.control_requests: list[ControlRecord] = []
        self.control_failures: dict[int, UsbTransferError] = {}
        self.claim_failures: dict[int, UsbTransferError] = {}
        self.line_coding = bytes(7)
        self.line_coding_override: Optional[bytes] = None
        self.bulk_in_queue = queue.Queue()
        self.bulk_in_lengths = []
        self.bulk_out_chunks = []
        self.bulk_out_results = []  # Per call: None (accept all), an int (accept that many), or an exception.
        self.halts_cleared = []
        self.control_hook = None  # Called with each accepted control request, outside the device lock.
        self.closed = False

    def get_configuration(self) -> int:
        self.calls.append("get_configuration")
        return self.configuration_value

    def set_configuration(self, configuration_value: int) -> None:
        self.calls.append(("set_configuration", configuration_value))
        self.configuration_value = configuration_value

    def claim_interface(self, interface_number: int) -> None:
        self.calls.append(("claim_interface", interface_number))
        if interface_number in self.claim_failures:
            raise self.claim_failures[interface_number]
        self.claimed.append(interface_number)

    def release_interface(self, interface_number: int) -> None:
        self.calls.append(("release_interface", interface_number))
        self.released.append(interface_number)

    def set_alternate_setting(self, interface_number: int, alternate_setting: int) -> None:
        self.calls.append(("set_alternate_setting", interface_number, alternate_setting))

    def control_transfer_out(self, request_type, request, value, index, data, timeout):
        with self._lock:
            if request in self.control_failures:
                raise self.control_failures[request]
            self.control_requests.append(ControlRecord(request_type, request, value, index, bytes(data)))
            if request == 0x20:
                self.line_coding = bytes(data)
        if self.control_hook is not None:
            self.control_hook(request, bytes(data))
        return len(data)

    def control_transfer_in(self, request_type, request, value, index, length, timeout):
        with self._lock:
            if request in self.control_failures:
                raise self.control_failures[request]
            self.control_requests.append(ControlRecord(request_type, request, value, index, b""))
            response = self.line_coding if self.line_coding_override is None else self.line_coding_override
        if self.control_hook is not None:
            self.control_hook(request, b"")
        return response[:length]

    def bulk_transfer_out(self, endpoint, data, timeout):
        with self._lock:
            result = self.bulk_out_results.pop(0) if self.bulk_out_results else None
        if isinstance(result, Exception):
            if result.transferred:
                self.bulk_out_chunks.append(bytes(data[:result.transferred]))
            raise result
        accepted = len(data) if result is None else min(result, len(data))
        self.bulk_out_chunks.append(bytes(data[:accepted]))
        return accepted

    def bulk_transfer_in(self, endpoint, length, timeout):
        self.bulk_in_lengths.append(length)
        try:
            item = self.bulk_in_queue.get(timeout=timeout / 1000.0)
        except queue.Empty:
            raise UsbTransferError(TransferStatus.TIMEOUT, "LIBUSB_ERROR_TIMEOUT") from None
        if isinstance(item, Exception):
            raise item
        return item[:length]

    def clear_halt(self, endpoint: int) -> None:
        self.halts_cleared.append(endpoint)

    def close(self) -> None:
        self.closed = True

    def requests_of(self, request: int) -> list[ControlRecord]:
        return [record for record in self.control_requests if record.request == request]


class FakeBackend(UsbBackend):
    """A backend with a fixed set of devices. Every device is permitted unless `permitted` says otherwise."""

    def __init__(self, devices=(), permitted=None):
        super().__init__()
        self.devices = list(devices)
        self.permitted = None if permitted is None else set(permitted)
        self.refused = set()
        self.handles: list[FakeUsbDeviceHandle] = []
        self.open_error: Optional[UsbTransferError] = None
        self.prepare_handle = None  # Called with each new handle before it is returned.
        self.monitoring = False

    @property
    def handle(self) -> FakeUsbDeviceHandle:
        return self.handles[-1]

    def list_devices(self):
        return list(self.devices)

    def request_permission(self, device):
        if device.key in self.refused:
            return False
        if self.permitted is not None:
            self.permitted.add(device.key)
        return True

    def is_permitted(self, device):
        return self.permitted is None or device.key in self.permitted

    def open_device(self, key):
        if self.open_error is not None:
            raise self.open_error
        if not any(device.key == key for device in self.devices):
            raise UsbTransferError(TransferStatus.DISCONNECTED, f"Device {key} not found.")
        handle = FakeUsbDeviceHandle()
        if self.prepare_handle is not None:
            self.prepare_handle(handle)
        self.handles.append(handle)
        return handle

    def start_monitoring(self):
        self.monitoring = True

    def stop_monitoring(self):
        self.monitoring = False

    def connect(self, device):
        self.devices.append(device)
        self.listeners.fire(UsbDeviceConnectedEvent(self, device))

    def disconnect(self, device):
        self.devices = [d for d in self.devices if d.key != device.key]
        self.listeners.fire(UsbDeviceDisconnectedEvent(self, device))
