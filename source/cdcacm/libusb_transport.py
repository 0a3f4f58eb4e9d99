"""The USB services of the usb_transport module, implemented on top of libusb-1.0.

The location of the libusb shared library is taken from the LIBUSB_LIBRARY_PATH environment variable, if set.
Otherwise, the library is looked up in the usual places.

libusb has no notion of permission prompts: a device can be used if the operating system lets us open it.
LibUsbBackend.request_permission() checks exactly that, and remembers the devices for which it succeeded.

Attach/detach notifications are produced by polling the device list; libusb's hotplug API is not available
on all platforms.
"""

import ctypes.util
import logging
import os
import threading
from typing import Optional

from .libusb_library import (LibUsbLibrary, LibUsbLibraryFunctionCallError, LibUsbDeviceHandlePtr, DeviceDescription,
                             LIBUSB_ERROR_PIPE, LIBUSB_ERROR_TIMEOUT, LIBUSB_ERROR_NO_DEVICE, LIBUSB_ERROR_INTERRUPTED)
from .usb_transport import (TransferStatus, UsbBackend, UsbConfigurationInfo, UsbDeviceConnectedEvent,
                            UsbDeviceDisconnectedEvent, UsbDeviceHandle, UsbDeviceInfo, UsbDeviceKey,
                            UsbEndpointInfo, UsbInterfaceInfo, UsbTransferError)

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    LIBUSB_ERROR_PIPE: TransferStatus.STALL,
    LIBUSB_ERROR_TIMEOUT: TransferStatus.TIMEOUT,
    LIBUSB_ERROR_NO_DEVICE: TransferStatus.DISCONNECTED,
    LIBUSB_ERROR_INTERRUPTED: TransferStatus.CANCELLED
}


def _transfer_error(exception: LibUsbLibraryFunctionCallError) -> UsbTransferError:
    status = _ERROR_STATUS.get(exception.error_code, TransferStatus.ERROR)
    return UsbTransferError(status, exception.error_message, transferred=exception.transferred, data=exception.data)


class LibUsbLibraryManager:
    """This class manages a LibUsbLibrary instance and a LibUsbContextPtr obtained from it.

    An instance is shared by all LibUsbBackend instances to gain access to libusb functionality.
    """
    def __init__(self):
        self._libusb = None
        self._ctx = None
        self._lock = threading.Lock()

    def __del__(self):
        if self._ctx is not None:
            # Discard libusb context.
            self._libusb.exit(self._ctx)

    def get_libusb(self) -> LibUsbLibrary:
        """Get the libusb library instance; instantiate it if necessary."""
        with self._lock:
            if self._libusb is None:
                # Dynamically load the libusb library.
                if "LIBUSB_LIBRARY_PATH" in os.environ:
                    filename = os.environ["LIBUSB_LIBRARY_PATH"]
                else:
                    # This returns None if the library is not found.
                    filename = ctypes.util.find_library("usb-1.0")
                if filename is None:
                    raise UsbTransferError(TransferStatus.ERROR,
                                           "Don't know where to find libusb. Set the LIBUSB_LIBRARY_PATH environment variable.")
                self._libusb = LibUsbLibrary(filename)
            return self._libusb

    def get_libusb_context(self):
        """Get the libusb context instance; initialize one if necessary."""
        libusb = self.get_libusb()
        with self._lock:
            if self._ctx is None:
                # Initialize a libusb context.
                self._ctx = libusb.init()
            return self._ctx


class LibUsbDeviceHandle(UsbDeviceHandle):
    """A device opened through libusb."""

    def __init__(self, libusb: LibUsbLibrary, device_handle: LibUsbDeviceHandlePtr):
        self._libusb = libusb
        self._device_handle = device_handle

    def _call(self, function, *args):
        if self._device_handle is None:
            raise UsbTransferError(TransferStatus.ERROR, "The device handle is closed.")
        try:
            return function(self._device_handle, *args)
        except LibUsbLibraryFunctionCallError as exception:
            raise _transfer_error(exception) from exception

    def get_configuration(self) -> int:
        return self._call(self._libusb.get_configuration)

    def set_configuration(self, configuration_value: int) -> None:
        self._call(self._libusb.set_configuration, configuration_value)

    def claim_interface(self, interface_number: int) -> None:
        self._call(self._libusb.claim_interface, interface_number)

    def release_interface(self, interface_number: int) -> None:
        self._call(self._libusb.release_interface, interface_number)

    def set_alternate_setting(self, interface_number: int, alternate_setting: int) -> None:
        self._call(self._libusb.set_interface_alt_setting, interface_number, alternate_setting)

    def control_transfer_out(self, request_type: int, request: int, value: int, index: int, data: bytes,
                             timeout: int) -> int:
        return self._call(self._libusb.control_transfer_out, request_type, request, value, index, data, timeout)

    def control_transfer_in(self, request_type: int, request: int, value: int, index: int, length: int,
                            timeout: int) -> bytes:
        return self._call(self._libusb.control_transfer_in, request_type, request, value, index, length, timeout)

    def bulk_transfer_out(self, endpoint: int, data: bytes, timeout: int) -> int:
        return self._call(self._libusb.bulk_transfer_out, endpoint, data, timeout)

    def bulk_transfer_in(self, endpoint: int, length: int, timeout: int) -> bytes:
        return self._call(self._libusb.bulk_transfer_in, endpoint, length, timeout)

    def clear_halt(self, endpoint: int) -> None:
        self._call(self._libusb.clear_halt, endpoint)

    def close(self) -> None:
        if self._device_handle is not None:
            self._libusb.close(self._device_handle)
            self._device_handle = None


def _device_info(description: DeviceDescription) -> UsbDeviceInfo:
    """Convert the libusb-level description of a device to a UsbDeviceInfo."""
    configurations = tuple(
        UsbConfigurationInfo(
            config.configuration_value,
            tuple(
                UsbInterfaceInfo(
                    altsetting.interface_number,
                    altsetting.alternate_setting,
                    altsetting.interface_class,
                    altsetting.interface_subclass,
                    altsetting.interface_protocol,
                    tuple(UsbEndpointInfo(*endpoint) for endpoint in altsetting.endpoints),
                    altsetting.extra
                ) for altsetting in config.altsettings
            )
        ) for config in description.configs
    )

    return UsbDeviceInfo(
        UsbDeviceKey(description.bus_number, description.device_address),
        description.vendor_id,
        description.product_id,
        configurations
    )


class LibUsbBackend(UsbBackend):
    """Device discovery and access through libusb.

    With `permit_all` set, every device counts as permitted, and request_permission() is not needed.
    """

    # All LibUsbBackend instances will use the same managed instance of libusb and a libusb context.
    _libusb_manager = LibUsbLibraryManager()

    def __init__(self, *, permit_all: bool = False, monitor_interval: float = 1.0):
        super().__init__()
        self._permit_all = permit_all
        self._monitor_interval = monitor_interval  # Seconds between two device list scans.
        self._permitted: set[UsbDeviceKey] = set()
        self._known: dict[UsbDeviceKey, UsbDeviceInfo] = {}
        self._monitor_thread: Optional[threading.Thread] = None
        self._monitor_stop = threading.Event()

    def list_devices(self) -> list[UsbDeviceInfo]:
        libusb = LibUsbBackend._libusb_manager.get_libusb()
        ctx = LibUsbBackend._libusb_manager.get_libusb_context()
        try:
            descriptions = libusb.describe_devices(ctx)
        except LibUsbLibraryFunctionCallError as exception:
            raise _transfer_error(exception) from exception
        return [_device_info(description) for description in descriptions]

    def request_permission(self, device: UsbDeviceInfo) -> bool:
        if self.is_permitted(device):
            return True
        try:
            device_handle = self.open_device(device.key)
        except UsbTransferError as exception:
            logger.info("Device %s (%s) can't be opened: %s", device.key, device.vid_pid, exception)
            return False
        device_handle.close()
        self._permitted.add(device.key)
        return True

    def is_permitted(self, device: UsbDeviceInfo) -> bool:
        return self._permit_all or device.key in self._permitted

    def open_device(self, key: UsbDeviceKey) -> UsbDeviceHandle:
        libusb = LibUsbBackend._libusb_manager.get_libusb()
        ctx = LibUsbBackend._libusb_manager.get_libusb_context()

        try:
            device_handle = libusb.find_and_open_device(ctx, key.bus_number, key.device_address)
        except LibUsbLibraryFunctionCallError as exception:
            raise _transfer_error(exception) from exception

        if device_handle is None:
            raise UsbTransferError(TransferStatus.DISCONNECTED, f"Device {key} not found.")

        try:
            # Let libusb take care of detaching the kernel driver (cdc_acm on Linux) and re-attaching it later.
            libusb.set_auto_detach_kernel_driver(device_handle, True)
        except LibUsbLibraryFunctionCallError as exception:
            libusb.close(device_handle)
            raise _transfer_error(exception) from exception

        return LibUsbDeviceHandle(libusb, device_handle)

    def poll(self) -> None:
        """Scan the device list once, and post events for devices that appeared or disappeared."""
        current = {device.key: device for device in self.list_devices()}

        events = []
        for (key, device) in self._known.items():
            if key not in current:
                events.append(UsbDeviceDisconnectedEvent(self, device))
                self._permitted.discard(key)
        for (key, device) in current.items():
            if key not in self._known:
                events.append(UsbDeviceConnectedEvent(self, device))

        self._known = current
        self.listeners.fire_all(events)

    def _monitor(self) -> None:
        while not self._monitor_stop.wait(self._monitor_interval):
            try:
                self.poll()
            except UsbTransferError as exception:
                logger.warning("Device scan failed: %s", exception)

    def start_monitoring(self) -> None:
        if self._monitor_thread is not None:
            return
        # The devices present now are the baseline; only changes are posted.
        self._known = {device.key: device for device in self.list_devices()}
        self._monitor_stop.clear()
        self._monitor_thread = threading.Thread(target=self._monitor, name="cdcacm-monitor", daemon=True)
        self._monitor_thread.start()

    def stop_monitoring(self) -> None:
        if self._monitor_thread is None:
            return
        self._monitor_stop.set()
        self._monitor_thread.join()
        self._monitor_thread = None
