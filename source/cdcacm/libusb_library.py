"""Minimalistic ctypes-based libusb-1.0 binding for implementing CDC-ACM support."""

from typing import NamedTuple, Optional
import ctypes
import sys

# libusb constants.

LIBUSB_SUCCESS = 0
LIBUSB_ERROR_IO = -1
LIBUSB_ERROR_INVALID_PARAM = -2
LIBUSB_ERROR_ACCESS = -3
LIBUSB_ERROR_NO_DEVICE = -4
LIBUSB_ERROR_NOT_FOUND = -5
LIBUSB_ERROR_BUSY = -6
LIBUSB_ERROR_TIMEOUT = -7
LIBUSB_ERROR_OVERFLOW = -8
LIBUSB_ERROR_PIPE = -9
LIBUSB_ERROR_INTERRUPTED = -10
LIBUSB_ERROR_NO_MEM = -11
LIBUSB_ERROR_NOT_SUPPORTED = -12

# Alignment for structs used by libusb. The value 8 works on 64-bit Microsoft Windows.
C_STRUCT_ALIGNMENT = 8


# libusb types.

class LibUsbContext(ctypes.Structure):
    """Opaque type representing a libusb context."""
    _pack_ = C_STRUCT_ALIGNMENT
    _fields_ = []


LibUsbContextPtr = ctypes.POINTER(LibUsbContext)


class LibUsbDevice(ctypes.Structure):
    """Opaque type representing a libusb device."""
    _pack_ = C_STRUCT_ALIGNMENT
    _fields_ = []


LibUsbDevicePtr = ctypes.POINTER(LibUsbDevice)


class LibUsbDeviceHandle(ctypes.Structure):
    """Opaque type representing a libusb device handle (i.e., a USB device that has been opened)."""
    _pack_ = C_STRUCT_ALIGNMENT
    _fields_ = []


LibUsbDeviceHandlePtr = ctypes.POINTER(LibUsbDeviceHandle)


class LibUsbEndpointDescriptor(ctypes.Structure):
    """A libusb endpoint descriptor."""
    _pack_ = C_STRUCT_ALIGNMENT
    _fields_ = [
        ("bLength", ctypes.c_uint8),
        ("bDescriptorType", ctypes.c_uint8),
        ("bEndpointAddress", ctypes.c_uint8),
        ("bmAttributes", ctypes.c_uint8),
        ("wMaxPacketSize", ctypes.c_uint16),
        ("bInterval", ctypes.c_uint8),
        ("bRefresh", ctypes.c_uint8),
        ("bSynchAddress", ctypes.c_uint8),
        ("extra", ctypes.POINTER(ctypes.c_ubyte)),
        ("extra_length", ctypes.c_int)
    ]


LibUsbEndpointDescriptorPtr = ctypes.POINTER(LibUsbEndpointDescriptor)


class LibUsbInterfaceDescriptor(ctypes.Structure):
    """A libusb interface descriptor.

    The class-specific descriptors that follow the interface descriptor (for CDC: the functional descriptors)
    are available through `extra`.
    """
    _pack_ = C_STRUCT_ALIGNMENT
    _fields_ = [
        ("bLength", ctypes.c_uint8),
        ("bDescriptorType", ctypes.c_uint8),
        ("bInterfaceNumber", ctypes.c_uint8),
        ("bAlternateSetting", ctypes.c_uint8),
        ("bNumEndpoints", ctypes.c_uint8),
        ("bInterfaceClass", ctypes.c_uint8),
        ("bInterfaceSubClass", ctypes.c_uint8),
        ("bInterfaceProtocol", ctypes.c_uint8),
        ("iInterface", ctypes.c_uint8),
        ("endpoint", LibUsbEndpointDescriptorPtr),
        ("extra", ctypes.POINTER(ctypes.c_ubyte)),
        ("extra_length", ctypes.c_int)
    ]


LibUsbInterfaceDescriptorPtr = ctypes.POINTER(LibUsbInterfaceDescriptor)


class LibUsbInterface(ctypes.Structure):
    """A libusb interface."""
    _pack_ = C_STRUCT_ALIGNMENT
    _fields_ = [
        ("altsetting", LibUsbInterfaceDescriptorPtr),
        ("num_altsetting", ctypes.c_int)
    ]


LibUsbInterfacePtr = ctypes.POINTER(LibUsbInterface)


class LibUsbConfigDescriptor(ctypes.Structure):
    """A libusb configuration descriptor."""
    _pack_ = C_STRUCT_ALIGNMENT
    _fields_ = [
        ("bLength", ctypes.c_uint8),
        ("bDescriptorType", ctypes.c_uint8),
        ("wTotalLength", ctypes.c_uint16),
        ("bNumInterfaces", ctypes.c_uint8),
        ("bConfigurationValue", ctypes.c_uint8),
        ("iConfiguration", ctypes.c_uint8),
        ("bmAttributes", ctypes.c_uint8),
        ("MaxPower", ctypes.c_uint8),
        ("interface", LibUsbInterfacePtr),
        ("extra", ctypes.POINTER(ctypes.c_ubyte)),
        ("extra_length", ctypes.c_int)
    ]


LibUsbConfigDescriptorPtr = ctypes.POINTER(LibUsbConfigDescriptor)


class LibUsbDeviceDescriptor(ctypes.Structure):
    """A libusb device descriptor."""
    _pack_ = C_STRUCT_ALIGNMENT
    _fields_ = [
        ("bLength", ctypes.c_uint8),
        ("bDescriptorType", ctypes.c_uint8),
        ("bcdUSB", ctypes.c_uint16),
        ("bDeviceClass", ctypes.c_uint8),
        ("bDeviceSubClass", ctypes.c_uint8),
        ("bDeviceProtocol", ctypes.c_uint8),
        ("bMaxPacketSize0", ctypes.c_uint8),
        ("idVendor", ctypes.c_uint16),
        ("idProduct", ctypes.c_uint16),
        ("bcdDevice", ctypes.c_uint16),
        ("iManufacturer", ctypes.c_uint8),
        ("iProduct", ctypes.c_uint8),
        ("iSerialNumber", ctypes.c_uint8),
        ("bNumConfigurations", ctypes.c_uint8)
    ]


LibUsbDeviceDescriptorPtr = ctypes.POINTER(LibUsbDeviceDescriptor)


# Plain-Python copies of the descriptors. These remain valid after libusb has freed its own copies.

class EndpointDescription(NamedTuple):
    address: int
    attributes: int
    max_packet_size: int


class AltSettingDescription(NamedTuple):
    interface_number: int
    alternate_setting: int
    interface_class: int
    interface_subclass: int
    interface_protocol: int
    endpoints: tuple[EndpointDescription, ...]
    extra: bytes


class ConfigDescription(NamedTuple):
    configuration_value: int
    altsettings: tuple[AltSettingDescription, ...]


class DeviceDescription(NamedTuple):
    bus_number: int
    device_address: int
    vendor_id: int
    product_id: int
    configs: tuple[ConfigDescription, ...]


class LibUsbLibraryError(Exception):
    """Base class for errors reported by the LibUsbLibrary methods."""


class LibUsbLibraryFunctionCallError(LibUsbLibraryError):
    """An error was reported by a libusb function.

    For bulk transfers, `transferred` holds the number of bytes moved before the error, and `data` the bytes
    received (bulk-in only).
    """
    def __init__(self, error_code: int, error_message: str, *, transferred: int = 0, data: bytes = b""):
        super().__init__(error_code, error_message)
        self.error_code = error_code
        self.error_message = error_message
        self.transferred = transferred
        self.data = data

    def __str__(self):
        return f"LibUsbLibraryFunctionCallError(error_code={self.error_code}, error_message={self.error_message!r})"


class LibUsbLibraryMiscellaneousError(LibUsbLibraryError):
    """Any error in a LibUsbLibrary method that is not reported by a function call the libusb library."""
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def _extra_bytes(pointer, length: int) -> bytes:
    if length <= 0 or not pointer:
        return b""
    return ctypes.string_at(pointer, length)


class LibUsbLibrary:
    """This class encapsulates a dynamically loaded libusb instance."""

    def __init__(self, filename: str):

        if sys.platform == "win32":
            # The Windows version of libusb uses the 'stdcall' calling convention.
            lib = ctypes.WinDLL(filename)
        else:
            lib = ctypes.CDLL(filename)

        # Annotate the library functions.
        LibUsbLibrary._annotate_library_functions(lib)

        self._lib = lib

    @staticmethod
    def _annotate_library_functions(lib):
        """Add ctype-compliant type annotations to the libusb functions we'll be using."""

        lib.libusb_init.argtypes = [ctypes.POINTER(LibUsbContextPtr)]
        lib.libusb_init.restype = ctypes.c_int

        lib.libusb_exit.argtypes = [LibUsbContextPtr]
        lib.libusb_exit.restype = None

        lib.libusb_get_device_list.argtypes = [LibUsbContextPtr, ctypes.POINTER(ctypes.POINTER(LibUsbDevicePtr))]
        lib.libusb_get_device_list.restype = ctypes.c_ssize_t

        lib.libusb_free_device_list.argtypes = [ctypes.POINTER(LibUsbDevicePtr), ctypes.c_int]
        lib.libusb_free_device_list.restype = None

        lib.libusb_get_bus_number.argtypes = [LibUsbDevicePtr]
        lib.libusb_get_bus_number.restype = ctypes.c_uint8

        lib.libusb_get_device_address.argtypes = [LibUsbDevicePtr]
        lib.libusb_get_device_address.restype = ctypes.c_uint8

        lib.libusb_get_device_descriptor.argtypes = [LibUsbDevicePtr, LibUsbDeviceDescriptorPtr]
        lib.libusb_get_device_descriptor.restype = ctypes.c_int

        lib.libusb_get_config_descriptor.argtypes = [LibUsbDevicePtr, ctypes.c_uint8,
                                                     ctypes.POINTER(LibUsbConfigDescriptorPtr)]
        lib.libusb_get_config_descriptor.restype = ctypes.c_int

        lib.libusb_free_config_descriptor.argtypes = [LibUsbConfigDescriptorPtr]
        lib.libusb_free_config_descriptor.restype = None

        lib.libusb_open.argtypes = [LibUsbDevicePtr, ctypes.POINTER(LibUsbDeviceHandlePtr)]
        lib.libusb_open.restype = ctypes.c_int

        lib.libusb_close.argtypes = [LibUsbDeviceHandlePtr]
        lib.libusb_close.restype = None

        lib.libusb_control_transfer.argtypes = [
            LibUsbDeviceHandlePtr, ctypes.c_uint8, ctypes.c_uint8, ctypes.c_uint16, ctypes.c_uint16,
            ctypes.POINTER(ctypes.c_ubyte), ctypes.c_uint16, ctypes.c_uint]
        lib.libusb_control_transfer.restype = ctypes.c_int

        lib.libusb_bulk_transfer.argtypes = [
            LibUsbDeviceHandlePtr, ctypes.c_ubyte, ctypes.POINTER(ctypes.c_ubyte),
            ctypes.c_int, ctypes.POINTER(ctypes.c_int), ctypes.c_uint]
        lib.libusb_bulk_transfer.restype = ctypes.c_int

        lib.libusb_error_name.argtypes = [ctypes.c_int]
        lib.libusb_error_name.restype = ctypes.c_char_p

        lib.libusb_claim_interface.argtypes = [LibUsbDeviceHandlePtr, ctypes.c_int]
        lib.libusb_claim_interface.restype = ctypes.c_int

        lib.libusb_release_interface.argtypes = [LibUsbDeviceHandlePtr, ctypes.c_int]
        lib.libusb_release_interface.restype = ctypes.c_int

        lib.libusb_set_interface_alt_setting.argtypes = [LibUsbDeviceHandlePtr, ctypes.c_int, ctypes.c_int]
        lib.libusb_set_interface_alt_setting.restype = ctypes.c_int

        lib.libusb_clear_halt.argtypes = [LibUsbDeviceHandlePtr, ctypes.c_ubyte]
        lib.libusb_clear_halt.restype = ctypes.c_int

        lib.libusb_get_configuration.argtypes = [LibUsbDeviceHandlePtr, ctypes.POINTER(ctypes.c_int)]
        lib.libusb_get_configuration.restype = ctypes.c_int

        lib.libusb_set_configuration.argtypes = [LibUsbDeviceHandlePtr, ctypes.c_int]
        lib.libusb_set_configuration.restype = ctypes.c_int

        lib.libusb_set_auto_detach_kernel_driver.argtypes = [LibUsbDeviceHandlePtr, ctypes.c_int]
        lib.libusb_set_auto_detach_kernel_driver.restype = ctypes.c_int

    def _libusb_exception(self, error_code: int, **kwargs) -> LibUsbLibraryFunctionCallError:
        """Look up the description of the error and return a LibUsbError exception."""
        error_message = self.get_error_name(error_code)
        return LibUsbLibraryFunctionCallError(error_code, error_message, **kwargs)

    def init(self) -> LibUsbContextPtr:
        """Initialize a libusb context."""
        ctx = LibUsbContextPtr()
        result = self._lib.libusb_init(ctx)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)
        return ctx

    def exit(self, ctx: LibUsbContextPtr) -> None:
        """Discard a libusb context."""
        self._lib.libusb_exit(ctx)

    def get_device_descriptor(self, device: LibUsbDevicePtr) -> LibUsbDeviceDescriptor:
        """Get a USB device descriptor."""
        device_descriptor = LibUsbDeviceDescriptor()

        result = self._lib.libusb_get_device_descriptor(device, device_descriptor)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)

        return device_descriptor

    def get_config_descriptor(self, device: LibUsbDevicePtr, config_index: int) -> LibUsbConfigDescriptorPtr:
        """Get a configuration descriptor.

        Note: the configuration descriptor should at some point be freed by calling `free_config_descriptor`.
        """
        config_descriptor = LibUsbConfigDescriptorPtr()

        result = self._lib.libusb_get_config_descriptor(device, config_index, config_descriptor)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)

        return config_descriptor

    def free_config_descriptor(self, config_descriptor: LibUsbConfigDescriptorPtr) -> None:
        """Free a configuration descriptor."""
        self._lib.libusb_free_config_descriptor(config_descriptor)

    def get_error_name(self, error_code: int) -> str:
        """Find the error name associated with the given error code."""
        result = self._lib.libusb_error_name(error_code)
        return result.decode('ascii')

    def control_transfer_in(self, device_handle: LibUsbDeviceHandlePtr, request_type: int, request: int, value: int,
                            index: int, length: int, timeout: int) -> bytes:
        """Execute a device-to-host control request and return the response."""
        data = ctypes.create_string_buffer(length)

        result = self._lib.libusb_control_transfer(
            device_handle,
            request_type,  # bmRequestType
            request,       # bRequest
            value,         # wValue
            index,         # wIndex
            ctypes.cast(data, ctypes.POINTER(ctypes.c_ubyte)),
            length,        # wLength
            timeout
        )
        if result < 0:
            raise self._libusb_exception(result)

        # Return a bytes instance.
        return bytes(data[:result])

    def control_transfer_out(self, device_handle: LibUsbDeviceHandlePtr, request_type: int, request: int, value: int,
                             index: int, data: bytes, timeout: int) -> int:
        """Execute a host-to-device control request, with an optional data stage. Return the number of bytes sent."""
        buffer = ctypes.create_string_buffer(bytes(data), len(data))

        result = self._lib.libusb_control_transfer(
            device_handle,
            request_type,
            request,
            value,
            index,
            ctypes.cast(buffer, ctypes.POINTER(ctypes.c_ubyte)) if len(data) != 0 else None,
            len(data),
            timeout
        )
        if result < 0:
            raise self._libusb_exception(result)

        return result

    def bulk_transfer_out(self, device_handle: LibUsbDeviceHandlePtr, endpoint: int, data: bytes, timeout: int) -> int:
        """Execute a bulk-out transfer; return the number of bytes transferred.

        On failure, the exception tells how many bytes were transferred before the failure.
        """
        buffer = ctypes.create_string_buffer(bytes(data), len(data))
        transferred = ctypes.c_int()
        result = self._lib.libusb_bulk_transfer(
            device_handle, endpoint, ctypes.cast(buffer, ctypes.POINTER(ctypes.c_ubyte)), len(data), transferred, timeout)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result, transferred=transferred.value)

        return transferred.value

    def bulk_transfer_in(self, device_handle: LibUsbDeviceHandlePtr, endpoint: int, maxsize: int, timeout: int) -> bytes:
        """Execute a bulk-in transfer.

        On failure (including a timeout), the exception carries the bytes received before the failure.
        """

        data = ctypes.create_string_buffer(maxsize)

        transferred = ctypes.c_int()

        result = self._lib.libusb_bulk_transfer(
            device_handle, endpoint, ctypes.cast(data, ctypes.POINTER(ctypes.c_ubyte)), maxsize, transferred, timeout)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result, transferred=transferred.value, data=data[:transferred.value])

        return data[:transferred.value]

    def open(self, device: LibUsbDevicePtr) -> LibUsbDeviceHandlePtr:
        """Open the libusb device, yielding a device handle that we can use for I/O.

        This operation increments the libusb-level reference count of the device.
        """
        device_handle = LibUsbDeviceHandlePtr()
        result = self._lib.libusb_open(device, device_handle)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)
        return device_handle

    def close(self, device_handle: LibUsbDeviceHandlePtr) -> None:
        """Close the libusb device, making it unavailable for I/O.

        This operation decrements the libusb-level reference count of the device.
        """
        self._lib.libusb_close(device_handle)

    def claim_interface(self, device_handle: LibUsbDeviceHandlePtr, interface_number: int) -> None:
        """Let the OS know we want to take exclusive control of the interface."""
        result = self._lib.libusb_claim_interface(device_handle, interface_number)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)

    def release_interface(self, device_handle: LibUsbDeviceHandlePtr, interface_number: int) -> None:
        """Let the OS know we want to drop exclusive control of the interface."""
        result = self._lib.libusb_release_interface(device_handle, interface_number)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)

    def set_interface_alt_setting(self, device_handle: LibUsbDeviceHandlePtr, interface_number: int,
                                  alternate_setting: int) -> None:
        """Activate an alternate setting of a claimed interface."""
        result = self._lib.libusb_set_interface_alt_setting(device_handle, interface_number, alternate_setting)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)

    def clear_halt(self, device_handle: LibUsbDeviceHandlePtr, endpoint: int) -> None:
        """Clear the Halt condition on the given endpoint."""
        result = self._lib.libusb_clear_halt(device_handle, endpoint)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)

    def get_configuration(self, device_handle: LibUsbDeviceHandlePtr) -> int:
        """Get device configuration."""
        c_configuration = ctypes.c_int()
        result = self._lib.libusb_get_configuration(device_handle, c_configuration)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)
        configuration = c_configuration.value
        return configuration

    def set_configuration(self, device_handle: LibUsbDeviceHandlePtr, configuration: int) -> None:
        """Set device configuration."""
        result = self._lib.libusb_set_configuration(device_handle, configuration)
        if result != LIBUSB_SUCCESS:
            raise self._libusb_exception(result)

    def set_auto_detach_kernel_driver(self, device_handle: LibUsbDeviceHandlePtr, enable: bool) -> None:
        """Enable/disable automatic kernel driver detachment by libusb.

        On Linux, the cdc_acm kernel driver binds to CDC-ACM interfaces; it has to let go before we can claim them.
        """
        result = self._lib.libusb_set_auto_detach_kernel_driver(device_handle, enable)
        if result not in (LIBUSB_SUCCESS, LIBUSB_ERROR_NOT_SUPPORTED):
            raise self._libusb_exception(result)

    def _describe_config(self, device: LibUsbDevicePtr, config_index: int) -> ConfigDescription:
        """Copy a configuration descriptor, with all interface alternate settings and endpoints."""
        config_descriptor = self.get_config_descriptor(device, config_index)
        try:
            altsettings = []
            for interface_index in range(config_descriptor.contents.bNumInterfaces):
                interface = config_descriptor.contents.interface[interface_index]
                for altsetting_index in range(interface.num_altsetting):
                    altsetting = interface.altsetting[altsetting_index]
                    endpoints = tuple(
                        EndpointDescription(
                            altsetting.endpoint[endpoint_index].bEndpointAddress,
                            altsetting.endpoint[endpoint_index].bmAttributes,
                            altsetting.endpoint[endpoint_index].wMaxPacketSize
                        ) for endpoint_index in range(altsetting.bNumEndpoints)
                    )
                    altsettings.append(AltSettingDescription(
                        altsetting.bInterfaceNumber,
                        altsetting.bAlternateSetting,
                        altsetting.bInterfaceClass,
                        altsetting.bInterfaceSubClass,
                        altsetting.bInterfaceProtocol,
                        endpoints,
                        _extra_bytes(altsetting.extra, altsetting.extra_length)
                    ))
            return ConfigDescription(config_descriptor.contents.bConfigurationValue, tuple(altsettings))
        finally:
            self.free_config_descriptor(config_descriptor)

    def describe_devices(self, ctx: LibUsbContextPtr) -> list[DeviceDescription]:
        """Enumerate USB devices, and return a copy of their descriptors.

        The libusb device list is represented by a pointer to its first element, which must be handed back to
        libusb when we're done with it. Instead of keeping libusb device references around, we copy what we need
        into plain Python values and discard the list before returning. Devices are identified afterwards by
        their bus number and device address; see `find_and_open_device`.
        """

        device_list = ctypes.POINTER(LibUsbDevicePtr)()

        result = self._lib.libusb_get_device_list(ctx, device_list)
        if result < 0:
            raise self._libusb_exception(result)

        device_count = result

        descriptions = []

        try:
            for device_index in range(device_count):
                device = device_list[device_index]

                device_descriptor = self.get_device_descriptor(device)

                configs = []
                for config_index in range(device_descriptor.bNumConfigurations):
                    try:
                        configs.append(self._describe_config(device, config_index))
                    except LibUsbLibraryFunctionCallError:
                        # Some hubs and devices in odd states refuse this; they are not serial ports anyway.
                        continue

                descriptions.append(DeviceDescription(
                    self._lib.libusb_get_bus_number(device),
                    self._lib.libusb_get_device_address(device),
                    device_descriptor.idVendor,
                    device_descriptor.idProduct,
                    tuple(configs)
                ))
        finally:
            # Discard the list of devices and decrement their reference counts.
            self._lib.libusb_free_device_list(device_list, 1)

        return descriptions

    def find_and_open_device(self, ctx: LibUsbContextPtr, bus_number: int,
                             device_address: int) -> Optional[LibUsbDeviceHandlePtr]:
        """Enumerate USB devices and open the one at the given bus number and device address.

        Returns None if no such device is attached. Errors while opening (e.g., insufficient permissions) are raised.

        Like `describe_devices`, this combines enumeration with the operation we need, so the device list
        is discarded before returning. The opened handle keeps its own reference to the device.
        """

        device_list = ctypes.POINTER(LibUsbDevicePtr)()

        result = self._lib.libusb_get_device_list(ctx, device_list)
        if result < 0:
            raise self._libusb_exception(result)

        device_count = result

        device_handle = None

        try:
            for device_index in range(device_count):
                device = device_list[device_index]

                if self._lib.libusb_get_bus_number(device) != bus_number:
                    continue

                if self._lib.libusb_get_device_address(device) != device_address:
                    continue

                device_handle = self.open(device)
                break
        finally:
            # This brings all reference counts to zero, except for the currently opened device (if any).
            self._lib.libusb_free_device_list(device_list, 1)

        return device_handle
