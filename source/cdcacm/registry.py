"""Discovery of CDC-ACM serial ports.

The PortRegistry keeps one SerialPort per CDC-ACM function of each attached device the application is allowed
to use, and forwards the backend's connect/disconnect notifications as PortEvent instances.

A CDC-ACM function consists of a control interface (class 0x02) and a data interface (class 0x0a) with a bulk-in
and a bulk-out endpoint. The control interface names its data interface in a Union Functional Descriptor, see
section 5.2.3.2 of the CDC specification [1]:

    offset  field               size  description
    ------  ------------------  ----  ------------------------------------------
       0    bFunctionLength       1   Size of this descriptor.
       1    bDescriptorType       1   CS_INTERFACE (0x24).
       2    bDescriptorSubtype    1   Union Functional Descriptor (0x06).
       3    bControlInterface     1   The controlling interface of the union.
       4    bSubordinateInterface 1   First subordinate interface (more may follow).

Devices without a union descriptor are paired with the next data interface that has bulk endpoints.

[1] Universal Serial Bus Class Definitions for Communications Devices, Revision 1.2, November 3, 2010
"""

import logging
import threading
from typing import Iterable, NamedTuple, Optional

from .behavior import SerialPortBehavior, UsbInterfaceSelection
from .errors import NotOpen, PortNotFound
from .events import EventSource
from .serial_port import CdcAcmFunction, PortState, SerialPort
from .usb_transport import (ENDPOINT_TRANSFER_TYPE_BULK, UsbBackend, UsbDeviceConnectedEvent,
                            UsbDeviceDisconnectedEvent, UsbDeviceEvent, UsbDeviceInfo, UsbDeviceKey,
                            UsbInterfaceInfo, find_endpoint)

logger = logging.getLogger(__name__)

CS_INTERFACE = 0x24
UNION_FUNCTIONAL_DESCRIPTOR = 0x06

CONNECT = "connect"
DISCONNECT = "disconnect"


class UnionFunctionalDescriptor(NamedTuple):
    control_interface: int
    subordinate_interfaces: tuple[int, ...]


class SerialPortFilter(NamedTuple):
    """Matches devices by vendor and product ID. A field that is None matches anything."""
    usb_vendor_id: Optional[int] = None
    usb_product_id: Optional[int] = None

    def matches(self, device: UsbDeviceInfo) -> bool:
        if self.usb_vendor_id is not None and self.usb_vendor_id != device.vendor_id:
            return False
        if self.usb_product_id is not None and self.usb_product_id != device.product_id:
            return False
        return True


class PortEvent(NamedTuple):
    """A port became available (type "connect") or went away (type "disconnect")."""
    type: str
    port: SerialPort


def parse_union_functional_descriptor(extra: bytes) -> Optional[UnionFunctionalDescriptor]:
    """Find the Union Functional Descriptor among the class-specific descriptors of an interface."""
    offset = 0
    while offset + 2 <= len(extra):
        length = extra[offset]
        if length < 2 or offset + length > len(extra):
            # Truncated or corrupt descriptor list; ignore the remainder.
            break
        descriptor_type = extra[offset + 1]
        if descriptor_type == CS_INTERFACE and length >= 5 and extra[offset + 2] == UNION_FUNCTIONAL_DESCRIPTOR:
            return UnionFunctionalDescriptor(extra[offset + 3], tuple(extra[offset + 4:offset + length]))
        offset += length
    return None


def _bulk_endpoints(interface: UsbInterfaceInfo):
    bulk_in = find_endpoint(interface, ENDPOINT_TRANSFER_TYPE_BULK, True)
    bulk_out = find_endpoint(interface, ENDPOINT_TRANSFER_TYPE_BULK, False)
    if bulk_in is None or bulk_out is None:
        return None
    return (bulk_in, bulk_out)


def find_cdc_acm_functions(device: UsbDeviceInfo,
                           selection: UsbInterfaceSelection = UsbInterfaceSelection()) -> list[CdcAcmFunction]:
    """Find all control/data interface pairs of a device."""

    functions = []

    for configuration in device.configurations:

        # Candidate data interfaces: alternate settings with a bulk-in and a bulk-out endpoint.
        data_candidates = {}
        for interface in configuration.interfaces:
            if interface.interface_class != selection.data_interface_class:
                continue
            endpoints = _bulk_endpoints(interface)
            if endpoints is not None and interface.interface_number not in data_candidates:
                data_candidates[interface.interface_number] = (interface, endpoints)

        used_data_interfaces = set()
        seen_control_interfaces = set()

        for interface in configuration.interfaces:
            if interface.interface_class != selection.control_interface_class:
                continue
            if interface.interface_number in seen_control_interfaces:
                continue
            seen_control_interfaces.add(interface.interface_number)

            if selection.control_interface_class == selection.data_interface_class and interface.interface_number in data_candidates:
                # A single interface that carries both roles.
                data_interface_number = interface.interface_number
            else:
                data_interface_number = None
                union = parse_union_functional_descriptor(interface.extra)
                if union is not None:
                    data_interface_number = next((number for number in union.subordinate_interfaces
                                                  if number in data_candidates), None)
                if data_interface_number is None:
                    data_interface_number = next((number for number in sorted(data_candidates)
                                                  if number > interface.interface_number and
                                                  number not in used_data_interfaces), None)
                if data_interface_number is None:
                    continue

            if data_interface_number in used_data_interfaces:
                continue
            used_data_interfaces.add(data_interface_number)

            (data_interface, (bulk_in, bulk_out)) = data_candidates[data_interface_number]

            functions.append(CdcAcmFunction(
                configuration_value               = configuration.configuration_value,
                control_interface                 = interface.interface_number,
                control_alternate_setting         = interface.alternate_setting,
                data_interface                    = data_interface.interface_number,
                data_alternate_setting            = data_interface.alternate_setting,
                bulk_in_endpoint                  = bulk_in.address,
                bulk_in_endpoint_max_packet_size  = bulk_in.max_packet_size,
                bulk_out_endpoint                 = bulk_out.address,
                bulk_out_endpoint_max_packet_size = bulk_out.max_packet_size
            ))

        if functions:
            # Use the first configuration that provides any serial port.
            break

    return functions


class PortRegistry:
    """Keeps track of the serial ports of permitted devices.

    Create one registry per application, start() it to receive connect/disconnect notifications, and stop()
    it at shutdown. The registry can be used as a context manager for that.
    """

    def __init__(self, backend: UsbBackend, *, behavior: Optional[SerialPortBehavior] = None,
                 selection: Optional[UsbInterfaceSelection] = None):
        self._backend = backend
        self._behavior = behavior
        self._selection = UsbInterfaceSelection() if selection is None else selection
        self._lock = threading.Lock()
        self._ports: dict[UsbDeviceKey, list[SerialPort]] = {}
        self._listeners = {CONNECT: EventSource(), DISCONNECT: EventSource()}
        self._started = False

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, _exception_type, _exception_value, _exception_traceback):
        self.stop()

    def start(self) -> None:
        """Start forwarding the backend's connect/disconnect notifications."""
        if self._started:
            return
        self._backend.listeners.add(self._on_device_event)
        self._backend.start_monitoring()
        self._started = True

    def stop(self) -> None:
        """Stop forwarding notifications and close all open ports."""
        if self._started:
            self._backend.stop_monitoring()
            self._backend.listeners.remove(self._on_device_event)
            self._started = False

        with self._lock:
            ports = [port for device_ports in self._ports.values() for port in device_ports]
            self._ports.clear()

        for port in ports:
            if port.state is PortState.OPEN:
                try:
                    port.close()
                except NotOpen:
                    # Closed or disconnected concurrently.
                    pass

    def add_listener(self, event_type: str, handler) -> None:
        """Register a handler for "connect" or "disconnect" events. The handler receives a PortEvent."""
        self._listeners[event_type].add(handler)

    def remove_listener(self, event_type: str, handler) -> None:
        self._listeners[event_type].remove(handler)

    def _ports_for(self, device: UsbDeviceInfo) -> list[SerialPort]:
        """Return the ports of a device, making them on first use. Must be called with the lock held."""
        ports = self._ports.get(device.key)
        if ports is None:
            ports = [SerialPort(self._backend, device, function, behavior=self._behavior)
                     for function in find_cdc_acm_functions(device, self._selection)]
            self._ports[device.key] = ports
        return ports

    def get_ports(self) -> list[SerialPort]:
        """Return the ports of all attached devices the application has permission to use."""
        attached = self._backend.list_devices()
        devices = [device for device in attached if self._backend.is_permitted(device)]

        with self._lock:
            # Forget devices that went away without a notification (monitoring not started).
            attached_keys = {device.key for device in attached}
            stale = [self._ports.pop(key) for key in list(self._ports) if key not in attached_keys]

            ports = []
            for device in devices:
                ports.extend(self._ports_for(device))

        for stale_ports in stale:
            for port in stale_ports:
                port.handle_disconnect()

        return ports

    def request_port(self, filters: Optional[Iterable[SerialPortFilter]] = None) -> SerialPort:
        """Ask for permission to use a CDC-ACM device matching any of the filters, and return its first port.

        Without filters, any CDC-ACM device matches. Raises PortNotFound if no device matches or permission
        is refused for all matching devices.
        """
        filters = list(filters) if filters is not None else []

        for device in self._backend.list_devices():
            if filters and not any(port_filter.matches(device) for port_filter in filters):
                continue
            if not find_cdc_acm_functions(device, self._selection):
                continue
            if not self._backend.request_permission(device):
                logger.info("Permission refused for device %s (%s).", device.key, device.vid_pid)
                continue
            with self._lock:
                return self._ports_for(device)[0]

        raise PortNotFound()

    def _on_device_event(self, event: UsbDeviceEvent) -> None:
        device = event.device

        if isinstance(event, UsbDeviceConnectedEvent):
            if not self._backend.is_permitted(device):
                return
            with self._lock:
                ports = list(self._ports_for(device))
            for port in ports:
                logger.info("Serial port connected: %r", port)
                self._listeners[CONNECT].fire(PortEvent(CONNECT, port))

        elif isinstance(event, UsbDeviceDisconnectedEvent):
            with self._lock:
                ports = self._ports.pop(device.key, [])
            for port in ports:
                port.handle_disconnect()
                logger.info("Serial port disconnected: %r", port)
                self._listeners[DISCONNECT].fire(PortEvent(DISCONNECT, port))
