"""This module provides the SerialPort class: a serial port on top of the CDC-ACM function of a USB device."""

import logging
import threading
from enum import Enum
from typing import Callable, NamedTuple, Optional

from .behavior import SerialPortBehavior, DEFAULT_BEHAVIOR
from .control_channel import ControlChannel, OutputSignals
from .data_channel import SerialReader, SerialWriter, TransferTracker
from .errors import (SerialError, AlreadyOpen, DeviceDisconnected, DeviceError, MalformedResponse, NotOpen,
                     device_error_from_transfer)
from .line_coding import LineCoding, SerialOptions, line_coding_from_options, validate
from .usb_transport import UsbBackend, UsbDeviceHandle, UsbDeviceInfo, UsbTransferError

logger = logging.getLogger(__name__)


class CdcAcmFunction(NamedTuple):
    """The interfaces and endpoints that make up one CDC-ACM function of a device."""
    configuration_value: int
    control_interface: int
    control_alternate_setting: int
    data_interface: int
    data_alternate_setting: int
    bulk_in_endpoint: int
    bulk_in_endpoint_max_packet_size: int
    bulk_out_endpoint: int
    bulk_out_endpoint_max_packet_size: int


class SerialPortInfo(NamedTuple):
    """Identifying information of the device behind a port."""
    usb_vendor_id: int
    usb_product_id: int
    bus_number: int
    device_address: int
    control_interface: int
    data_interface: int


class PortState(Enum):
    CLOSED  = "closed"
    OPENING = "opening"
    OPEN    = "open"
    CLOSING = "closing"


class Session:
    """The claimed interfaces and the streams of an open port.

    A Session owns its device handle. Whatever way the session ends, release() gives back everything it holds.
    `on_disconnect` is called with the session when one of its streams finds the device gone.
    """

    def __init__(self, backend: UsbBackend, device: UsbDeviceInfo, function: CdcAcmFunction,
                 behavior: SerialPortBehavior, on_disconnect: Optional[Callable[["Session"], None]] = None):
        self._backend = backend
        self._device = device
        self._function = function
        self._behavior = behavior
        self._on_disconnect = on_disconnect
        self._device_handle: Optional[UsbDeviceHandle] = None
        self._claimed_interfaces: list[int] = []
        self._tracker = TransferTracker()
        self._options: Optional[SerialOptions] = None
        # Held from sending a line coding until its options are recorded.
        self._configuration_lock = threading.Lock()
        self.control: Optional[ControlChannel] = None
        self.reader: Optional[SerialReader] = None
        self.writer: Optional[SerialWriter] = None

    @property
    def options(self) -> Optional[SerialOptions]:
        return self._options

    def _buffer_size(self) -> int:
        return self._options.buffer_size

    def start(self, options: SerialOptions) -> None:
        """Open the device, claim the interfaces, and send the initial line coding and control line state.

        On failure, the caller must call release().
        """
        function = self._function

        try:
            self._device_handle = self._backend.open_device(self._device.key)

            # Select the configuration if needed. This must happen before any interface is claimed.
            if self._device_handle.get_configuration() != function.configuration_value:
                self._device_handle.set_configuration(function.configuration_value)

            for interface_number in dict.fromkeys((function.control_interface, function.data_interface)):
                self._device_handle.claim_interface(interface_number)
                self._claimed_interfaces.append(interface_number)

            if function.control_alternate_setting != 0:
                self._device_handle.set_alternate_setting(function.control_interface, function.control_alternate_setting)

            if function.data_alternate_setting != 0 and function.data_interface != function.control_interface:
                self._device_handle.set_alternate_setting(function.data_interface, function.data_alternate_setting)

        except UsbTransferError as exception:
            raise device_error_from_transfer(exception, "Claiming the CDC-ACM interfaces") from exception

        self.control = ControlChannel(self._device_handle, function.control_interface,
                                      timeout=self._behavior.control_timeout)

        self.configure(options)
        self.control.set_control_line_state(dtr=self._behavior.initial_dtr, rts=self._behavior.initial_rts)

    def configure(self, options: SerialOptions) -> None:
        """Send the line coding of `options` and make them the options in effect.

        Concurrent calls are serialized, so the recorded options are always the ones the device was given last.
        """
        with self._configuration_lock:
            self.apply_line_coding(line_coding_from_options(options))
            self._options = options

    def apply_line_coding(self, line_coding: LineCoding) -> None:
        """Send the line coding; read it back if the behavior asks for verification."""
        self.control.set_line_coding(line_coding)
        if self._behavior.verify_line_coding:
            reported = self.control.get_line_coding()
            if reported != line_coding:
                raise MalformedResponse(f"Device reports line coding {reported} after being set to {line_coding}.")

    def _report_disconnect(self) -> None:
        if self._on_disconnect is not None:
            self._on_disconnect(self)

    def get_reader(self) -> SerialReader:
        if self.reader is None or self.reader.done:
            self.reader = SerialReader(self._device_handle, self._function.bulk_in_endpoint, self._buffer_size,
                                       self._tracker, self._behavior, on_disconnect=self._report_disconnect)
        return self.reader

    def get_writer(self) -> SerialWriter:
        if self.writer is None or self.writer.done:
            self.writer = SerialWriter(self._device_handle, self._function.bulk_out_endpoint, self._buffer_size,
                                       self._tracker, self._behavior, on_disconnect=self._report_disconnect)
        return self.writer

    def release(self, *, deassert_signals: bool) -> None:
        """Stop the streams and give back the interfaces and the device handle.

        Failures are logged, not raised: the session ends regardless.
        """

        # No new transfers from here on.
        self._tracker.close()
        for stream in (self.reader, self.writer):
            if stream is not None:
                stream.cancel()

        if not self._tracker.wait_idle(self._behavior.cancel_timeout / 1000.0):
            logger.warning("Device %s: %d transfer(s) still in flight after %d ms; releasing anyway.",
                           self._device.key, self._tracker.in_flight, self._behavior.cancel_timeout)

        if deassert_signals and self.control is not None:
            try:
                self.control.set_control_line_state(dtr=False, rts=False)
            except SerialError as exception:
                logger.warning("Device %s: unable to deassert DTR/RTS: %s", self._device.key, exception)

        # A control request issued by another thread may still be using the handle.
        if self.control is not None and not self.control.close(self._behavior.cancel_timeout / 1000.0):
            logger.warning("Device %s: control request still in progress after %d ms; releasing anyway.",
                           self._device.key, self._behavior.cancel_timeout)

        if self._device_handle is None:
            return

        for interface_number in reversed(self._claimed_interfaces):
            try:
                self._device_handle.release_interface(interface_number)
            except UsbTransferError as exception:
                logger.warning("Device %s: unable to release interface %d: %s",
                               self._device.key, interface_number, exception)
        self._claimed_interfaces.clear()

        try:
            self._device_handle.close()
        except UsbTransferError as exception:
            logger.warning("Device %s: unable to close device handle: %s", self._device.key, exception)

        self._device_handle = None


class SerialPort:
    """A serial port backed by the CDC-ACM function of a USB device.

    Ports are handed out by a PortRegistry. A port is either closed, or it has exactly one open session.

    The port can be used as a context manager; this opens it with default options and closes it afterwards.
    """

    def __init__(self, backend: UsbBackend, device: UsbDeviceInfo, function: CdcAcmFunction, *,
                 behavior: Optional[SerialPortBehavior] = None):
        self._backend = backend
        self._device = device
        self._function = function
        self._behavior = DEFAULT_BEHAVIOR if behavior is None else behavior

        self._state_lock = threading.Lock()
        self._state = PortState.CLOSED
        self._session: Optional[Session] = None
        self._disconnected = False

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, _exception_type, _exception_value, _exception_traceback):
        if self.state is PortState.OPEN:
            self.close()

    def __repr__(self):
        return (f"SerialPort(device={self._device.key!s}, vid_pid={self._device.vid_pid}, "
                f"interfaces={self._function.control_interface}/{self._function.data_interface}, state={self.state.value})")

    @property
    def state(self) -> PortState:
        with self._state_lock:
            return self._state

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    @property
    def device(self) -> UsbDeviceInfo:
        return self._device

    @property
    def function(self) -> CdcAcmFunction:
        return self._function

    @property
    def options(self) -> Optional[SerialOptions]:
        """The options in effect, or None if the port is not open."""
        with self._state_lock:
            return None if self._session is None else self._session.options

    @property
    def signals(self) -> Optional[OutputSignals]:
        """The output signals last accepted by the device, or None if the port is not open."""
        with self._state_lock:
            if self._session is None or self._session.control is None:
                return None
            return self._session.control.signals

    @property
    def readable(self) -> Optional[SerialReader]:
        """The reader of the open port, or None if the port is not open.

        A new reader is made if there is none yet or the previous one was cancelled or failed.
        """
        with self._state_lock:
            if self._state is not PortState.OPEN:
                return None
            return self._session.get_reader()

    @property
    def writable(self) -> Optional[SerialWriter]:
        """The writer of the open port, or None if the port is not open."""
        with self._state_lock:
            if self._state is not PortState.OPEN:
                return None
            return self._session.get_writer()

    def get_info(self) -> SerialPortInfo:
        """Return identifying information of the device. This does not require the port to be open."""
        return SerialPortInfo(
            usb_vendor_id     = self._device.vendor_id,
            usb_product_id    = self._device.product_id,
            bus_number        = self._device.key.bus_number,
            device_address    = self._device.key.device_address,
            control_interface = self._function.control_interface,
            data_interface    = self._function.data_interface
        )

    def _require_session(self) -> Session:
        """Return the open session, or raise the error that explains why there is none."""
        with self._state_lock:
            if self._state is not PortState.OPEN:
                if self._disconnected:
                    raise DeviceDisconnected("The device is disconnected.")
                raise NotOpen()
            return self._session

    def open(self, options: Optional[SerialOptions] = None) -> None:
        """Claim the device's CDC-ACM interfaces and configure the line.

        Once open, data can be exchanged through `readable` and `writable`.
        """

        if options is None:
            options = SerialOptions()

        with self._state_lock:
            if self._disconnected:
                raise DeviceDisconnected("The device is disconnected.")
            if self._state is not PortState.CLOSED:
                raise AlreadyOpen()
            options = validate(options, self._behavior)
            self._state = PortState.OPENING

        logger.debug("Opening %r with %s", self, options)

        session = Session(self._backend, self._device, self._function, self._behavior, on_disconnect=self._disconnect)
        try:
            session.start(options)
        except Exception:
            # Give back whatever was acquired, then report the failure.
            session.release(deassert_signals=False)
            with self._state_lock:
                self._state = PortState.CLOSED
            raise

        with self._state_lock:
            if not self._disconnected:
                self._session = session
                self._state = PortState.OPEN
                return

        # The device went away while we were opening it.
        session.release(deassert_signals=False)
        with self._state_lock:
            self._state = PortState.CLOSED
        raise DeviceDisconnected("The device was disconnected while opening the port.")

    def close(self) -> None:
        """Cancel the streams, release the interfaces, and close the device.

        The port ends up closed even if parts of the cleanup fail.
        """
        with self._state_lock:
            if self._state is not PortState.OPEN:
                if self._disconnected and self._state is PortState.CLOSED:
                    # Closing a port whose device went away is harmless.
                    return
                raise NotOpen()
            session = self._session
            self._session = None
            self._state = PortState.CLOSING

        logger.debug("Closing %r", self)

        try:
            session.release(deassert_signals=self._behavior.deassert_signals_on_close)
        finally:
            with self._state_lock:
                self._state = PortState.CLOSED

    def _invalidate(self, session: Session, exception: SerialError) -> None:
        """Tear down the session after a failed or unverifiable control request."""
        if isinstance(exception, DeviceDisconnected):
            self._disconnect(session)
            return

        with self._state_lock:
            if self._session is not session:
                # Closed or torn down concurrently.
                return
            self._session = None
            self._state = PortState.CLOSING

        logger.warning("Closing %r after failure: %s", self, exception)

        try:
            session.release(deassert_signals=False)
        finally:
            with self._state_lock:
                self._state = PortState.CLOSED

    def reconfigure(self, options: SerialOptions) -> None:
        """Change the serial options of the open port.

        The new buffer size applies to transfers started after this call. If the device rejects the new line coding,
        the port is closed, and it must be reopened before it can be used again.
        """
        session = self._require_session()
        options = validate(options, self._behavior)

        try:
            session.configure(options)
        except (DeviceError, MalformedResponse) as exception:
            self._invalidate(session, exception)
            raise

    def set_signals(self, signals: Optional[OutputSignals] = None, *, dtr: Optional[bool] = None,
                    rts: Optional[bool] = None, brk: Optional[bool] = None) -> None:
        """Set output signals. Signals that are not given keep their state.

        Signals can be passed either as an OutputSignals instance or as keyword arguments; keyword arguments
        take precedence.
        """
        if signals is None:
            signals = OutputSignals()

        signals = OutputSignals(
            dtr = signals.dtr if dtr is None else dtr,
            rts = signals.rts if rts is None else rts,
            brk = signals.brk if brk is None else brk
        )

        session = self._require_session()
        try:
            session.control.set_signals(signals)
        except DeviceError as exception:
            self._invalidate(session, exception)
            raise

    def get_line_coding(self) -> LineCoding:
        """Read the line coding the device currently uses."""
        session = self._require_session()
        try:
            return session.control.get_line_coding()
        except DeviceError as exception:
            self._invalidate(session, exception)
            raise

    def handle_disconnect(self) -> None:
        """Force the session down because the device went away. Later calls raise DeviceDisconnected."""
        self._disconnect()

    def _disconnect(self, session: Optional[Session] = None) -> None:
        """Mark the device as gone and release the session; if `session` is given, only while it is current."""
        with self._state_lock:
            if session is not None and self._session is not session:
                return
            self._disconnected = True
            session = self._session
            self._session = None
            if session is not None:
                self._state = PortState.CLOSING

        if session is None:
            # Closed already, or an open() in progress that will notice the flag.
            return

        logger.info("Device of %r disconnected; closing the port.", self)

        try:
            session.release(deassert_signals=False)
        finally:
            with self._state_lock:
                self._state = PortState.CLOSED
