"""This module provides the ControlChannel class: CDC-ACM class requests on the control interface."""

import logging
import threading
from typing import NamedTuple, Optional

from .better_int_enum import BetterIntEnum
from .errors import NotOpen, device_error_from_transfer
from .line_coding import LineCoding, LINE_CODING_SIZE, pack_line_coding, unpack_line_coding
from .usb_transport import UsbDeviceHandle, UsbTransferError

logger = logging.getLogger(__name__)

REQUEST_TYPE_CLASS_INTERFACE_OUT = 0x21  # Host-to-device, class request, recipient is an interface.
REQUEST_TYPE_CLASS_INTERFACE_IN  = 0xa1  # Device-to-host, class request, recipient is an interface.

BREAK_ON  = 0xffff  # SEND_BREAK wValue: keep sending break until told otherwise.
BREAK_OFF = 0x0000


class ControlRequest(BetterIntEnum):
    """Class-specific requests of the CDC-ACM subclass used to emulate a serial port."""
    SET_LINE_CODING        = 0x20
    GET_LINE_CODING        = 0x21
    SET_CONTROL_LINE_STATE = 0x22
    SEND_BREAK             = 0x23


class OutputSignals(NamedTuple):
    """Output signal states. A field that is None is left unchanged."""
    dtr: Optional[bool] = None
    rts: Optional[bool] = None
    brk: Optional[bool] = None


def control_line_state_value(dtr: bool, rts: bool) -> int:
    """The wValue of a SET_CONTROL_LINE_STATE request: D0 is DTR, D1 is RTS."""
    return (0x01 if dtr else 0x00) | (0x02 if rts else 0x00)


class ControlChannel:
    """The control interface of an open CDC-ACM function.

    Requests are serialized: a request waits until the previous one (issued from any thread) has completed.
    The channel tracks the signal state that was last accepted by the device.
    """

    def __init__(self, device_handle: UsbDeviceHandle, interface_number: int, *, timeout: int):
        self._device_handle = device_handle
        self._interface_number = interface_number
        self._timeout = timeout
        self._lock = threading.Lock()
        self._closed = False
        # The device state is unknown until the first SET_CONTROL_LINE_STATE; CDC-ACM devices power up deasserted.
        self._signals = OutputSignals(dtr=False, rts=False, brk=False)

    @property
    def signals(self) -> OutputSignals:
        """The output signal state last accepted by the device."""
        return self._signals

    def close(self, timeout: float) -> bool:
        """Refuse further requests, after waiting (timeout in seconds) for the one in progress to complete.

        Return False if a request was still in progress when the wait timed out.
        """
        acquired = self._lock.acquire(timeout=timeout)
        self._closed = True
        if acquired:
            self._lock.release()
        return acquired

    def _control_out(self, request: ControlRequest, value: int, data: bytes = b"") -> None:
        if self._closed:
            raise NotOpen("The port is closed.")
        try:
            self._device_handle.control_transfer_out(
                REQUEST_TYPE_CLASS_INTERFACE_OUT,
                request,                 # bRequest
                value,                   # wValue
                self._interface_number,  # wIndex
                data,
                self._timeout
            )
        except UsbTransferError as exception:
            raise device_error_from_transfer(exception, request.name) from exception

    def _control_in(self, request: ControlRequest, value: int, length: int) -> bytes:
        if self._closed:
            raise NotOpen("The port is closed.")
        try:
            return self._device_handle.control_transfer_in(
                REQUEST_TYPE_CLASS_INTERFACE_IN,
                request,
                value,
                self._interface_number,
                length,                  # wLength: the expected number of response bytes.
                self._timeout
            )
        except UsbTransferError as exception:
            raise device_error_from_transfer(exception, request.name) from exception

    def set_line_coding(self, line_coding: LineCoding) -> None:
        """Send the line coding to the device (SET_LINE_CODING)."""
        data = pack_line_coding(line_coding)
        with self._lock:
            logger.debug("SET_LINE_CODING interface %d: %s", self._interface_number, line_coding)
            self._control_out(ControlRequest.SET_LINE_CODING, 0x0000, data)

    def get_line_coding(self) -> LineCoding:
        """Read the line coding currently used by the device (GET_LINE_CODING)."""
        with self._lock:
            response = self._control_in(ControlRequest.GET_LINE_CODING, 0x0000, LINE_CODING_SIZE)
        return unpack_line_coding(response)

    def set_control_line_state(self, dtr: Optional[bool] = None, rts: Optional[bool] = None) -> None:
        """Set DTR and RTS (SET_CONTROL_LINE_STATE). A signal passed as None keeps its last-sent state."""
        with self._lock:
            new_dtr = self._signals.dtr if dtr is None else dtr
            new_rts = self._signals.rts if rts is None else rts
            value = control_line_state_value(new_dtr, new_rts)
            logger.debug("SET_CONTROL_LINE_STATE interface %d: 0x%02x", self._interface_number, value)
            self._control_out(ControlRequest.SET_CONTROL_LINE_STATE, value)
            self._signals = self._signals._replace(dtr=new_dtr, rts=new_rts)

    def send_break(self, active: bool) -> None:
        """Start or stop sending a break condition (SEND_BREAK)."""
        with self._lock:
            value = BREAK_ON if active else BREAK_OFF
            logger.debug("SEND_BREAK interface %d: 0x%04x", self._interface_number, value)
            self._control_out(ControlRequest.SEND_BREAK, value)
            self._signals = self._signals._replace(brk=active)

    def set_signals(self, signals: OutputSignals) -> None:
        """Apply the fields of `signals` that are not None.

        DTR and RTS go out in a single SET_CONTROL_LINE_STATE request; the break state in a separate SEND_BREAK.
        """
        if signals.dtr is not None or signals.rts is not None:
            self.set_control_line_state(signals.dtr, signals.rts)
        if signals.brk is not None:
            self.send_break(signals.brk)
