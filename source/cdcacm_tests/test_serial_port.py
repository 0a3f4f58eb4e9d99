"""Tests for the SerialPort state machine."""

import threading
import time

import pytest

from cdcacm.control_channel import ControlRequest, OutputSignals
from cdcacm.errors import AlreadyOpen, DeviceDisconnected, DeviceError, InvalidOption, MalformedResponse, NotOpen
from cdcacm.line_coding import (CharFormat, LineCoding, ParityType, SerialOptions, line_coding_from_options,
                                unpack_line_coding)
from cdcacm.registry import find_cdc_acm_functions
from cdcacm.serial_port import PortState, SerialPort, SerialPortInfo
from cdcacm.usb_transport import TransferStatus, UsbTransferError

from fake_usb import FAST_BEHAVIOR, control_interface, data_interface, make_device, union_descriptor


def find_function(device):
    (function, ) = find_cdc_acm_functions(device)
    return function


def test_initial_state(port):
    assert port.state is PortState.CLOSED
    assert port.options is None
    assert port.signals is None
    assert port.readable is None
    assert port.writable is None


def test_get_info_without_opening(port):
    assert port.get_info() == SerialPortInfo(usb_vendor_id=0x2e8a, usb_product_id=0x000a, bus_number=1,
                                             device_address=5, control_interface=0, data_interface=1)


def test_open_sends_line_coding_and_control_line_state(port, backend):
    port.open(SerialOptions(baud_rate=9600))

    handle = backend.handle
    assert port.state is PortState.OPEN
    assert handle.claimed == [0, 1]
    assert [record.request for record in handle.control_requests] == [
        ControlRequest.SET_LINE_CODING, ControlRequest.SET_CONTROL_LINE_STATE]

    (set_line_coding, set_control_line_state) = handle.control_requests
    assert set_line_coding.data == bytes([0x80, 0x25, 0x00, 0x00, 0x00, 0x00, 0x08])
    assert set_line_coding.index == 0
    assert set_control_line_state.value == 0x01  # DTR on, RTS off.
    assert port.signals == OutputSignals(dtr=True, rts=False, brk=False)
    assert port.options.parity is ParityType.NONE


def test_open_selects_configuration(port, backend):
    backend.prepare_handle = lambda handle: setattr(handle, "configuration_value", 0)
    port.open()
    assert ("set_configuration", 1) in backend.handle.calls


def test_open_twice(port, backend):
    port.open()
    request_count = len(backend.handle.control_requests)

    with pytest.raises(AlreadyOpen):
        port.open()

    assert port.state is PortState.OPEN
    assert len(backend.handles) == 1
    assert len(backend.handle.control_requests) == request_count


def test_open_with_invalid_options(port, backend):
    with pytest.raises(InvalidOption) as exception_info:
        port.open(SerialOptions(data_bits=9))
    assert exception_info.value.field == "data_bits"
    assert port.state is PortState.CLOSED
    assert backend.handles == []


def test_open_fails_to_claim(port, backend):
    backend.prepare_handle = lambda handle: handle.claim_failures.update(
        {1: UsbTransferError(TransferStatus.ERROR, "LIBUSB_ERROR_BUSY")})

    with pytest.raises(DeviceError):
        port.open()

    handle = backend.handle
    assert port.state is PortState.CLOSED
    assert handle.released == [0]
    assert handle.closed


def test_open_fails_on_line_coding(port, backend):
    backend.prepare_handle = lambda handle: handle.control_failures.update(
        {ControlRequest.SET_LINE_CODING: UsbTransferError(TransferStatus.STALL, "LIBUSB_ERROR_PIPE")})

    with pytest.raises(DeviceError):
        port.open()

    handle = backend.handle
    assert port.state is PortState.CLOSED
    assert handle.released == [1, 0]
    assert handle.closed

    # The port can be opened again once the device behaves.
    backend.prepare_handle = None
    port.open()
    assert port.state is PortState.OPEN


def test_open_with_verification_mismatch(backend, device):
    port = SerialPort(backend, device, find_function(device), behavior=FAST_BEHAVIOR._replace(verify_line_coding=True))
    backend.prepare_handle = lambda handle: setattr(handle, "line_coding_override",
                                                    bytes([0x00, 0xc2, 0x01, 0x00, 0x00, 0x00, 0x08]))
    with pytest.raises(MalformedResponse):
        port.open(SerialOptions(baud_rate=9600))
    assert port.state is PortState.CLOSED


def test_close_releases_everything(port, backend):
    port.open()
    handle = backend.handle
    port.close()

    assert port.state is PortState.CLOSED
    last = handle.control_requests[-1]
    assert last.request == ControlRequest.SET_CONTROL_LINE_STATE
    assert last.value == 0x00
    assert handle.released == [1, 0]
    assert handle.closed
    assert port.options is None


def test_close_keeps_signals_if_configured(backend, device):
    port = SerialPort(backend, device, find_function(device),
                      behavior=FAST_BEHAVIOR._replace(deassert_signals_on_close=False))
    port.open()
    port.close()
    assert len(backend.handle.requests_of(ControlRequest.SET_CONTROL_LINE_STATE)) == 1


def test_close_when_not_open(port):
    with pytest.raises(NotOpen):
        port.close()


def test_close_during_read_is_bounded(port, backend):
    port.open()
    reader = port.readable
    result = []
    thread = threading.Thread(target=lambda: result.append(reader.read()))
    thread.start()
    time.sleep(0.05)

    started = time.monotonic()
    port.close()
    elapsed = time.monotonic() - started
    thread.join(1.0)

    assert not thread.is_alive()
    assert elapsed < 0.5
    assert result == [b""]
    assert port.state is PortState.CLOSED
    assert port.readable is None


def test_close_with_stuck_transfer_gives_up(backend, device):
    port = SerialPort(backend, device, find_function(device), behavior=FAST_BEHAVIOR._replace(cancel_timeout=50))
    port.open()
    tracker = port._session._tracker
    release = threading.Event()

    def stuck_transfer():
        with tracker.transfer():
            release.wait()

    thread = threading.Thread(target=stuck_transfer)
    thread.start()
    try:
        started = time.monotonic()
        port.close()
        assert time.monotonic() - started < 0.5
        assert port.state is PortState.CLOSED
    finally:
        release.set()
        thread.join()


def test_read_and_write(port, backend):
    port.open()
    backend.handle.bulk_in_queue.put(b"pong")
    assert port.writable.write(b"ping") == 4
    assert port.readable.read() == b"pong"
    assert backend.handle.bulk_out_chunks == [b"ping"]


def test_write_failure_gives_new_writer(port, backend):
    port.open(SerialOptions(buffer_size=4))
    backend.handle.bulk_out_results = [None, None, UsbTransferError(TransferStatus.ERROR, "LIBUSB_ERROR_IO")]
    writer = port.writable

    with pytest.raises(DeviceError) as exception_info:
        writer.write(bytes(20))
    assert exception_info.value.bytes_written == 8

    # Only the stream is invalidated; the port stays open.
    assert port.state is PortState.OPEN
    assert port.writable is not writer
    assert port.writable.write(b"more") == 4


def test_same_stream_while_healthy(port):
    port.open()
    assert port.readable is port.readable
    assert port.writable is port.writable


def test_reconfigure(port, backend):
    port.open()
    port.reconfigure(SerialOptions(baud_rate=9600, parity="odd", buffer_size=16))

    last = backend.handle.requests_of(ControlRequest.SET_LINE_CODING)[-1]
    assert last.data == bytes([0x80, 0x25, 0x00, 0x00, 0x00, 0x01, 0x08])
    assert port.options.buffer_size == 16

    backend.handle.bulk_in_queue.put(b"x")
    port.readable.read()
    assert backend.handle.bulk_in_lengths[-1] == 16


def test_reconfigure_invalid_options_keeps_port_open(port, backend):
    port.open()
    request_count = len(backend.handle.control_requests)
    with pytest.raises(InvalidOption):
        port.reconfigure(SerialOptions(stop_bits=3))
    assert port.state is PortState.OPEN
    assert len(backend.handle.control_requests) == request_count


def test_reconfigure_failure_closes_port(port, backend):
    port.open()
    backend.handle.control_failures[ControlRequest.SET_LINE_CODING] = UsbTransferError(TransferStatus.STALL)

    with pytest.raises(DeviceError):
        port.reconfigure(SerialOptions(baud_rate=9600))

    assert port.state is PortState.CLOSED
    assert backend.handle.closed
    with pytest.raises(NotOpen):
        port.set_signals(dtr=False)


def test_reconfigure_when_closed(port):
    with pytest.raises(NotOpen):
        port.reconfigure(SerialOptions())


def test_break_on_then_off(port, backend):
    port.open()
    handle = backend.handle

    port.set_signals(brk=True)
    port.set_signals(OutputSignals(brk=False))

    assert [record.value for record in handle.requests_of(ControlRequest.SEND_BREAK)] == [0xffff, 0x0000]
    # Only the SET_CONTROL_LINE_STATE of the open.
    assert len(handle.requests_of(ControlRequest.SET_CONTROL_LINE_STATE)) == 1
    assert port.signals == OutputSignals(dtr=True, rts=False, brk=False)


def test_set_signals_keyword_overrides(port, backend):
    port.open()
    port.set_signals(OutputSignals(dtr=True, rts=True), rts=False)
    assert backend.handle.control_requests[-1].value == 0x01
    assert port.signals == OutputSignals(dtr=True, rts=False, brk=False)


def test_get_line_coding(port):
    port.open(SerialOptions(baud_rate=9600, stop_bits=2))
    assert port.get_line_coding() == LineCoding(9600, CharFormat.TWO_STOP_BITS, ParityType.NONE, 8)


def test_disconnect_while_open(port, backend):
    port.open()
    handle = backend.handle
    port.handle_disconnect()

    assert port.state is PortState.CLOSED
    assert port.disconnected
    assert handle.closed
    # No control requests to a device that is gone.
    assert [record.request for record in handle.control_requests] == [
        ControlRequest.SET_LINE_CODING, ControlRequest.SET_CONTROL_LINE_STATE]

    assert port.readable is None
    assert port.writable is None
    with pytest.raises(DeviceDisconnected):
        port.set_signals(dtr=False)
    with pytest.raises(DeviceDisconnected):
        port.reconfigure(SerialOptions())
    with pytest.raises(DeviceDisconnected):
        port.open()

    # Closing a port whose device went away is allowed.
    port.close()


def test_disconnect_ends_stream_users(port, backend):
    port.open()
    reader = port.readable
    result = []
    thread = threading.Thread(target=lambda: result.append(reader.read()))
    thread.start()
    time.sleep(0.05)

    port.handle_disconnect()
    thread.join(1.0)

    assert not thread.is_alive()
    assert result == [b""]


def test_calls_on_closed_port(port):
    with pytest.raises(NotOpen):
        port.set_signals(dtr=True)
    with pytest.raises(NotOpen):
        port.get_line_coding()


def test_context_manager(port, backend):
    with port:
        assert port.state is PortState.OPEN
    assert port.state is PortState.CLOSED
    assert backend.handle.closed


def test_alternate_settings_are_selected(backend):
    device = make_device([control_interface(0, union_descriptor(0, 1), alternate_setting=1),
                          data_interface(1)])
    backend.devices = [device]
    port = SerialPort(backend, device, find_function(device), behavior=FAST_BEHAVIOR)
    port.open()
    assert ("set_alternate_setting", 0, 1) in backend.handle.calls
    port.close()

def test_concurrent_reconfigure_records_what_the_device_got(port, backend, monkeypatch):
    port.open()
    handle = backend.handle
    session = port._session
    apply_line_coding = session.apply_line_coding
    first_applied = threading.Event()
    resume = threading.Event()

    def held_apply_line_coding(line_coding):
        apply_line_coding(line_coding)
        if line_coding.dte_rate == 9600:
            first_applied.set()
            resume.wait(5.0)

    monkeypatch.setattr(session, "apply_line_coding", held_apply_line_coding)

    first = threading.Thread(target=port.reconfigure, args=(SerialOptions(baud_rate=9600), ))
    first.start()
    assert first_applied.wait(1.0)

    second = threading.Thread(target=port.reconfigure, args=(SerialOptions(baud_rate=57600), ))
    second.start()
    time.sleep(0.05)
    try:
        # The second reconfigure waits until the options of the first one are recorded.
        assert second.is_alive()
        assert len(handle.requests_of(ControlRequest.SET_LINE_CODING)) == 2
    finally:
        resume.set()
        first.join(1.0)
        second.join(1.0)

    assert port.options.baud_rate == 57600
    assert unpack_line_coding(handle.line_coding) == line_coding_from_options(port.options)


def test_read_from_removed_device_closes_port(port, backend):
    port.open()
    handle = backend.handle
    handle.bulk_in_queue.put(UsbTransferError(TransferStatus.DISCONNECTED, "LIBUSB_ERROR_NO_DEVICE"))

    with pytest.raises(DeviceDisconnected):
        port.readable.read()

    assert port.state is PortState.CLOSED
    assert port.disconnected
    assert handle.closed
    assert port.readable is None
    with pytest.raises(DeviceDisconnected):
        port.set_signals(dtr=True)


def test_write_to_removed_device_closes_port(port, backend):
    port.open()
    handle = backend.handle
    handle.bulk_out_results = [UsbTransferError(TransferStatus.DISCONNECTED, "LIBUSB_ERROR_NO_DEVICE")]

    with pytest.raises(DeviceDisconnected):
        port.writable.write(b"data")

    assert port.state is PortState.CLOSED
    assert port.disconnected
    assert handle.closed
    with pytest.raises(DeviceDisconnected):
        port.open()


def test_control_request_to_removed_device_closes_port(port, backend):
    port.open()
    handle = backend.handle
    handle.control_failures[ControlRequest.SET_CONTROL_LINE_STATE] = UsbTransferError(
        TransferStatus.DISCONNECTED, "LIBUSB_ERROR_NO_DEVICE")

    with pytest.raises(DeviceDisconnected):
        port.set_signals(dtr=False)

    assert port.state is PortState.CLOSED
    assert port.disconnected
    assert handle.closed
    port.close()


def test_close_waits_for_control_request_in_progress(backend, device):
    port = SerialPort(backend, device, find_function(device),
                      behavior=FAST_BEHAVIOR._replace(deassert_signals_on_close=False))
    port.open()
    handle = backend.handle
    entered = threading.Event()
    resume = threading.Event()

    def hold_control_line_state(request, _data):
        if request == ControlRequest.SET_CONTROL_LINE_STATE:
            entered.set()
            resume.wait(5.0)

    handle.control_hook = hold_control_line_state

    signaller = threading.Thread(target=port.set_signals, kwargs={"dtr": False})
    signaller.start()
    assert entered.wait(1.0)

    closer = threading.Thread(target=port.close)
    closer.start()
    time.sleep(0.05)
    try:
        # The handle stays usable until the request completes.
        assert not handle.closed
        assert handle.released == []
    finally:
        resume.set()
        signaller.join(1.0)
        closer.join(1.0)

    assert handle.closed
    assert handle.released == [1, 0]
    assert port.state is PortState.CLOSED
