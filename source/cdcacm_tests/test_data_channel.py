"""Tests for the bulk-in reader and the bulk-out writer."""

import threading
import time

import pytest

from cdcacm.behavior import SerialPortBehavior
from cdcacm.data_channel import SerialReader, SerialWriter, TransferTracker
from cdcacm.errors import DeviceDisconnected, DeviceError, NotOpen
from cdcacm.usb_transport import TransferStatus, UsbTransferError

from fake_usb import BULK_IN_ENDPOINT, BULK_OUT_ENDPOINT, FakeUsbDeviceHandle

BEHAVIOR = SerialPortBehavior(poll_interval=10)


class BufferSize:
    def __init__(self, value):
        self.value = value

    def __call__(self):
        return self.value


@pytest.fixture
def handle():
    return FakeUsbDeviceHandle()


@pytest.fixture
def tracker():
    return TransferTracker()


def make_reader(handle, tracker, buffer_size=255, behavior=BEHAVIOR):
    return SerialReader(handle, BULK_IN_ENDPOINT, BufferSize(buffer_size), tracker, behavior)


def make_writer(handle, tracker, buffer_size=255, behavior=BEHAVIOR):
    return SerialWriter(handle, BULK_OUT_ENDPOINT, BufferSize(buffer_size), tracker, behavior)


def test_tracker_gates_new_transfers(tracker):
    with tracker.transfer() as allowed:
        assert allowed
        assert tracker.in_flight == 1
    tracker.close()
    with tracker.transfer() as allowed:
        assert not allowed
        assert tracker.in_flight == 0
    assert tracker.wait_idle(0.1)


def test_tracker_wait_idle_times_out(tracker):
    started = threading.Event()
    release = threading.Event()

    def transfer():
        with tracker.transfer():
            started.set()
            release.wait()

    thread = threading.Thread(target=transfer)
    thread.start()
    started.wait()
    assert not tracker.wait_idle(0.05)
    release.set()
    thread.join()
    assert tracker.wait_idle(0.05)


def test_read_returns_device_data(handle, tracker):
    handle.bulk_in_queue.put(b"hello")
    reader = make_reader(handle, tracker, buffer_size=64)
    assert reader.read() == b"hello"
    assert handle.bulk_in_lengths == [64]


def test_read_skips_empty_transfers(handle, tracker):
    handle.bulk_in_queue.put(b"")
    handle.bulk_in_queue.put(b"data")
    reader = make_reader(handle, tracker)
    assert reader.read() == b"data"


def test_read_keeps_data_of_timed_out_transfer(handle, tracker):
    handle.bulk_in_queue.put(UsbTransferError(TransferStatus.TIMEOUT, transferred=3, data=b"abc"))
    reader = make_reader(handle, tracker)
    assert reader.read() == b"abc"


def test_buffer_size_applies_to_later_transfers(handle, tracker):
    buffer_size = BufferSize(255)
    reader = SerialReader(handle, BULK_IN_ENDPOINT, buffer_size, tracker, BEHAVIOR)
    handle.bulk_in_queue.put(b"a")
    reader.read()
    buffer_size.value = 16
    handle.bulk_in_queue.put(b"b")
    reader.read()
    assert handle.bulk_in_lengths == [255, 16]


def test_read_ends_when_cancelled(handle, tracker):
    reader = make_reader(handle, tracker)
    result = []
    thread = threading.Thread(target=lambda: result.append(reader.read()))
    thread.start()
    time.sleep(0.05)

    started = time.monotonic()
    reader.cancel()
    thread.join(1.0)

    assert not thread.is_alive()
    assert time.monotonic() - started < 0.5
    assert result == [b""]
    assert reader.done


def test_iteration_yields_chunks_until_cancelled(handle, tracker):
    reader = make_reader(handle, tracker)
    handle.bulk_in_queue.put(b"one")
    handle.bulk_in_queue.put(b"two")

    chunks = []
    for chunk in reader:
        chunks.append(chunk)
        if len(chunks) == 2:
            reader.cancel()

    assert chunks == [b"one", b"two"]


def test_read_failure_is_sticky(handle, tracker):
    handle.bulk_in_queue.put(UsbTransferError(TransferStatus.ERROR, "LIBUSB_ERROR_OVERFLOW"))
    reader = make_reader(handle, tracker)

    with pytest.raises(DeviceError):
        reader.read()

    handle.bulk_in_queue.put(b"late")
    with pytest.raises(DeviceError):
        reader.read()
    assert reader.done


def test_stalled_endpoint_is_cleared(handle, tracker):
    handle.bulk_in_queue.put(UsbTransferError(TransferStatus.STALL, "LIBUSB_ERROR_PIPE"))
    reader = make_reader(handle, tracker)
    with pytest.raises(DeviceError) as exception_info:
        reader.read()
    assert exception_info.value.status is TransferStatus.STALL
    assert handle.halts_cleared == [BULK_IN_ENDPOINT]


def test_stalled_endpoint_left_alone_if_configured(handle, tracker):
    handle.bulk_in_queue.put(UsbTransferError(TransferStatus.STALL, "LIBUSB_ERROR_PIPE"))
    reader = make_reader(handle, tracker, behavior=BEHAVIOR._replace(clear_halt_on_stall=False))
    with pytest.raises(DeviceError):
        reader.read()
    assert handle.halts_cleared == []


def test_read_disconnected(handle, tracker):
    handle.bulk_in_queue.put(UsbTransferError(TransferStatus.DISCONNECTED, "LIBUSB_ERROR_NO_DEVICE"))
    reader = make_reader(handle, tracker)
    with pytest.raises(DeviceDisconnected):
        reader.read()


def test_write_in_chunks(handle, tracker):
    writer = make_writer(handle, tracker, buffer_size=4)
    assert writer.write(b"0123456789") == 10
    assert handle.bulk_out_chunks == [b"0123", b"4567", b"89"]


def test_write_failure_reports_bytes_written(handle, tracker):
    # Five chunks of four bytes; the third one fails.
    handle.bulk_out_results = [None, None, UsbTransferError(TransferStatus.ERROR, "LIBUSB_ERROR_IO")]
    writer = make_writer(handle, tracker, buffer_size=4)

    with pytest.raises(DeviceError) as exception_info:
        writer.write(bytes(range(20)))

    assert exception_info.value.bytes_written == 8
    assert handle.bulk_out_chunks == [bytes(range(4)), bytes(range(4, 8))]
    assert writer.done


def test_write_counts_partial_chunk(handle, tracker):
    handle.bulk_out_results = [UsbTransferError(TransferStatus.STALL, "LIBUSB_ERROR_PIPE", transferred=2)]
    writer = make_writer(handle, tracker, buffer_size=4)

    with pytest.raises(DeviceError) as exception_info:
        writer.write(b"abcdef")

    assert exception_info.value.bytes_written == 2
    assert handle.halts_cleared == [BULK_OUT_ENDPOINT]


def test_write_continues_after_timed_out_slice(handle, tracker):
    handle.bulk_out_results = [UsbTransferError(TransferStatus.TIMEOUT, transferred=1), None]
    writer = make_writer(handle, tracker)
    assert writer.write(b"xyz") == 3
    assert handle.bulk_out_chunks == [b"x", b"yz"]


def test_write_timeout(handle, tracker):
    handle.bulk_out_results = [UsbTransferError(TransferStatus.TIMEOUT)] * 100
    writer = make_writer(handle, tracker, behavior=BEHAVIOR._replace(write_timeout=0))
    with pytest.raises(DeviceError) as exception_info:
        writer.write(b"xyz")
    assert exception_info.value.status is TransferStatus.TIMEOUT
    assert exception_info.value.bytes_written == 0


def test_write_after_cancel(handle, tracker):
    writer = make_writer(handle, tracker)
    writer.cancel()
    with pytest.raises(NotOpen):
        writer.write(b"data")
    assert handle.bulk_out_chunks == []


def test_write_after_session_end(handle, tracker):
    writer = make_writer(handle, tracker)
    tracker.close()
    with pytest.raises(NotOpen):
        writer.write(b"data")


def test_reader_reports_device_gone(handle, tracker):
    reports = []
    reader = SerialReader(handle, BULK_IN_ENDPOINT, BufferSize(255), tracker, BEHAVIOR,
                          on_disconnect=lambda: reports.append(tracker.in_flight))
    handle.bulk_in_queue.put(UsbTransferError(TransferStatus.DISCONNECTED, "LIBUSB_ERROR_NO_DEVICE"))
    with pytest.raises(DeviceDisconnected):
        reader.read()
    # Reported once, after the failed transfer ended.
    assert reports == [0]


def test_writer_reports_device_gone(handle, tracker):
    reports = []
    writer = SerialWriter(handle, BULK_OUT_ENDPOINT, BufferSize(255), tracker, BEHAVIOR,
                          on_disconnect=lambda: reports.append(tracker.in_flight))
    handle.bulk_out_results = [UsbTransferError(TransferStatus.DISCONNECTED, "LIBUSB_ERROR_NO_DEVICE")]
    with pytest.raises(DeviceDisconnected):
        writer.write(b"data")
    assert reports == [0]


def test_other_failures_are_not_reported_as_disconnect(handle, tracker):
    reports = []
    reader = SerialReader(handle, BULK_IN_ENDPOINT, BufferSize(255), tracker, BEHAVIOR,
                          on_disconnect=lambda: reports.append(True))
    handle.bulk_in_queue.put(UsbTransferError(TransferStatus.ERROR, "LIBUSB_ERROR_IO"))
    with pytest.raises(DeviceError):
        reader.read()
    assert reports == []
