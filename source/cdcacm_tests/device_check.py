#! /usr/bin/env python3

"""This is a checking tool for devices that claim to support CDC-ACM.

It lists the device's CDC-ACM functions, exercises the class requests, and optionally does a loopback test
(for devices that echo what they receive, or that have TX and RX wired together).
"""

import argparse
import logging
import os
import re
import sys
import threading
import time
from enum import Enum

from cdcacm import (DeviceError, LibUsbBackend, MalformedResponse, PortRegistry, SerialOptions, SerialPort,
                    SerialPortBehavior, SerialPortFilter)
from cdcacm.errors import PortNotFound


def initialize_libusb_library_path_environment_variable() -> bool:
    """Initialize the LIBUSB_LIBRARY_PATH environment variable, if needed.

    In Windows, we need to tell cdcacm where the libusb-1.0 DLL can be found. This is done by
    pointing the LIBUSB_LIBRARY_PATH environment variable to the libusb-1.0 DLL.

    If the LIBUSB_LIBRARY_PATH variable is already set, or on non-Windows platforms, this function is a no-op.
    """

    if ("LIBUSB_LIBRARY_PATH" in os.environ) or (sys.platform != "win32"):
        return False

    filename = os.path.abspath(os.path.join(os.path.dirname(__file__), "../../windows/libusb-1.0.dll"))
    if not os.path.exists(filename):
        raise RuntimeError(f"Cannot find the libusb-1.0 library at '{filename}'. Please make sure it's available.")
    os.environ["LIBUSB_LIBRARY_PATH"] = filename
    return True


class CheckResult(Enum):
    PASSED = 201
    FAILED = 202
    NOT_SUPPORTED = 203


def check_line_coding(port: SerialPort) -> CheckResult:

    print()
    print("Check: line coding")
    print("==================")
    print()

    print("The device should report the line coding it was given. Devices that don't implement GET_LINE_CODING")
    print("stall the request; that is allowed by the CDC-ACM specification.")
    print()

    for baud_rate in (9600, 57600, 115200):
        try:
            port.reconfigure(SerialOptions(baud_rate=baud_rate))
        except DeviceError as exception:
            print(f"SET_LINE_CODING refused: {exception}")
            return CheckResult.FAILED

        try:
            line_coding = port.get_line_coding()
        except DeviceError as exception:
            print(f"GET_LINE_CODING refused: {exception}")
            return CheckResult.NOT_SUPPORTED
        except MalformedResponse as exception:
            print(f"GET_LINE_CODING response is malformed: {exception}")
            return CheckResult.FAILED

        print(f"Set {baud_rate} baud; device reports {line_coding}.")
        if line_coding.dte_rate != baud_rate:
            return CheckResult.FAILED

    return CheckResult.PASSED


def check_signals(port: SerialPort) -> CheckResult:

    print()
    print("Check: output signals")
    print("=====================")
    print()

    try:
        for (dtr, rts) in ((False, False), (True, False), (False, True), (True, True)):
            port.set_signals(dtr=dtr, rts=rts)
            print(f"DTR={dtr!s:5} RTS={rts!s:5} accepted.")
        port.set_signals(brk=True)
        time.sleep(0.1)
        port.set_signals(brk=False)
        print("Break on/off accepted.")
    except DeviceError as exception:
        print(f"The device refused the request: {exception}")
        return CheckResult.FAILED

    return CheckResult.PASSED


def check_loopback(port: SerialPort, message: bytes, timeout: float) -> CheckResult:

    print()
    print("Check: loopback")
    print("===============")
    print()

    port.writable.write(message)

    received = b""
    reader = port.readable
    # read() blocks; cancelling the reader makes it return b"".
    timer = threading.Timer(timeout, reader.cancel)
    timer.start()
    try:
        while len(received) < len(message):
            data = reader.read()
            if len(data) == 0:
                break
            received += data
    finally:
        timer.cancel()

    print(f"Sent ....... : {message!r}")
    print(f"Received ... : {received!r}")

    return CheckResult.PASSED if received == message else CheckResult.FAILED


def check_device(vid: int, pid: int, loopback: bool) -> None:

    backend = LibUsbBackend(permit_all=True)
    behavior = SerialPortBehavior(control_timeout=1000)

    with PortRegistry(backend, behavior=behavior) as registry:

        try:
            port = registry.request_port([SerialPortFilter(usb_vendor_id=vid, usb_product_id=pid)])
        except PortNotFound:
            print(f"No CDC-ACM device {vid:04x}:{pid:04x} found.")
            return

        info = port.get_info()
        function = port.function

        print()
        print(f"Device info for CDC-ACM device {vid:04x}:{pid:04x}")
        print("========================================")
        print()

        print(f"bus number / device address ........ : {info.bus_number:03d}:{info.device_address:03d}")
        print(f"configuration ...................... : {function.configuration_value}")
        print(f"control interface .................. : {function.control_interface} (alternate setting {function.control_alternate_setting})")
        print(f"data interface ..................... : {function.data_interface} (alternate setting {function.data_alternate_setting})")
        print(f"bulk-in endpoint ................... : 0x{function.bulk_in_endpoint:02x} ; maximum packet size = {function.bulk_in_endpoint_max_packet_size}")
        print(f"bulk-out endpoint .................. : 0x{function.bulk_out_endpoint:02x} ; maximum packet size = {function.bulk_out_endpoint_max_packet_size}")

        checks = {
            "line coding": check_line_coding,
            "output signals": check_signals
        }
        if loopback:
            checks["loopback"] = lambda port: check_loopback(port, b"The quick brown fox jumps over the lazy dog.\r\n", 2.0)

        results = {}
        for (name, check) in checks.items():
            # A refused request closes the port, so each check gets a freshly opened one.
            with port:
                results[name] = check(port)

        print()
        print("Summary")
        print("-------")
        print()

        for (name, result) in results.items():
            print(f"{name:.<35} : {result.name}")


def main():

    device_vid_pid_pattern = re.compile("([0-9a-fA-F]{4}):([0-9a-fA-F]{4})")

    parser = argparse.ArgumentParser(description="Check the CDC-ACM support of USB devices.")
    parser.add_argument("--loopback", action="store_true", help="do a loopback test (device must echo)")
    parser.add_argument("--verbose", action="store_true", help="show the requests as they are sent")
    parser.add_argument("devices", nargs="+", help="devices to check, as vid:pid (hexadecimal)")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s %(name)s %(levelname)s %(message)s")

    initialize_libusb_library_path_environment_variable()

    for device in args.devices:

        match = device_vid_pid_pattern.match(device)
        if match is None:
            print(f"Skipping bad device: {device!r}.")
            continue

        vid = int(match.group(1), 16)
        pid = int(match.group(2), 16)

        check_device(vid, pid, args.loopback)


if __name__ == "__main__":
    main()
