"""Serial port behaviors: timeouts, validation policy, and signal handling.

The CDC-ACM specification leaves a lot to the device. Many devices only implement 8-bit characters, some
reset when DTR is asserted, and some never answer GET_LINE_CODING. The SerialPortBehavior defined here
collects the knobs that let an application deal with that; the defaults suit a typical microcontroller
CDC-ACM implementation.

All times are in milliseconds.
"""

from typing import NamedTuple, Optional

CDC_CONTROL_INTERFACE_CLASS = 0x02  # Communications Interface Class.
CDC_DATA_INTERFACE_CLASS = 0x0a     # Data Interface Class.

# dwDTERate is a 32-bit field.
MAX_WIRE_BAUD_RATE = 0xffffffff


class UsbInterfaceSelection(NamedTuple):
    """Which interfaces make up a serial port.

    Some devices implement the CDC-ACM requests on vendor-specific interfaces; for those, set the class codes
    to the ones the device uses. When both class codes are equal, a single interface with bulk endpoints may
    carry both roles.
    """
    control_interface_class: int = CDC_CONTROL_INTERFACE_CLASS
    data_interface_class: int = CDC_DATA_INTERFACE_CLASS


class SerialPortBehavior(NamedTuple):
    """Serial port behaviors."""
    # Transfer timing.
    control_timeout: int = 500            # Timeout of a single control request.
    poll_interval: int = 100              # Bulk transfers are issued in slices of this length; cancellation granularity.
    write_timeout: Optional[int] = None   # Give up on a bulk-out chunk after this long. None: wait until cancelled.
    cancel_timeout: int = 2000            # Upper bound on waiting for in-flight transfers when a session ends.
    # Validation policy.
    min_baud_rate: int = 1
    max_baud_rate: int = 16_000_000
    accepted_data_bits: frozenset[int] = frozenset({8})
    allow_one_and_half_stop_bits: bool = False
    # Signals.
    initial_dtr: bool = True
    initial_rts: bool = False
    deassert_signals_on_close: bool = True
    # Verification and recovery.
    verify_line_coding: bool = False      # Read the line coding back after each SET_LINE_CODING.
    clear_halt_on_stall: bool = True      # Clear a stalled bulk endpoint before reporting the failure.


DEFAULT_BEHAVIOR = SerialPortBehavior()
