"""Serial options and the CDC-ACM line coding structure.

The line coding structure is described in section 6.3.11 of the PSTN subclass specification [1]:

    offset  field        size  description
    ------  -----------  ----  --------------------------------------------------
       0    dwDTERate      4   Data terminal rate, in bits per second.
       4    bCharFormat    1   Stop bits: 0 = 1 stop bit, 1 = 1.5 stop bits, 2 = 2 stop bits.
       5    bParityType    1   Parity: 0 = none, 1 = odd, 2 = even, 3 = mark, 4 = space.
       6    bDataBits      1   Data bits: 5, 6, 7, 8, or 16.

All multi-byte fields are little-endian.

[1] Universal Serial Bus Communications Class Subclass Specification for PSTN Devices, Revision 1.2, February 9, 2007
"""

import struct
from typing import NamedTuple, Optional, Union

from .behavior import SerialPortBehavior, DEFAULT_BEHAVIOR, MAX_WIRE_BAUD_RATE
from .better_int_enum import BetterIntEnum
from .errors import InvalidOption, MalformedResponse

LINE_CODING_FORMAT = "<LBBB"
LINE_CODING_SIZE = struct.calcsize(LINE_CODING_FORMAT)  # 7

WIRE_DATA_BITS = (5, 6, 7, 8, 16)


class CharFormat(BetterIntEnum):
    """Values of the bCharFormat field."""
    ONE_STOP_BIT           = 0
    ONE_AND_HALF_STOP_BITS = 1
    TWO_STOP_BITS          = 2


class ParityType(BetterIntEnum):
    """Values of the bParityType field."""
    NONE  = 0
    ODD   = 1
    EVEN  = 2
    MARK  = 3
    SPACE = 4


_STOP_BITS_TO_CHAR_FORMAT = {
    1: CharFormat.ONE_STOP_BIT,
    1.5: CharFormat.ONE_AND_HALF_STOP_BITS,
    2: CharFormat.TWO_STOP_BITS
}

_CHAR_FORMAT_TO_STOP_BITS = {char_format: stop_bits for (stop_bits, char_format) in _STOP_BITS_TO_CHAR_FORMAT.items()}


class SerialOptions(NamedTuple):
    """Serial port settings.

    The flow control flags are accepted for compatibility with serial APIs, but CDC-ACM has no way to
    transmit them to the device; they are ignored.
    """
    baud_rate: int = 115200
    data_bits: int = 8
    stop_bits: Union[int, float] = 1
    parity: Union[ParityType, str] = ParityType.NONE
    buffer_size: int = 255  # Size of a single bulk transfer, in bytes.
    rtscts: bool = False
    xon: bool = False
    xoff: bool = False
    xany: bool = False


class LineCoding(NamedTuple):
    """The line coding structure, as exchanged with the device."""
    dte_rate: int
    char_format: CharFormat
    parity_type: ParityType
    data_bits: int


def _is_integer(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _parse_parity(parity) -> Optional[ParityType]:
    if isinstance(parity, ParityType):
        return parity
    if isinstance(parity, str):
        try:
            return ParityType[parity.upper()]
        except KeyError:
            return None
    return None


def validate(options: SerialOptions, behavior: SerialPortBehavior = DEFAULT_BEHAVIOR) -> SerialOptions:
    """Check all serial options; return the options with the parity normalized to a ParityType.

    Raises InvalidOption naming the first field (in declaration order) that has an unusable value.
    """

    baud_rate_ok = (_is_integer(options.baud_rate) and
                    max(behavior.min_baud_rate, 1) <= options.baud_rate <= min(behavior.max_baud_rate, MAX_WIRE_BAUD_RATE))
    if not baud_rate_ok:
        raise InvalidOption("baud_rate", options.baud_rate)

    data_bits_ok = _is_integer(options.data_bits) and options.data_bits in behavior.accepted_data_bits and options.data_bits in WIRE_DATA_BITS
    if not data_bits_ok:
        raise InvalidOption("data_bits", options.data_bits)

    stop_bits_ok = (not isinstance(options.stop_bits, bool)) and (options.stop_bits in (1, 2) or
                   (options.stop_bits == 1.5 and behavior.allow_one_and_half_stop_bits))
    if not stop_bits_ok:
        raise InvalidOption("stop_bits", options.stop_bits)

    parity = _parse_parity(options.parity)
    if parity is None:
        raise InvalidOption("parity", options.parity)

    buffer_size_ok = _is_integer(options.buffer_size) and options.buffer_size > 0
    if not buffer_size_ok:
        raise InvalidOption("buffer_size", options.buffer_size)

    return options._replace(parity=parity)


def line_coding_from_options(options: SerialOptions) -> LineCoding:
    """Make the line coding structure for already validated options."""
    return LineCoding(
        dte_rate    = options.baud_rate,
        char_format = _STOP_BITS_TO_CHAR_FORMAT[options.stop_bits],
        parity_type = _parse_parity(options.parity),
        data_bits   = options.data_bits
    )


def pack_line_coding(line_coding: LineCoding) -> bytes:
    """Serialize a line coding structure to its 7-byte wire representation."""
    return struct.pack(LINE_CODING_FORMAT, line_coding.dte_rate, line_coding.char_format,
                       line_coding.parity_type, line_coding.data_bits)


def unpack_line_coding(data: bytes) -> LineCoding:
    """Parse the 7-byte wire representation of a line coding structure, as received from a device."""

    if len(data) != LINE_CODING_SIZE:
        raise MalformedResponse(f"Line coding must be {LINE_CODING_SIZE} bytes, got {len(data)}.")

    (dte_rate, char_format, parity_type, data_bits) = struct.unpack(LINE_CODING_FORMAT, data)

    try:
        char_format = CharFormat.from_octet(char_format)
        parity_type = ParityType.from_octet(parity_type)
    except ValueError as exception:
        raise MalformedResponse(str(exception)) from None

    if data_bits not in WIRE_DATA_BITS:
        raise MalformedResponse(f"Bad bDataBits value: {data_bits}.")

    return LineCoding(dte_rate, char_format, parity_type, data_bits)


def encode(options: SerialOptions) -> bytes:
    """Encode already validated serial options as a line coding structure."""
    return pack_line_coding(line_coding_from_options(options))


def options_from_line_coding(line_coding: LineCoding, base: Optional[SerialOptions] = None) -> SerialOptions:
    """Apply the fields of a line coding structure to serial options.

    Settings that are not part of the line coding (buffer size, flow control flags) are taken from `base`.
    """
    if base is None:
        base = SerialOptions()

    return base._replace(
        baud_rate = line_coding.dte_rate,
        data_bits = line_coding.data_bits,
        stop_bits = _CHAR_FORMAT_TO_STOP_BITS[line_coding.char_format],
        parity    = line_coding.parity_type
    )


def decode(data: bytes, base: Optional[SerialOptions] = None) -> SerialOptions:
    """Decode a line coding structure received from a device into serial options."""
    return options_from_line_coding(unpack_line_coding(data), base)
