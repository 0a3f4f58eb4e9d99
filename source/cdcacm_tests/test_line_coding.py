"""Tests for the serial options validation and the line coding codec."""

import pytest

from cdcacm.behavior import SerialPortBehavior
from cdcacm.errors import InvalidOption, MalformedResponse
from cdcacm.line_coding import (CharFormat, LineCoding, ParityType, SerialOptions, decode, encode,
                                line_coding_from_options, options_from_line_coding, pack_line_coding,
                                unpack_line_coding, validate)


def test_encode_9600_8n1():
    """9600 baud, 8 data bits, no parity, 1 stop bit."""
    options = validate(SerialOptions(baud_rate=9600))
    assert encode(options) == bytes([0x80, 0x25, 0x00, 0x00, 0x00, 0x00, 0x08])


def test_encode_115200_7e2():
    behavior = SerialPortBehavior(accepted_data_bits=frozenset({7, 8}))
    options = validate(SerialOptions(baud_rate=115200, data_bits=7, stop_bits=2, parity="even"), behavior)
    assert encode(options) == bytes([0x00, 0xc2, 0x01, 0x00, 0x02, 0x02, 0x07])


def test_defaults():
    options = validate(SerialOptions())
    assert options.baud_rate == 115200
    assert options.data_bits == 8
    assert options.stop_bits == 1
    assert options.parity is ParityType.NONE
    assert options.buffer_size == 255


@pytest.mark.parametrize("parity, expected", [
    ("none", ParityType.NONE),
    ("odd", ParityType.ODD),
    ("EVEN", ParityType.EVEN),
    ("mark", ParityType.MARK),
    (ParityType.SPACE, ParityType.SPACE),
])
def test_parity_normalized(parity, expected):
    assert validate(SerialOptions(parity=parity)).parity is expected


@pytest.mark.parametrize("options, field", [
    (SerialOptions(baud_rate=0), "baud_rate"),
    (SerialOptions(baud_rate=-9600), "baud_rate"),
    (SerialOptions(baud_rate=20_000_000), "baud_rate"),
    (SerialOptions(baud_rate=9600.5), "baud_rate"),
    (SerialOptions(baud_rate=True), "baud_rate"),
    (SerialOptions(data_bits=9), "data_bits"),
    (SerialOptions(data_bits=7), "data_bits"),
    (SerialOptions(stop_bits=3), "stop_bits"),
    (SerialOptions(stop_bits=1.5), "stop_bits"),
    (SerialOptions(parity="bogus"), "parity"),
    (SerialOptions(parity=2), "parity"),
    (SerialOptions(buffer_size=0), "buffer_size"),
    (SerialOptions(buffer_size=-1), "buffer_size"),
])
def test_validate_names_offending_field(options, field):
    with pytest.raises(InvalidOption) as exception_info:
        validate(options)
    assert exception_info.value.field == field
    assert field in str(exception_info.value)


def test_first_invalid_field_is_reported():
    with pytest.raises(InvalidOption) as exception_info:
        validate(SerialOptions(baud_rate=0, data_bits=9, buffer_size=0))
    assert exception_info.value.field == "baud_rate"


def test_behavior_widens_accepted_values():
    behavior = SerialPortBehavior(accepted_data_bits=frozenset({5, 6, 7, 8, 16}), allow_one_and_half_stop_bits=True,
                                  max_baud_rate=0xffffffff)
    options = validate(SerialOptions(baud_rate=0xffffffff, data_bits=16, stop_bits=1.5), behavior)
    assert line_coding_from_options(options) == LineCoding(0xffffffff, CharFormat.ONE_AND_HALF_STOP_BITS,
                                                            ParityType.NONE, 16)


def test_data_bits_outside_wire_set_stay_invalid():
    behavior = SerialPortBehavior(accepted_data_bits=frozenset({8, 9}))
    with pytest.raises(InvalidOption) as exception_info:
        validate(SerialOptions(data_bits=9), behavior)
    assert exception_info.value.field == "data_bits"


def test_decode_restores_options():
    data = bytes([0x00, 0xc2, 0x01, 0x00, 0x00, 0x01, 0x08])
    options = decode(data, SerialOptions(buffer_size=64))
    assert options.baud_rate == 115200
    assert options.stop_bits == 1
    assert options.parity is ParityType.ODD
    assert options.data_bits == 8
    assert options.buffer_size == 64


def test_unpack_of_packed_structure():
    line_coding = LineCoding(57600, CharFormat.TWO_STOP_BITS, ParityType.MARK, 7)
    assert unpack_line_coding(pack_line_coding(line_coding)) == line_coding


def test_options_from_line_coding_keeps_base_fields():
    base = SerialOptions(buffer_size=32, rtscts=True)
    options = options_from_line_coding(LineCoding(300, CharFormat.ONE_STOP_BIT, ParityType.NONE, 8), base)
    assert options == SerialOptions(baud_rate=300, buffer_size=32, rtscts=True)


@pytest.mark.parametrize("data", [
    b"",
    bytes(6),
    bytes(8),
    bytes([0x80, 0x25, 0x00, 0x00, 0x03, 0x00, 0x08]),  # bCharFormat 3
    bytes([0x80, 0x25, 0x00, 0x00, 0x00, 0x05, 0x08]),  # bParityType 5
    bytes([0x80, 0x25, 0x00, 0x00, 0x00, 0x00, 0x09]),  # bDataBits 9
])
def test_unpack_rejects_malformed_data(data):
    with pytest.raises(MalformedResponse):
        unpack_line_coding(data)


WIDE_BEHAVIOR = SerialPortBehavior(accepted_data_bits=frozenset({5, 6, 7, 8, 16}), allow_one_and_half_stop_bits=True)


@pytest.mark.parametrize("baud_rate", [1, 300, 9600, 115200, 16_000_000])
@pytest.mark.parametrize("stop_bits", [1, 1.5, 2])
@pytest.mark.parametrize("parity", ["none", "odd", "even", "mark", "space", *ParityType])
@pytest.mark.parametrize("data_bits", [5, 6, 7, 8, 16])
def test_decode_of_encoded_options(baud_rate, stop_bits, parity, data_bits):
    """Every accepted combination survives the trip through the wire format."""
    options = validate(SerialOptions(baud_rate=baud_rate, data_bits=data_bits, stop_bits=stop_bits, parity=parity),
                       WIDE_BEHAVIOR)
    assert decode(encode(options)) == options
