"""The cdcacm package provides a cross-platform user-space driver for USB CDC-ACM serial ports.

This package implements the serial-port emulation part of the CDC-ACM subclass, as described in [1] and [2]:
the line coding and control line state requests on the control interface, and byte streams over the bulk
endpoints of the data interface.

The API presented does not support protocol features that are not very useful in most use-cases. Specifically:

* The interrupt-IN notification endpoint (SERIAL_STATE: DCD, DSR, RI, ...) is not used, so input signals
  cannot be read.
* Flow control is not implemented; CDC-ACM has no request to configure it on the device.
* Telephony-related requests of the PSTN subclass (ringer, operation parameters, ...) are not supported.

[1] Universal Serial Bus Class Definitions for Communications Devices, Revision 1.2, November 3, 2010
[2] Universal Serial Bus Communications Class Subclass Specification for PSTN Devices, Revision 1.2, February 9, 2007

The functionality of this package is implemented in the SerialPort and PortRegistry classes, which we import
here, together with the option and error types, to make them available for import directly from the cdcacm package.
"""

from .behavior import SerialPortBehavior, UsbInterfaceSelection, DEFAULT_BEHAVIOR
from .control_channel import OutputSignals
from .errors import (SerialError, InvalidOption, MalformedResponse, DeviceError, DeviceDisconnected, AlreadyOpen,
                     NotOpen, PortNotFound)
from .line_coding import SerialOptions, LineCoding, ParityType, CharFormat
from .registry import PortRegistry, SerialPortFilter, PortEvent
from .serial_port import SerialPort, SerialPortInfo, PortState
from .libusb_transport import LibUsbBackend
