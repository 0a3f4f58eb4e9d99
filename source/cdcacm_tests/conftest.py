"""Shared pytest fixtures for the cdcacm unit tests."""

import pytest

from cdcacm.registry import find_cdc_acm_functions
from cdcacm.serial_port import PortState, SerialPort

from fake_usb import FAST_BEHAVIOR, FakeBackend, make_cdc_acm_device


@pytest.fixture
def device():
    return make_cdc_acm_device()


@pytest.fixture
def backend(device):
    return FakeBackend([device])


@pytest.fixture
def port(backend, device):
    (function, ) = find_cdc_acm_functions(device)
    port = SerialPort(backend, device, function, behavior=FAST_BEHAVIOR)
    yield port
    if port.state is PortState.OPEN:
        port.close()
