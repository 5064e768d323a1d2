import logging
import time

import pytest

from picoscope_control import DeviceRegistry, SimulatedDriver
from picoscope_control.models import Channel, Coupling


@pytest.fixture
def driver():
    return SimulatedDriver()


@pytest.fixture
def registry(driver):
    registry = DeviceRegistry(driver)
    yield registry
    registry.close_all()


@pytest.fixture
def device(registry):
    return registry.open()


@pytest.fixture
def channel_a(device):
    """Device with channel A enabled on the 2 V range."""
    device.channels.set_channel(Channel.A, True, Coupling.DC,
                                device.model.range_index_for_mv(2000))
    return device


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


def wait_until(predicate, timeout=5.0, interval=0.001):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval)
    return True
