import pytest

from picoscope_control import DeviceRegistry, PowerSource, SimulatedDriver
from picoscope_control import pico_status as ps
from picoscope_control.acquisition import CaptureState
from picoscope_control.driver import PicoDriver
from picoscope_control.models import Channel, Coupling


def test_open_reads_variant_and_serial(device):
    assert device.is_open
    assert device.variant == "5444D"
    assert device.serial == "SIM0001/001"
    assert device.max_adc == 32512
    assert device.model.channel_count == 4
    assert not device.needs_power_acknowledgement


def test_open_by_serial(registry):
    device = registry.open("SIM0001/001")
    assert registry.get(device.handle) is device
    assert registry.devices() == [device]


def test_open_unknown_serial(registry):
    with pytest.raises(ps.DeviceNotFoundError):
        registry.open("NOPE/000")


def test_open_same_serial_twice(registry):
    registry.open("SIM0001/001")
    with pytest.raises(ps.DeviceAlreadyOpenError):
        registry.open("SIM0001/001")


def test_unit_limit_reached(registry):
    registry.open()
    with pytest.raises(ps.DeviceAlreadyOpenError):
        registry.open()


def test_open_async(registry):
    device = registry.open_async(timeout=1.0)
    assert device.variant == "5444D"


def test_open_async_without_background_open(driver, registry, monkeypatch):
    monkeypatch.setattr(driver, "open_unit_async",
                        lambda serial, resolution: PicoDriver.open_unit_async(driver, serial, resolution))
    with pytest.raises(ps.UnsupportedFeatureError):
        registry.open_async(timeout=1.0)
    assert registry.devices() == []


def test_describe(device, registry):
    info = registry.describe(device.handle)
    assert info["variant"] == "5444D"
    assert info["serial"] == "SIM0001/001"
    assert set(info) >= {"driver", "usb", "hardware", "cal_date", "kernel",
                         "firmware1", "firmware2"}


def test_flash_led(driver, device):
    device.flash_led(3)
    assert driver.led_flashes == 3


def test_close(driver, registry):
    device = registry.open()
    handle = device.handle
    registry.close(handle)
    assert not device.is_open
    assert device.acquisition.state == CaptureState.CLOSED
    assert driver.handle == 0
    with pytest.raises(ps.DeviceLostError):
        registry.get(handle)
    with pytest.raises(ps.DeviceLostError):
        registry.close(handle)
    # the unit can be opened again
    registry.open()


def test_close_stops_streaming(driver, channel_a):
    channel_a.acquisition.run_streaming(1, auto_stop=False, buffer_capacity=1000)
    channel_a.close()
    assert len(channel_a.buffers) == 0
    assert driver.handle == 0


def test_closed_device_refuses_capture(channel_a):
    channel_a.close()
    with pytest.raises(ps.DeviceLostError):
        channel_a.acquisition.run_block(0, 100, 8)


def test_context_manager(registry, driver):
    with registry.open() as device:
        assert device.is_open
    assert not device.is_open
    assert driver.handle == 0


class TestPowerSource:
    @pytest.fixture
    def usb_driver(self):
        return SimulatedDriver(mains_connected=False)

    @pytest.fixture
    def usb_registry(self, usb_driver):
        registry = DeviceRegistry(usb_driver)
        yield registry
        registry.close_all()

    def test_usb_only_then_mains(self, usb_driver, usb_registry):
        device = usb_registry.open()
        assert device.needs_power_acknowledgement
        assert device.pending_power_status == ps.PICO_POWER_SUPPLY_NOT_CONNECTED

        # nothing can be configured until the power source is acknowledged
        with pytest.raises(ps.PowerSupplyNotConnectedError):
            device.channels.set_channel(Channel.A, True, Coupling.DC, 7)

        device.acknowledge_power_source(PowerSource.USB_ONLY)
        assert not device.needs_power_acknowledgement
        assert device.channels.channel_quota() == 2
        device.channels.set_channel(Channel.A, True, Coupling.DC, 7)
        device.channels.set_channel(Channel.B, True, Coupling.DC, 7)
        with pytest.raises(ps.ChannelUnavailableError):
            device.channels.set_channel(Channel.C, True, Coupling.DC, 7)

        with pytest.raises(ps.PowerSupplyNotConnectedError):
            device.acknowledge_power_source(PowerSource.MAINS)

        usb_driver.connect_mains()
        device.acknowledge_power_source(PowerSource.MAINS)
        assert device.channels.channel_quota() == 4
        device.channels.set_channel(Channel.C, True, Coupling.DC, 7)
        device.channels.set_channel(Channel.D, True, Coupling.DC, 7)
        assert device.channels.enabled_channels() == [0, 1, 2, 3]

    def test_usb_only_drops_channels_above_limit(self, usb_driver, usb_registry):
        device = usb_registry.open()
        usb_driver.connect_mains()
        device.acknowledge_power_source(PowerSource.MAINS)
        for channel in (Channel.A, Channel.C, Channel.D):
            device.channels.set_channel(channel, True, Coupling.DC, 7)

        device.acknowledge_power_source(PowerSource.USB_ONLY)
        assert device.channels.enabled_channels() == [Channel.A]
        assert device.power_source == PowerSource.USB_ONLY

    def test_usb3_unit_on_usb2_port(self):
        registry = DeviceRegistry(SimulatedDriver(usb2_port=True))
        try:
            device = registry.open()
            assert device.pending_power_status == ps.PICO_USB3_0_DEVICE_NON_USB3_0_PORT
            device.acknowledge_power_source(PowerSource.USB3_ON_USB2_PORT)
            assert device.channels.channel_quota() == 4
            device.channels.set_channel(Channel.A, True, Coupling.DC, 7)
        finally:
            registry.close_all()
