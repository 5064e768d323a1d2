import pytest

from picoscope_control import pico_status as ps
from picoscope_control.acquisition import CaptureState
from picoscope_control.models import Channel, Coupling, Resolution
from picoscope_control.simulated_driver import SimulatedDriver


def test_defaults(device):
    settings = device.channels.settings()
    assert len(settings) == 4
    assert not any(setting.enabled for setting in settings)
    assert device.channels.enabled_channels() == []
    assert device.acquisition.state == CaptureState.OPEN


def test_enable_moves_to_channels_set(channel_a):
    store = channel_a.channels
    assert store.enabled_channels() == [Channel.A]
    assert store.channel_flags() == 0b1
    assert store.range_mv(Channel.A) == 2000
    assert channel_a.acquisition.state == CaptureState.CHANNELS_SET


def test_disable_keeps_range(channel_a):
    setting = channel_a.channels.set_channel_off(Channel.A)
    assert not setting.enabled
    assert setting.range_index == 7
    assert channel_a.channels.enabled_channels() == []


def test_range_out_of_bounds(device):
    with pytest.raises(ps.RangeOutOfBoundsError):
        device.channels.set_channel(Channel.A, True, Coupling.DC, 11)
    assert not device.channels.setting(Channel.A).enabled


def test_unsupported_coupling(device):
    with pytest.raises(ps.InvalidCouplingError):
        device.channels.set_channel(Channel.A, True, Coupling.DC_50R, 7)


def test_unknown_channel(device):
    with pytest.raises(ps.ChannelUnavailableError):
        device.channels.set_channel(5, True, Coupling.DC, 7)


def test_no_differential_inputs(device):
    with pytest.raises(ps.ChannelUnavailableError):
        device.channels.set_channel(Channel.A, True, Coupling.DC, 7, single_ended=False)


def test_quota_at_fifteen_bits(device):
    store = device.channels
    store.set_channel(Channel.A, True, Coupling.DC, 7)
    store.set_channel(Channel.B, True, Coupling.DC, 7)
    device.set_resolution(Resolution.BIT_15)
    assert store.channel_quota() == 2
    assert device.max_adc == 32767
    with pytest.raises(ps.ResolutionIncompatibleError):
        store.set_channel(Channel.C, True, Coupling.DC, 7)


def test_resolution_change_refused_when_over_quota(device):
    for channel in (Channel.A, Channel.B, Channel.C):
        device.channels.set_channel(channel, True, Coupling.DC, 7)
    with pytest.raises(ps.ResolutionIncompatibleError):
        device.set_resolution(Resolution.BIT_15)
    assert device.resolution == Resolution.BIT_8


def test_unsupported_resolution(device):
    with pytest.raises(ps.ResolutionIncompatibleError):
        device.set_resolution(Resolution.BIT_10)


def test_channel_change_refused_while_streaming(channel_a):
    channel_a.acquisition.run_streaming(1, auto_stop=False, buffer_capacity=1000)
    try:
        with pytest.raises(ps.DeviceBusyError):
            channel_a.channels.set_channel(Channel.B, True, Coupling.DC, 7)
        with pytest.raises(ps.DeviceBusyError):
            channel_a.channels.set_channel_off(Channel.A)
    finally:
        channel_a.acquisition.stop()
        channel_a.acquisition.release_buffers()
    channel_a.channels.set_channel(Channel.B, True, Coupling.DC, 7)


def test_digital_ports_need_mso(device):
    with pytest.raises(ps.UnsupportedFeatureError):
        device.channels.set_digital_port(0, True, 1000)


def test_digital_port_on_mso():
    from picoscope_control import DeviceRegistry
    registry = DeviceRegistry(SimulatedDriver(variant="5444D MSO"))
    device = registry.open()
    try:
        setting = device.channels.set_digital_port(1, True, 8000)
        assert setting.enabled
        assert device.channels.digital_ports() == [setting]
        with pytest.raises(ps.InvalidConfigurationError):
            device.channels.set_digital_port(2, True, 0)
        with pytest.raises(ps.InvalidConfigurationError):
            device.channels.set_digital_port(0, True, 40000)
    finally:
        registry.close_all()


class TestDifferentialPairs:
    @pytest.fixture
    def logger_device(self):
        from picoscope_control import DeviceRegistry
        registry = DeviceRegistry(SimulatedDriver(variant="ADC-20", serial="ADC0001/001"))
        device = registry.open(resolution=Resolution.BIT_20)
        yield device
        registry.close_all()

    def test_primary_differential_blocks_secondary(self, logger_device):
        store = logger_device.channels
        store.set_channel(0, True, Coupling.DC, 6, single_ended=False)
        with pytest.raises(ps.ChannelUnavailableError):
            store.set_channel(1, True, Coupling.DC, 6)
        store.set_channel(2, True, Coupling.DC, 6)

    def test_secondary_cannot_be_differential(self, logger_device):
        with pytest.raises(ps.ChannelUnavailableError):
            logger_device.channels.set_channel(1, True, Coupling.DC, 6, single_ended=False)

    def test_primary_cannot_go_differential_with_secondary_in_use(self, logger_device):
        store = logger_device.channels
        store.set_channel(3, True, Coupling.DC, 6)
        with pytest.raises(ps.ChannelUnavailableError):
            store.set_channel(2, True, Coupling.DC, 6, single_ended=False)

    def test_logger_samples_are_int32(self, logger_device):
        assert logger_device.buffers.allocate(0, 10).driver_max.dtype.name == "int32"
