import numpy as np
import pytest

from picoscope_control import pico_status as ps
from picoscope_control import DeviceRegistry
from picoscope_control.acquisition import AcquisitionMode, CaptureState
from picoscope_control.drain import EventCancellation
from picoscope_control.driver import EtsMode, RatioMode, TimeUnits
from picoscope_control.models import Channel, Coupling, Resolution
from picoscope_control.simulated_driver import SimulatedDriver, grounded, pulse_train, step
from picoscope_control.trigger import (PulseWidthQualifier, ThresholdDirection, TriggerState,
                                       simple_edge_trigger)

from .conftest import wait_until


class TestTimebase:
    def test_search_starts_at_preferred(self, channel_a):
        selection = channel_a.acquisition.select_timebase(7, 1000)
        assert selection.timebase == 7
        assert selection.interval_ns == 40.0
        assert selection.max_samples >= 1000
        assert channel_a.acquisition.settings.timebase == 7

    def test_skips_timebases_too_fast_for_channel_count(self, channel_a):
        channel_a.channels.set_channel(Channel.B, True, Coupling.DC, 7)
        selection = channel_a.acquisition.select_timebase(0, 1000)
        assert selection.timebase == 1
        assert selection.interval_ns == 2.0

    def test_no_valid_timebase(self, channel_a):
        for channel in (Channel.B, Channel.C):
            channel_a.channels.set_channel(channel, True, Coupling.DC, 7)
        with pytest.raises(ps.TimebaseInvalidError):
            channel_a.acquisition.select_timebase(0, 1000, max_timebase=1)

    def test_sample_count_beyond_memory(self, driver, channel_a, monkeypatch):
        calls = []
        monkeypatch.setattr(driver, "get_timebase", lambda *args: calls.append(args))
        with pytest.raises(ps.InvalidConfigurationError) as info:
            channel_a.acquisition.select_timebase(0, 10 ** 12)
        assert info.value.status == ps.PICO_TOO_MANY_SAMPLES
        assert calls == []

    def test_retries_past_other_failures(self, driver, channel_a, monkeypatch):
        real = driver.get_timebase
        tried = []

        def get_timebase(handle, timebase, n_samples, segment):
            tried.append(timebase)
            if timebase < 9:
                return ps.PICO_TOO_MANY_SAMPLES, 0.0, 0
            return real(handle, timebase, n_samples, segment)

        monkeypatch.setattr(driver, "get_timebase", get_timebase)
        selection = channel_a.acquisition.select_timebase(7, 1000)
        assert selection.timebase == 9
        assert tried == [7, 8, 9]

    def test_unsatisfiable_count_exhausts_search(self, driver, channel_a, monkeypatch):
        tried = []

        def get_timebase(handle, timebase, n_samples, segment):
            tried.append(timebase)
            return ps.PICO_TOO_MANY_SAMPLES, 0.0, 0

        monkeypatch.setattr(driver, "get_timebase", get_timebase)
        with pytest.raises(ps.TimebaseInvalidError):
            channel_a.acquisition.select_timebase(0, 1000, max_timebase=20)
        assert tried == list(range(21))

    def test_invalid_channel_combination_surfaces(self, driver, device):
        for channel in (Channel.A, Channel.B, Channel.C):
            device.channels.set_channel(channel, True, Coupling.DC, 7)
        driver.force_resolution(Resolution.BIT_16)
        with pytest.raises(ps.TooManyChannelsForResolutionError):
            device.acquisition.select_timebase(0, 1000)

    def test_requires_enabled_channel(self, device):
        with pytest.raises(ps.ChannelUnavailableError):
            device.acquisition.select_timebase(0, 1000)

    def test_minimum_timebase(self, channel_a):
        timebase, interval_s = channel_a.acquisition.minimum_timebase()
        assert timebase == 0
        assert interval_s == pytest.approx(1e-9)


class TestBlock:
    def test_single_channel_block(self, driver, channel_a):
        driver.signals[Channel.A] = grounded()
        acquisition = channel_a.acquisition
        selection = acquisition.select_timebase(7, 1000)
        acquisition.run_block(0, 1000, selection.timebase)
        assert acquisition.state == CaptureState.ARMED
        assert acquisition.settings.mode == AcquisitionMode.BLOCK

        assert acquisition.wait_ready(timeout=5)
        assert acquisition.state == CaptureState.STOPPED
        segment = acquisition.collect_block()

        assert segment.n_samples == 1000
        assert len(segment.samples[Channel.A]) == 1000
        assert not segment.samples[Channel.A].any()
        assert segment.trigger_index is None
        assert len(channel_a.buffers) == 0

    def test_block_samples_match_signal(self, driver, channel_a):
        acquisition = channel_a.acquisition
        acquisition.select_timebase(8, 2000)
        acquisition.run_block(500, 1500)
        assert wait_until(acquisition.ready)
        segment = acquisition.collect_block()
        expected = driver.samples_for(Channel.A, 0, 2000)
        np.testing.assert_array_equal(segment.samples[Channel.A], expected)

    def test_aggregated_block(self, channel_a):
        acquisition = channel_a.acquisition
        acquisition.select_timebase(8, 2000)
        acquisition.run_block(0, 2000)
        assert acquisition.wait_ready(timeout=5)
        segment = acquisition.collect_block(ratio=10, ratio_mode=RatioMode.AGGREGATE)
        assert segment.n_samples == 200
        high = segment.samples[Channel.A]
        low = segment.min_samples[Channel.A]
        assert len(low) == 200
        assert np.all(high >= low)

    def test_edge_trigger_position(self, driver, channel_a):
        driver.signals[Channel.A] = step(5000, 0.0, 1500.0)
        acquisition = channel_a.acquisition
        spec = simple_edge_trigger(Channel.A, 1000, 2000, channel_a.max_adc)
        acquisition.set_trigger(spec)
        acquisition.select_timebase(8, 2000)
        acquisition.run_block(1000, 1000)
        assert acquisition.wait_ready(timeout=5)
        segment = acquisition.collect_block()
        data = segment.samples[Channel.A]
        assert segment.trigger_index == 1000
        assert data[999] == 0
        assert data[1000] > 0

    def test_simple_trigger_threshold_in_counts(self, channel_a):
        threshold = channel_a.acquisition.set_simple_trigger(Channel.A, 1000)
        assert threshold == 16256
        # levels beyond the range are pulled back to half scale
        assert channel_a.acquisition.set_simple_trigger(Channel.A, 5000) == 16256

    def test_trigger_source_must_be_enabled(self, channel_a):
        with pytest.raises(ps.TriggerConfigurationError):
            channel_a.acquisition.set_simple_trigger(Channel.B, 100)
        spec = simple_edge_trigger(Channel.C, 100, 2000, channel_a.max_adc)
        with pytest.raises(ps.TriggerConfigurationError):
            channel_a.acquisition.set_trigger(spec)

    def test_pulse_width_qualifier_is_programmed(self, driver, channel_a):
        spec = simple_edge_trigger(Channel.A, 100, 2000, channel_a.max_adc)
        spec.pulse_width = PulseWidthQualifier([{Channel.A: TriggerState.TRUE}],
                                               ThresholdDirection.RISING, lower=50)
        channel_a.acquisition.set_trigger(spec)
        assert driver.pulse_width_qualifier is spec.pulse_width
        spec.pulse_width = None
        channel_a.acquisition.set_trigger(spec)
        assert driver.pulse_width_qualifier is None

    def test_auto_trigger_fires_without_event(self, driver, channel_a):
        driver.signals[Channel.A] = grounded()
        acquisition = channel_a.acquisition
        acquisition.set_simple_trigger(Channel.A, 500, auto_trigger_ms=10)
        acquisition.select_timebase(8, 1000)
        acquisition.run_block(100, 900)
        assert acquisition.wait_ready(timeout=5)
        assert acquisition.collect_block().n_samples == 1000

    def test_stop_while_armed(self, driver, channel_a):
        driver.signals[Channel.A] = grounded()
        acquisition = channel_a.acquisition
        acquisition.set_simple_trigger(Channel.A, 500)
        acquisition.select_timebase(8, 1000)
        acquisition.run_block(0, 1000)

        with pytest.raises(ps.DeviceBusyError):
            channel_a.channels.set_channel(Channel.B, True, Coupling.DC, 7)
        with pytest.raises(ps.DeviceBusyError):
            acquisition.run_block(0, 1000)
        assert not acquisition.wait_ready(timeout=0.05)

        acquisition.stop()
        assert acquisition.state == CaptureState.STOPPED
        assert not acquisition.ready()
        assert not channel_a.buffers.pinned

    def test_wait_ready_cancelled(self, driver, channel_a):
        driver.signals[Channel.A] = grounded()
        acquisition = channel_a.acquisition
        acquisition.set_simple_trigger(Channel.A, 500)
        acquisition.select_timebase(8, 1000)
        acquisition.run_block(0, 1000)
        cancel = EventCancellation()
        cancel.cancel()
        assert not acquisition.wait_ready(cancel=cancel)
        assert acquisition.state == CaptureState.STOPPED

    def test_run_block_needs_timebase(self, channel_a):
        with pytest.raises(ps.TimebaseInvalidError):
            channel_a.acquisition.run_block(0, 1000)

    def test_run_block_needs_channels(self, device):
        with pytest.raises(ps.ChannelUnavailableError):
            device.acquisition.run_block(0, 1000, timebase=8)


class TestEts:
    def test_ets_time_buffer(self, channel_a):
        acquisition = channel_a.acquisition
        assert acquisition.set_ets(EtsMode.FAST, 20, 4) == 200
        acquisition.select_timebase(8, 500)
        acquisition.run_block(0, 500)
        assert acquisition.settings.mode == AcquisitionMode.ETS
        assert acquisition.wait_ready(timeout=5)
        segment = acquisition.collect_block()
        assert len(segment.times_fs) == 500
        assert np.all(np.diff(segment.times_fs) == 200_000)
        assert acquisition.set_ets(EtsMode.OFF) == 0

    def test_ets_unsupported(self):
        registry = DeviceRegistry(SimulatedDriver(variant="4824", serial="SIM4824/001"))
        device = registry.open(resolution=Resolution.BIT_12)
        try:
            with pytest.raises(ps.UnsupportedFeatureError):
                device.acquisition.set_ets(EtsMode.FAST)
        finally:
            registry.close_all()


class TestRapidBlock:
    def test_ten_captures(self, driver, channel_a):
        driver.signals[Channel.A] = pulse_train(50000, 10000, 0.0, 1500.0)
        acquisition = channel_a.acquisition
        per_segment = acquisition.setup_rapid_block(10)
        assert per_segment == driver.model.memory_samples // 10
        acquisition.set_simple_trigger(Channel.A, 1000)
        selection = acquisition.select_timebase(8, 20000)
        acquisition.run_rapid_block(1000, 19000, selection.timebase)
        assert acquisition.wait_ready(timeout=10)

        result = acquisition.collect_rapid_block()
        assert result.captures_requested == 10
        assert result.captures_completed == 10
        timestamps = [segment.timestamp for segment in result.segments]
        assert timestamps == sorted(timestamps)
        assert len(set(timestamps)) == 10
        for number, segment in enumerate(result.segments):
            data = segment.samples[Channel.A]
            assert segment.segment == number
            assert len(data) == 20000
            assert segment.trigger_index == 1000
            assert data[999] == 0
            assert data[1000] > 0
        assert len(channel_a.buffers) == 0

    def test_partial_capture_returns_completed_segments(self, driver, channel_a):
        driver.signals[Channel.A] = step(50000, 0.0, 1500.0)
        acquisition = channel_a.acquisition
        acquisition.setup_rapid_block(3)
        acquisition.set_simple_trigger(Channel.A, 1000)
        acquisition.select_timebase(8, 2000)
        acquisition.run_rapid_block(0, 2000)
        assert not acquisition.wait_ready(timeout=0.2)
        acquisition.stop()

        result = acquisition.collect_rapid_block()
        assert result.captures_requested == 3
        assert result.captures_completed == 1
        assert result.segments[0].timestamp == 50000

    def test_requires_setup(self, channel_a):
        with pytest.raises(ps.InvalidConfigurationError):
            channel_a.acquisition.run_rapid_block(0, 1000, 8)

    def test_more_captures_than_segments(self, channel_a):
        with pytest.raises(ps.InvalidConfigurationError):
            channel_a.acquisition.setup_rapid_block(5, segments=2)


class TestStreamingControl:
    def test_adjusted_interval_is_reported(self, channel_a):
        channel_a.channels.set_channel(Channel.B, True, Coupling.DC, 7)
        acquisition = channel_a.acquisition
        acquisition.run_streaming(1, TimeUnits.NS, auto_stop=False, buffer_capacity=1000)
        try:
            assert acquisition.settings.sample_interval == 16
            assert acquisition.state == CaptureState.STREAMING
            assert channel_a.buffers.pinned
        finally:
            acquisition.stop()
            acquisition.release_buffers()

    def test_failed_start_releases_buffers(self, driver, channel_a):
        acquisition = channel_a.acquisition
        with pytest.raises(ps.InvalidConfigurationError):
            acquisition.run_streaming(1, ratio=4, ratio_mode=RatioMode.NONE)
        assert len(channel_a.buffers) == 0
        assert acquisition.state == CaptureState.CHANNELS_SET

    def test_release_refused_while_streaming(self, channel_a):
        acquisition = channel_a.acquisition
        acquisition.run_streaming(1, auto_stop=False, buffer_capacity=1000)
        try:
            with pytest.raises(ps.DeviceBusyError):
                acquisition.release_buffers()
        finally:
            acquisition.stop()
            acquisition.release_buffers()

    def test_windowed_capture_keeps_latest(self, driver, channel_a):
        acquisition = channel_a.acquisition
        pipeline = acquisition.run_windowed(1, 5000)
        try:
            assert acquisition.settings.mode == AcquisitionMode.WINDOW

            def filled():
                acquisition.poll_streaming()
                return pipeline.cursor.total_samples >= 12000

            assert wait_until(filled)
            total = pipeline.cursor.total_samples
            window = pipeline.latest(Channel.A, 1000)
            np.testing.assert_array_equal(window,
                                          driver.samples_for(Channel.A, total - 1000, 1000))
            assert len(acquisition.latest_window(Channel.A)) == 5000
        finally:
            acquisition.stop()
            acquisition.release_buffers()
