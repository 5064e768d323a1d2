import io
import os
import threading
import time

import numpy as np
import pandas as pd
import pytest

from picoscope_control import pico_status as ps
from picoscope_control.acquisition import CaptureState
from picoscope_control.drain import (AnyCancellation, Cancellation, ConsumerDrain,
                                     DrainOutcome, EventCancellation, KeypressCancellation,
                                     TimerCancellation)
from picoscope_control.driver import RatioMode, TimeUnits
from picoscope_control.models import Channel, Coupling
from picoscope_control.simulated_driver import step
from picoscope_control.streaming import IndexingMode
from picoscope_control.writers import TabularSink

from .conftest import wait_until


class RecordingSink:
    """Keeps every block handed to it."""

    def __init__(self):
        self.blocks = []
        self.closed = False

    def write_block(self, first_sample, samples, min_samples=None):
        self.blocks.append((first_sample, samples, min_samples))
        return len(next(iter(samples.values())))

    def close(self):
        self.closed = True

    def joined(self, channel):
        return np.concatenate([samples[channel] for _, samples, _ in self.blocks])


@pytest.fixture
def two_channels(channel_a):
    channel_a.channels.set_channel(Channel.B, True, Coupling.DC,
                                   channel_a.model.range_index_for_mv(2000))
    return channel_a


def test_two_channel_auto_stop(driver, two_channels):
    acquisition = two_channels.acquisition
    acquisition.run_streaming(1, TimeUnits.US, pre_trigger=0, post_trigger=100000)
    sink = RecordingSink()
    result = ConsumerDrain(acquisition, sink).run()

    assert result.outcome == DrainOutcome.COMPLETED
    assert result.total_samples == 100000
    assert result.triggered_at is None
    assert result.rows_written == 100000
    assert result.sample_interval == acquisition.settings.sample_interval
    assert sink.closed

    # rows are contiguous and match what the unit produced
    firsts = [first for first, _, _ in sink.blocks]
    counts = [len(samples[Channel.A]) for _, samples, _ in sink.blocks]
    assert firsts == list(np.cumsum([0] + counts[:-1]))
    for channel in (Channel.A, Channel.B):
        np.testing.assert_array_equal(sink.joined(channel),
                                      driver.samples_for(channel, 0, 100000))

    assert acquisition.state == CaptureState.STOPPED
    assert len(two_channels.buffers) == 0


def test_triggered_streaming(driver, channel_a):
    driver.signals[Channel.A] = step(150000, 0.0, 1500.0)
    acquisition = channel_a.acquisition
    acquisition.set_simple_trigger(Channel.A, 1000, auto_trigger_ms=0)
    acquisition.run_streaming(1, TimeUnits.US, pre_trigger=100000, post_trigger=900000)
    sink = RecordingSink()
    result = ConsumerDrain(acquisition, sink).run()

    assert result.outcome == DrainOutcome.COMPLETED
    assert result.total_samples == 1000000
    assert result.triggered_at is not None
    assert 99000 <= result.triggered_at <= 101000
    data = sink.joined(Channel.A)
    assert len(data) == 1000000
    assert data[result.triggered_at] > 0
    assert data[result.triggered_at - 1] == 0


def test_abort_after_timer(driver, channel_a):
    acquisition = channel_a.acquisition
    acquisition.run_streaming(1, TimeUnits.US, post_trigger=10 ** 9, buffer_capacity=50000)
    result = ConsumerDrain(acquisition, RecordingSink(), TimerCancellation(0.05)).run()

    assert result.outcome == DrainOutcome.ABORTED
    assert 0 < result.total_samples < 10 ** 9
    assert acquisition.state == CaptureState.STOPPED
    callbacks = driver.callback_count
    time.sleep(0.02)
    assert driver.callback_count == callbacks
    assert driver.get_streaming_latest_values(channel_a.handle, lambda payload: None) \
        == ps.PICO_NO_SAMPLES_AVAILABLE


def test_abort_from_another_thread(channel_a):
    acquisition = channel_a.acquisition
    acquisition.run_streaming(1, auto_stop=False, buffer_capacity=20000)
    cancel = EventCancellation()
    threading.Timer(0.03, cancel.cancel).start()
    result = ConsumerDrain(acquisition, None, cancel).run()
    assert result.outcome == DrainOutcome.ABORTED
    assert result.rows_written == 0
    assert len(channel_a.buffers) == 0


def test_app_buffer_full_truncates(channel_a):
    acquisition = channel_a.acquisition
    acquisition.run_streaming(1, post_trigger=10 ** 9, buffer_capacity=10000,
                              indexing=IndexingMode.APP, app_capacity=30000)
    sink = RecordingSink()
    result = ConsumerDrain(acquisition, sink).run()
    assert result.outcome == DrainOutcome.TRUNCATED
    assert result.rows_written == 30000
    assert result.total_samples >= 30000


def test_aggregated_streaming_to_file(tmp_path, channel_a):
    acquisition = channel_a.acquisition
    pipeline = acquisition.run_streaming(1, post_trigger=40000, ratio=10,
                                         ratio_mode=RatioMode.AGGREGATE, buffer_capacity=1000)
    path = tmp_path / "agg.csv"
    sink = TabularSink(path, pipeline.channels, {Channel.A: 2000}, channel_a.max_adc,
                       aggregated=pipeline.aggregated)
    result = ConsumerDrain(acquisition, sink).run()

    assert result.total_samples == 4000
    frame = pd.read_csv(path, comment="#")
    assert len(frame) == 4000
    assert list(frame.columns) == ["sample", "ChA Max ADC", "ChA Max mV",
                                   "ChA Min ADC", "ChA Min mV"]
    assert (frame["ChA Max ADC"] >= frame["ChA Min ADC"]).all()
    assert frame["sample"].tolist() == list(range(4000))


def test_callback_error_stops_device(channel_a):
    acquisition = channel_a.acquisition
    pipeline = acquisition.run_streaming(1, auto_stop=False, buffer_capacity=1000)
    pipeline.callback_error = RuntimeError("copy failed")
    sink = RecordingSink()
    with pytest.raises(RuntimeError):
        ConsumerDrain(acquisition, sink).run()
    assert sink.closed
    assert acquisition.state == CaptureState.STOPPED
    assert len(channel_a.buffers) == 0


def test_drain_needs_streaming(channel_a):
    with pytest.raises(ps.PicoScopeError):
        ConsumerDrain(channel_a.acquisition)


def test_poll_interval_clamped(channel_a):
    acquisition = channel_a.acquisition
    acquisition.run_streaming(1, auto_stop=False, buffer_capacity=1000)
    try:
        assert ConsumerDrain(acquisition, poll_interval=1.0).poll_interval == 0.010
        assert ConsumerDrain(acquisition, poll_interval=0.0).poll_interval == 0.001
    finally:
        acquisition.stop()
        acquisition.release_buffers()


class TestCancellation:
    def test_timer(self):
        timer = TimerCancellation(0.01)
        timer.start()
        assert not timer.is_cancelled()
        time.sleep(0.02)
        assert timer.is_cancelled()

    def test_any(self):
        event = EventCancellation()
        combined = AnyCancellation(TimerCancellation(60), event, None)
        combined.start()
        assert not combined.is_cancelled()
        event.cancel()
        assert combined.is_cancelled()
        assert combined.reason == "stop requested"

    def test_keypress_ignores_non_terminal(self):
        assert not KeypressCancellation(io.StringIO("\n")).is_cancelled()

    def test_base_class_is_abstract(self):
        with pytest.raises(TypeError):
            Cancellation()


@pytest.fixture
def terminal():
    """A pseudo-terminal: (master fd, slave stream)."""
    master, slave = os.openpty()
    stream = os.fdopen(slave, "rb", buffering=0)
    yield master, stream
    stream.close()
    os.close(master)


@pytest.mark.skipif(not hasattr(os, "openpty"), reason="needs a pseudo-terminal")
class TestKeypress:
    def test_single_key_without_enter(self, terminal):
        termios = pytest.importorskip("termios")
        master, stream = terminal
        before = termios.tcgetattr(stream.fileno())
        cancel = KeypressCancellation(stream)
        cancel.start()
        assert not termios.tcgetattr(stream.fileno())[3] & termios.ICANON
        assert not cancel.is_cancelled()

        os.write(master, b"x")
        assert wait_until(cancel.is_cancelled, timeout=2)
        cancel.close()
        assert termios.tcgetattr(stream.fileno()) == before

    def test_key_aborts_running_drain(self, channel_a, terminal):
        master, stream = terminal
        acquisition = channel_a.acquisition
        acquisition.run_streaming(1, auto_stop=False, buffer_capacity=20000)
        cancel = AnyCancellation(KeypressCancellation(stream), TimerCancellation(10))
        threading.Timer(0.05, os.write, (master, b"q")).start()
        started = time.monotonic()
        result = ConsumerDrain(acquisition, RecordingSink(), cancel).run()

        assert result.outcome == DrainOutcome.ABORTED
        assert cancel.reason == "key pressed"
        assert time.monotonic() - started < 5
        assert acquisition.state == CaptureState.STOPPED
        assert len(channel_a.buffers) == 0
