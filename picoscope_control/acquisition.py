"""Acquisition Controller.

Selects a timebase, arms block, rapid-block, streaming, windowed and ETS
captures, waits for completion and retrieves values. It owns the capture
state machine of one device::

    Closed -> Open -> ChannelsSet -> Armed | Streaming -> Stopped -> ...

Channel changes are refused with :class:`DeviceBusyError` while Armed or
Streaming. Driver errors are surfaced unchanged; only the timebase search
moves on after a failed query.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np

from . import pico_status as ps
from .buffers import BufferPairPool
from .channels import ChannelConfigurationStore
from .driver import EtsMode, PicoDriver, RatioMode, TimeUnits, TriggerInfo
from .models import ModelCapabilities, channel_name
from .pico_status import (ChannelUnavailableError, DeviceBusyError, InvalidConfigurationError,
                          TimebaseInvalidError, UnsupportedFeatureError, check_status)
from .streaming import IndexingMode, StreamingPipeline
from .trigger import ThresholdDirection, TriggerSpec, clamp_threshold_mv
from .scaling import mv_to_adc

DEFAULT_POLL_INTERVAL = 0.001


class AcquisitionMode(str, Enum):
    BLOCK = "block"
    RAPID_BLOCK = "rapid_block"
    STREAM = "stream"
    WINDOW = "window"
    ETS = "ets"


class CaptureState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    CHANNELS_SET = "channels_set"
    ARMED = "armed"
    STREAMING = "streaming"
    STOPPED = "stopped"


@dataclass
class AcquisitionState:
    """Parameters of the current (or last) capture."""
    mode: Optional[AcquisitionMode] = None
    pre_trigger: int = 0
    post_trigger: int = 0
    downsample_ratio: int = 1
    ratio_mode: RatioMode = RatioMode.NONE
    auto_stop: bool = False
    timebase: Optional[int] = None
    sample_interval: Optional[float] = None
    time_units: Optional[TimeUnits] = None
    indexing: Optional[IndexingMode] = None
    segments: int = 1
    captures: int = 1
    ets_mode: EtsMode = EtsMode.OFF


@dataclass
class TimebaseSelection:
    timebase: int
    interval_ns: float
    max_samples: int


@dataclass
class CaptureSegment:
    """Samples of one block capture (or one rapid-block segment)."""
    segment: int
    n_samples: int
    samples: Dict[int, np.ndarray]
    min_samples: Dict[int, np.ndarray] = field(default_factory=dict)
    overflow: int = 0
    trigger_index: Optional[int] = None
    timestamp: Optional[int] = None
    times_fs: Optional[np.ndarray] = None


@dataclass
class RapidBlockResult:
    captures_requested: int
    segments: List[CaptureSegment]

    @property
    def captures_completed(self) -> int:
        return len(self.segments)


class AcquisitionController:
    """Capture control for one open device.

    Args:
        driver: Driver binding
        handle: Device handle
        model: Capability descriptor
        channels: Channel configuration store of the device
        pool: Buffer pair pool of the device
    """

    def __init__(self, driver: PicoDriver, handle: int, model: ModelCapabilities,
                 channels: ChannelConfigurationStore, pool: BufferPairPool) -> None:
        self._driver = driver
        self._handle = handle
        self._model = model
        self._channels = channels
        self._pool = pool
        self._logger = logging.getLogger(self.__class__.__name__)

        self.state = CaptureState.OPEN
        self.settings = AcquisitionState()
        self.trigger: Optional[TriggerSpec] = None
        self.pipeline: Optional[StreamingPipeline] = None
        self.max_adc = 0
        self.ets_sample_time_ps = 0
        self._ready = threading.Event()
        self._block_status = ps.PICO_OK
        self._simple_trigger = False

        channels.bind_controller(self._is_busy, self._on_channels_changed)

    # State --------------------------------------------------------------

    def _is_busy(self) -> bool:
        return self.state in (CaptureState.ARMED, CaptureState.STREAMING)

    @property
    def busy(self) -> bool:
        return self._is_busy()

    def _on_channels_changed(self) -> None:
        if self.state == CaptureState.OPEN:
            self.state = CaptureState.CHANNELS_SET

    def _require_idle(self, operation: str) -> List[int]:
        if self.state == CaptureState.CLOSED:
            raise ps.DeviceLostError("Device is closed", operation=operation)
        if self._is_busy():
            raise DeviceBusyError(f"{operation} refused: capture already {self.state.value}",
                                  operation=operation)
        enabled = self._channels.enabled_channels()
        if not enabled:
            raise ChannelUnavailableError("No channels enabled", operation=operation)
        return enabled

    def mark_closed(self) -> None:
        self.state = CaptureState.CLOSED

    # Timebase -----------------------------------------------------------

    def select_timebase(self, preferred: int, n_samples: int, segment: int = 0,
                        max_timebase: Optional[int] = None) -> TimebaseSelection:
        """Find the smallest valid timebase at or above a preferred index.

        Args:
            preferred: First timebase index tried
            n_samples: Samples the capture needs
            segment: Memory segment the capture uses
            max_timebase: Upper search bound (model maximum when None)

        Returns:
            TimebaseSelection with the interval and memory available

        Raises:
            TooManyChannelsForResolutionError: Channel combination invalid at this resolution
            InvalidConfigurationError: More samples than a memory segment can ever hold
            TimebaseInvalidError: No valid timebase up to the bound
        """
        if not self._channels.enabled_channels():
            raise ChannelUnavailableError("No channels enabled", operation="get_timebase")
        capacity = self._model.memory_samples // max(self.settings.segments, 1)
        if self._model.memory_samples and n_samples > capacity:
            raise InvalidConfigurationError(
                f"get_timebase failed: {n_samples} samples exceed the {capacity} "
                f"available per segment", operation="get_timebase",
                status=ps.PICO_TOO_MANY_SAMPLES)
        upper = self._model.max_timebase if max_timebase is None else min(max_timebase,
                                                                           self._model.max_timebase)
        timebase = preferred
        while timebase <= upper:
            status, interval_ns, max_samples = self._driver.get_timebase(
                self._handle, timebase, n_samples, segment)
            if status == ps.PICO_OK:
                self._logger.info(f"Timebase {timebase}: {interval_ns} ns interval, "
                                  f"{max_samples} samples available")
                self.settings.timebase = timebase
                return TimebaseSelection(timebase, interval_ns, max_samples)
            if status == ps.PICO_INVALID_NUMBER_CHANNELS_FOR_RESOLUTION:
                check_status(status, "get_timebase")
            self._logger.debug(f"Timebase {timebase} rejected: {ps.status_name(status)}")
            timebase += 1
        raise TimebaseInvalidError(
            f"get_timebase failed: no valid timebase in [{preferred}, {upper}] for "
            f"{n_samples} samples", operation="get_timebase")

    def minimum_timebase(self) -> Tuple[int, float]:
        """Fastest timebase for the enabled channels. Returns (timebase, interval_s)."""
        status, timebase, interval_s = self._driver.get_minimum_timebase_stateless(
            self._handle, self._channels.channel_flags(), self._channels.resolution)
        check_status(status, "get_minimum_timebase_stateless")
        return timebase, interval_s

    # Triggers -----------------------------------------------------------

    def set_trigger(self, spec: TriggerSpec) -> None:
        """Apply an advanced trigger (properties, conditions, directions, delay, PWQ)."""
        if self._is_busy():
            raise DeviceBusyError("Cannot change the trigger while a capture is running",
                                  operation="set_trigger")
        spec.validate(set(self._channels.enabled_channels()))
        check_status(self._driver.set_trigger_channel_properties(
            self._handle, spec.properties, spec.auto_trigger_ms), "set_trigger_channel_properties")
        check_status(self._driver.set_trigger_channel_conditions(self._handle, spec.conditions),
                     "set_trigger_channel_conditions")
        check_status(self._driver.set_trigger_channel_directions(self._handle, spec.directions),
                     "set_trigger_channel_directions")
        check_status(self._driver.set_trigger_delay(self._handle, spec.delay), "set_trigger_delay")
        check_status(self._driver.set_pulse_width_qualifier(self._handle, spec.pulse_width),
                     "set_pulse_width_qualifier")
        self.trigger = spec
        sources = ", ".join(channel_name(ch) for ch in sorted(spec.source_channels()))
        self._logger.info(f"Trigger set on {sources or 'no channels'}, delay {spec.delay}, "
                          f"auto-trigger {spec.auto_trigger_ms} ms")

    def set_simple_trigger(self, channel: int, threshold_mv: int,
                           direction: ThresholdDirection = ThresholdDirection.RISING,
                           delay: int = 0, auto_trigger_ms: int = 0) -> int:
        """Level trigger on one enabled channel.

        Returns:
            Threshold in ADC counts actually programmed
        """
        if self._is_busy():
            raise DeviceBusyError("Cannot change the trigger while a capture is running",
                                  operation="set_simple_trigger")
        if channel not in self._channels.enabled_channels():
            raise ps.TriggerConfigurationError(
                f"Trigger source channel {channel_name(channel)} is not enabled",
                operation="set_simple_trigger")
        range_mv = self._channels.range_mv(channel)
        threshold = mv_to_adc(clamp_threshold_mv(threshold_mv, range_mv), range_mv, self.max_adc)
        status = self._driver.set_simple_trigger(self._handle, True, channel, threshold,
                                                 direction, delay, auto_trigger_ms)
        check_status(status, "set_simple_trigger")
        self.trigger = None
        self._simple_trigger = True
        self._logger.info(f"Simple trigger on {channel_name(channel)}: {threshold_mv} mV "
                          f"({threshold} ADC), {ThresholdDirection(direction).name}")
        return threshold

    def disable_trigger(self) -> None:
        status = self._driver.set_simple_trigger(self._handle, False, 0, 0,
                                                 ThresholdDirection.RISING, 0, 0)
        check_status(status, "set_simple_trigger(disable)")
        self.trigger = None
        self._simple_trigger = False

    # ETS ----------------------------------------------------------------

    def set_ets(self, mode: EtsMode, cycles: int = 20, interleave: int = 4) -> int:
        """Switch equivalent-time sampling on or off.

        Returns:
            Effective ETS sample time in picoseconds (0 when off)

        Raises:
            UnsupportedFeatureError: If the variant has no ETS
        """
        if not self._model.has_ets:
            raise UnsupportedFeatureError(f"ETS is not supported by {self._model.variant}",
                                          operation="set_ets")
        status, sample_time_ps = self._driver.set_ets(self._handle, mode, cycles, interleave)
        check_status(status, "set_ets")
        self.settings.ets_mode = EtsMode(mode)
        self.ets_sample_time_ps = sample_time_ps
        self._logger.info(f"ETS {EtsMode(mode).name}, sample time {sample_time_ps} ps")
        return sample_time_ps

    # Block mode ---------------------------------------------------------

    def _on_block_ready(self, handle: int, status: int) -> None:
        if status == ps.PICO_CANCELLED:
            return
        self._block_status = status
        self._ready.set()

    def run_block(self, pre_trigger: int, post_trigger: int, timebase: Optional[int] = None,
                  segment: int = 0) -> int:
        """Arm a block capture.

        Returns:
            Time the device will be busy, in ms
        """
        self._require_idle("run_block")
        if timebase is None:
            timebase = self.settings.timebase
        if timebase is None:
            raise TimebaseInvalidError("run_block requires a timebase; call select_timebase",
                                       operation="run_block")
        self._ready.clear()
        self._block_status = ps.PICO_OK
        status, time_indisposed = self._driver.run_block(self._handle, pre_trigger, post_trigger,
                                                         timebase, segment, self._on_block_ready)
        check_status(status, "run_block")

        ets = self.settings.ets_mode != EtsMode.OFF
        if self.settings.mode != AcquisitionMode.RAPID_BLOCK or self.settings.captures <= 1:
            self.settings.mode = AcquisitionMode.ETS if ets else AcquisitionMode.BLOCK
        self.settings.pre_trigger = pre_trigger
        self.settings.post_trigger = post_trigger
        self.settings.timebase = timebase
        self._pool.pin()
        self.state = CaptureState.ARMED
        self._logger.info(f"Block armed: {pre_trigger} pre / {post_trigger} post, "
                          f"timebase {timebase}, indisposed {time_indisposed} ms")
        return time_indisposed

    def ready(self) -> bool:
        """True once the current block capture has completed."""
        if self.state == CaptureState.ARMED and self._ready.is_set():
            self._finish_block()
        return self._ready.is_set()

    def wait_ready(self, timeout: Optional[float] = None, cancel=None,
                   poll_interval: float = DEFAULT_POLL_INTERVAL) -> bool:
        """Wait for block completion.

        Args:
            timeout: Give up after this many seconds (None waits indefinitely)
            cancel: Optional cancellation signal; when it fires the capture is stopped
            poll_interval: Wait granularity between cancellation checks

        Returns:
            True if the capture completed, False if cancelled or timed out
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        if cancel is not None:
            cancel.start()
        try:
            while not self._ready.wait(poll_interval):
                if cancel is not None and cancel.is_cancelled():
                    self._logger.info(f"Block capture cancelled: {cancel.reason}")
                    self.stop()
                    return False
                if deadline is not None and time.monotonic() >= deadline:
                    return False
        finally:
            if cancel is not None:
                cancel.close()
        self._finish_block()
        return True

    def _finish_block(self) -> None:
        if self.state == CaptureState.ARMED:
            self.state = CaptureState.STOPPED
            self._pool.unpin()
        check_status(self._block_status, "run_block(ready)")

    def get_values(self, start: int, n_samples: int, ratio: int = 1,
                   ratio_mode: RatioMode = RatioMode.NONE, segment: int = 0) -> Tuple[int, int]:
        """Copy captured samples into the registered buffers.

        Returns:
            (samples returned, overflow mask)
        """
        if self.state == CaptureState.ARMED and not self.ready():
            raise DeviceBusyError("Capture still in progress", operation="get_values")
        status, returned, overflow = self._driver.get_values(self._handle, start, n_samples, ratio,
                                                             ratio_mode, segment)
        check_status(status, "get_values")
        return returned, overflow

    def collect_block(self, n_samples: Optional[int] = None, ratio: int = 1,
                      ratio_mode: RatioMode = RatioMode.NONE, segment: int = 0) -> CaptureSegment:
        """Allocate buffers, fetch a finished block capture and release the buffers."""
        if n_samples is None:
            n_samples = self.settings.pre_trigger + self.settings.post_trigger
        out_samples = max(n_samples // max(ratio, 1), 1)
        aggregated = ratio_mode == RatioMode.AGGREGATE
        channels = self._channels.enabled_channels()
        for channel in channels:
            self._pool.allocate(channel, out_samples, with_min_max=aggregated, segment=segment)
            self._pool.register(channel, ratio_mode, segment)

        times = None
        if self.settings.ets_mode != EtsMode.OFF:
            times = np.zeros(out_samples, dtype=np.int64)
            check_status(self._driver.set_ets_time_buffer(self._handle, times),
                         "set_ets_time_buffer")
        try:
            returned, overflow = self.get_values(0, n_samples, ratio, ratio_mode, segment)
            result = self._segment_result(channels, segment, returned, overflow)
            result.trigger_index = self.settings.pre_trigger // max(ratio, 1) \
                if self._trigger_armed() else None
            if times is not None:
                result.times_fs = times[:returned].copy()
        finally:
            if times is not None:
                self._driver.set_ets_time_buffer(self._handle, None)
            for channel in channels:
                self._pool.clear(channel, segment)
                self._pool.release(channel, segment)
        if overflow:
            over = ", ".join(channel_name(ch) for ch in channels if overflow & (1 << ch))
            self._logger.warning(f"Over-range on channel(s) {over}")
        return result

    def _segment_result(self, channels: List[int], segment: int, returned: int,
                        overflow: int) -> CaptureSegment:
        samples = {}
        minimum = {}
        for channel in channels:
            pair = self._pool.get(channel, segment)
            pair.app_max[:returned] = pair.driver_max[:returned]
            samples[channel] = pair.app_max[:returned].copy()
            if pair.aggregated:
                pair.app_min[:returned] = pair.driver_min[:returned]
                minimum[channel] = pair.app_min[:returned].copy()
        return CaptureSegment(segment=segment, n_samples=returned, samples=samples,
                              min_samples=minimum, overflow=overflow)

    def _trigger_armed(self) -> bool:
        return self.trigger is not None or self._simple_trigger

    # Rapid block --------------------------------------------------------

    def setup_rapid_block(self, captures: int, segments: Optional[int] = None) -> int:
        """Partition memory and set the capture count.

        Returns:
            Samples available per segment
        """
        if self._is_busy():
            raise DeviceBusyError("Cannot repartition memory while armed",
                                  operation="memory_segments")
        segments = segments or captures
        if captures > segments:
            raise InvalidConfigurationError(
                f"{captures} captures need at least as many segments (got {segments})",
                operation="set_no_of_captures")
        status, max_samples = self._driver.memory_segments(self._handle, segments)
        check_status(status, "memory_segments")
        check_status(self._driver.set_no_of_captures(self._handle, captures), "set_no_of_captures")
        self.settings.segments = segments
        self.settings.captures = captures
        self.settings.mode = AcquisitionMode.RAPID_BLOCK
        self._logger.info(f"Rapid block: {captures} captures in {segments} segments, "
                          f"{max_samples} samples per segment")
        return max_samples

    def run_rapid_block(self, pre_trigger: int, post_trigger: int,
                        timebase: Optional[int] = None) -> int:
        if self.settings.mode != AcquisitionMode.RAPID_BLOCK:
            raise InvalidConfigurationError("Call setup_rapid_block before run_rapid_block",
                                            operation="run_rapid_block")
        return self.run_block(pre_trigger, post_trigger, timebase, segment=0)

    def get_no_of_captures(self) -> int:
        status, captures = self._driver.get_no_of_captures(self._handle)
        check_status(status, "get_no_of_captures")
        return captures

    def get_values_bulk(self, n_samples: int, from_segment: int, to_segment: int, ratio: int = 1,
                        ratio_mode: RatioMode = RatioMode.NONE) -> Tuple[int, List[int]]:
        """Fetch several segments at once. Returns (samples per segment, overflow masks)."""
        status, returned, overflows = self._driver.get_values_bulk(
            self._handle, n_samples, from_segment, to_segment, ratio, ratio_mode)
        check_status(status, "get_values_bulk")
        return returned, overflows

    def get_trigger_info_bulk(self, from_segment: int, to_segment: int) -> List[TriggerInfo]:
        status, infos = self._driver.get_trigger_info_bulk(self._handle, from_segment, to_segment)
        check_status(status, "get_trigger_info_bulk")
        return infos

    def collect_rapid_block(self, n_samples: Optional[int] = None, ratio: int = 1,
                            ratio_mode: RatioMode = RatioMode.NONE) -> RapidBlockResult:
        """Fetch every completed segment with its trigger position.

        Segments completed before an abort are still returned.
        """
        if n_samples is None:
            n_samples = self.settings.pre_trigger + self.settings.post_trigger
        requested = self.settings.captures
        completed = self.get_no_of_captures()
        if completed == 0:
            return RapidBlockResult(requested, [])

        out_samples = max(n_samples // max(ratio, 1), 1)
        aggregated = ratio_mode == RatioMode.AGGREGATE
        channels = self._channels.enabled_channels()
        segments = range(completed)
        for channel in channels:
            self._pool.allocate_bulk(channel, out_samples, segments, with_min_max=aggregated)
            for segment in segments:
                self._pool.register(channel, ratio_mode, segment)
        try:
            returned, overflows = self.get_values_bulk(n_samples, 0, completed - 1, ratio,
                                                       ratio_mode)
            infos = self.get_trigger_info_bulk(0, completed - 1)
            results = []
            for segment, overflow, info in zip(segments, overflows, infos):
                result = self._segment_result(channels, segment, returned, overflow)
                if info.status == ps.PICO_OK:
                    index = info.trigger_index if info.trigger_index >= 0 \
                        else self.settings.pre_trigger
                    result.trigger_index = index // max(ratio, 1)
                    result.timestamp = info.timestamp_counter
                results.append(result)
        finally:
            for channel in channels:
                for segment in segments:
                    self._pool.clear(channel, segment)
                    self._pool.release(channel, segment)
        if completed < requested:
            self._logger.warning(f"Rapid block returned {completed} of {requested} captures")
        return RapidBlockResult(requested, results)

    # Streaming ----------------------------------------------------------

    def run_streaming(self, sample_interval: int, time_units: TimeUnits = TimeUnits.US,
                      pre_trigger: int = 0, post_trigger: int = 100000, auto_stop: bool = True,
                      ratio: int = 1, ratio_mode: RatioMode = RatioMode.NONE,
                      buffer_capacity: int = 100000,
                      indexing: IndexingMode = IndexingMode.DRIVER,
                      app_capacity: Optional[int] = None,
                      mode: AcquisitionMode = AcquisitionMode.STREAM) -> StreamingPipeline:
        """Allocate and register buffers, then start streaming.

        Args:
            sample_interval: Requested interval in time_units
            time_units: Units of sample_interval
            pre_trigger: Samples kept before the trigger
            post_trigger: Samples collected after the trigger (or in total without one)
            auto_stop: Stop after pre_trigger + post_trigger samples
            ratio: Downsampling ratio
            ratio_mode: Downsampling mode; AGGREGATE allocates min buffers
            buffer_capacity: Driver (overview) buffer size per channel
            indexing: Application buffer placement, fixed for this capture
            app_capacity: Application buffer size in APP indexing (default: whole capture)
            mode: STREAM or WINDOW

        Returns:
            The pipeline whose callback the drain must hand to the driver
        """
        channels = self._require_idle("run_streaming")
        indexing = IndexingMode(indexing)
        aggregated = ratio_mode == RatioMode.AGGREGATE
        if indexing == IndexingMode.APP and app_capacity is None:
            app_capacity = max((pre_trigger + post_trigger) // max(ratio, 1), buffer_capacity)
        for channel in channels:
            self._pool.allocate(channel, buffer_capacity, with_min_max=aggregated,
                                app_capacity=app_capacity if indexing == IndexingMode.APP else None)
            self._pool.register(channel, ratio_mode)
        pipeline = StreamingPipeline(self._pool, channels, indexing)

        status, adjusted = self._driver.run_streaming(
            self._handle, sample_interval, time_units, pre_trigger, post_trigger, auto_stop,
            ratio, ratio_mode, buffer_capacity)
        if status != ps.PICO_OK:
            self._pool.release_all()
            check_status(status, "run_streaming")

        if adjusted != sample_interval:
            self._logger.warning(f"Sample interval adjusted by driver: requested {sample_interval} "
                                 f"{TimeUnits(time_units).name}, using {adjusted}")
        self.settings = AcquisitionState(
            mode=AcquisitionMode(mode), pre_trigger=pre_trigger, post_trigger=post_trigger,
            downsample_ratio=ratio, ratio_mode=RatioMode(ratio_mode), auto_stop=auto_stop,
            timebase=self.settings.timebase, sample_interval=adjusted,
            time_units=TimeUnits(time_units), indexing=indexing,
            segments=self.settings.segments, captures=self.settings.captures,
            ets_mode=self.settings.ets_mode,
        )
        self.pipeline = pipeline
        self._pool.pin()
        self.state = CaptureState.STREAMING
        self._logger.info(f"Streaming started: {len(channels)} channel(s) at {adjusted} "
                          f"{TimeUnits(time_units).name}, {indexing.value}-indexed, "
                          f"auto-stop {'on' if auto_stop else 'off'}")
        return pipeline

    def run_windowed(self, sample_interval: int, window: int,
                     time_units: TimeUnits = TimeUnits.US, ratio: int = 1,
                     ratio_mode: RatioMode = RatioMode.NONE) -> StreamingPipeline:
        """Continuous capture keeping the latest ``window`` samples per channel."""
        return self.run_streaming(sample_interval, time_units, pre_trigger=0, post_trigger=window,
                                  auto_stop=False, ratio=ratio, ratio_mode=ratio_mode,
                                  buffer_capacity=window, indexing=IndexingMode.DRIVER,
                                  mode=AcquisitionMode.WINDOW)

    def latest_window(self, channel: int, n_samples: Optional[int] = None) -> np.ndarray:
        """Poll once and return the most recent samples of a windowed capture."""
        if self.pipeline is None:
            raise InvalidConfigurationError("No streaming capture", operation="latest_window")
        if self.state == CaptureState.STREAMING:
            self.poll_streaming()
        return self.pipeline.latest(channel, n_samples)

    def poll_streaming(self) -> bool:
        """One call to get_streaming_latest_values.

        Returns:
            False when the driver had nothing ready (the callback was not invoked)
        """
        if self.pipeline is None:
            raise InvalidConfigurationError("Streaming has not been started",
                                            operation="get_streaming_latest_values")
        status = self._driver.get_streaming_latest_values(self._handle,
                                                          self.pipeline.on_latest_values)
        if status in (ps.PICO_BUSY, ps.PICO_NO_SAMPLES_AVAILABLE):
            return False
        check_status(status, "get_streaming_latest_values")
        return True

    # Control ------------------------------------------------------------

    def stop(self) -> None:
        """Stop any capture; pending block callbacks arrive cancelled and are ignored."""
        status = self._driver.stop(self._handle)
        check_status(status, "stop")
        if self._is_busy():
            self.state = CaptureState.STOPPED
        self._pool.unpin()
        self._logger.info("Acquisition stopped")

    def release_buffers(self) -> None:
        """Unregister and free every buffer pair after a capture has stopped."""
        if self._is_busy():
            raise DeviceBusyError("Stop the capture before releasing buffers",
                                  operation="release_buffers")
        self._pool.release_all()
