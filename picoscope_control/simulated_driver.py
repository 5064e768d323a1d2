"""Simulated PicoScope unit implementing the :class:`PicoDriver` interface.

The simulator stands in for the vendor library on machines without hardware
and drives the test suite. Input signals are deterministic functions of the
absolute sample index, so any delivered sample can be recomputed and
compared. Timing follows the real driver closely enough to exercise the
acquisition core:

- block captures complete on a driver-owned thread which invokes the ready
  callback (with ``PICO_CANCELLED`` when stopped first);
- streaming acquisition runs a producer thread that advances the acquired
  sample count, and each ``get_streaming_latest_values`` call copies the
  pending samples into the registered buffers (wrapping at the overview
  buffer size) before invoking the callback once;
- power-source negotiation, resolution quotas and USB-power channel limits
  follow the model capability table.
"""

import itertools
import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from . import pico_status as ps
from .driver import (EtsMode, PicoDriver, PowerState, RatioMode, StreamingPayload, TimeUnits,
                     TriggerInfo, TIME_UNIT_NS)
from .models import Coupling, ModelCapabilities, capabilities_for_variant
from .scaling import mv_to_adc_array
from .trigger import ThresholdDirection, TriggerState

logger = logging.getLogger(__name__)

SignalFunction = Callable[[np.ndarray], np.ndarray]

DEFAULT_SAMPLES_PER_TICK = 20000
DEFAULT_TICK_SECONDS = 0.001
DEFAULT_BLOCK_LATENCY = 0.005
TRIGGER_SEARCH_LIMIT = 20_000_000
SEARCH_CHUNK = 1_000_000

_handle_counter = itertools.count(1)


# Signal sources (mV as a function of absolute sample index)

def grounded() -> SignalFunction:
    """Input shorted to ground."""
    return lambda index: np.zeros(index.shape, dtype=np.float64)


def sine_wave(amplitude_mv: float, period_samples: float, phase: float = 0.0,
              offset_mv: float = 0.0) -> SignalFunction:
    def signal(index: np.ndarray) -> np.ndarray:
        return offset_mv + amplitude_mv * np.sin(2.0 * np.pi * index / period_samples + phase)
    return signal


def step(at_index: int, low_mv: float, high_mv: float) -> SignalFunction:
    """Level change from low to high at one sample index (one rising edge)."""
    def signal(index: np.ndarray) -> np.ndarray:
        return np.where(index >= at_index, high_mv, low_mv).astype(np.float64)
    return signal


def pulse_train(period_samples: int, width_samples: int, low_mv: float,
                high_mv: float, first_edge: int = 0) -> SignalFunction:
    """Periodic rectangular pulses, rising edges at first_edge + k * period."""
    def signal(index: np.ndarray) -> np.ndarray:
        phase = np.mod(index - first_edge, period_samples)
        high = (index >= first_edge) & (phase < width_samples)
        return np.where(high, high_mv, low_mv).astype(np.float64)
    return signal


def default_signal(channel: int) -> SignalFunction:
    return sine_wave(amplitude_mv=500.0, period_samples=1000.0 * (channel + 1))


@dataclass
class _ChannelState:
    enabled: bool = False
    coupling: Coupling = Coupling.DC
    range_index: int = 0
    analogue_offset: float = 0.0
    single_ended: bool = True


@dataclass
class _TriggerState:
    channel: int
    threshold: int
    direction: ThresholdDirection
    delay: int = 0
    auto_trigger_ms: int = 0


@dataclass
class _Segment:
    data: Dict[int, np.ndarray]
    overflow: int
    trigger_info: TriggerInfo


@dataclass
class _StreamState:
    origin: int
    ratio: int
    ratio_mode: RatioMode
    overview: int
    channels: List[int]
    limit: Optional[int]
    trigger_out: Optional[int]
    produced_raw: int = 0
    delivered: int = 0
    write_pos: int = 0
    trigger_reported: bool = False
    finished: bool = False
    stopped: bool = False
    stop_event: threading.Event = field(default_factory=threading.Event)
    producer: Optional[threading.Thread] = None


class SimulatedDriver(PicoDriver):
    """Deterministic in-process device.

    Args:
        variant: Model variant to emulate (key of the model table)
        serial: Serial number reported by the unit
        signals: Signal function per channel index (default: sine waves)
        mains_connected: Whether the external supply is plugged in at open
        usb2_port: Emulate a USB 3.0 unit attached to a USB 2.0 port
        samples_per_tick: Raw samples acquired per producer tick while streaming
        tick_seconds: Producer tick period
        block_latency: Time a block capture takes to complete
        rereport_trigger: Keep flagging the trigger in callbacks after the first
    """

    family = "simulated"

    def __init__(self, variant: str = "5444D", serial: str = "SIM0001/001",
                 signals: Optional[Dict[int, SignalFunction]] = None,
                 mains_connected: bool = True, usb2_port: bool = False,
                 samples_per_tick: int = DEFAULT_SAMPLES_PER_TICK,
                 tick_seconds: float = DEFAULT_TICK_SECONDS,
                 block_latency: float = DEFAULT_BLOCK_LATENCY,
                 rereport_trigger: bool = False) -> None:
        self.model: ModelCapabilities = capabilities_for_variant(variant)
        self.serial = serial
        self.signals: Dict[int, SignalFunction] = dict(signals or {})
        self.mains_connected = mains_connected
        self.usb2_port = usb2_port
        self.samples_per_tick = samples_per_tick
        self.tick_seconds = tick_seconds
        self.block_latency = block_latency
        self.rereport_trigger = rereport_trigger

        self._logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.RLock()
        self._callback_lock = threading.Lock()

        self.handle = 0
        self.led_flashes = 0
        self.callback_count = 0
        self._pending_open: Optional[Tuple[int, int]] = None
        self._reset_unit_state(self.model.default_resolution)

    def _reset_unit_state(self, resolution: int) -> None:
        self.resolution = int(resolution)
        self._channels = {ch: _ChannelState(range_index=self.model.default_range)
                          for ch in range(self.model.channel_count)}
        self._digital_ports: Dict[int, Tuple[bool, int]] = {}
        self._buffers: Dict[Tuple[int, int], Tuple[np.ndarray, Optional[np.ndarray], RatioMode]] = {}
        self._trigger: Optional[_TriggerState] = None
        self._trigger_properties = []
        self._trigger_conditions = []
        self._trigger_directions = []
        self._trigger_delay = 0
        self._trigger_auto_ms = 0
        self.pulse_width_qualifier = None
        self._segments = 1
        self._captures = 1
        self._captures_done = 0
        self._segment_data: Dict[int, _Segment] = {}
        self._block_cursor = 0
        self._block_thread: Optional[threading.Thread] = None
        self._block_cancel: Optional[threading.Event] = None
        self._ready = False
        self._interval_ns = 0.0
        self._ets_mode = EtsMode.OFF
        self._ets_buffer: Optional[np.ndarray] = None
        self._stream: Optional[_StreamState] = None
        self._usb_only = False
        self._power_pending = ps.PICO_OK

    # Test helpers -------------------------------------------------------

    def connect_mains(self) -> None:
        """Plug in the external power supply."""
        self.mains_connected = True

    def disconnect_mains(self) -> None:
        self.mains_connected = False

    def force_resolution(self, resolution: int) -> None:
        """Change resolution without the enabled-channel check."""
        with self._lock:
            self.resolution = int(resolution)

    @property
    def stream_origin(self) -> int:
        """Raw sample index of the first streamed sample."""
        return self._stream.origin if self._stream is not None else 0

    def signal_for(self, channel: int) -> SignalFunction:
        return self.signals.get(channel) or default_signal(channel)

    def samples_for(self, channel: int, raw_start: int, count: int) -> np.ndarray:
        """ADC counts the unit produces for raw indices [raw_start, raw_start + count)."""
        index = np.arange(raw_start, raw_start + count, dtype=np.int64)
        adc, _ = self._channel_adc(channel, index)
        return adc

    # Internal helpers ---------------------------------------------------

    def _check_handle(self, handle: int) -> int:
        if self.handle <= 0 or handle != self.handle:
            return ps.PICO_INVALID_HANDLE
        return ps.PICO_OK

    def _gate(self, handle: int) -> int:
        status = self._check_handle(handle)
        if status != ps.PICO_OK:
            return status
        return self._power_pending

    def _max_adc(self) -> int:
        return self.model.max_adc_for(self.resolution)

    def _enabled(self) -> List[int]:
        return [ch for ch, state in sorted(self._channels.items()) if state.enabled]

    def _capturing(self) -> bool:
        block_running = self._block_thread is not None and self._block_thread.is_alive()
        streaming = self._stream is not None and not self._stream.stopped
        return block_running or streaming

    def _channel_adc(self, channel: int, index: np.ndarray) -> Tuple[np.ndarray, bool]:
        state = self._channels[channel]
        mv = self.signal_for(channel)(index) + state.analogue_offset * 1000.0
        range_mv = self.model.range_mv(state.range_index)
        adc = mv_to_adc_array(mv, range_mv, self._max_adc(), dtype=self.model.sample_dtype)
        return adc, bool(np.any(np.abs(mv) > range_mv))

    @staticmethod
    def _downsample(adc: np.ndarray, ratio: int,
                    ratio_mode: RatioMode) -> Tuple[np.ndarray, np.ndarray]:
        if ratio <= 1 or ratio_mode == RatioMode.NONE:
            return adc, adc
        count = len(adc) // ratio
        blocks = adc[:count * ratio].reshape(count, ratio)
        if ratio_mode == RatioMode.AGGREGATE:
            return blocks.max(axis=1), blocks.min(axis=1)
        if ratio_mode == RatioMode.AVERAGE:
            average = np.trunc(blocks.mean(axis=1)).astype(adc.dtype)
            return average, average
        return blocks[:, 0], blocks[:, 0]

    def _timebase_status(self, timebase: int, n_samples: int, segment: int) -> Tuple[int, float, int]:
        enabled = len(self._enabled())
        if enabled == 0:
            return ps.PICO_INVALID_CHANNEL, 0.0, 0
        if enabled > self.model.quota(self.resolution):
            return ps.PICO_INVALID_NUMBER_CHANNELS_FOR_RESOLUTION, 0.0, 0
        if segment >= self._segments:
            return ps.PICO_SEGMENT_OUT_OF_RANGE, 0.0, 0
        if timebase > self.model.max_timebase or \
                timebase < self.model.minimum_timebase(self.resolution, enabled):
            return ps.PICO_INVALID_TIMEBASE, 0.0, 0
        max_samples = self.model.memory_samples // self._segments
        if n_samples > max_samples:
            return ps.PICO_TOO_MANY_SAMPLES, 0.0, 0
        return ps.PICO_OK, self.model.interval_ns(timebase, self.resolution), max_samples

    def _rebuild_trigger(self) -> None:
        self._trigger = None
        for condition in self._trigger_conditions:
            active = sorted(ch for ch, state in condition.sources.items()
                            if state == TriggerState.TRUE)
            if not active:
                continue
            channel = active[0]
            properties = next((p for p in self._trigger_properties if p.channel == channel), None)
            if properties is None:
                continue
            direction = next((d.direction for d in self._trigger_directions
                              if d.channel == channel), ThresholdDirection.RISING)
            self._trigger = _TriggerState(channel, properties.threshold_upper, direction,
                                          self._trigger_delay, self._trigger_auto_ms)
            return

    def _find_trigger(self, start: int) -> Optional[int]:
        trigger = self._trigger
        position = max(start, 1)
        end = position + TRIGGER_SEARCH_LIMIT
        while position < end:
            count = min(SEARCH_CHUNK, end - position)
            index = np.arange(position - 1, position + count, dtype=np.int64)
            adc, _ = self._channel_adc(trigger.channel, index)
            adc = adc.astype(np.int64)
            previous, current = adc[:-1], adc[1:]
            rising = (previous < trigger.threshold) & (current >= trigger.threshold)
            falling = (previous > trigger.threshold) & (current <= trigger.threshold)
            if trigger.direction in (ThresholdDirection.RISING, ThresholdDirection.ABOVE):
                hits = rising
            elif trigger.direction in (ThresholdDirection.FALLING, ThresholdDirection.BELOW):
                hits = falling
            else:
                hits = rising | falling
            found = np.flatnonzero(hits)
            if found.size:
                return position + int(found[0]) + trigger.delay
            position += count
        return None

    # Unit ---------------------------------------------------------------

    def open_unit(self, serial: Optional[str], resolution: Optional[int]) -> Tuple[int, int]:
        with self._lock:
            if serial is not None and serial != self.serial:
                return ps.PICO_NOT_FOUND, 0
            if self.handle > 0:
                return ps.PICO_MAX_UNITS_OPENED, 0
            if resolution is None:
                resolution = self.model.default_resolution
            if int(resolution) not in self.model.resolutions:
                return ps.PICO_INVALID_DEVICE_RESOLUTION, 0

            self._reset_unit_state(resolution)
            self.handle = next(_handle_counter)
            if self.usb2_port:
                self._power_pending = ps.PICO_USB3_0_DEVICE_NON_USB3_0_PORT
            elif self.model.usb_power_channel_limit is not None and not self.mains_connected:
                self._power_pending = ps.PICO_POWER_SUPPLY_NOT_CONNECTED
            self._logger.info(f"Simulated {self.model.variant} opened, handle {self.handle}")
            return self._power_pending, self.handle

    def open_unit_async(self, serial: Optional[str], resolution: Optional[int]) -> int:
        self._pending_open = self.open_unit(serial, resolution)
        return ps.PICO_OK

    def open_unit_progress(self) -> Tuple[int, int, int, bool]:
        if self._pending_open is None:
            return ps.PICO_INVALID_CALL, 0, 0, False
        status, handle = self._pending_open
        self._pending_open = None
        return status, handle, 100, True

    def close_unit(self, handle: int) -> int:
        status = self._check_handle(handle)
        if status != ps.PICO_OK:
            return status
        self.stop(handle)
        with self._lock:
            self.handle = 0
        return ps.PICO_OK

    def get_unit_info(self, handle: int, info: int) -> Tuple[int, str]:
        status = self._check_handle(handle)
        if status != ps.PICO_OK:
            return status, ""
        lines = [
            "2.1.120.0 (simulated)", "3.0", "1", self.model.variant, self.serial,
            "01Jan26", "1.0.0.0", "1", "1", "1.7.5.0", "1.0.67.0",
        ]
        if not 0 <= info < len(lines):
            return ps.PICO_INVALID_INFO, ""
        return ps.PICO_OK, lines[info]

    def maximum_value(self, handle: int) -> Tuple[int, int]:
        status = self._check_handle(handle)
        return status, self._max_adc() if status == ps.PICO_OK else 0

    def set_device_resolution(self, handle: int, resolution: int) -> int:
        with self._lock:
            status = self._gate(handle)
            if status != ps.PICO_OK:
                return status
            if int(resolution) not in self.model.resolutions:
                return ps.PICO_INVALID_DEVICE_RESOLUTION
            if len(self._enabled()) > self.model.quota(resolution):
                return ps.PICO_TOO_MANY_CHANNELS_IN_USE
            self.resolution = int(resolution)
            return ps.PICO_OK

    def get_device_resolution(self, handle: int) -> Tuple[int, int]:
        status = self._check_handle(handle)
        return status, self.resolution

    def change_power_source(self, handle: int, power_state: int) -> int:
        with self._lock:
            status = self._check_handle(handle)
            if status != ps.PICO_OK:
                return status
            if power_state == PowerState.MAINS:
                if not self.mains_connected:
                    return ps.PICO_POWER_SUPPLY_NOT_CONNECTED
                self._usb_only = False
            elif power_state == PowerState.USB_ONLY:
                limit = self.model.usb_power_channel_limit
                self._usb_only = limit is not None
                if limit is not None:
                    for channel, state in self._channels.items():
                        if channel >= limit:
                            state.enabled = False
            elif power_state != PowerState.USB2_PORT:
                return ps.PICO_POWER_SUPPLY_REQUEST_INVALID
            self._power_pending = ps.PICO_OK
            return ps.PICO_OK

    def current_power_source(self, handle: int) -> int:
        status = self._check_handle(handle)
        if status != ps.PICO_OK:
            return status
        if self._usb_only:
            return ps.PICO_POWER_SUPPLY_NOT_CONNECTED
        return ps.PICO_POWER_SUPPLY_CONNECTED

    def flash_led(self, handle: int, start: int) -> int:
        status = self._check_handle(handle)
        if status == ps.PICO_OK:
            self.led_flashes += max(start, 0)
        return status

    # Channels -----------------------------------------------------------

    def set_channel(self, handle: int, channel: int, enabled: bool, coupling: str,
                    range_index: int, analogue_offset: float, single_ended: bool = True) -> int:
        with self._lock:
            status = self._gate(handle)
            if status != ps.PICO_OK:
                return status
            if not 0 <= channel < self.model.channel_count:
                return ps.PICO_INVALID_CHANNEL
            if self._capturing():
                return ps.PICO_BUSY
            if enabled:
                if not self.model.first_range <= range_index <= self.model.last_range:
                    return ps.PICO_INVALID_VOLTAGE_RANGE
                if Coupling(coupling) not in self.model.couplings:
                    return ps.PICO_INVALID_COUPLING
                limit = self.model.usb_power_channel_limit
                if self._usb_only and limit is not None and channel >= limit:
                    return ps.PICO_CHANNEL_DISABLED_DUE_TO_USB_POWERED
            self._channels[channel] = _ChannelState(bool(enabled), Coupling(coupling), range_index,
                                                    float(analogue_offset), bool(single_ended))
            return ps.PICO_OK

    def set_digital_port(self, handle: int, port: int, enabled: bool, logic_level: int) -> int:
        with self._lock:
            status = self._gate(handle)
            if status != ps.PICO_OK:
                return status
            if self.model.digital_port_count == 0:
                return ps.PICO_NOT_SUPPORTED_BY_THIS_DEVICE
            if not 0 <= port < self.model.digital_port_count:
                return ps.PICO_INVALID_PARAMETER
            self._digital_ports[port] = (bool(enabled), int(logic_level))
            return ps.PICO_OK

    # Timebase -----------------------------------------------------------

    def get_timebase(self, handle: int, timebase: int, n_samples: int,
                     segment: int) -> Tuple[int, float, int]:
        with self._lock:
            status = self._gate(handle)
            if status != ps.PICO_OK:
                return status, 0.0, 0
            return self._timebase_status(timebase, n_samples, segment)

    def get_minimum_timebase_stateless(self, handle: int, enabled_flags: int,
                                       resolution: int) -> Tuple[int, int, float]:
        status = self._check_handle(handle)
        if status != ps.PICO_OK:
            return status, 0, 0.0
        enabled = bin(enabled_flags).count("1")
        if enabled == 0:
            return ps.PICO_INVALID_CHANNEL, 0, 0.0
        if enabled > self.model.quota(resolution):
            return ps.PICO_INVALID_NUMBER_CHANNELS_FOR_RESOLUTION, 0, 0.0
        timebase = self.model.minimum_timebase(resolution, enabled)
        return ps.PICO_OK, timebase, self.model.interval_ns(timebase, resolution) * 1e-9

    # Triggers -----------------------------------------------------------

    def set_simple_trigger(self, handle, enable, source, threshold, direction, delay,
                           auto_trigger_ms) -> int:
        with self._lock:
            status = self._gate(handle)
            if status != ps.PICO_OK:
                return status
            if enable and not 0 <= source < self.model.channel_count:
                return ps.PICO_INVALID_TRIGGER_CHANNEL
            self._trigger = (_TriggerState(source, int(threshold), ThresholdDirection(direction),
                                           int(delay), int(auto_trigger_ms)) if enable else None)
            return ps.PICO_OK

    def set_trigger_channel_properties(self, handle, properties, auto_trigger_ms) -> int:
        with self._lock:
            status = self._gate(handle)
            if status != ps.PICO_OK:
                return status
            if any(not 0 <= p.channel < self.model.channel_count for p in properties):
                return ps.PICO_INVALID_TRIGGER_CHANNEL
            self._trigger_properties = list(properties)
            self._trigger_auto_ms = int(auto_trigger_ms)
            self._rebuild_trigger()
            return ps.PICO_OK

    def set_trigger_channel_conditions(self, handle, conditions) -> int:
        with self._lock:
            status = self._gate(handle)
            if status != ps.PICO_OK:
                return status
            for condition in conditions:
                if any(not 0 <= ch < self.model.channel_count for ch in condition.sources):
                    return ps.PICO_INVALID_CONDITION_CHANNEL
            self._trigger_conditions = list(conditions)
            self._rebuild_trigger()
            return ps.PICO_OK

    def set_trigger_channel_directions(self, handle, directions) -> int:
        with self._lock:
            status = self._gate(handle)
            if status != ps.PICO_OK:
                return status
            self._trigger_directions = list(directions)
            self._rebuild_trigger()
            return ps.PICO_OK

    def set_trigger_delay(self, handle, delay) -> int:
        with self._lock:
            status = self._gate(handle)
            if status != ps.PICO_OK:
                return status
            self._trigger_delay = int(delay)
            self._rebuild_trigger()
            return ps.PICO_OK

    def set_pulse_width_qualifier(self, handle, qualifier) -> int:
        # Stored only; the simulated trigger does not qualify on pulse width
        status = self._gate(handle)
        if status == ps.PICO_OK:
            self.pulse_width_qualifier = qualifier
        return status

    # ETS ----------------------------------------------------------------

    def set_ets(self, handle: int, mode: EtsMode, cycles: int, interleave: int) -> Tuple[int, int]:
        status = self._gate(handle)
        if status != ps.PICO_OK:
            return status, 0
        if not self.model.has_ets:
            return ps.PICO_ETS_NOT_SUPPORTED, 0
        self._ets_mode = EtsMode(mode)
        if self._ets_mode == EtsMode.OFF:
            return ps.PICO_OK, 0
        return ps.PICO_OK, self.model.ets_sample_time_ps

    def set_ets_time_buffer(self, handle: int, buffer: Optional[np.ndarray]) -> int:
        status = self._check_handle(handle)
        if status == ps.PICO_OK:
            self._ets_buffer = buffer
        return status

    # Buffers and block mode ----------------------------------------------

    def set_data_buffers(self, handle, channel, buffer_max, buffer_min, segment,
                         ratio_mode) -> int:
        with self._lock:
            status = self._check_handle(handle)
            if status != ps.PICO_OK:
                return status
            if not 0 <= channel < self.model.channel_count:
                return ps.PICO_INVALID_CHANNEL
            if segment >= self._segments:
                return ps.PICO_SEGMENT_OUT_OF_RANGE
            if buffer_max is None and buffer_min is None:
                self._buffers.pop((channel, segment), None)
                return ps.PICO_OK
            if buffer_max is None:
                return ps.PICO_INVALID_BUFFER
            if ratio_mode == RatioMode.AGGREGATE and buffer_min is None:
                return ps.PICO_INVALID_BUFFER
            self._buffers[(channel, segment)] = (buffer_max, buffer_min, RatioMode(ratio_mode))
            return ps.PICO_OK

    def run_block(self, handle, pre_trigger, post_trigger, timebase, segment,
                  ready_callback) -> Tuple[int, int]:
        with self._lock:
            status = self._gate(handle)
            if status != ps.PICO_OK:
                return status, 0
            if self._capturing():
                return ps.PICO_BUSY, 0
            status, interval, _ = self._timebase_status(timebase, pre_trigger + post_trigger, segment)
            if status != ps.PICO_OK:
                return status, 0
            captures = self._captures
            if segment + captures > self._segments:
                return ps.PICO_NOT_ENOUGH_SEGMENTS, 0

            self._interval_ns = interval
            self._ready = False
            self._captures_done = 0
            for index in range(segment, segment + captures):
                self._segment_data.pop(index, None)
            self._block_cancel = threading.Event()
            self._block_thread = threading.Thread(
                target=self._block_worker,
                args=(handle, pre_trigger, post_trigger, segment, captures,
                      ready_callback, self._block_cancel),
                name="SimulatedBlockCapture",
                daemon=True,
            )
            self._block_thread.start()
            return ps.PICO_OK, int(self.block_latency * 1000)

    def _block_worker(self, handle, pre_trigger, post_trigger, first_segment, captures,
                      ready_callback, cancel: threading.Event) -> None:
        status = ps.PICO_OK
        for capture in range(captures):
            if cancel.wait(self.block_latency / captures):
                status = ps.PICO_CANCELLED
                break
            start = self._capture_start(pre_trigger)
            if start is None:
                # No trigger event and no auto-trigger: wait until stopped
                cancel.wait()
                status = ps.PICO_CANCELLED
                break
            self._capture_segment(first_segment + capture, start, pre_trigger, post_trigger)
        with self._lock:
            self._ready = status == ps.PICO_OK
        ready_callback(handle, status)

    def _capture_start(self, pre_trigger: int) -> Optional[int]:
        earliest = self._block_cursor + pre_trigger
        if self._trigger is None:
            return earliest
        found = self._find_trigger(earliest)
        if found is None and self._trigger.auto_trigger_ms > 0:
            return earliest
        return found

    def _capture_segment(self, segment: int, trigger_point: int, pre_trigger: int,
                         post_trigger: int) -> None:
        index = np.arange(trigger_point - pre_trigger, trigger_point + post_trigger, dtype=np.int64)
        data = {}
        overflow = 0
        for channel in self._enabled():
            adc, over_range = self._channel_adc(channel, index)
            data[channel] = adc
            if over_range:
                overflow |= 1 << channel
        info = TriggerInfo(
            status=ps.PICO_OK, segment_index=segment, trigger_index=pre_trigger,
            trigger_time=int(trigger_point * self._interval_ns), time_units=TimeUnits.NS,
            timestamp_counter=trigger_point,
        )
        with self._lock:
            self._segment_data[segment] = _Segment(data, overflow, info)
            self._block_cursor = trigger_point + post_trigger
            self._captures_done += 1

    def is_ready(self, handle: int) -> Tuple[int, bool]:
        status = self._check_handle(handle)
        return status, self._ready

    def _copy_segment(self, segment: int, start: int, n_samples: int, ratio: int,
                      ratio_mode: RatioMode) -> Tuple[int, int, int]:
        data = self._segment_data.get(segment)
        if data is None:
            return ps.PICO_NO_SAMPLES_AVAILABLE, 0, 0
        returned = None
        for channel, adc in data.data.items():
            registered = self._buffers.get((channel, segment))
            if registered is None:
                continue
            if start > len(adc):
                return ps.PICO_STARTINDEX_INVALID, 0, 0
            buffer_max, buffer_min, _ = registered
            high, low = self._downsample(adc[start:], ratio, ratio_mode)
            count = min(n_samples, len(high), len(buffer_max))
            buffer_max[:count] = high[:count]
            if buffer_min is not None:
                buffer_min[:count] = low[:count]
            returned = count if returned is None else min(returned, count)
        if returned is None:
            return ps.PICO_BUFFERS_NOT_SET, 0, 0
        return ps.PICO_OK, returned, data.overflow

    def get_values(self, handle, start, n_samples, ratio, ratio_mode, segment) -> Tuple[int, int, int]:
        with self._lock:
            status = self._check_handle(handle)
            if status != ps.PICO_OK:
                return status, 0, 0
            if self._stream is not None and not self._stream.stopped:
                return ps.PICO_DEVICE_SAMPLING, 0, 0
            if self._block_thread is not None and self._block_thread.is_alive() and not self._ready:
                return ps.PICO_BUSY, 0, 0
            if ratio < 1:
                return ps.PICO_INVALID_SAMPLERATIO, 0, 0
            status, returned, overflow = self._copy_segment(segment, start, n_samples, ratio,
                                                            ratio_mode)
            if status == ps.PICO_OK and self._ets_mode != EtsMode.OFF and self._ets_buffer is not None:
                count = min(returned, len(self._ets_buffer))
                step_fs = self.model.ets_sample_time_ps * 1000
                base = self._segment_data[segment].trigger_info.trigger_time * 1_000_000
                self._ets_buffer[:count] = base + (start + np.arange(count, dtype=np.int64)) * step_fs
            return status, returned, overflow

    def get_values_bulk(self, handle, n_samples, from_segment, to_segment, ratio,
                        ratio_mode) -> Tuple[int, int, List[int]]:
        with self._lock:
            status = self._check_handle(handle)
            if status != ps.PICO_OK:
                return status, 0, []
            if self._block_thread is not None and self._block_thread.is_alive() and not self._ready:
                return ps.PICO_BUSY, 0, []
            returned = n_samples
            overflows = []
            for segment in range(from_segment, to_segment + 1):
                status, count, overflow = self._copy_segment(segment, 0, n_samples, ratio, ratio_mode)
                if status != ps.PICO_OK:
                    return status, 0, []
                returned = min(returned, count)
                overflows.append(overflow)
            return ps.PICO_OK, returned, overflows

    def get_trigger_info_bulk(self, handle, from_segment, to_segment) -> Tuple[int, List[TriggerInfo]]:
        status = self._check_handle(handle)
        if status != ps.PICO_OK:
            return status, []
        infos = []
        for segment in range(from_segment, to_segment + 1):
            data = self._segment_data.get(segment)
            if data is None:
                infos.append(TriggerInfo(ps.PICO_SEGMENT_NOT_USED, segment, -1, 0, TimeUnits.NS, 0))
            else:
                infos.append(data.trigger_info)
        return ps.PICO_OK, infos

    def memory_segments(self, handle: int, n_segments: int) -> Tuple[int, int]:
        with self._lock:
            status = self._gate(handle)
            if status != ps.PICO_OK:
                return status, 0
            if not 1 <= n_segments <= self.model.max_segments:
                return ps.PICO_TOO_MANY_SEGMENTS, 0
            if self._capturing():
                return ps.PICO_BUSY, 0
            self._segments = n_segments
            self._captures = min(self._captures, n_segments)
            self._segment_data.clear()
            return ps.PICO_OK, self.model.memory_samples // n_segments

    def set_no_of_captures(self, handle: int, n_captures: int) -> int:
        with self._lock:
            status = self._gate(handle)
            if status != ps.PICO_OK:
                return status
            if n_captures < 1 or n_captures > self._segments:
                return ps.PICO_NOT_ENOUGH_SEGMENTS
            self._captures = n_captures
            return ps.PICO_OK

    def get_no_of_captures(self, handle: int) -> Tuple[int, int]:
        status = self._check_handle(handle)
        return status, self._captures_done

    # Streaming ----------------------------------------------------------

    def run_streaming(self, handle, sample_interval, time_units, pre_trigger, post_trigger,
                      auto_stop, ratio, ratio_mode, overview_buffer_size) -> Tuple[int, int]:
        with self._lock:
            status = self._gate(handle)
            if status != ps.PICO_OK:
                return status, sample_interval
            enabled = self._enabled()
            if not enabled:
                return ps.PICO_INVALID_CHANNEL, sample_interval
            if len(enabled) > self.model.quota(self.resolution):
                return ps.PICO_INVALID_NUMBER_CHANNELS_FOR_RESOLUTION, sample_interval
            if self._capturing():
                return ps.PICO_BUSY, sample_interval
            if ratio < 1 or (ratio_mode == RatioMode.NONE and ratio != 1):
                return ps.PICO_INVALID_SAMPLERATIO, sample_interval
            if sample_interval <= 0:
                return ps.PICO_INVALID_SAMPLE_INTERVAL, sample_interval
            capacity = overview_buffer_size
            for channel in enabled:
                registered = self._buffers.get((channel, 0))
                if registered is None:
                    return ps.PICO_BUFFERS_NOT_SET, sample_interval
                capacity = min(capacity, len(registered[0]))

            unit_ns = TIME_UNIT_NS[TimeUnits(time_units)]
            minimum_ns = self.model.min_stream_interval_ns * len(enabled)
            adjusted = sample_interval
            if sample_interval * unit_ns < minimum_ns:
                adjusted = int(math.ceil(minimum_ns / unit_ns))

            origin = 0
            trigger_out = None
            triggered_stream = True
            if self._trigger is not None:
                found = self._find_trigger(pre_trigger)
                if found is None and self._trigger.auto_trigger_ms > 0:
                    found = pre_trigger
                if found is None:
                    triggered_stream = False
                else:
                    origin = found - pre_trigger
                    trigger_out = pre_trigger // ratio
            limit = (pre_trigger + post_trigger) // ratio if auto_stop and triggered_stream else None

            self._stream = _StreamState(origin=origin, ratio=ratio, ratio_mode=RatioMode(ratio_mode),
                                        overview=capacity, channels=enabled, limit=limit,
                                        trigger_out=trigger_out)
            self._stream.producer = threading.Thread(target=self._produce, args=(self._stream,),
                                                     name="SimulatedStreamProducer", daemon=True)
            self._stream.producer.start()
            return ps.PICO_OK, adjusted

    def _produce(self, stream: _StreamState) -> None:
        limit_raw = None if stream.limit is None else stream.limit * stream.ratio
        while not stream.stop_event.wait(self.tick_seconds):
            with self._lock:
                stream.produced_raw += self.samples_per_tick
                if limit_raw is not None and stream.produced_raw >= limit_raw:
                    stream.produced_raw = limit_raw
                    return

    def get_streaming_latest_values(self, handle, callback) -> int:
        with self._callback_lock:
            with self._lock:
                status = self._check_handle(handle)
                if status != ps.PICO_OK:
                    return status
                stream = self._stream
                if stream is None:
                    return ps.PICO_INVALID_CALL
                if stream.stopped or stream.finished:
                    return ps.PICO_NO_SAMPLES_AVAILABLE
                available = stream.produced_raw // stream.ratio - stream.delivered
                if stream.limit is not None:
                    available = min(available, stream.limit - stream.delivered)
                if available <= 0:
                    return ps.PICO_BUSY
                count = min(available, stream.overview - stream.write_pos)
                start = stream.write_pos
                first = stream.delivered
                index = stream.origin + np.arange(first * stream.ratio, (first + count) * stream.ratio,
                                                  dtype=np.int64)
                overflow = 0
                for channel in stream.channels:
                    adc, over_range = self._channel_adc(channel, index)
                    high, low = self._downsample(adc, stream.ratio, stream.ratio_mode)
                    buffer_max, buffer_min, _ = self._buffers[(channel, 0)]
                    buffer_max[start:start + count] = high[:count]
                    if buffer_min is not None:
                        buffer_min[start:start + count] = low[:count]
                    if over_range:
                        overflow |= 1 << channel

                triggered = False
                trigger_at = 0
                if stream.trigger_out is not None and not stream.trigger_reported \
                        and first <= stream.trigger_out < first + count:
                    triggered = True
                    trigger_at = stream.trigger_out - first
                    stream.trigger_reported = True
                elif self.rereport_trigger and stream.trigger_reported:
                    triggered = True

                stream.delivered += count
                stream.write_pos = (start + count) % stream.overview
                auto_stop = stream.limit is not None and stream.delivered >= stream.limit
                stream.finished = auto_stop
                self.callback_count += 1
                payload = StreamingPayload(handle, count, start, overflow, trigger_at,
                                           int(triggered), int(auto_stop))
            callback(payload)
            return ps.PICO_OK

    # Control ------------------------------------------------------------

    def stop(self, handle: int) -> int:
        status = self._check_handle(handle)
        if status != ps.PICO_OK:
            return status
        with self._lock:
            block_thread, cancel = self._block_thread, self._block_cancel
            stream = self._stream
        if cancel is not None:
            cancel.set()
        if block_thread is not None and block_thread is not threading.current_thread():
            block_thread.join()
        if stream is not None:
            stream.stop_event.set()
            if stream.producer is not None and stream.producer is not threading.current_thread():
                stream.producer.join()
            with self._callback_lock:
                stream.stopped = True
        return ps.PICO_OK
