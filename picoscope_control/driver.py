"""Driver interface consumed by the acquisition core.

:class:`PicoDriver` mirrors the vendor C API one method per entry point.
Methods return the raw ``PICO_STATUS`` integer first, followed by any
out-parameters, and never raise for device-reported errors; the core turns
statuses into exceptions with :func:`pico_status.check_status`.
"""

from abc import ABC, abstractmethod
from collections import namedtuple
from enum import IntEnum
from typing import Callable, List, Optional, Tuple

import numpy as np

from . import pico_status as ps
from .trigger import (PulseWidthQualifier, ThresholdDirection, TriggerChannelProperties,
                      TriggerCondition, TriggerDirection)


class RatioMode(IntEnum):
    """Downsampling modes (driver enumeration values)."""
    NONE = 0
    AGGREGATE = 1
    DECIMATE = 2
    AVERAGE = 4


class TimeUnits(IntEnum):
    FS = 0
    PS = 1
    NS = 2
    US = 3
    MS = 4
    S = 5


class EtsMode(IntEnum):
    OFF = 0
    FAST = 1
    SLOW = 2


class PowerState(IntEnum):
    """Power request codes passed to change_power_source."""
    MAINS = 0x119       # PICO_POWER_SUPPLY_CONNECTED
    USB_ONLY = 0x11A    # PICO_POWER_SUPPLY_NOT_CONNECTED
    USB2_PORT = 0x11E   # PICO_USB3_0_DEVICE_NON_USB3_0_PORT


TIME_UNIT_NS = {
    TimeUnits.FS: 1e-6,
    TimeUnits.PS: 1e-3,
    TimeUnits.NS: 1.0,
    TimeUnits.US: 1e3,
    TimeUnits.MS: 1e6,
    TimeUnits.S: 1e9,
}

# Unit info line numbers (PICO_INFO)
INFO_DRIVER_VERSION = 0
INFO_USB_VERSION = 1
INFO_HARDWARE_VERSION = 2
INFO_VARIANT_INFO = 3
INFO_BATCH_AND_SERIAL = 4
INFO_CAL_DATE = 5
INFO_KERNEL_VERSION = 6
INFO_DIGITAL_HARDWARE_VERSION = 7
INFO_ANALOGUE_HARDWARE_VERSION = 8
INFO_FIRMWARE_VERSION_1 = 9
INFO_FIRMWARE_VERSION_2 = 10

StreamingPayload = namedtuple(
    "StreamingPayload",
    "handle no_of_samples start_index overflow trigger_at triggered auto_stop",
)

TriggerInfo = namedtuple(
    "TriggerInfo",
    "status segment_index trigger_index trigger_time time_units timestamp_counter",
)

BlockReadyCallback = Callable[[int, int], None]
StreamingCallback = Callable[[StreamingPayload], None]


class PicoDriver(ABC):
    """Abstract vendor driver binding."""

    family = "generic"

    # Unit ---------------------------------------------------------------

    @abstractmethod
    def open_unit(self, serial: Optional[str], resolution: Optional[int]) -> Tuple[int, int]:
        """Open a unit. Returns (status, handle); handle <= 0 on failure."""

    # Background open is optional; bindings without it report PICO_NOT_USED.

    def open_unit_async(self, serial: Optional[str], resolution: Optional[int]) -> int:
        """Start opening a unit in the background. Returns status."""
        return ps.PICO_NOT_USED

    def open_unit_progress(self) -> Tuple[int, int, int, bool]:
        """Returns (status, handle, progress_percent, complete)."""
        return ps.PICO_NOT_USED, 0, 0, False

    @abstractmethod
    def close_unit(self, handle: int) -> int:
        ...

    @abstractmethod
    def get_unit_info(self, handle: int, info: int) -> Tuple[int, str]:
        ...

    @abstractmethod
    def maximum_value(self, handle: int) -> Tuple[int, int]:
        ...

    @abstractmethod
    def set_device_resolution(self, handle: int, resolution: int) -> int:
        ...

    @abstractmethod
    def get_device_resolution(self, handle: int) -> Tuple[int, int]:
        ...

    @abstractmethod
    def change_power_source(self, handle: int, power_state: int) -> int:
        ...

    @abstractmethod
    def current_power_source(self, handle: int) -> int:
        ...

    @abstractmethod
    def flash_led(self, handle: int, start: int) -> int:
        ...

    # Channels -----------------------------------------------------------

    @abstractmethod
    def set_channel(self, handle: int, channel: int, enabled: bool, coupling: str,
                    range_index: int, analogue_offset: float, single_ended: bool = True) -> int:
        ...

    @abstractmethod
    def set_digital_port(self, handle: int, port: int, enabled: bool, logic_level: int) -> int:
        ...

    # Timebase -----------------------------------------------------------

    @abstractmethod
    def get_timebase(self, handle: int, timebase: int, n_samples: int,
                     segment: int) -> Tuple[int, float, int]:
        """Returns (status, interval_ns, max_samples)."""

    @abstractmethod
    def get_minimum_timebase_stateless(self, handle: int, enabled_flags: int,
                                       resolution: int) -> Tuple[int, int, float]:
        """Returns (status, timebase, interval_s)."""

    # Triggers -----------------------------------------------------------

    @abstractmethod
    def set_simple_trigger(self, handle: int, enable: bool, source: int, threshold: int,
                           direction: ThresholdDirection, delay: int,
                           auto_trigger_ms: int) -> int:
        ...

    @abstractmethod
    def set_trigger_channel_properties(self, handle: int,
                                       properties: List[TriggerChannelProperties],
                                       auto_trigger_ms: int) -> int:
        ...

    @abstractmethod
    def set_trigger_channel_conditions(self, handle: int,
                                       conditions: List[TriggerCondition]) -> int:
        ...

    @abstractmethod
    def set_trigger_channel_directions(self, handle: int,
                                       directions: List[TriggerDirection]) -> int:
        ...

    @abstractmethod
    def set_trigger_delay(self, handle: int, delay: int) -> int:
        ...

    @abstractmethod
    def set_pulse_width_qualifier(self, handle: int,
                                  qualifier: Optional[PulseWidthQualifier]) -> int:
        """Set the qualifier; None clears it."""

    # ETS ----------------------------------------------------------------

    @abstractmethod
    def set_ets(self, handle: int, mode: EtsMode, cycles: int,
                interleave: int) -> Tuple[int, int]:
        """Returns (status, sample_time_ps)."""

    @abstractmethod
    def set_ets_time_buffer(self, handle: int, buffer: Optional[np.ndarray]) -> int:
        ...

    # Buffers and acquisition ---------------------------------------------

    @abstractmethod
    def set_data_buffers(self, handle: int, channel: int, buffer_max: Optional[np.ndarray],
                         buffer_min: Optional[np.ndarray], segment: int,
                         ratio_mode: RatioMode) -> int:
        """Register buffers for a channel; passing None for both unregisters."""

    @abstractmethod
    def run_block(self, handle: int, pre_trigger: int, post_trigger: int, timebase: int,
                  segment: int, ready_callback: BlockReadyCallback) -> Tuple[int, int]:
        """Returns (status, time_indisposed_ms)."""

    @abstractmethod
    def is_ready(self, handle: int) -> Tuple[int, bool]:
        ...

    @abstractmethod
    def run_streaming(self, handle: int, sample_interval: int, time_units: TimeUnits,
                      pre_trigger: int, post_trigger: int, auto_stop: bool, ratio: int,
                      ratio_mode: RatioMode, overview_buffer_size: int) -> Tuple[int, int]:
        """Returns (status, adjusted_sample_interval)."""

    @abstractmethod
    def get_streaming_latest_values(self, handle: int, callback: StreamingCallback) -> int:
        """Deliver pending samples through callback.

        Returns PICO_BUSY or PICO_NO_SAMPLES_AVAILABLE without calling the
        callback when nothing is ready.
        """

    @abstractmethod
    def get_values(self, handle: int, start: int, n_samples: int, ratio: int,
                   ratio_mode: RatioMode, segment: int) -> Tuple[int, int, int]:
        """Returns (status, n_samples_returned, overflow)."""

    @abstractmethod
    def get_values_bulk(self, handle: int, n_samples: int, from_segment: int, to_segment: int,
                        ratio: int, ratio_mode: RatioMode) -> Tuple[int, int, List[int]]:
        """Returns (status, n_samples_returned, overflow per segment)."""

    @abstractmethod
    def get_trigger_info_bulk(self, handle: int, from_segment: int,
                              to_segment: int) -> Tuple[int, List[TriggerInfo]]:
        ...

    @abstractmethod
    def memory_segments(self, handle: int, n_segments: int) -> Tuple[int, int]:
        """Returns (status, max_samples_per_segment)."""

    @abstractmethod
    def set_no_of_captures(self, handle: int, n_captures: int) -> int:
        ...

    @abstractmethod
    def get_no_of_captures(self, handle: int) -> Tuple[int, int]:
        ...

    @abstractmethod
    def stop(self, handle: int) -> int:
        ...
