"""ctypes binding of the PicoScope 5000 Series (A API) driver.

The shared library is located through the ``PICO_PS5000A_LIBRARY``
environment variable (``PICO_PS5000A_DLL`` is also honoured), then the
default PicoSDK install folders, then the system library search path.

Driver callbacks carry a ``pParameter`` pointer back to the caller. The
binding passes a small integer context id there and looks the Python
callable up in a registry, so one C trampoline per callback type serves
every device and capture.
"""

import ctypes
import itertools
import logging
import os
import sys
import threading
from ctypes import (POINTER, Structure, byref, c_char_p, c_double, c_float, c_int16, c_int32,
                    c_int64, c_uint16, c_uint32, c_uint64, c_void_p)
from ctypes.util import find_library
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from . import pico_status as ps
from .driver import (BlockReadyCallback, EtsMode, PicoDriver, RatioMode, StreamingCallback,
                     StreamingPayload, TimeUnits, TriggerInfo)
from .models import Coupling
from .trigger import (PulseWidthQualifier, ThresholdDirection, TriggerChannelProperties,
                      TriggerCondition, TriggerDirection, TriggerState)

logger = logging.getLogger(__name__)

LIBRARY_ENV_VARS = ("PICO_PS5000A_LIBRARY", "PICO_PS5000A_DLL")

_WINDOWS_CANDIDATES = [
    r"C:\Program Files\Pico Technology\SDK\lib\ps5000a.dll",
    r"C:\Program Files\Pico Technology\PicoScope 7 T&M Stable\ps5000a.dll",
    r"C:\Program Files (x86)\Pico Technology\SDK\lib\ps5000a.dll",
]
_POSIX_CANDIDATES = [
    "/opt/picoscope/lib/libps5000a.so",
    "/Library/Frameworks/PicoSDK.framework/Libraries/libps5000a/libps5000a.dylib",
]

# PS5000A_DEVICE_RESOLUTION
RESOLUTION_CODES = {8: 0, 12: 1, 14: 2, 15: 3, 16: 4}
RESOLUTION_BITS = {code: bits for bits, code in RESOLUTION_CODES.items()}

# PS5000A_COUPLING
COUPLING_CODES = {Coupling.AC: 0, Coupling.DC: 1}

UNIT_INFO_LENGTH = 80

if sys.platform == "win32":
    _FUNCTYPE = ctypes.WINFUNCTYPE
else:
    _FUNCTYPE = ctypes.CFUNCTYPE

# ps5000aBlockReady(handle, status, pParameter)
BlockReadyType = _FUNCTYPE(None, c_int16, c_uint32, c_void_p)
# ps5000aStreamingReady(handle, noOfSamples, startIndex, overflow, triggerAt,
#                       triggered, autoStop, pParameter)
StreamingReadyType = _FUNCTYPE(None, c_int16, c_int32, c_uint32, c_int16, c_uint32, c_int16,
                               c_int16, c_void_p)


class TriggerChannelPropertiesStruct(Structure):
    _fields_ = [
        ("thresholdUpper", c_int16),
        ("thresholdUpperHysteresis", c_uint16),
        ("thresholdLower", c_int16),
        ("thresholdLowerHysteresis", c_uint16),
        ("channel", c_int32),
        ("thresholdMode", c_int32),
    ]


class TriggerConditionsStruct(Structure):
    _fields_ = [
        ("channelA", c_int32),
        ("channelB", c_int32),
        ("channelC", c_int32),
        ("channelD", c_int32),
        ("external", c_int32),
        ("aux", c_int32),
        ("pulseWidthQualifier", c_int32),
    ]


class PwqConditionsStruct(Structure):
    _fields_ = [
        ("channelA", c_int32),
        ("channelB", c_int32),
        ("channelC", c_int32),
        ("channelD", c_int32),
        ("external", c_int32),
        ("aux", c_int32),
    ]


class TriggerInfoStruct(Structure):
    _fields_ = [
        ("status", c_uint32),
        ("segmentIndex", c_uint32),
        ("reserved3", c_uint32),
        ("triggerTime", c_int64),
        ("timeUnits", c_int16),
        ("reserved4", c_int16),
        ("timeStampCounter", c_uint64),
    ]


_CHANNEL_FIELDS = ("channelA", "channelB", "channelC", "channelD")


# Callback trampolines -------------------------------------------------------

_context_ids = itertools.count(1)
_contexts: Dict[int, Callable] = {}
_contexts_lock = threading.Lock()


def _register_context(callback: Callable) -> int:
    context = next(_context_ids)
    with _contexts_lock:
        _contexts[context] = callback
    return context


def _release_context(context: int) -> Optional[Callable]:
    with _contexts_lock:
        return _contexts.pop(context, None)


def _lookup_context(parameter) -> Optional[Callable]:
    if not parameter:
        return None
    with _contexts_lock:
        return _contexts.get(int(parameter))


def _on_block_ready(handle, status, parameter):
    context = int(parameter) if parameter else 0
    callback = _release_context(context)
    if callback is not None:
        callback(int(handle), int(status))


def _on_streaming_ready(handle, no_of_samples, start_index, overflow, trigger_at, triggered,
                        auto_stop, parameter):
    callback = _lookup_context(parameter)
    if callback is not None:
        callback(StreamingPayload(int(handle), int(no_of_samples), int(start_index),
                                  int(overflow), int(trigger_at), bool(triggered),
                                  bool(auto_stop)))


_block_ready_trampoline = BlockReadyType(_on_block_ready)
_streaming_ready_trampoline = StreamingReadyType(_on_streaming_ready)


def find_ps5000a_library(path: Optional[str] = None) -> str:
    """Locate the ps5000a shared library.

    Priority: explicit path, environment variables, PicoSDK install folders,
    then the system search path.

    Raises:
        DeviceNotFoundError: If the library cannot be found
    """
    candidates = [path] if path else []
    candidates += [os.environ.get(name, "").strip() for name in LIBRARY_ENV_VARS]
    candidates += _WINDOWS_CANDIDATES if sys.platform == "win32" else _POSIX_CANDIDATES
    for candidate in candidates:
        if candidate and os.path.isfile(candidate):
            return candidate
    found = find_library("ps5000a")
    if found:
        return found
    raise ps.DeviceNotFoundError(
        "Could not find the ps5000a driver library. Install PicoSDK, or set "
        f"{LIBRARY_ENV_VARS[0]} to its full path.", operation="load_library")


def _as_pointer(array: Optional[np.ndarray], ctype=c_int16):
    if array is None:
        return None
    return array.ctypes.data_as(POINTER(ctype))


class PS5000ADriver(PicoDriver):
    """PicoScope 5000A/B/D driver binding over ctypes.

    Args:
        library_path: Full path of the shared library (searched when None)
    """

    family = "ps5000a"

    def __init__(self, library_path: Optional[str] = None) -> None:
        self._logger = logging.getLogger(self.__class__.__name__)
        self.library_path = find_ps5000a_library(library_path)
        if sys.platform == "win32":
            if hasattr(os, "add_dll_directory"):
                os.add_dll_directory(os.path.dirname(os.path.abspath(self.library_path)))
            self._lib = ctypes.WinDLL(self.library_path)
        else:
            self._lib = ctypes.CDLL(self.library_path)
        self._bind_functions()
        # Registered arrays stay referenced until unregistered
        self._registered: Dict[Tuple[int, int, int], Tuple] = {}
        self._ets_buffers: Dict[int, np.ndarray] = {}
        self._logger.info(f"Loaded {self.library_path}")

    def _bind(self, name: str, argtypes: List, restype=c_uint32) -> None:
        function = getattr(self._lib, name)
        function.argtypes = argtypes
        function.restype = restype

    def _bind_functions(self) -> None:
        bind = self._bind
        bind("ps5000aOpenUnit", [POINTER(c_int16), c_char_p, c_int32])
        bind("ps5000aOpenUnitAsync", [POINTER(c_int16), c_char_p, c_int32])
        bind("ps5000aOpenUnitProgress", [POINTER(c_int16), POINTER(c_int16), POINTER(c_int16)])
        bind("ps5000aCloseUnit", [c_int16])
        bind("ps5000aGetUnitInfo", [c_int16, c_char_p, c_int16, POINTER(c_int16), c_uint32])
        bind("ps5000aMaximumValue", [c_int16, POINTER(c_int16)])
        bind("ps5000aSetDeviceResolution", [c_int16, c_int32])
        bind("ps5000aGetDeviceResolution", [c_int16, POINTER(c_int32)])
        bind("ps5000aChangePowerSource", [c_int16, c_uint32])
        bind("ps5000aCurrentPowerSource", [c_int16])
        bind("ps5000aFlashLed", [c_int16, c_int16])

        bind("ps5000aSetChannel", [c_int16, c_int32, c_int16, c_int32, c_int32, c_float])
        bind("ps5000aGetTimebase2", [c_int16, c_uint32, c_int32, POINTER(c_float),
                                     POINTER(c_int32), c_uint32])
        bind("ps5000aGetMinimumTimebaseStateless", [c_int16, c_int32, POINTER(c_uint32),
                                                    POINTER(c_double), c_int32])

        bind("ps5000aSetSimpleTrigger", [c_int16, c_int16, c_int32, c_int16, c_int32, c_uint32,
                                         c_int16])
        bind("ps5000aSetTriggerChannelProperties", [c_int16, POINTER(TriggerChannelPropertiesStruct),
                                                    c_int16, c_int16, c_int32])
        bind("ps5000aSetTriggerChannelConditions", [c_int16, POINTER(TriggerConditionsStruct),
                                                    c_int16])
        bind("ps5000aSetTriggerChannelDirections", [c_int16] + [c_int32] * 6)
        bind("ps5000aSetTriggerDelay", [c_int16, c_uint32])
        bind("ps5000aSetPulseWidthQualifier", [c_int16, POINTER(PwqConditionsStruct), c_int16,
                                               c_int32, c_uint32, c_uint32, c_int32])

        bind("ps5000aSetEts", [c_int16, c_int32, c_int16, c_int16, POINTER(c_int32)])
        bind("ps5000aSetEtsTimeBuffer", [c_int16, POINTER(c_int64), c_int32])

        bind("ps5000aSetDataBuffers", [c_int16, c_int32, POINTER(c_int16), POINTER(c_int16),
                                       c_int32, c_uint32, c_int32])
        bind("ps5000aRunBlock", [c_int16, c_int32, c_int32, c_uint32, POINTER(c_int32), c_uint32,
                                 BlockReadyType, c_void_p])
        bind("ps5000aIsReady", [c_int16, POINTER(c_int16)])
        bind("ps5000aRunStreaming", [c_int16, POINTER(c_uint32), c_int32, c_uint32, c_uint32,
                                     c_int16, c_uint32, c_int32, c_uint32])
        bind("ps5000aGetStreamingLatestValues", [c_int16, StreamingReadyType, c_void_p])
        bind("ps5000aGetValues", [c_int16, c_uint32, POINTER(c_uint32), c_uint32, c_int32,
                                  c_uint32, POINTER(c_int16)])
        bind("ps5000aGetValuesBulk", [c_int16, POINTER(c_uint32), c_uint32, c_uint32, c_uint32,
                                      c_int32, POINTER(c_int16)])
        bind("ps5000aGetTriggerInfoBulk", [c_int16, POINTER(TriggerInfoStruct), c_uint32,
                                           c_uint32])
        bind("ps5000aMemorySegments", [c_int16, c_uint32, POINTER(c_int32)])
        bind("ps5000aSetNoOfCaptures", [c_int16, c_uint32])
        bind("ps5000aGetNoOfCaptures", [c_int16, POINTER(c_uint32)])
        bind("ps5000aStop", [c_int16])

    # Unit ---------------------------------------------------------------

    @staticmethod
    def _serial_arg(serial: Optional[str]):
        return serial.encode("ascii") if serial else None

    @staticmethod
    def _resolution_code(resolution: Optional[int]) -> int:
        if resolution is None:
            return RESOLUTION_CODES[8]
        return RESOLUTION_CODES.get(int(resolution), -1)

    def open_unit(self, serial: Optional[str], resolution: Optional[int]) -> Tuple[int, int]:
        handle = c_int16(0)
        status = self._lib.ps5000aOpenUnit(byref(handle), self._serial_arg(serial),
                                           self._resolution_code(resolution))
        return status, handle.value

    def open_unit_async(self, serial: Optional[str], resolution: Optional[int]) -> int:
        started = c_int16(0)
        status = self._lib.ps5000aOpenUnitAsync(byref(started), self._serial_arg(serial),
                                                self._resolution_code(resolution))
        if status == ps.PICO_OK and not started.value:
            return ps.PICO_OPERATION_FAILED
        return status

    def open_unit_progress(self) -> Tuple[int, int, int, bool]:
        handle = c_int16(0)
        progress = c_int16(0)
        complete = c_int16(0)
        status = self._lib.ps5000aOpenUnitProgress(byref(handle), byref(progress), byref(complete))
        return status, handle.value, progress.value, bool(complete.value)

    def close_unit(self, handle: int) -> int:
        for key in [key for key in self._registered if key[0] == handle]:
            del self._registered[key]
        self._ets_buffers.pop(handle, None)
        return self._lib.ps5000aCloseUnit(handle)

    def get_unit_info(self, handle: int, info: int) -> Tuple[int, str]:
        text = ctypes.create_string_buffer(UNIT_INFO_LENGTH)
        required = c_int16(0)
        status = self._lib.ps5000aGetUnitInfo(handle, text, UNIT_INFO_LENGTH, byref(required), info)
        return status, text.value.decode("ascii", errors="replace")

    def maximum_value(self, handle: int) -> Tuple[int, int]:
        value = c_int16(0)
        status = self._lib.ps5000aMaximumValue(handle, byref(value))
        return status, value.value

    def set_device_resolution(self, handle: int, resolution: int) -> int:
        code = self._resolution_code(resolution)
        if code < 0:
            return ps.PICO_INVALID_DEVICE_RESOLUTION
        return self._lib.ps5000aSetDeviceResolution(handle, code)

    def get_device_resolution(self, handle: int) -> Tuple[int, int]:
        code = c_int32(0)
        status = self._lib.ps5000aGetDeviceResolution(handle, byref(code))
        return status, RESOLUTION_BITS.get(code.value, 0)

    def change_power_source(self, handle: int, power_state: int) -> int:
        return self._lib.ps5000aChangePowerSource(handle, int(power_state))

    def current_power_source(self, handle: int) -> int:
        return self._lib.ps5000aCurrentPowerSource(handle)

    def flash_led(self, handle: int, start: int) -> int:
        return self._lib.ps5000aFlashLed(handle, start)

    # Channels -----------------------------------------------------------

    def set_channel(self, handle: int, channel: int, enabled: bool, coupling: str,
                    range_index: int, analogue_offset: float, single_ended: bool = True) -> int:
        coupling = Coupling(coupling)
        if coupling not in COUPLING_CODES or not single_ended:
            return ps.PICO_NOT_SUPPORTED_BY_THIS_DEVICE
        return self._lib.ps5000aSetChannel(handle, channel, int(bool(enabled)),
                                           COUPLING_CODES[coupling], range_index,
                                           analogue_offset)

    def set_digital_port(self, handle: int, port: int, enabled: bool, logic_level: int) -> int:
        return ps.PICO_NOT_SUPPORTED_BY_THIS_DEVICE

    # Timebase -----------------------------------------------------------

    def get_timebase(self, handle: int, timebase: int, n_samples: int,
                     segment: int = 0) -> Tuple[int, float, int]:
        interval_ns = c_float(0.0)
        max_samples = c_int32(0)
        status = self._lib.ps5000aGetTimebase2(handle, timebase, n_samples, byref(interval_ns),
                                               byref(max_samples), segment)
        return status, interval_ns.value, max_samples.value

    def get_minimum_timebase_stateless(self, handle: int, enabled_flags: int,
                                       resolution: int) -> Tuple[int, int, float]:
        timebase = c_uint32(0)
        interval_s = c_double(0.0)
        status = self._lib.ps5000aGetMinimumTimebaseStateless(
            handle, enabled_flags, byref(timebase), byref(interval_s),
            self._resolution_code(resolution))
        return status, timebase.value, interval_s.value

    # Triggers -----------------------------------------------------------

    def set_simple_trigger(self, handle: int, enable: bool, source: int, threshold: int,
                           direction: ThresholdDirection, delay: int,
                           auto_trigger_ms: int) -> int:
        return self._lib.ps5000aSetSimpleTrigger(handle, int(bool(enable)), source, threshold,
                                                 int(direction), delay, auto_trigger_ms)

    def set_trigger_channel_properties(self, handle: int,
                                       properties: List[TriggerChannelProperties],
                                       auto_trigger_ms: int) -> int:
        array = (TriggerChannelPropertiesStruct * max(len(properties), 1))()
        for item, prop in zip(array, properties):
            item.thresholdUpper = prop.threshold_upper
            item.thresholdUpperHysteresis = prop.threshold_upper_hysteresis
            item.thresholdLower = prop.threshold_lower
            item.thresholdLowerHysteresis = prop.threshold_lower_hysteresis
            item.channel = prop.channel
            item.thresholdMode = int(prop.threshold_mode)
        return self._lib.ps5000aSetTriggerChannelProperties(handle, array, len(properties), 0,
                                                            auto_trigger_ms)

    def set_trigger_channel_conditions(self, handle: int,
                                       conditions: List[TriggerCondition]) -> int:
        array = (TriggerConditionsStruct * max(len(conditions), 1))()
        for item, condition in zip(array, conditions):
            for channel, state in condition.sources.items():
                if channel < len(_CHANNEL_FIELDS):
                    setattr(item, _CHANNEL_FIELDS[channel], int(state))
            item.pulseWidthQualifier = int(condition.pulse_width_qualifier)
        return self._lib.ps5000aSetTriggerChannelConditions(handle, array, len(conditions))

    def set_trigger_channel_directions(self, handle: int,
                                       directions: List[TriggerDirection]) -> int:
        values = [int(ThresholdDirection.RISING)] * 6
        for entry in directions:
            if entry.channel < len(_CHANNEL_FIELDS):
                values[entry.channel] = int(entry.direction)
        return self._lib.ps5000aSetTriggerChannelDirections(handle, *values)

    def set_trigger_delay(self, handle: int, delay: int) -> int:
        return self._lib.ps5000aSetTriggerDelay(handle, delay)

    def set_pulse_width_qualifier(self, handle: int,
                                  qualifier: Optional[PulseWidthQualifier]) -> int:
        if qualifier is None:
            return self._lib.ps5000aSetPulseWidthQualifier(
                handle, None, 0, int(ThresholdDirection.RISING), 0, 0, 0)
        array = (PwqConditionsStruct * max(len(qualifier.conditions), 1))()
        for item, term in zip(array, qualifier.conditions):
            for channel, state in term.items():
                if channel < len(_CHANNEL_FIELDS):
                    setattr(item, _CHANNEL_FIELDS[channel], int(TriggerState(state)))
        return self._lib.ps5000aSetPulseWidthQualifier(
            handle, array, len(qualifier.conditions), int(qualifier.direction), qualifier.lower,
            qualifier.upper, int(qualifier.pwq_type))

    # ETS ----------------------------------------------------------------

    def set_ets(self, handle: int, mode: EtsMode, cycles: int,
                interleave: int) -> Tuple[int, int]:
        sample_time_ps = c_int32(0)
        status = self._lib.ps5000aSetEts(handle, int(mode), cycles, interleave,
                                         byref(sample_time_ps))
        return status, sample_time_ps.value

    def set_ets_time_buffer(self, handle: int, buffer: Optional[np.ndarray]) -> int:
        if buffer is None:
            self._ets_buffers.pop(handle, None)
            return self._lib.ps5000aSetEtsTimeBuffer(handle, None, 0)
        self._ets_buffers[handle] = buffer
        return self._lib.ps5000aSetEtsTimeBuffer(handle, _as_pointer(buffer, c_int64), len(buffer))

    # Buffers and acquisition ---------------------------------------------

    def set_data_buffers(self, handle: int, channel: int, buffer_max: Optional[np.ndarray],
                         buffer_min: Optional[np.ndarray], segment: int,
                         ratio_mode: RatioMode) -> int:
        key = (handle, channel, segment)
        length = len(buffer_max) if buffer_max is not None else 0
        status = self._lib.ps5000aSetDataBuffers(handle, channel, _as_pointer(buffer_max),
                                                 _as_pointer(buffer_min), length, segment,
                                                 int(ratio_mode))
        if status == ps.PICO_OK:
            if buffer_max is None and buffer_min is None:
                self._registered.pop(key, None)
            else:
                self._registered[key] = (buffer_max, buffer_min)
        return status

    def run_block(self, handle: int, pre_trigger: int, post_trigger: int, timebase: int,
                  segment: int, ready_callback: BlockReadyCallback) -> Tuple[int, int]:
        context = _register_context(ready_callback)
        time_indisposed = c_int32(0)
        status = self._lib.ps5000aRunBlock(handle, pre_trigger, post_trigger, timebase,
                                           byref(time_indisposed), segment,
                                           _block_ready_trampoline, c_void_p(context))
        if status != ps.PICO_OK:
            _release_context(context)
        return status, time_indisposed.value

    def is_ready(self, handle: int) -> Tuple[int, bool]:
        ready = c_int16(0)
        status = self._lib.ps5000aIsReady(handle, byref(ready))
        return status, bool(ready.value)

    def run_streaming(self, handle: int, sample_interval: int, time_units: TimeUnits,
                      pre_trigger: int, post_trigger: int, auto_stop: bool, ratio: int,
                      ratio_mode: RatioMode, overview_buffer_size: int) -> Tuple[int, int]:
        interval = c_uint32(sample_interval)
        status = self._lib.ps5000aRunStreaming(handle, byref(interval), int(time_units),
                                               pre_trigger, post_trigger, int(bool(auto_stop)),
                                               ratio, int(ratio_mode), overview_buffer_size)
        return status, interval.value

    def get_streaming_latest_values(self, handle: int, callback: StreamingCallback) -> int:
        # the driver invokes the callback before this call returns
        context = _register_context(callback)
        try:
            return self._lib.ps5000aGetStreamingLatestValues(handle, _streaming_ready_trampoline,
                                                             c_void_p(context))
        finally:
            _release_context(context)

    def get_values(self, handle: int, start: int, n_samples: int, ratio: int,
                   ratio_mode: RatioMode, segment: int) -> Tuple[int, int, int]:
        count = c_uint32(n_samples)
        overflow = c_int16(0)
        status = self._lib.ps5000aGetValues(handle, start, byref(count), ratio, int(ratio_mode),
                                            segment, byref(overflow))
        return status, count.value, overflow.value

    def get_values_bulk(self, handle: int, n_samples: int, from_segment: int, to_segment: int,
                        ratio: int, ratio_mode: RatioMode) -> Tuple[int, int, List[int]]:
        count = c_uint32(n_samples)
        overflows = (c_int16 * (to_segment - from_segment + 1))()
        status = self._lib.ps5000aGetValuesBulk(handle, byref(count), from_segment, to_segment,
                                                ratio, int(ratio_mode), overflows)
        return status, count.value, list(overflows)

    def get_trigger_info_bulk(self, handle: int, from_segment: int,
                              to_segment: int) -> Tuple[int, List[TriggerInfo]]:
        infos = (TriggerInfoStruct * (to_segment - from_segment + 1))()
        status = self._lib.ps5000aGetTriggerInfoBulk(handle, infos, from_segment, to_segment)
        # the A API does not report the trigger sample index; -1 means "at pre-trigger"
        return status, [TriggerInfo(info.status, info.segmentIndex, -1, info.triggerTime,
                                    info.timeUnits, info.timeStampCounter) for info in infos]

    def memory_segments(self, handle: int, n_segments: int) -> Tuple[int, int]:
        max_samples = c_int32(0)
        status = self._lib.ps5000aMemorySegments(handle, n_segments, byref(max_samples))
        return status, max_samples.value

    def set_no_of_captures(self, handle: int, n_captures: int) -> int:
        return self._lib.ps5000aSetNoOfCaptures(handle, n_captures)

    def get_no_of_captures(self, handle: int) -> Tuple[int, int]:
        captures = c_uint32(0)
        status = self._lib.ps5000aGetNoOfCaptures(handle, byref(captures))
        return status, captures.value

    def stop(self, handle: int) -> int:
        return self._lib.ps5000aStop(handle)
