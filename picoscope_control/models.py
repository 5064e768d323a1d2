"""Model capability descriptors for the supported PicoScope/PicoLog families.

The acquisition core never branches on model strings. It reads a
:class:`ModelCapabilities` record looked up by the variant string the
driver reports in unit-info line 3.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum, IntEnum
from typing import Dict, Optional, Tuple

from .pico_status import UnsupportedFeatureError

logger = logging.getLogger(__name__)


class Channel(IntEnum):
    """Analogue input channels."""
    A = 0
    B = 1
    C = 2
    D = 3
    E = 4
    F = 5
    G = 6
    H = 7


class Coupling(str, Enum):
    """Valid channel coupling options."""
    AC = "AC"
    DC = "DC"
    DC_50R = "DC_50R"


class Resolution(IntEnum):
    """ADC vertical resolution in bits."""
    BIT_8 = 8
    BIT_10 = 10
    BIT_12 = 12
    BIT_14 = 14
    BIT_15 = 15
    BIT_16 = 16
    BIT_20 = 20


def channel_name(channel: int) -> str:
    """Return the front-panel letter of a channel index."""
    return Channel(channel).name


def parse_channel(value) -> int:
    """Accept a channel letter ('A', 'b') or index and return the index."""
    if isinstance(value, str):
        text = value.strip().upper()
        if text.isdigit():
            return int(text)
        try:
            return int(Channel[text])
        except KeyError:
            raise ValueError(f"Unknown channel: {value!r}") from None
    return int(value)


@dataclass(frozen=True)
class RangeTable:
    """Ordered input ranges in millivolts full scale; index 0 is the smallest."""
    millivolts: Tuple[int, ...]

    def __len__(self) -> int:
        return len(self.millivolts)

    def __getitem__(self, index: int) -> int:
        return self.millivolts[index]

    def index_of(self, range_mv: int) -> int:
        """Return the index of an exact full-scale value."""
        try:
            return self.millivolts.index(int(range_mv))
        except ValueError:
            raise ValueError(f"{range_mv} mV is not in the range table {self.millivolts}") from None


PS5000A_RANGES = RangeTable((10, 20, 50, 100, 200, 500, 1000, 2000, 5000, 10000, 20000, 50000))
PS4000A_RANGES = RangeTable((10, 20, 50, 100, 200, 500, 1000, 2000, 5000, 10000, 20000, 50000,
                             100000, 200000))
PS2000A_RANGES = RangeTable((10, 20, 50, 100, 200, 500, 1000, 2000, 5000, 10000, 20000, 50000))
PS3000A_RANGES = RangeTable((10, 20, 50, 100, 200, 500, 1000, 2000, 5000, 10000, 20000, 50000))
PS6000A_RANGES = RangeTable((10, 20, 50, 100, 200, 500, 1000, 2000, 5000, 10000, 20000))
HRDL_RANGES = RangeTable((39, 78, 156, 313, 625, 1250, 2500))

HRDL_CONVERSION_TIMES_MS = (60, 100, 180, 340, 660)
MAX_UINT32 = 2 ** 32 - 1


def _ps5000a_interval_ns(timebase: int, resolution: int) -> float:
    if resolution == Resolution.BIT_8:
        return float(2 ** timebase) if timebase < 3 else float((timebase - 2) * 8)
    if resolution == Resolution.BIT_12:
        return float(2 ** (timebase - 1) * 2) if timebase < 4 else float((timebase - 3) * 16)
    if resolution in (Resolution.BIT_14, Resolution.BIT_15):
        return 8.0 if timebase == 3 else float((timebase - 2) * 8)
    return 16.0 if timebase == 4 else float((timebase - 3) * 16)


def _ps5000a_minimum_timebase(resolution: int, enabled: int) -> int:
    if resolution == Resolution.BIT_8:
        return 0 if enabled <= 1 else (1 if enabled == 2 else 2)
    if resolution == Resolution.BIT_12:
        return 1 if enabled <= 1 else (2 if enabled == 2 else 3)
    if resolution in (Resolution.BIT_14, Resolution.BIT_15):
        return 3
    return 4


def _ps2000a_interval_ns(timebase: int, resolution: int) -> float:
    return float(2 ** timebase) if timebase < 3 else float((timebase - 2) * 8)


def _ps2000a_minimum_timebase(resolution: int, enabled: int) -> int:
    return 0 if enabled <= 1 else (1 if enabled == 2 else 2)


def _ps4000a_interval_ns(timebase: int, resolution: int) -> float:
    return 12.5 * (timebase + 1)


def _ps6000a_interval_ns(timebase: int, resolution: int) -> float:
    return 0.2 * 2 ** timebase if timebase < 5 else (timebase - 4) * 6.4


def _ps6000a_minimum_timebase(resolution: int, enabled: int) -> int:
    return {Resolution.BIT_8: 0, Resolution.BIT_10: 1}.get(resolution, 2)


def _hrdl_interval_ns(timebase: int, resolution: int) -> float:
    return HRDL_CONVERSION_TIMES_MS[timebase] * 1e6


def _zero_minimum_timebase(resolution: int, enabled: int) -> int:
    return 0


_TIMEBASE_RULES = {
    "ps5000a": (_ps5000a_interval_ns, _ps5000a_minimum_timebase),
    "ps4000a": (_ps4000a_interval_ns, _zero_minimum_timebase),
    "ps2000a": (_ps2000a_interval_ns, _ps2000a_minimum_timebase),
    "ps3000a": (_ps2000a_interval_ns, _ps2000a_minimum_timebase),
    "ps6000a": (_ps6000a_interval_ns, _ps6000a_minimum_timebase),
    "hrdl": (_hrdl_interval_ns, _zero_minimum_timebase),
}


@dataclass(frozen=True)
class ModelCapabilities:
    """Capability descriptor for one device variant.

    Attributes:
        variant: Variant string reported by the driver (unit info line 3)
        family: Driver family ('ps5000a', 'ps4000a', ...)
        channel_count: Number of analogue inputs
        ranges: Range table shared by the family
        first_range: Smallest range index the variant accepts
        last_range: Largest range index the variant accepts
        resolutions: Supported vertical resolutions
        resolution_quota: Maximum simultaneously enabled channels per resolution
        max_adc: Maximum ADC count per resolution
        usb_power_channel_limit: Channels usable on USB power only (None if unrestricted)
        differential_pairs: Inputs form (primary, secondary) differential pairs
    """
    variant: str
    family: str
    channel_count: int
    ranges: RangeTable
    first_range: int
    last_range: int
    default_range: int
    resolutions: Tuple[int, ...]
    default_resolution: int
    resolution_quota: Dict[int, int]
    max_adc: Dict[int, int]
    couplings: Tuple[Coupling, ...] = (Coupling.AC, Coupling.DC)
    max_timebase: int = MAX_UINT32
    has_signal_generator: bool = False
    awg_buffer_size: int = 0
    has_ets: bool = False
    ets_sample_time_ps: int = 0
    usb_power_channel_limit: Optional[int] = None
    digital_port_count: int = 0
    differential_pairs: bool = False
    max_segments: int = 1
    memory_samples: int = 0
    min_stream_interval_ns: float = 8.0
    sample_dtype: str = "int16"

    @property
    def has_flexible_resolution(self) -> bool:
        return len(self.resolutions) > 1

    @property
    def is_mso(self) -> bool:
        return self.digital_port_count > 0

    def range_mv(self, range_index: int) -> int:
        return self.ranges[range_index]

    def range_index_for_mv(self, range_mv: int) -> int:
        """Return the range index of a full-scale mV value valid on this variant."""
        index = self.ranges.index_of(range_mv)
        if not self.first_range <= index <= self.last_range:
            raise ValueError(f"{range_mv} mV is outside the ranges supported by {self.variant}")
        return index

    def quota(self, resolution: int) -> int:
        """Maximum number of channels enabled together at a resolution."""
        return self.resolution_quota.get(int(resolution), self.channel_count)

    def max_adc_for(self, resolution: int) -> int:
        if int(resolution) not in self.max_adc:
            return self.max_adc[self.default_resolution]
        return self.max_adc[int(resolution)]

    def interval_ns(self, timebase: int, resolution: int) -> float:
        """Sample interval selected by a timebase index."""
        interval_rule, _ = _TIMEBASE_RULES[self.family]
        return interval_rule(timebase, int(resolution))

    def minimum_timebase(self, resolution: int, enabled_channels: int) -> int:
        """Fastest timebase usable with a number of enabled channels."""
        _, minimum_rule = _TIMEBASE_RULES[self.family]
        return minimum_rule(int(resolution), enabled_channels)


_PS5000A_RESOLUTIONS = (Resolution.BIT_8, Resolution.BIT_12, Resolution.BIT_14,
                        Resolution.BIT_15, Resolution.BIT_16)
_PS5000A_MAX_ADC = {8: 32512, 12: 32767, 14: 32767, 15: 32767, 16: 32767}


def _ps5000a(variant: str, channels: int, awg: bool, mso: bool = False,
             memory: int = 128_000_000) -> ModelCapabilities:
    quota = {8: channels, 12: channels, 14: channels, 15: 2, 16: 1}
    return ModelCapabilities(
        variant=variant, family="ps5000a", channel_count=channels,
        ranges=PS5000A_RANGES, first_range=0, last_range=10, default_range=7,
        resolutions=_PS5000A_RESOLUTIONS, default_resolution=Resolution.BIT_8,
        resolution_quota=quota, max_adc=dict(_PS5000A_MAX_ADC),
        max_timebase=MAX_UINT32, has_signal_generator=True,
        awg_buffer_size=32768 if awg else 0, has_ets=True, ets_sample_time_ps=200,
        usb_power_channel_limit=2 if channels == 4 else None,
        digital_port_count=2 if mso else 0, max_segments=250000,
        memory_samples=memory, min_stream_interval_ns=8.0,
    )


MODEL_TABLE: Dict[str, ModelCapabilities] = {
    caps.variant: caps for caps in (
        _ps5000a("5242A", 2, awg=False, memory=32_000_000),
        _ps5000a("5242B", 2, awg=True, memory=64_000_000),
        _ps5000a("5244B", 2, awg=True, memory=64_000_000),
        _ps5000a("5443B", 4, awg=True, memory=64_000_000),
        _ps5000a("5444B", 4, awg=True, memory=128_000_000),
        _ps5000a("5444D", 4, awg=True, memory=256_000_000),
        _ps5000a("5444D MSO", 4, awg=True, mso=True, memory=256_000_000),
        ModelCapabilities(
            variant="4824", family="ps4000a", channel_count=8,
            ranges=PS4000A_RANGES, first_range=0, last_range=11, default_range=7,
            resolutions=(Resolution.BIT_12,), default_resolution=Resolution.BIT_12,
            resolution_quota={12: 8}, max_adc={12: 32767},
            has_signal_generator=True, awg_buffer_size=16384,
            max_segments=10000, memory_samples=256_000_000, min_stream_interval_ns=12.5,
        ),
        ModelCapabilities(
            variant="2204A", family="ps2000a", channel_count=2,
            ranges=PS2000A_RANGES, first_range=2, last_range=10, default_range=7,
            resolutions=(Resolution.BIT_8,), default_resolution=Resolution.BIT_8,
            resolution_quota={8: 2}, max_adc={8: 32512},
            has_signal_generator=True, awg_buffer_size=4096,
            max_segments=32, memory_samples=8000, min_stream_interval_ns=100.0,
        ),
        ModelCapabilities(
            variant="3404D MSO", family="ps3000a", channel_count=4,
            ranges=PS3000A_RANGES, first_range=1, last_range=10, default_range=7,
            resolutions=(Resolution.BIT_8,), default_resolution=Resolution.BIT_8,
            resolution_quota={8: 4}, max_adc={8: 32512},
            has_signal_generator=True, awg_buffer_size=32768, has_ets=True,
            ets_sample_time_ps=100, digital_port_count=2,
            max_segments=10000, memory_samples=64_000_000, min_stream_interval_ns=8.0,
        ),
        ModelCapabilities(
            variant="6824E", family="ps6000a", channel_count=8,
            ranges=PS6000A_RANGES, first_range=0, last_range=10, default_range=7,
            resolutions=(Resolution.BIT_8, Resolution.BIT_10, Resolution.BIT_12),
            default_resolution=Resolution.BIT_8,
            resolution_quota={8: 8, 10: 4, 12: 2},
            max_adc={8: 32512, 10: 32704, 12: 32736},
            couplings=(Coupling.AC, Coupling.DC, Coupling.DC_50R),
            has_signal_generator=True, awg_buffer_size=40960,
            max_segments=2_000_000, memory_samples=4_000_000_000, min_stream_interval_ns=0.8,
        ),
        ModelCapabilities(
            variant="ADC-20", family="hrdl", channel_count=8,
            ranges=HRDL_RANGES, first_range=0, last_range=6, default_range=6,
            resolutions=(Resolution.BIT_20,), default_resolution=Resolution.BIT_20,
            resolution_quota={20: 8}, max_adc={20: 524287},
            couplings=(Coupling.DC,), max_timebase=len(HRDL_CONVERSION_TIMES_MS) - 1,
            differential_pairs=True, max_segments=1, memory_samples=1_000_000,
            min_stream_interval_ns=60e6, sample_dtype="int32",
        ),
    )
}

_FAMILY_DEFAULTS = {
    "ps5000a": "5444D",
    "ps4000a": "4824",
    "ps2000a": "2204A",
    "ps3000a": "3404D MSO",
    "ps6000a": "6824E",
    "hrdl": "ADC-20",
}


def capabilities_for_variant(variant: str, family: Optional[str] = None) -> ModelCapabilities:
    """Look up the capability descriptor for a variant string.

    Unknown variants of a known family are derived from the family's
    reference model: the channel count is the second character of the
    variant string and an 'MSO' suffix adds two digital ports.

    Args:
        variant: Variant string as reported by the driver
        family: Driver family used to derive unknown variants

    Returns:
        Capability descriptor

    Raises:
        UnsupportedFeatureError: If the variant is unknown and no family is given
    """
    key = " ".join(variant.strip().upper().split())
    if key in MODEL_TABLE:
        return MODEL_TABLE[key]

    if family is None or family not in _FAMILY_DEFAULTS:
        raise UnsupportedFeatureError(f"Unknown device variant: {variant!r}",
                                      operation="capabilities_for_variant")

    base = MODEL_TABLE[_FAMILY_DEFAULTS[family]]
    channels = base.channel_count
    if len(key) > 1 and key[1].isdigit() and int(key[1]) in (1, 2, 4, 8):
        channels = int(key[1])
    quota = {res: min(count, channels) for res, count in base.resolution_quota.items()}
    usb_limit = base.usb_power_channel_limit if channels > 2 else None
    logger.warning(f"Variant {variant!r} not in model table, derived from {base.variant}")
    return replace(
        base, variant=key, channel_count=channels, resolution_quota=quota,
        usb_power_channel_limit=usb_limit,
        digital_port_count=2 if "MSO" in key else 0,
    )
