"""Trigger specification records.

A :class:`TriggerSpec` bundles the channel properties, conditions and
directions triplet together with the trigger delay, the auto-trigger timeout
and an optional pulse-width qualifier. :func:`simple_edge_trigger` builds the
common single-channel level trigger.
"""

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional, Set

from .pico_status import TriggerConfigurationError
from .scaling import mv_to_adc

logger = logging.getLogger(__name__)

# Default hysteresis in ADC counts used by the level trigger helpers
TRIGGER_HYSTERESIS_ADC = 256 * 10


class ThresholdDirection(IntEnum):
    """Trigger threshold directions (driver enumeration values)."""
    ABOVE = 0
    BELOW = 1
    RISING = 2
    FALLING = 3
    RISING_OR_FALLING = 4


class ThresholdMode(IntEnum):
    LEVEL = 0
    WINDOW = 1


class TriggerState(IntEnum):
    DONT_CARE = 0
    TRUE = 1
    FALSE = 2


class PulseWidthType(IntEnum):
    NONE = 0
    LESS_THAN = 1
    GREATER_THAN = 2
    IN_RANGE = 3
    OUT_OF_RANGE = 4


@dataclass
class TriggerChannelProperties:
    """Threshold settings for one trigger source, in ADC counts."""
    channel: int
    threshold_upper: int
    threshold_upper_hysteresis: int = TRIGGER_HYSTERESIS_ADC
    threshold_lower: int = 0
    threshold_lower_hysteresis: int = TRIGGER_HYSTERESIS_ADC
    threshold_mode: ThresholdMode = ThresholdMode.LEVEL


@dataclass
class TriggerCondition:
    """One AND-term of the trigger logic; terms are OR-ed together."""
    sources: Dict[int, TriggerState] = field(default_factory=dict)
    pulse_width_qualifier: TriggerState = TriggerState.DONT_CARE

    def active_channels(self) -> Set[int]:
        return {channel for channel, state in self.sources.items()
                if state != TriggerState.DONT_CARE}


@dataclass
class TriggerDirection:
    channel: int
    direction: ThresholdDirection = ThresholdDirection.RISING


@dataclass
class PulseWidthQualifier:
    """Pulse-width qualifier; lower/upper are in sample counts."""
    conditions: List[Dict[int, TriggerState]]
    direction: ThresholdDirection
    lower: int
    upper: int = 0
    pwq_type: PulseWidthType = PulseWidthType.GREATER_THAN


@dataclass
class TriggerSpec:
    """Complete advanced trigger setup.

    Attributes:
        properties: Threshold settings per source channel
        conditions: Trigger logic terms
        directions: Edge direction per source channel
        delay: Samples between the trigger event and the trigger point
        auto_trigger_ms: Fire after this many ms without an event (0 waits forever)
        pulse_width: Optional pulse-width qualifier; None clears it
    """
    properties: List[TriggerChannelProperties] = field(default_factory=list)
    conditions: List[TriggerCondition] = field(default_factory=list)
    directions: List[TriggerDirection] = field(default_factory=list)
    delay: int = 0
    auto_trigger_ms: int = 0
    pulse_width: Optional[PulseWidthQualifier] = None

    def source_channels(self) -> Set[int]:
        """Channels the trigger logic depends on."""
        sources: Set[int] = set()
        for condition in self.conditions:
            sources |= condition.active_channels()
        if self.pulse_width is not None:
            for term in self.pulse_width.conditions:
                sources |= {ch for ch, state in term.items() if state != TriggerState.DONT_CARE}
        return sources

    def direction_for(self, channel: int) -> ThresholdDirection:
        for entry in self.directions:
            if entry.channel == channel:
                return entry.direction
        return ThresholdDirection.RISING

    def properties_for(self, channel: int) -> Optional[TriggerChannelProperties]:
        for entry in self.properties:
            if entry.channel == channel:
                return entry
        return None

    def validate(self, enabled_channels: Set[int]) -> None:
        """Check every condition source is an enabled channel with properties.

        Raises:
            TriggerConfigurationError: On a disabled source or missing threshold
        """
        for channel in sorted(self.source_channels()):
            if channel not in enabled_channels:
                raise TriggerConfigurationError(
                    f"Trigger source channel {channel} is not enabled",
                    operation="set_trigger")
        for condition in self.conditions:
            for channel in condition.active_channels():
                if self.properties_for(channel) is None:
                    raise TriggerConfigurationError(
                        f"No threshold properties for trigger channel {channel}",
                        operation="set_trigger")
        if self.delay < 0:
            raise TriggerConfigurationError("Trigger delay cannot be negative",
                                            operation="set_trigger")


def clamp_threshold_mv(threshold_mv: int, range_mv: int) -> int:
    """Keep a trigger level inside the channel range.

    Levels beyond full scale are replaced by half the range.
    """
    if abs(threshold_mv) > range_mv:
        clamped = range_mv // 2 if threshold_mv > 0 else -(range_mv // 2)
        logger.warning(f"Trigger level {threshold_mv} mV exceeds the {range_mv} mV range, "
                       f"using {clamped} mV")
        return clamped
    return threshold_mv


def simple_edge_trigger(channel: int, threshold_mv: int, range_mv: int, max_adc: int,
                        direction: ThresholdDirection = ThresholdDirection.RISING,
                        delay: int = 0, auto_trigger_ms: int = 0,
                        hysteresis: int = TRIGGER_HYSTERESIS_ADC) -> TriggerSpec:
    """Build a level trigger on one channel.

    Args:
        channel: Source channel index
        threshold_mv: Trigger level in mV
        range_mv: Full-scale range of the source channel
        max_adc: Maximum ADC count at the current resolution
        direction: Edge direction
        delay: Trigger delay in samples
        auto_trigger_ms: Auto-trigger timeout (0 waits indefinitely)
        hysteresis: Hysteresis in ADC counts

    Returns:
        TriggerSpec with one property, one condition and one direction
    """
    level_mv = clamp_threshold_mv(threshold_mv, range_mv)
    threshold = mv_to_adc(level_mv, range_mv, max_adc)
    return TriggerSpec(
        properties=[TriggerChannelProperties(
            channel=channel,
            threshold_upper=threshold,
            threshold_upper_hysteresis=hysteresis,
            threshold_lower=threshold,
            threshold_lower_hysteresis=hysteresis,
        )],
        conditions=[TriggerCondition(sources={channel: TriggerState.TRUE})],
        directions=[TriggerDirection(channel=channel, direction=direction)],
        delay=delay,
        auto_trigger_ms=auto_trigger_ms,
    )
