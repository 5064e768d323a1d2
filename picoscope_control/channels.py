"""Channel Configuration Store.

Keeps the enable/coupling/range/offset setting of every analogue channel and
validates changes against the model capability table before they reach the
driver: range bounds, coupling support, the per-resolution enable quota, the
USB-power channel limit and differential-pair exclusivity.
"""

import logging
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

from .driver import PicoDriver
from .models import Coupling, ModelCapabilities, channel_name
from .pico_status import (ChannelUnavailableError, DeviceBusyError, InvalidConfigurationError,
                          InvalidCouplingError, RangeOutOfBoundsError,
                          ResolutionIncompatibleError, UnsupportedFeatureError, check_status)

MAX_LOGIC_LEVEL = 32767


@dataclass(frozen=True)
class ChannelSetting:
    """Stored configuration of one analogue channel."""
    channel: int
    enabled: bool = False
    coupling: Coupling = Coupling.DC
    range_index: int = 0
    analogue_offset: float = 0.0
    single_ended: bool = True


@dataclass(frozen=True)
class DigitalPortSetting:
    port: int
    enabled: bool = False
    logic_threshold_adc: int = 0


class ChannelConfigurationStore:
    """Per-channel settings for one open device.

    Args:
        driver: Driver binding
        handle: Device handle
        model: Capability descriptor of the device
        resolution: Vertical resolution at open
    """

    def __init__(self, driver: PicoDriver, handle: int, model: ModelCapabilities,
                 resolution: int) -> None:
        self._driver = driver
        self._handle = handle
        self._model = model
        self.resolution = int(resolution)
        self.power_channel_limit: Optional[int] = None
        self._settings: Dict[int, ChannelSetting] = {
            ch: ChannelSetting(channel=ch, range_index=model.default_range)
            for ch in range(model.channel_count)
        }
        self._digital: Dict[int, DigitalPortSetting] = {}
        self._is_busy: Callable[[], bool] = lambda: False
        self._on_change: Callable[[], None] = lambda: None
        self._logger = logging.getLogger(self.__class__.__name__)

    def bind_controller(self, is_busy: Callable[[], bool], on_change: Callable[[], None]) -> None:
        """Connect the acquisition state used for the busy check and transitions."""
        self._is_busy = is_busy
        self._on_change = on_change

    # Queries ------------------------------------------------------------

    def setting(self, channel: int) -> ChannelSetting:
        self._check_channel_exists(channel)
        return self._settings[channel]

    def settings(self) -> List[ChannelSetting]:
        return [self._settings[ch] for ch in sorted(self._settings)]

    def enabled_channels(self) -> List[int]:
        return [ch for ch, setting in sorted(self._settings.items()) if setting.enabled]

    def channel_flags(self) -> int:
        """Bit mask of enabled channels (bit i set for channel i)."""
        flags = 0
        for channel in self.enabled_channels():
            flags |= 1 << channel
        return flags

    def range_mv(self, channel: int) -> int:
        return self._model.range_mv(self.setting(channel).range_index)

    def channel_quota(self) -> int:
        """Channels that may be enabled together under current resolution and power."""
        quota = self._model.quota(self.resolution)
        if self.power_channel_limit is not None:
            quota = min(quota, self.power_channel_limit)
        return quota

    def digital_ports(self) -> List[DigitalPortSetting]:
        return [self._digital[port] for port in sorted(self._digital)]

    # Changes ------------------------------------------------------------

    def set_channel(self, channel: int, enabled: bool, coupling: Coupling = Coupling.DC,
                    range_index: Optional[int] = None, analogue_offset: float = 0.0,
                    single_ended: bool = True) -> ChannelSetting:
        """Validate and apply a channel setting.

        Args:
            channel: Channel index
            enabled: Enable or disable the input
            coupling: Input coupling
            range_index: Index into the model range table (default range if None)
            analogue_offset: Analogue offset in volts
            single_ended: False to use the channel as a differential primary

        Returns:
            The stored setting

        Raises:
            DeviceBusyError: While a capture is armed or streaming
            ChannelUnavailableError: Unknown channel, power limit or pairing conflict
            RangeOutOfBoundsError: Range index outside the model bounds
            InvalidCouplingError: Coupling not supported by the model
            ResolutionIncompatibleError: Enable quota exceeded at this resolution
        """
        if self._is_busy():
            raise DeviceBusyError(f"Cannot change channel {channel} while a capture is running",
                                  operation="set_channel")
        self._check_channel_exists(channel)
        coupling = Coupling(coupling)
        if range_index is None:
            range_index = self._settings[channel].range_index
        requested = ChannelSetting(channel, bool(enabled), coupling, int(range_index),
                                   float(analogue_offset), bool(single_ended))

        if requested.enabled:
            self._validate_enable(requested)

        status = self._driver.set_channel(self._handle, channel, requested.enabled, coupling,
                                          requested.range_index, requested.analogue_offset,
                                          requested.single_ended)
        check_status(status, f"set_channel({channel_name(channel)})")

        changed = self._settings[channel] != requested
        self._settings[channel] = requested
        if changed:
            state = "enabled" if requested.enabled else "disabled"
            self._logger.info(f"Channel {channel_name(channel)} {state}: {coupling.value}, "
                              f"{self._model.range_mv(requested.range_index)} mV, "
                              f"offset {requested.analogue_offset} V")
        self._on_change()
        return requested

    def set_channel_off(self, channel: int) -> ChannelSetting:
        current = self.setting(channel)
        return self.set_channel(channel, False, current.coupling, current.range_index,
                                current.analogue_offset, current.single_ended)

    def set_digital_port(self, port: int, enabled: bool, logic_threshold_adc: int = 0) -> DigitalPortSetting:
        """Configure a digital port on MSO variants.

        Raises:
            UnsupportedFeatureError: If the variant has no digital ports
            InvalidConfigurationError: Unknown port or logic level out of range
        """
        if self._model.digital_port_count == 0:
            raise UnsupportedFeatureError(f"{self._model.variant} has no digital ports",
                                          operation="set_digital_port")
        if self._is_busy():
            raise DeviceBusyError("Cannot change digital ports while a capture is running",
                                  operation="set_digital_port")
        if not 0 <= port < self._model.digital_port_count:
            raise InvalidConfigurationError(f"Digital port {port} does not exist",
                                            operation="set_digital_port")
        if abs(logic_threshold_adc) > MAX_LOGIC_LEVEL:
            raise InvalidConfigurationError(
                f"Logic level {logic_threshold_adc} outside +/-{MAX_LOGIC_LEVEL}",
                operation="set_digital_port")
        status = self._driver.set_digital_port(self._handle, port, enabled, logic_threshold_adc)
        check_status(status, f"set_digital_port({port})")
        setting = DigitalPortSetting(port, bool(enabled), int(logic_threshold_adc))
        self._digital[port] = setting
        return setting

    def set_resolution(self, resolution: int) -> None:
        """Record a resolution change after checking the enabled set fits its quota."""
        quota = self._model.quota(resolution)
        enabled = len(self.enabled_channels())
        if enabled > quota:
            raise ResolutionIncompatibleError(
                f"{enabled} channels enabled but only {quota} allowed at {int(resolution)}-bit",
                operation="set_resolution")
        self.resolution = int(resolution)

    def apply_power_limit(self, limit: Optional[int]) -> List[int]:
        """Apply a USB-power channel limit, disabling channels beyond it.

        Returns:
            Channels that were switched off
        """
        self.power_channel_limit = limit
        dropped = []
        if limit is None:
            return dropped
        for channel, setting in sorted(self._settings.items()):
            if channel >= limit and setting.enabled:
                self._settings[channel] = replace(setting, enabled=False)
                dropped.append(channel)
        if dropped:
            names = ", ".join(channel_name(ch) for ch in dropped)
            self._logger.warning(f"USB power only: channels {names} disabled")
        return dropped

    def apply_all(self) -> None:
        """Push every stored setting to the driver again."""
        for setting in self.settings():
            status = self._driver.set_channel(self._handle, setting.channel, setting.enabled,
                                              setting.coupling, setting.range_index,
                                              setting.analogue_offset, setting.single_ended)
            check_status(status, f"set_channel({channel_name(setting.channel)})")

    # Validation ---------------------------------------------------------

    def _check_channel_exists(self, channel: int) -> None:
        if not 0 <= channel < self._model.channel_count:
            raise ChannelUnavailableError(
                f"Channel {channel} does not exist on {self._model.variant} "
                f"({self._model.channel_count} channels)", operation="set_channel")

    def _validate_enable(self, requested: ChannelSetting) -> None:
        channel = requested.channel
        model = self._model
        if not model.first_range <= requested.range_index <= model.last_range:
            raise RangeOutOfBoundsError(
                f"Range index {requested.range_index} outside [{model.first_range}, "
                f"{model.last_range}] for {model.variant}", operation="set_channel")
        if requested.coupling not in model.couplings:
            raise InvalidCouplingError(
                f"{requested.coupling.value} coupling not supported by {model.variant}",
                operation="set_channel")
        if self.power_channel_limit is not None and channel >= self.power_channel_limit:
            raise ChannelUnavailableError(
                f"Channel {channel_name(channel)} unavailable on USB power "
                f"(limit {self.power_channel_limit} channels)", operation="set_channel")
        if model.differential_pairs:
            self._validate_pairing(requested)
        elif not requested.single_ended:
            raise ChannelUnavailableError(f"{model.variant} has no differential inputs",
                                          operation="set_channel")

        enabled = set(self.enabled_channels())
        enabled.add(channel)
        quota = model.quota(self.resolution)
        if len(enabled) > quota:
            raise ResolutionIncompatibleError(
                f"Enabling channel {channel_name(channel)} would exceed the {quota}-channel "
                f"limit at {self.resolution}-bit", operation="set_channel")

    def _validate_pairing(self, requested: ChannelSetting) -> None:
        # Primaries are the even indices (inputs 1, 3, 5...), secondary = primary + 1
        channel = requested.channel
        is_primary = channel % 2 == 0
        if is_primary:
            secondary = self._settings.get(channel + 1)
            if not requested.single_ended and secondary is not None and secondary.enabled:
                raise ChannelUnavailableError(
                    f"Input {channel + 1} cannot be differential while input {channel + 2} "
                    f"is in use", operation="set_channel")
            return
        if not requested.single_ended:
            raise ChannelUnavailableError(
                f"Input {channel + 1} is a secondary input and cannot be differential",
                operation="set_channel")
        primary = self._settings[channel - 1]
        if primary.enabled and not primary.single_ended:
            raise ChannelUnavailableError(
                f"Input {channel + 1} is in use as the secondary of differential input {channel}",
                operation="set_channel")
