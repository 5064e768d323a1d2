"""Capture configuration and logging setup.

An :class:`AcquisitionConfig` holds everything one capture session needs:
which unit, which channels at which range, the acquisition mode and its
timing, the trigger and where the samples go. It can be loaded from and
saved to JSON.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .models import Channel, Coupling, parse_channel
from .driver import RatioMode, TimeUnits
from .trigger import ThresholdDirection

LIBRARY_ENV_VAR = "PICO_PS5000A_LIBRARY"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

MODES = ("block", "rapid", "stream")


@dataclass
class ChannelConfig:
    """One input to enable."""
    channel: Union[str, int]
    range_mv: int = 2000
    coupling: str = "DC"
    analogue_offset: float = 0.0

    @property
    def index(self) -> int:
        return parse_channel(self.channel)


@dataclass
class TriggerConfig:
    """Simple level trigger."""
    source: Union[str, int] = "A"
    threshold_mv: int = 500
    direction: str = "RISING"
    delay: int = 0
    auto_trigger_ms: int = 0
    enabled: bool = True


@dataclass
class AcquisitionConfig:
    """Settings for one capture session."""

    mode: str = "stream"
    channels: List[ChannelConfig] = field(default_factory=lambda: [ChannelConfig("A")])
    resolution: int = 8
    serial: Optional[str] = None
    simulate: bool = False

    # Block and rapid block
    timebase: int = 8
    samples: int = 10000
    captures: int = 10

    # Pre/post trigger sample counts (block and streaming)
    pre_trigger: int = 0
    post_trigger: int = 100000

    # Streaming
    sample_interval: int = 1
    time_units: str = "US"
    buffer_capacity: int = 100000
    auto_stop: bool = True
    indexing: str = "driver"
    app_capacity: Optional[int] = None

    downsample_ratio: int = 1
    ratio_mode: str = "NONE"

    trigger: Optional[TriggerConfig] = None

    # Output
    output: str = "capture.csv"
    file_format: str = "csv"
    scale_to_mv: bool = True
    poll_interval: float = 0.001
    duration: Optional[float] = None

    def validate(self) -> Tuple[bool, str]:
        """Check the settings before touching any hardware.

        Returns:
            (True, "OK") if valid, or (False, "error message") if not
        """
        if self.mode not in MODES:
            return False, f"Mode must be one of {', '.join(MODES)}, got {self.mode!r}"
        if not self.channels:
            return False, "At least one channel must be enabled"
        seen = set()
        for channel in self.channels:
            try:
                index = channel.index
            except (KeyError, ValueError):
                return False, f"Unknown channel {channel.channel!r}"
            if index not in Channel.__members__.values():
                return False, f"Unknown channel {channel.channel!r}"
            if index in seen:
                return False, f"Channel {Channel(index).name} listed twice"
            seen.add(index)
            if channel.range_mv <= 0:
                return False, f"Channel {Channel(index).name} range must be positive"
            try:
                Coupling(channel.coupling.upper())
            except ValueError:
                return False, f"Unknown coupling {channel.coupling!r}"
        if self.samples < 1 and self.mode != "stream":
            return False, "Sample count must be at least 1"
        if self.mode == "rapid" and self.captures < 1:
            return False, "Number of captures must be at least 1"
        if self.pre_trigger < 0 or self.post_trigger < 0:
            return False, "Pre/post trigger sample counts cannot be negative"
        if self.mode == "stream":
            if self.sample_interval < 1:
                return False, "Sample interval must be at least 1"
            if self.time_units.upper() not in TimeUnits.__members__:
                return False, f"Unknown time units {self.time_units!r}"
            if self.buffer_capacity < 1:
                return False, "Buffer capacity must be at least 1"
            if self.indexing not in ("driver", "app"):
                return False, "Indexing must be 'driver' or 'app'"
            if self.auto_stop and self.pre_trigger + self.post_trigger < 1:
                return False, "Auto-stop needs a positive pre + post trigger sample count"
        if self.downsample_ratio < 1:
            return False, "Downsample ratio must be at least 1"
        if self.ratio_mode.upper() not in RatioMode.__members__:
            return False, f"Unknown ratio mode {self.ratio_mode!r}"
        if self.file_format not in ("csv", "tsv"):
            return False, "Output format must be csv or tsv"
        if self.duration is not None and self.duration <= 0:
            return False, "Duration must be positive"
        if self.trigger is not None and self.trigger.enabled:
            try:
                source = parse_channel(self.trigger.source)
            except (KeyError, ValueError):
                return False, f"Unknown trigger source {self.trigger.source!r}"
            if source not in seen:
                return False, f"Trigger source {self.trigger.source!r} is not an enabled channel"
            if self.trigger.direction.upper() not in ThresholdDirection.__members__:
                return False, f"Unknown trigger direction {self.trigger.direction!r}"
        return True, "OK"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AcquisitionConfig":
        values = dict(data)
        if "channels" in values:
            values["channels"] = [
                ChannelConfig(**item) if isinstance(item, dict) else ChannelConfig(item)
                for item in values["channels"]
            ]
        if values.get("trigger") is not None:
            values["trigger"] = TriggerConfig(**values["trigger"])
        unknown = set(values) - set(cls.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config(path: Union[str, Path]) -> AcquisitionConfig:
    """Read an :class:`AcquisitionConfig` from a JSON file."""
    with open(path, 'r') as f:
        data = json.load(f)
    return AcquisitionConfig.from_dict(data)


def save_config(config: AcquisitionConfig, path: Union[str, Path]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(config.to_dict(), f, indent=2, default=str)
    return path


def library_path() -> Optional[str]:
    """Shared-library override from the environment, if set."""
    return os.environ.get(LIBRARY_ENV_VAR) or None


def setup_logging(level: Union[int, str] = logging.INFO,
                  log_file: Optional[Union[str, Path]] = None) -> logging.Logger:
    """Configure console (and optional file) logging on the root logger."""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger()
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file is not None:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
