#!/usr/bin/env python3
"""
PicoScope Acquisition Library

Block, rapid block and streaming capture from PicoScope USB oscilloscopes
through the vendor driver, with a simulated driver for development and
testing.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "Professional Instrument Control Team"
__email__ = "support@example.com"
__license__ = "MIT"
__description__ = "PicoScope block, rapid block and streaming acquisition"

from .pico_status import (
    PicoScopeError, DeviceNotFoundError, DeviceAlreadyOpenError, DeviceBusyError,
    DeviceLostError, UsbFailureError, PowerSourceChangedError, PowerSupplyNotConnectedError,
    Usb3On2PortError, InvalidConfigurationError, ChannelUnavailableError, RangeOutOfBoundsError,
    InvalidCouplingError, ResolutionIncompatibleError, TooManyChannelsForResolutionError,
    TimebaseInvalidError, TriggerConfigurationError, NoSamplesAvailableError,
    BufferExhaustedError, CancelledError, UnsupportedFeatureError, check_status,
)
from .models import Channel, Coupling, Resolution, ModelCapabilities, capabilities_for_variant
from .driver import PicoDriver, RatioMode, TimeUnits, EtsMode
from .simulated_driver import SimulatedDriver
from .ps5000a_driver import PS5000ADriver
from .device import DeviceRegistry, PicoScopeDevice, PowerSource
from .acquisition import AcquisitionController, AcquisitionMode, CaptureState
from .streaming import IndexingMode, StreamingPipeline
from .drain import (ConsumerDrain, DrainOutcome, DrainResult, EventCancellation,
                    TimerCancellation, KeypressCancellation, AnyCancellation)
from .trigger import ThresholdDirection, TriggerSpec, simple_edge_trigger
from .writers import TabularSink, write_block_capture
from .config import AcquisitionConfig, load_config, save_config, setup_logging

__all__ = [
    # Version information
    "__version__",
    "__author__",
    "__license__",
    "__description__",

    # Errors
    "PicoScopeError",
    "DeviceNotFoundError",
    "DeviceAlreadyOpenError",
    "DeviceBusyError",
    "DeviceLostError",
    "UsbFailureError",
    "PowerSourceChangedError",
    "PowerSupplyNotConnectedError",
    "Usb3On2PortError",
    "InvalidConfigurationError",
    "ChannelUnavailableError",
    "RangeOutOfBoundsError",
    "InvalidCouplingError",
    "ResolutionIncompatibleError",
    "TooManyChannelsForResolutionError",
    "TimebaseInvalidError",
    "TriggerConfigurationError",
    "NoSamplesAvailableError",
    "BufferExhaustedError",
    "CancelledError",
    "UnsupportedFeatureError",
    "check_status",

    # Models and drivers
    "Channel",
    "Coupling",
    "Resolution",
    "ModelCapabilities",
    "capabilities_for_variant",
    "PicoDriver",
    "RatioMode",
    "TimeUnits",
    "EtsMode",
    "SimulatedDriver",
    "PS5000ADriver",

    # Devices and acquisition
    "DeviceRegistry",
    "PicoScopeDevice",
    "PowerSource",
    "AcquisitionController",
    "AcquisitionMode",
    "CaptureState",
    "IndexingMode",
    "StreamingPipeline",
    "ConsumerDrain",
    "DrainOutcome",
    "DrainResult",
    "EventCancellation",
    "TimerCancellation",
    "KeypressCancellation",
    "AnyCancellation",
    "ThresholdDirection",
    "TriggerSpec",
    "simple_edge_trigger",

    # Output and configuration
    "TabularSink",
    "write_block_capture",
    "AcquisitionConfig",
    "load_config",
    "save_config",
    "setup_logging",
    "create_driver",
]

# Library information
LIBRARY_INFO = {
    "name": "PicoScope Acquisition Library",
    "version": __version__,
    "author": __author__,
    "license": __license__,
    "description": __description__,
    "drivers": {
        "ps5000a": "PicoScope 5000A/B/D Series (ctypes binding of the ps5000a library)",
        "simulated": "In-process simulated unit for development and tests",
    },
    "capture_modes": ["block", "rapid block", "streaming", "windowed streaming", "ETS"],
}


def get_library_info() -> dict:
    """
    Get library information.

    Returns:
        Dictionary containing library metadata and capabilities
    """
    return LIBRARY_INFO.copy()


def check_dependencies() -> dict:
    """
    Check availability of required dependencies.

    Returns:
        Dictionary with dependency status information
    """
    dependencies = {}
    for dep in ("numpy", "pandas"):
        try:
            module = __import__(dep)
            dependencies[dep] = {
                'available': True,
                'version': getattr(module, '__version__', 'unknown'),
            }
        except ImportError:
            dependencies[dep] = {
                'available': False,
                'error': f'{dep} not installed',
            }

    try:
        from .ps5000a_driver import find_ps5000a_library
        dependencies['ps5000a'] = {'available': True, 'path': find_ps5000a_library()}
    except DeviceNotFoundError as e:
        dependencies['ps5000a'] = {'available': False, 'error': str(e)}

    return dependencies


def create_driver(kind: str = "ps5000a", **kwargs) -> PicoDriver:
    """
    Factory function to create driver bindings.

    Args:
        kind: "ps5000a" for the vendor library or "simulated"
        **kwargs: Additional arguments passed to the constructor

    Returns:
        Driver instance

    Raises:
        ValueError: If kind is not supported
    """
    kind = kind.lower().replace("-", "_").replace(" ", "_")

    if kind in ["ps5000a", "ps5000", "picoscope5000"]:
        return PS5000ADriver(**kwargs)
    elif kind in ["simulated", "sim", "simulator"]:
        return SimulatedDriver(**kwargs)
    else:
        raise ValueError(f"Unsupported driver: {kind}. Supported drivers: ps5000a, simulated")
