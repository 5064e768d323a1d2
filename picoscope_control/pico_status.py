"""PicoScope driver status codes and the exception hierarchy built on them.

Every driver entry point returns a ``PICO_STATUS`` integer. The core never
inspects raw integers outside this module: it hands them to
:func:`check_status`, which raises the matching :class:`PicoScopeError`
subclass with a message naming the failed operation and the error kind.
"""

import logging
from typing import Dict, Optional, Type

logger = logging.getLogger(__name__)

# Status codes (subset of PicoStatus.h used by the supported families)
PICO_OK = 0x000
PICO_MAX_UNITS_OPENED = 0x001
PICO_MEMORY_FAIL = 0x002
PICO_NOT_FOUND = 0x003
PICO_FW_FAIL = 0x004
PICO_OPEN_OPERATION_IN_PROGRESS = 0x005
PICO_OPERATION_FAILED = 0x006
PICO_NOT_RESPONDING = 0x007
PICO_CONFIG_FAIL = 0x008
PICO_KERNEL_DRIVER_TOO_OLD = 0x009
PICO_EEPROM_CORRUPT = 0x00A
PICO_OS_NOT_SUPPORTED = 0x00B
PICO_INVALID_HANDLE = 0x00C
PICO_INVALID_PARAMETER = 0x00D
PICO_INVALID_TIMEBASE = 0x00E
PICO_INVALID_VOLTAGE_RANGE = 0x00F
PICO_INVALID_CHANNEL = 0x010
PICO_INVALID_TRIGGER_CHANNEL = 0x011
PICO_INVALID_CONDITION_CHANNEL = 0x012
PICO_NO_SIGNAL_GENERATOR = 0x013
PICO_ETS_NOT_SUPPORTED = 0x01A
PICO_TOO_MANY_SAMPLES = 0x01D
PICO_TOO_MANY_SEGMENTS = 0x01E
PICO_DEVICE_SAMPLING = 0x024
PICO_NO_SAMPLES_AVAILABLE = 0x025
PICO_SEGMENT_OUT_OF_RANGE = 0x026
PICO_BUSY = 0x027
PICO_STARTINDEX_INVALID = 0x028
PICO_INVALID_INFO = 0x029
PICO_INVALID_SAMPLE_INTERVAL = 0x02B
PICO_MEMORY = 0x02D
PICO_INVALID_BUFFER = 0x037
PICO_CANCELLED = 0x03A
PICO_SEGMENT_NOT_USED = 0x03B
PICO_INVALID_CALL = 0x03C
PICO_NOT_USED = 0x03F
PICO_INVALID_SAMPLERATIO = 0x040
PICO_INVALID_STATE = 0x041
PICO_NOT_ENOUGH_SEGMENTS = 0x042
PICO_INVALID_COUPLING = 0x045
PICO_BUFFERS_NOT_SET = 0x046
PICO_INVALID_ANALOGUE_OFFSET = 0x050
PICO_POWER_SUPPLY_CONNECTED = 0x119
PICO_POWER_SUPPLY_NOT_CONNECTED = 0x11A
PICO_POWER_SUPPLY_REQUEST_INVALID = 0x11B
PICO_POWER_SUPPLY_UNDERVOLTAGE = 0x11C
PICO_CAPTURING_DATA = 0x11D
PICO_USB3_0_DEVICE_NON_USB3_0_PORT = 0x11E
PICO_NOT_SUPPORTED_BY_THIS_DEVICE = 0x11F
PICO_INVALID_DEVICE_RESOLUTION = 0x120
PICO_INVALID_NUMBER_CHANNELS_FOR_RESOLUTION = 0x121
PICO_CHANNEL_DISABLED_DUE_TO_USB_POWERED = 0x122
PICO_TOO_MANY_CHANNELS_IN_USE = 0x129

STATUS_NAMES: Dict[int, str] = {
    value: name for name, value in globals().items()
    if name.startswith("PICO_") and isinstance(value, int)
}

STATUS_MESSAGES: Dict[int, str] = {
    PICO_OK: "The operation completed successfully.",
    PICO_MAX_UNITS_OPENED: "An attempt has been made to open more than the maximum number of units.",
    PICO_MEMORY_FAIL: "Not enough memory could be allocated on the host machine.",
    PICO_NOT_FOUND: "No device could be found.",
    PICO_FW_FAIL: "Unable to download firmware.",
    PICO_OPEN_OPERATION_IN_PROGRESS: "An open operation is already in progress.",
    PICO_OPERATION_FAILED: "The operation failed.",
    PICO_NOT_RESPONDING: "The device is not responding to commands from the host.",
    PICO_CONFIG_FAIL: "The configuration information in the device is corrupt or missing.",
    PICO_KERNEL_DRIVER_TOO_OLD: "The kernel driver is too old to be used with the device driver.",
    PICO_EEPROM_CORRUPT: "The EEPROM has become corrupt.",
    PICO_OS_NOT_SUPPORTED: "The operating system on the host is not supported.",
    PICO_INVALID_HANDLE: "There is no device with the handle value passed.",
    PICO_INVALID_PARAMETER: "A parameter value is not valid.",
    PICO_INVALID_TIMEBASE: "The timebase is not supported or is invalid.",
    PICO_INVALID_VOLTAGE_RANGE: "The voltage range is not supported or is invalid.",
    PICO_INVALID_CHANNEL: "The channel number is not valid on this device or no channels have been set.",
    PICO_INVALID_TRIGGER_CHANNEL: "The channel set for a trigger is not available on this device.",
    PICO_INVALID_CONDITION_CHANNEL: "The channel set for a condition is not available on this device.",
    PICO_NO_SIGNAL_GENERATOR: "The device does not have a signal generator.",
    PICO_ETS_NOT_SUPPORTED: "ETS is not supported on this device.",
    PICO_TOO_MANY_SAMPLES: "The number of samples requested exceeds the device memory.",
    PICO_TOO_MANY_SEGMENTS: "Too many segments requested.",
    PICO_DEVICE_SAMPLING: "An attempt was made to get stored data while streaming.",
    PICO_NO_SAMPLES_AVAILABLE: "No samples are available yet.",
    PICO_SEGMENT_OUT_OF_RANGE: "The memory segment index is out of range.",
    PICO_BUSY: "The device is busy so data cannot be returned yet.",
    PICO_STARTINDEX_INVALID: "The start time to get stored data is out of range.",
    PICO_INVALID_INFO: "The information number requested is not a valid number.",
    PICO_INVALID_SAMPLE_INTERVAL: "The sample interval selected for streaming is out of range.",
    PICO_MEMORY: "Driver cannot allocate memory.",
    PICO_INVALID_BUFFER: "A data buffer is not valid.",
    PICO_CANCELLED: "The current capture has been cancelled.",
    PICO_SEGMENT_NOT_USED: "The segment index is not currently being used.",
    PICO_INVALID_CALL: "The wrong GetValues function has been called for the collection mode in use.",
    PICO_NOT_USED: "The function is not available.",
    PICO_INVALID_SAMPLERATIO: "The aggregation ratio requested is out of range.",
    PICO_INVALID_STATE: "The device is in an invalid state.",
    PICO_NOT_ENOUGH_SEGMENTS: "The number of segments allocated is fewer than the number of captures requested.",
    PICO_INVALID_COUPLING: "The requested coupling is not supported on this channel.",
    PICO_BUFFERS_NOT_SET: "Buffers have not been set for the requested channels.",
    PICO_INVALID_ANALOGUE_OFFSET: "The analogue offset is out of range for the selected voltage range.",
    PICO_POWER_SUPPLY_CONNECTED: "The external power supply is connected.",
    PICO_POWER_SUPPLY_NOT_CONNECTED: "The device is running on USB power only.",
    PICO_POWER_SUPPLY_REQUEST_INVALID: "The power supply request is not valid.",
    PICO_POWER_SUPPLY_UNDERVOLTAGE: "The supply voltage from the USB source is too low.",
    PICO_CAPTURING_DATA: "The oscilloscope is in the process of capturing data.",
    PICO_USB3_0_DEVICE_NON_USB3_0_PORT: "A USB 3.0 device is connected to a non-USB 3.0 port.",
    PICO_NOT_SUPPORTED_BY_THIS_DEVICE: "A function has been called that is not supported by the current device.",
    PICO_INVALID_DEVICE_RESOLUTION: "The device resolution is invalid.",
    PICO_INVALID_NUMBER_CHANNELS_FOR_RESOLUTION: "The number of channels that can be enabled is limited at this resolution.",
    PICO_CHANNEL_DISABLED_DUE_TO_USB_POWERED: "The channel is disabled because the device is running on USB power.",
    PICO_TOO_MANY_CHANNELS_IN_USE: "Too many channels are enabled for the requested resolution.",
}


def status_name(status: int) -> str:
    """Return the symbolic name of a status code (hex text when unknown)."""
    return STATUS_NAMES.get(status, f"0x{status:08X}")


def status_message(status: int) -> str:
    """Return the driver's description of a status code."""
    return STATUS_MESSAGES.get(status, "Unknown status code.")


class PicoScopeError(Exception):
    """Base exception for PicoScope acquisition errors.

    Attributes:
        operation: Name of the operation that failed (driver entry point or
            core operation)
        status: Driver status code, when the error originated in the driver
    """

    kind = "PicoScopeError"

    def __init__(self, message: str, operation: Optional[str] = None,
                 status: Optional[int] = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.status = status


class DeviceNotFoundError(PicoScopeError):
    kind = "DeviceNotPresent"


class DeviceAlreadyOpenError(PicoScopeError):
    kind = "AlreadyOpen"


class DeviceBusyError(PicoScopeError):
    kind = "DeviceBusy"


class DeviceLostError(PicoScopeError):
    kind = "DeviceLost"


class UsbFailureError(PicoScopeError):
    kind = "UsbGenericFailure"


class PowerSourceChangedError(PicoScopeError):
    """The device reported a power source change; acknowledge it and retry."""
    kind = "PowerSourceChange"


class PowerSupplyNotConnectedError(PicoScopeError):
    kind = "PowerSupplyNotConnected"


class Usb3On2PortError(PicoScopeError):
    kind = "Usb3On2Port"


class InvalidConfigurationError(PicoScopeError):
    kind = "InvalidConfiguration"


class ChannelUnavailableError(InvalidConfigurationError):
    kind = "ChannelUnavailable"


class RangeOutOfBoundsError(InvalidConfigurationError):
    kind = "RangeOutOfBounds"


class InvalidCouplingError(InvalidConfigurationError):
    kind = "InvalidCoupling"


class ResolutionIncompatibleError(InvalidConfigurationError):
    kind = "ResolutionIncompatible"


class TooManyChannelsForResolutionError(InvalidConfigurationError):
    kind = "TooManyChannelsForResolution"


class TimebaseInvalidError(InvalidConfigurationError):
    kind = "TimebaseInvalid"


class TriggerConfigurationError(InvalidConfigurationError):
    kind = "InvalidTrigger"


class NoSamplesAvailableError(PicoScopeError):
    kind = "TransientNoData"


class BufferExhaustedError(PicoScopeError):
    kind = "BufferExhausted"


class CancelledError(PicoScopeError):
    kind = "Cancelled"


class UnsupportedFeatureError(PicoScopeError):
    kind = "UnsupportedFeature"


_STATUS_ERRORS: Dict[int, Type[PicoScopeError]] = {
    PICO_MAX_UNITS_OPENED: DeviceAlreadyOpenError,
    PICO_NOT_FOUND: DeviceNotFoundError,
    PICO_OPEN_OPERATION_IN_PROGRESS: DeviceBusyError,
    PICO_NOT_RESPONDING: DeviceLostError,
    PICO_INVALID_HANDLE: DeviceLostError,
    PICO_MEMORY_FAIL: UsbFailureError,
    PICO_FW_FAIL: UsbFailureError,
    PICO_OPERATION_FAILED: UsbFailureError,
    PICO_CONFIG_FAIL: UsbFailureError,
    PICO_KERNEL_DRIVER_TOO_OLD: UsbFailureError,
    PICO_EEPROM_CORRUPT: UsbFailureError,
    PICO_OS_NOT_SUPPORTED: UsbFailureError,
    PICO_INVALID_PARAMETER: InvalidConfigurationError,
    PICO_INVALID_TIMEBASE: TimebaseInvalidError,
    PICO_INVALID_SAMPLE_INTERVAL: TimebaseInvalidError,
    PICO_INVALID_VOLTAGE_RANGE: RangeOutOfBoundsError,
    PICO_INVALID_CHANNEL: ChannelUnavailableError,
    PICO_CHANNEL_DISABLED_DUE_TO_USB_POWERED: ChannelUnavailableError,
    PICO_INVALID_TRIGGER_CHANNEL: TriggerConfigurationError,
    PICO_INVALID_CONDITION_CHANNEL: TriggerConfigurationError,
    PICO_INVALID_COUPLING: InvalidCouplingError,
    PICO_INVALID_ANALOGUE_OFFSET: InvalidConfigurationError,
    PICO_INVALID_SAMPLERATIO: InvalidConfigurationError,
    PICO_TOO_MANY_SAMPLES: InvalidConfigurationError,
    PICO_TOO_MANY_SEGMENTS: InvalidConfigurationError,
    PICO_NOT_ENOUGH_SEGMENTS: InvalidConfigurationError,
    PICO_SEGMENT_OUT_OF_RANGE: InvalidConfigurationError,
    PICO_STARTINDEX_INVALID: InvalidConfigurationError,
    PICO_INVALID_INFO: InvalidConfigurationError,
    PICO_INVALID_DEVICE_RESOLUTION: ResolutionIncompatibleError,
    PICO_TOO_MANY_CHANNELS_IN_USE: ResolutionIncompatibleError,
    PICO_INVALID_NUMBER_CHANNELS_FOR_RESOLUTION: TooManyChannelsForResolutionError,
    PICO_NO_SAMPLES_AVAILABLE: NoSamplesAvailableError,
    PICO_BUSY: DeviceBusyError,
    PICO_DEVICE_SAMPLING: DeviceBusyError,
    PICO_CAPTURING_DATA: DeviceBusyError,
    PICO_INVALID_STATE: DeviceBusyError,
    PICO_INVALID_CALL: DeviceBusyError,
    PICO_MEMORY: BufferExhaustedError,
    PICO_INVALID_BUFFER: BufferExhaustedError,
    PICO_BUFFERS_NOT_SET: BufferExhaustedError,
    PICO_CANCELLED: CancelledError,
    PICO_ETS_NOT_SUPPORTED: UnsupportedFeatureError,
    PICO_NO_SIGNAL_GENERATOR: UnsupportedFeatureError,
    PICO_NOT_USED: UnsupportedFeatureError,
    PICO_NOT_SUPPORTED_BY_THIS_DEVICE: UnsupportedFeatureError,
    PICO_POWER_SUPPLY_CONNECTED: PowerSourceChangedError,
    PICO_POWER_SUPPLY_NOT_CONNECTED: PowerSupplyNotConnectedError,
    PICO_POWER_SUPPLY_UNDERVOLTAGE: PowerSupplyNotConnectedError,
    PICO_POWER_SUPPLY_REQUEST_INVALID: InvalidConfigurationError,
    PICO_USB3_0_DEVICE_NON_USB3_0_PORT: Usb3On2PortError,
}

POWER_STATUSES = frozenset([
    PICO_POWER_SUPPLY_CONNECTED,
    PICO_POWER_SUPPLY_NOT_CONNECTED,
    PICO_USB3_0_DEVICE_NON_USB3_0_PORT,
])


def error_for_status(status: int, operation: str) -> PicoScopeError:
    """Build the exception matching a failed driver status.

    Args:
        status: Non-OK status returned by the driver
        operation: Name of the operation that produced it

    Returns:
        Exception instance ready to raise
    """
    error_class = _STATUS_ERRORS.get(status, PicoScopeError)
    message = (f"{operation} failed: {error_class.kind} "
               f"({status_name(status)}: {status_message(status)})")
    return error_class(message, operation=operation, status=status)


def check_status(status: int, operation: str) -> None:
    """Raise the mapped :class:`PicoScopeError` unless status is PICO_OK.

    Args:
        status: Status returned by a driver call
        operation: Operation name used in the error message

    Raises:
        PicoScopeError: Subclass chosen from the status code
    """
    if status == PICO_OK:
        return
    error = error_for_status(status, operation)
    logger.error(str(error))
    raise error
