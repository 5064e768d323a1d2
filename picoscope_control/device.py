"""Device Handle Registry.

Opens and closes units through a :class:`PicoDriver`, reads the variant to
pick the capability descriptor, and negotiates the power source. Each open
unit is a :class:`PicoScopeDevice` that owns its channel store, buffer pool
and acquisition controller.
"""

import logging
import time
from enum import Enum
from typing import Dict, List, Optional

from . import driver as drv
from . import pico_status as ps
from .acquisition import AcquisitionController, CaptureState
from .buffers import BufferPairPool
from .channels import ChannelConfigurationStore
from .driver import PicoDriver, PowerState
from .models import ModelCapabilities, Resolution, capabilities_for_variant
from .pico_status import (DeviceAlreadyOpenError, DeviceNotFoundError, UsbFailureError,
                          check_status)

INFO_KEYS = {
    "driver": drv.INFO_DRIVER_VERSION,
    "usb": drv.INFO_USB_VERSION,
    "hardware": drv.INFO_HARDWARE_VERSION,
    "variant": drv.INFO_VARIANT_INFO,
    "serial": drv.INFO_BATCH_AND_SERIAL,
    "cal_date": drv.INFO_CAL_DATE,
    "kernel": drv.INFO_KERNEL_VERSION,
    "firmware1": drv.INFO_FIRMWARE_VERSION_1,
    "firmware2": drv.INFO_FIRMWARE_VERSION_2,
}

OPEN_PROGRESS_POLL = 0.05


class PowerSource(str, Enum):
    """Power source the caller acknowledges after a power status."""
    MAINS = "mains"
    USB_ONLY = "usb_only"
    USB3_ON_USB2_PORT = "usb3_on_usb2_port"


_POWER_STATES = {
    PowerSource.MAINS: PowerState.MAINS,
    PowerSource.USB_ONLY: PowerState.USB_ONLY,
    PowerSource.USB3_ON_USB2_PORT: PowerState.USB2_PORT,
}


class PicoScopeDevice:
    """One open oscilloscope unit.

    Channel configuration lives in :attr:`channels`, buffers in
    :attr:`buffers` and capture control in :attr:`acquisition`.
    """

    def __init__(self, driver: PicoDriver, handle: int, model: ModelCapabilities,
                 serial: str, resolution: int, pending_power_status: int = ps.PICO_OK) -> None:
        self._driver = driver
        self.handle = handle
        self.model = model
        self.serial = serial
        self.pending_power_status = pending_power_status
        self.power_source: Optional[PowerSource] = None
        self._logger = logging.getLogger(self.__class__.__name__)

        self.channels = ChannelConfigurationStore(driver, handle, model, resolution)
        self.buffers = BufferPairPool(driver, handle, model.sample_dtype)
        self.acquisition = AcquisitionController(driver, handle, model, self.channels,
                                                 self.buffers)
        if pending_power_status == ps.PICO_OK:
            self.acquisition.max_adc = self.max_adc_value()
        else:
            self.acquisition.max_adc = model.max_adc_for(resolution)

    def __enter__(self) -> "PicoScopeDevice":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self.acquisition.state != CaptureState.CLOSED

    @property
    def variant(self) -> str:
        return self.model.variant

    @property
    def resolution(self) -> int:
        return self.channels.resolution

    @property
    def max_adc(self) -> int:
        return self.acquisition.max_adc

    @property
    def needs_power_acknowledgement(self) -> bool:
        return self.pending_power_status in ps.POWER_STATUSES

    # Power --------------------------------------------------------------

    def acknowledge_power_source(self, source: PowerSource) -> None:
        """Confirm the power source after a power status from the driver.

        USB-only power on a model with a USB channel limit disables the
        channels above the limit and lowers the enable quota; acknowledging
        mains later restores the full quota without reopening.

        Raises:
            PowerSupplyNotConnectedError: Mains requested but not connected, or undervoltage
        """
        source = PowerSource(source)
        status = self._driver.change_power_source(self.handle, _POWER_STATES[source])
        check_status(status, "change_power_source")

        if source == PowerSource.USB_ONLY:
            dropped = self.channels.apply_power_limit(self.model.usb_power_channel_limit)
            for channel in dropped:
                self.channels.set_channel_off(channel)
        elif source == PowerSource.MAINS:
            self.channels.apply_power_limit(None)
        self.pending_power_status = ps.PICO_OK
        self.power_source = source
        self.acquisition.max_adc = self.max_adc_value()
        self._logger.info(f"Power source acknowledged: {source.value}, "
                          f"channel quota {self.channels.channel_quota()}")

    # Unit ---------------------------------------------------------------

    def get_unit_info(self, info: int) -> str:
        status, text = self._driver.get_unit_info(self.handle, info)
        check_status(status, "get_unit_info")
        return text

    def describe(self) -> Dict[str, str]:
        """Driver, hardware and firmware identification strings."""
        return {key: self.get_unit_info(info) for key, info in INFO_KEYS.items()}

    def max_adc_value(self, resolution: Optional[int] = None) -> int:
        """Full-scale ADC count, switching resolution first when one is given."""
        if resolution is not None and int(resolution) != self.resolution:
            self.set_resolution(resolution)
        status, value = self._driver.maximum_value(self.handle)
        check_status(status, "maximum_value")
        return value

    def set_resolution(self, resolution: int) -> None:
        """Change vertical resolution on flexible-resolution models."""
        if self.acquisition.state in (CaptureState.ARMED, CaptureState.STREAMING):
            raise ps.DeviceBusyError("Cannot change resolution while a capture is running",
                                     operation="set_resolution")
        if int(resolution) not in self.model.resolutions:
            raise ps.ResolutionIncompatibleError(
                f"{int(resolution)}-bit is not supported by {self.model.variant}",
                operation="set_resolution")
        self.channels.set_resolution(resolution)
        if self.model.has_flexible_resolution:
            status = self._driver.set_device_resolution(self.handle, int(resolution))
            check_status(status, "set_device_resolution")
        status, value = self._driver.maximum_value(self.handle)
        check_status(status, "maximum_value")
        self.acquisition.max_adc = value
        self._logger.info(f"Resolution set to {int(resolution)}-bit, max ADC {value}")

    def flash_led(self, count: int = 1) -> None:
        check_status(self._driver.flash_led(self.handle, count), "flash_led")

    def close(self) -> None:
        """Stop any capture, unregister every buffer and release the handle."""
        if not self.is_open:
            return
        try:
            if self.acquisition.state in (CaptureState.ARMED, CaptureState.STREAMING):
                self.acquisition.stop()
            self.buffers.unpin()
            self.buffers.release_all()
        finally:
            status = self._driver.close_unit(self.handle)
            self.acquisition.mark_closed()
        check_status(status, "close_unit")
        self._logger.info(f"Closed {self.model.variant} {self.serial} (handle {self.handle})")


class DeviceRegistry:
    """Tracks the units opened through one driver binding."""

    def __init__(self, driver: PicoDriver) -> None:
        self._driver = driver
        self._devices: Dict[int, PicoScopeDevice] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def driver(self) -> PicoDriver:
        return self._driver

    def devices(self) -> List[PicoScopeDevice]:
        return list(self._devices.values())

    def get(self, handle: int) -> PicoScopeDevice:
        try:
            return self._devices[handle]
        except KeyError:
            raise ps.error_for_status(ps.PICO_INVALID_HANDLE, "get_device") from None

    def open(self, serial: Optional[str] = None,
             resolution: int = Resolution.BIT_8) -> PicoScopeDevice:
        """Open a unit (the first one found when serial is None).

        Args:
            serial: Batch/serial string of the unit
            resolution: Vertical resolution to open at

        Returns:
            The open device; check needs_power_acknowledgement before configuring it

        Raises:
            DeviceNotFoundError: No unit (or no unit with this serial)
            DeviceAlreadyOpenError: Serial already open here or unit limit reached
            UsbFailureError: The driver returned a negative handle
        """
        self._check_not_open(serial)
        self._logger.info(f"Opening unit {serial or '(first found)'} at {int(resolution)}-bit")
        status, handle = self._driver.open_unit(serial, resolution)
        return self._register(status, handle, resolution, "open_unit")

    def open_async(self, serial: Optional[str] = None, resolution: int = Resolution.BIT_8,
                   timeout: Optional[float] = None) -> PicoScopeDevice:
        """Open through the driver's background enumeration, polling progress."""
        self._check_not_open(serial)
        check_status(self._driver.open_unit_async(serial, resolution), "open_unit_async")
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            status, handle, progress, complete = self._driver.open_unit_progress()
            if complete:
                return self._register(status, handle, resolution, "open_unit_async")
            if status != ps.PICO_OK and status not in ps.POWER_STATUSES:
                check_status(status, "open_unit_progress")
            self._logger.debug(f"Open progress {progress}%")
            if deadline is not None and time.monotonic() >= deadline:
                raise ps.DeviceBusyError("Timed out waiting for the unit to open",
                                         operation="open_unit_async")
            time.sleep(OPEN_PROGRESS_POLL)

    def _check_not_open(self, serial: Optional[str]) -> None:
        if serial is None:
            return
        for device in self._devices.values():
            if device.serial == serial:
                raise DeviceAlreadyOpenError(f"Unit {serial} is already open "
                                             f"(handle {device.handle})", operation="open_unit")

    def _register(self, status: int, handle: int, resolution: int,
                  operation: str) -> PicoScopeDevice:
        if handle < 0:
            raise UsbFailureError(f"{operation} failed: USB failure (handle {handle})",
                                  operation=operation, status=status)
        if handle == 0:
            if status not in (ps.PICO_OK,) and status not in ps.POWER_STATUSES:
                check_status(status, operation)
            raise DeviceNotFoundError(f"{operation} failed: no unit found",
                                      operation=operation, status=status)

        pending = ps.PICO_OK
        if status in (ps.PICO_POWER_SUPPLY_NOT_CONNECTED, ps.PICO_USB3_0_DEVICE_NON_USB3_0_PORT):
            pending = status
            self._logger.warning(f"Unit opened with power status {ps.status_name(status)}; "
                                 f"acknowledge the power source before configuring it")
        elif status != ps.PICO_OK:
            self._driver.close_unit(handle)
            check_status(status, operation)

        try:
            variant_status, variant = self._driver.get_unit_info(handle, drv.INFO_VARIANT_INFO)
            check_status(variant_status, "get_unit_info(variant)")
            serial_status, serial = self._driver.get_unit_info(handle, drv.INFO_BATCH_AND_SERIAL)
            check_status(serial_status, "get_unit_info(serial)")
            model = capabilities_for_variant(variant, self._driver.family)
            device = PicoScopeDevice(self._driver, handle, model, serial, int(resolution), pending)
        except ps.PicoScopeError:
            self._driver.close_unit(handle)
            raise

        self._devices[handle] = device
        self._logger.info(f"Opened {model.variant} {serial} (handle {handle}, "
                          f"{model.channel_count} channels)")
        return device

    def describe(self, handle: int) -> Dict[str, str]:
        return self.get(handle).describe()

    def close(self, handle: int) -> None:
        device = self._devices.pop(handle, None)
        if device is None:
            raise ps.error_for_status(ps.PICO_INVALID_HANDLE, "close_unit")
        device.close()

    def close_all(self) -> None:
        for handle in list(self._devices):
            self.close(handle)
