"""picoscope-capture command line tool.

Examples::

    picoscope-capture info --simulate
    picoscope-capture block -c A:2000 --samples 1000 --timebase 7 -o block.csv
    picoscope-capture rapid -c A --captures 10 --samples 20000 -o rapid.csv
    picoscope-capture stream -c A -c B --interval 1 --units US --post 100000 -o stream.csv
    picoscope-capture stream --config capture.json --duration 5 --format tsv

Streaming captures stop on auto-stop, after --duration seconds, or when a
key is pressed.
"""

import argparse
import logging
import sys
from typing import List, Optional

from . import __version__, create_driver
from .acquisition import AcquisitionController
from .config import (AcquisitionConfig, ChannelConfig, TriggerConfig, library_path, load_config,
                     setup_logging)
from .device import DeviceRegistry, PicoScopeDevice, PowerSource
from .drain import (AnyCancellation, ConsumerDrain, KeypressCancellation, TimerCancellation)
from .driver import RatioMode, TimeUnits
from .models import Coupling, channel_name
from .pico_status import PICO_POWER_SUPPLY_NOT_CONNECTED, PicoScopeError
from .streaming import IndexingMode
from .trigger import ThresholdDirection
from .writers import TabularSink, write_block_capture, write_rapid_block

logger = logging.getLogger("picoscope-capture")


def parse_channel_arg(text: str) -> ChannelConfig:
    """Parse ``A``, ``A:2000`` or ``A:2000:AC`` into a ChannelConfig."""
    parts = text.split(":")
    if not parts[0] or len(parts) > 3:
        raise argparse.ArgumentTypeError(f"Invalid channel {text!r}; use CH[:RANGE_MV[:COUPLING]]")
    try:
        range_mv = int(parts[1]) if len(parts) > 1 and parts[1] else 2000
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid range in {text!r}") from None
    coupling = parts[2].upper() if len(parts) > 2 else "DC"
    return ChannelConfig(parts[0].upper(), range_mv, coupling)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="picoscope-capture",
                                     description="PicoScope block, rapid block and streaming capture")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--simulate", action="store_true", default=None,
                        help="Use the simulated driver instead of the vendor library")
    common.add_argument("--serial", help="Serial of the unit to open (first found if omitted)")
    common.add_argument("--resolution", type=int, help="Vertical resolution in bits")
    common.add_argument("--config", help="JSON configuration file")
    common.add_argument("--log-level", default="INFO", help="Logging level")
    common.add_argument("--log-file", help="Also log to this file")

    capture = argparse.ArgumentParser(add_help=False)
    capture.add_argument("-c", "--channel", action="append", type=parse_channel_arg,
                         dest="channels", help="Channel as CH[:RANGE_MV[:COUPLING]]; repeatable")
    capture.add_argument("-o", "--output", help="Output file")
    capture.add_argument("--format", dest="file_format", choices=("csv", "tsv"))
    capture.add_argument("--raw", action="store_true", default=None,
                         help="Write ADC counts only, no mV columns")
    capture.add_argument("--pre", type=int, dest="pre_trigger", help="Pre-trigger samples")
    capture.add_argument("--post", type=int, dest="post_trigger", help="Post-trigger samples")
    capture.add_argument("--ratio", type=int, dest="downsample_ratio", help="Downsample ratio")
    capture.add_argument("--ratio-mode", choices=[m.name for m in RatioMode],
                         help="Downsampling mode")
    capture.add_argument("--trigger", metavar="CH:MV[:DIRECTION]",
                         help="Simple level trigger, e.g. A:1000:RISING")
    capture.add_argument("--duration", type=float, help="Abort after this many seconds")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("info", parents=[common], help="Show unit information")

    block = sub.add_parser("block", parents=[common, capture], help="Single block capture")
    block.add_argument("--samples", type=int, help="Samples per capture")
    block.add_argument("--timebase", type=int, help="Preferred timebase index")

    rapid = sub.add_parser("rapid", parents=[common, capture], help="Rapid block capture")
    rapid.add_argument("--samples", type=int, help="Samples per capture")
    rapid.add_argument("--timebase", type=int, help="Preferred timebase index")
    rapid.add_argument("--captures", type=int, help="Number of captures")

    stream = sub.add_parser("stream", parents=[common, capture], help="Streaming capture")
    stream.add_argument("--interval", type=int, dest="sample_interval", help="Sample interval")
    stream.add_argument("--units", dest="time_units", choices=[u.name for u in TimeUnits])
    stream.add_argument("--buffer", type=int, dest="buffer_capacity",
                        help="Driver buffer size per channel")
    stream.add_argument("--no-auto-stop", action="store_false", default=None, dest="auto_stop",
                        help="Stream until aborted")
    stream.add_argument("--indexing", choices=("driver", "app"))
    stream.add_argument("--app-capacity", type=int, help="Application buffer size (app indexing)")
    return parser


def config_from_args(args: argparse.Namespace) -> AcquisitionConfig:
    """Load --config (if given) and apply command line overrides."""
    config = load_config(args.config) if args.config else AcquisitionConfig()
    if args.command in ("block", "rapid", "stream"):
        config.mode = args.command
    overrides = {
        "simulate": args.simulate, "serial": args.serial, "resolution": args.resolution,
    }
    for name in ("channels", "output", "file_format", "pre_trigger", "post_trigger",
                 "downsample_ratio", "ratio_mode", "duration", "samples", "timebase",
                 "captures", "sample_interval", "time_units", "buffer_capacity", "auto_stop",
                 "indexing", "app_capacity"):
        overrides[name] = getattr(args, name, None)
    if getattr(args, "raw", None):
        overrides["scale_to_mv"] = False
    for name, value in overrides.items():
        if value is not None:
            setattr(config, name, value)

    trigger = getattr(args, "trigger", None)
    if trigger:
        parts = trigger.split(":")
        if len(parts) < 2:
            raise ValueError(f"Invalid trigger {trigger!r}; use CH:MV[:DIRECTION]")
        config.trigger = TriggerConfig(parts[0].upper(), int(parts[1]),
                                       parts[2].upper() if len(parts) > 2 else "RISING")
    return config


def open_device(config: AcquisitionConfig) -> PicoScopeDevice:
    driver = create_driver("simulated" if config.simulate else "ps5000a",
                           **({} if config.simulate else {"library_path": library_path()}))
    registry = DeviceRegistry(driver)
    device = registry.open(config.serial, config.resolution)
    if device.needs_power_acknowledgement:
        source = PowerSource.USB_ONLY \
            if device.pending_power_status == PICO_POWER_SUPPLY_NOT_CONNECTED \
            else PowerSource.USB3_ON_USB2_PORT
        logger.warning(f"Continuing on {source.value.replace('_', ' ')} power")
        device.acknowledge_power_source(source)
    return device


def configure_device(device: PicoScopeDevice, config: AcquisitionConfig) -> None:
    """Enable the configured channels and arm the trigger."""
    for channel in config.channels:
        range_index = device.model.range_index_for_mv(channel.range_mv)
        device.channels.set_channel(channel.index, True, Coupling(channel.coupling.upper()),
                                    range_index, channel.analogue_offset)
    trigger = config.trigger
    if trigger is not None and trigger.enabled:
        device.acquisition.set_simple_trigger(
            ChannelConfig(trigger.source).index, trigger.threshold_mv,
            ThresholdDirection[trigger.direction.upper()], trigger.delay,
            trigger.auto_trigger_ms)


def _cancellation(config: AcquisitionConfig) -> AnyCancellation:
    signals = [KeypressCancellation()]
    if config.duration:
        signals.append(TimerCancellation(config.duration))
    return AnyCancellation(*signals)


def _ranges(device: PicoScopeDevice) -> dict:
    return {ch: device.channels.range_mv(ch) for ch in device.channels.enabled_channels()}


def _capture_lengths(config: AcquisitionConfig):
    # block captures take `samples` in total, `pre_trigger` of them before the trigger
    pre = min(config.pre_trigger, config.samples - 1)
    return pre, config.samples - pre


def run_block(device: PicoScopeDevice, config: AcquisitionConfig) -> int:
    acquisition: AcquisitionController = device.acquisition
    pre, post = _capture_lengths(config)
    selection = acquisition.select_timebase(config.timebase, pre + post)
    acquisition.run_block(pre, post, selection.timebase)
    if not acquisition.wait_ready(cancel=_cancellation(config)):
        print("Capture aborted")
        return 1
    segment = acquisition.collect_block(pre + post, config.downsample_ratio,
                                        RatioMode[config.ratio_mode.upper()])
    rows = write_block_capture(config.output, segment, device.channels.enabled_channels(),
                               _ranges(device), device.max_adc, config.scale_to_mv,
                               config.file_format, {"Interval": f"{selection.interval_ns} ns"})
    print(f"Block capture: {rows} samples written to {config.output}")
    return 0


def run_rapid(device: PicoScopeDevice, config: AcquisitionConfig) -> int:
    acquisition = device.acquisition
    pre, post = _capture_lengths(config)
    acquisition.setup_rapid_block(config.captures)
    selection = acquisition.select_timebase(config.timebase, pre + post)
    acquisition.run_rapid_block(pre, post, selection.timebase)
    completed = acquisition.wait_ready(cancel=_cancellation(config))
    if not completed:
        print("Capture aborted; collecting completed segments")
    result = acquisition.collect_rapid_block(pre + post, config.downsample_ratio,
                                             RatioMode[config.ratio_mode.upper()])
    files = write_rapid_block(config.output, result, device.channels.enabled_channels(),
                              _ranges(device), device.max_adc, config.scale_to_mv,
                              config.file_format, {"Interval": f"{selection.interval_ns} ns"})
    print(f"Rapid block: {result.captures_completed} of {result.captures_requested} captures, "
          f"{len(files)} file(s) written")
    return 0 if completed else 1


def run_stream(device: PicoScopeDevice, config: AcquisitionConfig) -> int:
    acquisition = device.acquisition
    ratio_mode = RatioMode[config.ratio_mode.upper()]
    pipeline = acquisition.run_streaming(
        config.sample_interval, TimeUnits[config.time_units.upper()], config.pre_trigger,
        config.post_trigger, config.auto_stop, config.downsample_ratio, ratio_mode,
        config.buffer_capacity, IndexingMode(config.indexing), config.app_capacity)
    units = TimeUnits[config.time_units.upper()].name
    sink = TabularSink(config.output, pipeline.channels, _ranges(device), device.max_adc,
                       pipeline.aggregated, config.scale_to_mv, config.file_format,
                       {"Sample interval": f"{acquisition.settings.sample_interval} {units}"})
    if sys.stdin is not None and sys.stdin.isatty():
        print("Streaming... press Enter to stop")
    drain = ConsumerDrain(acquisition, sink, _cancellation(config), config.poll_interval,
                          config.scale_to_mv)
    result = drain.run()
    print(f"Streaming {result.outcome.value}: {result.total_samples} samples, "
          f"{result.rows_written} rows written to {config.output}")
    if result.triggered_at is not None:
        print(f"Trigger at sample {result.triggered_at}")
    return 0


def show_info(device: PicoScopeDevice) -> int:
    for key, value in device.describe().items():
        print(f"{key:>10}: {value}")
    model = device.model
    channels = ", ".join(channel_name(ch) for ch in range(model.channel_count))
    print(f"{'channels':>10}: {channels}")
    print(f"{'resolution':>10}: {device.resolution}-bit (max ADC {device.max_adc})")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        config = config_from_args(args)
    except (OSError, ValueError, TypeError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 2
    if args.command != "info":
        valid, message = config.validate()
        if not valid:
            logger.error(f"Invalid configuration: {message}")
            return 2

    try:
        with open_device(config) as device:
            if args.command == "info":
                return show_info(device)
            configure_device(device, config)
            if args.command == "block":
                return run_block(device, config)
            if args.command == "rapid":
                return run_rapid(device, config)
            return run_stream(device, config)
    except PicoScopeError as e:
        logger.error(str(e))
        return 1
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
