"""Delimited sample files.

A file starts with ``#`` comment lines describing the capture, then a column
header row, then one row per sample. Columns are ``sample`` followed, per
enabled channel, by ``ChA ADC, ChA mV`` or, for aggregated captures,
``ChA Max ADC, ChA Max mV, ChA Min ADC, ChA Min mV``. The mV columns are
left out when scaling is off. Rows are written with pandas ``to_csv`` one
delivered block at a time.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, TextIO, Tuple, Union

import numpy as np
import pandas as pd

from .models import channel_name
from .scaling import adc_to_mv_array

DELIMITERS = {"csv": ",", "tsv": "\t"}
MV_FLOAT_FORMAT = "%.3f"

logger = logging.getLogger(__name__)


def column_names(channels: Sequence[int], aggregated: bool = False,
                 scale_to_mv: bool = True) -> List[str]:
    """Header row for the given channel order."""
    columns = ["sample"]
    for channel in channels:
        prefix = f"Ch{channel_name(channel)}"
        parts = [f"{prefix} Max", f"{prefix} Min"] if aggregated else [prefix]
        for part in parts:
            columns.append(f"{part} ADC")
            if scale_to_mv:
                columns.append(f"{part} mV")
    return columns


class TabularSink:
    """Streams delivered sample blocks into a CSV or TSV file.

    Args:
        target: Output path or an open text stream
        channels: Channel order of the columns
        ranges_mv: Full-scale range of each channel in mV
        max_adc: Maximum ADC count used for scaling
        aggregated: Write max/min column pairs
        scale_to_mv: Add millivolt columns next to the ADC counts
        file_format: 'csv' or 'tsv'
        metadata: Extra ``key: value`` comment lines
    """

    def __init__(self, target: Union[str, Path, TextIO], channels: Sequence[int],
                 ranges_mv: Dict[int, int], max_adc: int, aggregated: bool = False,
                 scale_to_mv: bool = True, file_format: str = "csv",
                 metadata: Optional[Dict[str, object]] = None) -> None:
        if file_format not in DELIMITERS:
            raise ValueError(f"Unknown output format {file_format!r}, use csv or tsv")
        self._target = target
        self.channels = list(channels)
        self.ranges_mv = dict(ranges_mv)
        self.max_adc = max_adc
        self.aggregated = aggregated
        self.scale_to_mv = scale_to_mv
        self.delimiter = DELIMITERS[file_format]
        self.metadata = dict(metadata or {})
        self.columns = column_names(self.channels, aggregated, scale_to_mv)
        self.rows_written = 0
        self._stream: Optional[TextIO] = None
        self._owns_stream = False
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def path(self) -> Optional[Path]:
        return None if hasattr(self._target, "write") else Path(self._target)

    def __enter__(self) -> "TabularSink":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        """Open the target and write the comment header and column row."""
        if self._stream is not None:
            return
        if hasattr(self._target, "write"):
            self._stream = self._target
        else:
            path = Path(self._target)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._stream = open(path, "w", newline="")
            self._owns_stream = True

        stream = self._stream
        stream.write("# PicoScope sample data\n")
        stream.write(f"# Created: {datetime.now().isoformat(timespec='seconds')}\n")
        order = ", ".join(f"Ch{channel_name(ch)} ({self.ranges_mv.get(ch, 0)} mV)"
                          for ch in self.channels)
        stream.write(f"# Channels: {order}\n")
        units = "ADC counts and mV" if self.scale_to_mv else "ADC counts"
        stream.write(f"# Units: {units}, max ADC {self.max_adc}\n")
        if self.aggregated:
            stream.write("# Aggregated: max and min per output sample\n")
        for key, value in self.metadata.items():
            stream.write(f"# {key}: {value}\n")
        pd.DataFrame(columns=self.columns).to_csv(stream, index=False, sep=self.delimiter,
                                                  lineterminator="\n")

    def write_block(self, first_sample: int, samples: Dict[int, np.ndarray],
                    min_samples: Optional[Dict[int, np.ndarray]] = None) -> int:
        """Append one block of rows.

        Args:
            first_sample: Sample number of the first row
            samples: Raw (or aggregated max) counts per channel
            min_samples: Aggregated min counts per channel

        Returns:
            Number of rows written
        """
        if self._stream is None:
            self.open()
        count = min(len(samples[ch]) for ch in self.channels) if self.channels else 0
        if count == 0:
            return 0

        data = {"sample": np.arange(first_sample, first_sample + count, dtype=np.int64)}
        for channel in self.channels:
            prefix = f"Ch{channel_name(channel)}"
            if self.aggregated:
                self._add_columns(data, f"{prefix} Max", channel, samples[channel][:count])
                self._add_columns(data, f"{prefix} Min", channel, min_samples[channel][:count])
            else:
                self._add_columns(data, prefix, channel, samples[channel][:count])

        frame = pd.DataFrame(data, columns=self.columns)
        frame.to_csv(self._stream, index=False, header=False, sep=self.delimiter,
                     lineterminator="\n", float_format=MV_FLOAT_FORMAT)
        self.rows_written += count
        return count

    def _add_columns(self, data: Dict[str, np.ndarray], label: str, channel: int,
                     raw: np.ndarray) -> None:
        data[f"{label} ADC"] = raw
        if self.scale_to_mv:
            data[f"{label} mV"] = adc_to_mv_array(raw, self.ranges_mv[channel], self.max_adc)

    def flush(self) -> None:
        if self._stream is not None:
            self._stream.flush()

    def close(self) -> None:
        if self._stream is None:
            return
        self._stream.flush()
        if self._owns_stream:
            self._stream.close()
            self._logger.info(f"Wrote {self.rows_written} rows to {self.path}")
        self._stream = None


def write_block_capture(target: Union[str, Path, TextIO], segment, channels: Sequence[int],
                        ranges_mv: Dict[int, int], max_adc: int, scale_to_mv: bool = True,
                        file_format: str = "csv",
                        metadata: Optional[Dict[str, object]] = None) -> int:
    """Write a finished block capture (a :class:`CaptureSegment`).

    Returns:
        Number of rows written
    """
    info = dict(metadata or {})
    info["Segment"] = segment.segment
    if segment.trigger_index is not None:
        info["Trigger index"] = segment.trigger_index
    if segment.timestamp is not None:
        info["Timestamp counter"] = segment.timestamp
    if segment.overflow:
        over = ", ".join(f"Ch{channel_name(ch)}" for ch in channels
                         if segment.overflow & (1 << ch))
        info["Over-range"] = over
    aggregated = bool(segment.min_samples)
    with TabularSink(target, channels, ranges_mv, max_adc, aggregated, scale_to_mv,
                     file_format, info) as sink:
        return sink.write_block(0, segment.samples, segment.min_samples or None)


def write_rapid_block(base_path: Union[str, Path], result, channels: Sequence[int],
                      ranges_mv: Dict[int, int], max_adc: int, scale_to_mv: bool = True,
                      file_format: str = "csv",
                      metadata: Optional[Dict[str, object]] = None) -> List[Tuple[Path, int]]:
    """Write each rapid-block segment to ``<stem>_seg<NNNN><suffix>``.

    Returns:
        (path, rows) for every file written
    """
    base = Path(base_path)
    suffix = base.suffix or f".{file_format}"
    written = []
    for segment in result.segments:
        path = base.with_name(f"{base.stem}_seg{segment.segment:04d}{suffix}")
        info = dict(metadata or {})
        info["Captures"] = f"{result.captures_completed} of {result.captures_requested}"
        rows = write_block_capture(path, segment, channels, ranges_mv, max_adc, scale_to_mv,
                                   file_format, info)
        written.append((path, rows))
    logger.info(f"Wrote {len(written)} rapid block segment file(s) next to {base}")
    return written
