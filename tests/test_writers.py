import io

import numpy as np
import pandas as pd
import pytest

from picoscope_control.acquisition import CaptureSegment, RapidBlockResult
from picoscope_control.writers import (TabularSink, column_names, write_block_capture,
                                       write_rapid_block)


def read_back(text, sep=","):
    return pd.read_csv(io.StringIO(text), comment="#", sep=sep)


def test_column_names():
    assert column_names([0, 1]) == ["sample", "ChA ADC", "ChA mV", "ChB ADC", "ChB mV"]
    assert column_names([2], scale_to_mv=False) == ["sample", "ChC ADC"]
    assert column_names([0], aggregated=True) == [
        "sample", "ChA Max ADC", "ChA Max mV", "ChA Min ADC", "ChA Min mV"]


def test_header_and_rows():
    stream = io.StringIO()
    sink = TabularSink(stream, [0, 1], {0: 2000, 1: 5000}, 32512, metadata={"Run": 7})
    with sink:
        written = sink.write_block(0, {0: np.array([0, 32512, -32512], dtype=np.int16),
                                       1: np.array([1, 2, 3], dtype=np.int16)})
        sink.write_block(3, {0: np.array([16256], dtype=np.int16),
                             1: np.array([4], dtype=np.int16)})
    assert written == 3
    assert sink.rows_written == 4

    text = stream.getvalue()
    comments = [line for line in text.splitlines() if line.startswith("#")]
    assert comments[0] == "# PicoScope sample data"
    assert "# Channels: ChA (2000 mV), ChB (5000 mV)" in comments
    assert "# Run: 7" in comments

    frame = read_back(text)
    assert list(frame.columns) == column_names([0, 1])
    assert frame["sample"].tolist() == [0, 1, 2, 3]
    assert frame["ChA mV"].tolist() == pytest.approx([0.0, 2000.0, -2000.0, 1000.0])
    assert frame["ChB ADC"].tolist() == [1, 2, 3, 4]


def test_tsv_without_scaling():
    stream = io.StringIO()
    with TabularSink(stream, [0], {0: 2000}, 32512, scale_to_mv=False,
                     file_format="tsv") as sink:
        sink.write_block(10, {0: np.array([5, 6], dtype=np.int16)})
    frame = read_back(stream.getvalue(), sep="\t")
    assert list(frame.columns) == ["sample", "ChA ADC"]
    assert frame["sample"].tolist() == [10, 11]


def test_header_written_for_empty_capture(tmp_path):
    path = tmp_path / "out" / "empty.csv"
    with TabularSink(path, [0], {0: 2000}, 32512):
        pass
    assert read_back(path.read_text()).empty


def test_unknown_format():
    with pytest.raises(ValueError):
        TabularSink(io.StringIO(), [0], {0: 2000}, 32512, file_format="xlsx")


def test_block_capture_with_trigger(tmp_path):
    segment = CaptureSegment(segment=0, n_samples=4,
                             samples={0: np.array([0, 0, 100, 100], dtype=np.int16)},
                             overflow=0b1, trigger_index=2)
    path = tmp_path / "block.csv"
    rows = write_block_capture(path, segment, [0], {0: 2000}, 32512)
    assert rows == 4
    text = path.read_text()
    assert "# Trigger index: 2" in text
    assert "# Over-range: ChA" in text
    assert read_back(text)["ChA ADC"].tolist() == [0, 0, 100, 100]


def test_rapid_block_one_file_per_segment(tmp_path):
    segments = [CaptureSegment(segment=n, n_samples=3,
                               samples={0: np.full(3, n, dtype=np.int16)},
                               trigger_index=1, timestamp=1000 * n)
                for n in range(3)]
    result = RapidBlockResult(captures_requested=5, segments=segments)
    written = write_rapid_block(tmp_path / "rapid.csv", result, [0], {0: 2000}, 32512)

    assert [path.name for path, _ in written] == [
        "rapid_seg0000.csv", "rapid_seg0001.csv", "rapid_seg0002.csv"]
    assert all(rows == 3 for _, rows in written)
    text = written[2][0].read_text()
    assert "# Captures: 3 of 5" in text
    assert "# Timestamp counter: 2000" in text
    assert read_back(text)["ChA ADC"].tolist() == [2, 2, 2]
