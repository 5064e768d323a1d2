"""Streaming Pipeline.

:meth:`StreamingPipeline.on_latest_values` is the routine the driver's
latest-values callback lands in. It runs on the driver's thread, once per
productive poll, and:

- copies the reported run of samples from every registered driver array into
  the matching application array;
- advances the monotonic ``total_samples`` cursor;
- latches the absolute trigger index the first time a trigger is reported;
- records the auto-stop flag and the latest overflow mask;
- in app-indexed mode clamps at the application capacity and raises
  ``app_buffer_full`` instead of overrunning.

The routine does no I/O and takes no lock. The driver serialises callbacks,
and the consumer only reads application indices covered by the
:class:`DeliveredBlock` records the callback queues.
"""

import collections
from dataclasses import dataclass
from enum import Enum
from typing import Deque, List, Optional

import numpy as np

from .buffers import BufferPair, BufferPairPool
from .driver import StreamingPayload


class IndexingMode(str, Enum):
    """Where a callback's samples land in the application array."""
    DRIVER = "driver"   # at the driver's start index (ring the size of the driver array)
    APP = "app"         # at the running total (linear array, clamped at capacity)


@dataclass
class StreamingCursor:
    """Shared bookkeeping written by the callback and read by the drain."""
    total_samples: int = 0
    start_index: int = 0
    triggered: bool = False
    triggered_at: int = -1
    auto_stop: bool = False
    app_buffer_full: bool = False
    overflow: int = 0
    callbacks: int = 0
    written: int = 0


DeliveredBlock = collections.namedtuple("DeliveredBlock", "offset count first_sample")


class StreamingPipeline:
    """Per-capture copy context for one streaming acquisition.

    Args:
        pool: Buffer pool holding the registered pairs
        channels: Channels captured (each must have a pair in segment 0)
        indexing: Copy placement, fixed for the capture
    """

    def __init__(self, pool: BufferPairPool, channels: List[int],
                 indexing: IndexingMode = IndexingMode.DRIVER) -> None:
        self.indexing = IndexingMode(indexing)
        self.channels = list(channels)
        self._pairs: List[BufferPair] = [pool.get(ch) for ch in self.channels]
        self.cursor = StreamingCursor()
        self.callback_error: Optional[BaseException] = None
        self._delivered: Deque[DeliveredBlock] = collections.deque()
        self._ring_end = 0
        if self.indexing == IndexingMode.APP:
            self.app_capacity = min(pair.app_capacity for pair in self._pairs)
        else:
            self.app_capacity = min(pair.capacity for pair in self._pairs)

    @property
    def aggregated(self) -> bool:
        return any(pair.aggregated for pair in self._pairs)

    def pair(self, channel: int) -> BufferPair:
        return self._pairs[self.channels.index(channel)]

    def on_latest_values(self, payload: StreamingPayload) -> None:
        """Latest-values callback routine; never raises."""
        try:
            self._accept(payload)
        except Exception as exc:  # recorded for the consumer thread
            self.callback_error = exc

    def _accept(self, payload: StreamingPayload) -> None:
        cursor = self.cursor
        count = int(payload.no_of_samples)
        start = int(payload.start_index)
        total_before = cursor.total_samples

        cursor.callbacks += 1
        cursor.start_index = start
        cursor.overflow = int(payload.overflow)
        if payload.triggered and not cursor.triggered:
            cursor.triggered_at = total_before + int(payload.trigger_at)
            cursor.triggered = True
        if payload.auto_stop:
            cursor.auto_stop = True
        if count <= 0:
            return

        if self.indexing == IndexingMode.DRIVER:
            offset = start
            copied = count
        else:
            offset = total_before
            room = self.app_capacity - total_before
            if cursor.app_buffer_full or room <= 0:
                copied = 0
                cursor.app_buffer_full = True
            else:
                copied = min(count, room)
                if count > room:
                    cursor.app_buffer_full = True

        if copied > 0:
            source = slice(start, start + copied)
            target = slice(offset, offset + copied)
            for pair in self._pairs:
                pair.app_max[target] = pair.driver_max[source]
                if pair.driver_min is not None:
                    pair.app_min[target] = pair.driver_min[source]
            cursor.written += copied
            self._ring_end = offset + copied
            self._delivered.append(DeliveredBlock(offset, copied, total_before))

        cursor.total_samples = total_before + count

    def pop_delivered(self) -> List[DeliveredBlock]:
        """Take every block delivered since the last call, oldest first."""
        blocks = []
        while True:
            try:
                blocks.append(self._delivered.popleft())
            except IndexError:
                return blocks

    def block_data(self, channel: int, block: DeliveredBlock, minimum: bool = False) -> np.ndarray:
        """Copy of the application samples a delivered block covers."""
        pair = self.pair(channel)
        source = pair.app_min if minimum else pair.app_max
        return source[block.offset:block.offset + block.count].copy()

    def latest(self, channel: int, count: Optional[int] = None, minimum: bool = False) -> np.ndarray:
        """Most recent samples of a driver-indexed capture, oldest first."""
        pair = self.pair(channel)
        data = pair.app_min if minimum else pair.app_max
        if self.indexing == IndexingMode.APP:
            end = self.cursor.written
            available = end
        else:
            end = self._ring_end
            available = min(self.cursor.written, pair.capacity)
        if count is None or count > available:
            count = available
        if count <= 0:
            return data[:0].copy()
        if self.indexing == IndexingMode.APP:
            return data[end - count:end].copy()
        positions = np.arange(end - count, end) % pair.capacity
        return data[positions]

    def overflowed_channels(self) -> List[int]:
        """Channels flagged in the latest overflow mask."""
        mask = self.cursor.overflow
        return [ch for ch in self.channels if mask & (1 << ch)]
