"""Buffer Pair Pool.

Each enabled channel gets a :class:`BufferPair`: a *driver* array the driver
writes into and an *application* array the streaming pipeline copies into
and the writers read from. Aggregated (min/max) captures carry a second array
of each kind holding the aggregated minimum.

A pair handed to the driver with :meth:`BufferPairPool.register` belongs to
the driver until :meth:`BufferPairPool.clear` takes it back; registered
pairs are never released, and nothing is reallocated while the pool is
pinned for an armed capture.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from .driver import PicoDriver, RatioMode
from .pico_status import DeviceBusyError, InvalidConfigurationError, check_status


@dataclass
class BufferPair:
    """Driver and application sample arrays for one channel and segment."""
    channel: int
    capacity: int
    driver_max: np.ndarray
    app_max: np.ndarray
    driver_min: Optional[np.ndarray] = None
    app_min: Optional[np.ndarray] = None
    segment: int = 0
    ratio_mode: RatioMode = RatioMode.NONE
    registered: bool = False

    @property
    def aggregated(self) -> bool:
        return self.driver_min is not None

    @property
    def app_capacity(self) -> int:
        return len(self.app_max)


class BufferPairPool:
    """Owns every buffer pair of one device, keyed by (channel, segment)."""

    def __init__(self, driver: PicoDriver, handle: int, dtype: str = "int16") -> None:
        self._driver = driver
        self._handle = handle
        self._dtype = np.dtype(dtype)
        self._pairs: Dict[Tuple[int, int], BufferPair] = {}
        self._pinned = False
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def pinned(self) -> bool:
        return self._pinned

    def pin(self) -> None:
        """Freeze the pool for an armed capture."""
        self._pinned = True

    def unpin(self) -> None:
        self._pinned = False

    def allocate(self, channel: int, capacity: int, with_min_max: bool = False,
                 segment: int = 0, app_capacity: Optional[int] = None) -> BufferPair:
        """Allocate a zero-filled pair.

        Args:
            channel: Channel index
            capacity: Driver array length (overview buffer size when streaming)
            with_min_max: Also allocate the aggregated-minimum arrays
            segment: Memory segment the pair belongs to
            app_capacity: Application array length if larger than the driver's

        Returns:
            The new pair, replacing any unregistered pair for the same key

        Raises:
            DeviceBusyError: If the pool is pinned or the existing pair is registered
        """
        if self._pinned:
            raise DeviceBusyError(f"Cannot allocate buffers for channel {channel} while armed",
                                  operation="allocate")
        if capacity <= 0:
            raise InvalidConfigurationError(f"Buffer capacity must be positive, got {capacity}",
                                            operation="allocate")
        existing = self._pairs.get((channel, segment))
        if existing is not None and existing.registered:
            raise DeviceBusyError(f"Channel {channel} segment {segment} buffers are still "
                                  f"registered with the driver", operation="allocate")

        app_length = max(capacity, app_capacity or capacity)
        pair = BufferPair(
            channel=channel,
            capacity=capacity,
            driver_max=np.zeros(capacity, dtype=self._dtype),
            app_max=np.zeros(app_length, dtype=self._dtype),
            driver_min=np.zeros(capacity, dtype=self._dtype) if with_min_max else None,
            app_min=np.zeros(app_length, dtype=self._dtype) if with_min_max else None,
            segment=segment,
        )
        self._pairs[(channel, segment)] = pair
        self._logger.debug(f"Allocated channel {channel} segment {segment}: "
                           f"{capacity} driver / {app_length} app samples")
        return pair

    def allocate_bulk(self, channel: int, capacity: int, segments: range,
                      with_min_max: bool = False) -> List[BufferPair]:
        """Allocate one pair per segment for a rapid-block capture."""
        return [self.allocate(channel, capacity, with_min_max, segment) for segment in segments]

    def get(self, channel: int, segment: int = 0) -> BufferPair:
        try:
            return self._pairs[(channel, segment)]
        except KeyError:
            raise InvalidConfigurationError(
                f"No buffers allocated for channel {channel} segment {segment}",
                operation="get_buffer") from None

    def pairs(self, segment: Optional[int] = None) -> List[BufferPair]:
        """Pairs ordered by channel (and segment), optionally for one segment."""
        selected = [pair for key, pair in sorted(self._pairs.items())
                    if segment is None or key[1] == segment]
        return selected

    def __iter__(self) -> Iterator[BufferPair]:
        return iter(self.pairs())

    def __len__(self) -> int:
        return len(self._pairs)

    def register(self, channel: int, ratio_mode: RatioMode = RatioMode.NONE,
                 segment: int = 0) -> BufferPair:
        """Hand the driver arrays of a pair to the driver; calling again rebinds."""
        pair = self.get(channel, segment)
        status = self._driver.set_data_buffers(self._handle, channel, pair.driver_max,
                                               pair.driver_min, segment, ratio_mode)
        check_status(status, "set_data_buffers")
        pair.ratio_mode = ratio_mode
        pair.registered = True
        return pair

    def clear(self, channel: int, segment: int = 0) -> None:
        """Unregister a pair so the driver stops writing into it."""
        pair = self._pairs.get((channel, segment))
        if pair is None or not pair.registered:
            return
        status = self._driver.set_data_buffers(self._handle, channel, None, None, segment,
                                               pair.ratio_mode)
        check_status(status, "set_data_buffers(clear)")
        pair.registered = False

    def release(self, channel: int, segment: int = 0) -> None:
        """Free a pair; it must have been cleared first."""
        if self._pinned:
            raise DeviceBusyError(f"Cannot release channel {channel} buffers while armed",
                                  operation="release")
        pair = self._pairs.get((channel, segment))
        if pair is None:
            return
        if pair.registered:
            raise DeviceBusyError(f"Channel {channel} segment {segment} buffers must be "
                                  f"cleared before release", operation="release")
        del self._pairs[(channel, segment)]

    def clear_all(self) -> None:
        for pair in self.pairs():
            self.clear(pair.channel, pair.segment)

    def release_all(self) -> None:
        """Clear then release every pair."""
        self.clear_all()
        for pair in self.pairs():
            self.release(pair.channel, pair.segment)
