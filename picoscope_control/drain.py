"""Consumer Drain.

The pull loop of a streaming capture. It polls the driver for the latest
values, writes every delivered block to a sink and decides when to stop:

1. cancellation (keypress, timer or an external request) -> ABORTED
2. the pipeline's auto-stop flag -> COMPLETED
3. the pipeline's app-buffer-full flag -> TRUNCATED

On exit it stops the device, closes the sink and clears every registered
buffer before releasing it.
"""

import logging
import os
import select
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .acquisition import AcquisitionController
from .pico_status import PicoScopeError
from .streaming import DeliveredBlock, StreamingPipeline

MIN_POLL_INTERVAL = 0.001
MAX_POLL_INTERVAL = 0.010


class DrainOutcome(str, Enum):
    ABORTED = "aborted"
    COMPLETED = "completed"
    TRUNCATED = "truncated"


@dataclass
class DrainResult:
    outcome: DrainOutcome
    total_samples: int
    triggered_at: Optional[int]
    overflow: int
    sample_interval: Optional[float]
    rows_written: int = 0


# Cancellation signals --------------------------------------------------------

class Cancellation(ABC):
    """Base cancellation signal polled by the drain."""

    reason = "cancelled"

    @abstractmethod
    def is_cancelled(self) -> bool:
        """True once the capture should stop; must not block."""

    def start(self) -> None:
        """Called when the drain starts."""

    def close(self) -> None:
        """Called when the drain exits."""


class EventCancellation(Cancellation):
    """Cancelled when another thread sets the event (or calls cancel())."""

    reason = "stop requested"

    def __init__(self, event: Optional[threading.Event] = None) -> None:
        self.event = event or threading.Event()

    def cancel(self) -> None:
        self.event.set()

    def is_cancelled(self) -> bool:
        return self.event.is_set()


class TimerCancellation(Cancellation):
    """Cancelled a fixed time after the drain starts."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self.reason = f"duration of {seconds} s elapsed"
        self._deadline: Optional[float] = None

    def start(self) -> None:
        self._deadline = time.monotonic() + self.seconds

    def is_cancelled(self) -> bool:
        if self._deadline is None:
            self.start()
        return time.monotonic() >= self._deadline


class KeypressCancellation(Cancellation):
    """Cancelled by any single key on the console; checked without blocking.

    On POSIX terminals start() switches the stream to cbreak mode so a key is
    readable without Enter, and close() restores the saved terminal settings.
    Streams that are not terminals never cancel.
    """

    reason = "key pressed"

    def __init__(self, stream=None) -> None:
        self._stream = stream or sys.stdin
        self._pressed = False
        self._saved_mode = None

    def _terminal_fd(self) -> Optional[int]:
        if self._stream is None or not self._stream.isatty():
            return None
        return self._stream.fileno()

    def start(self) -> None:
        fd = self._terminal_fd()
        if os.name == "nt" or fd is None or self._saved_mode is not None:
            return
        import termios
        import tty
        self._saved_mode = termios.tcgetattr(fd)
        tty.setcbreak(fd)

    def close(self) -> None:
        if self._saved_mode is not None:
            import termios
            termios.tcsetattr(self._stream.fileno(), termios.TCSADRAIN, self._saved_mode)
            self._saved_mode = None

    def is_cancelled(self) -> bool:
        if self._pressed:
            return True
        if os.name == "nt":
            import msvcrt
            if msvcrt.kbhit():
                msvcrt.getch()
                self._pressed = True
            return self._pressed
        fd = self._terminal_fd()
        if fd is None:
            return False
        readable, _, _ = select.select([fd], [], [], 0)
        if readable:
            os.read(fd, 1)
            self._pressed = True
        return self._pressed


class AnyCancellation(Cancellation):
    """Cancelled as soon as any of its signals is."""

    def __init__(self, *signals: Cancellation) -> None:
        self.signals = [signal for signal in signals if signal is not None]
        self.reason = "cancelled"

    def start(self) -> None:
        for signal in self.signals:
            signal.start()

    def close(self) -> None:
        for signal in self.signals:
            signal.close()

    def is_cancelled(self) -> bool:
        for signal in self.signals:
            if signal.is_cancelled():
                self.reason = signal.reason
                return True
        return False


class NeverCancel(Cancellation):
    def is_cancelled(self) -> bool:
        return False


# Drain ----------------------------------------------------------------------

class ConsumerDrain:
    """Drains one streaming capture into a sink.

    Args:
        controller: Acquisition controller with streaming started
        sink: Object with write_block(first_sample, samples, min_samples) and close(), or None
        cancel: Cancellation signal (never cancels when None)
        poll_interval: Sleep between unproductive polls, clamped to 1-10 ms
        scale_to_mv: Informational; scaling is done by the sink
    """

    def __init__(self, controller: AcquisitionController, sink=None,
                 cancel: Optional[Cancellation] = None, poll_interval: float = 0.001,
                 scale_to_mv: bool = True) -> None:
        if controller.pipeline is None:
            raise PicoScopeError("Streaming has not been started", operation="drain")
        self._controller = controller
        self._pipeline: StreamingPipeline = controller.pipeline
        self._sink = sink
        self._cancel = cancel or NeverCancel()
        self.poll_interval = min(max(poll_interval, MIN_POLL_INTERVAL), MAX_POLL_INTERVAL)
        self.scale_to_mv = scale_to_mv
        self.rows_written = 0
        self._logger = logging.getLogger(self.__class__.__name__)

    def run(self) -> DrainResult:
        """Poll until cancelled, auto-stopped or the application buffer fills.

        Raises:
            PicoScopeError: Any driver error other than no-samples-yet; the device is stopped first
        """
        pipeline = self._pipeline
        cursor = pipeline.cursor
        self._cancel.start()
        self._logger.info("Drain started")
        try:
            while True:
                productive = self._controller.poll_streaming()
                if pipeline.callback_error is not None:
                    raise pipeline.callback_error
                self._write_delivered()

                if self._cancel.is_cancelled():
                    outcome = DrainOutcome.ABORTED
                    self._logger.info(f"Capture aborted: {self._cancel.reason}")
                    break
                if cursor.auto_stop:
                    outcome = DrainOutcome.COMPLETED
                    break
                if cursor.app_buffer_full:
                    outcome = DrainOutcome.TRUNCATED
                    self._logger.warning(
                        f"Application buffer full after {cursor.written} samples; "
                        f"capture truncated ({cursor.total_samples} delivered)")
                    break
                if not productive:
                    time.sleep(self.poll_interval)
        except Exception:
            self._logger.error("Drain failed; stopping the device")
            self._shutdown()
            raise

        self._shutdown()
        result = DrainResult(
            outcome=outcome,
            total_samples=cursor.total_samples,
            triggered_at=cursor.triggered_at if cursor.triggered else None,
            overflow=cursor.overflow,
            sample_interval=self._controller.settings.sample_interval,
            rows_written=self.rows_written,
        )
        self._log_result(result)
        return result

    def _write_delivered(self) -> None:
        blocks = self._pipeline.pop_delivered()
        if self._sink is None:
            return
        for block in blocks:
            self._write_block(block)

    def _write_block(self, block: DeliveredBlock) -> None:
        pipeline = self._pipeline
        samples = {ch: pipeline.block_data(ch, block) for ch in pipeline.channels}
        minimum = None
        if pipeline.aggregated:
            minimum = {ch: pipeline.block_data(ch, block, minimum=True)
                       for ch in pipeline.channels}
        self.rows_written += self._sink.write_block(block.first_sample, samples, minimum)

    def _shutdown(self) -> None:
        try:
            self._controller.stop()
            # blocks delivered by the last callback before stop
            self._write_delivered()
        finally:
            try:
                if self._sink is not None:
                    self._sink.close()
            finally:
                self._cancel.close()
                if not self._controller.busy:
                    self._controller.release_buffers()

    def _log_result(self, result: DrainResult) -> None:
        trigger = f", trigger at sample {result.triggered_at}" \
            if result.triggered_at is not None else ""
        self._logger.info(f"Drain {result.outcome.value}: {result.total_samples} samples"
                          f"{trigger}, {self.rows_written} rows written")
        overflowed = self._pipeline.overflowed_channels()
        if overflowed:
            self._logger.warning(f"Over-range reported on channel indices {overflowed}")
