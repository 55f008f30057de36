from __future__ import annotations

import logging
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Iterator

from .frame import Frame
from .interfaces import DetectorInterface

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_CAPACITY = 1024


class ReadWriteLock:
    """Many concurrent readers or a single writer.

    Waiting writers block new readers, so a settings change is not starved by
    a capture loop that keeps re-acquiring the read side. Not reentrant.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class FrameBuffer:
    """Frames captured by one device and not yet drained.

    With a `capacity`, appending to a full buffer drops the oldest frame.
    With `drain_on_read`, `snapshot` empties the buffer.
    """

    def __init__(self, capacity: int | None = DEFAULT_BUFFER_CAPACITY, drain_on_read: bool = False) -> None:
        if capacity is not None and capacity <= 0:
            raise ValueError("capacity must be > 0 or None for unbounded")
        self._frames: deque[Frame] = deque(maxlen=capacity)
        self._lock = ReadWriteLock()
        self.capacity = capacity
        self.drain_on_read = drain_on_read
        self.dropped = 0

    def append(self, frame: Frame) -> None:
        with self._lock.write():
            if self.capacity is not None and len(self._frames) == self.capacity:
                self.dropped += 1
            self._frames.append(frame)

    def snapshot(self) -> list[Frame]:
        if self.drain_on_read:
            with self._lock.write():
                frames = list(self._frames)
                self._frames.clear()
                return frames
        with self._lock.read():
            return list(self._frames)

    def latest(self) -> Frame | None:
        with self._lock.read():
            return self._frames[-1] if self._frames else None

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._frames)


@dataclass(slots=True)
class BufferPolicy:
    capacity: int | None = DEFAULT_BUFFER_CAPACITY
    drain_on_read: bool = False

    def __post_init__(self) -> None:
        if self.capacity is not None and self.capacity <= 0:
            raise ValueError("capacity must be > 0 or None for unbounded")

    def create_buffer(self) -> FrameBuffer:
        return FrameBuffer(capacity=self.capacity, drain_on_read=self.drain_on_read)


@dataclass(slots=True)
class RetryPolicy:
    """Backoff and circuit breaker for repeated capture failures."""

    initial_backoff_s: float = 0.05
    max_backoff_s: float = 2.0
    # None keeps retrying forever.
    max_consecutive_failures: int | None = 100

    def __post_init__(self) -> None:
        if self.initial_backoff_s < 0:
            raise ValueError("initial_backoff_s must be >= 0")
        if self.max_backoff_s < self.initial_backoff_s:
            raise ValueError("max_backoff_s must be >= initial_backoff_s")
        if self.max_consecutive_failures is not None and self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be >= 1 when provided")

    def backoff_for(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        return min(self.max_backoff_s, self.initial_backoff_s * 2 ** (failures - 1))

    def should_give_up(self, failures: int) -> bool:
        return self.max_consecutive_failures is not None and failures >= self.max_consecutive_failures


class SessionState(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    FAULTED = "faulted"
    STOPPED = "stopped"


SETTING_NAMES = ("frame_time", "threshold", "threshold_min", "threshold_max", "high_voltage")


class DeviceSession:
    """A registered device, its frame buffer and its capture worker.

    The device handle and the buffer are guarded by independent reader/writer
    locks and the capture loop never holds both at once. At most one worker
    thread runs per session.
    """

    def __init__(
        self,
        index: int,
        device: DetectorInterface,
        buffer: FrameBuffer | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.index = index
        self.buffer = buffer if buffer is not None else FrameBuffer()
        self._device = device
        self._device_lock = ReadWriteLock()
        self._retry = retry_policy or RetryPolicy()
        self._threshold_min: float | None = None
        self._threshold_max: float | None = None
        self._stop_evt = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._state = SessionState.IDLE
        self._last_error: Exception | None = None
        self.frames_captured = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    @property
    def dimensions(self) -> tuple[int, int]:
        with self._device_lock.read():
            return self._device.get_dimensions()

    @property
    def software_thresholds(self) -> tuple[float | None, float | None]:
        with self._device_lock.read():
            return self._threshold_min, self._threshold_max

    def capture_once(self) -> Frame:
        with self._device_lock.read():
            device = self._device
            samples, size = device.capture_frame(device.frame_time)
            width, _height = device.get_dimensions()
            low, high = self._threshold_min, self._threshold_max

        frame = Frame.from_buffer(samples, width, size=size, low=low, high=high)
        self.buffer.append(frame)
        self.frames_captured += 1
        return frame

    def apply(self, setting: str, value: float) -> None:
        """Apply one named setting under the device write lock.

        The running capture loop sees a new frame time on its next iteration.
        """

        if setting not in SETTING_NAMES:
            raise ValueError(f"Unknown setting: {setting}")
        with self._device_lock.write():
            if setting == "frame_time":
                self._device.set_frame_time(value)
            elif setting == "threshold":
                self._device.set_threshold(value)
            elif setting == "high_voltage":
                self._device.set_bias_voltage(value)
            elif setting == "threshold_min":
                self._threshold_min = value
            else:
                self._threshold_max = value

    def save_last_frame(self, path: str) -> None:
        with self._device_lock.read():
            self._device.save_last_frame(path)

    def start(self) -> bool:
        """Start the capture worker; return False if one is already running."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return False
            self._stop_evt.clear()
            self._last_error = None
            self._state = SessionState.ACTIVE
            self._thread = threading.Thread(
                target=self._run_loop,
                name=f"capture-{self.index}",
                daemon=True,
            )
            self._thread.start()
            return True

    def stop(self, *, wait: bool = True, timeout: float | None = 5.0) -> None:
        self._stop_evt.set()
        if not wait:
            return
        with self._lock:
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _run_loop(self) -> None:
        failures = 0
        while not self._stop_evt.is_set():
            try:
                self.capture_once()
            except Exception as exc:
                failures += 1
                self._last_error = exc
                if self._retry.should_give_up(failures):
                    logger.error(
                        "device %d: giving up after %d consecutive capture failures: %s",
                        self.index,
                        failures,
                        exc,
                    )
                    self._state = SessionState.FAULTED
                    return
                delay = self._retry.backoff_for(failures)
                logger.warning(
                    "device %d: capture failed (%d in a row), retrying in %.3fs: %s",
                    self.index,
                    failures,
                    delay,
                    exc,
                )
                self._stop_evt.wait(delay)
                continue
            if failures:
                logger.info("device %d: capture recovered after %d failures", self.index, failures)
            failures = 0
        self._state = SessionState.STOPPED
