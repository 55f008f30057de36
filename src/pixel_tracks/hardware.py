from __future__ import annotations

import ctypes
import ctypes.util
import math
import threading
import time
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Any

import numpy as np

from .errors import DetectorError, ErrorKind, check_rc
from .interfaces import DetectorInterface

# pxcore writes at most one 256x256 Timepix frame per call.
FRAME_BUFFER_SAMPLES = 65536


class TimepixMode(IntEnum):
    MEDIPIX = 0  # counting
    TOT = 1  # energy
    TIMEPIX = 3


class DeviceType(IntEnum):
    TPX = 1
    MPX3 = 2
    TPX3 = 3
    TPX2 = 4


class DeviceInfo(ctypes.Structure):
    _pack_ = 1
    _fields_ = [
        ("name", ctypes.c_char * 20),
        ("serial", ctypes.c_uint32),
        ("type", ctypes.c_int),
    ]


@dataclass(slots=True)
class DeviceSettings:
    """Initial configuration applied when a device is opened."""

    frame_time: float = 2.0
    # Safe bias values are roughly 5-100 V.
    high_voltage: float = 40.0
    # Typical hardware threshold values are 100-500.
    threshold: float = 200.0

    def __post_init__(self) -> None:
        if self.frame_time <= 0:
            raise ValueError("frame_time must be > 0")


def _load_library(library: str | Path) -> ctypes.CDLL:
    path = Path(library)
    if path.suffix or path.parent != Path("."):
        if not path.exists():
            raise FileNotFoundError(f"pxcore library not found: {library}")
        resolved = str(path)
    else:
        found = ctypes.util.find_library(str(library))
        if found is None:
            raise DetectorError(ErrorKind.DRIVER_NOT_LOADED, message=f"Could not locate library {library!r}")
        resolved = found

    lib = ctypes.CDLL(resolved)
    for name in (
        "pxcSetDirectories",
        "pxcInitialize",
        "pxcExit",
        "pxcGetDevicesCount",
        "pxcRefreshDevices",
        "pxcGetDeviceInfo",
        "pxcGetDeviceDimensions",
        "pxcSetTimepixMode",
        "pxcGetBiasRange",
        "pxcSetBias",
        "pxcSetThreshold",
        "pxcMeasureSingleFrame",
        "pxcGetMeasuredFrame",
        "pxcSaveMeasuredFrame",
    ):
        getattr(lib, name).restype = ctypes.c_int
    return lib


class TimepixDevice(DetectorInterface):
    """Single Timepix detector reached through the pxcore C library."""

    def __init__(self, lib: Any, index: int, frame_time: float, dimensions: tuple[int, int]) -> None:
        self._lib = lib
        self.index = int(index)
        self.frame_time = float(frame_time)
        self._dimensions = dimensions

    def _idx(self) -> ctypes.c_uint:
        return ctypes.c_uint(self.index)

    def capture_frame(self, integration_time: float | None = None) -> tuple[np.ndarray, int]:
        if integration_time is None:
            integration_time = self.frame_time
        buffer = (ctypes.c_short * FRAME_BUFFER_SAMPLES)()
        size = ctypes.c_uint(FRAME_BUFFER_SAMPLES)
        check_rc(self._lib.pxcMeasureSingleFrame(self._idx(), ctypes.c_double(integration_time), buffer, ctypes.byref(size)))

        # Some firmware reports size 0 and leaves the frame in the driver's
        # measured-frame list instead.
        if size.value == 0:
            size.value = FRAME_BUFFER_SAMPLES
            check_rc(self._lib.pxcGetMeasuredFrame(self._idx(), ctypes.c_uint(0), buffer, ctypes.byref(size)))

        return np.ctypeslib.as_array(buffer).copy(), int(size.value)

    def get_dimensions(self) -> tuple[int, int]:
        return self._dimensions

    def set_frame_time(self, seconds: float) -> None:
        if seconds <= 0:
            raise DetectorError(ErrorKind.INVALID_ARGUMENT, message=f"frame time must be > 0, got {seconds}")
        self.frame_time = float(seconds)

    def set_threshold(self, threshold: float) -> None:
        check_rc(self._lib.pxcSetThreshold(self._idx(), ctypes.c_int(0), ctypes.c_double(threshold)))

    def get_voltage_range(self) -> tuple[float, float]:
        low = ctypes.c_double(0.0)
        high = ctypes.c_double(0.0)
        check_rc(self._lib.pxcGetBiasRange(self._idx(), ctypes.byref(low), ctypes.byref(high)))
        return float(low.value), float(high.value)

    def set_bias_voltage(self, voltage: float) -> None:
        low, high = self.get_voltage_range()
        if not low <= voltage <= high:
            raise DetectorError(
                ErrorKind.INVALID_ARGUMENT,
                message=f"bias {voltage} V outside device range [{low}, {high}] V",
            )
        check_rc(self._lib.pxcSetBias(self._idx(), ctypes.c_double(voltage)))

    def save_last_frame(self, path: str) -> None:
        check_rc(self._lib.pxcSaveMeasuredFrame(self._idx(), ctypes.c_uint(0), str(path).encode()))


class PixHandle:
    """Owns the pxcore library session.

    Only one handle should be open per process; `close` shuts the library down.
    `library` may be a library name, a path, or an already loaded library
    object.
    """

    def __init__(self, library: str | Path | Any = "pxcore", config_dir: str = "config", log_dir: str = "log") -> None:
        if isinstance(library, (str, Path)):
            self._lib = _load_library(library)
        else:
            self._lib = library
        self._closed = False
        self._lock = threading.Lock()
        self._lib.pxcSetDirectories(config_dir.encode(), log_dir.encode())
        check_rc(self._lib.pxcInitialize(0, None))

    def device_count(self) -> int:
        return check_rc(self._lib.pxcGetDevicesCount())

    def refresh_devices(self) -> int:
        """Drop disconnected devices and search for new ones."""
        return int(self._lib.pxcRefreshDevices())

    def device_info(self, index: int) -> DeviceInfo:
        info = DeviceInfo()
        info.type = DeviceType.TPX
        check_rc(self._lib.pxcGetDeviceInfo(ctypes.c_uint(index), ctypes.byref(info)))
        return info

    def get_device(self, index: int, settings: DeviceSettings | None = None) -> TimepixDevice:
        settings = settings or DeviceSettings()
        info = self.device_info(index)
        if info.type != DeviceType.TPX:
            raise DetectorError(ErrorKind.NOT_SUPPORTED, message=f"device type {info.type} is not supported")

        idx = ctypes.c_uint(index)
        width = ctypes.c_uint(0)
        height = ctypes.c_uint(0)
        with self._lock:
            check_rc(self._lib.pxcSetTimepixMode(idx, ctypes.c_int(TimepixMode.TOT)))
            enable_calibration = getattr(self._lib, "pxcSetTimepixCalibrationEnabled", None)
            if callable(enable_calibration):
                check_rc(enable_calibration(idx, ctypes.c_bool(True)))
            check_rc(self._lib.pxcGetDeviceDimensions(idx, ctypes.byref(width), ctypes.byref(height)))

        device = TimepixDevice(self._lib, index, settings.frame_time, (int(width.value), int(height.value)))
        device.set_bias_voltage(settings.high_voltage)
        device.set_threshold(settings.threshold)
        return device

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._lib.pxcExit()

    def __enter__(self) -> "PixHandle":
        return self

    def __exit__(self, _exc_type, _exc, _tb) -> None:
        self.close()


@dataclass(slots=True)
class SimulatedScene:
    width: int = 256
    height: int = 256
    # Mean event rates per second of integration time.
    hit_rate_hz: float = 20.0
    muon_rate_hz: float = 0.5
    min_track_px: int = 20
    max_track_px: int = 120
    dead_pixel_fraction: float = 0.05

    def render(self, integration_time: float, rng: np.random.Generator) -> np.ndarray:
        image = np.zeros((self.height, self.width), dtype=np.int16)

        for _ in range(rng.poisson(self.hit_rate_hz * integration_time)):
            r = int(rng.integers(0, self.height))
            c = int(rng.integers(0, self.width))
            blob = int(rng.integers(1, 3))
            image[r : r + blob, c : c + blob] = rng.integers(20, 400)

        for _ in range(rng.poisson(self.muon_rate_hz * integration_time)):
            self._draw_track(image, rng)
        return image

    def _draw_track(self, image: np.ndarray, rng: np.random.Generator) -> None:
        length = int(rng.integers(self.min_track_px, self.max_track_px + 1))
        angle = float(rng.uniform(0.0, math.pi))
        r0 = float(rng.uniform(0, self.height - 1))
        c0 = float(rng.uniform(0, self.width - 1))
        for step in range(length):
            if rng.random() < self.dead_pixel_fraction:
                continue
            r = int(round(r0 + step * math.sin(angle)))
            c = int(round(c0 + step * math.cos(angle)))
            if 0 <= r < self.height and 0 <= c < self.width:
                image[r, c] = int(rng.integers(50, 250))


class SimulatedDetector(DetectorInterface):
    """In-memory detector producing random hits and straight tracks.

    `time_scale` multiplies the integration time actually slept per capture;
    0 returns frames immediately.
    """

    def __init__(
        self,
        scene: SimulatedScene | None = None,
        settings: DeviceSettings | None = None,
        seed: int | None = None,
        time_scale: float = 1.0,
        voltage_range: tuple[float, float] = (5.0, 100.0),
    ) -> None:
        settings = settings or DeviceSettings()
        self._scene = scene or SimulatedScene()
        self._rng = np.random.default_rng(seed)
        self._time_scale = time_scale
        self._voltage_range = voltage_range
        self._last_frame: np.ndarray | None = None
        self.frame_time = settings.frame_time
        self.threshold = 0.0
        self.bias_voltage = 0.0
        self.set_bias_voltage(settings.high_voltage)
        self.set_threshold(settings.threshold)

    def capture_frame(self, integration_time: float | None = None) -> tuple[np.ndarray, int]:
        if integration_time is None:
            integration_time = self.frame_time
        if self._time_scale > 0:
            time.sleep(integration_time * self._time_scale)
        image = self._scene.render(integration_time, self._rng)
        self._last_frame = image
        return image.ravel(), int(image.size)

    def get_dimensions(self) -> tuple[int, int]:
        return self._scene.width, self._scene.height

    def set_frame_time(self, seconds: float) -> None:
        if seconds <= 0:
            raise DetectorError(ErrorKind.INVALID_ARGUMENT, message=f"frame time must be > 0, got {seconds}")
        self.frame_time = float(seconds)

    def set_threshold(self, threshold: float) -> None:
        self.threshold = float(threshold)

    def get_voltage_range(self) -> tuple[float, float]:
        return self._voltage_range

    def set_bias_voltage(self, voltage: float) -> None:
        low, high = self._voltage_range
        if not low <= voltage <= high:
            raise DetectorError(
                ErrorKind.INVALID_ARGUMENT,
                message=f"bias {voltage} V outside device range [{low}, {high}] V",
            )
        self.bias_voltage = float(voltage)

    def save_last_frame(self, path: str) -> None:
        if self._last_frame is None:
            raise DetectorError(ErrorKind.COULD_NOT_SAVE, message="no frame measured yet")
        np.savetxt(path, self._last_frame, fmt="%d")
