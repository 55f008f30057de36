import numpy as np
import pytest

from pixel_tracks.errors import DetectorError, ErrorKind, check_rc
from pixel_tracks.frame import Frame
from pixel_tracks.hardware import (
    DeviceSettings,
    DeviceType,
    PixHandle,
    SimulatedDetector,
    SimulatedScene,
    TimepixMode,
)


class _FakePxcore:
    """Stands in for the ctypes-loaded pxcore library."""

    def __init__(self, measure_rc: int = 0, report_size: int = 4, device_type: int = DeviceType.TPX) -> None:
        self.measure_rc = measure_rc
        self.report_size = report_size
        self.device_type = device_type
        self.directories = None
        self.initialized = False
        self.exit_calls = 0
        self.mode = None
        self.thresholds: list[float] = []
        self.biases: list[float] = []
        self.fallback_calls = 0
        self.saved: list[bytes] = []

    def pxcSetDirectories(self, config_dir, log_dir):
        self.directories = (config_dir, log_dir)
        return 0

    def pxcInitialize(self, argc, argv):
        self.initialized = True
        return 0

    def pxcExit(self):
        self.exit_calls += 1
        return 0

    def pxcGetDevicesCount(self):
        return 2

    def pxcRefreshDevices(self):
        return 0

    def pxcGetDeviceInfo(self, index, info_ref):
        info_ref._obj.type = self.device_type
        return 0

    def pxcSetTimepixMode(self, index, mode):
        self.mode = mode.value
        return 0

    def pxcGetDeviceDimensions(self, index, width_ref, height_ref):
        width_ref._obj.value = 2
        height_ref._obj.value = 2
        return 0

    def pxcGetBiasRange(self, index, low_ref, high_ref):
        low_ref._obj.value = 5.0
        high_ref._obj.value = 100.0
        return 0

    def pxcSetBias(self, index, voltage):
        self.biases.append(voltage.value)
        return 0

    def pxcSetThreshold(self, index, threshold_index, threshold):
        self.thresholds.append(threshold.value)
        return 0

    def pxcMeasureSingleFrame(self, index, frame_time, buffer, size_ref):
        if self.measure_rc < 0:
            return self.measure_rc
        buffer[0] = 7
        buffer[1] = -2
        size_ref._obj.value = self.report_size
        return 0

    def pxcGetMeasuredFrame(self, index, frame_index, buffer, size_ref):
        self.fallback_calls += 1
        buffer[0] = 9
        size_ref._obj.value = 4
        return 0

    def pxcSaveMeasuredFrame(self, index, frame_index, path):
        self.saved.append(path)
        return 0


def test_error_kind_mapping() -> None:
    assert ErrorKind.from_code(-5) is ErrorKind.ACQUISITION_FAILED
    assert ErrorKind.from_code(-14) is ErrorKind.DRIVER_NOT_LOADED
    assert ErrorKind.from_code(-99) is ErrorKind.UNEXPECTED


def test_check_rc() -> None:
    assert check_rc(3) == 3
    with pytest.raises(DetectorError) as info:
        check_rc(-3)
    assert info.value.kind is ErrorKind.INVALID_ARGUMENT
    assert info.value.code == -3


def test_handle_initializes_and_closes_once() -> None:
    lib = _FakePxcore()

    with PixHandle(lib, config_dir="cfg", log_dir="logs") as handle:
        assert handle.device_count() == 2
        handle.close()

    assert lib.initialized
    assert lib.directories == (b"cfg", b"logs")
    assert lib.exit_calls == 1


def test_get_device_applies_defaults() -> None:
    lib = _FakePxcore()
    handle = PixHandle(lib)

    device = handle.get_device(0)

    assert lib.mode == TimepixMode.TOT
    assert device.get_dimensions() == (2, 2)
    assert device.frame_time == 2.0
    assert lib.biases == [40.0]
    assert lib.thresholds == [200.0]


def test_get_device_rejects_unsupported_type() -> None:
    handle = PixHandle(_FakePxcore(device_type=DeviceType.TPX3))

    with pytest.raises(DetectorError) as info:
        handle.get_device(0)
    assert info.value.kind is ErrorKind.NOT_SUPPORTED


def test_capture_frame_returns_samples_and_size() -> None:
    device = PixHandle(_FakePxcore()).get_device(0, DeviceSettings(frame_time=0.5))

    samples, size = device.capture_frame()
    frame = Frame.from_buffer(samples, device.get_dimensions()[0], size=size)

    assert size == 4
    assert frame.data.tolist() == [[7, -2], [0, 0]]


def test_capture_frame_falls_back_when_size_is_zero() -> None:
    lib = _FakePxcore(report_size=0)
    device = PixHandle(lib).get_device(0)

    samples, size = device.capture_frame(0.1)

    assert lib.fallback_calls == 1
    assert size == 4
    assert samples[0] == 9


def test_capture_frame_maps_error_codes() -> None:
    device = PixHandle(_FakePxcore(measure_rc=-5)).get_device(0)

    with pytest.raises(DetectorError) as info:
        device.capture_frame()
    assert info.value.kind is ErrorKind.ACQUISITION_FAILED


def test_bias_outside_range_is_rejected_before_driver_call() -> None:
    lib = _FakePxcore()
    device = PixHandle(lib).get_device(0)

    with pytest.raises(DetectorError) as info:
        device.set_bias_voltage(150.0)

    assert info.value.kind is ErrorKind.INVALID_ARGUMENT
    assert lib.biases == [40.0]
    assert device.get_voltage_range() == (5.0, 100.0)


def test_save_last_frame_passes_encoded_path() -> None:
    lib = _FakePxcore()
    device = PixHandle(lib).get_device(0)

    device.save_last_frame("frame.pmf")

    assert lib.saved == [b"frame.pmf"]


def test_missing_library_path_raises() -> None:
    with pytest.raises(FileNotFoundError):
        PixHandle("/nonexistent/libpxcore.so")


def test_device_settings_validation() -> None:
    with pytest.raises(ValueError, match="frame_time"):
        DeviceSettings(frame_time=0.0)


def test_simulated_detector_capture_shape() -> None:
    scene = SimulatedScene(width=32, height=16, hit_rate_hz=50.0, muon_rate_hz=0.0)
    detector = SimulatedDetector(scene=scene, seed=1, time_scale=0.0)

    samples, size = detector.capture_frame(1.0)

    assert size == 32 * 16
    assert detector.get_dimensions() == (32, 16)
    assert Frame.from_buffer(samples, 32, size=size).shape == (16, 32)


def test_simulated_scene_without_events_is_blank() -> None:
    scene = SimulatedScene(width=8, height=8, hit_rate_hz=0.0, muon_rate_hz=0.0)

    image = scene.render(1.0, np.random.default_rng(0))

    assert not image.any()


def test_simulated_track_is_drawn_inside_sensor() -> None:
    scene = SimulatedScene(width=64, height=64, min_track_px=30, max_track_px=30, dead_pixel_fraction=0.0)
    image = np.zeros((64, 64), dtype=np.int16)

    scene._draw_track(image, np.random.default_rng(4))  # noqa: SLF001

    assert 0 < np.count_nonzero(image) <= 30


def test_simulated_detector_settings() -> None:
    detector = SimulatedDetector(time_scale=0.0)

    detector.set_frame_time(0.5)
    detector.set_threshold(120.0)

    assert detector.frame_time == 0.5
    assert detector.threshold == 120.0
    assert detector.bias_voltage == 40.0
    with pytest.raises(DetectorError):
        detector.set_bias_voltage(1.0)
    with pytest.raises(DetectorError):
        detector.set_frame_time(0.0)


def test_simulated_save_last_frame(tmp_path) -> None:
    detector = SimulatedDetector(scene=SimulatedScene(width=4, height=2), seed=0, time_scale=0.0)

    with pytest.raises(DetectorError) as info:
        detector.save_last_frame(str(tmp_path / "none.txt"))
    assert info.value.kind is ErrorKind.COULD_NOT_SAVE

    detector.capture_frame(0.1)
    path = tmp_path / "last.txt"
    detector.save_last_frame(str(path))

    assert np.loadtxt(path, dtype=int).shape == (2, 4)
