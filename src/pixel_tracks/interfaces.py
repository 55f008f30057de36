from __future__ import annotations

from typing import Any, Protocol


class DetectorInterface(Protocol):
    """Interface for a pixel detector that captures single frames on demand."""

    frame_time: float

    def capture_frame(self, integration_time: float) -> tuple[Any, int]:
        """Acquire one frame; return the flat sample buffer and the valid sample count."""

    def get_dimensions(self) -> tuple[int, int]:
        """Return the sensor size as `(width, height)` in pixels."""

    def set_frame_time(self, seconds: float) -> None:
        """Set the integration time used by subsequent captures."""

    def set_threshold(self, threshold: float) -> None:
        """Set the hardware pixel threshold."""

    def set_bias_voltage(self, voltage: float) -> None:
        """Set the sensor bias voltage in volts."""

    def get_voltage_range(self) -> tuple[float, float]:
        """Return the allowed bias voltage range `(min, max)`."""

    def save_last_frame(self, path: str) -> None:
        """Ask the driver to write the last measured frame to `path`."""
