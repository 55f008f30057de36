from __future__ import annotations

from typing import Any

import numpy as np

from .labeling import label_clusters
from .particle import DEFAULT_MUON_SPAN, Particle, ParticleType, classify


def apply_intensity_band(grid: np.ndarray, low: float | None = None, high: float | None = None) -> np.ndarray:
    """Zero samples outside `[low, high]`.

    A bound of `None` or 0 is disabled, matching the protocol defaults for
    `threshold-min` / `threshold-max`.
    """

    if not low and not high:
        return grid
    out = np.array(grid, copy=True)
    if low:
        out[out < low] = 0
    if high:
        out[out > high] = 0
    return out


class Frame:
    """One captured detector frame.

    The intensity grid is frozen at construction. The particle list is
    derived from it once, by `count_particles`.
    """

    def __init__(self, data: Any) -> None:
        grid = np.array(data, dtype=np.int16)
        if grid.size == 0:
            grid = grid.reshape(len(grid) if grid.ndim >= 1 else 0, 0)
        if grid.ndim != 2:
            raise ValueError("Frame data must be 2-D")
        grid.setflags(write=False)
        self._data = grid
        self._particles: list[Particle] | None = None

    @classmethod
    def from_buffer(
        cls,
        buffer: Any,
        width: int,
        size: int | None = None,
        low: float | None = None,
        high: float | None = None,
    ) -> "Frame":
        """Reshape a flat sample buffer into rows of `width` pixels.

        `size` limits how many samples of the buffer are valid; a trailing
        partial row is dropped.
        """

        width = int(width)
        if width <= 0:
            raise ValueError("width must be > 0")
        flat = np.asarray(buffer, dtype=np.int16).ravel()
        if size is not None:
            flat = flat[: int(size)]
        rows = flat.size // width
        grid = flat[: rows * width].reshape(rows, width)
        return cls(apply_intensity_band(grid, low, high))

    @property
    def data(self) -> np.ndarray:
        return self._data

    @property
    def shape(self) -> tuple[int, int]:
        return self._data.shape  # type: ignore[return-value]

    @property
    def analyzed(self) -> bool:
        return self._particles is not None

    @property
    def particles(self) -> list[Particle]:
        return list(self._particles or [])

    def count_particles(self, kernel_size: int = 3) -> list[Particle]:
        if self._particles is not None:
            raise RuntimeError("Particles already counted for this frame")
        rows, cols = self.shape
        if rows == 0 or cols == 0:
            return []
        self._particles = label_clusters(self._data, kernel_size)
        return self.particles

    def classify_particles(self, min_span: int = DEFAULT_MUON_SPAN) -> list[ParticleType]:
        return [classify(p, min_span) for p in self._particles or []]

    def debug_repr(self, particles: list[Particle] | None = None) -> str:
        if particles is None:
            particles = self.particles
        rendered = ", ".join(p.debug_repr() for p in particles)
        return f"Frame {{ data: {self._data.tolist()}, particles: [{rendered}] }}"

    def __repr__(self) -> str:
        return self.debug_repr()
