from __future__ import annotations

import re
import threading
import weakref
from enum import Enum
from pathlib import Path
from typing import Iterable

import numpy as np

from .frame import Frame
from .particle import FilterKind, ParticleFilter

RAW_SEPARATOR = "-" * 10
COMBINED_CLAMP = 10000

_DATA_RE = re.compile(r"data: \[(.*?)\], particles:")


class SaveMode(Enum):
    STRUCTURED = "structured"
    RAW = "raw"


class FrameLogWriter:
    """Append frames to a text log.

    `structured` writes one debug line per frame with its particles restricted
    by the filter. `raw` writes one line per grid row followed by a dash
    separator. Unless the filter selects everything, frames without a matching
    particle are skipped. A frame is written at most once per writer.
    """

    def __init__(
        self,
        path: str | Path,
        mode: SaveMode | str = SaveMode.STRUCTURED,
        particle_filter: ParticleFilter | None = None,
    ) -> None:
        self.path = Path(path)
        self.mode = SaveMode(mode)
        self.particle_filter = particle_filter or ParticleFilter()
        self._written: weakref.WeakSet[Frame] = weakref.WeakSet()
        self._lock = threading.Lock()

    def write(self, frame: Frame) -> bool:
        with self._lock:
            if frame in self._written:
                return False
            selected = self.particle_filter.select(frame.particles)
            if self.particle_filter.kind is not FilterKind.ALL and not selected:
                return False

            with self.path.open("a", encoding="utf-8") as fh:
                if self.mode is SaveMode.STRUCTURED:
                    fh.write(frame.debug_repr(selected) + "\n")
                else:
                    for row in frame.data.tolist():
                        fh.write(" ".join(str(v) for v in row) + "\n")
                    fh.write(RAW_SEPARATOR + "\n")
            self._written.add(frame)
            return True

    def write_many(self, frames: Iterable[Frame]) -> int:
        return sum(1 for frame in frames if self.write(frame))


def read_raw_frames(path: str | Path) -> list[np.ndarray]:
    frames: list[np.ndarray] = []
    rows: list[list[int]] = []
    with Path(path).open("r", encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if line == RAW_SEPARATOR:
                if rows:
                    frames.append(np.array(rows, dtype=np.int16))
                rows = []
            elif line:
                rows.append([int(v) for v in line.split()])
    if rows:
        frames.append(np.array(rows, dtype=np.int16))
    return frames


def read_structured_frames(path: str | Path) -> list[np.ndarray]:
    """Parse the grids back out of a structured log (or captured `[frame]` output)."""
    frames: list[np.ndarray] = []
    with Path(path).open("r", encoding="utf-8") as fh:
        for line in fh:
            match = _DATA_RE.search(line)
            if match is None or not match.group(1).strip():
                continue
            body = match.group(1).strip()[1:-1]
            rows = [[int(v) for v in row.split(",") if v.strip()] for row in body.split("], [")]
            frames.append(np.array(rows, dtype=np.int16))
    return frames


def combine_frames(frames: Iterable[np.ndarray], clamp: int = COMBINED_CLAMP) -> np.ndarray:
    """Sum frames pixel-wise with each sample and each sum limited to `[0, clamp]`.

    Frames whose shape differs from the first one are skipped.
    """

    combined: np.ndarray | None = None
    for frame in frames:
        current = np.clip(np.asarray(frame, dtype=np.int64), 0, clamp)
        if combined is None:
            combined = current
        elif current.shape == combined.shape:
            combined = np.minimum(combined + current, clamp)
    if combined is None:
        raise ValueError("No frames to combine")
    return combined
