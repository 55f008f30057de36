from __future__ import annotations

from typing import Any

import numpy as np

from .particle import Particle, Pixel


class DisjointSet:
    """Union-find over integer labels minted from 1 upward."""

    def __init__(self) -> None:
        # index 0 is the "no label" sentinel and never handed out
        self._parent: list[int] = [0]

    def __len__(self) -> int:
        return len(self._parent) - 1

    def make(self) -> int:
        label = len(self._parent)
        self._parent.append(label)
        return label

    def find(self, label: int) -> int:
        parent = self._parent
        root = label
        while parent[root] != root:
            root = parent[root]
        while parent[label] != root:
            next_label = parent[label]
            parent[label] = root
            label = next_label
        return root

    def union(self, keep: int, other: int) -> int:
        """Merge `other` into `keep`; the root of `keep` stays the root."""
        keep_root = self.find(keep)
        other_root = self.find(other)
        if keep_root != other_root:
            self._parent[other_root] = keep_root
        return keep_root


def normalize_kernel_size(kernel_size: int) -> int:
    kernel_size = int(kernel_size)
    if kernel_size < 1:
        raise ValueError("kernel_size must be >= 1")
    if kernel_size % 2 == 0:
        kernel_size += 1
    return kernel_size


def _causal_labels(labels: np.ndarray, row: int, col: int, radius: int) -> list[int]:
    """Distinct labels already assigned inside the window, in raster order."""
    cols = labels.shape[1]
    top = max(0, row - radius)
    left = max(0, col - radius)
    right = min(cols, col + radius + 1)

    window = np.concatenate((labels[top:row, left:right].ravel(), labels[row, left:col]))
    window = window[window > 0]
    if window.size == 0:
        return []
    return list(dict.fromkeys(window.tolist()))


def label_clusters(grid: Any, kernel_size: int = 3) -> list[Particle]:
    """Group nonzero pixels of a 2-D grid into connected clusters.

    Single raster pass with union-find merging. Two pixels are connected when
    one lies inside the other's square window of side `kernel_size` and was
    scanned first, so short runs of dead pixels inside a track do not split
    it. Even kernel sizes are bumped to the next odd value.

    Particles are returned in order of their first pixel in raster order.
    """

    kernel_size = normalize_kernel_size(kernel_size)
    arr = np.asarray(grid)
    if arr.size == 0:
        return []
    if arr.ndim != 2:
        raise ValueError("grid must be 2-D")

    rows, cols = arr.shape
    radius = kernel_size // 2
    labels = np.zeros((rows, cols), dtype=np.int64)
    sets = DisjointSet()
    hits = [(int(r), int(c)) for r, c in np.argwhere(arr != 0)]

    for r, c in hits:
        found = _causal_labels(labels, r, c, radius)
        if not found:
            labels[r, c] = sets.make()
            continue
        first = found[0]
        labels[r, c] = first
        for other in found[1:]:
            sets.union(first, other)

    clusters: dict[int, list[Pixel]] = {}
    for r, c in hits:
        root = sets.find(int(labels[r, c]))
        clusters.setdefault(root, []).append((r, c, int(arr[r, c])))

    return [Particle(positions=pixels) for pixels in clusters.values()]
