from __future__ import annotations

import os
from typing import Any

import numpy as np

from .capture import DeviceSession


def _prepare_napari_environment() -> None:
    """Disable external napari plugin discovery.

    Broken third-party plugins can crash viewer startup; the core image viewer
    does not need any of them.
    """
    os.environ.setdefault("NAPARI_DISABLE_PLUGINS", "1")
    os.environ.setdefault("NAPARI_DISABLE_PLUGIN_ENTRY_POINTS", "1")
    os.environ.setdefault("NAPARI_DISABLE_PLUGIN_ENTRYPOINTS", "1")


def _session_image(session: DeviceSession) -> Any:
    frame = session.buffer.latest()
    if frame is not None:
        return frame.data
    width, height = session.dimensions
    return np.zeros((height, width), dtype=np.int16)


def launch_napari_image(image: Any, title: str = "Combined frames") -> None:
    _prepare_napari_environment()

    try:
        import napari
    except Exception as exc:  # pragma: no cover
        raise RuntimeError(
            "napari is required for the frame viewer. Install with: pip install napari"
        ) from exc

    viewer = napari.Viewer(title=title)
    viewer.add_image(image, name="frames", colormap="gray")
    napari.run()


def launch_matplotlib_image(image: Any, title: str = "Combined frames") -> None:
    try:
        import matplotlib.pyplot as plt
    except Exception as exc:  # pragma: no cover
        raise RuntimeError(
            "matplotlib is required for interactive display. "
            "Install with: pip install matplotlib"
        ) from exc

    fig, ax = plt.subplots()
    ax.imshow(image, cmap="gray", interpolation="nearest")
    ax.set_title(title)
    plt.show()


def launch_frame_viewer(image: Any, title: str = "Combined frames") -> None:
    """Show a single image in napari, falling back to matplotlib."""

    try:
        launch_napari_image(image, title=title)
    except RuntimeError:
        launch_matplotlib_image(image, title=title)


def launch_napari_session_viewer(session: DeviceSession, interval_ms: int = 500) -> None:
    """Display the newest buffered frame of a session, refreshed on a timer."""

    _prepare_napari_environment()

    try:
        import napari
        from qtpy.QtCore import QTimer
    except Exception as exc:  # pragma: no cover
        raise RuntimeError(
            "napari is required for the live viewer. Install with: pip install napari"
        ) from exc

    viewer = napari.Viewer(title=f"Detector {session.index}")
    layer = viewer.add_image(_session_image(session), name="detector", colormap="gray")

    timer = QTimer()

    def update() -> None:
        layer.data = _session_image(session)

    timer.timeout.connect(update)
    timer.start(max(1, int(interval_ms)))

    viewer.window._pixel_tracks_timer = timer  # type: ignore[attr-defined]
    napari.run()


def launch_matplotlib_session_viewer(session: DeviceSession, interval_ms: int = 500) -> None:
    try:
        import matplotlib.pyplot as plt
        from matplotlib.animation import FuncAnimation
    except Exception as exc:  # pragma: no cover
        raise RuntimeError(
            "matplotlib is required for interactive display. "
            "Install with: pip install matplotlib"
        ) from exc

    fig, ax = plt.subplots()
    im = ax.imshow(_session_image(session), cmap="gray")
    ax.set_title(f"Detector {session.index}")

    def update(_: int):
        im.set_data(_session_image(session))
        return (im,)

    fig._pixel_tracks_anim = FuncAnimation(fig, update, interval=interval_ms, blit=True)  # type: ignore[attr-defined]
    plt.show()


def launch_session_viewer(session: DeviceSession, interval_ms: int = 500) -> None:
    try:
        launch_napari_session_viewer(session, interval_ms=interval_ms)
    except RuntimeError:
        launch_matplotlib_session_viewer(session, interval_ms=interval_ms)
