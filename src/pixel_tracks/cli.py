from __future__ import annotations

import argparse
import logging
import sys
import threading

from .analysis import AnalysisConfig
from .capture import BufferPolicy, RetryPolicy
from .errors import DetectorError, ErrorKind
from .hardware import DeviceSettings, PixHandle, SimulatedDetector
from .particle import FilterKind, ParticleFilter
from .protocol import CommandDispatcher, DeviceFactory
from .sink import FrameLogWriter, SaveMode, combine_frames, read_raw_frames, read_structured_frames
from .viewer import launch_frame_viewer, launch_session_viewer


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Capture pixel-detector frames and classify particle tracks. Commands are read from stdin."
    )
    parser.add_argument(
        "--backend",
        choices=["simulate", "pxcore"],
        default="simulate",
        help="Detector backend selection",
    )
    parser.add_argument("--library", default="pxcore", help="pxcore library name or path")
    parser.add_argument("--config-dir", default="config", help="pxcore configuration directory")
    parser.add_argument("--log-dir", default="log", help="pxcore log directory")
    parser.add_argument(
        "--sim-devices", type=int, default=1, help="Number of simulated detectors available"
    )
    parser.add_argument(
        "--sim-time-scale",
        type=float,
        default=1.0,
        help="Fraction of the frame time a simulated capture actually sleeps",
    )
    parser.add_argument("--kernel-size", type=int, default=3, help="Clustering window size in pixels")
    parser.add_argument(
        "--muon-span", type=int, default=12, help="Bounding-box span (px) classified as a possible muon"
    )
    parser.add_argument(
        "--no-analyze",
        action="store_true",
        help="Emit frames on get without labeling and classifying them",
    )
    parser.add_argument(
        "--buffer-capacity",
        type=int,
        default=1024,
        help="Frames kept per device before the oldest is dropped; 0 for unbounded",
    )
    parser.add_argument(
        "--drain-on-read", action="store_true", help="Empty a device buffer when it is read with get"
    )
    parser.add_argument(
        "--max-failures",
        type=int,
        default=100,
        help="Consecutive capture failures before a device is marked faulted; 0 to retry forever",
    )
    parser.add_argument("--backoff", type=float, default=0.05, help="Initial retry backoff in seconds")
    parser.add_argument("--max-backoff", type=float, default=2.0, help="Retry backoff cap in seconds")
    parser.add_argument("--save-file", default=None, help="Append frames read with get to this log file")
    parser.add_argument(
        "--save-mode",
        choices=[mode.value for mode in SaveMode],
        default=SaveMode.STRUCTURED.value,
        help="Frame log format",
    )
    parser.add_argument(
        "--filter",
        nargs="*",
        default=[],
        help="Particle filter tokens for saved frames (e.g. muon); empty saves every frame",
    )
    parser.add_argument("--view", default=None, help="Show the combined frames of a saved log and exit")
    parser.add_argument(
        "--view-format",
        choices=[mode.value for mode in SaveMode],
        default=SaveMode.RAW.value,
        help="Format of the log passed to --view",
    )
    parser.add_argument(
        "--live-view",
        type=int,
        default=None,
        help="Add this device and show its newest frame while commands are read in the background",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (stderr)",
    )
    return parser


def _simulated_factory(args) -> DeviceFactory:
    def factory(index: int) -> SimulatedDetector:
        if index >= args.sim_devices:
            raise DetectorError(ErrorKind.INVALID_DEVICE_INDEX)
        return SimulatedDetector(settings=DeviceSettings(), time_scale=args.sim_time_scale)

    return factory


def _pxcore_factory(handle: PixHandle) -> DeviceFactory:
    def factory(index: int):
        if index >= handle.device_count():
            raise DetectorError(ErrorKind.INVALID_DEVICE_INDEX)
        return handle.get_device(index, DeviceSettings())

    return factory


def _build_policies(args) -> tuple[BufferPolicy, RetryPolicy, AnalysisConfig | None]:
    buffer_policy = BufferPolicy(
        capacity=args.buffer_capacity or None,
        drain_on_read=args.drain_on_read,
    )
    retry_policy = RetryPolicy(
        initial_backoff_s=args.backoff,
        max_backoff_s=args.max_backoff,
        max_consecutive_failures=args.max_failures or None,
    )
    analysis = None if args.no_analyze else AnalysisConfig(kernel_size=args.kernel_size, muon_span=args.muon_span)
    return buffer_policy, retry_policy, analysis


def _build_dispatcher(args, factory: DeviceFactory) -> CommandDispatcher:
    buffer_policy, retry_policy, analysis = _build_policies(args)
    sink = None
    if args.save_file:
        sink = FrameLogWriter(
            args.save_file,
            mode=args.save_mode,
            particle_filter=ParticleFilter.parse(args.filter),
        )
    return CommandDispatcher(
        factory,
        buffer_policy=buffer_policy,
        retry_policy=retry_policy,
        analysis=analysis,
        sink=sink,
    )


def _view_log(path: str, fmt: str) -> int:
    frames = read_raw_frames(path) if fmt == SaveMode.RAW.value else read_structured_frames(path)
    if not frames:
        print(f"No frames found in {path}", file=sys.stderr)
        return 1
    launch_frame_viewer(combine_frames(frames), title=f"{len(frames)} combined frames")
    return 0


def _serve(dispatcher: CommandDispatcher, live_view: int | None) -> None:
    if live_view is None:
        dispatcher.run(sys.stdin)
        return

    dispatcher.handle_line(f"add {live_view}")
    session = dispatcher.session(live_view)
    if session is None:
        dispatcher.close()
        raise RuntimeError(f"Could not open device {live_view} for live view")

    reader = threading.Thread(target=dispatcher.run, args=(sys.stdin,), daemon=True)
    reader.start()
    try:
        launch_session_viewer(session)
    finally:
        dispatcher.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.view:
        return _view_log(args.view, args.view_format)

    try:
        particle_filter = ParticleFilter.parse(args.filter)
        _build_policies(args)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    if args.no_analyze and args.save_file and particle_filter.kind is not FilterKind.ALL:
        print(
            f"Warning: --no-analyze leaves frames unclassified, so the {particle_filter.kind.value!r} filter "
            "will not save any frames.",
            file=sys.stderr,
        )

    if args.backend == "simulate":
        _serve(_build_dispatcher(args, _simulated_factory(args)), args.live_view)
        return 0

    try:
        handle = PixHandle(args.library, config_dir=args.config_dir, log_dir=args.log_dir)
    except (DetectorError, OSError) as exc:
        print(f"Failed to initialize pxcore: {exc}", file=sys.stderr)
        return 1
    with handle:
        print(f"Device count: {handle.device_count()}", file=sys.stderr)
        _serve(_build_dispatcher(args, _pxcore_factory(handle)), args.live_view)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
