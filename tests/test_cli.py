import io

import numpy as np
import pytest

from pixel_tracks import cli
from pixel_tracks.cli import _build_dispatcher, _pxcore_factory, _simulated_factory, build_parser, main
from pixel_tracks.errors import DetectorError, ErrorKind


def test_build_parser_defaults() -> None:
    args = build_parser().parse_args([])

    assert args.backend == "simulate"
    assert args.kernel_size == 3
    assert args.muon_span == 12
    assert args.buffer_capacity == 1024
    assert args.drain_on_read is False
    assert args.max_failures == 100
    assert args.save_file is None
    assert args.save_mode == "structured"
    assert args.filter == []
    assert args.view is None
    assert args.live_view is None


def test_build_dispatcher_maps_zero_to_unbounded(tmp_path) -> None:
    args = build_parser().parse_args(
        ["--buffer-capacity", "0", "--max-failures", "0", "--save-file", str(tmp_path / "f.log"), "--filter", "muon"]
    )

    dispatcher = _build_dispatcher(args, _simulated_factory(args))

    assert dispatcher._buffer_policy.capacity is None  # noqa: SLF001
    assert dispatcher._retry_policy.max_consecutive_failures is None  # noqa: SLF001
    assert dispatcher._sink.particle_filter.kind.value == "muon"  # noqa: SLF001


def test_simulated_factory_rejects_unknown_index() -> None:
    factory = _simulated_factory(build_parser().parse_args(["--sim-devices", "1"]))

    assert factory(0).get_dimensions() == (256, 256)
    with pytest.raises(DetectorError) as info:
        factory(1)
    assert info.value.kind is ErrorKind.INVALID_DEVICE_INDEX


def test_pxcore_factory_checks_device_count() -> None:
    class _Handle:
        def device_count(self) -> int:
            return 1

        def get_device(self, index, settings):
            return ("device", index, settings.frame_time)

    factory = _pxcore_factory(_Handle())

    assert factory(0) == ("device", 0, 2.0)
    with pytest.raises(DetectorError):
        factory(1)


def test_main_simulate_smoke(monkeypatch, capsys) -> None:
    monkeypatch.setattr(
        "sys.stdin",
        io.StringIO("add 0 frame-time 0.01\nadd 3\nget 0\nlist\nquit\n"),
    )

    assert main(["--sim-time-scale", "0", "--buffer-capacity", "2", "--sim-devices", "1"]) == 0

    captured = capsys.readouterr()
    assert "[len]" in captured.out
    assert "[devices]0" in captured.out
    assert "[err]Failed to get device: INVALID_DEVICE_INDEX" in captured.err


def test_main_rejects_unknown_filter(capsys) -> None:
    assert main(["--filter", "electron"]) == 2
    assert "Unknown particle filter" in capsys.readouterr().err


def test_main_reports_missing_library(capsys) -> None:
    assert main(["--backend", "pxcore", "--library", "/nonexistent/libpxcore.so"]) == 1
    assert "Failed to initialize pxcore" in capsys.readouterr().err


def test_main_view_combines_raw_log(tmp_path, monkeypatch) -> None:
    log = tmp_path / "raw.log"
    log.write_text("6000 1\n0 0\n----------\n6000 2\n0 -3\n----------\n", encoding="utf-8")
    shown = {}

    def _fake_viewer(image, title):
        shown["image"] = np.asarray(image)
        shown["title"] = title

    monkeypatch.setattr(cli, "launch_frame_viewer", _fake_viewer)

    assert main(["--view", str(log)]) == 0
    assert shown["image"].tolist() == [[10000, 3], [0, 0]]
    assert shown["title"] == "2 combined frames"


def test_main_view_empty_log(tmp_path, capsys) -> None:
    log = tmp_path / "empty.log"
    log.write_text("", encoding="utf-8")

    assert main(["--view", str(log), "--view-format", "structured"]) == 1
    assert "No frames found" in capsys.readouterr().err


def test_main_rejects_negative_buffer_capacity(capsys) -> None:
    assert main(["--buffer-capacity", "-1"]) == 2
    assert "capacity must be > 0" in capsys.readouterr().err


def test_main_warns_when_filter_cannot_match_unanalyzed_frames(tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("quit\n"))

    assert main(["--no-analyze", "--filter", "muon", "--save-file", str(tmp_path / "f.log")]) == 0

    assert "Warning: --no-analyze leaves frames unclassified" in capsys.readouterr().err
