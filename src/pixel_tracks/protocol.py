"""Line-oriented control protocol for capture sessions.

Commands arrive one per line, whitespace separated::

    add <index> [frame-time <s>] [threshold-pix <v>] [threshold-min <v>]
        [threshold-max <v>] [high-voltage <V>]
    set <index> [settings as for add]
    get <index>
    save <index> <path>
    status <index>
    remove <index>
    list
    quit

Replies go to the output stream with a bracketed tag (`[len]`, `[frame]`,
`[status]`, `[devices]`); problems go to the error stream as `[err]` lines and
the offending command is dropped.
"""

from __future__ import annotations

import logging
import sys
from typing import Callable, Iterable, Iterator, TextIO

from .analysis import AnalysisConfig, analyze_frame
from .capture import BufferPolicy, DeviceSession, RetryPolicy
from .errors import DetectorError
from .interfaces import DetectorInterface
from .sink import FrameLogWriter

logger = logging.getLogger(__name__)

DeviceFactory = Callable[[int], DetectorInterface]

# protocol token -> (session setting, value used when the number is missing or malformed)
SETTING_TOKENS: dict[str, tuple[str, float]] = {
    "frame-time": ("frame_time", 2.0),
    "threshold-pix": ("threshold", 0.2),
    "threshold-min": ("threshold_min", 0.0),
    "threshold-max": ("threshold_max", 0.0),
    "high-voltage": ("high_voltage", 0.0),
}


class CommandDispatcher:
    def __init__(
        self,
        device_factory: DeviceFactory,
        out: TextIO | None = None,
        err: TextIO | None = None,
        buffer_policy: BufferPolicy | None = None,
        retry_policy: RetryPolicy | None = None,
        analysis: AnalysisConfig | None = None,
        sink: FrameLogWriter | None = None,
    ) -> None:
        self._device_factory = device_factory
        self._out = out if out is not None else sys.stdout
        self._err = err if err is not None else sys.stderr
        self._buffer_policy = buffer_policy or BufferPolicy()
        self._retry_policy = retry_policy or RetryPolicy()
        self._analysis = analysis
        self._sink = sink
        self._sessions: dict[int, DeviceSession] = {}
        self._commands: dict[str, Callable[[Iterator[str]], bool]] = {
            "add": self._cmd_add,
            "set": self._cmd_set,
            "get": self._cmd_get,
            "save": self._cmd_save,
            "status": self._cmd_status,
            "remove": self._cmd_remove,
            "list": self._cmd_list,
            "quit": self._cmd_quit,
            "exit": self._cmd_quit,
        }

    @property
    def sessions(self) -> dict[int, DeviceSession]:
        return dict(self._sessions)

    def session(self, index: int) -> DeviceSession | None:
        return self._sessions.get(index)

    def handle_line(self, line: str) -> bool:
        """Process one command line; return False when the dispatcher should stop."""
        tokens = iter(line.split())
        for token in tokens:
            handler = self._commands.get(token)
            if handler is not None:
                return handler(tokens)
        return True

    def run(self, stream: Iterable[str] | None = None) -> None:
        stream = sys.stdin if stream is None else stream
        try:
            for line in stream:
                if not self.handle_line(line):
                    break
        finally:
            self.close()

    def close(self) -> None:
        sessions = list(self._sessions.values())
        for session in sessions:
            session.stop(wait=False)
        for session in sessions:
            session.stop()

    def _write(self, text: str) -> None:
        print(text, file=self._out)

    def _error(self, text: str) -> None:
        print(f"[err]{text}", file=self._err)

    def _read_index(self, tokens: Iterator[str]) -> int | None:
        token = next(tokens, None)
        if token is None:
            return 0
        try:
            index = int(token)
        except ValueError:
            index = -1
        if index < 0:
            self._error(f"Invalid device index: {token}")
            return None
        return index

    def _lookup(self, tokens: Iterator[str]) -> DeviceSession | None:
        index = self._read_index(tokens)
        if index is None:
            return None
        session = self._sessions.get(index)
        if session is None:
            self._error("Device not created")
        return session

    def _parse_number(self, token: str | None, default: float) -> float:
        if token is None:
            self._error("Error parsing command: None")
            return default
        try:
            return float(token)
        except ValueError:
            self._error(f"Error parsing number: {token!r}")
            return default

    def _apply_settings(self, session: DeviceSession, tokens: Iterator[str]) -> None:
        for token in tokens:
            setting = SETTING_TOKENS.get(token)
            if setting is None:
                self._error(f"Invalid command: {token}")
                continue
            name, default = setting
            value = self._parse_number(next(tokens, None), default)
            try:
                session.apply(name, value)
            except DetectorError as exc:
                self._error(f"Failed to set {token}: {exc}")

    def _cmd_add(self, tokens: Iterator[str]) -> bool:
        index = self._read_index(tokens)
        if index is None:
            return True

        session = self._sessions.get(index)
        if session is None:
            try:
                device = self._device_factory(index)
            except DetectorError as exc:
                self._error(f"Failed to get device: {exc.kind.name}")
                return True
            session = DeviceSession(
                index,
                device,
                buffer=self._buffer_policy.create_buffer(),
                retry_policy=self._retry_policy,
            )
            self._sessions[index] = session
            logger.info("device %d registered", index)

        if not session.start():
            logger.debug("device %d already capturing", index)
        self._apply_settings(session, tokens)
        return True

    def _cmd_set(self, tokens: Iterator[str]) -> bool:
        session = self._lookup(tokens)
        if session is not None:
            self._apply_settings(session, tokens)
        return True

    def _cmd_get(self, tokens: Iterator[str]) -> bool:
        session = self._lookup(tokens)
        if session is None:
            return True

        frames = session.buffer.snapshot()
        if self._analysis is not None:
            for frame in frames:
                analyze_frame(frame, self._analysis)

        self._write(f"[len]{len(frames)}")
        for frame in frames:
            self._write(f"[frame]{frame.debug_repr()}")
        self._out.flush()

        if self._sink is not None:
            try:
                self._sink.write_many(frames)
            except OSError as exc:
                self._error(f"Failed to save frames: {exc}")
        return True

    def _cmd_save(self, tokens: Iterator[str]) -> bool:
        session = self._lookup(tokens)
        if session is None:
            return True
        path = next(tokens, None)
        if path is None:
            self._error("Missing path for save")
            return True
        try:
            session.save_last_frame(path)
        except DetectorError as exc:
            self._error(f"Failed to save frame: {exc.kind.name}")
        except OSError as exc:
            self._error(f"Failed to save frame: {exc}")
        return True

    def _cmd_status(self, tokens: Iterator[str]) -> bool:
        session = self._lookup(tokens)
        if session is None:
            return True
        line = (
            f"[status]{session.index} {session.state.value} "
            f"frames={len(session.buffer)} captured={session.frames_captured} "
            f"dropped={session.buffer.dropped}"
        )
        if session.last_error is not None:
            line += f" error={session.last_error}"
        self._write(line)
        return True

    def _cmd_remove(self, tokens: Iterator[str]) -> bool:
        session = self._lookup(tokens)
        if session is None:
            return True
        del self._sessions[session.index]
        session.stop()
        logger.info("device %d removed", session.index)
        return True

    def _cmd_list(self, _tokens: Iterator[str]) -> bool:
        self._write("[devices]" + " ".join(str(i) for i in sorted(self._sessions)))
        return True

    def _cmd_quit(self, _tokens: Iterator[str]) -> bool:
        return False
