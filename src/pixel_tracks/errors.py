from __future__ import annotations

from enum import IntEnum


class ErrorKind(IntEnum):
    """Return codes reported by the pxcore detector library."""

    NOT_INITIALIZED = -1
    INVALID_DEVICE_INDEX = -2
    INVALID_ARGUMENT = -3
    COULD_NOT_SAVE = -4
    ACQUISITION_FAILED = -5
    DEVICE_ERROR = -6
    ACQUISITION_ABORTED = -7
    CANNOT_RECONNECT = -8
    NOT_ALLOWED = -9
    NOT_SUPPORTED = -10
    BUFFER_TOO_SMALL = -11
    CANNOT_CALIBRATE = -12
    TOO_MANY_BAD_PIXELS = -13
    DRIVER_NOT_LOADED = -14
    UNEXPECTED = -1000

    @classmethod
    def from_code(cls, code: int) -> "ErrorKind":
        try:
            return cls(int(code))
        except ValueError:
            return cls.UNEXPECTED


class NotConnectedError(RuntimeError):
    pass


class DetectorError(RuntimeError):
    """Failure reported by a detector adapter."""

    def __init__(self, kind: ErrorKind, code: int | None = None, message: str | None = None) -> None:
        self.kind = kind
        self.code = int(kind) if code is None else int(code)
        super().__init__(message or f"{kind.name} (rc={self.code})")


def check_rc(rc: int) -> int:
    """Raise `DetectorError` for negative library return codes, else pass rc through."""

    rc = int(rc)
    if rc < 0:
        raise DetectorError(ErrorKind.from_code(rc), rc)
    return rc
