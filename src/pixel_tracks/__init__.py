"""Pixel-detector frame capture and particle-track classification."""

from .analysis import AnalysisConfig, analyze_frame
from .capture import BufferPolicy, DeviceSession, FrameBuffer, ReadWriteLock, RetryPolicy, SessionState
from .errors import DetectorError, ErrorKind, NotConnectedError, check_rc
from .frame import Frame
from .hardware import DeviceSettings, PixHandle, SimulatedDetector, SimulatedScene, TimepixDevice
from .interfaces import DetectorInterface
from .labeling import DisjointSet, label_clusters
from .particle import FilterKind, Particle, ParticleFilter, ParticleKind, ParticleType, classify
from .protocol import CommandDispatcher
from .sink import FrameLogWriter, SaveMode, combine_frames, read_raw_frames, read_structured_frames

__all__ = [
    "AnalysisConfig",
    "analyze_frame",
    "BufferPolicy",
    "DeviceSession",
    "FrameBuffer",
    "ReadWriteLock",
    "RetryPolicy",
    "SessionState",
    "DetectorError",
    "ErrorKind",
    "NotConnectedError",
    "check_rc",
    "Frame",
    "DeviceSettings",
    "PixHandle",
    "SimulatedDetector",
    "SimulatedScene",
    "TimepixDevice",
    "DetectorInterface",
    "DisjointSet",
    "label_clusters",
    "FilterKind",
    "Particle",
    "ParticleFilter",
    "ParticleKind",
    "ParticleType",
    "classify",
    "CommandDispatcher",
    "FrameLogWriter",
    "SaveMode",
    "combine_frames",
    "read_raw_frames",
    "read_structured_frames",
]
