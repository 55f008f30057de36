from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Sequence

# Bounding-box span, in pixels, at which a cluster is treated as a track.
DEFAULT_MUON_SPAN = 12

Pixel = tuple[int, int, int]


class ParticleKind(Enum):
    UNKNOWN = "Unknown"
    POSSIBLE_MUON = "PossibleMuon"


@dataclass(frozen=True, slots=True)
class ParticleType:
    """Classification tag of a cluster; `size` is only set for possible muons."""

    kind: ParticleKind = ParticleKind.UNKNOWN
    size: int | None = None

    @classmethod
    def unknown(cls) -> "ParticleType":
        return cls(ParticleKind.UNKNOWN)

    @classmethod
    def possible_muon(cls, size: int) -> "ParticleType":
        return cls(ParticleKind.POSSIBLE_MUON, int(size))

    @property
    def is_muon(self) -> bool:
        return self.kind is ParticleKind.POSSIBLE_MUON

    def __str__(self) -> str:
        if self.is_muon:
            return f"PossibleMuon({self.size})"
        return self.kind.value


@dataclass(slots=True)
class Particle:
    """One connected cluster of nonzero pixels, as `(row, col, intensity)` triples."""

    positions: list[Pixel]
    particle_type: ParticleType = field(default_factory=ParticleType.unknown)

    def __len__(self) -> int:
        return len(self.positions)

    def bounding_box(self) -> tuple[int, int, int, int]:
        """Return `(min_row, max_row, min_col, max_col)`."""
        if not self.positions:
            raise ValueError("Particle has no pixels")
        rows = [p[0] for p in self.positions]
        cols = [p[1] for p in self.positions]
        return min(rows), max(rows), min(cols), max(cols)

    def span(self) -> int:
        min_row, max_row, min_col, max_col = self.bounding_box()
        return max(max_row - min_row, max_col - min_col)

    def pixel_set(self) -> set[Pixel]:
        return set(self.positions)

    def debug_repr(self) -> str:
        pixels = ", ".join(f"({r}, {c}, {v})" for r, c, v in self.positions)
        return f"Particle {{ particle_type: {self.particle_type}, positions: [{pixels}] }}"


def classify(particle: Particle, min_span: int = DEFAULT_MUON_SPAN) -> ParticleType:
    """Type a particle by its bounding-box span and store the result on it.

    Long, thin clusters come from minimum-ionizing particles crossing the
    sensor; compact blobs are noise or low-energy hits. The span is a
    rotation-agnostic proxy for track length.
    """

    if not particle.positions:
        particle.particle_type = ParticleType.unknown()
        return particle.particle_type

    size = particle.span()
    if size >= min_span:
        particle.particle_type = ParticleType.possible_muon(size)
    else:
        particle.particle_type = ParticleType.unknown()
    return particle.particle_type


class FilterKind(Enum):
    ALL = "all"
    MUON = "muon"


@dataclass(frozen=True, slots=True)
class ParticleFilter:
    kind: FilterKind = FilterKind.ALL

    @classmethod
    def parse(cls, tokens: Sequence[str] | None) -> "ParticleFilter":
        """Build a filter from CLI/protocol tokens; no tokens selects everything."""
        if not tokens:
            return cls(FilterKind.ALL)
        kinds = set()
        for token in tokens:
            try:
                kinds.add(FilterKind(token.strip().lower()))
            except ValueError as exc:
                raise ValueError(f"Unknown particle filter: {token!r}") from exc
        if FilterKind.ALL in kinds:
            return cls(FilterKind.ALL)
        return cls(FilterKind.MUON)

    def matches(self, particle: Particle) -> bool:
        if self.kind is FilterKind.ALL:
            return True
        if self.kind is FilterKind.MUON:
            return particle.particle_type.is_muon
        raise AssertionError(f"Unhandled filter kind: {self.kind}")

    def select(self, particles: Iterable[Particle]) -> list[Particle]:
        return [p for p in particles if self.matches(p)]
