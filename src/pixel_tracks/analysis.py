from __future__ import annotations

from dataclasses import dataclass

from .frame import Frame
from .particle import DEFAULT_MUON_SPAN, Particle, ParticleFilter


@dataclass(slots=True)
class AnalysisConfig:
    kernel_size: int = 3
    # Bounding-box span (px) at which a cluster is typed as a possible muon.
    muon_span: int = DEFAULT_MUON_SPAN

    def __post_init__(self) -> None:
        if self.kernel_size < 1:
            raise ValueError("kernel_size must be >= 1")
        if self.muon_span < 0:
            raise ValueError("muon_span must be >= 0")


def analyze_frame(
    frame: Frame,
    config: AnalysisConfig,
    particle_filter: ParticleFilter | None = None,
) -> list[Particle]:
    """Label and classify a frame once, then return the particles passing the filter."""

    if not frame.analyzed:
        frame.count_particles(config.kernel_size)
        frame.classify_particles(config.muon_span)
    return (particle_filter or ParticleFilter()).select(frame.particles)
