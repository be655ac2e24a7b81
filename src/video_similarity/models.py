"""Data models and enums for video similarity and alignment."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class Slot(str, Enum):
    """The two video slots tracked by a comparison session."""

    A = "A"
    B = "B"


class SessionState(str, Enum):
    """States of a comparison session. Only one non-idle state at a time."""

    IDLE = "idle"
    COMPARING = "comparing"  # Stepwise comparison along the timeline
    AUTO_COMPARING = "auto_comparing"  # Sampled full comparison with verdict
    DETECTING_OFFSET = "detecting_offset"  # Coarse-to-fine offset search


@dataclass(frozen=True)
class VideoRef:
    """A registered video: path plus duration, fetched once."""

    path: Path
    duration_ms: int


@dataclass(frozen=True)
class FrameSignature:
    """Features extracted from a single decoded frame."""

    image_present: bool
    perceptual_hash: int  # 64-bit average hash, bit i = cell i in raster order
    color_histogram: tuple[float, ...]  # 16 bins each for R, G, B
    edge_density: float

    @classmethod
    def absent(cls) -> "FrameSignature":
        """Signature for a frame that could not be decoded."""
        return cls(
            image_present=False,
            perceptual_hash=0,
            color_histogram=(0.0,) * 48,
            edge_density=0.0,
        )


@dataclass
class ComparisonResult:
    """Similarity of the two videos at one timeline position."""

    timestamp: int
    similarity: float
    description: str = ""


@dataclass
class AutoComparisonResult:
    """Outcome of a full sampled comparison."""

    overall_similarity: float
    is_identical: bool
    summary: str
    samples: list[ComparisonResult] = field(default_factory=list)


@dataclass
class OffsetResult:
    """Result of offset detection."""

    offset_ms: int
    confidence: float  # 0..1, how clearly the best offset stands out
    score: float  # Average similarity at the best offset
    candidates_scored: int
    method: str
