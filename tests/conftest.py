"""Pytest configuration and fixtures for video similarity tests."""

from fractions import Fraction
from pathlib import Path
from typing import Callable, Optional, Union

import av
import numpy as np
import pytest
from PIL import Image

from video_similarity import (
    AutoComparisonResult,
    ComparisonResult,
    ComparisonSession,
    ManualScheduler,
    OffsetResult,
    SessionListener,
)

FRAME_WIDTH = 64
FRAME_HEIGHT = 48
SEGMENT_MS = 500  # Synthetic content changes every 500ms

Content = Callable[[int], Optional[Image.Image]]


def block_frame(index: int) -> Image.Image:
    """Deterministic frame of random 8x6 color blocks, distinct per index."""
    seed = abs(index) * 2 + (1 if index < 0 else 0)
    rng = np.random.default_rng(seed)
    blocks = rng.integers(0, 256, size=(6, 8, 3), dtype=np.uint8)
    return Image.fromarray(blocks).resize(
        (FRAME_WIDTH, FRAME_HEIGHT), Image.Resampling.NEAREST
    )


def timeline(shift_ms: int = 0) -> Content:
    """Content where position t shows what the reference shows at t - shift_ms."""
    return lambda t: block_frame((t - shift_ms) // SEGMENT_MS)


class FakeFrameSource:
    """In-memory frame source keyed by path name."""

    def __init__(self) -> None:
        self.videos: dict[str, tuple[int, Content]] = {}
        self.extract_calls: list[tuple[str, int]] = []

    def add(self, name: str, duration_ms: int, content: Content) -> str:
        self.videos[name] = (duration_ms, content)
        return name

    def duration_ms(self, path: Union[str, Path]) -> int:
        entry = self.videos.get(str(path))
        return entry[0] if entry else 0

    def extract_frame(
        self, path: Union[str, Path], timestamp_ms: int
    ) -> Optional[Image.Image]:
        self.extract_calls.append((str(path), timestamp_ms))
        entry = self.videos.get(str(path))
        if entry is None or not 0 <= timestamp_ms < entry[0]:
            return None
        return entry[1](timestamp_ms)


class RecordingListener(SessionListener):
    """Records every session event."""

    def __init__(self) -> None:
        self.progress: list[int] = []
        self.frames: list[tuple[int, float]] = []
        self.completed: list[list[ComparisonResult]] = []
        self.partial: list[list[ComparisonResult]] = []
        self.auto: list[AutoComparisonResult] = []
        self.offsets: list[OffsetResult] = []

    def on_progress(self, percent: int) -> None:
        self.progress.append(percent)

    def on_frame_compared(self, timestamp: int, similarity: float) -> None:
        self.frames.append((timestamp, similarity))

    def on_comparison_complete(self, results: list[ComparisonResult]) -> None:
        self.completed.append(results)

    def on_partial_results(self, results: list[ComparisonResult]) -> None:
        self.partial.append(results)

    def on_auto_comparison_complete(self, result: AutoComparisonResult) -> None:
        self.auto.append(result)

    def on_offset_detected(self, result: OffsetResult) -> None:
        self.offsets.append(result)


@pytest.fixture
def source() -> FakeFrameSource:
    return FakeFrameSource()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def session(
    source: FakeFrameSource,
    scheduler: ManualScheduler,
    listener: RecordingListener,
) -> ComparisonSession:
    return ComparisonSession(source, scheduler, listener)


@pytest.fixture
def encoded_video(tmp_path: Path) -> Path:
    """A 2s, 25fps MPEG-4 video whose content changes every 500ms."""
    path = tmp_path / "clip.mp4"
    with av.open(str(path), mode="w") as container:
        stream = container.add_stream("mpeg4", rate=25)
        stream.width = FRAME_WIDTH
        stream.height = FRAME_HEIGHT
        stream.pix_fmt = "yuv420p"
        stream.codec_context.time_base = Fraction(1, 25)
        for i in range(50):
            frame = av.VideoFrame.from_image(block_frame(i * 40 // SEGMENT_MS))
            frame.pts = i
            frame.time_base = Fraction(1, 25)
            for packet in stream.encode(frame):
                container.mux(packet)
        for packet in stream.encode():
            container.mux(packet)
    return path
