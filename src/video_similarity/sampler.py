"""Sample timestamp generation and scene-change detection."""

import logging
from typing import Callable, Optional, Sequence

from PIL import Image

from .hashing import compute_color_histogram

# Callable returning the frame of the scanned video at a relative timestamp
FrameReader = Callable[[int], Optional[Image.Image]]

MAX_SKIP_MS = 500  # Leading black frames and logos
EARLY_LADDER_MS = (0, 500, 1000, 1500, 2000, 3000, 5000, 7500, 10000, 15000)
EVEN_SEGMENTS = 5
MAX_SAMPLES = 20

SCENE_CHANGE_THRESHOLD = 0.3
SCENE_SCAN_WINDOW_MS = 30000
SCENE_SCAN_STEP_MS = 500
MAX_SCENE_CHANGES = 5


def is_scene_change(prev: Image.Image, cur: Image.Image) -> bool:
    """Report a scene change when the 48-bin histograms differ by more than 0.3."""
    hist_prev = compute_color_histogram(prev)
    hist_cur = compute_color_histogram(cur)
    difference = sum(abs(a - b) for a, b in zip(hist_prev, hist_cur))
    return difference > SCENE_CHANGE_THRESHOLD


def detect_scene_changes(
    frame_at: FrameReader,
    start_ms: int,
    end_ms: int,
    step_ms: int = SCENE_SCAN_STEP_MS,
    max_changes: int = MAX_SCENE_CHANGES,
) -> list[int]:
    """
    Scan [start_ms, end_ms) at a fixed step and collect scene-change timestamps.

    Frames that cannot be decoded are skipped; the next decodable frame is
    compared against the last decodable one.

    Returns:
        Timestamps of the frames that start a new scene, at most max_changes
    """
    changes: list[int] = []
    prev: Optional[Image.Image] = None

    for timestamp in range(start_ms, end_ms, step_ms):
        cur = frame_at(timestamp)
        if cur is None:
            continue
        if prev is not None and is_scene_change(prev, cur):
            changes.append(timestamp)
            if len(changes) >= max_changes:
                break
        prev = cur

    return changes


def sample_skip(duration_ms: int) -> int:
    """Leading span of a timeline that sampling never touches."""
    return min(MAX_SKIP_MS, duration_ms // 20)


def scene_scan_timestamps(duration_ms: int) -> range:
    """Timestamps scanned for scene changes: the first 30s after the skip."""
    skip = sample_skip(duration_ms)
    end = min(duration_ms, skip + SCENE_SCAN_WINDOW_MS)
    return range(skip, end, SCENE_SCAN_STEP_MS)


def generate_sample_timestamps(
    duration_ms: int,
    frame_at: Optional[FrameReader] = None,
    scene_changes: Optional[Sequence[int]] = None,
    max_samples: int = MAX_SAMPLES,
) -> list[int]:
    """
    Build an ordered, deduplicated set of sample timestamps for a duration.

    Combines a ladder of early points (divergence near the start is the most
    telling), scene changes found in the first 30s through frame_at, and
    evenly spaced points across the rest of the duration.

    Args:
        duration_ms: Length of the timeline to sample
        frame_at: Frame lookup used for scene detection; skipped when None
        scene_changes: Scene changes found beforehand, used instead of probing
        max_samples: Cap on the number of samples, earlier ones are kept

    Returns:
        Sorted timestamps, all within [skip, duration_ms)
    """
    if duration_ms <= 0:
        return []

    skip = sample_skip(duration_ms)
    ladder = [skip + step for step in EARLY_LADDER_MS if skip + step < duration_ms]
    timestamps = set(ladder)

    if scene_changes is None and frame_at is not None:
        scan = scene_scan_timestamps(duration_ms)
        scene_changes = detect_scene_changes(frame_at, scan.start, scan.stop)
        logging.debug(f"Scene changes before {scan.stop}ms: {scene_changes}")
    if scene_changes:
        timestamps.update(scene_changes[:MAX_SCENE_CHANGES])

    # Evenly spaced segment midpoints after the ladder
    remaining_start = ladder[-1] if ladder else skip
    segment = (duration_ms - remaining_start) / EVEN_SEGMENTS
    if segment >= 1:
        for i in range(EVEN_SEGMENTS):
            timestamps.add(int(remaining_start + segment * i + segment / 2))

    return sorted(t for t in timestamps if skip <= t < duration_ms)[:max_samples]
