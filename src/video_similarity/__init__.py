"""
Video Similarity - Measure how alike two videos are and find the offset that aligns them.

Frames are compared with a perceptual hash and a color histogram. Long
comparisons run in a cooperative session that does one bounded step per tick,
so a host application stays responsive and can cancel at any time.

Example usage:
    from video_similarity import (
        AVFrameSource, ComparisonSession, ManualScheduler, SessionListener, Slot,
    )

    class Printer(SessionListener):
        def on_offset_detected(self, result):
            print(f"Offset: {result.offset_ms}ms ({result.confidence:.0%})")

    scheduler = ManualScheduler()
    session = ComparisonSession(AVFrameSource(), scheduler, Printer())
    session.set_video(Slot.A, "original.mkv")
    session.set_video(Slot.B, "reencode.mp4")
    session.start_offset_detection()
    scheduler.run_until_idle()
"""

from importlib.metadata import version

from .cache import FrameCache
from .finder import OffsetSearch, compute_confidence, find_offset
from .hashing import compute_perceptual_hash, compute_signature, hamming_distance
from .models import (
    AutoComparisonResult,
    ComparisonResult,
    FrameSignature,
    OffsetResult,
    SessionState,
    Slot,
    VideoRef,
)
from .sampler import generate_sample_timestamps, is_scene_change
from .session import (
    AsyncioScheduler,
    ComparisonSession,
    IdentityThresholds,
    ManualScheduler,
    SessionListener,
    overlap_window,
)
from .similarity import similarity
from .video import AVFrameSource, FrameSource, extract_frame, get_duration_ms

__version__ = version("video-similarity")

__all__ = [
    # Session
    "ComparisonSession",
    "SessionListener",
    "ManualScheduler",
    "AsyncioScheduler",
    "IdentityThresholds",
    "overlap_window",
    # Models
    "AutoComparisonResult",
    "ComparisonResult",
    "FrameSignature",
    "OffsetResult",
    "SessionState",
    "Slot",
    "VideoRef",
    # Frame source
    "FrameSource",
    "AVFrameSource",
    "extract_frame",
    "get_duration_ms",
    # Features and scoring
    "compute_signature",
    "compute_perceptual_hash",
    "hamming_distance",
    "similarity",
    "is_scene_change",
    "generate_sample_timestamps",
    "FrameCache",
    # Offset search
    "OffsetSearch",
    "compute_confidence",
    "find_offset",
    # Version
    "__version__",
]
