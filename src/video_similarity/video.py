"""Frame source backed by PyAV: durations and single-frame extraction."""

import logging
from pathlib import Path
from typing import Optional, Protocol, Union

import av
from av.error import FFmpegError
from PIL import Image

PathLike = Union[str, Path]


class FrameSource(Protocol):
    """Anything that can report durations and decode frames at timestamps."""

    def duration_ms(self, path: PathLike) -> int: ...

    def extract_frame(
        self, path: PathLike, timestamp_ms: int
    ) -> Optional[Image.Image]: ...


def get_duration_ms(path: PathLike) -> int:
    """Return the container duration in milliseconds, or 0 if unreadable."""
    try:
        with av.open(str(path)) as container:
            if container.duration:
                return int(container.duration * 1000 // av.time_base)
            # Some containers only carry the duration on the stream
            stream = container.streams.video[0]
            if stream.duration and stream.time_base:
                return int(stream.duration * stream.time_base * 1000)
    except (FFmpegError, OSError, IndexError) as e:
        logging.debug(f"Could not read duration of {path}: {e}")
    return 0


def extract_frame(path: PathLike, timestamp_ms: int) -> Optional[Image.Image]:
    """
    Decode the first frame at or after a timestamp.

    Seeks to the keyframe before the timestamp and decodes forward. Timestamps
    are relative to the first frame of the video, not the absolute PTS.

    Args:
        path: Video file path
        timestamp_ms: Position in milliseconds

    Returns:
        PIL Image, or None if no frame could be decoded
    """
    try:
        with av.open(str(path)) as container:
            stream = container.streams.video[0]
            stream.thread_type = "AUTO"
            time_base = float(stream.time_base) if stream.time_base else 1.0
            start_time = float(stream.start_time * time_base) if stream.start_time else 0.0
            target = start_time + max(0, timestamp_ms) / 1000.0

            container.seek(int(target / time_base), stream=stream, backward=True)

            last_frame = None
            for frame in container.decode(stream):
                last_frame = frame
                if frame.pts is None or float(frame.pts * time_base) >= target - 0.001:
                    return frame.to_image()
            # Past the last frame: the tail of the stream is the closest match
            if last_frame is not None:
                return last_frame.to_image()
    except (FFmpegError, OSError, IndexError) as e:
        logging.debug(f"No frame at {timestamp_ms}ms in {path}: {e}")
    return None


class AVFrameSource:
    """FrameSource implementation that decodes with PyAV."""

    def duration_ms(self, path: PathLike) -> int:
        return get_duration_ms(path)

    def extract_frame(
        self, path: PathLike, timestamp_ms: int
    ) -> Optional[Image.Image]:
        return extract_frame(path, timestamp_ms)
