"""Tests for the PyAV frame source."""

from pathlib import Path

from PIL import Image

from video_similarity import (
    AVFrameSource,
    compute_signature,
    extract_frame,
    get_duration_ms,
    similarity,
)

from conftest import FRAME_HEIGHT, FRAME_WIDTH, block_frame


class TestDuration:
    """Tests for get_duration_ms."""

    def test_duration_of_encoded_video(self, encoded_video: Path) -> None:
        assert 1500 <= get_duration_ms(encoded_video) <= 2500

    def test_missing_file_has_no_duration(self, tmp_path: Path) -> None:
        assert get_duration_ms(tmp_path / "missing.mp4") == 0

    def test_corrupt_file_has_no_duration(self, tmp_path: Path) -> None:
        path = tmp_path / "corrupt.mp4"
        path.write_bytes(b"not a video at all" * 64)
        assert get_duration_ms(path) == 0


class TestFrameExtraction:
    """Tests for extract_frame."""

    def test_extracts_image(self, encoded_video: Path) -> None:
        image = extract_frame(encoded_video, 1000)

        assert isinstance(image, Image.Image)
        assert image.size == (FRAME_WIDTH, FRAME_HEIGHT)

    def test_frame_matches_source_content(self, encoded_video: Path) -> None:
        """The decoded frame resembles the frame that was encoded at that time."""
        decoded = compute_signature(extract_frame(encoded_video, 1200))
        expected = compute_signature(block_frame(1200 // 500))
        other = compute_signature(block_frame(0))

        assert similarity(decoded, expected) > similarity(decoded, other)

    def test_extraction_is_deterministic(self, encoded_video: Path) -> None:
        first = compute_signature(extract_frame(encoded_video, 700))
        second = compute_signature(extract_frame(encoded_video, 700))
        assert similarity(first, second) == 1.0

    def test_missing_file_gives_no_frame(self, tmp_path: Path) -> None:
        assert extract_frame(tmp_path / "missing.mp4", 0) is None

    def test_frame_source_wrapper(self, encoded_video: Path) -> None:
        source = AVFrameSource()
        assert source.duration_ms(encoded_video) == get_duration_ms(encoded_video)
        assert source.extract_frame(encoded_video, 0) is not None
