"""Feature extraction for video frames: perceptual hash, color histogram, edges."""

from typing import Optional

import imagehash
import numpy as np
from PIL import Image

from .models import FrameSignature

HASH_SIZE = 8  # 8x8 cells -> 64-bit hash

# Fixed resolution for histogram and edge analysis
ANALYSIS_WIDTH = 160
ANALYSIS_HEIGHT = 120

HISTOGRAM_BINS = 16  # Per channel, 48 in total
EDGE_THRESHOLD = 50.0  # Sobel gradient magnitude


def compute_perceptual_hash(image: Image.Image) -> int:
    """
    Compute a 64-bit average hash of an image.

    The image is reduced to 8x8 grayscale, and bit i is set when cell i (in
    raster order) is brighter than the mean of all cells.
    """
    bits = imagehash.average_hash(image, hash_size=HASH_SIZE).hash.flatten()
    value = 0
    for i, bit in enumerate(bits):
        if bit:
            value |= 1 << i
    return value


def hamming_distance(hash_a: int, hash_b: int) -> int:
    """Count differing bits between two hashes."""
    return bin(hash_a ^ hash_b).count("1")


def _analysis_pixels(image: Image.Image) -> np.ndarray:
    rgb = image.convert("RGB").resize(
        (ANALYSIS_WIDTH, ANALYSIS_HEIGHT), Image.Resampling.BILINEAR
    )
    return np.asarray(rgb, dtype=np.uint8)


def compute_color_histogram(image: Image.Image) -> tuple[float, ...]:
    """
    Compute a 48-bin RGB histogram (16 bins per channel).

    Each channel's bins are normalized by the pixel count, so every 16-bin
    group sums to 1.
    """
    return _histogram_from_pixels(_analysis_pixels(image))


def _histogram_from_pixels(pixels: np.ndarray) -> tuple[float, ...]:
    pixel_count = pixels.shape[0] * pixels.shape[1]
    bins = []
    for channel in range(3):
        buckets = pixels[:, :, channel].astype(np.int32) * HISTOGRAM_BINS // 256
        counts = np.bincount(buckets.ravel(), minlength=HISTOGRAM_BINS)
        bins.extend((counts / pixel_count).tolist())
    return tuple(bins)


def compute_edge_density(image: Image.Image) -> float:
    """Fraction of interior pixels whose Sobel gradient exceeds EDGE_THRESHOLD."""
    return _edge_density_from_pixels(_analysis_pixels(image))


def _edge_density_from_pixels(pixels: np.ndarray) -> float:
    gray = np.asarray(
        Image.fromarray(pixels).convert("L"), dtype=np.float32
    )
    if gray.shape[0] < 3 or gray.shape[1] < 3:
        return 0.0

    # 3x3 Sobel kernels applied via shifted slices over the interior
    tl, tc, tr = gray[:-2, :-2], gray[:-2, 1:-1], gray[:-2, 2:]
    ml, mr = gray[1:-1, :-2], gray[1:-1, 2:]
    bl, bc, br = gray[2:, :-2], gray[2:, 1:-1], gray[2:, 2:]

    gx = (tr + 2 * mr + br) - (tl + 2 * ml + bl)
    gy = (bl + 2 * bc + br) - (tl + 2 * tc + tr)
    magnitude = np.sqrt(gx * gx + gy * gy)

    return float(np.count_nonzero(magnitude > EDGE_THRESHOLD)) / magnitude.size


def compute_signature(image: Optional[Image.Image]) -> FrameSignature:
    """
    Extract a FrameSignature from a decoded frame.

    Args:
        image: Decoded frame, or None when the frame source had nothing

    Returns:
        FrameSignature; absent frames yield image_present=False
    """
    if image is None:
        return FrameSignature.absent()

    pixels = _analysis_pixels(image)
    return FrameSignature(
        image_present=True,
        perceptual_hash=compute_perceptual_hash(image),
        color_histogram=_histogram_from_pixels(pixels),
        edge_density=_edge_density_from_pixels(pixels),
    )
