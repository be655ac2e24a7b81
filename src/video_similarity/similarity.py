"""Similarity scoring between two frame signatures."""

from .hashing import HASH_SIZE, hamming_distance
from .models import FrameSignature

HASH_BITS = HASH_SIZE * HASH_SIZE

# Hash structure survives re-encoding far better than raw color statistics
HASH_WEIGHT = 0.70
COLOR_WEIGHT = 0.30

COLOR_NOISE_FLOOR = 0.01  # Bins with a lower average are ignored
COLOR_DIFF_SCALE = 10.0


def hash_similarity(sig_a: FrameSignature, sig_b: FrameSignature) -> float:
    """1 - normalized Hamming distance between the perceptual hashes."""
    distance = hamming_distance(sig_a.perceptual_hash, sig_b.perceptual_hash)
    return 1.0 - distance / HASH_BITS


def color_similarity(sig_a: FrameSignature, sig_b: FrameSignature) -> float:
    """
    Compare color histograms over significant bins only.

    Falls back to the hash similarity when no bin rises above the noise floor.
    """
    diff_sum = 0.0
    significant = 0
    for a, b in zip(sig_a.color_histogram, sig_b.color_histogram):
        if (a + b) / 2 > COLOR_NOISE_FLOOR:
            diff_sum += abs(a - b)
            significant += 1

    if significant == 0:
        return hash_similarity(sig_a, sig_b)
    return 1.0 - min(1.0, (diff_sum / significant) * COLOR_DIFF_SCALE)


def similarity(sig_a: FrameSignature, sig_b: FrameSignature) -> float:
    """
    Score two frame signatures in [0, 1], where 1.0 means identical.

    A missing frame on either side always scores 0. The score is symmetric in
    its arguments.
    """
    if not sig_a.image_present or not sig_b.image_present:
        return 0.0

    hash_sim = hash_similarity(sig_a, sig_b)
    color_sim = color_similarity(sig_a, sig_b)

    # Weighted dissimilarity keeps identical inputs at exactly 1.0
    dissimilarity = HASH_WEIGHT * (1.0 - hash_sim) + COLOR_WEIGHT * (1.0 - color_sim)
    return min(1.0, max(0.0, 1.0 - dissimilarity))
