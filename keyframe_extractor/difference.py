"""Frame-to-frame dissimilarity metrics.

The hybrid score combines two views of the same pair of frames:
  - a colour-histogram divergence, which reacts to global lighting and
    colour shifts,
  - a block-wise structural difference, which reacts to objects appearing,
    disappearing or moving.

All scores are in [0, 1]; 0 means identical. Frames of different pixel
dimensions are maximally different (1.0).
"""

import logging
import numpy as np

from .extractor import Frame

logger = logging.getLogger(__name__)

HIST_BINS = 64
HIST_TARGET_SAMPLES = 10_000
BLOCK_SIZE = 32
PIXEL_SAMPLE_STRIDE = 16

INTERSECTION_WEIGHT = 0.4
CHI_SQUARE_WEIGHT = 0.6
HISTOGRAM_WEIGHT = 0.3
STRUCTURAL_WEIGHT = 0.7


def _sample_stride(pixel_count: int) -> int:
    return max(1, pixel_count // HIST_TARGET_SAMPLES)


def _channel_counts(samples: np.ndarray) -> np.ndarray:
    """(3, HIST_BINS) integer counts for N x 3 uint8 samples."""
    bins = np.minimum(HIST_BINS - 1, (samples.astype(np.int64) * HIST_BINS) // 255)
    return np.stack([
        np.bincount(bins[:, c], minlength=HIST_BINS) for c in range(3)
    ])


def histogram_difference(a: Frame, b: Frame) -> float:
    """Blend of histogram-intersection and chi-square distances.

    Per-channel 64-bin histograms are built from ~10k strided pixels.
    Intersection is averaged over the three channels so that identical
    frames score exactly 0.
    """
    if not a.same_size(b):
        return 1.0

    flat_a = a.rgb.reshape(-1, 3)
    flat_b = b.rgb.reshape(-1, 3)
    stride = _sample_stride(flat_a.shape[0])
    samples_a = flat_a[::stride]
    samples_b = flat_b[::stride]
    n = samples_a.shape[0]

    counts_a = _channel_counts(samples_a)
    counts_b = _channel_counts(samples_b)

    # Work on integer counts and divide once: keeps identical inputs exact.
    intersection = np.minimum(counts_a, counts_b).sum() / (3.0 * n)

    total = counts_a + counts_b
    mask = total > 0
    delta = (counts_a - counts_b)[mask].astype(np.float64)
    chi_square = float(np.sum(delta * delta / total[mask])) / n

    intersection_diff = 1.0 - intersection
    chi_square_diff = min(1.0, chi_square / (3 * HIST_BINS))
    return float(INTERSECTION_WEIGHT * intersection_diff + CHI_SQUARE_WEIGHT * chi_square_diff)


def _block_edges(length: int) -> tuple[np.ndarray, np.ndarray]:
    starts = np.arange(0, length, BLOCK_SIZE)
    sizes = np.minimum(BLOCK_SIZE, length - starts)
    return starts, sizes


def structural_difference(a: Frame, b: Frame) -> float:
    """Mean absolute channel difference averaged per 32x32 block.

    Border blocks that are narrower than 32 pixels are averaged over the
    pixels they actually contain, then every block counts equally.
    """
    if not a.same_size(b):
        return 1.0

    per_pixel = np.abs(
        a.rgb.astype(np.int16) - b.rgb.astype(np.int16)
    ).sum(axis=2) / (3.0 * 255.0)

    row_starts, row_sizes = _block_edges(a.height)
    col_starts, col_sizes = _block_edges(a.width)

    block_sums = np.add.reduceat(
        np.add.reduceat(per_pixel, row_starts, axis=0), col_starts, axis=1,
    )
    block_means = block_sums / np.outer(row_sizes, col_sizes)
    return float(block_means.mean())


def pixel_difference(a: Frame, b: Frame) -> float:
    """Cheap mean absolute difference over every 16th pixel."""
    if not a.same_size(b):
        return 1.0

    samples_a = a.rgb.reshape(-1, 3)[::PIXEL_SAMPLE_STRIDE].astype(np.int16)
    samples_b = b.rgb.reshape(-1, 3)[::PIXEL_SAMPLE_STRIDE].astype(np.int16)
    if samples_a.shape[0] == 0:
        return 0.0
    return float(np.abs(samples_a - samples_b).mean() / 255.0)


def frame_difference(a: Frame, b: Frame, use_histogram: bool = True) -> float:
    """Hybrid dissimilarity between two frames in [0, 1].

    Args:
        a: First frame.
        b: Second frame. Must match ``a`` in width and height.
        use_histogram: Use the histogram + structural blend. When False,
            falls back to the faster strided pixel comparison.

    Returns:
        0.0 for identical frames, 1.0 for dimension mismatch.
    """
    if not a.same_size(b):
        logger.debug(
            "Frame size mismatch: %dx%d vs %dx%d",
            a.width, a.height, b.width, b.height,
        )
        return 1.0

    if not use_histogram:
        return pixel_difference(a, b)

    hist_diff = histogram_difference(a, b)
    struct_diff = structural_difference(a, b)
    score = HISTOGRAM_WEIGHT * hist_diff + STRUCTURAL_WEIGHT * struct_diff
    return float(min(1.0, max(0.0, score)))
