"""Blur detection via variance of the Laplacian."""

import numpy as np
from typing import Optional

from .extractor import Frame

# Rec. 601 luma weights scaled by 1000 so the Laplacian runs in exact integers.
LUMA_WEIGHTS_MILLI = np.array([299, 587, 114], dtype=np.int64)
LUMA_SCALE = 1000.0

# Score at which the clarity index saturates at 100.
CLARITY_FULL_SCALE = 300.0


def sharpness(frame: Frame) -> float:
    """
    Variance of the absolute 4-neighbour Laplacian over interior pixels.

    Higher = sharper. The score is unnormalized: it depends on resolution
    and content, so thresholds are empirical. A flat frame scores exactly 0,
    as does any frame without interior pixels (width or height < 3).
    """
    if frame.width < 3 or frame.height < 3:
        return 0.0

    lum = frame.rgb.astype(np.int64) @ LUMA_WEIGHTS_MILLI
    lap = np.abs(
        4 * lum[1:-1, 1:-1]
        - lum[:-2, 1:-1]
        - lum[2:, 1:-1]
        - lum[1:-1, :-2]
        - lum[1:-1, 2:]
    )
    return float((lap / LUMA_SCALE).var())


def clarity_index(score: Optional[float]) -> int:
    """Map a sharpness score onto a 0-100 display scale."""
    if not score:
        return 0
    return min(100, int(round(score / CLARITY_FULL_SCALE * 100)))


def clarity_label(index: int) -> str:
    if index >= 70:
        return "excellent"
    if index >= 50:
        return "good"
    if index >= 30:
        return "fair"
    return "poor"
