"""Change detection between consecutive frames."""

from typing import Optional

import numpy as np

DEFAULT_THRESHOLD = 0.03


def diff_fraction(current: np.ndarray, previous: np.ndarray) -> float:
    """
    Fraction of pixels whose RGB values differ at all.

    Both frames must have the same height and width. Channels past the third
    (alpha) are ignored; single-channel frames are compared directly.
    """
    height, width = current.shape[:2]
    total = height * width
    if total == 0:
        return 0.0

    if current.ndim == 2:
        changed = np.count_nonzero(current != previous)
    else:
        changed = np.count_nonzero(
            (current[..., :3] != previous[..., :3]).any(axis=-1)
        )
    return changed / total


def is_distinct(
    current: Optional[np.ndarray],
    previous: Optional[np.ndarray],
    threshold: float = DEFAULT_THRESHOLD,
) -> bool:
    """
    Decide whether ``current`` differs enough from ``previous`` to keep.

    A missing frame on either side, or frames of different dimensions, always
    count as distinct. Otherwise the frame is distinct iff the fraction of
    changed pixels is strictly greater than ``threshold``.
    """
    if current is None or previous is None:
        return True
    if current.shape[:2] != previous.shape[:2] or current.ndim != previous.ndim:
        return True
    return diff_fraction(current, previous) > threshold
