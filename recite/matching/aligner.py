"""
Banded dynamic time warping between two feature sequences.

Only cells near the proportional diagonal are evaluated, which bounds the
cost to O(len(a) * band) per comparison so a phrase can be scored against
every candidate within one frame period.
"""

import math

import numpy as np

DEFAULT_BAND_RATIO = 0.3


def band_width(n: int, m: int, band_ratio: float = DEFAULT_BAND_RATIO) -> int:
    """
    Half-width of the evaluated band.

    Never narrower than |n - m| + 1, so at least one monotone path from
    (0, 0) to (n, m) always exists.
    """
    return max(int(math.floor(max(n, m) * band_ratio)), abs(n - m) + 1)


def dtw_distance(seq_a, seq_b, band_ratio: float = DEFAULT_BAND_RATIO) -> float:
    """
    Path-length normalized DTW distance.

    Args:
        seq_a: (n x d) feature sequence
        seq_b: (m x d) feature sequence with the same d
        band_ratio: Band half-width as a fraction of the longer sequence

    Returns:
        Accumulated Euclidean cost divided by n + m, or inf if either
        sequence is empty
    """
    a = np.asarray(seq_a, dtype=np.float64)
    b = np.asarray(seq_b, dtype=np.float64)
    if a.size == 0 or b.size == 0:
        return math.inf
    if a.ndim != 2 or b.ndim != 2:
        raise ValueError(f"expected 2-D sequences, got shapes {a.shape} and {b.shape}")
    n, m = a.shape[0], b.shape[0]
    if a.shape[1] != b.shape[1]:
        raise ValueError(f"feature dimensions do not match: {a.shape[1]} != {b.shape[1]}")

    band = band_width(n, m, band_ratio)

    cost = np.full((n + 1, m + 1), np.inf)
    cost[0, 0] = 0.0

    for i in range(1, n + 1):
        center = int(math.floor(i / n * m + 0.5))  # half rounds up
        j_start = max(1, center - band)
        j_end = min(m, center + band)
        if j_start > j_end:
            continue

        # Frame distances for the whole band segment of this row at once
        local = np.linalg.norm(b[j_start - 1:j_end] - a[i - 1], axis=1)
        prev_row = cost[i - 1]
        row = cost[i]
        for offset, j in enumerate(range(j_start, j_end + 1)):
            row[j] = local[offset] + min(prev_row[j], row[j - 1], prev_row[j - 1])

    return float(cost[n, m] / (n + m))
