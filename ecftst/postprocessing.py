"""
Spatial post-processing of classified label rasters.

Implements the majority (mode) filter that removes isolated pixels from
the disturbance map before export.
"""

import numpy as np
from scipy import ndimage

from .config import NODATA_LABEL


def mode_filter(
    labels: np.ndarray,
    radius: int = 1,
    iterations: int = 1,
    nodata: int = NODATA_LABEL
) -> np.ndarray:
    """
    Replace each labelled pixel by the most frequent label around it.

    Only valid neighbors are counted; ties go to the lowest label and
    nodata pixels stay nodata.

    Parameters
    ----------
    labels : np.ndarray
        2D integer label raster
    radius : int
        Square window radius; 1 gives a 3x3 window
    iterations : int
        Number of filter passes
    nodata : int
        Reserved nodata value

    Returns
    -------
    np.ndarray
        Filtered labels with the input dtype
    """
    out = np.asarray(labels).copy()
    valid = out != nodata
    classes = np.unique(out[valid])
    if classes.size <= 1:
        return out

    kernel = np.ones((2 * radius + 1, 2 * radius + 1))

    for _ in range(iterations):
        # Classes ascend, so argmax picks the lowest label on ties
        counts = np.stack([
            ndimage.correlate((out == c).astype(np.float64), kernel, mode='constant', cval=0.0)
            for c in classes
        ])
        majority = classes[np.argmax(counts, axis=0)]
        out = np.where(valid, majority, out).astype(labels.dtype)

    return out


def class_fractions(labels: np.ndarray, nodata: int = NODATA_LABEL) -> dict:
    """Share of valid pixels in each label."""
    valid = labels[labels != nodata]
    if valid.size == 0:
        return {}
    values, counts = np.unique(valid, return_counts=True)
    return {int(v): float(c / valid.size) for v, c in zip(values, counts)}
