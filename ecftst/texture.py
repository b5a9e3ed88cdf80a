"""
Texture features for the target-year composite.

This module handles:
- First-order texture: 3x3 neighborhood mean and standard deviation
- Second-order texture: gray-level co-occurrence (GLCM) contrast,
  entropy and correlation
- Fixed gray-level quantization ranges so tiles match whole-image results

Texture is computed once per run, on the target-year composite only.
"""

import numpy as np
import xarray as xr
from scipy import ndimage
from typing import Dict, List, Optional, Sequence, Tuple

from .config import FIRST_ORDER_SUFFIXES, GLCM_LEVELS, GLCM_SUFFIXES, TEXTURE_BANDS


# Co-occurrence offsets (dy, dx) at distance 1: 0, 45, 90 and 135 degrees
GLCM_OFFSETS = [(0, 1), (-1, 1), (-1, 0), (-1, -1)]


# ---------------------------------------------------------------------------
# First-order texture
# ---------------------------------------------------------------------------

def neighborhood_mean_std(
    values: np.ndarray,
    radius: int = 1
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Mean and population standard deviation over a square window.

    Missing (NaN) neighbors are skipped. Pixels whose window holds no
    valid value are NaN.

    Parameters
    ----------
    values : np.ndarray
        2D band values
    radius : int
        Window radius; 1 gives a 3x3 window

    Returns
    -------
    tuple
        (mean, std) arrays with the shape of ``values``
    """
    kernel = np.ones((2 * radius + 1, 2 * radius + 1))
    valid = np.isfinite(values)
    filled = np.where(valid, values, 0.0)

    count = ndimage.correlate(valid.astype(np.float64), kernel, mode='constant', cval=0.0)
    total = ndimage.correlate(filled, kernel, mode='constant', cval=0.0)
    total_sq = ndimage.correlate(filled * filled, kernel, mode='constant', cval=0.0)

    with np.errstate(invalid='ignore', divide='ignore'):
        mean = total / count
        var = np.maximum(total_sq / count - mean * mean, 0.0)
    has_data = count > 0
    return np.where(has_data, mean, np.nan), np.where(has_data, np.sqrt(var), np.nan)


def add_first_order_texture(
    composite: xr.Dataset,
    bands: Optional[Sequence[str]] = None,
    radius: int = 1
) -> xr.Dataset:
    """
    Neighborhood mean and standard deviation for each texture band.

    Returns
    -------
    xr.Dataset
        ``<band>_mean`` and ``<band>_stdDev`` variables
    """
    if bands is None:
        bands = TEXTURE_BANDS

    out = {}
    for band in bands:
        mean, std = neighborhood_mean_std(composite[band].values.astype(np.float64), radius)
        out[f"{band}_mean"] = mean
        out[f"{band}_stdDev"] = std

    return _to_dataset(out, composite)


# ---------------------------------------------------------------------------
# GLCM texture
# ---------------------------------------------------------------------------

def glcm_value_ranges(
    composite: xr.Dataset,
    bands: Optional[Sequence[str]] = None
) -> Dict[str, Tuple[float, float]]:
    """
    Quantization range of each texture band over the whole image.

    Computed once per run and passed to every tile, so that gray levels
    do not depend on tile boundaries.
    """
    if bands is None:
        bands = TEXTURE_BANDS

    ranges = {}
    for band in bands:
        values = composite[band].values
        finite = values[np.isfinite(values)]
        if finite.size == 0:
            ranges[band] = (0.0, 0.0)
        else:
            ranges[band] = (float(finite.min()), float(finite.max()))
    return ranges


def quantize(
    values: np.ndarray,
    value_range: Tuple[float, float],
    levels: int = GLCM_LEVELS
) -> np.ndarray:
    """
    Map values onto ``levels`` equal-width gray levels.

    Returns
    -------
    np.ndarray
        Integer gray levels in [0, levels - 1]; -1 marks missing pixels
    """
    vmin, vmax = value_range
    valid = np.isfinite(values)
    if vmax > vmin:
        scaled = np.floor((np.where(valid, values, vmin) - vmin) / (vmax - vmin) * levels)
    else:
        scaled = np.zeros(values.shape)
    q = np.clip(scaled, 0, levels - 1).astype(np.int64)
    q[~valid] = -1
    return q


def _box_sum(
    arr: np.ndarray,
    r0: int, r1: int,
    c0: int, c1: int,
    margin: int
) -> np.ndarray:
    """Sum of ``arr[r + r0 : r + r1 + 1, c + c0 : c + c1 + 1]`` at every pixel.

    Cells outside the array count as zero. Offsets must lie within ``margin``.
    """
    h, w = arr.shape
    padded = np.pad(arr, margin, mode='constant')
    integral = np.zeros((h + 2 * margin + 1, w + 2 * margin + 1))
    integral[1:, 1:] = padded.cumsum(axis=0).cumsum(axis=1)

    top = slice(margin + r0, margin + r0 + h)
    bottom = slice(margin + r1 + 1, margin + r1 + 1 + h)
    left = slice(margin + c0, margin + c0 + w)
    right = slice(margin + c1 + 1, margin + c1 + 1 + w)

    return integral[bottom, right] - integral[top, right] - integral[bottom, left] + integral[top, left]


def _shifted(q: np.ndarray, dy: int, dx: int) -> np.ndarray:
    """Neighbor gray level at offset (dy, dx), -1 outside the image."""
    h, w = q.shape
    out = np.full_like(q, -1)
    src_r = slice(max(dy, 0), h + min(dy, 0))
    dst_r = slice(max(-dy, 0), h + min(-dy, 0))
    src_c = slice(max(dx, 0), w + min(dx, 0))
    dst_c = slice(max(-dx, 0), w + min(-dx, 0))
    out[dst_r, dst_c] = q[src_r, src_c]
    return out


def _glcm_direction(
    q: np.ndarray,
    dy: int, dx: int,
    radius: int,
    levels: int
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Contrast, entropy and correlation of the symmetric GLCM for one offset."""
    i = q
    j = _shifted(q, dy, dx)
    pair = (i >= 0) & (j >= 0)

    # Anchors whose pair lies fully inside the window centred on each pixel
    r0, r1 = -radius + max(0, -dy), radius - max(0, dy)
    c0, c1 = -radius + max(0, -dx), radius - max(0, dx)
    margin = radius + 1

    def window(arr):
        return _box_sum(np.where(pair, arr, 0).astype(np.float64), r0, r1, c0, c1, margin)

    fi = i.astype(np.float64)
    fj = j.astype(np.float64)
    n = window(np.ones_like(fi))
    s_mean = window((fi + fj) / 2.0)
    s_sq = window((fi * fi + fj * fj) / 2.0)
    s_ij = window(fi * fj)
    s_d2 = window((fi - fj) ** 2)
    n_off = window((i != j).astype(np.float64))

    # Sum of c*log2(c) over the distinct unordered gray-level pairs in the window
    codes = np.where(pair, np.minimum(i, j) * levels + np.maximum(i, j), -1)
    c_log_c = np.zeros(q.shape)
    for code in np.unique(codes[codes >= 0]):
        c = window((codes == code).astype(np.float64))
        with np.errstate(divide='ignore', invalid='ignore'):
            c_log_c += np.where(c > 0, c * np.log2(c), 0.0)

    with np.errstate(invalid='ignore', divide='ignore'):
        contrast = s_d2 / n
        mu = s_mean / n
        var = s_sq / n - mu * mu
        cov = s_ij / n - mu * mu
        correlation = np.where(var > 1e-12, cov / var, 1.0)
        entropy = np.log2(n) - c_log_c / n + n_off / n

    has_pairs = n > 0
    return (
        np.where(has_pairs, contrast, np.nan),
        np.where(has_pairs, entropy, np.nan),
        np.where(has_pairs, correlation, np.nan),
    )


def glcm_features(
    values: np.ndarray,
    value_range: Optional[Tuple[float, float]] = None,
    window: int = 3,
    levels: int = GLCM_LEVELS
) -> Dict[str, np.ndarray]:
    """
    Windowed GLCM contrast, entropy and correlation for one band.

    Co-occurrences at distance 1 are counted symmetrically within a
    ``window`` x ``window`` neighborhood for each of four directions;
    each feature is averaged over the directions that have pairs.

    Parameters
    ----------
    values : np.ndarray
        2D band values, NaN for missing
    value_range : tuple, optional
        (min, max) for quantization. Defaults to the range of ``values``.
    window : int
        Odd window side length
    levels : int
        Number of gray levels

    Returns
    -------
    dict
        'con', 'ent', 'cor' arrays
    """
    if window < 3 or window % 2 == 0:
        raise ValueError(f"GLCM window must be an odd size >= 3, got {window}")

    if value_range is None:
        finite = values[np.isfinite(values)]
        value_range = (float(finite.min()), float(finite.max())) if finite.size else (0.0, 0.0)

    q = quantize(values, value_range, levels)
    radius = window // 2

    per_direction = [_glcm_direction(q, dy, dx, radius, levels) for dy, dx in GLCM_OFFSETS]

    result = {}
    for k, name in enumerate(['con', 'ent', 'cor']):
        stack = np.stack([d[k] for d in per_direction], axis=0)
        count = np.isfinite(stack).sum(axis=0)
        total = np.where(np.isfinite(stack), stack, 0.0).sum(axis=0)
        with np.errstate(invalid='ignore', divide='ignore'):
            result[name] = np.where(count > 0, total / count, np.nan)

    return result


def add_glcm_texture(
    composite: xr.Dataset,
    bands: Optional[Sequence[str]] = None,
    value_ranges: Optional[Dict[str, Tuple[float, float]]] = None,
    window: int = 3,
    levels: int = GLCM_LEVELS
) -> xr.Dataset:
    """
    GLCM contrast, entropy and correlation for each texture band.

    Parameters
    ----------
    composite : xr.Dataset
        Target-year composite
    bands : list, optional
        Bands to texture. Defaults to B1, B2, B3, B4, B5, B7.
    value_ranges : dict, optional
        {band: (min, max)} quantization ranges (see ``glcm_value_ranges``).
        Defaults to ranges computed from ``composite``.
    window : int
        GLCM window side length
    levels : int
        Number of gray levels

    Returns
    -------
    xr.Dataset
        ``<band>_con``, ``<band>_ent``, ``<band>_cor`` variables
    """
    if bands is None:
        bands = TEXTURE_BANDS
    if value_ranges is None:
        value_ranges = glcm_value_ranges(composite, bands)

    out = {}
    for band in bands:
        feats = glcm_features(
            composite[band].values.astype(np.float64),
            value_ranges[band],
            window=window,
            levels=levels,
        )
        for name in GLCM_SUFFIXES:
            out[f"{band}_{name}"] = feats[name]

    return _to_dataset(out, composite)


def texture_band_names(bands: Optional[Sequence[str]] = None) -> List[str]:
    """Band names produced by ``compute_texture_features`` in output order."""
    if bands is None:
        bands = TEXTURE_BANDS
    names = []
    for band in bands:
        names.extend(f"{band}_{s}" for s in FIRST_ORDER_SUFFIXES)
    for band in bands:
        names.extend(f"{band}_{s}" for s in GLCM_SUFFIXES)
    return names


def compute_texture_features(
    composite: xr.Dataset,
    bands: Optional[Sequence[str]] = None,
    value_ranges: Optional[Dict[str, Tuple[float, float]]] = None,
    window: int = 3,
    levels: int = GLCM_LEVELS
) -> xr.Dataset:
    """First-order and GLCM texture bands (30 for the default six bands)."""
    first = add_first_order_texture(composite, bands)
    second = add_glcm_texture(composite, bands, value_ranges, window, levels)
    return xr.merge([first, second])


def _to_dataset(arrays: Dict[str, np.ndarray], like: xr.Dataset) -> xr.Dataset:
    coords = {d: like[d] for d in ('y', 'x') if d in like.coords}
    return xr.Dataset(
        {name: (('y', 'x'), values) for name, values in arrays.items()},
        coords=coords,
    )
