"""
Temporal trajectory features from a yearly index time series.

This module handles:
- Current-year index values for a target year
- Year-over-year change (relative, absolute, acceleration)
- Rolling window statistics (3-year mean, 5-year minimum, 5-year volatility)
- Long-term and short-term (recovery) OLS trends against year
- Clipping to the region and masking to the forest baseline

Missing years are allowed. Window statistics skip them; statistics that
need one specific year (change metrics) are missing when that year is.
"""

import numpy as np
import xarray as xr
from typing import Dict, List, Optional, Sequence

from .config import CHANGE_EPSILON, INDEX_BANDS, SAFE_DIVIDE_POLICIES, TEMPORAL_SUFFIXES
from .preprocessing import MaskLike, apply_masks


# Window bounds relative to the target year T, inclusive: [T - start, T - end]
ROLLING_3Y = (3, 1)
ROLLING_5Y = (5, 1)


# ---------------------------------------------------------------------------
# Per-pixel reducers over a (year, y, x) stack
# ---------------------------------------------------------------------------

def _valid_count(stack: np.ndarray) -> np.ndarray:
    return np.isfinite(stack).sum(axis=0)


def nan_mean(stack: np.ndarray) -> np.ndarray:
    """Mean over years, skipping NaN. All-missing pixels stay NaN."""
    count = _valid_count(stack)
    total = np.where(np.isfinite(stack), stack, 0.0).sum(axis=0)
    with np.errstate(invalid='ignore', divide='ignore'):
        return np.where(count > 0, total / count, np.nan)


def nan_min(stack: np.ndarray) -> np.ndarray:
    """Minimum over years, skipping NaN. All-missing pixels stay NaN."""
    if stack.shape[0] == 0:
        return np.full(stack.shape[1:], np.nan)
    filled = np.where(np.isfinite(stack), stack, np.inf).min(axis=0)
    return np.where(np.isfinite(filled), filled, np.nan)


def nan_std(stack: np.ndarray) -> np.ndarray:
    """Population standard deviation over years, skipping NaN."""
    count = _valid_count(stack)
    mean = nan_mean(stack)
    sq = np.where(np.isfinite(stack), (stack - mean) ** 2, 0.0).sum(axis=0)
    with np.errstate(invalid='ignore', divide='ignore'):
        return np.where(count > 0, np.sqrt(sq / count), np.nan)


def ols_slope(stack: np.ndarray, years: Sequence[float]) -> np.ndarray:
    """
    Ordinary least squares slope of value against year, per pixel.

    Each pixel is fit on its own valid years. With fewer than two
    distinct valid years the slope is undefined and returned as NaN.

    Parameters
    ----------
    stack : np.ndarray
        Values with shape (n_years, H, W)
    years : sequence
        Year of each layer of ``stack``

    Returns
    -------
    np.ndarray
        Slope in value units per year, shape (H, W)
    """
    if stack.shape[0] == 0:
        return np.full(stack.shape[1:], np.nan)

    x = np.asarray(years, dtype=np.float64).reshape(-1, 1, 1)
    valid = np.isfinite(stack)
    count = valid.sum(axis=0)

    with np.errstate(invalid='ignore', divide='ignore'):
        x_mean = np.where(valid, x, 0.0).sum(axis=0) / count
        y_mean = nan_mean(stack)
        dx = np.where(valid, x - x_mean, 0.0)
        dy = np.where(valid, stack - y_mean, 0.0)
        sxx = (dx * dx).sum(axis=0)
        sxy = (dx * dy).sum(axis=0)
        slope = sxy / sxx

    # sxx > 0 iff at least two distinct years are valid
    return np.where((count >= 2) & (sxx > 0), slope, np.nan)


# ---------------------------------------------------------------------------
# Change metrics
# ---------------------------------------------------------------------------

def relative_change(
    current: np.ndarray,
    previous: np.ndarray,
    safe_divide: str = 'zero',
    epsilon: float = CHANGE_EPSILON
) -> np.ndarray:
    """
    Relative annual change ``(I_T - I_{T-1}) / max(|I_{T-1}|, eps)``.

    Parameters
    ----------
    current, previous : np.ndarray
        Index values for T and T-1
    safe_divide : str
        Result where the previous value is exactly zero:
        'zero' gives 0, 'missing' gives NaN, 'epsilon' divides by ``epsilon``.
    epsilon : float
        Floor on the denominator magnitude

    Returns
    -------
    np.ndarray
        Relative change, NaN where either input is missing
    """
    if safe_divide not in SAFE_DIVIDE_POLICIES:
        raise ValueError(
            f"Unknown safe_divide policy {safe_divide!r}, "
            f"expected one of {SAFE_DIVIDE_POLICIES}"
        )

    diff = current - previous
    denom = np.maximum(np.abs(previous), epsilon)
    with np.errstate(invalid='ignore', divide='ignore'):
        change = diff / denom

    collapsed = previous == 0
    if safe_divide == 'zero':
        change = np.where(collapsed, 0.0, change)
    elif safe_divide == 'missing':
        change = np.where(collapsed, np.nan, change)

    # Missing inputs stay missing whatever the policy
    return np.where(np.isfinite(current) & np.isfinite(previous), change, np.nan)


def absolute_change(current: np.ndarray, previous: np.ndarray) -> np.ndarray:
    """Absolute annual change ``|I_T - I_{T-1}|``."""
    return np.abs(current - previous)


def change_acceleration(
    current: np.ndarray,
    previous: np.ndarray,
    previous2: np.ndarray
) -> np.ndarray:
    """Second difference ``(I_T - I_{T-1}) - (I_{T-1} - I_{T-2})``."""
    return (current - previous) - (previous - previous2)


# ---------------------------------------------------------------------------
# Feature image
# ---------------------------------------------------------------------------

def _year_stack(series: xr.Dataset, band: str, years: List[int]) -> np.ndarray:
    """Values of ``band`` for ``years``; years absent from the series are NaN."""
    if not years:
        return np.empty((0, series.sizes['y'], series.sizes['x']))
    return series[band].reindex(year=years).values.astype(np.float64)


def trajectory_band_names(indices: Optional[Sequence[str]] = None) -> List[str]:
    """Band names produced by ``compute_trajectory_features`` in output order."""
    if indices is None:
        indices = INDEX_BANDS
    names = list(indices)
    for suffix in TEMPORAL_SUFFIXES:
        names.extend(f"{band}_{suffix}" for band in indices)
    return names


def compute_trajectory_features(
    series: xr.Dataset,
    target_year: int,
    region_mask: Optional[MaskLike] = None,
    forest_mask: Optional[MaskLike] = None,
    safe_divide: str = 'zero',
    epsilon: float = CHANGE_EPSILON,
    indices: Optional[Sequence[str]] = None
) -> xr.Dataset:
    """
    Compute spectral-temporal features of every index for a target year.

    Parameters
    ----------
    series : xr.Dataset
        Index time series with dims (year, y, x)
    target_year : int
        Year T to characterize
    region_mask : array, optional
        True inside the region; pixels outside are excluded
    forest_mask : array, optional
        True where the baseline map is forest; other pixels are excluded
    safe_divide : str
        Zero-denominator policy for relative change (see ``relative_change``)
    epsilon : float
        Denominator floor for relative change
    indices : list, optional
        Index bands to process. Defaults to all eight.

    Returns
    -------
    xr.Dataset
        Variables: I, I_chg_ra, I_rol_3y, I_rol_5y, I_trend, I_an_cha,
        I_vola_5y, I_reco_s, I_mean, I_chg_ac for each index I
    """
    if indices is None:
        indices = INDEX_BANDS

    missing = [b for b in indices if b not in series.data_vars]
    if missing:
        raise KeyError(f"Index series lacks band(s) {missing}")

    present = sorted(int(y) for y in series['year'].values)
    history = [y for y in present if y < target_year]
    window_3y = list(range(target_year - ROLLING_3Y[0], target_year - ROLLING_3Y[1] + 1))
    window_5y = list(range(target_year - ROLLING_5Y[0], target_year - ROLLING_5Y[1] + 1))

    features: Dict[str, np.ndarray] = {}
    derived: Dict[str, Dict[str, np.ndarray]] = {}

    for band in indices:
        current, prev1, prev2 = _year_stack(
            series, band, [target_year, target_year - 1, target_year - 2]
        )
        hist = _year_stack(series, band, history)
        hist_3y = _year_stack(series, band, window_3y)
        hist_5y = _year_stack(series, band, window_5y)

        features[band] = current
        derived[band] = {
            'chg_ra': relative_change(current, prev1, safe_divide, epsilon),
            'rol_3y': nan_mean(hist_3y),
            'rol_5y': nan_min(hist_5y),
            'trend': ols_slope(hist, history),
            'an_cha': absolute_change(current, prev1),
            'vola_5y': nan_std(hist_5y),
            'reco_s': ols_slope(hist_3y, window_3y),
            'mean': nan_mean(hist),
            'chg_ac': change_acceleration(current, prev1, prev2),
        }

    # Raw indices first, then one block per suffix
    for suffix in TEMPORAL_SUFFIXES:
        for band in indices:
            features[f"{band}_{suffix}"] = derived[band][suffix]

    coords = {d: series[d] for d in ('y', 'x') if d in series.coords}
    result = xr.Dataset(
        {name: (('y', 'x'), values) for name, values in features.items()},
        coords=coords,
    )
    result.attrs['target_year'] = target_year

    return apply_masks(result, region_mask, forest_mask)
