"""
Spectral index calculation for yearly surface reflectance composites.

This module handles:
- Normalized difference and ratio indices (NBR, NDVI, NDMI, NDBI, RVI, SAVI, EVI, DVI)
- Adding index bands to a composite image
- Building the per-year index time series used by the trajectory features

All indices except DVI are scaled by 1000. A zero denominator produces a
missing value (NaN), never an error.
"""

import numpy as np
import xarray as xr
from typing import Dict, Mapping, Optional, Sequence

from .config import BAND_ALIASES, INDEX_BANDS


SAVI_L = 0.5
INDEX_SCALE = 1000.0

# Raw bands each index is built from (Landsat SR naming)
INDEX_INPUTS = {
    'NBR': ('B4', 'B7'),
    'NDVI': ('B4', 'B3'),
    'NDMI': ('B4', 'B5'),
    'NDBI': ('B5', 'B4'),
    'RVI': ('B4', 'B3'),
    'DVI': ('B4', 'B3'),
    'SAVI': ('B4', 'B3'),
    'EVI': ('B4', 'B3', 'B1'),
}


class MissingBandError(KeyError):
    """A composite lacks a raw band required by an index."""


def _safe_ratio(num: xr.DataArray, den: xr.DataArray) -> xr.DataArray:
    """Divide, returning NaN where the denominator is zero."""
    return num / den.where(den != 0)


def normalized_difference(a: xr.DataArray, b: xr.DataArray) -> xr.DataArray:
    """
    Normalized difference ``(a - b) / (a + b)``.

    Parameters
    ----------
    a, b : xr.DataArray
        Input bands on the same grid.

    Returns
    -------
    xr.DataArray
        Unscaled normalized difference in [-1, 1], NaN where ``a + b == 0``.
    """
    return _safe_ratio(a - b, a + b)


def rename_band_aliases(composite: xr.Dataset) -> xr.Dataset:
    """Rename generic channel names (nir, red, ...) to Landsat band names."""
    mapping = {k: v for k, v in BAND_ALIASES.items()
               if k in composite.data_vars and v not in composite.data_vars}
    if mapping:
        composite = composite.rename(mapping)
    return composite


def compute_index(name: str, composite: xr.Dataset) -> xr.DataArray:
    """
    Compute a single spectral index from a composite.

    Parameters
    ----------
    name : str
        One of ``INDEX_BANDS``.
    composite : xr.Dataset
        Composite with raw reflectance bands B1..B7.

    Returns
    -------
    xr.DataArray
        Index values named ``name``.

    Raises
    ------
    MissingBandError
        If a raw band needed by the index is not in the composite.
    """
    if name not in INDEX_INPUTS:
        raise ValueError(f"Unknown index: {name}")

    missing = [b for b in INDEX_INPUTS[name] if b not in composite.data_vars]
    if missing:
        raise MissingBandError(
            f"Composite lacks band(s) {missing} required for {name}"
        )

    # Integer reflectance (e.g. uint16) would wrap on subtraction
    bands = {b: composite[b].astype(np.float64) for b in INDEX_INPUTS[name]}
    blue = bands.get('B1')
    red = bands.get('B3')
    nir = bands.get('B4')
    swir1 = bands.get('B5')
    swir2 = bands.get('B7')

    if name == 'NBR':
        index = normalized_difference(nir, swir2) * INDEX_SCALE
    elif name == 'NDVI':
        index = normalized_difference(nir, red) * INDEX_SCALE
    elif name == 'NDMI':
        index = normalized_difference(nir, swir1) * INDEX_SCALE
    elif name == 'NDBI':
        index = normalized_difference(swir1, nir) * INDEX_SCALE
    elif name == 'RVI':
        index = _safe_ratio(nir, red) * INDEX_SCALE
    elif name == 'DVI':
        index = nir - red
    elif name == 'SAVI':
        index = (1 + SAVI_L) * _safe_ratio(nir - red, nir + red + SAVI_L) * INDEX_SCALE
    else:
        index = 2.5 * _safe_ratio(nir - red, nir + 6 * red - 7.5 * blue + 1) * INDEX_SCALE

    return index.rename(name)


def add_spectral_indices(
    composite: xr.Dataset,
    indices: Optional[Sequence[str]] = None
) -> xr.Dataset:
    """
    Add spectral index bands to a composite image.

    Parameters
    ----------
    composite : xr.Dataset
        Composite with raw reflectance bands (Landsat naming or generic aliases)
    indices : list, optional
        Indices to compute. Defaults to all eight.

    Returns
    -------
    xr.Dataset
        Input bands plus one variable per index
    """
    if indices is None:
        indices = INDEX_BANDS

    composite = rename_band_aliases(composite)
    out = composite.copy()
    for name in indices:
        out[name] = compute_index(name, composite)
    return out


def compute_index_series(
    composites: Mapping[int, xr.Dataset],
    indices: Optional[Sequence[str]] = None
) -> xr.Dataset:
    """
    Compute index bands for every yearly composite and stack them by year.

    Parameters
    ----------
    composites : dict
        {year: composite} as supplied by the composite provider
    indices : list, optional
        Indices to keep. Defaults to all eight.

    Returns
    -------
    xr.Dataset
        Index time series with dims (year, y, x), sorted by year
    """
    if indices is None:
        indices = INDEX_BANDS
    if not composites:
        raise ValueError("No composites supplied")

    per_year: Dict[int, xr.Dataset] = {}
    for year in sorted(composites):
        with_indices = add_spectral_indices(composites[year], indices)
        per_year[year] = with_indices[list(indices)]

    series = xr.concat(
        [per_year[y].expand_dims(year=[y]) for y in per_year],
        dim='year'
    )
    return series.sortby('year')
