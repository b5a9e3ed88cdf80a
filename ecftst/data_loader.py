"""
Loading utilities for yearly surface reflectance composites.

This module handles:
- Reading one composite per year from GeoTIFF files
- Parallel loading of a multi-year composite series
- Stacking composites along a year dimension
- Gap inspection of the year series
"""

import dask
import numpy as np
import rioxarray
import xarray as xr
from typing import Dict, List, Mapping, Optional, Sequence

from .config import RAW_BANDS
from .indices import rename_band_aliases


def load_composite(
    path: str,
    band_names: Optional[Sequence[str]] = None,
    nodata: Optional[float] = None
) -> xr.Dataset:
    """
    Read a multi-band composite GeoTIFF into a band-per-variable dataset.

    Parameters
    ----------
    path : str
        Path to the composite raster
    band_names : list, optional
        Names for the raster bands in file order. Defaults to the band
        descriptions stored in the file, then to ``RAW_BANDS``.
    nodata : float, optional
        Value to treat as missing in addition to the file's nodata

    Returns
    -------
    xr.Dataset
        Float composite with one (y, x) variable per band, NaN where
        missing, carrying the file's CRS and transform
    """
    da = rioxarray.open_rasterio(path, masked=True)

    if band_names is None:
        descriptions = da.attrs.get('long_name')
        if isinstance(descriptions, (list, tuple)) and all(descriptions):
            band_names = list(descriptions)
        else:
            band_names = RAW_BANDS[:da.sizes['band']]

    if len(band_names) != da.sizes['band']:
        raise ValueError(
            f"{path}: {da.sizes['band']} bands in file, "
            f"{len(band_names)} names given"
        )

    da = da.astype(np.float64)
    if nodata is not None:
        da = da.where(da != nodata)

    crs = da.rio.crs
    transform = da.rio.transform()

    ds = da.assign_coords(band=list(band_names)).to_dataset(dim='band')
    ds = ds.drop_vars('spatial_ref', errors='ignore')
    if crs is not None:
        ds = ds.rio.write_crs(crs).rio.write_transform(transform)
    return rename_band_aliases(ds)


def load_composites(
    paths: Mapping[int, str],
    band_names: Optional[Sequence[str]] = None,
    parallel: bool = True
) -> Dict[int, xr.Dataset]:
    """
    Load one composite per year.

    Parameters
    ----------
    paths : dict
        {year: path to composite raster}
    band_names : list, optional
        Band names in file order (see ``load_composite``)
    parallel : bool
        Whether to use Dask parallelism

    Returns
    -------
    dict
        {year: composite dataset}
    """
    years = sorted(paths)
    if parallel:
        delayed_results = [
            dask.delayed(load_composite)(paths[year], band_names)
            for year in years
        ]
        results = dask.compute(*delayed_results)
    else:
        results = [load_composite(paths[year], band_names) for year in years]

    return dict(zip(years, results))


def stack_composites(composites: Mapping[int, xr.Dataset]) -> xr.Dataset:
    """
    Stack yearly composites along a ``year`` dimension.

    Parameters
    ----------
    composites : dict
        {year: composite dataset}, all on the same grid

    Returns
    -------
    xr.Dataset
        Composite series with dims (year, y, x), sorted by year
    """
    if len(composites) == 0:
        raise ValueError("No composites to stack")

    stacked = xr.concat(
        [composites[y].expand_dims(year=[y]) for y in sorted(composites)],
        dim='year'
    )
    return stacked.sortby('year')


def fill_missing_years(series: xr.Dataset, years: Sequence[int]) -> xr.Dataset:
    """Reindex a year series to ``years``, absent years become all-NaN."""
    return series.reindex(year=list(years))


def get_temporal_info(series: xr.Dataset, target_year: Optional[int] = None) -> Dict:
    """
    Summarize year coverage of a composite or index series.

    Returns
    -------
    dict
        First/last year, years present, and gaps inside the covered range
    """
    years = sorted(int(y) for y in series['year'].values)
    last = target_year if target_year is not None else years[-1]
    expected = list(range(years[0], last + 1))
    missing: List[int] = [y for y in expected if y not in years]

    return {
        'n_years': len(years),
        'first_year': years[0],
        'last_year': years[-1],
        'years': years,
        'missing_years': missing,
    }
