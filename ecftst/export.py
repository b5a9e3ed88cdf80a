"""
Writers for classification rasters and grid-search evaluation tables.
"""

import numpy as np
import pandas as pd
import rioxarray  # noqa: F401
import xarray as xr
from pathlib import Path
from typing import Optional, Union

from .config import NODATA_LABEL, OUTPUT_CRS
from .training import RECORD_COLUMNS, GridSearchResult


def write_classification(
    labels: xr.DataArray,
    path: Union[str, Path],
    crs: Optional[str] = None,
    transform=None,
    nodata: int = NODATA_LABEL
) -> Path:
    """
    Write a label raster as a single-band uint8 GeoTIFF.

    Parameters
    ----------
    labels : xr.DataArray
        Labels on (y, x)
    path : str or Path
        Output file
    crs : str, optional
        CRS to assign when the raster has none. Defaults to EPSG:4326.
    transform : affine.Affine, optional
        Grid transform; defaults to the one implied by the coordinates
    nodata : int
        Nodata value written to the file

    Returns
    -------
    Path
        The written file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    da = labels.astype(np.uint8)
    da.attrs = {k: v for k, v in labels.attrs.items() if k != 'nodata'}
    if transform is not None:
        da = da.rio.write_transform(transform)
    if da.rio.crs is None or crs is not None:
        da = da.rio.write_crs(crs or OUTPUT_CRS)
    da = da.rio.write_nodata(nodata)

    da.rio.to_raster(path, dtype='uint8', compress='deflate')
    return path


def write_evaluation_records(
    records: Union[pd.DataFrame, GridSearchResult],
    path: Union[str, Path]
) -> Path:
    """Write grid-search records as CSV with the fixed column layout."""
    if isinstance(records, GridSearchResult):
        records = records.records

    missing = [c for c in RECORD_COLUMNS if c not in records.columns]
    if missing:
        raise KeyError(f"Evaluation records lack column(s) {missing}")

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    records[RECORD_COLUMNS].to_csv(path, index=False)
    return path
