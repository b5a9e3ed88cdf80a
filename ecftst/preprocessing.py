"""
Masking and grid utilities shared by the feature and classification stages.

This module handles:
- Forest extent from a baseline land-cover map
- Coercing boolean masks onto a raster grid
- Excluding pixels outside a region or forest mask
- Resampling auxiliary rasters (climate, terrain) onto the composite grid
"""

import numpy as np
import rioxarray  # noqa: F401
import xarray as xr
from rasterio.enums import Resampling
from typing import Optional, Tuple, Union

from .config import FOREST_CODE_RANGE


MaskLike = Union[np.ndarray, xr.DataArray]


def forest_mask_from_landcover(
    landcover: MaskLike,
    code_range: Tuple[int, int] = FOREST_CODE_RANGE
) -> MaskLike:
    """
    Derive the baseline forest mask from a land-cover code raster.

    Parameters
    ----------
    landcover : np.ndarray or xr.DataArray
        Land-cover class codes (GLC_FCS30 legend for the reference year)
    code_range : tuple
        Inclusive range of forest class codes. Default (50, 92) covers the
        GLC_FCS30 evergreen, deciduous, mixed and sparse forest classes.

    Returns
    -------
    np.ndarray or xr.DataArray
        Boolean mask, True where the pixel was forest
    """
    lo, hi = code_range
    return (landcover >= lo) & (landcover <= hi)


def as_mask(mask: Optional[MaskLike], template: xr.DataArray) -> Optional[xr.DataArray]:
    """
    Coerce a boolean mask onto the (y, x) grid of ``template``.

    NaN entries of a float mask count as excluded.
    """
    if mask is None:
        return None

    if isinstance(mask, xr.DataArray):
        values = mask.values
    else:
        values = np.asarray(mask)

    shape = (template.sizes['y'], template.sizes['x'])
    if values.shape != shape:
        raise ValueError(f"Mask shape {values.shape} does not match grid {shape}")

    if values.dtype != bool:
        values = np.nan_to_num(values.astype(float), nan=0.0) != 0

    coords = {d: template[d] for d in ('y', 'x') if d in template.coords}
    return xr.DataArray(values, dims=('y', 'x'), coords=coords)


def apply_masks(
    data: Union[xr.Dataset, xr.DataArray],
    region_mask: Optional[MaskLike] = None,
    forest_mask: Optional[MaskLike] = None
) -> Union[xr.Dataset, xr.DataArray]:
    """
    Exclude pixels outside the region or outside the forest baseline.

    Excluded pixels become NaN; they are never zero-filled.

    Parameters
    ----------
    data : xr.Dataset or xr.DataArray
        Raster with y and x dimensions
    region_mask : array, optional
        True inside the region geometry
    forest_mask : array, optional
        True where the baseline map is forest

    Returns
    -------
    Same type as ``data`` with excluded pixels set to NaN
    """
    if isinstance(data, xr.Dataset):
        template = data[next(iter(data.data_vars))]
    else:
        template = data

    for mask in (region_mask, forest_mask):
        grid_mask = as_mask(mask, template)
        if grid_mask is not None:
            data = data.where(grid_mask)

    return data


def match_grid(
    data: Union[xr.Dataset, xr.DataArray],
    template: Union[xr.Dataset, xr.DataArray]
) -> Union[xr.Dataset, xr.DataArray]:
    """
    Resample a raster onto the (y, x) grid of ``template`` by nearest neighbor.

    When both rasters carry a CRS the data is reprojected with
    ``rio.reproject_match``; otherwise both are taken to share a CRS and
    each template pixel picks the nearest source coordinate. The result
    carries the template's coordinates exactly.

    Parameters
    ----------
    data : xr.Dataset or xr.DataArray
        Raster on its own grid, e.g. monthly-derived climate bands
    template : xr.Dataset or xr.DataArray
        Raster defining the target grid

    Returns
    -------
    Same type as ``data`` on the template grid
    """
    src_crs = data.rio.crs
    dst_crs = template.rio.crs
    if src_crs is not None and dst_crs is not None:
        matched = data.rio.reproject_match(template, resampling=Resampling.nearest)
    elif all(d in data.coords and d in template.coords for d in ('y', 'x')):
        matched = data.reindex(y=template['y'].values, x=template['x'].values, method='nearest')
    else:
        shape = (template.sizes['y'], template.sizes['x'])
        if (data.sizes['y'], data.sizes['x']) != shape:
            raise ValueError(
                f"Cannot align a {data.sizes['y']}x{data.sizes['x']} raster without "
                f"coordinates onto a {shape[0]}x{shape[1]} grid"
            )
        matched = data

    coords = {d: template[d].values for d in ('y', 'x') if d in template.coords}
    return matched.assign_coords(coords)
