"""
Static terrain features from a digital elevation model.

Elevation, slope and aspect are computed once per domain and reused for
every year and region. Slope and aspect are returned in radians.
"""

import numpy as np
import rioxarray  # noqa: F401
import xarray as xr
from typing import Tuple, Union


# Length of one degree of latitude, and of longitude at the equator
METRES_PER_DEGREE = 111320.0


def slope_aspect(
    elevation: np.ndarray,
    pixel_size: Union[float, Tuple[float, Union[float, np.ndarray]]]
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Slope and aspect in degrees from central differences.

    Rows are assumed to run north to south. Aspect is the downslope
    direction measured clockwise from north; flat cells get 0.

    Parameters
    ----------
    elevation : np.ndarray
        2D elevation values
    pixel_size : float or tuple
        Pixel size in the elevation's linear units, or (row size, col size).
        The col size may be an array broadcasting against the rows, for
        grids whose pixel width shrinks with latitude.

    Returns
    -------
    tuple
        (slope, aspect) in degrees
    """
    if np.isscalar(pixel_size):
        row_size = col_size = float(pixel_size)
    else:
        row_size = abs(float(pixel_size[0]))
        col_size = np.abs(np.asarray(pixel_size[1], dtype=np.float64))

    arr = np.asarray(elevation, dtype=np.float64)
    dz_drow, dz_dcol = np.gradient(arr)
    dz_drow = dz_drow / row_size
    dz_dcol = dz_dcol / col_size

    dz_east = dz_dcol
    dz_north = -dz_drow

    slope = np.degrees(np.arctan(np.hypot(dz_east, dz_north)))
    aspect = np.degrees(np.arctan2(-dz_east, -dz_north)) % 360.0

    flat = (dz_east == 0) & (dz_north == 0)
    aspect = np.where(flat, 0.0, aspect)
    aspect = np.where(np.isfinite(slope), aspect, np.nan)

    return slope, aspect


def build_terrain_features(
    dem: xr.DataArray,
    pixel_size: Union[float, Tuple[float, float], None] = None
) -> xr.Dataset:
    """
    Build the static ``dem``, ``slope`` and ``aspect`` bands.

    Parameters
    ----------
    dem : xr.DataArray
        Elevation on (y, x)
    pixel_size : float or tuple, optional
        Pixel size in the DEM's linear units. Defaults to the spacing of
        the ``y`` and ``x`` coordinates, converted from degrees to metres
        when the DEM has a geographic CRS.

    Returns
    -------
    xr.Dataset
        Elevation, slope (radians) and aspect (radians)
    """
    if pixel_size is None:
        if dem.sizes['y'] < 2 or dem.sizes['x'] < 2:
            raise ValueError("pixel_size is required for a DEM narrower than 2 pixels")
        row_size = abs(float(dem['y'][1] - dem['y'][0]))
        col_size = abs(float(dem['x'][1] - dem['x'][0]))
        crs = dem.rio.crs
        if crs is not None and crs.is_geographic:
            lat = np.radians(dem['y'].values.astype(np.float64))
            row_size = row_size * METRES_PER_DEGREE
            col_size = (col_size * METRES_PER_DEGREE * np.cos(lat))[:, np.newaxis]
        pixel_size = (row_size, col_size)

    slope, aspect = slope_aspect(dem.values, pixel_size)

    coords = {d: dem[d].values for d in ('y', 'x') if d in dem.coords}
    return xr.Dataset(
        {
            'dem': (('y', 'x'), dem.values.astype(np.float64)),
            'slope': (('y', 'x'), np.radians(slope)),
            'aspect': (('y', 'x'), np.radians(aspect)),
        },
        coords=coords,
    )
