"""
Climate features from monthly reanalysis data.

This module handles:
- Annual and previous-year precipitation totals
- Annual temperature anomaly against a 1990-2020 baseline
- Summer (June-August) mean temperature

Input is a monthly dataset with ``total_precipitation`` (m) and
``skin_temperature`` (K) variables on (time, y, x).
"""

import numpy as np
import pandas as pd
import xarray as xr
from typing import Optional

from .preprocessing import MaskLike, apply_masks


PRECIP_VAR = 'total_precipitation'
TEMP_VAR = 'skin_temperature'

KELVIN_OFFSET = 273.15
METRES_TO_MM = 1000.0

BASELINE_START = '1990-01-01'
BASELINE_END = '2020-12-31'

SUMMER_MONTHS = (6, 8)


def _period(monthly: xr.Dataset, start: str, end: str) -> xr.Dataset:
    times = pd.DatetimeIndex(monthly['time'].values)
    keep = (times >= pd.Timestamp(start)) & (times <= pd.Timestamp(end))
    return monthly.isel(time=np.flatnonzero(keep))


def _to_celsius(temperature: xr.DataArray) -> xr.DataArray:
    return temperature - KELVIN_OFFSET


def _mean_over_time(da: xr.DataArray, template: xr.Dataset) -> xr.DataArray:
    """Mean over time; a period without months is missing everywhere."""
    if da.sizes['time'] == 0:
        return xr.full_like(template[TEMP_VAR].isel(time=0, drop=True), np.nan, dtype=np.float64)
    return da.mean(dim='time', skipna=True)


def _sum_over_time(da: xr.DataArray, template: xr.Dataset) -> xr.DataArray:
    """Sum over time; pixels without any valid month are missing, not 0."""
    if da.sizes['time'] == 0:
        return xr.full_like(template[PRECIP_VAR].isel(time=0, drop=True), np.nan, dtype=np.float64)
    return da.sum(dim='time', skipna=True, min_count=1)


def compute_baseline_temperature(
    monthly: xr.Dataset,
    start: str = BASELINE_START,
    end: str = BASELINE_END
) -> xr.DataArray:
    """
    Long-term mean skin temperature in degrees Celsius.

    Parameters
    ----------
    monthly : xr.Dataset
        Monthly climate with a ``skin_temperature`` variable in kelvin
    start, end : str
        Inclusive baseline period

    Returns
    -------
    xr.DataArray
        Baseline temperature on (y, x)
    """
    period = _period(monthly, start, end)
    return _mean_over_time(_to_celsius(period[TEMP_VAR]), monthly).rename('baseline_temp')


def build_climate_features(
    monthly: xr.Dataset,
    year: int,
    baseline_temp: xr.DataArray,
    region_mask: Optional[MaskLike] = None
) -> xr.Dataset:
    """
    Build the four climate bands for a target year.

    Parameters
    ----------
    monthly : xr.Dataset
        Monthly precipitation (m) and skin temperature (K) on (time, y, x)
    year : int
        Target year
    baseline_temp : xr.DataArray
        Baseline mean temperature in degrees Celsius
        (see ``compute_baseline_temperature``)
    region_mask : array, optional
        True inside the region

    Returns
    -------
    xr.Dataset
        ``a_precip`` and ``p_precip`` in mm, ``temp_an`` and ``su_temp`` in
        degrees Celsius
    """
    current = _period(monthly, f"{year}-01-01", f"{year}-12-31")
    previous = _period(monthly, f"{year - 1}-01-01", f"{year - 1}-12-31")
    summer = _period(
        monthly,
        f"{year}-{SUMMER_MONTHS[0]:02d}-01",
        (pd.Timestamp(f"{year}-{SUMMER_MONTHS[1] + 1:02d}-01") - pd.Timedelta(days=1)).strftime('%Y-%m-%d'),
    )

    a_precip = _sum_over_time(current[PRECIP_VAR], monthly) * METRES_TO_MM
    p_precip = _sum_over_time(previous[PRECIP_VAR], monthly) * METRES_TO_MM
    annual_temp = _mean_over_time(_to_celsius(current[TEMP_VAR]), monthly)
    su_temp = _mean_over_time(_to_celsius(summer[TEMP_VAR]), monthly)

    features = xr.Dataset({
        'a_precip': a_precip.astype(np.float64),
        'p_precip': p_precip.astype(np.float64),
        'temp_an': (annual_temp - baseline_temp).astype(np.float64),
        'su_temp': su_temp.astype(np.float64),
    })
    features.attrs['year'] = year

    return apply_masks(features, region_mask)
