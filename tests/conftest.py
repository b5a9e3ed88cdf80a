import numpy as np
import pandas as pd
import pytest
import xarray as xr


BASE_REFLECTANCE = {
    'B1': 0.03,
    'B2': 0.05,
    'B3': 0.04,
    'B4': 0.30,
    'B5': 0.15,
    'B7': 0.08,
}


def make_composite(shape=(6, 6), overrides=None, noise=0.0, seed=0):
    """Composite with uniform reflectance per band, optionally perturbed."""
    rng = np.random.default_rng(seed)
    height, width = shape
    data = {}
    for band, value in BASE_REFLECTANCE.items():
        arr = np.full(shape, value, dtype=np.float64)
        if noise:
            arr = arr + rng.uniform(-noise, noise, size=shape)
        data[band] = (('y', 'x'), arr)
    ds = xr.Dataset(
        data,
        coords={
            'y': 100.0 - 30.0 * np.arange(height),
            'x': 500.0 + 30.0 * np.arange(width),
        },
    )
    for band, arr in (overrides or {}).items():
        ds[band] = (('y', 'x'), np.asarray(arr, dtype=np.float64))
    return ds


def make_monthly_climate(years, shape=(6, 6), precip=0.05, temp_k=288.15):
    times = pd.date_range(f"{years[0]}-01-01", f"{years[-1]}-12-01", freq='MS')
    n = len(times)
    return xr.Dataset(
        {
            'total_precipitation': (('time', 'y', 'x'), np.full((n,) + shape, precip)),
            'skin_temperature': (('time', 'y', 'x'), np.full((n,) + shape, temp_k)),
        },
        coords={'time': times},
    )


@pytest.fixture
def composite():
    return make_composite()


@pytest.fixture
def composites_series():
    return {year: make_composite(noise=0.005, seed=year) for year in range(2000, 2006)}
