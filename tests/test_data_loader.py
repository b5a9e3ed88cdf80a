import numpy as np
import pytest
import rioxarray  # noqa: F401
import xarray as xr
from rasterio.transform import from_origin

from ecftst.data_loader import (
    fill_missing_years,
    get_temporal_info,
    load_composite,
    load_composites,
    stack_composites,
)
from ecftst.preprocessing import apply_masks, as_mask, forest_mask_from_landcover, match_grid

from conftest import make_composite


def write_geotiff(path, n_bands=6, shape=(4, 5), fill=0.1):
    data = np.stack([np.full(shape, fill * (i + 1)) for i in range(n_bands)])
    data[0, 0, 0] = -9999.0
    da = xr.DataArray(
        data,
        dims=('band', 'y', 'x'),
        coords={
            'band': np.arange(1, n_bands + 1),
            'y': 100.0 - 30.0 * np.arange(shape[0]),
            'x': 500.0 + 30.0 * np.arange(shape[1]),
        },
    )
    da = da.rio.write_crs('EPSG:32630').rio.write_nodata(-9999.0)
    da.rio.to_raster(path)
    return path


def test_load_composite(tmp_path):
    path = write_geotiff(tmp_path / 'c2001.tif')
    ds = load_composite(str(path))

    assert list(ds.data_vars) == ['B1', 'B2', 'B3', 'B4', 'B5', 'B7']
    assert np.isnan(ds['B1'].values[0, 0])
    assert ds['B7'].values[1, 1] == pytest.approx(0.6)
    assert ds['B4'].rio.crs == 'EPSG:32630'
    assert ds.rio.crs.to_epsg() == 32630
    assert ds['B4'].rio.transform().almost_equals(from_origin(485.0, 115.0, 30.0, 30.0))


def test_load_composite_with_aliases(tmp_path):
    path = write_geotiff(tmp_path / 'c.tif', n_bands=2)
    ds = load_composite(str(path), band_names=['nir', 'red'])
    assert set(ds.data_vars) == {'B4', 'B3'}

    with pytest.raises(ValueError):
        load_composite(str(path), band_names=['nir'])


def test_load_composites_parallel(tmp_path):
    paths = {year: str(write_geotiff(tmp_path / f'c{year}.tif')) for year in (2002, 2000)}
    comps = load_composites(paths, parallel=True)
    assert list(comps) == [2000, 2002]
    assert comps[2002]['B4'].shape == (4, 5)


def test_stack_and_temporal_info():
    comps = {year: make_composite(shape=(2, 2)) for year in (2003, 2000, 2001)}
    series = stack_composites(comps)
    assert series['year'].values.tolist() == [2000, 2001, 2003]

    info = get_temporal_info(series, target_year=2004)
    assert info['n_years'] == 3
    assert info['missing_years'] == [2002, 2004]

    filled = fill_missing_years(series, range(2000, 2004))
    assert np.isnan(filled['B4'].sel(year=2002)).all()

    with pytest.raises(ValueError):
        stack_composites({})


def test_forest_mask_from_landcover():
    landcover = np.array([[10, 50, 71], [92, 93, 0]])
    mask = forest_mask_from_landcover(landcover)
    assert mask.tolist() == [[False, True, True], [True, False, False]]


def test_masks_exclude_pixels(composite):
    region = np.ones((6, 6))
    region[0, 0] = np.nan
    forest = np.ones((6, 6), dtype=bool)
    forest[5, 5] = False

    out = apply_masks(composite, region, forest)
    assert np.isnan(out['B4'].values[0, 0])
    assert np.isnan(out['B4'].values[5, 5])
    assert np.isfinite(out['B4'].values[1, 1])

    with pytest.raises(ValueError):
        as_mask(np.ones((2, 2)), composite['B4'])


def test_match_grid_by_nearest_coordinate():
    coarse = xr.Dataset(
        {'a_precip': (('y', 'x'), np.array([[1.0, 2.0], [3.0, 4.0]]))},
        coords={'y': [75.0, -25.0], 'x': [525.0, 625.0]},
    )
    template = make_composite(shape=(6, 6))['B4']

    out = match_grid(coarse, template)
    assert out['a_precip'].shape == (6, 6)
    np.testing.assert_array_equal(out['y'].values, template['y'].values)
    np.testing.assert_array_equal(out['a_precip'].values[:3, :3], 1.0)
    np.testing.assert_array_equal(out['a_precip'].values[3:, 3:], 4.0)
    assert out['a_precip'].values[0, 5] == 2.0


def test_match_grid_reprojects():
    template = xr.DataArray(
        np.zeros((4, 4)),
        dims=('y', 'x'),
        coords={'y': [3500.0, 2500.0, 1500.0, 500.0], 'x': [500.0, 1500.0, 2500.0, 3500.0]},
    ).rio.write_crs('EPSG:3857')
    source = xr.DataArray(
        np.array([[1.0, 2.0], [3.0, 4.0]]),
        dims=('y', 'x'),
        coords={'y': [0.03, 0.01], 'x': [0.01, 0.03]},
    ).rio.write_crs('EPSG:4326')

    out = match_grid(source, template)
    assert out.rio.crs.to_epsg() == 3857
    np.testing.assert_array_equal(out.values, [[1, 1, 2, 2], [1, 1, 2, 2], [3, 3, 4, 4], [3, 3, 4, 4]])


def test_match_grid_needs_coordinates_to_resample():
    bare = xr.DataArray(np.ones((2, 2)), dims=('y', 'x'))
    with pytest.raises(ValueError):
        match_grid(bare, xr.DataArray(np.zeros((3, 3)), dims=('y', 'x')))
