import numpy as np
import pytest
import xarray as xr

from ecftst.trajectory import (
    compute_trajectory_features,
    nan_std,
    ols_slope,
    relative_change,
    trajectory_band_names,
)


def make_series(values_by_year, shape=(3, 3)):
    """Index series whose every band takes the given value per year."""
    years = sorted(values_by_year)
    stack = np.stack([np.full(shape, values_by_year[y], dtype=float) for y in years])
    bands = ['NBR', 'NDVI', 'NDMI', 'NDBI', 'RVI', 'SAVI', 'EVI', 'DVI']
    return xr.Dataset(
        {b: (('year', 'y', 'x'), stack.copy()) for b in bands},
        coords={'year': years},
    )


def test_constant_window():
    series = make_series({y: 420.0 for y in range(2000, 2011)})
    out = compute_trajectory_features(series, 2010)

    assert np.allclose(out['NBR_vola_5y'], 0.0)
    assert np.allclose(out['NBR_rol_5y'], 420.0)
    assert np.allclose(out['NBR_rol_3y'], 420.0)
    assert np.allclose(out['NBR_mean'], 420.0)
    assert np.allclose(out['NBR_trend'], 0.0)
    assert np.allclose(out['NBR_chg_ra'], 0.0)
    assert np.allclose(out['NBR_chg_ac'], 0.0)


def test_linear_series_slopes():
    delta = 12.5
    series = make_series({y: 100.0 + delta * (y - 2000) for y in range(2000, 2011)})
    out = compute_trajectory_features(series, 2010)

    assert np.allclose(out['NDVI_trend'], delta)
    assert np.allclose(out['NDVI_reco_s'], delta)
    assert np.allclose(out['NDVI_an_cha'], delta)
    assert np.allclose(out['NDVI_rol_5y'], 100.0 + delta * 5)
    assert np.allclose(out['NDVI_rol_3y'], 100.0 + delta * 8)
    assert np.allclose(out['NDVI_chg_ac'], 0.0)
    assert np.allclose(out['NDVI'], 100.0 + delta * 10)


def test_output_band_order():
    series = make_series({y: 1.0 for y in range(2000, 2004)})
    out = compute_trajectory_features(series, 2003)
    assert list(out.data_vars) == trajectory_band_names()
    assert out.attrs['target_year'] == 2003


def test_missing_years_are_skipped_in_windows():
    values = {2000: 10.0, 2001: 20.0, 2003: 40.0, 2005: 60.0}
    series = make_series(values)
    out = compute_trajectory_features(series, 2005)

    # T-1 = 2004 is absent: change metrics are missing
    assert np.isnan(out['NBR_chg_ra']).all()
    assert np.isnan(out['NBR_an_cha']).all()
    # [2002, 2004] holds only 2003
    assert np.allclose(out['NBR_rol_3y'], 40.0)
    assert np.isnan(out['NBR_reco_s']).all()
    assert np.allclose(out['NBR_rol_5y'], 10.0)
    assert np.allclose(out['NBR_trend'], 10.0)


def test_single_year_history_has_no_trend():
    series = make_series({2000: 5.0, 2001: 7.0})
    out = compute_trajectory_features(series, 2001)
    assert np.isnan(out['EVI_trend']).all()
    assert np.allclose(out['EVI_mean'], 5.0)


def test_safe_divide_policies():
    current = np.array([5.0, 5.0, np.nan])
    previous = np.array([0.0, 10.0, 1.0])

    zero = relative_change(current, previous, 'zero')
    assert zero[0] == 0.0
    assert zero[1] == pytest.approx(-0.5)
    assert np.isnan(zero[2])

    missing = relative_change(current, previous, 'missing')
    assert np.isnan(missing[0])
    assert missing[1] == pytest.approx(-0.5)

    eps = relative_change(current, previous, 'epsilon', epsilon=1e-5)
    assert eps[0] == pytest.approx(5.0 / 1e-5)

    with pytest.raises(ValueError):
        relative_change(current, previous, 'ignore')


def test_negative_previous_uses_magnitude():
    change = relative_change(np.array([-30.0]), np.array([-20.0]))
    assert change[0] == pytest.approx(-0.5)


def test_masks_exclude_pixels():
    series = make_series({y: 3.0 for y in range(2000, 2004)})
    region = np.ones((3, 3), dtype=bool)
    region[0, 0] = False
    forest = np.ones((3, 3), dtype=bool)
    forest[2, 2] = False

    out = compute_trajectory_features(series, 2003, region_mask=region, forest_mask=forest)
    assert np.isnan(out['NBR'].values[0, 0])
    assert np.isnan(out['NBR'].values[2, 2])
    assert out['NBR'].values[1, 1] == 3.0


def test_reducers_skip_nan():
    stack = np.array([[[1.0]], [[np.nan]], [[3.0]]])
    assert nan_std(stack)[0, 0] == pytest.approx(1.0)
    assert ols_slope(stack, [2000, 2001, 2002])[0, 0] == pytest.approx(1.0)
    assert np.isnan(ols_slope(np.full((2, 1, 1), np.nan), [2000, 2001])[0, 0])
