import numpy as np
import pandas as pd
import pytest
import rioxarray  # noqa: F401
import xarray as xr
from sklearn.ensemble import RandomForestClassifier

from ecftst.assembler import SchemaError
from ecftst.climate import compute_baseline_temperature
from ecftst.config import RunConfig
from ecftst.inference import classify_features, map_forest_loss, tile_windows
from ecftst.terrain import build_terrain_features
from ecftst.training import build_parameter_grid, train_final_model

from conftest import BASE_REFLECTANCE, make_composite, make_monthly_climate


LOSS_PIXEL = (2, 3)


def loss_composites(shape=(6, 6), pixel=LOSS_PIXEL):
    """Three uniform years; the target year halves NIR at one pixel."""
    comps = {year: make_composite(shape=shape) for year in (2000, 2001)}
    nir = np.full(shape, BASE_REFLECTANCE['B4'])
    nir[pixel] /= 2
    comps[2002] = make_composite(shape=shape, overrides={'B4': nir})
    return comps


def ndvi_samples(n_per_class=40, seed=0):
    """Class centres in (NDVI, NDVI relative change) space."""
    centres = {0: (765.0, 0.0), 1: (580.0, -0.24), 2: (400.0, -0.5), 3: (150.0, -0.8)}
    rng = np.random.default_rng(seed)
    rows = []
    for label, (ndvi, change) in centres.items():
        for _ in range(n_per_class):
            rows.append({
                'label': label,
                'NBR': 580.0,
                'NDVI': ndvi + rng.normal(0, 15),
                'NDVI_chg_ra': change + rng.normal(0, 0.02),
            })
    return pd.DataFrame(rows)


@pytest.fixture
def ndvi_model():
    combo = build_parameter_grid(
        [(40, 40, 40)],
        [{'trees': 20, 'leaf_pop': 1, 'bag_frac': 0.7, 'split_var': 1.0}],
    )[0]
    return train_final_model(ndvi_samples(), ['NDVI', 'NDVI_chg_ra'], combo, region_id=1,
                             use_all_samples=True)


class ExplodingModel:
    """Predicts stable everywhere but fails on low NDVI."""

    n_features_in_ = 2

    def predict(self, X):
        if (X[:, 0] < 700).any():
            raise RuntimeError("bad pixel")
        return np.zeros(len(X), dtype=int)


def random_model(n_features, seed=0):
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(200, n_features))
    y = rng.integers(0, 4, size=200)
    return RandomForestClassifier(n_estimators=10, random_state=0).fit(X, y)


CONFIG = RunConfig(target_year=2002, region_id=1)


def test_tile_windows_cover_raster_once():
    windows = tile_windows((10, 7), tile_size=4, halo=3)
    hits = np.zeros((10, 7), dtype=int)
    for w in windows:
        hits[w['core']] += 1
        read_rows, read_cols = w['read']
        inner_rows, inner_cols = w['inner']
        assert inner_rows.start + read_rows.start == w['core'][0].start
        assert inner_cols.start + read_cols.start == w['core'][1].start
    assert (hits == 1).all()
    assert len(windows) == 6


def test_loss_pixel_is_detected(ndvi_model):
    result = map_forest_loss(CONFIG, loss_composites(), ndvi_model, ['NDVI', 'NDVI_chg_ra'],
                             smooth_iterations=0, parallel=False, verbose=False)
    labels = result['labels'].values

    assert result['failures'] == []
    assert labels.dtype == np.uint8
    assert labels[LOSS_PIXEL] != 0
    others = np.ones(labels.shape, dtype=bool)
    others[LOSS_PIXEL] = False
    assert (labels[others] == 0).all()
    assert result['labels'].attrs['target_year'] == 2002


def test_smoothing_removes_isolated_loss(ndvi_model):
    result = map_forest_loss(CONFIG, loss_composites(), ndvi_model, ['NDVI', 'NDVI_chg_ra'],
                             smooth_iterations=1, parallel=False, verbose=False)
    assert (result['labels'].values == 0).all()


def test_forest_mask_gives_nodata(ndvi_model):
    forest = np.ones((6, 6), dtype=bool)
    forest[0, 0] = False
    result = map_forest_loss(CONFIG, loss_composites(), ndvi_model, ['NDVI', 'NDVI_chg_ra'],
                             forest_mask=forest, smooth_iterations=0,
                             parallel=False, verbose=False)
    labels = result['labels'].values
    assert labels[0, 0] == 255
    assert labels[0, 1] == 0


def test_tiled_matches_untiled():
    comps = {year: make_composite(shape=(10, 10), noise=0.02, seed=year)
             for year in (2000, 2001, 2002)}
    names = ['NDVI', 'NDVI_chg_ra', 'B4_con', 'B5_stdDev', 'NBR_r_m_3']
    model = random_model(len(names))

    whole = map_forest_loss(CONFIG, comps, model, names, tile_size=None,
                            parallel=False, verbose=False)
    tiled = map_forest_loss(CONFIG, comps, model, names, tile_size=4, halo=3,
                            parallel=True, verbose=False)

    assert tiled['n_tiles'] == 9
    assert tiled['failures'] == []
    np.testing.assert_array_equal(whole['labels'].values, tiled['labels'].values)


def test_failed_tile_is_reported():
    result = map_forest_loss(CONFIG, loss_composites(shape=(12, 12), pixel=(1, 1)),
                             ExplodingModel(), ['NDVI', 'NDVI_chg_ra'],
                             tile_size=4, halo=2, smooth_iterations=0,
                             parallel=False, verbose=False)
    labels = result['labels'].values

    assert result['n_tiles'] == 9
    assert len(result['failures']) == 1
    assert isinstance(result['failures'][0]['error'], RuntimeError)
    assert (labels[:4, :4] == 255).all()
    assert (labels[4:, :] == 0).all()
    assert (labels[:4, 4:] == 0).all()


def test_unknown_feature_fails_before_tiling(ndvi_model):
    with pytest.raises(SchemaError, match='NDVI_bogus'):
        map_forest_loss(CONFIG, loss_composites(), ndvi_model, ['NDVI', 'NDVI_bogus'],
                        parallel=False, verbose=False)


def test_model_feature_count_must_match(ndvi_model):
    with pytest.raises(SchemaError):
        map_forest_loss(CONFIG, loss_composites(), ndvi_model, ['NDVI', 'NDVI_chg_ra', 'NBR'],
                        parallel=False, verbose=False)


def test_climate_bands_need_climate():
    model = random_model(2)
    with pytest.raises(SchemaError, match='climate'):
        map_forest_loss(CONFIG, loss_composites(), model, ['NDVI', 'a_precip'],
                        parallel=False, verbose=False)


def test_halo_must_cover_smoothing(ndvi_model):
    with pytest.raises(ValueError, match='halo'):
        map_forest_loss(CONFIG, loss_composites(), ndvi_model, ['NDVI', 'NDVI_chg_ra'],
                        tile_size=4, halo=2, smooth_iterations=1,
                        parallel=False, verbose=False)


def test_classify_features_marks_incomplete_pixels(ndvi_model):
    values = np.full((2, 2, 2), 765.0)
    values[1] = 0.0
    values[0, 0, 0] = np.nan
    features = xr.DataArray(values, dims=('band', 'y', 'x'))
    mask = np.array([[True, True], [False, True]])

    labels = classify_features(ndvi_model, features, mask)
    assert labels[0, 0] == 255
    assert labels[1, 0] == 255
    assert labels[0, 1] == 0


class PrecipModel:
    """Labels each pixel from its annual precipitation (120 mm steps)."""

    n_features_in_ = 3

    def __init__(self):
        self.seen = []

    def predict(self, X):
        self.seen.append(X.copy())
        return np.round(X[:, 1] / 120.0).astype(int) - 1


def coarse_climate():
    """Monthly climate on a 2x2 grid covering the 6x6 composites."""
    monthly = make_monthly_climate([2001, 2002], shape=(2, 2))
    precip = np.array([[0.01, 0.02], [0.03, 0.04]])
    monthly['total_precipitation'][:] = np.broadcast_to(precip, monthly['total_precipitation'].shape)
    return monthly.assign_coords(y=[75.0, -25.0], x=[525.0, 625.0])


@pytest.mark.parametrize('tile_size', [None, 4])
def test_climate_and_terrain_on_other_grids(tile_size):
    monthly = coarse_climate()
    dem = xr.DataArray(
        np.tile(np.arange(6) * 30.0, (6, 1)),
        dims=('y', 'x'),
        coords={'y': 100.0 - 30.0 * np.arange(6), 'x': 500.0 + 30.0 * np.arange(6)},
    )
    terrain = build_terrain_features(dem)
    model = PrecipModel()

    result = map_forest_loss(CONFIG, loss_composites(), model, ['NDVI', 'a_precip', 'slope'],
                             monthly_climate=monthly,
                             baseline_temp=compute_baseline_temperature(monthly),
                             terrain=terrain, tile_size=tile_size, halo=2,
                             smooth_iterations=0, parallel=False, verbose=False)

    assert result['failures'] == []
    expected = np.array([[0, 0, 0, 1, 1, 1]] * 3 + [[2, 2, 2, 3, 3, 3]] * 3)
    np.testing.assert_array_equal(result['labels'].values, expected)
    slopes = np.concatenate([X[:, 2] for X in model.seen])
    assert np.allclose(slopes, np.pi / 4)


def test_labels_keep_composite_crs(ndvi_model):
    comps = {year: ds.rio.write_crs('EPSG:32630') for year, ds in loss_composites().items()}
    result = map_forest_loss(CONFIG, comps, ndvi_model, ['NDVI', 'NDVI_chg_ra'],
                             smooth_iterations=0, parallel=False, verbose=False)
    assert result['labels'].rio.crs.to_epsg() == 32630
    assert result['labels'].attrs['nodata'] == 255
