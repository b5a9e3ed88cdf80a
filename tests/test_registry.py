import geopandas as gpd
import numpy as np
import pytest
import xarray as xr
from rasterio.transform import from_origin
from shapely.geometry import box
from sklearn.ensemble import RandomForestClassifier

from ecftst.config import ConfigError, RunConfig, load_yaml
from ecftst.registry import (
    ModelStore,
    Region,
    RegionRegistry,
    load_sample_library,
    rasterize_region,
    region_mask_like,
)
from ecftst.training import prepare_samples


REGISTRY_YAML = """
regions:
  - id: 4
    name: III09
    bounds: [0.0, 0.0, 2.0, 2.0]
    features: [NBR, NDVI_r_m_3, B7_con]
    samples: samples/region_04.csv
    model: /abs/models/region_04.joblib
  - id: 2
    name: ii-1
    geometry: boundaries/region_02.gpkg
    features: [NDVI]
"""


@pytest.mark.parametrize('kwargs', [
    {'target_year': 2000, 'region_id': 1},
    {'target_year': 2025, 'region_id': 1},
    {'target_year': 2010, 'region_id': 0},
    {'target_year': 2010, 'region_id': 36},
    {'target_year': 2010.0, 'region_id': 1},
    {'target_year': 2010, 'region_id': True},
])
def test_run_config_bounds(kwargs):
    with pytest.raises(ConfigError):
        RunConfig(**kwargs)


def test_run_config_years():
    config = RunConfig(target_year=2003, region_id=35)
    assert config.years == [2000, 2001, 2002, 2003]


def test_registry_from_yaml(tmp_path):
    path = tmp_path / 'regions.yaml'
    path.write_text(REGISTRY_YAML)
    registry = RegionRegistry.from_yaml(path)

    assert registry.ids == [2, 4]
    region = registry.get(4)
    assert region.name == 'III09'
    assert region.features == ('NBR', 'NDVI_r_m_3', 'B7_con')
    assert region.geometry.equals(box(0, 0, 2, 2))
    assert region.sample_source == tmp_path / 'samples' / 'region_04.csv'
    assert str(region.model_ref) == '/abs/models/region_04.joblib'
    assert registry.get(2).geometry == tmp_path / 'boundaries' / 'region_02.gpkg'

    with pytest.raises(ConfigError):
        registry.get(9)


@pytest.mark.parametrize('body', [
    "regions:\n  - {id: 1, features: []}\n",
    "regions:\n  - {id: 40, features: [NBR]}\n",
    "regions:\n  - {id: 1, features: [NBR]}\n  - {id: 1, features: [NDVI]}\n",
    "regions:\n  - {id: 1, features: [NBR], bounds: [0, 1]}\n",
    "regions: {}\n",
])
def test_registry_rejects_bad_entries(tmp_path, body):
    path = tmp_path / 'regions.yaml'
    path.write_text(body)
    with pytest.raises(ConfigError):
        RegionRegistry.from_yaml(path)


def test_load_yaml_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml(tmp_path / 'absent.yaml')
    path = tmp_path / 'list.yaml'
    path.write_text("- a\n- b\n")
    with pytest.raises(ConfigError):
        load_yaml(path)


def test_geometry_from_vector_file(tmp_path):
    path = tmp_path / 'boundary.gpkg'
    gpd.GeoDataFrame(geometry=[box(0, 0, 1, 1), box(1, 0, 2, 1)], crs='EPSG:4326').to_file(path)

    region = Region(1, 'A01', ('NBR',), geometry=path)
    assert region.load_geometry().area == pytest.approx(2.0)

    projected = region.load_geometry('EPSG:3857')
    assert projected.bounds[2] == pytest.approx(222638.98, rel=1e-6)


def test_rasterize_region():
    mask = rasterize_region(box(0, 0, 2, 2), (4, 4), from_origin(0, 4, 1, 1))
    expected = np.zeros((4, 4), dtype=bool)
    expected[2:, :2] = True
    np.testing.assert_array_equal(mask, expected)


def test_region_mask_like():
    template = xr.DataArray(
        np.zeros((4, 4)),
        dims=('y', 'x'),
        coords={'y': [3.5, 2.5, 1.5, 0.5], 'x': [0.5, 1.5, 2.5, 3.5]},
    ).rio.write_crs('EPSG:4326')
    region = Region(3, 'A03', ('NBR',), geometry=box(2, 2, 4, 4))

    mask = region_mask_like(region, template)
    assert mask.values[:2, 2:].all()
    assert mask.values.sum() == 4


def test_region_without_geometry():
    with pytest.raises(ConfigError):
        Region(1, 'A01', ('NBR',)).load_geometry()


def test_sample_library_keeps_empty_strings(tmp_path):
    path = tmp_path / 'samples.csv'
    path.write_text("label,NBR,NDVI\n1,,0.5\n2,null,0.3\n0,420,0.7\n")

    table = load_sample_library(path)
    assert table.loc[0, 'NBR'] == ''
    assert np.isnan(table.loc[1, 'NBR'])

    prepared = prepare_samples(table, ['NBR', 'NDVI'])
    assert prepared['label'].tolist() == [0]
    assert prepared['NBR'].tolist() == [420.0]


def test_model_store_round_trip(tmp_path):
    model = RandomForestClassifier(n_estimators=3, random_state=0).fit(
        np.arange(12.0).reshape(6, 2), [0, 0, 1, 1, 2, 3]
    )
    store = ModelStore(tmp_path / 'models')
    assert not store.exists(7)

    path = store.save(7, model, ['NBR', 'NDVI'], record={'kappa': 0.8})
    assert path.name == 'region_07.joblib'

    stored = store.load(7)
    assert stored.region_id == 7
    assert stored.feature_names == ['NBR', 'NDVI']
    assert stored.record == {'kappa': 0.8}
    np.testing.assert_array_equal(stored.model.predict([[0.0, 1.0]]), model.predict([[0.0, 1.0]]))

    with pytest.raises(FileNotFoundError):
        store.load(8)
