"""
Run configuration and shared constants.

This module handles:
- Band naming (raw reflectance, spectral indices, derived feature suffixes)
- Default hyperparameter grids for the region grid search
- Run configuration validated once at the pipeline boundary
- Strict YAML loading for configuration files
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml


# ---------------------------------------------------------------------------
# Band names
# ---------------------------------------------------------------------------

# Landsat surface reflectance naming (LandTrendr collection layout)
RAW_BANDS = ['B1', 'B2', 'B3', 'B4', 'B5', 'B7']

# Generic channel names accepted from composite providers
BAND_ALIASES = {
    'blue': 'B1',
    'green': 'B2',
    'red': 'B3',
    'nir': 'B4',
    'swir1': 'B5',
    'swir2': 'B7',
}

INDEX_BANDS = ['NBR', 'NDVI', 'NDMI', 'NDBI', 'RVI', 'SAVI', 'EVI', 'DVI']

TEXTURE_BANDS = ['B1', 'B2', 'B3', 'B4', 'B5', 'B7']
FIRST_ORDER_SUFFIXES = ['mean', 'stdDev']
GLCM_SUFFIXES = ['con', 'ent', 'cor']

TEMPORAL_SUFFIXES = [
    'chg_ra', 'rol_3y', 'rol_5y', 'trend', 'an_cha',
    'vola_5y', 'reco_s', 'mean', 'chg_ac',
]

CLIMATE_BANDS = ['a_precip', 'p_precip', 'temp_an', 'su_temp']
TERRAIN_BANDS = ['dem', 'slope', 'aspect']

# Label raster conventions
STABLE_LABEL = 0
DISTURBANCE_LABELS = [1, 2, 3]
NODATA_LABEL = 255

# GLC_FCS30 forest class codes
FOREST_CODE_RANGE = (50, 92)


# ---------------------------------------------------------------------------
# Numeric policies
# ---------------------------------------------------------------------------

CHANGE_EPSILON = 1e-5
SAFE_DIVIDE_POLICIES = ('zero', 'missing', 'epsilon')

SPLIT_THRESHOLD = 0.75
SPLIT_SEED_OFFSET = 100

GLCM_LEVELS = 16
TILE_SIZE = 256
TILE_HALO = 3

OUTPUT_CRS = 'EPSG:4326'


# ---------------------------------------------------------------------------
# Grid search defaults
# ---------------------------------------------------------------------------

# [class 1 target, class 2 target, class 3 target]
TARGET_SIZES_GRID: List[Tuple[int, int, int]] = [
    (400, 400, 600),
    (400, 400, 800),
    (400, 500, 700),
    (500, 400, 700),
    (500, 500, 600),
    (500, 500, 700),
    (500, 500, 800),
    (600, 400, 700),
    (600, 500, 800),
]

RF_PARAMS_GRID: List[Dict[str, float]] = [
    {'trees': 50, 'leaf_pop': 1, 'bag_frac': 0.5, 'split_var': 0.5},
    {'trees': 50, 'leaf_pop': 1, 'bag_frac': 0.7, 'split_var': 0.7},
    {'trees': 50, 'leaf_pop': 2, 'bag_frac': 0.6, 'split_var': 0.6},
    {'trees': 100, 'leaf_pop': 1, 'bag_frac': 0.5, 'split_var': 0.7},
    {'trees': 100, 'leaf_pop': 2, 'bag_frac': 0.6, 'split_var': 0.6},
    {'trees': 100, 'leaf_pop': 5, 'bag_frac': 0.7, 'split_var': 0.5},
    {'trees': 150, 'leaf_pop': 2, 'bag_frac': 0.7, 'split_var': 0.5},
    {'trees': 150, 'leaf_pop': 5, 'bag_frac': 0.5, 'split_var': 0.7},
    {'trees': 200, 'leaf_pop': 5, 'bag_frac': 0.6, 'split_var': 0.6},
]


# ---------------------------------------------------------------------------
# Run configuration
# ---------------------------------------------------------------------------

class ConfigError(ValueError):
    """Invalid run configuration."""


@dataclass(frozen=True)
class RunConfig:
    """
    Target year and region for one mapping or training run.

    Bounds are checked once on construction so that everything downstream
    can trust the values.

    Parameters
    ----------
    target_year : int
        Year to map. Must leave at least one prior year in the series.
    region_id : int
        Ecoregion identifier in ``1..n_regions``.
    base_year : int
        First year of the composite time series.
    max_year : int
        Last year with composites available.
    n_regions : int
        Number of regions partitioning the study domain.
    """

    target_year: int
    region_id: int
    base_year: int = 2000
    max_year: int = 2024
    n_regions: int = 35

    def __post_init__(self):
        for name in ('target_year', 'region_id', 'base_year', 'max_year', 'n_regions'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name} must be an integer, got {value!r}")

        if not self.base_year < self.target_year <= self.max_year:
            raise ConfigError(
                f"target_year {self.target_year} outside "
                f"[{self.base_year + 1}, {self.max_year}]"
            )
        if not 1 <= self.region_id <= self.n_regions:
            raise ConfigError(
                f"region_id {self.region_id} outside [1, {self.n_regions}]"
            )

    @property
    def years(self) -> List[int]:
        """Years of the composite series, base year through target year."""
        return list(range(self.base_year, self.target_year + 1))


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """
    Load a YAML file that must contain a mapping.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ConfigError
        If the document is not a mapping.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with path.open('r', encoding='utf-8') as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ConfigError(f"Expected YAML mapping at {path}")
    return data


DEFAULT_REGIONS_YAML = Path(__file__).resolve().parent / 'data' / 'regions.yaml'
