"""
Region registry, sample libraries and trained model storage.

This module handles:
- Loading the ecoregion registry from YAML (feature subsets, boundaries,
  sample library and model locations)
- Region geometries from bounds or vector files, reprojected with pyproj
- Rasterizing a region onto the working grid
- Reading sample libraries from CSV or vector files
- Persisting and loading trained classifiers with joblib
"""

import geopandas as gpd
import joblib
import numpy as np
import pandas as pd
import rioxarray  # noqa: F401  (registers the .rio accessor)
import xarray as xr
from dataclasses import dataclass, field
from pathlib import Path
from pyproj import CRS
from rasterio import features
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .config import ConfigError, DEFAULT_REGIONS_YAML, OUTPUT_CRS, load_yaml


VECTOR_SUFFIXES = {'.shp', '.gpkg', '.geojson', '.json', '.fgb'}

# Null markers of exported sample tables; empty strings are kept as values
SAMPLE_NULL_VALUES = ['null', 'NULL', 'None', 'nan', 'NaN']


# ---------------------------------------------------------------------------
# Regions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Region:
    """
    One ecoregion of the study domain.

    ``geometry`` is either a shapely geometry (in ``crs``) or the path of a
    vector file holding the boundary; ``load_geometry`` resolves both.
    """

    region_id: int
    name: str
    features: Tuple[str, ...]
    geometry: Union[BaseGeometry, Path, None] = None
    sample_source: Optional[Path] = None
    model_ref: Optional[Path] = None
    crs: str = OUTPUT_CRS

    def load_geometry(self, target_crs: Optional[str] = None) -> BaseGeometry:
        """
        Region boundary as a single shapely geometry.

        Parameters
        ----------
        target_crs : str, optional
            CRS to reproject the boundary to. Defaults to the region's CRS.
        """
        if self.geometry is None:
            raise ConfigError(f"Region {self.region_id} has no geometry")

        if isinstance(self.geometry, BaseGeometry):
            series = gpd.GeoSeries([self.geometry], crs=self.crs)
        else:
            gdf = gpd.read_file(self.geometry)
            if gdf.crs is None:
                gdf = gdf.set_crs(self.crs)
            series = gpd.GeoSeries([unary_union(list(gdf.geometry))], crs=gdf.crs)

        if target_crs is not None and not CRS.from_user_input(target_crs).equals(series.crs):
            series = series.to_crs(target_crs)
        return series.iloc[0]


def _resolve_path(value: Optional[str], base: Path) -> Optional[Path]:
    if value is None:
        return None
    path = Path(value)
    return path if path.is_absolute() else base / path


def _parse_region(entry: Dict[str, Any], base: Path, n_regions: int) -> Region:
    if not isinstance(entry, dict):
        raise ConfigError(f"Region entry must be a mapping, got {entry!r}")

    region_id = entry.get('id')
    if isinstance(region_id, bool) or not isinstance(region_id, int):
        raise ConfigError(f"Region id must be an integer, got {region_id!r}")
    if not 1 <= region_id <= n_regions:
        raise ConfigError(f"Region id {region_id} outside [1, {n_regions}]")

    feats = entry.get('features')
    if not isinstance(feats, list) or not feats:
        raise ConfigError(f"Region {region_id}: 'features' must be a non-empty list")

    if 'bounds' in entry:
        bounds = entry['bounds']
        if not isinstance(bounds, (list, tuple)) or len(bounds) != 4:
            raise ConfigError(f"Region {region_id}: bounds must be [xmin, ymin, xmax, ymax]")
        geometry = box(*map(float, bounds))
    else:
        geometry = _resolve_path(entry.get('geometry'), base)

    return Region(
        region_id=region_id,
        name=str(entry.get('name', f"region_{region_id:02d}")),
        features=tuple(str(f) for f in feats),
        geometry=geometry,
        sample_source=_resolve_path(entry.get('samples'), base),
        model_ref=_resolve_path(entry.get('model'), base),
        crs=str(entry.get('crs', OUTPUT_CRS)),
    )


@dataclass
class RegionRegistry:
    """Regions keyed by id."""

    regions: Dict[int, Region] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None, n_regions: int = 35) -> 'RegionRegistry':
        """
        Load a registry file.

        Expected layout::

            regions:
              - id: 1
                name: A01
                bounds: [xmin, ymin, xmax, ymax]   # or geometry: path
                features: [NBR, NDVI_r_m_3, ...]
                samples: samples/region_01.csv
                model: models/region_01.joblib

        Relative paths are resolved against the file's directory.
        Defaults to the registry shipped with the package.
        """
        path = Path(path) if path is not None else DEFAULT_REGIONS_YAML
        data = load_yaml(path)
        entries = data.get('regions')
        if not isinstance(entries, list):
            raise ConfigError(f"{path} must have a top-level 'regions:' list.")

        regions: Dict[int, Region] = {}
        for entry in entries:
            region = _parse_region(entry, path.parent, n_regions)
            if region.region_id in regions:
                raise ConfigError(f"Duplicate region id {region.region_id} in {path}")
            regions[region.region_id] = region
        return cls(regions)

    def get(self, region_id: int) -> Region:
        try:
            return self.regions[region_id]
        except KeyError:
            raise ConfigError(f"Region {region_id} not in registry") from None

    @property
    def ids(self) -> List[int]:
        return sorted(self.regions)

    def __len__(self) -> int:
        return len(self.regions)


# ---------------------------------------------------------------------------
# Rasterization
# ---------------------------------------------------------------------------

def rasterize_region(
    geometry: BaseGeometry,
    shape: Tuple[int, int],
    transform,
    all_touched: bool = False
) -> np.ndarray:
    """
    Burn a region geometry onto a grid.

    Parameters
    ----------
    geometry : shapely geometry
        Boundary in the grid's CRS
    shape : tuple
        (rows, cols) of the grid
    transform : affine.Affine
        Grid transform
    all_touched : bool
        Include every pixel the boundary touches

    Returns
    -------
    np.ndarray
        Boolean mask, True inside the region
    """
    if geometry.is_empty:
        return np.zeros(shape, dtype=bool)

    mask = features.rasterize(
        [(geometry, 1)],
        out_shape=shape,
        transform=transform,
        fill=0,
        all_touched=all_touched,
        dtype=np.uint8,
    )
    return mask.astype(bool)


def region_mask_like(
    region: Region,
    template: Union[xr.DataArray, xr.Dataset]
) -> xr.DataArray:
    """Region mask on the grid of a georeferenced template raster."""
    crs = template.rio.crs
    geometry = region.load_geometry(crs.to_string() if crs is not None else None)
    shape = (template.sizes['y'], template.sizes['x'])
    mask = rasterize_region(geometry, shape, template.rio.transform())
    return xr.DataArray(mask, dims=('y', 'x'), coords={'y': template['y'], 'x': template['x']})


# ---------------------------------------------------------------------------
# Sample libraries
# ---------------------------------------------------------------------------

def load_sample_library(path: Union[str, Path]) -> pd.DataFrame:
    """
    Read a sample library exported from the sampling step.

    CSV values are kept as strings so that malformed entries reach the
    parser unchanged; only explicit null markers become missing. Vector
    files are read with geopandas and their geometry column dropped.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Sample library not found: {path}")

    if path.suffix.lower() in VECTOR_SUFFIXES:
        gdf = gpd.read_file(path)
        return pd.DataFrame(gdf.drop(columns=gdf.geometry.name))

    return pd.read_csv(
        path,
        dtype=str,
        keep_default_na=False,
        na_values=SAMPLE_NULL_VALUES,
    )


# ---------------------------------------------------------------------------
# Model store
# ---------------------------------------------------------------------------

@dataclass
class StoredModel:
    """A trained classifier with the ordered features it expects."""

    region_id: int
    model: Any
    feature_names: List[str]
    record: Dict[str, Any] = field(default_factory=dict)


class ModelStore:
    """
    Directory of trained classifiers, one ``region_XX.joblib`` per region.

    Parameters
    ----------
    root : str or Path
        Store directory, created on first save
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def path_for(self, region_id: int) -> Path:
        return self.root / f"region_{region_id:02d}.joblib"

    def save(
        self,
        region_id: int,
        model,
        feature_names: Sequence[str],
        record: Optional[Dict[str, Any]] = None
    ) -> Path:
        """Persist a classifier and return the file path."""
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(region_id)
        joblib.dump(
            {
                'region_id': region_id,
                'model': model,
                'feature_names': list(feature_names),
                'record': dict(record) if record is not None else {},
            },
            path,
        )
        return path

    def load(self, region_id: int) -> StoredModel:
        return self.load_file(self.path_for(region_id))

    @staticmethod
    def load_file(path: Union[str, Path]) -> StoredModel:
        """Load a stored classifier from an explicit path."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Model not found: {path}")
        payload = joblib.load(path)
        return StoredModel(
            region_id=int(payload['region_id']),
            model=payload['model'],
            feature_names=list(payload['feature_names']),
            record=dict(payload.get('record', {})),
        )

    def exists(self, region_id: int) -> bool:
        return self.path_for(region_id).exists()
