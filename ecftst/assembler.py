"""
Feature assembly for classification.

This module handles:
- The static catalog of every band the feature builders can produce
- Resolution of legacy short band names to canonical names
- Validation of requested feature subsets before any per-pixel work
- Concatenation of index, trajectory, texture, climate and terrain bands
  into the ordered feature stack of a region
"""

import numpy as np
import xarray as xr
from typing import Dict, List, Optional, Sequence

from .config import (
    CLIMATE_BANDS,
    INDEX_BANDS,
    TERRAIN_BANDS,
    TEXTURE_BANDS,
)
from .texture import texture_band_names
from .trajectory import trajectory_band_names


class SchemaError(ValueError):
    """Requested feature bands do not match the available schema."""


# Abbreviated temporal suffixes of the regional feature lists
LEGACY_SUFFIXES = {
    'r_m_3': 'rol_3y',
    'r_m_5': 'rol_5y',
    'v_5': 'vola_5y',
    'r_sl': 'reco_s',
    'c_ac': 'chg_ac',
}

# Shapefile attribute names are cut to this many characters
DBF_FIELD_WIDTH = 10


def feature_catalog(
    indices: Optional[Sequence[str]] = None,
    texture_bands: Optional[Sequence[str]] = None
) -> List[str]:
    """
    Every band name the feature builders produce, in assembly order.

    Order: current-year indices and trajectory bands, texture, climate,
    terrain.
    """
    if indices is None:
        indices = INDEX_BANDS
    if texture_bands is None:
        texture_bands = TEXTURE_BANDS
    return (
        trajectory_band_names(indices)
        + texture_band_names(texture_bands)
        + list(CLIMATE_BANDS)
        + list(TERRAIN_BANDS)
    )


def resolve_feature_name(name: str, catalog: Optional[Sequence[str]] = None) -> str:
    """
    Map a band name onto its canonical catalog name.

    Canonical names are returned unchanged. Abbreviated suffixes
    (``NDVI_r_m_3``) are expanded, and names truncated to the shapefile
    field width (``NDMI_rol_5``) resolve when exactly one catalog band
    starts with them. Anything else is returned as given and left for
    ``validate_feature_names`` to reject.
    """
    if catalog is None:
        catalog = feature_catalog()

    if name in catalog:
        return name

    for short, full in LEGACY_SUFFIXES.items():
        suffix = '_' + short
        if name.endswith(suffix):
            expanded = name[:-len(suffix)] + '_' + full
            if expanded in catalog:
                return expanded

    if len(name) == DBF_FIELD_WIDTH:
        matches = [c for c in catalog if c.startswith(name)]
        if len(matches) == 1:
            return matches[0]

    return name


def resolve_feature_names(
    names: Sequence[str],
    catalog: Optional[Sequence[str]] = None
) -> List[str]:
    """Resolve a list of band names, keeping their order."""
    if catalog is None:
        catalog = feature_catalog()
    return [resolve_feature_name(n, catalog) for n in names]


def validate_feature_names(
    names: Sequence[str],
    catalog: Optional[Sequence[str]] = None
) -> List[str]:
    """
    Resolve and check a requested feature subset.

    Raises
    ------
    SchemaError
        If the list is empty, holds duplicates, or names unknown bands.
    """
    if catalog is None:
        catalog = feature_catalog()

    if len(names) == 0:
        raise SchemaError("Empty feature list")

    resolved = resolve_feature_names(names, catalog)

    unknown = [orig for orig, res in zip(names, resolved) if res not in catalog]
    if unknown:
        raise SchemaError(f"Unknown feature band(s): {unknown}")

    seen = set()
    duplicates = []
    for orig, res in zip(names, resolved):
        if res in seen:
            duplicates.append(orig)
        seen.add(res)
    if duplicates:
        raise SchemaError(f"Duplicate feature band(s): {duplicates}")

    return resolved


def assemble_features(
    feature_names: Sequence[str],
    trajectory: xr.Dataset,
    texture: Optional[xr.Dataset] = None,
    climate: Optional[xr.Dataset] = None,
    terrain: Optional[xr.Dataset] = None
) -> xr.DataArray:
    """
    Stack the requested bands into one feature raster.

    Parameters
    ----------
    feature_names : list
        Ordered feature subset of the region (canonical or legacy names)
    trajectory : xr.Dataset
        Current-year indices and trajectory bands
    texture : xr.Dataset, optional
        First-order and GLCM texture bands
    climate : xr.Dataset, optional
        Climate bands for the target year
    terrain : xr.Dataset, optional
        Static terrain bands

    Returns
    -------
    xr.DataArray
        Features with dims (band, y, x), ``band`` in request order

    Raises
    ------
    SchemaError
        If a requested band is unknown, known but not supplied, or not on
        the grid of the first requested band.
    """
    names = validate_feature_names(feature_names)

    sources: Dict[str, xr.DataArray] = {}
    for ds in (trajectory, texture, climate, terrain):
        if ds is None:
            continue
        for var in ds.data_vars:
            sources.setdefault(var, ds[var])

    absent = [n for n in names if n not in sources]
    if absent:
        raise SchemaError(f"Feature band(s) not supplied by any builder: {absent}")

    template = sources[names[0]]
    shape = (template.sizes['y'], template.sizes['x'])
    for n in names[1:]:
        src = sources[n]
        if (src.sizes['y'], src.sizes['x']) != shape:
            raise SchemaError(
                f"Feature band {n} is {src.sizes['y']}x{src.sizes['x']}, "
                f"{names[0]} is {shape[0]}x{shape[1]}"
            )
        for d in ('y', 'x'):
            if d in src.coords and d in template.coords and not np.allclose(
                src[d].values, template[d].values, rtol=1e-9, atol=0
            ):
                raise SchemaError(f"Feature band {n} is not on the grid of {names[0]}")

    coords = {d: template[d].values for d in ('y', 'x') if d in template.coords}
    layers = [
        xr.DataArray(sources[n].values, dims=('y', 'x'), coords=coords)
        for n in names
    ]

    stacked = xr.concat(layers, dim='band')
    return stacked.assign_coords(band=names).astype('float64')
