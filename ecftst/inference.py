"""
Forest cover loss mapping with a trained regional classifier.

This module handles:
- Pixel classification of an assembled feature raster
- Tiled, fused feature building, classification and smoothing over the
  whole raster (one dask task per tile)
- Per-tile failure reporting without aborting the run
"""

import numpy as np
import rioxarray  # noqa: F401
import xarray as xr
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .assembler import SchemaError, assemble_features, validate_feature_names
from .climate import build_climate_features
from .config import (
    CLIMATE_BANDS,
    NODATA_LABEL,
    TERRAIN_BANDS,
    TEXTURE_BANDS,
    TILE_HALO,
    TILE_SIZE,
    RunConfig,
)
from .indices import MissingBandError, compute_index_series, rename_band_aliases
from .parallel import run_tasks
from .postprocessing import class_fractions, mode_filter
from .preprocessing import MaskLike, as_mask, match_grid
from .texture import compute_texture_features, glcm_value_ranges, texture_band_names
from .trajectory import compute_trajectory_features


Window = Tuple[slice, slice]


# ---------------------------------------------------------------------------
# Pixel classification
# ---------------------------------------------------------------------------

def classify_features(
    model,
    features: xr.DataArray,
    mask: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Classify every pixel with a complete feature vector.

    Parameters
    ----------
    model : fitted classifier
        Anything with ``predict`` (a RandomForestClassifier in practice)
    features : xr.DataArray
        Feature raster with dims (band, y, x), bands in model order
    mask : np.ndarray, optional
        Boolean (y, x) mask; pixels outside it are nodata

    Returns
    -------
    np.ndarray
        uint8 labels (y, x); pixels with any missing feature are nodata
    """
    n_bands, height, width = features.shape
    expected = getattr(model, 'n_features_in_', n_bands)
    if expected != n_bands:
        raise SchemaError(f"Model expects {expected} features, raster has {n_bands}")

    pixels = features.values.reshape(n_bands, -1).T
    complete = np.isfinite(pixels).all(axis=1)
    if mask is not None:
        complete &= np.asarray(mask, dtype=bool).ravel()

    labels = np.full(height * width, NODATA_LABEL, dtype=np.uint8)
    if complete.any():
        labels[complete] = model.predict(pixels[complete]).astype(np.uint8)

    return labels.reshape(height, width)


# ---------------------------------------------------------------------------
# Tiling
# ---------------------------------------------------------------------------

def tile_windows(
    shape: Tuple[int, int],
    tile_size: Optional[int] = TILE_SIZE,
    halo: int = TILE_HALO
) -> List[Dict]:
    """
    Partition a raster into core tiles with padded read windows.

    Returns
    -------
    list of dict
        'core': (row slice, col slice) written back,
        'read': padded (row slice, col slice) to compute on,
        'inner': core position inside the read window
    """
    height, width = shape
    if tile_size is None:
        tile_size = max(height, width)
    if tile_size <= 0:
        raise ValueError(f"tile_size must be positive, got {tile_size}")

    windows = []
    for r0 in range(0, height, tile_size):
        r1 = min(r0 + tile_size, height)
        for c0 in range(0, width, tile_size):
            c1 = min(c0 + tile_size, width)
            pr0, pr1 = max(r0 - halo, 0), min(r1 + halo, height)
            pc0, pc1 = max(c0 - halo, 0), min(c1 + halo, width)
            windows.append({
                'core': (slice(r0, r1), slice(c0, c1)),
                'read': (slice(pr0, pr1), slice(pc0, pc1)),
                'inner': (slice(r0 - pr0, r1 - pr0), slice(c0 - pc0, c1 - pc0)),
            })
    return windows


def _isel(ds, window: Window):
    if ds is None:
        return None
    return ds.isel(y=window[0], x=window[1])


def _process_tile(
    tile: Dict,
    composites: Dict[int, xr.Dataset],
    target_year: int,
    feature_names: List[str],
    model,
    value_ranges: Optional[Dict],
    climate: Optional[xr.Dataset],
    terrain: Optional[xr.Dataset],
    mask: np.ndarray,
    safe_divide: str,
    smooth_iterations: int
):
    """Build features, classify and smooth one tile; returns (core labels, failure)."""
    read = tile['read']
    try:
        tile_comps = {year: _isel(ds, read) for year, ds in composites.items()}
        tile_mask = mask[read]

        series = compute_index_series(tile_comps)
        trajectory = compute_trajectory_features(
            series, target_year, region_mask=tile_mask, safe_divide=safe_divide
        )
        texture = None
        if value_ranges is not None:
            texture = compute_texture_features(tile_comps[target_year], value_ranges=value_ranges)

        features = assemble_features(
            feature_names, trajectory, texture, _isel(climate, read), _isel(terrain, read)
        )
        labels = classify_features(model, features, tile_mask)
        if smooth_iterations > 0:
            labels = mode_filter(labels, iterations=smooth_iterations)

        return labels[tile['inner']], None
    except Exception as e:
        return None, {'window': tile['core'], 'error': e, 'message': str(e)}


def map_forest_loss(
    config: RunConfig,
    composites: Mapping[int, xr.Dataset],
    model,
    feature_names: Sequence[str],
    monthly_climate: Optional[xr.Dataset] = None,
    baseline_temp: Optional[xr.DataArray] = None,
    terrain: Optional[xr.Dataset] = None,
    forest_mask: Optional[MaskLike] = None,
    region_mask: Optional[MaskLike] = None,
    tile_size: Optional[int] = TILE_SIZE,
    halo: int = TILE_HALO,
    smooth_iterations: int = 1,
    safe_divide: str = 'zero',
    parallel: bool = True,
    verbose: bool = True
) -> Dict:
    """
    Map forest cover loss classes for one region and target year.

    The raster is split into tiles; each tile computes its indices,
    trajectory, texture, climate and terrain features, is classified and
    smoothed in one pass, and its core is written back. Terrain and
    climate are resampled onto the composite grid once and sliced per
    tile, and GLCM quantization
    ranges are fixed for the whole raster, so the result does not depend
    on the tiling.

    Parameters
    ----------
    config : RunConfig
        Target year and region
    composites : dict
        {year: composite dataset} on a common grid; years outside
        [base_year, target_year] are ignored
    model : fitted classifier
        Region classifier trained on ``feature_names``
    feature_names : list
        Ordered feature subset of the region (canonical or legacy names)
    monthly_climate : xr.Dataset, optional
        Monthly climate, required when climate bands are requested. May
        be on a coarser grid; the climate bands are resampled onto the
        composite grid by nearest neighbor.
    baseline_temp : xr.DataArray, optional
        Baseline temperature (see ``climate.compute_baseline_temperature``)
    terrain : xr.Dataset, optional
        Static terrain bands, required when terrain bands are requested;
        resampled onto the composite grid like the climate bands
    forest_mask : array, optional
        True where the baseline map is forest
    region_mask : array, optional
        True inside the region
    tile_size : int, optional
        Tile side length in pixels. None processes the raster as one tile.
    halo : int
        Extra pixels read around each tile
    smooth_iterations : int
        Mode filter passes; 0 disables smoothing
    safe_divide : str
        Zero-denominator policy for relative change
    parallel : bool
        Whether to use Dask parallelism
    verbose : bool
        Print progress and a summary

    Returns
    -------
    dict
        'labels': uint8 DataArray (y, x), 255 as nodata, in the composite CRS
        'failures': list of failed tile reports
        'n_tiles': number of tiles processed
    """
    names = validate_feature_names(feature_names)

    expected = getattr(model, 'n_features_in_', len(names))
    if expected != len(names):
        raise SchemaError(f"Model expects {expected} features, {len(names)} requested")

    required_halo = 2 + smooth_iterations
    if tile_size is not None and halo < required_halo:
        raise ValueError(f"halo must be at least {required_halo} for this smoothing, got {halo}")

    target_year = config.target_year
    years = [y for y in sorted(composites) if config.base_year <= y <= target_year]
    if target_year not in years:
        raise ValueError(f"No composite for target year {target_year}")
    comps = {y: rename_band_aliases(composites[y]) for y in years}
    target = comps[target_year]

    needs_texture = any(n in texture_band_names() for n in names)
    needs_climate = any(n in CLIMATE_BANDS for n in names)
    needs_terrain = any(n in TERRAIN_BANDS for n in names)

    if verbose:
        print(f"Mapping region {config.region_id}, year {target_year}")
        print(f"  Years available: {years[0]}-{years[-1]} ({len(years)} composites)")
        print(f"  Features: {len(names)}")

    template = target[next(iter(target.data_vars))]
    shape = (template.sizes['y'], template.sizes['x'])

    # Climate and terrain come on their own grids
    climate = None
    if needs_climate:
        if monthly_climate is None or baseline_temp is None:
            raise SchemaError("Climate bands requested but no monthly climate supplied")
        climate = match_grid(
            build_climate_features(monthly_climate, target_year, baseline_temp), template
        )

    if needs_terrain:
        if terrain is None:
            raise SchemaError("Terrain bands requested but no terrain supplied")
        terrain = match_grid(terrain, template)
    else:
        terrain = None

    value_ranges = None
    if needs_texture:
        absent = [b for b in TEXTURE_BANDS if b not in target.data_vars]
        if absent:
            raise MissingBandError(f"Target composite lacks texture band(s) {absent}")
        value_ranges = glcm_value_ranges(target)

    mask = np.ones(shape, dtype=bool)
    for m in (region_mask, forest_mask):
        grid_mask = as_mask(m, template)
        if grid_mask is not None:
            mask &= grid_mask.values

    tiles = tile_windows(shape, tile_size, halo)
    outcomes = run_tasks(
        _process_tile,
        [
            (tile, comps, target_year, names, model, value_ranges,
             climate, terrain, mask, safe_divide,
             smooth_iterations)
            for tile in tiles
        ],
        parallel=parallel,
        desc="Mapping tiles",
        show_progress=verbose,
    )

    labels = np.full(shape, NODATA_LABEL, dtype=np.uint8)
    failures = []
    for tile, (core_labels, failure) in zip(tiles, outcomes):
        if failure is not None:
            failures.append(failure)
            continue
        labels[tile['core']] = core_labels

    if verbose:
        print(f"Processed {len(tiles) - len(failures)}/{len(tiles)} tiles")
        for f in failures:
            rows, cols = f['window']
            print(f"  ERROR tile rows {rows.start}:{rows.stop}, "
                  f"cols {cols.start}:{cols.stop}: {f['message']}")
        fractions = class_fractions(labels)
        if fractions:
            print("  Class shares: " + ", ".join(
                f"{k}={100 * v:.1f}%" for k, v in fractions.items()))

    coords = {d: template[d].values for d in ('y', 'x') if d in template.coords}
    result = xr.DataArray(labels, dims=('y', 'x'), coords=coords, name='classification')
    if template.rio.crs is not None:
        result = result.rio.write_crs(template.rio.crs)
    result.attrs['target_year'] = target_year
    result.attrs['region_id'] = config.region_id
    result.attrs['nodata'] = NODATA_LABEL

    return {
        'labels': result,
        'failures': failures,
        'n_tiles': len(tiles),
    }
