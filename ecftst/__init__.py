"""
ECF-TST: Ecoregion-Constrained Feature and Temporal-Spatial Trajectory
forest cover loss mapping
======================================================================

Modules:
    config: Band names, grids, run configuration
    data_loader: Yearly composite loading and stacking
    indices: Spectral indices and index time series
    trajectory: Temporal trajectory statistics
    texture: First-order and GLCM texture
    climate: Precipitation and temperature features
    terrain: Elevation, slope and aspect
    assembler: Feature catalog, legacy names, feature stacking
    training: Sample preparation, oversampling, grid search
    validation: Confusion matrix, accuracy, kappa, recall
    inference: Tiled classification of a region
    postprocessing: Mode filter
    registry: Region registry, sample libraries, model store
    export: GeoTIFF and CSV writers
"""

from .config import ConfigError, RunConfig

from .data_loader import (
    load_composite,
    load_composites,
    stack_composites,
    get_temporal_info,
)

from .indices import (
    MissingBandError,
    normalized_difference,
    compute_index,
    add_spectral_indices,
    compute_index_series,
)

from .preprocessing import forest_mask_from_landcover, apply_masks

from .trajectory import compute_trajectory_features

from .texture import (
    add_first_order_texture,
    add_glcm_texture,
    compute_texture_features,
    glcm_value_ranges,
)

from .climate import compute_baseline_temperature, build_climate_features

from .terrain import build_terrain_features

from .assembler import (
    SchemaError,
    feature_catalog,
    resolve_feature_names,
    validate_feature_names,
    assemble_features,
)

from .training import (
    ClassBalanceError,
    HyperparameterCombination,
    build_parameter_grid,
    prepare_samples,
    oversample_class,
    evaluate_combination,
    run_grid_search,
    select_best_combination,
    train_final_model,
)

from .validation import compute_classification_metrics

from .inference import classify_features, map_forest_loss

from .postprocessing import mode_filter

from .registry import (
    Region,
    RegionRegistry,
    ModelStore,
    load_sample_library,
    rasterize_region,
)

from .export import write_classification, write_evaluation_records

__version__ = "0.1.0"
