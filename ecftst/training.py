"""
Region-specific random forest training and hyperparameter grid search.

This module handles:
- Sample preparation: completeness and quality filtering, numeric parsing
- Reproducible train/test splitting per grid combination
- Class rebalancing by oversampling the disturbance classes
- Random forest training and scoring on the held-out pool
- Grid search over target class sizes and forest parameters
- Selection and refit of the best combination

Each combination goes through
RAW_SAMPLES -> FILTERED -> SPLIT -> BALANCED_TRAIN / HELD_OUT_TEST
-> TRAINED_MODEL -> SCORED.
"""

import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from sklearn.ensemble import RandomForestClassifier
from typing import Dict, List, Optional, Sequence, Tuple

from .assembler import SchemaError, resolve_feature_name, validate_feature_names
from .config import (
    DISTURBANCE_LABELS,
    RF_PARAMS_GRID,
    SPLIT_SEED_OFFSET,
    SPLIT_THRESHOLD,
    STABLE_LABEL,
    TARGET_SIZES_GRID,
)
from .parallel import run_tasks
from .validation import REPORTED_CLASSES, compute_classification_metrics


LABEL_COLUMN = 'label'
QUALITY_COLUMN = 'NBR'

RECORD_COLUMNS = [
    'eco_zone', 'iteration',
    'class1_target', 'class2_target', 'class3_target',
    'num_trees', 'min_leaf_pop', 'bag_frac', 'split_var_frac', 'split_vars',
    'overall_accuracy', 'kappa',
    'recall_0', 'recall_1', 'recall_2', 'recall_3',
]


class ClassBalanceError(ValueError):
    """A disturbance class has no training samples to oversample."""

    def __init__(self, label: int, region_id: Optional[int] = None,
                 combination_index: Optional[int] = None):
        self.label = label
        self.region_id = region_id
        self.combination_index = combination_index
        super().__init__(
            f"Region {region_id}, combination {combination_index}: "
            f"class {label} has no training samples"
        )


# ---------------------------------------------------------------------------
# Hyperparameter grid
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HyperparameterCombination:
    """
    One grid point: target sizes for classes 1..3 and forest parameters.

    ``split_var`` is the fraction of features used to derive the number of
    variables tried per split (see ``split_vars``).
    """

    index: int
    target_sizes: Tuple[int, int, int]
    trees: int
    leaf_pop: int
    bag_frac: float
    split_var: float

    @property
    def seed(self) -> int:
        """Seed of the train/test split for this combination."""
        return self.index + SPLIT_SEED_OFFSET

    def split_vars(self, n_features: int) -> int:
        """Variables per split, ``floor(sqrt(n_features * split_var))``, at least 1."""
        return max(1, int(np.floor(np.sqrt(n_features * self.split_var))))


def build_parameter_grid(
    target_sizes_grid: Optional[Sequence[Sequence[int]]] = None,
    rf_params_grid: Optional[Sequence[Dict]] = None
) -> List[HyperparameterCombination]:
    """
    Enumerate the Cartesian product of target sizes and forest parameters.

    Target sizes form the outer loop, so combination ``k`` uses target
    sizes ``k // len(rf_params_grid)``.
    """
    if target_sizes_grid is None:
        target_sizes_grid = TARGET_SIZES_GRID
    if rf_params_grid is None:
        rf_params_grid = RF_PARAMS_GRID

    combinations = []
    for sizes in target_sizes_grid:
        if len(sizes) != len(DISTURBANCE_LABELS):
            raise ValueError(
                f"Expected {len(DISTURBANCE_LABELS)} target sizes, got {list(sizes)}"
            )
        for params in rf_params_grid:
            combinations.append(HyperparameterCombination(
                index=len(combinations),
                target_sizes=tuple(int(s) for s in sizes),
                trees=int(params['trees']),
                leaf_pop=int(params['leaf_pop']),
                bag_frac=float(params['bag_frac']),
                split_var=float(params['split_var']),
            ))
    return combinations


# ---------------------------------------------------------------------------
# Sample preparation
# ---------------------------------------------------------------------------

def parse_numeric(series: pd.Series) -> pd.Series:
    """Coerce to float; empty or malformed strings become 0."""
    if pd.api.types.is_numeric_dtype(series):
        return series.astype(np.float64)
    stripped = series.astype(str).str.strip()
    return pd.to_numeric(stripped, errors='coerce').fillna(0.0).astype(np.float64)


def prepare_samples(
    samples: pd.DataFrame,
    feature_names: Sequence[str],
    label_column: str = LABEL_COLUMN,
    quality_column: Optional[str] = QUALITY_COLUMN
) -> pd.DataFrame:
    """
    Filter and parse a sample library for training.

    Samples with a null label or a null value in any required feature are
    dropped, the remaining values are parsed to numbers, and samples whose
    quality band is zero or non-finite are dropped.

    Parameters
    ----------
    samples : pd.DataFrame
        Sample library, one row per point; column names may use the
        truncated or abbreviated legacy forms
    feature_names : list
        Region feature subset
    label_column : str
        Column holding the class label
    quality_column : str, optional
        Band used for the quality filter. None disables it.

    Returns
    -------
    pd.DataFrame
        Canonical feature columns (float) and an integer label column
    """
    names = validate_feature_names(feature_names)

    renamed = {}
    for col in samples.columns:
        canonical = resolve_feature_name(col)
        if canonical != col and canonical not in samples.columns:
            renamed[col] = canonical
    table = samples.rename(columns=renamed)

    quality = resolve_feature_name(quality_column) if quality_column else None
    required = list(names) + [label_column]
    if quality is not None and quality not in required:
        required.append(quality)

    absent = [c for c in required if c not in table.columns]
    if absent:
        raise SchemaError(f"Sample library lacks column(s) {absent}")

    table = table[required]

    complete = ~table[list(names) + [label_column]].isna().any(axis=1)
    table = table[complete]

    parsed = pd.DataFrame(
        {c: parse_numeric(table[c]) for c in required},
        index=table.index,
    )
    parsed[label_column] = parsed[label_column].astype(int)

    if quality is not None:
        q = parsed[quality]
        parsed = parsed[np.isfinite(q) & (q != 0)]

    return parsed[list(names) + [label_column]].reset_index(drop=True)


def split_samples(
    samples: pd.DataFrame,
    seed: int,
    threshold: float = SPLIT_THRESHOLD
) -> Tuple[pd.DataFrame, pd.DataFrame, np.random.Generator]:
    """
    Split samples into training and test pools.

    Each sample draws a uniform fraction from a generator seeded with
    ``seed``; fractions below ``threshold`` go to training.

    Returns
    -------
    tuple
        (train, test, rng) where ``rng`` continues the split's stream
    """
    rng = np.random.default_rng(seed)
    fraction = rng.random(len(samples))
    train = samples[fraction < threshold]
    test = samples[fraction >= threshold]
    return train, test, rng


def oversample_class(
    class_samples: pd.DataFrame,
    target_size: int,
    rng: np.random.Generator
) -> pd.DataFrame:
    """
    Duplicate samples of one class up to a target size.

    With ``multiplier = target_size / observed`` greater than 1, the class
    is grown to exactly ``round(multiplier * observed)`` rows using whole
    shuffled passes over the class followed by a random subset. Otherwise
    the class is returned unchanged.
    """
    observed = len(class_samples)
    if observed == 0:
        raise ValueError("Cannot oversample an empty class")

    multiplier = target_size / observed
    if multiplier <= 1:
        return class_samples

    total = int(np.floor(multiplier * observed + 0.5))
    extra = total - observed
    n_passes, remainder = divmod(extra, observed)

    picks = [rng.permutation(observed) for _ in range(n_passes)]
    if remainder > 0:
        picks.append(rng.choice(observed, size=remainder, replace=False))

    duplicates = class_samples.iloc[np.concatenate(picks)]
    return pd.concat([class_samples, duplicates], ignore_index=True)


def balance_training_set(
    train: pd.DataFrame,
    target_sizes: Sequence[int],
    rng: np.random.Generator,
    label_column: str = LABEL_COLUMN,
    region_id: Optional[int] = None,
    combination_index: Optional[int] = None
) -> pd.DataFrame:
    """
    Stable samples unchanged plus each disturbance class oversampled.

    Raises
    ------
    ClassBalanceError
        If a disturbance class has no training samples.
    """
    parts = [train[train[label_column] == STABLE_LABEL]]
    for label, target in zip(DISTURBANCE_LABELS, target_sizes):
        class_samples = train[train[label_column] == label]
        if len(class_samples) == 0:
            raise ClassBalanceError(label, region_id, combination_index)
        parts.append(oversample_class(class_samples, target, rng))
    return pd.concat(parts, ignore_index=True)


# ---------------------------------------------------------------------------
# Training and scoring
# ---------------------------------------------------------------------------

def train_classifier(
    train: pd.DataFrame,
    feature_names: Sequence[str],
    combination: HyperparameterCombination,
    label_column: str = LABEL_COLUMN,
    random_state: Optional[int] = None
) -> RandomForestClassifier:
    """
    Fit a random forest with the combination's parameters.

    The bag fraction is the bootstrap sample fraction; variables per split
    follow ``HyperparameterCombination.split_vars``.
    """
    n_features = len(feature_names)
    if random_state is None:
        random_state = combination.seed

    model = RandomForestClassifier(
        n_estimators=combination.trees,
        min_samples_leaf=combination.leaf_pop,
        max_features=min(combination.split_vars(n_features), n_features),
        bootstrap=True,
        max_samples=combination.bag_frac,
        random_state=random_state,
        n_jobs=1,
    )
    model.fit(
        train[list(feature_names)].to_numpy(dtype=np.float64),
        train[label_column].to_numpy(dtype=int),
    )
    return model


def evaluate_combination(
    samples: pd.DataFrame,
    feature_names: Sequence[str],
    combination: HyperparameterCombination,
    region_id: int,
    label_column: str = LABEL_COLUMN
) -> Dict:
    """
    Split, balance, train and score one combination.

    Parameters
    ----------
    samples : pd.DataFrame
        Prepared samples (see ``prepare_samples``)
    feature_names : list
        Canonical feature names
    combination : HyperparameterCombination
        Grid point to evaluate
    region_id : int
        Region the samples belong to

    Returns
    -------
    dict
        Evaluation record with the ``RECORD_COLUMNS`` fields
    """
    train, test, rng = split_samples(samples, combination.seed)
    balanced = balance_training_set(
        train, combination.target_sizes, rng, label_column,
        region_id=region_id, combination_index=combination.index,
    )
    model = train_classifier(balanced, feature_names, combination, label_column)

    if len(test) > 0:
        predicted = model.predict(test[list(feature_names)].to_numpy(dtype=np.float64))
    else:
        predicted = np.empty(0, dtype=int)
    metrics = compute_classification_metrics(test[label_column].to_numpy(dtype=int), predicted)

    record = {
        'eco_zone': region_id,
        'iteration': combination.index,
        'class1_target': combination.target_sizes[0],
        'class2_target': combination.target_sizes[1],
        'class3_target': combination.target_sizes[2],
        'num_trees': combination.trees,
        'min_leaf_pop': combination.leaf_pop,
        'bag_frac': combination.bag_frac,
        'split_var_frac': combination.split_var,
        'split_vars': combination.split_vars(len(feature_names)),
        'overall_accuracy': metrics['overall_accuracy'],
        'kappa': metrics['kappa'],
    }
    for cls in REPORTED_CLASSES:
        record[f'recall_{cls}'] = metrics[f'recall_{cls}']
    return record


# ---------------------------------------------------------------------------
# Grid search
# ---------------------------------------------------------------------------

@dataclass
class GridSearchResult:
    """Evaluation records of the successful combinations and the failures."""

    region_id: int
    records: pd.DataFrame
    failures: List[Dict] = field(default_factory=list)

    @property
    def n_failed(self) -> int:
        return len(self.failures)


def _evaluate_safely(samples, feature_names, combination, region_id, label_column):
    try:
        return evaluate_combination(samples, feature_names, combination, region_id, label_column), None
    except Exception as e:
        return None, {
            'region_id': region_id,
            'combination_index': combination.index,
            'error': e,
            'message': str(e),
        }


def run_grid_search(
    samples: pd.DataFrame,
    feature_names: Sequence[str],
    region_id: int,
    combinations: Optional[Sequence[HyperparameterCombination]] = None,
    label_column: str = LABEL_COLUMN,
    quality_column: Optional[str] = QUALITY_COLUMN,
    parallel: bool = True,
    strict: bool = False,
    verbose: bool = True
) -> GridSearchResult:
    """
    Evaluate every combination of the grid for one region.

    Samples are prepared once and shared read-only by all combinations.
    A failing combination is reported without stopping the others.

    Parameters
    ----------
    samples : pd.DataFrame
        Raw sample library of the region
    feature_names : list
        Region feature subset (canonical or legacy names)
    region_id : int
        Region identifier written to each record
    combinations : list, optional
        Grid to evaluate. Defaults to the 81-point ``build_parameter_grid()``.
    label_column, quality_column : str
        See ``prepare_samples``
    parallel : bool
        Whether to use Dask parallelism
    strict : bool
        Re-raise the first failure once every combination has finished
    verbose : bool
        Print progress and a summary

    Returns
    -------
    GridSearchResult
        Records sorted by iteration, plus failure reports
    """
    if combinations is None:
        combinations = build_parameter_grid()

    names = validate_feature_names(feature_names)
    prepared = prepare_samples(samples, names, label_column, quality_column)

    if verbose:
        print(f"Region {region_id}: {len(prepared)} usable samples, "
              f"{len(combinations)} combinations")
        counts = prepared[label_column].value_counts().sort_index()
        print("  Class counts: " + ", ".join(f"{k}={v}" for k, v in counts.items()))

    outcomes = run_tasks(
        _evaluate_safely,
        [(prepared, names, c, region_id, label_column) for c in combinations],
        parallel=parallel,
        desc=f"Grid search (region {region_id})",
        show_progress=verbose,
    )

    records = [r for r, _ in outcomes if r is not None]
    failures = [f for _, f in outcomes if f is not None]

    if verbose:
        print(f"Evaluated {len(records)}/{len(combinations)} combinations")
        for f in failures:
            print(f"  ERROR combination {f['combination_index']}: {f['message']}")

    if strict and failures:
        raise failures[0]['error']

    table = pd.DataFrame(records, columns=RECORD_COLUMNS)
    table = table.sort_values('iteration').reset_index(drop=True)
    return GridSearchResult(region_id=region_id, records=table, failures=failures)


# ---------------------------------------------------------------------------
# Model selection
# ---------------------------------------------------------------------------

def select_best_combination(records: pd.DataFrame, metric: str = 'kappa') -> pd.Series:
    """
    Best evaluation record by ``metric``.

    Ties are broken by overall accuracy, then by the lowest iteration.
    Records with a missing metric are ignored.
    """
    if metric not in records.columns:
        raise KeyError(f"Unknown metric {metric!r}")

    scored = records[np.isfinite(records[metric].astype(float))]
    if len(scored) == 0:
        raise ValueError(f"No evaluation record has a finite {metric}")

    ranked = scored.sort_values(
        [metric, 'overall_accuracy', 'iteration'],
        ascending=[False, False, True],
    )
    return ranked.iloc[0]


def combination_from_record(record: pd.Series) -> HyperparameterCombination:
    """Rebuild the grid point an evaluation record was produced from."""
    return HyperparameterCombination(
        index=int(record['iteration']),
        target_sizes=(
            int(record['class1_target']),
            int(record['class2_target']),
            int(record['class3_target']),
        ),
        trees=int(record['num_trees']),
        leaf_pop=int(record['min_leaf_pop']),
        bag_frac=float(record['bag_frac']),
        split_var=float(record['split_var_frac']),
    )


def train_final_model(
    samples: pd.DataFrame,
    feature_names: Sequence[str],
    combination: HyperparameterCombination,
    region_id: int,
    label_column: str = LABEL_COLUMN,
    quality_column: Optional[str] = QUALITY_COLUMN,
    use_all_samples: bool = False
) -> RandomForestClassifier:
    """
    Refit the selected combination for mapping.

    By default the model is rebuilt on the same balanced training pool it
    was scored on, which reproduces the evaluated forest exactly. With
    ``use_all_samples`` every prepared sample is balanced and used.
    """
    names = validate_feature_names(feature_names)
    prepared = prepare_samples(samples, names, label_column, quality_column)

    if use_all_samples:
        train = prepared
        rng = np.random.default_rng(combination.seed)
    else:
        train, _, rng = split_samples(prepared, combination.seed)

    balanced = balance_training_set(
        train, combination.target_sizes, rng, label_column,
        region_id=region_id, combination_index=combination.index,
    )
    return train_classifier(balanced, names, combination, label_column)
