"""
Accuracy assessment of classifier predictions on held-out samples.

Provides the confusion matrix, overall accuracy, Cohen's kappa and
per-class recall (producer's accuracy) used to score grid-search
combinations.
"""

import numpy as np
import pandas as pd
from sklearn.metrics import confusion_matrix
from typing import Dict, List, Optional, Sequence

from .config import DISTURBANCE_LABELS, STABLE_LABEL


REPORTED_CLASSES = [STABLE_LABEL] + list(DISTURBANCE_LABELS)


def error_matrix(
    y_true: Sequence[int],
    y_pred: Sequence[int],
    labels: Optional[Sequence[int]] = None
) -> pd.DataFrame:
    """
    Confusion matrix with truth on rows and predictions on columns.

    Parameters
    ----------
    y_true, y_pred : array-like
        Reference and predicted labels
    labels : list, optional
        Class order. Defaults to every label seen in either input.

    Returns
    -------
    pd.DataFrame
        Counts indexed by true label, columns by predicted label
    """
    y_true = np.asarray(y_true, dtype=int)
    y_pred = np.asarray(y_pred, dtype=int)
    if labels is None:
        labels = sorted(set(y_true.tolist()) | set(y_pred.tolist()))
    labels = list(labels)

    if len(labels) == 0:
        return pd.DataFrame(np.zeros((0, 0), dtype=int))

    matrix = confusion_matrix(y_true, y_pred, labels=labels)
    return pd.DataFrame(
        matrix,
        index=pd.Index(labels, name='true'),
        columns=pd.Index(labels, name='predicted'),
    )


def overall_accuracy(matrix: pd.DataFrame) -> float:
    """Fraction of samples on the diagonal."""
    total = matrix.values.sum()
    if total == 0:
        return float('nan')
    return float(np.trace(matrix.values) / total)


def kappa_coefficient(matrix: pd.DataFrame) -> float:
    """
    Cohen's kappa from a square confusion matrix.

    ``(p_o - p_e) / (1 - p_e)`` with the denominator floored at 1e-8.
    """
    counts = matrix.values.astype(np.float64)
    total = counts.sum()
    if total == 0:
        return float('nan')

    p_obs = np.trace(counts) / total
    p_exp = (counts.sum(axis=1) * counts.sum(axis=0)).sum() / (total * total)
    return float((p_obs - p_exp) / max(1 - p_exp, 1e-8))


def producers_accuracy(matrix: pd.DataFrame, classes: Sequence[int]) -> Dict[int, float]:
    """
    Per-class recall: correct predictions over reference samples.

    A class without reference samples has recall NaN.
    """
    result = {}
    for cls in classes:
        if cls not in matrix.index:
            result[cls] = float('nan')
            continue
        row_total = matrix.loc[cls].sum()
        if row_total == 0:
            result[cls] = float('nan')
        else:
            result[cls] = float(matrix.loc[cls, cls] / row_total)
    return result


def consumers_accuracy(matrix: pd.DataFrame, classes: Sequence[int]) -> Dict[int, float]:
    """Per-class precision: correct predictions over predicted samples."""
    result = {}
    for cls in classes:
        if cls not in matrix.columns:
            result[cls] = float('nan')
            continue
        col_total = matrix[cls].sum()
        result[cls] = float('nan') if col_total == 0 else float(matrix.loc[cls, cls] / col_total)
    return result


def compute_classification_metrics(
    y_true: Sequence[int],
    y_pred: Sequence[int],
    classes: Optional[List[int]] = None
) -> Dict:
    """
    Score predictions against reference labels.

    Parameters
    ----------
    y_true, y_pred : array-like
        Reference and predicted labels
    classes : list, optional
        Classes to report recall for. Defaults to 0, 1, 2, 3.

    Returns
    -------
    dict
        ``overall_accuracy``, ``kappa``, ``recall_<c>`` per class and the
        ``confusion_matrix`` DataFrame
    """
    if classes is None:
        classes = REPORTED_CLASSES

    matrix = error_matrix(y_true, y_pred)
    recalls = producers_accuracy(matrix, classes)

    metrics = {
        'overall_accuracy': overall_accuracy(matrix),
        'kappa': kappa_coefficient(matrix),
    }
    for cls in classes:
        metrics[f'recall_{cls}'] = recalls[cls]
    metrics['confusion_matrix'] = matrix

    return metrics
