import numpy as np
import warnings
import sklearn.metrics
from typing import Dict, List


def confusion_counts(truth: np.ndarray, called: np.ndarray) -> Dict[str, int]:
    """
    TP/FP/TN/FN of significance calls against ground-truth labels.

    Parameters:
        truth (np.ndarray): boolean, True for ground-truth positives (spike-ins).
        called (np.ndarray): boolean, True where the protein was called significant.
    """
    tn, fp, fn, tp = sklearn.metrics.confusion_matrix(
        np.asarray(truth, dtype=bool), np.asarray(called, dtype=bool), labels=[False, True]
    ).ravel()
    return {"TP": int(tp), "FP": int(fp), "TN": int(tn), "FN": int(fn)}


def _ratio(num: float, den: float) -> float:
    return float(num) / float(den) if den > 0 else np.nan


def classification_metrics(tp: int, fp: int, tn: int, fn: int) -> Dict[str, float]:
    """Derived rates; NaN when the denominator is empty."""
    return {
        "accuracy": _ratio(tp + tn, tp + fp + tn + fn),
        "sensitivity": _ratio(tp, tp + fn),
        "specificity": _ratio(tn, tn + fp),
        "PPV": _ratio(tp, tp + fp),
        "NPV": _ratio(tn, tn + fn),
        "FPR": _ratio(fp, fp + tn),
    }


def compute_metrics(mat: np.ndarray, metrics: List[str] = ["CV", "MAD"]) -> Dict[str, np.ndarray]:
    """
    Compute per-protein variability across samples (features x samples).

    Supported metrics: "CV" (std / mean), "MAD" (median absolute deviation),
    "PEV" (variance), "Mean", "Median", "STD".
    """
    result = {}
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=RuntimeWarning)
        means = np.nanmean(mat, axis=1)
        medians = np.nanmedian(mat, axis=1)
        stds = np.nanstd(mat, axis=1, ddof=1)

        if "CV" in metrics:
            result["CV"] = stds / means
        if "MAD" in metrics:
            result["MAD"] = np.nanmedian(np.abs(mat - medians[:, None]), axis=1)
        if "PEV" in metrics:
            result["PEV"] = np.nanvar(mat, axis=1, ddof=1)
        if "Mean" in metrics:
            result["Mean"] = means
        if "Median" in metrics:
            result["Median"] = medians
        if "STD" in metrics:
            result["STD"] = stds

    return result
