"""Score pipeline variants against spiked-in ground truth."""

import itertools
import re
from typing import Iterable, List, Optional, Sequence

import numpy as np
import polars as pl
from scipy.stats import pearsonr, spearmanr
from tqdm import tqdm

from isoflux.analysis.testresult import COL_LOGFC, COL_PROTEIN, COL_Q, COL_UNSTABLE, TestResult
from isoflux.dataset.pipelinerun import PipelineRun, RunLike
from isoflux.evaluation.evaluation_utils import classification_metrics, compute_metrics, confusion_counts
from isoflux.utils.utils import log_info, log_time, log_warning

METRIC_COLUMNS = ["TP", "FP", "TN", "FN", "accuracy", "sensitivity", "specificity", "PPV", "NPV", "FPR"]


class GroundTruth(frozenset):
    """Set of spike-in protein identifiers; every other protein is background."""

    @classmethod
    def from_pattern(cls, proteins: Iterable[str], pattern: str) -> "GroundTruth":
        regex = re.compile(pattern)
        return cls(p for p in proteins if regex.search(str(p)))

    def labels(self, proteins: Sequence[str]) -> np.ndarray:
        return np.array([p in self for p in proteins], dtype=bool)

    def __repr__(self) -> str:
        return f"GroundTruth(n={len(self)})"


def _unpack(run: RunLike, name: Optional[str] = None):
    if isinstance(run, PipelineRun):
        return run.name, run.result
    return name or run.method, run


class EvaluationHarness:
    """
    Confusion-matrix and agreement metrics for a set of pipeline runs.

    A protein is called significant in a contrast when q < `threshold`;
    proteins with a missing q-value are never called.
    """

    def __init__(self, ground_truth: Iterable[str], threshold: float = 0.05):
        self.ground_truth = ground_truth if isinstance(ground_truth, GroundTruth) else GroundTruth(ground_truth)
        if not 0 < threshold < 1:
            raise ValueError(f"threshold must lie in (0, 1), got {threshold}")
        self.threshold = float(threshold)
        if not self.ground_truth:
            log_warning("Ground truth is empty: sensitivity and PPV will be undefined.")

    def confusion(self, run: RunLike, name: Optional[str] = None) -> pl.DataFrame:
        """One row per contrast: TP/FP/TN/FN and derived rates."""
        variant, result = _unpack(run, name)
        rows = []
        for contrast in result.contrasts:
            frame = result.for_contrast(contrast)
            proteins = frame.get_column(COL_PROTEIN).to_list()
            q = frame.get_column(COL_Q).to_numpy()
            called = np.isfinite(q) & (q < self.threshold)
            counts = confusion_counts(self.ground_truth.labels(proteins), called)
            rows.append({
                "variant": variant,
                "contrast": contrast,
                **counts,
                **classification_metrics(counts["TP"], counts["FP"], counts["TN"], counts["FN"]),
                "n_tested": int(np.isfinite(q).sum()),
                "n_unstable": int(frame.get_column(COL_UNSTABLE).sum()),
            })
        return pl.DataFrame(rows)

    @log_time("Scoring variants")
    def score(self, runs: Sequence[PipelineRun]) -> pl.DataFrame:
        """Metrics for every run × contrast; failed runs keep one row with their error."""
        frames = []
        for run in tqdm(runs, leave=False, desc="score"):
            if run.ok:
                frames.append(
                    self.confusion(run).with_columns(
                        pl.lit("ok").alias("status"), pl.lit(None, dtype=pl.Utf8).alias("error")
                    )
                )
            else:
                log_info(f"{run.name}: {run.status} ({run.error})")
                frames.append(pl.DataFrame({
                    "variant": [run.name], "status": [run.status], "contrast": [None], "error": [run.error],
                }, schema={"variant": pl.Utf8, "status": pl.Utf8, "contrast": pl.Utf8, "error": pl.Utf8}))
        if not frames:
            return pl.DataFrame()
        out = pl.concat(frames, how="diagonal_relaxed")
        first = ["variant", "status", "contrast"]
        return out.select(first + [c for c in out.columns if c not in first])

    def correlations(
        self,
        runs: Sequence[RunLike],
        field: str = "logFC",
        method: str = "pearson",
        spike_in_only: bool = False,
    ) -> pl.DataFrame:
        """
        Pairwise agreement of `field` (logFC or q_value) between variants,
        per shared contrast, over proteins finite in both.
        """
        columns = {"logFC": COL_LOGFC, "q_value": COL_Q}
        if field not in columns:
            raise ValueError(f"Invalid field: {field}. Options: {list(columns)}")
        if method not in ("pearson", "spearman"):
            raise ValueError(f"Invalid correlation method: {method}. Options: pearson, spearman")
        corr = pearsonr if method == "pearson" else spearmanr

        results = [_unpack(r) for r in runs if not isinstance(r, PipelineRun) or r.ok]
        rows = []
        for (name_a, res_a), (name_b, res_b) in itertools.combinations(results, 2):
            for contrast in [c for c in res_a.contrasts if c in res_b.contrasts]:
                joined = self._pair(res_a, res_b, contrast, columns[field], spike_in_only)
                a, b = joined["a"].to_numpy(), joined["b"].to_numpy()
                ok = np.isfinite(a) & np.isfinite(b)
                r = np.nan
                if ok.sum() >= 3 and np.std(a[ok]) > 0 and np.std(b[ok]) > 0:
                    r = float(corr(a[ok], b[ok])[0])
                rows.append({
                    "variant_a": name_a, "variant_b": name_b, "contrast": contrast,
                    "field": field, "method": method, "n": int(ok.sum()), "r": r,
                })
        return pl.DataFrame(rows, schema={
            "variant_a": pl.Utf8, "variant_b": pl.Utf8, "contrast": pl.Utf8, "field": pl.Utf8,
            "method": pl.Utf8, "n": pl.Int64, "r": pl.Float64,
        })

    def _pair(self, res_a: TestResult, res_b: TestResult, contrast: str, column: str, spike_in_only: bool) -> pl.DataFrame:
        a = res_a.for_contrast(contrast).select(COL_PROTEIN, pl.col(column).alias("a"))
        b = res_b.for_contrast(contrast).select(COL_PROTEIN, pl.col(column).alias("b"))
        joined = a.join(b, on=COL_PROTEIN, how="inner")
        if spike_in_only:
            joined = joined.filter(pl.col(COL_PROTEIN).is_in(list(self.ground_truth)))
        return joined

    @staticmethod
    def variability(runs: Sequence[PipelineRun], metrics: List[str] = ["MAD", "PEV"]) -> pl.DataFrame:
        """Median per-protein variability of each run's summarized protein matrix."""
        rows = []
        for run in runs:
            if not run.ok or run.proteins is None:
                continue
            stats = compute_metrics(run.proteins.wide_matrix().values, metrics)
            rows.append({"variant": run.name, **{f"median_{k}": float(np.nanmedian(v)) for k, v in stats.items()}})
        return pl.DataFrame(rows)
