"""Tests for ground-truth scoring of pipeline variants."""

import numpy as np
import polars as pl
import pytest

from isoflux.analysis.testresult import TestResult
from isoflux.dataset.pipelinerun import PipelineConfig, PipelineRun
from isoflux.dataset.quanttable import QuantTable
from isoflux.evaluation.evaluation_utils import classification_metrics, compute_metrics, confusion_counts
from isoflux.evaluation.harness import EvaluationHarness, GroundTruth

PROTEINS = ["S1_UPS", "S2_UPS", "S3_UPS", "B1", "B2", "B3", "B4", "B5"]
Q = [0.01, 0.02, 0.5, 0.03, 0.9, np.nan, 0.2, 0.6]
LOGFC = [1.1, 0.9, 0.4, 0.3, -0.1, np.nan, 0.2, 0.0]


def _result(q=Q, logfc=LOGFC, method="moderated_t", unstable=None):
    n = len(PROTEINS)
    return TestResult.from_matrices(
        PROTEINS,
        ["B_vs_A"],
        logfc=np.asarray(logfc, dtype=float),
        statistic=np.zeros(n),
        p_value=np.asarray(q, dtype=float),
        q_value=np.asarray(q, dtype=float),
        unstable=unstable,
        method=method,
    )


def _run(name, result=None, status="ok", error=None, proteins=None):
    return PipelineRun(
        config=PipelineConfig(name=name), input=None, proteins=proteins,
        result=result, status=status, error=error,
    )


@pytest.fixture
def truth():
    return GroundTruth.from_pattern(PROTEINS, r"_UPS$")


class TestGroundTruth:
    def test_from_pattern(self, truth):
        assert truth == {"S1_UPS", "S2_UPS", "S3_UPS"}
        assert truth.labels(["B1", "S2_UPS"]).tolist() == [False, True]

    def test_plain_iterable(self):
        harness = EvaluationHarness(["S1_UPS"])
        assert isinstance(harness.ground_truth, GroundTruth)


class TestConfusion:
    """Calls at q < threshold against the spike-in set."""

    def test_counts(self, truth):
        row = EvaluationHarness(truth).confusion(_result()).row(0, named=True)
        assert (row["TP"], row["FP"], row["TN"], row["FN"]) == (2, 1, 4, 1)
        assert row["sensitivity"] == pytest.approx(2 / 3)
        assert row["specificity"] == pytest.approx(4 / 5)
        assert row["PPV"] == pytest.approx(2 / 3)
        assert row["FPR"] == pytest.approx(1 / 5)
        assert row["n_tested"] == 7
        assert row["variant"] == "moderated_t"
        assert row["contrast"] == "B_vs_A"

    def test_threshold(self, truth):
        row = EvaluationHarness(truth, threshold=0.015).confusion(_result(), name="strict").row(0, named=True)
        assert (row["TP"], row["FP"]) == (1, 0)
        assert row["variant"] == "strict"

    def test_invalid_threshold(self, truth):
        with pytest.raises(ValueError):
            EvaluationHarness(truth, threshold=1.5)

    def test_unstable_counted(self, truth):
        unstable = np.zeros(len(PROTEINS), dtype=bool)
        unstable[4] = True
        row = EvaluationHarness(truth).confusion(_result(unstable=unstable)).row(0, named=True)
        assert row["n_unstable"] == 1


class TestScore:
    def test_failed_runs_are_kept(self, truth):
        runs = [_run("good", _result()), _run("bad", status="failed", error="Raking did not converge [run1]")]
        scores = EvaluationHarness(truth).score(runs)
        assert scores.columns[:3] == ["variant", "status", "contrast"]
        assert scores.get_column("variant").to_list() == ["good", "bad"]
        bad = scores.filter(pl.col("variant") == "bad").row(0, named=True)
        assert bad["status"] == "failed"
        assert bad["TP"] is None
        assert "converge" in bad["error"]

    def test_only_failed(self, truth):
        scores = EvaluationHarness(truth).score([_run("bad", status="failed", error="x")])
        assert scores.height == 1
        assert scores.get_column("contrast").null_count() == 1

    def test_empty(self, truth):
        assert EvaluationHarness(truth).score([]).is_empty()


class TestCorrelations:
    """Pairwise agreement between variants."""

    def test_identical_results(self, truth):
        runs = [_run("a", _result()), _run("b", _result())]
        corr = EvaluationHarness(truth).correlations(runs)
        row = corr.row(0, named=True)
        assert (row["variant_a"], row["variant_b"]) == ("a", "b")
        assert row["n"] == 7
        assert row["r"] == pytest.approx(1.0)

    def test_spike_in_only_spearman(self, truth):
        reversed_fc = [0.4, 0.9, 1.1] + LOGFC[3:]
        runs = [_run("a", _result()), _run("b", _result(logfc=reversed_fc))]
        corr = EvaluationHarness(truth).correlations(runs, method="spearman", spike_in_only=True)
        row = corr.row(0, named=True)
        assert row["n"] == 3
        assert row["r"] == pytest.approx(-1.0)

    def test_too_few_points(self, truth):
        q = [0.01, np.nan, np.nan, np.nan, np.nan, np.nan, np.nan, 0.5]
        runs = [_run("a", _result(q=q)), _run("b", _result(q=q))]
        corr = EvaluationHarness(truth).correlations(runs, field="q_value")
        assert corr.get_column("n").item() == 2
        assert np.isnan(corr.get_column("r").item())

    def test_failed_runs_skipped(self, truth):
        runs = [_run("a", _result()), _run("b", status="failed"), _run("c", _result())]
        corr = EvaluationHarness(truth).correlations(runs)
        assert corr.height == 1

    def test_invalid_arguments(self, truth):
        harness = EvaluationHarness(truth)
        with pytest.raises(ValueError):
            harness.correlations([], field="p_value")
        with pytest.raises(ValueError):
            harness.correlations([], method="kendall")


class TestMetrics:
    def test_confusion_counts(self):
        counts = confusion_counts(np.array([True, True, False, False]), np.array([True, False, True, False]))
        assert counts == {"TP": 1, "FP": 1, "TN": 1, "FN": 1}

    def test_undefined_rates(self):
        metrics = classification_metrics(0, 0, 5, 0)
        assert np.isnan(metrics["sensitivity"])
        assert np.isnan(metrics["PPV"])
        assert metrics["specificity"] == 1.0

    def test_compute_metrics(self):
        mat = np.array([[1.0, 2.0, 3.0], [2.0, 2.0, np.nan]])
        out = compute_metrics(mat, ["CV", "MAD", "PEV", "Mean"])
        assert out["Mean"] == pytest.approx([2.0, 2.0])
        assert out["MAD"] == pytest.approx([1.0, 0.0])
        assert out["PEV"] == pytest.approx([1.0, 0.0])
        assert out["CV"][0] == pytest.approx(0.5)

    def test_variability(self, protein_frame):
        table = QuantTable(protein_frame, level="protein")
        runs = [_run("a", _result(), proteins=table), _run("b", status="failed")]
        out = EvaluationHarness.variability(runs)
        assert out.get_column("variant").to_list() == ["a"]
        assert set(out.columns) == {"variant", "median_MAD", "median_PEV"}
