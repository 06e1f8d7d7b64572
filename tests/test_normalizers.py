"""Tests for the normalization strategies."""

import numpy as np
import polars as pl
import pytest

from isoflux.analysis.moderated_ttest import ModeratedTTest
from isoflux.analysis.testresult import COL_LOGFC, COL_PROTEIN, COL_Q
from isoflux.dataset.matrices import NormalizedMatrix
from isoflux.dataset.quanttable import QuantTable
from isoflux.utils.errors import ConvergenceError, ScaleMismatchError, ValidationError
from isoflux.utils.semantics import SAMPLE, SIGNAL
from isoflux.utils.unit_scale import UnitScale
from isoflux.workflow.normalizer_factory import get_normalizer, get_normalizers
from isoflux.workflow.normalizers.base import IdentityNormalizer
from isoflux.workflow.normalizers.mean_sweep import MeanSweepNormalizer
from isoflux.workflow.normalizers.median_sweep import MedianSweepNormalizer, median_sweep
from isoflux.workflow.normalizers.mixed_model_residual import MixedModelResidualNormalizer
from isoflux.workflow.normalizers.quantile import QuantileNormalizer, quantile_normalize
from isoflux.workflow.normalizers.raking import RakingNormalizer, rake
from isoflux.workflow.summarizer_factory import get_summarizer


def _positive_matrix(seed=0, shape=(30, 6)):
    rng = np.random.default_rng(seed)
    return rng.lognormal(mean=10, sigma=1, size=shape)


class TestRaking:
    """Iterative proportional fitting."""

    def test_margins_converge_to_one(self):
        K, n_iter, deviation = rake(_positive_matrix(), tol=1e-6, max_iter=500)

        assert deviation < 1e-6
        assert np.allclose(np.nanmean(K, axis=1), 1.0, atol=1e-6)
        assert np.allclose(np.nanmean(K, axis=0), 1.0, atol=1e-6)
        assert n_iter >= 1

    def test_idempotent(self):
        K, _, _ = rake(_positive_matrix(1), tol=1e-7, max_iter=500)
        K2, n_iter, _ = rake(K, tol=1e-5)

        assert n_iter == 0
        assert np.max(np.abs(K2 - K)) < 1e-5

    def test_missing_values_ignored(self):
        mat = _positive_matrix(2)
        mat[0, 1] = np.nan
        mat[5, :] = np.nan

        K, _, _ = rake(mat, tol=1e-6, max_iter=500)

        assert np.isnan(K[0, 1])
        assert np.all(np.isnan(K[5]))
        observed_rows = np.delete(K, 5, axis=0)
        assert np.allclose(np.nanmean(observed_rows, axis=1), 1.0, atol=1e-5)

    def test_rejects_non_positive(self):
        mat = _positive_matrix()
        mat[3, 2] = 0.0
        with pytest.raises(ValidationError):
            rake(mat)

    def test_non_convergence_names_the_run(self):
        with pytest.raises(ConvergenceError) as exc:
            rake(_positive_matrix(3), tol=1e-12, max_iter=1, label="run7")
        assert exc.value.unit == "run7"
        assert "run7" in str(exc.value)

    def test_table_margins_per_run(self, intensity_table):
        out = RakingNormalizer(tol=1e-6, max_iter=500).apply(intensity_table)

        assert out.scale is UnitScale.INTENSITY
        for mat in out.run_matrices():
            assert np.allclose(np.nanmean(mat.values, axis=0), 1.0, atol=1e-5)
            assert np.allclose(np.nanmean(mat.values, axis=1), 1.0, atol=1e-5)

    def test_rejects_log2(self, psm_table):
        with pytest.raises(ScaleMismatchError):
            RakingNormalizer().apply(psm_table)


class TestMedianSweep:
    """Row/column median centering."""

    def test_both_axes_additive(self):
        rng = np.random.default_rng(4)
        mat = rng.normal(20, 2, size=(25, 7))

        K, _, converged = median_sweep(mat, operator="subtract", axis="both", tol=1e-10, max_iter=100)

        assert converged
        assert np.allclose(np.nanmedian(K, axis=1), 0.0, atol=1e-8)
        assert np.allclose(np.nanmedian(K, axis=0), 0.0, atol=1e-8)

    def test_both_axes_multiplicative(self):
        mat = _positive_matrix(5, shape=(21, 5))

        K, _, converged = median_sweep(mat, operator="divide", axis="both", tol=1e-10, max_iter=100)

        assert converged
        assert np.allclose(np.nanmedian(K, axis=1), 1.0, atol=1e-8)
        assert np.allclose(np.nanmedian(K, axis=0), 1.0, atol=1e-8)

    def test_idempotent(self):
        rng = np.random.default_rng(6)
        K, _, _ = median_sweep(rng.normal(0, 1, (15, 7)), axis="both", tol=1e-12, max_iter=200)
        K2, _, _ = median_sweep(K, axis="both")
        assert np.allclose(K, K2, atol=1e-8)

    def test_all_missing_row_stays_missing(self):
        mat = np.array([[1.0, 2.0, 3.0], [np.nan, np.nan, np.nan], [4.0, 5.0, 9.0]])
        K, _, _ = median_sweep(mat, axis="rows")
        assert np.all(np.isnan(K[1]))
        assert np.allclose(K[0], [-1.0, 0.0, 1.0])

    def test_operator_scale_mismatch(self, psm_table, intensity_table):
        with pytest.raises(ScaleMismatchError):
            MedianSweepNormalizer(operator="divide").apply(psm_table)
        with pytest.raises(ScaleMismatchError):
            MedianSweepNormalizer(operator="subtract").apply(intensity_table)

    def test_operator_inferred_from_scale(self, intensity_table):
        out = MedianSweepNormalizer(axis="rows").apply(intensity_table)
        for mat in out.run_matrices():
            assert np.allclose(np.nanmedian(mat.values, axis=1), 1.0)

    def test_row_sweep_is_per_run(self, psm_table):
        out = MedianSweepNormalizer(axis="rows", n_jobs=2).apply(psm_table)
        for mat in out.run_matrices():
            assert np.allclose(np.nanmedian(mat.values, axis=1), 0.0)
        assert len(out) == len(psm_table)

    def test_invalid_axis(self):
        with pytest.raises(ValueError):
            MedianSweepNormalizer(axis="diagonal")


class TestQuantile:
    """Quantile normalization."""

    def test_identical_sorted_columns(self):
        rng = np.random.default_rng(8)
        mat = rng.normal(0, 1, (40, 4)) + np.array([0.0, 1.0, -2.0, 0.5])

        K = quantile_normalize(mat)

        sorted_cols = np.sort(K, axis=0)
        for j in range(1, K.shape[1]):
            assert np.allclose(sorted_cols[:, j], sorted_cols[:, 0])

    def test_ties_share_mean_quantile(self):
        mat = np.array([[1.0, 10.0], [1.0, 20.0], [3.0, 30.0]])
        K = quantile_normalize(mat)
        assert K[0, 0] == pytest.approx(K[1, 0])
        assert K[0, 0] == pytest.approx((K[0, 1] + K[1, 1]) / 2)

    def test_missing_kept_missing(self):
        rng = np.random.default_rng(9)
        mat = rng.normal(0, 1, (20, 3))
        mat[4, 1] = np.nan
        K = quantile_normalize(mat)
        assert np.isnan(K[4, 1])
        assert np.isfinite(np.delete(K, 4, axis=0)).all()

    def test_grand_average_rescale(self, psm_table):
        out = QuantileNormalizer(grand_average=15.0).apply(psm_table)
        for mat in out.run_matrices():
            assert np.nanmean(mat.values) == pytest.approx(15.0)

    def test_global_scope_spans_runs(self, protein_frame):
        table = QuantTable(protein_frame, level="protein")
        out = QuantileNormalizer(scope="global").apply(table)
        sorted_cols = np.sort(out.wide_matrix().values, axis=0)
        assert sorted_cols.shape[1] == 8
        for j in range(1, 8):
            assert np.allclose(sorted_cols[:, j], sorted_cols[:, 0])

    def test_invalid_grand_average(self):
        with pytest.raises(ValueError):
            QuantileNormalizer(grand_average="median")


class TestMeanSweep:
    """ANOVA-style sequential mean subtraction."""

    def test_channel_means_zero(self, psm_table):
        out = MeanSweepNormalizer().apply(psm_table)
        for mat in out.run_matrices():
            assert np.allclose(np.nanmean(mat.values, axis=0), 0.0, atol=1e-10)

    def test_feature_effect(self, psm_table):
        out = MeanSweepNormalizer(remove_feature_effect=True).apply(psm_table)
        for mat in out.run_matrices():
            assert np.allclose(np.nanmean(mat.values, axis=1), 0.0, atol=1e-10)

    def test_log2_only(self, intensity_table):
        with pytest.raises(ScaleMismatchError):
            MeanSweepNormalizer().apply(intensity_table)


class TestMixedModelResidual:
    """REML residual normalization."""

    def test_non_converged_fit_is_an_error(self, psm_table, monkeypatch):
        class _Result:
            converged = False

        monkeypatch.setattr(
            "statsmodels.regression.mixed_linear_model.MixedLM.fit",
            lambda self, *args, **kwargs: _Result(),
        )
        with pytest.raises(ConvergenceError):
            MixedModelResidualNormalizer().apply(psm_table)

    @pytest.mark.parametrize("grouping", ["protein", "peptide"])
    def test_residuals_are_observed_minus_fitted(self, psm_table, grouping):
        norm = MixedModelResidualNormalizer(grouping=grouping)
        frame, result = norm.fit(psm_table)
        assert result.converged

        key = psm_table.feature_key
        expected = frame.assign(EXPECTED=frame[SIGNAL].to_numpy() - np.asarray(result.fittedvalues))
        out = norm.apply(psm_table).df.drop_nulls(SIGNAL).to_pandas()
        merged = out.merge(expected[[key, SAMPLE, "EXPECTED"]], on=[key, SAMPLE])
        assert len(merged) == len(frame) == len(out)
        assert np.allclose(merged[SIGNAL], merged["EXPECTED"], atol=1e-6)
        assert abs(merged[SIGNAL].mean()) < 0.05

    def test_missing_cells_stay_missing(self, psm_table):
        out = MixedModelResidualNormalizer().apply(psm_table)
        n_missing = 0
        for before, after in zip(psm_table.run_matrices(), out.run_matrices()):
            assert after.features == before.features
            assert np.array_equal(np.isnan(before.values), np.isnan(after.values))
            n_missing += int(np.isnan(before.values).sum())
        assert n_missing > 0

    def test_spike_ins_rank_first_after_testing(self, psm_table, design, spike_ins):
        residuals = MixedModelResidualNormalizer().apply(psm_table)
        proteins = get_summarizer(method="median").summarize(residuals)
        frame = ModeratedTTest()(proteins, design).for_contrast("B_vs_A")

        spike = frame.filter(pl.col(COL_PROTEIN).is_in(list(spike_ins)))
        background = frame.filter(~pl.col(COL_PROTEIN).is_in(list(spike_ins)))
        assert spike.get_column(COL_LOGFC).min() > background.get_column(COL_LOGFC).max()
        assert (spike.get_column(COL_Q) < 0.05).sum() >= 4

    def test_no_block_transform(self, psm_table):
        with pytest.raises(TypeError):
            MixedModelResidualNormalizer().transform(next(psm_table.run_matrices()))

    def test_rejects_raw_scale(self, intensity_table):
        with pytest.raises(ScaleMismatchError):
            MixedModelResidualNormalizer().apply(intensity_table)

    def test_invalid_grouping(self):
        with pytest.raises(ValueError):
            MixedModelResidualNormalizer(grouping="run")


class TestNormalizerFactory:
    """Config name → strategy."""

    @pytest.mark.parametrize("method, cls", [
        ("raking", RakingNormalizer),
        ("median_sweep", MedianSweepNormalizer),
        ("quantile", QuantileNormalizer),
        ("mean_sweep", MeanSweepNormalizer),
        ("mixed_model", MixedModelResidualNormalizer),
        ("none", IdentityNormalizer),
    ])
    def test_known_methods(self, method, cls):
        assert isinstance(get_normalizer(method=method), cls)

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Invalid normalization method"):
            get_normalizer(method="vsn")

    def test_chain_from_mixed_entries(self):
        chain = get_normalizers(["raking", {"method": "median_sweep", "axis": "columns", "scope": "global"}], n_jobs=3)
        assert [n.name for n in chain] == ["raking", "median_sweep"]
        assert chain[1].scope == "global"
        assert chain[0].n_jobs == 3

    def test_identity_returns_same_table(self, psm_table):
        assert IdentityNormalizer().apply(psm_table) is psm_table


def test_matrix_shape_checked():
    with pytest.raises(ValueError):
        NormalizedMatrix(values=np.zeros((2, 3)), features=["a"], samples=["x", "y", "z"], scale=UnitScale.LOG2)


def test_normalization_leaves_input_untouched(psm_table):
    before = psm_table.df.get_column(SIGNAL).to_numpy().copy()
    MedianSweepNormalizer(axis="rows").apply(psm_table)
    after = psm_table.df.get_column(SIGNAL).to_numpy()
    assert np.array_equal(np.isnan(before), np.isnan(after))
    assert np.allclose(before[~np.isnan(before)], after[~np.isnan(after)])
    assert isinstance(psm_table.df, pl.DataFrame)
