"""Tests for QuantTable invariants, Design and unit scales."""

import warnings

import numpy as np
import pandas as pd
import polars as pl
import pytest

from isoflux.dataset.quanttable import Design, QuantTable
from isoflux.utils.errors import DesignError, ScaleMismatchError, ValidationError
from isoflux.utils.semantics import CONDITION, PSM, SAMPLE, SIGNAL
from isoflux.utils.unit_scale import UnitScale, normalize_unit_scale
from isoflux.workflow.unit_transform import convert, to_intensity, to_log2, to_ratio


class TestQuantTableValidation:
    """Construction-time invariants."""

    def test_missing_columns(self, psm_frame):
        with pytest.raises(ValidationError, match="missing columns"):
            QuantTable(psm_frame.drop(columns=["PEPTIDE"]), level="psm")

    def test_duplicate_values(self, psm_frame):
        dup = pd.concat([psm_frame, psm_frame.iloc[:1]])
        with pytest.raises(ValidationError, match="more than one value"):
            QuantTable(dup, level="psm")

    def test_shared_peptide(self, psm_frame):
        bad = psm_frame.copy()
        first = bad["PEPTIDE"].iloc[0]
        mask = (bad["PEPTIDE"] == first) & (bad["CHANNEL"] == "126")
        bad.loc[mask, "PROTEIN"] = "OTHER"
        with pytest.raises(ValidationError):
            QuantTable(bad, level="psm")

    def test_non_positive_raw_values(self, psm_frame):
        raw = psm_frame.assign(SIGNAL=np.exp2(psm_frame["SIGNAL"]))
        raw.loc[0, "SIGNAL"] = -1.0
        with pytest.raises(ValidationError, match="non-positive"):
            QuantTable(raw, scale="intensity", level="psm")

    def test_log2_allows_negative(self, psm_frame):
        shifted = psm_frame.assign(SIGNAL=psm_frame["SIGNAL"] - 25)
        assert len(QuantTable(shifted, level="psm")) == len(psm_frame)

    def test_psm_id_derived(self, psm_frame):
        table = QuantTable(psm_frame.drop(columns=["PSM"]), level="psm")
        run1 = table.df.filter(pl.col("RUN") == "run1").get_column(PSM)
        assert run1.null_count() == 0
        assert run1.n_unique() == psm_frame.loc[psm_frame["RUN"] == "run1", "PSM"].nunique()

    def test_non_finite_is_missing(self, psm_frame):
        frame = psm_frame.copy()
        frame.loc[0, "SIGNAL"] = np.inf
        table = QuantTable(frame, level="psm")
        assert table.df.get_column(SIGNAL).null_count() == frame["SIGNAL"].isna().sum() + 1

    def test_unknown_level(self, psm_frame):
        with pytest.raises(ValueError):
            QuantTable(psm_frame, level="precursor")


class TestQuantTableViews:
    """Matrix views and derivations."""

    def test_run_matrices(self, psm_table):
        mats = list(psm_table.run_matrices())
        assert [m.run for m in mats] == ["run1", "run2"]
        assert mats[0].values.shape == (20 * 3 * 2, 4)
        assert mats[1].values.shape == (20 * 3, 4)
        assert mats[0].samples == ["run1:126", "run1:127", "run1:128", "run1:129"]

    def test_round_trip_through_matrices(self, psm_table):
        out = psm_table.replace_from_matrices(list(psm_table.run_matrices()))
        a = psm_table.df.sort([PSM, SAMPLE]).get_column(SIGNAL).to_numpy()
        b = out.df.sort([PSM, SAMPLE]).get_column(SIGNAL).to_numpy()
        assert np.allclose(a, b, equal_nan=True)

    def test_immutable(self, psm_table):
        df = psm_table.df
        df = df.with_columns(pl.lit(0.0).alias(SIGNAL))
        assert psm_table.df.get_column(SIGNAL).drop_nulls().max() > 0

    def test_drop_missing(self, psm_table):
        complete = psm_table.drop_missing()
        assert complete.df.get_column(SIGNAL).null_count() == 0
        assert len(complete) % 4 == 0

    def test_subsample_is_seeded(self, psm_table):
        a = psm_table.subsample(7, seed=1).proteins
        b = psm_table.subsample(7, seed=1).proteins
        assert a == b
        assert len(a) == 7
        assert psm_table.subsample(0) is psm_table

    def test_to_anndata_requires_protein_level(self, psm_table):
        with pytest.raises(ValueError):
            psm_table.to_anndata()

    def test_to_anndata(self, protein_frame):
        table = QuantTable(protein_frame, level="protein")
        adata = table.to_anndata()
        assert adata.shape == (8, 6)
        assert list(adata.obs[CONDITION]) == ["A", "A", "B", "B"] * 2
        assert adata.uns["scale"] == "log2"


class TestDesign:
    """Sample → condition mapping."""

    def test_levels_and_contrasts(self, design):
        assert design.levels == ["A", "B"]
        assert design.contrasts == [("B_vs_A", "B")]
        assert len(design.samples) == 8

    def test_reference_must_exist(self, psm_table):
        with pytest.raises(DesignError):
            Design.from_table(psm_table, reference="C")

    def test_ambiguous_sample(self):
        frame = pd.DataFrame({
            "RUN": ["r1", "r1"], "CHANNEL": ["126", "126"], "CONDITION": ["A", "B"],
        })
        with pytest.raises(DesignError):
            Design(frame, reference="A")

    def test_missing_samples(self, design):
        with pytest.raises(DesignError):
            design.conditions_for(["run3:126"])

    def test_from_mapping(self):
        d = Design.from_mapping({("r1", "126"): "ctrl", ("r1", "127"): "treated"}, reference="ctrl")
        assert d.conditions_for(["r1:127"]) == ["treated"]

    def test_with_design_attaches_condition(self, psm_frame):
        table = QuantTable(psm_frame.drop(columns=["CONDITION"]), level="psm")
        design = Design(psm_frame[["RUN", "CHANNEL", "CONDITION"]].drop_duplicates(), reference="A")
        out = table.with_design(design)
        assert out.df.get_column(CONDITION).null_count() == 0


class TestUnitScale:
    """Scale tags and conversions."""

    def test_canonical(self):
        assert normalize_unit_scale("log2") is UnitScale.LOG2
        assert normalize_unit_scale(None) is UnitScale.LOG2
        assert UnitScale.INTENSITY.operator == "divide"
        assert UnitScale.LOG2.is_additive

    def test_alias_warns(self):
        with pytest.warns(DeprecationWarning):
            assert normalize_unit_scale("raw") is UnitScale.INTENSITY

    def test_unknown(self):
        with pytest.raises(ValueError):
            normalize_unit_scale("vsn")

    def test_log2_intensity_round_trip(self, psm_table):
        back = to_log2(to_intensity(psm_table))
        assert back.scale is UnitScale.LOG2
        a = psm_table.df.get_column(SIGNAL).to_numpy()
        b = back.df.get_column(SIGNAL).to_numpy()
        assert np.allclose(a, b, equal_nan=True)

    def test_ratio_reference_mean_is_one(self, psm_table, design):
        ratios = to_ratio(psm_table, design)
        assert ratios.scale is UnitScale.RATIO
        ref = (
            ratios.df.filter(pl.col(CONDITION) == "A")
            .group_by(["RUN", PSM]).agg(pl.col(SIGNAL).mean())
            .drop_nulls()
        )
        assert np.allclose(ref.get_column(SIGNAL).to_numpy(), 1.0)

    def test_ratio_cannot_go_back(self, psm_table, design):
        with pytest.raises(ScaleMismatchError):
            to_intensity(to_ratio(psm_table, design))

    def test_convert_needs_design_for_ratio(self, psm_table):
        with pytest.raises(ValidationError):
            convert(psm_table, "ratio")

    def test_convert_is_noop_on_same_scale(self, psm_table):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            assert convert(psm_table, "log2") is psm_table
