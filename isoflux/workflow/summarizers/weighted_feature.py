"""iPQF-style protein quantification from PSM profiles weighted by quality covariates.

Each PSM's channel profile (intensities relative to the PSM mean) contributes
to the protein profile with a weight derived from its qualitative features:
charge state frequency, peptide length, identification score, mass deviation
and retention-time agreement with redundant PSMs of the same peptide. Every
feature is rank-normalized to (0, 1] within the protein; the PSM weight is the
mean of its available feature scores.
"""

import warnings
from typing import Dict, List

import numpy as np
import pandas as pd
import polars as pl
from scipy.stats import rankdata

from isoflux.dataset.quanttable import QuantTable
from isoflux.utils.semantics import (
    CHANNEL,
    CHARGE,
    CONDITION,
    MASS_DEVIATION,
    PEPTIDE,
    PROTEIN,
    PSM,
    PSM_SCORE,
    RETENTION_TIME,
    RUN,
    SAMPLE,
    SEQUENCE_LENGTH,
    SIGNAL,
)
from isoflux.utils.utils import log_info, log_time
from isoflux.workflow.summarizers.aggregate import SummarizationStrategy


def _rank_score(values: np.ndarray, higher_is_better: bool = True) -> np.ndarray:
    """Ranks scaled to (0, 1]; missing covariates get the neutral score 0.5."""
    out = np.full(values.shape, 0.5)
    ok = np.isfinite(values)
    if ok.sum() == 0:
        return out
    v = values[ok] if higher_is_better else -values[ok]
    out[ok] = rankdata(v, method="average") / ok.sum()
    return out


def psm_feature_scores(psms: pd.DataFrame, charge_freq: Dict[float, float]) -> Dict[str, np.ndarray]:
    """Per-feature quality scores for the PSMs of one protein (rows of `psms`)."""
    scores = {}
    if CHARGE in psms:
        freq = psms[CHARGE].map(charge_freq).to_numpy(dtype=float)
        scores["charge"] = _rank_score(freq)
    if SEQUENCE_LENGTH in psms:
        scores["length"] = _rank_score(psms[SEQUENCE_LENGTH].to_numpy(dtype=float))
    if PSM_SCORE in psms:
        scores["identification"] = _rank_score(psms[PSM_SCORE].to_numpy(dtype=float))
    if MASS_DEVIATION in psms:
        scores["mass_deviation"] = _rank_score(np.abs(psms[MASS_DEVIATION].to_numpy(dtype=float)), higher_is_better=False)
    if RETENTION_TIME in psms:
        rt = psms[RETENTION_TIME].to_numpy(dtype=float)
        peptide_rt = psms.groupby(PEPTIDE)[RETENTION_TIME].transform("median").to_numpy(dtype=float)
        scores["rt_proximity"] = _rank_score(np.abs(rt - peptide_rt), higher_is_better=False)
    return scores


def weighted_profile(intensities: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """
    Weighted protein profile on the intensity scale.

    Parameters:
        intensities: (n_psms × n_channels) strictly positive, complete.
        weights: (n_psms,) non-negative.

    Returns:
        (n_channels,) protein intensities = weighted relative profile × mean PSM intensity.
    """
    row_means = intensities.mean(axis=1, keepdims=True)
    profiles = intensities / row_means
    w = weights / weights.sum() if weights.sum() > 0 else np.full(len(weights), 1.0 / len(weights))
    return (w[:, None] * profiles).sum(axis=0) * float(row_means.mean())


class WeightedFeatureAggregate(SummarizationStrategy):
    """PSM → protein in one step, per Run, weighted by PSM quality features."""

    name = "ipqf"

    def _covariate_frame(self, table: QuantTable) -> pl.DataFrame:
        df = table.df
        if SEQUENCE_LENGTH not in df.columns:
            df = df.with_columns(
                pl.col(PEPTIDE).str.replace_all(r"[^A-Z]", "").str.len_chars().cast(pl.Float64).alias(SEQUENCE_LENGTH)
            )
        cov_cols = [c for c in (CHARGE, SEQUENCE_LENGTH, PSM_SCORE, MASS_DEVIATION, RETENTION_TIME) if c in df.columns]
        return (
            df.group_by([RUN, PSM])
            .agg([pl.first(PROTEIN), pl.first(PEPTIDE)] + [pl.first(c) for c in cov_cols])
        )

    @log_time("iPQF summarization")
    def summarize(self, table: QuantTable) -> QuantTable:
        if table.level != "psm":
            raise ValueError(f"WeightedFeatureAggregate needs PSM-level input, got level={table.level!r}.")

        linear = not table.scale.is_additive
        complete = table.drop_missing()
        covariates = self._covariate_frame(complete)

        rows: List[dict] = []
        for run_matrix in complete.run_matrices():
            X = run_matrix.values if linear else np.exp2(run_matrix.values)
            cov = (
                covariates.filter(pl.col(RUN) == run_matrix.run)
                .to_pandas()
                .set_index(PSM)
                .loc[run_matrix.features]
                .reset_index()
            )
            charge_freq = cov[CHARGE].value_counts(normalize=True).to_dict() if CHARGE in cov else {}

            for protein, idx in cov.groupby(PROTEIN).indices.items():
                psms = cov.iloc[idx]
                feature_scores = psm_feature_scores(psms, charge_freq)
                if feature_scores:
                    weights = np.mean(np.vstack(list(feature_scores.values())), axis=0)
                else:
                    weights = np.ones(len(idx))
                with warnings.catch_warnings():
                    warnings.filterwarnings("ignore", category=RuntimeWarning)
                    profile = weighted_profile(X[idx], weights)
                values = profile if linear else np.log2(profile)
                for sample, value in zip(run_matrix.samples, values):
                    rows.append({SAMPLE: sample, PROTEIN: protein, SIGNAL: float(value)})

        out = pl.DataFrame(rows, schema={SAMPLE: pl.Utf8, PROTEIN: pl.Utf8, SIGNAL: pl.Float64})
        sample_cols = [RUN, CHANNEL, SAMPLE] + ([CONDITION] if CONDITION in table.df.columns else [])
        sample_meta = table.df.select(sample_cols).unique()
        out = out.join(sample_meta, on=SAMPLE, how="left").drop(SAMPLE).sort([RUN, PROTEIN, CHANNEL])
        log_info(f"ipqf: {complete.df.get_column(PSM).n_unique()} PSMs → {out.height} protein rows")
        return QuantTable(out, scale=table.scale, level="protein")
