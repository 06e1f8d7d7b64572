"""Hierarchical measurement table (Run / Channel / Protein / Peptide / PSM) and the sample design.

A `QuantTable` wraps a long polars DataFrame together with its unit-scale tag and
feature level. It is immutable: every transformation returns a new table, so
several strategies can run against the same input without interference.
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import anndata as ad
import numpy as np
import pandas as pd
import polars as pl

from isoflux.dataset.matrices import NormalizedMatrix
from isoflux.utils.errors import DesignError, ValidationError
from isoflux.utils.semantics import (
    CHANNEL,
    CONDITION,
    LEVEL_KEYS,
    LEVELS_CANONICAL,
    PEPTIDE,
    PROTEIN,
    PSM,
    PSM_ID_ATTRIBUTES,
    RUN,
    SAMPLE,
    SAMPLE_SEPARATOR,
    SIGNAL,
)
from isoflux.utils.unit_scale import UnitScale, normalize_unit_scale
from isoflux.utils.utils import log_info, polars_matrix_to_numpy


def _required_columns(level: str) -> Tuple[str, ...]:
    if level == "psm":
        return (RUN, CHANNEL, PROTEIN, PEPTIDE, SIGNAL)
    if level == "peptide":
        return (RUN, CHANNEL, PROTEIN, PEPTIDE, SIGNAL)
    return (RUN, CHANNEL, PROTEIN, SIGNAL)


class QuantTable:
    """Long-format reporter-ion table with an explicit unit-scale tag."""

    def __init__(
        self,
        df: Union[pl.DataFrame, pd.DataFrame],
        scale: Union[str, UnitScale] = UnitScale.LOG2,
        level: str = "psm",
        validate: bool = True,
    ):
        if level not in LEVELS_CANONICAL:
            raise ValueError(f"Unknown level={level!r}. Use one of {LEVELS_CANONICAL}.")
        if isinstance(df, pd.DataFrame):
            df = pl.from_pandas(df)

        self.level = level
        self.scale = normalize_unit_scale(scale)
        self._df = self._prepare(df)
        if validate:
            self.validate()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    def _prepare(self, df: pl.DataFrame) -> pl.DataFrame:
        missing = [c for c in _required_columns(self.level) if c not in df.columns]
        if missing:
            raise ValidationError(f"QuantTable ({self.level} level) is missing columns: {missing}")

        id_cols = [c for c in (RUN, CHANNEL, PROTEIN, PEPTIDE, PSM, CONDITION) if c in df.columns]
        df = df.with_columns(
            [pl.col(c).cast(pl.Utf8) for c in id_cols]
            + [pl.col(SIGNAL).cast(pl.Float64)]
        )
        # NaN / inf are missing values, stored as null in the long table
        df = df.with_columns(
            pl.when(pl.col(SIGNAL).is_finite()).then(pl.col(SIGNAL)).otherwise(None).alias(SIGNAL)
        )

        if self.level == "psm" and PSM not in df.columns:
            attrs = [c for c in PSM_ID_ATTRIBUTES if c in df.columns]
            df = df.with_columns(
                pl.concat_str([pl.col(c).cast(pl.Utf8).fill_null("") for c in attrs], separator="/").alias(PSM)
            )

        return df.with_columns(
            pl.concat_str([pl.col(RUN), pl.col(CHANNEL)], separator=SAMPLE_SEPARATOR).alias(SAMPLE)
        )

    def validate(self) -> "QuantTable":
        """Check the hierarchy and value invariants; raise ValidationError on violation."""
        df = self._df
        key = self.feature_key

        dup = df.group_by([key, RUN, CHANNEL]).len().filter(pl.col("len") > 1)
        if dup.height:
            raise ValidationError(
                f"{dup.height} {key} entries have more than one value for a (RUN, CHANNEL); "
                f"first: {dup.row(0)[:3]}"
            )

        if self.level == "psm":
            multi = df.group_by([RUN, PSM]).agg(pl.col(PEPTIDE).n_unique().alias("n")).filter(pl.col("n") > 1)
            if multi.height:
                raise ValidationError(f"{multi.height} PSMs map to more than one peptide.")

        if self.level in ("psm", "peptide"):
            shared = df.group_by([RUN, PEPTIDE]).agg(pl.col(PROTEIN).n_unique().alias("n")).filter(pl.col("n") > 1)
            if shared.height:
                raise ValidationError(
                    f"{shared.height} peptides map to more than one protein within a run "
                    "(shared peptides must be removed upstream)."
                )

        if not self.scale.is_additive:
            n_bad = df.filter(pl.col(SIGNAL) <= 0).height
            if n_bad:
                raise ValidationError(
                    f"{n_bad} non-positive values in a table tagged scale={self.scale.value}."
                )
        return self

    def _derive(self, df: pl.DataFrame, scale: Optional[UnitScale] = None, level: Optional[str] = None) -> "QuantTable":
        out = object.__new__(QuantTable)
        out.level = level or self.level
        out.scale = normalize_unit_scale(scale) if scale is not None else self.scale
        out._df = df
        return out

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def df(self) -> pl.DataFrame:
        return self._df.clone()

    @property
    def feature_key(self) -> str:
        return LEVEL_KEYS[self.level]

    @property
    def runs(self) -> List[str]:
        return sorted(self._df.get_column(RUN).unique().to_list())

    @property
    def samples(self) -> List[str]:
        return (
            self._df.select([RUN, CHANNEL, SAMPLE]).unique()
            .sort([RUN, CHANNEL]).get_column(SAMPLE).to_list()
        )

    @property
    def proteins(self) -> List[str]:
        return sorted(self._df.get_column(PROTEIN).unique().to_list())

    def __len__(self) -> int:
        return self._df.height

    def __repr__(self) -> str:
        return (
            f"QuantTable(level={self.level}, scale={self.scale.value}, rows={self._df.height}, "
            f"runs={len(self.runs)}, proteins={self._df.get_column(PROTEIN).n_unique()})"
        )

    # ------------------------------------------------------------------
    # Derivations (always return a new table)
    # ------------------------------------------------------------------
    def with_df(self, df: pl.DataFrame, scale: Optional[UnitScale] = None, level: Optional[str] = None) -> "QuantTable":
        """New table from a transformed frame; SAMPLE/PSM are re-derived and invariants checked."""
        return QuantTable(df.drop(SAMPLE, strict=False), scale=scale or self.scale, level=level or self.level)

    def with_signal(self, signal: Union[np.ndarray, pl.Series], scale: Optional[UnitScale] = None) -> "QuantTable":
        """Replace the SIGNAL column row-for-row."""
        values = pl.Series(SIGNAL, np.asarray(signal, dtype=np.float64))
        df = self._df.with_columns(values).with_columns(
            pl.when(pl.col(SIGNAL).is_finite()).then(pl.col(SIGNAL)).otherwise(None).alias(SIGNAL)
        )
        return self._derive(df, scale=scale)

    def with_scale(self, scale: Union[str, UnitScale]) -> "QuantTable":
        return self._derive(self._df, scale=normalize_unit_scale(scale))

    def with_design(self, design: "Design") -> "QuantTable":
        """Attach CONDITION from the design; every sample must be covered."""
        design.check_samples(self.samples)
        df = self._df.drop(CONDITION, strict=False).join(
            design.frame.select([SAMPLE, CONDITION]), on=SAMPLE, how="left"
        )
        return self._derive(df)

    def filter_proteins(self, proteins: Iterable[str]) -> "QuantTable":
        keep = list(proteins)
        return self._derive(self._df.filter(pl.col(PROTEIN).is_in(keep)))

    def drop_missing(self) -> "QuantTable":
        """Drop feature rows with any missing channel within their Run."""
        key = self.feature_key
        complete = (
            self._df.group_by([RUN, key])
            .agg(pl.col(SIGNAL).null_count().alias("__nmiss__"))
            .filter(pl.col("__nmiss__") == 0)
            .drop("__nmiss__")
        )
        return self._derive(self._df.join(complete, on=[RUN, key], how="semi"))

    def subsample(self, n_proteins: int, seed: int = 42) -> "QuantTable":
        """Keep a random subset of proteins (0 keeps everything)."""
        proteins = self.proteins
        if n_proteins <= 0 or n_proteins >= len(proteins):
            return self
        rng = np.random.default_rng(seed)
        chosen = rng.choice(proteins, size=n_proteins, replace=False)
        log_info(f"Subsampled {n_proteins}/{len(proteins)} proteins (seed={seed}).")
        return self.filter_proteins(chosen.tolist())

    # ------------------------------------------------------------------
    # Matrix views
    # ------------------------------------------------------------------
    def _matrix(self, df: pl.DataFrame, run: Optional[str]) -> NormalizedMatrix:
        key = self.feature_key
        samples = (
            df.select([RUN, CHANNEL, SAMPLE]).unique()
            .sort([RUN, CHANNEL]).get_column(SAMPLE).to_list()
        )
        wide = (
            df.select([key, SAMPLE, SIGNAL])
            .pivot(on=SAMPLE, index=key, values=SIGNAL, aggregate_function=None)
            .sort(key)
        )
        values = polars_matrix_to_numpy(wide, samples)
        return NormalizedMatrix(
            values=values,
            features=wide.get_column(key).to_list(),
            samples=samples,
            scale=self.scale,
            run=run,
        )

    def run_matrices(self) -> Iterator[NormalizedMatrix]:
        """One features × samples matrix per Run."""
        for run in self.runs:
            yield self._matrix(self._df.filter(pl.col(RUN) == run), run)

    def wide_matrix(self) -> NormalizedMatrix:
        """One cross-run features × samples matrix."""
        return self._matrix(self._df, None)

    def replace_from_matrices(
        self,
        matrices: Iterable[NormalizedMatrix],
        scale: Optional[UnitScale] = None,
    ) -> "QuantTable":
        """Write matrix values back into SIGNAL; cells absent from the matrices become missing."""
        key = self.feature_key
        frames = []
        for m in matrices:
            n_f, n_s = m.values.shape
            frames.append(pl.DataFrame({
                key: np.repeat(np.asarray(m.features, dtype=object), n_s).astype(str),
                SAMPLE: np.tile(np.asarray(m.samples, dtype=object), n_f).astype(str),
                "__value__": m.values.ravel(),
            }))
        if not frames:
            return self._derive(self._df, scale=scale)

        new_vals = pl.concat(frames, how="vertical")
        df = (
            self._df.join(new_vals, on=[key, SAMPLE], how="left")
            .with_columns(
                pl.when(pl.col("__value__").is_finite()).then(pl.col("__value__")).otherwise(None).alias(SIGNAL)
            )
            .drop("__value__")
        )
        return self._derive(df, scale=scale)

    def to_anndata(self, design: Optional["Design"] = None) -> ad.AnnData:
        """Protein × sample AnnData (obs = samples with CONDITION, var = proteins)."""
        if self.level != "protein":
            raise ValueError(f"to_anndata expects a protein-level table, got level={self.level!r}.")
        mat = self.wide_matrix()
        obs = (
            self._df.select([SAMPLE, RUN, CHANNEL]).unique()
            .to_pandas().set_index(SAMPLE).loc[mat.samples]
        )
        if design is not None:
            obs[CONDITION] = design.conditions_for(mat.samples)
        elif CONDITION in self._df.columns:
            cond = self._df.select([SAMPLE, CONDITION]).unique().to_pandas().set_index(SAMPLE)[CONDITION]
            obs[CONDITION] = cond.loc[mat.samples].to_numpy()
        obs.index = obs.index.astype(str)

        adata = ad.AnnData(
            X=mat.values.T.astype(np.float64),
            obs=obs,
            var=pd.DataFrame(index=pd.Index(mat.features, dtype=str)),
        )
        adata.uns["scale"] = self.scale.value
        return adata


class Design:
    """Sample (RUN, CHANNEL) → CONDITION map with one reference condition."""

    def __init__(self, frame: Union[pl.DataFrame, pd.DataFrame], reference: str):
        if isinstance(frame, pd.DataFrame):
            frame = pl.from_pandas(frame)
        missing = [c for c in (RUN, CHANNEL, CONDITION) if c not in frame.columns]
        if missing:
            raise DesignError(f"Design is missing columns: {missing}")

        frame = (
            frame.select([pl.col(c).cast(pl.Utf8) for c in (RUN, CHANNEL, CONDITION)])
            .unique()
            .with_columns(
                pl.concat_str([pl.col(RUN), pl.col(CHANNEL)], separator=SAMPLE_SEPARATOR).alias(SAMPLE)
            )
            .sort([RUN, CHANNEL])
        )
        ambiguous = frame.group_by(SAMPLE).len().filter(pl.col("len") > 1)
        if ambiguous.height:
            raise DesignError(f"Samples assigned to several conditions: {ambiguous.get_column(SAMPLE).to_list()}")

        self.frame = frame
        self.reference = str(reference)
        conditions = set(frame.get_column(CONDITION).to_list())
        if self.reference not in conditions:
            raise DesignError(f"Reference condition {self.reference!r} not among conditions {sorted(conditions)}")
        self._map: Dict[str, str] = dict(zip(frame.get_column(SAMPLE), frame.get_column(CONDITION)))

    @classmethod
    def from_table(cls, table: QuantTable, reference: str) -> "Design":
        if CONDITION not in table.df.columns:
            raise DesignError("QuantTable has no CONDITION column to derive a design from.")
        return cls(table.df.select([RUN, CHANNEL, CONDITION]).unique(), reference)

    @classmethod
    def from_mapping(cls, mapping: Mapping[Tuple[str, str], str], reference: str) -> "Design":
        rows = [{RUN: r, CHANNEL: c, CONDITION: cond} for (r, c), cond in mapping.items()]
        return cls(pl.DataFrame(rows), reference)

    @property
    def samples(self) -> List[str]:
        return list(self._map)

    @property
    def levels(self) -> List[str]:
        """Reference first, then the other conditions sorted."""
        others = sorted({c for c in self._map.values() if c != self.reference})
        return [self.reference] + others

    @property
    def contrasts(self) -> List[Tuple[str, str]]:
        """(contrast name, non-reference condition), e.g. ('B_vs_A', 'B')."""
        return [(f"{c}_vs_{self.reference}", c) for c in self.levels[1:]]

    def check_samples(self, samples: Iterable[str]) -> None:
        absent = [s for s in samples if s not in self._map]
        if absent:
            raise DesignError(f"{len(absent)} samples missing from the design: {absent[:5]}")

    def conditions_for(self, samples: Sequence[str]) -> List[str]:
        self.check_samples(samples)
        return [self._map[s] for s in samples]

    def __repr__(self) -> str:
        return f"Design(samples={len(self._map)}, levels={self.levels}, reference={self.reference!r})"
