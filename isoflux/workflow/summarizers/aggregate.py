"""Two-stage PSM → peptide → protein aggregation."""

from typing import List

import polars as pl

from isoflux.dataset.quanttable import QuantTable
from isoflux.utils.semantics import CHANNEL, CONDITION, PEPTIDE, PROTEIN, RUN, SIGNAL
from isoflux.utils.utils import log_info, log_warning


class SummarizationStrategy:
    """Collapse a PSM- (or peptide-) level table to protein level."""

    name = "base"

    def summarize(self, table: QuantTable) -> QuantTable:
        raise NotImplementedError

    def __call__(self, table: QuantTable) -> QuantTable:
        return self.summarize(table)

    @staticmethod
    def _keys(table: QuantTable, *extra: str) -> List[str]:
        keys = [RUN, CHANNEL]
        if CONDITION in table.df.columns:
            keys.append(CONDITION)
        return keys + list(extra)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class _TwoStageAggregate(SummarizationStrategy):
    """Group by (Run, Channel, Protein, Peptide), then by (Run, Channel, Protein)."""

    def _agg(self, expr: pl.Expr) -> pl.Expr:
        raise NotImplementedError

    def _prepare(self, table: QuantTable) -> QuantTable:
        return table

    def summarize(self, table: QuantTable) -> QuantTable:
        if table.level == "protein":
            return table
        table = self._prepare(table)
        df = table.df

        if table.level == "psm":
            df = (
                df.group_by(self._keys(table, PROTEIN, PEPTIDE), maintain_order=True)
                .agg(self._agg(pl.col(SIGNAL)).alias(SIGNAL))
            )

        proteins = (
            df.group_by(self._keys(table, PROTEIN), maintain_order=True)
            .agg(self._agg(pl.col(SIGNAL)).alias(SIGNAL))
            .sort([RUN, PROTEIN, CHANNEL])
        )
        log_info(f"{self.name}: {table.level} rows={len(table)} → protein rows={proteins.height}")
        return QuantTable(proteins, scale=table.scale, level="protein")


class MedianAggregate(_TwoStageAggregate):
    name = "median"

    def _agg(self, expr: pl.Expr) -> pl.Expr:
        return expr.median()


class MeanAggregate(_TwoStageAggregate):
    name = "mean"

    def _agg(self, expr: pl.Expr) -> pl.Expr:
        return expr.mean()


class SumAggregate(_TwoStageAggregate):
    """
    Sum at both levels after dropping features with missing channels.

    Sums scale with the number of PSMs per protein, so additive-normalized
    (sign-producing) input is not meaningful here; the combination is still
    computed and flagged in the log.
    """

    name = "sum"

    def _agg(self, expr: pl.Expr) -> pl.Expr:
        return expr.sum()

    def _prepare(self, table: QuantTable) -> QuantTable:
        n_before = len(table)
        table = table.drop_missing()
        log_info(f"sum: dropped {n_before - len(table)} rows of features with missing channels")

        n_nonpos = table.df.filter(pl.col(SIGNAL) <= 0).height
        if table.scale.is_additive or n_nonpos:
            log_warning(
                f"sum aggregation on scale={table.scale.value} with {n_nonpos} non-positive values: "
                "protein sums depend on PSM counts and will carry sign/magnitude artifacts."
            )
        return table
