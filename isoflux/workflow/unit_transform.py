"""Conversions between the unit scales a pipeline variant can start from."""

from typing import Optional, Union

import polars as pl

from isoflux.dataset.quanttable import Design, QuantTable
from isoflux.utils.errors import ScaleMismatchError, ValidationError
from isoflux.utils.semantics import CONDITION, RUN, SIGNAL
from isoflux.utils.unit_scale import UnitScale, normalize_unit_scale
from isoflux.utils.utils import log_info


def to_log2(table: QuantTable) -> QuantTable:
    """log2 of an intensity or ratio table; log2 input is returned unchanged."""
    if table.scale is UnitScale.LOG2:
        return table
    df = table.df.with_columns(pl.col(SIGNAL).log(base=2))
    return table.with_df(df, scale=UnitScale.LOG2)


def to_intensity(table: QuantTable) -> QuantTable:
    """2**x of a log2 table; raw input is returned unchanged."""
    if table.scale is UnitScale.INTENSITY:
        return table
    if table.scale is UnitScale.RATIO:
        raise ScaleMismatchError("Ratios cannot be converted back to intensities.")
    df = table.df.with_columns((2.0 ** pl.col(SIGNAL)).alias(SIGNAL))
    return table.with_df(df, scale=UnitScale.INTENSITY)


def to_ratio(table: QuantTable, design: Design) -> QuantTable:
    """
    Divide each feature's intensities by the mean of its reference-condition
    channels in the same Run. Features without an observed reference channel
    in a Run become missing.
    """
    if table.scale is UnitScale.RATIO:
        return table
    table = to_intensity(table).with_design(design)
    key = table.feature_key
    ref_mean = (
        pl.when(pl.col(CONDITION) == design.reference).then(pl.col(SIGNAL)).mean().over([RUN, key])
    )
    df = table.df.with_columns((pl.col(SIGNAL) / ref_mean).alias(SIGNAL))
    n_missing = df.get_column(SIGNAL).null_count() - table.df.get_column(SIGNAL).null_count()
    if n_missing:
        log_info(f"ratio: {n_missing} values without reference channels set to missing")
    return table.with_df(df, scale=UnitScale.RATIO)


def convert(table: QuantTable, unit: Union[str, UnitScale], design: Optional[Design] = None) -> QuantTable:
    """Bring `table` to `unit`; ratio conversion needs the design."""
    unit = normalize_unit_scale(unit)
    if unit is UnitScale.LOG2:
        return to_log2(table)
    if unit is UnitScale.INTENSITY:
        return to_intensity(table)
    if design is None:
        raise ValidationError("Converting to ratios needs a Design with a reference condition.")
    return to_ratio(table, design)
