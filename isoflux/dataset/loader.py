"""Load a long PSM table from disk and harmonize its columns to the canonical names."""

from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import pandas as pd
import polars as pl
import pyarrow.csv as pv_csv

from isoflux.dataset.quanttable import Design, QuantTable
from isoflux.utils.errors import DesignError, ValidationError
from isoflux.utils.semantics import (
    CHANNEL,
    CHARGE,
    CONDITION,
    ISOLATION_INTERFERENCE,
    MASS_DEVIATION,
    MODIFICATION,
    PEPTIDE,
    PROTEIN,
    PSM,
    PSM_SCORE,
    RETENTION_TIME,
    RUN,
    SIGNAL,
)
from isoflux.utils.unit_scale import normalize_unit_scale
from isoflux.utils.utils import log_info, log_time, log_warning


class DataHarmonizer:
    """Renames input columns to the canonical QuantTable names."""

    DEFAULT_COLUMN_MAP = {
        "run_column": RUN,
        "channel_column": CHANNEL,
        "condition_column": CONDITION,
        "protein_column": PROTEIN,
        "peptide_column": PEPTIDE,
        "psm_column": PSM,
        "charge_column": CHARGE,
        "modification_column": MODIFICATION,
        "retention_time_column": RETENTION_TIME,
        "signal_column": SIGNAL,
        "score_column": PSM_SCORE,
        "mass_deviation_column": MASS_DEVIATION,
        "interference_column": ISOLATION_INTERFERENCE,
    }

    def __init__(self, column_config: dict):
        self.column_map: Dict[str, str] = {}
        for config_key, std_name in self.DEFAULT_COLUMN_MAP.items():
            original_col = column_config.get(config_key)
            if original_col:
                self.column_map[original_col] = std_name

    def harmonize(self, df: pl.DataFrame) -> pl.DataFrame:
        present = {k: v for k, v in self.column_map.items() if k in df.columns and k != v}
        absent = [k for k in self.column_map if k not in df.columns]
        if absent:
            log_warning(f"Configured columns not found in input: {absent}")
        # drop canonical columns that a mapped column would overwrite
        clashes = [v for v in present.values() if v in df.columns]
        return df.drop(clashes).rename(present)


def read_table(file_path: Union[str, Path], load_method: str = "polars") -> pl.DataFrame:
    """Read a CSV/TSV (or parquet) file."""
    file_path = str(file_path)
    if file_path.endswith(".parquet"):
        return pl.read_parquet(file_path)
    if not file_path.endswith((".csv", ".tsv", ".txt")):
        raise ValueError("Only CSV, TSV or parquet files are supported.")

    delimiter = "," if file_path.endswith(".csv") else "\t"

    if load_method == "polars":
        return pl.read_csv(
            file_path,
            separator=delimiter,
            infer_schema_length=10000,
            null_values=["NA", "NaN", "N/A", ""],
        )
    elif load_method == "pyarrow":
        parse_options = pv_csv.ParseOptions(delimiter=delimiter)
        arrow_table = pv_csv.read_csv(file_path, parse_options=parse_options)
        return pl.from_arrow(arrow_table)
    elif load_method == "pandas":
        return pl.from_pandas(pd.read_csv(file_path, delimiter=delimiter))
    else:
        raise ValueError(f"Unknown load method: {load_method}")


@log_time("Data Loading")
def load_dataset(dataset_cfg: dict) -> Tuple[QuantTable, Design]:
    """
    Build the input QuantTable and its Design from the `dataset` config section.

    Conditions come from the table's CONDITION column or, when absent, from
    `annotation_file` (columns RUN, CHANNEL, CONDITION after harmonization).
    """
    file_path = dataset_cfg.get("input_file")
    if not file_path:
        raise ValidationError("dataset.input_file is required.")
    harmonizer = DataHarmonizer(dataset_cfg)
    df = harmonizer.harmonize(read_table(file_path, dataset_cfg.get("load_method", "polars")))

    annotation_file: Optional[str] = dataset_cfg.get("annotation_file")
    if annotation_file:
        annotation = harmonizer.harmonize(read_table(annotation_file, dataset_cfg.get("load_method", "polars")))
        design_frame = annotation.select([RUN, CHANNEL, CONDITION])
    elif CONDITION in df.columns:
        design_frame = df.select([RUN, CHANNEL, CONDITION]).unique()
    else:
        raise DesignError("No CONDITION column in the input and no annotation_file given.")

    reference = dataset_cfg.get("reference")
    if reference is None:
        raise DesignError("dataset.reference (reference condition) is required.")
    design = Design(design_frame, reference=str(reference))

    table = QuantTable(
        df.drop(CONDITION, strict=False),
        scale=normalize_unit_scale(dataset_cfg.get("scale", "intensity")),
        level=dataset_cfg.get("level", "psm"),
    )
    subsample = int(dataset_cfg.get("subsample", 0) or 0)
    if subsample:
        table = table.subsample(subsample, seed=int(dataset_cfg.get("seed", 42)))

    log_info(f"Loaded {table!r}; {design!r}")
    return table.with_design(design), design
