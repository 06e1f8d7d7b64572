"""Write benchmark outputs: long result/metric tables as CSV and per-variant .h5ad files."""

import json
from datetime import datetime
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version
from pathlib import Path
from typing import List, Optional, Sequence

import polars as pl

from isoflux.dataset.pipelinerun import PipelineRun
from isoflux.utils.semantics import CONDITION
from isoflux.utils.utils import log_info, log_time


class ResultExporter:
    def __init__(
        self,
        runs: Sequence[PipelineRun],
        output_path,
        metrics: Optional[pl.DataFrame] = None,
        correlations: Optional[pl.DataFrame] = None,
    ):
        """CSV and .h5ad exporter for a list of executed variants."""
        self.runs = list(runs)
        self.output_path = Path(output_path)
        self.metrics = metrics
        self.correlations = correlations

    def _results_table(self) -> Optional[pl.DataFrame]:
        frames = [
            run.result.frame.with_columns(pl.lit(run.name).alias("variant"))
            for run in self.runs if run.ok
        ]
        if not frames:
            return None
        out = pl.concat(frames, how="vertical")
        return out.select(["variant"] + [c for c in out.columns if c != "variant"])

    def _variants_table(self) -> pl.DataFrame:
        return pl.DataFrame([
            {
                "variant": run.name,
                "status": run.status,
                "error": run.error,
                "config": json.dumps(run.config.to_dict()),
            }
            for run in self.runs
        ], schema={"variant": pl.Utf8, "status": pl.Utf8, "error": pl.Utf8, "config": pl.Utf8})

    @log_time("Exporting tables")
    def export(self) -> List[Path]:
        """Write results, metrics, correlations and variant configs as `<prefix>_<name>.csv`."""
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        prefix = self.output_path.with_suffix("")
        tables = {
            "results": self._results_table(),
            "metrics": self.metrics,
            "correlations": self.correlations,
            "variants": self._variants_table(),
        }
        written = []
        for name, df in tables.items():
            if df is not None and df.height:
                path = Path(f"{prefix}_{name}.csv")
                df.write_csv(path)
                written.append(path)
        log_info(f"Wrote {len(written)} tables with prefix {prefix}")
        return written

    @log_time("Exporting .h5ad")
    def export_adata(self, h5ad_path) -> List[Path]:
        """One compact .h5ad per successful variant: protein matrix + statistics in .varm."""
        h5ad_path = Path(h5ad_path)
        h5ad_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            version = _pkg_version("isoflux")
        except PackageNotFoundError:
            version = "0+unknown"

        written = []
        for run in self.runs:
            if not run.ok or run.proteins is None:
                continue
            adata = run.result.to_anndata_varm(run.proteins.to_anndata())
            if CONDITION in adata.obs.columns:
                adata.obs[CONDITION] = adata.obs[CONDITION].astype("category")
            adata.uns["isoflux"] = {
                "version": version,
                "created_at": datetime.now().isoformat(timespec="seconds") + "Z",
                "variant": json.dumps(run.config.to_dict()),
            }
            path = h5ad_path.with_name(f"{h5ad_path.stem}_{run.name}.h5ad")
            adata.write(path, compression="gzip")
            written.append(path)
        return written
