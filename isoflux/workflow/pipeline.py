"""Execute pipeline variants: unit → PSM normalization → summarization → protein normalization → test."""

from typing import Any, Dict, List, Optional, Sequence, Union

from isoflux.analysis.tester_factory import get_tester
from isoflux.dataset.pipelinerun import PipelineConfig, PipelineRun
from isoflux.dataset.quanttable import Design, QuantTable
from isoflux.utils.errors import ConvergenceError
from isoflux.utils.utils import log_indent, log_info, log_time, log_warning
from isoflux.workflow.normalizer_factory import get_normalizers
from isoflux.workflow.summarizer_factory import get_summarizer
from isoflux.workflow.unit_transform import convert

# protein-level passes work on the cross-run matrix
_SWEEP_COLUMNS = {"method": "median_sweep", "axis": "columns", "scope": "global"}
_SWEEP_BOTH = {"method": "median_sweep", "axis": "both", "scope": "global"}
_SWEEP_ROWS = {"method": "median_sweep", "axis": "rows"}
_MIXED_MODEL = {"method": "mixed_model", "grouping": "protein"}


def _variant(name, unit="log2", psm=None, summary="median", protein=None, test="moderated_t", test_unit=None):
    return {
        "name": name,
        "unit": unit,
        "psm_normalization": psm or [],
        "summarization": summary,
        "protein_normalization": protein or [],
        "test": test,
        "test_unit": test_unit,
    }


PRESETS: Dict[str, List[Dict[str, Any]]] = {
    "unit": [
        _variant("log2", "log2", [_SWEEP_ROWS], protein=[_SWEEP_COLUMNS]),
        _variant("intensity", "intensity", [_SWEEP_ROWS], protein=[_SWEEP_COLUMNS]),
        _variant("ratio", "ratio", [_SWEEP_ROWS], protein=[_SWEEP_COLUMNS]),
    ],
    "summarization": [
        _variant("median", summary="median", psm=[_SWEEP_ROWS], protein=[_SWEEP_COLUMNS]),
        _variant("mean", summary="mean", psm=[_SWEEP_ROWS], protein=[_SWEEP_COLUMNS]),
        _variant("sum", summary="sum", psm=[_SWEEP_ROWS], protein=[_SWEEP_COLUMNS]),
        _variant("ipqf", summary="ipqf", psm=[_SWEEP_ROWS], protein=[_SWEEP_COLUMNS]),
    ],
    "normalization": [
        _variant("none"),
        _variant("raking", "intensity", ["raking"], test_unit="log2", protein=[_SWEEP_COLUMNS]),
        _variant("median_sweep", psm=[_SWEEP_ROWS], protein=[_SWEEP_BOTH]),
        _variant(
            "quantile", psm=[{"method": "quantile", "grand_average": "auto"}],
            protein=[{"method": "quantile", "scope": "global"}],
        ),
        _variant("mean_sweep", psm=[{"method": "mean_sweep"}]),
        _variant("mixed_model", psm=[_MIXED_MODEL]),
    ],
    "modelbased_unit": [
        _variant("log2", "log2", [_SWEEP_ROWS], test="mixed_model"),
        _variant("intensity", "intensity", [_SWEEP_ROWS], test="mixed_model"),
        _variant("ratio", "ratio", [_SWEEP_ROWS], test="mixed_model"),
    ],
    "modelbased_summarization": [
        _variant(summary, psm=[_MIXED_MODEL], summary=summary) for summary in ("median", "mean", "sum", "ipqf")
    ],
    "dea": [
        _variant("moderated_t", psm=[_SWEEP_ROWS], protein=[_SWEEP_COLUMNS], test="moderated_t"),
        _variant("ranksum", psm=[_SWEEP_ROWS], protein=[_SWEEP_COLUMNS], test="ranksum"),
        _variant("permutation", psm=[_SWEEP_ROWS], protein=[_SWEEP_COLUMNS], test="permutation"),
        _variant("mixed_model", psm=[_SWEEP_ROWS], test="mixed_model"),
        _variant("anova", psm=[_SWEEP_ROWS], test="anova"),
    ],
    "defaults": [
        _variant("raking_median_moderated_t", "intensity", ["raking"], test_unit="log2", protein=[_SWEEP_COLUMNS]),
        _variant("median_sweep_median_moderated_t", psm=[_SWEEP_ROWS], protein=[_SWEEP_COLUMNS]),
        _variant("quantile_median_moderated_t", psm=[{"method": "quantile", "grand_average": "auto"}],
                 protein=[{"method": "quantile", "scope": "global"}]),
        _variant("median_sweep_ipqf_moderated_t", psm=[_SWEEP_ROWS], summary="ipqf", protein=[_SWEEP_COLUMNS]),
    ],
}


def default_variants(family: str = "defaults") -> List[PipelineConfig]:
    """Preset variant grids comparing one component family at a time."""
    family = family.lower().strip()
    if family not in PRESETS:
        raise ValueError(f"Invalid variant family: {family}. Options: {', '.join(PRESETS)}")
    return [PipelineConfig.from_dict(v) for v in PRESETS[family]]


def _as_config(variant: Union[PipelineConfig, Dict[str, Any]]) -> PipelineConfig:
    return variant if isinstance(variant, PipelineConfig) else PipelineConfig.from_dict(variant)


def run_variant(
    table: QuantTable,
    design: Design,
    variant: Union[PipelineConfig, Dict[str, Any]],
    n_jobs: int = 1,
    timeout: Optional[float] = None,
) -> PipelineRun:
    """
    Execute one variant. A ConvergenceError makes this run `failed`
    (recorded, not raised); any other error propagates to the caller.
    """
    config = _as_config(variant)
    run = PipelineRun(config=config, input=table)
    log_info(config.describe())

    with log_indent():
        try:
            data = convert(table, config.unit, design).with_design(design)
            for normalizer in get_normalizers(config.psm_normalization, n_jobs=n_jobs):
                data = normalizer.apply(data)
            run.normalized = data

            proteins = get_summarizer(**dict(config.summarization)).summarize(data)
            if config.test_unit is not None:
                proteins = convert(proteins, config.test_unit, design)
                data = convert(data, config.test_unit, design)
            for normalizer in get_normalizers(config.protein_normalization, n_jobs=n_jobs):
                proteins = normalizer.apply(proteins)
            run.proteins = proteins

            test_cfg = dict(config.test)
            if test_cfg.get("method") in ("permutation", "mixed_model", "anova"):
                test_cfg.setdefault("n_jobs", n_jobs)
                test_cfg.setdefault("timeout", timeout)
            engine = get_tester(**test_cfg)
            run.result = engine.test(data if engine.input_level == "feature" else proteins, design)
        except ConvergenceError as exc:
            run.status = "failed"
            run.error = str(exc)
            log_warning(f"Variant {config.name} failed: {exc}")

    return run


@log_time("Benchmark")
def run_benchmark(
    table: QuantTable,
    design: Design,
    variants: Sequence[Union[PipelineConfig, Dict[str, Any]]],
    n_jobs: int = 1,
    timeout: Optional[float] = None,
) -> List[PipelineRun]:
    """Run every variant on the same input table."""
    configs = [_as_config(v) for v in variants]
    names = [c.name for c in configs]
    if len(set(names)) != len(names):
        raise ValueError(f"Variant names must be unique: {names}")
    runs = [run_variant(table, design, c, n_jobs=n_jobs, timeout=timeout) for c in configs]
    n_failed = sum(not r.ok for r in runs)
    log_info(f"{len(runs) - n_failed}/{len(runs)} variants completed")
    return runs
