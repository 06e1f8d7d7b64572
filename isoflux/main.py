from isoflux.dataset.loader import load_dataset
from isoflux.evaluation.harness import EvaluationHarness, GroundTruth
from isoflux.export.result_exporter import ResultExporter
from isoflux.utils.utils import log_info, log_time, log_warning
from isoflux.workflow.pipeline import default_variants, run_benchmark


def ground_truth_from_config(dataset_cfg: dict, proteins) -> GroundTruth:
    spike_ins = dataset_cfg.get("spike_ins")
    if spike_ins:
        return GroundTruth(str(p) for p in spike_ins)
    pattern = dataset_cfg.get("spike_in_pattern")
    if pattern:
        return GroundTruth.from_pattern(proteins, pattern)
    log_warning("No spike_ins or spike_in_pattern configured: every protein is background.")
    return GroundTruth()


def variants_from_config(pipeline_cfg: dict):
    variants = pipeline_cfg.get("variants")
    if variants:
        return variants
    return default_variants(pipeline_cfg.get("preset", "defaults"))


@log_time("isoflux benchmark")
def run_pipeline(config: dict) -> dict:
    dataset_cfg = config.get("dataset", {}) or {}
    pipeline_cfg = config.get("pipeline", {}) or {}
    analysis_cfg = config.get("analysis", {}) or {}
    evaluation_cfg = config.get("evaluation", {}) or {}
    export_cfg = config.get("exports", {}) or {}

    table, design = load_dataset(dataset_cfg)
    runs = run_benchmark(
        table,
        design,
        variants_from_config(pipeline_cfg),
        n_jobs=analysis_cfg.get("n_jobs", 1),
        timeout=analysis_cfg.get("timeout"),
    )

    harness = EvaluationHarness(
        ground_truth_from_config(dataset_cfg, table.proteins),
        threshold=evaluation_cfg.get("q_threshold", 0.05),
    )
    metrics = harness.score(runs)
    correlations = harness.correlations(
        runs,
        field=evaluation_cfg.get("correlation_field", "logFC"),
        method=evaluation_cfg.get("correlation_method", "pearson"),
        spike_in_only=evaluation_cfg.get("spike_in_only", False),
    )
    log_info(f"\n{metrics}")

    exporter = ResultExporter(runs, export_cfg.get("path_table", "isoflux_results.csv"), metrics, correlations)
    if export_cfg.get("export_table", True):
        exporter.export()
    if export_cfg.get("path_h5ad"):
        exporter.export_adata(export_cfg["path_h5ad"])

    return {"runs": runs, "metrics": metrics, "correlations": correlations}
