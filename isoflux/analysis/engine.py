"""Common interface of the differential test engines and their batch executor."""

import multiprocessing as mp
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from isoflux.analysis.testresult import TestResult
from isoflux.dataset.quanttable import Design, QuantTable
from isoflux.utils.errors import DesignError
from isoflux.utils.semantics import CONDITION
from isoflux.utils.utils import log_info, log_warning


class DifferentialTestEngine:
    """
    Per-contrast differential test over a protein-level QuantTable.

    `input_level` tells the pipeline which table to hand over: "protein" for
    engines working on summarized values, "feature" for engines modelling the
    repeated PSM/peptide measurements of each protein.
    """

    name = "base"
    input_level = "protein"

    def test(self, table: QuantTable, design: Design) -> TestResult:
        raise NotImplementedError

    def __call__(self, table: QuantTable, design: Design) -> TestResult:
        return self.test(table, design)

    @staticmethod
    def _protein_matrix(table: QuantTable, design: Design) -> Tuple[np.ndarray, List[str], np.ndarray]:
        """(samples × proteins) values, protein ids and per-sample condition labels."""
        if table.level != "protein":
            raise ValueError(f"Expected a protein-level table, got level={table.level!r}.")
        adata = table.to_anndata(design)
        conditions = adata.obs[CONDITION].astype(str).to_numpy()
        present = set(conditions)
        if design.reference not in present or len(present) < 2:
            raise DesignError(f"Need the reference and ≥1 other condition among samples; found {sorted(present)}")
        return np.asarray(adata.X, dtype=np.float64), adata.var_names.astype(str).tolist(), conditions

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


def protein_batches(n: int, batch_size: int) -> List[np.ndarray]:
    return [np.arange(i, min(i + batch_size, n)) for i in range(0, n, max(int(batch_size), 1))]


def run_batches(
    worker: Callable,
    batches: Sequence[tuple],
    n_jobs: int = 1,
    timeout: Optional[float] = None,
    label: str = "batch",
) -> List[Optional[object]]:
    """
    Run `worker(*args)` for each batch.

    Without a timeout and with n_jobs <= 1 the batches run in-process. Otherwise
    they go to a process pool (one worker when n_jobs <= 1). A batch not finished
    within `timeout` seconds gets None in the returned list and the caller marks
    its proteins failed. The pool is then terminated, which kills the hung worker,
    and unfinished batches are resubmitted to a fresh pool.
    """
    if timeout is None and (n_jobs <= 1 or len(batches) <= 1):
        return [worker(*args) for args in batches]

    n_workers = max(1, min(int(n_jobs), len(batches)))
    results: List[Optional[object]] = [None] * len(batches)
    todo = list(range(len(batches)))
    while todo:
        pool = mp.Pool(processes=min(n_workers, len(todo)))
        try:
            pending = [(i, pool.apply_async(worker, tuple(batches[i]))) for i in todo]
            todo = []
            timed_out = False
            for i, async_result in pending:
                if timed_out:
                    if async_result.ready():
                        results[i] = async_result.get()
                    else:
                        todo.append(i)
                    continue
                try:
                    results[i] = async_result.get(timeout=timeout)
                except mp.TimeoutError:
                    log_warning(f"{label} {i} exceeded timeout={timeout}s; its proteins are marked failed")
                    timed_out = True
        finally:
            pool.terminate()
            pool.join()
        if todo:
            log_info(f"{label}: resubmitting {len(todo)} unfinished batches after terminating the pool")
    return results
