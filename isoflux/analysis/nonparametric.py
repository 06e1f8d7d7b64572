"""Rank-sum and permutation tests on summarized protein values, one contrast at a time."""

import warnings
from typing import Optional

import numpy as np
from scipy.stats import mannwhitneyu

from isoflux.analysis.engine import DifferentialTestEngine, protein_batches, run_batches
from isoflux.analysis.stats_ops import bh_qvalues, ratio_logfc
from isoflux.analysis.testresult import TestResult
from isoflux.dataset.quanttable import Design, QuantTable
from isoflux.utils.utils import log_info, log_time


class _TwoGroupTest(DifferentialTestEngine):
    """Shared loop: for each contrast, compare condition samples to reference samples."""

    min_per_group = 2

    def _contrast(self, Y_cond: np.ndarray, Y_ref: np.ndarray):
        """Returns (statistic, p, model) per protein for one contrast."""
        raise NotImplementedError

    def test(self, table: QuantTable, design: Design) -> TestResult:
        Y, proteins, conditions = self._protein_matrix(table, design)
        contrasts = [(name, cond) for name, cond in design.contrasts if cond in set(conditions)]
        n = len(proteins)
        shape = (n, len(contrasts))
        stat, p = np.full(shape, np.nan), np.full(shape, np.nan)
        logfc, unstable = np.full(shape, np.nan), np.zeros(shape, dtype=bool)
        model = np.full(shape, self.name, dtype=object)

        ref_mask = conditions == design.reference
        for j, (name, cond) in enumerate(contrasts):
            Y_cond, Y_ref = Y[conditions == cond], Y[ref_mask]
            stat[:, j], p[:, j], model[:, j] = self._contrast(Y_cond, Y_ref)

            with warnings.catch_warnings():
                warnings.filterwarnings("ignore", category=RuntimeWarning)
                if table.scale.is_additive:
                    logfc[:, j] = self._location(Y_cond) - self._location(Y_ref)
                else:
                    m_ref = np.nanmean(Y_ref, axis=0)
                    logfc[:, j], unstable[:, j] = ratio_logfc(
                        m_ref, np.nanmean(Y_cond, axis=0) - m_ref,
                        feature_ids=proteins, label=f"{self.name} {name}",
                    )

        return TestResult.from_matrices(
            proteins,
            [name for name, _ in contrasts],
            logfc=logfc,
            statistic=stat,
            p_value=p,
            q_value=bh_qvalues(p),
            unstable=unstable,
            model=model,
            method=self.name,
        )

    @staticmethod
    def _location(Y: np.ndarray) -> np.ndarray:
        return np.nanmedian(Y, axis=0)


class RankSumTest(_TwoGroupTest):
    """Two-sided Mann–Whitney U; logFC is the difference of group medians on log2 data."""

    name = "ranksum"

    def _contrast(self, Y_cond, Y_ref):
        n = Y_cond.shape[1]
        stat, p = np.full(n, np.nan), np.full(n, np.nan)
        model = np.full(n, self.name, dtype=object)
        for i in range(n):
            a = Y_cond[:, i][np.isfinite(Y_cond[:, i])]
            b = Y_ref[:, i][np.isfinite(Y_ref[:, i])]
            if a.size < self.min_per_group or b.size < self.min_per_group:
                model[i] = "insufficient"
                continue
            res = mannwhitneyu(a, b, alternative="two-sided")
            stat[i], p[i] = res.statistic, res.pvalue
        return stat, p, model

    @log_time("Rank-sum test")
    def test(self, table: QuantTable, design: Design) -> TestResult:
        return super().test(table, design)


def _permutation_batch(Y_cond: np.ndarray, Y_ref: np.ndarray, indices: np.ndarray, n_permutations: int, seed: int):
    """Difference-in-means permutation p-values for proteins `indices`."""
    stat = np.full(len(indices), np.nan)
    p = np.full(len(indices), np.nan)
    for k, i in enumerate(indices):
        a = Y_cond[:, i][np.isfinite(Y_cond[:, i])]
        b = Y_ref[:, i][np.isfinite(Y_ref[:, i])]
        if a.size < 2 or b.size < 2:
            continue
        pooled = np.concatenate([a, b])
        observed = a.mean() - b.mean()

        # stream seeded by (seed, protein) so batching does not change results
        rng = np.random.default_rng([seed, int(i)])
        perms = np.argsort(rng.random((n_permutations, pooled.size)), axis=1)
        shuffled = pooled[perms]
        null = shuffled[:, : a.size].mean(axis=1) - shuffled[:, a.size:].mean(axis=1)

        stat[k] = observed
        p[k] = (1 + np.sum(np.abs(null) >= np.abs(observed) - 1e-12)) / (1 + n_permutations)
    return stat, p


class PermutationTest(_TwoGroupTest):
    """
    Label-permutation test of the difference in means.

    p = (1 + #{|null| >= |observed|}) / (1 + n_permutations). Proteins are
    processed in batches; a batch running longer than `timeout` seconds
    is killed and its proteins get NaN with model="timeout".
    """

    name = "permutation"

    def __init__(
        self,
        n_permutations: int = 1000,
        seed: int = 42,
        batch_size: int = 200,
        n_jobs: int = 1,
        timeout: Optional[float] = None,
    ):
        if n_permutations < 1:
            raise ValueError(f"n_permutations must be ≥1, got {n_permutations}")
        self.n_permutations = int(n_permutations)
        self.seed = int(seed)
        self.batch_size = batch_size
        self.n_jobs = max(int(n_jobs or 1), 1)
        self.timeout = timeout

    @staticmethod
    def _location(Y: np.ndarray) -> np.ndarray:
        return np.nanmean(Y, axis=0)

    def _contrast(self, Y_cond, Y_ref):
        n = Y_cond.shape[1]
        stat, p = np.full(n, np.nan), np.full(n, np.nan)
        model = np.full(n, self.name, dtype=object)

        batches = protein_batches(n, self.batch_size)
        args = [(Y_cond, Y_ref, idx, self.n_permutations, self.seed) for idx in batches]
        results = run_batches(_permutation_batch, args, n_jobs=self.n_jobs, timeout=self.timeout, label="permutation batch")
        for idx, res in zip(batches, results):
            if res is None:
                model[idx] = "timeout"
                continue
            stat[idx], p[idx] = res
        return stat, p, model

    @log_time("Permutation test")
    def test(self, table: QuantTable, design: Design) -> TestResult:
        log_info(f"n_permutations={self.n_permutations}, seed={self.seed}, n_jobs={self.n_jobs}")
        return super().test(table, design)

    def __repr__(self) -> str:
        return f"PermutationTest(n_permutations={self.n_permutations}, seed={self.seed})"
