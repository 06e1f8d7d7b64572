from typing import Any


def get_tester(**kwargs) -> Any:
    """
    Returns a differential test engine based on the given method.

    Valid methods:
        - "moderated_t": limma-style moderated t-test (eBayes).
        - "ranksum": Mann-Whitney U per protein.
        - "permutation": difference-in-means permutation test.
        - "mixed_model": per-protein SIGNAL ~ CONDITION + (1|SAMPLE), OLS fallback.
        - "anova": per-protein fixed-effects model only.

    kwargs are passed to the engine constructors.
    """
    method = kwargs.pop("method", "moderated_t")

    if method == "moderated_t":
        from isoflux.analysis.moderated_ttest import ModeratedTTest
        return ModeratedTTest(
            ebayes_method=kwargs.get("ebayes_method", "limma"),
            min_reference=kwargs.get("min_reference", 1e-8),
        )
    elif method == "ranksum":
        from isoflux.analysis.nonparametric import RankSumTest
        return RankSumTest()
    elif method == "permutation":
        from isoflux.analysis.nonparametric import PermutationTest
        return PermutationTest(
            n_permutations=kwargs.get("n_permutations", 1000),
            seed=kwargs.get("seed", 42),
            batch_size=kwargs.get("batch_size", 200),
            n_jobs=kwargs.get("n_jobs", 1),
            timeout=kwargs.get("timeout"),
        )
    elif method in ("mixed_model", "anova"):
        from isoflux.analysis.mixed_model_test import MixedModelTest
        return MixedModelTest(
            use_mixed=(method == "mixed_model"),
            batch_size=kwargs.get("batch_size", 50),
            n_jobs=kwargs.get("n_jobs", 1),
            timeout=kwargs.get("timeout"),
            min_reference=kwargs.get("min_reference", 1e-8),
        )
    else:
        raise ValueError(
            f"Invalid test method: {method}. "
            "Options: moderated_t, ranksum, permutation, mixed_model, anova."
        )
