from typing import Any, List, Union

from isoflux.workflow.normalizers.base import IdentityNormalizer, NormalizationStrategy


def get_normalizer(**kwargs) -> NormalizationStrategy:
    """
    Returns a normalization strategy for the given method.

    Valid methods:
        - "raking": RakingNormalizer (iterative proportional fitting, per Run).
        - "median_sweep": MedianSweepNormalizer (rows / columns / both).
        - "quantile": QuantileNormalizer (per Run or global).
        - "mean_sweep": MeanSweepNormalizer (ANOVA-style, log2 only).
        - "mixed_model": MixedModelResidualNormalizer (REML residuals, log2 only).
        - "none": IdentityNormalizer.

    Remaining kwargs are passed to the constructors.
    """
    method = kwargs.pop("method", None)

    if method == "raking":
        from isoflux.workflow.normalizers.raking import RakingNormalizer
        return RakingNormalizer(
            tol=kwargs.get("tol", 1e-5),
            max_iter=kwargs.get("max_iter", 50),
            n_jobs=kwargs.get("n_jobs", 1),
        )
    elif method == "median_sweep":
        from isoflux.workflow.normalizers.median_sweep import MedianSweepNormalizer
        return MedianSweepNormalizer(
            operator=kwargs.get("operator"),
            axis=kwargs.get("axis", "rows"),
            scope=kwargs.get("scope", "run"),
            max_iter=kwargs.get("max_iter", 20),
            tol=kwargs.get("tol", 1e-8),
            n_jobs=kwargs.get("n_jobs", 1),
        )
    elif method == "quantile":
        from isoflux.workflow.normalizers.quantile import QuantileNormalizer
        return QuantileNormalizer(
            scope=kwargs.get("scope", "run"),
            grand_average=kwargs.get("grand_average"),
            n_jobs=kwargs.get("n_jobs", 1),
        )
    elif method == "mean_sweep":
        from isoflux.workflow.normalizers.mean_sweep import MeanSweepNormalizer
        return MeanSweepNormalizer(
            remove_feature_effect=kwargs.get("remove_feature_effect", False),
            n_jobs=kwargs.get("n_jobs", 1),
        )
    elif method == "mixed_model":
        from isoflux.workflow.normalizers.mixed_model_residual import MixedModelResidualNormalizer
        return MixedModelResidualNormalizer(
            grouping=kwargs.get("grouping", "protein"),
            method=kwargs.get("optimizer", "lbfgs"),
            max_iter=kwargs.get("max_iter", 200),
        )
    elif method in (None, "none"):
        return IdentityNormalizer()
    else:
        raise ValueError(f"Invalid normalization method: {method}.\n"
                         "Options: raking, median_sweep, quantile, mean_sweep, mixed_model, none")


def get_normalizers(steps: Union[None, str, dict, List[Any]], n_jobs: int = 1) -> List[NormalizationStrategy]:
    """Build a chain of normalizers from a config entry (name, dict, or list of either)."""
    if steps is None:
        return []
    if isinstance(steps, (str, dict)):
        steps = [steps]

    chain = []
    for step in steps:
        cfg = {"method": step} if isinstance(step, str) else dict(step)
        cfg.setdefault("n_jobs", n_jobs)
        chain.append(get_normalizer(**cfg))
    return chain
