from isoflux.workflow.summarizers.aggregate import SummarizationStrategy


def get_summarizer(**kwargs) -> SummarizationStrategy:
    """
    Returns a summarization strategy for the given method.

    Valid methods:
        - "median": MedianAggregate (PSM → peptide → protein medians).
        - "mean": MeanAggregate.
        - "sum": SumAggregate (complete features only).
        - "ipqf": WeightedFeatureAggregate (quality-weighted PSM profiles, per Run).
    """
    method = kwargs.pop("method", "median")

    if method == "median":
        from isoflux.workflow.summarizers.aggregate import MedianAggregate
        return MedianAggregate()
    elif method == "mean":
        from isoflux.workflow.summarizers.aggregate import MeanAggregate
        return MeanAggregate()
    elif method == "sum":
        from isoflux.workflow.summarizers.aggregate import SumAggregate
        return SumAggregate()
    elif method == "ipqf":
        from isoflux.workflow.summarizers.weighted_feature import WeightedFeatureAggregate
        return WeightedFeatureAggregate()
    else:
        raise ValueError(f"Invalid summarization method: {method}.\n"
                         "Options: median, mean, sum, ipqf")
