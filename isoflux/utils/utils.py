import logging
import time
from contextlib import contextmanager
from functools import wraps

import numpy as np
import polars as pl

logger = logging.getLogger("isoflux")
if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%H:%M:%S"))
    logger.addHandler(_handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

_indent_level = 0


def _indent(msg: str) -> str:
    return "  " * _indent_level + str(msg)


def log_info(msg: str) -> None:
    logger.info(_indent(msg))


def log_warning(msg: str) -> None:
    logger.warning(_indent(msg))


@contextmanager
def log_indent():
    """Indent every message logged inside the block by one level."""
    global _indent_level
    _indent_level += 1
    try:
        yield
    finally:
        _indent_level -= 1


def log_time(label: str):
    """Decorator logging start and wall time of a pipeline step."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            log_info(f"{label}...")
            start = time.perf_counter()
            with log_indent():
                result = func(*args, **kwargs)
            log_info(f"{label} done in {time.perf_counter() - start:.2f}s")
            return result
        return wrapper
    return decorator


def polars_matrix_to_numpy(df: pl.DataFrame, columns: list) -> np.ndarray:
    """Float matrix of `columns`, nulls mapped to NaN."""
    return (
        df.select([pl.col(c).cast(pl.Float64) for c in columns])
        .fill_null(np.nan)
        .to_numpy()
    )
