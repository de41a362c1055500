# utils/monitor.py

import functools
import inspect
import logging
import time
import tracemalloc

import numpy as np
import pandas as pd
import psutil

logger = logging.getLogger("PipelineMonitor")

_MB = 1024 ** 2


def frame_megabytes(value):
    """Size of a DataFrame/Series/ndarray argument in MB; None for anything else."""
    if isinstance(value, (pd.DataFrame, pd.Series)):
        usage = value.memory_usage(deep=True)
        return float(np.sum(usage)) / _MB
    if isinstance(value, np.ndarray):
        return value.nbytes / _MB
    return None


def _describe(result):
    shape = getattr(result, "shape", None)
    kind = type(result).__name__
    return f"{kind} {shape}" if shape is not None else kind


def monitor(name: str = None,
            log_result: bool = False,
            track_memory: bool = False,
            track_input_size: bool = False,
            enabled: bool = True):
    """
    Logging decorator for pipeline steps: start/finish lines, wall-clock,
    optional table sizes, result shape and peak memory.

    Failures are logged with the elapsed time and re-raised untouched; the
    pipeline never retries a step on its own.
    """

    def decorator(func):
        if not enabled:
            return func
        step = name or func.__name__
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            logger.info(f"[{step}] STARTED")
            if track_input_size:
                bound = signature.bind(*args, **kwargs)
                sizes = {arg: f"{mb:.2f} MB" for arg, mb in
                         ((arg, frame_megabytes(v)) for arg, v in bound.arguments.items())
                         if mb is not None}
                logger.info(f"[{step}] Table sizes: {sizes}")

            # an outer tracing session (python -X tracemalloc) is left running
            owns_trace = track_memory and not tracemalloc.is_tracing()
            if owns_trace:
                tracemalloc.start()
            traced_before = tracemalloc.get_traced_memory()[0] if track_memory else 0
            began = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                logger.error(f"[{step}] FAILED after {time.perf_counter() - began:.2f}s "
                             f"({type(exc).__name__}: {exc})")
                raise
            finally:
                if track_memory:
                    current, peak = tracemalloc.get_traced_memory()
                    if owns_trace:
                        tracemalloc.stop()
                        logger.info(f"[{step}] Peak traced memory: {peak / _MB:.2f} MB")
                    else:
                        logger.info(f"[{step}] Net traced memory: "
                                    f"{(current - traced_before) / _MB:+.2f} MB")

            logger.info(f"[{step}] SUCCESS in {time.perf_counter() - began:.2f}s")
            if log_result:
                logger.info(f"[{step}] Returned {_describe(result)}")
            logger.debug(f"[{step}] CPU {psutil.cpu_percent(interval=None):.1f}% | "
                         f"RAM {psutil.virtual_memory().percent:.1f}%")
            return result

        return wrapper
    return decorator
