#!/usr/bin/env python3
"""
perfkit.py
────────────────────────────────────────────────────────
Timing and fan-out for the pipeline runner

  ⏱  @perfclass      – one StepTiming per call of a public runner method
  ⚙️  ParallelMixin   – joblib map over independent model fits

Environment
  FAST_MODE=1           record nothing
  MAX_RAM_FRACTION=95   refuse to start a step above this RAM usage (%)
  PERF_N_JOBS=4         n_jobs when the runner is built with n_jobs=None
                        (a value with a dot is a fraction of the cores)
"""
from __future__ import annotations
import os
import time
import functools
import inspect
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Sequence, Union

import pandas as pd
import psutil
from joblib import Parallel, cpu_count, delayed

log = logging.getLogger("perfkit")

_MB = 2 ** 20


def _flag(name: str) -> bool:
    return os.getenv(name, "0").lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class StepTiming:
    method: str
    seconds: float
    rss_mb: float
    delta_mb: float


def _guard_memory():
    limit = float(os.getenv("MAX_RAM_FRACTION", "95"))
    used = psutil.virtual_memory().percent
    if used > limit:
        raise MemoryError(f"RAM usage {used:.1f}% is above MAX_RAM_FRACTION={limit:g}%")


# ═══════════════════════════════════════════════════════════════
# 1 ▸  @perfclass
# ═══════════════════════════════════════════════════════════════
def perfclass(skip: Callable[[str], bool] = lambda m: m.startswith("_")):
    """
    Class decorator: every public method appends a StepTiming to
    `self._perf_log`. Adds `perf_report()` (per-method totals, slowest
    first) and `export_perf_json(path)`.
    """
    def decorate(cls):
        proc = psutil.Process(os.getpid())
        wrapped_init = cls.__init__

        @functools.wraps(wrapped_init)
        def __init__(self, *a, **kw):
            self._perf_log: List[StepTiming] = []
            wrapped_init(self, *a, **kw)

        def timed(name, fn):
            @functools.wraps(fn)
            def call(self, *a, **kw):
                _guard_memory()
                rss0 = proc.memory_info().rss
                t0 = time.perf_counter()
                result = fn(self, *a, **kw)
                if not _flag("FAST_MODE"):
                    rss1 = proc.memory_info().rss
                    self._perf_log.append(StepTiming(
                        method=name,
                        seconds=time.perf_counter() - t0,
                        rss_mb=round(rss1 / _MB, 1),
                        delta_mb=round((rss1 - rss0) / _MB, 3),
                    ))
                return result
            return call

        for attr, member in list(vars(cls).items()):
            if inspect.isfunction(member) and not skip(attr):
                setattr(cls, attr, timed(attr, member))
        cls.__init__ = __init__

        def perf_report(self) -> List[Dict[str, Any]]:
            if not self._perf_log:
                return []
            frame = pd.DataFrame([asdict(t) for t in self._perf_log])
            totals = frame.groupby("method", sort=False).agg(
                calls=("seconds", "size"),
                seconds=("seconds", "sum"),
                mem_peak_mb=("rss_mb", "max"),
                mem_delta_mb=("delta_mb", "sum"),
            ).sort_values("seconds", ascending=False)
            return [
                dict(method=str(method), calls=int(row.calls),
                     seconds=round(float(row.seconds), 3),
                     mem_peak_mb=round(float(row.mem_peak_mb), 1),
                     mem_delta_mb=round(float(row.mem_delta_mb), 3))
                for method, row in totals.iterrows()
            ]

        def export_perf_json(self, path: str = "perf_log.json"):
            with open(path, "w") as fh:
                json.dump(self.perf_report(), fh, indent=2)
            log.info("Step timings written → %s", path)

        cls.perf_report = perf_report
        cls.export_perf_json = export_perf_json
        return cls

    return decorate


# ═══════════════════════════════════════════════════════════════
# 2 ▸  ParallelMixin
# ═══════════════════════════════════════════════════════════════
def resolve_n_jobs(n_jobs: Union[int, float, None]) -> int:
    """None → PERF_N_JOBS or 1; a float is a share of the cores; never below 1."""
    if n_jobs is None:
        raw = os.getenv("PERF_N_JOBS")
        if not raw:
            return 1
        try:
            n_jobs = float(raw) if "." in raw else int(raw)
        except ValueError as err:
            raise ValueError(f"PERF_N_JOBS must be a number, got {raw!r}") from err
    if isinstance(n_jobs, float):
        n_jobs = int(cpu_count() * n_jobs)
    return max(int(n_jobs), 1)


class ParallelMixin:
    """
    `parallel_map(fn, items)` returns `[fn(x) for x in items]`, in order,
    spreading the calls over `n_jobs` joblib workers (threads by default).
    With one job or one item the calls run inline.
    """

    def __init__(self, *a, n_jobs: Union[int, float, None] = None, **kw):
        super().__init__(*a, **kw)
        self._n_jobs = resolve_n_jobs(n_jobs)

    @property
    def n_jobs(self) -> int:
        return self._n_jobs

    def parallel_map(self, fn: Callable[[Any], Any], items: Sequence[Any], *,
                     prefer: str = "threads") -> List[Any]:
        items = list(items)
        workers = min(self._n_jobs, len(items))
        if workers <= 1:
            return [fn(x) for x in items]
        log.debug("parallel_map: %d tasks on %d %s", len(items), workers, prefer)
        return list(Parallel(n_jobs=workers, prefer=prefer)(delayed(fn)(x) for x in items))
