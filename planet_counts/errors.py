"""
Error taxonomy for the planet-count pipeline.

Every error aborts the stage that raised it and carries enough context
(path, column, row, family, iteration count) to diagnose the failure.
"""
from __future__ import annotations
from typing import Optional, Sequence


class PipelineError(Exception):
    """Base class for every failure raised by a pipeline stage."""


class CatalogReadError(PipelineError, IOError):
    def __init__(self, path, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Cannot read catalog '{self.path}': {reason}")


class DataFormatError(PipelineError, ValueError):
    def __init__(self, message: str,
                 columns: Optional[Sequence[str]] = None,
                 rows: Optional[Sequence[int]] = None):
        self.columns = list(columns or [])
        self.rows = list(rows or [])
        detail = message
        if self.columns:
            detail += f" (columns: {', '.join(map(str, self.columns))})"
        if self.rows:
            shown = ", ".join(map(str, self.rows[:10]))
            more = "" if len(self.rows) <= 10 else f", … {len(self.rows) - 10} more"
            detail += f" (rows: {shown}{more})"
        super().__init__(detail)


class ImputationError(PipelineError, ValueError):
    def __init__(self, column: str, reason: str):
        self.column = column
        super().__init__(f"Cannot impute column '{column}': {reason}")


class ConvergenceError(PipelineError, RuntimeError):
    def __init__(self, family: str, iterations: int, formula: str = "",
                 stage: str = "IRLS"):
        self.family = family
        self.iterations = iterations
        self.formula = formula
        self.stage = stage
        msg = (f"{family} fit did not converge after {iterations} "
               f"{stage} iterations")
        if formula:
            msg += f" [{formula}]"
        super().__init__(msg)
