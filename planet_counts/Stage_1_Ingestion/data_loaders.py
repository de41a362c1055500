"""
Stage 1: read the archive's CSV export, keep the modeling columns, validate
them and drop orbital-period outliers.
"""
from __future__ import annotations
import logging
from pathlib import Path
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
import pandera as pa

from planet_counts.config import (
    CATALOG_DELIMITER, CATALOG_SKIP_ROWS, HOST_COLUMN, ORBPER_COLUMN,
    ORBPER_LIMIT, PREDICTOR_COLUMNS, RESPONSE_COLUMN,
)
from planet_counts.errors import CatalogReadError, DataFormatError
from planet_counts.utils.monitor import monitor

log = logging.getLogger("stage1")


class OrbitalPeriodFilter:
    """
    Keep rows whose orbital period is strictly below `limit`.

    A missing period does not satisfy the predicate, so those rows go too;
    every surviving row has `column < limit`.
    """

    def __init__(self, column: str = ORBPER_COLUMN, limit: float = ORBPER_LIMIT):
        self.column = column
        self.limit = float(limit)

    def mask(self, df: pd.DataFrame) -> pd.Series:
        if self.column not in df.columns:
            raise DataFormatError("Outlier column missing", columns=[self.column])
        return df[self.column].lt(self.limit).fillna(False).astype(bool)

    def apply(self, df: pd.DataFrame) -> pd.DataFrame:
        keep = self.mask(df)
        dropped = int((~keep).sum())
        log.info(f"OrbitalPeriodFilter → dropped {dropped} rows with "
                 f"{self.column} >= {self.limit:g} or missing")
        return df.loc[keep].copy()

    def __repr__(self):
        return f"OrbitalPeriodFilter({self.column} < {self.limit:g})"


def build_catalog_schema(response: str = RESPONSE_COLUMN,
                         predictors: Sequence[str] = PREDICTOR_COLUMNS) -> pa.DataFrameSchema:
    """Numeric predictors (missing allowed) and an integer count response ≥ 1."""
    columns = {
        response: pa.Column(
            float,
            checks=[
                pa.Check.ge(1),
                pa.Check(lambda s: s.sub(s.round()).abs().lt(1e-8),
                         error="count must be integer-valued"),
            ],
            nullable=False,
            coerce=True,
        )
    }
    for col in predictors:
        columns[col] = pa.Column(float, nullable=True, coerce=True)
    return pa.DataFrameSchema(columns, strict=False)


def read_catalog(path: Union[str, Path],
                 skip_rows: int = CATALOG_SKIP_ROWS,
                 delimiter: str = CATALOG_DELIMITER) -> pd.DataFrame:
    """Raw read: skip the metadata block, take the next line as header."""
    path = Path(path)
    if skip_rows < 0:
        raise ValueError(f"skip_rows must be >= 0, got {skip_rows}")
    if not path.is_file():
        raise CatalogReadError(path, "file not found")
    try:
        df = pd.read_csv(path, skiprows=skip_rows, sep=delimiter,
                         low_memory=False)
    except pd.errors.EmptyDataError:
        raise DataFormatError(
            f"No header row after skipping {skip_rows} lines of '{path}'")
    except pd.errors.ParserError as e:
        raise DataFormatError(f"Malformed delimited text in '{path}': {e}")
    except (OSError, UnicodeDecodeError) as e:
        raise CatalogReadError(path, str(e)) from e
    log.info(f"Read {path.name}: {df.shape[0]} rows × {df.shape[1]} columns "
             f"(skipped {skip_rows} metadata lines)")
    return df


def validate_catalog(df: pd.DataFrame,
                     response: str = RESPONSE_COLUMN,
                     predictors: Sequence[str] = PREDICTOR_COLUMNS) -> pd.DataFrame:
    required = [response, *predictors]
    absent = [c for c in required if c not in df.columns]
    if absent:
        raise DataFormatError("Required columns absent from catalog", columns=absent)

    schema = build_catalog_schema(response, predictors)
    try:
        return schema.validate(df, lazy=True)
    except pa.errors.SchemaErrors as err:
        cases = err.failure_cases
        cols = sorted({str(c) for c in cases["column"].dropna()})
        rows = [int(i) for i in cases["index"].dropna().unique()
                if isinstance(i, (int, np.integer, float)) and float(i).is_integer()]
        raise DataFormatError("Catalog failed schema validation",
                              columns=cols, rows=rows) from err


@monitor(name="load_catalog", log_result=True)
def load_catalog(path: Union[str, Path],
                 skip_rows: int = CATALOG_SKIP_ROWS,
                 response: str = RESPONSE_COLUMN,
                 predictors: Sequence[str] = PREDICTOR_COLUMNS,
                 orbper_limit: float = ORBPER_LIMIT,
                 delimiter: str = CATALOG_DELIMITER,
                 deduplicate_hosts: bool = False,
                 outlier_filter: Optional[OrbitalPeriodFilter] = None) -> pd.DataFrame:
    """
    Produce the cleaned observation table.

    Raises CatalogReadError when the file cannot be read and DataFormatError
    when required columns are absent or not numeric. The source file is never
    touched.
    """
    predictors = list(predictors)
    raw = read_catalog(path, skip_rows=skip_rows, delimiter=delimiter)

    keep = [response, *predictors]
    if deduplicate_hosts:
        if HOST_COLUMN not in raw.columns:
            raise DataFormatError("Host deduplication requested but column missing",
                                  columns=[HOST_COLUMN])
        before = len(raw)
        raw = raw.drop_duplicates(subset=HOST_COLUMN, keep="first")
        log.info(f"Deduplicated hosts: {before} → {len(raw)} rows")

    outlier_filter = outlier_filter or OrbitalPeriodFilter(limit=orbper_limit)
    if outlier_filter.column not in keep:
        keep.append(outlier_filter.column)

    df = validate_catalog(raw, response, predictors)
    df = df.loc[:, [c for c in keep if c in df.columns]]

    cleaned = outlier_filter.apply(df)
    if cleaned.empty:
        raise DataFormatError(f"No rows left after {outlier_filter!r}")
    return cleaned.loc[:, [response, *predictors]].reset_index(drop=True)
