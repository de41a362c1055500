#!/usr/bin/env python3
"""
Stage 2: two parallel answers to the missing-value problem

  • drop_incomplete – listwise deletion over the modeling columns.
  • impute_knn      – k-nearest-neighbour imputation on standardised columns.

Both are pure functions of the cleaned table; build_table_variants applies
them to the same input so the downstream fits compare like with like.
"""
from __future__ import annotations
import logging
from typing import Dict, List, Optional, Sequence

import pandas as pd
from sklearn.impute import KNNImputer
from sklearn.preprocessing import StandardScaler

from planet_counts.config import KNN_NEIGHBORS, KNN_WEIGHTS
from planet_counts.errors import DataFormatError, ImputationError
from planet_counts.utils.monitor import monitor

log = logging.getLogger("stage2")

ROW_REMOVED = "row_removed"
IMPUTED = "imputed"
VARIANTS = (ROW_REMOVED, IMPUTED)


def _modeling_columns(table: pd.DataFrame,
                      columns: Optional[Sequence[str]]) -> List[str]:
    cols = list(table.columns) if columns is None else list(columns)
    absent = [c for c in cols if c not in table.columns]
    if absent:
        raise DataFormatError("Modeling columns absent from table", columns=absent)
    return cols


class MissingnessAnalyzer:
    """Per-column missingness summary, logged before the variants are built."""

    @staticmethod
    def summary(table: pd.DataFrame,
                columns: Optional[Sequence[str]] = None) -> Dict[str, object]:
        cols = _modeling_columns(table, columns)
        na = table[cols].isna()
        per_col = {
            col: {
                "missing": int(na[col].sum()),
                "fraction_missing": float(na[col].mean()) if len(table) else 0.0,
            }
            for col in cols
        }
        complete = int((~na.any(axis=1)).sum())
        result = {
            "n_rows": int(len(table)),
            "complete_rows": complete,
            "columns": per_col,
        }
        gaps = {c: v["missing"] for c, v in per_col.items() if v["missing"]}
        log.info(f"MissingnessAnalyzer → {complete}/{len(table)} complete rows; "
                 f"gaps: {gaps or 'none'}")
        return result


def drop_incomplete(table: pd.DataFrame,
                    columns: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """
    Remove every row with a missing cell in any modeling column.

    Surviving rows keep their order and index labels, so applying the
    function to its own output returns an equal table.
    """
    cols = _modeling_columns(table, columns)
    keep = table[cols].notna().all(axis=1)
    out = table.loc[keep].copy()
    log.info(f"drop_incomplete → kept {len(out)}/{len(table)} rows")
    return out


def impute_knn(table: pd.DataFrame,
               k: int = KNN_NEIGHBORS,
               columns: Optional[Sequence[str]] = None,
               weights: str = KNN_WEIGHTS) -> pd.DataFrame:
    """
    Fill each missing cell with the (optionally distance-weighted) mean of the
    k nearest donor rows that observe that column.

    Distances are Euclidean over the standardised coordinates both rows
    observe (`nan_euclidean`). With fewer than k donors all of them are used.
    Observed cells are returned untouched; only the gaps change.

    Raises ImputationError when a column has no observed value at all.
    """
    if k < 1:
        raise ValueError(f"k must be >= 1, got {k}")
    if weights not in {"uniform", "distance"}:
        raise ValueError(f"weights must be 'uniform' or 'distance', got {weights!r}")

    cols = _modeling_columns(table, columns)
    non_numeric = [c for c in cols if not pd.api.types.is_numeric_dtype(table[c])]
    if non_numeric:
        raise DataFormatError("KNN imputation needs numeric columns",
                              columns=non_numeric)

    out = table.copy()
    block = table[cols].astype(float)
    na = block.isna()

    for col in cols:
        if na[col].all():
            raise ImputationError(col, "every value is missing, no donor can supply one")

    if not na.values.any():
        log.info("impute_knn → nothing to impute")
        return out

    scaler = StandardScaler()
    scaled = scaler.fit_transform(block.values)

    imputer = KNNImputer(n_neighbors=k, weights=weights,
                         metric="nan_euclidean", keep_empty_features=True)
    filled = scaler.inverse_transform(imputer.fit_transform(scaled))
    filled = pd.DataFrame(filled, index=block.index, columns=cols)

    out[cols] = block.where(~na, filled)

    leftover = out[cols].isna().sum()
    leftover = leftover[leftover > 0]
    if not leftover.empty:
        col = str(leftover.index[0])
        rows = out.index[out[col].isna()].tolist()
        raise ImputationError(col, f"{len(rows)} cells left unfilled (rows {rows[:10]})")

    log.info(f"impute_knn → filled {int(na.values.sum())} cells across "
             f"{int(na.any(axis=1).sum())} rows (k={k}, weights={weights})")
    return out


@monitor(name="build_table_variants", track_input_size=True)
def build_table_variants(table: pd.DataFrame,
                         k: int = KNN_NEIGHBORS,
                         columns: Optional[Sequence[str]] = None,
                         weights: str = KNN_WEIGHTS) -> Dict[str, pd.DataFrame]:
    """Both variants from one cleaned table, keyed by variant name."""
    cols = _modeling_columns(table, columns)
    source = table.loc[:, cols]
    MissingnessAnalyzer.summary(source)
    variants = {
        ROW_REMOVED: drop_incomplete(source),
        IMPUTED: impute_knn(source, k=k, weights=weights),
    }
    if variants[ROW_REMOVED].empty:
        raise DataFormatError("Every row has a missing modeling cell; "
                              "row removal leaves nothing to fit")
    return variants
