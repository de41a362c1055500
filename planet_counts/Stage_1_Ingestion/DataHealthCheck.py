"""Stage 1: pre-modeling health report on the cleaned catalog."""
import logging
from itertools import combinations

import numpy as np
import pandas as pd

log = logging.getLogger("stage1")


class CatalogHealthCheck:
    """
    Pre-modeling checks on the cleaned catalog. Results land in `self.results`
    as plain dicts so they can be logged or serialised next to the models.
    """

    def __init__(self, df: pd.DataFrame,
                 response: str = None,
                 corr_thresh: float = 0.9):
        self.df = df.copy()
        self.n_rows, self.n_cols = df.shape
        self.response = response
        self.corr_thresh = corr_thresh
        self.results = {}

    def _predictors(self) -> pd.DataFrame:
        num = self.df.select_dtypes(include=[np.number])
        if self.response and self.response in num:
            num = num.drop(columns=[self.response])
        return num

    def detect_dimensionality(self):
        complete = int(self.df.dropna().shape[0])
        self.results['dimensionality'] = {
            'n_rows': self.n_rows,
            'n_cols': self.n_cols,
            'complete_rows': complete,
            'rows_per_column': round(self.n_rows / max(self.n_cols, 1), 2),
        }

    def detect_missingness(self):
        miss = self.df.isna().mean().sort_values(ascending=False)
        self.results['missingness'] = {
            'overall_pct': float(miss.mean()),
            'by_column': {c: float(v) for c, v in miss.items() if v > 0},
        }

    def detect_skew(self):
        skew = self._predictors().skew().dropna()
        skew = skew.reindex(skew.abs().sort_values(ascending=False).index)
        self.results['skewness'] = {c: float(v) for c, v in skew.head(10).items()}

    def detect_outliers(self):
        out = {}
        num = self._predictors()
        for col in num.columns:
            vals = num[col].dropna()
            if vals.empty:
                continue
            q1, q3 = np.percentile(vals, [25, 75])
            iqr = q3 - q1
            low, high = q1 - 1.5 * iqr, q3 + 1.5 * iqr
            out[col] = int(((vals < low) | (vals > high)).sum())
        self.results['iqr_outliers'] = dict(
            sorted(out.items(), key=lambda kv: kv[1], reverse=True)[:10])

    def detect_collinearity(self):
        corr = self._predictors().corr().abs()
        pairs = [(i, j, corr.loc[i, j]) for i, j in combinations(corr.columns, 2)
                 if corr.loc[i, j] > self.corr_thresh]
        pairs = sorted(pairs, key=lambda x: x[2], reverse=True)[:10]
        self.results['collinearity'] = [
            {'pair': (i, j), 'corr': round(float(c), 3)} for i, j, c in pairs]

    def detect_response(self):
        if self.response and self.response in self.df:
            vc = self.df[self.response].value_counts().sort_index()
            self.results['response_counts'] = {int(k): int(v) for k, v in vc.items()}

    def run_all_checks(self) -> dict:
        self.detect_dimensionality()
        self.detect_missingness()
        self.detect_skew()
        self.detect_outliers()
        self.detect_collinearity()
        self.detect_response()
        d = self.results['dimensionality']
        log.info(f"Health check: {d['n_rows']} rows, {d['complete_rows']} complete, "
                 f"{len(self.results['missingness']['by_column'])} columns with gaps, "
                 f"{len(self.results['collinearity'])} pairs with |r| > {self.corr_thresh}")
        return self.results
