"""Stage 5: variance inflation factors for the predictors a reduced model keeps."""
import logging
from typing import Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.stats.outliers_influence import variance_inflation_factor

from planet_counts.config import VIF_THRESHOLD
from planet_counts.errors import DataFormatError

log = logging.getLogger("stage5")


def variance_inflation_factors(table: pd.DataFrame,
                               predictors: Sequence[str],
                               threshold: float = VIF_THRESHOLD) -> pd.DataFrame:
    """
    VIF of each predictor: regress it on the other predictors plus an
    intercept, VIF = 1 / (1 - R²). An exact linear combination gives inf.
    `flagged` marks VIF > threshold.
    """
    predictors = list(predictors)
    out = pd.DataFrame(columns=["vif", "flagged"], index=pd.Index(predictors, name="predictor"))
    if not predictors:
        return out.astype({"vif": float, "flagged": bool})

    absent = [p for p in predictors if p not in table.columns]
    if absent:
        raise DataFormatError("VIF predictors absent from table", columns=absent)
    X = table.loc[:, predictors].astype(float)
    if X.isna().values.any():
        raise DataFormatError("VIF needs complete predictors",
                              columns=[c for c in predictors if X[c].isna().any()])

    if len(predictors) == 1:
        vifs = [1.0]
    else:
        Xc = sm.add_constant(X, has_constant="add", prepend=True).to_numpy()
        with np.errstate(divide="ignore", invalid="ignore"):
            vifs = [float(variance_inflation_factor(Xc, i + 1))
                    for i in range(len(predictors))]
        vifs = [np.inf if np.isnan(v) else v for v in vifs]

    out["vif"] = vifs
    out["flagged"] = out["vif"] > threshold
    out = out.astype({"vif": float, "flagged": bool})

    flagged = out.index[out["flagged"]].tolist()
    if flagged:
        log.warning(f"VIF > {threshold:g} (multicollinearity): "
                    + ", ".join(f"{p}={out.at[p, 'vif']:.1f}" for p in flagged))
    else:
        log.info(f"No predictor exceeds VIF {threshold:g}")
    return out


def vif_for_model(model, threshold: float = VIF_THRESHOLD) -> pd.DataFrame:
    """VIF over the predictors a fitted count model retains, on its own table."""
    return variance_inflation_factors(model.data, model.predictors, threshold)
