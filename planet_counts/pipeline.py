#!/usr/bin/env python3
"""
pipeline.py

Threads the five stages together. Every stage returns new objects and the
runner only passes them forward:

  load → health check → table variants → model grid → evaluation
       → missing-data decision → family decision → stepwise (both ways)
       → selection decision → VIF → PipelineResult
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd

from planet_counts.config import PipelineConfig
from planet_counts.Stage_1_Ingestion.data_loaders import load_catalog
from planet_counts.Stage_1_Ingestion.DataHealthCheck import CatalogHealthCheck
from planet_counts.Stage_2_Missing_Data.Missing_Imputer import build_table_variants
from planet_counts.Stage_3_Count_Models.count_models import (
    FAMILIES, NEGATIVE_BINOMIAL, POISSON, CountFormula, FittedCountModel,
    fit_model_grid,
)
from planet_counts.Stage_4_Evaluation.evaluation import (
    EvaluationRecord, FamilyDecision, MissingDataDecision, choose_family,
    choose_missing_data_strategy, comparison_table, evaluate_model,
    residual_frame,
)
from planet_counts.Stage_5_Feature_Selection.feature_selection import (
    BACKWARD, FORWARD, SelectionDecision, SelectionResult, choose_selection,
    stepwise_select,
)
from planet_counts.Stage_5_Feature_Selection.vif import vif_for_model
from planet_counts.utils.monitor import monitor
from planet_counts.utils.perfkit import ParallelMixin, perfclass

log = logging.getLogger("RunPipeline")

ModelKey = Tuple[str, str]


def _num(value) -> Optional[float]:
    """JSON-safe float: non-finite values become None."""
    value = float(value)
    return value if np.isfinite(value) else None


@dataclass(frozen=True, eq=False)
class PipelineResult:
    config: PipelineConfig
    cleaned: pd.DataFrame = field(repr=False)
    health: Dict[str, object] = field(repr=False)
    variants: Dict[str, pd.DataFrame] = field(repr=False)
    models: Dict[ModelKey, FittedCountModel] = field(repr=False)
    records: Dict[ModelKey, EvaluationRecord] = field(repr=False)
    missing_data_decision: MissingDataDecision
    family_decision: Optional[FamilyDecision]
    backward: SelectionResult = field(repr=False)
    forward: SelectionResult = field(repr=False)
    selection_decision: SelectionDecision
    vif: Dict[str, pd.DataFrame] = field(repr=False)

    @property
    def selected_model(self) -> FittedCountModel:
        """The full-formula model picked by the two decisions."""
        return self.models[(self.missing_data_decision.variant,
                            self.family_decision.family if self.family_decision
                            else self.config.families[0])]

    @property
    def final_model(self) -> FittedCountModel:
        return self.selection_decision.chosen.model

    def comparison(self) -> pd.DataFrame:
        return comparison_table(self.records.values())

    def residuals(self, key: ModelKey) -> pd.DataFrame:
        return residual_frame(self.models[key])

    def _model_entry(self, model: FittedCountModel, vif: pd.DataFrame) -> Dict[str, object]:
        record = evaluate_model(model)
        return {
            "family": model.family,
            "variant": model.variant,
            "formula": str(model.formula),
            "n_obs": model.n_obs,
            "coefficients": {
                name: {k: _num(v) for k, v in stats.items()}
                for name, stats in model.coefficient_mapping().items()
            },
            "deviance": _num(model.deviance),
            "df_resid": _num(model.df_resid),
            "null_deviance": _num(model.null_deviance),
            "df_null": _num(model.df_null),
            "aic": _num(model.aic),
            "alpha": _num(model.alpha),
            "dispersion_ratio": _num(record.dispersion_ratio),
            "gof_pvalue": _num(record.gof_pvalue),
            "vif": {p: _num(v) for p, v in vif["vif"].items()},
            "vif_flagged": [p for p, f in vif["flagged"].items() if f],
        }

    def to_payload(self) -> Dict[str, object]:
        """The output contract handed to the (external) reporter."""
        threshold = self.config.vif_threshold
        fitted = {}
        for key, model in self.models.items():
            fitted[model.label] = self._model_entry(model, vif_for_model(model, threshold))
        reduced = {
            sel.direction: dict(self._model_entry(sel.model, self.vif[sel.direction]),
                                steps=sel.trace())
            for sel in (self.backward, self.forward)
        }
        return {
            "rows": {"cleaned": int(len(self.cleaned)),
                     **{v: int(len(t)) for v, t in self.variants.items()}},
            "models": fitted,
            "reduced_models": reduced,
            "decisions": {
                "missing_data": self.missing_data_decision.as_dict(),
                "family": self.family_decision.as_dict() if self.family_decision else None,
                "selection": self.selection_decision.as_dict(),
            },
            "final_model": self.selection_decision.direction,
        }


@perfclass()
class CountModelPipeline(ParallelMixin):
    """
    Runs the whole analysis for one PipelineConfig. The instance holds only
    configuration and the perf log; data flows through return values.
    """

    def __init__(self, config: Optional[PipelineConfig] = None, n_jobs=None):
        self.config = config or PipelineConfig()
        unknown = [f for f in self.config.families if f not in FAMILIES]
        if unknown or not self.config.families:
            raise ValueError(f"families must be drawn from {FAMILIES}, got "
                             f"{self.config.families}")
        super().__init__(n_jobs=self.config.n_jobs if n_jobs is None else n_jobs)

    @property
    def formula(self) -> CountFormula:
        return CountFormula(self.config.response, tuple(self.config.predictors))

    @property
    def comparison_family(self) -> str:
        return POISSON if POISSON in self.config.families else self.config.families[0]

    # ── stages ───────────────────────────────────────────────────────────────

    def load(self, path: Union[str, Path]) -> pd.DataFrame:
        c = self.config
        return load_catalog(path, skip_rows=c.skip_rows, response=c.response,
                            predictors=c.predictors, orbper_limit=c.orbper_limit,
                            delimiter=c.delimiter,
                            deduplicate_hosts=c.deduplicate_hosts)

    def health_check(self, table: pd.DataFrame) -> Dict[str, object]:
        return CatalogHealthCheck(table, response=self.config.response).run_all_checks()

    def build_variants(self, table: pd.DataFrame) -> Dict[str, pd.DataFrame]:
        return build_table_variants(table, k=self.config.knn_neighbors,
                                    columns=self.formula.columns,
                                    weights=self.config.knn_weights)

    def fit_models(self, variants: Mapping[str, pd.DataFrame]) -> Dict[ModelKey, FittedCountModel]:
        return fit_model_grid(variants, self.config.families, self.formula,
                              max_iter=self.config.max_iter, tol=self.config.tol,
                              n_jobs=self.n_jobs)

    def evaluate(self, models: Mapping[ModelKey, FittedCountModel]) -> Dict[ModelKey, EvaluationRecord]:
        return {key: evaluate_model(model) for key, model in models.items()}

    def decide_missing_data(self, records: Mapping[ModelKey, EvaluationRecord]) -> MissingDataDecision:
        family = self.comparison_family
        by_variant = {v: r for (v, f), r in records.items() if f == family}
        return choose_missing_data_strategy(by_variant,
                                            policy=self.config.missing_data_policy)

    def decide_family(self, records: Mapping[ModelKey, EvaluationRecord],
                      variant: str) -> Optional[FamilyDecision]:
        if not {POISSON, NEGATIVE_BINOMIAL} <= set(self.config.families):
            log.info(f"Only {self.config.families} requested; no family decision")
            return None
        return choose_family(records[(variant, POISSON)],
                             records[(variant, NEGATIVE_BINOMIAL)],
                             threshold=self.config.overdispersion_threshold)

    def select_features(self, model: FittedCountModel):
        backward = stepwise_select(model, BACKWARD, max_iter=self.config.max_iter,
                                   tol=self.config.tol)
        forward = stepwise_select(model, FORWARD, max_iter=self.config.max_iter,
                                  tol=self.config.tol)
        decision = choose_selection(backward, forward, policy=self.config.selection_policy)
        vif = {
            sel.direction: vif_for_model(sel.model, self.config.vif_threshold)
            for sel in (backward, forward)
        }
        return backward, forward, decision, vif

    # ── drivers ──────────────────────────────────────────────────────────────

    @monitor(name="run_pipeline", track_memory=True)
    def run_table(self, table: pd.DataFrame) -> PipelineResult:
        """Everything after loading: `table` is an already-cleaned observation table."""
        health = self.health_check(table)
        variants = self.build_variants(table)
        models = self.fit_models(variants)
        records = self.evaluate(models)

        md_decision = self.decide_missing_data(records)
        fam_decision = self.decide_family(records, md_decision.variant)
        family = fam_decision.family if fam_decision else self.config.families[0]
        chosen = models[(md_decision.variant, family)]
        log.info(f"Carrying {chosen.label} into feature selection")

        backward, forward, sel_decision, vif = self.select_features(chosen)
        return PipelineResult(
            config=self.config,
            cleaned=table,
            health=health,
            variants=variants,
            models=models,
            records=records,
            missing_data_decision=md_decision,
            family_decision=fam_decision,
            backward=backward,
            forward=forward,
            selection_decision=sel_decision,
            vif=vif,
        )

    def run(self, path: Union[str, Path]) -> PipelineResult:
        return self.run_table(self.load(path))


def run_pipeline(path: Union[str, Path],
                 config: Optional[PipelineConfig] = None) -> PipelineResult:
    return CountModelPipeline(config).run(path)
