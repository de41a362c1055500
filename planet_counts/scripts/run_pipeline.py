#!/usr/bin/env python3
"""
run_pipeline.py

Driver for the planet-count analysis. Either a **dry-run** (load, clean and
print the catalog health check) or the full pipeline:

  load → missing-data variants → Poisson / NegBin fits → diagnostics
       → family + missing-data decisions → stepwise selection → VIF

Defaults live in planet_counts/config.py; PLANET_COUNTS_* environment
variables override them and the flags below override both.

    python -m planet_counts.scripts.run_pipeline data/PS_2024.csv --output payload.json
"""

import sys
import json
import argparse
import logging
from pathlib import Path

from rich.console import Console
from rich.table import Table

from planet_counts.config import PipelineConfig
from planet_counts.errors import PipelineError
from planet_counts.pipeline import CountModelPipeline, PipelineResult
from planet_counts.Stage_3_Count_Models.count_models import FAMILIES
from planet_counts.Stage_4_Evaluation.evaluation import MISSING_DATA_POLICIES
from planet_counts.Stage_5_Feature_Selection.feature_selection import SELECTION_POLICIES

# ─────────────────────────────────────────────────────────────────────────────
# SET UP LOGGER
# ─────────────────────────────────────────────────────────────────────────────

log = logging.getLogger("RunPipeline")
logging.basicConfig(level=logging.INFO,
                    format="%(asctime)s | %(levelname)s | %(message)s")

console = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Poisson / Negative-Binomial comparison for planets per system.")
    parser.add_argument("catalog", help="CSV export of the planetary-systems table")
    parser.add_argument("--skip-rows", type=int, default=None,
                        help="metadata lines before the header row")
    parser.add_argument("--delimiter", default=None)
    parser.add_argument("--orbper-limit", type=float, default=None,
                        help="drop rows with pl_orbper at or above this (days)")
    parser.add_argument("--deduplicate-hosts", action="store_true", default=None,
                        help="keep one row per hostname")
    parser.add_argument("--k", type=int, default=None, dest="knn_neighbors",
                        help="neighbours for KNN imputation")
    parser.add_argument("--knn-weights", choices=["uniform", "distance"], default=None)
    parser.add_argument("--families", nargs="+", choices=FAMILIES, default=None)
    parser.add_argument("--max-iter", type=int, default=None)
    parser.add_argument("--overdispersion-threshold", type=float, default=None)
    parser.add_argument("--missing-data-policy", choices=sorted(MISSING_DATA_POLICIES),
                        default=None)
    parser.add_argument("--selection-policy", choices=sorted(SELECTION_POLICIES),
                        default=None)
    parser.add_argument("--vif-threshold", type=float, default=None)
    parser.add_argument("--n-jobs", type=int, default=None)
    parser.add_argument("--output", default=None, dest="output_path",
                        help="write the result payload as JSON here")
    parser.add_argument("--perf-json", default=None,
                        help="write per-step timing and memory here")
    parser.add_argument("--dry-run", action="store_true",
                        help="load, clean and print the health check, then exit")
    return parser


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    return PipelineConfig.from_env().override(
        skip_rows=args.skip_rows,
        delimiter=args.delimiter,
        orbper_limit=args.orbper_limit,
        deduplicate_hosts=args.deduplicate_hosts,
        knn_neighbors=args.knn_neighbors,
        knn_weights=args.knn_weights,
        families=tuple(args.families) if args.families else None,
        max_iter=args.max_iter,
        overdispersion_threshold=args.overdispersion_threshold,
        missing_data_policy=args.missing_data_policy,
        selection_policy=args.selection_policy,
        vif_threshold=args.vif_threshold,
        n_jobs=args.n_jobs,
        output_path=args.output_path,
    )


# ─────────────────────────────────────────────────────────────────────────────
# RICH OUTPUT
# ─────────────────────────────────────────────────────────────────────────────

def print_health(health: dict):
    table = Table(title="Catalog Health Check", show_lines=True)
    table.add_column("Check", style="cyan", no_wrap=True)
    table.add_column("Result", style="magenta")
    for name, value in health.items():
        detail = str(value)
        if len(detail) > 90:
            detail = detail[:87] + "..."
        table.add_row(name, detail)
    console.print(table)


def print_comparison(result: PipelineResult):
    table = Table(title="Model Comparison", show_lines=True)
    for col in ("Variant", "Family", "n", "Deviance", "df", "GOF p",
                "Disp. ratio", "AIC", "alpha", "Residual score"):
        table.add_column(col, justify="left" if col in ("Variant", "Family") else "right")

    for (variant, family), rec in sorted(result.records.items()):
        m = rec.model
        table.add_row(variant, family, str(m.n_obs), f"{m.deviance:.2f}",
                      f"{m.df_resid:.0f}", f"{rec.gof_pvalue:.4f}",
                      f"{rec.dispersion_ratio:.3f}", f"{m.aic:.2f}",
                      f"{m.alpha:.3g}", f"{rec.pattern.score:.4f}")
    console.print(table)

    md = result.missing_data_decision
    console.print(f"[bold]Missing data →[/bold] [green]{md.variant}[/green]  {md.rationale}")
    if result.family_decision:
        fd = result.family_decision
        console.print(f"[bold]Family →[/bold] [green]{fd.family}[/green]  {fd.rationale}")
    sd = result.selection_decision
    console.print(f"[bold]Selection →[/bold] [green]{sd.direction}[/green]  {sd.rationale}")


def print_final_model(result: PipelineResult):
    model = result.final_model
    vif = result.vif[result.selection_decision.direction]
    table = Table(title=f"Final model: {model.formula} ({model.family}, {model.variant})",
                  show_lines=True)
    for col in ("Predictor", "Estimate", "Std. error", "p-value", "IRR", "VIF"):
        table.add_column(col, justify="left" if col == "Predictor" else "right")
    for name, row in model.coefficients.iterrows():
        v = vif["vif"].get(name)
        flag = vif["flagged"].get(name, False)
        v_txt = "" if v is None else (f"[red]{v:.2f}[/red]" if flag else f"{v:.2f}")
        table.add_row(str(name), f"{row['estimate']:.4f}", f"{row['std_error']:.4f}",
                      f"{row['p_value']:.3g}", f"{row['irr']:.3f}", v_txt)
    console.print(table)


# ─────────────────────────────────────────────────────────────────────────────
# MAIN
# ─────────────────────────────────────────────────────────────────────────────

def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = config_from_args(args)
    pipe = CountModelPipeline(config)

    try:
        if args.dry_run:
            log.info("▶ Dry-run mode: loading and checking the catalog, then exiting.")
            table = pipe.load(args.catalog)
            print_health(pipe.health_check(table))
            return 0

        result = pipe.run(args.catalog)
    except PipelineError as exc:
        log.error(f"Pipeline aborted: {type(exc).__name__}: {exc}")
        return 1

    print_comparison(result)
    print_final_model(result)

    if config.output_path:
        out = Path(config.output_path)
        out.parent.mkdir(parents=True, exist_ok=True)
        with open(out, "w") as fh:
            json.dump(result.to_payload(), fh, indent=2)
        log.info(f"Payload written → {out}")

    if args.perf_json:
        pipe.export_perf_json(args.perf_json)
    return 0


if __name__ == "__main__":
    sys.exit(main())
