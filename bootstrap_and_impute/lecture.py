"""End-to-end lecture build: non-normal data (bootstrapping) and missing data (multiple imputation).

Usage example:
python -m bootstrap_and_impute.lecture --output-dir ./lecture_output --B 1000 --workers 4 --m 5
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import psutil
from scipy import stats

from .bootstrap import (
    bootstrap,
    bootstrap_ci,
    compare_intervals,
    interval_report,
    parametric_bootstrap_mixed,
    plot_replicates,
    worker_pool,
)
from .config import LectureConfig
from .deck import Deck, Slide
from .diary_data import ID_COL, first_day, load_daily_diary, person_means, within_between
from .imputation import fit_each, impute_chained, plot_imputed_vs_observed, plot_trace
from .missingness import inject_missing, missing_patterns, missing_summary, plot_missingness
from .models import ColumnStatistic, MixedCoefficients, OLSCoefficients, coef_table, fit_mixed, fit_ols
from .normality import normality_report, plot_distribution, residual_diagnostics
from .pooling import pool_fits
from .tables import with_ci_column

logger = logging.getLogger(__name__)

OLS_FORMULA = "NegAff ~ STRESS"
MIXED_FORMULA = "NegAff ~ STRESS_W + STRESS_B"
MI_FORMULA = "NegAff ~ STRESS + Age + Female"
MI_COLUMNS = ["STRESS", "PosAff", "NegAff", "SOLs", "WASONs", "Age", "Female", "SES", "Day"]
MISSING_COLUMNS = ["STRESS", "NegAff"]
MISSING_DRIVER = "Age"

_process = psutil.Process(os.getpid())
_peak_memory_mb = 0.0


def get_current_memory_mb() -> float:
    """Current process RSS in MB; also updates the peak."""
    global _peak_memory_mb
    current_mb = _process.memory_info().rss / (1024 * 1024)
    _peak_memory_mb = max(_peak_memory_mb, current_mb)
    return current_mb


@dataclass
class LectureContext:
    config: LectureConfig
    figures_dir: str
    cache: Dict[str, Any] = field(default_factory=dict)
    intervals: Dict[str, Any] = field(default_factory=dict)

    def load(self) -> pd.DataFrame:
        c = self.config
        return load_daily_diary(c.dataset_path, n_people=c.n_people, n_days=c.n_days, seed=c.seed)

    def figure(self, name: str) -> str:
        return os.path.join(self.figures_dir, name)

    def cached(self, key: str, build: Callable[[], Any]) -> Any:
        if key not in self.cache:
            self.cache[key] = build()
        return self.cache[key]

    def with_missing(self) -> pd.DataFrame:
        c = self.config
        return self.cached("with_missing", lambda: inject_missing(
            self.load(), MISSING_COLUMNS, c.missing_prop, mechanism="MAR",
            driver=MISSING_DRIVER, seed=c.seed + 1,
        ))

    def imputed(self):
        c = self.config
        return self.cached("imputed", lambda: impute_chained(
            self.with_missing(), m=c.n_imputations, n_iter=c.n_iterations,
            columns=MI_COLUMNS, id_col=ID_COL, seed=c.seed + 2,
        ))


# ============================================================================
# Fragments: each returns the slides for one part of the talk
# ============================================================================


def title_slides(ctx: LectureContext) -> List[Slide]:
    return [Slide(
        title="Outline",
        bullets=[
            "Non-normal data: what goes wrong and what bootstrapping offers",
            "Bootstrapping means, regression and mixed models",
            "Missing data: mechanisms, patterns and visualization",
            "Multiple imputation by chained equations and pooling",
        ],
    )]


def nonnormal_slides(ctx: LectureContext) -> List[Slide]:
    df = ctx.load()
    pm = person_means(df, ["NegAff", "STRESS"])
    reports = [
        normality_report(df["NegAff"], "NegAff (daily)"),
        normality_report(df["STRESS"], "STRESS (daily)"),
        normality_report(df["SOLs"], "SOLs (daily)"),
        normality_report(pm["NegAff"], "NegAff (person mean)"),
        normality_report(first_day(df)["NegAff"], "NegAff (first day)"),
    ]
    table = pd.DataFrame(reports)[["name", "n", "skewness", "excess_kurtosis", "shapiro_W", "shapiro_p"]]
    table = table.rename(columns={"shapiro_p": "p_value"})
    fig = plot_distribution(df["NegAff"], ctx.figure("negaff_distribution.png"), title="Daily negative affect")
    return [
        Slide(
            title="Non-normal data",
            bullets=[
                "Many diary measures are bounded and skewed: affect piles up at the floor",
                "Normal-theory CIs and p-values assume normal residuals or large samples",
                "Options: transform, use a different likelihood, or bootstrap the uncertainty",
            ],
            figure=fig,
        ),
        Slide(
            title="How non-normal are these variables?",
            bullets=[
                f"Shapiro-Wilk rejects normality for {sum(r['reject_normality'] for r in reports)}"
                f" of {len(reports)} variables at alpha = 0.05"
            ],
            table=table,
            code='normality_report(df["NegAff"], "NegAff (daily)")',
        ),
    ]


def bootstrap_concept_slides(ctx: LectureContext) -> List[Slide]:
    return [Slide(
        title="Bootstrapping",
        bullets=[
            "Treat the sample as the population and resample it with replacement",
            "Recompute the statistic on each of B resamples",
            "The spread of the B replicates estimates the sampling distribution",
            "Percentile CI: the alpha/2 and 1 - alpha/2 quantiles of the replicates",
            "With repeated measures, resample whole people, not rows",
        ],
        code=(
            "res = bootstrap(data, statistic, B=1000, seed=1)\n"
            "bootstrap_ci(res, level=0.95, method=\"perc\")"
        ),
    )]


def bootstrap_mean_slides(ctx: LectureContext) -> List[Slide]:
    c = ctx.config
    pm = person_means(ctx.load(), ["NegAff"])
    x = pm["NegAff"].dropna().to_numpy()

    res = bootstrap(pm, ColumnStatistic("NegAff", "mean"), B=c.n_boot, seed=c.seed, progress=c.progress)
    intervals = compare_intervals(res, ("perc", "bca"), level=c.ci_level)
    ctx.intervals["mean"] = interval_report(res, intervals)
    lo, hi = stats.t.interval(c.ci_level, len(x) - 1, loc=x.mean(), scale=stats.sem(x))
    normal = pd.DataFrame([{
        "term": res.names[0], "estimate": x.mean(), "lower": lo, "upper": hi,
        "method": "t (normal theory)", "level": c.ci_level,
    }])
    table = pd.concat([normal, intervals], ignore_index=True).drop(columns=["level"])
    fig = plot_replicates(res, intervals, ctx.figure("bootstrap_mean.png"))
    return [Slide(
        title="Bootstrapping a mean",
        bullets=[
            f"Average negative affect per person, B = {res.B} resamples",
            "Percentile and BCa intervals follow the skew; the t interval is symmetric",
        ],
        table=with_ci_column(table, level=c.ci_level),
        figure=fig,
        code=f'bootstrap(pm, ColumnStatistic("NegAff", "mean"), B={res.B})',
    )]


def bootstrap_ols_slides(ctx: LectureContext) -> List[Slide]:
    c = ctx.config
    pm = person_means(ctx.load(), ["NegAff", "STRESS"])
    fit = fit_ols(pm, OLS_FORMULA)
    resid = residual_diagnostics(fit, ctx.figures_dir, name="ols_person_means")

    res = bootstrap(
        pm, OLSCoefficients(OLS_FORMULA), B=c.n_boot, seed=c.seed, workers=c.workers, progress=c.progress,
    )
    wald = coef_table(fit, c.ci_level)[["term", "estimate", "lower", "upper"]].assign(method="wald")
    boot = compare_intervals(res, ("perc", "bca"), level=c.ci_level)
    ctx.intervals["ols"] = interval_report(res, boot)
    boot = boot.drop(columns=["level"])
    table = pd.concat([wald, boot], ignore_index=True).sort_values(["term", "method"], kind="stable")
    return [
        Slide(
            title="Regression on person means",
            bullets=[
                f"OLS: {OLS_FORMULA} using one average per person",
                f"Residual Shapiro-Wilk p = {resid['shapiro_p']:.3f}",
            ],
            figure=resid["figure"],
            code=f'fit_ols(pm, "{OLS_FORMULA}")',
        ),
        Slide(
            title="Bootstrapped regression coefficients",
            bullets=[f"B = {res.B} resamples of people; Wald vs bootstrap intervals"],
            table=with_ci_column(table, level=c.ci_level),
            code=f'bootstrap(pm, OLSCoefficients("{OLS_FORMULA}"), B={res.B})',
        ),
    ]


def bootstrap_mixed_slides(ctx: LectureContext) -> List[Slide]:
    c = ctx.config
    df = within_between(ctx.load(), ["STRESS"])
    fit = fit_mixed(df, MIXED_FORMULA, ID_COL)
    wald = coef_table(fit, c.ci_level)[["term", "estimate", "lower", "upper"]].assign(method="wald")

    # one pool shared by both bootstrap calls
    with worker_pool(c.workers) as pool:
        param = parametric_bootstrap_mixed(
            df, MIXED_FORMULA, ID_COL, B=c.n_boot_mixed, seed=c.seed, pool=pool, progress=c.progress,
        )
        case = bootstrap(
            df, MixedCoefficients(MIXED_FORMULA, ID_COL), B=c.n_boot_mixed, seed=c.seed,
            cluster=ID_COL, pool=pool, progress=c.progress,
        )

    param_ci = bootstrap_ci(param, c.ci_level, "perc").assign(method="parametric perc")
    case_ci = bootstrap_ci(case, c.ci_level, "perc").assign(method="cluster perc")
    ctx.intervals["mixed_parametric"] = interval_report(param, param_ci)
    ctx.intervals["mixed_cluster"] = interval_report(case, case_ci)
    table = pd.concat([wald, param_ci.drop(columns=["level"]), case_ci.drop(columns=["level"])], ignore_index=True)
    table = table.sort_values(["term", "method"], kind="stable")
    return [Slide(
        title="Bootstrapping a mixed model",
        bullets=[
            f"Random intercept model: {MIXED_FORMULA}, grouped by {ID_COL}",
            "Parametric: simulate from the fitted model and refit",
            "Cluster: resample whole people with replacement and refit",
            f"Both use the same pool of {c.workers} worker(s), B = {c.n_boot_mixed} each",
        ],
        table=with_ci_column(table, level=c.ci_level),
        code=(
            f"with worker_pool({c.workers}) as pool:\n"
            f"    parametric_bootstrap_mixed(df, \"{MIXED_FORMULA}\", \"{ID_COL}\", B={c.n_boot_mixed}, pool=pool)\n"
            f"    bootstrap(df, stat, B={c.n_boot_mixed}, cluster=\"{ID_COL}\", pool=pool)"
        ),
    )]


def missing_mechanisms_slides(ctx: LectureContext) -> List[Slide]:
    return [Slide(
        title="Why data are missing",
        bullets=[
            "MCAR: missingness unrelated to anything; complete cases stay unbiased",
            "MAR: missingness depends on observed variables; MI can recover",
            "MNAR: missingness depends on the missing value itself",
            "Listwise deletion throws away information and can bias estimates",
        ],
    )]


def missing_data_slides(ctx: LectureContext) -> List[Slide]:
    c = ctx.config
    d_miss = ctx.with_missing()
    summary = missing_summary(d_miss, MI_COLUMNS)
    patterns = missing_patterns(d_miss, MI_COLUMNS)
    fig = plot_missingness(d_miss, ctx.figure("missingness.png"), MI_COLUMNS)
    return [
        Slide(
            title="Adding missingness to the diary data",
            bullets=[
                f"{int(round(c.missing_prop * 100))}% of {', '.join(MISSING_COLUMNS)} set missing",
                f"MAR: older participants are more likely to skip ({MISSING_DRIVER} stays complete)",
            ],
            table=summary,
            code=(
                f"inject_missing(df, {MISSING_COLUMNS}, prop={c.missing_prop}, "
                f"mechanism=\"MAR\", driver=\"{MISSING_DRIVER}\")"
            ),
        ),
        Slide(
            title="Missing-data patterns",
            bullets=["1 = observed, 0 = missing; one row per pattern"],
            table=patterns.head(8),
            figure=fig,
        ),
    ]


def imputation_slides(ctx: LectureContext) -> List[Slide]:
    c = ctx.config
    imp = ctx.imputed()
    trace_fig = plot_trace(imp, ctx.figure("imputation_trace.png"))
    density_fig = plot_imputed_vs_observed(imp, ctx.figure("imputed_vs_observed.png"))
    counts = pd.DataFrame({"variable": list(imp.n_imputed), "n_imputed": list(imp.n_imputed.values())})
    return [
        Slide(
            title="Multiple imputation by chained equations",
            bullets=[
                "Impute each variable in turn from all others, cycling until stable",
                "Predictive mean matching draws observed donor values",
                f"m = {imp.m} completed datasets, {imp.n_iter} cycles each",
            ],
            table=counts,
            code=f"imp = impute_chained(d_miss, m={c.n_imputations}, n_iter={c.n_iterations}, columns=MI_COLUMNS)",
        ),
        Slide(
            title="Checking convergence",
            bullets=["Chains should mix and show no trend across iterations"],
            figure=trace_fig,
        ),
        Slide(
            title="Imputed vs observed values",
            bullets=["Under MAR imputed values may differ from observed ones"],
            figure=density_fig,
        ),
    ]


def _comparison_table(full: pd.DataFrame, complete_case: pd.DataFrame, pooled: pd.DataFrame) -> pd.DataFrame:
    cols = ["term", "estimate", "std_error"]
    out = full[cols].rename(columns={"estimate": "original", "std_error": "se_original"})
    out = out.merge(complete_case[cols].rename(columns={"estimate": "complete_case", "std_error": "se_cc"}), on="term")
    out = out.merge(
        pooled[cols + ["fmi"]].rename(columns={"estimate": "mi_pooled", "std_error": "se_mi"}), on="term",
    )
    return out


def pooled_ols_slides(ctx: LectureContext) -> List[Slide]:
    c = ctx.config
    full = coef_table(fit_ols(ctx.load(), MI_FORMULA), c.ci_level)
    cc = coef_table(fit_ols(ctx.with_missing(), MI_FORMULA), c.ci_level)
    pooled = pool_fits(fit_each(ctx.imputed(), lambda d: fit_ols(d, MI_FORMULA)), level=c.ci_level)
    ctx.cache["pooled_ols"] = pooled
    return [Slide(
        title="Pooled regression after imputation",
        bullets=[
            f"OLS: {MI_FORMULA} fitted in each completed dataset and pooled",
            "Compared with the data before missingness and with listwise deletion",
        ],
        table=_comparison_table(full, cc, pooled),
        code=f'pool_fits(fit_each(imp, lambda d: fit_ols(d, "{MI_FORMULA}")))',
    )]


def pooled_mixed_slides(ctx: LectureContext) -> List[Slide]:
    c = ctx.config
    full = coef_table(fit_mixed(ctx.load(), MI_FORMULA, ID_COL), c.ci_level)
    cc = coef_table(fit_mixed(ctx.with_missing(), MI_FORMULA, ID_COL), c.ci_level)
    pooled = pool_fits(fit_each(ctx.imputed(), lambda d: fit_mixed(d, MI_FORMULA, ID_COL)), level=c.ci_level)
    return [Slide(
        title="Pooled mixed model after imputation",
        bullets=[f"Random intercept by {ID_COL}; fixed effects pooled with Rubin's rules"],
        table=_comparison_table(full, cc, pooled),
        code=f'pool_fits(fit_each(imp, lambda d: fit_mixed(d, "{MI_FORMULA}", "{ID_COL}")))',
    )]


def pooling_slides(ctx: LectureContext) -> List[Slide]:
    pooled = ctx.cache.get("pooled_ols")
    if pooled is None:
        pooled = pool_fits(fit_each(ctx.imputed(), lambda d: fit_ols(d, MI_FORMULA)), level=ctx.config.ci_level)
    table = pooled[["term", "ubar", "b", "t", "riv", "lambda", "fmi", "df"]]
    return [Slide(
        title="Pooling with Rubin's rules",
        bullets=[
            "Estimate: average of the m estimates",
            "Within variance: average squared standard error",
            "Between variance: variance of the estimates across imputations",
            "Total variance = within + (1 + 1/m) x between",
            "fmi: share of information lost to missingness",
        ],
        table=table,
    )]


def summary_slides(ctx: LectureContext) -> List[Slide]:
    return [Slide(
        title="Summary",
        bullets=[
            "Bootstrapping gives CIs without assuming normal sampling distributions",
            "Resample the independent unit: people, not days",
            "Multiple imputation keeps every participant and reflects imputation uncertainty",
            "Always check imputation convergence and compare with complete-case results",
        ],
    )]


FRAGMENTS: List[Tuple[str, str, Callable[[LectureContext], List[Slide]]]] = [
    ("outline", "Outline", title_slides),
    ("non_normal", "Non-normal data", nonnormal_slides),
    ("bootstrap_concept", "Bootstrapping", bootstrap_concept_slides),
    ("bootstrap_mean", "Bootstrapping a mean", bootstrap_mean_slides),
    ("bootstrap_ols", "Bootstrapped regression coefficients", bootstrap_ols_slides),
    ("bootstrap_mixed", "Bootstrapping a mixed model", bootstrap_mixed_slides),
    ("missing_mechanisms", "Why data are missing", missing_mechanisms_slides),
    ("missing_data", "Adding missingness to the diary data", missing_data_slides),
    ("imputation", "Multiple imputation by chained equations", imputation_slides),
    ("pooled_ols", "Pooled regression after imputation", pooled_ols_slides),
    ("pooled_mixed", "Pooled mixed model after imputation", pooled_mixed_slides),
    ("pooling", "Pooling with Rubin's rules", pooling_slides),
    ("summary", "Summary", summary_slides),
]


# ============================================================================
# Runner
# ============================================================================


def build_lecture(
    config: LectureConfig,
    fragments: Optional[List[Tuple[str, str, Callable[[LectureContext], List[Slide]]]]] = None,
) -> Tuple[Deck, Dict[str, Any]]:
    """Run every fragment and collect the slides.

    A failing fragment is logged and replaced by a single slide carrying the
    error; the remaining fragments still run.
    """
    fragments = FRAGMENTS if fragments is None else fragments
    figures_dir = os.path.join(config.output_dir, "figures")
    os.makedirs(figures_dir, exist_ok=True)
    ctx = LectureContext(config=config, figures_dir=figures_dir)

    deck = Deck(
        title="Non-normal and missing data",
        subtitle="Bootstrapping and multiple imputation with daily-diary data",
    )
    report: Dict[str, Any] = {
        "config": config.as_dict(),
        "wall_clock_start": datetime.now().isoformat(),
        "fragments": {},
    }
    start = time.time()

    for name, title, build in fragments:
        logger.info(f"Rendering fragment: {name}")
        t_start = time.time()
        mem_start = get_current_memory_mb()
        try:
            slides = build(ctx)
            deck.add(*slides)
            entry = {"success": True, "slides": [s.title for s in slides]}
        except Exception as e:
            logger.error(f"Fragment {name} failed: {e}", exc_info=True)
            deck.add(Slide(title=f"{title} (could not be rendered)", bullets=[f"{type(e).__name__}: {e}"]))
            entry = {"success": False, "error": str(e)}
        entry["time_sec"] = time.time() - t_start
        entry["memory_mb"] = get_current_memory_mb() - mem_start
        report["fragments"][name] = entry

    report["bootstrap_intervals"] = ctx.intervals
    report["outline"] = deck.outline()
    report["n_failed"] = sum(1 for e in report["fragments"].values() if not e["success"])
    report["total_runtime_sec"] = time.time() - start
    report["peak_memory_mb"] = _peak_memory_mb
    return deck, report


def write_outputs(deck: Deck, report: Dict[str, Any], config: LectureConfig) -> Dict[str, str]:
    os.makedirs(config.output_dir, exist_ok=True)
    paths: Dict[str, str] = {}
    if "md" in config.formats:
        paths["markdown"] = os.path.join(config.output_dir, "lecture.md")
        deck.to_markdown(paths["markdown"])
    if "docx" in config.formats:
        paths["docx"] = deck.to_docx(os.path.join(config.output_dir, "lecture.docx"))

    paths["report_json"] = os.path.join(config.output_dir, "lecture_report.json")
    report["outputs"] = dict(paths)
    with open(paths["report_json"], "w") as f:
        json.dump(report, f, indent=2, default=_json_default)
    return paths


def _json_default(value: Any) -> Any:
    if isinstance(value, (np.integer, np.floating)):
        return value.item()
    if isinstance(value, tuple):
        return list(value)
    return str(value)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Render the bootstrapping and multiple imputation lecture.")
    parser.add_argument("--output-dir", default=None, help="Directory for the deck, figures and report")
    parser.add_argument("--dataset", default=None, help="Optional CSV/Parquet daily-diary table")
    parser.add_argument("--B", type=int, default=None, help="Bootstrap resamples")
    parser.add_argument("--B-mixed", type=int, default=None, help="Bootstrap resamples for mixed models")
    parser.add_argument("--workers", type=int, default=None, help="Worker processes for the bootstrap")
    parser.add_argument("--m", type=int, default=None, help="Number of imputations")
    parser.add_argument("--iterations", type=int, default=None, help="Chained-equation cycles per imputation")
    parser.add_argument("--missing-prop", type=float, default=None, help="Share of values set missing")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--formats", nargs="+", default=None, choices=["md", "docx"])
    parser.add_argument("--no-progress", action="store_true", help="Hide bootstrap progress bars")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = LectureConfig.from_env(
        output_dir=args.output_dir,
        dataset_path=args.dataset,
        n_boot=args.B,
        n_boot_mixed=args.B_mixed,
        workers=args.workers,
        n_imputations=args.m,
        n_iterations=args.iterations,
        missing_prop=args.missing_prop,
        seed=args.seed,
        formats=args.formats,
        progress=False if args.no_progress else None,
    )

    print("Rendering lecture")
    deck, report = build_lecture(config)
    paths = write_outputs(deck, report, config)
    for kind, path in paths.items():
        print(f"Saved {kind} to {path}")
    if report["n_failed"]:
        print(f"Warning: {report['n_failed']} fragment(s) could not be rendered; see {paths['report_json']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
