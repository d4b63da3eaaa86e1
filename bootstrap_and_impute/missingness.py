"""Missing-data helpers: artificial missingness, summaries and patterns.

Usage
-----
    from bootstrap_and_impute.missingness import inject_missing, missing_patterns

    d_miss = inject_missing(df, ["STRESS", "NegAff"], prop=0.2, seed=1)
    missing_patterns(d_miss, ["STRESS", "NegAff"])
"""
from __future__ import annotations

import logging
import os
from typing import List, Optional, Sequence

import matplotlib.gridspec as gridspec
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

MECHANISMS = ("MCAR", "MAR")


def _columns(df: pd.DataFrame, columns: Optional[Sequence[str]]) -> List[str]:
    if columns is None:
        return list(df.columns)
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"Missing expected columns: {missing}")
    return list(columns)


def inject_missing(
    df: pd.DataFrame,
    columns: Sequence[str],
    prop: float,
    mechanism: str = "MCAR",
    driver: Optional[str] = None,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """Return a copy with about ``prop`` of each column's observed values set to NaN.

    MCAR picks cells uniformly. MAR weights rows by the rank of ``driver``,
    so high ``driver`` rows lose values more often; ``driver`` itself stays
    complete.
    """
    if not 0 <= prop < 1:
        raise ValueError(f"prop must be in [0, 1), got {prop}")
    if mechanism not in MECHANISMS:
        raise ValueError(f"Unknown missingness mechanism {mechanism!r}; expected one of {MECHANISMS}")
    columns = _columns(df, columns)

    weights = None
    if mechanism == "MAR":
        if driver is None or driver not in df.columns:
            raise ValueError(f"MAR missingness needs an existing driver column, got {driver!r}")
        if driver in columns:
            raise ValueError(f"Driver column {driver!r} cannot also be made missing")
        ranks = df[driver].rank(method="average")
        weights = ranks.fillna(ranks.mean()).to_numpy(dtype=float)

    rng = np.random.default_rng(seed)
    out = df.copy()
    for col in columns:
        observed = np.flatnonzero(out[col].notna().to_numpy())
        k = int(round(prop * len(observed)))
        if k == 0:
            continue
        p = None
        if weights is not None:
            w = weights[observed]
            p = w / w.sum()
        chosen = rng.choice(observed, size=k, replace=False, p=p)
        out.iloc[chosen, out.columns.get_loc(col)] = np.nan
        logger.info(f"Set {k} of {len(observed)} observed values of {col} missing ({mechanism})")
    return out


def missing_summary(df: pd.DataFrame, columns: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """Count and percentage of missing values per variable, most-missing first."""
    columns = _columns(df, columns)
    n_missing = df[columns].isna().sum()
    summary = pd.DataFrame({
        "variable": columns,
        "n_missing": n_missing.to_numpy(dtype=int),
        "pct_missing": (100.0 * n_missing / max(len(df), 1)).to_numpy(dtype=float),
    })
    return summary.sort_values("n_missing", ascending=False, kind="stable").reset_index(drop=True)


def missing_patterns(df: pd.DataFrame, columns: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """Distinct observed(1)/missing(0) patterns with counts, most frequent first."""
    columns = _columns(df, columns)
    indicators = df[columns].notna().astype(int)
    patterns = indicators.value_counts(sort=False).rename("count").reset_index()
    patterns["n_missing"] = len(columns) - patterns[columns].sum(axis=1)
    patterns = patterns.sort_values(["count", "n_missing"], ascending=[False, True], kind="stable")
    return patterns.reset_index(drop=True)


def plot_missingness(df: pd.DataFrame, output_path: str, columns: Optional[Sequence[str]] = None) -> str:
    """Proportion missing per variable and the pattern grid, side by side."""
    columns = _columns(df, columns)
    summary = missing_summary(df, columns).set_index("variable").loc[columns]
    patterns = missing_patterns(df, columns)

    fig = plt.figure(figsize=(12, 4.5))
    gs = gridspec.GridSpec(1, 2, figure=fig, width_ratios=[1, 1.4], wspace=0.35)

    ax1 = fig.add_subplot(gs[0, 0])
    ax1.bar(range(len(columns)), summary["pct_missing"] / 100.0, color="tomato", alpha=0.85)
    ax1.set_xticks(range(len(columns)))
    ax1.set_xticklabels(columns, rotation=45, ha="right", fontsize=9)
    ax1.set_ylabel("Proportion missing", fontsize=9)
    ax1.set_title("Missing values per variable", fontsize=10)

    ax2 = fig.add_subplot(gs[0, 1])
    grid = patterns[columns].to_numpy(dtype=float)
    ax2.imshow(grid, aspect="auto", cmap="RdBu", vmin=-0.5, vmax=1.5, interpolation="nearest")
    ax2.set_xticks(range(len(columns)))
    ax2.set_xticklabels(columns, rotation=45, ha="right", fontsize=9)
    ax2.set_yticks(range(len(patterns)))
    ax2.set_yticklabels([str(c) for c in patterns["count"]], fontsize=8)
    ax2.set_ylabel("Rows with pattern", fontsize=9)
    ax2.set_title("Missing-data patterns (red = missing)", fontsize=10)

    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    fig.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    return output_path
